from __future__ import annotations

from typing import Iterable, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models
from ..database import atomic, insert_or_ignore, retry_on_conflict, upsert_row
from ..schemas import (
    ItemOverridePayload,
    ItemSettingsPatch,
    SectionVisibilityPayload,
    ViewCreate,
    ViewUpdate,
    parse_payload,
)
from .auth_utils import generate_token, new_id, normalize_password, now_iso, password_matches
from .errors import NotFoundError, ValidationFailedError
from .money import line_total, sum_money
from .store import (
    estimate_items,
    estimate_sections,
    estimate_views,
    get_estimate_or_404,
    serialize_view,
)

DEFAULT_VIEW_NAME = "New view"
COPY_SUFFIX = " (copy)"


def build_projection(
    *,
    estimate_id: str,
    title: str,
    view_id: str,
    view_name: str,
    sections: Iterable[Mapping],
    items: Iterable[Mapping],
    section_visibility: Mapping[str, bool],
    item_settings: Mapping[str, Mapping],
) -> dict:
    """Render one audience's shape of an estimate from plain rows.

    ``sections`` and ``items`` must already be in display order. A section
    without a visibility row is shown; an item without a settings row is
    left out, as is every item of a hidden section. Totals are summed from
    the unrounded line totals and rounded once.
    """
    items_by_section: dict[str, list[Mapping]] = {}
    for item in items:
        items_by_section.setdefault(item["section_id"], []).append(item)

    projected_sections: list[dict] = []
    included_totals: list = []
    for section in sections:
        if not section_visibility.get(section["id"], True):
            continue
        projected_items: list[dict] = []
        for item in items_by_section.get(section["id"], []):
            setting = item_settings.get(item["id"])
            if setting is None or not setting.get("visible"):
                continue
            projected_items.append(
                {
                    "item_id": item["id"],
                    "number": len(projected_items) + 1,
                    "label": item.get("number") or "",
                    "name": item["name"],
                    "unit": item.get("unit") or "",
                    "quantity": float(item.get("quantity") or 0),
                    "price": float(setting.get("price") or 0),
                    "total": float(setting.get("total") or 0),
                }
            )
        if not projected_items:
            continue
        line_totals = [row["total"] for row in projected_items]
        included_totals.extend(line_totals)
        projected_sections.append(
            {
                "section_id": section["id"],
                "name": section["name"],
                "subtotal": sum_money(line_totals),
                "items": projected_items,
            }
        )

    return {
        "estimate_id": estimate_id,
        "title": title,
        "view_id": view_id,
        "view_name": view_name,
        "sections": projected_sections,
        "item_count": sum(len(section["items"]) for section in projected_sections),
        "total": sum_money(included_totals),
    }


def _get_view_or_404(estimate_id: str, view_id: str, db: Session) -> models.View:
    view = (
        db.query(models.View)
        .filter(models.View.id == view_id, models.View.estimate_id == estimate_id)
        .first()
    )
    if not view:
        raise NotFoundError("View")
    return view


def _get_view_by_id_or_404(view_id: str, db: Session) -> models.View:
    view = db.query(models.View).filter(models.View.id == view_id).first()
    if not view:
        raise NotFoundError("View")
    return view


def _get_sibling_or_404(model, target_id: str, estimate_id: str, resource: str, db: Session):
    row = db.query(model).filter(model.id == target_id, model.estimate_id == estimate_id).first()
    if not row:
        raise NotFoundError(resource)
    return row


def _materialize_default_rows(view_id: str, estimate_id: str, db: Session) -> None:
    for section in estimate_sections(estimate_id, db):
        insert_or_ignore(
            db,
            models.ViewSectionSetting,
            {"id": new_id(), "view_id": view_id, "section_id": section.id, "visible": 1},
            ("view_id", "section_id"),
        )
    for item in estimate_items(estimate_id, db):
        insert_or_ignore(
            db,
            models.ViewItemSetting,
            {"id": new_id(), "view_id": view_id, "item_id": item.id, "price": 0.0, "total": 0.0, "visible": 1},
            ("view_id", "item_id"),
        )


def _next_view_sort_order(estimate_id: str, db: Session) -> int:
    max_order = (
        db.query(func.max(models.View.sort_order))
        .filter(models.View.estimate_id == estimate_id)
        .scalar()
    )
    return 0 if max_order is None else int(max_order) + 1


def list_views(estimate_id: str, db: Session) -> list[dict]:
    get_estimate_or_404(estimate_id, db)
    return [serialize_view(view) for view in estimate_views(estimate_id, db)]


def get_view(estimate_id: str, view_id: str, db: Session) -> dict:
    return serialize_view(_get_view_or_404(estimate_id, view_id, db))


def create_view(estimate_id: str, payload, db: Session) -> dict:
    """Add a named view with a fresh access token.

    Default rows are written for every existing section (visible) and item
    (price 0, visible) so the new view lists everything until priced.
    """
    data = parse_payload(ViewCreate, payload)
    get_estimate_or_404(estimate_id, db)
    name = (data.name or "").strip() or DEFAULT_VIEW_NAME
    password = normalize_password(data.password)

    def _write(session: Session) -> str:
        view = models.View(
            id=new_id(),
            estimate_id=estimate_id,
            name=name,
            link_token=generate_token(),
            password=password,
            sort_order=_next_view_sort_order(estimate_id, session),
            is_customer_view=0,
            created_at=now_iso(),
        )
        session.add(view)
        session.flush()
        _materialize_default_rows(view.id, estimate_id, session)
        return view.id

    view_id = retry_on_conflict(db, _write, label="create view")
    return get_view(estimate_id, view_id, db)


def update_view(estimate_id: str, view_id: str, payload, db: Session) -> dict:
    data = parse_payload(ViewUpdate, payload)
    with atomic(db):
        view = _get_view_or_404(estimate_id, view_id, db)
        if data.name is not None and data.name.strip():
            view.name = data.name.strip()
        if data.password is not None:
            view.password = normalize_password(data.password)
    return get_view(estimate_id, view_id, db)


def duplicate_view(estimate_id: str, view_id: str, db: Session) -> dict:
    source = _get_view_or_404(estimate_id, view_id, db)
    source_id = source.id
    source_name = source.name
    source_password = source.password

    def _write(session: Session) -> str:
        copy = models.View(
            id=new_id(),
            estimate_id=estimate_id,
            name=f"{source_name}{COPY_SUFFIX}",
            link_token=generate_token(),
            password=source_password,
            sort_order=_next_view_sort_order(estimate_id, session),
            is_customer_view=0,
            created_at=now_iso(),
        )
        session.add(copy)
        session.flush()
        section_rows = (
            session.query(models.ViewSectionSetting)
            .filter(models.ViewSectionSetting.view_id == source_id)
            .all()
        )
        for row in section_rows:
            session.add(
                models.ViewSectionSetting(
                    id=new_id(), view_id=copy.id, section_id=row.section_id, visible=row.visible
                )
            )
        item_rows = (
            session.query(models.ViewItemSetting)
            .filter(models.ViewItemSetting.view_id == source_id)
            .all()
        )
        for row in item_rows:
            session.add(
                models.ViewItemSetting(
                    id=new_id(),
                    view_id=copy.id,
                    item_id=row.item_id,
                    price=row.price,
                    total=row.total,
                    visible=row.visible,
                )
            )
        return copy.id

    copy_id = retry_on_conflict(db, _write, label="duplicate view")
    return get_view(estimate_id, copy_id, db)


def delete_view(estimate_id: str, view_id: str, db: Session) -> None:
    with atomic(db):
        view = _get_view_or_404(estimate_id, view_id, db)
        remaining = (
            db.query(func.count(models.View.id))
            .filter(models.View.estimate_id == estimate_id)
            .scalar()
        )
        if int(remaining or 0) <= 1:
            raise ValidationFailedError("An estimate must keep at least one view.")
        was_customer_view = bool(view.is_customer_view)
        db.delete(view)
        db.flush()
        if was_customer_view:
            successor = estimate_views(estimate_id, db)[0]
            successor.is_customer_view = 1


def set_customer_view(estimate_id: str, view_id: str, db: Session) -> dict:
    with atomic(db):
        target = _get_view_or_404(estimate_id, view_id, db)
        for view in estimate_views(estimate_id, db):
            view.is_customer_view = 1 if view.id == target.id else 0
    return get_view(estimate_id, view_id, db)


def set_section_visibility(view_id: str, section_id: str, visible, db: Session) -> None:
    """Upsert the (view, section) visibility flag; repeating the call is a no-op."""
    data = parse_payload(SectionVisibilityPayload, visible=visible)
    with atomic(db):
        view = _get_view_by_id_or_404(view_id, db)
        section = _get_sibling_or_404(models.Section, section_id, view.estimate_id, "Section", db)
        upsert_row(
            db,
            models.ViewSectionSetting,
            {"id": new_id(), "view_id": view.id, "section_id": section.id, "visible": int(data.visible)},
            ("view_id", "section_id"),
            ("visible",),
        )


def set_item_override(view_id: str, item_id: str, price, total, visible, db: Session) -> None:
    """Upsert the (view, item) price/total/visibility row as given.

    ``total`` is stored verbatim; keeping it equal to quantity x price is
    the caller's job here (``update_item_settings`` does it for editors).
    """
    data = parse_payload(ItemOverridePayload, price=price, total=total, visible=visible)
    with atomic(db):
        view = _get_view_by_id_or_404(view_id, db)
        item = _get_sibling_or_404(models.Item, item_id, view.estimate_id, "Item", db)
        upsert_row(
            db,
            models.ViewItemSetting,
            {
                "id": new_id(),
                "view_id": view.id,
                "item_id": item.id,
                "price": float(data.price),
                "total": float(data.total),
                "visible": int(data.visible),
            },
            ("view_id", "item_id"),
            ("price", "total", "visible"),
        )


def update_item_settings(estimate_id: str, view_id: str, item_id: str, db: Session, *, price=None, visible=None) -> dict:
    data = parse_payload(ItemSettingsPatch, price=price, visible=visible)
    with atomic(db):
        view = _get_view_or_404(estimate_id, view_id, db)
        item = _get_sibling_or_404(models.Item, item_id, estimate_id, "Item", db)
        current = (
            db.query(models.ViewItemSetting)
            .filter(models.ViewItemSetting.view_id == view.id, models.ViewItemSetting.item_id == item.id)
            .first()
        )
        if data.price is not None:
            next_price = float(data.price)
        else:
            next_price = float(current.price or 0) if current else 0.0
        if data.visible is not None:
            next_visible = bool(data.visible)
        else:
            next_visible = bool(current.visible) if current else True
        next_total = line_total(item.quantity, next_price)
        upsert_row(
            db,
            models.ViewItemSetting,
            {
                "id": new_id(),
                "view_id": view.id,
                "item_id": item.id,
                "price": next_price,
                "total": next_total,
                "visible": int(next_visible),
            },
            ("view_id", "item_id"),
            ("price", "total", "visible"),
        )
    return {"item_id": item_id, "view_id": view_id, "price": next_price, "total": next_total, "visible": next_visible}


def project_estimate(estimate_id: str, view_id: str, db: Session) -> dict:
    estimate = get_estimate_or_404(estimate_id, db)
    view = _get_view_or_404(estimate.id, view_id, db)

    section_visibility = {
        row.section_id: bool(row.visible)
        for row in db.query(models.ViewSectionSetting).filter(models.ViewSectionSetting.view_id == view.id)
    }
    item_settings = {
        row.item_id: {"price": row.price, "total": row.total, "visible": bool(row.visible)}
        for row in db.query(models.ViewItemSetting).filter(models.ViewItemSetting.view_id == view.id)
    }
    return build_projection(
        estimate_id=estimate.id,
        title=estimate.title,
        view_id=view.id,
        view_name=view.name,
        sections=[{"id": section.id, "name": section.name} for section in estimate_sections(estimate.id, db)],
        items=[
            {
                "id": item.id,
                "section_id": item.section_id,
                "number": item.number,
                "name": item.name,
                "unit": item.unit,
                "quantity": item.quantity,
            }
            for item in estimate_items(estimate.id, db)
        ],
        section_visibility=section_visibility,
        item_settings=item_settings,
    )


def find_view_by_token(token: str, db: Session) -> dict:
    if not token:
        raise NotFoundError("View")
    view = db.query(models.View).filter(models.View.link_token == token).first()
    if not view:
        raise NotFoundError("View")
    return serialize_view(view)


def public_view(token: str, db: Session, password: Optional[str] = None) -> dict:
    """Token access path: password gate, then the projection."""
    view = find_view_by_token(token, db)
    estimate = get_estimate_or_404(view["estimate_id"], db)
    if view["has_password"]:
        if not password:
            return {"requires_password": True, "title": estimate.title, "view_name": view["name"]}
        if not password_matches(view["password"], password):
            raise ValidationFailedError("Invalid password.")
    projection = project_estimate(view["estimate_id"], view["id"], db)
    projection["requires_password"] = False
    return projection
