from __future__ import annotations

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models
from ..database import atomic, retry_on_conflict
from ..schemas import VersionCreate, parse_payload
from .auth_utils import generate_token, new_id, now_iso
from .errors import NotFoundError
from .store import estimate_items, estimate_sections, estimate_views, get_estimate_or_404
from .views import build_projection


def _serialize_version_header(version: models.Version) -> dict:
    return {
        "id": version.id,
        "estimate_id": version.estimate_id,
        "version_number": int(version.version_number),
        "name": version.name or "",
        "title": version.title,
        "created_at": version.created_at,
    }


def _get_version_or_404(version_id: str, db: Session, estimate_id: Optional[str] = None) -> models.Version:
    query = db.query(models.Version).filter(models.Version.id == version_id)
    if estimate_id is not None:
        query = query.filter(models.Version.estimate_id == estimate_id)
    version = query.first()
    if not version:
        raise NotFoundError("Version")
    return version


def _snapshot_estimate(estimate_id: str, label: Optional[str], session: Session) -> str:
    """Copy the live estimate into a new version inside the caller's transaction."""
    estimate = get_estimate_or_404(estimate_id, session)
    max_number = (
        session.query(func.max(models.Version.version_number))
        .filter(models.Version.estimate_id == estimate_id)
        .scalar()
    )
    version = models.Version(
        id=new_id(),
        estimate_id=estimate_id,
        version_number=int(max_number or 0) + 1,
        name=label,
        title=estimate.title,
        created_at=now_iso(),
    )
    session.add(version)
    # Surfaces a duplicate version number before any child row is built.
    session.flush()

    section_map: dict[str, str] = {}
    for section in estimate_sections(estimate_id, session):
        section_map[section.id] = new_id()
        session.add(
            models.VersionSection(
                id=section_map[section.id],
                version_id=version.id,
                original_section_id=section.id,
                name=section.name,
                sort_order=section.sort_order,
                show_customer=section.show_customer,
                show_master=section.show_master,
            )
        )
    session.flush()

    item_map: dict[str, str] = {}
    for item in estimate_items(estimate_id, session):
        version_section_id = section_map.get(item.section_id)
        if version_section_id is None:
            continue
        item_map[item.id] = new_id()
        session.add(
            models.VersionItem(
                id=item_map[item.id],
                version_id=version.id,
                version_section_id=version_section_id,
                original_item_id=item.id,
                number=item.number,
                name=item.name,
                unit=item.unit,
                quantity=item.quantity,
                customer_price=item.customer_price,
                customer_total=item.customer_total,
                master_price=item.master_price,
                master_total=item.master_total,
                sort_order=item.sort_order,
                show_customer=item.show_customer,
                show_master=item.show_master,
            )
        )

    view_map: dict[str, str] = {}
    for view in estimate_views(estimate_id, session):
        view_map[view.id] = new_id()
        session.add(
            models.VersionView(
                id=view_map[view.id],
                version_id=version.id,
                original_view_id=view.id,
                name=view.name,
                sort_order=view.sort_order,
            )
        )
    session.flush()

    if view_map:
        section_rows = (
            session.query(models.ViewSectionSetting)
            .filter(models.ViewSectionSetting.view_id.in_(list(view_map)))
            .all()
        )
        for row in section_rows:
            if row.section_id not in section_map:
                continue
            session.add(
                models.VersionViewSectionSetting(
                    id=new_id(),
                    version_id=version.id,
                    version_view_id=view_map[row.view_id],
                    version_section_id=section_map[row.section_id],
                    visible=row.visible,
                )
            )
        item_rows = (
            session.query(models.ViewItemSetting)
            .filter(models.ViewItemSetting.view_id.in_(list(view_map)))
            .all()
        )
        for row in item_rows:
            if row.item_id not in item_map:
                continue
            session.add(
                models.VersionViewItemSetting(
                    id=new_id(),
                    version_id=version.id,
                    version_view_id=view_map[row.view_id],
                    version_item_id=item_map[row.item_id],
                    price=row.price,
                    total=row.total,
                    visible=row.visible,
                )
            )
    session.flush()
    print(
        f"[versions] estimate={estimate_id} version={version.version_number} "
        f"sections={len(section_map)} items={len(item_map)} views={len(view_map)}"
    )
    return version.id


def create_version(estimate_id: str, db: Session, label: Optional[str] = None) -> dict:
    """Freeze the estimate, its views and every view setting into version N+1.

    All rows are written in one transaction. A concurrent writer that took
    the same number makes the flush fail on the unique index and the whole
    snapshot is rebuilt with a freshly read number.
    """
    data = parse_payload(VersionCreate, label=label)
    name = (data.label or "").strip() or None
    version_id = retry_on_conflict(
        db,
        lambda session: _snapshot_estimate(estimate_id, name, session),
        label="create version",
    )
    return _serialize_version_header(_get_version_or_404(version_id, db))


def list_versions(estimate_id: str, db: Session) -> list[dict]:
    get_estimate_or_404(estimate_id, db)
    versions = (
        db.query(models.Version)
        .filter(models.Version.estimate_id == estimate_id)
        .order_by(models.Version.version_number.desc())
        .all()
    )
    return [_serialize_version_header(version) for version in versions]


def _frozen_rows(version_id: str, db: Session):
    sections = (
        db.query(models.VersionSection)
        .filter(models.VersionSection.version_id == version_id)
        .order_by(models.VersionSection.sort_order.asc(), models.VersionSection.id.asc())
        .all()
    )
    items = (
        db.query(models.VersionItem)
        .filter(models.VersionItem.version_id == version_id)
        .order_by(models.VersionItem.sort_order.asc(), models.VersionItem.id.asc())
        .all()
    )
    views = (
        db.query(models.VersionView)
        .filter(models.VersionView.version_id == version_id)
        .order_by(models.VersionView.sort_order.asc(), models.VersionView.id.asc())
        .all()
    )
    section_settings = (
        db.query(models.VersionViewSectionSetting)
        .filter(models.VersionViewSectionSetting.version_id == version_id)
        .all()
    )
    item_settings = (
        db.query(models.VersionViewItemSetting)
        .filter(models.VersionViewItemSetting.version_id == version_id)
        .all()
    )
    return sections, items, views, section_settings, item_settings


def read_version(version_id: str, db: Session, *, estimate_id: Optional[str] = None) -> dict:
    """Rebuild the frozen tree of a version from snapshot rows only."""
    version = _get_version_or_404(version_id, db, estimate_id)
    sections, items, views, section_settings, item_settings = _frozen_rows(version.id, db)

    items_by_section: dict[str, list[dict]] = {}
    for item in items:
        items_by_section.setdefault(item.version_section_id, []).append(
            {
                "id": item.id,
                "original_item_id": item.original_item_id,
                "number": item.number or "",
                "name": item.name,
                "unit": item.unit or "",
                "quantity": float(item.quantity or 0),
                "sort_order": int(item.sort_order or 0),
            }
        )

    section_visibility: dict[str, dict[str, bool]] = {}
    for row in section_settings:
        section_visibility.setdefault(row.version_view_id, {})[row.version_section_id] = bool(row.visible)
    item_overrides: dict[str, dict[str, dict]] = {}
    for row in item_settings:
        item_overrides.setdefault(row.version_view_id, {})[row.version_item_id] = {
            "price": float(row.price or 0),
            "total": float(row.total or 0),
            "visible": bool(row.visible),
        }

    payload = _serialize_version_header(version)
    payload["sections"] = [
        {
            "id": section.id,
            "original_section_id": section.original_section_id,
            "name": section.name,
            "sort_order": int(section.sort_order or 0),
            "items": items_by_section.get(section.id, []),
        }
        for section in sections
    ]
    payload["views"] = [
        {
            "id": view.id,
            "original_view_id": view.original_view_id,
            "name": view.name,
            "sort_order": int(view.sort_order or 0),
            "section_settings": section_visibility.get(view.id, {}),
            "item_settings": item_overrides.get(view.id, {}),
        }
        for view in views
    ]
    return payload


def project_version(version_id: str, version_view_id: str, db: Session) -> dict:
    version = _get_version_or_404(version_id, db)
    view = (
        db.query(models.VersionView)
        .filter(models.VersionView.id == version_view_id, models.VersionView.version_id == version.id)
        .first()
    )
    if not view:
        raise NotFoundError("View")
    title = version.title
    if title is None:
        # Versions written before titles were frozen.
        title = get_estimate_or_404(version.estimate_id, db).title
    sections, items, _, section_settings, item_settings = _frozen_rows(version.id, db)

    projection = build_projection(
        estimate_id=version.estimate_id,
        title=title,
        view_id=view.id,
        view_name=view.name,
        sections=[{"id": section.id, "name": section.name} for section in sections],
        items=[
            {
                "id": item.id,
                "section_id": item.version_section_id,
                "number": item.number,
                "name": item.name,
                "unit": item.unit,
                "quantity": item.quantity,
            }
            for item in items
        ],
        section_visibility={
            row.version_section_id: bool(row.visible)
            for row in section_settings
            if row.version_view_id == view.id
        },
        item_settings={
            row.version_item_id: {"price": row.price, "total": row.total, "visible": bool(row.visible)}
            for row in item_settings
            if row.version_view_id == view.id
        },
    )
    projection["version_id"] = version.id
    projection["version_number"] = int(version.version_number)
    return projection


def _replace_live_rows(estimate_id: str, version_id: str, session: Session) -> None:
    sections, items, views, section_settings, item_settings = _frozen_rows(version_id, session)

    # Settings rows go with their sections, items and views through the FK cascade.
    session.query(models.Section).filter(models.Section.estimate_id == estimate_id).delete(
        synchronize_session=False
    )
    session.query(models.View).filter(models.View.estimate_id == estimate_id).delete(synchronize_session=False)
    session.flush()

    now = now_iso()
    section_map: dict[str, str] = {}
    for section in sections:
        section_map[section.id] = new_id()
        session.add(
            models.Section(
                id=section_map[section.id],
                estimate_id=estimate_id,
                name=section.name,
                sort_order=section.sort_order,
                show_customer=section.show_customer,
                show_master=section.show_master,
                created_at=now,
            )
        )
    session.flush()

    item_map: dict[str, str] = {}
    for item in items:
        item_map[item.id] = new_id()
        session.add(
            models.Item(
                id=item_map[item.id],
                estimate_id=estimate_id,
                section_id=section_map[item.version_section_id],
                number=item.number,
                name=item.name,
                unit=item.unit,
                quantity=item.quantity,
                customer_price=item.customer_price,
                customer_total=item.customer_total,
                master_price=item.master_price,
                master_total=item.master_total,
                sort_order=item.sort_order,
                show_customer=item.show_customer,
                show_master=item.show_master,
                created_at=now,
            )
        )
    view_map: dict[str, str] = {}
    for position, view in enumerate(views):
        view_map[view.id] = new_id()
        session.add(
            models.View(
                id=view_map[view.id],
                estimate_id=estimate_id,
                name=view.name,
                link_token=generate_token(),
                password=None,
                sort_order=view.sort_order,
                is_customer_view=1 if position == 0 else 0,
                created_at=now,
            )
        )
    session.flush()

    for row in section_settings:
        session.add(
            models.ViewSectionSetting(
                id=new_id(),
                view_id=view_map[row.version_view_id],
                section_id=section_map[row.version_section_id],
                visible=row.visible,
            )
        )
    for row in item_settings:
        session.add(
            models.ViewItemSetting(
                id=new_id(),
                view_id=view_map[row.version_view_id],
                item_id=item_map[row.version_item_id],
                price=row.price,
                total=row.total,
                visible=row.visible,
            )
        )
    session.flush()
    print(f"[versions] estimate={estimate_id} restored from version={version_id}")


def restore_version(estimate_id: str, version_id: str, db: Session) -> dict:
    """Replace the live estimate with a copy of the snapshot.

    Restored views receive new tokens and no password; the version rows are
    only read.
    """
    get_estimate_or_404(estimate_id, db)
    _get_version_or_404(version_id, db, estimate_id)
    retry_on_conflict(
        db,
        lambda session: _replace_live_rows(estimate_id, version_id, session),
        label="restore version",
    )
    return read_version(version_id, db, estimate_id=estimate_id)


def delete_version(estimate_id: str, version_id: str, db: Session) -> None:
    with atomic(db):
        version = _get_version_or_404(version_id, db, estimate_id)
        db.delete(version)
