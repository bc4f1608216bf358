from __future__ import annotations

import json
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .. import models
from ..database import atomic, insert_or_ignore, retry_on_conflict
from ..schemas import (
    EstimateCreate,
    EstimateUpdate,
    ItemCreate,
    ItemUpdate,
    MaterialCreate,
    MaterialUpdate,
    SectionCreate,
    SectionUpdate,
    UserCreate,
    parse_payload,
)
from .auth_utils import generate_token, new_id, now_iso
from .errors import NotFoundError
from .money import line_total

DEFAULT_CUSTOMER_VIEW_NAME = "Customer"
DEFAULT_MASTER_VIEW_NAME = "Master"


def get_estimate_or_404(estimate_id: str, db: Session) -> models.Estimate:
    estimate = db.query(models.Estimate).filter(models.Estimate.id == estimate_id).first()
    if not estimate:
        raise NotFoundError("Estimate")
    return estimate


def _get_owned_estimate_or_404(estimate_id: str, owner_id: str, db: Session) -> models.Estimate:
    estimate = get_estimate_or_404(estimate_id, db)
    if estimate.brigadir_id != owner_id:
        raise NotFoundError("Estimate")
    return estimate


def get_section_or_404(estimate_id: str, section_id: str, db: Session) -> models.Section:
    section = (
        db.query(models.Section)
        .filter(models.Section.id == section_id, models.Section.estimate_id == estimate_id)
        .first()
    )
    if not section:
        raise NotFoundError("Section")
    return section


def get_item_or_404(estimate_id: str, item_id: str, db: Session) -> models.Item:
    item = (
        db.query(models.Item)
        .filter(models.Item.id == item_id, models.Item.estimate_id == estimate_id)
        .first()
    )
    if not item:
        raise NotFoundError("Item")
    return item


def estimate_sections(estimate_id: str, db: Session) -> list[models.Section]:
    return (
        db.query(models.Section)
        .filter(models.Section.estimate_id == estimate_id)
        .order_by(models.Section.sort_order.asc(), models.Section.created_at.asc(), models.Section.id.asc())
        .all()
    )


def estimate_items(estimate_id: str, db: Session) -> list[models.Item]:
    return (
        db.query(models.Item)
        .filter(models.Item.estimate_id == estimate_id)
        .order_by(models.Item.sort_order.asc(), models.Item.created_at.asc(), models.Item.id.asc())
        .all()
    )


def estimate_views(estimate_id: str, db: Session) -> list[models.View]:
    return (
        db.query(models.View)
        .filter(models.View.estimate_id == estimate_id)
        .order_by(models.View.sort_order.asc(), models.View.created_at.asc(), models.View.id.asc())
        .all()
    )


def _parse_column_mapping(raw_text: Optional[str]) -> dict:
    try:
        parsed = json.loads(raw_text or "{}")
    except (TypeError, ValueError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def serialize_view(view: models.View) -> dict:
    return {
        "id": view.id,
        "estimate_id": view.estimate_id,
        "name": view.name,
        "link_token": view.link_token,
        "password": view.password or "",
        "has_password": bool(view.password),
        "sort_order": int(view.sort_order or 0),
        "is_customer_view": bool(view.is_customer_view),
    }


def _serialize_estimate(estimate: models.Estimate, views: list[models.View]) -> dict:
    return {
        "id": estimate.id,
        "owner_id": estimate.brigadir_id,
        "title": estimate.title,
        "google_sheet_id": estimate.google_sheet_id or "",
        "column_mapping": _parse_column_mapping(estimate.column_mapping),
        "last_synced_at": estimate.last_synced_at,
        "created_at": estimate.created_at,
        "views": [serialize_view(view) for view in views],
    }


def _serialize_material(material: models.Material) -> dict:
    return {
        "id": material.id,
        "estimate_id": material.estimate_id,
        "name": material.name,
        "article": material.article or "",
        "brand": material.brand or "",
        "unit": material.unit or "",
        "price": float(material.price or 0),
        "quantity": float(material.quantity or 0),
        "total": float(material.total or 0),
        "url": material.url or "",
        "description": material.description or "",
        "sort_order": int(material.sort_order or 0),
        "created_at": material.created_at,
        "updated_at": material.updated_at,
    }


# --- users -----------------------------------------------------------------


def create_user(payload, db: Session) -> dict:
    data = parse_payload(UserCreate, payload)
    user = models.User(
        id=new_id(),
        email=data.email.strip().lower(),
        password_hash=data.password_hash,
        name=data.name.strip(),
        role=data.role,
        created_at=now_iso(),
    )
    with atomic(db):
        db.add(user)
    return {"id": user.id, "email": user.email, "name": user.name, "role": user.role}


# --- estimates -------------------------------------------------------------


def create_estimate(owner_id: str, payload, db: Session) -> dict:
    """Create an estimate with its default customer and master views.

    The legacy token columns are still filled (they are NOT NULL in the
    durable layout) and the default views reuse those exact values.
    """
    data = parse_payload(EstimateCreate, payload)
    if not db.query(models.User.id).filter(models.User.id == owner_id).first():
        raise NotFoundError("User")

    def _write(session: Session) -> str:
        now = now_iso()
        estimate_id = new_id()
        customer_token = generate_token()
        master_token = generate_token()
        session.add(
            models.Estimate(
                id=estimate_id,
                brigadir_id=owner_id,
                google_sheet_id=(data.google_sheet_id or "").strip(),
                title=data.title,
                customer_link_token=customer_token,
                master_link_token=master_token,
                master_password=None,
                column_mapping=json.dumps(data.column_mapping or {}, ensure_ascii=False),
                created_at=now,
            )
        )
        session.flush()
        for sort_order, (name, token, is_customer) in enumerate(
            (
                (DEFAULT_CUSTOMER_VIEW_NAME, customer_token, 1),
                (DEFAULT_MASTER_VIEW_NAME, master_token, 0),
            )
        ):
            session.add(
                models.View(
                    id=new_id(),
                    estimate_id=estimate_id,
                    name=name,
                    link_token=token,
                    password=None,
                    sort_order=sort_order,
                    is_customer_view=is_customer,
                    created_at=now,
                )
            )
        return estimate_id

    estimate_id = retry_on_conflict(db, _write, label="create estimate")
    return get_estimate(estimate_id, db)


def get_estimate(estimate_id: str, db: Session) -> dict:
    estimate = get_estimate_or_404(estimate_id, db)
    return _serialize_estimate(estimate, estimate_views(estimate.id, db))


def list_estimates(owner_id: str, db: Session) -> list[dict]:
    estimates = (
        db.query(models.Estimate)
        .filter(models.Estimate.brigadir_id == owner_id)
        .order_by(models.Estimate.created_at.desc(), models.Estimate.id.desc())
        .all()
    )
    return [_serialize_estimate(estimate, estimate_views(estimate.id, db)) for estimate in estimates]


def update_estimate(estimate_id: str, owner_id: str, payload, db: Session) -> dict:
    data = parse_payload(EstimateUpdate, payload)
    with atomic(db):
        estimate = _get_owned_estimate_or_404(estimate_id, owner_id, db)
        if data.title is not None:
            estimate.title = data.title.strip() or estimate.title
        if data.google_sheet_id is not None:
            estimate.google_sheet_id = data.google_sheet_id.strip()
        if data.column_mapping is not None:
            estimate.column_mapping = json.dumps(data.column_mapping, ensure_ascii=False)
    return get_estimate(estimate_id, db)


def mark_synced(estimate_id: str, db: Session) -> str:
    with atomic(db):
        estimate = get_estimate_or_404(estimate_id, db)
        estimate.last_synced_at = now_iso()
        synced_at = estimate.last_synced_at
    return synced_at


def delete_estimate(estimate_id: str, owner_id: str, db: Session) -> None:
    with atomic(db):
        estimate = _get_owned_estimate_or_404(estimate_id, owner_id, db)
        db.delete(estimate)


def build_estimate_response(estimate_id: str, db: Session) -> dict:
    """Editor tree: every section and item with its settings in every view."""
    estimate = get_estimate_or_404(estimate_id, db)
    views = estimate_views(estimate.id, db)
    sections = estimate_sections(estimate.id, db)
    items = estimate_items(estimate.id, db)
    view_ids = [view.id for view in views]

    section_settings: dict[str, dict[str, dict]] = {}
    item_settings: dict[str, dict[str, dict]] = {}
    if view_ids:
        for row in db.query(models.ViewSectionSetting).filter(models.ViewSectionSetting.view_id.in_(view_ids)):
            section_settings.setdefault(row.section_id, {})[row.view_id] = {"visible": bool(row.visible)}
        for row in db.query(models.ViewItemSetting).filter(models.ViewItemSetting.view_id.in_(view_ids)):
            item_settings.setdefault(row.item_id, {})[row.view_id] = {
                "price": float(row.price or 0),
                "total": float(row.total or 0),
                "visible": bool(row.visible),
            }

    items_by_section: dict[str, list[models.Item]] = {}
    for item in items:
        items_by_section.setdefault(item.section_id, []).append(item)

    payload = _serialize_estimate(estimate, views)
    payload["sections"] = [
        {
            "id": section.id,
            "name": section.name,
            "sort_order": int(section.sort_order or 0),
            "view_settings": section_settings.get(section.id, {}),
            "items": [
                {
                    "id": item.id,
                    "number": item.number or "",
                    "name": item.name,
                    "unit": item.unit or "",
                    "quantity": float(item.quantity or 0),
                    "sort_order": int(item.sort_order or 0),
                    "view_settings": item_settings.get(item.id, {}),
                }
                for item in items_by_section.get(section.id, [])
            ],
        }
        for section in sections
    ]
    return payload


# --- sections --------------------------------------------------------------


def create_section(estimate_id: str, payload, db: Session) -> dict:
    data = parse_payload(SectionCreate, payload)
    with atomic(db):
        estimate = get_estimate_or_404(estimate_id, db)
        max_order = (
            db.query(func.max(models.Section.sort_order))
            .filter(models.Section.estimate_id == estimate.id)
            .scalar()
        )
        section = models.Section(
            id=new_id(),
            estimate_id=estimate.id,
            name=data.name.strip(),
            sort_order=int(max_order or 0) + 1,
            created_at=now_iso(),
        )
        db.add(section)
        db.flush()
        for view in estimate_views(estimate.id, db):
            insert_or_ignore(
                db,
                models.ViewSectionSetting,
                {"id": new_id(), "view_id": view.id, "section_id": section.id, "visible": 1},
                ("view_id", "section_id"),
            )
    return {"id": section.id, "name": section.name, "sort_order": section.sort_order, "items": []}


def update_section(estimate_id: str, section_id: str, payload, db: Session) -> dict:
    data = parse_payload(SectionUpdate, payload)
    with atomic(db):
        section = get_section_or_404(estimate_id, section_id, db)
        section.name = data.name.strip()
    return {"id": section.id, "name": section.name, "sort_order": section.sort_order}


def delete_section(estimate_id: str, section_id: str, db: Session) -> None:
    with atomic(db):
        section = get_section_or_404(estimate_id, section_id, db)
        db.delete(section)


# --- items -----------------------------------------------------------------


def create_item(estimate_id: str, payload, db: Session) -> dict:
    data = parse_payload(ItemCreate, payload)
    with atomic(db):
        section = get_section_or_404(estimate_id, data.section_id, db)
        max_order = (
            db.query(func.max(models.Item.sort_order))
            .filter(models.Item.section_id == section.id)
            .scalar()
        )
        item = models.Item(
            id=new_id(),
            estimate_id=section.estimate_id,
            section_id=section.id,
            number=(data.number or "").strip(),
            name=data.name.strip(),
            unit=(data.unit or "").strip(),
            quantity=float(data.quantity),
            sort_order=int(max_order or 0) + 1,
            created_at=now_iso(),
        )
        db.add(item)
        db.flush()
        for view in estimate_views(section.estimate_id, db):
            insert_or_ignore(
                db,
                models.ViewItemSetting,
                {"id": new_id(), "view_id": view.id, "item_id": item.id, "price": 0.0, "total": 0.0, "visible": 1},
                ("view_id", "item_id"),
            )
    return {
        "id": item.id,
        "section_id": item.section_id,
        "number": item.number,
        "name": item.name,
        "unit": item.unit,
        "quantity": float(item.quantity),
        "sort_order": item.sort_order,
    }


def update_item(estimate_id: str, item_id: str, payload, db: Session) -> dict:
    """Edit canonical item fields; a quantity change re-totals every view's row."""
    data = parse_payload(ItemUpdate, payload)
    with atomic(db):
        item = get_item_or_404(estimate_id, item_id, db)
        if data.name is not None:
            item.name = data.name.strip()
        if data.unit is not None:
            item.unit = data.unit.strip()
        if data.quantity is not None and float(data.quantity) != float(item.quantity or 0):
            item.quantity = float(data.quantity)
            settings = db.query(models.ViewItemSetting).filter(models.ViewItemSetting.item_id == item.id).all()
            for setting in settings:
                setting.total = line_total(item.quantity, setting.price)
    return {
        "id": item.id,
        "section_id": item.section_id,
        "name": item.name,
        "unit": item.unit or "",
        "quantity": float(item.quantity or 0),
    }


def delete_item(estimate_id: str, item_id: str, db: Session) -> None:
    with atomic(db):
        item = get_item_or_404(estimate_id, item_id, db)
        db.delete(item)


# --- materials -------------------------------------------------------------


def list_materials(estimate_id: str, db: Session) -> list[dict]:
    get_estimate_or_404(estimate_id, db)
    materials = (
        db.query(models.Material)
        .filter(models.Material.estimate_id == estimate_id)
        .order_by(models.Material.sort_order.asc(), models.Material.created_at.asc())
        .all()
    )
    return [_serialize_material(material) for material in materials]


def create_material(estimate_id: str, payload, db: Session) -> dict:
    data = parse_payload(MaterialCreate, payload)
    with atomic(db):
        estimate = get_estimate_or_404(estimate_id, db)
        max_order = (
            db.query(func.max(models.Material.sort_order))
            .filter(models.Material.estimate_id == estimate.id)
            .scalar()
        )
        now = now_iso()
        material = models.Material(
            id=new_id(),
            estimate_id=estimate.id,
            name=data.name.strip(),
            article=data.article.strip(),
            brand=data.brand.strip(),
            unit=data.unit.strip(),
            price=float(data.price),
            quantity=float(data.quantity),
            total=line_total(data.quantity, data.price),
            url=data.url.strip(),
            description=data.description,
            sort_order=int(max_order or 0) + 1,
            created_at=now,
            updated_at=now,
        )
        db.add(material)
    return _serialize_material(material)


def _get_material_or_404(estimate_id: str, material_id: str, db: Session) -> models.Material:
    material = (
        db.query(models.Material)
        .filter(models.Material.id == material_id, models.Material.estimate_id == estimate_id)
        .first()
    )
    if not material:
        raise NotFoundError("Material")
    return material


def update_material(estimate_id: str, material_id: str, payload, db: Session) -> dict:
    data = parse_payload(MaterialUpdate, payload)
    changes: dict[str, Any] = data.model_dump(exclude_none=True)
    with atomic(db):
        material = _get_material_or_404(estimate_id, material_id, db)
        for field_name, value in changes.items():
            if isinstance(value, str) and field_name != "description":
                value = value.strip()
            setattr(material, field_name, value)
        material.total = line_total(material.quantity, material.price)
        material.updated_at = now_iso()
    return _serialize_material(material)


def delete_material(estimate_id: str, material_id: str, db: Session) -> None:
    with atomic(db):
        material = _get_material_or_404(estimate_id, material_id, db)
        db.delete(material)
