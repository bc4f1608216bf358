from __future__ import annotations

from sqlalchemy.orm import Session

from .. import models
from ..database import atomic, upsert_row
from ..schemas import ACT_IMAGE_TYPES, ActCreate, ActImageUpload, parse_payload
from .auth_utils import new_id, now_iso, today_iso
from .errors import NotFoundError, ValidationFailedError
from .money import sum_money
from .store import get_estimate_or_404


def _serialize_act(act: models.SavedAct, items: list[models.SavedActItem] | None = None) -> dict:
    payload = {
        "id": act.id,
        "estimate_id": act.estimate_id,
        "view_id": act.view_id,
        "act_number": act.act_number,
        "act_date": act.act_date,
        "executor_name": act.executor_name or "",
        "executor_details": act.executor_details or "",
        "customer_name": act.customer_name or "",
        "director_name": act.director_name or "",
        "service_name": act.service_name or "",
        "selection_mode": act.selection_mode,
        "grand_total": float(act.grand_total or 0),
        "created_at": act.created_at,
    }
    if items is not None:
        payload["items"] = [
            {
                "id": item.id,
                "item_id": item.item_id,
                "section_id": item.section_id,
                "name": item.name,
                "unit": item.unit or "",
                "quantity": float(item.quantity or 0),
                "price": float(item.price or 0),
                "total": float(item.total or 0),
            }
            for item in items
        ]
    return payload


def _get_act_or_404(estimate_id: str, act_id: str, db: Session) -> models.SavedAct:
    act = (
        db.query(models.SavedAct)
        .filter(models.SavedAct.id == act_id, models.SavedAct.estimate_id == estimate_id)
        .first()
    )
    if not act:
        raise NotFoundError("Act")
    return act


def _act_items(act_id: str, db: Session) -> list[models.SavedActItem]:
    return (
        db.query(models.SavedActItem)
        .filter(models.SavedActItem.act_id == act_id)
        .order_by(models.SavedActItem.sort_order.asc())
        .all()
    )


def create_act(estimate_id: str, payload, db: Session) -> dict:
    """Capture an act document and its lines; nothing here is edited later."""
    data = parse_payload(ActCreate, payload)
    with atomic(db):
        estimate = get_estimate_or_404(estimate_id, db)
        if data.view_id:
            owned = (
                db.query(models.View.id)
                .filter(models.View.id == data.view_id, models.View.estimate_id == estimate.id)
                .first()
            )
            if not owned:
                raise NotFoundError("View")

        act = models.SavedAct(
            id=new_id(),
            estimate_id=estimate.id,
            view_id=data.view_id or None,
            act_number=data.act_number.strip(),
            act_date=(data.act_date or "").strip() or today_iso(),
            executor_name=data.executor_name,
            executor_details=data.executor_details,
            customer_name=data.customer_name,
            director_name=data.director_name,
            service_name=data.service_name,
            selection_mode=data.selection_mode,
            grand_total=float(sum_money(line.total for line in data.items)),
            created_at=now_iso(),
        )
        db.add(act)
        db.flush()
        for position, line in enumerate(data.items):
            db.add(
                models.SavedActItem(
                    id=new_id(),
                    act_id=act.id,
                    item_id=line.item_id,
                    section_id=line.section_id,
                    name=line.name,
                    unit=line.unit,
                    quantity=float(line.quantity),
                    price=float(line.price),
                    total=float(line.total),
                    sort_order=position,
                )
            )
    return get_act(estimate_id, act.id, db)


def list_acts(estimate_id: str, db: Session) -> list[dict]:
    get_estimate_or_404(estimate_id, db)
    acts = (
        db.query(models.SavedAct)
        .filter(models.SavedAct.estimate_id == estimate_id)
        .order_by(models.SavedAct.created_at.desc(), models.SavedAct.id.desc())
        .all()
    )
    return [_serialize_act(act) for act in acts]


def get_act(estimate_id: str, act_id: str, db: Session) -> dict:
    act = _get_act_or_404(estimate_id, act_id, db)
    return _serialize_act(act, _act_items(act.id, db))


def delete_act(estimate_id: str, act_id: str, db: Session) -> None:
    with atomic(db):
        act = _get_act_or_404(estimate_id, act_id, db)
        db.delete(act)


def used_items_mapping(estimate_id: str, db: Session) -> dict[str, list[dict]]:
    """Map each estimate item id to the acts that already include it."""
    get_estimate_or_404(estimate_id, db)
    rows = (
        db.query(models.SavedActItem.item_id, models.SavedAct)
        .join(models.SavedAct, models.SavedAct.id == models.SavedActItem.act_id)
        .filter(models.SavedAct.estimate_id == estimate_id, models.SavedActItem.item_id.isnot(None))
        .order_by(models.SavedAct.created_at.asc(), models.SavedAct.id.asc())
        .all()
    )
    mapping: dict[str, list[dict]] = {}
    seen: set[tuple[str, str]] = set()
    for item_id, act in rows:
        if (item_id, act.id) in seen:
            continue
        seen.add((item_id, act.id))
        mapping.setdefault(item_id, []).append(
            {"act_id": act.id, "act_number": act.act_number, "act_date": act.act_date}
        )
    return mapping


# --- act images ------------------------------------------------------------


def upload_act_image(estimate_id: str, payload, db: Session) -> dict:
    data = parse_payload(ActImageUpload, payload)
    with atomic(db):
        get_estimate_or_404(estimate_id, db)
        upsert_row(
            db,
            models.ActImage,
            {
                "id": new_id(),
                "estimate_id": estimate_id,
                "image_type": data.image_type,
                "data": data.data,
                "created_at": now_iso(),
            },
            ("estimate_id", "image_type"),
            ("data", "created_at"),
        )
    return {"estimate_id": estimate_id, "image_type": data.image_type}


def get_act_images(estimate_id: str, db: Session) -> dict[str, str]:
    get_estimate_or_404(estimate_id, db)
    rows = db.query(models.ActImage).filter(models.ActImage.estimate_id == estimate_id).all()
    return {row.image_type: row.data for row in rows}


def delete_act_image(estimate_id: str, image_type: str, db: Session) -> None:
    if image_type not in ACT_IMAGE_TYPES:
        raise ValidationFailedError(f"Unknown image type: {image_type}")
    with atomic(db):
        get_estimate_or_404(estimate_id, db)
        image = (
            db.query(models.ActImage)
            .filter(models.ActImage.estimate_id == estimate_id, models.ActImage.image_type == image_type)
            .first()
        )
        if not image:
            raise NotFoundError("Image")
        db.delete(image)
