"""One-shot move from the fixed customer/master columns to named views.

The guard is evaluated on every start from plain row counts: the migration
runs only when estimates exist and no view exists at all. Every legacy
estimate is migrated in a single transaction, so after a failure the store
is exactly as before and the next start tries again from scratch.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import models
from ..database import insert_or_ignore
from .auth_utils import new_id, normalize_password, now_iso
from .errors import TransactionFailedError
from .store import DEFAULT_CUSTOMER_VIEW_NAME, DEFAULT_MASTER_VIEW_NAME


@dataclass
class MigrationReport:
    skipped: bool = False
    estimates_migrated: int = 0
    views_created: int = 0
    section_rows: int = 0
    item_rows: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _legacy_flag(value) -> int:  # noqa: ANN001
    # Legacy show_* columns default to shown; only an explicit 0 hides.
    return 0 if value is not None and not value else 1


def migration_needed(db: Session) -> bool:
    estimate_count = db.query(func.count(models.Estimate.id)).scalar() or 0
    view_count = db.query(func.count(models.View.id)).scalar() or 0
    return estimate_count > 0 and view_count == 0


def _migrate_estimate(estimate: models.Estimate, db: Session, report: MigrationReport) -> None:
    created_at = now_iso()
    customer_view_id = new_id()
    master_view_id = new_id()
    legacy_views = (
        (customer_view_id, DEFAULT_CUSTOMER_VIEW_NAME, estimate.customer_link_token, None, 0, 1),
        (
            master_view_id,
            DEFAULT_MASTER_VIEW_NAME,
            estimate.master_link_token,
            normalize_password(estimate.master_password),
            1,
            0,
        ),
    )
    for view_id, name, token, password, sort_order, is_customer in legacy_views:
        db.add(
            models.View(
                id=view_id,
                estimate_id=estimate.id,
                name=name,
                link_token=token,
                password=password,
                sort_order=sort_order,
                is_customer_view=is_customer,
                created_at=created_at,
            )
        )
    db.flush()
    report.views_created += len(legacy_views)

    sections = db.query(models.Section).filter(models.Section.estimate_id == estimate.id).all()
    for section in sections:
        for view_id, visible in (
            (customer_view_id, section.show_customer),
            (master_view_id, section.show_master),
        ):
            if insert_or_ignore(
                db,
                models.ViewSectionSetting,
                {"id": new_id(), "view_id": view_id, "section_id": section.id, "visible": _legacy_flag(visible)},
                ("view_id", "section_id"),
            ):
                report.section_rows += 1

    items = db.query(models.Item).filter(models.Item.estimate_id == estimate.id).all()
    for item in items:
        for view_id, price, total, visible in (
            (customer_view_id, item.customer_price, item.customer_total, item.show_customer),
            (master_view_id, item.master_price, item.master_total, item.show_master),
        ):
            if insert_or_ignore(
                db,
                models.ViewItemSetting,
                {
                    "id": new_id(),
                    "view_id": view_id,
                    "item_id": item.id,
                    "price": float(price or 0),
                    "total": float(total or 0),
                    "visible": _legacy_flag(visible),
                },
                ("view_id", "item_id"),
            ):
                report.item_rows += 1
    report.estimates_migrated += 1


def migrate_legacy_views(db: Session) -> MigrationReport:
    if not migration_needed(db):
        print("[migration] legacy view migration not needed.")
        return MigrationReport(skipped=True)

    report = MigrationReport()
    estimates = db.query(models.Estimate).order_by(models.Estimate.created_at.asc(), models.Estimate.id.asc()).all()
    print(f"[migration] migrating {len(estimates)} estimate(s) to named views...")
    try:
        for estimate in estimates:
            _migrate_estimate(estimate, db, report)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        print(f"[migration] legacy view migration rolled back: {exc}")
        raise TransactionFailedError(f"Legacy view migration failed: {exc}") from exc

    print(
        f"[migration] done: estimates={report.estimates_migrated} views={report.views_created} "
        f"section_rows={report.section_rows} item_rows={report.item_rows}"
    )
    return report
