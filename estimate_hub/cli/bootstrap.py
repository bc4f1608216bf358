from __future__ import annotations

import argparse
from typing import List, Optional

from sqlalchemy import func

_COUNTED_TABLES = (
    ("estimates", "Estimate"),
    ("sections", "Section"),
    ("items", "Item"),
    ("views", "View"),
    ("view_section_settings", "ViewSectionSetting"),
    ("view_item_settings", "ViewItemSetting"),
    ("versions", "Version"),
    ("acts", "SavedAct"),
)


def _table_counts(db) -> dict:
    from .. import models

    counts = {}
    for label, model_name in _COUNTED_TABLES:
        model = getattr(models, model_name)
        counts[label] = int(db.query(func.count(model.id)).scalar() or 0)
    return counts


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Prepare the estimate store: schema, then legacy view migration.")
    parser.add_argument(
        "--database-url",
        default="",
        help="Database URL (defaults to DATABASE_URL).",
    )
    parser.add_argument(
        "--skip-migration",
        action="store_true",
        help="Apply the schema only (maintenance; the engine expects migrated data).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Apply the schema and report whether the legacy migration would run.",
    )

    args = parser.parse_args(argv)

    from sqlalchemy.orm import Session

    from ..core.errors import EngineError
    from ..core.legacy_migration import migration_needed
    from ..database import bootstrap, ensure_runtime_schema, make_engine

    target = make_engine(args.database_url or None)
    try:
        if args.dry_run:
            ensure_runtime_schema(target)
            with Session(bind=target) as db:
                needed = migration_needed(db)
            print(f"[bootstrap] dry_run=True migration_needed={needed}")
        else:
            try:
                report = bootstrap(target, run_migration=not args.skip_migration)
            except EngineError as exc:
                print(f"[bootstrap] failed: {exc.code} {exc.message}")
                return 1
            if report is not None:
                print(
                    "[bootstrap]"
                    f" skipped={report.skipped}"
                    f" estimates={report.estimates_migrated}"
                    f" views={report.views_created}"
                    f" section_rows={report.section_rows}"
                    f" item_rows={report.item_rows}"
                )

        with Session(bind=target) as db:
            counts = _table_counts(db)
        print("[bootstrap] " + " ".join(f"{label}={value}" for label, value in counts.items()))
    finally:
        target.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
