import os
import unittest
from decimal import Decimal
from unittest import mock

from sqlalchemy.exc import OperationalError

from db_case import DatabaseTestCase

from estimate_hub import models
from estimate_hub.core import legacy_migration, views
from estimate_hub.core.errors import TransactionFailedError
from estimate_hub.core.legacy_migration import migrate_legacy_views, migration_needed
from estimate_hub.database import bootstrap, insert_or_ignore


class LegacyMigrationTests(DatabaseTestCase):
    def _legacy_estimate(self, suffix="", master_password=None, show_master_section=1):
        owner_id = f"user{suffix}"
        estimate_id = f"estimate{suffix}"
        section_id = f"section{suffix}"
        self.db.add(models.User(id=owner_id, email=f"legacy{suffix}@example.com", password_hash="!", name="Legacy"))
        self.db.flush()
        self.db.add(
            models.Estimate(
                id=estimate_id,
                brigadir_id=owner_id,
                google_sheet_id="",
                title=f"Legacy {suffix}".strip(),
                customer_link_token=f"ctok{suffix}",
                master_link_token=f"mtok{suffix}",
                master_password=master_password,
            )
        )
        self.db.flush()
        self.db.add(
            models.Section(
                id=section_id,
                estimate_id=estimate_id,
                name="Walls",
                sort_order=1,
                show_customer=1,
                show_master=show_master_section,
            )
        )
        self.db.flush()
        self.db.add(
            models.Item(
                id=f"item{suffix}",
                estimate_id=estimate_id,
                section_id=section_id,
                name="Plaster",
                quantity=4,
                customer_price=50,
                customer_total=200,
                master_price=30,
                master_total=120,
                show_customer=1,
                show_master=1,
            )
        )
        self.db.commit()
        return estimate_id

    def _row_counts(self):
        return {
            model.__tablename__: self.count(model)
            for model in (models.View, models.ViewSectionSetting, models.ViewItemSetting)
        }

    def _projected_total(self, token):
        view = views.find_view_by_token(token, self.db)
        return views.project_estimate(view["estimate_id"], view["id"], self.db)["total"]

    def test_legacy_tokens_resolve_to_migrated_views(self):
        self._legacy_estimate(master_password="crew")
        self.assertTrue(migration_needed(self.db))

        report = migrate_legacy_views(self.db)

        self.assertFalse(report.skipped)
        self.assertEqual(report.estimates_migrated, 1)
        self.assertEqual(report.views_created, 2)
        self.assertEqual(report.section_rows, 2)
        self.assertEqual(report.item_rows, 2)
        self.assertEqual(self._projected_total("ctok"), Decimal("200.00"))
        self.assertEqual(self._projected_total("mtok"), Decimal("120.00"))

        customer = views.find_view_by_token("ctok", self.db)
        master = views.find_view_by_token("mtok", self.db)
        self.assertEqual((customer["name"], customer["sort_order"], customer["has_password"]), ("Customer", 0, False))
        self.assertEqual((master["name"], master["sort_order"], master["password"]), ("Master", 1, "crew"))
        self.assertTrue(customer["is_customer_view"])

    def test_legacy_visibility_flags_are_carried_over(self):
        estimate_id = self._legacy_estimate(show_master_section=0)
        migrate_legacy_views(self.db)
        master = views.find_view_by_token("mtok", self.db)
        projection = views.project_estimate(estimate_id, master["id"], self.db)
        self.assertEqual(projection["item_count"], 0)
        self.assertEqual(self._projected_total("ctok"), Decimal("200.00"))

    def test_second_run_changes_nothing(self):
        self._legacy_estimate()
        self._legacy_estimate(suffix="-2")
        migrate_legacy_views(self.db)
        after_first = self._row_counts()

        report = migrate_legacy_views(self.db)

        self.assertTrue(report.skipped)
        self.assertEqual(self._row_counts(), after_first)
        self.assertEqual(after_first["estimate_views"], 4)

    def test_empty_store_never_gets_placeholder_views(self):
        self.assertFalse(migration_needed(self.db))
        self.assertTrue(migrate_legacy_views(self.db).skipped)
        self.assertEqual(self.count(models.View), 0)

    def test_failure_rolls_back_every_estimate(self):
        self._legacy_estimate()
        self._legacy_estimate(suffix="-2")
        calls = {"count": 0}

        def flaky_insert(db, model, values, conflict_columns):
            calls["count"] += 1
            if calls["count"] > 4:
                raise OperationalError("INSERT", {}, Exception("disk I/O error"))
            return insert_or_ignore(db, model, values, conflict_columns)

        with mock.patch.object(legacy_migration, "insert_or_ignore", side_effect=flaky_insert):
            with self.assertRaises(TransactionFailedError):
                migrate_legacy_views(self.db)

        self.assertEqual(self._row_counts(), {"estimate_views": 0, "view_section_settings": 0, "view_item_settings": 0})
        self.assertTrue(migration_needed(self.db))

        report = migrate_legacy_views(self.db)
        self.assertEqual(report.estimates_migrated, 2)
        self.assertEqual(self._projected_total("mtok-2"), Decimal("120.00"))

    def test_bootstrap_runs_the_migration_unless_disabled(self):
        self._legacy_estimate()
        self.db.close()

        self.assertIsNone(bootstrap(self.engine, run_migration=False))
        self.assertEqual(self.count(models.View), 0)

        # The environment cannot switch the start-up migration off.
        with mock.patch.dict(os.environ, {"ESTIMATE_HUB_SKIP_LEGACY_MIGRATION": "1"}):
            report = bootstrap(self.engine)
        self.assertEqual(report.views_created, 2)
        self.assertTrue(bootstrap(self.engine).skipped)


if __name__ == "__main__":
    unittest.main()
