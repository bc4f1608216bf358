import os
import unittest
from decimal import Decimal
from unittest import mock

from db_case import DatabaseTestCase

from estimate_hub import models
from estimate_hub.core import store, views
from estimate_hub.core.errors import ConflictError, NotFoundError, ValidationFailedError


class ViewProjectionTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.estimate_id = self.make_estimate()["id"]
        self.section_id = store.create_section(self.estimate_id, {"name": "Walls"}, self.db)["id"]
        self.item_id = store.create_item(
            self.estimate_id,
            {"section_id": self.section_id, "name": "Plaster", "number": "1.1", "unit": "m2", "quantity": 2},
            self.db,
        )["id"]
        self.customer = views.create_view(self.estimate_id, {"name": "Customer copy"}, self.db)
        self.master = views.create_view(self.estimate_id, {"name": "Crew"}, self.db)
        views.set_item_override(self.customer["id"], self.item_id, 100, 200, True, self.db)
        views.set_item_override(self.master["id"], self.item_id, 80, 160, True, self.db)

    def _project(self, view):
        return views.project_estimate(self.estimate_id, view["id"], self.db)

    def test_each_view_prices_the_same_items_differently(self):
        customer = self._project(self.customer)
        master = self._project(self.master)

        self.assertEqual(customer["total"], Decimal("200.00"))
        self.assertEqual(master["total"], Decimal("160.00"))
        line = customer["sections"][0]["items"][0]
        self.assertEqual(line["number"], 1)
        self.assertEqual(line["label"], "1.1")
        self.assertEqual(line["price"], 100.0)
        self.assertEqual(customer["sections"][0]["subtotal"], Decimal("200.00"))

    def test_hidden_section_hides_its_items_in_that_view_only(self):
        views.set_section_visibility(self.customer["id"], self.section_id, False, self.db)

        customer = self._project(self.customer)
        self.assertEqual(customer["item_count"], 0)
        self.assertEqual(customer["sections"], [])
        self.assertEqual(customer["total"], Decimal("0.00"))
        self.assertEqual(self._project(self.master)["total"], Decimal("160.00"))

    def test_hidden_item_is_left_out(self):
        views.set_item_override(self.customer["id"], self.item_id, 100, 200, False, self.db)
        self.assertEqual(self._project(self.customer)["item_count"], 0)

    def test_setters_are_idempotent(self):
        for _ in range(2):
            views.set_section_visibility(self.customer["id"], self.section_id, False, self.db)
            views.set_item_override(self.customer["id"], self.item_id, 90, 180, True, self.db)

        section_rows = (
            self.db.query(models.ViewSectionSetting)
            .filter(
                models.ViewSectionSetting.view_id == self.customer["id"],
                models.ViewSectionSetting.section_id == self.section_id,
            )
            .all()
        )
        item_rows = (
            self.db.query(models.ViewItemSetting)
            .filter(
                models.ViewItemSetting.view_id == self.customer["id"],
                models.ViewItemSetting.item_id == self.item_id,
            )
            .all()
        )
        self.assertEqual([row.visible for row in section_rows], [0])
        self.assertEqual([(row.price, row.total, row.visible) for row in item_rows], [(90.0, 180.0, 1)])

    def test_missing_section_row_means_visible(self):
        self.db.query(models.ViewSectionSetting).filter(
            models.ViewSectionSetting.view_id == self.customer["id"]
        ).delete(synchronize_session=False)
        self.db.commit()
        self.assertEqual(self._project(self.customer)["total"], Decimal("200.00"))

    def test_missing_item_row_means_excluded(self):
        self.db.query(models.ViewItemSetting).filter(
            models.ViewItemSetting.view_id == self.customer["id"]
        ).delete(synchronize_session=False)
        self.db.commit()
        projection = self._project(self.customer)
        self.assertEqual(projection["item_count"], 0)
        self.assertEqual(projection["total"], Decimal("0.00"))

    def test_total_is_rounded_once(self):
        second = store.create_item(
            self.estimate_id, {"section_id": self.section_id, "name": "Primer", "quantity": 1}, self.db
        )["id"]
        views.set_item_override(self.customer["id"], self.item_id, 0.005, 0.005, True, self.db)
        views.set_item_override(self.customer["id"], second, 0.005, 0.005, True, self.db)
        self.assertEqual(self._project(self.customer)["total"], Decimal("0.01"))

    def test_new_view_lists_items_at_zero(self):
        fresh = views.create_view(self.estimate_id, {}, self.db)
        projection = self._project(fresh)
        self.assertEqual(fresh["name"], "New view")
        self.assertEqual(projection["item_count"], 1)
        self.assertEqual(projection["total"], Decimal("0.00"))

    def test_tokens_are_unique(self):
        tokens = [view["link_token"] for view in views.list_views(self.estimate_id, self.db)]
        self.assertEqual(len(tokens), 4)
        self.assertEqual(len(set(tokens)), 4)

    def test_token_collision_retries_with_a_fresh_token(self):
        taken = self.customer["link_token"]
        with mock.patch.object(views, "generate_token", side_effect=[taken, "fresh-token"]):
            created = views.create_view(self.estimate_id, {"name": "Second crew"}, self.db)

        self.assertEqual(created["link_token"], "fresh-token")
        self.assertEqual(views.find_view_by_token(taken, self.db)["id"], self.customer["id"])
        self.assertEqual(self._project(created)["item_count"], 1)

    def test_token_collision_gives_up_with_conflict(self):
        taken = self.master["link_token"]
        before = self.count(models.View)
        with mock.patch.dict(os.environ, {"ESTIMATE_HUB_WRITE_RETRIES": "3"}):
            with mock.patch.object(views, "generate_token", return_value=taken) as fake_token:
                with self.assertRaises(ConflictError) as ctx:
                    views.create_view(self.estimate_id, {"name": "Unlucky"}, self.db)

        self.assertEqual(ctx.exception.code, "CONFLICT")
        self.assertEqual(fake_token.call_count, 3)
        self.assertEqual(self.count(models.View), before)

    def test_view_of_another_estimate_is_not_found(self):
        other_id = self.make_estimate(self.make_owner("other@example.com"))["id"]
        with self.assertRaises(NotFoundError):
            views.project_estimate(other_id, self.customer["id"], self.db)
        with self.assertRaises(NotFoundError):
            views.project_estimate("missing", self.customer["id"], self.db)

    def test_setters_reject_rows_of_another_estimate(self):
        other_id = self.make_estimate(self.make_owner("other@example.com"))["id"]
        other_section = store.create_section(other_id, {"name": "Roof"}, self.db)["id"]
        with self.assertRaises(NotFoundError):
            views.set_section_visibility(self.customer["id"], other_section, False, self.db)
        with self.assertRaises(NotFoundError):
            views.set_item_override("missing", self.item_id, 1, 2, True, self.db)

    def test_malformed_override_is_rejected(self):
        with self.assertRaises(ValidationFailedError):
            views.set_item_override(self.customer["id"], self.item_id, -1, 0, True, self.db)
        with self.assertRaises(ValidationFailedError):
            views.set_item_override(self.customer["id"], self.item_id, 1, float("inf"), True, self.db)
        with self.assertRaises(ValidationFailedError):
            views.set_section_visibility(self.customer["id"], self.section_id, "no", self.db)
        self.assertEqual(self._project(self.customer)["total"], Decimal("200.00"))


class ViewManagementTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.estimate = self.make_estimate()
        self.estimate_id = self.estimate["id"]
        self.customer_id, self.master_id = [view["id"] for view in self.estimate["views"]]
        self.section_id = store.create_section(self.estimate_id, {"name": "Floor"}, self.db)["id"]
        self.item_id = store.create_item(
            self.estimate_id, {"section_id": self.section_id, "name": "Laminate", "quantity": 2}, self.db
        )["id"]

    def test_find_view_by_token(self):
        token = self.estimate["views"][0]["link_token"]
        self.assertEqual(views.find_view_by_token(token, self.db)["id"], self.customer_id)
        with self.assertRaises(NotFoundError):
            views.find_view_by_token("no-such-token", self.db)
        with self.assertRaises(NotFoundError):
            views.find_view_by_token("", self.db)

    def test_update_item_settings_merges_and_retotals(self):
        result = views.update_item_settings(self.estimate_id, self.customer_id, self.item_id, self.db, price=12.5)
        self.assertEqual(result["total"], 25.0)
        self.assertTrue(result["visible"])

        result = views.update_item_settings(self.estimate_id, self.customer_id, self.item_id, self.db, visible=False)
        self.assertEqual(result["price"], 12.5)
        self.assertFalse(result["visible"])

    def test_update_view_sets_and_clears_password(self):
        updated = views.update_view(self.estimate_id, self.master_id, {"name": "Crew", "password": "s3cret"}, self.db)
        self.assertEqual(updated["name"], "Crew")
        self.assertTrue(updated["has_password"])

        cleared = views.update_view(self.estimate_id, self.master_id, {"password": "  "}, self.db)
        self.assertFalse(cleared["has_password"])
        self.assertEqual(cleared["name"], "Crew")

    def test_public_view_password_gate(self):
        views.update_item_settings(self.estimate_id, self.master_id, self.item_id, self.db, price=40)
        views.update_view(self.estimate_id, self.master_id, {"password": "s3cret"}, self.db)
        token = views.get_view(self.estimate_id, self.master_id, self.db)["link_token"]

        gate = views.public_view(token, self.db)
        self.assertEqual(gate, {"requires_password": True, "title": "Kitchen renovation", "view_name": "Master"})
        with self.assertRaises(ValidationFailedError):
            views.public_view(token, self.db, password="wrong")
        opened = views.public_view(token, self.db, password="s3cret")
        self.assertFalse(opened["requires_password"])
        self.assertEqual(opened["total"], Decimal("80.00"))

    def test_duplicate_view_copies_settings(self):
        views.update_item_settings(self.estimate_id, self.customer_id, self.item_id, self.db, price=33)
        views.set_section_visibility(self.customer_id, self.section_id, True, self.db)

        copy = views.duplicate_view(self.estimate_id, self.customer_id, self.db)

        self.assertEqual(copy["name"], "Customer (copy)")
        self.assertEqual(copy["sort_order"], 2)
        self.assertFalse(copy["is_customer_view"])
        self.assertNotEqual(copy["link_token"], self.estimate["views"][0]["link_token"])
        self.assertEqual(
            views.project_estimate(self.estimate_id, copy["id"], self.db)["total"],
            views.project_estimate(self.estimate_id, self.customer_id, self.db)["total"],
        )

    def test_set_customer_view_moves_the_flag(self):
        views.set_customer_view(self.estimate_id, self.master_id, self.db)
        flags = {view["id"]: view["is_customer_view"] for view in views.list_views(self.estimate_id, self.db)}
        self.assertEqual(flags, {self.customer_id: False, self.master_id: True})

    def test_last_view_cannot_be_deleted(self):
        views.delete_view(self.estimate_id, self.customer_id, self.db)
        remaining = views.list_views(self.estimate_id, self.db)
        self.assertEqual([view["id"] for view in remaining], [self.master_id])
        self.assertTrue(remaining[0]["is_customer_view"])
        self.assertEqual(
            self.count(models.ViewItemSetting, models.ViewItemSetting.view_id == self.customer_id),
            0,
        )
        with self.assertRaises(ValidationFailedError):
            views.delete_view(self.estimate_id, self.master_id, self.db)


if __name__ == "__main__":
    unittest.main()
