import unittest

import stock_store as ss
from stock_commit import commit_session, effective_rate, find_incomplete_items
from stock_errors import PartialCommitError, StoreError, ValidationError
from stock_staging import StagingSession


class CommitEngineTest(unittest.TestCase):
    def setUp(self):
        self.conn = ss.connect(":memory:")
        ss.init_db(self.conn)
        ss.upsert_products(self.conn, [
            {"code": "P1", "name": "Tea", "barcode": "9999", "quantity": 10, "cost": 5, "bmrp": 8},
            {"code": "P2", "name": "Rice", "barcode": "8888", "quantity": 2, "cost": 3, "bmrp": 4},
            {"code": "", "name": "Loose", "barcode": "4444", "quantity": 0, "cost": 1, "bmrp": 2},
        ])
        self.session = StagingSession(self.conn, supplier_code="S1")

    def tearDown(self):
        self.conn.close()

    def _stage(self, barcode, quantity, edited_cost=None):
        item = self.session.scan(barcode)
        changes = {"quantity": quantity}
        if edited_cost is not None:
            changes["edited_cost"] = edited_cost
        return self.session.edit(item["id"], **changes)

    def test_empty_session_is_a_successful_no_op(self):
        result = commit_session(self.conn, self.session, "u1")
        self.assertEqual((result.success_count, result.error_count), (0, 0))
        self.assertEqual(ss.get_pending_orders(self.conn), [])

    def test_commit_moves_items_into_orders(self):
        self._stage("9999", 3, edited_cost=4.5)
        self._stage("8888", 2)
        result = commit_session(self.conn, self.session, "u1", order_date="2025-03-01")

        self.assertEqual(result.success_count, 2)
        self.assertEqual(result.error_count, 0)
        self.assertEqual(len(self.session), 0)
        orders = {o["barcode"]: o for o in ss.get_pending_orders(self.conn)}
        self.assertEqual(orders["9999"]["rate"], 4.5)
        self.assertEqual(orders["9999"]["itemcode"], "P1")
        self.assertEqual(orders["9999"]["supplier_code"], "S1")
        self.assertEqual(orders["9999"]["userid"], "u1")
        self.assertEqual(orders["9999"]["order_date"], "2025-03-01")
        self.assertEqual(orders["9999"]["sync_status"], ss.SYNC_PENDING)
        self.assertEqual(orders["8888"]["rate"], 3)
        product = ss.get_product_by_barcode(self.conn, "9999")
        self.assertEqual(product["quantity"], 3)
        self.assertEqual(product["cost"], 4.5)

    def test_item_code_falls_back_to_barcode(self):
        self._stage("4444", 1)
        self.session.add_manual("5555", "Jam", 6, 4, 2)
        commit_session(self.conn, self.session, "u1")
        orders = {o["barcode"]: o for o in ss.get_pending_orders(self.conn)}
        self.assertEqual(orders["4444"]["itemcode"], "4444")
        self.assertEqual(orders["5555"]["itemcode"], "5555")

    def test_incomplete_items_block_commit_without_override(self):
        self._stage("9999", 3)
        self.session.scan("8888")
        with self.assertRaises(ValidationError) as ctx:
            commit_session(self.conn, self.session, "u1")
        self.assertEqual([i["barcode"] for i in ctx.exception.items], ["8888"])
        self.assertEqual(ctx.exception.items[0]["missing"], ["quantity"])
        self.assertEqual(ss.get_pending_orders(self.conn), [])
        self.assertEqual(len(self.session), 2)

        result = commit_session(self.conn, self.session, "u1", allow_incomplete=True)
        self.assertEqual(result.success_count, 2)

    def test_failing_item_stays_pending_and_others_commit(self):
        self._stage("9999", 3)
        self._stage("8888", 2)
        original_insert = ss.insert_order_to_sync

        def flaky_insert(conn, order):
            if order["barcode"] == "8888":
                raise StoreError("disk full")
            return original_insert(conn, order)

        try:
            ss.insert_order_to_sync = flaky_insert
            result = commit_session(self.conn, self.session, "u1")
        finally:
            ss.insert_order_to_sync = original_insert

        self.assertEqual(result.success_count, 1)
        self.assertEqual(result.error_count, 1)
        self.assertEqual(result.failed_barcodes, ["8888"])
        self.assertEqual([o["barcode"] for o in ss.get_pending_orders(self.conn)], ["9999"])
        self.assertEqual([i["barcode"] for i in self.session], ["8888"])
        with self.assertRaises(PartialCommitError) as ctx:
            result.raise_for_errors()
        self.assertIs(ctx.exception.result, result)
        self.assertEqual(str(ctx.exception), "1 item(s) committed, 1 failed")

    def test_failure_after_insert_rolls_back_that_item(self):
        self._stage("9999", 3)
        original_update = ss.update_product_stock

        def broken_update(conn, barcode, quantity, cost):
            raise StoreError("locked")

        try:
            ss.update_product_stock = broken_update
            result = commit_session(self.conn, self.session, "u1")
        finally:
            ss.update_product_stock = original_update

        self.assertEqual(result.error_count, 1)
        self.assertEqual(ss.get_pending_orders(self.conn), [])
        self.assertEqual(len(self.session), 1)

    def test_missing_user_is_tagged_unknown(self):
        self._stage("9999", 1)
        commit_session(self.conn, self.session, None)
        self.assertEqual(ss.get_pending_orders(self.conn)[0]["userid"], "unknown")

    def test_helpers(self):
        self.assertEqual(effective_rate({"eCost": 0, "cost": 7}), 7)
        self.assertEqual(effective_rate({"eCost": 2.5, "cost": 7}), 2.5)
        flagged = find_incomplete_items([
            {"id": 1, "barcode": "a", "bmrp": 1, "cost": 1, "quantity": 1},
            {"id": 2, "barcode": "b", "bmrp": None, "cost": float("nan"), "quantity": 0},
        ])
        self.assertEqual(flagged, [{"id": 2, "barcode": "b", "name": None, "missing": ["mrp", "cost", "quantity"]}])


if __name__ == "__main__":
    unittest.main()
