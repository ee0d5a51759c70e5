import argparse
import unittest

import stock_store as ss
import sync_worker as sw
from stock_credentials import CredentialStore
from stock_errors import AuthError


class FakeRemote:
    def __init__(self, catalog=None, catalog_error=None):
        self.catalog = catalog or {"products": [{"barcode": "9999", "code": "P1", "cost": 5, "bmrp": 8}]}
        self.catalog_error = catalog_error
        self.uploads = []
        self.closed = 0

    def fetch_catalog(self, path):
        if self.catalog_error:
            raise self.catalog_error
        return self.catalog

    def post_orders(self, payload):
        self.uploads.append(payload)
        return {"success": True}

    def close(self):
        self.closed += 1


class SyncWorkerTest(unittest.TestCase):
    def setUp(self):
        self.conn = ss.connect(":memory:")
        ss.init_db(self.conn)
        self.credentials = CredentialStore(initial={"token": "t0k"})

    def tearDown(self):
        self.conn.close()

    def _args(self, *argv):
        return sw.build_parser().parse_args(list(argv))

    def test_parser_defaults(self):
        args = self._args("upload", "--delete")
        self.assertEqual(args.command, "upload")
        self.assertTrue(args.delete)
        self.assertEqual(args.interval, 0)
        with self.assertRaises(SystemExit):
            self._args("explode")

    def test_download_once(self):
        remote = FakeRemote()
        code = sw.cmd_download(self.conn, self._args("download"), self.credentials,
                               client_factory=lambda creds: remote, sleep=lambda s: None)
        self.assertEqual(code, 0)
        self.assertEqual(ss.product_code_for_barcode(self.conn, "9999"), "P1")
        self.assertEqual(remote.closed, 1)

    def test_download_auth_failure_propagates(self):
        remote = FakeRemote(catalog_error=AuthError("Token missing"))
        with self.assertRaises(AuthError):
            sw.cmd_download(self.conn, self._args("download", "--interval", "5"), self.credentials,
                            client_factory=lambda creds: remote, sleep=lambda s: None)
        self.assertEqual(remote.closed, 1)

    def test_upload_marks_orders(self):
        ss.insert_order_to_sync(self.conn, {
            "userid": "u1", "itemcode": "P1", "barcode": "9999", "quantity": 1,
            "rate": 5, "mrp": 8, "order_date": "2025-01-01",
        })
        remote = FakeRemote()
        code = sw.cmd_upload(self.conn, self._args("upload"), self.credentials, client_factory=lambda creds: remote)
        self.assertEqual(code, 0)
        self.assertEqual(len(remote.uploads), 1)
        self.assertEqual(remote.closed, 1)
        self.assertEqual(ss.get_pending_orders(self.conn), [])

    def test_upload_with_empty_queue_skips_the_server(self):
        def no_client(creds):
            raise AssertionError("client should not be built")

        self.assertEqual(sw.cmd_upload(self.conn, argparse.Namespace(delete=False), self.credentials,
                                       client_factory=no_client), 0)


if __name__ == "__main__":
    unittest.main()
