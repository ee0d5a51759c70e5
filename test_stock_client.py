import unittest

import requests

from stock_client import SyncClient, base_url_for_host
from stock_credentials import CredentialStore
from stock_errors import AuthError, NetworkError, PayloadError, RemoteError


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else ("" if body is None else str(body))

    def json(self):
        if self._body is None:
            raise ValueError("No JSON object could be decoded")
        return self._body


class FakeSession:
    def __init__(self, response=None, error=None):
        self.headers = {}
        self.response = response
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.response

    def close(self):
        pass


class SyncClientTest(unittest.TestCase):
    def _client(self, **session_kwargs):
        session = FakeSession(**session_kwargs)
        return SyncClient("http://10.0.0.5:8000", token="t0k", session=session), session

    def test_base_url_for_host(self):
        for host in ("10.0.0.5", "http://10.0.0.5:9000/", "10.0.0.5:8000"):
            self.assertEqual(base_url_for_host(host, 8000), "http://10.0.0.5:8000")

    def test_from_credentials(self):
        client = SyncClient.from_credentials(CredentialStore(initial={"paired_ip": "10.0.0.5", "access_token": "abc"}))
        self.assertEqual(client.base_url, "http://10.0.0.5:8000")
        self.assertEqual(client.token, "abc")
        with self.assertRaises(NetworkError):
            SyncClient.from_credentials(CredentialStore())

    def test_fetch_catalog_sends_auth_and_cache_busting(self):
        client, session = self._client(response=FakeResponse(body={"products": []}))
        self.assertEqual(client.fetch_catalog("/data-download"), {"products": []})
        method, url, kwargs = session.calls[0]
        self.assertEqual((method, url), ("GET", "http://10.0.0.5:8000/data-download"))
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer t0k")
        self.assertIn("_download", kwargs["params"])
        self.assertIn("_cache", kwargs["params"])
        self.assertEqual(kwargs["timeout"], client.download_timeout)

    def test_error_translation(self):
        cases = [
            ({"error": requests.Timeout("slow")}, NetworkError),
            ({"error": requests.ConnectionError("refused")}, NetworkError),
            ({"response": FakeResponse(401, {"detail": "bad token"})}, AuthError),
            ({"response": FakeResponse(200, {"detail": "Token missing"})}, AuthError),
            ({"response": FakeResponse(200, None, text="<html>")}, PayloadError),
        ]
        for kwargs, error in cases:
            with self.subTest(error=error, kwargs=kwargs):
                client, _ = self._client(**kwargs)
                with self.assertRaises(error):
                    client.fetch_catalog()

        client, _ = self._client(response=FakeResponse(500, {"message": "db down"}))
        with self.assertRaises(RemoteError) as ctx:
            client.post_orders({"orders": [], "total_orders": 0})
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertIn("db down", str(ctx.exception))

    def test_post_orders_returns_text_bodies(self):
        client, session = self._client(response=FakeResponse(200, None, text="Upload success"))
        self.assertEqual(client.post_orders({"orders": [], "total_orders": 0}), "Upload success")
        self.assertEqual(session.calls[0][1], "http://10.0.0.5:8000/upload-orders")

    def test_check_status(self):
        client, _ = self._client(response=FakeResponse(body={"status": "online"}))
        self.assertTrue(client.check_status())
        client, _ = self._client(error=requests.ConnectionError("refused"))
        self.assertFalse(client.check_status())


if __name__ == "__main__":
    unittest.main()
