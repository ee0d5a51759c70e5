import unittest

import requests

import scanner_agent as sa


class FakeClock:
    def __init__(self, times):
        self.times = list(times)

    def __call__(self):
        return self.times.pop(0)


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body
        self.text = str(body)

    def json(self):
        return self._body


class ReadCodesTest(unittest.TestCase):
    def test_blank_lines_are_dropped_and_codes_stripped(self):
        lines = [b"", b"9999\r\n", b"   \n", "  123 :A\n"]
        codes = list(sa.read_codes(lines, debounce=1.0, clock=FakeClock([0.0, 5.0])))
        self.assertEqual(codes, ["9999", "123 :A"])

    def test_garbled_lines_are_dropped_whole(self):
        lines = [b"12\xff3\n", b"4567\n"]
        with self.assertLogs("scanner-agent", level="WARNING"):
            codes = list(sa.read_codes(lines, debounce=1.0, clock=FakeClock([0.0])))
        self.assertEqual(codes, ["4567"])

    def test_repeats_inside_debounce_window_are_ignored(self):
        lines = [b"9999\n", b"9999\n", b"8888\n", b"9999\n", b"9999\n"]
        clock = FakeClock([0.0, 0.4, 0.5, 0.6, 2.0])
        codes = list(sa.read_codes(lines, debounce=1.0, clock=clock))
        self.assertEqual(codes, ["9999", "8888", "9999", "9999"])


class PostCodeTest(unittest.TestCase):
    def _post_with(self, fake):
        calls = []

        def fake_post(url, json=None, timeout=None):
            calls.append((url, json, timeout))
            return fake(url)

        original_post = sa.requests.post
        try:
            sa.requests.post = fake_post
            ok = sa.post_code("9999", url="http://127.0.0.1:5000/api/scan", timeout=3)
        finally:
            sa.requests.post = original_post
        return ok, calls

    def test_staged_and_ambiguous_scans_are_accepted(self):
        ok, calls = self._post_with(lambda url: FakeResponse(200, {"status": "success"}))
        self.assertTrue(ok)
        self.assertEqual(calls, [("http://127.0.0.1:5000/api/scan", {"code": "9999"}, 3)])
        ok, _ = self._post_with(lambda url: FakeResponse(200, {"status": "choose", "candidates": [{}, {}]}))
        self.assertTrue(ok)

    def test_failures_are_logged_not_raised(self):
        def unreachable(url):
            raise requests.ConnectionError("refused")

        for fake in (unreachable, lambda url: FakeResponse(409, {"message": "Product already scanned"})):
            with self.subTest(fake=fake):
                with self.assertLogs("scanner-agent", level="WARNING"):
                    ok, _ = self._post_with(fake)
                self.assertFalse(ok)

    def test_defaults_come_from_config(self):
        calls = []

        def fake_post(url, json=None, timeout=None):
            calls.append((url, timeout))
            return FakeResponse(200, ["not", "a", "dict"])

        original_post = sa.requests.post
        try:
            sa.requests.post = fake_post
            ok = sa.post_code("9999")
        finally:
            sa.requests.post = original_post
        self.assertTrue(ok)
        self.assertEqual(calls, [(sa.cfg.SCANNER_POST_URL, sa.cfg.SCANNER_POST_TIMEOUT)])


if __name__ == "__main__":
    unittest.main()
