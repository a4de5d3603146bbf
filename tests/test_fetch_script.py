import base64, importlib.util, unittest
from pathlib import Path
from unittest import mock

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "fetch_message.py"

def b64url(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode().rstrip("=")

def load_script():
    spec = importlib.util.spec_from_file_location("fetch_message", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module

MESSAGE = {
    "id": "m1",
    "payload": {
        "mimeType": "multipart/related",
        "parts": [
            {"mimeType": "text/html", "body": {"data": b64url(b'<img src="cid:logo@x">')}},
            {"mimeType": "image/png", "headers": [{"name": "Content-ID", "value": "<logo@x>"}], "body": {"attachmentId": "A1"}},
        ],
    },
}

class TestFetchScript(unittest.TestCase):
    def test_decode_resolves_images_and_logs(self):
        script = load_script()
        with mock.patch.object(script, "GmailAttachmentFetcher"), \
                mock.patch.object(script, "InlineImageResolver") as resolver_cls:
            resolver_cls.return_value.resolve = mock.AsyncMock(side_effect=lambda e: e.with_body("<p>resolved</p>"))
            with self.assertLogs("fetch_message", level="INFO") as logs:
                out = script._decode(MESSAGE, resolve_images=True)
        self.assertEqual(out["html"], "<p>resolved</p>")
        self.assertEqual(out["inline_images"], 1)
        self.assertIn("Resolving 1 inline image(s) for message m1", logs.output[0])

    def test_decode_without_resolution(self):
        script = load_script()
        with mock.patch.object(script, "InlineImageResolver") as resolver_cls:
            out = script._decode(MESSAGE, resolve_images=False)
        resolver_cls.assert_not_called()
        self.assertEqual(out["html"], '<img src="cid:logo@x">')

if __name__ == "__main__":
    unittest.main()
