import asyncio, base64, unittest
from datetime import datetime, timezone
from mail_codec.inline_images import (
    InlineImageResolver,
    detect_inline_images,
    process_inline_images,
    replace_cid_references,
    to_data_uri,
)
from mail_codec.types import Address, DecodedEmail, InlineImage, MimePart

def b64url(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode().rstrip("=")

PNG = b"\x89PNG\r\n\x1a\nfake"
PNG_URI = "data:image/png;base64," + base64.b64encode(PNG).decode()

class FakeFetcher:
    def __init__(self, fail=(), delay=0.0):
        self.calls = []
        self.fail = set(fail)
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def fetch_attachment(self, message_id, attachment_id):
        self.calls.append((message_id, attachment_id))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if attachment_id in self.fail:
                raise RuntimeError("boom")
            return {"data": b64url(PNG), "size": len(PNG)}
        finally:
            self.active -= 1

def make_email(mid, cids=("logo@x",)):
    body = "".join(f'<img src="cid:{cid}">' for cid in cids)
    images = [InlineImage(content_id=cid, attachment_id=f"ATT-{mid}-{i}", mime_type="image/png") for i, cid in enumerate(cids)]
    return DecodedEmail(
        id=mid,
        thread_id="t",
        sender=Address("A", "a@example.com"),
        subject="s",
        date=datetime.now(timezone.utc),
        body=body,
        inline_images=images,
    )

class TestDetection(unittest.TestCase):
    def test_detect_inline_images(self):
        payload = MimePart.from_dict({
            "mimeType": "multipart/related",
            "parts": [
                {"mimeType": "text/html", "body": {"data": b64url(b"<p>x</p>")}},
                {"mimeType": "image/png", "headers": [{"name": "Content-ID", "value": "<img1@x>"}], "body": {"attachmentId": "A1"}},
                {"mimeType": "image/jpeg", "headers": [{"name": "X-Attachment-Id", "value": "ii_2"}], "body": {"attachmentId": "A2"}},
                {"mimeType": "image/gif", "headers": [{"name": "Content-Disposition", "value": "inline"}], "body": {"attachmentId": "A3"}},
                {"mimeType": "image/png", "headers": [{"name": "Content-ID", "value": "<noatt@x>"}], "body": {"data": "AAAA"}},
                {"mimeType": "application/pdf", "headers": [{"name": "Content-ID", "value": "<doc@x>"}], "body": {"attachmentId": "A5"}},
                {"mimeType": "image/png", "filename": "photo.png", "headers": [{"name": "Content-Disposition", "value": "attachment"}], "body": {"attachmentId": "A6"}},
            ],
        })
        found = detect_inline_images(payload)
        self.assertEqual([(i.content_id, i.attachment_id) for i in found], [("img1@x", "A1"), ("ii_2", "A2"), ("", "A3")])

class TestReplacement(unittest.TestCase):
    def test_all_framings_replaced(self):
        html = '<img src="cid:logo"><img src=cid:logo><img src=\'cid:logo@mail.example\'><img SRC="CID:LOGO">'
        out, count = replace_cid_references(html, "logo", PNG_URI)
        self.assertEqual(count, 4)
        self.assertNotIn("cid:", out.lower())
        self.assertEqual(out.count(PNG_URI), 4)

    def test_angle_brackets_and_bare_local_part(self):
        html = '<img src="cid:<logo@x>"><img src="cid:logo">'
        out, count = replace_cid_references(html, "logo@x", PNG_URI)
        self.assertEqual(count, 2)
        self.assertNotIn("cid:", out)

    def test_unquoted_suffixed_reference(self):
        html = '<img src=cid:abc@mail.gmail.com><img src=cid:abc@mail.gmail.com/>'
        out, count = replace_cid_references(html, "abc", PNG_URI)
        self.assertEqual(count, 2)
        self.assertEqual(out, f'<img src="{PNG_URI}"><img src="{PNG_URI}"/>')

    def test_prefix_of_other_cid_is_left_alone(self):
        html = '<img src="cid:logo2"><img src=cid:logo2>'
        out, count = replace_cid_references(html, "logo", PNG_URI)
        self.assertEqual((out, count), (html, 0))

    def test_to_data_uri(self):
        self.assertEqual(to_data_uri("image/png", b64url(PNG)), PNG_URI)
        self.assertIsNone(to_data_uri("image/png", ""))

class TestProcessInlineImages(unittest.IsolatedAsyncioTestCase):
    async def test_payload_images_are_inlined(self):
        payload = {
            "mimeType": "multipart/related",
            "parts": [
                {"mimeType": "text/html", "body": {"data": b64url(b'<img src="cid:logo@x">')}},
                {"mimeType": "image/png", "headers": [{"name": "Content-ID", "value": "<logo@x>"}], "body": {"attachmentId": "A1"}},
            ],
        }
        fetcher = FakeFetcher()
        out = await process_inline_images("m1", '<img src="cid:logo@x">', payload, fetcher)
        self.assertEqual(out, f'<img src="{PNG_URI}">')
        self.assertEqual(fetcher.calls, [("m1", "A1")])

    async def test_no_cid_reference_means_no_fetch(self):
        payload = {"mimeType": "image/png", "headers": [{"name": "Content-ID", "value": "<a@x>"}], "body": {"attachmentId": "A1"}}
        fetcher = FakeFetcher()
        self.assertEqual(await process_inline_images("m1", "<p>plain</p>", payload, fetcher), "<p>plain</p>")
        self.assertEqual(fetcher.calls, [])

    async def test_failed_fetch_keeps_cid(self):
        email = make_email("m1", cids=("ok@x", "bad@x"))
        fetcher = FakeFetcher(fail={"ATT-m1-1"})
        with self.assertLogs("mail_codec.inline_images", level="WARNING"):
            updated = await InlineImageResolver(fetcher).resolve(email)
        self.assertIn(PNG_URI, updated.body)
        self.assertIn('src="cid:bad@x"', updated.body)

    async def test_concurrency_capped_at_batch_size(self):
        email = make_email("m1", cids=tuple(f"img{i}@x" for i in range(10)))
        fetcher = FakeFetcher(delay=0.01)
        updated = await InlineImageResolver(fetcher, batch_size=3).resolve(email)
        self.assertEqual(len(fetcher.calls), 10)
        self.assertEqual(fetcher.max_active, 3)
        self.assertNotIn("cid:", updated.body)

class TestInlineImageResolver(unittest.IsolatedAsyncioTestCase):
    async def test_duplicate_requests_fetch_once(self):
        updates = []
        fetcher = FakeFetcher(delay=0.01)
        resolver = InlineImageResolver(fetcher, on_update=updates.append)
        email = make_email("m1")
        await asyncio.gather(resolver.resolve(email), resolver.resolve(email))
        await resolver.resolve(email)
        self.assertEqual(len(fetcher.calls), 1)
        self.assertEqual(len(updates), 1)
        self.assertIn(PNG_URI, updates[0].body)
        self.assertIn("m1", resolver.resolved)
        self.assertNotIn("m1", resolver.in_flight)

    async def test_schedule_visible_takes_one_batch(self):
        fetcher = FakeFetcher()
        resolver = InlineImageResolver(fetcher, batch_size=3)
        emails = [make_email(f"m{i}") for i in range(5)]
        tasks = resolver.schedule_visible(emails)
        self.assertEqual(len(tasks), 3)
        self.assertTrue(all(resolver.is_loading(e.id) for e in emails[:3]))
        self.assertFalse(resolver.is_loading("m3"))
        rest = resolver.schedule_visible(emails)
        self.assertEqual(len(rest), 2)
        self.assertEqual(resolver.schedule_visible(emails), [])
        await asyncio.gather(*tasks, *rest)
        self.assertEqual(resolver.schedule_visible(emails), [])
        self.assertEqual(resolver.resolved, {e.id for e in emails})
        self.assertEqual(resolver.in_flight, set())

    async def test_unchanged_body_is_not_reported(self):
        updates = []
        resolver = InlineImageResolver(FakeFetcher(), on_update=updates.append)
        email = make_email("m1", cids=())
        self.assertIs(await resolver.resolve(email), email)
        self.assertEqual(updates, [])
        self.assertIn("m1", resolver.resolved)

    async def test_cache_shared_across_messages(self):
        fetcher = FakeFetcher()
        resolver = InlineImageResolver(fetcher)
        first = make_email("m1")
        second = DecodedEmail(
            id="m2", thread_id="t", sender=first.sender, subject="s", date=first.date,
            body=first.body, inline_images=first.inline_images,
        )
        await resolver.resolve(first)
        updated = await resolver.resolve(second)
        self.assertEqual(len(fetcher.calls), 1)
        self.assertIn(PNG_URI, updated.body)

    def test_batch_size_must_be_positive(self):
        with self.assertRaises(ValueError):
            InlineImageResolver(FakeFetcher(), batch_size=0)

if __name__ == "__main__":
    unittest.main()
