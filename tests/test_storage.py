import base64
import os
import tempfile
import unittest
from datetime import date, datetime
from io import BytesIO
from pathlib import Path

from PIL import Image

from nova_providers import QuotaExceeded
from nova_storage import DailyUsageCounter, OutputStore, detect_image, sanitize_filename


def image_bytes(fmt="PNG"):
    buf = BytesIO()
    Image.new("RGB", (8, 8), (0, 128, 255)).save(buf, format=fmt)
    return buf.getvalue()


class SanitizeTests(unittest.TestCase):
    def test_sanitize_filename(self):
        self.assertEqual(sanitize_filename("Zorro Ñandú Logo.PNG"), "zorro-nandu-logo")
        self.assertEqual(sanitize_filename("../../etc/passwd"), "etcpasswd")
        self.assertEqual(sanitize_filename("!!!", "image"), "image")
        self.assertEqual(sanitize_filename(""), "image")
        self.assertLessEqual(len(sanitize_filename("word " * 50)), 80)


class DetectImageTests(unittest.TestCase):
    def test_formats(self):
        self.assertEqual(detect_image(image_bytes("PNG")), ("image/png", "png"))
        self.assertEqual(detect_image(image_bytes("JPEG")), ("image/jpeg", "jpg"))
        self.assertEqual(detect_image(b"<svg xmlns='http://www.w3.org/2000/svg'/>"), ("image/svg+xml", "svg"))

    def test_garbage_rejected(self):
        with self.assertRaises(ValueError):
            detect_image(b"definitely not an image")
        with self.assertRaises(ValueError):
            detect_image(b"")


class OutputStoreTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = OutputStore(self.tmp.name, "http://bridge.local/",
                                 clock=lambda: datetime(2025, 3, 14, 9, 26, 53))

    def tearDown(self):
        self.tmp.cleanup()

    def test_save_writes_dated_file_and_url(self):
        data = image_bytes()
        stored = self.store.save(data, name="Red Fox")

        self.assertTrue(stored.url.startswith("http://bridge.local/outputs/2025-03-14/red-fox-20250314-092653-"))
        self.assertTrue(stored.url.endswith(".png"))
        self.assertEqual(Path(stored.path).read_bytes(), data)
        self.assertEqual(stored.size, len(data))
        # No temp files left behind
        self.assertEqual([n for n in os.listdir(Path(stored.path).parent) if n.endswith(".part")], [])

    def test_save_rejects_non_images(self):
        with self.assertRaises(ValueError):
            self.store.save(b"<html>nope</html>", name="bad")
        self.assertFalse((Path(self.tmp.name) / "2025-03-14").exists())

    async def test_persist_data_url_and_inline_svg(self):
        data = image_bytes()
        stored = await self.store.persist_ref("data:image/png;base64," + base64.b64encode(data).decode("ascii"))
        self.assertEqual(stored.mime, "image/png")

        svg = await self.store.persist_ref("<svg xmlns='http://www.w3.org/2000/svg'><rect/></svg>", name="vec")
        self.assertTrue(svg.url.endswith(".svg"))


class DailyUsageCounterTests(unittest.TestCase):
    def test_disabled_by_default(self):
        counter = DailyUsageCounter()
        self.assertFalse(counter.enabled)
        for _ in range(100):
            self.assertIsNone(counter.hit("1.2.3.4"))

    def test_limit_per_key(self):
        counter = DailyUsageCounter(limit=2, today=lambda: date(2025, 3, 14))
        self.assertEqual(counter.hit("a"), 1)
        self.assertEqual(counter.hit("a"), 0)
        with self.assertRaises(QuotaExceeded):
            counter.hit("a")
        self.assertEqual(counter.hit("b"), 1)
        self.assertEqual(counter.remaining("a"), 0)

    def test_refund_gives_back_one_hit(self):
        counter = DailyUsageCounter(limit=1, today=lambda: date(2025, 3, 14))
        counter.hit("a")
        counter.refund("a")
        self.assertEqual(counter.remaining("a"), 1)
        counter.refund("a")
        self.assertEqual(counter.remaining("a"), 1)
        self.assertEqual(counter.hit("a"), 0)

    def test_resets_next_day(self):
        day = [date(2025, 3, 14)]
        counter = DailyUsageCounter(limit=1, today=lambda: day[0])
        counter.hit("a")
        with self.assertRaises(QuotaExceeded):
            counter.hit("a")
        day[0] = date(2025, 3, 15)
        self.assertEqual(counter.hit("a"), 0)
        self.assertEqual(len(counter.counts), 1)


if __name__ == "__main__":
    unittest.main()
