"""
Disk cache for generated images and the in-memory daily usage counter.

Images land in ``<root>/<YYYY-MM-DD>/<slug>-<timestamp>-<token>.<ext>`` and
are served back under ``/outputs``.
"""

import asyncio
import logging
import os
import re
import tempfile
import uuid
from datetime import date, datetime
from io import BytesIO
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple
from unicodedata import normalize

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel

from nova_providers import (
    QuotaExceeded,
    download_image,
    is_data_url,
    is_svg_text,
    split_data_url,
)

logger = logging.getLogger(__name__)

PIL_EXTENSIONS = {
    "JPEG": "jpg",
    "PNG": "png",
    "WEBP": "webp",
    "GIF": "gif",
    "BMP": "bmp",
    "TIFF": "tiff",
}


def sanitize_filename(raw: str, fallback: str = "image") -> str:
    cleaned = normalize("NFKD", raw or "").encode("ascii", "ignore").decode("ascii")
    cleaned = cleaned.strip().lower()
    cleaned = re.sub(r"\.(png|jpe?g|webp|gif|svg)$", "", cleaned)
    cleaned = re.sub(r"[^a-z0-9\s-]", "", cleaned)
    cleaned = re.sub(r"[-\s]+", "-", cleaned).strip("-")
    return (cleaned or fallback)[:80].strip("-") or fallback


def detect_image(data: bytes) -> Tuple[str, str]:
    """Return (mime, extension); raise ValueError when the bytes are not an image."""
    if not data:
        raise ValueError("Image data is empty")
    if is_svg_text(data[:512].decode("utf-8", errors="ignore")):
        return "image/svg+xml", "svg"
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise ValueError(f"Not a valid image (first bytes: {data[:16].hex()}): {e}") from e
    ext = PIL_EXTENSIONS.get(fmt, (fmt or "bin").lower())
    return Image.MIME.get(fmt, f"image/{ext}"), ext


class StoredImage(BaseModel):
    path: str
    url: str
    mime: str
    size: int


class OutputStore:
    """Writes image bytes into dated folders and builds their public URLs."""

    def __init__(self, root, public_base_url: str = "", clock: Callable[[], datetime] = datetime.now):
        self.root = Path(root)
        self.public_base_url = (public_base_url or "").rstrip("/")
        self.clock = clock
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info(f"💾 [Store] Output directory: {self.root.resolve()}")

    def save(self, data: bytes, name: str = "image") -> StoredImage:
        mime, ext = detect_image(data)
        now = self.clock()
        day = now.strftime("%Y-%m-%d")
        folder = self.root / day
        folder.mkdir(parents=True, exist_ok=True)

        filename = f"{sanitize_filename(name)}-{now:%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:8]}.{ext}"
        final_path = folder / filename

        fd, tmp_name = tempfile.mkstemp(dir=folder, prefix=".", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_name, final_path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise

        url = f"{self.public_base_url}/outputs/{day}/{filename}"
        logger.info(f"💾 [Store] Saved {len(data)} bytes ({mime}) -> {url}")
        return StoredImage(path=str(final_path), url=url, mime=mime, size=len(data))

    async def persist_ref(self, ref: str, name: str = "image", timeout: float = 30.0) -> StoredImage:
        """Resolve a URL, data URL or inline SVG to bytes and save them off the event loop."""
        if is_data_url(ref):
            _, data = split_data_url(ref)
        elif is_svg_text(ref):
            data = ref.strip().encode("utf-8")
        else:
            data, _ = await download_image(ref, timeout=timeout, provider="store")
        return await asyncio.to_thread(self.save, data, name)


class DailyUsageCounter:
    """Per-caller daily counter, in memory only.

    Counts reset when the process restarts and are not shared between
    processes; ``limit`` 0 turns the counter off.
    """

    def __init__(self, limit: int = 0, today: Callable[[], date] = date.today):
        self.limit = limit
        self.today = today
        self.counts: Dict[Tuple[str, str], int] = {}

    @property
    def enabled(self) -> bool:
        return self.limit > 0

    def hit(self, key: str) -> Optional[int]:
        """Count one generation for ``key``; return how many are left today."""
        if not self.enabled:
            return None
        day = self.today().isoformat()
        # Drop previous days
        self.counts = {k: v for k, v in self.counts.items() if k[1] == day}
        used = self.counts.get((key, day), 0)
        if used >= self.limit:
            logger.warning(f"🚫 [Quota] {key} reached the daily limit ({self.limit})")
            raise QuotaExceeded(f"Daily limit of {self.limit} generations reached")
        self.counts[(key, day)] = used + 1
        return self.limit - used - 1

    def refund(self, key: str):
        """Give back a hit whose generation failed."""
        if not self.enabled:
            return
        slot = (key, self.today().isoformat())
        if self.counts.get(slot, 0) > 0:
            self.counts[slot] -= 1

    def remaining(self, key: str) -> Optional[int]:
        if not self.enabled:
            return None
        return self.limit - self.counts.get((key, self.today().isoformat()), 0)
