"""Durable storage for scanned/imported test images."""

import logging
import shutil
import time
from pathlib import Path
from typing import Callable, Dict, Optional

logger = logging.getLogger("uvicorn.error")

IMAGE_DIR_NAME = "medical_tests"


class BlobStore:
    """Copies transient images under ``<documents_root>/medical_tests/test_<millis>.jpg``.

    The path handed back is the only link between a test result row and its
    file; the store never reads image contents.
    """

    def __init__(self, documents_root: Path, dir_name: str = IMAGE_DIR_NAME, clock: Optional[Callable[[], float]] = None):
        self.root = Path(documents_root)
        self.image_dir = self.root / dir_name
        self._clock = clock or time.time

    def _next_path(self) -> Path:
        self.image_dir.mkdir(parents=True, exist_ok=True)
        stamp = int(self._clock() * 1000)
        path = self.image_dir / f"test_{stamp}.jpg"
        # Two saves within the same millisecond must not overwrite each other
        while path.exists():
            stamp += 1
            path = self.image_dir / f"test_{stamp}.jpg"
        return path

    def save_image(self, source) -> str:
        src = Path(source)
        if not src.is_file():
            raise FileNotFoundError(f"Image not found: {src}")
        dest = self._next_path()
        shutil.copy2(src, dest)
        logger.info("Image saved: %s -> %s", src, dest)
        return str(dest)

    def save_bytes(self, data: bytes) -> str:
        if not data:
            raise ValueError("Empty image payload")
        dest = self._next_path()
        dest.write_bytes(data)
        logger.info("Image saved: %s (%d bytes)", dest, len(data))
        return str(dest)

    def owns(self, path) -> bool:
        try:
            Path(path).resolve().relative_to(self.image_dir.resolve())
        except ValueError:
            return False
        return True

    def remove(self, path) -> bool:
        """Delete an image this store created. Returns False when there was nothing to delete."""
        target = Path(path)
        if not self.owns(target):
            logger.warning("Refusing to delete file outside image dir: %s", target)
            return False
        if not target.exists():
            return False
        target.unlink()
        return True

    def stats(self) -> Dict[str, int]:
        count = 0
        total = 0
        if self.image_dir.is_dir():
            for entry in self.image_dir.iterdir():
                if entry.is_file():
                    count += 1
                    total += entry.stat().st_size
        return {"count": count, "totalBytes": total}
