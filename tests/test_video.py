from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from PIL import Image

from chrona.video import build_compressed_timeline_video


class VideoTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _image(self, name: str, size: tuple[int, int], color: tuple[int, int, int]) -> Path:
        path = self.root / name
        Image.new("RGB", size, color).save(path, "JPEG")
        return path

    def test_builds_video_from_mixed_sizes_and_skips_unreadable(self) -> None:
        broken = self.root / "broken.jpg"
        broken.write_bytes(b"not an image")
        images = [
            self._image("a.jpg", (1281, 721), (200, 10, 10)),
            broken,
            self._image("b.jpg", (640, 480), (10, 200, 10)),
        ]

        with self.assertLogs("chrona.video", level="WARNING"):
            out = build_compressed_timeline_video(images, self.root / "out" / "batch.mp4", target_height=360)

        self.assertTrue(out.exists())
        self.assertGreater(out.stat().st_size, 0)

    def test_requires_readable_images(self) -> None:
        with self.assertRaises(ValueError):
            build_compressed_timeline_video([], self.root / "empty.mp4")

        missing = self.root / "missing.jpg"
        with self.assertRaises(ValueError):
            build_compressed_timeline_video([missing], self.root / "missing.mp4")


if __name__ == "__main__":
    unittest.main()
