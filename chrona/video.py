"""
Compressed time-lapse video for transcription requests.

One capture becomes one frame, so at 1 fps every video second stands for one
capture interval of real time.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import cv2
import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)


def build_compressed_timeline_video(
    image_paths: Sequence[Path],
    out_path: Path,
    target_height: int = 540,
    fps: int = 1,
) -> Path:
    if not image_paths:
        raise ValueError("No images to build a video from.")

    frames: list[np.ndarray] = []
    size: tuple[int, int] | None = None
    for path in image_paths:
        try:
            with Image.open(path) as image:
                rgb = image.convert("RGB")
        except OSError as exc:
            logger.warning("video.skip_unreadable path=%s error=%s", path, exc)
            continue

        if size is None:
            size = _even_size(rgb.width, rgb.height, target_height)
        if rgb.size != size:
            rgb = rgb.resize(size, Image.Resampling.LANCZOS)
        frames.append(cv2.cvtColor(np.asarray(rgb), cv2.COLOR_RGB2BGR))

    if not frames or size is None:
        raise ValueError("None of the batch images could be read.")

    out_path.parent.mkdir(parents=True, exist_ok=True)
    fourcc = cv2.VideoWriter_fourcc(*"mp4v")
    writer = cv2.VideoWriter(str(out_path), fourcc, fps, size)
    if not writer.isOpened():
        raise RuntimeError(f"Could not open video writer for {out_path}")
    try:
        for frame in frames:
            writer.write(frame)
    finally:
        writer.release()

    logger.debug("video.built path=%s frames=%s size=%sx%s", out_path, len(frames), size[0], size[1])
    return out_path


def _even_size(width: int, height: int, target_height: int) -> tuple[int, int]:
    out_height = min(height, target_height)
    out_width = int(round(width * out_height / height))
    return max(2, out_width - out_width % 2), max(2, out_height - out_height % 2)
