"""
Capture Sources
===============

Frame producers for the capture session.

Sources:
    - MssCaptureSource: live screen capture of one monitor (mss)
    - ImageDirCaptureSource: replays image files from a directory (Pillow)

Failure modes are distinct exception types so the session can surface
them as distinct states:
    - CapturePermissionError -> permission_denied (no display, access refused)
    - CaptureEndedError      -> source_ended (monitor gone, replay finished)
"""

import logging
from pathlib import Path
from typing import Optional, Protocol

import mss
import mss.exception
import numpy as np
from PIL import Image, UnidentifiedImageError

from chartsense.frames import Frame
from chartsense.types import CaptureEndedError, CapturePermissionError
from chartsense.utils_time import Clock, now_ms

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".bmp", ".webp")


class CaptureSource(Protocol):
    """Anything that can produce timestamped frames on demand."""

    def open(self) -> None:
        ...

    def grab(self) -> Frame:
        ...

    def close(self) -> None:
        ...


class MssCaptureSource:
    """
    Screen capture through mss.

    Args:
        monitor: mss monitor index (0 = all monitors combined)
        clock: Millisecond clock for frame timestamps
    """

    def __init__(self, monitor: int = 1, clock: Clock = now_ms):
        self.monitor = monitor
        self._clock = clock
        self._sct = None
        self._region: Optional[dict] = None

    def open(self) -> None:
        """
        Raises:
            CapturePermissionError: If the display cannot be opened.
            CaptureEndedError: If the monitor index does not exist.
        """
        try:
            self._sct = mss.mss()
        except mss.exception.ScreenShotError as e:
            raise CapturePermissionError(f"screen capture unavailable: {e}") from e

        monitors = self._sct.monitors
        if self.monitor >= len(monitors):
            self.close()
            raise CaptureEndedError(f"monitor {self.monitor} not found ({len(monitors) - 1} available)")
        self._region = monitors[self.monitor]

        logger.info(
            "capture_source_opened",
            extra={
                "source": "screen",
                "monitor": self.monitor,
                "width": self._region["width"],
                "height": self._region["height"],
            },
        )

    def grab(self) -> Frame:
        if self._sct is None or self._region is None:
            raise CaptureEndedError("capture source is not open")
        try:
            shot = self._sct.grab(self._region)
        except mss.exception.ScreenShotError as e:
            raise CaptureEndedError(f"screen capture stopped: {e}") from e

        width, height = shot.size
        pixels = np.frombuffer(shot.rgb, dtype=np.uint8).reshape(height, width, 3)
        return Frame(ts_ms=self._clock(), width=width, height=height, pixels=pixels)

    def close(self) -> None:
        if self._sct is not None:
            self._sct.close()
            self._sct = None
            logger.info("capture_source_closed", extra={"source": "screen"})


class ImageDirCaptureSource:
    """
    Replays chart screenshots from a directory in file-name order.

    Args:
        directory: Directory holding the images
        loop: Start over after the last file instead of ending
        clock: Millisecond clock for frame timestamps
    """

    def __init__(self, directory: str, loop: bool = False, clock: Clock = now_ms):
        self.directory = Path(directory)
        self.loop = loop
        self._clock = clock
        self._files: list[Path] = []
        self._index = 0

    def open(self) -> None:
        """
        Raises:
            CapturePermissionError: If the directory cannot be read.
            CaptureEndedError: If the directory holds no images.
        """
        try:
            files = sorted(p for p in self.directory.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES)
        except PermissionError as e:
            raise CapturePermissionError(f"cannot read {self.directory}: {e}") from e
        except OSError as e:
            raise CaptureEndedError(f"cannot list {self.directory}: {e}") from e

        if not files:
            raise CaptureEndedError(f"no images in {self.directory}")

        self._files = files
        self._index = 0
        logger.info(
            "capture_source_opened",
            extra={"source": "images", "directory": str(self.directory), "files": len(files)},
        )

    def grab(self) -> Frame:
        if self._index >= len(self._files):
            if not self.loop or not self._files:
                raise CaptureEndedError("image replay finished")
            self._index = 0

        path = self._files[self._index]
        self._index += 1
        try:
            with Image.open(path) as image:
                pixels = np.asarray(image.convert("RGB"), dtype=np.uint8)
        except PermissionError as e:
            raise CapturePermissionError(f"cannot read {path}: {e}") from e
        except (OSError, UnidentifiedImageError) as e:
            raise CaptureEndedError(f"unreadable image {path}: {e}") from e

        height, width = pixels.shape[:2]
        return Frame(ts_ms=self._clock(), width=width, height=height, pixels=pixels)

    def close(self) -> None:
        self._files = []
        self._index = 0
