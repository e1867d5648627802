"""
Frame acquisition.

Wraps OpenCV ``VideoCapture`` to deliver timestamped
:class:`~ppg_vitals.types.FrameSample` objects from a live camera or a
recorded video.

Live capture runs on a background thread feeding a bounded queue.  When
processing falls behind, the oldest queued frame is dropped so latency
stays bounded; the number of dropped frames is tracked.  Video files are
read synchronously with timestamps taken from the container so results
are reproducible.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from pathlib import Path
from typing import Deque, Generator, Optional, Tuple, Union

import cv2
import numpy as np

from ppg_vitals.types import FrameSample

logger = logging.getLogger(__name__)

_JOIN_TIMEOUT_S = 2.0


class FrameSource:
    """
    Camera or video-file frame source.

    Parameters
    ----------
    source:
        OpenCV camera index or path to a video file.
    resolution:
        Requested (width, height) for live cameras.
    fps:
        Requested capture rate; also used to timestamp video files that
        do not report positions.
    queue_size:
        Capacity of the live-capture queue.  Older frames are dropped
        when it is full.
    """

    def __init__(
        self,
        source: Union[int, str, Path] = 0,
        resolution: Tuple[int, int] = (640, 480),
        fps: int = 30,
        queue_size: int = 4,
    ) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self.source = str(source) if isinstance(source, Path) else source
        self.resolution = resolution
        self.fps = fps
        self.queue_size = queue_size

        self._cap: Optional[cv2.VideoCapture] = None
        self._queue: Deque[FrameSample] = deque(maxlen=queue_size)
        self._ready = threading.Condition()
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._dropped = 0
        self._index = 0

    @property
    def is_live(self) -> bool:
        return isinstance(self.source, int)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Open the capture device and, for live cameras, start the reader thread."""
        cap = cv2.VideoCapture(self.source)
        if not cap.isOpened():
            raise RuntimeError(f"Cannot open video source {self.source!r}")
        if self.is_live:
            w, h = self.resolution
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)
            cap.set(cv2.CAP_PROP_FPS, self.fps)
        self._cap = cap
        self._dropped = 0
        self._index = 0
        self._queue.clear()

        if self.is_live:
            self._stop = threading.Event()
            self._thread = threading.Thread(
                target=self._reader, args=(cap, self._stop), name="frame-reader", daemon=True
            )
            self._thread.start()
        logger.info("Frame source opened – source=%r live=%s", self.source, self.is_live)

    def close(self) -> None:
        """
        Stop the reader thread and release the device.

        A live device is released by the reader thread when it exits.
        """
        if self._cap is None:
            return
        self._stop.set()
        with self._ready:
            self._ready.notify_all()
        if self._thread is None:
            self._cap.release()
        else:
            self._thread.join(timeout=_JOIN_TIMEOUT_S)
            if self._thread.is_alive():
                logger.warning(
                    "Frame reader still blocked after %.1f s; device is released when it returns.",
                    _JOIN_TIMEOUT_S,
                )
            self._thread = None
        self._cap = None
        logger.info("Frame source closed (%d frame(s) dropped).", self._dropped)

    def __enter__(self) -> "FrameSource":
        self.open()
        return self

    def __exit__(self, *_) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Frame acquisition
    # ------------------------------------------------------------------

    def read(self, timeout: float = 1.0) -> Optional[FrameSample]:
        """
        Return the next frame, or *None* when the source is exhausted or
        no live frame arrived within *timeout* seconds.
        """
        if self._cap is None:
            raise RuntimeError("Frame source is not open.  Call open() first.")
        if not self.is_live:
            return self._read_file()
        with self._ready:
            if not self._queue:
                self._ready.wait(timeout)
            return self._queue.popleft() if self._queue else None

    def frames(self) -> Generator[FrameSample, None, None]:
        """
        Yield frames until the source is exhausted or closed.

        Usage::

            with FrameSource(0) as source:
                for frame in source.frames():
                    session.process_frame(frame)
        """
        misses = 0
        while self._cap is not None:
            frame = self.read()
            if frame is None:
                if not self.is_live:
                    break
                misses += 1
                if misses >= 10:
                    logger.error("No frame received for 10 consecutive reads – aborting.")
                    break
                continue
            misses = 0
            yield frame

    @property
    def dropped_frames(self) -> int:
        """Frames discarded because the queue was full."""
        return self._dropped

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _reader(self, cap: cv2.VideoCapture, stop: threading.Event) -> None:
        try:
            while not stop.is_set():
                ok, image = cap.read()
                if not ok:
                    logger.warning("VideoCapture.read() returned False.")
                    time.sleep(0.01)
                    continue
                if stop.is_set():
                    break
                sample = FrameSample(_as_bgr(image), time.monotonic())
                with self._ready:
                    if len(self._queue) == self._queue.maxlen:
                        self._dropped += 1
                    self._queue.append(sample)
                    self._ready.notify()
        finally:
            cap.release()

    def _read_file(self) -> Optional[FrameSample]:
        ok, image = self._cap.read()
        if not ok:
            return None
        position_ms = self._cap.get(cv2.CAP_PROP_POS_MSEC)
        self._index += 1
        if position_ms > 0:
            timestamp = position_ms / 1000.0
        else:
            timestamp = (self._index - 1) / float(self.fps)
        return FrameSample(_as_bgr(image), timestamp)


def _as_bgr(image: np.ndarray) -> np.ndarray:
    """Coerce capture output to an H × W × 3 uint8 BGR array."""
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    return image
