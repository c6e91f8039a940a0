"""Image sources: camera capture and gallery selection.

Both sources hand back encoded image bytes; decoding happens in the
classification pipeline so that a corrupt gallery file surfaces as a
preprocessing failure rather than a source failure.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

import cv2

from plantid.errors import CapabilityUnavailable

if TYPE_CHECKING:
    from plantid.config import Settings

logger = logging.getLogger(__name__)


class ImageSource(StrEnum):
    CAMERA = "camera"
    GALLERY = "gallery"


@dataclass(frozen=True)
class CapturedImage:
    """Encoded image bytes together with where they came from."""

    data: bytes
    source: ImageSource
    filename: str | None = None
    content_type: str | None = None


class ImageSourceAdapter(Protocol):
    """Protocol for anything that can produce a user-chosen image."""

    async def request_image(
        self,
        source: ImageSource,
        payload: bytes | None = None,
        *,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> CapturedImage | None:
        """Produce one image, or None if the user cancelled.

        Raises:
            CapabilityUnavailable: If ``source`` cannot be used here.
        """
        ...


class MediaSources:
    """Camera via OpenCV, gallery via caller-supplied file bytes."""

    def __init__(self, settings: Settings) -> None:
        self._camera_enabled = settings.camera_enabled
        self._camera_index = settings.camera_index

    async def request_image(
        self,
        source: ImageSource,
        payload: bytes | None = None,
        *,
        filename: str | None = None,
        content_type: str | None = None,
    ) -> CapturedImage | None:
        if source is ImageSource.CAMERA:
            data = await asyncio.to_thread(self._capture_frame)
            logger.info("Captured %d bytes from camera %d", len(data), self._camera_index)
            return CapturedImage(data=data, source=source, filename=None, content_type="image/jpeg")

        if not payload:
            logger.info("Gallery selection cancelled")
            return None
        logger.info("Selected %s from gallery (%d bytes)", filename or "<unnamed>", len(payload))
        return CapturedImage(data=payload, source=source, filename=filename, content_type=content_type)

    def _capture_frame(self) -> bytes:
        if not self._camera_enabled:
            raise CapabilityUnavailable("Camera support is disabled")

        cap = cv2.VideoCapture(self._camera_index)
        try:
            if not cap.isOpened():
                raise CapabilityUnavailable(f"Camera {self._camera_index} is not accessible")
            ok, frame = cap.read()
            if not ok or frame is None:
                raise CapabilityUnavailable(f"Camera {self._camera_index} returned no frame")
            ok, encoded = cv2.imencode(".jpg", frame)
            if not ok:
                raise CapabilityUnavailable("Could not encode camera frame")
            return encoded.tobytes()
        finally:
            cap.release()
