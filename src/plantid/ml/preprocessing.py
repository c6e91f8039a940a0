"""Image preprocessing: decode, orient, validate, resize, and normalize.

Turns raw file bytes from a camera or gallery into the float32 tensor the
classifier expects.
"""

from __future__ import annotations

import io
import logging
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from plantid.errors import PreprocessError

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)


class TensorLayout(StrEnum):
    NCHW = "nchw"
    NHWC = "nhwc"


SERVABLE_MEDIA_TYPES = frozenset(
    {"image/jpeg", "image/png", "image/webp", "image/gif", "image/bmp", "image/tiff"}
)


def sniff_media_type(data: bytes) -> str | None:
    """Return the media type of ``data`` as detected by Pillow.

    Only raster formats in ``SERVABLE_MEDIA_TYPES`` are reported; anything
    else, including bytes Pillow cannot identify, gives ``None``. The
    client-declared content type is never consulted.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            media_type = img.get_format_mimetype()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError):
        return None
    return media_type if media_type in SERVABLE_MEDIA_TYPES else None


class ImagePreprocessor:
    """Converts encoded images into classifier input tensors."""

    def __init__(self, max_image_pixels: int, max_file_size: int) -> None:
        self._max_image_pixels = max_image_pixels
        self._max_file_size = max_file_size

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 numpy array.

        Args:
            image_bytes: Raw file bytes (any format Pillow can open).

        Returns:
            HxWx3 RGB uint8 numpy array with EXIF orientation applied.

        Raises:
            PreprocessError: If the image cannot be decoded or exceeds size limits.
        """
        if not image_bytes:
            raise PreprocessError("Empty image data")
        if len(image_bytes) > self._max_file_size:
            raise PreprocessError(f"Image file too large: {len(image_bytes)} bytes (max {self._max_file_size})")

        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                width, height = img.size
                if width * height > self._max_image_pixels:
                    raise PreprocessError(
                        f"Image too large: {width}x{height} pixels (max {self._max_image_pixels})"
                    )
                oriented = ImageOps.exif_transpose(img)
                rgb = oriented.convert("RGB")
        except PreprocessError:
            raise
        except (
            UnidentifiedImageError,
            Image.DecompressionBombError,
            OSError,
            EOFError,
            ValueError,
            SyntaxError,
        ) as exc:
            raise PreprocessError(f"Cannot decode image: {exc}") from exc

        return np.asarray(rgb, dtype=np.uint8)

    def preprocess_for_classification(
        self,
        image: NDArray[np.uint8],
        size: tuple[int, int],
        layout: TensorLayout = TensorLayout.NCHW,
    ) -> NDArray[np.float32]:
        """Prepare an image for the classifier.

        Args:
            image: HxWx3 RGB uint8 array.
            size: Target (height, width) of the model input.
            layout: Channel layout the model's input tensor uses.

        Returns:
            Batch of one normalized image, shape (1, 3, H, W) or (1, H, W, 3).
        """
        if image.ndim != 3 or image.shape[2] != 3:
            raise PreprocessError(f"Expected an HxWx3 image, got shape {image.shape}")

        height, width = size
        resized = Image.fromarray(image).resize((width, height), Image.Resampling.BILINEAR)
        tensor = np.asarray(resized, dtype=np.float32) / 255.0
        tensor = (tensor - IMAGENET_MEAN) / IMAGENET_STD

        if layout is TensorLayout.NCHW:
            tensor = tensor.transpose(2, 0, 1)
        return np.expand_dims(tensor, axis=0).astype(np.float32)
