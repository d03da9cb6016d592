"""Image preprocessing pipeline.

Decodes uploaded bytes into RGB arrays and turns them into the batched
float32 tensor layout the classifiers expect: ``[1, H, W, 3]``.

The custom classifier was trained on MobileNet-style inputs scaled to
[-1, 1]. The fallback classifier applies its own normalization, so for that
tier the tensor carries raw pixel values in [0, 255].
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from nutriscan.errors import PreprocessingError

if TYPE_CHECKING:
    from numpy.typing import NDArray

PIXEL_SCALE: float = 127.5


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Reject images with more pixels than this.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        PreprocessingError: If the image cannot be decoded, is empty, or
            exceeds the pixel limit.
    """
    if not image_bytes:
        raise PreprocessingError("Empty image payload")

    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if width == 0 or height == 0:
                raise PreprocessingError("Image has zero width or height")
            if max_pixels is not None and width * height > max_pixels:
                raise PreprocessingError(f"Image has {width * height} pixels, limit is {max_pixels}")

            with ImageOps.exif_transpose(img) as oriented, oriented.convert("RGB") as rgb:
                return np.asarray(rgb, dtype=np.uint8).copy()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as exc:
        raise PreprocessingError(f"Could not decode image: {exc}") from exc


def normalize_pixels(pixels: NDArray[np.floating]) -> NDArray[np.float32]:
    """Scale pixel values from [0, 255] to [-1, 1] via ``x / 127.5 - 1``."""
    return (np.asarray(pixels, dtype=np.float32) / PIXEL_SCALE - 1.0).astype(np.float32)


def resize_nearest(image: NDArray[np.uint8], target_size: tuple[int, int]) -> NDArray[np.uint8]:
    """Resize an HxWx3 image to ``target_size`` (width, height) with nearest-neighbour sampling."""
    with Image.fromarray(image) as src, src.resize(target_size, Image.Resampling.NEAREST) as resized:
        return np.asarray(resized, dtype=np.uint8).copy()


def preprocess(
    image: NDArray[np.uint8],
    target_size: tuple[int, int],
    *,
    normalize: bool = True,
) -> NDArray[np.float32]:
    """Prepare an RGB image for a classifier.

    Args:
        image: HxWx3 RGB uint8 array.
        target_size: Model input resolution as (width, height).
        normalize: Apply MobileNet [-1, 1] scaling. Disable for models that
            normalize internally.

    Returns:
        float32 tensor of shape (1, height, width, 3).

    Raises:
        PreprocessingError: If the image has no pixels or is not HxWx3.
    """
    if image.ndim != 3 or image.shape[2] != 3:
        raise PreprocessingError(f"Expected an HxWx3 RGB image, got shape {image.shape}")
    if image.shape[0] == 0 or image.shape[1] == 0:
        raise PreprocessingError("Image has zero width or height")

    resized = resize_nearest(image, target_size)
    pixels = resized.astype(np.float32)
    if normalize:
        pixels = normalize_pixels(pixels)
    return np.expand_dims(pixels, axis=0)
