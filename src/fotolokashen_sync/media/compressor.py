"""Adaptive JPEG compression that converges on a byte budget.

The compressor first bounds the image's *pixel* dimensions (the long side is
scaled down to ``max_dimension_pixels`` with LANCZOS resampling, aspect ratio
kept) and then lowers JPEG quality in fixed steps until the encoded size fits
``target_bytes`` or the quality floor is reached.  Quality is stepped in
integer percent so the floor is hit exactly and never undershot.

Images that already fit the budget are encoded once, at ``quality_start``.

Example
-------
>>> from fotolokashen_sync.media.compressor import compress_with_metadata
>>> result = compress_with_metadata(jpeg_bytes)
>>> result.quality, result.was_resized
(0.9, False)
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Union

from PIL import Image

from fotolokashen_sync.errors import CompressionFailedError

_LOG = logging.getLogger("fotolokashen.media.compressor")


@dataclass(frozen=True, slots=True)
class CompressionSettings:
    """Tunable parameters of the adaptive compressor."""

    target_bytes: int = 1_500_000
    quality_start: float = 0.9
    quality_floor: float = 0.4
    quality_step: float = 0.1
    max_dimension_pixels: int = 3000

    def __post_init__(self) -> None:
        if self.target_bytes <= 0:
            raise ValueError("target_bytes must be positive")
        if not 0 < self.quality_floor <= self.quality_start <= 1:
            raise ValueError("expected 0 < quality_floor <= quality_start <= 1")
        if self.quality_step <= 0:
            raise ValueError("quality_step must be positive")
        if self.max_dimension_pixels <= 0:
            raise ValueError("max_dimension_pixels must be positive")


@dataclass(frozen=True)
class SourceImage:
    """A decoded image plus the display scale it was captured for.

    ``pixel_size`` is what the encoder sees; ``point_size`` is the logical
    size on a scaled display.  Resizing decisions always use pixels.
    """

    image: Image.Image
    scale: float = 1.0

    @property
    def pixel_size(self) -> tuple[int, int]:
        return self.image.size

    @property
    def point_size(self) -> tuple[float, float]:
        width, height = self.image.size
        return width / self.scale, height / self.scale

    @classmethod
    def from_bytes(cls, data: bytes, *, scale: float = 1.0) -> "SourceImage":
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise CompressionFailedError(f"Could not decode image: {exc}") from exc
        return cls(image=image, scale=scale)


@dataclass(frozen=True, slots=True)
class CompressionResult:
    data: bytes = field(repr=False)
    quality: float
    iterations: int
    was_resized: bool
    pixel_size: tuple[int, int]
    original_pixel_size: tuple[int, int]

    @property
    def size(self) -> int:
        return len(self.data)


ImageInput = Union[SourceImage, Image.Image, bytes]


def _as_source(image: ImageInput) -> SourceImage:
    if isinstance(image, SourceImage):
        return image
    if isinstance(image, Image.Image):
        return SourceImage(image=image)
    if isinstance(image, (bytes, bytearray)):
        return SourceImage.from_bytes(bytes(image))
    raise TypeError(f"unsupported image input: {type(image).__name__}")


def _bounded_size(size: tuple[int, int], max_dimension: int) -> tuple[int, int] | None:
    """Return the resized (w, h) or ``None`` when *size* already fits."""
    width, height = size
    longest = max(width, height)
    if longest <= max_dimension:
        return None
    ratio = max_dimension / longest
    if width >= height:
        return max_dimension, max(1, round(height * ratio))
    return max(1, round(width * ratio)), max_dimension


def _encode(image: Image.Image, quality_pct: int, exif: bytes | None) -> bytes:
    buffer = io.BytesIO()
    options: dict = {"format": "JPEG", "quality": quality_pct, "optimize": True}
    if exif:
        options["exif"] = exif
    image.save(buffer, **options)
    return buffer.getvalue()


class ImageCompressor:
    """Compress images according to a :class:`CompressionSettings`."""

    def __init__(self, settings: CompressionSettings | None = None) -> None:
        self.settings = settings or CompressionSettings()

    def compress(self, image: ImageInput) -> bytes:
        return self.compress_with_metadata(image).data

    def compress_with_metadata(self, image: ImageInput) -> CompressionResult:
        settings = self.settings
        source = _as_source(image)
        original_size = source.pixel_size
        exif = source.image.info.get("exif")

        try:
            working = source.image
            if working.mode != "RGB":
                working = working.convert("RGB")

            new_size = _bounded_size(original_size, settings.max_dimension_pixels)
            if new_size is not None:
                working = working.resize(new_size, Image.Resampling.LANCZOS)

            quality = round(settings.quality_start * 100)
            floor = round(settings.quality_floor * 100)
            step = max(1, round(settings.quality_step * 100))

            data = _encode(working, quality, exif)
            iterations = 1
            while len(data) > settings.target_bytes and quality > floor:
                quality = max(floor, quality - step)
                data = _encode(working, quality, exif)
                iterations += 1
        except (OSError, ValueError) as exc:
            raise CompressionFailedError(f"JPEG encoding failed: {exc}") from exc

        if len(data) > settings.target_bytes:
            _LOG.info(
                "Image still %d bytes at quality floor %.2f (target %d)",
                len(data),
                quality / 100,
                settings.target_bytes,
            )
        return CompressionResult(
            data=data,
            quality=quality / 100,
            iterations=iterations,
            was_resized=new_size is not None,
            pixel_size=working.size,
            original_pixel_size=original_size,
        )


def compress(image: ImageInput, **settings) -> bytes:
    """Compress *image* with :class:`CompressionSettings` built from *settings*."""
    return ImageCompressor(CompressionSettings(**settings)).compress(image)


def compress_with_metadata(image: ImageInput, **settings) -> CompressionResult:
    return ImageCompressor(CompressionSettings(**settings)).compress_with_metadata(image)
