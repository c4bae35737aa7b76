"""Image preparation for upload."""

from fotolokashen_sync.media.compressor import (
    CompressionResult,
    CompressionSettings,
    ImageCompressor,
    SourceImage,
    compress,
    compress_with_metadata,
)

__all__ = [
    "CompressionResult",
    "CompressionSettings",
    "ImageCompressor",
    "SourceImage",
    "compress",
    "compress_with_metadata",
]
