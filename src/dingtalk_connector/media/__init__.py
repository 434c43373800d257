"""Media marker scanning, upload and dispatch."""

from .processors import MediaPostProcessor
from .uploader import MediaUploader

__all__ = ["MediaPostProcessor", "MediaUploader"]
