"""
Typebeat renderer: batch rendering of audio + cover image pairs into MP4
videos on a single shared FFmpeg engine.
"""

from .config import RenderConfig, DEFAULT_RENDER_CONFIG
from .service import BatchHandle, BatchResult, RenderService

__version__ = "0.1.0"

__all__ = [
    "RenderConfig",
    "DEFAULT_RENDER_CONFIG",
    "RenderService",
    "BatchHandle",
    "BatchResult",
]
