from __future__ import annotations

from typing import Optional


class SegmentArtError(Exception):
    """Base class for every error raised by the extraction engine."""


class DecodeError(SegmentArtError):
    """Image or mask bytes could not be rasterised."""


class InvalidSelectionError(SegmentArtError):
    """Too few points or pixels to form a mask."""


class PreconditionError(SegmentArtError):
    """The operation cannot run against the current document state."""


RETRYABLE_REASONS = frozenset({"rate_limit", "model_loading"})


class CollaboratorError(SegmentArtError):
    """A segmentation, inpainting or prompt service call failed.

    ``reason`` is one of ``auth``, ``quota``, ``policy``, ``rate_limit``,
    ``model_loading``, ``network`` or ``unknown``.
    """

    def __init__(self, message: str, reason: str = "unknown", status_code: Optional[int] = None) -> None:
        self.reason = reason
        self.status_code = status_code
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.reason in RETRYABLE_REASONS
