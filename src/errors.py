"""
Exception hierarchy for the image-to-bookmark pipeline.

Caller mistakes surface as InvalidInputError before any work starts,
cooperative aborts as CancelledError, and unexpected mesh-construction
failures as GenerationError chained to their root cause. Geometric defects
found by the validator are never raised; they are returned as data.
"""


class BookmarkError(Exception):
    """Base exception for pipeline errors."""
    pass


class InvalidInputError(BookmarkError, ValueError):
    """Input image or parameters are unusable as given."""
    pass


class CancelledError(BookmarkError):
    """The caller asked for the run to stop."""

    def __init__(self, stage: str = "", message: str = ""):
        self.stage = stage
        if not message:
            message = f"Cancelled during {stage}" if stage else "Cancelled by user"
        super().__init__(message)


class GenerationError(BookmarkError, RuntimeError):
    """Mesh construction failed; the original exception is chained."""

    def __init__(self, message: str, stage: str = ""):
        self.stage = stage
        super().__init__(message)
