"""
Progress reporting and cooperative cancellation shared by every stage.

Long-running loops call ``check_cancelled`` at stage boundaries and every
few thousand pixels, and push ``(stage, progress, message)`` updates through
a ``ProgressReporter``. Reporters are fire-and-forget: a consumer that raises
is logged once and then ignored so it can never stall the pipeline.
"""

import logging
import threading
from typing import Callable, Optional, Union

from errors import CancelledError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float, str], None]
CancelCheck = Union["CancellationToken", Callable[[], bool]]


class CancellationToken:
    """Thread-safe cancellation flag.

    Instances are callable, so a token can be passed anywhere a plain
    ``() -> bool`` check is accepted.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str = "") -> None:
        if self._event.is_set():
            raise CancelledError(stage)

    def __call__(self) -> bool:
        return self._event.is_set()


def check_cancelled(cancel: Optional[CancelCheck], stage: str = "") -> None:
    """Raise CancelledError if *cancel* reports a pending cancellation."""
    if cancel is None:
        return
    if isinstance(cancel, CancellationToken):
        cancel.raise_if_cancelled(stage)
        return
    if cancel():
        raise CancelledError(stage)


class ProgressReporter:
    """Clamp, scale and forward progress updates to an optional callback."""

    def __init__(
        self,
        callback: Optional[ProgressCallback] = None,
        start: float = 0.0,
        end: float = 1.0,
    ) -> None:
        self._callback = callback
        self._start = float(start)
        self._end = float(end)
        self._failed = False

    @property
    def enabled(self) -> bool:
        return self._callback is not None and not self._failed

    def report(self, stage: str, progress: float, message: str = "") -> None:
        if not self.enabled:
            return
        fraction = min(1.0, max(0.0, float(progress)))
        overall = self._start + (self._end - self._start) * fraction
        try:
            self._callback(stage, overall, message)
        except CancelledError:
            raise
        except Exception as exc:
            # Drop the consumer rather than stall the run.
            logger.warning("Progress callback failed at %s: %s", stage, exc)
            self._failed = True

    def scaled(self, start: float, end: float) -> "ProgressReporter":
        """Sub-reporter mapping ``[0, 1]`` onto ``[start, end]`` of this one."""
        span = self._end - self._start
        child = ProgressReporter(
            self._callback,
            start=self._start + span * start,
            end=self._start + span * end,
        )
        child._failed = self._failed
        return child


def as_reporter(
    progress: Union[None, ProgressCallback, ProgressReporter],
) -> ProgressReporter:
    if isinstance(progress, ProgressReporter):
        return progress
    return ProgressReporter(progress)
