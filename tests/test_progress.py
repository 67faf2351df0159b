"""Tests for progress reporting, cancellation and the error hierarchy."""

import threading

import pytest

from errors import BookmarkError, CancelledError, GenerationError, InvalidInputError
from progress import CancellationToken, ProgressReporter, as_reporter, check_cancelled


class TestCancellationToken:
    """Thread-safe cancellation flag."""

    def test_starts_clear(self):
        token = CancellationToken()
        assert not token.is_cancelled()
        token.raise_if_cancelled("sampling")

    def test_cancel_from_other_thread(self):
        token = CancellationToken()
        worker = threading.Thread(target=token.cancel)
        worker.start()
        worker.join()
        assert token.is_cancelled()
        assert token()

    def test_raise_carries_stage(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancelledError) as info:
            token.raise_if_cancelled("clustering")
        assert info.value.stage == "clustering"
        assert "clustering" in str(info.value)

    def test_check_cancelled_accepts_callables_and_none(self):
        check_cancelled(None)
        check_cancelled(lambda: False)
        with pytest.raises(CancelledError):
            check_cancelled(lambda: True, "assignment")


class TestProgressReporter:
    """Clamping, scaling and fire-and-forget delivery."""

    def test_clamps_progress(self):
        seen = []
        reporter = ProgressReporter(lambda s, p, m: seen.append(p))
        reporter.report("x", -1.0)
        reporter.report("x", 2.0)
        assert seen == [0.0, 1.0]

    def test_scaled_sub_reporter(self):
        seen = []
        reporter = ProgressReporter(lambda s, p, m: seen.append(p))
        child = reporter.scaled(0.5, 1.0).scaled(0.0, 0.5)
        child.report("x", 0.0)
        child.report("x", 1.0)
        assert seen == pytest.approx([0.5, 0.75])

    def test_failing_callback_disabled_after_first_error(self):
        calls = []

        def broken(stage, progress, message):
            calls.append(stage)
            raise RuntimeError("boom")

        reporter = ProgressReporter(broken)
        reporter.report("a", 0.1)
        reporter.report("b", 0.2)
        assert calls == ["a"]
        assert not reporter.enabled

    def test_cancelled_error_from_callback_propagates(self):
        def cancel_now(stage, progress, message):
            raise CancelledError(stage)

        with pytest.raises(CancelledError):
            ProgressReporter(cancel_now).report("clustering", 0.4)

    def test_as_reporter_wraps_callables(self):
        reporter = ProgressReporter()
        assert as_reporter(reporter) is reporter
        assert not as_reporter(None).enabled


class TestErrors:
    """Exception hierarchy."""

    def test_hierarchy(self):
        assert issubclass(InvalidInputError, BookmarkError)
        assert issubclass(InvalidInputError, ValueError)
        assert issubclass(GenerationError, RuntimeError)
        assert issubclass(CancelledError, BookmarkError)

    def test_default_cancel_message(self):
        assert str(CancelledError()) == "Cancelled by user"
