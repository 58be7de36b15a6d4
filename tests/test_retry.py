"""Tests for retry_after: bounded attempts, constant delay, transient-only retries."""

import pytest

from hyperkit_machine.exceptions import AddressNotFoundError, BootArtifactError, TransientError
from hyperkit_machine.retry import retry_after


class Flaky:
    """Callable failing with ``error`` for the first ``failures`` calls."""

    def __init__(self, failures: int, error: Exception | None = None, result: str = "ok") -> None:
        self.failures = failures
        self.error = error or AddressNotFoundError("not yet")
        self.result = result
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


class TestRetryAfter:
    def test_first_attempt_success_does_not_sleep(self, sleeps, fake_sleep) -> None:
        op = Flaky(0)
        assert retry_after(5, op, 2.0, sleep=fake_sleep) == "ok"
        assert op.calls == 1
        assert sleeps == []

    def test_succeeds_after_k_failures_with_k_plus_one_calls(self, sleeps, fake_sleep) -> None:
        """k transient failures then success: k+1 calls, k constant sleeps."""
        op = Flaky(3)
        assert retry_after(10, op, 2.0, sleep=fake_sleep) == "ok"
        assert op.calls == 4
        assert sleeps == [2.0, 2.0, 2.0]

    def test_exhausted_budget_reraises_last_transient(self, sleeps, fake_sleep) -> None:
        op = Flaky(100)
        with pytest.raises(AddressNotFoundError):
            retry_after(5, op, 0.5, sleep=fake_sleep)
        assert op.calls == 5
        assert sleeps == [0.5] * 4

    def test_non_transient_error_propagates_immediately(self, sleeps, fake_sleep) -> None:
        op = Flaky(100, error=BootArtifactError("missing kernel"))
        with pytest.raises(BootArtifactError):
            retry_after(5, op, 2.0, sleep=fake_sleep)
        assert op.calls == 1
        assert sleeps == []

    def test_plain_exception_is_terminal(self, fake_sleep) -> None:
        op = Flaky(100, error=RuntimeError("boom"))
        with pytest.raises(RuntimeError):
            retry_after(5, op, 2.0, sleep=fake_sleep)
        assert op.calls == 1

    def test_any_transient_subclass_is_retried(self, fake_sleep) -> None:
        class Custom(TransientError):
            pass

        op = Flaky(2, error=Custom("later"))
        assert retry_after(3, op, 0.0, sleep=fake_sleep) == "ok"
        assert op.calls == 3

    def test_single_attempt(self, sleeps, fake_sleep) -> None:
        op = Flaky(1)
        with pytest.raises(AddressNotFoundError):
            retry_after(1, op, 2.0, sleep=fake_sleep)
        assert op.calls == 1
        assert sleeps == []

    @pytest.mark.parametrize("attempts", [0, -1])
    def test_rejects_empty_budget(self, attempts: int) -> None:
        with pytest.raises(ValueError, match="attempts must be >= 1"):
            retry_after(attempts, Flaky(0), 1.0)
