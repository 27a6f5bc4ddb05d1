"""Tests for the two-phase retry executor."""

import asyncio

import pytest

from lifecycle.classifier import ErrorClassifier, Operation
from lifecycle.deadline import SYSTEM_CLOCK, Deadline
from lifecycle.errors import Aborted, NotFound, PermanentError, TimedOut
from lifecycle.remote import RemoteError
from lifecycle.retry import RetryExecutor, RetryPolicy
from remote_mock import FakeClock


def create_policy(**kwargs: float) -> RetryPolicy:
    return RetryPolicy(classifier=ErrorClassifier().for_operation(Operation.CREATE), **kwargs)


class Flaky:
    """Callable failing with scripted errors before succeeding."""

    def __init__(self, *errors: Exception, result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_backoff_grows_and_caps(self) -> None:
        """Test exponential growth up to the maximum interval."""
        policy = create_policy(jitter=0.0, initial_interval=1.0, multiplier=2.0, max_interval=5.0)

        assert [policy.backoff(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_bounds(self) -> None:
        """Test that jitter only adds up to the configured fraction."""
        policy = create_policy(initial_interval=10.0, max_interval=10.0, jitter=0.2)

        for _ in range(50):
            assert 10.0 <= policy.backoff(1) <= 12.0

    def test_invalid_policy(self) -> None:
        """Test that nonsensical parameters are rejected."""
        with pytest.raises(ValueError):
            create_policy(initial_interval=0)
        with pytest.raises(ValueError):
            create_policy(multiplier=0.5)
        with pytest.raises(ValueError):
            create_policy(jitter=2.0)


class TestRetryExecutor:
    """Tests for RetryExecutor.execute."""

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, clock: FakeClock) -> None:
        """Test that a successful call returns without waiting."""
        operation = Flaky()

        result = await RetryExecutor().execute(
            operation,
            policy=create_policy(),
            deadline=Deadline.after(600, clock=clock),
            operation_name="create",
        )

        assert result == "ok"
        assert operation.calls == 1
        assert clock.waits == []

    @pytest.mark.asyncio
    async def test_transient_then_success(self, clock: FakeClock) -> None:
        """Test that transient errors are retried with backoff."""
        operation = Flaky(RemoteError("ThrottlingException"), RemoteError("ConflictException"))

        result = await RetryExecutor().execute(
            operation,
            policy=create_policy(),
            deadline=Deadline.after(600, clock=clock),
            operation_name="create",
        )

        assert result == "ok"
        assert operation.calls == 3
        assert len(clock.waits) == 2

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, clock: FakeClock) -> None:
        """Test that permanent errors propagate after a single attempt."""
        error = RemoteError("ValidationException", "bad input")
        operation = Flaky(error)

        with pytest.raises(PermanentError) as exc_info:
            await RetryExecutor().execute(
                operation,
                policy=create_policy(),
                deadline=Deadline.after(600, clock=clock),
                operation_name="create",
                identifier="api1/res1/GET/200",
            )

        assert operation.calls == 1
        assert exc_info.value.cause is error
        assert exc_info.value.identifier == "api1/res1/GET/200"
        assert exc_info.value.operation == "create"

    @pytest.mark.asyncio
    async def test_not_found_not_retried(self, clock: FakeClock) -> None:
        """Test that not-found errors propagate as NotFound."""
        operation = Flaky(RemoteError("NotFoundException"))

        with pytest.raises(NotFound):
            await RetryExecutor().execute(
                operation,
                policy=create_policy(),
                deadline=Deadline.after(600, clock=clock),
                operation_name="create",
            )

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_conflicts_retried_within_two_minutes(self, clock: FakeClock) -> None:
        """Test that conflicts for most of the window still end in success."""
        calls = 0

        async def operation() -> str:
            nonlocal calls
            calls += 1
            if clock.now < 60:
                raise RemoteError("ConflictException", "Unable to complete operation")
            return "created"

        result = await RetryExecutor().execute(
            operation,
            policy=create_policy(max_elapsed=120.0),
            deadline=Deadline.after(600, clock=clock),
            operation_name="create",
        )

        assert result == "created"
        assert calls >= 3
        assert clock.now <= 120

    @pytest.mark.asyncio
    async def test_budget_exhausted_raises_timed_out(self, clock: FakeClock) -> None:
        """Test that persistent conflicts end in TimedOut carrying the last error."""
        operation = Flaky(*[RemoteError("ConflictException") for _ in range(100)])

        with pytest.raises(TimedOut) as exc_info:
            await RetryExecutor().execute(
                operation,
                policy=create_policy(max_elapsed=120.0),
                deadline=Deadline.after(600, clock=clock),
                operation_name="create",
            )

        assert exc_info.value.cause is not None
        assert exc_info.value.cause.code == "ConflictException"
        assert clock.now <= 120
        # Backoff sleeps plus the final attempt
        assert operation.calls == len(clock.waits) + 2

    @pytest.mark.asyncio
    async def test_final_attempt_after_budget(self, clock: FakeClock) -> None:
        """Test that one more attempt is made once the budget is spent."""
        operation = Flaky(RemoteError("ConflictException"))

        result = await RetryExecutor().execute(
            operation,
            policy=create_policy(max_elapsed=0.0),
            deadline=Deadline.after(600, clock=clock),
            operation_name="create",
        )

        assert result == "ok"
        assert operation.calls == 2
        assert clock.waits == []

    @pytest.mark.asyncio
    async def test_final_attempt_at_expired_deadline(self, clock: FakeClock) -> None:
        """Test that an expired deadline still gets the best-effort attempt."""
        operation = Flaky(RemoteError("ThrottlingException"))

        result = await RetryExecutor().execute(
            operation,
            policy=create_policy(),
            deadline=Deadline.after(0, clock=clock),
            operation_name="create",
        )

        assert result == "ok"
        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_final_attempt_permanent_error(self, clock: FakeClock) -> None:
        """Test that a permanent error on the final attempt is not masked as a timeout."""
        operation = Flaky(RemoteError("ConflictException"), RemoteError("AccessDenied"))

        with pytest.raises(PermanentError):
            await RetryExecutor().execute(
                operation,
                policy=create_policy(max_elapsed=0.0),
                deadline=Deadline.after(600, clock=clock),
                operation_name="create",
            )

    @pytest.mark.asyncio
    async def test_sleep_never_exceeds_deadline(self, clock: FakeClock) -> None:
        """Test that retries stop before sleeping past the deadline."""
        operation = Flaky(*[RemoteError("ConflictException") for _ in range(100)])

        with pytest.raises(TimedOut):
            await RetryExecutor().execute(
                operation,
                policy=create_policy(max_elapsed=120.0),
                deadline=Deadline.after(10, clock=clock),
                operation_name="create",
            )

        assert clock.now <= 10

    @pytest.mark.asyncio
    async def test_cancelled_before_first_attempt(self, clock: FakeClock) -> None:
        """Test that a set cancellation signal prevents any call."""
        cancel = asyncio.Event()
        cancel.set()
        operation = Flaky()

        with pytest.raises(Aborted):
            await RetryExecutor().execute(
                operation,
                policy=create_policy(),
                deadline=Deadline.after(600, clock=clock, cancel_event=cancel),
                operation_name="create",
            )

        assert operation.calls == 0

    @pytest.mark.asyncio
    async def test_cancelled_during_backoff(self, clock: FakeClock) -> None:
        """Test that cancellation interrupts a backoff sleep."""
        cancel = asyncio.Event()
        clock.on_wait = lambda _seconds: cancel.set()
        operation = Flaky(*[RemoteError("ConflictException") for _ in range(10)])

        with pytest.raises(Aborted):
            await RetryExecutor().execute(
                operation,
                policy=create_policy(),
                deadline=Deadline.after(600, clock=clock, cancel_event=cancel),
                operation_name="create",
            )

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_propagates(self, clock: FakeClock) -> None:
        """Test that non-remote exceptions are not classified or retried."""
        operation = Flaky(KeyError("boom"))

        with pytest.raises(KeyError):
            await RetryExecutor().execute(
                operation,
                policy=create_policy(),
                deadline=Deadline.after(600, clock=clock),
                operation_name="create",
            )

        assert operation.calls == 1


class TestHungRemoteCall:
    """Tests for calls that never return."""

    @staticmethod
    async def hang() -> str:
        await asyncio.Event().wait()
        return "unreachable"

    @pytest.mark.asyncio
    async def test_cancel_interrupts_running_call(self) -> None:
        """Test that cancellation aborts a call that is still in flight."""
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, cancel.set)

        with pytest.raises(Aborted):
            await asyncio.wait_for(
                RetryExecutor().execute(
                    self.hang,
                    policy=create_policy(),
                    deadline=Deadline.after(600, clock=SYSTEM_CLOCK, cancel_event=cancel),
                    operation_name="read",
                ),
                timeout=1.0,
            )

    @pytest.mark.asyncio
    async def test_deadline_bounds_running_call(self) -> None:
        """Test that a hung call ends in TimedOut shortly after the deadline."""
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(TimedOut) as exc_info:
            await asyncio.wait_for(
                RetryExecutor().execute(
                    self.hang,
                    policy=create_policy(max_elapsed=0.0, final_attempt_timeout=0.05),
                    deadline=Deadline.after(0.05, clock=SYSTEM_CLOCK),
                    operation_name="read",
                ),
                timeout=1.0,
            )

        assert loop.time() - started < 0.5
        assert exc_info.value.cause is None

    @pytest.mark.asyncio
    async def test_slow_call_then_success(self, clock: FakeClock) -> None:
        """Test that a call answering after a few loop turns still returns its result."""
        cancel = asyncio.Event()

        async def slow() -> str:
            for _ in range(3):
                await asyncio.sleep(0)
            return "done"

        result = await RetryExecutor().execute(
            slow,
            policy=create_policy(),
            deadline=Deadline.after(600, clock=clock, cancel_event=cancel),
            operation_name="read",
        )

        assert result == "done"
