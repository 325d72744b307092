"""
Unit tests for the retry policy.
"""
import pytest
import requests

from labflow.errors import ConflictError, GuardViolation, NotFoundError, OperationFailed, ValidationError
from labflow.services.retry import backoff_delay, is_transient, retry_policy


def http_error(status):
    resp = requests.Response()
    resp.status_code = status
    return requests.HTTPError(f"{status}", response=resp)


class Flaky:
    """Fails with the given errors, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestTransientClassification:
    @pytest.mark.parametrize(
        "exc",
        [OperationFailed("TransactionFailed"), requests.ConnectionError(), requests.Timeout(), http_error(503)],
    )
    def test_transient(self, exc):
        assert is_transient(exc)

    @pytest.mark.parametrize(
        "exc",
        [ConflictError("AlreadyAssigned"), GuardViolation("InvoiceFrozen"), ValidationError("x"), NotFoundError("x"), http_error(404), ValueError()],
    )
    def test_not_transient(self, exc):
        assert not is_transient(exc)


class TestBackoff:
    def test_exponential_with_cap(self):
        delays = [backoff_delay(n, 1.0, 2.0, 10.0, jitter=False) for n in range(1, 6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_jitter_stays_within_half_and_full_delay(self):
        assert backoff_delay(3, 1.0, 2.0, 10.0, jitter=True, rand=lambda: 0.0) == 2.0
        assert backoff_delay(3, 1.0, 2.0, 10.0, jitter=True, rand=lambda: 1.0) == 4.0


class TestRetryPolicy:
    def test_retries_transient_then_succeeds(self):
        slept = []
        fn = Flaky(OperationFailed("TransactionFailed"), requests.ConnectionError())
        wrapped = retry_policy(max_attempts=3, base_delay=1.0, multiplier=2.0, max_delay=10.0, jitter=False, sleep=slept.append)(fn)

        assert wrapped() == "ok"
        assert fn.calls == 3
        assert slept == [1.0, 2.0]

    def test_gives_up_after_max_attempts(self):
        fn = Flaky(*[OperationFailed("TransactionFailed")] * 5)
        wrapped = retry_policy(max_attempts=3, jitter=False, sleep=lambda _: None)(fn)
        with pytest.raises(OperationFailed):
            wrapped()
        assert fn.calls == 3

    @pytest.mark.parametrize("exc", [ConflictError("AlreadyAssigned"), GuardViolation("QCIncomplete")])
    def test_business_outcomes_are_not_retried(self, exc):
        fn = Flaky(exc)
        wrapped = retry_policy(max_attempts=3, sleep=lambda _: pytest.fail("must not sleep"))(fn)
        with pytest.raises(type(exc)):
            wrapped()
        assert fn.calls == 1

    def test_keeps_function_name(self):
        @retry_policy()
        def submit_order():
            return 1

        assert submit_order.__name__ == "submit_order"
