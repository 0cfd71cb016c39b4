"""
Tests for RetryPolicy and the with_retry decorator.
"""

import pytest

from delta_index.index_exceptions import EmbeddingBackendError
from delta_index.services.retry import RetryPolicy, with_retry

from conftest import no_sleep


class Flaky:
    """Fails the first `failures` calls, then returns "ok"."""

    def __init__(self, failures, exc=ConnectionError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"failure {self.calls}")
        return "ok"


class TestRetryPolicy:
    def test_backoff_delays(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_succeeds_after_failures(self):
        slept = []
        policy = RetryPolicy(max_attempts=3, base_delay=0.5, sleep=slept.append)
        func = Flaky(2)

        assert policy.call(func) == "ok"
        assert func.calls == 3
        assert slept == [0.5, 1.0]

    def test_gives_up(self):
        policy = RetryPolicy(max_attempts=2, sleep=no_sleep)
        func = Flaky(5)
        with pytest.raises(ConnectionError):
            policy.call(func)
        assert func.calls == 2

    def test_wraps_final_error(self):
        """The last failure is re-raised as error_cls, chained to the cause."""
        policy = RetryPolicy(max_attempts=2, sleep=no_sleep)
        with pytest.raises(EmbeddingBackendError) as exc_info:
            policy.call(Flaky(5), error_cls=EmbeddingBackendError, operation="embed")
        assert "embed failed after 2 attempts" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    def test_does_not_rewrap_same_type(self):
        policy = RetryPolicy(max_attempts=1, sleep=no_sleep)
        with pytest.raises(EmbeddingBackendError) as exc_info:
            policy.call(Flaky(1, EmbeddingBackendError), error_cls=EmbeddingBackendError)
        assert exc_info.value.__cause__ is None

    def test_non_retryable_propagates_immediately(self):
        policy = RetryPolicy(max_attempts=5, retry_on=(ConnectionError,), sleep=no_sleep)
        func = Flaky(1, KeyError)
        with pytest.raises(KeyError):
            policy.call(func)
        assert func.calls == 1

    def test_passes_arguments(self):
        policy = RetryPolicy(sleep=no_sleep)
        assert policy.call(lambda a, b=0: a + b, 2, b=3) == 5

    def test_from_config(self):
        policy = RetryPolicy.from_config({"retry_max_attempts": 5, "retry_base_delay": 0.1})
        assert policy.max_attempts == 5
        assert policy.base_delay == 0.1
        assert policy.max_delay == 30.0

    def test_invalid(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestWithRetry:
    def test_decorated_function(self):
        func = Flaky(1)

        @with_retry(RetryPolicy(sleep=no_sleep))
        def call():
            return func()

        assert call() == "ok"
        assert func.calls == 2

    def test_uses_instance_policy(self):
        """Methods pick up self.retry_policy when no policy is given."""

        class Client:
            def __init__(self):
                self.retry_policy = RetryPolicy(max_attempts=4, sleep=no_sleep)
                self.flaky = Flaky(3)

            @with_retry(error_cls=EmbeddingBackendError)
            def fetch(self):
                return self.flaky()

        client = Client()
        assert client.fetch() == "ok"
        assert client.flaky.calls == 4
