"""Tests for step and action retry strategies."""

import pytest

from core.constants import RetryStrategyType
from tasks.base_task import HandlerResult
from workflow.models import ActionRetryPolicy, RetryPolicy
from workflow.retry_strategies import RetryStrategy, execute_with_retry


# ─── RetryStrategy creation ───

@pytest.mark.unit
class TestRetryStrategyCreation:
    def test_none_strategy(self):
        s = RetryStrategy.none()
        assert s.max_attempts == 1
        assert s.should_retry(1) is False

    def test_from_enabled_policy(self):
        policy = RetryPolicy.model_validate({
            "isEnabled": True,
            "maxAttempts": 4,
            "retryDelay": "00:00:10",
            "strategy": "Exponential",
            "maxDelay": 60,
        })
        s = RetryStrategy.from_policy(policy)
        assert s.policy == RetryStrategyType.EXPONENTIAL
        assert s.max_attempts == 4
        assert s.base_delay == 10.0
        assert s.max_delay == 60.0

    def test_disabled_policy_means_single_attempt(self):
        policy = RetryPolicy(is_enabled=False, max_attempts=5)
        assert RetryStrategy.from_policy(policy).max_attempts == 1

    def test_missing_policy(self):
        assert RetryStrategy.from_policy(None).max_attempts == 1
        assert RetryStrategy.from_action_policy(None).max_attempts == 1

    def test_from_action_policy(self):
        s = RetryStrategy.from_action_policy(ActionRetryPolicy(max_attempts=2, retry_delay=3))
        assert s.policy == RetryStrategyType.FIXED
        assert s.max_attempts == 2
        assert s.base_delay == 3.0


# ─── Delay computation ───

@pytest.mark.unit
class TestDelayComputation:
    def test_fixed_delay(self):
        s = RetryStrategy.fixed(delay=5.0)
        assert s.compute_delay(1) == 5.0
        assert s.compute_delay(3) == 5.0

    def test_exponential_delay(self):
        s = RetryStrategy.exponential(base_delay=1.0)
        assert [s.compute_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_linear_delay(self):
        s = RetryStrategy.linear(base_delay=2.0)
        assert [s.compute_delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 6.0]

    def test_max_delay_cap(self):
        s = RetryStrategy.exponential(base_delay=10.0, max_delay=30.0)
        assert s.compute_delay(5) == 30.0  # 10 * 16 = 160, capped at 30

    def test_custom_behaves_as_fixed(self):
        s = RetryStrategy(policy=RetryStrategyType.CUSTOM, max_attempts=3, base_delay=7.0)
        assert s.compute_delay(2) == 7.0

    def test_exponential_with_jitter_in_range(self):
        s = RetryStrategy.exponential(base_delay=10.0, jitter=True, max_delay=100.0)
        for _ in range(50):
            # base=10, jitter_range=0.5 → between 5 and 15
            assert 5.0 <= s.compute_delay(1) <= 15.0


# ─── Should retry ───

@pytest.mark.unit
class TestShouldRetry:
    def test_stops_at_max_attempts(self):
        s = RetryStrategy.fixed(max_attempts=3)
        assert s.should_retry(2) is True
        assert s.should_retry(3) is False

    def test_retry_on_errors_by_type(self):
        s = RetryStrategy.fixed(max_attempts=3)
        s.retry_on_errors = ["ConnectError"]
        assert s.should_retry(1, "ConnectError", "refused") is True
        assert s.should_retry(1, "ValueError", "bad input") is False

    def test_retry_on_errors_by_message(self):
        s = RetryStrategy.fixed(max_attempts=3)
        s.retry_on_errors = ["503"]
        assert s.should_retry(1, "HTTPError", "HTTP 503 Service Unavailable") is True

    def test_do_not_retry_wins(self):
        s = RetryStrategy.fixed(max_attempts=3)
        s.retry_on_errors = ["HTTPError"]
        s.do_not_retry_on_errors = ["unauthorized"]
        assert s.should_retry(1, "HTTPError", "401 Unauthorized") is False


# ─── Execute with retry ───

@pytest.mark.unit
class TestExecuteWithRetry:
    async def test_success_first_attempt(self, sleeps):
        calls = []

        async def func(attempt):
            calls.append(attempt)
            return HandlerResult.ok({"value": 42})

        result, attempts = await execute_with_retry(func, RetryStrategy.fixed(max_attempts=3), sleep=sleeps)
        assert result.output == {"value": 42}
        assert attempts == 1
        assert calls == [1]
        assert sleeps.delays == []

    async def test_retries_until_success(self, sleeps):
        async def func(attempt):
            if attempt < 3:
                return HandlerResult.fail("refused", "ConnectError")
            return HandlerResult.ok()

        result, attempts = await execute_with_retry(
            func, RetryStrategy.linear(max_attempts=5, base_delay=1.0), sleep=sleeps
        )
        assert result.success
        assert attempts == 3
        assert sleeps.delays == [1.0, 2.0]

    async def test_exhausts_attempts(self, sleeps):
        async def func(attempt):
            return HandlerResult.fail(f"failure {attempt}")

        result, attempts = await execute_with_retry(func, RetryStrategy.fixed(max_attempts=2, delay=0), sleep=sleeps)
        assert not result.success
        assert result.error == "failure 2"
        assert attempts == 2
        assert sleeps.delays == []

    async def test_on_retry_callback(self, sleeps):
        seen = []

        async def func(attempt):
            return HandlerResult.fail("boom")

        await execute_with_retry(
            func,
            RetryStrategy.fixed(max_attempts=3, delay=0.5),
            on_retry=lambda attempt, result, delay: seen.append((attempt, delay)),
            sleep=sleeps,
        )
        assert seen == [(1, 0.5), (2, 0.5)]
