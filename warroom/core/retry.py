"""Retry/backoff state machine for failed lanes.

Transitions are pure functions of (state, outcome, now). The orchestrator owns
the timer that fires when a retry becomes due.

    failure, attempt < max   -> waiting (next_retry_at = now + backoff)
    retry due                -> retrying
    failure, attempt == max  -> exhausted (no further automatic action)
    success after a failure  -> succeeded
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from warroom.constants import RETRY_BASE_DELAY_S, RETRY_MAX_ATTEMPTS, RETRY_MAX_DELAY_S
from warroom.core.run_documents import RetryAttempt, RetryState
from warroom.utils import parse_iso, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = RETRY_MAX_ATTEMPTS
    base_delay_s: float = RETRY_BASE_DELAY_S
    max_delay_s: float = RETRY_MAX_DELAY_S

    def backoff_seconds(self, prior_failures: int) -> float:
        """Delay before the next attempt: ``base * 2**prior_failures``, capped."""
        return min(self.base_delay_s * (2 ** max(prior_failures, 0)), self.max_delay_s)


@dataclass
class RetryDecision:
    state: RetryState
    scheduled: bool
    exhausted: bool
    backoff_seconds: float = 0.0


class RetryEngine:
    """Applies a RetryPolicy to per-lane RetryState documents."""

    def __init__(self, policy: Optional[RetryPolicy] = None) -> None:
        self.policy = policy or RetryPolicy()

    def new_state(self) -> RetryState:
        return RetryState(attempt=0, max_attempts=self.policy.max_attempts, status="waiting")

    def record_failure(
        self,
        state: Optional[RetryState],
        started_at: Optional[str],
        exit_code: Optional[int],
        error: Optional[str],
        now: Optional[datetime] = None,
    ) -> RetryDecision:
        """Record a failed attempt and decide whether another one is scheduled.

        Args:
            state: Current retry state, or None on the lane's first failure.
            started_at: ISO timestamp the failed attempt was launched.
            exit_code: Process exit code, if known.
            error: Error text, if any.
            now: Clock override for tests.

        Returns:
            RetryDecision. ``exhausted`` is True when no retry will follow.
        """
        now = now or utcnow()
        state = state.model_copy(deep=True) if state else self.new_state()
        prior_failures = state.attempt
        state.attempt = min(state.attempt + 1, state.max_attempts)

        if state.attempt >= state.max_attempts:
            state.status = "exhausted"
            state.next_retry_at = None
            backoff = 0.0
        else:
            backoff = self.policy.backoff_seconds(prior_failures)
            state.status = "waiting"
            state.next_retry_at = (now + timedelta(seconds=backoff)).isoformat()

        state.history.append(
            RetryAttempt(
                attempt=prior_failures + 1,
                started_at=started_at or now.isoformat(),
                ended_at=now.isoformat(),
                exit_code=exit_code,
                error=error,
                backoff_seconds=backoff,
            )
        )

        if state.status == "exhausted":
            logger.warning("Retries exhausted after %d/%d attempts", state.attempt, state.max_attempts)
            return RetryDecision(state=state, scheduled=False, exhausted=True)
        return RetryDecision(state=state, scheduled=True, exhausted=False, backoff_seconds=backoff)

    def record_success(self, state: RetryState, started_at: Optional[str], now: Optional[datetime] = None) -> RetryState:
        """Close out a retried attempt that succeeded; the state becomes final."""
        now = now or utcnow()
        state = state.model_copy(deep=True)
        state.history.append(
            RetryAttempt(
                attempt=state.attempt + 1,
                started_at=started_at or now.isoformat(),
                ended_at=now.isoformat(),
                exit_code=0,
            )
        )
        state.next_retry_at = None
        state.status = "succeeded"
        return state

    @staticmethod
    def seconds_until_due(state: RetryState, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds until the scheduled retry, 0 if overdue, None if none is scheduled."""
        if state.status != "waiting":
            return None
        due = parse_iso(state.next_retry_at)
        if due is None:
            return None
        return max((due - (now or utcnow())).total_seconds(), 0.0)

    def is_due(self, state: RetryState, now: Optional[datetime] = None) -> bool:
        remaining = self.seconds_until_due(state, now)
        return remaining is not None and remaining <= 0

    @staticmethod
    def mark_retrying(state: RetryState) -> RetryState:
        if state.status != "waiting":
            raise ValueError(f"cannot retry from status {state.status!r}")
        state = state.model_copy(deep=True)
        state.status = "retrying"
        state.next_retry_at = None
        return state
