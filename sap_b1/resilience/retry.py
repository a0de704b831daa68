"""
sap_b1.resilience.retry - Retry with exponential backoff
========================================================

Runs one logical call up to ``RetryConfig.times`` attempts:

- connect failures and statuses in ``RetryConfig.when`` are retried
- every other response is returned to the caller unchanged
- the circuit breaker is consulted before each attempt and told about
  each outcome

The attempt loop is a ``tenacity.Retrying``; backoff is computed here so
that a server-supplied ``Retry-After`` can replace it.
"""

from __future__ import annotations

from typing import Callable, Mapping, Optional
import logging
import random
import time

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
)

from sap_b1.core.config import RetryConfig
from sap_b1.core.errors import CircuitOpenError, ConnectionFailure, RetryExhaustedError, ServerError
from sap_b1.core.transport import TransportResponse, extract_sap_error
from sap_b1.resilience.circuit_breaker import CircuitBreaker

logger = logging.getLogger("sap_b1.retry")


def parse_retry_after(headers: Mapping[str, str]) -> Optional[float]:
    """Numeric ``Retry-After`` header in seconds; HTTP dates are ignored."""
    raw = headers.get("Retry-After") if headers else None
    if raw is None:
        return None
    try:
        value = float(str(raw).strip())
    except ValueError:
        return None
    return value if value >= 0 else None


class RetryExecutor:
    """
    Parameters
    ----------
    config : RetryConfig
        Attempt budget, delays and retryable statuses
    breaker : CircuitBreaker, optional
        Consulted before every attempt; receives every outcome
    sleep : callable
        Blocking sleep, injectable for tests
    rng : callable
        Returns a float in [0, 1) for jitter

    Examples
    --------
    >>> executor = RetryExecutor(RetryConfig(times=3), breaker)
    >>> response = executor.execute(lambda: http.request("GET", url), scope="Items")
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.config = config or RetryConfig()
        self.breaker = breaker
        self._sleep = sleep
        self._rng = rng

    def compute_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Delay in seconds before attempt ``attempt + 1``.

        ``min(max_delay_ms, sleep_ms * 2**(attempt-1))`` plus up to
        ``jitter`` of that as random extra. A server-supplied
        ``Retry-After`` replaces the computed delay, still capped.
        """
        cfg = self.config
        if retry_after is not None and cfg.honor_retry_after:
            return min(cfg.max_delay_ms, retry_after * 1000.0) / 1000.0
        base = min(cfg.max_delay_ms, cfg.sleep_ms * 2 ** max(0, attempt - 1))
        return (base + base * cfg.jitter * self._rng()) / 1000.0

    def is_retryable_status(self, status: int) -> bool:
        return status in self.config.when

    def execute(
        self,
        call: Callable[[], TransportResponse],
        scope: str = "*",
        description: str = "",
    ) -> TransportResponse:
        """
        Run ``call`` until it yields a non-retryable response.

        Returns
        -------
        TransportResponse
            The first response whose status is not retryable (including 4xx)

        Raises
        ------
        CircuitOpenError
            If the breaker blocks ``scope``; no attempt is consumed
        RetryExhaustedError
            If every attempt failed retryably; ``last_error`` holds the
            final ``ConnectionFailure`` or ``ServerError``
        """
        times = max(1, self.config.times)
        what = description or scope

        def log_retry(retry_state: RetryCallState) -> None:
            logger.warning(
                "attempt %s/%s for %s failed (%s), retrying in %.2fs",
                retry_state.attempt_number, times, what,
                _failure_name(retry_state), retry_state.next_action.sleep,
            )

        def give_up(retry_state: RetryCallState) -> TransportResponse:
            last_error = _last_error(retry_state)
            logger.error("giving up %s after %s attempt(s): %s", what, retry_state.attempt_number, last_error)
            raise RetryExhaustedError(retry_state.attempt_number, last_error, description) from last_error

        retrying = Retrying(
            stop=stop_after_attempt(times),
            wait=self._wait,
            retry=(
                retry_if_exception_type(ConnectionFailure)
                | retry_if_result(lambda response: self.is_retryable_status(response.status))
            ),
            sleep=self._sleep,
            before_sleep=log_retry,
            retry_error_callback=give_up,
        )
        return retrying(self._attempt, call, scope)

    def _attempt(self, call: Callable[[], TransportResponse], scope: str) -> TransportResponse:
        if self.breaker is not None and not self.breaker.is_available(scope):
            raise CircuitOpenError(scope, self.breaker.retry_after(scope))
        try:
            response = call()
        except ConnectionFailure:
            self._record(scope, failed=True)
            raise
        self._record(scope, failed=response.server_error)
        return response

    def _wait(self, retry_state: RetryCallState) -> float:
        retry_after = None
        outcome = retry_state.outcome
        if outcome is not None and not outcome.failed:
            retry_after = parse_retry_after(outcome.result().headers)
        return self.compute_delay(retry_state.attempt_number, retry_after)

    def _record(self, scope: str, failed: bool) -> None:
        if self.breaker is None:
            return
        if failed:
            self.breaker.record_failure(scope)
        else:
            self.breaker.record_success(scope)


def _last_error(retry_state: RetryCallState) -> BaseException:
    outcome = retry_state.outcome
    if outcome.failed:
        return outcome.exception()
    response = outcome.result()
    code, _ = extract_sap_error(response.json())
    return ServerError(response.status, response.text, response.url, dict(response.headers), code)


def _failure_name(retry_state: RetryCallState) -> str:
    outcome = retry_state.outcome
    if outcome.failed:
        return type(outcome.exception()).__name__
    return f"status {outcome.result().status}"
