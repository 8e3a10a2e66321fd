"""Retry, rate budget and circuit breaker shared by every remote call."""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout

import requests
from web3.exceptions import ContractLogicError

from holder_ledger.errors import (
    ConfigurationError,
    DataError,
    ProviderError,
    ProviderTimeout,
    RateLimitedError,
)

logger = logging.getLogger(__name__)

# Deterministic failures: retrying cannot change the answer.
NON_TRANSIENT = (ConfigurationError, DataError, ContractLogicError)


def is_rate_limit(error):
    if isinstance(error, RateLimitedError):
        return True
    response = getattr(error, "response", None)
    if isinstance(error, requests.HTTPError) and response is not None and response.status_code == 429:
        return True
    msg = str(error).lower()
    return "429" in msg or "rate limit" in msg or "too many requests" in msg


class RateBudget:
    """Request-cost counter that resets every `window` seconds.

    `acquire(cost)` blocks the caller until the cost fits in the current
    window.
    """

    def __init__(self, max_cost, window=1.0, clock=time.monotonic, sleep=time.sleep):
        self.max_cost = max_cost
        self.window = window
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._window_start = clock()
        self._used = 0

    @property
    def used(self):
        return self._used

    def acquire(self, cost=1):
        if not self.max_cost or self.max_cost <= 0:
            return
        cost = min(cost, self.max_cost)
        while True:
            with self._lock:
                now = self._clock()
                if now - self._window_start >= self.window:
                    self._window_start = now
                    self._used = 0
                if self._used + cost <= self.max_cost:
                    self._used += cost
                    return
                wait = self.window - (now - self._window_start)
            logger.debug(f"Rate budget exhausted ({self._used}/{self.max_cost}), waiting {wait:.2f}s")
            self._sleep(max(wait, 0))


class CircuitBreaker:
    """Pauses every caller for `cooldown` seconds after `threshold`
    consecutive timeouts."""

    def __init__(self, threshold=5, cooldown=30.0, clock=time.monotonic, sleep=time.sleep):
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._timeouts = 0
        self._open_until = 0.0

    @property
    def is_open(self):
        return self._clock() < self._open_until

    def wait(self):
        with self._lock:
            remaining = self._open_until - self._clock()
        if remaining > 0:
            logger.warning(f"Circuit open, pausing provider calls for {remaining:.1f}s")
            self._sleep(remaining)

    def record_timeout(self):
        with self._lock:
            self._timeouts += 1
            if self._timeouts >= self.threshold:
                self._open_until = self._clock() + self.cooldown
                self._timeouts = 0
                logger.error(f"{self.threshold} consecutive timeouts, circuit open for {self.cooldown}s")

    def record_success(self):
        with self._lock:
            self._timeouts = 0


class Retrier:
    def __init__(self, retries=3, base_delay=1.0, max_delay=30.0, timeout=30.0,
                 budget=None, breaker=None, sleep=time.sleep, max_workers=16):
        self.retries = retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self.budget = budget
        self.breaker = breaker
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="provider-call")

    @classmethod
    def from_settings(cls, settings):
        return cls(
            retries=settings.retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            timeout=settings.call_timeout,
            budget=RateBudget(settings.rate_budget),
            breaker=CircuitBreaker(settings.circuit_threshold, settings.circuit_cooldown),
        )

    def delay_for(self, attempt, base_delay=None, backoff=True):
        base = self.base_delay if base_delay is None else base_delay
        if not backoff:
            return min(base, self.max_delay)
        return min(base * 2 ** (attempt - 1), self.max_delay)

    def execute(self, operation, retries=None, base_delay=None, backoff=True, timeout=None, cost=1, label="call"):
        """Run `operation()` with up to `retries` retries.

        Each attempt is bounded by `timeout` seconds and raises
        ProviderTimeout when it elapses. Errors from NON_TRANSIENT are raised
        on the first attempt; anything else is retried and finally raised as
        a ProviderError.
        """
        retries = self.retries if retries is None else retries
        timeout = self.timeout if timeout is None else timeout
        last_error = None

        for attempt in range(1, retries + 2):
            if self.breaker:
                self.breaker.wait()
            if self.budget:
                self.budget.acquire(cost)
            try:
                result = self._call(operation, timeout)
            except ProviderTimeout as e:
                if self.breaker:
                    self.breaker.record_timeout()
                last_error = e
            except NON_TRANSIENT:
                raise
            except Exception as e:
                last_error = e
            else:
                if self.breaker:
                    self.breaker.record_success()
                return result

            if attempt > retries:
                break
            delay = self.delay_for(attempt, base_delay, backoff)
            logger.warning(f"{label}: attempt {attempt}/{retries + 1} failed: {last_error}; retrying in {delay:.1f}s")
            self._sleep(delay)

        logger.error(f"{label}: giving up after {retries + 1} attempts: {last_error}")
        if isinstance(last_error, ProviderError):
            raise last_error
        if is_rate_limit(last_error):
            raise RateLimitedError(f"{label}: {last_error}") from last_error
        raise ProviderError(f"{label}: {last_error}") from last_error

    def _call(self, operation, timeout):
        try:
            if not timeout:
                return operation()
            future = self._executor.submit(operation)
            try:
                return future.result(timeout=timeout)
            except FutureTimeout:
                future.cancel()
                raise ProviderTimeout(f"no answer within {timeout}s") from None
        except requests.Timeout as e:
            raise ProviderTimeout(str(e)) from e

    def shutdown(self):
        self._executor.shutdown(wait=False)
