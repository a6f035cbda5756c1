from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional, TypeVar

import requests
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_random_exponential

from ..config.loader import FetchConfig
from ..errors import TransientSourceError
from ..metrics.ledger import get_feed_retries_total

log = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def is_retryable(exc: BaseException) -> bool:
    """429/5xx, connection errors and timeouts are retryable; other errors are not."""
    if isinstance(exc, TransientSourceError):
        return True
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return exc.response.status_code == 429 or exc.response.status_code >= 500
    return False


class RetryPolicy:
    """Shared retry policy for every external fetch (jittered exponential backoff)."""

    def __init__(
        self,
        max_attempts: int = 4,
        backoff_initial_ms: int = 500,
        backoff_max_ms: int = 10_000,
        retryable: Callable[[BaseException], bool] = is_retryable,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_initial_ms = int(backoff_initial_ms)
        self.backoff_max_ms = int(backoff_max_ms)
        self.retryable = retryable
        self.sleep = sleep
        self._retries = get_feed_retries_total()

    @classmethod
    def from_config(cls, cfg: FetchConfig, **kwargs) -> "RetryPolicy":
        return cls(
            max_attempts=cfg.max_attempts,
            backoff_initial_ms=cfg.backoff_initial_ms,
            backoff_max_ms=cfg.backoff_max_ms,
            **kwargs,
        )

    def _before_sleep(self, source: str) -> Callable[[RetryCallState], None]:
        def _hook(state: RetryCallState) -> None:
            self._retries.labels(source).inc()
            exc: Optional[BaseException] = state.outcome.exception() if state.outcome else None
            log.warning("retrying %s (attempt %d/%d): %s", source, state.attempt_number, self.max_attempts, exc)
        return _hook

    def call(self, source: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run `fn` under the policy; the last exception propagates once attempts run out."""
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_random_exponential(
                multiplier=self.backoff_initial_ms / 1000.0,
                max=self.backoff_max_ms / 1000.0,
            ),
            retry=retry_if_exception(self.retryable),
            before_sleep=self._before_sleep(source),
            sleep=self.sleep,
            reraise=True,
        )
        return retrying(fn, *args, **kwargs)
