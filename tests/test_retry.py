import pytest
import requests
from prometheus_client import REGISTRY

from followbot.config.loader import FetchConfig
from followbot.errors import TransientSourceError
from followbot.feeds.retry import RetryPolicy, is_retryable


def _retries(source):
    return REGISTRY.get_sample_value("feed_retries_total", {"source": source}) or 0.0


def _http_error(status):
    resp = requests.Response()
    resp.status_code = status
    return requests.HTTPError(f"HTTP {status}", response=resp)


def test_retryable_classification():
    assert is_retryable(TransientSourceError("busy"))
    assert is_retryable(requests.ConnectionError())
    assert is_retryable(requests.Timeout())
    assert is_retryable(_http_error(429))
    assert is_retryable(_http_error(503))
    assert not is_retryable(_http_error(404))
    assert not is_retryable(ValueError("bad"))


def test_retries_transient_errors_then_succeeds():
    sleeps = []
    policy = RetryPolicy(max_attempts=4, backoff_initial_ms=100, backoff_max_ms=1_000, sleep=sleeps.append)
    calls = {"n": 0}

    def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise TransientSourceError("rate limited", source="test", status=429)
        return "ok"

    before = _retries("retry_test_ok")
    assert policy.call("retry_test_ok", flaky) == "ok"
    assert calls["n"] == 3
    assert len(sleeps) == 2
    assert all(0 <= s <= 1.0 for s in sleeps)
    assert _retries("retry_test_ok") == before + 2


def test_gives_up_after_max_attempts():
    policy = RetryPolicy(max_attempts=3, sleep=lambda s: None)
    calls = {"n": 0}

    def down():
        calls["n"] += 1
        raise requests.ConnectionError("refused")

    with pytest.raises(requests.ConnectionError):
        policy.call("retry_test_down", down)
    assert calls["n"] == 3


def test_non_retryable_error_propagates_immediately():
    policy = RetryPolicy(max_attempts=5, sleep=lambda s: None)
    calls = {"n": 0}

    def missing():
        calls["n"] += 1
        raise _http_error(404)

    with pytest.raises(requests.HTTPError):
        policy.call("retry_test_404", missing)
    assert calls["n"] == 1


def test_from_config():
    cfg = FetchConfig(max_attempts=2, backoff_initial_ms=10, backoff_max_ms=20)
    policy = RetryPolicy.from_config(cfg, sleep=lambda s: None)
    assert (policy.max_attempts, policy.backoff_initial_ms, policy.backoff_max_ms) == (2, 10, 20)
