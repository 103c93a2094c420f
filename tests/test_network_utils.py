"""Tests for retrieval_core.network_utils module."""

from __future__ import annotations

from unittest.mock import Mock

import pytest
import requests

from retrieval_core.network_utils import is_connection_error, is_retryable_http_exception, with_retries


def _http_error(status_code: int | None) -> requests.exceptions.HTTPError:
    if status_code is None:
        return requests.exceptions.HTTPError(response=None)
    response = Mock()
    response.status_code = status_code
    return requests.exceptions.HTTPError(response=response)


class TestIsRetryableHttpException:
    """Test is_retryable_http_exception function."""

    def test_5xx_server_error_is_retryable(self) -> None:
        for status_code in [500, 502, 503, 504]:
            assert is_retryable_http_exception(_http_error(status_code)) is True

    def test_429_rate_limit(self) -> None:
        assert is_retryable_http_exception(_http_error(429)) is True
        assert is_retryable_http_exception(_http_error(429), retry_on_429=False) is False

    def test_4xx_client_errors_not_retryable(self) -> None:
        for status_code in [400, 401, 403, 404]:
            assert is_retryable_http_exception(_http_error(status_code)) is False, f"Status {status_code}"

    def test_http_error_without_response(self) -> None:
        assert is_retryable_http_exception(_http_error(None)) is False

    def test_connection_errors_are_retryable(self) -> None:
        assert is_retryable_http_exception(requests.exceptions.ConnectionError()) is True
        assert is_retryable_http_exception(requests.exceptions.Timeout()) is True

    def test_other_exceptions_not_retryable(self) -> None:
        assert is_retryable_http_exception(ValueError("bad json")) is False


class TestIsConnectionError:
    """Test is_connection_error function."""

    def test_transport_failures(self) -> None:
        assert is_connection_error(requests.exceptions.ConnectionError())
        assert is_connection_error(requests.exceptions.ReadTimeout())

    def test_http_error_is_not_a_connection_error(self) -> None:
        assert not is_connection_error(_http_error(503))


class TestWithRetries:
    """Test with_retries function."""

    def test_success_first_attempt(self) -> None:
        sleeps: list[float] = []
        assert with_retries(lambda: "ok", sleep=sleeps.append) == "ok"
        assert sleeps == []

    def test_retries_with_exponential_backoff(self) -> None:
        sleeps: list[float] = []
        fn = Mock(side_effect=[requests.exceptions.ConnectionError(), _http_error(503), "ok"])

        assert with_retries(fn, max_attempts=3, backoff_base=2.0, sleep=sleeps.append) == "ok"
        assert fn.call_count == 3
        assert sleeps == [1.0, 2.0]

    def test_backoff_capped(self) -> None:
        sleeps: list[float] = []
        fn = Mock(side_effect=[_http_error(500)] * 3 + ["ok"])

        with_retries(fn, max_attempts=4, backoff_base=10.0, backoff_max=15.0, sleep=sleeps.append)

        assert sleeps == [1.0, 10.0, 15.0]

    def test_raises_after_max_attempts(self) -> None:
        fn = Mock(side_effect=requests.exceptions.ConnectionError("offline"))
        with pytest.raises(requests.exceptions.ConnectionError):
            with_retries(fn, max_attempts=2, sleep=lambda _: None)
        assert fn.call_count == 2

    def test_non_retryable_raises_immediately(self) -> None:
        fn = Mock(side_effect=_http_error(404))
        with pytest.raises(requests.exceptions.HTTPError):
            with_retries(fn, max_attempts=5, sleep=lambda _: None)
        assert fn.call_count == 1

    def test_on_retry_callback(self) -> None:
        calls: list[tuple[int, str]] = []
        fn = Mock(side_effect=[requests.exceptions.Timeout("slow"), "ok"])

        with_retries(fn, on_retry=lambda attempt, exc: calls.append((attempt, str(exc))), sleep=lambda _: None)

        assert calls == [(1, "slow")]
