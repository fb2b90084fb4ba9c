import pytest

from streamvault.core.errors import ProviderUnavailable
from streamvault.core.retry import call_with_retries
from streamvault.features.billing.provider import ProviderRejectedError, ProviderTransientError


def _flaky(failures, exc):
    calls = []

    def fn():
        calls.append(1)
        if len(calls) <= failures:
            raise exc
        return "ok"

    return fn, calls


def test_transient_failures_are_retried():
    fn, calls = _flaky(2, ProviderTransientError("timeout"))

    assert call_with_retries(fn, retry_on=(ProviderTransientError,), max_attempts=3, max_wait=0) == "ok"
    assert len(calls) == 3


def test_exhausted_retries_become_provider_unavailable():
    fn, calls = _flaky(5, ProviderTransientError("timeout"))

    with pytest.raises(ProviderUnavailable) as exc_info:
        call_with_retries(fn, retry_on=(ProviderTransientError,), max_attempts=3, max_wait=0)

    assert len(calls) == 3
    assert exc_info.value.status_code == 503
    assert isinstance(exc_info.value.__cause__, ProviderTransientError)


def test_permanent_errors_are_not_retried():
    fn, calls = _flaky(1, ProviderRejectedError("card declined"))

    with pytest.raises(ProviderRejectedError):
        call_with_retries(fn, retry_on=(ProviderTransientError,), max_attempts=3, max_wait=0)
    assert len(calls) == 1
