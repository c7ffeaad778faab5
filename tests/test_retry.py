from __future__ import annotations

import asyncio

import pytest

from caption_localizer.errors import MalformedResponse, ProviderError, ProviderTimeout
from caption_localizer.utils.retry import RetryPolicy, is_retryable, retry_call, retry_call_async

FAST = RetryPolicy(max_attempts=3, base_delay_s=0.0, factor=2.0, cap_s=0.0)


def test_delay_is_capped_exponential() -> None:
    p = RetryPolicy(max_attempts=5, base_delay_s=2.0, factor=2.0, cap_s=10.0)
    assert [p.delay_for(n) for n in range(1, 6)] == [2.0, 4.0, 8.0, 10.0, 10.0]


def test_with_overrides_ignores_none() -> None:
    p = FAST.with_overrides(max_attempts=4, base_delay_s=None)
    assert p.max_attempts == 4
    assert p.base_delay_s == 0.0


def test_error_classification() -> None:
    assert is_retryable(ProviderTimeout("slow"))
    assert is_retryable(ProviderError("503", status_code=503))
    assert not is_retryable(ProviderError("400", status_code=400, retryable=False))
    assert not is_retryable(MalformedResponse("bad json"))
    assert not is_retryable(ValueError("plain"))


def test_retries_until_success() -> None:
    calls = {"n": 0}
    seen: list[tuple[int, float]] = []

    def _fn() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise ProviderTimeout("slow")
        return "ok"

    out = retry_call(_fn, policy=FAST, on_retry=lambda a, d, ex: seen.append((a, d)))
    assert out == "ok"
    assert calls["n"] == 3
    assert seen == [(1, 0.0), (2, 0.0)]


def test_exhaustion_reraises_last_error_and_gives_up_once() -> None:
    retried: list[int] = []
    gave_up: list[int] = []

    def _fn() -> None:
        raise ProviderError("503", status_code=503)

    with pytest.raises(ProviderError):
        retry_call(
            _fn,
            policy=FAST,
            on_retry=lambda a, d, ex: retried.append(a),
            on_giveup=lambda a, ex: gave_up.append(a),
        )
    # one observation per failed attempt
    assert retried + gave_up == [1, 2, 3]


def test_non_retryable_error_is_not_retried() -> None:
    calls = {"n": 0}

    async def _fn() -> None:
        calls["n"] += 1
        raise MalformedResponse("bad json")

    with pytest.raises(MalformedResponse):
        asyncio.run(retry_call_async(_fn, policy=FAST, on_retry=lambda *a: None))
    assert calls["n"] == 1


def test_failing_hook_does_not_change_outcome() -> None:
    calls = {"n": 0}

    async def _fn() -> int:
        calls["n"] += 1
        if calls["n"] == 1:
            raise ProviderTimeout("slow")
        return 5

    def _bad_hook(*_a) -> None:
        raise RuntimeError("observer broke")

    assert asyncio.run(retry_call_async(_fn, policy=FAST, on_retry=_bad_hook)) == 5
