import asyncio
import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from radar_gateway.metrics import RATE_LIMIT_VIOLATIONS
from radar_gateway.ratelimit import (
    SCOPE_GLOBAL,
    SCOPE_USER,
    AdmissionController,
    TokenBucket,
    parse_rate_limit,
)


def test_parse_rate_limit_units():
    assert parse_rate_limit("30/m") == (30.0, 0.5)
    assert parse_rate_limit("10/s") == (10.0, 10.0)
    assert parse_rate_limit("3600/h") == (3600.0, 1.0)

    for bad in ("", "30", "0/m", "30/week"):
        with pytest.raises(ValueError):
            parse_rate_limit(bad)


def test_bucket_tokens_stay_within_bounds():
    rng = random.Random(7)
    bucket = TokenBucket.new(30.0, 0.5, now=0.0)
    now = 0.0
    for _ in range(2000):
        now += rng.choice([0.0, 0.01, 0.5, 3.0, 120.0])
        if rng.random() < 0.7:
            bucket.try_consume(now)
        else:
            bucket.refill(now)
        assert 0.0 <= bucket.tokens <= bucket.capacity


def test_bucket_ignores_clock_going_backwards():
    bucket = TokenBucket.new(5.0, 1.0, now=100.0)
    bucket.try_consume(100.0)
    bucket.refill(50.0)
    assert bucket.tokens == pytest.approx(4.0)


@pytest.mark.asyncio
async def test_thirty_first_message_is_rejected_with_retry_after(clock):
    ctl = AdmissionController(clock=clock)

    for _ in range(30):
        assert (await ctl.try_admit(42)).allowed

    res = await ctl.try_admit(42)
    assert not res.allowed
    assert res.scope == SCOPE_USER
    assert res.retry_after_seconds >= 1
    # ceil((1 - 0) / 0.5)
    assert res.retry_after_seconds == 2


@pytest.mark.asyncio
async def test_five_quick_messages_leave_about_25_tokens(clock):
    ctl = AdmissionController(clock=clock)
    for _ in range(5):
        assert (await ctl.try_admit(7)).allowed
        clock.advance(0.1)

    assert ctl.bucket_tokens(7) == pytest.approx(25.0, abs=0.5)


@pytest.mark.asyncio
async def test_tokens_refill_over_time(clock):
    ctl = AdmissionController(user_capacity=1, user_refill_per_sec=0.5, clock=clock)
    assert (await ctl.try_admit(1)).allowed
    assert not (await ctl.try_admit(1)).allowed

    clock.advance(2.0)
    assert (await ctl.try_admit(1)).allowed


@pytest.mark.asyncio
async def test_global_rejection_does_not_touch_user_bucket(clock):
    ctl = AdmissionController(global_capacity=2, global_refill_per_sec=0.01, clock=clock)
    assert (await ctl.try_admit(1)).allowed
    assert (await ctl.try_admit(1)).allowed

    res = await ctl.try_admit(2)
    assert not res.allowed
    assert res.scope == SCOPE_GLOBAL
    assert res.retry_after_seconds >= 1
    # Caller 2's bucket was never charged (or even created).
    assert ctl.bucket_tokens(2) is None
    assert ctl.bucket_tokens(1) == pytest.approx(28.0)


@pytest.mark.asyncio
async def test_user_rejection_does_not_consume_global_token(clock):
    ctl = AdmissionController(user_capacity=1, user_refill_per_sec=0.01, global_capacity=10, clock=clock)
    assert (await ctl.try_admit(1)).allowed
    assert not (await ctl.try_admit(1)).allowed
    assert not (await ctl.try_admit(1)).allowed

    assert ctl.stats()["global_tokens"] == pytest.approx(9.0)


@pytest.mark.asyncio
async def test_rejection_is_audited_and_counted(clock, recording_audit, metrics):
    ctl = AdmissionController(user_capacity=1, user_refill_per_sec=0.5, audit=recording_audit, metrics=metrics, clock=clock)
    await ctl.try_admit(9)
    await ctl.try_admit(9)

    calls = recording_audit.find("rate_limit_exceeded")
    assert len(calls) == 1
    assert calls[0][1] == (9, SCOPE_USER, 2)

    samples = metrics.samples(RATE_LIMIT_VIOLATIONS)
    assert len(samples) == 1
    assert samples[0].tags == {"scope": "user"}


@pytest.mark.asyncio
async def test_internal_error_fails_open(clock, metrics, monkeypatch, caplog):
    ctl = AdmissionController(metrics=metrics, clock=clock)

    def _boom(caller_id):
        raise RuntimeError("clock exploded")

    monkeypatch.setattr(ctl, "_decide", _boom)

    with caplog.at_level("ERROR", logger="radar_gateway.ratelimit"):
        res = await ctl.try_admit(3)

    assert res.allowed
    assert res.failed_open
    assert "failing open" in caplog.text
    assert metrics.samples("errors", tags={"component": "admission"})


@pytest.mark.asyncio
async def test_user_buckets_are_lru_bounded(clock):
    ctl = AdmissionController(max_keys=2, clock=clock)
    await ctl.try_admit(1)
    await ctl.try_admit(2)
    await ctl.try_admit(1)  # 1 is now most recently used
    await ctl.try_admit(3)

    assert ctl.stats()["user_bucket_count"] == 2
    assert ctl.bucket_tokens(2) is None
    assert ctl.bucket_tokens(1) is not None


def test_from_config_uses_config_values(clock):
    from radar_gateway.config import GatewayConfig

    cfg = GatewayConfig(user_capacity=5, user_refill_per_sec=1.0, global_capacity=7, global_refill_per_sec=2.0)
    ctl = AdmissionController.from_config(cfg, clock=clock)
    assert ctl.stats()["global_tokens"] == pytest.approx(7.0)


def test_invalid_rates_rejected():
    with pytest.raises(ValueError):
        AdmissionController(user_capacity=0)
    with pytest.raises(ValueError):
        AdmissionController(global_refill_per_sec=0)


def test_concurrent_admission_grants_exactly_capacity(clock):
    ctl = AdmissionController(
        user_capacity=20,
        user_refill_per_sec=0.001,
        global_capacity=1000,
        global_refill_per_sec=1,
        clock=clock,
    )

    def _admit(_):
        return asyncio.run(ctl.try_admit(7)).allowed

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(_admit, range(60)))

    assert results.count(True) == 20
    assert 0 <= ctl.bucket_tokens(7) <= 20
    assert ctl.stats()["global_tokens"] == pytest.approx(980)
