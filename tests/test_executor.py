import asyncio

import pytest

from radar_gateway.errors import (
    RADAR_E_PERMISSION_DENIED,
    RADAR_E_TOOL_ERROR,
    RADAR_E_TOOL_TIMEOUT,
    RADAR_E_TOOL_UNKNOWN,
    RADAR_E_VALIDATION_FAILED,
    GatewayError,
    ToolTimeoutError,
    is_timeout_error,
)
from radar_gateway.executor import (
    TRUNCATION_NOTE,
    BoundedExecutor,
    CallableToolConnector,
    ToolConnector,
    run_with_deadline,
    run_with_deadline_and_retry,
    truncate_tool_result,
)
from radar_gateway.metrics import TOOL_EXECUTION_DURATION, TOOL_TIMEOUTS


class StaticPermissions:
    def __init__(self, allowed: bool):
        self.allowed = allowed
        self.checked = []

    async def check(self, caller_id, tool_name):
        self.checked.append((caller_id, tool_name))
        return self.allowed


async def _sleep_then(value, seconds):
    await asyncio.sleep(seconds)
    return value


# ---------------------------
# run_with_deadline
# ---------------------------

@pytest.mark.asyncio
async def test_result_propagates_before_deadline():
    assert await run_with_deadline(_sleep_then("ok", 0.01), 1000) == "ok"


@pytest.mark.asyncio
async def test_accepts_zero_arg_callable():
    assert await run_with_deadline(lambda: _sleep_then(5, 0), 1000) == 5


@pytest.mark.asyncio
async def test_operation_error_propagates_unchanged():
    async def _fail():
        raise ValueError("bad input")

    with pytest.raises(ValueError, match="bad input"):
        await run_with_deadline(_fail(), 1000)


@pytest.mark.asyncio
async def test_deadline_raises_timeout_kind():
    with pytest.raises(ToolTimeoutError) as ei:
        await run_with_deadline(_sleep_then("late", 0.5), 50, message="Slow op")

    err = ei.value
    assert is_timeout_error(err)
    assert err.code == RADAR_E_TOOL_TIMEOUT
    assert err.timeout_ms == 50
    assert "Slow op (50ms)" in err.message


@pytest.mark.asyncio
async def test_timeout_cancels_abandoned_task_by_default():
    state = {"cancelled": False, "finished": False}

    async def _slow():
        try:
            await asyncio.sleep(1)
            state["finished"] = True
        except asyncio.CancelledError:
            state["cancelled"] = True
            raise

    with pytest.raises(ToolTimeoutError):
        await run_with_deadline(_slow(), 20)
    await asyncio.sleep(0.01)
    assert state == {"cancelled": True, "finished": False}


@pytest.mark.asyncio
async def test_timeout_without_cancel_lets_operation_finish():
    state = {"finished": False}

    async def _slow():
        await asyncio.sleep(0.05)
        state["finished"] = True
        raise RuntimeError("late failure is retrieved, not reported")

    with pytest.raises(ToolTimeoutError):
        await run_with_deadline(_slow(), 10, cancel_on_timeout=False)
    await asyncio.sleep(0.1)
    assert state["finished"] is True


@pytest.mark.asyncio
async def test_retry_only_on_timeout():
    attempts = {"n": 0}

    async def _eventually():
        attempts["n"] += 1
        if attempts["n"] < 3:
            await asyncio.sleep(1)
        return "third time lucky"

    result = await run_with_deadline_and_retry(_eventually, 20, max_retries=3, retry_delay_ms=1)
    assert result == "third time lucky"
    assert attempts["n"] == 3

    calls = {"n": 0}

    async def _broken():
        calls["n"] += 1
        raise KeyError("nope")

    with pytest.raises(KeyError):
        await run_with_deadline_and_retry(_broken, 20, max_retries=3, retry_delay_ms=1)
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_retry_gives_up_with_last_timeout():
    with pytest.raises(ToolTimeoutError, match="Attempt 2/2"):
        await run_with_deadline_and_retry(lambda: asyncio.sleep(1), 10, max_retries=1, retry_delay_ms=1)


def test_truncate_tool_result():
    text, cut = truncate_tool_result("short")
    assert (text, cut) == ("short", False)

    text, cut = truncate_tool_result("r" * 20000)
    assert cut
    assert text == "r" * 9900 + TRUNCATION_NOTE


# ---------------------------
# BoundedExecutor
# ---------------------------

def _executor(allowed=True, audit=None, metrics=None, timeout_ms=1000, **tools):
    ex = BoundedExecutor(StaticPermissions(allowed), audit=audit, metrics=metrics, timeout_ms=timeout_ms)
    for name, fn in tools.items():
        ex.register(CallableToolConnector(name, fn))
    return ex


@pytest.mark.asyncio
async def test_successful_execution_is_reported(recording_audit, metrics):
    async def weather(args):
        return {"city": args["city"], "temp_c": 21}

    ex = _executor(audit=recording_audit, metrics=metrics, weather=weather)
    res = await ex.execute(1, "weather", {"city": "Lisbon"})

    assert res.result == {"city": "Lisbon", "temp_c": 21}
    assert res.duration_ms >= 0

    (name, args, _), = recording_audit.calls
    assert name == "tool_execution"
    assert args[0] == 1 and args[1] == "weather" and args[3] is True

    samples = metrics.samples(TOOL_EXECUTION_DURATION)
    assert len(samples) == 1
    assert samples[0].tags == {"toolName": "weather", "success": "true"}


@pytest.mark.asyncio
async def test_timeout_is_reported_distinctly(recording_audit, metrics):
    async def slow(args):
        await asyncio.sleep(1)

    ex = _executor(audit=recording_audit, metrics=metrics, timeout_ms=30, slow=slow)
    with pytest.raises(ToolTimeoutError):
        await ex.execute(2, "slow", {})

    assert recording_audit.names() == ["tool_timeout", "tool_execution"]
    assert recording_audit.find("tool_timeout")[0][1] == (2, "slow", 30)
    assert recording_audit.find("tool_execution")[0][1][3] is False
    assert metrics.samples(TOOL_TIMEOUTS)[0].tags == {"toolName": "slow"}
    assert metrics.samples(TOOL_EXECUTION_DURATION)[0].tags == {"toolName": "slow", "success": "false"}
    assert not recording_audit.find("tool_error")


@pytest.mark.asyncio
async def test_tool_exception_becomes_sanitized_tool_error(recording_audit, metrics):
    async def broken(args):
        raise RuntimeError("  upstream\x00 exploded  ")

    ex = _executor(audit=recording_audit, metrics=metrics, broken=broken)
    with pytest.raises(GatewayError) as ei:
        await ex.execute(3, "broken", {})

    assert ei.value.code == RADAR_E_TOOL_ERROR
    assert ei.value.message == "upstream exploded"
    assert recording_audit.names() == ["tool_error", "tool_execution"]
    assert recording_audit.find("tool_error")[0][1] == (3, "broken", "  upstream\x00 exploded  ")
    assert not metrics.samples(TOOL_TIMEOUTS)
    assert metrics.samples(TOOL_EXECUTION_DURATION)[0].tags["success"] == "false"


@pytest.mark.asyncio
async def test_connector_reported_failure(recording_audit):
    class Refusing(ToolConnector):
        async def invoke(self, arguments):
            return False, None, "quota exceeded"

    ex = BoundedExecutor(StaticPermissions(True), audit=recording_audit)
    ex.register(Refusing("search"))
    with pytest.raises(GatewayError) as ei:
        await ex.execute(4, "search", {"q": "x"})
    assert ei.value.code == RADAR_E_TOOL_ERROR
    assert ei.value.message == "quota exceeded"


@pytest.mark.asyncio
async def test_permission_denied_never_invokes_tool(recording_audit):
    called = []

    async def secret(args):
        called.append(args)

    ex = _executor(allowed=False, audit=recording_audit, secret=secret)
    with pytest.raises(GatewayError) as ei:
        await ex.execute(5, "secret", {})

    assert ei.value.code == RADAR_E_PERMISSION_DENIED
    assert ei.value.http_status == 403
    assert called == []
    assert ex.permissions.checked == [(5, "secret")]


@pytest.mark.asyncio
async def test_severe_tool_arguments_rejected_before_permission(recording_audit, metrics):
    async def shell(args):
        return "ran"

    ex = _executor(audit=recording_audit, metrics=metrics, shell=shell)
    with pytest.raises(GatewayError) as ei:
        await ex.execute(6, "shell", {"cmd": "`rm -rf /`"})

    assert ei.value.code == RADAR_E_VALIDATION_FAILED
    assert recording_audit.names() == ["validation_failure"]
    assert metrics.samples("validation_failures")
    assert ex.permissions.checked == []


@pytest.mark.asyncio
async def test_unknown_tool():
    ex = _executor()
    with pytest.raises(GatewayError) as ei:
        await ex.execute(7, "nope", {})
    assert ei.value.code == RADAR_E_TOOL_UNKNOWN
