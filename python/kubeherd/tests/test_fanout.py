import asyncio

import pytest

from kubeherd.utils.fanout import FanOutError, SyncMap, fan_out, run_sequential


def test_one_failure_does_not_stop_siblings():
    executed = []

    async def op(host):
        executed.append(host)
        if host == "B":
            raise RuntimeError("boom")

    with pytest.raises(FanOutError) as err:
        asyncio.run(fan_out(["A", "B", "C"], op, label="check"))

    assert sorted(executed) == ["A", "B", "C"]
    assert err.value.host == "B"
    assert "B" in str(err.value)
    assert isinstance(err.value.cause, RuntimeError)
    assert err.value.__cause__ is err.value.cause


def test_first_failure_in_completion_order_wins():
    async def op(host):
        await asyncio.sleep({"A": 0.05, "B": 0.0}[host])
        raise RuntimeError(f"{host} failed")

    with pytest.raises(FanOutError) as err:
        asyncio.run(fan_out(["A", "B"], op))

    assert err.value.host == "B"
    assert list(err.value.failures) == ["B", "A"]
    assert "1 other host(s) also failed" in str(err.value)


def test_all_tasks_awaited_before_raising():
    finished = []

    async def op(host):
        if host == "fast":
            raise RuntimeError("fast failure")
        await asyncio.sleep(0.02)
        finished.append(host)

    with pytest.raises(FanOutError):
        asyncio.run(fan_out(["fast", "slow1", "slow2"], op))

    assert sorted(finished) == ["slow1", "slow2"]


def test_empty_host_list_is_a_noop():
    async def op(host):
        raise AssertionError("must not run")

    asyncio.run(fan_out([], op))
    asyncio.run(run_sequential([], op))


def test_max_concurrency_caps_running_tasks():
    running = 0
    peak = 0

    async def op(host):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    asyncio.run(fan_out([f"h{i}" for i in range(10)], op, max_concurrency=3))
    assert peak == 3


def test_uncapped_fan_out_runs_everything_at_once():
    running = 0
    peak = 0

    async def op(host):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1

    asyncio.run(fan_out([f"h{i}" for i in range(10)], op))
    assert peak == 10


def test_run_sequential_keeps_order_and_stops():
    order = []

    async def op(host):
        order.append(host)
        if host == "m2":
            raise RuntimeError("join failed")

    with pytest.raises(FanOutError) as err:
        asyncio.run(run_sequential(["m1", "m2", "m3"], op, label="join master"))

    assert order == ["m1", "m2"]
    assert err.value.host == "m2"


def test_run_sequential_can_continue_after_errors():
    order = []

    async def op(host):
        order.append(host)
        if host != "m2":
            raise RuntimeError("reset failed")

    with pytest.raises(FanOutError) as err:
        asyncio.run(run_sequential(["m1", "m2", "m3"], op, stop_on_error=False))

    assert order == ["m1", "m2", "m3"]
    assert err.value.host == "m1"
    assert set(err.value.failures) == {"m1", "m3"}


def test_sync_map():
    async def scenario():
        cache: SyncMap[str, str] = SyncMap()
        assert await cache.set_if_absent("/rootfs", "x")
        assert not await cache.set_if_absent("/rootfs", "y")
        await cache.set("10.0.0.2", "cgroupfs")
        assert await cache.get("/rootfs") == "x"
        assert await cache.get("missing", "default") == "default"
        assert await cache.keys() == ["/rootfs", "10.0.0.2"]
        return await cache.snapshot()

    assert asyncio.run(scenario()) == {"/rootfs": "x", "10.0.0.2": "cgroupfs"}
