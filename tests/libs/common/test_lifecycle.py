"""Tests for the explicit process lifecycle."""

import asyncio

import pytest

from libs.common.lifecycle import LifecycleError, ProcessLifecycle


@pytest.mark.asyncio
async def test_services_unavailable_before_init():
    async def build():
        return {"ready": True}

    lifecycle = ProcessLifecycle(build)

    assert lifecycle.is_initialized() is False
    with pytest.raises(LifecycleError):
        _ = lifecycle.services


@pytest.mark.asyncio
async def test_init_runs_initializer_once_under_concurrency():
    calls = []

    async def build():
        calls.append(1)
        await asyncio.sleep(0.01)
        return object()

    lifecycle = ProcessLifecycle(build)
    first, second = await asyncio.gather(lifecycle.init(), lifecycle.init())

    assert first is second
    assert len(calls) == 1
    assert lifecycle.is_initialized() is True


@pytest.mark.asyncio
async def test_shutdown_runs_finalizer_and_resets():
    closed = []

    async def build():
        return "services"

    async def close(services):
        closed.append(services)

    lifecycle = ProcessLifecycle(build, close)
    await lifecycle.init()
    await lifecycle.shutdown()

    assert closed == ["services"]
    assert lifecycle.is_initialized() is False

    # Second shutdown is a no-op
    await lifecycle.shutdown()
    assert closed == ["services"]
