"""
Tests for delayed command emission.
"""

import asyncio
import time

import pytest

from bridge.scheduler import LatencyInjector


def test_emission_waits_for_delay():
    sent = []

    async def scenario():
        injector = LatencyInjector(0.05)
        start = time.perf_counter()

        async def send():
            sent.append(time.perf_counter() - start)

        assert injector.schedule(send)
        assert injector.pending == 1
        await asyncio.sleep(0.01)
        assert sent == []
        await asyncio.sleep(0.1)
        await injector.drain()
        assert injector.pending == 0

    asyncio.run(scenario())
    assert len(sent) == 1
    assert sent[0] >= 0.045


def test_emissions_keep_order():
    sent = []

    async def scenario():
        injector = LatencyInjector(0.02)
        for i in range(5):
            async def send(i=i):
                sent.append(i)
            injector.schedule(send)
            await asyncio.sleep(0.001)
        await asyncio.sleep(0.05)
        await injector.drain()

    asyncio.run(scenario())
    assert sent == [0, 1, 2, 3, 4]


def test_delay_does_not_block_the_loop():
    """Another coroutine runs while an emission is pending."""
    events = []

    async def scenario():
        injector = LatencyInjector(0.05)

        async def send():
            events.append("sent")

        injector.schedule(send)
        events.append("other work")
        await asyncio.sleep(0.1)
        await injector.drain()

    asyncio.run(scenario())
    assert events == ["other work", "sent"]


def test_cancel_drops_pending():
    sent = []

    async def scenario():
        injector = LatencyInjector(0.05)

        async def send():
            sent.append(1)

        injector.schedule(send)
        injector.schedule(send)
        assert injector.cancel() == 2
        assert not injector.schedule(send)
        await asyncio.sleep(0.1)

    asyncio.run(scenario())
    assert sent == []


def test_send_failure_is_logged(caplog):
    async def scenario():
        injector = LatencyInjector(0.0)

        async def send():
            raise RuntimeError("socket closed")

        injector.schedule(send)
        await asyncio.sleep(0.02)
        await injector.drain()

    asyncio.run(scenario())
    assert "[EMIT_FAILED]" in caplog.text


def test_negative_delay():
    with pytest.raises(ValueError):
        LatencyInjector(-0.1)
