"""Testes dos locks por chave."""
from __future__ import annotations

import asyncio

import pytest

from policy_engine.core.locks import KeyedLocks


@pytest.mark.asyncio
async def test_same_key_is_serialized():
    locks = KeyedLocks()
    active = 0
    peak = 0

    async def _work():
        nonlocal active, peak
        async with locks.hold("rule-1|user-1"):
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0)
            active -= 1

    await asyncio.gather(*(_work() for _ in range(10)))

    assert peak == 1
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_released_keys_are_dropped():
    locks = KeyedLocks()

    for index in range(2000):
        async with locks.hold(("user", index)):
            assert len(locks) == 1

    assert len(locks) == 0


@pytest.mark.asyncio
async def test_entry_is_dropped_after_error():
    locks = KeyedLocks()

    with pytest.raises(RuntimeError):
        async with locks.hold("k"):
            raise RuntimeError("boom")

    assert len(locks) == 0
