"""
Unit tests for the post-commit effect outbox.
"""

import pytest

from quoteflow.services.effects import EffectOutbox


pytestmark = pytest.mark.asyncio


async def test_effects_run_in_order():
    calls = []
    outbox = EffectOutbox()

    async def first():
        calls.append("first")

    async def second():
        calls.append("second")

    outbox.add("first", first)
    outbox.add("second", second)
    report = await outbox.run()

    assert calls == ["first", "second"]
    assert report.succeeded == ("first", "second")
    assert report.failed == ()


async def test_failure_does_not_stop_later_effects():
    calls = []
    outbox = EffectOutbox()

    async def broken():
        raise RuntimeError("smtp down")

    async def after():
        calls.append("after")

    outbox.add("email:contractor", broken)
    outbox.add("cache:invalidate", after)
    report = await outbox.run()

    assert calls == ["after"]
    assert report.failed == ("email:contractor",)
    assert report.succeeded == ("cache:invalidate",)


async def test_run_drains_the_queue():
    calls = []
    outbox = EffectOutbox()

    async def effect():
        calls.append(1)

    outbox.add("once", effect)
    await outbox.run()
    await outbox.run()

    assert calls == [1]
    assert len(outbox) == 0


async def test_discard_drops_pending_effects():
    outbox = EffectOutbox()

    async def effect():
        raise AssertionError("must not run")

    outbox.add("dropped", effect)
    outbox.discard()
    report = await outbox.run()
    assert report.succeeded == () and report.failed == ()


async def test_extend_moves_effects():
    target, source = EffectOutbox(), EffectOutbox()

    async def effect():
        return None

    source.add("moved", effect)
    target.extend(source)

    assert len(target) == 1
    assert len(source) == 0
