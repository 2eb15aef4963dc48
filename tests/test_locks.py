from __future__ import annotations

import asyncio

from driftwatch.services.locks import KeyedLocks


def test_lock_is_kept_while_a_waiter_is_queued() -> None:
    async def run() -> list[tuple[str, bool]]:
        locks = KeyedLocks()
        seen: list[tuple[str, bool]] = []
        first_inside = asyncio.Event()

        async def first() -> None:
            async with locks.hold("m-1"):
                first_inside.set()
                await asyncio.sleep(0.01)
            seen.append(("first released", "m-1" in locks))

        async def second() -> None:
            await first_inside.wait()
            async with locks.hold("m-1"):
                seen.append(("second inside", "m-1" in locks))

        await asyncio.gather(first(), second())
        seen.append(("all done", "m-1" in locks))
        return seen

    assert asyncio.run(run()) == [
        ("first released", True),
        ("second inside", True),
        ("all done", False),
    ]


def test_lock_is_dropped_after_an_exception() -> None:
    async def run() -> int:
        locks = KeyedLocks()
        try:
            async with locks.hold("ACME"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        return len(locks)

    assert asyncio.run(run()) == 0
