"""Async implementation of race conditions for testing"""
import asyncio

hits = 0
lock = asyncio.Lock()


class Counter:
    def __init__(self):
        self.value = 0


counter = Counter()


async def fetch_delta():
    await asyncio.sleep(0)
    return 1


async def unsafe_increment():
    # Reads counter.value, suspends, then writes a stale sum
    counter.value = counter.value + await fetch_delta()


async def unsafe_hit():
    global hits
    hits += await fetch_delta()


async def safe_increment():
    delta = await fetch_delta()
    async with lock:
        counter.value = counter.value + delta


async def run_counter_test(increment, tasks=5):
    await asyncio.gather(*(increment() for _ in range(tasks)))
    return counter.value
