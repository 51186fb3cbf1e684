from __future__ import annotations

import asyncio
from collections import Counter
from typing import Iterable

import pytest
import pytest_asyncio

from internet_map.partition import AddressSpacePartitioner
from internet_map.scanner.block import BlockScanner
from internet_map.storage.ledger import ProgressLedger


class StubTransport:
    """Answers for a fixed set of addresses and records how it was used."""

    def __init__(
        self,
        reachable: Iterable[str] = (),
        delay: float = 0.0,
        errors: Iterable[str] = (),
        slow: Iterable[str] = (),
        slow_delay: float = 10.0,
    ):
        self.reachable = set(reachable)
        self.errors = set(errors)
        self.slow = set(slow)
        self.delay = delay
        self.slow_delay = slow_delay
        self.calls: Counter = Counter()
        self.order: list = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def probe(self, address: str, timeout: float) -> bool:
        self.calls[address] += 1
        self.order.append(address)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.slow_delay if address in self.slow else self.delay)
            if address in self.errors:
                raise OSError(f"network unreachable: {address}")
            return address in self.reachable
        finally:
            self.in_flight -= 1


@pytest.fixture
def small_partitioner() -> AddressSpacePartitioner:
    # 16 blocks of 4 addresses
    return AddressSpacePartitioner(offset_bits=2, space_bits=6)


@pytest_asyncio.fixture
async def ledger(tmp_path):
    led = ProgressLedger(str(tmp_path / "ledger.db"))
    await led.initialize()
    try:
        yield led
    finally:
        await led.close()


def make_scanner(
    partitioner: AddressSpacePartitioner, transport: StubTransport, fan_out: int = 8, timeout: float = 1.0
) -> BlockScanner:
    return BlockScanner(partitioner, lambda: transport, timeout=timeout, fan_out=fan_out)


def block_of(transport_order: list, partitioner: AddressSpacePartitioner) -> list:
    """Block ids in the order their first address was probed."""
    seen: list = []
    for address in transport_order:
        block, _ = partitioner.locate(address)
        if block not in seen:
            seen.append(block)
    return seen


