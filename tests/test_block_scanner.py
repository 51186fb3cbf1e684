import ipaddress

import pytest

from conftest import StubTransport, make_scanner
from internet_map.errors import ConfigurationError
from internet_map.exclusions import ExclusionList
from internet_map.partition import AddressSpacePartitioner
from internet_map.scanner.block import BlockScanner


async def test_fan_out_is_bounded_over_a_full_block():
    p = AddressSpacePartitioner(offset_bits=16)
    transport = StubTransport()
    scanner = make_scanner(p, transport, fan_out=64)

    result = await scanner.scan(1)

    assert len(result.results) == 65536
    assert transport.max_in_flight <= 64
    assert sum(transport.calls.values()) == 65536
    assert max(transport.calls.values()) == 1
    result.validate(p.block_size)


async def test_reachable_offsets_are_reported():
    p = AddressSpacePartitioner(offset_bits=8)
    block, _ = p.locate("203.0.113.0")
    transport = StubTransport(reachable={"203.0.113.1", "203.0.113.254"})
    result = await make_scanner(p, transport, fan_out=16).scan(block)

    assert result.block_id == block
    assert [r.offset for r in result.results if r.reachable] == [1, 254]
    assert result.reachable_count == 2


async def test_transport_errors_and_timeouts_count_as_unreachable(small_partitioner):
    transport = StubTransport(
        reachable={"0.0.0.4", "0.0.0.5", "0.0.0.6"},
        errors={"0.0.0.5"},
        slow={"0.0.0.6"},
    )
    scanner = BlockScanner(small_partitioner, lambda: transport, timeout=0.05, fan_out=4, grace=0.01)

    result = await scanner.scan(1)

    assert [(r.offset, r.reachable) for r in result.results] == [(0, True), (1, False), (2, False), (3, False)]


async def test_transport_construction_failure_fails_the_block(small_partitioner):
    def denied():
        raise ConfigurationError("cannot open ICMP socket")

    with pytest.raises(ConfigurationError):
        await BlockScanner(small_partitioner, denied).scan(0)


async def test_os_level_permission_error_becomes_configuration_error(small_partitioner):
    def denied():
        raise PermissionError("Operation not permitted")

    with pytest.raises(ConfigurationError):
        await BlockScanner(small_partitioner, denied).scan(0)


async def test_excluded_addresses_are_not_probed():
    p = AddressSpacePartitioner(offset_bits=8)
    block, _ = p.locate("198.51.100.0")
    transport = StubTransport(reachable={"198.51.100.1", "198.51.100.200"})
    exclusions = ExclusionList([ipaddress.IPv4Network("198.51.100.128/25")])
    scanner = BlockScanner(p, lambda: transport, fan_out=8, exclusions=exclusions)

    result = await scanner.scan(block)

    assert len(result.results) == 256
    assert [r.offset for r in result.results if r.reachable] == [1]
    assert "198.51.100.200" not in transport.calls
    assert sum(transport.calls.values()) == 128


async def test_fully_excluded_block_skips_probing():
    p = AddressSpacePartitioner(offset_bits=8)
    block, _ = p.locate("10.1.2.0")
    transport = StubTransport()
    scanner = BlockScanner(p, lambda: transport, exclusions=ExclusionList([ipaddress.IPv4Network("10.0.0.0/8")]))

    result = await scanner.scan(block)

    assert transport.calls == {}
    assert result.reachable_count == 0
    result.validate(p.block_size)


def test_invalid_fan_out(small_partitioner):
    with pytest.raises(ConfigurationError):
        BlockScanner(small_partitioner, StubTransport, fan_out=0)


class ExhaustedTransport(StubTransport):
    async def probe(self, address, timeout):
        if address == "0.0.0.2":
            raise ConfigurationError("out of file descriptors while probing 0.0.0.2")
        return await super().probe(address, timeout)


async def test_descriptor_exhaustion_fails_the_block(small_partitioner):
    transport = ExhaustedTransport(delay=0.01)
    scanner = BlockScanner(small_partitioner, lambda: transport, fan_out=2)

    with pytest.raises(ConfigurationError):
        await scanner.scan(0)
    assert transport.in_flight == 0
