import ipaddress

import pytest

from internet_map.errors import ConfigurationError
from internet_map.partition import AddressSpacePartitioner


@pytest.mark.parametrize("offset_bits", [0, 1, 3, 5, 8])
def test_blocks_cover_every_address_exactly_once(offset_bits):
    p = AddressSpacePartitioner(offset_bits=offset_bits, space_bits=8)
    seen = []
    cursor = None
    while (block := p.next_block_id(cursor)) is not None:
        seen.extend(p.address_of(block, o) for o in p.addresses_of(block))
        cursor = block
    assert len(seen) == 256
    assert set(seen) == set(range(256))


def test_full_ipv4_space_dimensions():
    p = AddressSpacePartitioner()
    assert p.block_size == 65536
    assert p.block_count == 65536
    assert p.ip_of(0, 0) == "0.0.0.0"
    assert p.ip_of(65535, 65535) == "255.255.255.255"
    assert p.next_block_id(65535) is None


def test_addresses_of_is_restartable_and_sized():
    p = AddressSpacePartitioner(offset_bits=8)
    offsets = p.addresses_of(42)
    assert list(offsets) == list(offsets)
    assert len(offsets) == 256


def test_locate_and_block_network():
    p = AddressSpacePartitioner(offset_bits=8)
    block, offset = p.locate("203.0.113.7")
    assert offset == 7
    assert block == int(ipaddress.IPv4Address("203.0.113.0")) >> 8
    assert p.block_network(block) == ipaddress.IPv4Network("203.0.113.0/24")
    assert p.locate(p.address_of(block, 200)) == (block, 200)


def test_next_block_from_start():
    p = AddressSpacePartitioner(offset_bits=2, space_bits=4)
    assert p.next_block_id(None) == 0
    assert p.next_block_id(-1) == 0
    assert p.next_block_id(2) == 3
    assert p.next_block_id(3) is None


@pytest.mark.parametrize("offset_bits,space_bits", [(-1, 32), (33, 32), (4, 0), (4, 40)])
def test_invalid_widths(offset_bits, space_bits):
    with pytest.raises(ConfigurationError):
        AddressSpacePartitioner(offset_bits=offset_bits, space_bits=space_bits)


def test_out_of_range_ids():
    p = AddressSpacePartitioner(offset_bits=2, space_bits=4)
    with pytest.raises(ValueError):
        p.addresses_of(4)
    with pytest.raises(ValueError):
        p.address_of(0, 4)
