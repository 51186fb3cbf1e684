from __future__ import annotations

import ipaddress
from typing import Optional, Tuple

from internet_map.errors import ConfigurationError


class AddressSpacePartitioner:
    """Maps block ids to the addresses they cover.

    An address is ``block_id << offset_bits | offset``. Block ids run from 0 to
    ``block_count - 1`` and partition the space with no gap and no overlap.
    """

    def __init__(self, offset_bits: int = 16, space_bits: int = 32):
        if not 1 <= space_bits <= 32:
            raise ConfigurationError(f"space_bits must be within 1..32, got {space_bits}")
        if not 0 <= offset_bits <= space_bits:
            raise ConfigurationError(f"offset_bits must be within 0..{space_bits}, got {offset_bits}")
        self.offset_bits = offset_bits
        self.space_bits = space_bits

    @property
    def prefix_bits(self) -> int:
        return self.space_bits - self.offset_bits

    @property
    def block_size(self) -> int:
        return 1 << self.offset_bits

    @property
    def block_count(self) -> int:
        return 1 << self.prefix_bits

    def contains(self, block_id: int) -> bool:
        return 0 <= block_id < self.block_count

    def _check_block(self, block_id: int) -> None:
        if not self.contains(block_id):
            raise ValueError(f"block id {block_id} outside 0..{self.block_count - 1}")

    def next_block_id(self, cursor: Optional[int]) -> Optional[int]:
        """Next ascending block id after ``cursor``, or None when the space is exhausted."""
        nxt = 0 if cursor is None else cursor + 1
        if nxt < 0:
            nxt = 0
        if nxt >= self.block_count:
            return None
        return nxt

    def addresses_of(self, block_id: int) -> range:
        self._check_block(block_id)
        return range(self.block_size)

    def address_of(self, block_id: int, offset: int) -> int:
        self._check_block(block_id)
        if not 0 <= offset < self.block_size:
            raise ValueError(f"offset {offset} outside 0..{self.block_size - 1}")
        return (block_id << self.offset_bits) | offset

    def ip_of(self, block_id: int, offset: int) -> str:
        return str(ipaddress.IPv4Address(self.address_of(block_id, offset)))

    def locate(self, address: int | str) -> Tuple[int, int]:
        if isinstance(address, str):
            address = int(ipaddress.IPv4Address(address))
        if not 0 <= address < (1 << self.space_bits):
            raise ValueError(f"address {address} outside the {self.space_bits}-bit space")
        return address >> self.offset_bits, address & (self.block_size - 1)

    def block_network(self, block_id: int) -> ipaddress.IPv4Network:
        if self.space_bits != 32:
            raise ValueError("block networks are only defined for the full 32-bit space")
        first = self.address_of(block_id, 0)
        return ipaddress.IPv4Network((first, self.prefix_bits))
