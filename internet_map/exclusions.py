from __future__ import annotations

import ipaddress
from pathlib import Path
from typing import Iterable, List, Optional

from internet_map.errors import ConfigurationError
from internet_map.logging_setup import get_logger

log = get_logger(__name__)


def reserved_ipv4_excludes() -> List[ipaddress.IPv4Network]:
    """RFC-reserved and special-use IPv4 ranges to exclude for global sweeps."""
    cidrs = [
        '0.0.0.0/8',        # current network
        '10.0.0.0/8',       # RFC1918
        '100.64.0.0/10',    # CGNAT
        '127.0.0.0/8',      # loopback
        '169.254.0.0/16',   # link-local
        '172.16.0.0/12',    # RFC1918
        '192.0.0.0/24',     # IETF Protocol Assignments
        '192.0.2.0/24',     # TEST-NET-1
        '192.168.0.0/16',   # RFC1918
        '198.18.0.0/15',    # benchmarking
        '198.51.100.0/24',  # TEST-NET-2
        '203.0.113.0/24',   # TEST-NET-3
        '224.0.0.0/4',      # multicast
        '240.0.0.0/4',      # reserved
        '255.255.255.255/32',
    ]
    return [ipaddress.IPv4Network(c) for c in cidrs]


def read_blocklist(path: Path) -> List[ipaddress.IPv4Network]:
    if not path.exists():
        raise ConfigurationError(f"blocklist file not found: {path}")
    nets: List[ipaddress.IPv4Network] = []
    for lineno, line in enumerate(path.read_text().splitlines(), start=1):
        s = line.split('#', 1)[0].strip()
        if not s:
            continue
        try:
            net = ipaddress.ip_network(s, strict=False)
        except ValueError:
            log.warning("blocklist_entry_invalid", path=str(path), line=lineno, entry=s)
            continue
        if net.version != 4:
            continue
        nets.append(net)
    return nets


class ExclusionList:
    """Addresses that must never be probed.

    Ranges are collapsed and kept as integer intervals so lookups during a
    block scan stay cheap.
    """

    def __init__(self, networks: Iterable[ipaddress.IPv4Network] = ()):
        collapsed = list(ipaddress.collapse_addresses(networks))
        self.networks = collapsed
        self._ranges = [(int(n.network_address), int(n.broadcast_address)) for n in collapsed]

    def __len__(self) -> int:
        return len(self.networks)

    def __bool__(self) -> bool:
        return bool(self._ranges)

    def __contains__(self, address: int) -> bool:
        for lo, hi in self._ranges:
            if lo <= address <= hi:
                return True
        return False

    def overlapping(self, first: int, last: int) -> "ExclusionList":
        """Subset of ranges intersecting ``[first, last]``."""
        out = ExclusionList()
        out.networks = [n for n, (lo, hi) in zip(self.networks, self._ranges) if lo <= last and hi >= first]
        out._ranges = [(lo, hi) for lo, hi in self._ranges if lo <= last and hi >= first]
        return out

    def covers(self, first: int, last: int) -> bool:
        """True when every address in ``[first, last]`` is excluded."""
        return any(lo <= first and hi >= last for lo, hi in self._ranges)


def build_exclusions(blocklist_file: Optional[str], exclude_reserved: bool) -> ExclusionList:
    nets: List[ipaddress.IPv4Network] = []
    if blocklist_file:
        nets.extend(read_blocklist(Path(blocklist_file)))
    if exclude_reserved:
        nets.extend(reserved_ipv4_excludes())
    excl = ExclusionList(nets)
    if excl:
        log.info("exclusions_loaded", networks=len(excl), reserved=exclude_reserved, blocklist=blocklist_file)
    return excl


def require_authorization_file(auth_path: Optional[Path]) -> None:
    """
    Guardrail: require an authorization file before any probe is sent.
    The file must exist and contain the phrase "AUTHORIZED".
    """
    if auth_path is None:
        raise ConfigurationError("an authorization file is required (--auth or SWEEP_AUTH_FILE)")
    if not auth_path.exists():
        raise ConfigurationError(f"authorization file not found: {auth_path}")
    text = auth_path.read_text(errors="ignore")
    if "AUTHORIZED" not in text:
        raise ConfigurationError(
            "authorization file missing required marker. Add 'AUTHORIZED' to proceed."
        )
