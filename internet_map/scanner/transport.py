from __future__ import annotations

import errno
import sys
from typing import Callable, Optional, Protocol

from icmplib import ICMPLibError, ICMPv4Socket, SocketPermissionError, async_ping

from internet_map.errors import ConfigurationError, TransportError
from internet_map.logging_setup import get_logger

log = get_logger(__name__)

# stdio, the ledger connection and exporter channels
RESERVED_DESCRIPTORS = 64


class ProberTransport(Protocol):
    """Sends one ICMP echo request and reports whether a reply came back."""

    async def probe(self, address: str, timeout: float) -> bool:
        """Return True when an echo reply arrives before ``timeout`` seconds."""


TransportFactory = Callable[[], ProberTransport]


class IcmpTransport:
    """ICMP echo transport backed by icmplib.

    Unprivileged mode uses datagram ICMP sockets, which Linux only allows
    for groups listed in ``net.ipv4.ping_group_range``.
    """

    def __init__(self, privileged: bool = True, payload_size: int = 56, source: Optional[str] = None):
        self.privileged = privileged
        self.payload_size = payload_size
        self.source = source
        # fail fast on missing socket permissions
        try:
            sock = ICMPv4Socket(address=source, privileged=privileged)
        except SocketPermissionError as e:
            raise ConfigurationError(
                f"cannot open ICMP socket (privileged={privileged}): run as root, grant CAP_NET_RAW "
                f"or use unprivileged mode with a suitable ping_group_range: {e}"
            ) from e
        except ICMPLibError as e:
            raise ConfigurationError(f"cannot open ICMP socket: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"cannot open ICMP socket: {e}") from e
        sock.close()
        log.info("icmp_transport_ready", privileged=privileged, payload_size=payload_size, source=source)

    async def _ping(self, address: str, timeout: float) -> bool:
        try:
            host = await async_ping(
                address,
                count=1,
                timeout=timeout,
                source=self.source,
                privileged=self.privileged,
                payload_size=self.payload_size,
            )
        except OSError as e:
            if e.errno in (errno.EMFILE, errno.ENFILE):
                raise ConfigurationError(f"out of file descriptors while probing {address}: {e}") from e
            raise TransportError(f"{address}: {e}") from e
        except ICMPLibError as e:
            raise TransportError(f"{address}: {e}") from e
        return host.is_alive

    async def probe(self, address: str, timeout: float) -> bool:
        try:
            return await self._ping(address, timeout)
        except TransportError as e:
            log.debug("probe_transport_error", address=address, error=str(e))
            return False


def icmp_transport_factory(privileged: bool = True, payload_size: int = 56, source: Optional[str] = None) -> TransportFactory:
    def factory() -> ProberTransport:
        return IcmpTransport(privileged=privileged, payload_size=payload_size, source=source)

    return factory


def check_descriptor_budget(sockets: int, reserved: int = RESERVED_DESCRIPTORS) -> None:
    """Refuse settings that would open more ICMP sockets than the process may hold.

    icmplib opens one socket per outstanding echo request, so a sweep holds
    up to ``concurrency * fan_out`` sockets at once.
    """
    if sys.platform == "win32":
        return
    import resource

    soft, _ = resource.getrlimit(resource.RLIMIT_NOFILE)
    if soft == resource.RLIM_INFINITY:
        return
    if sockets + reserved > soft:
        raise ConfigurationError(
            f"concurrency * fan_out = {sockets} sockets exceeds the open file limit of {soft} "
            f"(minus {reserved} reserved); lower fan_out or concurrency, or raise ulimit -n"
        )
