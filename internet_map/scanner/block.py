from __future__ import annotations

import asyncio
import ipaddress
import time
from typing import List, Optional

from opentelemetry import trace, metrics

from internet_map.errors import ConfigurationError
from internet_map.exclusions import ExclusionList
from internet_map.logging_setup import get_logger
from internet_map.models import BlockResult, ProbeResult, utcnow_iso
from internet_map.partition import AddressSpacePartitioner
from internet_map.scanner.transport import ProberTransport, TransportFactory

log = get_logger(__name__)
tracer = trace.get_tracer(__name__)
meter = metrics.get_meter(__name__)

metric_probes = meter.create_counter("sweep_probes_total")
metric_reachable = meter.create_counter("sweep_probes_reachable_total")


class BlockScanner:
    """Probes every address of a block with a bounded number of probes in flight.

    A probe counts as reachable only if the transport reports a reply within
    the timeout. Timeouts and transport errors are recorded as unreachable and
    are not retried, so a lossy path shows up as unreachable hosts: that noise
    is accepted at this layer. A ``ConfigurationError`` from the transport
    (no permission, no descriptors left) fails the whole block instead.
    """

    def __init__(
        self,
        partitioner: AddressSpacePartitioner,
        transport_factory: TransportFactory,
        *,
        timeout: float = 1.0,
        fan_out: int = 128,
        exclusions: Optional[ExclusionList] = None,
        grace: float = 0.5,
    ):
        if fan_out < 1:
            raise ConfigurationError("fan_out must be at least 1")
        if timeout <= 0:
            raise ConfigurationError("probe timeout must be positive")
        self.partitioner = partitioner
        self.timeout = timeout
        self.fan_out = fan_out
        self.exclusions = exclusions or ExclusionList()
        self.grace = grace
        self._factory = transport_factory
        self._transport: Optional[ProberTransport] = None

    def _acquire_transport(self) -> ProberTransport:
        if self._transport is None:
            try:
                self._transport = self._factory()
            except ConfigurationError:
                raise
            except OSError as e:
                raise ConfigurationError(f"probe transport unavailable: {e}") from e
        return self._transport

    async def _probe_one(self, transport: ProberTransport, address: str) -> bool:
        try:
            return bool(await asyncio.wait_for(transport.probe(address, self.timeout), self.timeout + self.grace))
        except asyncio.TimeoutError:
            return False
        except ConfigurationError:
            raise
        except Exception as e:
            log.debug("probe_failed", address=address, error=str(e))
            return False

    async def scan(self, block_id: int) -> BlockResult:
        offsets = self.partitioner.addresses_of(block_id)
        transport = self._acquire_transport()

        first = self.partitioner.address_of(block_id, 0)
        last = first + len(offsets) - 1
        excluded = self.exclusions.overlapping(first, last)

        started_at = utcnow_iso()
        t0 = time.monotonic()
        reachable: List[bool] = [False] * len(offsets)
        probed = 0
        pending = iter(offsets)

        async def worker() -> None:
            nonlocal probed
            # Workers share one iterator; each offset is handed out exactly once.
            for offset in pending:
                address = first + offset
                if excluded and address in excluded:
                    continue
                reachable[offset] = await self._probe_one(transport, str(ipaddress.IPv4Address(address)))
                probed += 1

        with tracer.start_as_current_span("block_scan") as span:
            span.set_attribute("sweep.block_id", block_id)
            log.info("block_scan_start", block_id=block_id, first=str(ipaddress.IPv4Address(first)), size=len(offsets))
            if excluded.covers(first, last):
                log.info("block_excluded", block_id=block_id)
            else:
                workers = [asyncio.create_task(worker()) for _ in range(min(self.fan_out, len(offsets)))]
                try:
                    await asyncio.gather(*workers)
                except BaseException:
                    for w in workers:
                        w.cancel()
                    await asyncio.gather(*workers, return_exceptions=True)
                    raise

            result = BlockResult(
                block_id=block_id,
                results=[ProbeResult(offset=o, reachable=r) for o, r in zip(offsets, reachable)],
                started_at=started_at,
                finished_at=utcnow_iso(),
            )
            up = result.reachable_count
            span.set_attribute("sweep.reachable", up)

        metric_probes.add(probed)
        metric_reachable.add(up)
        log.info(
            "block_scan_complete",
            block_id=block_id,
            probed=probed,
            reachable=up,
            elapsed_s=round(time.monotonic() - t0, 3),
        )
        return result
