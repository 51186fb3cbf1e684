from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, Dict, Optional, Set, Tuple

from opentelemetry import trace, metrics
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from internet_map.errors import ConfigurationError, ConsistencyError, OperationFailed, StorageError
from internet_map.logging_setup import get_logger
from internet_map.models import BlockResult, RunSummary
from internet_map.partition import AddressSpacePartitioner
from internet_map.scanner.block import BlockScanner
from internet_map.storage.ledger import ProgressLedger

log = get_logger(__name__)
tracer = trace.get_tracer(__name__)
meter = metrics.get_meter(__name__)

metric_committed = meter.create_counter("sweep_blocks_committed_total")
metric_commit_failures = meter.create_counter("sweep_commit_failures_total")
metric_requeued = meter.create_counter("sweep_blocks_requeued_total")


class Scheduler:
    """Keeps up to ``concurrency`` block scans in flight and commits their results.

    Blocks are dispatched in ascending order after any gaps found at startup.
    Commits happen in completion order. A sequential block is only dispatched
    while it lies within ``head_window`` ids of the lowest block in flight, so
    every block left pending by a crash is still visible to the head gap check
    of the next run. A block that is not committed stays pending in the ledger
    and is picked up again by a later run.
    """

    def __init__(
        self,
        partitioner: AddressSpacePartitioner,
        ledger: ProgressLedger,
        scanner: BlockScanner,
        *,
        concurrency: int = 4,
        commit_attempts: int = 3,
        scan_attempts: int = 2,
        backoff: float = 0.5,
        max_backoff: float = 8.0,
        drain_timeout: float = 30.0,
        head_window: Optional[int] = None,
        full_audit: bool = False,
    ):
        if concurrency < 1:
            raise ConfigurationError("concurrency must be at least 1")
        if commit_attempts < 1 or scan_attempts < 1:
            raise ConfigurationError("commit_attempts and scan_attempts must be at least 1")
        self.partitioner = partitioner
        self.ledger = ledger
        self.scanner = scanner
        self.concurrency = concurrency
        self.commit_attempts = commit_attempts
        self.scan_attempts = scan_attempts
        self.backoff = backoff
        self.max_backoff = max_backoff
        self.drain_timeout = drain_timeout
        self.head_window = max(head_window or concurrency, concurrency)
        self.full_audit = full_audit
        self._in_flight: Dict[asyncio.Task, int] = {}

    @property
    def in_flight(self) -> Set[int]:
        return set(self._in_flight.values())

    # ---------------------------
    # Startup
    # ---------------------------
    async def recover(
        self, lower: int = 0, upper: Optional[int] = None, resume: bool = True
    ) -> Tuple[int, Deque[int]]:
        """Rebuild the cursor and the re-scan queue from the ledger.

        The returned cursor is the last block id considered dispatched; the
        next sequential block is ``cursor + 1``. With ``resume`` the cursor
        jumps to the high-water mark, otherwise the walk starts at ``lower``
        and completed blocks are skipped one by one.
        """
        upper = self.partitioner.block_count if upper is None else min(upper, self.partitioner.block_count)
        await self.ledger.initialize()
        hwm = await self.ledger.highest_completed()

        cursor = lower - 1
        if resume and hwm is not None and hwm >= lower:
            cursor = min(hwm, upper - 1)

        gaps: Set[int] = set()
        if self.full_audit:
            if hwm is not None:
                gaps = await self.ledger.find_gaps(lower, min(hwm + 1, upper))
        else:
            try:
                await self.ledger.ensure_contiguous_head(self.head_window)
            except ConsistencyError as e:
                gaps = set(e.gaps)

        queue: Deque[int] = deque(sorted(g for g in gaps if lower <= g < upper))
        if queue:
            metric_requeued.add(len(queue), {"reason": "gap"})
            log.warning("gaps_requeued", count=len(queue), first=queue[0], last=queue[-1], full_audit=self.full_audit)
        log.info("resume_point", high_water_mark=hwm, cursor=cursor, lower=lower, upper=upper)
        return cursor, queue

    # ---------------------------
    # Commit
    # ---------------------------
    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning("commit_retry", attempt=retry_state.attempt_number, error=str(exc))

    async def _commit(self, result: BlockResult) -> None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.commit_attempts),
                wait=wait_exponential(multiplier=self.backoff, max=self.max_backoff) + wait_random(0, self.backoff),
                retry=retry_if_exception_type(StorageError),
                before_sleep=self._log_retry,
                reraise=True,
            ):
                with attempt:
                    await self.ledger.commit(result)
        except StorageError as e:
            metric_commit_failures.add(1)
            log.error("commit_failed", block_id=result.block_id, attempts=self.commit_attempts, error=str(e))
            raise OperationFailed(result.block_id, self.commit_attempts, e) from e
        metric_committed.add(1)

    # ---------------------------
    # Main loop
    # ---------------------------
    async def run(
        self,
        *,
        start_block: Optional[int] = None,
        count: Optional[int] = None,
        max_commits: Optional[int] = None,
        stop: Optional[asyncio.Event] = None,
    ) -> RunSummary:
        """Sweep ``[start_block, start_block + count)`` (or to the end of the space).

        Without ``start_block`` the sweep resumes at the ledger's high-water
        mark; an explicit start walks the whole range and skips completed blocks.

        Returns once the range is exhausted, ``max_commits`` blocks have been
        committed, or ``stop`` is set. In-flight scans are always drained;
        only a shutdown drain may give up on them after ``drain_timeout``.
        Raises ``ConfigurationError`` or ``OperationFailed`` on fatal errors,
        after draining.
        """
        if start_block is not None and not self.partitioner.contains(start_block):
            raise ConfigurationError(f"start block {start_block} outside 0..{self.partitioner.block_count - 1}")
        if count is not None and count < 1:
            raise ConfigurationError("count must be at least 1")
        if max_commits is not None and max_commits < 1:
            raise ConfigurationError("max_commits must be at least 1")

        resume = start_block is None
        lower = 0 if resume else start_block
        upper = self.partitioner.block_count if count is None else min(self.partitioner.block_count, lower + count)
        stop = stop or asyncio.Event()
        summary = RunSummary()
        loop = asyncio.get_running_loop()

        with tracer.start_as_current_span("sweep_run") as span:
            span.set_attribute("sweep.lower", lower)
            span.set_attribute("sweep.upper", upper)
            cursor, queue = await self.recover(lower, upper, resume=resume)
            summary.gaps_requeued = len(queue)
            scan_failures: Dict[int, int] = {}
            fatal: Optional[BaseException] = None
            exhausted = False
            drain_deadline: Optional[float] = None
            in_flight = self._in_flight
            stop_waiter = asyncio.ensure_future(stop.wait())

            async def next_block() -> Optional[int]:
                nonlocal cursor, exhausted
                while queue:
                    block = queue.popleft()
                    if block not in in_flight.values():
                        return block
                while True:
                    nxt = self.partitioner.next_block_id(cursor)
                    if nxt is None or nxt >= upper:
                        exhausted = True
                        return None
                    if in_flight and nxt - min(in_flight.values()) >= self.head_window:
                        # wait for the lowest block to commit
                        return None
                    cursor = nxt
                    if nxt in in_flight.values():
                        continue
                    if await self.ledger.is_complete(nxt):
                        summary.skipped += 1
                        continue
                    return nxt

            async def finish(task: asyncio.Task, block: int) -> None:
                nonlocal fatal
                try:
                    result = task.result()
                    result.validate(self.partitioner.block_size)
                except ConfigurationError as e:
                    log.error("block_scan_fatal", block_id=block, error=str(e))
                    fatal = fatal or e
                    return
                except Exception as e:
                    failures = scan_failures[block] = scan_failures.get(block, 0) + 1
                    if drain_deadline is not None:
                        # shutting down: leave it pending for the next run
                        summary.abandoned.append(block)
                        log.error("block_scan_failed", block_id=block, attempt=failures, error=str(e), requeued=False)
                    elif failures < self.scan_attempts:
                        queue.appendleft(block)
                        summary.rescans += 1
                        metric_requeued.add(1, {"reason": "scan_error"})
                        log.warning("block_scan_failed", block_id=block, attempt=failures, error=str(e), requeued=True)
                    else:
                        log.error("block_scan_exhausted", block_id=block, attempts=failures, error=str(e))
                        fatal = fatal or OperationFailed(block, failures, e, operation="scan")
                    return
                try:
                    await self._commit(result)
                except OperationFailed as e:
                    fatal = fatal or e
                    return
                summary.committed += 1
                summary.reachable += result.reachable_count

            try:
                while True:
                    if (stop.is_set() or fatal is not None) and drain_deadline is None:
                        drain_deadline = loop.time() + self.drain_timeout
                        log.info("drain_start", in_flight=sorted(in_flight.values()), timeout_s=self.drain_timeout,
                                 reason="fatal" if fatal is not None else "stop")

                    budget_reached = max_commits is not None and summary.committed >= max_commits
                    if drain_deadline is None and not budget_reached:
                        while len(in_flight) < self.concurrency:
                            block = await next_block()
                            if block is None:
                                break
                            task = asyncio.create_task(self.scanner.scan(block), name=f"scan-block-{block}")
                            in_flight[task] = block
                            log.debug("block_assigned", block_id=block, slots_busy=len(in_flight))

                    if not in_flight:
                        break

                    waiting = set(in_flight)
                    timeout = None
                    if drain_deadline is None:
                        waiting.add(stop_waiter)
                    else:
                        timeout = max(0.0, drain_deadline - loop.time())
                    done, _ = await asyncio.wait(waiting, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

                    finished = [t for t in done if t in in_flight]
                    if not finished and drain_deadline is not None and loop.time() >= drain_deadline:
                        abandoned = sorted(in_flight.values())
                        for t in in_flight:
                            t.cancel()
                        await asyncio.gather(*in_flight, return_exceptions=True)
                        in_flight.clear()
                        summary.abandoned.extend(abandoned)
                        log.warning("drain_timeout", abandoned=abandoned)
                        break

                    for task in finished:
                        block = in_flight.pop(task)
                        await finish(task, block)
            finally:
                stop_waiter.cancel()
                if in_flight:
                    for t in in_flight:
                        t.cancel()
                    await asyncio.gather(*in_flight, return_exceptions=True)
                    in_flight.clear()

            summary.cursor = cursor
            summary.exhausted = exhausted and not queue
            summary.stopped = stop.is_set()
            try:
                summary.high_water_mark = await self.ledger.highest_completed()
            except StorageError as e:
                if fatal is None:
                    raise
                log.error("high_water_mark_unavailable", error=str(e))
            span.set_attribute("sweep.committed", summary.committed)

        log.info("sweep_finished", **summary.to_doc())
        if fatal is not None:
            raise fatal
        return summary
