#!/usr/bin/env python3
"""
internet-map: resumable IPv4 ICMP reachability sweep.

The address space is split into fixed-size blocks (a /16 per block by
default). Every address of a block is pinged, and the block's results are
committed to a local SQLite ledger in one transaction together with a
progress marker. An interrupted sweep resumes from the high-water mark and
re-scans any blocks found missing below it.

Important: sweeping networks you do not own can be disruptive and unlawful
without prior authorization. By default the sweep refuses to run unless an
authorization file containing "AUTHORIZED" is supplied.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import List, Optional

from internet_map.config import AppConfig, apply_profile, load_config, validate
from internet_map.errors import ConfigurationError, OperationFailed, StorageError
from internet_map.exclusions import build_exclusions, require_authorization_file
from internet_map.logging_setup import get_logger, setup_logging
from internet_map.models import RunSummary
from internet_map.orchestrator import Scheduler
from internet_map.partition import AddressSpacePartitioner
from internet_map.scanner.block import BlockScanner
from internet_map.scanner.transport import check_descriptor_budget, icmp_transport_factory
from internet_map.storage.export import export_reachable_csv, export_reachable_ndjson
from internet_map.storage.ledger import ProgressLedger

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2

log = get_logger("cli")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="internet-map",
        description="Resumable ICMP reachability sweep of the IPv4 space, recorded in a SQLite ledger.",
    )
    p.add_argument("--config", default=None, help="YAML config file (sections: sweep, ledger, otel)")
    p.add_argument("--db", default=None, help="Ledger SQLite path (overrides ledger.path)")
    p.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARN", "ERROR"], help="Log verbosity level")
    p.add_argument("--offset-bits", type=int, default=None, help="Address bits per block; block size is 2**bits (default 16)")
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("scan", help="Sweep blocks and commit their results")
    s.add_argument(
        "--start", default=None, help="First block id, or an IPv4 address inside it (default: resume at the high-water mark)"
    )
    s.add_argument("--count", type=int, default=None, help="Number of blocks in the range (default: to the end of the space)")
    s.add_argument("--max-commits", type=int, default=None, help="Stop after this many blocks are committed")
    s.add_argument("--concurrency", type=int, default=None, help="Blocks scanned concurrently")
    s.add_argument("--fan-out", type=int, default=None, help="Probes in flight per block")
    s.add_argument("--timeout", type=float, default=None, help="Per-probe timeout in seconds")
    s.add_argument("--drain-timeout", type=float, default=None, help="Seconds in-flight blocks get to finish on shutdown")
    s.add_argument("--profile", default=None, choices=["low", "medium", "high"], help="Politeness profile")
    s.add_argument("--full-audit", action="store_true", help="Check the whole ledger for gaps at startup, not just its head")
    s.add_argument("--auth", default=None, help="Authorization file (must contain 'AUTHORIZED')")
    s.add_argument("--blocklist", default=None, help="File with IPs/CIDRs never to probe (opt-out)")
    s.add_argument("--exclude-reserved", action="store_true", help="Never probe RFC reserved/special-use ranges")
    s.add_argument("--unprivileged", action="store_true", help="Use unprivileged ICMP datagram sockets")

    st = sub.add_parser("status", help="Show the high-water mark and detected gaps")
    st.add_argument("--full-audit", action="store_true", help="Report every gap below the high-water mark")

    ex = sub.add_parser("export", help="Write reachable addresses of completed blocks to CSV/NDJSON")
    ex.add_argument("--out-dir", required=True, help="Directory to write exports")
    ex.add_argument("--start", default="0", help="First block id, or an IPv4 address inside it")
    ex.add_argument("--count", type=int, default=None, help="Number of blocks to export")
    ex.add_argument("--no-csv", action="store_true", help="Disable CSV export")
    ex.add_argument("--no-json", action="store_true", help="Disable NDJSON export")

    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> AppConfig:
    cfg = load_config(args.config)
    s = cfg.sweep
    if args.db:
        cfg.ledger.path = args.db
    if args.log_level:
        cfg.log_level = args.log_level
    if args.offset_bits is not None:
        s.offset_bits = args.offset_bits
    if args.command == "scan":
        if args.profile:
            # Profile first so explicit flags below win over it.
            s.profile = args.profile
            apply_profile(s)
        for attr, value in (
            ("concurrency", args.concurrency),
            ("fan_out", args.fan_out),
            ("probe_timeout", args.timeout),
            ("drain_timeout", args.drain_timeout),
            ("auth_file", args.auth),
            ("blocklist_file", args.blocklist),
        ):
            if value is not None:
                setattr(s, attr, value)
        if args.full_audit:
            s.full_audit = True
        if args.exclude_reserved:
            s.exclude_reserved = True
        if args.unprivileged:
            s.privileged = False
    elif args.command == "status" and args.full_audit:
        s.full_audit = True
    validate(cfg)
    return cfg


def parse_block(value: str, partitioner: AddressSpacePartitioner) -> int:
    value = value.strip()
    if "." in value:
        try:
            return partitioner.locate(value)[0]
        except ValueError as e:
            raise ConfigurationError(f"invalid start address '{value}': {e}") from e
    try:
        block = int(value, 0)
    except ValueError as e:
        raise ConfigurationError(f"invalid block id '{value}'") from e
    if not partitioner.contains(block):
        raise ConfigurationError(f"block id {block} outside 0..{partitioner.block_count - 1}")
    return block


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # not available on some platforms
            pass


async def run_scan(cfg: AppConfig, args: argparse.Namespace) -> RunSummary:
    s = cfg.sweep
    if s.require_auth:
        require_authorization_file(Path(s.auth_file) if s.auth_file else None)
    partitioner = AddressSpacePartitioner(s.offset_bits, s.space_bits)
    start = None if args.start is None else parse_block(args.start, partitioner)
    check_descriptor_budget(s.concurrency * s.fan_out)
    exclusions = build_exclusions(s.blocklist_file, s.exclude_reserved)
    scanner = BlockScanner(
        partitioner,
        icmp_transport_factory(privileged=s.privileged, payload_size=s.payload_size),
        timeout=s.probe_timeout,
        fan_out=s.fan_out,
        exclusions=exclusions,
    )

    log.warning("safety_banner", message="Sweep only address space you are authorized to probe.")
    stop = asyncio.Event()
    _install_signal_handlers(stop)
    async with ProgressLedger(cfg.ledger.path, cfg.ledger.busy_timeout) as ledger:
        scheduler = Scheduler(
            partitioner,
            ledger,
            scanner,
            concurrency=s.concurrency,
            commit_attempts=s.commit_attempts,
            scan_attempts=s.scan_attempts,
            backoff=s.backoff,
            max_backoff=s.max_backoff,
            drain_timeout=s.drain_timeout,
            full_audit=s.full_audit,
        )
        return await scheduler.run(start_block=start, count=args.count, max_commits=args.max_commits, stop=stop)


async def run_status(cfg: AppConfig) -> dict:
    s = cfg.sweep
    async with ProgressLedger(cfg.ledger.path, cfg.ledger.busy_timeout) as ledger:
        hwm = await ledger.highest_completed()
        completed = await ledger.count_completed()
        if s.full_audit:
            gaps = await ledger.find_gaps()
        else:
            gaps = await ledger.find_gaps_near_head(s.concurrency)
    partitioner = AddressSpacePartitioner(s.offset_bits, s.space_bits)
    return {
        "ledger": cfg.ledger.path,
        "high_water_mark": hwm,
        "completed": completed,
        "total_blocks": partitioner.block_count,
        "gaps": sorted(gaps),
        "full_audit": s.full_audit,
    }


async def run_export(cfg: AppConfig, args: argparse.Namespace) -> List[str]:
    s = cfg.sweep
    partitioner = AddressSpacePartitioner(s.offset_bits, s.space_bits)
    lower = parse_block(args.start, partitioner)
    upper = None if args.count is None else lower + args.count
    out_dir = Path(args.out_dir)
    written: List[str] = []
    async with ProgressLedger(cfg.ledger.path, cfg.ledger.busy_timeout) as ledger:
        if not args.no_csv:
            written.append(str(await export_reachable_csv(ledger, partitioner, out_dir, lower, upper)))
        if not args.no_json:
            written.append(str(await export_reachable_ndjson(ledger, partitioner, out_dir, lower, upper)))
    return written


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    providers = None
    try:
        cfg = build_config(args)
        setup_logging(cfg.log_level)
        if cfg.otel.enabled:
            from internet_map.otel import init_otel
            providers = init_otel(cfg.otel)

        if args.command == "scan":
            summary = asyncio.run(run_scan(cfg, args))
            print(json.dumps(summary.to_doc()))
        elif args.command == "status":
            print(json.dumps(asyncio.run(run_status(cfg))))
        elif args.command == "export":
            for path in asyncio.run(run_export(cfg, args)):
                print(path)
    except ConfigurationError as e:
        log.error("configuration_error", error=str(e))
        return EXIT_CONFIG
    except OperationFailed as e:
        log.error("operation_failed", operation=e.operation, block_id=e.block_id, attempts=e.attempts, error=str(e))
        return EXIT_FAILURE
    except StorageError as e:
        log.error("storage_error", error=str(e))
        return EXIT_FAILURE
    finally:
        if providers:
            from internet_map.otel import shutdown_otel
            shutdown_otel(providers)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
