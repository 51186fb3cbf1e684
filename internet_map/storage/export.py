from __future__ import annotations

import csv
import json
from pathlib import Path
from typing import List, Optional

from internet_map.logging_setup import get_logger
from internet_map.partition import AddressSpacePartitioner
from internet_map.storage.ledger import ProgressLedger

log = get_logger(__name__)


async def _reachable_rows(
    ledger: ProgressLedger, partitioner: AddressSpacePartitioner, lower: int, upper: Optional[int]
) -> List[tuple]:
    rows: List[tuple] = []
    for block_id in await ledger.completed_ids(lower, upper):
        for offset in await ledger.reachable_offsets(block_id):
            rows.append((partitioner.ip_of(block_id, offset), block_id, offset))
    return rows


async def export_reachable_csv(
    ledger: ProgressLedger,
    partitioner: AddressSpacePartitioner,
    out_dir: Path,
    lower: int = 0,
    upper: Optional[int] = None,
) -> Path:
    path = out_dir / "reachable.csv"
    rows = await _reachable_rows(ledger, partitioner, lower, upper)
    out_dir.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as f:
        w = csv.writer(f)
        w.writerow(["ip", "block_id", "offset"])
        for r in rows:
            w.writerow(r)
    log.info("export_csv", path=str(path), rows=len(rows))
    return path


async def export_reachable_ndjson(
    ledger: ProgressLedger,
    partitioner: AddressSpacePartitioner,
    out_dir: Path,
    lower: int = 0,
    upper: Optional[int] = None,
) -> Path:
    path = out_dir / "reachable.ndjson"
    rows = await _reachable_rows(ledger, partitioner, lower, upper)
    out_dir.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for ip, block_id, offset in rows:
            f.write(json.dumps({"ip": ip, "block_id": block_id, "offset": offset}) + "\n")
    log.info("export_ndjson", path=str(path), rows=len(rows))
    return path
