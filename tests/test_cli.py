import asyncio
import csv
import json
import os
import subprocess
import sys
from pathlib import Path

from conftest import StubTransport
from internet_map import cli
from internet_map.models import BlockResult, ProbeResult
from internet_map.partition import AddressSpacePartitioner
from internet_map.storage.ledger import ProgressLedger

ROOT = Path(__file__).resolve().parents[1]
P8 = AddressSpacePartitioner(offset_bits=8)
TEST_NET_3 = P8.locate("203.0.113.0")[0]


def seed(path, blocks, reachable=()):
    async def go():
        async with ProgressLedger(path) as led:
            for b in blocks:
                await led.commit(
                    BlockResult(block_id=b, results=[ProbeResult(o, o in reachable) for o in P8.addresses_of(b)])
                )

    asyncio.run(go())


def read_ledger(path, block):
    async def go():
        async with ProgressLedger(path) as led:
            return await led.is_complete(block), await led.reachable_offsets(block)

    return asyncio.run(go())


def auth_file(tmp_path):
    path = tmp_path / "authorization.txt"
    path.write_text("AUTHORIZED: 203.0.113.0/24 lab sweep\n")
    return str(path)


def test_scan_requires_authorization(tmp_path):
    db = str(tmp_path / "ledger.db")
    rc = cli.main(["--db", db, "--offset-bits", "8", "scan", "--start", "203.0.113.0", "--count", "1"])
    assert rc == cli.EXIT_CONFIG


def test_scan_commits_block(tmp_path, monkeypatch):
    transport = StubTransport(reachable={"203.0.113.1", "203.0.113.254"})
    monkeypatch.setattr(cli, "icmp_transport_factory", lambda **kw: (lambda: transport))
    db = str(tmp_path / "ledger.db")

    rc = cli.main(
        [
            "--db", db, "--offset-bits", "8",
            "scan", "--auth", auth_file(tmp_path), "--start", "203.0.113.0", "--count", "1", "--fan-out", "32",
        ]
    )

    assert rc == cli.EXIT_OK
    assert read_ledger(db, TEST_NET_3) == (True, [1, 254])
    assert sum(transport.calls.values()) == 256


def test_scan_rejects_out_of_range_start(tmp_path):
    db = str(tmp_path / "ledger.db")
    rc = cli.main(["--db", db, "scan", "--auth", auth_file(tmp_path), "--start", "70000"])
    assert rc == cli.EXIT_CONFIG


def test_bad_config_file_is_a_configuration_error(tmp_path):
    cfg = tmp_path / "sweep.yaml"
    cfg.write_text("sweep:\n  warp_speed: 9\n")
    assert cli.main(["--config", str(cfg), "--db", str(tmp_path / "l.db"), "status"]) == cli.EXIT_CONFIG


def test_status_reports_head_gaps(tmp_path):
    db = str(tmp_path / "ledger.db")
    seed(db, [0, 1, 3])
    args = cli.parse_args(["--db", db, "--offset-bits", "8", "status"])
    cfg = cli.build_config(args)

    doc = asyncio.run(cli.run_status(cfg))

    assert doc["high_water_mark"] == 3
    assert doc["completed"] == 3
    assert doc["gaps"] == [2]
    assert doc["total_blocks"] == 1 << 24
    assert cli.main(["--db", db, "status"]) == cli.EXIT_OK


def test_export_writes_reachable_addresses(tmp_path):
    db = str(tmp_path / "ledger.db")
    seed(db, [TEST_NET_3], reachable={1, 254})
    out = tmp_path / "out"

    rc = cli.main(["--db", db, "--offset-bits", "8", "export", "--out-dir", str(out)])

    assert rc == cli.EXIT_OK
    with open(out / "reachable.csv", newline="") as f:
        rows = list(csv.DictReader(f))
    assert [r["ip"] for r in rows] == ["203.0.113.1", "203.0.113.254"]
    lines = (out / "reachable.ndjson").read_text().splitlines()
    assert json.loads(lines[0]) == {"ip": "203.0.113.1", "block_id": TEST_NET_3, "offset": 1}


def test_parse_block_accepts_ids_and_addresses():
    assert cli.parse_block("203.0.113.77", P8) == TEST_NET_3
    assert cli.parse_block("0x10", P8) == 16


def run_cli(*argv):
    env = {k: v for k, v in os.environ.items() if not k.startswith(("SWEEP_", "LEDGER_", "OTEL_"))}
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(ROOT), os.environ.get("PYTHONPATH")) if p)
    return subprocess.run(
        [sys.executable, "-m", "internet_map.cli", *argv], capture_output=True, text=True, env=env, timeout=120
    )


def test_fresh_process_logs_json_and_exits_cleanly(tmp_path):
    db = str(tmp_path / "ledger.db")

    status = run_cli("--db", db, "status")
    assert status.returncode == cli.EXIT_OK, status.stderr
    assert "Traceback" not in status.stderr
    docs = [json.loads(line) for line in status.stdout.splitlines() if line.strip()]
    assert docs[-1]["completed"] == 0

    refused = run_cli("--db", db, "scan", "--count", "1")
    assert refused.returncode == cli.EXIT_CONFIG, refused.stderr
    events = [json.loads(line) for line in refused.stdout.splitlines() if line.strip()]
    assert any(e["event"] == "configuration_error" and e["level"] == "error" for e in events)
