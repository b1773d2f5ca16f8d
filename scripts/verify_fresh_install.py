#!/usr/bin/env python3
"""
scripts/verify_fresh_install.py

Purpose:
Run a deterministic "fresh machine" verification for MediWallet.
This checks runtime prerequisites, required files, the local store schema
(tables, chat indexes, latest column sets) and a lightweight API startup
smoke test.
"""

from __future__ import annotations

import argparse
import importlib
import json
import os
import subprocess
import sys
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import List, Optional, Tuple


REQUIRED_IMPORTS = [
    "fastapi",
    "uvicorn",
    "multipart",  # python-multipart import name
    "PIL",
    "requests",
    "dotenv",
]

REQUIRED_FILES = [
    "app.py",
    "config.py",
    "db_store.py",
    "records.py",
    "blob_store.py",
    "vaccine_validity.py",
    "ai_analysis.py",
    "pyproject.toml",
]

REQUIRED_TABLES = [
    "test_results",
    "user_settings",
    "test_result_shares",
    "chat_messages",
    "medications",
    "vaccinations",
]


class CheckResults:
    def __init__(self) -> None:
        self.ok: List[str] = []
        self.fail: List[str] = []
        self.warn: List[str] = []

    def pass_(self, msg: str) -> None:
        self.ok.append(msg)
        print(f"[PASS] {msg}")

    def fail_(self, msg: str) -> None:
        self.fail.append(msg)
        print(f"[FAIL] {msg}")

    def warn_(self, msg: str) -> None:
        self.warn.append(msg)
        print(f"[WARN] {msg}")

    def summary(self) -> int:
        print("\n=== Verification Summary ===")
        print(f"Passed: {len(self.ok)}")
        print(f"Warnings: {len(self.warn)}")
        print(f"Failed: {len(self.fail)}")
        return 1 if self.fail else 0


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def check_python_version(results: CheckResults) -> None:
    if sys.version_info >= (3, 10):
        results.pass_(f"Python version is supported: {sys.version.split()[0]}")
    else:
        results.fail_(f"Python >= 3.10 required, found {sys.version.split()[0]}")


def check_required_files(results: CheckResults, repo: Path) -> None:
    missing = [rel for rel in REQUIRED_FILES if not (repo / rel).exists()]
    if missing:
        results.fail_(f"Missing required files: {', '.join(missing)}")
        return
    results.pass_("Required project files are present")


def check_imports(results: CheckResults) -> None:
    missing = []
    for mod in REQUIRED_IMPORTS:
        try:
            importlib.import_module(mod)
        except ImportError:
            missing.append(mod)
    if missing:
        results.fail_(f"Missing Python imports: {', '.join(missing)}")
    else:
        results.pass_("All required Python packages import successfully")


def _is_valid_sqlite(path: Path) -> bool:
    try:
        with path.open("rb") as f:
            return f.read(16).startswith(b"SQLite format 3")
    except OSError:
        return False


def check_db_schema(results: CheckResults, db_path: Path) -> None:
    """Open (and if needed create or upgrade) the store, then compare it with the declared schema."""
    import db_store

    if db_path.exists() and not _is_valid_sqlite(db_path):
        results.fail_(f"Store file is not a SQLite database: {db_path}")
        return

    store = db_store.Store(db_path)
    try:
        store.open()
        report = store.schema_report()
    except db_store.StoreError as exc:
        results.fail_(f"Store initialization error: {exc}")
        return
    finally:
        store.close()
    results.pass_(f"Store opened: {db_path}")

    missing = [t for t in REQUIRED_TABLES if t not in report["tables"]]
    if missing:
        results.fail_(f"Store missing required tables: {', '.join(missing)}")
    else:
        results.pass_("Store schema includes required tables")

    missing_idx = [name for name in db_store.INDEXES if name not in report["indexes"]]
    if missing_idx:
        results.fail_(f"Store missing chat indexes: {', '.join(missing_idx)}")
    else:
        results.pass_("Chat indexes present")

    gaps = [
        f"{step.table}.{step.column}"
        for step in db_store.MIGRATIONS
        if step.column not in report["tables"].get(step.table, [])
    ]
    if gaps:
        results.fail_(f"Store missing upgraded columns: {', '.join(gaps)}")
    else:
        results.pass_("All upgraded columns present")

    if report["version"] < db_store.SCHEMA_VERSION:
        results.warn_(f"Schema version {report['version']} is behind {db_store.SCHEMA_VERSION}")
    else:
        results.pass_(f"Schema version {report['version']}")


def _poll_store_stats(base_url: str, timeout_s: int) -> Tuple[bool, str]:
    start = time.time()
    url = f"{base_url}/api/store/stats"
    while time.time() - start < timeout_s:
        try:
            with urllib.request.urlopen(url, timeout=2.0) as resp:
                if resp.status != 200:
                    time.sleep(0.5)
                    continue
                data = json.loads(resp.read().decode("utf-8"))
                if isinstance(data, dict) and "count" in data:
                    return True, f"/api/store/stats ok: count={data.get('count')} bytes={data.get('totalBytes')}"
        except (urllib.error.URLError, ConnectionError, ValueError):
            time.sleep(0.5)
    return False, "Timed out waiting for /api/store/stats"


def smoke_test_api_startup(results: CheckResults, repo: Path, db_path: Path, port: int, timeout_s: int) -> None:
    env = os.environ.copy()
    env["MEDIWALLET_DB_PATH"] = str(db_path)
    # Never call the remote analysis service during verification.
    env["OPENAI_API_KEY"] = ""

    cmd = [
        sys.executable,
        "-m",
        "uvicorn",
        "app:app",
        "--host",
        "127.0.0.1",
        "--port",
        str(port),
    ]
    proc = subprocess.Popen(
        cmd,
        cwd=str(repo),
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )

    try:
        ok, detail = _poll_store_stats(f"http://127.0.0.1:{port}", timeout_s=timeout_s)
        if ok:
            results.pass_(f"API startup smoke test passed ({detail})")
            return
        tail = ""
        if proc.poll() is not None and proc.stdout:
            # Pull a short tail to help debug startup failures.
            tail = (proc.stdout.read() or "")[-1200:]
        if tail.strip():
            results.fail_(f"API smoke test failed: {detail}\n--- uvicorn tail ---\n{tail}")
        else:
            results.fail_(f"API smoke test failed: {detail}")
    finally:
        proc.terminate()
        try:
            proc.wait(timeout=8)
        except subprocess.TimeoutExpired:
            proc.kill()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Verify fresh MediWallet install")
    parser.add_argument("--repo", default=str(_repo_root()), help="Repository root path")
    parser.add_argument("--db", default=None, help="Store path to verify (default: <repo>/data/mediwallet.db)")
    parser.add_argument("--skip-smoke", action="store_true", help="Skip uvicorn startup smoke test")
    parser.add_argument("--port", type=int, default=5077, help="Port for smoke test server")
    parser.add_argument("--timeout", type=int, default=40, help="Smoke test timeout in seconds")
    args = parser.parse_args(argv)

    repo = Path(args.repo).resolve()
    db_path = Path(args.db) if args.db else repo / "data" / "mediwallet.db"
    if str(repo) not in sys.path:
        sys.path.insert(0, str(repo))

    results = CheckResults()
    print(f"[info] Verifying repository: {repo}")

    check_python_version(results)
    check_required_files(results, repo)
    check_imports(results)
    check_db_schema(results, db_path)
    if not args.skip_smoke:
        smoke_test_api_startup(results, repo, db_path, port=args.port, timeout_s=args.timeout)

    return results.summary()


if __name__ == "__main__":
    raise SystemExit(main())
