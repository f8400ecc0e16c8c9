"""
jobs.py: the periodic sweeps, runnable once from the command line.

    python jobs.py expire         # Phase A: expire transfers, drop remote objects
    python jobs.py delete-local   # Phase B: drop local files after the grace period
    python jobs.py sweep          # Phase A then Phase B
    python jobs.py orphans        # abandoned chunks, multipart uploads and sessions

Exits with status 1 when any unit of work failed.
"""

import argparse
import json
import logging
import sys

from errors import PartialBatchFailure
from services import get_lifecycle_engine, get_orphan_collector

logger = logging.getLogger(__name__)


def run_expiry_sweep() -> dict:
    reports = get_lifecycle_engine().run()
    return {phase: report.to_dict() for phase, report in reports.items()}


def run_orphan_sweep() -> dict:
    return get_orphan_collector().collect().to_dict()


def run_once(command: str) -> dict:
    engine = get_lifecycle_engine()
    if command == "expire":
        report = engine.expire_transfers()
        report.raise_for_failures()
        return {"expire": report.to_dict()}
    if command == "delete-local":
        report = engine.delete_local_files()
        report.raise_for_failures()
        return {"delete_local": report.to_dict()}
    if command == "sweep":
        reports = engine.run(strict=True)
        return {phase: report.to_dict() for phase, report in reports.items()}
    if command == "orphans":
        return {"orphans": run_orphan_sweep()}
    raise ValueError(f"Unknown command: {command}")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run a transfer storage sweep once.")
    parser.add_argument("command", choices=["expire", "delete-local", "sweep", "orphans"])
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        result = run_once(args.command)
    except PartialBatchFailure as e:
        logger.error(str(e))
        print(json.dumps(e.report.to_dict(), indent=2, default=str))
        return 1
    print(json.dumps(result, indent=2, default=str))
    if args.command == "orphans" and result["orphans"]["errors"]:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
