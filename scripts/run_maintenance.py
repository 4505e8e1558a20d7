from __future__ import annotations

import argparse
import asyncio
import json
import sys

from agentforge.core.logging import configure_logging
from agentforge.services.maintenance import run_maintenance_cycle


async def run(*, strict: bool) -> int:
    report = await run_maintenance_cycle(trigger="manual")
    print(json.dumps(report.to_dict(), default=str, indent=2))
    if report.status == "already_running":
        return 2
    if strict and report.status != "succeeded":
        return 1
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one maintenance cycle now.")
    parser.add_argument("--strict", action="store_true", help="exit non-zero unless every step succeeded")
    args = parser.parse_args()
    configure_logging()
    sys.exit(asyncio.run(run(strict=args.strict)))


if __name__ == "__main__":
    main()
