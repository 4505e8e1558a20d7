from __future__ import annotations

import asyncio

from agentforge.core.logging import configure_logging
from agentforge.services.maintenance import run_maintenance_loop


async def _main() -> None:
    # Run maintenance cycles on a fixed cadence without the arq queue.
    configure_logging()
    await run_maintenance_loop()


if __name__ == "__main__":
    asyncio.run(_main())
