from __future__ import annotations

import asyncio

from agentforge.persistence.db import SessionLocal
from agentforge.services.maintenance import run_retention_cleanup


async def prune() -> None:
    async with SessionLocal() as session:
        counts = await run_retention_cleanup(session)
        await session.commit()
        for name, deleted in counts.items():
            print(f"pruned_{name}={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
