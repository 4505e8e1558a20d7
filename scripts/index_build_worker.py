from __future__ import annotations

import asyncio

from agentforge.core.logging import configure_logging
from agentforge.services.maintenance import run_index_build_loop
from agentforge.services.similarity import rebuild_vector_index


async def _main() -> None:
    # Restore already-indexed rows, then keep draining pending embeddings.
    configure_logging()
    await rebuild_vector_index()
    await run_index_build_loop()


if __name__ == "__main__":
    asyncio.run(_main())
