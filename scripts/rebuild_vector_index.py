from __future__ import annotations

import argparse
import asyncio

from agentforge.core.logging import configure_logging
from agentforge.persistence.db import SessionLocal
from agentforge.persistence.repos.embeddings import requeue_all
from agentforge.services.similarity import drain_pending_embeddings, rebuild_vector_index


async def rebuild(*, requeue: bool) -> None:
    configure_logging()
    requeued = 0
    if requeue:
        # Reset every row to pending so the build pass writes it into the new backend.
        async with SessionLocal() as session:
            requeued = await requeue_all(session)
            await session.commit()
    loaded = await rebuild_vector_index()
    report = await drain_pending_embeddings()
    print(f"requeued={requeued} reloaded={loaded} indexed={len(report.indexed)} failed={len(report.failed)}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Rebuild the vector index from stored embeddings.")
    parser.add_argument(
        "--requeue",
        action="store_true",
        help="send every embedding back through the build pass (after switching backends)",
    )
    args = parser.parse_args()
    asyncio.run(rebuild(requeue=args.requeue))


if __name__ == "__main__":
    main()
