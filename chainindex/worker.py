import asyncio

from chainindex.container import Services
from chainindex.logger import logger

CONCURRENCY_LIMIT = 5

async def generate_embeddings_for(sem: asyncio.Semaphore, services: Services, paper_id: int) -> bool:
    async with sem:
        await logger.log(f"Generating embeddings for paper {paper_id}")
        try:
            embedding_ref = await asyncio.to_thread(services.embeddings.generate_paper_embeddings, paper_id)
        except Exception as e:
            await logger.log(f"  - Failed for paper {paper_id}: {e}")
            return False
        await logger.log(f"  - Paper {paper_id} embedded: {embedding_ref}")
        return True

async def run_embedding_backfill(services: Services) -> int:
    """Generate embeddings for every active paper that has none yet."""
    await logger.log("Starting embedding back-fill...")

    missing = await asyncio.to_thread(services.embeddings.missing_embeddings)
    if not missing:
        await logger.log("All active papers have embeddings.")
        return 0

    await logger.log(f"Embedding {len(missing)} papers...")
    sem = asyncio.Semaphore(CONCURRENCY_LIMIT)
    results = await asyncio.gather(*[generate_embeddings_for(sem, services, pid) for pid in missing])
    done = sum(1 for ok in results if ok)

    stats = services.embeddings.stats()
    await logger.log(
        f"Back-fill finished: {done}/{len(missing)} embedded, "
        f"{stats.papers_with_embeddings}/{stats.total_papers} papers have embeddings."
    )
    return done

async def fulfill_randomness(services: Services, token: int):
    """Deliver a local oracle's randomness as a separate unit of work after the trigger returned."""
    try:
        await asyncio.to_thread(services.oracle.fulfill_request, token)
    except Exception as e:
        await logger.log(f"Randomness fulfilment for token {token} failed: {e}")
        return
    request = services.assignments.get_request(token)
    await logger.log(f"Reviewer {request.reviewer} assigned to paper {request.paper_id} (token {token})")
