"""
Example of putting QuizCache in front of quiz generation.

This example shows how to:
- Cache generated quizzes with get_or_set and the cached decorator
- Record dependencies between folders and quiz listings
- Invalidate on entity changes
- Warm popular and predicted keys
"""

import asyncio
import random

from quizcache.caching import (
    CacheConfig,
    CacheServiceConfig,
    cached,
    initialize_cache,
    shutdown_cache
)


async def load_from_database(key: str):
    """Stand-in for the persistence layer used by warming."""
    await asyncio.sleep(0.01)
    return {"key": key, "loaded": True}


async def generate_quiz(topic: str):
    """Stand-in for an expensive LLM call."""
    await asyncio.sleep(0.2)
    return {"topic": topic, "questions": [f"Question {i} about {topic}" for i in range(5)]}


@cached(key_prefix="explanation", ttl=600.0)
async def explain_answer(question_id: int):
    await asyncio.sleep(0.1)
    return f"Explanation for question {question_id}"


async def main():
    config = CacheServiceConfig(
        cache_config=CacheConfig(max_size=500, ttl=1800.0, compression_enabled=True),
        default_data_loader=load_from_database,
        auto_warm_popular_content=False
    )
    service = await initialize_cache(config)

    try:
        # Cache-aside generation; concurrent requests share one LLM call
        results = await asyncio.gather(*(
            service.get_or_set("quiz:biology", lambda: generate_quiz("biology"), user_id="u1")
            for _ in range(3)
        ))
        print(f"Generated once, served {len(results)} callers "
              f"({sum(r.deduplicated for r in results)} deduplicated)")

        print(await explain_answer(7))
        print(await explain_answer(7))

        # Folder listing depends on the folder entity
        await service.set("folder:12:contents", ["quiz:biology"])
        await service.set("quiz:list:12", ["quiz:biology"], depends_on=["folder:12"])
        removed = await service.invalidate_entity("update", "folder", 12)
        print(f"Folder update invalidated {removed} dependent keys")

        # Simulated traffic, then warming
        for _ in range(50):
            await service.get(f"user:{random.randint(1, 5)}:profile", user_id="u1")
        job_id = await service.warm_popular(limit=5)
        job = await service.wait_for_warming(job_id, timeout=10)
        print(f"Popular warming job {job.status.value}: {job.progress}")

        job = await service.wait_for_warming(await service.warm_predictive("u1"), timeout=10)
        print(f"Predictive warming job {job.status.value}: {job.progress}")

        stats = service.get_cache_stats()
        print(f"Hit rate: {stats['cache_stats']['hit_rate']:.2%}")
        for recommendation in stats['recommendations']:
            print(f"Recommendation: {recommendation}")

    finally:
        await shutdown_cache()


if __name__ == "__main__":
    asyncio.run(main())
