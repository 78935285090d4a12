from redis.asyncio import Redis


def create_redis(redis_url: str) -> Redis:
    return Redis.from_url(redis_url, decode_responses=True)


async def close_redis(client: Redis | None) -> None:
    if client is not None:
        await client.aclose()
