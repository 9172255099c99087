from fastapi import Request
from redis.asyncio import Redis


async def get_redis(request: Request) -> Redis:
    """FastAPI dependency returning the Redis client stored on app state."""
    return request.app.state.redis
