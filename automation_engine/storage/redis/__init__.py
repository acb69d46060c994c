"""Redis backend for the job queue and the scheduler lock."""

from automation_engine.storage.redis.connection import RedisConnection

__all__ = ["RedisConnection"]
