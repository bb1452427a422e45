"""
Cache manager schemas.
"""

from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Any, Optional


class CacheEntry(BaseModel):
    """
    A cached value with its TTL metadata.

    Times are epoch seconds. Serialized to the durable tier as
    ``{data, timestamp, ttl, expires, lastAccess?}``.
    """
    model_config = ConfigDict(populate_by_name=True)

    data: Any = None
    timestamp: float
    ttl: float
    expires: float
    last_access: Optional[float] = Field(None, alias="lastAccess")

    @classmethod
    def create(cls, data: Any, ttl: float, now: float) -> "CacheEntry":
        return cls(data=data, timestamp=now, ttl=ttl, expires=now + ttl)

    def is_expired(self, now: float) -> bool:
        return now > self.expires

    @property
    def recency(self) -> float:
        """Last access time, falling back to creation time."""
        return self.last_access if self.last_access is not None else self.timestamp

    def dumps(self) -> str:
        exclude = {"last_access"} if self.last_access is None else None
        return self.model_dump_json(by_alias=True, exclude=exclude)


class CacheStats(BaseModel):
    memory_items: int
    storage_items: int
    memory_bytes: int
    memory_kb: float
    hits: int
    misses: int
    hit_rate: float  # percent
    last_cleanup: Optional[datetime] = None
