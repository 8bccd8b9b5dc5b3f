import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..errors import SessionStoreError
from ..models import Message, Role

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session:"


class SessionStore(ABC):
    """Per-session ordered message history.

    Histories are append-only: there is no operation that removes, reorders
    or truncates a message. The first message of every history is the fixed
    system instruction. Implementations apply no locking; concurrent turns
    on one session id must be serialized by the caller.
    """

    def __init__(self, system_prompt: str) -> None:
        self._system_prompt = system_prompt

    def _seed(self) -> Message:
        return Message(role=Role.SYSTEM, content=self._system_prompt)

    @abstractmethod
    async def get_or_create(self, session_id: str) -> List[Message]:
        """Return a snapshot of the history, seeding it when absent."""

    @abstractmethod
    async def append(self, session_id: str, message: Message) -> None:
        """Append a message, creating the session first if needed."""


@dataclass
class _SessionEntry:
    messages: List[Message]
    last_active: float = field(default=0.0)


class InMemorySessionStore(SessionStore):
    """Dict-backed store with idle-TTL eviction, checked on every access."""

    def __init__(
        self,
        system_prompt: str,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(system_prompt)
        self._ttl = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, _SessionEntry] = {}

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def evict_expired(self) -> List[str]:
        """Drop sessions idle for longer than the TTL; return their ids."""
        if not self._ttl:
            return []
        cutoff = self._clock() - self._ttl
        expired = [sid for sid, entry in self._sessions.items() if entry.last_active < cutoff]
        for sid in expired:
            del self._sessions[sid]
            logger.info("Session %s evicted after %ss idle", sid, self._ttl)
        return expired

    def _entry(self, session_id: str) -> _SessionEntry:
        self.evict_expired()
        entry = self._sessions.get(session_id)
        if entry is None:
            entry = _SessionEntry(messages=[self._seed()])
            self._sessions[session_id] = entry
            logger.debug("Session %s created", session_id)
        entry.last_active = self._clock()
        return entry

    async def get_or_create(self, session_id: str) -> List[Message]:
        return list(self._entry(session_id).messages)

    async def append(self, session_id: str, message: Message) -> None:
        self._entry(session_id).messages.append(message)


class RedisSessionStore(SessionStore):
    """History kept as one Redis list per session, expiring after ttl_seconds idle."""

    def __init__(self, url: str, system_prompt: str, ttl_seconds: int | None = None) -> None:
        super().__init__(system_prompt)
        self._url = url
        self._ttl = ttl_seconds
        self._client: Redis[Any] | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(self._url, decode_responses=True)
        try:
            await self._client.ping()
            logger.info("Redis session store connected: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise SessionStoreError(f"Redis unavailable: {e}") from e

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis session store closed")

    def _key(self, session_id: str) -> str:
        return f"{SESSION_KEY_PREFIX}{session_id}"

    def _require_client(self) -> "Redis[Any]":
        if self._client is None:
            raise SessionStoreError("Redis session store is not connected")
        return self._client

    async def _push(self, key: str, *messages: Message) -> None:
        client = self._require_client()
        await client.rpush(key, *(json.dumps(m.to_dict()) for m in messages))
        if self._ttl:
            await client.expire(key, self._ttl)

    async def get_or_create(self, session_id: str) -> List[Message]:
        key = self._key(session_id)
        try:
            raw = await self._require_client().lrange(key, 0, -1)
            if not raw:
                seed = self._seed()
                await self._push(key, seed)
                return [seed]
            if self._ttl:
                await self._require_client().expire(key, self._ttl)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis read of %s failed: %s", key, e)
            raise SessionStoreError(f"Could not load session {session_id}: {e}") from e
        return [Message.from_dict(json.loads(item)) for item in raw]

    async def append(self, session_id: str, message: Message) -> None:
        key = self._key(session_id)
        try:
            if not await self._require_client().exists(key):
                await self._push(key, self._seed(), message)
                return
            await self._push(key, message)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis append to %s failed: %s", key, e)
            raise SessionStoreError(f"Could not append to session {session_id}: {e}") from e
