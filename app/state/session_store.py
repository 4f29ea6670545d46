# app/state/session_store.py
"""
Session store with an in-memory backend and an optional Redis (async) backend.

Exports:
 - connect_redis(redis_url) / disconnect_redis(client)
 - SessionStore: get_or_create / get / update / terminate / sweep_idle / list
 - InMemorySessionBackend, RedisSessionBackend
 - run_sweeper(store, interval, max_age)

Behavior:
 - Mutations for one call id are serialized by an asyncio.Lock; waiters are
   served in arrival order. Different call ids never share a lock.
 - With Redis, a Redis lock is also taken so several app instances can share
   the store. Session values are JSON and expire after the idle timeout.
 - sweep_idle() never evicts a session that is being mutated or has
   mutations queued.
"""
import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import LockError

from app.core.errors import SessionConflict, SessionNotFound
from app.models.schemas import Session, utcnow

logger = logging.getLogger("ivr-flow-engine.state.session_store")

Mutator = Callable[[Session], Any]


async def connect_redis(redis_url: Optional[str]) -> Optional[redis.Redis]:
    """
    Connect to Redis if redis_url is provided.
    Returns the client, or None when no URL is configured or Redis is unreachable.
    """
    if not redis_url:
        logger.debug("No redis_url provided; sessions stay in memory.")
        return None
    client = redis.from_url(redis_url, decode_responses=True)
    try:
        # ping to ensure connection; this may raise if unreachable
        await client.ping()
    except (redis.RedisError, OSError) as exc:
        logger.error("Failed to connect to Redis at %s: %s", redis_url, exc)
        await client.aclose()
        return None
    logger.info("Connected to Redis at %s", redis_url)
    return client


async def disconnect_redis(client: Optional[redis.Redis]) -> None:
    if client is None:
        return
    await client.aclose()
    logger.info("Redis client disconnected.")


class InMemorySessionBackend:
    """Process-local storage; fine for a single-instance deployment."""

    def __init__(self):
        self._sessions: Dict[str, Session] = {}

    async def load(self, call_id: str) -> Optional[Session]:
        return self._sessions.get(call_id)

    async def save(self, session: Session) -> None:
        self._sessions[session.call_id] = session

    async def delete(self, call_id: str) -> bool:
        return self._sessions.pop(call_id, None) is not None

    async def all(self) -> List[Session]:
        return list(self._sessions.values())

    @asynccontextmanager
    async def lock(self, call_id: str) -> AsyncIterator[None]:
        yield


class RedisSessionBackend:
    """Sessions as JSON strings under `ivr:session:<call_id>`."""

    prefix = "ivr:session:"

    def __init__(self, client: redis.Redis, ttl: int = 3600, lock_timeout: float = 5.0):
        self.client = client
        self.ttl = ttl
        self.lock_timeout = lock_timeout

    def _key(self, call_id: str) -> str:
        return f"{self.prefix}{call_id}"

    async def load(self, call_id: str) -> Optional[Session]:
        raw = await self.client.get(self._key(call_id))
        if not raw:
            return None
        return Session.model_validate_json(raw)

    async def save(self, session: Session) -> None:
        await self.client.set(self._key(session.call_id), session.model_dump_json(), ex=self.ttl)

    async def delete(self, call_id: str) -> bool:
        return bool(await self.client.delete(self._key(call_id)))

    async def all(self) -> List[Session]:
        keys = [key async for key in self.client.scan_iter(match=f"{self.prefix}*")]
        if not keys:
            return []
        results = []
        for raw in await self.client.mget(*keys):
            if raw:
                results.append(Session.model_validate_json(raw))
        return results

    @asynccontextmanager
    async def lock(self, call_id: str) -> AsyncIterator[None]:
        lock = self.client.lock(
            f"ivr:lock:{call_id}",
            timeout=self.lock_timeout * 2,
            blocking_timeout=self.lock_timeout,
        )
        if not await lock.acquire():
            raise SessionConflict(f"could not lock session {call_id} within {self.lock_timeout}s")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as exc:
                # lock expired while held; the next writer already owns it
                logger.warning("Session lock for %s was lost before release: %s", call_id, exc)


class SessionStore:
    def __init__(self, backend=None, idle_timeout: int = 3600):
        self.backend = backend or InMemorySessionBackend()
        self.idle_timeout = idle_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, call_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(call_id)
        if lock is None:
            lock = self._locks[call_id] = asyncio.Lock()
        self._holders[call_id] = self._holders.get(call_id, 0) + 1
        try:
            async with lock:
                async with self.backend.lock(call_id):
                    yield
        finally:
            self._holders[call_id] -= 1
            if not self._holders[call_id]:
                del self._holders[call_id]
                self._locks.pop(call_id, None)

    def is_busy(self, call_id: str) -> bool:
        """True while a mutation for call_id is running or queued."""
        return call_id in self._holders

    async def get(self, call_id: str) -> Optional[Session]:
        return await self.backend.load(call_id)

    async def list(self) -> List[Session]:
        return await self.backend.all()

    async def get_or_create(self, call_id: str, flow_id: str, flow_version: int, **fields: Any) -> Tuple[Session, bool]:
        """Return (session, created). Existing sessions are returned untouched."""
        async with self._locked(call_id):
            session = await self.backend.load(call_id)
            if session is not None:
                return session, False
            session = Session(call_id=call_id, flow_id=flow_id, flow_version=flow_version, **fields)
            await self.backend.save(session)
            logger.info("Created session %s (flow=%s v%s)", call_id, flow_id, flow_version)
            return session, True

    async def update(self, call_id: str, mutator: Mutator) -> Session:
        """
        Apply mutator(session) -> Session atomically for this call id.
        The mutator may be a coroutine function. Raises SessionNotFound.
        """
        async with self._locked(call_id):
            session = await self.backend.load(call_id)
            if session is None:
                raise SessionNotFound(call_id)
            result = mutator(session)
            if inspect.isawaitable(result):
                result = await result
            updated = (result or session).touch()
            await self.backend.save(updated)
            return updated

    async def terminate(self, call_id: str) -> bool:
        async with self._locked(call_id):
            removed = await self.backend.delete(call_id)
        if removed:
            logger.info("Terminated session %s", call_id)
        return removed

    async def sweep_idle(self, max_age: Optional[float] = None) -> List[str]:
        """Remove sessions idle for more than max_age seconds. Returns the removed call ids."""
        max_age = self.idle_timeout if max_age is None else max_age
        cutoff = utcnow() - timedelta(seconds=max_age)
        removed = []
        for session in await self.backend.all():
            if session.last_activity > cutoff or self.is_busy(session.call_id):
                continue
            async with self._locked(session.call_id):
                # re-read under the lock: a webhook may have touched it meanwhile
                current = await self.backend.load(session.call_id)
                if current is None or current.last_activity > cutoff:
                    continue
                await self.backend.delete(session.call_id)
                removed.append(session.call_id)
        if removed:
            logger.info("Swept %d idle session(s): %s", len(removed), ", ".join(removed))
        return removed


async def run_sweeper(store: SessionStore, interval: float, max_age: Optional[float] = None) -> None:
    """Periodic idle sweep; runs until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            await store.sweep_idle(max_age)
        except (redis.RedisError, OSError, SessionConflict) as exc:
            logger.warning("Idle sweep failed: %s", exc)
