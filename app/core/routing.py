# app/core/routing.py
"""
Routing registry: destination phone number -> active flow.

Reads are plain dict lookups. Writes (deploy / activate / deactivate) are rare
and go through a single registry-wide lock; with a database configured they
are written through to the `routes` table.
"""
import asyncio
import logging
import re
from typing import Iterable, List, Optional

from app.core.errors import RouteNotFound
from app.models.schemas import RouteEntry, VoiceSettings

logger = logging.getLogger("ivr-flow-engine.core.routing")

_NUMBER_NOISE = re.compile(r"[\s\-().]")


def normalize_number(number: Optional[str]) -> str:
    return _NUMBER_NOISE.sub("", number or "")


class RoutingRegistry:
    def __init__(self, repository=None):
        # repository: optional object with async save_route / delete_route (app.storage.routes_store)
        self.repository = repository
        self._routes = {}
        self._write_lock = asyncio.Lock()

    def load(self, entries: Iterable[RouteEntry]) -> int:
        count = 0
        for entry in entries:
            number = normalize_number(entry.number)
            self._routes[number] = entry.model_copy(update={"number": number})
            count += 1
        return count

    async def register(self, number: str, flow_id: str, flow_name: Optional[str] = None,
                       voice_settings: Optional[VoiceSettings] = None) -> RouteEntry:
        key = normalize_number(number)
        if not key:
            raise ValueError("number must not be empty")
        entry = RouteEntry(
            number=key,
            flow_id=flow_id,
            flow_name=flow_name,
            voice_settings=voice_settings or VoiceSettings(),
        )
        async with self._write_lock:
            if self.repository is not None:
                await self.repository.save_route(entry)
            previous = self._routes.get(key)
            self._routes[key] = entry
        if previous and previous.flow_id != flow_id:
            logger.info("Re-routed %s: %s -> %s", key, previous.flow_id, flow_id)
        else:
            logger.info("Routed %s -> %s", key, flow_id)
        return entry

    async def unregister(self, number: str) -> bool:
        key = normalize_number(number)
        async with self._write_lock:
            if self.repository is not None:
                await self.repository.delete_route(key)
            removed = self._routes.pop(key, None) is not None
        if removed:
            logger.info("Removed route for %s", key)
        return removed

    def resolve(self, number: Optional[str]) -> RouteEntry:
        entry = self._routes.get(normalize_number(number))
        if entry is None:
            raise RouteNotFound(number)
        return entry

    def list(self) -> List[RouteEntry]:
        return sorted(self._routes.values(), key=lambda e: e.number)
