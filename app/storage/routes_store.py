# app/storage/routes_store.py
"""
Phone routes backed by the database.

Exposes:
 - save_route(entry)
 - delete_route(number)
 - load_routes()
"""
import logging
from typing import List

from app.db.db import get_database
from app.models.db_models import routes
from app.models.schemas import RouteEntry, VoiceSettings, utcnow

logger = logging.getLogger("ivr-flow-engine.storage.routes")


async def save_route(entry: RouteEntry) -> None:
    """Upsert a route (delete + insert in one transaction, portable across backends)."""
    db = get_database()
    async with db.transaction():
        await db.execute(routes.delete().where(routes.c.number == entry.number))
        await db.execute(routes.insert().values(
            number=entry.number,
            flow_id=entry.flow_id,
            flow_name=entry.flow_name,
            voice_json=entry.voice_settings.model_dump_json(),
            updated_at=entry.updated_at.isoformat(),
        ))


async def delete_route(number: str) -> None:
    db = get_database()
    await db.execute(routes.delete().where(routes.c.number == number))


async def load_routes() -> List[RouteEntry]:
    db = get_database()
    rows = await db.fetch_all(routes.select().order_by(routes.c.number))
    results = []
    for row in rows:
        r = dict(row._mapping)
        results.append(RouteEntry(
            number=r["number"],
            flow_id=r["flow_id"],
            flow_name=r["flow_name"],
            voice_settings=VoiceSettings.model_validate_json(r["voice_json"] or "{}"),
            updated_at=r["updated_at"] or utcnow(),
        ))
    logger.info("Loaded %d stored route(s)", len(results))
    return results
