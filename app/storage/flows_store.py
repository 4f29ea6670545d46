# app/storage/flows_store.py
"""
Flow versions backed by the database.

Exposes:
 - save_flow(graph, active)
 - set_active(flow_id, version)
 - load_flows() -> (graphs, {flow_id: active_version})
"""
import logging
from typing import Dict, List, Tuple

from app.db.db import get_database
from app.models.db_models import flows
from app.models.flow import FlowGraph
from app.models.schemas import utcnow

logger = logging.getLogger("ivr-flow-engine.storage.flows")


async def save_flow(graph: FlowGraph, active: bool = True) -> None:
    """Insert a new flow version; when `active`, it becomes the only active row for the flow."""
    db = get_database()
    now = utcnow().isoformat()
    async with db.transaction():
        if active:
            await db.execute(flows.update().where(flows.c.flow_id == graph.id).values(active=False))
        await db.execute(flows.insert().values(
            flow_id=graph.id,
            version=graph.version,
            name=graph.name,
            graph_json=graph.model_dump_json(),
            active=active,
            updated_at=now,
        ))
    logger.debug("Saved flow %s v%d", graph.id, graph.version)


async def set_active(flow_id: str, version: int) -> None:
    db = get_database()
    async with db.transaction():
        await db.execute(flows.update().where(flows.c.flow_id == flow_id).values(active=False))
        await db.execute(
            flows.update()
            .where(flows.c.flow_id == flow_id)
            .where(flows.c.version == version)
            .values(active=True)
        )


async def load_flows() -> Tuple[List[FlowGraph], Dict[str, int]]:
    db = get_database()
    rows = await db.fetch_all(flows.select().order_by(flows.c.flow_id, flows.c.version))
    graphs: List[FlowGraph] = []
    active: Dict[str, int] = {}
    for row in rows:
        r = dict(row._mapping)
        graph = FlowGraph.model_validate_json(r["graph_json"])
        graphs.append(graph)
        if r["active"]:
            active[graph.id] = graph.version
    logger.info("Loaded %d stored flow version(s)", len(graphs))
    return graphs, active
