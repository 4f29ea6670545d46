# app/core/flow_catalog.py
"""
Deployed flow graphs, by flow id and version.

Every deploy validates the graph and stores it as a new version; old versions
are kept so calls already in progress finish on the graph they started with.
"""
import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from app.core.errors import FlowNotFound, GraphError
from app.core.validator import validate
from app.models.flow import FlowGraph
from app.models.schemas import FlowSummary

logger = logging.getLogger("ivr-flow-engine.core.flow_catalog")


class FlowCatalog:
    def __init__(self, repository=None):
        # repository: optional object with async save_flow / set_active (app.storage.flows_store)
        self.repository = repository
        self._versions: Dict[str, Dict[int, FlowGraph]] = {}
        self._active: Dict[str, int] = {}
        self._write_lock = asyncio.Lock()

    async def deploy(self, graph: FlowGraph, activate: bool = True) -> FlowGraph:
        """Validate and store `graph` as the next version. Raises GraphError."""
        validate(graph)
        async with self._write_lock:
            versions = self._versions.setdefault(graph.id, {})
            version = max(versions, default=0) + 1
            deployed = graph.model_copy(update={"version": version})
            if self.repository is not None:
                await self.repository.save_flow(deployed, active=activate)
            versions[version] = deployed
            if activate or graph.id not in self._active:
                self._active[graph.id] = version
        logger.info("Deployed flow %s v%d (%d nodes, active=%s)", graph.id, version, len(graph.nodes), activate)
        return deployed

    async def activate(self, flow_id: str, version: int) -> FlowGraph:
        graph = self.get(flow_id, version)
        async with self._write_lock:
            if self.repository is not None:
                await self.repository.set_active(flow_id, version)
            self._active[flow_id] = version
        logger.info("Activated flow %s v%d", flow_id, version)
        return graph

    def load(self, graphs: Iterable[FlowGraph], active: Optional[Dict[str, int]] = None) -> int:
        """Install already-versioned graphs (e.g. read back from the database)."""
        count = 0
        for graph in graphs:
            try:
                validate(graph)
            except GraphError as exc:
                logger.error("Skipping stored flow %s v%s: %s", graph.id, graph.version, exc)
                continue
            self._versions.setdefault(graph.id, {})[graph.version] = graph
            count += 1
        for flow_id, versions in self._versions.items():
            wanted = (active or {}).get(flow_id)
            self._active[flow_id] = wanted if wanted in versions else max(versions)
        return count

    def get(self, flow_id: str, version: Optional[int] = None) -> FlowGraph:
        versions = self._versions.get(flow_id)
        if not versions:
            raise FlowNotFound(flow_id, version)
        if version is None:
            version = self._active.get(flow_id, max(versions))
        graph = versions.get(version)
        if graph is None:
            raise FlowNotFound(flow_id, version)
        return graph

    def active_version(self, flow_id: str) -> Optional[int]:
        return self._active.get(flow_id)

    def list(self) -> List[FlowSummary]:
        summaries = []
        for flow_id in sorted(self._versions):
            graph = self.get(flow_id)
            summaries.append(FlowSummary(
                flow_id=flow_id,
                name=graph.name,
                description=graph.description,
                active_version=graph.version,
                versions=sorted(self._versions[flow_id]),
                entry_node=graph.entry_node,
                node_count=len(graph.nodes),
            ))
        return summaries
