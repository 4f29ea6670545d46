# app/api/flows.py
import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import ValidationError

from app.api.deps import get_catalog
from app.core.errors import FlowNotFound, GraphError
from app.core.flow_catalog import FlowCatalog
from app.models.flow import parse_flow

logger = logging.getLogger("ivr-flow-engine.api.flows")
router = APIRouter()


@router.post("/", summary="Deploy a flow (new version)")
async def deploy_flow(
    payload: Dict[str, Any] = Body(...),
    activate: bool = Query(True, description="Make this version the one new calls use"),
    catalog: FlowCatalog = Depends(get_catalog),
):
    """
    Validate and deploy a flow. Accepts the native format or the flow editor's export
    (nodes with `data`). Calls already in progress keep the version they started on.
    """
    try:
        graph = parse_flow(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail={"errors": exc.errors(include_url=False)})
    try:
        deployed = await catalog.deploy(graph, activate=activate)
    except GraphError as exc:
        raise HTTPException(status_code=422, detail={"flow_id": exc.flow_id, "errors": exc.errors})

    return {
        "status": "ok",
        "flow_id": deployed.id,
        "version": deployed.version,
        "entry_node": deployed.entry_node,
        "active": catalog.active_version(deployed.id) == deployed.version,
    }


@router.get("/", summary="List flows")
async def list_flows(catalog: FlowCatalog = Depends(get_catalog)):
    return {"flows": [s.model_dump() for s in catalog.list()]}


@router.get("/{flow_id}", summary="Get the active version of a flow")
async def get_flow(flow_id: str, catalog: FlowCatalog = Depends(get_catalog)):
    try:
        return catalog.get(flow_id).model_dump()
    except FlowNotFound:
        raise HTTPException(status_code=404, detail="flow not found")


@router.get("/{flow_id}/versions/{version}", summary="Get a specific flow version")
async def get_flow_version(flow_id: str, version: int, catalog: FlowCatalog = Depends(get_catalog)):
    try:
        return catalog.get(flow_id, version).model_dump()
    except FlowNotFound:
        raise HTTPException(status_code=404, detail="flow version not found")


@router.post("/{flow_id}/versions/{version}/activate", summary="Route new calls to a specific version")
async def activate_flow_version(flow_id: str, version: int, catalog: FlowCatalog = Depends(get_catalog)):
    try:
        graph = await catalog.activate(flow_id, version)
    except FlowNotFound:
        raise HTTPException(status_code=404, detail="flow version not found")
    return {"status": "ok", "flow_id": graph.id, "version": graph.version}
