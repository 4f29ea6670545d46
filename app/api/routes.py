# app/api/routes.py
import logging

from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import get_catalog, get_routes
from app.core.errors import FlowNotFound, RouteNotFound
from app.core.flow_catalog import FlowCatalog
from app.core.routing import RoutingRegistry
from app.models.schemas import RouteIn

logger = logging.getLogger("ivr-flow-engine.api.routes")
router = APIRouter()


@router.post("/", summary="Route a phone number to a flow")
async def register_route(
    route: RouteIn,
    routes: RoutingRegistry = Depends(get_routes),
    catalog: FlowCatalog = Depends(get_catalog),
):
    try:
        graph = catalog.get(route.flow_id)
    except FlowNotFound:
        raise HTTPException(status_code=404, detail=f"flow {route.flow_id} is not deployed")
    try:
        entry = await routes.register(
            route.number,
            route.flow_id,
            flow_name=route.flow_name or graph.name,
            voice_settings=route.voice_settings,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return {"status": "ok", "route": entry.model_dump(mode="json")}


@router.get("/", summary="List routes")
async def list_routes(routes: RoutingRegistry = Depends(get_routes)):
    return {"routes": [e.model_dump(mode="json") for e in routes.list()]}


@router.get("/{number}", summary="Resolve a number")
async def get_route(number: str, routes: RoutingRegistry = Depends(get_routes)):
    try:
        return routes.resolve(number).model_dump(mode="json")
    except RouteNotFound:
        raise HTTPException(status_code=404, detail="route not found")


@router.delete("/{number}", summary="Remove a route")
async def delete_route(number: str, routes: RoutingRegistry = Depends(get_routes)):
    if not await routes.unregister(number):
        raise HTTPException(status_code=404, detail="route not found")
    return {"status": "ok", "number": number}
