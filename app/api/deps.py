# app/api/deps.py
"""Accessors for the per-app singletons created in app.main.create_app()."""
from fastapi import Request

from app.core.events import EventChannel
from app.core.flow_catalog import FlowCatalog
from app.core.orchestrator import CallOrchestrator
from app.core.routing import RoutingRegistry
from app.state.session_store import SessionStore


def get_orchestrator(request: Request) -> CallOrchestrator:
    return request.app.state.orchestrator


def get_catalog(request: Request) -> FlowCatalog:
    return request.app.state.catalog


def get_routes(request: Request) -> RoutingRegistry:
    return request.app.state.routes


def get_store(request: Request) -> SessionStore:
    return request.app.state.sessions


def get_events(request: Request) -> EventChannel:
    return request.app.state.events
