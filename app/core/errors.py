# app/core/errors.py
"""
Error taxonomy for the orchestration engine.

Deploy-time problems (GraphError) are reported to the caller of the admin API.
Everything else is raised on the call path and converted into a spoken
apology + hangup by the orchestrator, so the carrier always gets valid markup.
"""
from typing import Iterable, List, Optional


class IVRError(Exception):
    """Base class for engine errors."""


class GraphError(IVRError):
    """A flow graph is structurally invalid."""

    def __init__(self, errors: Iterable[str], flow_id: Optional[str] = None):
        self.errors: List[str] = list(errors)
        self.flow_id = flow_id
        prefix = f"flow {flow_id!r} is invalid" if flow_id else "flow is invalid"
        super().__init__(f"{prefix}: " + "; ".join(self.errors))


class RouteNotFound(IVRError):
    """No flow is bound to the dialed number."""

    def __init__(self, number: Optional[str]):
        self.number = number
        super().__init__(f"no route for number {number!r}")


class FlowNotFound(IVRError):
    """A route or session points at a flow (or version) that is not deployed."""

    def __init__(self, flow_id: str, version: Optional[int] = None):
        self.flow_id = flow_id
        self.version = version
        suffix = f" version {version}" if version is not None else ""
        super().__init__(f"flow {flow_id!r}{suffix} is not deployed")


class SessionConflict(IVRError):
    """The per-call lock could not be acquired in time."""


class EvaluationFailure(IVRError):
    """A node cannot resolve its next state."""


class UpstreamTimeout(IVRError):
    """A dependency call exceeded its time bound."""


class SessionNotFound(IVRError):
    """No session exists for the call id."""

    def __init__(self, call_id: str):
        self.call_id = call_id
        super().__init__(f"no session for call {call_id!r}")
