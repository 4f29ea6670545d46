# app/core/orchestrator.py
"""
Orchestrator: turns one carrier callback into one TwiML document.

Entry points used by the webhooks router:
 - handle_call_initiated(call_id, from_number, to_number)
 - handle_input(call_id, value, node, step)
 - handle_status(call_id, status)

Per callback:
 - resolve the dialed number to a flow (new calls only)
 - load or create the session
 - run the flow engine inside the session store's per-call lock
 - publish events, render TwiML

Every path returns a well-formed document. Failures (unknown flow, evaluation
errors, store errors, timeouts) become an apology followed by a hangup.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from app.core import markup
from app.core.errors import FlowNotFound, IVRError, RouteNotFound, SessionNotFound, UpstreamTimeout
from app.core.events import CALL_STARTED, CALL_STATUS, CALL_TERMINATED, NODE_ENTERED, EventChannel
from app.core.flow_catalog import FlowCatalog
from app.core.flow_engine import FlowEngine, TurnResult
from app.core.routing import RoutingRegistry
from app.models.flow import FlowGraph
from app.models.schemas import CallEvent, Session
from app.state.session_store import SessionStore

logger = logging.getLogger("ivr-flow-engine.core.orchestrator")

# carrier statuses after which the call is gone
TERMINAL_STATUSES = {"completed", "failed", "busy", "no-answer"}


class CallOrchestrator:
    def __init__(
        self,
        settings,
        catalog: FlowCatalog,
        routes: RoutingRegistry,
        store: SessionStore,
        engine: Optional[FlowEngine] = None,
        events: Optional[EventChannel] = None,
    ):
        self.settings = settings
        self.catalog = catalog
        self.routes = routes
        self.store = store
        self.engine = engine or FlowEngine(settings)
        self.events = events
        self.timeout = settings.WEBHOOK_TIMEOUT_SECONDS
        self.urls = markup.CallbackUrls(settings.PUBLIC_BASE_URL)

    # -- webhook entry points -------------------------------------------

    async def handle_call_initiated(self, call_id: str, from_number: Optional[str], to_number: Optional[str]) -> str:
        logger.info("Call initiated: %s from=%s to=%s", call_id, from_number, to_number)
        return await self._guarded(call_id, self._start_call(call_id, from_number, to_number))

    async def handle_input(self, call_id: str, value: Optional[str],
                           node: Optional[str] = None, step: Optional[int] = None) -> str:
        """Apply caller input. `node`/`step` name the prompt it answers; a mismatch replays the current prompt."""
        logger.info("Input for %s at %s/%s: %r", call_id, node, step, value)
        return await self._guarded(call_id, self._resume_call(call_id, value, node, step))

    async def handle_status(self, call_id: str, status: str) -> str:
        logger.info("Status for %s: %s", call_id, status)
        self._emit(CALL_STATUS, call_id, data={"status": status})
        try:
            await self._bounded(self._apply_status(call_id, status))
        except (IVRError, OSError) as exc:
            logger.warning("Could not apply status %s to %s: %s", status, call_id, exc)
        return markup.render_empty()

    # -- call path ------------------------------------------------------

    async def _start_call(self, call_id: str, from_number: Optional[str], to_number: Optional[str]) -> str:
        if await self.store.get(call_id) is not None:
            # carrier retry of the initial callback: replay the current node
            logger.info("Call %s already has a session; resuming", call_id)
            return await self._advance(call_id, None)

        try:
            route = self.routes.resolve(to_number)
            graph = self.catalog.get(route.flow_id)
        except (RouteNotFound, FlowNotFound) as exc:
            logger.warning("Call %s not served: %s", call_id, exc)
            return markup.render_unavailable(self.settings.DEFAULT_VOICE, self.settings.DEFAULT_LANGUAGE)

        session, created = await self.store.get_or_create(
            call_id,
            graph.id,
            graph.version,
            current_node=graph.entry_node,
            from_number=from_number,
            to_number=to_number,
            status="answered",
            voice=route.voice_settings.voice,
            language=route.voice_settings.language,
        )
        if created:
            self._emit(CALL_STARTED, call_id, graph.id, session.current_node,
                       data={"from": from_number, "to": to_number, "version": graph.version})
        return await self._advance(call_id, None)

    async def _resume_call(self, call_id: str, value: Optional[str],
                           node: Optional[str] = None, step: Optional[int] = None) -> str:
        try:
            return await self._advance(call_id, value, node, step)
        except SessionNotFound:
            logger.warning("Input for unknown call %s ignored", call_id)
            return markup.render_hangup()

    async def _advance(self, call_id: str, user_input: Optional[str],
                       node: Optional[str] = None, step: Optional[int] = None) -> str:
        outcome: Dict[str, Any] = {}

        def mutate(session: Session) -> Session:
            if session.terminal:
                outcome["noop"] = True
                return session
            graph = self._graph_for(session)
            stale = ((node is not None and node != session.current_node)
                     or (step is not None and step != session.steps))
            if stale and not session.awaiting_input:
                outcome["noop"] = True
                return session
            if session.awaiting_input and (stale or user_input is None):
                # nothing to apply: ask the pending question again without moving
                replay = self.engine.run_turn(graph, session, None)
                if not replay.failed:
                    outcome["replay"] = replay
                    return session
            # input only counts when the current node asked for it
            applied = user_input if session.awaiting_input and not stale else None
            turn = self.engine.run_turn(graph, session, applied)
            outcome["turn"] = turn
            return turn.session

        session = await self.store.update(call_id, mutate)
        if outcome.get("noop"):
            if session.terminal:
                logger.info("Call %s already terminated; ignoring callback", call_id)
                return markup.render_hangup()
            logger.info("Callback for %s at %s/%s does not match %s/%s; ignoring",
                        call_id, node, step, session.current_node, session.steps)
            return markup.render_empty()
        if "replay" in outcome:
            if node is not None or step is not None:
                logger.info("Late input for %s at %s/%s; replaying %s",
                            call_id, node, step, session.current_node)
            return markup.render(outcome["replay"].instructions, self.urls.waiting_at(session.current_node, session.steps))

        turn: TurnResult = outcome["turn"]
        for node_id in turn.entered:
            self._emit(NODE_ENTERED, call_id, session.flow_id, node_id)
        if session.terminal:
            reason = "error" if turn.failed else "completed"
            self._emit(CALL_TERMINATED, call_id, session.flow_id, session.current_node,
                       data={"reason": reason, "error": turn.error})
            logger.info("Call %s reached a terminal state (%s)", call_id, reason)
        return markup.render(turn.instructions, self.urls.waiting_at(session.current_node, session.steps))

    def _graph_for(self, session: Session) -> Optional[FlowGraph]:
        # sessions stay on the version they started with
        try:
            return self.catalog.get(session.flow_id, session.flow_version)
        except FlowNotFound as exc:
            logger.error("Session %s is bound to a missing flow: %s", session.call_id, exc)
            return None

    async def _apply_status(self, call_id: str, status: str) -> None:
        if status in TERMINAL_STATUSES:
            session = await self.store.get(call_id)
            if await self.store.terminate(call_id) and session is not None and not session.terminal:
                self._emit(CALL_TERMINATED, call_id, session.flow_id, session.current_node,
                           data={"reason": status})
            return
        try:
            await self.store.update(call_id, lambda s: s.model_copy(update={"status": status}))
        except SessionNotFound:
            logger.debug("Status %s for unknown call %s", status, call_id)

    # -- error boundary -------------------------------------------------

    async def _bounded(self, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise UpstreamTimeout(f"no answer within {self.timeout}s") from exc

    async def _guarded(self, call_id: str, coro) -> str:
        try:
            return await self._bounded(coro)
        except IVRError as exc:
            logger.exception("Call %s failed: %s", call_id, exc)
        except Exception:
            logger.exception("Unexpected failure handling call %s", call_id)
        await self._abandon(call_id)
        return markup.render_fallback(self.settings.DEFAULT_VOICE, self.settings.DEFAULT_LANGUAGE)

    async def _abandon(self, call_id: str) -> None:
        """Best effort: mark the session terminal so later callbacks are no-ops."""
        try:
            session = await asyncio.wait_for(
                self.store.update(call_id, lambda s: s.model_copy(update={"terminal": True, "awaiting_input": False})),
                timeout=min(self.timeout, 1.0),
            )
        except SessionNotFound:
            return
        except Exception as exc:
            logger.warning("Could not mark call %s terminal after failure: %s", call_id, exc)
            return
        self._emit(CALL_TERMINATED, call_id, session.flow_id, session.current_node, data={"reason": "error"})

    def _emit(self, event_type: str, call_id: str, flow_id: Optional[str] = None,
              node_id: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> None:
        if self.events is None:
            return
        self.events.publish(CallEvent(type=event_type, call_id=call_id, flow_id=flow_id,
                                      node_id=node_id, data=data or {}))
