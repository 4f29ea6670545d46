# app/core/flow_engine.py
"""
Step evaluator: the call state machine.

States are the node ids of the session's bound flow graph. `step()` executes
exactly one node and returns the next session plus the outbound instructions
for that node:

    say       speak, advance (or gather and wait when expects_input)
    collect   gather and wait; on input store it and advance
    decision  no output; advance to the first matching target or the default
    transfer  speak + dial, advance, suspend until the carrier calls back
    record    record and wait; on callback store the recording URL and advance
    pause     pause, advance
    end       speak (+ hangup), session becomes terminal

`run_turn()` keeps stepping until a node has to wait for the caller (or the
call ends), so one webhook answer carries everything up to the next wait.

Nothing raises out of `step()`: any failure turns into an apology + hangup and
a terminal session.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.core.errors import EvaluationFailure
from app.models.flow import (
    CollectNode,
    DecisionNode,
    EndNode,
    FlowGraph,
    PauseNode,
    RecordNode,
    SayNode,
    TransferNode,
)
from app.models.instructions import Gather, Hangup, Instruction, Pause, Record, Speak, Transfer
from app.models.schemas import Session

logger = logging.getLogger("ivr-flow-engine.core.flow_engine")

FALLBACK_MESSAGE = "We're sorry, something went wrong on our end. Please call again later. Goodbye."
UNAVAILABLE_MESSAGE = "We're sorry, this service is unavailable right now. Please try again later. Goodbye."

LAST_INPUT = "last_input"


@dataclass
class StepResult:
    session: Session
    instructions: List[Instruction] = field(default_factory=list)
    node_id: Optional[str] = None
    suspend: bool = False
    failed: bool = False
    error: Optional[str] = None


@dataclass
class TurnResult:
    session: Session
    instructions: List[Instruction] = field(default_factory=list)
    entered: List[str] = field(default_factory=list)
    failed: bool = False
    error: Optional[str] = None


def fallback_instructions(voice: Optional[str] = None, language: Optional[str] = None) -> List[Instruction]:
    return [Speak(FALLBACK_MESSAGE, voice=voice, language=language), Hangup()]


def resolve_decision(node: DecisionNode, value: Optional[Any]) -> str:
    """First case-insensitive match wins; anything else goes to the default."""
    if value is not None:
        needle = str(value).strip().casefold()
        for branch in node.conditions:
            if branch.match.strip().casefold() == needle:
                return branch.target
    return node.default


class FlowEngine:
    def __init__(self, settings=None, max_steps: int = 25):
        self.settings = settings
        self.max_steps = getattr(settings, "MAX_STEPS_PER_TURN", max_steps)
        self.default_voice = getattr(settings, "DEFAULT_VOICE", None)
        self.default_language = getattr(settings, "DEFAULT_LANGUAGE", None)
        self._handlers = {
            SayNode: self._say,
            CollectNode: self._collect,
            DecisionNode: self._decision,
            TransferNode: self._transfer,
            RecordNode: self._record,
            PauseNode: self._pause,
            EndNode: self._end,
        }

    # -- public API -----------------------------------------------------

    def step(self, graph: Optional[FlowGraph], session: Session, user_input: Optional[str] = None) -> StepResult:
        try:
            return self._step(graph, session, user_input)
        except EvaluationFailure as exc:
            logger.warning("Evaluation failed for call %s at %s: %s", session.call_id, session.current_node, exc)
            return self.fallback(session, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error evaluating call %s at %s", session.call_id, session.current_node)
            return self.fallback(session, repr(exc))

    def run_turn(self, graph: Optional[FlowGraph], session: Session, user_input: Optional[str] = None) -> TurnResult:
        """Step until the call waits for the caller or ends. `user_input` feeds the first step only."""
        turn = TurnResult(session=session)
        pending_input = user_input
        for _ in range(self.max_steps):
            result = self.step(graph, turn.session, pending_input)
            pending_input = None
            turn.session = result.session
            turn.instructions.extend(result.instructions)
            if result.node_id:
                turn.entered.append(result.node_id)
            if result.failed:
                turn.failed = True
                turn.error = result.error
                return turn
            if result.suspend or turn.session.terminal:
                return turn
        logger.warning("Call %s ran %d nodes without waiting for input", session.call_id, self.max_steps)
        failed = self.fallback(turn.session, f"more than {self.max_steps} nodes in one turn")
        turn.session = failed.session
        turn.instructions.extend(failed.instructions)
        turn.failed = True
        turn.error = failed.error
        return turn

    def fallback(self, session: Session, reason: Optional[str] = None) -> StepResult:
        ended = session.model_copy(update={"terminal": True, "awaiting_input": False})
        return StepResult(
            session=ended,
            instructions=fallback_instructions(self._voice(session), self._language(session)),
            node_id=None,
            suspend=True,
            failed=True,
            error=reason,
        )

    # -- internals ------------------------------------------------------

    def _step(self, graph: Optional[FlowGraph], session: Session, user_input: Optional[str]) -> StepResult:
        if session.terminal:
            raise EvaluationFailure("session already terminated")
        if graph is None:
            raise EvaluationFailure(f"flow {session.flow_id!r} is not loaded")
        if graph.id != session.flow_id or graph.version != session.flow_version:
            raise EvaluationFailure(
                f"session is bound to {session.flow_id} v{session.flow_version}, got {graph.id} v{graph.version}"
            )
        node = graph.node(session.current_node)
        if node is None:
            raise EvaluationFailure(f"node {session.current_node!r} is not in flow {graph.id!r}")
        handler = self._handlers.get(type(node))
        if handler is None:
            raise EvaluationFailure(f"unsupported node type {node.type!r}")
        logger.debug("call=%s node=%s type=%s input=%r", session.call_id, node.id, node.type, user_input)
        return handler(graph, session, node, user_input)

    def _voice(self, session: Session, node=None) -> Optional[str]:
        return getattr(node, "voice", None) or session.voice or self.default_voice

    def _language(self, session: Session) -> Optional[str]:
        return session.language or self.default_language

    def _advance(self, graph: FlowGraph, session: Session, target: Optional[str], **changes: Any) -> Session:
        if not graph.has_node(target):
            raise EvaluationFailure(f"node {session.current_node!r} has no valid next node (got {target!r})")
        changes.update(current_node=target, awaiting_input=False, attempts=0, steps=session.steps + 1)
        return session.model_copy(update=changes)

    def _wait(self, session: Session, **changes: Any) -> Session:
        changes.update(awaiting_input=True, steps=session.steps + 1)
        return session.model_copy(update=changes)

    def _store(self, session: Session, name: str, value: Any) -> Dict[str, Any]:
        variables = dict(session.variables)
        variables[name] = value
        variables[LAST_INPUT] = value
        return variables

    def _gather(self, session: Session, node, prompt: str, timeout: int, max_length: Optional[int], input_mode: str) -> Gather:
        return Gather(
            prompt=prompt,
            voice=self._voice(session, node),
            language=self._language(session),
            timeout=timeout,
            max_length=max_length,
            input_mode=input_mode,
        )

    def _say(self, graph, session, node: SayNode, user_input):
        if not node.expects_input:
            speak = Speak(node.message, voice=self._voice(session, node), language=self._language(session))
            return StepResult(self._advance(graph, session, node.next), [speak], node.id)
        if session.awaiting_input and user_input is not None:
            variables = self._store(session, node.id, user_input.strip())
            return StepResult(self._advance(graph, session, node.next, variables=variables), [], node.id)
        gather = self._gather(session, node, node.message, node.timeout, node.max_length, "speech dtmf")
        return StepResult(self._wait(session), [gather], node.id, suspend=True)

    def _collect(self, graph, session, node: CollectNode, user_input):
        if session.awaiting_input and user_input is not None:
            value = user_input.strip()
            if not value and session.attempts < node.retries:
                logger.debug("Empty input at %s for call %s; re-prompting (%d/%d)",
                             node.id, session.call_id, session.attempts + 1, node.retries)
                gather = self._gather(session, node, node.prompt, node.timeout, node.max_length, node.input_mode)
                return StepResult(self._wait(session, attempts=session.attempts + 1), [gather], node.id, suspend=True)
            variables = self._store(session, node.variable or node.id, value)
            return StepResult(self._advance(graph, session, node.next, variables=variables), [], node.id)
        gather = self._gather(session, node, node.prompt, node.timeout, node.max_length, node.input_mode)
        return StepResult(self._wait(session), [gather], node.id, suspend=True)

    def _decision(self, graph, session, node: DecisionNode, user_input):
        if node.variable:
            value = session.variables.get(node.variable)
        elif user_input is not None:
            value = user_input
        else:
            value = session.variables.get(LAST_INPUT)
        target = resolve_decision(node, value)
        logger.debug("Decision %s for call %s: %r -> %s", node.id, session.call_id, value, target)
        return StepResult(self._advance(graph, session, target), [], node.id)

    def _transfer(self, graph, session, node: TransferNode, user_input):
        instructions: List[Instruction] = []
        if node.message:
            instructions.append(Speak(node.message, voice=self._voice(session, node), language=self._language(session)))
        instructions.append(Transfer(destination=node.destination, timeout=node.timeout))
        return StepResult(self._advance(graph, session, node.next), instructions, node.id, suspend=True)

    def _record(self, graph, session, node: RecordNode, user_input):
        if session.awaiting_input and user_input is not None:
            variables = self._store(session, node.variable or node.id, user_input.strip())
            return StepResult(self._advance(graph, session, node.next, variables=variables), [], node.id)
        instructions: List[Instruction] = []
        if node.prompt:
            instructions.append(Speak(node.prompt, voice=self._voice(session, node), language=self._language(session)))
        instructions.append(Record(max_length=node.max_length, timeout=node.timeout, play_beep=node.play_beep))
        return StepResult(self._wait(session), instructions, node.id, suspend=True)

    def _pause(self, graph, session, node: PauseNode, user_input):
        return StepResult(self._advance(graph, session, node.next), [Pause(length=node.length)], node.id)

    def _end(self, graph, session, node: EndNode, user_input):
        instructions: List[Instruction] = []
        if node.message:
            instructions.append(Speak(node.message, voice=self._voice(session, node), language=self._language(session)))
        if node.hangup:
            instructions.append(Hangup())
        ended = session.model_copy(update={"terminal": True, "awaiting_input": False, "steps": session.steps + 1})
        return StepResult(ended, instructions, node.id, suspend=True)
