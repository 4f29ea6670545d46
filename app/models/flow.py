# app/models/flow.py
"""
Flow graph model.

A flow is a list of typed nodes plus a list of edges. Node kinds form a closed
union discriminated by `type`, so each kind only carries its own fields:

    say       message, voice, next, expects_input
    collect   prompt, timeout, max_length, variable, retries, next
    decision  conditions [{match, target}], default, variable
    transfer  message, destination, next
    record    prompt, max_length, timeout, variable, next
    pause     length, next            (type "pause" or "timer")
    end       message, hangup

`parse_flow()` also accepts the flow editor's export format, where node fields
live under `data` and use the editor's names (transferTo, maxDigits, ...).
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

InputMode = Literal["speech", "dtmf", "speech dtmf"]


class _NodeBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1)
    label: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return False

    def transitions(self) -> List[str]:
        nxt = getattr(self, "next", None)
        return [nxt] if nxt else []


class SayNode(_NodeBase):
    type: Literal["say"] = "say"
    message: str = ""
    voice: Optional[str] = None
    next: Optional[str] = None
    expects_input: bool = False
    timeout: int = 5
    max_length: Optional[int] = None


class CollectNode(_NodeBase):
    type: Literal["collect"] = "collect"
    prompt: str = ""
    voice: Optional[str] = None
    timeout: int = 5
    max_length: Optional[int] = None
    input_mode: InputMode = "speech dtmf"
    variable: Optional[str] = None
    retries: int = 0
    next: Optional[str] = None


class DecisionBranch(BaseModel):
    model_config = ConfigDict(frozen=True)

    match: str
    target: str


class DecisionNode(_NodeBase):
    type: Literal["decision"] = "decision"
    conditions: List[DecisionBranch] = Field(default_factory=list)
    default: str
    variable: Optional[str] = None

    def transitions(self) -> List[str]:
        targets = [c.target for c in self.conditions]
        if self.default:
            targets.append(self.default)
        return targets


class TransferNode(_NodeBase):
    type: Literal["transfer"] = "transfer"
    message: str = ""
    voice: Optional[str] = None
    destination: str
    timeout: int = 30
    next: Optional[str] = None


class RecordNode(_NodeBase):
    type: Literal["record"] = "record"
    prompt: str = ""
    voice: Optional[str] = None
    max_length: int = 60
    timeout: int = 5
    play_beep: bool = True
    variable: Optional[str] = None
    next: Optional[str] = None


class PauseNode(_NodeBase):
    type: Literal["pause", "timer"] = "pause"
    length: int = 1
    next: Optional[str] = None


class EndNode(_NodeBase):
    type: Literal["end"] = "end"
    message: str = ""
    voice: Optional[str] = None
    hangup: bool = True

    @property
    def terminal(self) -> bool:
        return True


Node = Annotated[
    Union[SayNode, CollectNode, DecisionNode, TransferNode, RecordNode, PauseNode, EndNode],
    Field(discriminator="type"),
]


class Edge(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: Optional[str] = None
    source: str
    target: str


class FlowGraph(BaseModel):
    """Immutable conversation graph. `version` is assigned by the flow catalog on deploy."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(..., min_length=1)
    version: int = 0
    revision: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    nodes: List[Node]
    edges: List[Edge] = Field(default_factory=list)

    _index: Dict[str, Any] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        # first definition wins; duplicates are reported by the validator
        for node in self.nodes:
            self._index.setdefault(node.id, node)

    def node(self, node_id: Optional[str]):
        return self._index.get(node_id) if node_id else None

    def has_node(self, node_id: Optional[str]) -> bool:
        return bool(node_id) and node_id in self._index

    @property
    def node_ids(self) -> List[str]:
        return [n.id for n in self.nodes]

    @property
    def entry_node(self) -> Optional[str]:
        """The single node nothing inside the graph points at (None if ambiguous)."""
        candidates = entry_candidates(self)
        return candidates[0] if len(candidates) == 1 else None


def entry_candidates(graph: FlowGraph) -> List[str]:
    incoming = set()
    for node in graph.nodes:
        incoming.update(node.transitions())
    for edge in graph.edges:
        incoming.add(edge.target)
    seen = set()
    result = []
    for node in graph.nodes:
        if node.id not in incoming and node.id not in seen:
            result.append(node.id)
        seen.add(node.id)
    return result


# Editor export field names -> model field names
_FIELD_ALIASES = {
    "transferTo": "destination",
    "transfer_to": "destination",
    "maxDigits": "max_length",
    "max_digits": "max_length",
    "maxLength": "max_length",
    "maxDuration": "max_length",
    "expectsInput": "expects_input",
    "inputMode": "input_mode",
    "playBeep": "play_beep",
    "duration": "length",
}


def _normalize_condition(raw: Dict[str, Any]) -> Dict[str, Any]:
    match = raw.get("match", raw.get("input", raw.get("value")))
    target = raw.get("target", raw.get("output", raw.get("next")))
    return {"match": "" if match is None else str(match), "target": target}


def normalize_node(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten an editor node ({id, type, position, data}) into model fields."""
    node: Dict[str, Any] = {}
    data = raw.get("data") or {}
    for source in (data, raw):
        for key, value in source.items():
            if key in ("data", "position"):
                continue
            node[_FIELD_ALIASES.get(key, key)] = value
    if isinstance(node.get("type"), str):
        node["type"] = node["type"].strip().lower()
    if "conditions" in node:
        node["conditions"] = [_normalize_condition(c) for c in node["conditions"] or []]
    return node


def parse_flow(payload: Dict[str, Any]) -> FlowGraph:
    """Build a FlowGraph from either the native or the editor export format.

    Raises pydantic.ValidationError when a node cannot be constructed.
    """
    body = dict(payload)
    if "id" not in body and "flow_id" in body:
        body["id"] = body.pop("flow_id")
    version = body.pop("version", None)
    if isinstance(version, int) and not isinstance(version, bool):
        body["version"] = version
    elif version is not None:
        body.setdefault("revision", str(version))
    body["nodes"] = [normalize_node(n) for n in body.get("nodes") or []]
    return FlowGraph.model_validate(body)
