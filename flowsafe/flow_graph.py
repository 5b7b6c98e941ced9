#!/usr/bin/env python3
"""
Flow graph model for flowsafe.

A FlowGraph is a DAG: source nodes produce untrusted values, transform nodes
apply one registered operation, guard nodes split into a taken edge (value
narrowed by the condition) and an optional untaken edge, merge nodes join
branches, and sink nodes carry the SinkContext the value must satisfy.
Loops in subject code are never modelled as cycles; a loop is a LoopBound
sink on its iteration count.
"""

import re
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .lattice import EncodingContext, ValueKind
from .rule_engine import ConstantTables


class GraphError(ValueError):
    """Raised by FlowGraphBuilder on misuse and by topological_order on a cycle."""


class NonConstantOperand(LookupError):
    """An operand that a rule needs as a constant is not one."""

    def __init__(self, operand: 'Operand', detail: str):
        super().__init__(f"{operand} is not a compile-time constant ({detail})")
        self.operand = operand
        self.detail = detail


# ---------------------------------------------------------------------------
# Sink contexts
# ---------------------------------------------------------------------------

class SinkKind(Enum):
    LOOP_BOUND = 'LoopBound'
    HTML_BODY = 'HtmlBody'
    HTML_ATTRIBUTE = 'HtmlAttribute'
    JS_STRING_LITERAL = 'JsStringLiteral'
    URL_PARAMETER = 'UrlParameter'
    SENSITIVE_LOG = 'SensitiveLog'

    @property
    def config_key(self) -> str:
        """Key of this sink in rules/sinks.yml, e.g. 'html_body'."""
        return re.sub(r'(?<!^)(?=[A-Z])', '_', self.value).lower()

    @property
    def encoding_context(self) -> Optional[EncodingContext]:
        return _SINK_ENCODING.get(self)

    @property
    def is_text_sink(self) -> bool:
        return self in _SINK_ENCODING

    @classmethod
    def parse(cls, name: str) -> 'SinkKind':
        key = name.strip().replace('_', '').replace('-', '').lower()
        for kind in cls:
            if kind.value.lower() == key:
                return kind
        raise ValueError(f"unknown sink context: {name!r}")


_SINK_ENCODING = {
    SinkKind.HTML_BODY: EncodingContext.HTML_BODY,
    SinkKind.HTML_ATTRIBUTE: EncodingContext.HTML_ATTRIBUTE,
    SinkKind.JS_STRING_LITERAL: EncodingContext.JS_STRING,
    SinkKind.URL_PARAMETER: EncodingContext.URL,
}

_SINK_SPEC = re.compile(r'^\s*(\w+)\s*(?:\(\s*(\d*)\s*\))?\s*$')


@dataclass(frozen=True)
class SinkContext:
    """Safety predicate a sink requires."""
    kind: SinkKind
    max_safe_iterations: Optional[int] = None

    @classmethod
    def loop_bound(cls, max_safe_iterations: Optional[int] = None) -> 'SinkContext':
        return cls(SinkKind.LOOP_BOUND, max_safe_iterations)

    @classmethod
    def html_body(cls) -> 'SinkContext':
        return cls(SinkKind.HTML_BODY)

    @classmethod
    def html_attribute(cls) -> 'SinkContext':
        return cls(SinkKind.HTML_ATTRIBUTE)

    @classmethod
    def js_string_literal(cls) -> 'SinkContext':
        return cls(SinkKind.JS_STRING_LITERAL)

    @classmethod
    def url_parameter(cls) -> 'SinkContext':
        return cls(SinkKind.URL_PARAMETER)

    @classmethod
    def sensitive_log(cls) -> 'SinkContext':
        return cls(SinkKind.SENSITIVE_LOG)

    @classmethod
    def parse(cls, spec: str) -> 'SinkContext':
        """Parse 'LoopBound(100)', 'LoopBound', 'html_body', ..."""
        m = _SINK_SPEC.match(spec)
        if not m:
            raise ValueError(f"bad sink context: {spec!r}")
        kind = SinkKind.parse(m.group(1))
        budget = m.group(2)
        if budget and kind is not SinkKind.LOOP_BOUND:
            raise ValueError(f"only LoopBound takes a budget: {spec!r}")
        return cls(kind, int(budget) if budget else None)

    def __str__(self):
        if self.kind is SinkKind.LOOP_BOUND and self.max_safe_iterations is not None:
            return f"LoopBound({self.max_safe_iterations})"
        return self.kind.value


# ---------------------------------------------------------------------------
# Operands
# ---------------------------------------------------------------------------

class OperandKind(Enum):
    LITERAL = 'literal'
    CONSTANT = 'const'
    VARIABLE = 'var'
    ENUM_COUNT = 'enum_count'
    ENUM = 'enum'
    WHITELIST = 'whitelist'


@dataclass(frozen=True)
class Operand:
    """A literal, or a reference resolved against the constant tables."""
    kind: OperandKind
    value: Any

    @classmethod
    def literal(cls, value: Any) -> 'Operand':
        if isinstance(value, list):
            value = tuple(value)
        return cls(OperandKind.LITERAL, value)

    @classmethod
    def constant(cls, name: str) -> 'Operand':
        return cls(OperandKind.CONSTANT, name)

    @classmethod
    def variable(cls, name: str) -> 'Operand':
        return cls(OperandKind.VARIABLE, name)

    @classmethod
    def enum_count(cls, name: str) -> 'Operand':
        return cls(OperandKind.ENUM_COUNT, name)

    @classmethod
    def enum(cls, name: str) -> 'Operand':
        return cls(OperandKind.ENUM, name)

    @classmethod
    def whitelist(cls, name: str) -> 'Operand':
        return cls(OperandKind.WHITELIST, name)

    @classmethod
    def coerce(cls, value: Any) -> 'Operand':
        return value if isinstance(value, Operand) else cls.literal(value)

    def resolve(self, tables: ConstantTables) -> Any:
        """Concrete value, or NonConstantOperand when there is none."""
        if self.kind is OperandKind.LITERAL:
            return self.value
        if self.kind is OperandKind.VARIABLE:
            raise NonConstantOperand(self, "runtime variable")
        if self.kind is OperandKind.CONSTANT:
            if self.value not in tables.constants:
                raise NonConstantOperand(self, "no such constant")
            return tables.constants[self.value]
        if self.kind in (OperandKind.ENUM_COUNT, OperandKind.ENUM):
            members = tables.enums.get(self.value)
            if members is None:
                raise NonConstantOperand(self, "no such enum")
            return len(members) if self.kind is OperandKind.ENUM_COUNT else dict(members)
        entries = tables.whitelists.get(self.value)
        if entries is None:
            raise NonConstantOperand(self, "no such whitelist")
        return list(entries)

    def __str__(self):
        if self.kind is OperandKind.LITERAL:
            return repr(self.value)
        return f"{self.kind.value}:{self.value}"


# ---------------------------------------------------------------------------
# Nodes and edges
# ---------------------------------------------------------------------------

class NodeKind(Enum):
    SOURCE = 'source'
    TRANSFORM = 'transform'
    GUARD = 'guard'
    MERGE = 'merge'
    SINK = 'sink'


class EdgeKind(Enum):
    FLOW = 'flow'
    TAKEN = 'taken'
    UNTAKEN = 'untaken'


@dataclass(frozen=True)
class FlowNode:
    id: str
    kind: NodeKind
    operation: Optional[str] = None
    operands: Tuple[Operand, ...] = ()
    options: Tuple[Tuple[str, Operand], ...] = ()
    value_kind: Optional[ValueKind] = None
    sink: Optional[SinkContext] = None
    label: str = ''

    def option(self, name: str) -> Optional[Operand]:
        for key, operand in self.options:
            if key == name:
                return operand
        return None

    def describe(self) -> str:
        if self.kind is NodeKind.SOURCE:
            return f"source({self.value_kind.value if self.value_kind else '?'})"
        if self.kind is NodeKind.SINK:
            return f"sink({self.sink})"
        if self.kind is NodeKind.MERGE:
            return "merge"
        args = ', '.join(str(o) for o in self.operands)
        return f"{self.operation}({args})"


@dataclass(frozen=True)
class FlowEdge:
    src: str
    dst: str
    kind: EdgeKind = EdgeKind.FLOW


@dataclass(frozen=True)
class Port:
    """One outgoing edge slot of a node: FLOW, or TAKEN/UNTAKEN of a guard."""
    node_id: str
    kind: EdgeKind = EdgeKind.FLOW


NodeRef = Union[str, Port]


class FlowGraph:
    """Immutable once built; nodes keyed by id, edges in insertion order."""

    def __init__(self, name: str, nodes: Dict[str, FlowNode], edges: Sequence[FlowEdge]):
        self.name = name
        self.nodes: Dict[str, FlowNode] = dict(nodes)
        self.edges: Tuple[FlowEdge, ...] = tuple(edges)
        self._preds: Dict[str, List[FlowEdge]] = {nid: [] for nid in self.nodes}
        self._succs: Dict[str, List[FlowEdge]] = {nid: [] for nid in self.nodes}
        for edge in self.edges:
            if edge.dst in self._preds:
                self._preds[edge.dst].append(edge)
            if edge.src in self._succs:
                self._succs[edge.src].append(edge)

    @property
    def sources(self) -> List[FlowNode]:
        return [n for n in self.nodes.values() if n.kind is NodeKind.SOURCE]

    @property
    def sinks(self) -> List[FlowNode]:
        return [n for n in self.nodes.values() if n.kind is NodeKind.SINK]

    def predecessors(self, node_id: str) -> List[FlowEdge]:
        return list(self._preds.get(node_id, []))

    def successors(self, node_id: str) -> List[FlowEdge]:
        return list(self._succs.get(node_id, []))

    def validate(self) -> List[str]:
        """Structural problems, empty when the graph is well formed."""
        problems = []
        if not self.sources:
            problems.append("no source node")
        for edge in self.edges:
            for end in (edge.src, edge.dst):
                if end not in self.nodes:
                    problems.append(f"dangling edge {edge.src} -> {edge.dst}: "
                                    f"no node '{end}'")
        for node in self.nodes.values():
            problems.extend(self._check_node(node))
        if not problems:
            try:
                self.topological_order()
            except GraphError as exc:
                problems.append(str(exc))
        return problems

    def _check_node(self, node: FlowNode) -> List[str]:
        preds = self._preds[node.id]
        succs = self._succs[node.id]
        problems = []
        if node.kind is NodeKind.SOURCE:
            if preds:
                problems.append(f"source '{node.id}' has incoming edges")
            if node.value_kind is None:
                problems.append(f"source '{node.id}' has no value kind")
        elif node.kind is NodeKind.SINK:
            if len(preds) != 1:
                problems.append(f"sink '{node.id}' needs exactly one input, has {len(preds)}")
            if succs:
                problems.append(f"sink '{node.id}' has outgoing edges")
            if node.sink is None:
                problems.append(f"sink '{node.id}' has no sink context")
        elif node.kind is NodeKind.GUARD:
            if len(preds) != 1:
                problems.append(f"guard '{node.id}' needs exactly one input, has {len(preds)}")
            for branch in (EdgeKind.TAKEN, EdgeKind.UNTAKEN):
                count = sum(1 for e in succs if e.kind is branch)
                if count > 1:
                    problems.append(f"guard '{node.id}' has {count} {branch.value} edges")
        elif not preds:
            problems.append(f"{node.kind.value} '{node.id}' has no input")
        if node.kind in (NodeKind.TRANSFORM, NodeKind.GUARD) and not node.operation:
            problems.append(f"{node.kind.value} '{node.id}' names no operation")
        for edge in succs:
            is_branch = edge.kind is not EdgeKind.FLOW
            if is_branch != (node.kind is NodeKind.GUARD):
                problems.append(f"{edge.kind.value} edge {edge.src} -> {edge.dst} "
                                f"from a {node.kind.value} node")
        return problems

    def topological_order(self) -> List[str]:
        """Kahn's algorithm; ties resolved by insertion order."""
        indegree = {nid: 0 for nid in self.nodes}
        for edge in self.edges:
            if edge.src in self.nodes and edge.dst in self.nodes:
                indegree[edge.dst] += 1
        queue = deque(nid for nid, d in indegree.items() if d == 0)
        order = []
        while queue:
            nid = queue.popleft()
            order.append(nid)
            for edge in self._succs[nid]:
                if edge.dst not in indegree:
                    continue
                indegree[edge.dst] -= 1
                if indegree[edge.dst] == 0:
                    queue.append(edge.dst)
        if len(order) != len(self.nodes):
            done = set(order)
            stuck = sorted(nid for nid in self.nodes if nid not in done)
            raise GraphError(f"cycle through {', '.join(stuck)}")
        return order

    def ancestors(self, node_id: str) -> set:
        """Every node with a path to `node_id`, including itself."""
        seen = set()
        stack = [node_id]
        while stack:
            nid = stack.pop()
            if nid in seen:
                continue
            seen.add(nid)
            stack.extend(e.src for e in self._preds.get(nid, []) if e.src in self.nodes)
        return seen

    def __repr__(self):
        return f"FlowGraph({self.name!r}, {len(self.nodes)} nodes, {len(self.edges)} edges)"


class FlowGraphBuilder:
    """Builds a FlowGraph node by node.

    Every method returns the new node's id. Passing a guard's id as an input
    continues on its taken edge; use untaken() for the other branch.
    """

    def __init__(self, name: str = 'flow'):
        self.name = name
        self._counter = 0
        self._nodes: Dict[str, FlowNode] = {}
        self._edges: List[FlowEdge] = []

    def _new_id(self, prefix: str) -> str:
        while True:
            self._counter += 1
            nid = f"{prefix}{self._counter}"
            if nid not in self._nodes:
                return nid

    def _add(self, node: FlowNode, inputs: Sequence[NodeRef] = ()) -> str:
        if node.id in self._nodes:
            raise GraphError(f"duplicate node id '{node.id}'")
        self._nodes[node.id] = node
        for ref in inputs:
            self._link(ref, node.id)
        return node.id

    def _link(self, ref: NodeRef, dst: str):
        if isinstance(ref, Port):
            self._edges.append(FlowEdge(ref.node_id, dst, ref.kind))
            return
        src = self._nodes.get(ref)
        kind = EdgeKind.TAKEN if src is not None and src.kind is NodeKind.GUARD else EdgeKind.FLOW
        self._edges.append(FlowEdge(ref, dst, kind))

    @staticmethod
    def taken(guard_id: str) -> Port:
        return Port(guard_id, EdgeKind.TAKEN)

    @staticmethod
    def untaken(guard_id: str) -> Port:
        return Port(guard_id, EdgeKind.UNTAKEN)

    def source(self, kind: ValueKind, node_id: Optional[str] = None, label: str = '') -> str:
        return self._add(FlowNode(node_id or self._new_id('src'), NodeKind.SOURCE,
                                  value_kind=kind, label=label))

    def transform(self, operation: str, *inputs: NodeRef, operands: Sequence[Any] = (),
                  options: Optional[Dict[str, Any]] = None,
                  node_id: Optional[str] = None, label: str = '') -> str:
        node = FlowNode(node_id or self._new_id('op'), NodeKind.TRANSFORM,
                        operation=operation,
                        operands=tuple(Operand.coerce(o) for o in operands),
                        options=_options(options), label=label)
        return self._add(node, inputs)

    def guard(self, operation: str, value: NodeRef, operands: Sequence[Any] = (),
              options: Optional[Dict[str, Any]] = None,
              node_id: Optional[str] = None, label: str = '') -> str:
        node = FlowNode(node_id or self._new_id('guard'), NodeKind.GUARD,
                        operation=operation,
                        operands=tuple(Operand.coerce(o) for o in operands),
                        options=_options(options), label=label)
        return self._add(node, [value])

    def merge(self, *inputs: NodeRef, node_id: Optional[str] = None, label: str = '') -> str:
        return self._add(FlowNode(node_id or self._new_id('merge'), NodeKind.MERGE,
                                  label=label), inputs)

    def sink(self, context: SinkContext, value: NodeRef,
             node_id: Optional[str] = None, label: str = '') -> str:
        return self._add(FlowNode(node_id or self._new_id('sink'), NodeKind.SINK,
                                  sink=context, label=label), [value])

    def edge(self, src: str, dst: str, kind: EdgeKind = EdgeKind.FLOW):
        """Raw edge; endpoints are not checked until validate()."""
        self._edges.append(FlowEdge(src, dst, kind))

    def add_node(self, node: FlowNode) -> str:
        return self._add(node)

    def node_kind(self, node_id: str) -> Optional[NodeKind]:
        node = self._nodes.get(node_id)
        return node.kind if node is not None else None

    def build(self) -> FlowGraph:
        return FlowGraph(self.name, self._nodes, self._edges)


def _options(options: Optional[Dict[str, Any]]) -> Tuple[Tuple[str, Operand], ...]:
    if not options:
        return ()
    return tuple((str(k), Operand.coerce(v)) for k, v in options.items())
