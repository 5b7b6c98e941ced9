#!/usr/bin/env python3
"""
Propagation engine: one topological pass over a FlowGraph.

Each node's output is computed from its inputs exactly once; the graph is
acyclic so no fixpoint iteration is needed. Guard nodes produce one value per
branch, merge nodes join the feasible inputs. A missing rule yields an Unknown
value. A rule that cannot read a constant operand is skipped, never credited.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .flow_graph import EdgeKind, FlowGraph, FlowNode, NodeKind, NonConstantOperand
from .lattice import Value, join_all
from .rule_engine import ConstantTables, RuleEngine, Settings, get_rule_engine
from .transfer import RuleError, RuleRegistry

logger = logging.getLogger(__name__)

# Output slot of a node: (node id, edge kind)
Slot = Tuple[str, EdgeKind]


@dataclass(frozen=True)
class TraceStep:
    node_id: str
    rule: str
    state: str
    note: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {'node': self.node_id, 'rule': self.rule, 'state': self.state, 'note': self.note}

    def __str__(self):
        note = f"  ({self.note})" if self.note else ''
        return f"{self.node_id}: {self.rule} -> {self.state}{note}"


@dataclass
class PropagationResult:
    graph: FlowGraph
    outputs: Dict[Slot, Optional[Value]] = field(default_factory=dict)
    steps: Dict[str, TraceStep] = field(default_factory=dict)
    problems: List[str] = field(default_factory=list)
    order: List[str] = field(default_factory=list)

    @property
    def malformed(self) -> bool:
        return bool(self.problems)

    def value_at(self, node_id: str, kind: EdgeKind = EdgeKind.FLOW) -> Optional[Value]:
        return self.outputs.get((node_id, kind))

    def sink_value(self, sink_id: str) -> Optional[Value]:
        """Value arriving at a sink; None when every path to it is infeasible."""
        return self.outputs.get((sink_id, EdgeKind.FLOW))

    def trace_for(self, node_id: str) -> List[TraceStep]:
        """Steps of every ancestor of `node_id`, in evaluation order."""
        ancestors = self.graph.ancestors(node_id)
        return [self.steps[nid] for nid in self.order if nid in ancestors and nid in self.steps]


class PropagationEngine:
    """Applies registered rules along a flow graph."""

    def __init__(self, registry: Optional[RuleRegistry] = None,
                 engine: Optional[RuleEngine] = None,
                 settings: Optional[Settings] = None):
        self.engine = engine or (registry.engine if registry else get_rule_engine())
        self.registry = registry or RuleRegistry(self.engine)
        self.settings = settings or self.engine.settings

    def run(self, graph: FlowGraph, tables: Optional[ConstantTables] = None) -> PropagationResult:
        result = PropagationResult(graph)
        result.problems = graph.validate()
        if result.problems:
            logger.warning("Malformed graph %s: %s", graph.name, '; '.join(result.problems))
            return result
        tables = self.engine.constants.merged(tables)
        result.order = graph.topological_order()
        for nid in result.order:
            node = graph.nodes[nid]
            inputs = [result.outputs.get((e.src, e.kind)) for e in graph.predecessors(nid)]
            self._visit(node, inputs, tables, result)
        return result

    def _visit(self, node: FlowNode, inputs: List[Optional[Value]],
               tables: ConstantTables, result: PropagationResult):
        nid = node.id
        if node.kind is NodeKind.SOURCE:
            value = Value.source(node.value_kind)
            result.outputs[(nid, EdgeKind.FLOW)] = value
            result.steps[nid] = TraceStep(nid, node.describe(), str(value), node.label)
            return

        if node.kind is NodeKind.MERGE:
            value = join_all(inputs)
            skipped = sum(1 for v in inputs if v is None)
            note = f"{skipped} infeasible input(s) skipped" if skipped else ''
            result.outputs[(nid, EdgeKind.FLOW)] = value
            result.steps[nid] = TraceStep(nid, 'merge', _render(value), note)
            return

        if node.kind is NodeKind.SINK:
            result.outputs[(nid, EdgeKind.FLOW)] = inputs[0]
            return

        if any(v is None for v in inputs):
            for kind in _out_slots(node):
                result.outputs[(nid, kind)] = None
            result.steps[nid] = TraceStep(nid, node.describe(), _render(None),
                                          "unreachable: input branch infeasible")
            return

        if node.kind is NodeKind.GUARD:
            taken, untaken, rule_name, note = self._apply_guard(node, inputs, tables)
            result.outputs[(nid, EdgeKind.TAKEN)] = taken
            result.outputs[(nid, EdgeKind.UNTAKEN)] = untaken
            state = f"taken {_render(taken)} | untaken {_render(untaken)}"
            result.steps[nid] = TraceStep(nid, rule_name, state, note)
        else:
            value, rule_name, note = self._apply_transform(node, inputs, tables)
            result.outputs[(nid, EdgeKind.FLOW)] = value
            result.steps[nid] = TraceStep(nid, rule_name, str(value), note)
        logger.debug("%s %s: %s", nid, node.describe(), result.steps[nid].state)

    def _apply_transform(self, node: FlowNode, inputs: List[Value],
                         tables: ConstantTables) -> Tuple[Value, str, str]:
        primary = inputs[0]
        transformation = self.registry.lookup(node.operation)
        if transformation is None:
            reason = f"no rule for '{node.operation}'"
            return Value.unknown(primary.kind, reason), node.operation, reason
        if transformation.is_guard:
            reason = f"'{node.operation}' is a guard, used as a transform"
            return Value.unknown(primary.kind, reason), transformation.name, reason
        args = self.registry.args(inputs, node.operands, node.options, tables, self.settings)
        try:
            value = transformation.apply(args)
        except NonConstantOperand as exc:
            args.note(f"skipped: {exc}")
            value = primary
        except (RuleError, ArithmeticError, ValueError, TypeError, LookupError) as exc:
            logger.warning("Rule %s failed at %s: %s", transformation.name, node.id, exc)
            reason = f"{transformation.name} failed: {exc}"
            return Value.unknown(primary.kind, reason), transformation.name, reason
        return value, transformation.name, '; '.join(args.notes)

    def _apply_guard(self, node: FlowNode, inputs: List[Value], tables: ConstantTables
                     ) -> Tuple[Optional[Value], Optional[Value], str, str]:
        primary = inputs[0]
        transformation = self.registry.lookup(node.operation)
        if transformation is None or not transformation.is_guard:
            what = "no guard rule" if transformation is None else "not a guard rule"
            reason = f"{what} for '{node.operation}'"
            unknown = Value.unknown(primary.kind, reason)
            return unknown, unknown, node.operation, reason
        args = self.registry.args(inputs, node.operands, node.options, tables, self.settings)
        try:
            taken, untaken = transformation.apply(args)
        except NonConstantOperand as exc:
            args.note(f"skipped: {exc}")
            taken = untaken = primary
        except (RuleError, ArithmeticError, ValueError, TypeError, LookupError) as exc:
            logger.warning("Guard %s failed at %s: %s", transformation.name, node.id, exc)
            reason = f"{transformation.name} failed: {exc}"
            unknown = Value.unknown(primary.kind, reason)
            return unknown, unknown, transformation.name, reason
        return taken, untaken, transformation.name, '; '.join(args.notes)


def _out_slots(node: FlowNode) -> Tuple[EdgeKind, ...]:
    if node.kind is NodeKind.GUARD:
        return (EdgeKind.TAKEN, EdgeKind.UNTAKEN)
    return (EdgeKind.FLOW,)


def _render(value: Optional[Value]) -> str:
    return 'infeasible' if value is None else str(value)
