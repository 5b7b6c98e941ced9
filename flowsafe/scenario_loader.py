#!/usr/bin/env python3
"""
Scenario loader: YAML scenario documents to flow graphs with expected labels.

A document looks like:

    name: LoopCondition_Validation
    origin: Validation/Loop/LoopCondition_Validation.cs
    constants: {MaxItems: 100}
    scenarios:
      - name: BadBoundedMathMin
        source: Text
        steps:
          - op: int.Parse
          - op: Math.Min
            args: [{const: MaxItems}]
        sink: LoopBound(100)
      - name: GoodTernaryMultiplication
        graph:
          nodes:
            - {id: src, source: Text}
            - {id: n, op: int.Parse, input: src}
            - {id: g, guard: guard_gt, input: n, args: [10]}
            - {id: twice, op: mul, input: g.taken, args: [2]}
            - {id: m, merge: [twice, g.untaken]}
            - {id: loop, sink: LoopBound, input: m}

Labels are 'safe', 'unsafe' or 'ambiguous'. Missing labels are inferred from
the corpus naming convention (see infer_expected).
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .flow_graph import (
    EdgeKind, FlowGraph, FlowGraphBuilder, FlowNode, NodeKind, Operand, OperandKind,
    SinkContext,
)
from .lattice import ValueKind
from .rule_engine import ConstantTables, RuleEngine, get_rule_engine

logger = logging.getLogger(__name__)

SAFE = 'safe'
UNSAFE = 'unsafe'
AMBIGUOUS = 'ambiguous'
LABELS = (SAFE, UNSAFE, AMBIGUOUS)

SCENARIO_EXTENSIONS = ('.yml', '.yaml')

_NODE_TYPES = ('source', 'op', 'guard', 'merge', 'sink')


class ScenarioError(ValueError):
    """A scenario document is structurally invalid."""


@dataclass
class Scenario:
    name: str
    document: str
    graph: FlowGraph
    tables: ConstantTables
    expected: Dict[str, Optional[str]] = field(default_factory=dict)
    description: str = ''

    @property
    def qualified_name(self) -> str:
        return f"{self.document}::{self.name}"


@dataclass
class ScenarioDocument:
    name: str
    path: str = ''
    origin: str = ''
    tables: ConstantTables = field(default_factory=ConstantTables)
    scenarios: List[Scenario] = field(default_factory=list)


def infer_expected(document: str, scenario: str) -> Optional[str]:
    """Label from the corpus naming convention.

    Everything in a *_FP* document is a false positive (safe). In a
    *_Validation document, bad* methods are false positives (safe) and good*
    methods are true positives (unsafe).
    """
    lowered = scenario.lower()
    if '_FP' in document:
        return SAFE
    if document.endswith('_Validation') or '_Validation_' in document:
        if lowered.startswith('bad'):
            return SAFE
        if lowered.startswith('good'):
            return UNSAFE
    return None


def _check_label(label: Any, where: str) -> Optional[str]:
    if label is None:
        return None
    label = str(label).strip().lower()
    if label not in LABELS:
        raise ScenarioError(f"{where}: expected must be one of {', '.join(LABELS)}, got {label!r}")
    return label


def parse_operand(raw: Any, where: str = 'operand') -> Operand:
    """Literal, or {const|var|enum_count|enum|whitelist: name}."""
    if isinstance(raw, dict):
        if len(raw) != 1:
            raise ScenarioError(f"{where}: reference must have exactly one key, got {raw!r}")
        key, name = next(iter(raw.items()))
        try:
            kind = OperandKind(key)
        except ValueError:
            raise ScenarioError(f"{where}: unknown operand reference {key!r}") from None
        if kind is OperandKind.LITERAL:
            return Operand.literal(name)
        return Operand(kind, str(name))
    return Operand.literal(raw)


class ScenarioLoader:
    """Builds Scenario objects from YAML documents."""

    def __init__(self, engine: Optional[RuleEngine] = None):
        self.engine = engine or get_rule_engine()

    # ==================== Documents ====================

    def load_file(self, path: str) -> ScenarioDocument:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ScenarioError(f"{path}: invalid YAML: {exc}") from exc
        doc = self.load_data(data, path)
        logger.info("Loaded %d scenarios from %s", len(doc.scenarios), path)
        return doc

    def load_data(self, data: Any, path: str = '<memory>') -> ScenarioDocument:
        if not isinstance(data, dict):
            raise ScenarioError(f"{path}: document must be a mapping")
        name = data.get('name')
        if not name:
            raise ScenarioError(f"{path}: document has no name")
        doc = ScenarioDocument(
            name=str(name),
            path=path,
            origin=str(data.get('origin', '')),
            tables=ConstantTables.from_dict(data),
        )
        entries = data.get('scenarios') or []
        if not isinstance(entries, list):
            raise ScenarioError(f"{path}: 'scenarios' must be a list")
        seen = set()
        for index, entry in enumerate(entries):
            scenario = self._scenario(doc, entry, f"{path}: scenario #{index + 1}")
            if scenario.name in seen:
                raise ScenarioError(f"{path}: duplicate scenario name {scenario.name!r}")
            seen.add(scenario.name)
            doc.scenarios.append(scenario)
        return doc

    def load_dir(self, directory: str, strict: bool = True) -> List[ScenarioDocument]:
        docs = []
        for path in sorted(Path(directory).rglob('*')):
            if path.suffix not in SCENARIO_EXTENSIONS or not path.is_file():
                continue
            try:
                docs.append(self.load_file(str(path)))
            except (ScenarioError, OSError) as exc:
                if strict:
                    raise
                logger.warning("Skipping %s: %s", path, exc)
        return docs

    def load_targets(self, targets: List[str], strict: bool = True) -> List[ScenarioDocument]:
        docs = []
        for target in targets:
            if os.path.isdir(target):
                docs.extend(self.load_dir(target, strict))
            elif os.path.isfile(target):
                docs.append(self.load_file(target))
            else:
                raise ScenarioError(f"{target}: no such file or directory")
        return docs

    # ==================== Scenarios ====================

    def _scenario(self, doc: ScenarioDocument, entry: Any, where: str) -> Scenario:
        if not isinstance(entry, dict):
            raise ScenarioError(f"{where}: must be a mapping")
        name = entry.get('name')
        if not name:
            raise ScenarioError(f"{where}: has no name")
        name = str(name)
        where = f"{doc.path}: {name}"
        default_label = _check_label(entry.get('expected'), where)
        builder = FlowGraphBuilder(f"{doc.name}::{name}")
        if 'graph' in entry:
            labels = self._graph(builder, entry['graph'], where)
        elif 'steps' in entry:
            labels = self._linear(builder, entry, where)
        else:
            raise ScenarioError(f"{where}: needs 'steps' or 'graph'")
        graph = builder.build()
        expected = {}
        for sink in graph.sinks:
            label = labels.get(sink.id) or default_label or infer_expected(doc.name, name)
            expected[sink.id] = label
        return Scenario(
            name=name,
            document=doc.name,
            graph=graph,
            tables=doc.tables,
            expected=expected,
            description=str(entry.get('description', '')),
        )

    def _kind(self, raw: Any, where: str) -> ValueKind:
        try:
            return ValueKind.parse(str(raw))
        except ValueError as exc:
            raise ScenarioError(f"{where}: {exc}") from None

    def _sink_context(self, raw: Any, where: str) -> SinkContext:
        spec = str(raw)
        try:
            return SinkContext.parse(spec)
        except ValueError:
            pass
        sink_def = self.engine.sink_for_call(spec)
        if sink_def is not None:
            return SinkContext.parse(sink_def.name)
        raise ScenarioError(f"{where}: unknown sink context {spec!r}")

    def _operands(self, step: Dict[str, Any], where: str) -> Tuple[List[Operand], Dict[str, Operand]]:
        args = step.get('args', [])
        if not isinstance(args, list):
            args = [args]
        operands = [parse_operand(a, f"{where} args") for a in args]
        options = step.get('options') or {}
        if not isinstance(options, dict):
            raise ScenarioError(f"{where}: 'options' must be a mapping")
        return operands, {str(k): parse_operand(v, f"{where} options") for k, v in options.items()}

    def _linear(self, builder: FlowGraphBuilder, entry: Dict[str, Any], where: str
                ) -> Dict[str, Optional[str]]:
        current = builder.source(self._kind(entry.get('source', 'Text'), where), node_id='source')
        steps = entry.get('steps') or []
        if not isinstance(steps, list):
            raise ScenarioError(f"{where}: 'steps' must be a list")
        for index, step in enumerate(steps):
            step_where = f"{where} step {index + 1}"
            if not isinstance(step, dict):
                raise ScenarioError(f"{step_where}: must be a mapping")
            operands, options = self._operands(step, step_where)
            if 'guard' in step:
                current = builder.guard(str(step['guard']), current, operands, options)
                continue
            if 'op' not in step:
                raise ScenarioError(f"{step_where}: needs 'op' or 'guard'")
            inputs = [current]
            if 'with' in step:
                inputs.append(builder.source(self._kind(step['with'], step_where)))
            current = builder.transform(str(step['op']), *inputs, operands=operands,
                                        options=options)
        return self._linear_sinks(builder, entry, current, where)

    def _linear_sinks(self, builder: FlowGraphBuilder, entry: Dict[str, Any], current: str,
                      where: str) -> Dict[str, Optional[str]]:
        raw_sinks = entry.get('sinks')
        if raw_sinks is None:
            if 'sink' not in entry:
                raise ScenarioError(f"{where}: needs 'sink' or 'sinks'")
            raw_sinks = [{'context': entry['sink']}]
        if not isinstance(raw_sinks, list):
            raise ScenarioError(f"{where}: 'sinks' must be a list")
        if len(raw_sinks) > 1 and builder.node_kind(current) is NodeKind.GUARD:
            # a guard has a single taken edge; fan out after it
            current = builder.transform('identity', current)
        labels = {}
        for index, raw in enumerate(raw_sinks):
            if not isinstance(raw, dict):
                raw = {'context': raw}
            sink_id = str(raw.get('id') or ('sink' if len(raw_sinks) == 1 else f"sink{index + 1}"))
            context = self._sink_context(raw.get('context'), where)
            builder.sink(context, current, node_id=sink_id, label=str(raw.get('label', '')))
            labels[sink_id] = _check_label(raw.get('expected'), f"{where} sink {sink_id}")
        return labels

    def _graph(self, builder: FlowGraphBuilder, raw: Any, where: str) -> Dict[str, Optional[str]]:
        if not isinstance(raw, dict) or not isinstance(raw.get('nodes'), list):
            raise ScenarioError(f"{where}: 'graph' needs a 'nodes' list")
        labels = {}
        pending: List[Tuple[str, List[Any]]] = []
        kinds: Dict[str, NodeKind] = {}
        for index, node in enumerate(raw['nodes']):
            node_where = f"{where} node {index + 1}"
            if not isinstance(node, dict) or not node.get('id'):
                raise ScenarioError(f"{node_where}: must be a mapping with an 'id'")
            types = [t for t in _NODE_TYPES if t in node]
            if len(types) != 1:
                raise ScenarioError(f"{node_where}: needs exactly one of {', '.join(_NODE_TYPES)}")
            node_type = types[0]
            nid = str(node['id'])
            operands, options = self._operands(node, node_where)
            label = str(node.get('label', ''))
            if node_type == 'source':
                flow_node = FlowNode(nid, NodeKind.SOURCE, value_kind=self._kind(node['source'], node_where),
                                     label=label)
                inputs = []
            elif node_type == 'op':
                flow_node = FlowNode(nid, NodeKind.TRANSFORM, operation=str(node['op']),
                                     operands=tuple(operands), options=tuple(options.items()),
                                     label=label)
                inputs = _refs(node.get('inputs', node.get('input')))
            elif node_type == 'guard':
                flow_node = FlowNode(nid, NodeKind.GUARD, operation=str(node['guard']),
                                     operands=tuple(operands), options=tuple(options.items()),
                                     label=label)
                inputs = _refs(node.get('input', node.get('inputs')))
            elif node_type == 'merge':
                flow_node = FlowNode(nid, NodeKind.MERGE, label=label)
                inputs = _refs(node['merge'] or node.get('inputs'))
            else:
                flow_node = FlowNode(nid, NodeKind.SINK,
                                     sink=self._sink_context(node['sink'], node_where), label=label)
                inputs = _refs(node.get('input', node.get('inputs')))
                labels[nid] = _check_label(node.get('expected'), f"{where} sink {nid}")
            try:
                builder.add_node(flow_node)
            except ValueError as exc:
                raise ScenarioError(f"{node_where}: {exc}") from None
            pending.append((nid, inputs))
            kinds[nid] = flow_node.kind
        # edges last so inputs may refer to later nodes
        for nid, inputs in pending:
            for ref in inputs:
                src, kind = _parse_ref(ref)
                if kind is EdgeKind.FLOW and kinds.get(src) is NodeKind.GUARD:
                    kind = EdgeKind.TAKEN
                builder.edge(src, nid, kind)
        return labels


def _refs(raw: Any) -> List[Any]:
    if raw is None:
        return []
    if isinstance(raw, list):
        return raw
    return [raw]


def _parse_ref(ref: Any) -> Tuple[str, EdgeKind]:
    """'n' is the FLOW output of n; 'g.taken' / 'g.untaken' are guard branches."""
    ref = str(ref)
    base, dot, port = ref.rpartition('.')
    if dot and port in (EdgeKind.TAKEN.value, EdgeKind.UNTAKEN.value):
        return base, EdgeKind(port)
    return ref, EdgeKind.FLOW


def load_file(path: str, engine: Optional[RuleEngine] = None) -> ScenarioDocument:
    return ScenarioLoader(engine).load_file(path)


def load_dir(directory: str, engine: Optional[RuleEngine] = None,
             strict: bool = True) -> List[ScenarioDocument]:
    return ScenarioLoader(engine).load_dir(directory, strict)
