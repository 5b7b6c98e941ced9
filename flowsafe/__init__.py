"""
flowsafe - Flow-safety classifier for untrusted data.

Decides, for each sink of a flow graph, whether the transformations and
guards between an untrusted source and that sink make the flow Safe, Unsafe
or Unknown.
"""

__version__ = "1.0.0"

from .lattice import (
    EncodedFor, EncodingContext, Hashed, IntervalState, LossyDerived, Masked,
    TextState, Validated, Value, ValueKind, Whitelisted,
)
from .flow_graph import (
    EdgeKind, FlowGraph, FlowGraphBuilder, GraphError, NodeKind, NonConstantOperand,
    Operand, SinkContext, SinkKind,
)
from .rule_engine import ConstantTables, RuleEngine, Settings, get_rule_engine
from .transfer import RuleError, RuleRegistry
from .judgment import SinkJudge, Verdict, VerdictKind
from .propagation import PropagationEngine, PropagationResult, TraceStep
from .classifier import Classification, FlowClassifier
from .scenario_loader import ScenarioError, ScenarioLoader

__all__ = [
    'EncodedFor', 'EncodingContext', 'Hashed', 'IntervalState', 'LossyDerived', 'Masked',
    'TextState', 'Validated', 'Value', 'ValueKind', 'Whitelisted',
    'EdgeKind', 'FlowGraph', 'FlowGraphBuilder', 'GraphError', 'NodeKind',
    'NonConstantOperand', 'Operand', 'SinkContext', 'SinkKind',
    'ConstantTables', 'RuleEngine', 'Settings', 'get_rule_engine',
    'RuleError', 'RuleRegistry',
    'SinkJudge', 'Verdict', 'VerdictKind',
    'PropagationEngine', 'PropagationResult', 'TraceStep',
    'Classification', 'FlowClassifier',
    'ScenarioError', 'ScenarioLoader',
]
