#!/usr/bin/env python3
"""Tests for flowsafe/propagation.py -- the topological pass over a flow graph."""

import logging
import pytest
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from flowsafe.flow_graph import EdgeKind, FlowGraphBuilder, Operand, SinkContext
from flowsafe.lattice import (
    EncodedFor, EncodingContext, IntervalState, NEG_INF, POS_INF, Value, ValueKind,
)
from flowsafe.propagation import PropagationEngine
from flowsafe.rule_engine import ConstantTables, RuleEngine
from flowsafe.transfer import RuleRegistry


@pytest.fixture(scope="module")
def engine():
    return RuleEngine()


@pytest.fixture(scope="module")
def propagator(engine):
    return PropagationEngine(RuleRegistry(engine), engine)


def linear(kind, *steps, context=SinkContext.loop_bound(100)):
    """source -> steps... -> sink, each step an (operation, operands) pair."""
    b = FlowGraphBuilder('linear')
    node = b.source(kind, node_id='source')
    for operation, operands in steps:
        node = b.transform(operation, node, operands=operands)
    b.sink(context, node, node_id='sink')
    return b.build()


class TestLinearFlows:
    def test_source_is_top(self, propagator):
        result = propagator.run(linear(ValueKind.INTEGER))
        assert result.sink_value('sink').interval.is_top
        assert result.order == ['source', 'sink']

    def test_rules_applied_in_order(self, propagator):
        graph = linear(ValueKind.TEXT, ('int.Parse', ()), ('Math.Min', (100,)), ('Math.Max', (1,)))
        result = propagator.run(graph)
        assert result.sink_value('sink').interval == IntervalState(1, 100)
        assert result.value_at('op2').interval == IntervalState(NEG_INF, 100)

    def test_compound_modulo(self, propagator):
        graph = linear(ValueKind.INTEGER, ('%', (1000,)), ('%', (100,)))
        result = propagator.run(graph)
        assert result.value_at('op1').interval == IntervalState(0, 999)
        assert result.sink_value('sink').interval == IntervalState(0, 99)

    def test_document_tables_override_globals(self, propagator):
        graph = linear(ValueKind.INTEGER, ('Math.Min', (Operand.constant('MaxItems'),)))
        result = propagator.run(graph, ConstantTables(constants={'MaxItems': 7}))
        assert result.sink_value('sink').interval.hi == 7
        result = propagator.run(graph)
        assert result.sink_value('sink').interval.hi == 100


class TestFailClosed:
    def test_missing_rule_is_unknown(self, propagator):
        """An unregistered operation never passes the value through."""
        graph = linear(ValueKind.INTEGER, ('Math.Min', (10,)), ('Frobnicate', ()))
        result = propagator.run(graph)
        value = result.sink_value('sink')
        assert value.is_unknown
        assert value.unknown_reason == "no rule for 'Frobnicate'"

    def test_unknown_sticks_through_later_rules(self, propagator):
        graph = linear(ValueKind.INTEGER, ('Frobnicate', ()), ('Math.Min', (10,)))
        value = propagator.run(graph).sink_value('sink')
        assert value.is_unknown
        assert value.interval == IntervalState(NEG_INF, 10)

    def test_non_constant_operand_is_no_op(self, propagator):
        """A runtime bound leaves the state untouched and is noted in the trace."""
        graph = linear(ValueKind.INTEGER, ('Math.Min', (Operand.variable('limit'),)))
        result = propagator.run(graph)
        value = result.sink_value('sink')
        assert value.interval.is_top
        assert not value.is_unknown
        assert "skipped" in result.steps['op1'].note

    def test_rule_error_is_unknown(self, propagator, caplog):
        graph = linear(ValueKind.INTEGER, ('%', (0,)))
        with caplog.at_level(logging.WARNING, logger='flowsafe.propagation'):
            value = propagator.run(graph).sink_value('sink')
        assert value.is_unknown
        assert "remainder by zero" in value.unknown_reason
        assert "Rule mod failed" in caplog.text

    def test_guard_used_as_transform(self, propagator):
        graph = linear(ValueKind.INTEGER, ('x > k', (10,)))
        value = propagator.run(graph).sink_value('sink')
        assert value.is_unknown
        assert "is a guard" in value.unknown_reason

    def test_unknown_guard(self, propagator):
        b = FlowGraphBuilder()
        src = b.source(ValueKind.INTEGER)
        g = b.guard('isReasonable', src)
        b.sink(SinkContext.loop_bound(), g, node_id='out')
        value = propagator.run(b.build()).sink_value('out')
        assert value.is_unknown
        assert "no guard rule" in value.unknown_reason

    def test_malformed_graph_is_not_propagated(self, propagator):
        b = FlowGraphBuilder()
        src = b.source(ValueKind.INTEGER)
        b.sink(SinkContext.loop_bound(), src, node_id='out')
        b.edge(src, 'nowhere')
        result = propagator.run(b.build())
        assert result.malformed
        assert result.outputs == {}


class TestBranches:
    def test_guard_narrows_taken_branch(self, propagator):
        b = FlowGraphBuilder()
        src = b.source(ValueKind.INTEGER)
        g = b.guard('x < k', src, operands=[100], node_id='g')
        b.sink(SinkContext.loop_bound(100), g, node_id='loop')
        result = propagator.run(b.build())
        assert result.sink_value('loop').interval == IntervalState(NEG_INF, 99)
        assert result.value_at('g', EdgeKind.UNTAKEN).interval == IntervalState(100, POS_INF)

    def test_capped_merge(self, propagator):
        """if (x > 10) x = 10; both branches join to [-inf, 10]."""
        b = FlowGraphBuilder()
        src = b.source(ValueKind.INTEGER)
        g = b.guard('x > k', src, operands=[10])
        cap = b.transform('assign_const', b.taken(g), operands=[10])
        m = b.merge(cap, b.untaken(g), node_id='m')
        b.sink(SinkContext.loop_bound(10), m, node_id='loop')
        result = propagator.run(b.build())
        assert result.sink_value('loop').interval == IntervalState(NEG_INF, 10)

    def test_uncapped_branch_widens_merge(self, propagator):
        """if (x > 10) x = x * 2; the taken branch is unbounded again."""
        b = FlowGraphBuilder()
        src = b.source(ValueKind.INTEGER)
        g = b.guard('x > k', src, operands=[10])
        doubled = b.transform('*', b.taken(g), operands=[2])
        m = b.merge(doubled, b.untaken(g))
        b.sink(SinkContext.loop_bound(), m, node_id='loop')
        result = propagator.run(b.build())
        assert not result.sink_value('loop').interval.bounded_above

    def test_infeasible_branch_is_skipped_at_merge(self, propagator):
        b = FlowGraphBuilder()
        src = b.source(ValueKind.INTEGER)
        low = b.transform('&', src, operands=[15])
        g = b.guard('x > k', low, operands=[100], node_id='g')
        big = b.transform('*', b.taken(g), operands=[1000], node_id='big')
        m = b.merge(big, b.untaken(g), node_id='m')
        b.sink(SinkContext.loop_bound(15), m, node_id='loop')
        result = propagator.run(b.build())
        assert result.value_at('g', EdgeKind.TAKEN) is None
        assert result.value_at('big') is None
        assert result.sink_value('loop').interval == IntervalState(0, 15)
        assert "1 infeasible" in result.steps['m'].note

    def test_text_merge_keeps_common_tags(self, propagator):
        b = FlowGraphBuilder()
        src = b.source(ValueKind.TEXT)
        left = b.transform('HttpUtility.HtmlEncode', src)
        right = b.transform('Encode.forHtml', src)
        m = b.merge(left, right)
        b.sink(SinkContext.html_body(), m, node_id='out')
        value = propagator.run(b.build()).sink_value('out')
        assert EncodedFor(EncodingContext.HTML_BODY) in value.text.tags

    def test_kind_mismatch_at_merge(self, propagator):
        b = FlowGraphBuilder()
        src = b.source(ValueKind.TEXT)
        parsed = b.transform('int.Parse', src)
        m = b.merge(parsed, src)
        b.sink(SinkContext.html_body(), m, node_id='out')
        value = propagator.run(b.build()).sink_value('out')
        assert value.is_unknown
        assert "kind mismatch" in value.unknown_reason


class TestTrace:
    def test_trace_follows_evaluation_order(self, propagator):
        graph = linear(ValueKind.TEXT, ('int.Parse', ()), ('Math.Min', (100,)))
        result = propagator.run(graph)
        steps = result.trace_for('sink')
        assert [s.node_id for s in steps] == ['source', 'op1', 'op2']
        assert steps[0].rule == "source(Text)"
        assert steps[1].rule == 'parse_int'
        assert steps[2].state == "Integer [-inf, 100]"
        assert str(steps[2]) == "op2: min -> Integer [-inf, 100]"

    def test_trace_only_covers_ancestors(self, propagator):
        b = FlowGraphBuilder()
        a = b.source(ValueKind.INTEGER, node_id='a')
        c = b.source(ValueKind.TEXT, node_id='c')
        b.transform('Math.Min', a, operands=[5], node_id='t')
        b.sink(SinkContext.loop_bound(), 't', node_id='loop')
        b.sink(SinkContext.html_body(), c, node_id='out')
        result = propagator.run(b.build())
        assert [s.node_id for s in result.trace_for('out')] == ['c']

    def test_trace_step_to_dict(self, propagator):
        result = propagator.run(linear(ValueKind.INTEGER, ('%', (10,))))
        data = result.steps['op1'].to_dict()
        assert data['node'] == 'op1'
        assert data['rule'] == 'mod'
        assert data['state'] == "Integer [0, 9]"
        assert "negative" in data['note']


class TestProperties:
    @pytest.mark.parametrize("operation,operands", [
        ('Math.Min', (100,)),
        ('Math.Max', (1,)),
        ('clamp', (1, 100)),
        ('%', (100,)),
        ('&', (255,)),
        ('Math.Abs', ()),
    ])
    def test_reapplying_a_bound_is_stable(self, propagator, operation, operands):
        """rule(rule(s)) == rule(s) for bounding rules."""
        once = propagator.run(linear(ValueKind.INTEGER, (operation, operands)))
        twice = propagator.run(linear(ValueKind.INTEGER, (operation, operands),
                                      (operation, operands)))
        assert once.sink_value('sink') == twice.sink_value('sink')

    @pytest.mark.parametrize("operation,operands", [
        ('x > k', (10,)),
        ('x <= k', (10,)),
        ('between', (0, 50)),
        ('regex', ('^[0-9]{1,3}$',)),
        ('switch_case', ([1, 2, 3],)),
    ])
    def test_taken_branch_never_widens(self, propagator, operation, operands):
        b = FlowGraphBuilder()
        src = b.source(ValueKind.INTEGER)
        pre = b.transform('Math.Min', src, operands=[500], node_id='pre')
        g = b.guard(operation, pre, operands=operands, node_id='g')
        b.sink(SinkContext.loop_bound(), g)
        result = propagator.run(b.build())
        taken = result.value_at('g', EdgeKind.TAKEN)
        assert taken.leq(result.value_at('pre'))

    def test_narrowing_keeps_text_tags(self, propagator):
        b = FlowGraphBuilder()
        src = b.source(ValueKind.TEXT)
        enc = b.transform('HttpUtility.HtmlEncode', src, node_id='enc')
        g = b.guard('HashSet.Contains', enc, operands=[Operand.whitelist('AllowedColors')],
                    node_id='g')
        b.sink(SinkContext.html_body(), g)
        result = propagator.run(b.build())
        taken = result.value_at('g', EdgeKind.TAKEN)
        assert result.value_at('enc').text.tags <= taken.text.tags
        assert isinstance(taken, Value)
