#!/usr/bin/env python3
"""Tests for flowsafe/judgment.py -- sink predicates and verdicts."""

import pytest
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from flowsafe.flow_graph import SinkContext
from flowsafe.judgment import SinkJudge, Verdict, VerdictKind
from flowsafe.lattice import (
    EncodedFor, EncodingContext, Hashed, IntervalState, LossyDerived, Masked,
    NEG_INF, POS_INF, TextState, Validated, Value, ValueKind, Whitelisted,
)
from flowsafe.rule_engine import RuleEngine, Settings


@pytest.fixture(scope="module")
def engine():
    return RuleEngine()


@pytest.fixture(scope="module")
def judge(engine):
    return SinkJudge(engine)


def number(lo=NEG_INF, hi=POS_INF, kind=ValueKind.INTEGER):
    return Value(kind, IntervalState(lo, hi))


def text(*tags):
    return Value(ValueKind.TEXT, TextState.of(*tags))


TEXT_SINKS = [
    SinkContext.html_body(),
    SinkContext.html_attribute(),
    SinkContext.js_string_literal(),
    SinkContext.url_parameter(),
]


class TestLoopBound:
    def test_within_budget(self, judge):
        verdict = judge.judge(SinkContext.loop_bound(100), number(NEG_INF, 100))
        assert verdict.is_safe

    def test_unbounded(self, judge):
        verdict = judge.judge(SinkContext.loop_bound(1000), number())
        assert verdict.is_unsafe
        assert "has no upper bound" in verdict.reason

    def test_exceeds_budget(self, judge):
        verdict = judge.judge(SinkContext.loop_bound(50), number(0, 99))
        assert verdict.is_unsafe
        assert verdict.reason == "iteration count [0, 99] exceeds budget 50"

    def test_default_budget(self, engine):
        judge = SinkJudge(engine, Settings(default_loop_budget=10))
        assert judge.judge(SinkContext.loop_bound(), number(0, 10)).is_safe
        assert judge.judge(SinkContext.loop_bound(), number(0, 11)).is_unsafe
        assert judge.loop_budget(SinkContext.loop_bound(3)) == 3

    def test_negative_lower_bound_is_fine(self, judge):
        """Only the upper bound decides how often a loop runs."""
        assert judge.judge(SinkContext.loop_bound(10), number(NEG_INF, 5)).is_safe

    def test_text_into_loop_bound(self, judge):
        verdict = judge.judge(SinkContext.loop_bound(10), text())
        assert verdict.is_unknown
        assert verdict.reason == "kind mismatch: LoopBound needs a number, got Text"

    def test_enum_and_boolean_kinds(self, judge):
        assert judge.judge(SinkContext.loop_bound(10),
                           number(0, 3, kind=ValueKind.ENUM_MEMBER)).is_safe
        assert judge.judge(SinkContext.loop_bound(1),
                           Value.source(ValueKind.BOOLEAN)).is_safe


class TestTextSinks:
    def test_raw_text_is_unsafe(self, judge):
        verdict = judge.judge(SinkContext.html_body(), text())
        assert verdict.is_unsafe
        assert verdict.reason == "raw text reaches HtmlBody"

    def test_matching_encoding(self, judge):
        value = text(EncodedFor(EncodingContext.HTML_BODY))
        assert judge.judge(SinkContext.html_body(), value).is_safe

    def test_wrong_encoding(self, judge):
        """HTML encoding does not protect a JavaScript string."""
        value = text(EncodedFor(EncodingContext.HTML_BODY), EncodedFor(EncodingContext.HTML_ATTRIBUTE))
        verdict = judge.judge(SinkContext.js_string_literal(), value)
        assert verdict.is_unsafe
        assert "none of" in verdict.reason

    def test_url_encoding_in_html_body(self, judge):
        value = text(EncodedFor(EncodingContext.URL))
        assert judge.judge(SinkContext.url_parameter(), value).is_safe
        assert judge.judge(SinkContext.html_body(), value).is_unsafe

    def test_harmless_alphabet(self, engine, judge):
        digits = text(Validated('digits', engine.charset('digits')))
        for context in TEXT_SINKS:
            assert judge.judge(context, digits).is_safe, context

    def test_markup_alphabet(self, judge):
        value = text(Validated('anything', frozenset('abc<>')))
        assert judge.judge(SinkContext.html_body(), value).is_unsafe

    def test_base64_everywhere(self, engine, judge):
        value = text(Validated('base64', engine.charset('base64')))
        for context in TEXT_SINKS:
            assert judge.judge(context, value).is_safe, context

    @pytest.mark.parametrize("tag", [Whitelisted(), LossyDerived(2), Hashed()])
    def test_reduced_values(self, judge, tag):
        for context in TEXT_SINKS:
            assert judge.judge(context, text(tag)).is_safe

    def test_masked_is_not_an_encoding(self, judge):
        assert judge.judge(SinkContext.html_body(), text(Masked(4))).is_unsafe

    @pytest.mark.parametrize("kind", [
        ValueKind.INTEGER, ValueKind.LONG_INTEGER, ValueKind.FLOAT,
        ValueKind.BOOLEAN, ValueKind.ENUM_MEMBER,
    ])
    def test_numbers_cannot_carry_markup(self, judge, kind):
        verdict = judge.judge(SinkContext.html_body(), Value.source(kind))
        assert verdict.is_safe

    def test_guid_kind_is_safe(self, judge):
        assert judge.judge(SinkContext.html_attribute(), Value.source(ValueKind.GUID)).is_safe


class TestSensitiveLog:
    def test_masked(self, judge):
        assert judge.judge(SinkContext.sensitive_log(), text(Masked(4))).is_safe
        assert judge.judge(SinkContext.sensitive_log(), text(Masked(0))).is_safe

    def test_masking_too_little(self, judge):
        verdict = judge.judge(SinkContext.sensitive_log(), text(Masked(6)))
        assert verdict.is_unsafe
        assert verdict.reason == "masking leaves 6 characters visible (limit 4)"

    def test_limit_from_settings(self, engine):
        lenient = SinkJudge(engine, Settings(sensitive_log_max_visible=6))
        assert lenient.judge(SinkContext.sensitive_log(), text(Masked(6))).is_safe

    @pytest.mark.parametrize("tag", [Hashed(), LossyDerived(POS_INF)])
    def test_irreversible(self, judge, tag):
        assert judge.judge(SinkContext.sensitive_log(), text(tag)).is_safe

    def test_plain_text(self, judge):
        verdict = judge.judge(SinkContext.sensitive_log(), text())
        assert verdict.is_unsafe
        assert "unmasked personal data" in verdict.reason

    def test_encoding_does_not_hide_data(self, judge):
        """Encoded or whitelisted text still reveals the value."""
        value = text(EncodedFor(EncodingContext.HTML_BODY), Whitelisted())
        assert judge.judge(SinkContext.sensitive_log(), value).is_unsafe

    def test_numbers_are_safe(self, judge):
        assert judge.judge(SinkContext.sensitive_log(), number(0, 1)).is_safe


class TestFailClosed:
    ALL_CONTEXTS = [SinkContext.loop_bound(10), SinkContext.sensitive_log()] + TEXT_SINKS

    @pytest.mark.parametrize("context", ALL_CONTEXTS, ids=str)
    def test_unknown_is_never_safe(self, judge, context):
        """Even a state that would pass is not Safe once it is unknown."""
        kind = ValueKind.INTEGER if context == SinkContext.loop_bound(10) else ValueKind.TEXT
        value = Value.unknown(kind, "no rule for 'x'")
        if kind is ValueKind.INTEGER:
            value = value.evolve(IntervalState(0, 1))
        else:
            value = value.evolve(TextState.of(Hashed()))
        verdict = judge.judge(context, value)
        assert verdict.is_unknown
        assert verdict.reason == "no rule for 'x'"

    @pytest.mark.parametrize("context", ALL_CONTEXTS, ids=str)
    def test_no_feasible_path(self, judge, context):
        verdict = judge.judge(context, None, sink_id='dead')
        assert verdict.is_unknown
        assert verdict.reason == "no feasible path reaches this sink"
        assert verdict.sink_id == 'dead'


class TestVerdict:
    def test_str(self):
        assert str(Verdict.safe("fine")) == "Safe"
        assert str(Verdict.unsafe("raw text reaches HtmlBody")) == \
            "Unsafe(raw text reaches HtmlBody)"
        assert str(Verdict.unknown("no rule")) == "Unknown(no rule)"

    def test_judge_fills_context(self, judge):
        verdict = judge.judge(SinkContext.loop_bound(100), number(0, 5), sink_id='loop')
        assert verdict.kind is VerdictKind.SAFE
        assert verdict.context == SinkContext.loop_bound(100)
        assert verdict.value == number(0, 5)
        data = verdict.to_dict()
        assert data['sink'] == 'loop'
        assert data['context'] == "LoopBound(100)"
        assert data['verdict'] == 'Safe'
        assert data['value'] == "Integer [0, 5]"
        assert data['trace'] == []
