#!/usr/bin/env python3
"""Tests for flowsafe/report.py -- scoring verdicts against expected labels."""

import pytest
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from flowsafe.classifier import FlowClassifier
from flowsafe.flow_graph import SinkContext
from flowsafe.judgment import Verdict
from flowsafe.report import CaseResult, Metrics, Report, format_text, run_documents
from flowsafe.rule_engine import RuleEngine
from flowsafe.scenario_loader import ScenarioLoader


def case(kind, expected, scenario='s', document='Doc', sink='sink'):
    make = {'safe': Verdict.safe, 'unsafe': Verdict.unsafe, 'unknown': Verdict.unknown}[kind]
    verdict = make(f"{kind} because", sink_id=sink, context=SinkContext.html_body())
    return CaseResult(document, scenario, sink, verdict, expected)


class TestCaseResult:
    @pytest.mark.parametrize("kind,expected,outcome", [
        ('unsafe', 'unsafe', 'TP'),
        ('unknown', 'unsafe', 'TP'),
        ('safe', 'unsafe', 'FN'),
        ('safe', 'safe', 'TN'),
        ('unsafe', 'safe', 'FP'),
        ('unknown', 'safe', 'FP'),
    ])
    def test_outcome(self, kind, expected, outcome):
        """Anything not Safe counts as flagged."""
        assert case(kind, expected).outcome == outcome

    @pytest.mark.parametrize("expected", ['ambiguous', None])
    def test_not_scored(self, expected):
        result = case('unsafe', expected)
        assert not result.scored
        assert result.outcome is None
        assert result.correct is None

    def test_name_and_dict(self):
        result = case('unsafe', 'safe', scenario='GoodX', sink='out')
        assert result.name == "Doc::GoodX:out"
        data = result.to_dict()
        assert data['verdict'] == 'Unsafe'
        assert data['context'] == 'HtmlBody'
        assert data['outcome'] == 'FP'
        assert 'trace' not in data
        assert result.to_dict(trace=True)['trace'] == []


class TestMetrics:
    def test_counts(self):
        metrics = Metrics()
        for outcome in ['TP', 'TP', 'TP', 'FP', 'FN', 'TN', None]:
            metrics.add(outcome)
        assert (metrics.tp, metrics.fp, metrics.fn, metrics.tn) == (3, 1, 1, 1)
        assert metrics.total == 6
        assert metrics.precision == 0.75
        assert metrics.recall == 0.75
        assert metrics.f1 == pytest.approx(0.75)
        assert metrics.accuracy == pytest.approx(4 / 6)

    def test_empty(self):
        metrics = Metrics()
        assert metrics.precision == 0.0
        assert metrics.recall == 0.0
        assert metrics.f1 == 0.0
        assert metrics.accuracy == 0.0

    def test_to_dict_rounds(self):
        data = Metrics(tp=1, fp=2).to_dict()
        assert data['precision'] == 0.3333
        assert data['recall'] == 1.0


class TestReport:
    @pytest.fixture
    def report(self):
        return Report([
            case('unsafe', 'unsafe', 'GoodA', document='One'),
            case('safe', 'safe', 'BadB', document='One'),
            case('unsafe', 'safe', 'BadC', document='Two'),
            case('safe', 'ambiguous', 'L07', document='Two'),
            case('unknown', None, 'Other', document='Two'),
        ])

    def test_partitions(self, report):
        assert [c.scenario for c in report.mismatches] == ['BadC']
        assert [c.scenario for c in report.ambiguous] == ['L07']
        assert [c.scenario for c in report.unlabeled] == ['Other']
        assert report.verdict_counts() == {'Unsafe': 2, 'Safe': 2, 'Unknown': 1}

    def test_per_document(self, report):
        docs = report.per_document()
        assert list(docs) == ['One', 'Two']
        assert (docs['One'].tp, docs['One'].tn) == (1, 1)
        assert docs['Two'].fp == 1
        assert docs['Two'].total == 1

    def test_to_dict(self, report):
        data = report.to_dict()
        summary = data['summary']
        assert summary['sinks'] == 5
        assert summary['mismatches'] == 1
        assert summary['ambiguous'] == 1
        assert summary['unlabeled'] == 1
        assert summary['tp'] == 1 and summary['fp'] == 1
        assert set(data['documents']) == {'One', 'Two'}
        assert len(data['cases']) == 5

    def test_format_text(self, report):
        text = format_text(report)
        assert "FLOW SAFETY RESULTS" in text
        assert "[One]" in text and "[Two]" in text
        assert "GoodA:sink (HtmlBody) expected=unsafe [ok]" in text
        assert "BadC:sink (HtmlBody) expected=safe [MISMATCH]" in text
        assert "Other:sink (HtmlBody) expected=unlabeled [--]" in text
        assert "Precision: 50.0%" in text
        assert "Ambiguous (not scored): 1" in text
        assert "Per document:" in text
        assert "Two::BadC:sink: Unsafe(unsafe because) (expected safe)" in text

    def test_format_text_paint(self, report):
        text = format_text(report, paint=lambda t: f"<{t.strip()}>")
        assert "<Unsafe>" in text and "<Safe>" in text

    def test_safe_reason_hidden_without_trace(self):
        report = Report([case('safe', 'safe')])
        assert "safe because" not in format_text(report)
        assert "safe because" in format_text(report, trace=True)


class TestRunDocuments:
    def test_end_to_end(self):
        engine = RuleEngine()
        docs = [ScenarioLoader(engine).load_data({
            'name': 'ReflectedXSS_Validation',
            'scenarios': [
                {'name': 'BadIntParse', 'steps': [{'op': 'int.Parse'}, {'op': 'ToString'}],
                 'sink': 'Response.Write'},
                {'name': 'GoodDirectOutput', 'steps': [], 'sink': 'Response.Write'},
                {'name': 'Mixed', 'steps': [{'op': 'Trim'}],
                 'sinks': [{'context': 'HtmlBody', 'expected': 'unsafe'},
                           {'context': 'SensitiveLog', 'expected': 'unsafe'}]},
            ],
        })]
        report = run_documents(FlowClassifier(engine), docs, max_workers=2)
        assert [(c.scenario, c.sink_id, c.outcome) for c in report.cases] == [
            ('BadIntParse', 'sink', 'TN'),
            ('GoodDirectOutput', 'sink', 'TP'),
            ('Mixed', 'sink1', 'TP'),
            ('Mixed', 'sink2', 'TP'),
        ]
        assert report.metrics.precision == 1.0
