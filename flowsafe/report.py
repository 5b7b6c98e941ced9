#!/usr/bin/env python3
"""
Verdicts against expected labels: confusion counts, precision and recall.

A sink is flagged when its verdict is not Safe, so Unknown counts as a
finding. Ambiguous and unlabeled sinks are listed but not scored.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .classifier import Classification, FlowClassifier
from .judgment import Verdict
from .scenario_loader import AMBIGUOUS, SAFE, UNSAFE, Scenario, ScenarioDocument


@dataclass
class CaseResult:
    document: str
    scenario: str
    sink_id: str
    verdict: Verdict
    expected: Optional[str] = None

    @property
    def flagged(self) -> bool:
        return not self.verdict.is_safe

    @property
    def scored(self) -> bool:
        return self.expected in (SAFE, UNSAFE)

    @property
    def outcome(self) -> Optional[str]:
        """TP, FP, FN or TN; None when the case is not scored."""
        if not self.scored:
            return None
        if self.expected == UNSAFE:
            return 'TP' if self.flagged else 'FN'
        return 'FP' if self.flagged else 'TN'

    @property
    def correct(self) -> Optional[bool]:
        outcome = self.outcome
        return None if outcome is None else outcome in ('TP', 'TN')

    @property
    def name(self) -> str:
        return f"{self.document}::{self.scenario}:{self.sink_id}"

    def to_dict(self, trace: bool = False) -> Dict[str, Any]:
        data = {
            'document': self.document,
            'scenario': self.scenario,
            'sink': self.sink_id,
            'context': str(self.verdict.context) if self.verdict.context else None,
            'verdict': self.verdict.kind.value,
            'reason': self.verdict.reason,
            'expected': self.expected,
            'outcome': self.outcome,
        }
        if trace:
            data['trace'] = [step.to_dict() for step in self.verdict.trace]
        return data


@dataclass
class Metrics:
    tp: int = 0
    fp: int = 0
    fn: int = 0
    tn: int = 0

    def add(self, outcome: Optional[str]):
        if outcome == 'TP':
            self.tp += 1
        elif outcome == 'FP':
            self.fp += 1
        elif outcome == 'FN':
            self.fn += 1
        elif outcome == 'TN':
            self.tn += 1

    @property
    def total(self) -> int:
        return self.tp + self.fp + self.fn + self.tn

    @property
    def precision(self) -> float:
        return self.tp / (self.tp + self.fp) if (self.tp + self.fp) > 0 else 0.0

    @property
    def recall(self) -> float:
        return self.tp / (self.tp + self.fn) if (self.tp + self.fn) > 0 else 0.0

    @property
    def f1(self) -> float:
        p, r = self.precision, self.recall
        return 2 * p * r / (p + r) if (p + r) > 0 else 0.0

    @property
    def accuracy(self) -> float:
        return (self.tp + self.tn) / self.total if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tp': self.tp, 'fp': self.fp, 'fn': self.fn, 'tn': self.tn,
            'precision': round(self.precision, 4),
            'recall': round(self.recall, 4),
            'f1': round(self.f1, 4),
        }


@dataclass
class Report:
    cases: List[CaseResult] = field(default_factory=list)

    @property
    def metrics(self) -> Metrics:
        metrics = Metrics()
        for case in self.cases:
            metrics.add(case.outcome)
        return metrics

    def per_document(self) -> Dict[str, Metrics]:
        docs: Dict[str, Metrics] = {}
        for case in self.cases:
            docs.setdefault(case.document, Metrics()).add(case.outcome)
        return docs

    @property
    def mismatches(self) -> List[CaseResult]:
        return [c for c in self.cases if c.correct is False]

    @property
    def ambiguous(self) -> List[CaseResult]:
        return [c for c in self.cases if c.expected == AMBIGUOUS]

    @property
    def unlabeled(self) -> List[CaseResult]:
        return [c for c in self.cases if c.expected is None]

    def verdict_counts(self) -> Dict[str, int]:
        return dict(Counter(c.verdict.kind.value for c in self.cases))

    def to_dict(self, trace: bool = False) -> Dict[str, Any]:
        return {
            'summary': {
                'sinks': len(self.cases),
                'verdicts': self.verdict_counts(),
                'ambiguous': len(self.ambiguous),
                'unlabeled': len(self.unlabeled),
                'mismatches': len(self.mismatches),
                **self.metrics.to_dict(),
            },
            'documents': {name: m.to_dict() for name, m in self.per_document().items()},
            'cases': [c.to_dict(trace) for c in self.cases],
        }


def build_report(scenarios: Sequence[Scenario],
                 classifications: Sequence[Classification]) -> Report:
    report = Report()
    for scenario, classification in zip(scenarios, classifications):
        for verdict in classification.verdicts:
            report.cases.append(CaseResult(
                document=scenario.document,
                scenario=scenario.name,
                sink_id=verdict.sink_id,
                verdict=verdict,
                expected=scenario.expected.get(verdict.sink_id),
            ))
    return report


def run_documents(classifier: FlowClassifier, documents: Sequence[ScenarioDocument],
                  max_workers: Optional[int] = None) -> Report:
    scenarios = [s for doc in documents for s in doc.scenarios]
    classifications = classifier.classify_many(
        [(s.graph, s.tables) for s in scenarios], max_workers=max_workers)
    return build_report(scenarios, classifications)


def format_text(report: Report, trace: bool = False,
                paint: Optional[Callable[[str], str]] = None) -> str:
    """Console rendering; `paint` colors a verdict name."""
    paint = paint or (lambda text: text)
    lines = ["=" * 70, "FLOW SAFETY RESULTS", "=" * 70]
    current = None
    for case in report.cases:
        if case.document != current:
            current = case.document
            lines.append("")
            lines.append(f"[{current}]")
        mark = {True: 'ok', False: 'MISMATCH', None: '--'}[case.correct]
        expected = case.expected or 'unlabeled'
        lines.append(f"  {paint(case.verdict.kind.value.ljust(8))} {case.scenario}:{case.sink_id} "
                     f"({case.verdict.context}) expected={expected} [{mark}]")
        if trace or (case.verdict.reason and not case.verdict.is_safe):
            lines.append(f"      {case.verdict.reason}")
        if trace:
            for step in case.verdict.trace:
                lines.append(f"        {step}")

    metrics = report.metrics
    lines += ["", "=" * 70, "METRICS", "=" * 70]
    lines.append(f"  True Positives:  {metrics.tp}")
    lines.append(f"  False Positives: {metrics.fp}")
    lines.append(f"  False Negatives: {metrics.fn}")
    lines.append(f"  True Negatives:  {metrics.tn}")
    lines.append("")
    lines.append(f"  Precision: {metrics.precision:.1%}")
    lines.append(f"  Recall:    {metrics.recall:.1%}")
    lines.append(f"  F1 Score:  {metrics.f1:.1%}")
    if report.ambiguous:
        lines.append(f"  Ambiguous (not scored): {len(report.ambiguous)}")
    documents = report.per_document()
    if len(documents) > 1:
        lines.append("")
        lines.append("  Per document:")
        for name, m in documents.items():
            lines.append(f"    {name}: TP={m.tp} FP={m.fp} FN={m.fn} TN={m.tn}")
    if report.mismatches:
        lines.append("")
        lines.append("  Mismatches:")
        for case in report.mismatches:
            lines.append(f"    {case.name}: {case.verdict} (expected {case.expected})")
    return "\n".join(lines)
