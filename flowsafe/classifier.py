#!/usr/bin/env python3
"""
flowsafe classifier - propagate a flow graph and judge each of its sinks.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .flow_graph import FlowGraph
from .judgment import SinkJudge, Verdict, VerdictKind
from .propagation import PropagationEngine, PropagationResult
from .rule_engine import ConstantTables, RuleEngine, Settings, get_rule_engine
from .transfer import RuleRegistry

logger = logging.getLogger(__name__)

Job = Union[FlowGraph, Tuple[FlowGraph, Optional[ConstantTables]]]


@dataclass
class Classification:
    graph: FlowGraph
    verdicts: List[Verdict] = field(default_factory=list)
    propagation: Optional[PropagationResult] = None

    def verdict_for(self, sink_id: str) -> Optional[Verdict]:
        for verdict in self.verdicts:
            if verdict.sink_id == sink_id:
                return verdict
        return None

    @property
    def all_safe(self) -> bool:
        return bool(self.verdicts) and all(v.is_safe for v in self.verdicts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'graph': self.graph.name,
            'verdicts': [v.to_dict() for v in self.verdicts],
        }


class FlowClassifier:
    """Classify flow graphs: Safe, Unsafe(reason) or Unknown(reason) per sink.

    Classification never raises. Malformed graphs give Unknown for every sink.
    Graphs and values are immutable, so classify_many runs graphs on worker
    threads without locking.
    """

    def __init__(self, engine: Optional[RuleEngine] = None,
                 registry: Optional[RuleRegistry] = None,
                 settings: Optional[Settings] = None):
        self.engine = engine or (registry.engine if registry else get_rule_engine())
        self.settings = settings or self.engine.settings
        self.registry = registry or RuleRegistry(self.engine)
        self.propagator = PropagationEngine(self.registry, self.engine, self.settings)
        self.judge = SinkJudge(self.engine, self.settings)

    def classify(self, graph: FlowGraph, tables: Optional[ConstantTables] = None) -> Classification:
        result = self.propagator.run(graph, tables)
        classification = Classification(graph, propagation=result)
        if result.malformed:
            reason = f"malformed graph: {'; '.join(result.problems)}"
            for sink in graph.sinks:
                classification.verdicts.append(Verdict.unknown(
                    reason, sink_id=sink.id, context=sink.sink))
            return classification
        for sink in graph.sinks:
            classification.verdicts.append(self.judge.judge(
                sink.sink, result.sink_value(sink.id), sink.id, result.trace_for(sink.id)))
        logger.debug("Classified %s: %s", graph.name,
                     ', '.join(f"{v.sink_id}={v}" for v in classification.verdicts))
        return classification

    def classify_many(self, jobs: Iterable[Job], max_workers: Optional[int] = None
                      ) -> List[Classification]:
        """Classify several graphs concurrently; results keep the input order."""
        pairs = [job if isinstance(job, tuple) else (job, None) for job in jobs]
        workers = max_workers or self.settings.max_workers
        if workers <= 1 or len(pairs) <= 1:
            return [self.classify(graph, tables) for graph, tables in pairs]
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self.classify, graph, tables) for graph, tables in pairs]
            results = [f.result() for f in futures]
        logger.info("Classified %d graphs on %d workers", len(results), workers)
        return results


def count_verdicts(classifications: Sequence[Classification]) -> Dict[str, int]:
    counts = {kind.value: 0 for kind in VerdictKind}
    for c in classifications:
        for v in c.verdicts:
            counts[v.kind.value] += 1
    return counts
