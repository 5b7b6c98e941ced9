#!/usr/bin/env python3
"""
Sink judgment: compare a sink's safety predicate with the value that reaches it.

LoopBound needs a finite upper bound within budget. Text sinks need one
accepted tag (matching encoding, a harmless alphabet, a whitelist, a lossy or
hashed derivation). SensitiveLog needs the value masked, hashed or reduced.
Non-text kinds satisfy every text sink. Unknown values and sinks reached by
no feasible path are never Safe.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .flow_graph import SinkContext, SinkKind
from .lattice import (
    EncodedFor, Hashed, LossyDerived, Masked, POS_INF, Validated, Value, Whitelisted,
)
from .rule_engine import RuleEngine, Settings, get_rule_engine

logger = logging.getLogger(__name__)


class VerdictKind(Enum):
    SAFE = 'Safe'
    UNSAFE = 'Unsafe'
    UNKNOWN = 'Unknown'


@dataclass
class Verdict:
    kind: VerdictKind
    reason: str = ''
    sink_id: str = ''
    context: Optional[SinkContext] = None
    value: Optional[Value] = None
    trace: List[Any] = field(default_factory=list)

    @classmethod
    def safe(cls, reason: str, **kwargs) -> 'Verdict':
        return cls(VerdictKind.SAFE, reason, **kwargs)

    @classmethod
    def unsafe(cls, reason: str, **kwargs) -> 'Verdict':
        return cls(VerdictKind.UNSAFE, reason, **kwargs)

    @classmethod
    def unknown(cls, reason: str, **kwargs) -> 'Verdict':
        return cls(VerdictKind.UNKNOWN, reason, **kwargs)

    @property
    def is_safe(self) -> bool:
        return self.kind is VerdictKind.SAFE

    @property
    def is_unsafe(self) -> bool:
        return self.kind is VerdictKind.UNSAFE

    @property
    def is_unknown(self) -> bool:
        return self.kind is VerdictKind.UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sink': self.sink_id,
            'context': str(self.context) if self.context else None,
            'verdict': self.kind.value,
            'reason': self.reason,
            'value': str(self.value) if self.value is not None else None,
            'trace': [step.to_dict() for step in self.trace],
        }

    def __str__(self):
        if self.kind is VerdictKind.SAFE:
            return "Safe"
        return f"{self.kind.value}({self.reason})"


class SinkJudge:
    """Judges propagated values against sink contexts."""

    def __init__(self, engine: Optional[RuleEngine] = None, settings: Optional[Settings] = None):
        self.engine = engine or get_rule_engine()
        self.settings = settings or self.engine.settings

    def judge(self, context: SinkContext, value: Optional[Value], sink_id: str = '',
              trace: Sequence[Any] = ()) -> Verdict:
        verdict = self._judge(context, value)
        verdict.sink_id = sink_id
        verdict.context = context
        verdict.value = value
        verdict.trace = list(trace)
        logger.debug("Sink %s %s: %s", sink_id, context, verdict)
        return verdict

    def _judge(self, context: SinkContext, value: Optional[Value]) -> Verdict:
        if value is None:
            return Verdict.unknown("no feasible path reaches this sink")
        if value.is_unknown:
            return Verdict.unknown(value.unknown_reason)
        if context.kind is SinkKind.LOOP_BOUND:
            return self._judge_loop_bound(context, value)
        if context.kind is SinkKind.SENSITIVE_LOG:
            return self._judge_sensitive_log(value)
        return self._judge_text(context, value)

    def loop_budget(self, context: SinkContext) -> int:
        if context.max_safe_iterations is not None:
            return context.max_safe_iterations
        return self.settings.default_loop_budget

    def _judge_loop_bound(self, context: SinkContext, value: Value) -> Verdict:
        if not value.kind.is_interval:
            return Verdict.unknown(f"kind mismatch: LoopBound needs a number, got {value.kind.value}")
        budget = self.loop_budget(context)
        hi = value.interval.hi
        if hi == POS_INF:
            return Verdict.unsafe(f"iteration count {value.interval} has no upper bound")
        if hi > budget:
            return Verdict.unsafe(f"iteration count {value.interval} exceeds budget {budget}")
        return Verdict.safe(f"iteration count {value.interval} within budget {budget}")

    def _judge_text(self, context: SinkContext, value: Value) -> Verdict:
        if not value.kind.is_text:
            return Verdict.safe(f"{value.kind.value} value cannot carry markup")
        sink_def = self.engine.get_sink(context.kind.config_key)
        wanted = context.kind.encoding_context
        for tag in sorted(value.text.tags, key=str):
            if isinstance(tag, EncodedFor) and tag.context is wanted:
                return Verdict.safe(f"{tag} matches the sink")
            if isinstance(tag, Validated) and sink_def is not None \
                    and sink_def.admits_alphabet(tag.charset):
                return Verdict.safe(f"{tag} alphabet is harmless in {context.kind.value}")
            if isinstance(tag, (Whitelisted, LossyDerived, Hashed)):
                return Verdict.safe(f"{tag} accepted by {context.kind.value}")
        if value.text.is_raw:
            return Verdict.unsafe(f"raw text reaches {context.kind.value}")
        return Verdict.unsafe(f"none of {value.text} is accepted by {context.kind.value}")

    def _judge_sensitive_log(self, value: Value) -> Verdict:
        if not value.kind.is_text:
            return Verdict.safe(f"{value.kind.value} value carries no personal text")
        limit = self.settings.sensitive_log_max_visible
        for tag in sorted(value.text.tags, key=str):
            if isinstance(tag, Masked) and tag.visible_suffix_len <= limit:
                return Verdict.safe(f"{tag} shows at most {limit} characters")
            if isinstance(tag, (Hashed, LossyDerived)):
                return Verdict.safe(f"{tag} does not reveal the original")
        masked = value.text.tags_of(Masked)
        if masked:
            widest = max(m.visible_suffix_len for m in masked)
            return Verdict.unsafe(f"masking leaves {widest} characters visible (limit {limit})")
        return Verdict.unsafe(f"unmasked personal data ({value.text}) reaches the log")
