#!/usr/bin/env python3
"""
flowsafe Lattice Core

Abstract states for values travelling from an untrusted source to a sink:

- IntervalState: closed interval [lo, hi] over the extended integers, used for
  numeric kinds. [-inf, +inf] is top, a single point is exact.
- TextState: a set of safety tags. The empty set is Raw (top, worst case);
  more tags means more information.

Join is used where control-flow branches merge, meet where a guard restricts
the value along its taken branch. Join never claims more safety than either
input proved on its own.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Union


NEG_INF = float('-inf')
POS_INF = float('inf')

HTML_METACHARACTERS = frozenset('<>"\'&')


class ValueKind(Enum):
    INTEGER = 'Integer'
    LONG_INTEGER = 'LongInteger'
    FLOAT = 'Float'
    TEXT = 'Text'
    BOOLEAN = 'Boolean'
    ENUM_MEMBER = 'EnumMember'
    GUID = 'Guid'

    @property
    def is_interval(self) -> bool:
        return self not in (ValueKind.TEXT, ValueKind.GUID)

    @property
    def is_text(self) -> bool:
        return self is ValueKind.TEXT

    @classmethod
    def parse(cls, name: str) -> 'ValueKind':
        """Accept 'Integer', 'integer', 'long_integer', 'long', ..."""
        key = name.strip().lower().replace('_', '').replace('-', '')
        aliases = {'int': 'integer', 'long': 'longinteger', 'double': 'float',
                   'decimal': 'float', 'string': 'text', 'str': 'text',
                   'bool': 'boolean', 'enum': 'enummember', 'uuid': 'guid'}
        key = aliases.get(key, key)
        for kind in cls:
            if kind.value.lower() == key:
                return kind
        raise ValueError(f"unknown value kind: {name!r}")


# ---------------------------------------------------------------------------
# IntervalState
# ---------------------------------------------------------------------------

def _fmt_bound(b: float) -> str:
    if b == POS_INF:
        return '+inf'
    if b == NEG_INF:
        return '-inf'
    if isinstance(b, float) and b.is_integer():
        return str(int(b))
    return str(b)


@dataclass(frozen=True)
class IntervalState:
    """All values a number could hold at one program point."""
    lo: float = NEG_INF
    hi: float = POS_INF

    def __post_init__(self):
        if self.lo > self.hi:
            raise ValueError(f"empty interval [{self.lo}, {self.hi}]")

    @classmethod
    def top(cls) -> 'IntervalState':
        return cls(NEG_INF, POS_INF)

    @classmethod
    def exact(cls, n: float) -> 'IntervalState':
        return cls(n, n)

    @classmethod
    def at_least(cls, lo: float) -> 'IntervalState':
        return cls(lo, POS_INF)

    @classmethod
    def at_most(cls, hi: float) -> 'IntervalState':
        return cls(NEG_INF, hi)

    @property
    def is_top(self) -> bool:
        return self.lo == NEG_INF and self.hi == POS_INF

    @property
    def is_exact(self) -> bool:
        return self.lo == self.hi

    @property
    def bounded_above(self) -> bool:
        return self.hi != POS_INF

    @property
    def bounded_below(self) -> bool:
        return self.lo != NEG_INF

    def leq(self, other: 'IntervalState') -> bool:
        """self ⊑ other: self is the narrower (more informed) interval."""
        return other.lo <= self.lo and self.hi <= other.hi

    def join(self, other: 'IntervalState') -> 'IntervalState':
        return IntervalState(min(self.lo, other.lo), max(self.hi, other.hi))

    def meet(self, other: 'IntervalState') -> Optional['IntervalState']:
        """Intersection, or None when the intervals are disjoint."""
        lo, hi = max(self.lo, other.lo), min(self.hi, other.hi)
        if lo > hi:
            return None
        return IntervalState(lo, hi)

    def __str__(self) -> str:
        return f"[{_fmt_bound(self.lo)}, {_fmt_bound(self.hi)}]"


# ---------------------------------------------------------------------------
# TextState tags
# ---------------------------------------------------------------------------

class EncodingContext(Enum):
    HTML_BODY = 'HtmlBody'
    HTML_ATTRIBUTE = 'HtmlAttribute'
    JS_STRING = 'JsString'
    URL = 'Url'


@dataclass(frozen=True)
class EncodedFor:
    context: EncodingContext

    def __str__(self):
        return f"EncodedFor({self.context.value})"


@dataclass(frozen=True)
class Validated:
    """Output is drawn from `charset`, optionally no longer than `max_length`."""
    char_class: str
    charset: FrozenSet[str] = field(default_factory=frozenset)
    max_length: Optional[int] = None

    def excludes(self, forbidden: Iterable[str]) -> bool:
        return not (self.charset & frozenset(forbidden))

    def within(self, allowed: Iterable[str]) -> bool:
        return self.charset <= frozenset(allowed)

    def __str__(self):
        if self.max_length is not None:
            return f"Validated({self.char_class}, len<={self.max_length})"
        return f"Validated({self.char_class})"


@dataclass(frozen=True)
class Whitelisted:
    def __str__(self):
        return "Whitelisted"


@dataclass(frozen=True)
class Masked:
    visible_suffix_len: int

    def __str__(self):
        return f"Masked({self.visible_suffix_len})"


@dataclass(frozen=True)
class Hashed:
    def __str__(self):
        return "Hashed"


@dataclass(frozen=True)
class LossyDerived:
    output_domain_size: float = POS_INF

    def __str__(self):
        return f"LossyDerived({_fmt_bound(self.output_domain_size)})"


Tag = Union[EncodedFor, Validated, Whitelisted, Masked, Hashed, LossyDerived]


@dataclass(frozen=True)
class TextState:
    """Set of safety tags. No tags at all is Raw: assume the worst."""
    tags: FrozenSet[Tag] = field(default_factory=frozenset)

    @classmethod
    def raw(cls) -> 'TextState':
        return cls(frozenset())

    @classmethod
    def of(cls, *tags: Tag) -> 'TextState':
        return cls(frozenset(tags))

    @property
    def is_raw(self) -> bool:
        return not self.tags

    def has(self, tag_type: type) -> bool:
        return any(isinstance(t, tag_type) for t in self.tags)

    def tags_of(self, tag_type: type):
        return [t for t in self.tags if isinstance(t, tag_type)]

    def with_tags(self, *tags: Tag) -> 'TextState':
        return TextState(self.tags | frozenset(tags))

    def replaced_by(self, *tags: Tag) -> 'TextState':
        return TextState(frozenset(tags))

    def leq(self, other: 'TextState') -> bool:
        """More tags is lower in the lattice; Raw is top."""
        return other.tags <= self.tags

    def join(self, other: 'TextState') -> 'TextState':
        return TextState(self.tags & other.tags)

    def meet(self, other: 'TextState') -> 'TextState':
        return TextState(self.tags | other.tags)

    def __str__(self):
        if not self.tags:
            return "{} (Raw)"
        return "{" + ", ".join(sorted(str(t) for t in self.tags)) + "}"


State = Union[IntervalState, TextState]


# ---------------------------------------------------------------------------
# Value
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Value:
    """A node's abstract value. Transformations build new Values."""
    kind: ValueKind
    state: State
    unknown_reason: Optional[str] = None

    def __post_init__(self):
        expected = IntervalState if self.kind.is_interval else TextState
        if not isinstance(self.state, expected):
            raise TypeError(f"{self.kind.value} value needs a {expected.__name__}, "
                            f"got {type(self.state).__name__}")

    @classmethod
    def top(cls, kind: ValueKind) -> 'Value':
        if kind is ValueKind.BOOLEAN:
            return cls(kind, IntervalState(0, 1))
        if kind.is_interval:
            return cls(kind, IntervalState.top())
        return cls(kind, TextState.raw())

    @classmethod
    def source(cls, kind: ValueKind) -> 'Value':
        """Untrusted input: Raw text, [-inf, +inf], or [0, 1] for booleans."""
        return cls.top(kind)

    @classmethod
    def unknown(cls, kind: ValueKind, reason: str) -> 'Value':
        top = cls.top(kind)
        return cls(kind, top.state, unknown_reason=reason)

    @property
    def is_unknown(self) -> bool:
        return self.unknown_reason is not None

    @property
    def interval(self) -> IntervalState:
        if not isinstance(self.state, IntervalState):
            raise TypeError(f"{self.kind.value} value has no interval state")
        return self.state

    @property
    def text(self) -> TextState:
        if not isinstance(self.state, TextState):
            raise TypeError(f"{self.kind.value} value has no text state")
        return self.state

    def evolve(self, state: State, kind: Optional[ValueKind] = None) -> 'Value':
        """New value with `state`; an unknown marker sticks."""
        return Value(kind or self.kind, state, unknown_reason=self.unknown_reason)

    def leq(self, other: 'Value') -> bool:
        if self.kind is not other.kind:
            return False
        if other.is_unknown and not self.is_unknown:
            return True
        if self.is_unknown and not other.is_unknown:
            return False
        return self.state.leq(other.state)

    def join(self, other: 'Value') -> 'Value':
        if self.kind is not other.kind:
            return Value.unknown(self.kind, f"kind mismatch at merge: "
                                            f"{self.kind.value} vs {other.kind.value}")
        reason = self.unknown_reason or other.unknown_reason
        return Value(self.kind, self.state.join(other.state), unknown_reason=reason)

    def __str__(self):
        suffix = f" unknown({self.unknown_reason})" if self.is_unknown else ""
        return f"{self.kind.value} {self.state}{suffix}"


def join_all(values: Iterable[Optional[Value]]) -> Optional[Value]:
    """Join every feasible value; None when no input is feasible."""
    result: Optional[Value] = None
    for v in values:
        if v is None:
            continue
        result = v if result is None else result.join(v)
    return result
