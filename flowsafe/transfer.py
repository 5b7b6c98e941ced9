#!/usr/bin/env python3
"""
flowsafe Rule Registry

Transformation rules keyed by canonical operation signature. A rule is a pure
function of its RuleArgs (input values, operands resolved against constant
tables, settings) and returns the output Value. Guard rules return a pair
(taken, untaken); None on either side marks that branch infeasible.

Call names such as 'Math.min' or 'HttpUtility.HtmlEncode' are mapped to the
canonical names below by the RuleEngine's signature aliases.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .flow_graph import NonConstantOperand, Operand
from .lattice import (
    EncodedFor, EncodingContext, Hashed, IntervalState, LossyDerived, Masked,
    POS_INF, TextState, Validated, Value, ValueKind, Whitelisted,
    HTML_METACHARACTERS,
)
from .pattern_shape import DIGITS, analyze_pattern, shape_summary
from .rule_engine import ConstantTables, RuleEngine, Settings, get_rule_engine

logger = logging.getLogger(__name__)

GuardResult = Tuple[Optional[Value], Optional[Value]]


class RuleError(Exception):
    """A rule cannot be applied to the values it was given."""


def _as_number(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise RuleError(f"operand '{name}' must be a number, got a boolean")
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                pass
    raise RuleError(f"operand '{name}' must be a number, got {value!r}")


class RuleArgs:
    """Everything one rule application can see."""

    def __init__(self, inputs: Sequence[Value], operands: Sequence[Operand] = (),
                 options: Iterable[Tuple[str, Operand]] = (),
                 tables: Optional[ConstantTables] = None,
                 settings: Optional[Settings] = None,
                 engine: Optional[RuleEngine] = None):
        self.inputs = list(inputs)
        self.operands = tuple(operands)
        self.options = dict(options)
        self.engine = engine or get_rule_engine()
        self.tables = tables if tables is not None else self.engine.constants
        self.settings = settings or self.engine.settings
        self.notes: List[str] = []

    @property
    def value(self) -> Value:
        if not self.inputs:
            raise RuleError("no input value")
        return self.inputs[0]

    @property
    def extra_inputs(self) -> List[Value]:
        return self.inputs[1:]

    def note(self, message: str):
        self.notes.append(message)

    def operand(self, index: int, name: str) -> Any:
        """Resolved operand; raises NonConstantOperand for non-constants."""
        if index >= len(self.operands):
            raise RuleError(f"missing operand '{name}'")
        return self.operands[index].resolve(self.tables)

    def number(self, index: int, name: str = 'k') -> float:
        return _as_number(self.operand(index, name), name)

    def integer(self, index: int, name: str = 'k') -> int:
        n = self.number(index, name)
        if isinstance(n, float) and (math.isinf(n) or not n.is_integer()):
            raise RuleError(f"operand '{name}' must be an integer, got {n}")
        return int(n)

    def option(self, name: str, default: Any = None) -> Any:
        operand = self.options.get(name)
        if operand is None:
            return default
        return operand.resolve(self.tables)

    def interval(self) -> IntervalState:
        v = self.value
        if not v.kind.is_interval:
            raise RuleError(f"expects a numeric value, got {v.kind.value}")
        return v.interval

    def text_value(self) -> Value:
        v = self.value
        if not isinstance(v.state, TextState):
            raise RuleError(f"expects a text value, got {v.kind.value}")
        return v

    def other_interval(self, name: str = 'k') -> IntervalState:
        """Second arithmetic operand: a constant, else the second flow input."""
        if self.operands:
            return IntervalState.exact(self.number(0, name))
        if self.extra_inputs:
            other = self.extra_inputs[0]
            if not other.kind.is_interval:
                raise RuleError(f"second input must be numeric, got {other.kind.value}")
            return other.interval
        raise RuleError(f"missing operand '{name}'")

    def unknown_reason(self) -> Optional[str]:
        for v in self.inputs:
            if v.is_unknown:
                return v.unknown_reason
        return None


@dataclass(frozen=True)
class TransformationRule:
    name: str
    family: str
    fn: Callable[[RuleArgs], Any]
    is_guard: bool = False
    description: str = ''

    def apply(self, args: RuleArgs):
        return self.fn(args)


_BUILTIN_RULES: Dict[str, TransformationRule] = {}


def _first_line(doc: Optional[str]) -> str:
    return doc.strip().splitlines()[0] if doc and doc.strip() else ''


def rule(name: str, family: str, guard: bool = False):
    """Register a built-in rule under its canonical name."""
    def decorator(fn):
        _BUILTIN_RULES[name] = TransformationRule(name, family, fn, guard,
                                                  _first_line(fn.__doc__))
        return fn
    return decorator


class RuleRegistry:
    """Rules by canonical signature; call names resolve through the RuleEngine."""

    def __init__(self, engine: Optional[RuleEngine] = None, include_builtins: bool = True):
        self.engine = engine or get_rule_engine()
        self._rules: Dict[str, TransformationRule] = dict(_BUILTIN_RULES) if include_builtins else {}

    def register(self, name: str, family: str = 'custom', guard: bool = False):
        def decorator(fn):
            self.add(TransformationRule(name, family, fn, guard, _first_line(fn.__doc__)))
            return fn
        return decorator

    def add(self, transformation: TransformationRule):
        if transformation.name in self._rules:
            logger.debug("Rule %s replaced", transformation.name)
        self._rules[transformation.name] = transformation

    def lookup(self, signature: str) -> Optional[TransformationRule]:
        return self._rules.get(self.engine.resolve_signature(signature))

    def names(self, family: Optional[str] = None) -> List[str]:
        return sorted(n for n, r in self._rules.items() if family is None or r.family == family)

    def args(self, inputs: Sequence[Value], operands: Sequence[Operand] = (),
             options: Iterable[Tuple[str, Operand]] = (),
             tables: Optional[ConstantTables] = None,
             settings: Optional[Settings] = None) -> RuleArgs:
        return RuleArgs(inputs, operands, options, tables=tables, settings=settings,
                        engine=self.engine)

    def __contains__(self, signature: str) -> bool:
        return self.lookup(signature) is not None

    def __len__(self):
        return len(self._rules)


# ---------------------------------------------------------------------------
# Interval helpers
# ---------------------------------------------------------------------------

def _step(kind: ValueKind) -> float:
    """Gap between adjacent values; strict float bounds are kept closed."""
    return 0 if kind is ValueKind.FLOAT else 1


def _mul(a: float, b: float) -> float:
    if a == 0 or b == 0:
        return 0
    return a * b


def _floor_div(b: float, d: int) -> float:
    if math.isinf(b):
        return b
    return b // d


def _trunc_div(a: float, b: float, kind: ValueKind) -> Optional[float]:
    if math.isinf(a) and math.isinf(b):
        return None
    if math.isinf(a) or math.isinf(b) or kind is ValueKind.FLOAT:
        q = a / b
        return q if math.isinf(q) or kind is ValueKind.FLOAT else 0
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def _clipped(args: RuleArgs, x: IntervalState) -> IntervalState:
    """An unbounded end of a fixed-width value stops at the machine limit."""
    rng = args.settings.machine_range(args.value.kind)
    if rng is None:
        return x
    lo = x.lo if x.bounded_below else rng.lo
    hi = x.hi if x.bounded_above else rng.hi
    return IntervalState(lo, hi) if lo <= hi else x


def _fit(args: RuleArgs, state: IntervalState) -> IntervalState:
    """Arithmetic results past the machine range wrap around: top."""
    rng = args.settings.machine_range(args.value.kind)
    if rng is None:
        return state
    if (state.bounded_below and state.lo < rng.lo) or (state.bounded_above and state.hi > rng.hi):
        args.note(f"{state} may overflow {args.value.kind.value}; wraps to top")
        return IntervalState.top()
    return state


def _narrowed(args: RuleArgs, constraint: Optional[IntervalState], edge: str) -> Optional[Value]:
    v = args.value
    if constraint is None:
        return v
    met = v.interval.meet(constraint)
    if met is None:
        args.note(f"{edge} branch infeasible: {v.interval} outside {constraint}")
        return None
    return v.evolve(met)


# ---------------------------------------------------------------------------
# Interval rules
# ---------------------------------------------------------------------------

@rule('ternary_cap', 'interval')
@rule('min', 'interval')
def _min(args: RuleArgs) -> Value:
    """Upper bound by a constant: x > k ? k : x."""
    x = args.interval()
    k = args.number(0, 'k')
    return args.value.evolve(IntervalState(min(x.lo, k), min(x.hi, k)))


@rule('ternary_floor', 'interval')
@rule('max', 'interval')
def _max(args: RuleArgs) -> Value:
    """Lower bound by a constant: x < k ? k : x."""
    x = args.interval()
    k = args.number(0, 'k')
    return args.value.evolve(IntervalState(max(x.lo, k), max(x.hi, k)))


@rule('clamp', 'interval')
def _clamp(args: RuleArgs) -> Value:
    """Bound both ends."""
    x = args.interval()
    lo_k = args.number(0, 'lo')
    hi_k = args.number(1, 'hi')
    if lo_k > hi_k:
        args.note(f"inverted clamp bounds [{lo_k}, {hi_k}]; state unchanged")
        return args.value
    return args.value.evolve(IntervalState(min(max(x.lo, lo_k), hi_k),
                                           max(min(x.hi, hi_k), lo_k)))


def _remainder(args: RuleArgs, modulus: float, signed: bool) -> Value:
    x = args.interval()
    if modulus == 0:
        raise RuleError("remainder by zero")
    m = abs(modulus)
    largest = m if args.value.kind is ValueKind.FLOAT else m - 1
    if x.lo >= 0 and x.hi < m:
        args.note(f"{x} already below {m}")
        return args.value
    if signed and x.lo < 0:
        lo = max(-largest, x.lo)
        hi = min(largest, max(x.hi, 0))
        return args.value.evolve(IntervalState(lo, hi))
    if x.lo < 0:
        args.note("negative remainders count as zero iterations")
    return args.value.evolve(IntervalState(0, min(largest, max(x.hi, 0))))


@rule('mod', 'interval')
def _mod(args: RuleArgs) -> Value:
    """x % k for a constant k."""
    return _remainder(args, args.number(0, 'k'), args.settings.signed_remainder)


@rule('mod_enum_count', 'interval')
def _mod_enum_count(args: RuleArgs):
    """x % Enum.values().length."""
    members = args.operand(0, 'enum')
    count = len(members) if isinstance(members, dict) else _as_number(members, 'enum')
    if count <= 0:
        raise RuleError("enum has no members")
    return _remainder(args, count, signed=False)


@rule('abs', 'interval')
def _abs(args: RuleArgs) -> Value:
    x = args.interval()
    if x.lo >= 0:
        return args.value
    if x.hi <= 0:
        return args.value.evolve(IntervalState(-x.hi, -x.lo))
    return args.value.evolve(IntervalState(0, max(-x.lo, x.hi)))


@rule('bit_and', 'interval')
def _bit_and(args: RuleArgs) -> Value:
    """x & mask: never above a non-negative mask."""
    x = args.interval()
    mask = args.integer(0, 'mask')
    if mask >= 0:
        hi = min(x.hi, mask) if x.lo >= 0 else mask
        return args.value.evolve(IntervalState(0, hi))
    if x.lo >= 0:
        return args.value.evolve(IntervalState(0, x.hi))
    args.note("negative mask over a possibly negative value")
    return args.value.evolve(IntervalState.top())


def _bitwise_constant(args: RuleArgs, is_or: bool) -> Value:
    x = args.interval()
    k = args.integer(0, 'k')
    if x.lo < 0 or k < 0 or not x.bounded_above:
        args.note("operands not known to be non-negative and bounded; result unbounded")
        return args.value.evolve(IntervalState.top())
    bits = max(int(x.hi).bit_length(), k.bit_length())
    lo = max(x.lo, k) if is_or else 0
    return args.value.evolve(IntervalState(lo, 2 ** bits - 1))


@rule('bit_xor', 'interval')
def _bit_xor(args: RuleArgs) -> Value:
    return _bitwise_constant(args, is_or=False)


@rule('bit_or', 'interval')
def _bit_or(args: RuleArgs) -> Value:
    return _bitwise_constant(args, is_or=True)


@rule('shift_right', 'interval')
def _shift_right(args: RuleArgs) -> Value:
    """Arithmetic shift: floor division by 2**n."""
    x = args.interval()
    n = args.integer(0, 'n')
    if n < 0:
        raise RuleError(f"negative shift {n}")
    d = 2 ** n
    return args.value.evolve(IntervalState(_floor_div(x.lo, d), _floor_div(x.hi, d)))


@rule('unsigned', 'interval')
def _unsigned(args: RuleArgs) -> Value:
    """Reinterpret as unsigned: [0, 2**width - 1]."""
    x = args.interval()
    width = args.option('width') or args.settings.width_of(args.value.kind) or 32
    top = 2 ** int(width) - 1
    if x.lo >= 0 and x.hi <= top:
        return args.value
    return args.value.evolve(IntervalState(0, top))


@rule('add', 'interval')
def _add(args: RuleArgs) -> Value:
    x = _clipped(args, args.interval())
    y = _clipped(args, args.other_interval('k'))
    return args.value.evolve(_fit(args, IntervalState(x.lo + y.lo, x.hi + y.hi)))


@rule('sub', 'interval')
def _sub(args: RuleArgs) -> Value:
    x = _clipped(args, args.interval())
    y = _clipped(args, args.other_interval('k'))
    return args.value.evolve(_fit(args, IntervalState(x.lo - y.hi, x.hi - y.lo)))


@rule('mul', 'interval')
def _mul_rule(args: RuleArgs) -> Value:
    x = _clipped(args, args.interval())
    y = _clipped(args, args.other_interval('k'))
    corners = [_mul(a, b) for a in (x.lo, x.hi) for b in (y.lo, y.hi)]
    return args.value.evolve(_fit(args, IntervalState(min(corners), max(corners))))


@rule('div', 'interval')
def _div(args: RuleArgs) -> Value:
    """Division truncating toward zero."""
    x = args.interval()
    y = args.other_interval('k')
    if y.lo <= 0 <= y.hi:
        raise RuleError(f"divisor {y} may be zero")
    kind = args.value.kind
    corners = [q for q in (_trunc_div(a, b, kind) for a in (x.lo, x.hi) for b in (y.lo, y.hi))
               if q is not None]
    return args.value.evolve(IntervalState(min(corners), max(corners)))


@rule('enum_value', 'interval')
def _enum_value(args: RuleArgs) -> Value:
    """Cast an enum member (or any number) to its Integer value."""
    x = args.interval()
    return Value(ValueKind.INTEGER, x, args.value.unknown_reason)


@rule('constant', 'interval')
def _constant(args: RuleArgs) -> Value:
    """Assign a compile-time constant, as in `if (x > Max) x = Max;`.

    A text literal keeps nothing of the input, so its domain has one member.
    """
    v = args.value
    if isinstance(v.state, TextState):
        literal = args.operand(0, 'k')
        args.note(f"replaced by the literal {literal!r}")
        return Value(ValueKind.TEXT, TextState.of(LossyDerived(1)), v.unknown_reason)
    args.interval()
    k = args.number(0, 'k')
    return args.value.evolve(IntervalState.exact(k))


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------

def _digits_range(tags: Iterable[Validated]) -> Optional[IntervalState]:
    best = None
    for tag in tags:
        if tag.max_length is None or not tag.charset:
            continue
        n = tag.max_length
        if tag.charset <= DIGITS:
            rng = IntervalState(0, 10 ** n - 1)
        elif tag.charset <= DIGITS | {'-', '+'}:
            rng = IntervalState(-(10 ** (n - 1) - 1) if n > 1 else 0, 10 ** n - 1)
        else:
            continue
        best = rng if best is None else (best.meet(rng) or best)
    return best


def _parse_number(args: RuleArgs, kind: ValueKind) -> Value:
    v = args.value
    if v.kind.is_interval:
        return Value(kind, v.interval, v.unknown_reason)
    if not v.kind.is_text:
        raise RuleError(f"cannot parse a number from {v.kind.value}")
    rng = _digits_range(v.text.tags_of(Validated)) if kind is not ValueKind.FLOAT else None
    if rng is None:
        return Value(kind, IntervalState.top(), v.unknown_reason)
    args.note(f"validated numeral parses to {rng}")
    machine = args.settings.machine_range(kind)
    if machine is not None:
        rng = rng.meet(machine) or machine
    return Value(kind, rng, v.unknown_reason)


@rule('parse_int', 'conversion')
def _parse_int(args: RuleArgs) -> Value:
    return _parse_number(args, ValueKind.INTEGER)


@rule('parse_long', 'conversion')
def _parse_long(args: RuleArgs) -> Value:
    return _parse_number(args, ValueKind.LONG_INTEGER)


@rule('parse_double', 'conversion')
def _parse_double(args: RuleArgs) -> Value:
    return _parse_number(args, ValueKind.FLOAT)


@rule('exists', 'conversion')
@rule('matches', 'conversion')
@rule('parse_bool', 'conversion')
def _to_boolean(args: RuleArgs) -> Value:
    return Value(ValueKind.BOOLEAN, IntervalState(0, 1), args.value.unknown_reason)


@rule('enum_parse', 'conversion')
def _enum_parse(args: RuleArgs) -> Value:
    """Text to enum member; failed parses fall back to the default member 0."""
    members = args.operand(0, 'enum')
    if not isinstance(members, dict) or not members:
        raise RuleError("enum_parse needs an enum operand")
    values = list(members.values())
    return Value(ValueKind.ENUM_MEMBER, IntervalState(min(0, min(values)), max(values)),
                 args.value.unknown_reason)


@rule('text_length', 'conversion')
@rule('array_length', 'conversion')
def _length_of(args: RuleArgs) -> Value:
    return Value(ValueKind.INTEGER, IntervalState(0, POS_INF), args.value.unknown_reason)


@rule('checksum', 'conversion')
def _checksum(args: RuleArgs) -> Value:
    return Value(ValueKind.INTEGER, IntervalState(0, 9), args.value.unknown_reason)


def _numeral_length(x: IntervalState) -> Optional[int]:
    if not (x.bounded_above and x.bounded_below):
        return None
    widest = max(len(str(int(x.lo))), len(str(int(x.hi))))
    return widest


def _render(args: RuleArgs, numeric_class: str) -> Value:
    v = args.value
    reason = v.unknown_reason
    if v.kind is ValueKind.TEXT:
        return v
    if v.kind is ValueKind.GUID:
        tag = Validated('guid', args.engine.charset('guid'), 36)
        return Value(ValueKind.TEXT, TextState.of(tag), reason)
    if v.kind in (ValueKind.BOOLEAN, ValueKind.ENUM_MEMBER):
        return Value(ValueKind.TEXT, TextState.of(Whitelisted()), reason)
    if v.kind is ValueKind.FLOAT:
        numeric_class = 'decimal'
    max_len = _numeral_length(v.interval) if numeric_class == 'numeric' else None
    tag = Validated(numeric_class, args.engine.charset(numeric_class), max_len)
    return Value(ValueKind.TEXT, TextState.of(tag), reason)


@rule('to_text', 'conversion')
def _to_text(args: RuleArgs) -> Value:
    return _render(args, 'numeric')


@rule('format_number', 'conversion')
def _format_number(args: RuleArgs) -> Value:
    return _render(args, 'formatted_number')


# ---------------------------------------------------------------------------
# Text rules
# ---------------------------------------------------------------------------

def _with_tags(args: RuleArgs, *tags) -> Value:
    v = args.text_value()
    return Value(ValueKind.TEXT, v.text.with_tags(*tags), v.unknown_reason)


_HTML_TAGS = (EncodedFor(EncodingContext.HTML_BODY), EncodedFor(EncodingContext.HTML_ATTRIBUTE))


@rule('html_attribute_encode', 'text')
@rule('html_encode', 'text')
def _html_encode(args: RuleArgs) -> Value:
    """Escapes < > " ' & for both HTML contexts."""
    return _with_tags(args, *_HTML_TAGS)


@rule('custom_escape', 'text')
def _custom_escape(args: RuleArgs) -> Value:
    """Hand-written escaper; credited only for the characters it covers."""
    covers = args.option('covers')
    if covers is None:
        covers = args.operand(0, 'covers')
    covers = frozenset(''.join(covers) if isinstance(covers, (list, tuple)) else str(covers))
    if HTML_METACHARACTERS <= covers:
        return _with_tags(args, *_HTML_TAGS)
    if frozenset('<>&') <= covers:
        args.note("quotes not escaped; body context only")
        return _with_tags(args, EncodedFor(EncodingContext.HTML_BODY))
    missing = ''.join(sorted(HTML_METACHARACTERS - covers))
    args.note(f"escaper misses {missing!r}; no credit")
    return args.text_value()


@rule('url_encode', 'text')
def _url_encode(args: RuleArgs) -> Value:
    return _with_tags(args, EncodedFor(EncodingContext.URL))


@rule('js_string_encode', 'text')
def _js_string_encode(args: RuleArgs) -> Value:
    return _with_tags(args, EncodedFor(EncodingContext.JS_STRING))


@rule('base64_encode', 'text')
def _base64_encode(args: RuleArgs) -> Value:
    return _with_tags(args, Validated('base64', args.engine.charset('base64')))


@rule('hex_encode', 'text')
def _hex_encode(args: RuleArgs) -> Value:
    return _with_tags(args, Validated('hex', args.engine.charset('hex')))


@rule('hash', 'text')
def _hash(args: RuleArgs) -> Value:
    """One-way hash: nothing of the original survives."""
    v = args.text_value()
    return Value(ValueKind.TEXT, v.text.replaced_by(Hashed()), v.unknown_reason)


@rule('mask', 'text')
def _mask(args: RuleArgs) -> Value:
    """Keep only the last n characters visible."""
    n = args.integer(0, 'visible')
    if n < 0:
        raise RuleError(f"negative visible length {n}")
    return _with_tags(args, Masked(n))


_LOSSY_DEFAULT_DOMAIN = {
    'length': POS_INF,
    'exists_text': 2,
    'domain_suffix': POS_INF,
    'structural_prefix': 1000,
    'categorize': 16,
    'initials': 26 * 26,
}


def _lossy_reduction(name: str) -> Callable[[RuleArgs], Value]:
    def apply(args: RuleArgs) -> Value:
        v = args.text_value()
        size = _as_number(args.option('domain_size', _LOSSY_DEFAULT_DOMAIN[name]), 'domain_size')
        return Value(ValueKind.TEXT, v.text.replaced_by(LossyDerived(size)), v.unknown_reason)
    apply.__doc__ = f"{name}: non-invertible reduction of the input."
    return apply


for _name in _LOSSY_DEFAULT_DOMAIN:
    rule(_name, 'text')(_lossy_reduction(_name))


@rule('identity', 'text')
def _identity(args: RuleArgs) -> Value:
    return args.value


@rule('split', 'text')
@rule('trim', 'text')
@rule('substring', 'text')
def _pass_through(args: RuleArgs) -> Value:
    """Output characters are a subset of the input's; tags carry over."""
    return args.text_value()


def _case_mapped(args: RuleArgs, mapping: Callable[[str], str]) -> Value:
    v = args.text_value()
    tags = []
    for tag in v.text.tags:
        if isinstance(tag, Validated):
            charset = frozenset(mapping(c) for c in tag.charset)
            tag = Validated(tag.char_class, charset, tag.max_length)
        tags.append(tag)
    return Value(v.kind, TextState(frozenset(tags)), v.unknown_reason)


@rule('to_upper', 'text')
def _to_upper(args: RuleArgs) -> Value:
    return _case_mapped(args, str.upper)


@rule('to_lower', 'text')
def _to_lower(args: RuleArgs) -> Value:
    return _case_mapped(args, str.lower)


def _concat_pieces(args: RuleArgs) -> List[Tuple[Optional[FrozenSet[str]], Optional[int]]]:
    """(characters, longest length) of every non-text piece; None when unknown."""
    pieces = []
    for operand in args.operands:
        try:
            literal = str(operand.resolve(args.tables))
        except NonConstantOperand:
            pieces.append((None, None))
            continue
        pieces.append((frozenset(literal), len(literal)))
    for other in args.extra_inputs:
        if other.kind.is_interval:
            pieces.append((args.engine.charset('numeric'), _numeral_length(other.interval)))
    return pieces


def _concat_validated(tag: Validated, others: List[TextState], pieces) -> Optional[Validated]:
    length = tag.max_length
    for state in others:
        match = next((t for t in state.tags_of(Validated)
                      if t.char_class == tag.char_class and t.charset == tag.charset), None)
        if match is None:
            return None
        length = None if length is None or match.max_length is None else length + match.max_length
    for chars, n in pieces:
        if chars is None or not chars <= tag.charset:
            return None
        length = None if length is None or n is None else length + n
    return Validated(tag.char_class, tag.charset, length)


def _concat_masked(tag: Masked, others: List[TextState]) -> Optional[Masked]:
    visible = tag.visible_suffix_len
    for state in others:
        masks = state.tags_of(Masked)
        if not masks:
            return None
        visible += min(m.visible_suffix_len for m in masks)
    return Masked(visible)


def _concat_lossy(tag: LossyDerived, others: List[TextState]) -> Optional[LossyDerived]:
    size = tag.output_domain_size
    for state in others:
        derived = state.tags_of(LossyDerived)
        if not derived:
            return None
        size = _mul(size, max(d.output_domain_size for d in derived))
    return LossyDerived(size)


@rule('concat', 'text')
def _concat(args: RuleArgs) -> Value:
    """Text inputs must all carry a tag; lengths and visible counts add up.

    Literal and numeric pieces cannot carry markup or personal data, so they
    only matter to Validated: their characters must stay inside the alphabet.
    """
    v = args.text_value()
    others = [o.text for o in args.extra_inputs if isinstance(o.state, TextState)]
    pieces = _concat_pieces(args)
    tags = set()
    for tag in v.text.tags:
        if isinstance(tag, Validated):
            tag = _concat_validated(tag, others, pieces)
        elif isinstance(tag, Masked):
            tag = _concat_masked(tag, others)
        elif isinstance(tag, LossyDerived):
            tag = _concat_lossy(tag, others)
        elif not all(tag in state.tags for state in others):
            tag = None
        if tag is not None:
            tags.add(tag)
    return Value(ValueKind.TEXT, TextState(frozenset(tags)), args.unknown_reason())


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def _comparison(args: RuleArgs, taken: IntervalState, untaken: IntervalState) -> GuardResult:
    args.interval()
    return _narrowed(args, taken, 'taken'), _narrowed(args, untaken, 'untaken')


@rule('guard_gt', 'guard', guard=True)
def _guard_gt(args: RuleArgs) -> GuardResult:
    k = args.number(0)
    step = _step(args.value.kind)
    return _comparison(args, IntervalState.at_least(k + step), IntervalState.at_most(k))


@rule('guard_ge', 'guard', guard=True)
def _guard_ge(args: RuleArgs) -> GuardResult:
    k = args.number(0)
    step = _step(args.value.kind)
    return _comparison(args, IntervalState.at_least(k), IntervalState.at_most(k - step))


@rule('guard_lt', 'guard', guard=True)
def _guard_lt(args: RuleArgs) -> GuardResult:
    k = args.number(0)
    step = _step(args.value.kind)
    return _comparison(args, IntervalState.at_most(k - step), IntervalState.at_least(k))


@rule('guard_le', 'guard', guard=True)
def _guard_le(args: RuleArgs) -> GuardResult:
    k = args.number(0)
    step = _step(args.value.kind)
    return _comparison(args, IntervalState.at_most(k), IntervalState.at_least(k + step))


@rule('guard_eq', 'guard', guard=True)
def _guard_eq(args: RuleArgs) -> GuardResult:
    x = args.interval()
    k = args.number(0)
    step = _step(args.value.kind)
    untaken = None
    if x.lo == k:
        untaken = IntervalState.at_least(k + step)
    elif x.hi == k:
        untaken = IntervalState.at_most(k - step)
    return _narrowed(args, IntervalState.exact(k), 'taken'), _narrowed(args, untaken, 'untaken')


@rule('guard_between', 'guard', guard=True)
def _guard_between(args: RuleArgs) -> GuardResult:
    """lo <= x <= hi, both ends inclusive."""
    x = args.interval()
    lo_k = args.number(0, 'lo')
    hi_k = args.number(1, 'hi')
    if lo_k > hi_k:
        args.note(f"empty range [{lo_k}, {hi_k}]; taken branch infeasible")
        return None, args.value
    step = _step(args.value.kind)
    if x.lo >= lo_k and x.hi <= hi_k:
        args.note("value always in range; untaken branch infeasible")
        return args.value, None
    if x.lo >= lo_k:
        untaken = IntervalState.at_least(hi_k + step)
    elif x.hi <= hi_k:
        untaken = IntervalState.at_most(lo_k - step)
    else:
        untaken = None
    return (_narrowed(args, IntervalState(lo_k, hi_k), 'taken'),
            _narrowed(args, untaken, 'untaken'))


@rule('guard_regex', 'guard', guard=True)
def _guard_regex(args: RuleArgs) -> GuardResult:
    """Regex match: proves an alphabet for text, a digit range for numbers."""
    pattern = args.operand(0, 'pattern')
    if not isinstance(pattern, str):
        raise RuleError(f"pattern must be text, got {pattern!r}")
    shape = analyze_pattern(pattern, full_match=bool(args.option('full_match', False)))
    v = args.value
    if v.kind.is_interval:
        rng = shape.numeric_range()
        if rng is None:
            args.note(f"{pattern!r} does not bound the digit count; no narrowing")
            return v, v
        return _narrowed(args, rng, 'taken'), v
    v = args.text_value()
    if not shape.proves_alphabet:
        args.note(f"{pattern!r} proves nothing ({shape_summary(shape)})")
        return v, v
    max_len = None if shape.max_length == POS_INF else int(shape.max_length)
    tag = Validated(args.option('char_class') or f"/{pattern}/", shape.charset, max_len)
    return Value(v.kind, v.text.with_tags(tag), v.unknown_reason), v


@rule('guard_whitelist', 'guard', guard=True)
def _guard_whitelist(args: RuleArgs) -> GuardResult:
    """Membership in a fixed set."""
    v = args.value
    entries = args.operand(0, 'whitelist') if args.operands else None
    if v.kind.is_interval:
        if not entries:
            args.note("no whitelist entries to narrow with")
            return v, v
        numbers = [_as_number(e, 'whitelist') for e in entries]
        return _narrowed(args, IntervalState(min(numbers), max(numbers)), 'taken'), v
    v = args.text_value()
    return Value(v.kind, v.text.with_tags(Whitelisted()), v.unknown_reason), v


@rule('guard_enum', 'guard', guard=True)
def _guard_enum(args: RuleArgs) -> GuardResult:
    """Enum.TryParse / Enum.IsDefined succeeded."""
    v = args.value
    if v.kind.is_interval:
        members = args.operand(0, 'enum') if args.operands else None
        if not isinstance(members, dict) or not members:
            args.note("enum members unknown; no narrowing")
            return v, v
        values = list(members.values())
        return _narrowed(args, IntervalState(min(values), max(values)), 'taken'), v
    v = args.text_value()
    return Value(v.kind, v.text.with_tags(Whitelisted()), v.unknown_reason), v


@rule('guard_guid', 'guard', guard=True)
def _guard_guid(args: RuleArgs) -> GuardResult:
    v = args.text_value()
    tags = (Whitelisted(), Validated('guid', args.engine.charset('guid'), 36))
    return Value(v.kind, v.text.with_tags(*tags), v.unknown_reason), v
