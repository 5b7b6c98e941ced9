#!/usr/bin/env python3
"""
Regex shape analysis for validation guards.

A regex guard only proves something when every character the pattern can
match is known (no '.', no negated class) and the pattern is anchored at
both ends. This module computes that alphabet together with the match
length range, over the ASCII subset of regex syntax that validation code
actually uses: literals, escapes, character classes, groups, alternation
and quantifiers.
"""

import logging
import string
from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple

from .lattice import IntervalState, POS_INF

logger = logging.getLogger(__name__)

DIGITS = frozenset(string.digits)
WORD = frozenset(string.ascii_letters + string.digits + '_')
SPACE = frozenset(' \t\n\r\f\v')

_CLASS_ESCAPES = {'d': DIGITS, 'w': WORD, 's': SPACE}
_LITERAL_ESCAPES = {'t': '\t', 'n': '\n', 'r': '\r', 'f': '\f', 'v': '\v',
                    'a': '\a', 'e': '\x1b'}
_HEX_WIDTH = {'x': 2, 'u': 4}


class PatternParseError(ValueError):
    pass


@dataclass(frozen=True)
class PatternShape:
    """What a full match of a pattern can look like.

    Attributes:
        anchored:   True if the pattern must match the whole input.
        charset:    Every character a match can contain, or None when the
                    alphabet is unbounded.
        min_length: Shortest possible match.
        max_length: Longest possible match (POS_INF for '+', '*', '{m,}').
    """
    anchored: bool
    charset: Optional[FrozenSet[str]]
    min_length: float = 0
    max_length: float = POS_INF

    @property
    def proves_alphabet(self) -> bool:
        return self.anchored and self.charset is not None

    @property
    def digits_only(self) -> bool:
        return self.proves_alphabet and bool(self.charset) and self.charset <= DIGITS

    def numeric_range(self) -> Optional[IntervalState]:
        """Integer range of a matching numeral, when the digit count is bounded."""
        if not self.proves_alphabet or self.max_length == POS_INF or not self.charset:
            return None
        n = int(self.max_length)
        if self.charset <= DIGITS:
            return IntervalState(0, 10 ** n - 1)
        if self.charset <= DIGITS | {'-', '+'}:
            return IntervalState(-(10 ** n - 1), 10 ** n - 1)
        return None


OPAQUE = PatternShape(anchored=False, charset=None)


# (charset, min_len, max_len) for a parsed fragment
_Frag = Tuple[Optional[FrozenSet[str]], float, float]


def _union(a: Optional[FrozenSet[str]], b: Optional[FrozenSet[str]]):
    if a is None or b is None:
        return None
    return a | b


class _Parser:
    def __init__(self, pattern: str):
        self.p = pattern
        self.i = 0

    def peek(self) -> Optional[str]:
        return self.p[self.i] if self.i < len(self.p) else None

    def take(self) -> str:
        if self.i >= len(self.p):
            raise PatternParseError("unexpected end of pattern")
        ch = self.p[self.i]
        self.i += 1
        return ch

    def alternation(self, depth: int) -> Tuple[_Frag, bool]:
        """Parse alternatives up to ')' or end. Returns (fragment, had_bar)."""
        alts = [self.sequence(depth)]
        while self.peek() == '|':
            self.take()
            alts.append(self.sequence(depth))
        charset = alts[0][0]
        lo, hi = alts[0][1], alts[0][2]
        for cs, a_lo, a_hi in alts[1:]:
            charset = _union(charset, cs)
            lo, hi = min(lo, a_lo), max(hi, a_hi)
        return (charset, lo, hi), len(alts) > 1

    def sequence(self, depth: int) -> _Frag:
        charset: Optional[FrozenSet[str]] = frozenset()
        lo: float = 0
        hi: float = 0
        while True:
            ch = self.peek()
            if ch is None or ch == '|' or (ch == ')' and depth > 0):
                break
            if ch == ')':
                raise PatternParseError("unbalanced ')'")
            atom = self.atom(depth)
            if atom is None:
                continue
            a_cs, a_lo, a_hi = self.quantified(atom)
            charset = _union(charset, a_cs)
            lo += a_lo
            hi += a_hi
        return charset, lo, hi

    def atom(self, depth: int) -> Optional[_Frag]:
        ch = self.take()
        if ch == '(':
            lookaround = False
            if self.p.startswith('?:', self.i):
                self.i += 2
            elif self.p.startswith(('?=', '?!'), self.i):
                self.i += 2
                lookaround = True
            elif self.p.startswith(('?<=', '?<!'), self.i):
                self.i += 3
                lookaround = True
            elif self.p.startswith(('?P<', '?<'), self.i):
                self.i = self.p.index('>', self.i) + 1
            frag, _ = self.alternation(depth + 1)
            if self.take() != ')':
                raise PatternParseError("unclosed group")
            if lookaround:
                return None
            return frag
        if ch == '[':
            return self.char_class()
        if ch == '.':
            return None, 1, 1
        if ch == '\\':
            nxt = self.peek()
            if nxt is not None and nxt in 'bB':
                # word boundaries match no characters
                self.take()
                return None
            if nxt is not None and nxt.isdigit():
                # backreference: same characters, unknown length
                self.take()
                return None, 0, POS_INF
            decoded = self.escape()
            if decoded is None:
                return None, 1, 1
            return frozenset(decoded), 1, 1
        if ch in '^$':
            # interior anchors match no characters
            return None
        if ch in '*+?{':
            raise PatternParseError(f"nothing to repeat at {self.i - 1}")
        return frozenset(ch), 1, 1

    def char_class(self) -> _Frag:
        negated = False
        if self.peek() == '^':
            self.take()
            negated = True
        chars = set()
        first = True
        while True:
            ch = self.take()
            if ch == ']' and not first:
                break
            first = False
            if ch == '\\':
                decoded = self.escape()
                if decoded is None:
                    negated = True
                    continue
                if isinstance(decoded, frozenset):
                    chars |= decoded
                    continue
                ch = decoded
            if self.peek() == '-' and self.i + 1 < len(self.p) and self.p[self.i + 1] != ']':
                self.take()
                end = self.take()
                if end == '\\':
                    end = self.escape()
                    if not isinstance(end, str):
                        raise PatternParseError("class escape used as a range end")
                if ord(end) < ord(ch):
                    raise PatternParseError(f"bad range {ch}-{end}")
                chars |= {chr(c) for c in range(ord(ch), ord(end) + 1)}
            else:
                chars.add(ch)
        if negated:
            return None, 1, 1
        return frozenset(chars), 1, 1

    def escape(self):
        r"""Decode the escape after a backslash.

        Returns the literal character, a frozenset for a class escape such as
        \d, or None when the escape can match characters not modelled here
        (\p{...}, \h, \R, \cX, \D and the like).
        """
        esc = self.take()
        if esc in _CLASS_ESCAPES:
            return _CLASS_ESCAPES[esc]
        if esc in _LITERAL_ESCAPES:
            return _LITERAL_ESCAPES[esc]
        if esc in _HEX_WIDTH:
            if esc == 'x' and self.peek() == '{':
                end = self.p.index('}', self.i)
                digits = self.p[self.i + 1:end]
                self.i = end + 1
            else:
                width = _HEX_WIDTH[esc]
                digits = self.p[self.i:self.i + width]
                if len(digits) != width:
                    raise PatternParseError(f"short \\{esc} escape")
                self.i += width
            return chr(int(digits, 16))
        if esc in 'pP':
            if self.peek() == '{':
                self.i = self.p.index('}', self.i) + 1
            else:
                self.take()
            return None
        if esc == 'c':
            self.take()
            return None
        if esc.isalnum():
            return None
        return esc

    def quantified(self, atom: _Frag) -> _Frag:
        cs, lo, hi = atom
        ch = self.peek()
        if ch == '*':
            self.take()
            q_lo, q_hi = 0, POS_INF
        elif ch == '+':
            self.take()
            q_lo, q_hi = 1, POS_INF
        elif ch == '?':
            self.take()
            q_lo, q_hi = 0, 1
        elif ch == '{' and self._looks_like_braces():
            q_lo, q_hi = self.braces()
        else:
            return atom
        # lazy / possessive suffixes do not change the match set
        if self.peek() in ('?', '+'):
            self.take()
        new_hi = 0 if q_hi == 0 else hi * q_hi if hi != 0 else 0
        return cs, lo * q_lo, new_hi

    def _looks_like_braces(self) -> bool:
        end = self.p.find('}', self.i)
        if end < 0:
            return False
        body = self.p[self.i + 1:end]
        return bool(body) and all(c.isdigit() or c == ',' for c in body) and body[0] != ','

    def braces(self) -> Tuple[float, float]:
        end = self.p.index('}', self.i)
        body = self.p[self.i + 1:end]
        self.i = end + 1
        if ',' not in body:
            n = int(body)
            return n, n
        lo_s, hi_s = body.split(',', 1)
        lo = int(lo_s)
        hi = int(hi_s) if hi_s else POS_INF
        if hi < lo:
            raise PatternParseError(f"bad quantifier {{{body}}}")
        return lo, hi


def _strip_anchors(pattern: str) -> Tuple[str, bool, bool]:
    start = end = False
    if pattern.startswith('^'):
        pattern, start = pattern[1:], True
    elif pattern.startswith('\\A'):
        pattern, start = pattern[2:], True
    if pattern.endswith(('\\Z', '\\z')) and not pattern.endswith('\\\\Z'):
        pattern, end = pattern[:-2], True
    elif pattern.endswith('$') and not pattern.endswith('\\$'):
        pattern, end = pattern[:-1], True
    return pattern, start, end


def analyze_pattern(pattern: str, full_match: bool = False) -> PatternShape:
    """Compute the shape of `pattern`.

    Args:
        pattern:    Regex source text.
        full_match: True when the call site matches the whole input
                    (Java's Matcher.matches, Python's re.fullmatch), which
                    anchors the pattern even without ^...$.
    """
    body, start, end = _strip_anchors(pattern)
    parser = _Parser(body)
    try:
        (charset, lo, hi), had_bar = parser.alternation(0)
    except (PatternParseError, IndexError, ValueError) as exc:
        logger.debug("Pattern %r not analyzable: %s", pattern, exc)
        return OPAQUE
    anchored = full_match or (start and end)
    if had_bar and not full_match:
        # ^a|b$ anchors each alternative separately
        anchored = False
    return PatternShape(anchored=anchored, charset=charset,
                        min_length=lo, max_length=hi)


def shape_summary(shape: PatternShape) -> str:
    if shape.charset is None:
        alphabet = 'unbounded'
    else:
        alphabet = ''.join(sorted(shape.charset))
        if len(alphabet) > 24:
            alphabet = alphabet[:21] + '...'
    hi = '+inf' if shape.max_length == POS_INF else str(int(shape.max_length))
    return (f"anchored={shape.anchored} alphabet={alphabet!r} "
            f"length=[{int(shape.min_length)}, {hi}]")


def charset_from_spec(spec: str) -> FrozenSet[str]:
    """Expand a char-class body like 'a-zA-Z0-9_' (no brackets)."""
    parser = _Parser('[' + spec + ']')
    parser.take()
    cs, _, _ = parser.char_class()
    if cs is None:
        raise PatternParseError(f"char class {spec!r} is negated or unbounded")
    return cs

