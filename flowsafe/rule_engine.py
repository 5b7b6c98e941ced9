#!/usr/bin/env python3
"""
flowsafe Rule Engine - Single source of truth for rule data.
Loads signature aliases, sink contexts, char classes, constant tables and
settings from YAML.
"""

import logging
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Union

import yaml

from .lattice import IntervalState, ValueKind
from .pattern_shape import charset_from_spec

logger = logging.getLogger(__name__)


@dataclass
class SignatureDef:
    name: str
    family: str  # interval, conversion, text, guard
    aliases: List[str] = field(default_factory=list)
    description: str = ""


@dataclass
class SinkDef:
    name: str
    description: str = ""
    cwe: str = ""
    encoding: Optional[str] = None
    forbidden_chars: FrozenSet[str] = frozenset()
    allowed_chars: Optional[FrozenSet[str]] = None
    aliases: List[str] = field(default_factory=list)

    def admits_alphabet(self, charset: FrozenSet[str]) -> bool:
        """True when every character of `charset` is harmless in this sink."""
        if self.allowed_chars is not None:
            return charset <= self.allowed_chars
        return not (charset & self.forbidden_chars)


@dataclass
class CharClassDef:
    name: str
    spec: str
    charset: FrozenSet[str]


@dataclass
class Settings:
    default_loop_budget: int = 1000
    signed_remainder: bool = False
    sensitive_log_max_visible: int = 4
    max_workers: int = 4
    widths: Dict[str, int] = field(default_factory=lambda: {
        'Integer': 32, 'LongInteger': 64})

    def width_of(self, kind: ValueKind) -> Optional[int]:
        return self.widths.get(kind.value)

    def machine_range(self, kind: ValueKind) -> Optional[IntervalState]:
        """Signed two's-complement range of `kind`, None when unbounded."""
        width = self.width_of(kind)
        if width is None:
            return None
        return IntervalState(-(2 ** (width - 1)), 2 ** (width - 1) - 1)

    def with_overrides(self, **overrides) -> 'Settings':
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


@dataclass
class ConstantTables:
    """Compile-time constants, enums and whitelists visible to rules."""
    constants: Dict[str, Union[float, str]] = field(default_factory=dict)
    enums: Dict[str, Dict[str, int]] = field(default_factory=dict)
    whitelists: Dict[str, List[str]] = field(default_factory=dict)

    def merged(self, other: Optional['ConstantTables']) -> 'ConstantTables':
        """Tables of `other` layered over these."""
        if other is None:
            return self
        return ConstantTables(
            constants={**self.constants, **other.constants},
            enums={**self.enums, **other.enums},
            whitelists={**self.whitelists, **other.whitelists},
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConstantTables':
        constants = {}
        for name, value in (data.get('constants') or {}).items():
            if isinstance(value, bool) or not isinstance(value, (int, float, str)):
                logger.warning("Constant %s is not a number or text (%r); ignored", name, value)
                continue
            constants[str(name)] = value
        enums = {}
        for name, members in (data.get('enums') or {}).items():
            if isinstance(members, list):
                # bare member list: ordinals 0..n-1
                members = {str(m): i for i, m in enumerate(members)}
            if not isinstance(members, dict):
                logger.warning("Enum %s is not a mapping; ignored", name)
                continue
            enums[str(name)] = {str(k): int(v) for k, v in members.items()}
        whitelists = {}
        for name, entries in (data.get('whitelists') or {}).items():
            if not isinstance(entries, list):
                logger.warning("Whitelist %s is not a list; ignored", name)
                continue
            whitelists[str(name)] = [str(e) for e in entries]
        return cls(constants=constants, enums=enums, whitelists=whitelists)


class RuleEngine:
    """Loads and provides access to all YAML-defined rule data."""

    def __init__(self, rules_dir: Optional[str] = None):
        if rules_dir is None:
            rules_dir = str(Path(__file__).parent / 'rules')
        self.rules_dir = rules_dir
        self.signatures: Dict[str, SignatureDef] = {}
        self.sinks: Dict[str, SinkDef] = {}
        self.char_classes: Dict[str, CharClassDef] = {}
        self.constants = ConstantTables()
        self.settings = Settings()
        self._aliases: Dict[str, str] = {}
        self._sink_aliases: Dict[str, str] = {}
        self._load_all()

    def _load_all(self):
        """Load all YAML rule files."""
        self._load_char_classes()
        self._load_signatures()
        self._load_sinks()
        self._load_constants()
        self._load_settings()
        logger.info("Loaded %d signatures (%d aliases), %d sinks, %d char classes from %s",
                    len(self.signatures), len(self._aliases), len(self.sinks),
                    len(self.char_classes), self.rules_dir)

    def _load_yaml(self, filename: str) -> Any:
        """Load a YAML file from the rules directory."""
        filepath = os.path.join(self.rules_dir, filename)
        if not os.path.exists(filepath):
            logger.debug("Rule file %s not found; using empty table", filepath)
            return {}
        with open(filepath, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}

    def _load_char_classes(self):
        data = self._load_yaml('char_classes.yml')
        for name, spec in data.items():
            self.char_classes[name] = CharClassDef(
                name=name,
                spec=str(spec),
                charset=charset_from_spec(str(spec)),
            )

    def _load_signatures(self):
        data = self._load_yaml('signatures.yml')
        for family, entries in data.items():
            if not isinstance(entries, list):
                continue
            for entry in entries:
                if not isinstance(entry, dict):
                    continue
                name = entry.get('name', '')
                sig = SignatureDef(
                    name=name,
                    family=family,
                    aliases=[str(a) for a in entry.get('aliases', [])],
                    description=entry.get('description', ''),
                )
                self.signatures[name] = sig
                for alias in sig.aliases:
                    key = _normalize_call(alias)
                    previous = self._aliases.get(key)
                    if previous is not None and previous != name:
                        logger.warning("Alias %r maps to both %s and %s; keeping %s",
                                       alias, previous, name, previous)
                        continue
                    self._aliases[key] = name

    def _load_sinks(self):
        data = self._load_yaml('sinks.yml')
        for name, sink in data.items():
            if not isinstance(sink, dict):
                continue
            allowed = sink.get('allowed_chars')
            self.sinks[name] = SinkDef(
                name=name,
                description=sink.get('description', ''),
                cwe=sink.get('cwe', ''),
                encoding=sink.get('encoding'),
                forbidden_chars=frozenset(sink.get('forbidden_chars', '')),
                allowed_chars=charset_from_spec(allowed) if allowed else None,
                aliases=[str(a) for a in sink.get('aliases', [])],
            )
            for alias in self.sinks[name].aliases:
                self._sink_aliases[_normalize_call(alias)] = name

    def _load_constants(self):
        self.constants = ConstantTables.from_dict(self._load_yaml('constants.yml'))

    def _load_settings(self):
        data = self._load_yaml('settings.yml')
        defaults = Settings()
        self.settings = Settings(
            default_loop_budget=int(data.get('default_loop_budget', defaults.default_loop_budget)),
            signed_remainder=bool(data.get('signed_remainder', defaults.signed_remainder)),
            sensitive_log_max_visible=int(data.get('sensitive_log_max_visible',
                                                   defaults.sensitive_log_max_visible)),
            max_workers=int(data.get('max_workers', defaults.max_workers)),
            widths={**defaults.widths, **(data.get('widths') or {})},
        )

    # ==================== Query Methods ====================

    def resolve_signature(self, call: str) -> str:
        """Canonical rule name for a call name; unknown names come back as-is."""
        key = _normalize_call(call)
        if key in self.signatures:
            return key
        return self._aliases.get(key, key)

    def get_signature(self, name: str) -> Optional[SignatureDef]:
        return self.signatures.get(self.resolve_signature(name))

    def get_signatures(self, family: Optional[str] = None) -> Dict[str, SignatureDef]:
        if family is None:
            return self.signatures
        return {k: v for k, v in self.signatures.items() if v.family == family}

    def get_sink(self, name: str) -> Optional[SinkDef]:
        return self.sinks.get(name)

    def sink_for_call(self, call: str) -> Optional[SinkDef]:
        """Sink definition for a sink call name like 'Response.Write'."""
        name = self._sink_aliases.get(_normalize_call(call))
        return self.sinks.get(name) if name else None

    def charset(self, name: str) -> FrozenSet[str]:
        cc = self.char_classes.get(name)
        if cc is None:
            raise KeyError(f"unknown char class: {name}")
        return cc.charset

    def is_known_signature(self, call: str) -> bool:
        return self.resolve_signature(call) in self.signatures


_WS = re.compile(r'\s+')


def _normalize_call(call: str) -> str:
    """Strip surrounding whitespace and collapse inner runs to one space."""
    return _WS.sub(' ', str(call).strip())


# Module-level singleton for convenience
_default_engine: Optional[RuleEngine] = None

def get_rule_engine(rules_dir: Optional[str] = None) -> RuleEngine:
    """Get or create the default RuleEngine singleton."""
    global _default_engine
    if _default_engine is None or rules_dir is not None:
        _default_engine = RuleEngine(rules_dir)
    return _default_engine
