#!/usr/bin/env python3
"""
flowsafe - classify untrusted-data flows as Safe, Unsafe or Unknown.

Loads YAML scenario documents, propagates each flow graph, judges every sink
and scores the verdicts against the expected labels.

Usage:
    flowsafe scenarios/                       # Whole corpus, text report
    flowsafe scenarios/loop -f json -o out    # JSON report to a file
    flowsafe doc.yml --trace                  # Show the per-node trace
    flowsafe scenarios/ --check               # Exit 1 on any mismatch
"""

import argparse
import json
import logging
import os
import sys
import time
from typing import List, Optional

import yaml

from . import __version__
from .classifier import FlowClassifier
from .report import Report, format_text, run_documents
from .rule_engine import RuleEngine, get_rule_engine
from .scenario_loader import ScenarioError, ScenarioLoader

# ── Color helpers (auto-disable on non-TTY) ──────────────────────────────────

_COLOR_ENABLED = hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


def _c(code: str, text: str) -> str:
    if not _COLOR_ENABLED:
        return text
    return f"\033[{code}m{text}\033[0m"

def _red(t):    return _c("31", t)
def _green(t):  return _c("32", t)
def _yellow(t): return _c("33", t)
def _cyan(t):   return _c("36", t)
def _bold(t):   return _c("1", t)

def _verdict_color(text: str) -> str:
    """Verdict colors for stdout, which may be a TTY when stderr is not."""
    colors = {'Safe': "32", 'Unsafe': "31;1", 'Unknown': "33"}
    code = colors.get(text.strip(), "0")
    return f"\033[{code}m{text}\033[0m"


# ── Progress output (stderr) ─────────────────────────────────────────────────

_quiet = False

def _progress(msg: str, prefix: str = "[*]"):
    """Print progress/status to stderr (not mixed with results)."""
    if _quiet:
        return
    print(f"{_cyan(prefix)} {msg}", file=sys.stderr)

def _success(msg: str):
    _progress(msg, _green("[+]"))

def _warn(msg: str):
    _progress(msg, _yellow("[!]"))

def _error(msg: str):
    print(f"{_red('[ERROR]')} {msg}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='flowsafe',
        description='flowsafe - flow-safety classifier for untrusted data',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Verdicts:
  Safe      every path to the sink satisfies its safety predicate
  Unsafe    some path violates it
  Unknown   a rule was missing or failed; never treated as safe

Examples:
  %(prog)s scenarios/                        Classify the whole corpus
  %(prog)s scenarios/xss -v                  Verbose single directory
  %(prog)s doc.yml --trace                   Show per-node states
  %(prog)s scenarios/ -f json -o report.json Machine-readable report
  %(prog)s scenarios/ --check                Fail on label mismatches

Output Formats:
  text   Console output with metrics [DEFAULT]
  json   Machine-readable for CI pipelines
        '''
    )

    parser.add_argument('targets', nargs='+', help='Scenario files or directories')
    parser.add_argument('-o', '--output', help='Output file path')
    parser.add_argument('-f', '--format', choices=['text', 'json'], default='text',
                        help='Output format (default: text)')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Debug logging of every rule application')
    parser.add_argument('-q', '--quiet', action='store_true',
                        help='Suppress progress output (results only)')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level (overrides -v)')
    parser.add_argument('--trace', action='store_true',
                        help='Include the per-node trace of every verdict')
    parser.add_argument('--check', action='store_true',
                        help='Exit 1 when a verdict disagrees with its label')

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument('--rules-dir', help='Directory with rule YAML files')
    config_group.add_argument('--workers', type=int,
                              help='Worker threads for classification')
    config_group.add_argument('--loop-budget', type=int,
                              help='Iteration budget for LoopBound sinks without one')
    config_group.add_argument('--signed-remainder', action='store_true',
                              help='Model x %% k as [-(k-1), k-1] for negative x')

    parser.add_argument('--version', action='version', version=f'flowsafe v{__version__}')
    return parser


def _configure_logging(args):
    level = args.log_level or ('DEBUG' if args.verbose else 'WARNING')
    logging.basicConfig(level=getattr(logging, level),
                        format='%(levelname)s %(name)s: %(message)s')


def _render(report: Report, args, color: bool) -> str:
    if args.format == 'json':
        return json.dumps(report.to_dict(trace=args.trace), indent=2)
    return format_text(report, trace=args.trace, paint=_verdict_color if color else None)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    global _quiet

    args = build_parser().parse_args(argv)
    _quiet = args.quiet
    _configure_logging(args)

    if args.workers is not None and args.workers < 1:
        _error("--workers must be at least 1")
        return 2
    if args.loop_budget is not None and args.loop_budget < 0:
        _error("--loop-budget must not be negative")
        return 2

    # ── Rules ────────────────────────────────────────────────────────────
    try:
        if args.rules_dir:
            if not os.path.isdir(args.rules_dir):
                _error(f"Rules directory not found: {args.rules_dir}")
                return 2
            engine = RuleEngine(args.rules_dir)
        else:
            engine = get_rule_engine()
    except (yaml.YAMLError, OSError) as e:
        _error(f"Could not load rules: {e}")
        return 2

    settings = engine.settings.with_overrides(
        default_loop_budget=args.loop_budget,
        signed_remainder=True if args.signed_remainder else None,
        max_workers=args.workers,
    )
    _success(f"Rules loaded: {len(engine.signatures)} signatures, {len(engine.sinks)} sinks")

    # ── Scenarios ────────────────────────────────────────────────────────
    try:
        documents = ScenarioLoader(engine).load_targets(args.targets)
    except (ScenarioError, OSError) as e:
        _error(str(e))
        return 2
    total = sum(len(doc.scenarios) for doc in documents)
    if not total:
        _warn("No scenarios found")
    _progress(f"Loaded {total} scenarios from {len(documents)} documents")

    # ── Classify ─────────────────────────────────────────────────────────
    start = time.time()
    classifier = FlowClassifier(engine, settings=settings)
    report = run_documents(classifier, documents, max_workers=settings.max_workers)
    elapsed = time.time() - start
    _success(f"Classified {len(report.cases)} sinks in {elapsed:.2f}s")

    # ── Output ───────────────────────────────────────────────────────────
    if args.output:
        try:
            with open(args.output, 'w', encoding='utf-8') as f:
                f.write(_render(report, args, color=False))
                f.write("\n")
        except OSError as e:
            _error(f"Could not write {args.output}: {e}")
            return 2
        _success(f"Results saved to: {args.output}")
    else:
        print(_render(report, args, color=sys.stdout.isatty()))

    metrics = report.metrics
    _progress(f"Precision: {metrics.precision:.1%} | Recall: {metrics.recall:.1%} | "
              f"Mismatches: {len(report.mismatches)}")

    if args.check and report.mismatches:
        for case in report.mismatches:
            _warn(f"{_bold(case.name)}: {case.verdict} (expected {case.expected})")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
