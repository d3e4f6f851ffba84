"""speclock CLI — Command-line interface.

Commands:
  speclock verify [PATHS]       — Check every annotated function's contract
  speclock coverage [PATHS]     — Count annotated functions per section
  speclock drift [PATHS] --spec — Compare annotations with the specification

Exit codes (verify): 0 all verified, 1 a contract is falsified, 2 some
clause is undecided, 3 an error, 130 interrupted, 4 environment or usage
failure.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Optional, Sequence

from speclock import __version__
from speclock.config import SpecLockConfig, load_config
from speclock.coverage import coverage_stats, detect_drift, format_coverage, format_drift, to_json
from speclock.discovery import discover, display_path
from speclock.errors import EnvironmentFailure
from speclock.formatters import FORMATS, format_report
from speclock.model import FilterCriteria
from speclock.orchestrator import Orchestrator
from speclock.spec_document import load_spec

logger = logging.getLogger("speclock")

EXIT_ENVIRONMENT = 4


class _Parser(argparse.ArgumentParser):
    """ArgumentParser whose usage errors exit with EXIT_ENVIRONMENT."""

    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(EXIT_ENVIRONMENT, f"{self.prog}: error: {message}\n")


def _setup_logging(verbose: int) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        stream=sys.stderr,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _load(args: argparse.Namespace) -> SpecLockConfig:
    start = args.paths[0] if args.paths else "."
    if os.path.isfile(start):
        start = os.path.dirname(start) or "."
    config = load_config(args.config, start_dir=start)
    # Command line overrides
    if getattr(args, "spec", None):
        config.spec = args.spec
    if getattr(args, "timeout", None) is not None:
        config.timeout_ms = args.timeout
    if getattr(args, "run_timeout", None) is not None:
        config.run_timeout = args.run_timeout
    if getattr(args, "workers", None) is not None:
        config.workers = args.workers
    if getattr(args, "fail_fast", False):
        config.fail_fast = True
    if getattr(args, "strict", False):
        config.strict = True
    if getattr(args, "no_solver", False):
        config.solver = False
    if getattr(args, "require_solver", False):
        config.require_solver = True
    if getattr(args, "format", None):
        config.format = args.format
    return config


def _emit(text: str, output: Optional[str]) -> None:
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(text)
            if not text.endswith("\n"):
                f.write("\n")
        print(f"Results written to: {output}", file=sys.stderr)
    else:
        print(text)


def _sections(config: SpecLockConfig):
    if not config.spec:
        return None
    return load_spec(config.spec, cache_dir=config.cache_dir or None)


def cmd_verify(args: argparse.Namespace) -> int:
    """Discover, filter, verify and report."""
    try:
        config = _load(args)
        if config.timeout_ms <= 0:
            raise EnvironmentFailure("--timeout must be positive")
        index = discover(args.paths or ["."], config.exclude, strict=config.strict)
        sections = _sections(config)
        criteria = FilterCriteria(
            path_prefix=display_path(args.path_prefix) if args.path_prefix else None,
            subsystem=args.subsystem,
            name=args.name,
            sections=tuple(args.section or ()),
        )
        orchestrator = Orchestrator(config)
        if not orchestrator.solver_usable and config.solver:
            logger.warning("z3 is not available; undecided clauses stay unknown")
        report = orchestrator.run(index.functions, criteria, sections, index.diagnostics)
    except EnvironmentFailure as e:
        print(f"speclock: {e.message}", file=sys.stderr)
        return EXIT_ENVIRONMENT

    _emit(format_report(report, config.format), args.output)
    return report.exit_code


def cmd_coverage(args: argparse.Namespace) -> int:
    """Report annotated functions grouped by section."""
    try:
        config = _load(args)
        index = discover(args.paths or ["."], config.exclude, strict=config.strict)
        sections = _sections(config)
    except EnvironmentFailure as e:
        print(f"speclock: {e.message}", file=sys.stderr)
        return EXIT_ENVIRONMENT

    stats = coverage_stats(index.functions)
    if args.format == "json":
        _emit(to_json(stats), args.output)
    else:
        _emit(format_coverage(stats, sections), args.output)
    return 0


def cmd_drift(args: argparse.Namespace) -> int:
    """Compare annotated functions with the specification document."""
    try:
        config = _load(args)
        if not config.spec:
            raise EnvironmentFailure("drift needs a specification document (--spec)")
        index = discover(args.paths or ["."], config.exclude, strict=config.strict)
        sections = _sections(config)
    except EnvironmentFailure as e:
        print(f"speclock: {e.message}", file=sys.stderr)
        return EXIT_ENVIRONMENT

    result = detect_drift(index.functions, sections)
    if args.format == "json":
        _emit(to_json(result), args.output)
    else:
        _emit(format_drift(result), args.output)
    return 1 if result.has_drift else 0


def _common(p: argparse.ArgumentParser) -> None:
    p.add_argument("paths", nargs="*", help="Files or directories to scan (default: .)")
    p.add_argument("--config", default=None, help="Config file (default: nearest .speclockrc.yml)")
    p.add_argument("--spec", default=None, help="Specification document (Markdown)")
    p.add_argument("--strict", action="store_true", help="Treat functions without a section id as errors")
    p.add_argument("--output", "-o", default=None, help="Output file path (default: stdout)")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Debug logging on stderr")


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="speclock",
        description="speclock — verify functions against their specification contracts",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # verify
    p_verify = subparsers.add_parser("verify", help="Verify annotated functions")
    _common(p_verify)
    p_verify.add_argument("--section", action="append", help="Only this section id (repeatable)")
    p_verify.add_argument("--subsystem", default=None, help="Only this subsystem tag or path component")
    p_verify.add_argument("--name", default=None, help="Only functions whose name matches this glob")
    p_verify.add_argument("--path-prefix", dest="path_prefix", default=None, help="Only files under this path")
    p_verify.add_argument("--format", choices=FORMATS, default=None, help="Report format")
    p_verify.add_argument("--timeout", type=int, default=None, help="Per-clause solver timeout (ms)")
    p_verify.add_argument("--run-timeout", dest="run_timeout", type=float, default=None,
                          help="Whole-run timeout in seconds (0 = none)")
    p_verify.add_argument("--workers", type=int, default=None, help="Worker threads (0 = auto)")
    p_verify.add_argument("--fail-fast", dest="fail_fast", action="store_true",
                          help="Stop at the first falsified function")
    p_verify.add_argument("--no-solver", dest="no_solver", action="store_true",
                          help="Static checking only")
    p_verify.add_argument("--require-solver", dest="require_solver", action="store_true",
                          help="Fail if z3 is not available")
    p_verify.set_defaults(func=cmd_verify)

    # coverage
    p_cov = subparsers.add_parser("coverage", help="Show annotation coverage by section")
    _common(p_cov)
    p_cov.add_argument("--format", choices=["human", "json"], default="human", help="Output format")
    p_cov.set_defaults(func=cmd_coverage)

    # drift
    p_drift = subparsers.add_parser("drift", help="Detect drift between code and specification")
    _common(p_drift)
    p_drift.add_argument("--format", choices=["human", "json"], default="human", help="Output format")
    p_drift.set_defaults(func=cmd_drift)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(EXIT_ENVIRONMENT)

    _setup_logging(args.verbose)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
