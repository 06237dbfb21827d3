"""crabshield/cli.py: command-line entry point.

Usage examples
--------------
    # Scan a workspace, text output
    crabshield scan path/to/program

    # Only high-impact findings, as SARIF, into a file
    crabshield scan . --severity high --format sarif -o crabshield.sarif

    # Record the current state, then only report regressions
    crabshield scan . --save-baseline .crabshield-baseline.json
    crabshield scan . --baseline .crabshield-baseline.json

    # Re-scan only changed files
    crabshield scan . --incremental

    # Declarative rules and detector listing
    crabshield scan . --rules rules.toml
    crabshield list-detectors --chain near

Exit codes
----------
    0   No findings survived filtering.
    1   At least one finding survived filtering.
    2   Configuration or infrastructure failure (missing path, unknown
        chain, malformed configuration or rule file).
"""

from __future__ import annotations

import argparse
import logging
import sys
import textwrap
from pathlib import Path
from typing import FrozenSet, List, Optional, Sequence, TextIO

from crabshield import __version__
from crabshield.chains import ALL_CHAINS, Chain
from crabshield.detectors import build_registry
from crabshield.errors import ConfigError
from crabshield.findings import Confidence, Severity
from crabshield.report import FORMATS, render
from crabshield.rules import RuleSet, load_rules
from crabshield.scanner import ScanOptions, Scanner

_log = logging.getLogger("crabshield")

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_FINDINGS: int = 1
EXIT_INFRA: int = 2


# ===========================================================================
# Utility helpers
# ===========================================================================

def _configure_logging(verbosity: int, quiet: bool = False) -> None:
    """Set up the ``crabshield`` logger.

    Parameters
    ----------
    verbosity:
        0 → WARNING, 1 → INFO, 2+ → DEBUG.
    quiet:
        Only errors, regardless of ``verbosity``.
    """
    level = logging.WARNING
    if quiet:
        level = logging.ERROR
    elif verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    root = logging.getLogger("crabshield")
    for handler in list(root.handlers):
        if getattr(handler, "_crabshield_cli", False):
            root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler._crabshield_cli = True
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root.setLevel(level)
    root.addHandler(handler)


def _open_output(dest: Optional[str]) -> TextIO:
    """``None`` or ``"-"`` → stdout; otherwise open the path for writing."""
    if dest is None or dest == "-":
        return sys.stdout
    p = Path(dest).expanduser()
    p.parent.mkdir(parents=True, exist_ok=True)
    return open(p, "w", encoding="utf-8")


def _parse_chains(values: Optional[Sequence[str]]) -> Optional[FrozenSet[Chain]]:
    """``--chain`` values (repeatable, comma-separated) → chain set."""
    if not values:
        return None
    chains = set()
    for value in values:
        for part in value.split(","):
            part = part.strip()
            if not part:
                continue
            chain = Chain.from_str_loose(part)
            if chain is None:
                choices = ", ".join(c.value for c in Chain)
                raise ConfigError(f"unknown chain '{part}' (expected one of: {choices})")
            chains.add(chain)
    return frozenset(chains) if chains else None


def _parse_enum(cls, value: Optional[str]):
    if value is None:
        return None
    try:
        return cls.parse(value)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc


def _split_ids(values: Optional[Sequence[str]]) -> List[str]:
    ids: List[str] = []
    for value in values or ():
        ids.extend(p.strip() for p in value.split(",") if p.strip())
    return ids


# ===========================================================================
# Commands
# ===========================================================================

def cmd_scan(args: argparse.Namespace) -> int:
    options = ScanOptions(
        root=Path(args.path).expanduser(),
        chains=_parse_chains(args.chain),
        config_path=Path(args.config) if args.config else None,
        rules_path=Path(args.rules) if args.rules else None,
        detectors=_split_ids(args.detector),
        min_severity=_parse_enum(Severity, args.severity),
        min_confidence=_parse_enum(Confidence, args.confidence),
        incremental=args.incremental or args.cache_path is not None,
        cache_path=Path(args.cache_path) if args.cache_path else None,
        baseline=Path(args.baseline) if args.baseline else None,
        save_baseline=Path(args.save_baseline) if args.save_baseline else None,
        jobs=args.jobs,
    )
    result = Scanner(options).run()

    for err in result.file_errors:
        _log.warning("%s", err)
    for err in result.producer_errors:
        _log.warning("%s", err)

    findings = result.reported
    summary = "" if args.quiet else result.summary()
    text = render(findings, args.format, __version__, summary)

    out = _open_output(args.output)
    try:
        out.write(text)
    finally:
        if out is not sys.stdout:
            out.close()

    return EXIT_FINDINGS if findings else EXIT_OK


def cmd_list_detectors(args: argparse.Namespace) -> int:
    rules = load_rules(Path(args.rules)) if args.rules else RuleSet()
    registry = build_registry(rules.producers())
    chains = _parse_chains(args.chain) or ALL_CHAINS
    out = _open_output(None)
    for producer in registry.for_chains(chains):
        chain_names = ",".join(sorted(c.value for c in producer.chains)) \
            if producer.chains != ALL_CHAINS else "any"
        out.write(
            f"{producer.id:<12} {producer.severity.label:<9} "
            f"{producer.confidence.label:<7} {chain_names:<10} {producer.name}\n"
        )
    return EXIT_OK


# ===========================================================================
# Argument parser
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    """Construct the full CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="crabshield",
        description=(
            "crabshield: static security analysis for Rust smart contracts\n"
            "(Solana, CosmWasm, NEAR and ink!)."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              crabshield scan programs/vault
              crabshield scan . --format sarif -o report.sarif
              crabshield scan . --baseline baseline.json
              crabshield list-detectors --chain solana
        """),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug).",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    # --- scan --------------------------------------------------------------
    p_scan = subparsers.add_parser(
        "scan",
        help="Scan a project for vulnerabilities.",
        description="Scan every Rust source file below PATH.",
    )
    p_scan.add_argument("path", metavar="PATH", help="Project directory or .rs file.")
    p_scan.add_argument(
        "--chain",
        action="append",
        metavar="CHAIN",
        help="Treat every crate as CHAIN (solana, cosmwasm, near, ink); repeatable.",
    )
    p_scan.add_argument(
        "--severity",
        metavar="LEVEL",
        default=None,
        help="Minimum severity to report (low, medium, high, critical).",
    )
    p_scan.add_argument(
        "--confidence",
        metavar="LEVEL",
        default=None,
        help="Minimum confidence to report (low, medium, high).",
    )
    p_scan.add_argument(
        "-f", "--format",
        choices=list(FORMATS),
        default="text",
        help="Output format (default: text).",
    )
    p_scan.add_argument(
        "-o", "--output",
        default=None,
        metavar="FILE",
        help='Output file ("-" or omit for stdout).',
    )
    p_scan.add_argument(
        "--detector",
        action="append",
        metavar="ID",
        help="Only report these detector/rule ids; repeatable or comma-separated.",
    )
    p_scan.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Only print findings and errors.",
    )
    g = p_scan.add_argument_group("baseline")
    g.add_argument("--baseline", metavar="FILE", default=None,
                   help="Only report findings absent from this baseline.")
    g.add_argument("--save-baseline", metavar="FILE", default=None,
                   help="Write the surviving findings as a baseline.")
    g = p_scan.add_argument_group("configuration")
    g.add_argument("--config", metavar="FILE", default=None,
                   help="Project configuration (default: PATH/.crabshield.toml).")
    g.add_argument("--rules", metavar="FILE", default=None,
                   help="Declarative rule file (TOML).")
    g = p_scan.add_argument_group("performance")
    g.add_argument("--incremental", action="store_true",
                   help="Reuse cached findings for unchanged files.")
    g.add_argument("--cache-path", metavar="FILE", default=None,
                   help="Cache location (implies --incremental).")
    g.add_argument("-j", "--jobs", type=int, default=None, metavar="N",
                   help="Worker threads (default: executor default).")
    p_scan.set_defaults(func=cmd_scan)

    # --- list-detectors ----------------------------------------------------
    p_list = subparsers.add_parser(
        "list-detectors",
        help="List built-in detectors and loaded rules.",
    )
    p_list.add_argument("--chain", action="append", metavar="CHAIN",
                        help="Only detectors applying to CHAIN.")
    p_list.add_argument("--rules", metavar="FILE", default=None,
                        help="Also list rules from this file.")
    p_list.set_defaults(func=cmd_list_detectors)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the crabshield CLI.

    Parameters
    ----------
    argv:
        Command-line arguments.  ``None`` → ``sys.argv[1:]``.

    Returns
    -------
    int
        Exit code (see module docstring for semantics).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose, getattr(args, "quiet", False))

    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return EXIT_INFRA

    if getattr(args, "jobs", None) is not None and args.jobs < 1:
        _log.error("--jobs must be at least 1")
        return EXIT_INFRA

    try:
        return args.func(args)
    except ConfigError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return 130
    except OSError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA


if __name__ == "__main__":
    raise SystemExit(main())
