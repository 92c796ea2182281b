#!/usr/bin/env python3
"""
AwaitGuard: Static Analysis for Non-Atomic Updates in Async Python

Detects assignments in coroutines and generators that are computed from a
value read before an ``await``/``yield`` and written back after it, where the
assigned variable is shared with other functions (module globals, closure
variables, builtins).

    total = 0

    async def add(amount):
        global total
        total = total + await convert(amount)   # flagged

License: MIT
Version: 1.0.0
"""

import argparse
import ast
import json
import logging
import sys
import time
import tokenize
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from awaitguard_analysis import Violation, run_tracker
from awaitguard_scope import ScopeManager

__version__ = "1.0.0"

logger = logging.getLogger(__name__)


@dataclass
class AnalysisResult:
    """Complete analysis results for one file"""

    violations: List[Violation] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metrics: Dict[str, int] = field(default_factory=dict)
    analysis_time: float = 0.0
    file_analyzed: str = ""

    @property
    def ok(self) -> bool:
        return not self.errors


class AwaitGuardAnalyzer:
    """
    Runs the atomic update analysis over Python source files.

    ``shared_names`` lists names (such as ``self``) whose objects are always
    treated as shared between tasks, even when the name itself is local.
    """

    valid_extensions = {".py", ".pyw", ".pyi"}

    def __init__(self, shared_names: Iterable[str] = ()):
        self.shared_names = frozenset(shared_names)

    def analyze_file(self, filepath: Path) -> AnalysisResult:
        """
        Analyze a Python source file for non-atomic updates

        Args:
            filepath: Path to the Python source file

        Returns:
            AnalysisResult containing all violations; problems reading or
            parsing the file are recorded in ``errors``
        """
        start_time = time.time()

        self.result = AnalysisResult(file_analyzed=str(filepath))

        if not self._validate_file(filepath):
            return self.result

        content = self._read_file_safely(filepath)
        if content is not None:
            self._analyze_content(content, str(filepath))

        self.result.analysis_time = time.time() - start_time
        return self.result

    def analyze_source(self, source: str, filename: str = "<string>") -> AnalysisResult:
        """Analyze source text that does not live in a file"""
        start_time = time.time()
        self.result = AnalysisResult(file_analyzed=filename)
        self._analyze_content(source, filename)
        self.result.analysis_time = time.time() - start_time
        return self.result

    def _analyze_content(self, content: str, filename: str):
        try:
            tree = ast.parse(content, filename=filename)
        except SyntaxError as e:
            self.result.errors.append(f"Cannot parse {filename}: {e.msg} (line {e.lineno})")
            return

        try:
            tracker = run_tracker(tree, ScopeManager(tree), content, self.shared_names)
        except Exception as e:
            logger.debug("Analysis of %s failed", filename, exc_info=True)
            self.result.errors.append(f"ERROR during analysis of {filename}: {e}")
            return

        self.result.violations = sorted(
            tracker.violations, key=lambda v: (v.lineno, v.col_offset)
        )
        self.result.metrics = dict(tracker.stats)
        self.result.metrics["violations"] = len(self.result.violations)

    def _validate_file(self, filepath: Path) -> bool:
        """File validation with detailed error reporting"""
        if not filepath.exists():
            self.result.errors.append(f"File does not exist: {filepath}")
            return False

        if not filepath.is_file():
            self.result.errors.append(f"Path is not a file: {filepath}")
            return False

        if filepath.suffix.lower() not in self.valid_extensions:
            self.result.warnings.append(
                f"Unusual file extension '{filepath.suffix}' for Python file"
            )

        try:
            size_mb = filepath.stat().st_size / (1024 * 1024)
            if size_mb > 10:
                self.result.warnings.append(
                    f"Large file ({size_mb:.1f}MB) may impact analysis performance"
                )
        except OSError as e:
            self.result.errors.append(f"Cannot read file stats: {e}")
            return False

        return True

    def _read_file_safely(self, filepath: Path) -> Optional[str]:
        """Read file honoring a BOM or coding line, falling back to latin1"""
        try:
            with tokenize.open(filepath) as f:
                return f.read()
        except (SyntaxError, UnicodeDecodeError):
            logger.debug("Decoding %s as latin1", filepath)
        except OSError as e:
            self.result.errors.append(f"Error reading file {filepath}: {e}")
            return None

        try:
            return filepath.read_text(encoding="latin1")
        except OSError as e:
            self.result.errors.append(f"Error reading file {filepath}: {e}")
            return None


def collect_files(paths: Iterable[str]) -> List[Path]:
    """Expand directories into the Python files below them"""
    files: List[Path] = []
    for name in paths:
        path = Path(name)
        if path.is_dir():
            files.extend(sorted(p for p in path.rglob("*.py") if p.is_file()))
        else:
            files.append(path)
    return files


def format_analysis_report(result: AnalysisResult, filename: str) -> str:
    """Human-readable report for one file"""
    report = []

    report.append("=" * 80)
    report.append("AwaitGuard Analysis Report")
    report.append("=" * 80)
    report.append(f"File: {filename}")
    report.append(f"Analysis Time: {result.analysis_time:.3f} seconds")

    report.append("\nSUMMARY")
    report.append("-" * 50)
    if result.errors:
        report.append(f"Analysis incomplete: {len(result.errors)} error(s)")
    elif not result.violations:
        report.append("No non-atomic updates detected")
    else:
        report.append(f"{len(result.violations)} possible race condition(s) detected")

    if result.metrics:
        report.append("\nAnalysis Metrics:")
        report.append(f"  - Code Paths: {result.metrics.get('code_paths', 0)}")
        report.append(f"  - Loop Back Edges: {result.metrics.get('back_edges', 0)}")
        report.append(
            f"  - Unreachable Segments: {result.metrics.get('unreachable_segments', 0)}"
        )
        report.append(
            f"  - Resumable Functions: {result.metrics.get('resumable_functions', 0)}"
        )
        report.append(
            f"  - Suspension Points: {result.metrics.get('suspension_points', 0)}"
        )
        report.append(
            f"  - Checked Assignments: {result.metrics.get('checked_assignments', 0)}"
        )

    if result.violations:
        report.append("\nNON-ATOMIC UPDATES")
        report.append("-" * 50)
        for i, violation in enumerate(result.violations, 1):
            report.append(f"{i}. {violation.message}")
            report.append(f"   Location: {filename}:{violation.lineno}:{violation.col_offset + 1}")
            report.append(
                "   Fix: read the value after the last await/yield, or guard the "
                "update with an asyncio.Lock"
            )

    if result.errors:
        report.append("\nERRORS")
        report.append("-" * 50)
        for i, error in enumerate(result.errors, 1):
            report.append(f"{i}. {error}")

    if result.warnings:
        report.append("\nWARNINGS")
        report.append("-" * 50)
        for i, warning in enumerate(result.warnings, 1):
            report.append(f"{i}. {warning}")

    report.append("\n" + "=" * 80)
    return "\n".join(report)


def build_json_report(results: List[AnalysisResult]) -> dict:
    return {
        "analysis_summary": {
            "total_files": len(results),
            "total_violations": sum(len(r.violations) for r in results),
            "files_with_errors": sum(1 for r in results if r.errors),
            "analysis_timestamp": datetime.now().isoformat(),
            "awaitguard_version": __version__,
        },
        "files": [
            {
                "file": result.file_analyzed,
                "metrics": result.metrics,
                "violations": [v.to_dict() for v in result.violations],
                "errors": result.errors,
                "warnings": result.warnings,
                "analysis_time": result.analysis_time,
            }
            for result in results
        ],
    }


def configure_logging(debug: bool = False, quiet: bool = False):
    level = logging.DEBUG if debug else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def main(argv: Optional[List[str]] = None) -> int:
    """Command line entry point; returns the process exit code"""
    parser = argparse.ArgumentParser(
        prog="awaitguard",
        description="AwaitGuard: static analyzer for non-atomic updates in async Python",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  awaitguard service.py
  awaitguard --output report.txt src/
  awaitguard --json results.json --ci-mode src/
  awaitguard --shared-name self handlers.py

Exit Codes:
  0: Success
  1: More violations than --max-violations (CI mode)
  3: Analysis error (CI mode)
""",
    )

    parser.add_argument("files", nargs="*", help="Python files or directories to analyze")
    parser.add_argument("--output", "-o", help="Output file for the report")
    parser.add_argument("--json", help="Output JSON report to file")
    parser.add_argument(
        "--ci-mode",
        action="store_true",
        help="Run in CI mode with non-zero exit on issues",
    )
    parser.add_argument(
        "--max-violations",
        type=int,
        default=0,
        help="Maximum allowed violations (CI mode)",
    )
    parser.add_argument(
        "--shared-name",
        action="append",
        default=[],
        metavar="NAME",
        help="Treat objects bound to NAME (e.g. self) as shared; repeatable",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug output and stack traces"
    )
    parser.add_argument(
        "--quiet", "-q", action="store_true", help="Suppress non-essential output"
    )
    parser.add_argument(
        "--version", action="version", version=f"AwaitGuard {__version__}"
    )

    args = parser.parse_args(argv)

    if not args.files:
        parser.print_help()
        return 1

    configure_logging(args.debug, args.quiet)

    analyzer = AwaitGuardAnalyzer(shared_names=args.shared_name)
    all_results: List[AnalysisResult] = []
    reports: List[str] = []
    had_errors = False

    for path in collect_files(args.files):
        if not path.exists():
            print(f"Error: File not found: {path}", file=sys.stderr)
            if args.ci_mode:
                return 3
            had_errors = True
            continue

        if not args.quiet:
            print(f"Analyzing {path}...")

        result = analyzer.analyze_file(path)
        all_results.append(result)
        if result.errors:
            had_errors = True
            for error in result.errors:
                print(error, file=sys.stderr)

        reports.append(format_analysis_report(result, str(path)))

    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write("\n\n".join(reports))
        if not args.quiet:
            print(f"Report saved to {args.output}")
    else:
        for report in reports:
            print(report)

    if args.json and all_results:
        with open(args.json, "w", encoding="utf-8") as f:
            json.dump(build_json_report(all_results), f, indent=2)
        if not args.quiet:
            print(f"JSON report saved to {args.json}")

    if args.ci_mode:
        total = sum(len(r.violations) for r in all_results)
        if had_errors:
            print("CI FAILURE: analysis errors occurred", file=sys.stderr)
            return 3
        if total > args.max_violations:
            print(
                f"CI FAILURE: {total} non-atomic updates found "
                f"(max allowed: {args.max_violations})"
            )
            return 1
        print("CI PASSED: No non-atomic updates above the limit")
    return 0


if __name__ == "__main__":
    sys.exit(main())
