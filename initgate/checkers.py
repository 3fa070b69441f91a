"""
initgate/checkers.py
════════════════════

Checker framework turning analysis results into cppcheck-compatible
diagnostics.

Architecture
────────────

  ┌─────────────────────────────────────────────────────────┐
  │                   CheckerRunner                         │
  │  ┌────────────────────────────────────────────────────┐ │
  │  │             InitBeforeGatedChecker                 │ │
  │  └──────────────────────┬─────────────────────────────┘ │
  │                         │                               │
  │  ┌──────────────────────▼─────────────────────────────┐ │
  │  │   init_analysis.run_analysis  (walker + dataflow)  │ │
  │  └──────────────────────┬─────────────────────────────┘ │
  │                         │                               │
  │  ┌──────────────────────▼─────────────────────────────┐ │
  │  │   SuppressionManager  (line / file / global)       │ │
  │  └──────────────────────┬─────────────────────────────┘ │
  │                         │                               │
  │  ┌──────────────────────▼─────────────────────────────┐ │
  │  │   Diagnostic formatter (JSON / GCC / summary)      │ │
  │  └────────────────────────────────────────────────────┘ │
  └─────────────────────────────────────────────────────────┘

Each Checker follows a four-phase lifecycle:

  1. **configure()**        - read options
  2. **collect_evidence()** - run analyses
  3. **diagnose()**         - turn evidence into diagnostics
  4. **report()**           - emit diagnostics filtered by suppressions
"""

from __future__ import annotations

import fnmatch
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import (
    Any,
    ClassVar,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
    Type,
)

from .dataflow_engine import WorklistStrategy
from .init_analysis import AnalysisReport, Violation, run_analysis
from .program_model import KnownCallee, ProgramModel, SourceLocation

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 - DIAGNOSTIC MODEL
# ═════════════════════════════════════════════════════════════════════════

class DiagnosticSeverity(Enum):
    """cppcheck-compatible severity levels."""
    ERROR = "error"
    WARNING = "warning"
    STYLE = "style"
    PERFORMANCE = "performance"
    PORTABILITY = "portability"
    INFORMATION = "information"


class Confidence(Enum):
    """
    How certain we are that the diagnostic is a true positive.

    HIGH   - a gated call is reachable on a concrete path before init
    LOW    - an indirect call whose real target is unknown
    """
    HIGH = auto()
    LOW = auto()


@dataclass(frozen=True)
class Diagnostic:
    """
    A single diagnostic finding.

    Attributes
    ----------
    error_id     : Unique identifier (e.g., "gatedCallBeforeInit")
    message      : Human-readable description
    severity     : DiagnosticSeverity
    location     : Primary source location (the offending call)
    confidence   : Confidence level
    cwe          : CWE identifier (0 = none)
    checker_name : Name of the checker that produced this
    addon        : Addon name for cppcheck protocol
    extra        : Additional context string
    secondary    : Call chain, innermost caller first
    evidence     : Machine-readable evidence dict for downstream tooling
    """
    error_id: str
    message: str
    severity: DiagnosticSeverity
    location: SourceLocation
    confidence: Confidence = Confidence.HIGH
    cwe: int = 0
    checker_name: str = ""
    addon: str = "initgate"
    extra: str = ""
    secondary: Tuple[SourceLocation, ...] = ()
    evidence: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_cppcheck_json(self) -> Dict[str, Any]:
        """Serialize to cppcheck's JSON addon output format."""
        result: Dict[str, Any] = {
            "file": self.location.file,
            "linenr": self.location.line,
            "column": self.location.column,
            "severity": self.severity.value,
            "message": self.message,
            "addon": self.addon,
            "errorId": self.error_id,
            "extra": self.extra,
        }
        if self.cwe:
            result["cwe"] = self.cwe
        if self.secondary:
            result["secondary"] = [
                {"file": loc.file, "linenr": loc.line, "column": loc.column}
                for loc in self.secondary
            ]
        return result

    def to_json_str(self) -> str:
        """Single-line JSON string for cppcheck addon stdout."""
        return json.dumps(self.to_cppcheck_json())

    def to_gcc_format(self) -> str:
        """GCC-style diagnostic, one ``note:`` line per call-chain entry."""
        sev = self.severity.value
        lines = [f"{self.location}: {sev}: {self.message} [{self.error_id}]"]
        for loc in self.secondary:
            lines.append(f"{loc}: note: called from here")
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.to_gcc_format()


def as_source_location(loc: Any) -> SourceLocation:
    """Coerce an opaque call-site location into a :class:`SourceLocation`.

    Accepts a SourceLocation, a ``"file:line[:col]"`` string, or anything
    with ``file``/``linenr``/``column`` attributes (cppcheck tokens).
    """
    if isinstance(loc, SourceLocation):
        return loc
    if isinstance(loc, str):
        try:
            return SourceLocation.parse(loc)
        except ValueError:
            return SourceLocation(file=loc)
    if loc is None:
        return SourceLocation()
    return SourceLocation(
        file=str(getattr(loc, "file", "") or ""),
        line=int(getattr(loc, "linenr", getattr(loc, "line", 0)) or 0),
        column=int(getattr(loc, "column", 0) or 0),
    )


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 - SUPPRESSION MANAGER
# ═════════════════════════════════════════════════════════════════════════

class SuppressionManager:
    """
    Manages diagnostic suppressions from multiple sources.

    Sources:
      1. Line suppressions (``id:file:line`` or dump ``<suppressions>``)
      2. File-level suppressions (``id:pattern``, fnmatch-style)
      3. Global suppressions (``id``; ``*`` suppresses everything)

    Usage
    -----
    >>> sm = SuppressionManager()
    >>> sm.add_from_spec("gatedCallBeforeInit:legacy/*.c")
    >>> sm.add_global_suppression("indirectCallBeforeInit")
    >>> if not sm.is_suppressed(diagnostic):
    ...     emit(diagnostic)
    """

    def __init__(self) -> None:
        self._inline: Dict[Tuple[str, int], Set[str]] = defaultdict(set)
        self._file_level: Dict[str, Set[str]] = defaultdict(set)
        self._global: Set[str] = set()

    def load_dump_suppressions(self, suppressions: Iterable[Any]) -> None:
        """Load suppressions parsed by ``cppcheckdata`` from a dump file."""
        for supp in suppressions:
            error_id = getattr(supp, "errorId", None)
            file = getattr(supp, "fileName", None) or ""
            line = getattr(supp, "lineNumber", None)
            if not error_id:
                continue
            if file and line:
                self.add_line_suppression(error_id, file, int(line))
            elif file:
                self.add_file_suppression(error_id, file)
            else:
                self.add_global_suppression(error_id)

    def add_from_spec(self, spec: str) -> None:
        """Add a suppression written as ``id[:file[:line]]``."""
        parts = spec.split(":")
        if len(parts) >= 3 and parts[-1].isdigit():
            self.add_line_suppression(parts[0], ":".join(parts[1:-1]), int(parts[-1]))
        elif len(parts) >= 2:
            self.add_file_suppression(parts[0], ":".join(parts[1:]))
        else:
            self.add_global_suppression(spec)

    def add_line_suppression(self, error_id: str, file: str, line: int) -> None:
        self._inline[(file, line)].add(error_id)

    def add_file_suppression(self, error_id: str, file_pattern: str) -> None:
        """Suppress ``error_id`` in files matching ``file_pattern``."""
        self._file_level[file_pattern].add(error_id)

    def add_global_suppression(self, error_id: str) -> None:
        """Globally suppress ``error_id``."""
        self._global.add(error_id)

    def is_suppressed(self, diag: Diagnostic) -> bool:
        """Check whether a diagnostic should be suppressed."""
        eid = diag.error_id

        if eid in self._global or "*" in self._global:
            return True

        loc = diag.location
        ids = self._inline.get((loc.file, loc.line), set())
        if eid in ids or "*" in ids:
            return True

        for pattern, ids in self._file_level.items():
            if eid in ids or "*" in ids:
                if pattern == loc.file or loc.file.endswith(pattern):
                    return True
                if fnmatch.fnmatch(loc.file, pattern):
                    return True

        return False

    def filter_diagnostics(
        self, diagnostics: Iterable[Diagnostic]
    ) -> List[Diagnostic]:
        """Return only non-suppressed diagnostics."""
        return [d for d in diagnostics if not self.is_suppressed(d)]

    def __len__(self) -> int:
        return len(self._global) + sum(map(len, self._inline.values())) + sum(
            map(len, self._file_level.values())
        )


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 - CHECKER BASE CLASS
# ═════════════════════════════════════════════════════════════════════════

@dataclass
class CheckerContext:
    """
    Shared context passed to every checker during execution.

    Attributes
    ----------
    program      : the ProgramModel being checked
    suppressions : SuppressionManager
    analyses     : dict of analysis results shared between checkers
    options      : user-provided options dict
    stats        : mutable dict for timing / counting statistics
    """
    program: ProgramModel
    suppressions: SuppressionManager = field(default_factory=SuppressionManager)
    analyses: Dict[str, Any] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)
    stats: Dict[str, Any] = field(default_factory=dict)

    def get_analysis(self, name: str) -> Any:
        return self.analyses.get(name)

    def set_analysis(self, name: str, result: Any) -> None:
        self.analyses[name] = result

    def get_option(self, key: str, default: Any = None) -> Any:
        return self.options.get(key, default)


class Checker(ABC):
    """
    Abstract base class for all checkers.

    Subclass Contract
    ─────────────────
      - Override ``name``, ``description``, ``error_ids``
      - Implement ``collect_evidence()`` and ``diagnose()``
      - Optionally override ``configure()`` for custom setup
    """

    name: ClassVar[str] = "base-checker"
    description: ClassVar[str] = ""
    error_ids: ClassVar[FrozenSet[str]] = frozenset()

    def __init__(self) -> None:
        self._diagnostics: List[Diagnostic] = []

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return list(self._diagnostics)

    def configure(self, ctx: CheckerContext) -> None:
        """Called before evidence collection.  Default does nothing."""

    @abstractmethod
    def collect_evidence(self, ctx: CheckerContext) -> None:
        ...

    @abstractmethod
    def diagnose(self, ctx: CheckerContext) -> None:
        ...

    def report(self, ctx: CheckerContext) -> List[Diagnostic]:
        """Return final diagnostics, filtered by suppressions."""
        return ctx.suppressions.filter_diagnostics(self._diagnostics)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.name}'>"


# ═════════════════════════════════════════════════════════════════════════
#  PART 4 - INIT-BEFORE-GATED CHECKER
# ═════════════════════════════════════════════════════════════════════════

GATED_BEFORE_INIT = "gatedCallBeforeInit"
INDIRECT_BEFORE_INIT = "indirectCallBeforeInit"

# CWE-666: Operation on Resource in Wrong Phase of Lifetime
_CWE_WRONG_PHASE = 666


def _initializer_text(program: ProgramModel, initializers: Iterable[Any]) -> str:
    names = [f"`{program.display_name(fid)}`" for fid in initializers]
    if not names:
        return "any initializer call"
    if len(names) == 1:
        return f"call to {names[0]}"
    return "call to any of " + ", ".join(names)


def violation_to_diagnostic(
    violation: Violation,
    program: ProgramModel,
    initializers: Iterable[Any] = (),
    checker_name: str = "",
) -> Diagnostic:
    """Render one violation.

    The innermost call is the primary location; the remaining locations
    become ``secondary``, leading outward to the entry point's own call.
    """
    initializers = list(initializers)
    init_text = _initializer_text(program, initializers)
    entry_name = program.display_name(violation.entry_point)

    if isinstance(violation.culprit, KnownCallee):
        gated_name = program.display_name(violation.culprit.function_id)
        error_id = GATED_BEFORE_INIT
        message = f"call to `{gated_name}` not preceded by {init_text}"
        confidence = Confidence.HIGH
    else:
        gated_name = None
        error_id = INDIRECT_BEFORE_INIT
        message = f"indirect call not preceded by {init_text}"
        confidence = Confidence.LOW

    primary = as_source_location(violation.primary)
    chain = tuple(as_source_location(loc) for loc in violation.chain)
    extra = f"entry point `{entry_name}`"
    if chain:
        extra += "; call chain: " + " <- ".join(str(loc) for loc in (primary,) + chain)

    return Diagnostic(
        error_id=error_id,
        message=message,
        severity=DiagnosticSeverity.ERROR,
        location=primary,
        confidence=confidence,
        cwe=_CWE_WRONG_PHASE,
        checker_name=checker_name,
        extra=extra,
        secondary=chain,
        evidence={
            "entry_point": entry_name,
            "gated": gated_name,
            "initializers": [program.display_name(fid) for fid in initializers],
            "locations": [str(loc) for loc in (primary,) + chain],
        },
    )


class InitBeforeGatedChecker(Checker):
    """Every reachable gated call must follow an initializer call on all
    paths from each entry point.

    Options (``ctx.options``): ``memoize`` (bool), ``worklist``
    (``"rpo"``, ``"fifo"``, ``"lifo"``), ``max_iterations`` (int).
    """

    name: ClassVar[str] = "init-before-gated"
    description: ClassVar[str] = "Gated operation used before the initializer ran"
    error_ids: ClassVar[FrozenSet[str]] = frozenset({GATED_BEFORE_INIT, INDIRECT_BEFORE_INIT})

    def __init__(self) -> None:
        super().__init__()
        self.memoize = False
        self.strategy = WorklistStrategy.RPO
        self.max_iterations = 100_000
        self.analysis_report: Optional[AnalysisReport] = None

    def configure(self, ctx: CheckerContext) -> None:
        self.memoize = bool(ctx.get_option("memoize", False))
        self.strategy = WorklistStrategy(ctx.get_option("worklist", "rpo"))
        self.max_iterations = int(ctx.get_option("max_iterations", 100_000))

    def collect_evidence(self, ctx: CheckerContext) -> None:
        self.analysis_report = run_analysis(
            ctx.program,
            memoize=self.memoize,
            strategy=self.strategy,
            max_iterations=self.max_iterations,
        )
        ctx.set_analysis("init-order", self.analysis_report)
        ctx.stats.update(
            {f"{self.name}_{k}": v for k, v in self.analysis_report.stats.as_dict().items()}
        )

    def diagnose(self, ctx: CheckerContext) -> None:
        report = self.analysis_report
        if report is None:
            return
        for violation in report.violations:
            diag = violation_to_diagnostic(
                violation, ctx.program, report.initializers, checker_name=self.name,
            )
            self._diagnostics.append(diag)


# ═════════════════════════════════════════════════════════════════════════
#  PART 5 - REGISTRY AND RUNNER
# ═════════════════════════════════════════════════════════════════════════

class CheckerRegistry:
    """Registry of available checkers."""

    def __init__(self) -> None:
        self._checkers: Dict[str, Type[Checker]] = {}
        self._disabled: Set[str] = set()

    def register(self, checker_cls: Type[Checker]) -> None:
        self._checkers[checker_cls.name] = checker_cls

    def disable(self, name: str) -> None:
        self._disabled.add(name)

    def get_by_name(self, name: str) -> Optional[Type[Checker]]:
        return self._checkers.get(name)

    def get_enabled(self) -> List[Type[Checker]]:
        return [c for n, c in self._checkers.items() if n not in self._disabled]


_DEFAULT_REGISTRY = CheckerRegistry()
_DEFAULT_REGISTRY.register(InitBeforeGatedChecker)


def default_registry() -> CheckerRegistry:
    return _DEFAULT_REGISTRY


@dataclass
class CheckerRunResults:
    """
    Aggregate results from running a suite of checkers.

    Attributes
    ----------
    diagnostics            : All diagnostics from all checkers
    diagnostics_by_checker : Diagnostics grouped by checker name
    stats                  : Timing and counting statistics
    checker_names          : Names of checkers that were run
    suppressed_count       : Diagnostics dropped by suppressions
    """
    diagnostics: List[Diagnostic] = field(default_factory=list)
    diagnostics_by_checker: Dict[str, List[Diagnostic]] = field(
        default_factory=lambda: defaultdict(list)
    )
    stats: Dict[str, Any] = field(default_factory=dict)
    checker_names: List[str] = field(default_factory=list)
    suppressed_count: int = 0

    @property
    def error_count(self) -> int:
        return sum(
            1 for d in self.diagnostics
            if d.severity == DiagnosticSeverity.ERROR
        )

    @property
    def total_count(self) -> int:
        return len(self.diagnostics)

    def by_file(self, file: str) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.location.file == file]

    def to_json_lines(self) -> str:
        """Format all diagnostics as cppcheck JSON addon output."""
        return "\n".join(d.to_json_str() for d in self.diagnostics)

    def to_gcc_format(self) -> str:
        return "\n".join(d.to_gcc_format() for d in self.diagnostics)

    def summary(self) -> str:
        """Human-readable summary."""
        lines = [
            f"Checker run complete: {self.total_count} diagnostics "
            f"({self.error_count} errors, {self.suppressed_count} suppressed)",
        ]
        for name in self.checker_names:
            count = len(self.diagnostics_by_checker.get(name, []))
            elapsed = self.stats.get(f"{name}_elapsed_ms", 0)
            lines.append(f"  {name}: {count} findings ({elapsed:.1f}ms)")
        for d in self.diagnostics:
            lines.append(f"  {d.location}: {d.message}")
        return "\n".join(lines)

    def render(self, fmt: str) -> str:
        """Render as ``"json"`` lines, ``"gcc"`` text or ``"summary"``."""
        if fmt == "json":
            return self.to_json_lines()
        if fmt == "gcc":
            return self.to_gcc_format()
        if fmt == "summary":
            return self.summary()
        raise ValueError(f"unknown output format {fmt!r}")


class CheckerRunner:
    """
    Runs a suite of checkers against a program model.

    Usage
    -----
    >>> runner = CheckerRunner(options={"memoize": True})
    >>> results = runner.run(program)
    >>> print(results.summary())
    """

    def __init__(
        self,
        registry: Optional[CheckerRegistry] = None,
        suppressions: Optional[SuppressionManager] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.registry = registry or _DEFAULT_REGISTRY
        self.suppressions = suppressions or SuppressionManager()
        self.options = options or {}

    def run(
        self,
        program: ProgramModel,
        checkers: Optional[Sequence[str]] = None,
    ) -> CheckerRunResults:
        """
        Run checkers against one program.

        A checker that raises is reported as a ``checkerInternalError``
        diagnostic instead of aborting the run.
        """
        results = CheckerRunResults()
        ctx = CheckerContext(
            program=program,
            suppressions=self.suppressions,
            options=self.options,
        )

        if checkers is not None:
            checker_classes: List[Type[Checker]] = []
            for name in checkers:
                cls = self.registry.get_by_name(name)
                if cls is None:
                    logger.warning("Unknown checker %r ignored", name)
                    continue
                checker_classes.append(cls)
        else:
            checker_classes = self.registry.get_enabled()

        for cls in checker_classes:
            checker = cls()
            checker_name = cls.name
            results.checker_names.append(checker_name)

            t0 = time.monotonic()
            try:
                checker.configure(ctx)
                checker.collect_evidence(ctx)
                checker.diagnose(ctx)
                diags = checker.report(ctx)
                results.suppressed_count += len(checker.diagnostics) - len(diags)
            except Exception as exc:
                logger.exception("Checker %s failed", checker_name)
                diags = [Diagnostic(
                    error_id="checkerInternalError",
                    message=f"Checker '{checker_name}' failed: {exc}",
                    severity=DiagnosticSeverity.INFORMATION,
                    location=SourceLocation(),
                    checker_name=checker_name,
                )]
            elapsed_ms = (time.monotonic() - t0) * 1000.0

            results.diagnostics.extend(diags)
            results.diagnostics_by_checker[checker_name] = diags
            results.stats[f"{checker_name}_elapsed_ms"] = elapsed_ms

        results.stats.update(ctx.stats)
        return results
