"""
initgate/init_analysis.py
=========================

Whole-program "initializer before gated operation" analysis.

Given a :class:`~initgate.program_model.ProgramModel` in which some
function is tagged as the *initializer* and some as the *gated* operation,
the analysis proves, for every entry point, that each reachable call of the
gated operation is preceded on all paths by a call of the initializer.

Two pieces call each other:

* the **walker** (:meth:`InitOrderAnalysis.evaluate`) answers "what does
  calling this function mean for the ordering?" with a :class:`Verdict`;
* the **seen-init dataflow** (:meth:`InitOrderAnalysis.seen_init`) computes,
  for each block of one function, whether the initializer certainly ran
  before the block's terminator.  Its transfer function asks the walker
  whether a callee establishes initialization.

Verdicts
--------
``ESTABLISHES_INIT``
    The callee is the initializer.  Helpers that merely call the
    initializer do not establish anything; only the tagged function does.
``NO_INFORMATION``
    Calling the function neither establishes nor violates anything.
    Opaque functions, unknown ids and recursive back-edges land here.
``VIOLATES``
    A gated call (or an indirect call) is reachable before initialization.
    ``locations`` lists call sites innermost first.

Cycles are cut by a :class:`CallStack` of the functions currently being
evaluated: re-entering one of them answers ``NO_INFORMATION``.

Public API (quick reference)
----------------------------
    VerdictKind, Verdict    - walker result
    CallStack               - scoped cycle guard
    InitOrderAnalysis       - walker + dataflow
    Violation               - one finding per entry point
    AnalysisReport          - findings plus run statistics
    run_analysis()          - driver over all entry points
    check_program()         - driver returning only the violations

Typical usage
-------------
    >>> from initgate.init_analysis import check_program
    >>> for v in check_program(program):
    ...     print(v.entry_point, [str(loc) for loc in v.locations])
"""

from __future__ import annotations

import enum
import logging
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
)

from .dataflow_engine import (
    BooleanLattice,
    Confluence,
    DataflowResult,
    IntraproceduralSolver,
    WorklistStrategy,
)
from .program_model import (
    BlockId,
    Call,
    CalleeRef,
    FunctionCFG,
    FunctionId,
    ProgramModel,
    Tag,
    UnknownCallee,
)

logger = logging.getLogger(__name__)

# Python frames consumed per level of callee descent
# (evaluate → body → solve → transfer → evaluate).
_FRAMES_PER_DESCENT = 8


# ===========================================================================
# VERDICTS
# ===========================================================================

class VerdictKind(enum.Enum):
    ESTABLISHES_INIT = "establishes-init"
    NO_INFORMATION = "no-information"
    VIOLATES = "violates"


@dataclass(frozen=True)
class Verdict:
    """Outcome of evaluating one function as a callee.

    ``culprit`` is the callee at the innermost location of a violation:
    the gated function's :class:`KnownCallee` or an :class:`UnknownCallee`.
    """
    kind: VerdictKind
    locations: Tuple[Any, ...] = ()
    culprit: Optional[CalleeRef] = None

    @classmethod
    def violates(cls, location: Any, culprit: Optional[CalleeRef] = None) -> "Verdict":
        return cls(VerdictKind.VIOLATES, (location,), culprit)

    @property
    def is_violation(self) -> bool:
        return self.kind is VerdictKind.VIOLATES

    @property
    def establishes_init(self) -> bool:
        return self.kind is VerdictKind.ESTABLISHES_INIT

    def extended(self, location: Any) -> "Verdict":
        """Append an outer call site to a violation's chain."""
        if not self.is_violation:
            raise ValueError("only a violation carries a location chain")
        return Verdict(self.kind, self.locations + (location,), self.culprit)

    def __repr__(self) -> str:
        if self.is_violation:
            locs = ", ".join(str(loc) for loc in self.locations)
            return f"Violates[{locs}]"
        return "EstablishesInit" if self.establishes_init else "NoInformation"


ESTABLISHES_INIT = Verdict(VerdictKind.ESTABLISHES_INIT)
NO_INFORMATION = Verdict(VerdictKind.NO_INFORMATION)


# ===========================================================================
# CALL STACK
# ===========================================================================

class CallStack:
    """Functions under evaluation on the current recursive path.

    Membership is a set test; the order is kept for logging only.  Use
    :meth:`enter` so that a function is always removed again, including
    when the evaluation raises.
    """

    __slots__ = ("_members", "_order")

    def __init__(self, functions: Iterable[FunctionId] = ()) -> None:
        self._members: set = set()
        self._order: List[FunctionId] = []
        for fid in functions:
            self.push(fid)

    def __contains__(self, function_id: object) -> bool:
        return function_id in self._members

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[FunctionId]:
        return iter(self._order)

    def push(self, function_id: FunctionId) -> None:
        if function_id in self._members:
            raise ValueError(f"{function_id!r} is already on the call stack")
        self._members.add(function_id)
        self._order.append(function_id)

    def pop(self) -> FunctionId:
        function_id = self._order.pop()
        self._members.discard(function_id)
        return function_id

    @contextmanager
    def enter(self, function_id: FunctionId) -> Iterator["CallStack"]:
        self.push(function_id)
        try:
            yield self
        finally:
            self.pop()

    def copy(self) -> "CallStack":
        return CallStack(self._order)

    def snapshot(self) -> FrozenSet[FunctionId]:
        return frozenset(self._members)

    def path(self) -> Tuple[FunctionId, ...]:
        return tuple(self._order)

    def __repr__(self) -> str:
        return "CallStack<" + " -> ".join(str(f) for f in self._order) + ">"


# ===========================================================================
# ANALYSIS
# ===========================================================================

@dataclass
class AnalysisStats:
    evaluations: int = 0
    cycle_breaks: int = 0
    dataflow_runs: int = 0
    dataflow_iterations: int = 0
    memo_hits: int = 0
    unconverged: int = 0

    def as_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


class InitOrderAnalysis:
    """Walker and seen-init dataflow over one program.

    Parameters
    ----------
    program : ProgramModel
        The program; never modified.
    memoize : bool
        Cache verdicts keyed by ``(function id, call-stack contents)``.
        Off by default, in which case a function reached along several
        paths is re-evaluated on each of them.
    strategy : WorklistStrategy
        Worklist order for the dataflow solver.
    max_iterations : int
        Per-function bound on dataflow iterations.
    """

    def __init__(
        self,
        program: ProgramModel,
        *,
        memoize: bool = False,
        strategy: WorklistStrategy = WorklistStrategy.RPO,
        max_iterations: int = 100_000,
    ) -> None:
        self.program = program
        self.strategy = strategy
        self.max_iterations = max_iterations
        self.lattice = BooleanLattice()
        self.stats = AnalysisStats()
        self._memo: Optional[Dict[Tuple[FunctionId, FrozenSet[FunctionId]], Verdict]] = (
            {} if memoize else None
        )

    @property
    def memoize(self) -> bool:
        return self._memo is not None

    # ----- walker -----------------------------------------------------------

    def evaluate(self, function_id: FunctionId, call_stack: CallStack) -> Verdict:
        """Verdict for a call of *function_id* given the functions already
        under evaluation in *call_stack*.

        *call_stack* is restored to its previous contents on return.
        """
        self.stats.evaluations += 1
        if function_id in call_stack:
            self.stats.cycle_breaks += 1
            logger.debug("Recursion into %s via %r; no information",
                         self.program.display_name(function_id), call_stack)
            return NO_INFORMATION

        key = None
        if self._memo is not None:
            key = (function_id, call_stack.snapshot())
            cached = self._memo.get(key)
            if cached is not None:
                self.stats.memo_hits += 1
                return cached

        with call_stack.enter(function_id):
            verdict = self._evaluate_function(function_id, call_stack)

        if key is not None:
            self._memo[key] = verdict
        return verdict

    def _evaluate_function(self, function_id: FunctionId, call_stack: CallStack) -> Verdict:
        fn = self.program.get(function_id)
        if fn is None:
            logger.debug("No definition for %r; treated as opaque", function_id)
            return NO_INFORMATION
        if fn.is_initializer:
            return ESTABLISHES_INIT
        if not fn.has_body:
            return NO_INFORMATION

        cfg = FunctionCFG(fn)
        seen = self.seen_init(cfg, call_stack)

        for block in cfg.blocks():
            if not seen.is_reachable(block):
                continue
            term = cfg.terminator(block)
            if not isinstance(term, Call):
                continue
            if isinstance(term.callee, UnknownCallee):
                logger.debug("%s: indirect call at %s", fn.display_name, term.location)
                return Verdict.violates(term.location, term.callee)

            callee_id = term.callee.function_id
            callee = self.program.get(callee_id)
            if callee is not None and callee.is_gated and not seen.fact_at(block):
                logger.debug("%s: call to gated %s at %s before init",
                             fn.display_name, callee.display_name, term.location)
                return Verdict.violates(term.location, term.callee)

            inner = self.evaluate(callee_id, call_stack)
            if inner.is_violation:
                return inner.extended(term.location)

        return NO_INFORMATION

    # ----- seen-init dataflow ----------------------------------------------

    def seen_init(self, cfg: FunctionCFG, call_stack: CallStack) -> DataflowResult[bool]:
        """Per block: did the initializer certainly run before the block's
        terminator?

        Forward must-analysis over ``False ⊑ True``.  A call terminator gens
        ``True`` iff its callee's verdict is ``ESTABLISHES_INIT``; nothing
        kills.  The entry block starts at ``False``.
        """
        gens: Dict[BlockId, bool] = {}

        def transfer(block: BlockId, fact_in: bool) -> bool:
            term = cfg.terminator(block)
            if not isinstance(term, Call) or isinstance(term.callee, UnknownCallee):
                return fact_in
            gen = gens.get(block)
            if gen is None:
                verdict = self.evaluate(term.callee.function_id, call_stack.copy())
                gen = gens[block] = verdict.establishes_init
            return fact_in or gen

        solver = IntraproceduralSolver(
            cfg,
            self.lattice,
            transfer,
            confluence=Confluence.MEET,
            strategy=self.strategy,
            initial_value=False,
            max_iterations=self.max_iterations,
        )
        result = solver.solve()
        self.stats.dataflow_runs += 1
        self.stats.dataflow_iterations += result.iterations
        if not result.converged:
            self.stats.unconverged += 1
        return result


# ===========================================================================
# DRIVER
# ===========================================================================

@dataclass(frozen=True)
class Violation:
    """A gated (or indirect) call reachable from *entry_point* before
    initialization.

    ``locations[0]`` is the offending call; the rest lead outward to the
    call made by the entry point itself.
    """
    entry_point: FunctionId
    locations: Tuple[Any, ...]
    culprit: Optional[CalleeRef] = None

    @property
    def primary(self) -> Any:
        return self.locations[0]

    @property
    def chain(self) -> Tuple[Any, ...]:
        return self.locations[1:]

    @property
    def is_indirect(self) -> bool:
        return isinstance(self.culprit, UnknownCallee)


@dataclass
class AnalysisReport:
    violations: List[Violation] = field(default_factory=list)
    entry_points: List[FunctionId] = field(default_factory=list)
    initializers: List[FunctionId] = field(default_factory=list)
    gated: Optional[FunctionId] = None
    skipped: Optional[str] = None
    stats: AnalysisStats = field(default_factory=AnalysisStats)
    elapsed_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.violations


@contextmanager
def _recursion_headroom(depth: int) -> Iterator[None]:
    old = sys.getrecursionlimit()
    needed = depth * _FRAMES_PER_DESCENT + 200
    if needed > old:
        sys.setrecursionlimit(needed)
    try:
        yield
    finally:
        sys.setrecursionlimit(old)


def run_analysis(
    program: ProgramModel,
    *,
    memoize: bool = False,
    strategy: WorklistStrategy = WorklistStrategy.RPO,
    max_iterations: int = 100_000,
) -> AnalysisReport:
    """Evaluate every entry point, in declaration order, each with a fresh
    :class:`CallStack`.

    No entry point means no work.  Without a gated function the run is
    skipped.  Without an initializer every reachable gated call is
    reported.
    """
    t0 = time.monotonic()
    report = AnalysisReport(
        entry_points=program.tagged(Tag.ENTRY_POINT),
        initializers=program.tagged(Tag.INITIALIZER),
        gated=program.find_tagged(Tag.GATED),
    )

    if not report.entry_points:
        logger.info("No entry point in %r; nothing to analyse", program.name)
        report.skipped = "no entry point"
        return report
    if report.gated is None:
        logger.info("No gated function in %r; check skipped", program.name)
        report.skipped = "no gated function"
        return report
    if not report.initializers:
        logger.warning(
            "No initializer in %r; every reachable call to %s will be reported",
            program.name, program.display_name(report.gated),
        )

    if logger.isEnabledFor(logging.DEBUG):
        from .callgraph import CallGraph
        for cycle in CallGraph.from_program(program).recursive_cycles():
            logger.debug("Recursive cycle (cut conservatively): %s",
                         " -> ".join(program.display_name(f) for f in cycle))

    analysis = InitOrderAnalysis(
        program, memoize=memoize, strategy=strategy, max_iterations=max_iterations,
    )
    with _recursion_headroom(len(program)):
        for entry in report.entry_points:
            verdict = analysis.evaluate(entry, CallStack())
            if verdict.is_violation:
                logger.info("%s: violation, %d call(s) deep",
                            program.display_name(entry), len(verdict.locations))
                report.violations.append(
                    Violation(entry, verdict.locations, verdict.culprit)
                )
            else:
                logger.info("%s: ok", program.display_name(entry))

    report.stats = analysis.stats
    if report.stats.unconverged:
        logger.warning(
            "%d dataflow run(s) hit max_iterations=%d; unsettled blocks "
            "were treated as uninitialized",
            report.stats.unconverged, max_iterations,
        )
    report.elapsed_seconds = time.monotonic() - t0
    return report


def check_program(program: ProgramModel, **options: Any) -> List[Violation]:
    """Shorthand for ``run_analysis(program, **options).violations``."""
    return run_analysis(program, **options).violations
