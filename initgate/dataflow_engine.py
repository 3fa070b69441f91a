"""
initgate.dataflow_engine
========================

A small, generic, lattice-based dataflow framework over any graph that
satisfies :class:`initgate.program_model.ControlFlowGraph`.

Theory
------
A forward dataflow analysis is defined by:

1.  A **lattice** ``(L, ⊑, ⊥, ⊤, ⊔, ⊓)``.
2.  A **transfer function** ``f : Node × L → L`` giving the fact after a
    node from the fact before it.
3.  An **initial value** flowing into the entry node.
4.  A **confluence operator**: ``⊔`` (join) for may-analyses, ``⊓`` (meet)
    for must-analyses.

The engine iterates until no node's incoming fact changes.

For must-analyses the facts of non-entry nodes start at ``⊤`` so that a
predecessor not yet visited does not drag a merge down; the result is the
greatest fixpoint.  For may-analyses they start at ``⊥``.

Nodes that cannot be reached from the entry are never transferred.  They
keep their starting value and do not take part in merges of reachable
nodes, so a must-analysis treats them as vacuously satisfying the fact.

Worklist algorithms
-------------------
``FIFO``
    Breadth-first.
``LIFO``
    Depth-first.
``RPO`` (Reverse Post-Order)
    Processes predecessors before successors; the default.

All strategies reach the same fixpoint, only the iteration count differs.

Public API
----------
    Lattice                 - abstract base for lattice definitions
    BooleanLattice          - ``False ⊑ True``
    Confluence              - join / meet
    WorklistStrategy        - iteration order enum
    DataflowResult          - per-node facts plus solver statistics
    IntraproceduralSolver   - single-function fixpoint engine
    run_forward_analysis    - convenience function

Usage example
-------------
::

    from initgate.program_model import FunctionCFG
    from initgate.dataflow_engine import (
        BooleanLattice, Confluence, run_forward_analysis,
    )

    cfg = FunctionCFG(fn)

    def transfer(block, fact_in):
        term = cfg.terminator(block)
        return fact_in or is_interesting(term)

    result = run_forward_analysis(
        cfg, BooleanLattice(), transfer,
        confluence=Confluence.MEET, initial_value=False,
    )
    for block in cfg.blocks():
        print(block, result.fact_at(block))
"""

from __future__ import annotations

import abc
import enum
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    FrozenSet,
    Generic,
    Hashable,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
    TypeVar,
)

logger = logging.getLogger(__name__)


# ===========================================================================
# TYPE VARIABLES
# ===========================================================================

L = TypeVar("L")          # Lattice value type


# ===========================================================================
# CONFLUENCE AND WORKLIST STRATEGY
# ===========================================================================

class Confluence(enum.Enum):
    """How facts from several predecessors are combined."""
    JOIN = "join"         # may-analysis
    MEET = "meet"         # must-analysis


class WorklistStrategy(enum.Enum):
    """Strategy for selecting the next worklist node."""
    FIFO = "fifo"
    LIFO = "lifo"
    RPO  = "rpo"        # Reverse post-order (best for forward)


# ===========================================================================
# LATTICE - ABSTRACT BASE
# ===========================================================================

class Lattice(abc.ABC, Generic[L]):
    """Abstract base class for a dataflow lattice.

    A lattice must provide ``bottom()``, ``top()``, ``join(a, b)`` and
    ``leq(a, b)``.  ``meet`` is needed only for must-analyses.
    """

    @abc.abstractmethod
    def bottom(self) -> L:
        """Return the least element ⊥."""
        ...

    @abc.abstractmethod
    def top(self) -> L:
        """Return the greatest element ⊤."""
        ...

    @abc.abstractmethod
    def join(self, a: L, b: L) -> L:
        """Return the least upper bound ``a ⊔ b``."""
        ...

    @abc.abstractmethod
    def leq(self, a: L, b: L) -> bool:
        """Return ``True`` iff ``a ⊑ b``."""
        ...

    def meet(self, a: L, b: L) -> L:
        """Return the greatest lower bound ``a ⊓ b``.

        Default implementation raises ``NotImplementedError``.
        """
        raise NotImplementedError("meet() not implemented for this lattice")

    def eq(self, a: L, b: L) -> bool:
        """Equality: ``a = b`` iff ``a ⊑ b`` and ``b ⊑ a``."""
        return self.leq(a, b) and self.leq(b, a)

    def is_bottom(self, a: L) -> bool:
        return self.eq(a, self.bottom())

    def is_top(self, a: L) -> bool:
        return self.eq(a, self.top())

    def combine(self, confluence: Confluence, a: L, b: L) -> L:
        if confluence is Confluence.MEET:
            return self.meet(a, b)
        return self.join(a, b)


class BooleanLattice(Lattice[bool]):
    """Two-point lattice ``False ⊑ True``; join is ``or``, meet is ``and``."""

    def bottom(self) -> bool:
        return False

    def top(self) -> bool:
        return True

    def join(self, a: bool, b: bool) -> bool:
        return a or b

    def meet(self, a: bool, b: bool) -> bool:
        return a and b

    def leq(self, a: bool, b: bool) -> bool:
        return (not a) or b

    def eq(self, a: bool, b: bool) -> bool:
        return a == b


# ===========================================================================
# DATAFLOW RESULT
# ===========================================================================

@dataclass
class DataflowResult(Generic[L]):
    """Container for dataflow analysis results.

    Attributes
    ----------
    facts_in : dict
        Map from CFG node → incoming (pre-node) dataflow fact.
    facts_out : dict
        Map from CFG node → outgoing (post-node) dataflow fact.
    reachable : frozenset
        Nodes reachable from the entry node.
    iterations : int
        Number of worklist iterations performed.
    converged : bool
        Whether the analysis reached a fixpoint (vs. hitting the limit).
    elapsed_seconds : float
        Wall-clock time.
    """
    facts_in: Dict[Any, L] = field(default_factory=dict)
    facts_out: Dict[Any, L] = field(default_factory=dict)
    reachable: FrozenSet[Any] = frozenset()
    iterations: int = 0
    converged: bool = False
    elapsed_seconds: float = 0.0

    def fact_at(self, node, *, before: bool = True) -> L:
        """Return the fact at a node.

        Parameters
        ----------
        node :
            The CFG node.
        before : bool
            If ``True``, return the incoming fact (before the node's
            transfer).  If ``False``, return the outgoing fact.
        """
        if before:
            return self.facts_in[node]
        return self.facts_out[node]

    def is_reachable(self, node) -> bool:
        return node in self.reachable

    def items_in(self) -> Iterable[Tuple[Any, L]]:
        """Iterate over ``(node, fact_in)`` pairs."""
        return self.facts_in.items()


# ===========================================================================
# INTRAPROCEDURAL SOLVER
# ===========================================================================

class IntraproceduralSolver(Generic[L]):
    """Forward fixpoint engine for one control-flow graph.

    Parameters
    ----------
    cfg : ControlFlowGraph
        Anything with ``entry``, ``blocks()``, ``predecessors(n)`` and
        ``successors(n)``.
    lattice : Lattice[L]
        The dataflow lattice.
    transfer : callable(node, L) → L
        The transfer function.  It is called at least once for every
        reachable node.
    confluence : Confluence
        Join (may) or meet (must).
    strategy : WorklistStrategy
        Worklist iteration order.
    initial_value : L, optional
        Fact flowing into the entry node.  Defaults to ``lattice.bottom()``.
    max_iterations : int
        Safety bound on iterations.
    """

    def __init__(
        self,
        cfg,
        lattice: Lattice[L],
        transfer: Callable[[Hashable, L], L],
        confluence: Confluence = Confluence.JOIN,
        strategy: WorklistStrategy = WorklistStrategy.RPO,
        initial_value: Optional[L] = None,
        max_iterations: int = 1_000_000,
    ) -> None:
        self.cfg = cfg
        self.lattice = lattice
        self.transfer = transfer
        self.confluence = confluence
        self.strategy = strategy
        self.initial_value = (
            initial_value if initial_value is not None
            else lattice.bottom()
        )
        self.max_iterations = max_iterations

        self._nodes: List = list(cfg.blocks())
        self._entry = cfg.entry

    def solve(self) -> DataflowResult[L]:
        """Run the analysis to fixpoint.

        Returns
        -------
        DataflowResult[L]
        """
        t0 = time.monotonic()
        lat = self.lattice

        start = lat.top() if self.confluence is Confluence.MEET else lat.bottom()
        facts_in: Dict[Any, L] = {n: start for n in self._nodes}
        facts_out: Dict[Any, L] = {n: start for n in self._nodes}

        reachable = self._reachable()
        worklist = self._build_initial_worklist(reachable)
        in_worklist: Set = set(worklist)
        visited: Set = set()

        iterations = 0
        while worklist and iterations < self.max_iterations:
            node = self._pop_worklist(worklist, in_worklist)
            iterations += 1

            merged = self._merge_incoming(node, reachable, facts_out)

            if node in visited and lat.eq(merged, facts_in[node]):
                continue
            visited.add(node)
            facts_in[node] = merged

            new_out = self.transfer(node, merged)
            changed = not lat.eq(new_out, facts_out[node])
            facts_out[node] = new_out

            if changed:
                for succ in self.cfg.successors(node):
                    if succ in reachable and succ not in in_worklist:
                        worklist.append(succ)
                        in_worklist.add(succ)

        converged = not worklist
        if not converged:
            logger.warning(
                "Dataflow did not converge after %d iterations (%d nodes)",
                iterations, len(self._nodes),
            )
            if self.confluence is Confluence.MEET:
                self._drop_unsettled(
                    set(worklist) | (reachable - visited), facts_in, facts_out,
                )

        return DataflowResult(
            facts_in=facts_in,
            facts_out=facts_out,
            reachable=frozenset(reachable),
            iterations=iterations,
            converged=converged,
            elapsed_seconds=time.monotonic() - t0,
        )

    # ----- Internal helpers -------------------------------------------------

    def _merge_incoming(self, node, reachable: Set, facts_out: Dict) -> L:
        """Combine facts of reachable predecessors (and the initial value
        at the entry node)."""
        lat = self.lattice
        merged: Optional[L] = None
        for pred in self.cfg.predecessors(node):
            if pred not in reachable:
                continue
            fact = facts_out[pred]
            merged = fact if merged is None else lat.combine(self.confluence, merged, fact)
        if node == self._entry:
            if merged is None:
                return self.initial_value
            return lat.combine(self.confluence, merged, self.initial_value)
        if merged is None:
            # reachable non-entry nodes always have a reachable predecessor
            return lat.top() if self.confluence is Confluence.MEET else lat.bottom()
        return merged

    def _drop_unsettled(self, pending: Set, facts_in: Dict, facts_out: Dict) -> None:
        """Lower every node downstream of *pending* to bottom.

        Used when a must-analysis stops early; ``top`` facts there are
        unproved.
        """
        bottom = self.lattice.bottom()
        stack = list(pending)
        seen: Set = set()
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            facts_in[node] = bottom
            facts_out[node] = bottom
            stack.extend(s for s in self.cfg.successors(node) if s not in seen)
        logger.debug("Lowered %d unsettled node(s) to bottom", len(seen))

    def _reachable(self) -> Set:
        seen: Set = set()
        if self._entry is None:
            return seen
        stack = [self._entry]
        while stack:
            node = stack.pop()
            if node in seen:
                continue
            seen.add(node)
            stack.extend(s for s in self.cfg.successors(node) if s not in seen)
        return seen

    def _build_initial_worklist(self, reachable: Set) -> Deque:
        """Build the initial worklist based on the chosen strategy."""
        if self.strategy == WorklistStrategy.RPO:
            order = self._reverse_postorder()
        else:
            order = [n for n in self._nodes if n in reachable]
        return deque(order)

    def _pop_worklist(self, worklist: Deque, in_worklist: Set):
        """Pop the next node from the worklist."""
        if self.strategy == WorklistStrategy.LIFO:
            node = worklist.pop()
        else:
            node = worklist.popleft()
        in_worklist.discard(node)
        return node

    def _reverse_postorder(self) -> List:
        """Reverse post-order of the nodes reachable from the entry."""
        if self._entry is None:
            return []
        visited: Set = {self._entry}
        order: List = []
        stack: List[Tuple[Any, Iterable]] = [(self._entry, iter(self.cfg.successors(self._entry)))]
        while stack:
            node, succs = stack[-1]
            for succ in succs:
                if succ not in visited:
                    visited.add(succ)
                    stack.append((succ, iter(self.cfg.successors(succ))))
                    break
            else:
                stack.pop()
                order.append(node)
        order.reverse()
        return order


# ===========================================================================
# CONVENIENCE FUNCTIONS
# ===========================================================================

def run_forward_analysis(
    cfg,
    lattice: Lattice[L],
    transfer: Callable[[Hashable, L], L],
    **kwargs: Any,
) -> DataflowResult[L]:
    """Build an :class:`IntraproceduralSolver` and solve it."""
    return IntraproceduralSolver(cfg, lattice, transfer, **kwargs).solve()
