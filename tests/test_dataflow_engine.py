# tests/test_dataflow_engine.py
"""
Tests for the generic lattice / worklist solver.
"""

import pytest

from initgate.dataflow_engine import (
    BooleanLattice,
    Confluence,
    IntraproceduralSolver,
    Lattice,
    WorklistStrategy,
    run_forward_analysis,
)
from initgate.program_model import FunctionCFG
from tests.conftest import branch, goto, make_function, ret


def _cfg(terminators):
    return FunctionCFG(make_function("f", terminators))


def _gen_at(*gen_nodes, calls=None):
    def transfer(node, fact):
        if calls is not None:
            calls.append(node)
        return fact or node in gen_nodes
    return transfer


@pytest.fixture
def diamond():
    return _cfg([branch(1, 2), goto(3), goto(3), ret()])


@pytest.fixture
def loop():
    # 0 -> 1 -> {2 -> 1, 3}
    return _cfg([goto(1), branch(2, 3), goto(1), ret()])


class TestBooleanLattice:

    def test_order(self):
        lat = BooleanLattice()
        assert lat.bottom() is False
        assert lat.top() is True
        assert lat.leq(False, True)
        assert not lat.leq(True, False)

    def test_join_meet(self):
        lat = BooleanLattice()
        assert lat.join(False, True) is True
        assert lat.meet(False, True) is False
        assert lat.combine(Confluence.MEET, True, True) is True
        assert lat.combine(Confluence.JOIN, False, False) is False

    def test_is_bottom_top(self):
        lat = BooleanLattice()
        assert lat.is_bottom(False)
        assert lat.is_top(True)

    def test_meet_not_implemented_by_default(self):
        class JoinOnly(Lattice):
            def bottom(self):
                return 0

            def top(self):
                return 1

            def join(self, a, b):
                return max(a, b)

            def leq(self, a, b):
                return a <= b

        with pytest.raises(NotImplementedError):
            JoinOnly().meet(0, 1)
        assert JoinOnly().eq(1, 1)


class TestMustAnalysis:

    def test_one_branch_is_not_enough(self, diamond):
        result = run_forward_analysis(
            diamond, BooleanLattice(), _gen_at(1),
            confluence=Confluence.MEET, initial_value=False,
        )
        assert result.converged
        assert result.fact_at(1) is False
        assert result.fact_at(1, before=False) is True
        assert result.fact_at(3) is False

    def test_both_branches(self, diamond):
        result = run_forward_analysis(
            diamond, BooleanLattice(), _gen_at(1, 2),
            confluence=Confluence.MEET, initial_value=False,
        )
        assert result.fact_at(3) is True

    def test_entry_fact_is_initial_value(self, diamond):
        result = run_forward_analysis(
            diamond, BooleanLattice(), _gen_at(),
            confluence=Confluence.MEET, initial_value=False,
        )
        assert result.fact_at(0) is False

    def test_loop_back_edge_does_not_help(self, loop):
        result = run_forward_analysis(
            loop, BooleanLattice(), _gen_at(2),
            confluence=Confluence.MEET, initial_value=False,
        )
        assert result.fact_at(1) is False
        assert result.fact_at(3) is False
        assert result.fact_at(2, before=False) is True


class TestMayAnalysis:

    def test_join_over_loop(self, loop):
        result = run_forward_analysis(loop, BooleanLattice(), _gen_at(2))
        assert result.fact_at(1) is True
        assert result.fact_at(3) is True
        assert result.fact_at(0) is False


class TestSolverMechanics:

    def test_unreachable_nodes_are_not_transferred(self):
        cfg = _cfg([ret(), goto(0)])
        calls = []
        result = IntraproceduralSolver(
            cfg, BooleanLattice(), _gen_at(calls=calls),
            confluence=Confluence.MEET, initial_value=False,
        ).solve()
        assert calls == [0]
        assert result.is_reachable(0)
        assert not result.is_reachable(1)
        # untouched must-facts stay at top
        assert result.fact_at(1) is True

    def test_unreachable_predecessor_ignored_in_merge(self):
        # block 2 is dead but jumps into 1
        cfg = _cfg([goto(1), ret(), goto(1)])
        result = run_forward_analysis(
            cfg, BooleanLattice(), _gen_at(),
            confluence=Confluence.MEET, initial_value=False,
        )
        assert result.fact_at(1) is False

    @pytest.mark.parametrize("strategy", list(WorklistStrategy))
    def test_strategies_reach_same_fixpoint(self, loop, strategy):
        result = run_forward_analysis(
            loop, BooleanLattice(), _gen_at(2),
            confluence=Confluence.MEET, initial_value=False, strategy=strategy,
        )
        assert result.converged
        assert dict(result.items_in()) == {0: False, 1: False, 2: False, 3: False}

    def test_iteration_limit(self, loop):
        result = run_forward_analysis(
            loop, BooleanLattice(), _gen_at(2),
            confluence=Confluence.MEET, initial_value=False, max_iterations=1,
        )
        assert not result.converged
        assert result.iterations == 1

    def test_capped_must_analysis_drops_unsettled_facts(self, diamond):
        result = run_forward_analysis(
            diamond, BooleanLattice(), _gen_at(0),
            confluence=Confluence.MEET, initial_value=False, max_iterations=1,
        )
        assert not result.converged
        assert result.fact_at(0, before=False) is True
        assert [result.fact_at(n) for n in (1, 2, 3)] == [False, False, False]

    def test_capped_may_analysis_keeps_facts(self, diamond):
        result = run_forward_analysis(
            diamond, BooleanLattice(), _gen_at(0), max_iterations=1,
        )
        assert not result.converged
        assert result.fact_at(3) is False

    def test_every_reachable_node_transferred_at_least_once(self, diamond):
        calls = []
        run_forward_analysis(diamond, BooleanLattice(), _gen_at(calls=calls))
        assert set(calls) == {0, 1, 2, 3}
