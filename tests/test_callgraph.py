# tests/test_callgraph.py
"""
Tests for the whole-program call graph.
"""

import pytest

from initgate.callgraph import (
    CallGraph,
    CallResolutionKind,
    NodeKind,
    callgraph_summary,
    find_recursive_functions,
    unreachable_functions,
)
from initgate.program_model import Tag
from tests.conftest import (
    branch,
    call,
    gated_fn,
    icall,
    init_fn,
    loc,
    make_function,
    make_program,
    ret,
)


@pytest.fixture
def program():
    return make_program(
        make_function("main", [call("helper", 1, 1), icall(2, 2, via="cb"), ret()], Tag.ENTRY_POINT),
        make_function("helper", [call("init", 10, 1), call("printf", 11, 2), ret()]),
        make_function("a", [branch(1, 2), call("b", 20, 2), ret()]),
        make_function("b", [call("a", 30, 1), ret()]),
        make_function("rec", [call("rec", 40, 1), ret()]),
        init_fn(),
        gated_fn(),
    )


@pytest.fixture
def cg(program):
    return CallGraph.from_program(program)


class TestConstruction:

    def test_nodes(self, cg):
        assert cg.node("main").kind is NodeKind.FUNCTION
        assert cg.node("printf").kind is NodeKind.EXTERNAL
        assert cg.functions_by_name("helper") == [cg.node("helper")]

    def test_entry_edges(self, cg):
        assert [n.id for n in cg.entry.callees] == ["main"]

    def test_call_edges_carry_locations(self, cg):
        (edge,) = cg.node("main").out_edges[:1]
        assert edge.callee is cg.node("helper")
        assert edge.location == loc(1)
        assert edge.resolution is CallResolutionKind.DIRECT

    def test_indirect_call_goes_to_unknown(self, cg):
        edge = cg.node("main").out_edges[1]
        assert edge.callee is cg.unknown
        assert edge.resolution is CallResolutionKind.UNRESOLVED

    def test_callers(self, cg):
        assert [n.id for n in cg.node("init").callers] == ["helper"]
        assert cg.node("foo").is_root
        assert cg.node("foo").is_leaf


class TestQueries:

    def test_transitive_callees(self, cg):
        reached = {n.id for n in cg.transitive_callees(cg.node("main"))}
        assert reached == {"helper", "init", "printf", CallGraph.UNKNOWN_ID}

    def test_transitive_callers(self, cg):
        assert {n.id for n in cg.transitive_callers(cg.node("init"))} == {
            "helper", "main", CallGraph.ENTRY_ID,
        }

    def test_recursion(self, cg):
        assert cg.is_recursive(cg.node("a"))
        assert cg.node("rec").is_recursive
        assert not cg.is_recursive(cg.node("main"))
        assert cg.recursive_cycles() == [["a", "b"], ["rec"]]

    def test_find_recursive_functions(self, cg):
        groups = sorted(sorted(n.id for n in g) for g in find_recursive_functions(cg))
        assert groups == [["a", "b"], ["rec"]]

    def test_roots_and_leaves(self, cg):
        assert [n.id for n in cg.roots] == ["main", "foo"]
        assert [n.id for n in cg.leaves] == ["init", "foo", "printf"]

    def test_unreachable(self, cg):
        assert {n.id for n in unreachable_functions(cg)} == {"a", "b", "rec", "foo"}

    def test_scc_order_callees_first(self):
        cg = CallGraph.from_program(make_program(
            make_function("main", [call("mid", 1, 1), ret()], Tag.ENTRY_POINT),
            make_function("mid", [call("leaf", 2, 1), ret()]),
            make_function("leaf", [ret()]),
        ))
        order = [scc[0].id for scc in cg.strongly_connected_components()]
        assert order.index("leaf") < order.index("mid") < order.index("main")


class TestReporting:

    def test_statistics(self, cg):
        stats = cg.statistics()
        assert stats["functions"] == 7
        assert stats["external_functions"] == 1
        assert stats["entry_points"] == 1
        assert stats["call_sites"] == 7
        assert stats["unresolved_calls"] == 1
        assert stats["direct_calls"] == 6
        assert stats["recursive_sccs"] == 1
        assert stats["self_recursive_functions"] == 1

    def test_summary(self, cg):
        text = callgraph_summary(cg)
        assert text.startswith("Call Graph Summary")
        assert "helper (function): calls [init, printf], called by [main]" in text

    def test_dot(self, cg):
        dot = cg.to_dot(title="demo")
        assert dot.startswith("digraph CallGraph {")
        assert 'label="demo";' in dot
        assert '"main" -> "helper" [label="test.c:1"];' in dot
        assert "style=dotted, color=red" in dot
        assert dot.rstrip().endswith("}")

    def test_dot_hides_unused_unknown_node(self):
        cg = CallGraph.from_program(make_program(
            make_function("main", [ret()], Tag.ENTRY_POINT),
        ))
        assert CallGraph.UNKNOWN_ID not in cg.to_dot()
