"""
initgate.callgraph
==================

Whole-program call graph derived from a :class:`ProgramModel`.

The call graph is a directed graph where:

- **Nodes** are the program's functions, plus synthetic nodes for callees
  that have no definition, for indirect calls, and for the program entry.
- **Edges** represent call sites, annotated with the call location and the
  resolution kind.

Resolution kinds
----------------
``DIRECT``
    The callee is statically known.
``UNRESOLVED``
    An indirect call.  An edge to the synthetic ``UNKNOWN`` node is
    created.

The analysis itself never needs this graph; it walks call terminators
directly.  The graph serves the ``callgraph`` command, DOT export and the
debug log of recursive cycles (each cycle is a place where the analysis
answers conservatively).

Public API
----------
    CallGraphNode       - a node in the call graph
    CallGraphEdge       - a directed edge (call site)
    CallGraph           - the whole-program call graph
    CallResolutionKind  - enum of resolution methods
    NodeKind            - enum of node classifications
    callgraph_summary   - human-readable text summary
    find_recursive_functions - sets of mutually recursive functions
    unreachable_functions    - functions no entry point can reach

Typical usage::

    from initgate.callgraph import CallGraph, callgraph_summary

    cg = CallGraph.from_program(program)
    print(callgraph_summary(cg))
    print(cg.to_dot())
"""

from __future__ import annotations

import enum
import sys
from collections import OrderedDict, defaultdict, deque
from typing import (
    Any,
    Deque,
    Dict,
    List,
    Optional,
    Set,
)

from .program_model import (
    FunctionId,
    KnownCallee,
    ProgramModel,
)


# ---------------------------------------------------------------------------
# Resolution kinds
# ---------------------------------------------------------------------------

class CallResolutionKind(enum.Enum):
    """How a call edge was resolved."""

    DIRECT     = "direct"
    UNRESOLVED = "unresolved"


# ---------------------------------------------------------------------------
# Node kinds
# ---------------------------------------------------------------------------

class NodeKind(enum.Enum):
    """Classification of a call-graph node."""

    FUNCTION  = "function"      # defined, with a body
    EXTERNAL  = "external"      # opaque or undefined callee
    UNKNOWN   = "unknown"       # synthetic sink for indirect calls
    ENTRY     = "entry"         # synthetic root calling every entry point


# ---------------------------------------------------------------------------
# CallGraphNode
# ---------------------------------------------------------------------------

class CallGraphNode:
    """A node in the call graph.

    Attributes
    ----------
    id :
        Function id for program functions; a descriptive string for
        synthetic nodes.
    name : str
        Human-readable name.
    kind : NodeKind
        What this node represents.
    out_edges, in_edges : list[CallGraphEdge]
        Outgoing and incoming call edges.
    """

    __slots__ = ("id", "name", "kind", "out_edges", "in_edges")

    def __init__(self, node_id: Any, name: str, kind: NodeKind = NodeKind.FUNCTION) -> None:
        self.id = node_id
        self.name: str = name
        self.kind: NodeKind = kind
        self.out_edges: List[CallGraphEdge] = []
        self.in_edges: List[CallGraphEdge] = []

    # ----- queries ----------------------------------------------------------

    @property
    def callees(self) -> List["CallGraphNode"]:
        return [e.callee for e in self.out_edges]

    @property
    def callers(self) -> List["CallGraphNode"]:
        return [e.caller for e in self.in_edges]

    @property
    def is_leaf(self) -> bool:
        return len(self.out_edges) == 0

    @property
    def is_root(self) -> bool:
        return len(self.in_edges) == 0

    @property
    def is_recursive(self) -> bool:
        """Does this function call itself (directly)?"""
        return any(e.callee is self for e in self.out_edges)

    def __repr__(self) -> str:
        return f"CallGraphNode({self.name!r}, kind={self.kind.value})"

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other) -> bool:
        if isinstance(other, CallGraphNode):
            return self.id == other.id
        return NotImplemented


# ---------------------------------------------------------------------------
# CallGraphEdge
# ---------------------------------------------------------------------------

class CallGraphEdge:
    """A call site.  ``location`` is ``None`` for synthetic entry edges."""

    __slots__ = ("caller", "callee", "location", "resolution")

    def __init__(
        self,
        caller: CallGraphNode,
        callee: CallGraphNode,
        location: Any = None,
        resolution: CallResolutionKind = CallResolutionKind.DIRECT,
    ) -> None:
        self.caller = caller
        self.callee = callee
        self.location = location
        self.resolution = resolution

    def __repr__(self) -> str:
        loc = f" @ {self.location}" if self.location is not None else ""
        return (
            f"CallGraphEdge({self.caller.name} -> {self.callee.name}, "
            f"{self.resolution.value}{loc})"
        )


# ---------------------------------------------------------------------------
# CallGraph
# ---------------------------------------------------------------------------

class CallGraph:
    """Whole-program call graph.

    Attributes
    ----------
    nodes : OrderedDict
        All nodes, keyed by node id, in program order.
    edges : list[CallGraphEdge]
        All edges, in program order.
    entry : CallGraphNode
        Synthetic root with one edge per tagged entry point.
    unknown : CallGraphNode
        Synthetic sink for indirect calls.
    """

    UNKNOWN_ID = "__UNKNOWN__"
    ENTRY_ID = "__ENTRY__"

    def __init__(self, name: str = "") -> None:
        self.name = name
        self.nodes: "OrderedDict[Any, CallGraphNode]" = OrderedDict()
        self.edges: List[CallGraphEdge] = []
        self.entry = CallGraphNode(self.ENTRY_ID, "<entry>", NodeKind.ENTRY)
        self.unknown = CallGraphNode(self.UNKNOWN_ID, "<unknown>", NodeKind.UNKNOWN)
        self.nodes[self.entry.id] = self.entry
        self.nodes[self.unknown.id] = self.unknown
        self._name_index: Dict[str, List[CallGraphNode]] = defaultdict(list)

    @classmethod
    def from_program(cls, program: ProgramModel) -> "CallGraph":
        cg = cls(program.name)
        for fn in program:
            kind = NodeKind.FUNCTION if fn.has_body else NodeKind.EXTERNAL
            cg.get_or_create_node(fn.id, fn.display_name, kind)
        for fn in program:
            if fn.is_entry_point:
                cg.add_edge(cg.entry, cg.nodes[fn.id])
        for fn in program:
            caller = cg.nodes[fn.id]
            for _block, call in fn.call_sites():
                if isinstance(call.callee, KnownCallee):
                    callee = cg.get_or_create_node(
                        call.callee.function_id, str(call.callee.function_id),
                        NodeKind.EXTERNAL,
                    )
                    cg.add_edge(caller, callee, call.location)
                else:
                    cg.add_edge(caller, cg.unknown, call.location,
                                CallResolutionKind.UNRESOLVED)
        return cg

    # ----- node / edge management -------------------------------------------

    def get_or_create_node(
        self,
        node_id: Any,
        name: Optional[str] = None,
        kind: NodeKind = NodeKind.FUNCTION,
    ) -> CallGraphNode:
        """Return the node for *node_id*, creating it if needed."""
        node = self.nodes.get(node_id)
        if node is not None:
            return node
        node = CallGraphNode(node_id, name or str(node_id), kind)
        self.nodes[node_id] = node
        self._name_index[node.name].append(node)
        return node

    def add_edge(
        self,
        caller: CallGraphNode,
        callee: CallGraphNode,
        location: Any = None,
        resolution: CallResolutionKind = CallResolutionKind.DIRECT,
    ) -> CallGraphEdge:
        """Create a call edge and wire it up."""
        edge = CallGraphEdge(caller, callee, location, resolution)
        self.edges.append(edge)
        caller.out_edges.append(edge)
        callee.in_edges.append(edge)
        return edge

    # ----- lookups ----------------------------------------------------------

    def node(self, function_id: FunctionId) -> Optional[CallGraphNode]:
        return self.nodes.get(function_id)

    def functions_by_name(self, name: str) -> List[CallGraphNode]:
        return list(self._name_index.get(name, []))

    def _is_synthetic(self, node: CallGraphNode) -> bool:
        return node.kind in (NodeKind.UNKNOWN, NodeKind.ENTRY)

    @property
    def roots(self) -> List[CallGraphNode]:
        """Function nodes called only from the synthetic entry, or by nobody."""
        return [
            n for n in self.nodes.values()
            if not self._is_synthetic(n)
            and all(e.caller is self.entry for e in n.in_edges)
        ]

    @property
    def leaves(self) -> List[CallGraphNode]:
        """Nodes with no callees."""
        return [
            n for n in self.nodes.values()
            if n.is_leaf and not self._is_synthetic(n)
        ]

    # ----- whole-graph queries ----------------------------------------------

    def transitive_callees(self, node: CallGraphNode) -> Set[CallGraphNode]:
        """Return all nodes transitively reachable from *node*."""
        visited: Set[CallGraphNode] = set()
        worklist: Deque[CallGraphNode] = deque(node.callees)
        while worklist:
            n = worklist.popleft()
            if n in visited:
                continue
            visited.add(n)
            worklist.extend(n.callees)
        return visited

    def transitive_callers(self, node: CallGraphNode) -> Set[CallGraphNode]:
        """Return all nodes that transitively call *node*."""
        visited: Set[CallGraphNode] = set()
        worklist: Deque[CallGraphNode] = deque(node.callers)
        while worklist:
            n = worklist.popleft()
            if n in visited:
                continue
            visited.add(n)
            worklist.extend(n.callers)
        return visited

    def is_recursive(self, node: CallGraphNode) -> bool:
        """Is *node* part of a (possibly indirect) recursive cycle?"""
        return node in self.transitive_callees(node)

    def strongly_connected_components(self) -> List[List[CallGraphNode]]:
        """Compute SCCs using Tarjan's algorithm.

        Returns a list of SCCs in reverse topological order (callees before
        callers).
        """
        index_counter = [0]
        stack: List[CallGraphNode] = []
        lowlink: Dict[Any, int] = {}
        index: Dict[Any, int] = {}
        on_stack: Set[Any] = set()
        result: List[List[CallGraphNode]] = []

        def strongconnect(v: CallGraphNode):
            index[v.id] = index_counter[0]
            lowlink[v.id] = index_counter[0]
            index_counter[0] += 1
            stack.append(v)
            on_stack.add(v.id)

            for w in v.callees:
                if w.id not in index:
                    strongconnect(w)
                    lowlink[v.id] = min(lowlink[v.id], lowlink[w.id])
                elif w.id in on_stack:
                    lowlink[v.id] = min(lowlink[v.id], index[w.id])

            if lowlink[v.id] == index[v.id]:
                scc: List[CallGraphNode] = []
                while True:
                    w = stack.pop()
                    on_stack.discard(w.id)
                    scc.append(w)
                    if w.id == v.id:
                        break
                result.append(scc)

        sys_limit = sys.getrecursionlimit()
        needed = len(self.nodes) + 100
        if needed > sys_limit:
            sys.setrecursionlimit(needed)
        try:
            for v in self.nodes.values():
                if v.id not in index:
                    strongconnect(v)
        finally:
            sys.setrecursionlimit(sys_limit)
        return result

    def recursive_cycles(self) -> List[List[FunctionId]]:
        """Function ids of each recursive SCC, in program order within a
        cycle."""
        order = {nid: i for i, nid in enumerate(self.nodes)}
        cycles = []
        for group in find_recursive_functions(self):
            cycles.append([n.id for n in sorted(group, key=lambda n: order[n.id])])
        return cycles

    # ----- statistics -------------------------------------------------------

    def statistics(self) -> Dict[str, Any]:
        """Return a dict with summary statistics."""
        n_func = sum(1 for n in self.nodes.values() if n.kind == NodeKind.FUNCTION)
        n_ext = sum(1 for n in self.nodes.values() if n.kind == NodeKind.EXTERNAL)
        call_edges = [e for e in self.edges if e.caller is not self.entry]
        n_direct = sum(1 for e in call_edges
                       if e.resolution == CallResolutionKind.DIRECT)
        n_unresolved = sum(1 for e in call_edges
                           if e.resolution == CallResolutionKind.UNRESOLVED)
        recursive = find_recursive_functions(self)
        return {
            "functions": n_func,
            "external_functions": n_ext,
            "total_nodes": len(self.nodes),
            "call_sites": len(call_edges),
            "direct_calls": n_direct,
            "unresolved_calls": n_unresolved,
            "recursive_sccs": sum(1 for s in recursive if len(s) > 1),
            "self_recursive_functions": sum(
                1 for n in self.nodes.values() if n.is_recursive
            ),
            "entry_points": len(self.entry.out_edges),
            "unreachable_functions": len(unreachable_functions(self)),
        }

    # ----- serialisation ----------------------------------------------------

    def to_dot(self, title: Optional[str] = None) -> str:
        """Return a Graphviz DOT representation."""
        lines = ["digraph CallGraph {"]
        lines.append("  rankdir=TB;")
        if title:
            lines.append(f'  label="{title}";')
        lines.append('  node [shape=box, fontname="Helvetica", fontsize=10];')

        kind_attrs = {
            NodeKind.FUNCTION: 'style=filled, fillcolor="#ddeeff"',
            NodeKind.EXTERNAL: 'style=filled, fillcolor="#fff3cd", shape=ellipse',
            NodeKind.UNKNOWN:  'style=filled, fillcolor="#ffcccc", shape=diamond',
            NodeKind.ENTRY:    'style=filled, fillcolor="#ccffcc", shape=invhouse',
        }
        for n in self.nodes.values():
            if n.kind == NodeKind.UNKNOWN and not n.in_edges:
                continue
            attrs = kind_attrs.get(n.kind, "")
            escaped = n.name.replace('"', '\\"')
            lines.append(f'  "{n.id}" [label="{escaped}", {attrs}];')

        res_attrs = {
            CallResolutionKind.DIRECT: "",
            CallResolutionKind.UNRESOLVED: ", style=dotted, color=red",
        }
        for e in self.edges:
            attrs = res_attrs.get(e.resolution, "")
            elabel = e.resolution.value
            if e.location is not None:
                elabel = str(e.location).replace('"', '\\"')
            lines.append(
                f'  "{e.caller.id}" -> "{e.callee.id}" '
                f'[label="{elabel}"{attrs}];'
            )
        lines.append("}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"CallGraph(nodes={len(self.nodes)}, edges={len(self.edges)})"


# ===========================================================================
# HELPERS
# ===========================================================================

def callgraph_summary(cg: CallGraph) -> str:
    """Return a human-readable multi-line summary."""
    stats = cg.statistics()
    lines = [
        "Call Graph Summary",
        f"  Functions (defined):  {stats['functions']}",
        f"  External functions:   {stats['external_functions']}",
        f"  Entry points:         {stats['entry_points']}",
        f"  Call sites:           {stats['call_sites']}",
        f"  Direct calls:         {stats['direct_calls']}",
        f"  Unresolved calls:     {stats['unresolved_calls']}",
        f"  Recursive SCCs:       {stats['recursive_sccs']}",
        f"  Self-recursive funcs: {stats['self_recursive_functions']}",
        f"  Unreachable funcs:    {stats['unreachable_functions']}",
        "",
        "Functions:",
    ]
    for node in cg.nodes.values():
        if node.kind in (NodeKind.UNKNOWN, NodeKind.ENTRY):
            continue
        callee_names = [e.callee.name for e in node.out_edges]
        caller_names = [e.caller.name for e in node.in_edges if e.caller is not cg.entry]
        lines.append(
            f"  {node.name} ({node.kind.value}): "
            f"calls [{', '.join(callee_names)}], "
            f"called by [{', '.join(caller_names)}]"
        )
    return "\n".join(lines)


def find_recursive_functions(cg: CallGraph) -> List[Set[CallGraphNode]]:
    """Return a list of sets of mutually-recursive functions.

    Singleton sets indicate direct self-recursion.
    """
    result: List[Set[CallGraphNode]] = []
    for scc in cg.strongly_connected_components():
        if len(scc) == 1:
            if scc[0].is_recursive:
                result.append({scc[0]})
        else:
            result.append(set(scc))
    return result


def unreachable_functions(cg: CallGraph) -> List[CallGraphNode]:
    """Return defined functions not reachable from any entry point."""
    reachable = cg.transitive_callees(cg.entry)
    return [
        n for n in cg.nodes.values()
        if n not in reachable and n.kind == NodeKind.FUNCTION
    ]
