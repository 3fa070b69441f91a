"""
initgate - Initialization-Order Checker
=======================================

Reports calls to *gated* functions (operations that require a library to be
set up) that can execute before the *initializer* on some path from an
entry point.  The check is interprocedural: a call to a helper that calls
the initializer on every path counts as initialization, and a call to a
helper that reaches a gated call too early is reported with the full call
chain.

Core modules
------------
program_model
    Functions, basic blocks, call/branch/goto/return terminators, tags.
dataflow_engine
    Generic worklist solver over a lattice (must/may confluence).
init_analysis
    The recursive walker, the "initializer seen" dataflow, and the driver.
callgraph
    Call graph with Tarjan SCC detection, statistics and DOT export.
checkers
    Diagnostics, suppressions and the checker lifecycle.
sexp_frontend
    Reads and writes the S-expression program description.
cppcheck_frontend
    Lowers ``cppcheck --dump`` output into a program model.
config
    JSON settings file and command-line overrides.
errors
    Structured exceptions with ``IGATE-NNNN`` codes.

Quick start
-----------
>>> from initgate import parse_program, run_analysis
>>> program = parse_program('''
... (program demo
...   (function main :entry
...     (block 0 (call init :next 1))
...     (block 1 (call send :next 2))
...     (block 2 (return)))
...   (function init :initializer (block 0 (return)))
...   (function send :gated (block 0 (return))))
... ''')
>>> run_analysis(program).ok
True
"""

from __future__ import annotations

import importlib
import logging
import sys
from typing import TYPE_CHECKING, List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.1.0"
__license__ = "MIT"
__all__: List[str] = []          # populated incrementally below

_log = logging.getLogger(__name__)

_CORE_MODULES = {
    "errors": [
        "InitGateError",
        "ProgramModelError",
        "ParseError",
        "FrontendError",
        "ConfigError",
        "ErrorCodes",
    ],
    "program_model": [
        "Tag",
        "SourceLocation",
        "KnownCallee",
        "UnknownCallee",
        "UNKNOWN_CALLEE",
        "Call",
        "Branch",
        "Goto",
        "Return",
        "BasicBlock",
        "Function",
        "FunctionCFG",
        "ProgramModel",
    ],
    "dataflow_engine": [
        "Lattice",
        "BooleanLattice",
        "Confluence",
        "WorklistStrategy",
        "DataflowResult",
        "IntraproceduralSolver",
    ],
    "init_analysis": [
        "Verdict",
        "VerdictKind",
        "CallStack",
        "InitOrderAnalysis",
        "Violation",
        "AnalysisReport",
        "run_analysis",
        "check_program",
    ],
    "callgraph": [
        "CallGraph",
        "CallGraphNode",
        "CallGraphEdge",
    ],
    "checkers": [
        "Diagnostic",
        "DiagnosticSeverity",
        "SuppressionManager",
        "InitBeforeGatedChecker",
        "CheckerRunner",
        "violation_to_diagnostic",
    ],
    "sexp_frontend": [
        "parse_program",
        "load_program",
        "to_sexp",
    ],
    "cppcheck_frontend": [
        "lower_configuration",
        "load_dump",
    ],
    "config": [
        "AnalysisConfig",
        "load_config",
    ],
}


def _import_names(module_rel_name: str, names: List[str]) -> None:
    """Import *names* from a submodule and bind them in the package namespace."""
    fq_name = f"{__name__}.{module_rel_name}"
    try:
        mod = importlib.import_module(fq_name)
    except ImportError as exc:
        raise ImportError(
            f"initgate: required submodule '{module_rel_name}' failed to import: {exc}"
        ) from exc

    current_module = sys.modules[__name__]
    for name in names:
        obj = getattr(mod, name, None)
        if obj is None:
            raise AttributeError(f"initgate.{module_rel_name} does not export '{name}'")
        setattr(current_module, name, obj)
        __all__.append(name)

    setattr(current_module, module_rel_name, mod)
    if module_rel_name not in __all__:
        __all__.append(module_rel_name)


for _mod, _names in _CORE_MODULES.items():
    _import_names(_mod, _names)

del _mod, _names


def package_info() -> dict:
    """Return a dict of metadata about the installed package."""
    return {
        "package": __name__,
        "version": __version__,
        "python": sys.version,
        "submodules": sorted(_CORE_MODULES),
        "all_exports": list(__all__),
    }


__all__ += ["package_info", "__version__"]

if TYPE_CHECKING:
    from .program_model import (
        ProgramModel as ProgramModel,
        Function as Function,
        Tag as Tag,
    )
    from .init_analysis import (
        run_analysis as run_analysis,
        AnalysisReport as AnalysisReport,
    )
    from .sexp_frontend import parse_program as parse_program
