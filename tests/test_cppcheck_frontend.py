# tests/test_cppcheck_frontend.py
"""
Tests for lowering Cppcheck dump configurations into program models.

The configurations come from ``make_configuration`` in conftest, which
tokenizes small C snippets into mock Cppcheck tokens and scopes.
"""

import logging
import sys
import types

import pytest

from initgate.cppcheck_frontend import (
    EXTERN_PREFIX,
    load_dump,
    lower_configuration,
    select_configuration,
)
from initgate.errors import ErrorCodes, FrontendError
from initgate.init_analysis import check_program
from initgate.program_model import Branch, Call, KnownCallee, Return
from tests.conftest import (
    MockConfiguration,
    MockDump,
    MockSuppression,
    make_configuration,
)


ROLES = dict(initializers=["lib_init"], gated=["lib_send"])
LIBRARY = ("lib_init", "lib_send")


def _lower(source, declared=LIBRARY, variables=()):
    cfg = make_configuration(source, declared=declared, variables=variables)
    return lower_configuration(cfg, **ROLES)


def _lines(source, **kwargs):
    """Primary line of every violation found in *source*."""
    return [v.primary.line for v in check_program(_lower(source, **kwargs))]


def _by_name(program, name):
    (fn,) = [fn for fn in program if fn.display_name == name]
    return fn


class TestProgramShape:

    def test_functions_and_roles(self):
        program = _lower("void main() {\n  lib_init();\n  lib_send();\n}\n")
        main = _by_name(program, "main")
        assert main.is_entry_point
        assert main.has_body
        assert _by_name(program, "lib_init").is_initializer
        assert not _by_name(program, "lib_init").has_body
        assert _by_name(program, "lib_send").is_gated

    def test_straight_line_blocks(self):
        program = _lower("void main() {\n  lib_init();\n  lib_send();\n}\n")
        blocks = _by_name(program, "main").blocks
        assert [type(b.terminator) for b in blocks] == [Call, Call, Return]
        first = blocks[0].terminator
        assert first.callee == KnownCallee("d-lib_init")
        assert (first.location.file, first.location.line, first.location.column) == ("test.c", 2, 3)
        assert blocks[0].statements == ("lib_init ( )",)

    def test_function_location(self):
        program = _lower("void main() {\n}\n")
        assert _by_name(program, "main").location.line == 1

    def test_undeclared_callee_becomes_extern(self):
        program = _lower("void main() {\n  puts(\"hi\");\n}\n")
        puts = _by_name(program, "puts")
        assert puts.id == EXTERN_PREFIX + "puts"
        assert not puts.has_body

    def test_declared_but_uncalled_function_is_kept(self):
        program = _lower("void main() {\n}\n", declared=LIBRARY + ("unused",))
        assert not _by_name(program, "unused").has_body

    def test_calls_to_functions_defined_later(self):
        program = _lower("void main() {\n  helper();\n}\nvoid helper() {\n}\n")
        call = _by_name(program, "main").blocks[0].terminator
        assert call.callee == KnownCallee(_by_name(program, "helper").id)

    def test_keyword_parentheses_are_not_calls(self):
        program = _lower("void main() {\n  int n = sizeof(int);\n  return (n);\n}\n")
        blocks = _by_name(program, "main").blocks
        assert not list(_by_name(program, "main").call_sites())
        assert blocks[-1].terminator == Return()

    def test_name_from_configuration(self):
        cfg = make_configuration("void main() {\n}\n", name="DEBUG")
        assert lower_configuration(cfg).name == "DEBUG"


class TestControlFlow:

    def test_clean(self):
        assert _lines("void main() {\n  lib_init();\n  lib_send(1);\n}\n") == []

    def test_if_without_else(self):
        src = (
            "void main() {\n"
            "  if (ready())\n"
            "    lib_init();\n"
            "  lib_send();\n"
            "}\n"
        )
        assert _lines(src) == [4]

    def test_if_else_both_initialize(self):
        src = (
            "void main() {\n"
            "  if (ready()) {\n"
            "    lib_init();\n"
            "  } else {\n"
            "    lib_init();\n"
            "  }\n"
            "  lib_send();\n"
            "}\n"
        )
        assert _lines(src) == []

    def test_early_return(self):
        src = (
            "void main() {\n"
            "  if (!ready())\n"
            "    return;\n"
            "  lib_init();\n"
            "  lib_send();\n"
            "}\n"
        )
        assert _lines(src) == []

    def test_both_branches_return(self):
        program = _lower(
            "void main() {\n"
            "  if (ready()) {\n"
            "    return;\n"
            "  } else {\n"
            "    return;\n"
            "  }\n"
            "  lib_send();\n"
            "}\n"
        )
        assert check_program(program) == []
        dispatch = _by_name(program, "main").blocks[1].terminator
        assert isinstance(dispatch, Branch)
        assert len(dispatch.targets) == 2

    def test_while_body_may_not_run(self):
        src = (
            "void main() {\n"
            "  while (more()) {\n"
            "    lib_init();\n"
            "  }\n"
            "  lib_send();\n"
            "}\n"
        )
        assert _lines(src) == [5]

    def test_for_loop(self):
        src = (
            "void main() {\n"
            "  for (int i = 0; i < 3; i++) {\n"
            "    lib_init();\n"
            "  }\n"
            "  lib_send();\n"
            "}\n"
        )
        assert _lines(src) == [5]

    def test_endless_for_with_break(self):
        src = (
            "void main() {\n"
            "  for (;;) {\n"
            "    lib_init();\n"
            "    break;\n"
            "  }\n"
            "  lib_send();\n"
            "}\n"
        )
        assert _lines(src) == []

    def test_continue_skips_initializer(self):
        src = (
            "void main() {\n"
            "  while (more()) {\n"
            "    if (skip())\n"
            "      continue;\n"
            "    lib_init();\n"
            "    lib_send();\n"
            "  }\n"
            "}\n"
        )
        assert _lines(src) == []

    def test_do_while_runs_once(self):
        src = (
            "void main() {\n"
            "  do {\n"
            "    lib_init();\n"
            "  } while (more());\n"
            "  lib_send();\n"
            "}\n"
        )
        assert _lines(src) == []

    def test_switch_without_default(self):
        src = (
            "void main() {\n"
            "  switch (mode()) {\n"
            "  case 1:\n"
            "    lib_init();\n"
            "    break;\n"
            "  case 2:\n"
            "    lib_init();\n"
            "    break;\n"
            "  }\n"
            "  lib_send();\n"
            "}\n"
        )
        assert _lines(src) == [10]

    def test_switch_with_default(self):
        src = (
            "void main() {\n"
            "  switch (mode()) {\n"
            "  case 1:\n"
            "    lib_init();\n"
            "    break;\n"
            "  default:\n"
            "    lib_init();\n"
            "  }\n"
            "  lib_send();\n"
            "}\n"
        )
        assert _lines(src) == []

    def test_switch_fallthrough(self):
        src = (
            "void main() {\n"
            "  switch (mode()) {\n"
            "  case 1:\n"
            "    lib_send();\n"
            "  default:\n"
            "    lib_init();\n"
            "  }\n"
            "}\n"
        )
        assert _lines(src) == [4]

    def test_goto_skips_initializer(self):
        src = (
            "void main() {\n"
            "  if (ready())\n"
            "    goto out;\n"
            "  lib_init();\n"
            "out:\n"
            "  lib_send();\n"
            "}\n"
        )
        assert _lines(src) == [6]

    def test_goto_undefined_label(self, caplog):
        src = "void main() {\n  goto nowhere;\n  lib_send();\n}\n"
        with caplog.at_level(logging.WARNING, logger="initgate"):
            assert _lines(src) == []
        assert "undefined label 'nowhere'" in caplog.text

    def test_try_catch_handler_is_an_alternative(self):
        src = (
            "void main() {\n"
            "  try {\n"
            "    lib_init();\n"
            "  } catch (...) {\n"
            "  }\n"
            "  lib_send();\n"
            "}\n"
        )
        assert _lines(src) == [6]

    def test_code_after_return_is_dead(self):
        assert _lines("void main() {\n  return;\n  lib_send();\n}\n") == []


class TestCalls:

    def test_argument_call_runs_first(self):
        assert _lines("void main() {\n  lib_send(lib_init());\n}\n") == []

    def test_argument_call_runs_first_reversed(self):
        assert _lines("void main() {\n  lib_init(lib_send());\n}\n") == [2]

    def test_call_in_return_statement(self):
        assert _lines("void main() {\n  return lib_send();\n}\n") == [2]

    def test_call_through_function_pointer(self):
        program = _lower("void main() {\n  lib_init();\n  handler();\n}\n", variables=("handler",))
        (v,) = check_program(program)
        assert v.is_indirect
        assert v.primary.line == 3
        assert v.culprit.description == "call through variable handler"

    def test_violation_inside_helper(self):
        src = (
            "void helper() {\n"
            "  lib_send();\n"
            "}\n"
            "void main() {\n"
            "  helper();\n"
            "  lib_init();\n"
            "}\n"
        )
        (v,) = check_program(_lower(src))
        assert [loc.line for loc in v.locations] == [2, 5]


class TestDumpLoading:

    def test_select_first_configuration(self):
        first, second = MockConfiguration(name=""), MockConfiguration(name="DEBUG")
        dump = MockDump([first, second])
        assert select_configuration(dump) is first
        assert select_configuration(dump, "DEBUG") is second

    def test_select_unknown_configuration(self):
        with pytest.raises(FrontendError) as excinfo:
            select_configuration(MockDump([MockConfiguration(name="")]), "RELEASE")
        assert excinfo.value.code is ErrorCodes.NO_CONFIGURATION
        assert "available" in excinfo.value.hint

    def test_empty_dump(self):
        with pytest.raises(FrontendError) as excinfo:
            select_configuration(MockDump([]))
        assert excinfo.value.code is ErrorCodes.NO_CONFIGURATION

    def test_load_dump(self, tmp_path, monkeypatch):
        cfg = make_configuration("void main() {\n  lib_send();\n}\n", declared=LIBRARY)
        supp = MockSuppression("gatedCallBeforeInit", "test.c", 2)
        seen = []

        def parsedump(path):
            seen.append(path)
            return MockDump([cfg], [supp])

        module = types.ModuleType("cppcheckdata")
        module.parsedump = parsedump
        monkeypatch.setitem(sys.modules, "cppcheckdata", module)

        path = tmp_path / "prog.c.dump"
        program, suppressions = load_dump(path, **ROLES)
        assert seen == [str(path)]
        assert program.name == "prog.c.dump"
        assert suppressions == [supp]
        assert [v.primary.line for v in check_program(program)] == [2]

    def test_unparsable_dump(self, tmp_path, monkeypatch):
        def parsedump(path):
            raise ValueError("not well-formed")

        module = types.ModuleType("cppcheckdata")
        module.parsedump = parsedump
        monkeypatch.setitem(sys.modules, "cppcheckdata", module)

        with pytest.raises(FrontendError) as excinfo:
            load_dump(tmp_path / "broken.dump")
        assert excinfo.value.code is ErrorCodes.BAD_DUMP
        assert isinstance(excinfo.value.cause, ValueError)

    def test_cppcheckdata_missing(self, tmp_path, monkeypatch):
        monkeypatch.setitem(sys.modules, "cppcheckdata", None)
        with pytest.raises(FrontendError) as excinfo:
            load_dump(tmp_path / "prog.c.dump")
        assert excinfo.value.code is ErrorCodes.FRONTEND_UNAVAILABLE
