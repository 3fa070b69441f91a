# tests/test_sexp_frontend.py
"""
Tests for the S-expression program description reader and writer.
"""

import pytest

from initgate.errors import ErrorCodes, ParseError, ProgramModelError
from initgate.init_analysis import check_program
from initgate.program_model import (
    Branch,
    Call,
    Goto,
    KnownCallee,
    Return,
    SourceLocation,
    Tag,
    UnknownCallee,
)
from initgate.sexp_frontend import load_program, parse_program, to_sexp


SCENARIO_B = """
(program scenario-b
  (function main :entry
    (block b0 (branch b1 b2))
    (block b1 (call init :at "main.c:3" :next b2))
    (block b2 (call foo :at "main.c:4" :next b3))
    (block b3 (return)))
  (function init :initializer)
  (function foo :gated))
"""

SCENARIO_A = """
(program scenario-a
  (function main :entry
    (block entry (call bar :at "main.c:2" :next after))
    (block after (call init :at "main.c:3" :next done))
    (block done (return)))
  (function bar
    (block 0 (call foo :at "bar.c:7" :next 1))
    (block 1 (return)))
  (function init :initializer)
  (function foo :gated))
"""


def _codes(excinfo):
    return excinfo.value.code


class TestParseProgram:

    def test_structure(self):
        program = parse_program(SCENARIO_B)
        assert program.name == "scenario-b"
        assert [fn.id for fn in program] == ["main", "init", "foo"]

        main = program.get("main")
        assert main.tags == frozenset({Tag.ENTRY_POINT})
        assert [b.label for b in main.blocks] == ["b0", "b1", "b2", "b3"]
        assert main.blocks[0].terminator == Branch((1, 2))
        assert main.blocks[1].terminator == Call(
            KnownCallee("init"), SourceLocation("main.c", 3), 2,
        )
        assert main.blocks[3].terminator == Return()

    def test_functions_without_blocks_are_opaque(self):
        program = parse_program(SCENARIO_B)
        assert not program.get("init").has_body
        assert program.get("init").is_initializer
        assert program.get("foo").is_gated

    def test_scenario_b_is_reported(self):
        (v,) = check_program(parse_program(SCENARIO_B))
        assert v.primary == SourceLocation("main.c", 4)

    def test_scenario_a_chain(self):
        (v,) = check_program(parse_program(SCENARIO_A))
        assert v.locations == (SourceLocation("bar.c", 7), SourceLocation("main.c", 2))

    def test_integer_labels_and_bare_line_locations(self):
        program = parse_program("""
            (program p
              (function main :entry
                (block 0 (call f :at 12 :next 1))
                (block 1 (goto 0))))
        """, source_name="p.sexp")
        main = program.get("main")
        assert main.blocks[0].terminator.location == SourceLocation("p.sexp", 12)
        assert main.blocks[1].terminator == Goto(0)

    def test_call_indirect(self):
        program = parse_program("""
            (program p
              (function main :entry
                (block a (call-indirect :via "handler" :at "x.c:5" :next b))
                (block b (return))))
        """)
        term = program.get("main").blocks[0].terminator
        assert term.callee == UnknownCallee("handler")
        assert term.is_indirect

    def test_statements_are_carried(self):
        program = parse_program("""
            (program p
              (function main
                (block a (stmt x = 1) (stmt y) (return))))
        """)
        assert len(program.get("main").blocks[0].statements) == 2

    def test_opaque_flag_ignores_blocks(self):
        program = parse_program("""
            (program p
              (function lib :opaque (block a (return))))
        """)
        assert not program.get("lib").has_body

    def test_function_location(self):
        program = parse_program('(program p (function main :entry :at "m.c:1" (block a (return))))')
        assert program.get("main").location == SourceLocation("m.c", 1)

    def test_program_name_defaults_to_source(self):
        program = parse_program("(program (function main (block a (return))))", source_name="x.sexp")
        assert program.name == "x.sexp"


class TestParseErrors:

    def test_unbalanced(self):
        with pytest.raises(ParseError) as excinfo:
            parse_program("(program p (function main")
        assert _codes(excinfo) is ErrorCodes.MALFORMED_SEXP

    def test_not_a_program(self):
        with pytest.raises(ParseError) as excinfo:
            parse_program("(function main)")
        assert _codes(excinfo) is ErrorCodes.UNKNOWN_FORM

    def test_missing_terminator(self):
        with pytest.raises(ParseError) as excinfo:
            parse_program("(program p (function main (block a (stmt x))))")
        assert _codes(excinfo) is ErrorCodes.MISSING_TERMINATOR
        assert "main/a" in str(excinfo.value)

    def test_undefined_label(self):
        with pytest.raises(ParseError) as excinfo:
            parse_program("(program p (function main (block a (goto nowhere))))")
        assert _codes(excinfo) is ErrorCodes.UNDEFINED_LABEL

    def test_duplicate_label(self):
        with pytest.raises(ParseError) as excinfo:
            parse_program("(program p (function main (block a (return)) (block a (return))))")
        assert _codes(excinfo) is ErrorCodes.DUPLICATE_LABEL

    def test_unknown_option(self):
        with pytest.raises(ParseError) as excinfo:
            parse_program("(program p (function main :weird (block a (return))))")
        assert _codes(excinfo) is ErrorCodes.BAD_OPTION

    def test_bad_location(self):
        with pytest.raises(ParseError) as excinfo:
            parse_program('(program p (function main (block a (call f :at "nowhere"))))')
        assert _codes(excinfo) is ErrorCodes.BAD_LOCATION

    def test_duplicate_function(self):
        with pytest.raises(ProgramModelError) as excinfo:
            parse_program("(program p (function f) (function f))")
        assert _codes(excinfo) is ErrorCodes.DUPLICATE_FUNCTION

    def test_error_message_format(self):
        with pytest.raises(ParseError) as excinfo:
            parse_program("(program p (function main (block a (goto b))))")
        assert str(excinfo.value).startswith("[IGATE-2003] main/a:")


class TestWriter:

    def test_written_program_reads_back(self):
        program = parse_program(SCENARIO_A)
        again = parse_program(to_sexp(program))
        assert [fn.id for fn in again] == [fn.id for fn in program]
        for fn in program:
            other = again.get(fn.id)
            assert other.tags == fn.tags
            assert other.has_body == fn.has_body
            if fn.has_body:
                assert [b.terminator for b in other.blocks] == [b.terminator for b in fn.blocks]
        assert check_program(again) == check_program(program)

    def test_quotes_names_that_are_not_identifiers(self):
        program = parse_program('(program p (function main (block a (call "extern:puts" :next b)) (block b (return))))')
        text = to_sexp(program)
        assert '"extern:puts"' in text
        assert parse_program(text).get("main").blocks[0].terminator.callee == KnownCallee("extern:puts")


class TestLoadProgram:

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "scenario.sexp"
        path.write_text(SCENARIO_B, encoding="utf-8")
        program = load_program(path)
        assert program.name == "scenario-b"
        assert len(check_program(program)) == 1
