"""initgate/sexp_frontend.py – S-expression program description → ProgramModel.

A small textual format for writing program models by hand: regression
inputs, reduced test cases, or the output of an external front end.

Converts the output of ``sexpdata.loads`` (nested Python lists,
:class:`sexpdata.Symbol`, strings, ints) into
:class:`~initgate.program_model.ProgramModel`.

Surface syntax
--------------
::

    (program <name>?
      (function <name> <option>*
        (block <label>
          (stmt <anything>*)*
          <terminator>)*)*)

    <option>     ::= :entry | :initializer | :gated | :opaque | :at <loc>
    <terminator> ::= (call <callee> [:at <loc>] [:next <label>])
                   | (call-indirect [:via <text>] [:at <loc>] [:next <label>])
                   | (branch <label> <label>*)
                   | (goto <label>)
                   | (return)
    <loc>        ::= "file:line[:col]" | <line>

* The first block of a function is its entry block.
* A function without blocks (or marked ``:opaque``) has no body.
* A callee that is not declared as a function is opaque.
* A bare line number in ``:at`` is resolved against the source name.

Example
-------
::

    (program scenario-b
      (function main :entry
        (block b0 (branch b1 b2))
        (block b1 (call init :at "main.c:3" :next b2))
        (block b2 (call foo :at "main.c:4" :next b3))
        (block b3 (return)))
      (function init :initializer)
      (function foo :gated))

Public API
----------
``parse_program(text, source_name) -> ProgramModel``
``load_program(path) -> ProgramModel``
``to_sexp(program) -> str``
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import sexpdata
from sexpdata import Symbol

from .errors import ErrorCodes, ParseError
from .program_model import (
    BasicBlock,
    Branch,
    Call,
    Function,
    Goto,
    KnownCallee,
    ProgramModel,
    Return,
    SourceLocation,
    Tag,
    Terminator,
    UnknownCallee,
)

logger = logging.getLogger(__name__)

# Type aliases for raw sexpdata output
Sexp = Any  # Union[list, Symbol, str, int, float]

_FUNCTION_FLAGS = {
    ":entry": Tag.ENTRY_POINT,
    ":initializer": Tag.INITIALIZER,
    ":gated": Tag.GATED,
}


# ═══════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════

def _sym_name(s: Sexp) -> str:
    """Extract the string name from a ``sexpdata.Symbol``, or raise."""
    if isinstance(s, Symbol):
        value = getattr(s, "value", None)
        return value() if callable(value) else str(s)
    raise ParseError(f"expected symbol, got {type(s).__name__}: {s!r}")


def _is_keyword(s: Sexp) -> bool:
    return isinstance(s, Symbol) and _sym_name(s).startswith(":")


def _head(s: Sexp) -> Optional[str]:
    """Head symbol of a form ``(tag ...)``, or ``None``."""
    if isinstance(s, list) and s and isinstance(s[0], Symbol):
        return _sym_name(s[0])
    return None


def _atom_text(s: Sexp, what: str, where: str) -> str:
    """Symbols, strings and integers all name things (labels, functions)."""
    if isinstance(s, Symbol):
        return _sym_name(s)
    if isinstance(s, bool):
        raise ParseError(f"expected {what}, got {s!r}", where=where)
    if isinstance(s, (str, int)):
        return str(s)
    raise ParseError(f"expected {what}, got {s!r}", code=ErrorCodes.UNKNOWN_FORM, where=where)


def _split_options(
    items: List[Sexp], where: str, *, valued: Tuple[str, ...], flags: Tuple[str, ...] = ()
) -> Tuple[Dict[str, Sexp], List[Sexp]]:
    """Separate ``:key value`` / ``:flag`` items from positional ones."""
    options: Dict[str, Sexp] = {}
    rest: List[Sexp] = []
    i = 0
    while i < len(items):
        item = items[i]
        if _is_keyword(item):
            key = _sym_name(item)
            if key in flags:
                options[key] = True
                i += 1
                continue
            if key not in valued:
                raise ParseError(f"unknown option {key}", code=ErrorCodes.BAD_OPTION, where=where)
            if i + 1 >= len(items):
                raise ParseError(f"option {key} needs a value", code=ErrorCodes.BAD_OPTION, where=where)
            options[key] = items[i + 1]
            i += 2
            continue
        rest.append(item)
        i += 1
    return options, rest


class _ProgramReader:
    """Recursive descent over one ``(program ...)`` form."""

    def __init__(self, source_name: str) -> None:
        self.source_name = source_name

    # ----- locations ---------------------------------------------------

    def location(self, raw: Optional[Sexp], default: str, where: str) -> Any:
        if raw is None:
            return SourceLocation(file=default)
        if isinstance(raw, Symbol):
            raw = _sym_name(raw)
        elif isinstance(raw, int) and not isinstance(raw, bool):
            return SourceLocation(file=self.source_name, line=raw)
        if isinstance(raw, str):
            try:
                return SourceLocation.parse(raw)
            except ValueError as exc:
                raise ParseError(str(exc), code=ErrorCodes.BAD_LOCATION, where=where) from exc
        raise ParseError(f"bad location {raw!r}", code=ErrorCodes.BAD_LOCATION, where=where)

    # ----- program -----------------------------------------------------

    def program(self, form: Sexp) -> ProgramModel:
        if _head(form) != "program":
            raise ParseError(
                "expected (program ...)", code=ErrorCodes.UNKNOWN_FORM, where=self.source_name,
            )
        items = form[1:]
        name = self.source_name
        if items and not isinstance(items[0], list):
            name = _atom_text(items[0], "program name", self.source_name)
            items = items[1:]

        functions: List[Function] = []
        for item in items:
            if _head(item) != "function":
                raise ParseError(
                    f"expected (function ...), got {item!r}",
                    code=ErrorCodes.UNKNOWN_FORM, where=name,
                )
            functions.append(self.function(item, name))
        program = ProgramModel.from_functions(functions, name=name)
        return program.validate()

    # ----- function ----------------------------------------------------

    def function(self, form: list, program_name: str) -> Function:
        if len(form) < 2:
            raise ParseError("function needs a name", code=ErrorCodes.UNKNOWN_FORM, where=program_name)
        fname = _atom_text(form[1], "function name", program_name)
        where = f"{program_name}/{fname}"
        options, body = _split_options(
            form[2:], where, valued=(":at",), flags=tuple(_FUNCTION_FLAGS) + (":opaque",),
        )
        tags = frozenset(tag for key, tag in _FUNCTION_FLAGS.items() if key in options)
        location = self.location(options[":at"], fname, where) if ":at" in options else None

        for item in body:
            if _head(item) != "block":
                raise ParseError(
                    f"expected (block ...), got {item!r}", code=ErrorCodes.UNKNOWN_FORM, where=where,
                )

        if ":opaque" in options or not body:
            if body:
                logger.warning("%s: blocks of an :opaque function are ignored", where)
            return Function(id=fname, blocks=None, tags=tags, name=fname, location=location)

        labels: Dict[str, int] = {}
        for index, item in enumerate(body):
            if len(item) < 2:
                raise ParseError("block needs a label", code=ErrorCodes.UNKNOWN_FORM, where=where)
            label = _atom_text(item[1], "block label", where)
            if label in labels:
                raise ParseError(
                    f"duplicate block label {label!r}", code=ErrorCodes.DUPLICATE_LABEL, where=where,
                )
            labels[label] = index

        blocks = tuple(
            self.block(item, index, fname, labels) for index, item in enumerate(body)
        )
        return Function(id=fname, blocks=blocks, tags=tags, name=fname, location=location)

    # ----- block -------------------------------------------------------

    def block(self, form: list, index: int, fname: str, labels: Dict[str, int]) -> BasicBlock:
        label = _atom_text(form[1], "block label", fname)
        where = f"{fname}/{label}"
        items = form[2:]
        if not items or _head(items[-1]) not in _TERMINATORS:
            raise ParseError(
                "block must end with a terminator",
                code=ErrorCodes.MISSING_TERMINATOR, where=where,
                hint="one of " + ", ".join(sorted(_TERMINATORS)),
            )
        statements = []
        for item in items[:-1]:
            if _head(item) != "stmt":
                raise ParseError(
                    f"expected (stmt ...) before the terminator, got {item!r}",
                    code=ErrorCodes.UNKNOWN_FORM, where=where,
                )
            statements.append(tuple(item[1:]))

        term_form = items[-1]
        reader = _TERMINATORS[_head(term_form)]
        terminator = reader(self, term_form[1:], where, labels)
        return BasicBlock(index=index, terminator=terminator,
                          statements=tuple(statements), label=label)

    def resolve(self, raw: Sexp, labels: Dict[str, int], where: str) -> int:
        label = _atom_text(raw, "block label", where)
        if label not in labels:
            raise ParseError(
                f"undefined block label {label!r}", code=ErrorCodes.UNDEFINED_LABEL, where=where,
            )
        return labels[label]

    # ----- terminators -------------------------------------------------

    def read_call(self, args: List[Sexp], where: str, labels: Dict[str, int]) -> Call:
        options, rest = _split_options(args, where, valued=(":at", ":next"))
        if len(rest) != 1:
            raise ParseError("(call <callee> ...) takes exactly one callee",
                             code=ErrorCodes.UNKNOWN_FORM, where=where)
        callee = KnownCallee(_atom_text(rest[0], "callee name", where))
        return Call(
            callee=callee,
            location=self.location(options.get(":at"), where, where),
            target=self.resolve(options[":next"], labels, where) if ":next" in options else None,
        )

    def read_call_indirect(self, args: List[Sexp], where: str, labels: Dict[str, int]) -> Call:
        options, rest = _split_options(args, where, valued=(":at", ":next", ":via"))
        if rest:
            raise ParseError("call-indirect takes no positional arguments",
                             code=ErrorCodes.UNKNOWN_FORM, where=where)
        via = options.get(":via")
        return Call(
            callee=UnknownCallee(_atom_text(via, "description", where) if via is not None else ""),
            location=self.location(options.get(":at"), where, where),
            target=self.resolve(options[":next"], labels, where) if ":next" in options else None,
        )

    def read_branch(self, args: List[Sexp], where: str, labels: Dict[str, int]) -> Branch:
        if not args:
            raise ParseError("branch needs at least one target",
                             code=ErrorCodes.UNKNOWN_FORM, where=where)
        return Branch(tuple(self.resolve(a, labels, where) for a in args))

    def read_goto(self, args: List[Sexp], where: str, labels: Dict[str, int]) -> Goto:
        if len(args) != 1:
            raise ParseError("goto takes exactly one target", code=ErrorCodes.UNKNOWN_FORM, where=where)
        return Goto(self.resolve(args[0], labels, where))

    def read_return(self, args: List[Sexp], where: str, labels: Dict[str, int]) -> Return:
        if args:
            raise ParseError("return takes no arguments", code=ErrorCodes.UNKNOWN_FORM, where=where)
        return Return()


_TERMINATORS: Dict[str, Callable[..., Terminator]] = {
    "call": _ProgramReader.read_call,
    "call-indirect": _ProgramReader.read_call_indirect,
    "branch": _ProgramReader.read_branch,
    "goto": _ProgramReader.read_goto,
    "return": _ProgramReader.read_return,
}


# ═══════════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════════

def parse_program(text: str, source_name: str = "<string>") -> ProgramModel:
    """Parse one ``(program ...)`` description into a validated model."""
    try:
        form = sexpdata.loads(text, nil=None, true=None)
    except Exception as exc:
        raise ParseError(
            f"cannot read S-expression: {exc}",
            code=ErrorCodes.MALFORMED_SEXP, where=source_name, cause=exc,
        ) from exc
    return _ProgramReader(source_name).program(form)


def load_program(path: Union[str, Path]) -> ProgramModel:
    """Read and parse a program description file."""
    p = Path(path)
    logger.info("Reading program description %s", p)
    return parse_program(p.read_text(encoding="utf-8"), source_name=p.name)


def _atom(value: Any) -> str:
    text = str(value)
    bare = text.replace("-", "").replace("_", "")
    if bare.isalnum() and (text[0].isalpha() or text[0] == "_") and text not in ("t", "nil"):
        return text
    return sexpdata.dumps(text)


def _block_names(fn: Function) -> List[str]:
    """Unique label per block; clashing or missing labels fall back to ``b<index>``."""
    names: List[str] = []
    seen = set()
    for block in fn.blocks or ():
        name = block.label or f"b{block.index}"
        if name in seen:
            name = f"b{block.index}"
        while name in seen:
            name += "_"
        seen.add(name)
        names.append(_atom(name))
    return names


def _loc(location: Any) -> str:
    return sexpdata.dumps(str(location))


def _has_position(location: Any) -> bool:
    if location is None:
        return False
    return not isinstance(location, SourceLocation) or bool(location.line)


def to_sexp(program: ProgramModel) -> str:
    """Render *program* in the description syntax accepted by
    :func:`parse_program`.

    Statements are rendered as ``(stmt)`` placeholders.
    """
    lines = [f"(program {_atom(program.name or 'program')}"]
    for fn in program:
        flags = [key for key, tag in _FUNCTION_FLAGS.items() if tag in fn.tags]
        head = " ".join([f"  (function {_atom(fn.id)}"] + flags)
        if _has_position(fn.location):
            head += f" :at {_loc(fn.location)}"
        if not fn.has_body:
            lines.append(head + ")")
            continue
        lines.append(head)
        names = _block_names(fn)
        for block in fn.blocks:
            parts = [f"    (block {names[block.index]}"]
            parts.extend("(stmt)" for _ in block.statements)
            term = block.terminator
            if isinstance(term, Call):
                if isinstance(term.callee, KnownCallee):
                    text = f"(call {_atom(term.callee.function_id)}"
                else:
                    text = "(call-indirect"
                    if term.callee.description:
                        text += f" :via {_loc(term.callee.description)}"
                if _has_position(term.location):
                    text += f" :at {_loc(term.location)}"
                if term.target is not None:
                    text += f" :next {names[term.target]}"
                text += ")"
            elif isinstance(term, Branch):
                text = "(branch " + " ".join(names[t] for t in term.targets) + ")"
            elif isinstance(term, Goto):
                text = f"(goto {names[term.target]})"
            else:
                text = "(return)"
            parts.append(text)
            lines.append(" ".join(parts) + ")")
        lines[-1] += ")"
    lines[-1] += ")"
    return "\n".join(lines)
