# tests/conftest.py
"""
Shared fixtures and builders for the initgate test suite.

Two kinds of helpers live here:

* Program-model builders (``make_function``, ``make_program``, ``call``,
  ``icall``...) for writing analysis inputs tersely.
* Mock Cppcheck objects (``MockToken``, ``MockScope``, ``MockFunction``,
  ``MockConfiguration``) plus ``make_configuration``, a toy tokenizer that
  turns a small C snippet into a linked token list with just enough AST
  information for the dump front end.
"""

import re

import pytest

from initgate.program_model import (
    UNKNOWN_CALLEE,
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
    UnknownCallee,
)


# ── Program-model builders ───────────────────────────────────────

def loc(line, file="test.c"):
    return SourceLocation(file, line)


def call(callee, line, target=None):
    """Direct call terminator at ``test.c:<line>``."""
    return Call(KnownCallee(callee), loc(line), target)


def icall(line, target=None, via=""):
    """Indirect call terminator."""
    return Call(UnknownCallee(via) if via else UNKNOWN_CALLEE, loc(line), target)


def branch(*targets):
    return Branch(tuple(targets))


def goto(target):
    return Goto(target)


def ret():
    return Return()


def make_function(name, terminators=None, *tags):
    """Function whose block ``i`` ends with ``terminators[i]``.

    ``terminators=None`` gives an opaque function.
    """
    blocks = None
    if terminators is not None:
        blocks = tuple(BasicBlock(i, t) for i, t in enumerate(terminators))
    return Function(id=name, blocks=blocks, tags=frozenset(tags), name=name)


def make_program(*functions, name="test"):
    return ProgramModel.from_functions(functions, name=name).validate()


def init_fn(name="init"):
    return make_function(name, [ret()], Tag.INITIALIZER)


def gated_fn(name="foo"):
    return make_function(name, [ret()], Tag.GATED)


@pytest.fixture
def init_then_gated():
    """main: init(); foo();"""
    return make_program(
        make_function("main", [call("init", 1, 1), call("foo", 2, 2), ret()], Tag.ENTRY_POINT),
        init_fn(),
        gated_fn(),
    )


@pytest.fixture
def scenario_b():
    """main: if (c) init(); foo();"""
    return make_program(
        make_function(
            "main",
            [branch(1, 2), call("init", 3, 2), call("foo", 4, 3), ret()],
            Tag.ENTRY_POINT,
        ),
        init_fn(),
        gated_fn(),
    )


# ── Mock Cppcheck objects ────────────────────────────────────────

class MockToken:
    """Minimal stand-in for ``cppcheckdata.Token``."""

    def __init__(self, **kwargs):
        self.Id = kwargs.pop("Id", None)
        self.str = kwargs.pop("str", "")
        self.next = None
        self.previous = None
        self.link = None
        self.scope = None
        self.function = None
        self.variable = None
        self.varId = 0
        self.astParent = None
        self.astOperand1 = None
        self.astOperand2 = None
        self.isName = False
        self.isNumber = False
        self.isCast = False
        self.isStandardType = False
        self.file = "test.c"
        self.linenr = 1
        self.column = 1
        for k, v in kwargs.items():
            setattr(self, k, v)

    def __repr__(self):
        return f"MockToken({self.str!r}@{self.linenr})"


class MockVariable:
    def __init__(self, name, nameToken=None):
        self.Id = f"v-{name}"
        self.name = name
        self.nameToken = nameToken


class MockFunction:
    def __init__(self, Id, name, tokenDef=None):
        self.Id = Id
        self.name = name
        self.tokenDef = tokenDef
        self.token = tokenDef


class MockScope:
    def __init__(self, Id, type, className="", function=None, bodyStart=None, bodyEnd=None):
        self.Id = Id
        self.type = type
        self.className = className
        self.function = function
        self.bodyStart = bodyStart
        self.bodyEnd = bodyEnd


class MockSuppression:
    def __init__(self, errorId, fileName=None, lineNumber=None):
        self.errorId = errorId
        self.fileName = fileName
        self.lineNumber = lineNumber


class MockConfiguration:
    def __init__(self, name="", tokenlist=None, scopes=None, functions=None):
        self.name = name
        self.tokenlist = tokenlist or []
        self.scopes = scopes or []
        self.functions = functions or []


class MockDump:
    def __init__(self, configurations, suppressions=None):
        self.configurations = configurations
        self.suppressions = suppressions or []


_TOKEN_RE = re.compile(
    r"(?P<num>\d+)|(?P<name>[A-Za-z_]\w*)|(?P<op>::|->|\+\+|--|&&|\|\||==|!=|<=|>=|[^\s\w])"
)
_KEYWORDS = {
    "if", "else", "while", "for", "do", "switch", "case", "default", "break",
    "continue", "return", "goto", "sizeof", "try", "catch",
}
_TYPES = {"void", "int", "char", "long", "short", "unsigned", "signed", "float", "double"}
_OPEN = {"(": ")", "[": "]", "{": "}"}


def make_token_chain(source, file="test.c", variables=()):
    """Tokenize *source*, link brackets and mark call parentheses.

    A ``(`` preceded by an identifier (not a keyword or type) or by ``)``/``]``
    gets that token as ``astOperand1``.  Identifiers listed in *variables*
    carry a ``MockVariable`` whose declaration is elsewhere.
    """
    tokens = []
    for m in _TOKEN_RE.finditer(source):
        line = source.count("\n", 0, m.start()) + 1
        column = m.start() - (source.rfind("\n", 0, m.start()) + 1) + 1
        text = m.group(0)
        tok = MockToken(
            Id=f"t{len(tokens)}", str=text, file=file, linenr=line, column=column,
            isName=m.group("name") is not None,
            isNumber=m.group("num") is not None,
            isStandardType=text in _TYPES,
        )
        if tokens:
            tokens[-1].next = tok
            tok.previous = tokens[-1]
        tokens.append(tok)

    stack = []
    for tok in tokens:
        if tok.str in _OPEN:
            stack.append(tok)
        elif tok.str in _OPEN.values():
            opener = stack.pop()
            opener.link = tok
            tok.link = opener

    var_objs = {name: MockVariable(name) for name in variables}
    for tok in tokens:
        if tok.isName and tok.str in var_objs:
            tok.variable = var_objs[tok.str]
            tok.varId = 1
        if tok.str != "(" or tok.previous is None:
            continue
        prev = tok.previous
        if prev.isName and prev.str not in _KEYWORDS and prev.str not in _TYPES:
            tok.astOperand1 = prev
        elif prev.str in (")", "]"):
            tok.astOperand1 = prev
    return tokens


def make_configuration(source, declared=(), variables=(), file="test.c", name=""):
    """Build a ``MockConfiguration`` from a C snippet.

    Top-level ``name(...) { ... }`` forms become Function scopes; names in
    *declared* are functions without a body.  Call tokens of known
    functions get ``.function`` set.
    """
    tokens = make_token_chain(source, file=file, variables=variables)
    functions = {}
    scopes = []
    depth = 0
    for tok in tokens:
        if tok.str == "{":
            depth += 1
        elif tok.str == "}":
            depth -= 1
        elif depth == 0 and tok.isName and tok.next is not None and tok.next.str == "(":
            after = tok.next.link.next if tok.next.link is not None else None
            if after is not None and after.str == "{":
                fn = MockFunction(f"f{len(functions)}", tok.str, tokenDef=tok)
                functions[tok.str] = fn
                scopes.append(MockScope(f"s{len(scopes)}", "Function", tok.str, fn, after, after.link))
    for decl in declared:
        functions.setdefault(decl, MockFunction(f"d-{decl}", decl))

    for tok in tokens:
        nxt = tok.next
        if tok.isName and tok.str in functions and nxt is not None and nxt.str == "(":
            tok.function = functions[tok.str]

    global_scope = MockScope("s-global", "Global")
    return MockConfiguration(
        name=name, tokenlist=tokens, scopes=[global_scope] + scopes,
        functions=list(functions.values()),
    )
