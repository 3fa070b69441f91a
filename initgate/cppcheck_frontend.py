"""
initgate.cppcheck_frontend
==========================

Lower a Cppcheck dump (``cppcheck --dump foo.c``) into a
:class:`~initgate.program_model.ProgramModel`.

Dumps carry no notion of initializers or gated functions, so roles come
from name lists (``entry_points`` defaults to ``["main"]``).

Lowering rules
--------------
* Every ``Function`` scope with a body becomes a :class:`Function` whose id
  is the Cppcheck function ``Id``.  Functions that are declared but not
  defined in the configuration are opaque.
* Callees known only by name (library functions, other translation units)
  become opaque functions with id ``extern:<name>``.
* A call through a variable (function pointer) or through an expression is
  an :class:`UnknownCallee`.
* Each call ends the current block with a :class:`Call` terminator.  Calls
  inside one statement are ordered by the position of their closing
  parenthesis, so argument calls come before the call they feed.
* ``if``/``else``, ``while``, ``for`` (including range-for), ``do``/``while``,
  ``switch``/``case``/``default``, ``break``, ``continue``, ``return``,
  ``goto`` with labels, ``try``/``catch`` and nested compounds are lowered to
  branches and gotos.

The walk is a single forward pass over the token stream of each body, with
break/continue blocks patched once the loop exit is known.

``cppcheckdata`` ships with Cppcheck and is imported only when a dump is
loaded; its absence raises :class:`~initgate.errors.FrontendError`.

Usage::

    from initgate.cppcheck_frontend import load_dump

    program, suppressions = load_dump("foo.c.dump",
                                      initializers=["lib_init"],
                                      gated=["lib_send", "lib_recv"])
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .errors import ErrorCodes, FrontendError
from .program_model import (
    BasicBlock,
    Branch,
    Call,
    CalleeRef,
    Function,
    Goto,
    KnownCallee,
    ProgramModel,
    Return,
    SourceLocation,
    Terminator,
    UnknownCallee,
)

logger = logging.getLogger(__name__)

EXTERN_PREFIX = "extern:"

# Names that are followed by '(' without being calls.
_NOT_CALLEES = frozenset({
    "if", "while", "for", "switch", "return", "catch", "throw",
    "sizeof", "alignof", "_Alignof", "decltype", "typeof", "__typeof__",
    "static_assert", "_Static_assert", "defined", "noexcept", "new", "delete",
})

_LABEL_LEADERS = frozenset({";", "{", "}", ":"})


# ===========================================================================
# TOKEN HELPERS
# ===========================================================================

def _tok_str(tok) -> str:
    if tok is None:
        return ""
    return tok.str if tok.str else ""


def token_location(tok) -> SourceLocation:
    """Source location of a Cppcheck token."""
    return SourceLocation(
        getattr(tok, "file", None) or "",
        int(getattr(tok, "linenr", None) or 0),
        int(getattr(tok, "column", None) or 0),
    )


def _tokens_between(start, stop) -> List[Any]:
    """Tokens from *start* up to, not including, *stop*."""
    out = []
    tok = start
    while tok is not None and tok is not stop:
        out.append(tok)
        tok = tok.next
    return out


def _statement_tokens(tok, limit) -> Tuple[List[Any], Any]:
    """Collect one expression statement up to its ``;``.

    Bracketed groups are taken whole so a ``;`` inside a lambda or an
    initializer list does not end the statement.  Returns the tokens
    (without the ``;``) and the token after it.
    """
    collected: List[Any] = []
    while tok is not None and tok is not limit:
        s = tok.str
        if s == ";":
            return collected, tok.next
        link = getattr(tok, "link", None)
        if s in ("(", "[", "{") and link is not None:
            collected.extend(_tokens_between(tok, link))
            collected.append(link)
            tok = link.next
            continue
        collected.append(tok)
        tok = tok.next
    return collected, tok


def _skip_past_semicolon(tok, limit):
    while tok is not None and tok is not limit:
        if tok.str == ";":
            return tok.next
        link = getattr(tok, "link", None)
        if tok.str in ("(", "[", "{") and link is not None:
            tok = link
        tok = tok.next
    return tok


def _paren_contents(tok) -> Tuple[List[Any], Any]:
    """For ``tok == '('`` return the tokens inside and the token after ``)``."""
    if tok is None or tok.str != "(" or getattr(tok, "link", None) is None:
        return [], tok
    return _tokens_between(tok.next, tok.link), tok.link.next


def _is_label(tok) -> bool:
    nxt = tok.next
    if not getattr(tok, "isName", False) or nxt is None or nxt.str != ":":
        return False
    if tok.str in ("case", "default"):
        return False
    prev = tok.previous
    return prev is None or prev.str in _LABEL_LEADERS


def _callee_name_token(op):
    """Follow ``a.b`` and ``ns::f`` down to the called name."""
    while op is not None and op.str in (".", "::") and getattr(op, "astOperand2", None) is not None:
        op = op.astOperand2
    return op


# ===========================================================================
# CALLEE RESOLUTION
# ===========================================================================

class _CalleeResolver:
    """Map call tokens to callee references, collecting extern functions."""

    def __init__(self, known: Dict[str, Function]) -> None:
        self._known = known
        self.externs: Dict[str, Function] = {}

    def _function_ref(self, func) -> KnownCallee:
        fid = getattr(func, "Id", None) or getattr(func, "name", "")
        if fid not in self._known:
            # declared in this configuration without a body
            self._known[fid] = Function(id=fid, name=getattr(func, "name", "") or str(fid))
        return KnownCallee(fid)

    def _extern_ref(self, name: str) -> KnownCallee:
        fid = EXTERN_PREFIX + name
        if fid not in self.externs:
            self.externs[fid] = Function(id=fid, name=name)
        return KnownCallee(fid)

    def resolve(self, paren) -> Optional[Tuple[CalleeRef, Any]]:
        """Classify the ``(`` token *paren*.

        Returns ``(callee, location_token)`` when it opens a call's
        argument list, else ``None``.
        """
        if getattr(paren, "isCast", False):
            return None
        op = getattr(paren, "astOperand1", None)
        if op is None:
            return None
        prev = paren.previous
        if prev is not None and prev.str in _NOT_CALLEES:
            return None

        name_tok = _callee_name_token(op)
        func = getattr(name_tok, "function", None)
        if func is not None:
            return self._function_ref(func), name_tok

        var = getattr(name_tok, "variable", None)
        if var is not None:
            if getattr(var, "nameToken", None) is name_tok:
                # constructor-style declaration: int x(5);
                return None
            return UnknownCallee(f"call through variable {name_tok.str}"), name_tok

        if getattr(name_tok, "isName", False):
            if getattr(name_tok, "isStandardType", False) or getattr(name_tok, "isKeyword", False):
                return None
            return self._extern_ref(name_tok.str), name_tok

        return UnknownCallee("call through expression"), paren


# ===========================================================================
# FUNCTION LOWERING
# ===========================================================================

@dataclass
class _Block:
    index: int
    label: str = ""
    statements: List[str] = field(default_factory=list)
    terminator: Optional[Terminator] = None


@dataclass
class _Switch:
    cases: List[int] = field(default_factory=list)
    has_default: bool = False


class _FunctionLowering:
    """Builds the blocks of one function body.

    ``_statement`` lowers a single statement starting at a token and
    returns the live block after it (``None`` once every path has left)
    plus the next token.  ``brk`` and ``cont`` are lists that collect the
    blocks ending in ``break``/``continue`` until their target exists.
    """

    def __init__(self, scope, resolver: _CalleeResolver, name: str) -> None:
        self.scope = scope
        self.resolver = resolver
        self.name = name
        self._blocks: List[_Block] = []
        self._labels: Dict[str, int] = {}
        self._pending_gotos: List[Tuple[int, str]] = []
        self._switches: List[_Switch] = []

    # ----- block helpers ----------------------------------------------------

    def _new_block(self, label: str = "") -> int:
        block = _Block(len(self._blocks), label=label)
        self._blocks.append(block)
        return block.index

    def _seal(self, index: Optional[int], terminator: Terminator) -> None:
        if index is None:
            return
        block = self._blocks[index]
        if block.terminator is None:
            block.terminator = terminator

    def _live(self, cur: Optional[int]) -> int:
        # code after return/break/goto still gets a (dead) block
        return cur if cur is not None else self._new_block()

    def _calls(self, tokens: Sequence[Any], cur: Optional[int]) -> int:
        """Split *cur* at every call in *tokens*; returns the block after them."""
        cur = self._live(cur)
        position = {id(t): i for i, t in enumerate(tokens)}
        sites = []
        for i, tok in enumerate(tokens):
            if tok.str != "(":
                continue
            resolved = self.resolver.resolve(tok)
            if resolved is None:
                continue
            close = getattr(tok, "link", None)
            order = position.get(id(close), i) if close is not None else i
            sites.append((order, i, resolved))
        for _, _, (callee, loc_tok) in sorted(sites, key=lambda s: (s[0], s[1])):
            nxt = self._new_block()
            self._seal(cur, Call(callee, token_location(loc_tok), nxt))
            cur = nxt
        return cur

    # ----- driver -----------------------------------------------------------

    def lower(self) -> Tuple[BasicBlock, ...]:
        body_start = getattr(self.scope, "bodyStart", None)
        body_end = getattr(self.scope, "bodyEnd", None)
        entry = self._new_block()
        if body_start is None or body_end is None:
            self._seal(entry, Return())
        else:
            end = self._compound(body_start.next, body_end, entry, None, None)
            self._seal(end, Return())

        for block_index, label in self._pending_gotos:
            target = self._labels.get(label)
            if target is None:
                logger.warning("%s: goto to undefined label %r", self.name, label)
                self._seal(block_index, Return())
            else:
                self._seal(block_index, Goto(target))

        return tuple(
            BasicBlock(b.index, b.terminator or Return(), tuple(b.statements), b.label)
            for b in self._blocks
        )

    def _compound(self, tok, limit, cur, brk, cont) -> Optional[int]:
        while tok is not None and tok is not limit:
            cur, tok = self._statement(tok, limit, cur, brk, cont)
        return cur

    def _body(self, tok, limit, cur, brk, cont):
        """Lower a braced compound or a single statement."""
        if tok is not None and tok.str == "{" and getattr(tok, "link", None) is not None:
            end = self._compound(tok.next, tok.link, cur, brk, cont)
            return end, tok.link.next
        if tok is None or tok is limit:
            return cur, tok
        return self._statement(tok, limit, cur, brk, cont)

    # ----- statements -------------------------------------------------------

    def _statement(self, tok, limit, cur, brk, cont):
        s = _tok_str(tok)

        if s == ";":
            return cur, tok.next

        if s == "{" and getattr(tok, "link", None) is not None:
            return self._compound(tok.next, tok.link, cur, brk, cont), tok.link.next

        if _is_label(tok):
            block = self._new_block(label=s)
            self._seal(cur, Goto(block))
            self._labels[s] = block
            return block, tok.next.next

        if s in ("case", "default") and self._switches:
            colon = tok
            while colon is not None and colon is not limit and colon.str != ":":
                colon = colon.next
            block = self._new_block(label=s)
            self._seal(cur, Goto(block))
            switch = self._switches[-1]
            switch.cases.append(block)
            if s == "default":
                switch.has_default = True
            return block, colon.next if colon is not None else None

        if s == "return":
            stmt, nxt = _statement_tokens(tok.next, limit)
            cur = self._calls(stmt, cur)
            self._blocks[cur].statements.append(" ".join(t.str for t in [tok] + stmt))
            self._seal(cur, Return())
            return None, nxt

        if s in ("break", "continue"):
            pending = brk if s == "break" else cont
            if cur is not None:
                if pending is None:
                    logger.warning("%s: %s outside of a loop or switch", self.name, s)
                    self._seal(cur, Return())
                else:
                    pending.append(cur)
            return None, _skip_past_semicolon(tok.next, limit)

        if s == "goto":
            if cur is not None:
                self._pending_gotos.append((cur, _tok_str(tok.next)))
            return None, _skip_past_semicolon(tok.next, limit)

        handler = _CONTROL.get(s)
        if handler is not None:
            return handler(self, tok, limit, cur, brk, cont)

        stmt, nxt = _statement_tokens(tok, limit)
        cur = self._live(cur)
        self._blocks[cur].statements.append(" ".join(t.str for t in stmt))
        return self._calls(stmt, cur), nxt

    def _if(self, tok, limit, cur, brk, cont):
        cond, tok = _paren_contents(tok.next)
        cond_end = self._calls(cond, cur)

        then_block = self._new_block()
        then_end, tok = self._body(tok, limit, then_block, brk, cont)

        else_block = else_end = None
        if _tok_str(tok) == "else":
            else_block = self._new_block()
            else_end, tok = self._body(tok.next, limit, else_block, brk, cont)

        if else_block is not None and then_end is None and else_end is None:
            self._seal(cond_end, Branch((then_block, else_block)))
            return None, tok

        merge = self._new_block()
        self._seal(cond_end, Branch((then_block, else_block if else_block is not None else merge)))
        self._seal(then_end, Goto(merge))
        self._seal(else_end, Goto(merge))
        return merge, tok

    def _while(self, tok, limit, cur, brk, cont):
        head = self._new_block()
        self._seal(cur, Goto(head))
        cond, tok = _paren_contents(tok.next)
        cond_end = self._calls(cond, head)

        breaks: List[int] = []
        continues: List[int] = []
        body = self._new_block()
        body_end, tok = self._body(tok, limit, body, breaks, continues)
        self._seal(body_end, Goto(head))
        for b in continues:
            self._seal(b, Goto(head))

        after = self._new_block()
        self._seal(cond_end, Branch((body, after)))
        for b in breaks:
            self._seal(b, Goto(after))
        return after, tok

    def _do(self, tok, limit, cur, brk, cont):
        body = self._new_block()
        self._seal(cur, Goto(body))
        breaks: List[int] = []
        continues: List[int] = []
        body_end, tok = self._body(tok.next, limit, body, breaks, continues)

        cond_block = self._new_block()
        self._seal(body_end, Goto(cond_block))
        for b in continues:
            self._seal(b, Goto(cond_block))
        if _tok_str(tok) == "while":
            tok = tok.next
        cond, tok = _paren_contents(tok)
        cond_end = self._calls(cond, cond_block)
        if _tok_str(tok) == ";":
            tok = tok.next

        after = self._new_block()
        self._seal(cond_end, Branch((body, after)))
        for b in breaks:
            self._seal(b, Goto(after))
        return after, tok

    def _for(self, tok, limit, cur, brk, cont):
        header, tok = _paren_contents(tok.next)
        parts: List[List[Any]] = [[]]
        depth = 0
        for t in header:
            if t.str in ("(", "[", "{"):
                depth += 1
            elif t.str in (")", "]", "}"):
                depth -= 1
            if t.str == ";" and depth == 0:
                parts.append([])
            else:
                parts[-1].append(t)
        ranged = len(parts) == 1
        init = parts[0]
        cond = parts[1] if len(parts) > 1 else []
        step = parts[2] if len(parts) > 2 else []

        cur = self._calls(init, cur)
        head = self._new_block()
        self._seal(cur, Goto(head))
        cond_end = self._calls(cond, head)

        breaks: List[int] = []
        continues: List[int] = []
        body = self._new_block()
        body_end, tok = self._body(tok, limit, body, breaks, continues)

        step_block = self._new_block()
        self._seal(body_end, Goto(step_block))
        for b in continues:
            self._seal(b, Goto(step_block))
        step_end = self._calls(step, step_block)
        self._seal(step_end, Goto(head))

        after = self._new_block()
        if cond or ranged:
            self._seal(cond_end, Branch((body, after)))
        else:
            self._seal(cond_end, Goto(body))
        for b in breaks:
            self._seal(b, Goto(after))
        return after, tok

    def _switch(self, tok, limit, cur, brk, cont):
        cond, tok = _paren_contents(tok.next)
        dispatch = self._calls(cond, cur)

        switch = _Switch()
        breaks: List[int] = []
        self._switches.append(switch)
        try:
            # code before the first case label is unreachable
            end, tok = self._body(tok, limit, None, breaks, cont)
        finally:
            self._switches.pop()

        after = self._new_block()
        targets = list(switch.cases)
        if not switch.has_default:
            targets.append(after)
        self._seal(dispatch, Branch(tuple(targets)))
        self._seal(end, Goto(after))
        for b in breaks:
            self._seal(b, Goto(after))
        return after, tok

    def _try(self, tok, limit, cur, brk, cont):
        # handlers are alternatives to the protected block
        start = self._live(cur)
        body = self._new_block()
        ends = []
        end, tok = self._body(tok.next, limit, body, brk, cont)
        ends.append(end)
        targets = [body]
        while _tok_str(tok) == "catch":
            _, tok = _paren_contents(tok.next)
            handler = self._new_block()
            targets.append(handler)
            end, tok = self._body(tok, limit, handler, brk, cont)
            ends.append(end)
        self._seal(start, Branch(tuple(targets)))
        if all(e is None for e in ends):
            return None, tok
        merge = self._new_block()
        for e in ends:
            self._seal(e, Goto(merge))
        return merge, tok


_CONTROL = {
    "if": _FunctionLowering._if,
    "while": _FunctionLowering._while,
    "do": _FunctionLowering._do,
    "for": _FunctionLowering._for,
    "switch": _FunctionLowering._switch,
    "try": _FunctionLowering._try,
}


# ===========================================================================
# CONFIGURATION LOWERING
# ===========================================================================

def _function_scopes(cfg) -> List[Any]:
    return [
        scope for scope in getattr(cfg, "scopes", []) or []
        if getattr(scope, "type", None) == "Function"
        and getattr(scope, "bodyStart", None) is not None
    ]


def lower_configuration(
    cfg,
    entry_points: Iterable[str] = ("main",),
    initializers: Iterable[str] = (),
    gated: Iterable[str] = (),
    name: str = "",
) -> ProgramModel:
    """Lower one ``cppcheckdata.Configuration`` into a tagged ProgramModel."""
    functions: Dict[Any, Function] = {}
    scopes = _function_scopes(cfg)

    # ids first, so calls to functions defined later resolve
    owners = []
    for scope in scopes:
        func = getattr(scope, "function", None)
        fid = getattr(func, "Id", None) or getattr(scope, "Id", None) or getattr(scope, "className", "")
        fname = getattr(func, "name", None) or getattr(scope, "className", "") or str(fid)
        owners.append((scope, fid, fname, func))
        functions[fid] = Function(id=fid, name=fname)

    resolver = _CalleeResolver(functions)
    for scope, fid, fname, func in owners:
        blocks = _FunctionLowering(scope, resolver, fname).lower()
        def_tok = getattr(func, "tokenDef", None) or getattr(scope, "bodyStart", None)
        location = token_location(def_tok) if def_tok is not None else None
        functions[fid] = Function(id=fid, blocks=blocks, name=fname, location=location)
        logger.debug("Lowered %s into %d block(s)", fname, len(blocks))

    for func in getattr(cfg, "functions", []) or []:
        fid = getattr(func, "Id", None)
        if fid is not None and fid not in functions:
            functions[fid] = Function(id=fid, name=getattr(func, "name", "") or str(fid))

    program = ProgramModel.from_functions(
        list(functions.values()) + list(resolver.externs.values()),
        name=name or getattr(cfg, "name", "") or "",
    )
    return program.retag(entry_points, initializers, gated).validate()


def _import_cppcheckdata():
    """Import ``cppcheckdata``, raising FrontendError when it is missing."""
    try:
        import cppcheckdata  # type: ignore[import-untyped]
    except ImportError as exc:
        raise FrontendError(
            "cppcheckdata is not importable",
            hint="install cppcheck or add its addons directory to PYTHONPATH",
            cause=exc,
        ) from exc
    return cppcheckdata


def select_configuration(data, configuration: Optional[str] = None):
    """Pick a configuration from parsed dump data (first one by default)."""
    configs = list(getattr(data, "configurations", []) or [])
    if not configs:
        raise FrontendError("dump contains no configuration", code=ErrorCodes.NO_CONFIGURATION)
    if configuration is None:
        return configs[0]
    for cfg in configs:
        if getattr(cfg, "name", None) == configuration:
            return cfg
    available = ", ".join(repr(getattr(c, "name", "")) for c in configs)
    raise FrontendError(
        f"no configuration named {configuration!r}",
        code=ErrorCodes.NO_CONFIGURATION,
        hint=f"available: {available}",
    )


def load_dump(
    path: Union[str, Path],
    entry_points: Iterable[str] = ("main",),
    initializers: Iterable[str] = (),
    gated: Iterable[str] = (),
    configuration: Optional[str] = None,
) -> Tuple[ProgramModel, List[Any]]:
    """Parse a ``.dump`` file and lower one configuration.

    Returns the program and the dump's suppression records (for
    :meth:`SuppressionManager.load_dump_suppressions`).
    """
    cppcheckdata = _import_cppcheckdata()
    p = Path(path)
    logger.info("Parsing dump file: %s", p)
    try:
        data = cppcheckdata.parsedump(str(p))
    except FrontendError:
        raise
    except Exception as exc:
        raise FrontendError(
            f"failed to parse dump: {exc}", code=ErrorCodes.BAD_DUMP, where=str(p), cause=exc,
        ) from exc
    cfg = select_configuration(data, configuration)
    program = lower_configuration(cfg, entry_points, initializers, gated, name=p.name)
    return program, list(getattr(data, "suppressions", []) or [])
