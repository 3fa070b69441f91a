"""
initgate.program_model
======================

Immutable whole-program representation consumed by the analysis.

A program is an ordered collection of :class:`Function` objects.  A function
with a body is a sequence of :class:`BasicBlock`; each block carries a run of
opaque statements followed by exactly one terminator.  Terminators form a
closed set:

``Call``
    Invocation of a :class:`KnownCallee` (resolved function id) or of
    :data:`UNKNOWN_CALLEE` (indirect call through a pointer or expression).
    ``target`` is the block control continues in once the call returns.
``Branch``
    Conditional transfer to one of several blocks.
``Goto``
    Unconditional transfer.
``Return``
    Leaves the function.

Block ``0`` is always the entry block.  Functions without blocks are
*opaque* (external, declared only) and are never looked into.

Public API
----------
    Tag                 - entry point / initializer / gated marker
    SourceLocation      - file:line:column triple
    KnownCallee         - resolved callee reference
    UnknownCallee       - unresolved (indirect) callee reference
    Call, Branch, Goto, Return - terminators
    BasicBlock          - statements + terminator
    Function            - identity, body, tags
    ControlFlowGraph    - protocol the dataflow engine works against
    FunctionCFG         - ControlFlowGraph view of one Function
    ProgramModel        - ordered function table with tag lookup
"""

from __future__ import annotations

import enum
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import (
    Any,
    Dict,
    FrozenSet,
    Hashable,
    Iterable,
    Iterator,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    Union,
)

from .errors import ErrorCodes, ProgramModelError

logger = logging.getLogger(__name__)

FunctionId = Hashable
BlockId = int


# ===========================================================================
# TAGS AND LOCATIONS
# ===========================================================================

class Tag(enum.Enum):
    """Role markers a function can carry (any combination)."""
    ENTRY_POINT = "entry_point"
    INITIALIZER = "initializer"
    GATED = "gated"


_LOCATION_RE = re.compile(r"^(?P<file>.*?):(?P<line>\d+)(?::(?P<column>\d+))?$")


@dataclass(frozen=True)
class SourceLocation:
    """A specific point in source code."""
    file: str = ""
    line: int = 0
    column: int = 0

    def __str__(self) -> str:
        if not self.line:
            return self.file
        if self.column:
            return f"{self.file}:{self.line}:{self.column}"
        return f"{self.file}:{self.line}"

    @classmethod
    def parse(cls, text: str) -> "SourceLocation":
        """Parse ``file:line`` or ``file:line:column``.

        Raises :class:`ValueError` on anything else.
        """
        m = _LOCATION_RE.match(text.strip())
        if m is None or not m.group("file"):
            raise ValueError(f"not a source location: {text!r}")
        column = m.group("column")
        return cls(m.group("file"), int(m.group("line")), int(column) if column else 0)


# ===========================================================================
# CALLEES AND TERMINATORS
# ===========================================================================

@dataclass(frozen=True)
class KnownCallee:
    """Statically resolved callee."""
    function_id: FunctionId


@dataclass(frozen=True)
class UnknownCallee:
    """Indirect call; ``description`` is informational only."""
    description: str = ""


UNKNOWN_CALLEE = UnknownCallee()

CalleeRef = Union[KnownCallee, UnknownCallee]


@dataclass(frozen=True)
class Call:
    callee: CalleeRef
    location: Any
    target: Optional[BlockId] = None

    @property
    def is_indirect(self) -> bool:
        return isinstance(self.callee, UnknownCallee)

    def successors(self) -> Tuple[BlockId, ...]:
        return () if self.target is None else (self.target,)


@dataclass(frozen=True)
class Branch:
    targets: Tuple[BlockId, ...]

    def successors(self) -> Tuple[BlockId, ...]:
        # duplicates collapse, order kept
        return tuple(dict.fromkeys(self.targets))


@dataclass(frozen=True)
class Goto:
    target: BlockId

    def successors(self) -> Tuple[BlockId, ...]:
        return (self.target,)


@dataclass(frozen=True)
class Return:
    def successors(self) -> Tuple[BlockId, ...]:
        return ()


Terminator = Union[Call, Branch, Goto, Return]


# ===========================================================================
# BLOCKS AND FUNCTIONS
# ===========================================================================

@dataclass(frozen=True)
class BasicBlock:
    """Straight-line statements followed by one terminator.

    ``statements`` are carried for display and never interpreted.
    """
    index: BlockId
    terminator: Terminator
    statements: Tuple[Any, ...] = ()
    label: str = ""

    def successors(self) -> Tuple[BlockId, ...]:
        return self.terminator.successors()


@dataclass(frozen=True)
class Function:
    """A function of the analysed program.

    ``blocks is None`` marks an opaque function (no body available).
    """
    id: FunctionId
    blocks: Optional[Tuple[BasicBlock, ...]] = None
    tags: FrozenSet[Tag] = frozenset()
    name: str = ""
    location: Optional[Any] = None

    @property
    def display_name(self) -> str:
        return self.name or str(self.id)

    @property
    def has_body(self) -> bool:
        return self.blocks is not None

    @property
    def is_initializer(self) -> bool:
        return Tag.INITIALIZER in self.tags

    @property
    def is_gated(self) -> bool:
        return Tag.GATED in self.tags

    @property
    def is_entry_point(self) -> bool:
        return Tag.ENTRY_POINT in self.tags

    def has_tag(self, tag: Tag) -> bool:
        return tag in self.tags

    def with_tags(self, *tags: Tag) -> "Function":
        """Return a copy carrying *tags* in addition to the current ones."""
        return replace(self, tags=self.tags | frozenset(tags))

    def call_sites(self) -> Iterator[Tuple[BasicBlock, Call]]:
        """Yield ``(block, call)`` for every call terminator, in block order."""
        for block in self.blocks or ():
            if isinstance(block.terminator, Call):
                yield block, block.terminator


# ===========================================================================
# CONTROL-FLOW GRAPH VIEW
# ===========================================================================

class ControlFlowGraph(Protocol):
    """The contract the dataflow engine relies on.

    Nodes are opaque hashables; for :class:`FunctionCFG` they are block
    indices.
    """

    @property
    def entry(self) -> Hashable: ...

    def blocks(self) -> Sequence[Hashable]: ...

    def predecessors(self, block: Hashable) -> Sequence[Hashable]: ...

    def successors(self, block: Hashable) -> Sequence[Hashable]: ...

    def terminator(self, block: Hashable) -> Terminator: ...


class FunctionCFG:
    """ControlFlowGraph view of a function with a body.

    Predecessor lists are computed once at construction.
    """

    def __init__(self, function: Function) -> None:
        if function.blocks is None:
            raise ValueError(f"function {function.display_name!r} has no body")
        self.function = function
        self._blocks: Tuple[BasicBlock, ...] = function.blocks
        self._preds: Dict[BlockId, List[BlockId]] = {b.index: [] for b in self._blocks}
        for block in self._blocks:
            for succ in block.successors():
                if succ in self._preds and block.index not in self._preds[succ]:
                    self._preds[succ].append(block.index)

    @property
    def entry(self) -> BlockId:
        return self._blocks[0].index

    def blocks(self) -> List[BlockId]:
        return [b.index for b in self._blocks]

    def block(self, index: BlockId) -> BasicBlock:
        return self._blocks[index]

    def predecessors(self, block: BlockId) -> List[BlockId]:
        return self._preds[block]

    def successors(self, block: BlockId) -> Tuple[BlockId, ...]:
        return self._blocks[block].successors()

    def terminator(self, block: BlockId) -> Terminator:
        return self._blocks[block].terminator

    def __len__(self) -> int:
        return len(self._blocks)

    def __repr__(self) -> str:
        return f"FunctionCFG({self.function.display_name!r}, blocks={len(self._blocks)})"


# ===========================================================================
# PROGRAM MODEL
# ===========================================================================

@dataclass
class ProgramModel:
    """Ordered table of functions.

    Iteration order is declaration order; the driver visits entry points in
    this order, which makes diagnostics deterministic.
    """
    functions: "OrderedDict[FunctionId, Function]" = field(default_factory=OrderedDict)
    name: str = ""

    @classmethod
    def from_functions(cls, functions: Iterable[Function], name: str = "") -> "ProgramModel":
        table: "OrderedDict[FunctionId, Function]" = OrderedDict()
        for fn in functions:
            if fn.id in table:
                raise ProgramModelError(
                    f"duplicate function id {fn.id!r}",
                    code=ErrorCodes.DUPLICATE_FUNCTION,
                    where=name or None,
                )
            table[fn.id] = fn
        return cls(functions=table, name=name)

    # ----- lookup -----------------------------------------------------------

    def get(self, function_id: FunctionId) -> Optional[Function]:
        return self.functions.get(function_id)

    def __contains__(self, function_id: object) -> bool:
        return function_id in self.functions

    def __iter__(self) -> Iterator[Function]:
        return iter(self.functions.values())

    def __len__(self) -> int:
        return len(self.functions)

    def find_tagged(self, tag: Tag) -> Optional[FunctionId]:
        """First function (declaration order) carrying *tag*, or ``None``."""
        for fn in self.functions.values():
            if tag in fn.tags:
                return fn.id
        return None

    def tagged(self, tag: Tag) -> List[FunctionId]:
        return [fn.id for fn in self.functions.values() if tag in fn.tags]

    def find_by_name(self, name: str) -> List[FunctionId]:
        return [fn.id for fn in self.functions.values() if fn.display_name == name]

    def display_name(self, function_id: FunctionId) -> str:
        fn = self.functions.get(function_id)
        return fn.display_name if fn is not None else str(function_id)

    # ----- derivation -------------------------------------------------------

    def retag(
        self,
        entry_points: Iterable[str] = (),
        initializers: Iterable[str] = (),
        gated: Iterable[str] = (),
    ) -> "ProgramModel":
        """Return a model where functions named in the lists gain the tags.

        Names match either the display name or the id.  Unknown names are
        logged and ignored.
        """
        wanted: Dict[str, List[Tag]] = {}
        for names, tag in ((entry_points, Tag.ENTRY_POINT),
                           (initializers, Tag.INITIALIZER),
                           (gated, Tag.GATED)):
            for n in names:
                wanted.setdefault(n, []).append(tag)
        if not wanted:
            return self

        matched = set()
        table: "OrderedDict[FunctionId, Function]" = OrderedDict()
        for fid, fn in self.functions.items():
            tags: List[Tag] = []
            for key in (fn.display_name, str(fid)):
                if key in wanted:
                    tags.extend(wanted[key])
                    matched.add(key)
            table[fid] = fn.with_tags(*tags) if tags else fn
        for n in wanted:
            if n not in matched:
                logger.warning("No function named %r in program %r", n, self.name)
        return ProgramModel(functions=table, name=self.name)

    # ----- validation -------------------------------------------------------

    def validate(self) -> "ProgramModel":
        """Check structural invariants; returns ``self`` for chaining.

        Raises
        ------
        ProgramModelError
            On an empty body, a block whose index does not match its
            position, or a terminator target outside the function.
        """
        for fn in self.functions.values():
            if fn.blocks is None:
                continue
            where = f"{self.name or 'program'}/{fn.display_name}"
            if not fn.blocks:
                raise ProgramModelError(
                    f"function {fn.display_name!r} has a body with no blocks",
                    code=ErrorCodes.EMPTY_BODY, where=where,
                    hint="use blocks=None for an opaque function",
                )
            n = len(fn.blocks)
            for pos, block in enumerate(fn.blocks):
                if block.index != pos:
                    raise ProgramModelError(
                        f"block at position {pos} has index {block.index}",
                        code=ErrorCodes.BAD_BLOCK_INDEX, where=where,
                    )
                for succ in block.successors():
                    if not isinstance(succ, int) or not 0 <= succ < n:
                        raise ProgramModelError(
                            f"block {pos} jumps to {succ!r}, function has {n} block(s)",
                            code=ErrorCodes.BAD_BLOCK_TARGET, where=where,
                        )
        return self

    def statistics(self) -> Dict[str, int]:
        with_body = [fn for fn in self.functions.values() if fn.has_body]
        return {
            "functions": len(self.functions),
            "with_body": len(with_body),
            "opaque": len(self.functions) - len(with_body),
            "blocks": sum(len(fn.blocks) for fn in with_body),
            "call_sites": sum(1 for fn in with_body for _ in fn.call_sites()),
            "entry_points": len(self.tagged(Tag.ENTRY_POINT)),
            "initializers": len(self.tagged(Tag.INITIALIZER)),
            "gated": len(self.tagged(Tag.GATED)),
        }
