# initgate/errors.py
"""
initgate Error Types

Exception hierarchy for everything *around* the analysis core: loading and
validating program models, parsing program descriptions, talking to the
Cppcheck front end, and reading configuration.  The analysis itself never
raises these; it always produces a verdict.

Error Hierarchy:
────────────────
    InitGateError (base)
    ├── ProgramModelError  - malformed program model
    ├── ParseError         - S-expression program description errors
    ├── FrontendError      - front end unavailable or unusable input
    └── ConfigError        - invalid analysis configuration

Error Codes:
────────────
Each error carries a code ``IGATE-NNNN``:
  - 1000-1999: program model
  - 2000-2999: program description syntax
  - 3000-3999: front end
  - 4000-4999: configuration
  - 9000-9999: internal

Example Usage:
──────────────
    from initgate.errors import ParseError, ErrorCodes

    raise ParseError(
        "unknown terminator 'jump'",
        code=ErrorCodes.UNKNOWN_FORM,
        where="main/b0",
        hint="expected one of call, call-indirect, branch, goto, return",
    )
"""

from __future__ import annotations

from enum import Enum, unique
from typing import Optional


# ═══════════════════════════════════════════════════════════════════════════════
# ERROR PHASES AND CODES
# ═══════════════════════════════════════════════════════════════════════════════

@unique
class ErrorPhase(Enum):
    """Pipeline phase in which an error occurred."""

    MODEL = "model"
    SYNTAX = "syntax"
    FRONTEND = "frontend"
    CONFIG = "config"
    INTERNAL = "internal"


class ErrorCode:
    """
    Structured error code ``PREFIX-NNNN``.

    Codes are plain values so that callers can compare them by identity
    against the constants in :class:`ErrorCodes`.
    """

    __slots__ = ("prefix", "number", "phase", "summary")

    def __init__(self, prefix: str, number: int, phase: ErrorPhase, summary: str) -> None:
        self.prefix = prefix
        self.number = number
        self.phase = phase
        self.summary = summary

    @property
    def code(self) -> str:
        """Get the full error code string."""
        return f"{self.prefix}-{self.number:04d}"

    def __str__(self) -> str:
        return self.code

    def __repr__(self) -> str:
        return f"ErrorCode({self.code!r}, {self.phase.value})"


class ErrorCodes:
    """Predefined error codes."""

    # Program model (1000-1999)
    DUPLICATE_FUNCTION = ErrorCode("IGATE", 1000, ErrorPhase.MODEL, "duplicate function id")
    BAD_BLOCK_TARGET = ErrorCode("IGATE", 1001, ErrorPhase.MODEL, "terminator target out of range")
    EMPTY_BODY = ErrorCode("IGATE", 1002, ErrorPhase.MODEL, "function body has no blocks")
    BAD_BLOCK_INDEX = ErrorCode("IGATE", 1003, ErrorPhase.MODEL, "block index does not match position")

    # Program description syntax (2000-2999)
    MALFORMED_SEXP = ErrorCode("IGATE", 2000, ErrorPhase.SYNTAX, "unreadable S-expression")
    UNKNOWN_FORM = ErrorCode("IGATE", 2001, ErrorPhase.SYNTAX, "unknown form")
    MISSING_TERMINATOR = ErrorCode("IGATE", 2002, ErrorPhase.SYNTAX, "block without terminator")
    UNDEFINED_LABEL = ErrorCode("IGATE", 2003, ErrorPhase.SYNTAX, "undefined block label")
    DUPLICATE_LABEL = ErrorCode("IGATE", 2004, ErrorPhase.SYNTAX, "duplicate block label")
    BAD_LOCATION = ErrorCode("IGATE", 2005, ErrorPhase.SYNTAX, "malformed source location")
    BAD_OPTION = ErrorCode("IGATE", 2006, ErrorPhase.SYNTAX, "malformed keyword option")

    # Front end (3000-3999)
    FRONTEND_UNAVAILABLE = ErrorCode("IGATE", 3000, ErrorPhase.FRONTEND, "front end not installed")
    BAD_DUMP = ErrorCode("IGATE", 3001, ErrorPhase.FRONTEND, "unusable dump file")
    NO_CONFIGURATION = ErrorCode("IGATE", 3002, ErrorPhase.FRONTEND, "dump has no configuration")

    # Configuration (4000-4999)
    INVALID_CONFIG = ErrorCode("IGATE", 4000, ErrorPhase.CONFIG, "invalid configuration value")
    UNREADABLE_CONFIG = ErrorCode("IGATE", 4001, ErrorPhase.CONFIG, "configuration file unreadable")

    # Internal (9000-9999)
    INTERNAL_ERROR = ErrorCode("IGATE", 9000, ErrorPhase.INTERNAL, "internal error")


# ═══════════════════════════════════════════════════════════════════════════════
# EXCEPTIONS
# ═══════════════════════════════════════════════════════════════════════════════

class InitGateError(Exception):
    """
    Base exception for all initgate errors.

    Parameters
    ----------
    message:
        Human readable description.
    code:
        Structured :class:`ErrorCode`; defaults per subclass.
    where:
        Optional free-form position (``"file:line"``, ``"main/b2"``...).
    hint:
        Optional suggestion shown after the message.
    """

    default_code: ErrorCode = ErrorCodes.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        where: Optional[str] = None,
        hint: str = "",
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.where = where
        self.hint = hint
        self.cause = cause

    def format(self) -> str:
        """Render as ``[IGATE-NNNN] where: message (hint: ...)``."""
        parts = [f"[{self.code}]"]
        if self.where:
            parts.append(f"{self.where}:")
        parts.append(self.message)
        text = " ".join(parts)
        if self.hint:
            text += f" (hint: {self.hint})"
        return text

    def __str__(self) -> str:
        return self.format()


class ProgramModelError(InitGateError):
    """The program model violates a structural invariant."""

    default_code = ErrorCodes.BAD_BLOCK_TARGET


class ParseError(InitGateError):
    """A program description could not be read."""

    default_code = ErrorCodes.MALFORMED_SEXP


class FrontendError(InitGateError):
    """A front end is unavailable or its input cannot be lowered."""

    default_code = ErrorCodes.FRONTEND_UNAVAILABLE


class ConfigError(InitGateError):
    """Analysis configuration is invalid."""

    default_code = ErrorCodes.INVALID_CONFIG


__all__ = [
    "ErrorPhase",
    "ErrorCode",
    "ErrorCodes",
    "InitGateError",
    "ProgramModelError",
    "ParseError",
    "FrontendError",
    "ConfigError",
]
