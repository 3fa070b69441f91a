"""
initgate.config
===============

Analysis settings, loadable from a JSON file and overridable from the
command line.

Example file::

    {
        "entry_points": ["main", "worker_main"],
        "initializers": ["lib_init"],
        "gated": ["lib_send"],
        "memoize": true,
        "worklist": "rpo",
        "suppress": ["gatedCallBeforeInit:tests/*"],
        "output": "gcc"
    }
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Union

from .dataflow_engine import WorklistStrategy
from .errors import ConfigError, ErrorCodes

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("gcc", "json", "summary")
_LIST_FIELDS = ("entry_points", "initializers", "gated", "suppress")


@dataclass
class AnalysisConfig:
    """Tuning knobs and role names for one analysis run.

    The role name lists add tags on top of those a program description
    already carries.  For Cppcheck dumps an empty ``entry_points`` means
    ``["main"]``.
    """
    entry_points: List[str] = field(default_factory=list)
    initializers: List[str] = field(default_factory=list)
    gated: List[str] = field(default_factory=list)
    memoize: bool = False
    worklist: str = "rpo"
    max_iterations: int = 100_000
    suppress: List[str] = field(default_factory=list)
    output: str = "gcc"

    def validate(self) -> List[str]:
        """Return a list of problems (empty if valid)."""
        problems: List[str] = []
        for name in _LIST_FIELDS:
            value = getattr(self, name)
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                problems.append(f"{name} must be a list of strings")
        if not isinstance(self.memoize, bool):
            problems.append("memoize must be a boolean")
        if self.worklist not in {s.value for s in WorklistStrategy}:
            problems.append(
                f"worklist must be one of {', '.join(s.value for s in WorklistStrategy)}"
            )
        if (isinstance(self.max_iterations, bool)
                or not isinstance(self.max_iterations, int)
                or self.max_iterations <= 0):
            problems.append("max_iterations must be a positive integer")
        if self.output not in OUTPUT_FORMATS:
            problems.append(f"output must be one of {', '.join(OUTPUT_FORMATS)}")
        return problems

    @property
    def strategy(self) -> WorklistStrategy:
        return WorklistStrategy(self.worklist)

    def merged(self, **overrides: Any) -> "AnalysisConfig":
        """Copy with every override that is not ``None`` (or empty) applied.

        List overrides replace the configured list.
        """
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(
                f"unknown setting(s): {', '.join(sorted(unknown))}",
                code=ErrorCodes.INVALID_CONFIG,
            )
        changes = {
            k: (list(v) if k in _LIST_FIELDS else v)
            for k, v in overrides.items()
            if v is not None and not (k in _LIST_FIELDS and not v)
        }
        return replace(self, **changes)

    def analysis_options(self) -> Dict[str, Any]:
        """Options understood by the init-before-gated checker."""
        return {
            "memoize": self.memoize,
            "worklist": self.worklist,
            "max_iterations": self.max_iterations,
        }

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], source: str = "<mapping>") -> "AnalysisConfig":
        """Build a config from a decoded JSON object.

        Raises :class:`ConfigError` on unknown keys or invalid values.
        """
        if not isinstance(data, Mapping):
            raise ConfigError("configuration must be a JSON object", where=source)
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(
                f"unknown key(s): {', '.join(unknown)}",
                where=source,
                hint=f"valid keys: {', '.join(sorted(known))}",
            )
        config = cls(**dict(data))
        problems = config.validate()
        if problems:
            raise ConfigError("; ".join(problems), where=source)
        return config


def load_config(path: Union[str, Path]) -> AnalysisConfig:
    """Read an :class:`AnalysisConfig` from a JSON file."""
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(
            f"cannot read configuration: {exc.strerror or exc}",
            code=ErrorCodes.UNREADABLE_CONFIG, where=str(p), cause=exc,
        ) from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(
            f"invalid JSON at line {exc.lineno} column {exc.colno}: {exc.msg}",
            where=str(p), cause=exc,
        ) from exc
    config = AnalysisConfig.from_mapping(data, source=str(p))
    logger.debug("Loaded configuration from %s: %s", p, config)
    return config
