# ghihorn/config.py
"""
Run configuration for GhiHorn.

Values are layered: built-in defaults, then an optional JSON file, then
``GHIHORN_*`` environment variables, then explicit overrides (the CLI).
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .errors import ConfigError

logger = logging.getLogger(__name__)

DECOMPILER_STRATEGIES = ("auto", "simple", "parallel")

ENV_PREFIX = "GHIHORN_"


def _default_workers() -> int:
    return max(1, os.cpu_count() or 1)


def _as_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ConfigError(f"not a boolean: {raw!r}")


@dataclass(frozen=True)
class GhiHornConfig:
    """Settings shared by every analysis controller.

    Attributes
    ----------
    solver_timeout : float
        Wall-clock budget per solver call, in seconds.  A budget of zero
        or less yields an ``UNKNOWN`` verdict without invoking the engine.
    decompiler : str
        ``"simple"``, ``"parallel"`` or ``"auto"`` (parallel when headless).
    workers : int
        Size of the parallel decompiler's worker pool.
    headless : bool
        True when driven from a script rather than an interactive host.
    api_libraries : list of str
        Library program files whose function bodies can be hornified to
        synthesize API summaries.
    smt_output_dir : str or None
        When set, every solved clause set is written there as SMT-LIB2.
    builtin_apis : bool
        Load the packaged library summaries.
    """

    solver_timeout: float = 60.0
    decompiler: str = "auto"
    workers: int = field(default_factory=_default_workers)
    headless: bool = False
    api_libraries: List[str] = field(default_factory=list)
    smt_output_dir: Optional[str] = None
    builtin_apis: bool = True

    def __post_init__(self) -> None:
        if self.decompiler not in DECOMPILER_STRATEGIES:
            raise ConfigError(
                f"unknown decompiler strategy {self.decompiler!r}; "
                f"expected one of {', '.join(DECOMPILER_STRATEGIES)}"
            )
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1, got {self.workers}")

    @property
    def effective_decompiler(self) -> str:
        """Resolve ``"auto"`` against the headless flag."""
        if self.decompiler != "auto":
            return self.decompiler
        return "parallel" if self.headless else "simple"

    # ------------------------------------------------------------------
    # Layering
    # ------------------------------------------------------------------

    def merged(self, overrides: Mapping[str, Any]) -> "GhiHornConfig":
        """Return a copy with *overrides* applied (``None`` values ignored)."""
        known = {f.name: f for f in fields(self)}
        changes: Dict[str, Any] = {}
        for key, raw in overrides.items():
            if raw is None:
                continue
            if key not in known:
                raise ConfigError(f"unknown configuration key {key!r}")
            changes[key] = _coerce(key, raw)
        return replace(self, **changes)

    @classmethod
    def from_file(cls, path: str, base: Optional["GhiHornConfig"] = None) -> "GhiHornConfig":
        """Load a JSON object of settings on top of *base* (or the defaults)."""
        p = Path(path).expanduser()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ConfigError(f"configuration file not found: {p}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"configuration file {p} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"configuration file {p} must hold a JSON object")
        logger.debug("loaded configuration from %s", p)
        return (base or cls()).merged(data)

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        base: Optional["GhiHornConfig"] = None,
    ) -> "GhiHornConfig":
        """Apply ``GHIHORN_<FIELD>`` environment variables."""
        env = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            key = ENV_PREFIX + f.name.upper()
            if key in env:
                overrides[f.name] = env[key]
        return (base or cls()).merged(overrides)


def _coerce(key: str, raw: Any) -> Any:
    try:
        if key == "solver_timeout":
            return float(raw)
        if key == "workers":
            return int(raw)
        if key in ("headless", "builtin_apis"):
            return _as_bool(raw)
        if key == "api_libraries":
            if isinstance(raw, str):
                return [p for p in raw.split(os.pathsep) if p]
            return [str(p) for p in raw]
        if key in ("decompiler", "smt_output_dir"):
            return str(raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid value for {key}: {raw!r}") from e
    return raw
