# ghihorn/errors.py
"""
GhiHorn Error Types
===================

Every failure the analysis core can raise derives from :class:`GhiHornError`
and carries an :class:`ErrorCode`.  The hierarchy mirrors how far a failure
propagates:

::

    GhiHornError (base)
    ├── DecompileError       - one function could not be decompiled (non-fatal)
    ├── CancelledError       - the run's cancellation token fired
    ├── GenerationFault      - Hornifier invariant violated (fatal to the run)
    ├── SolverFault          - engine rejected the input / ran out of resources
    ├── QueryError           - the query does not match the program
    ├── ConditionSyntaxError - a path condition failed to parse
    ├── ProgramFormatError   - malformed program or library file
    ├── ConfigError          - invalid configuration value
    └── AnalysisBusyError    - a controller already has an active run

A solver timeout is *not* an error.  It is reported as a ``Verdict`` whose
status is ``UNKNOWN``.

Error Codes
-----------
  - 1000-1999: decompilation and cancellation
  - 2000-2999: clause generation
  - 3000-3999: solver
  - 4000-4999: user input (queries, conditions, files, configuration)
  - 5000-5999: run management
"""

from __future__ import annotations

from enum import Enum, unique
from typing import Any, Dict, Optional


@unique
class ErrorCode(Enum):
    """Stable identifiers for every error category."""

    DECOMPILE_FAILED = "GH-1001"
    CANCELLED = "GH-1100"
    UNBOUND_VARIABLE = "GH-2001"
    ARITY_MISMATCH = "GH-2002"
    GENERATION_FAILED = "GH-2099"
    SOLVER_FAULT = "GH-3001"
    BAD_QUERY = "GH-4001"
    BAD_CONDITION = "GH-4002"
    BAD_PROGRAM = "GH-4003"
    BAD_CONFIG = "GH-4004"
    BUSY = "GH-5001"

    def __str__(self) -> str:
        return self.value


class GhiHornError(Exception):
    """Base class of all GhiHorn errors."""

    code: ErrorCode = ErrorCode.GENERATION_FAILED

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        """Serialisable form used by the headless driver."""
        out: Dict[str, Any] = {
            "code": str(self.code),
            "kind": type(self).__name__,
            "message": self.message,
        }
        if self.context:
            out["context"] = {k: str(v) for k, v in self.context.items()}
        return out

    def __str__(self) -> str:
        if not self.context:
            return f"[{self.code}] {self.message}"
        ctx = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"[{self.code}] {self.message} ({ctx})"


class DecompileError(GhiHornError):
    """A single function could not be decompiled.

    Absorbed by the coordinator's callers and recorded as a coverage gap;
    the Hornifier treats the function like an unresolved external call.
    """

    code = ErrorCode.DECOMPILE_FAILED

    def __init__(self, address: Any, reason: str) -> None:
        super().__init__(f"cannot decompile function at {address}: {reason}",
                         address=address)
        self.address = address
        self.reason = reason


class CancelledError(GhiHornError):
    """The run was cancelled before the operation could complete."""

    code = ErrorCode.CANCELLED

    def __init__(self, message: str = "operation cancelled", **context: Any) -> None:
        super().__init__(message, **context)


class GenerationFault(GhiHornError):
    """An internal invariant of clause generation was violated.

    Always indicates a Hornifier bug.  ``function`` and ``predicate`` give
    the diagnostic context required to reproduce it.
    """

    code = ErrorCode.GENERATION_FAILED

    def __init__(
        self,
        message: str,
        function: Optional[Any] = None,
        predicate: Optional[str] = None,
        code: Optional[ErrorCode] = None,
    ) -> None:
        super().__init__(message, function=function, predicate=predicate)
        self.function = function
        self.predicate = predicate
        if code is not None:
            self.code = code


class SolverFault(GhiHornError):
    """The Horn engine rejected the clause set or exhausted its resources."""

    code = ErrorCode.SOLVER_FAULT


class QueryError(GhiHornError):
    """The query refers to something the working set does not contain."""

    code = ErrorCode.BAD_QUERY


class ConditionSyntaxError(GhiHornError):
    """A path condition could not be parsed."""

    code = ErrorCode.BAD_CONDITION

    def __init__(self, text: str, detail: str) -> None:
        super().__init__(f"invalid condition {text!r}: {detail}")
        self.text = text


class ProgramFormatError(GhiHornError):
    """A program or API library description is malformed."""

    code = ErrorCode.BAD_PROGRAM


class ConfigError(GhiHornError):
    """A configuration value is missing or invalid."""

    code = ErrorCode.BAD_CONFIG


class AnalysisBusyError(GhiHornError):
    """A controller was asked to start a run while one is still active."""

    code = ErrorCode.BUSY
