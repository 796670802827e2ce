"""Structural protocol and attempt outcome types for pipeline steps."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, Union, runtime_checkable

if TYPE_CHECKING:
    from .config import StepConfig
    from .engine import EngineProtocol


# ---------------------------------------------------------------------------
# Attempt outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Ready:
    """The attempt finished.  ``value`` is ``None`` when nothing was produced."""

    value: Any = None


@dataclass(frozen=True)
class Pending:
    """The attempt needs document data that is not there yet.

    The runner parks the execution until the document changes, then
    attempts again.
    """

    reason: str = ""


@dataclass(frozen=True)
class Err:
    """The attempt failed.  Terminal, never retried."""

    error: BaseException


Outcome = Union[Ready, Pending, Err]


# ---------------------------------------------------------------------------
# StepProtocol
# ---------------------------------------------------------------------------


@runtime_checkable
class StepProtocol(Protocol):
    """Structural protocol that every step (and Section) must satisfy.

    ``execute`` is a coroutine.  For a plain step it returns
    ``{register_field(): value}`` or ``None``; for a Section it returns
    the section name.  Errors are raised, never returned.

    ``@runtime_checkable`` lets the registry use ``isinstance(step,
    StepProtocol)`` at build time to give a clear error when a factory
    produces something that is not a step.
    """

    name: str

    def init(self, engine: "EngineProtocol", config: "StepConfig") -> None: ...

    async def execute(self, doc_id: str) -> Mapping[str, Any] | str | None: ...

    def register_field(self) -> str | None: ...
