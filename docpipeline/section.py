"""Composite step that runs its children concurrently and joins on their commits."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from .config import StepConfig
from .engine import commit_change
from .errors import ConfigurationError, SectionError

if TYPE_CHECKING:
    from .engine import EngineProtocol
    from .protocol import StepProtocol
    from .registry import StepRegistry


def _discard_result(task: asyncio.Task) -> None:
    # Consume the outcome of children abandoned after a failure
    if not task.cancelled():
        task.exception()


class Section:
    """Composite step: fan out to every child, fan in once all are committed.

    Every child starts at once, independent of its position in the list;
    ordering between children is expressed as data dependencies (a child
    returning ``Pending`` until a sibling's field shows up), never by
    sequence.

    A child counts as complete when:

    - it resolved with ``{field: value}`` and the engine confirmed that
      ``field`` was applied to this document, or
    - it resolved with nothing.

    The first child error fails the section at once (``SectionError`` with
    the path to the failing step).  Children still running are cancelled
    and whatever they produce is discarded.

    ``execute`` returns the section name.  A section never registers a
    field of its own.
    """

    def __init__(
        self,
        registry: "StepRegistry | None" = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)
        self.engine: EngineProtocol | None = None
        self.name = "default"
        self.steps: tuple[StepProtocol, ...] = ()
        self._initialized = False

    def init(self, engine: "EngineProtocol", config: StepConfig) -> None:
        """Bind to *engine* and build every child through the registry."""
        if self._initialized:
            raise ConfigurationError(f"Section {self.name!r} is already initialized")
        if self.registry is None:
            from .registry import StepRegistry

            self.registry = StepRegistry()

        self.engine = engine
        self.name = config.name
        self.steps = tuple(self.registry.build(engine, child) for child in config.children)
        self._initialized = True

    def register_field(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, doc_id: str) -> str:
        """Run every child against *doc_id*; return the section name."""
        if not self._initialized:
            raise ConfigurationError(f"Section {self.name!r} used before init()")

        tasks: dict[asyncio.Task, StepProtocol] = {}
        for step in self.steps:
            task = asyncio.create_task(
                self._execute_step(step, doc_id), name=f"{self.name}/{step.name}"
            )
            task.add_done_callback(_discard_result)
            tasks[task] = step

        try:
            pending = set(tasks)
            while pending:
                done, pending = await asyncio.wait(
                    pending, return_when=asyncio.FIRST_EXCEPTION
                )
                for task in done:
                    exc = task.exception()
                    if exc is not None:
                        raise self._child_error(tasks[task], exc) from exc
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()

        self.logger.info(
            "Section: %s completed %d step(s) on %s", self.name, len(tasks), doc_id
        )
        return self.name

    async def _execute_step(self, step: "StepProtocol", doc_id: str) -> None:
        """Run *step*; when it produced a field, commit it and wait for the ack."""
        result = await step.execute(doc_id)
        field = step.register_field()
        if field is None or not isinstance(result, Mapping) or field not in result:
            self.logger.debug("Section: %s/%s done, nothing to commit", self.name, step.name)
            return

        assert self.engine is not None
        event = await commit_change(self.engine, doc_id, field, result[field])
        self.logger.debug(
            "Section: %s/%s committed %r (version %d)",
            self.name,
            step.name,
            field,
            event.version,
        )

    def _child_error(self, step: "StepProtocol", exc: BaseException) -> SectionError:
        if isinstance(exc, SectionError):
            return SectionError((self.name, *exc.path), exc.cause)
        return SectionError((self.name, step.name), exc)

    def __repr__(self) -> str:
        return f"Section(name={self.name!r}, steps={[s.name for s in self.steps]!r})"

