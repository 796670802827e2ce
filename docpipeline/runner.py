"""Drives one step execution for one document to a single result."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Mapping
from enum import Enum
from typing import TYPE_CHECKING, Any

from .environment import Environment, build_environment
from .errors import DependencyNotMet, DocPipelineError, StepError, StepTimeoutError
from .protocol import Err, Outcome, Pending, Ready

if TYPE_CHECKING:
    from .engine import ChangeSubscription, EngineProtocol


class Phase(Enum):
    """Where an execution is in its lifecycle."""

    ATTEMPTING = "attempting"
    WAITING_FOR_CHANGE = "waiting_for_change"
    SUCCEEDED = "succeeded"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in (Phase.ATTEMPTING, Phase.WAITING_FOR_CHANGE)


class StepRunner:
    """Retry state machine for one ``(step, doc_id)`` execution.

    One driver loop advances ``phase``::

        ATTEMPTING ──Ready──────────▶ SUCCEEDED
            │      ──Err/exception──▶ FAILED
            │      ──over timeout───▶ TIMED_OUT
            └─Pending─▶ WAITING_FOR_CHANGE ──change event──▶ ATTEMPTING

    ``timeout_ms`` bounds each attempt on its own, never the wait between
    attempts: a waiting execution is parked on its change subscription and
    only a change to the document wakes it.  At most one subscription is
    held, created on the first ``Pending`` and disposed on reaching any
    terminal phase.  The result future is resolved exactly once.

    Synchronous ``attempt`` implementations run in a worker thread.  A
    thread that overruns its timeout cannot be interrupted; it keeps
    running in the background and its result is ignored.
    """

    def __init__(
        self,
        step: Any,
        engine: "EngineProtocol",
        doc_id: str,
        *,
        vars: Mapping[str, Any],
        timeout_ms: int,
        register_to: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.step = step
        self.engine = engine
        self.doc_id = doc_id
        self.vars = vars
        self.timeout_ms = timeout_ms
        self.register_to = register_to
        self.logger = logger or logging.getLogger(__name__)

        self.phase = Phase.ATTEMPTING
        self.attempts = 0
        self._subscription: ChangeSubscription | None = None
        self._sink: asyncio.Future | None = None

    @property
    def name(self) -> str:
        return getattr(self.step, "name", type(self.step).__name__)

    @property
    def subscription(self) -> "ChangeSubscription | None":
        return self._subscription

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(self) -> dict[str, Any] | None:
        """Run attempts until a terminal phase and return the result.

        Returns ``{register_to: value}`` or ``None``; raises
        ``StepTimeoutError`` or ``StepError`` (or the ``DocPipelineError``
        the step itself produced).
        """
        if self._sink is not None:
            raise RuntimeError("StepRunner.execute() can only be called once")
        self._sink = asyncio.get_running_loop().create_future()

        try:
            await self._drive()
        except asyncio.CancelledError:
            self._enter(Phase.CANCELLED)
            self._sink.cancel()
            raise
        except Exception as exc:
            # Engine failure outside the attempt itself
            self._resolve(Phase.FAILED, error=exc)
        finally:
            self._dispose_subscription()

        return self._sink.result()

    # ------------------------------------------------------------------
    # Driver loop
    # ------------------------------------------------------------------

    async def _drive(self) -> None:
        while True:
            self._enter(Phase.ATTEMPTING)
            self.attempts += 1
            if self._subscription is not None:
                self._subscription.clear()

            env: Environment | None = None
            try:
                env = build_environment(self.engine, self.vars, self.doc_id)
                outcome = await asyncio.wait_for(
                    self._attempt(env), timeout=self.timeout_ms / 1000
                )
            except asyncio.TimeoutError:
                self._resolve(
                    Phase.TIMED_OUT, error=StepTimeoutError(self.name, self.timeout_ms)
                )
                return
            except DependencyNotMet as exc:
                outcome = Pending(str(exc))
            except Exception as exc:
                outcome = Err(exc)

            if isinstance(outcome, Pending):
                assert env is not None
                await self._wait_for_change(env, outcome)
                continue

            if isinstance(outcome, Err):
                self._resolve(Phase.FAILED, error=self._as_step_error(outcome.error))
                return

            value = outcome.value if isinstance(outcome, Ready) else outcome
            if self.register_to is not None and value is not None:
                self._resolve(Phase.SUCCEEDED, value={self.register_to: value})
            else:
                self._resolve(Phase.SUCCEEDED, value=None)
            return

    async def _attempt(self, env: Environment) -> Outcome | Any:
        attempt = self.step.attempt
        if inspect.iscoroutinefunction(attempt):
            return await attempt(env)
        result = await asyncio.to_thread(attempt, env)
        if inspect.isawaitable(result):
            return await result
        return result

    async def _wait_for_change(self, env: Environment, outcome: Pending) -> None:
        self._enter(Phase.WAITING_FOR_CHANGE)
        if self._subscription is None:
            self._subscription = self.engine.subscribe_to_changes(self.doc_id)
            self.logger.debug(
                "StepRunner: %s listening for changes on %s", self.name, self.doc_id
            )
        if outcome.reason:
            self.logger.debug(
                "StepRunner: %s pending on %s: %s", self.name, self.doc_id, outcome.reason
            )

        # The document may have moved on while the attempt was running
        if self.engine.get_document_version(self.doc_id) != env.version:
            return
        await self._subscription.wait()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _enter(self, phase: Phase) -> None:
        if phase is not self.phase:
            self.logger.debug(
                "StepRunner: %s on %s %s -> %s",
                self.name,
                self.doc_id,
                self.phase.value,
                phase.value,
            )
        self.phase = phase

    def _resolve(
        self,
        phase: Phase,
        *,
        value: dict[str, Any] | None = None,
        error: BaseException | None = None,
    ) -> None:
        assert self._sink is not None
        if self._sink.done():
            raise RuntimeError(
                f"Result of step {self.name!r} on {self.doc_id} resolved twice"
            )
        self._enter(phase)
        self._dispose_subscription()
        if error is not None:
            self._sink.set_exception(error)
        else:
            self._sink.set_result(value)

    def _dispose_subscription(self) -> None:
        if self._subscription is not None:
            self._subscription.dispose()
            self._subscription = None

    def _as_step_error(self, error: BaseException) -> BaseException:
        if isinstance(error, DocPipelineError):
            return error
        wrapped = StepError(self.name, f"{type(error).__name__}: {error}")
        wrapped.__cause__ = error
        return wrapped
