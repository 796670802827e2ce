"""Shared fixtures and reusable dummy steps for document pipeline tests."""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Any

import pytest

from docpipeline import (
    DependencyNotMet,
    Environment,
    Err,
    InMemoryEngine,
    Pending,
    Ready,
    Step,
    StepConfig,
)

# ---------------------------------------------------------------------------
# Reusable dummy steps
# ---------------------------------------------------------------------------


class Constant(Step):
    """Returns vars['value'] (rendered)."""

    def attempt(self, env: Environment):
        return Ready(env["value"])


class AddOne(Step):
    """Returns vars['x'] + 1."""

    def attempt(self, env: Environment):
        return Ready(env["x"] + 1)


class NoValue(Step):
    """Finishes without producing anything."""

    def attempt(self, env: Environment):
        return Ready()


class NeedsField(Step):
    """Pending until doc[vars['field']] exists, then returns it.

    Counts attempts (thread-safe: sync attempts run in worker threads).
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.calls = 0
        self._lock = threading.Lock()

    def attempt(self, env: Environment):
        with self._lock:
            self.calls += 1
        field = self.vars["field"]
        if field not in env.doc:
            return Pending(f"doc.{field} missing")
        return Ready(env.doc[field])


class RaisesDependency(Step):
    """Same as NeedsField but signals by raising DependencyNotMet."""

    def attempt(self, env: Environment):
        field = self.vars["field"]
        if field not in env.doc:
            raise DependencyNotMet(f"doc.{field} missing")
        return env.doc[field]


class Doubles(Step):
    """Pending until doc.p exists, then returns doc.p * 2."""

    def attempt(self, env: Environment):
        if "p" not in env.doc:
            return Pending("waiting for p")
        return Ready(env.doc["p"] * 2)


class Boom(Step):
    """Always raises RuntimeError."""

    def attempt(self, env: Environment):
        raise RuntimeError("boom")


class ReturnsErr(Step):
    """Returns Err instead of raising."""

    def attempt(self, env: Environment):
        return Err(ValueError("bad input"))


class Sleepy(Step):
    """Blocks its worker thread for vars['delay'] seconds."""

    def attempt(self, env: Environment):
        time.sleep(env["delay"])
        return Ready("slept")


class AsyncSleepy(Step):
    """Awaits vars['delay'] seconds."""

    async def attempt(self, env: Environment):
        await asyncio.sleep(env["delay"])
        return Ready("slept")


class SlowOnceReady(Step):
    """Pending until doc.b exists; then takes vars['delay'] seconds."""

    async def attempt(self, env: Environment):
        if "b" not in env.doc:
            return Pending("waiting for b")
        await asyncio.sleep(env["delay"])
        return Ready(env.doc["b"])


class Gated(Step):
    """Async step that reads its snapshot, then waits on a gate before answering.

    Lets a test change the document while an attempt is in flight.
    """

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()
        self.calls = 0

    async def attempt(self, env: Environment):
        self.calls += 1
        has_b = "b" in env.doc
        self.entered.set()
        await self.gate.wait()
        if not has_b:
            return Pending("waiting for b")
        return Ready(env.doc["b"])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_step(cls: type, engine: InMemoryEngine, name: str | None = None, **config: Any):
    """Construct and init *cls* with a StepConfig built from *config*."""
    step = cls()
    step.init(engine, StepConfig(name=name or cls.__name__.lower(), **config))
    return step


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll *predicate* on the event loop until it holds or *timeout* passes."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    return InMemoryEngine(system_config={"env": "test"})
