"""Base class for configurable, retryable units of work."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING, Any

from jinja2 import TemplateSyntaxError

from .config import DEFAULT_TIMEOUT_MS, StepConfig
from .environment import Environment, materialize
from .errors import ConfigurationError
from .protocol import Outcome, Pending, Ready
from .runner import StepRunner
from .templates import is_template

if TYPE_CHECKING:
    from .engine import EngineProtocol


class Step:
    """Base class for steps that contribute one value to a document.

    Subclasses override ``attempt(env)`` (plain or ``async``) and return
    one of:

    - ``Ready(value)``: done; ``value`` is registered under
      ``register_to`` when both are set.  A bare value counts as ``Ready``.
    - ``Pending(reason)``: the document is missing something; try again
      after the next change.  Raising ``DependencyNotMet`` is equivalent.
    - ``Err(error)``: give up.  Raising any other exception is equivalent.

    ``attempt`` may run many times for the same document and must not
    have side effects beyond reading *env*.

    Per-document state lives on the ``StepRunner`` created for each
    ``execute()`` call, so one step instance serves any number of
    documents concurrently.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(type(self).__module__)
        self.engine: EngineProtocol | None = None
        self.config: StepConfig | None = None
        self.name: str = type(self).__name__
        self.vars: dict[str, Any] = {}
        self.timeout_ms: int = DEFAULT_TIMEOUT_MS
        self.register_to: str | None = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def init(self, engine: "EngineProtocol", config: StepConfig) -> None:
        """Bind to *engine* and apply *config*.  Only once per instance."""
        if self._initialized:
            raise ConfigurationError(f"Step {self.name!r} is already initialized")
        self.validate(engine, config)
        self.engine = engine
        self.config = config
        self.name = config.name
        self.vars = dict(config.vars)
        self.timeout_ms = config.timeout_ms
        self.register_to = config.register_to
        self._initialized = True

    def validate(self, engine: "EngineProtocol", config: StepConfig) -> None:
        """Reject *config* with ``ConfigurationError`` before anything is bound."""

    def register_field(self) -> str | None:
        return self.register_to

    def attempt(self, env: Environment) -> Outcome | Any:
        """Single-attempt logic.  The default produces nothing."""
        return Ready()

    def runner(self, doc_id: str) -> StepRunner:
        """Fresh execution state for *doc_id*."""
        if not self._initialized:
            raise ConfigurationError(f"Step {self.name!r} used before init()")
        return StepRunner(
            self,
            self.engine,
            doc_id,
            vars=self.vars,
            timeout_ms=self.timeout_ms,
            register_to=self.register_to,
            logger=self.logger,
        )

    async def execute(self, doc_id: str) -> dict[str, Any] | None:
        """Run this step against *doc_id* until it succeeds or fails."""
        return await self.runner(doc_id).execute()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, register_to={self.register_to!r})"


class TemplateStep(Step):
    """Registers the rendered ``value`` var.

    Waits (``Pending``) while ``value`` renders to nothing, which under the
    default strict renderer means it refers to document data that is not
    there yet::

        {"name": "total", "class": "template", "register": "total",
         "vars": {"value": "{{ doc.price * doc.quantity }}"}}
    """

    def validate(self, engine: "EngineProtocol", config: StepConfig) -> None:
        if "value" not in config.vars:
            raise ConfigurationError(f"Template step {config.name!r} needs a 'value' var")
        renderer = engine.get_template_renderer()
        for template in _templates_in(config.vars["value"]):
            try:
                renderer.check(template)
            except TemplateSyntaxError as exc:
                raise ConfigurationError(
                    f"Template step {config.name!r} has an invalid value {template!r}: {exc}"
                ) from exc

    def attempt(self, env: Environment) -> Outcome:
        value = env["value"]
        if value is None:
            return Pending(f"{self.vars['value']!r} rendered to nothing")
        return Ready(materialize(value))


def _templates_in(value: Any) -> Iterator[str]:
    if is_template(value):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from _templates_in(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _templates_in(item)
