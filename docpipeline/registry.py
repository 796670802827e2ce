"""Factory keys to step constructors, and pipeline building."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .config import SECTION_FACTORY_KEY, StepConfig, load_config
from .errors import ConfigurationError
from .protocol import StepProtocol
from .section import Section
from .step import TemplateStep

if TYPE_CHECKING:
    from .engine import EngineProtocol

logger = logging.getLogger(__name__)

StepFactory = Callable[[], Any]


class StepRegistry:
    """Maps factory keys to zero-argument step constructors.

    A new registry knows the built-in keys ``"section"`` (bound to this
    registry, so nested sections resolve their children here too) and
    ``"template"``.  Register custom steps with ``register()`` or the
    ``step()`` decorator::

        registry = StepRegistry()

        @registry.step("sum")
        class SumStep(Step):
            def attempt(self, env):
                return Ready(env["a"] + env["b"])
    """

    def __init__(self, *, builtins: bool = True) -> None:
        self._factories: dict[str, StepFactory] = {}
        if builtins:
            self.register(SECTION_FACTORY_KEY, lambda: Section(registry=self))
            self.register("template", TemplateStep)

    def register(self, key: str, factory: StepFactory, *, replace: bool = False) -> None:
        if not isinstance(key, str) or not key.strip():
            raise ConfigurationError("Factory key must be a non-empty string")
        if key in self._factories and not replace:
            raise ConfigurationError(f"Factory key {key!r} is already registered")
        self._factories[key] = factory

    def step(self, key: str, *, replace: bool = False) -> Callable[[type], type]:
        """Class decorator form of ``register()``."""

        def decorator(cls: type) -> type:
            self.register(key, cls, replace=replace)
            return cls

        return decorator

    def keys(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, key: object) -> bool:
        return key in self._factories

    def create(self, config: StepConfig) -> StepProtocol:
        """Construct (but do not initialize) the step described by *config*."""
        if config.factory_key is None:
            raise ConfigurationError(f"Step {config.name!r} has no factory key")
        try:
            factory = self._factories[config.factory_key]
        except KeyError:
            raise ConfigurationError(
                f"Unknown factory key {config.factory_key!r} for step {config.name!r}; "
                f"known keys: {self.keys()}"
            ) from None

        step = factory()
        if not isinstance(step, StepProtocol):
            raise ConfigurationError(
                f"Factory {config.factory_key!r} produced {type(step).__name__}, "
                "which is not a step (needs name, init, execute, register_field)"
            )
        if config.children and not isinstance(step, Section):
            raise ConfigurationError(
                f"Step {config.name!r} ({config.factory_key}) cannot have children"
            )
        return step

    def build(
        self,
        engine: "EngineProtocol",
        config: StepConfig | Mapping[str, Any],
    ) -> StepProtocol:
        """Construct and initialize the step tree rooted at *config*."""
        if not isinstance(config, StepConfig):
            config = StepConfig.from_mapping(config)
        step = self.create(config)
        step.init(engine, config)
        logger.debug(
            "StepRegistry: built %s %r", config.factory_key, config.name
        )
        return step


def build_pipeline(
    engine: "EngineProtocol",
    config: StepConfig | Mapping[str, Any],
    registry: StepRegistry | None = None,
) -> StepProtocol:
    """Build the step tree for *config*; fails before anything executes."""
    return (registry or StepRegistry()).build(engine, config)


def load_pipeline(
    engine: "EngineProtocol",
    path: str | Path,
    registry: StepRegistry | None = None,
) -> StepProtocol:
    """``build_pipeline`` from a JSON or YAML file."""
    return build_pipeline(engine, load_config(path), registry)
