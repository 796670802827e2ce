"""Step configuration model and loaders for step trees and system config."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from dotenv import dotenv_values
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    model_validator,
)

from .errors import ConfigurationError

DEFAULT_TIMEOUT_MS = 5000
SECTION_FACTORY_KEY = "section"


class StepConfig(BaseModel):
    """Static configuration of one step node, parsed once at build time.

    Accepts the historical key names as aliases: ``class`` or ``factory``
    for ``factory_key``, ``register`` for ``register_to`` and ``steps`` for
    ``children``.  A node with a ``steps``/``children`` list (even empty) but no
    factory key is a section.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    name: str = Field(default="default", description="Step name, used in logs and errors")
    factory_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("factory_key", "class", "factory"),
        description="Registry key of the step implementation",
    )
    vars: Dict[str, Any] = Field(
        default_factory=dict, description="Declared variables, may hold templates"
    )
    timeout_ms: int = Field(
        default=DEFAULT_TIMEOUT_MS, gt=0, description="Bound on a single attempt"
    )
    register_to: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("register_to", "register"),
        description="Document field that receives the step result",
    )
    children: List["StepConfig"] = Field(
        default_factory=list,
        validation_alias=AliasChoices("children", "steps"),
        description="Child step nodes (sections only)",
    )

    @model_validator(mode="before")
    @classmethod
    def _default_section_key(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        has_key = any(k in data for k in ("factory_key", "class", "factory"))
        if not has_key and ("children" in data or "steps" in data):
            data = {**data, "factory_key": SECTION_FACTORY_KEY}
        return data

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StepConfig":
        """Validate *data*, raising ``ConfigurationError`` on any problem."""
        if not isinstance(data, Mapping):
            raise ConfigurationError(
                f"Step config must be a mapping, got {type(data).__name__}"
            )
        try:
            return cls.model_validate(dict(data))
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid step config: {exc}") from exc


StepConfig.model_rebuild()


def load_config(path: str | Path) -> StepConfig:
    """Load a step tree from a ``.json``, ``.yaml`` or ``.yml`` file."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")

    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    try:
        if suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        elif suffix == ".json":
            data = json.loads(text)
        else:
            raise ConfigurationError(f"Unsupported config format: {suffix or path.name}")
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Could not parse {path}: {exc}") from exc

    if data is None:
        data = {}
    return StepConfig.from_mapping(data)


def load_system_config(
    env_file: str | Path | None = None,
    *,
    prefix: str = "DOCPIPELINE_",
) -> dict[str, Any]:
    """Build the ``system`` config from a dotenv file and the process env.

    Only keys starting with *prefix* are kept; the prefix is stripped and
    the remainder lowercased.  Process environment wins over the file.
    """
    values: dict[str, Any] = {}
    if env_file is not None:
        values.update(dotenv_values(env_file))
    values.update(os.environ)

    return {
        key[len(prefix):].lower(): value
        for key, value in values.items()
        if key.startswith(prefix) and len(key) > len(prefix)
    }
