"""The per-attempt, read-only input handed to a step."""

from __future__ import annotations

import copy
from collections.abc import Iterator, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from .templates import TemplateRenderer, is_template

if TYPE_CHECKING:
    from .engine import EngineProtocol

_MISSING = object()


class _TemplatedMapping(Mapping):
    """Read-only mapping that renders template strings on read.

    Nested dicts and lists are wrapped on the way out, so templates at any
    depth are rendered lazily, only when somebody reads them.
    """

    __slots__ = ("_data", "_renderer", "_context")

    def __init__(
        self,
        data: Mapping[str, Any],
        renderer: TemplateRenderer,
        context: Mapping[str, Any],
    ) -> None:
        self._data = data
        self._renderer = renderer
        self._context = context

    def _resolve(self, value: Any) -> Any:
        return _resolve(value, self._renderer, self._context)

    def __getitem__(self, key: str) -> Any:
        return self._resolve(self._data[key])

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({list(self._data)!r})"


class _TemplatedSequence(Sequence):
    __slots__ = ("_data", "_renderer", "_context")

    def __init__(
        self,
        data: Sequence[Any],
        renderer: TemplateRenderer,
        context: Mapping[str, Any],
    ) -> None:
        self._data = data
        self._renderer = renderer
        self._context = context

    def __getitem__(self, index):  # type: ignore[override]
        if isinstance(index, slice):
            return [_resolve(v, self._renderer, self._context) for v in self._data[index]]
        return _resolve(self._data[index], self._renderer, self._context)

    def __len__(self) -> int:
        return len(self._data)


def _resolve(value: Any, renderer: TemplateRenderer, context: Mapping[str, Any]) -> Any:
    if is_template(value):
        return renderer.render(value, context)
    if isinstance(value, Mapping):
        return _TemplatedMapping(value, renderer, context)
    if isinstance(value, (list, tuple)):
        return _TemplatedSequence(value, renderer, context)
    return value


class Environment(_TemplatedMapping):
    """Declared vars plus ``doc`` and ``system``, rendered lazily.

    The ``doc`` and ``system`` entries are plain snapshots and are never
    rendered.  Every other string containing template syntax is rendered
    on read against ``{**vars, "doc": ..., "system": ..., "vars": ...}``,
    using the raw (unrendered) vars so templates never recurse.

    ``version`` is the document version the snapshot was taken at.
    """

    __slots__ = ("version",)

    PLAIN_KEYS = frozenset({"doc", "system"})

    def __init__(
        self,
        vars: Mapping[str, Any],
        doc: Any,
        system: Any,
        renderer: TemplateRenderer,
        *,
        version: int = 0,
    ) -> None:
        raw_vars = copy.deepcopy(dict(vars))
        data = {**raw_vars, "doc": doc, "system": system}
        context = {**raw_vars, "doc": doc, "system": system, "vars": raw_vars}
        super().__init__(data, renderer, context)
        self.version = version

    def __getitem__(self, key: str) -> Any:
        if key in self.PLAIN_KEYS:
            return self._data[key]
        return super().__getitem__(key)

    @property
    def doc(self) -> Any:
        return self._data["doc"]

    @property
    def system(self) -> Any:
        return self._data["system"]

    def get_path(self, path: str, default: Any = None) -> Any:
        """Dotted lookup, e.g. ``env.get_path("doc.items.0.name")``."""
        current: Any = self
        for part in path.split("."):
            if isinstance(current, Mapping):
                current = current.get(part, _MISSING)
            elif isinstance(current, Sequence) and not isinstance(current, str):
                try:
                    current = current[int(part)]
                except (ValueError, IndexError):
                    current = _MISSING
            else:
                current = _MISSING
            if current is _MISSING:
                return default
        return current

    def raw(self) -> dict[str, Any]:
        """Deep copy of the underlying values with no templates rendered."""
        return copy.deepcopy(dict(self._data))


def build_environment(
    engine: "EngineProtocol",
    vars: Mapping[str, Any],
    doc_id: str,
) -> Environment:
    """Snapshot *doc_id* from *engine* and wrap it with *vars* and system config."""
    version = engine.get_document_version(doc_id)
    return Environment(
        vars,
        engine.get_document(doc_id),
        engine.get_system_config(),
        engine.get_template_renderer(),
        version=version,
    )


def materialize(value: Any) -> Any:
    """Render every template under *value* and return plain dicts and lists."""
    if isinstance(value, Mapping):
        return {key: materialize(item) for key, item in value.items()}
    if isinstance(value, _TemplatedSequence):
        return [materialize(item) for item in value]
    if isinstance(value, list):
        return [materialize(item) for item in value]
    return value
