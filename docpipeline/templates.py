"""Template rendering for environment values (Jinja2, native types)."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from itertools import chain, islice
from typing import Any, Protocol, runtime_checkable

from jinja2 import StrictUndefined, TemplateError, Undefined, make_logging_undefined
from jinja2.nativetypes import NativeEnvironment, NativeTemplate

logger = logging.getLogger(__name__)

TEMPLATE_MARKERS = ("{{", "{%")


def is_template(value: Any) -> bool:
    """True when *value* is a string containing template syntax."""
    return isinstance(value, str) and any(m in value for m in TEMPLATE_MARKERS)


@runtime_checkable
class TemplateRenderer(Protocol):
    """Renders one template string against a context.

    ``render`` returns ``None`` when rendering failed fatally.  How
    warnings and failures are reported is up to the renderer.  ``check``
    raises ``jinja2.TemplateSyntaxError`` for a template that can never
    render, without needing a context.
    """

    def render(self, template: str, context: Mapping[str, Any]) -> Any: ...

    def check(self, template: str) -> None: ...


def passthrough_concat(values: Iterable[Any]) -> Any:
    """Join rendered nodes, keeping a lone non-string value as is.

    Unlike ``jinja2.nativetypes.native_concat`` string output is never
    parsed as a Python literal, so ``"123"`` stays a string.
    """
    values = iter(values)
    head = list(islice(values, 2))
    if not head:
        return ""
    if len(head) == 1 and not isinstance(head[0], str):
        return head[0]
    return "".join([str(v) for v in chain(head, values)])


class PassthroughTemplate(NativeTemplate):
    pass


class PassthroughEnvironment(NativeEnvironment):
    """``NativeEnvironment`` that renders through ``passthrough_concat``."""

    concat = staticmethod(passthrough_concat)  # type: ignore[assignment]
    template_class = PassthroughTemplate


# NativeTemplate.render looks concat up on its environment class
PassthroughTemplate.environment_class = PassthroughEnvironment


class JinjaTemplateRenderer:
    """Jinja2 renderer that returns native Python values.

    ``"{{ doc.a }}"`` renders to ``5`` rather than ``"5"`` when ``doc.a``
    is an int; mixed text and string values always render to a string.

    ``strict=True`` (default) fails on unknown names: the error is logged
    and ``None`` is returned.  ``strict=False`` logs unknown names as
    warnings and renders them as empty.
    """

    def __init__(
        self,
        *,
        strict: bool = True,
        filters: Mapping[str, Callable[..., Any]] | None = None,
        globals: Mapping[str, Any] | None = None,
    ) -> None:
        self.strict = strict
        undefined: type[Undefined] = (
            StrictUndefined if strict else make_logging_undefined(logger, Undefined)
        )
        self._env = PassthroughEnvironment(undefined=undefined)
        if filters:
            self._env.filters.update(filters)
        if globals:
            self._env.globals.update(globals)

    def check(self, template: str) -> None:
        """Compile *template*; raises ``TemplateSyntaxError`` when it is malformed."""
        self._env.from_string(template)

    def render(self, template: str, context: Mapping[str, Any]) -> Any:
        try:
            result = self._env.from_string(template).render(**context)
        except TemplateError as exc:
            logger.error("JinjaTemplateRenderer: cannot render %r: %s", template, exc)
            return None

        # A lone expression hands back the Undefined object itself
        if isinstance(result, Undefined):
            if self.strict:
                logger.error(
                    "JinjaTemplateRenderer: cannot render %r: undefined value",
                    template,
                )
                return None
            return str(result)
        return result
