"""Engine collaborator: document store, change requests and notifications.

Public surface::

    EngineProtocol       what steps and sections consume
    ChangeEvent          one applied change
    ChangeSubscription   disposable, coalescing listener for change events
    InMemoryEngine       single-process reference implementation
    commit_change        publish a change and wait for its confirmation
"""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .templates import JinjaTemplateRenderer, TemplateRenderer

if TYPE_CHECKING:
    from .protocol import StepProtocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    """Broadcast after the engine applied ``field`` to document ``doc_id``."""

    doc_id: str
    field: str
    version: int


class ChangeSubscription:
    """Listener for change events on one document, optionally one field.

    Events coalesce: ``wait()`` returns once at least one matching event
    arrived since the last ``wait()``/``clear()`` and hands back the most
    recent one.  Usable as a context manager; leaving the block disposes.
    """

    def __init__(self, engine: "InMemoryEngine", doc_id: str, field: str | None = None) -> None:
        self.doc_id = doc_id
        self.field = field
        self._engine = engine
        self._signal = asyncio.Event()
        self._latest: ChangeEvent | None = None
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def matches(self, event: ChangeEvent) -> bool:
        if event.doc_id != self.doc_id:
            return False
        return self.field is None or event.field == self.field

    def notify(self, event: ChangeEvent) -> None:
        if self._disposed or not self.matches(event):
            return
        self._latest = event
        self._signal.set()

    def clear(self) -> None:
        """Forget events received so far."""
        self._signal.clear()

    async def wait(self) -> ChangeEvent:
        """Park until a matching event arrives.  No timeout."""
        if self._disposed:
            raise RuntimeError("wait() on a disposed subscription")
        await self._signal.wait()
        self._signal.clear()
        assert self._latest is not None
        return self._latest

    def dispose(self) -> None:
        """Stop receiving events.  Idempotent."""
        if self._disposed:
            return
        self._disposed = True
        self._engine._unsubscribe(self)

    def __enter__(self) -> "ChangeSubscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.dispose()

    def __repr__(self) -> str:
        state = "disposed" if self._disposed else "live"
        return f"ChangeSubscription({self.doc_id!r}, field={self.field!r}, {state})"


@runtime_checkable
class EngineProtocol(Protocol):
    """Structural interface steps and sections use to reach the engine."""

    def get_document(self, doc_id: str) -> dict[str, Any]: ...

    def get_document_version(self, doc_id: str) -> int: ...

    def get_system_config(self) -> Any: ...

    def publish_change_request(self, doc_id: str, field: str, value: Any) -> None: ...

    def subscribe_to_changes(self, doc_id: str, field: str | None = None) -> ChangeSubscription: ...

    def get_template_renderer(self) -> TemplateRenderer: ...


class InMemoryEngine:
    """Single-process engine holding documents in memory.

    Change requests are fire-and-forget: they are queued on the running
    event loop with ``call_soon`` (FIFO), so requests for a document are
    applied and broadcast in the order they were published.  A
    subscription created before a change is applied always sees it.

    Snapshots handed out by ``get_document`` are deep copies; only the
    engine mutates stored documents.
    """

    def __init__(
        self,
        *,
        system_config: Mapping[str, Any] | None = None,
        renderer: TemplateRenderer | None = None,
    ) -> None:
        self._system_config = dict(system_config or {})
        self._renderer = renderer or JinjaTemplateRenderer()
        self._documents: dict[str, dict[str, Any]] = {}
        self._versions: dict[str, int] = {}
        self._subscriptions: dict[str, list[ChangeSubscription]] = {}

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def create_document(
        self,
        initial: Mapping[str, Any] | None = None,
        doc_id: str | None = None,
    ) -> str:
        """Register a new document and return its id."""
        doc_id = doc_id or uuid.uuid4().hex
        if doc_id in self._documents:
            raise ValueError(f"Document {doc_id!r} already exists")
        self._documents[doc_id] = copy.deepcopy(dict(initial or {}))
        self._versions[doc_id] = 0
        logger.debug("InMemoryEngine: created document %s", doc_id)
        return doc_id

    def _require(self, doc_id: str) -> dict[str, Any]:
        try:
            return self._documents[doc_id]
        except KeyError:
            raise KeyError(f"Unknown document {doc_id!r}") from None

    def get_document(self, doc_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._require(doc_id))

    def get_document_version(self, doc_id: str) -> int:
        self._require(doc_id)
        return self._versions[doc_id]

    def get_system_config(self) -> dict[str, Any]:
        return copy.deepcopy(self._system_config)

    def get_template_renderer(self) -> TemplateRenderer:
        return self._renderer

    # ------------------------------------------------------------------
    # Change requests
    # ------------------------------------------------------------------

    def publish_change_request(self, doc_id: str, field: str, value: Any) -> None:
        """Queue ``doc[field] = value``.  Must be called from the event loop."""
        self._require(doc_id)
        loop = asyncio.get_running_loop()
        loop.call_soon(self._apply, doc_id, field, copy.deepcopy(value))

    def _apply(self, doc_id: str, field: str, value: Any) -> None:
        document = self._documents.get(doc_id)
        if document is None:
            logger.warning(
                "InMemoryEngine: dropping change to %r for removed document %s",
                field,
                doc_id,
            )
            return
        document[field] = value
        self._versions[doc_id] += 1
        event = ChangeEvent(doc_id=doc_id, field=field, version=self._versions[doc_id])
        logger.debug("InMemoryEngine: applied %s", event)
        for subscription in list(self._subscriptions.get(doc_id, ())):
            subscription.notify(event)

    def remove_document(self, doc_id: str) -> dict[str, Any]:
        """Forget *doc_id* and return its final state."""
        document = self._require(doc_id)
        del self._documents[doc_id]
        del self._versions[doc_id]
        return document

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe_to_changes(self, doc_id: str, field: str | None = None) -> ChangeSubscription:
        self._require(doc_id)
        subscription = ChangeSubscription(self, doc_id, field)
        self._subscriptions.setdefault(doc_id, []).append(subscription)
        return subscription

    def _unsubscribe(self, subscription: ChangeSubscription) -> None:
        subs = self._subscriptions.get(subscription.doc_id)
        if subs is None or subscription not in subs:
            return
        subs.remove(subscription)
        if not subs:
            del self._subscriptions[subscription.doc_id]

    def live_subscriptions(self, doc_id: str | None = None) -> int:
        """Number of undisposed subscriptions, for one document or all."""
        if doc_id is not None:
            return len(self._subscriptions.get(doc_id, ()))
        return sum(len(subs) for subs in self._subscriptions.values())

    # ------------------------------------------------------------------
    # Convenience runner
    # ------------------------------------------------------------------

    async def run(
        self,
        step: "StepProtocol",
        initial: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Build one document with *step* and return its final snapshot.

        A registered result from a plain (non-section) root step is
        committed before returning, the same way a section commits its
        children's results.
        """
        doc_id = self.create_document(initial)
        result = await step.execute(doc_id)
        field = step.register_field()
        if field is not None and isinstance(result, Mapping) and field in result:
            await commit_change(self, doc_id, field, result[field])
        return self.get_document(doc_id)


async def commit_change(
    engine: EngineProtocol,
    doc_id: str,
    field: str,
    value: Any,
) -> ChangeEvent:
    """Publish ``doc[field] = value`` and wait until the engine confirms it.

    The confirmation listener is registered before publishing and is
    scoped to this document and field, so the matching event is the one
    for this change (or a later write of the same field).
    """
    with engine.subscribe_to_changes(doc_id, field) as confirmation:
        engine.publish_change_request(doc_id, field, value)
        return await confirmation.wait()
