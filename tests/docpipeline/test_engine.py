"""Unit tests for InMemoryEngine, ChangeSubscription and commit_change."""

from __future__ import annotations

import asyncio

import pytest

from docpipeline import (
    ChangeEvent,
    EngineProtocol,
    InMemoryEngine,
    JinjaTemplateRenderer,
    StepRegistry,
    commit_change,
)
from tests.docpipeline.conftest import Constant, make_step


@pytest.mark.unit
class TestDocuments:
    def test_satisfies_engine_protocol(self, engine):
        assert isinstance(engine, EngineProtocol)

    def test_create_assigns_id(self, engine):
        first = engine.create_document()
        second = engine.create_document()
        assert first != second
        assert engine.get_document(first) == {}

    def test_create_with_explicit_id(self, engine):
        assert engine.create_document({"a": 1}, doc_id="doc-1") == "doc-1"
        with pytest.raises(ValueError):
            engine.create_document(doc_id="doc-1")

    def test_snapshot_is_a_copy(self, engine):
        doc_id = engine.create_document({"items": [1]})
        snapshot = engine.get_document(doc_id)
        snapshot["items"].append(2)
        assert engine.get_document(doc_id) == {"items": [1]}

    def test_initial_document_is_copied(self, engine):
        initial = {"items": [1]}
        doc_id = engine.create_document(initial)
        initial["items"].append(2)
        assert engine.get_document(doc_id) == {"items": [1]}

    def test_unknown_document(self, engine):
        with pytest.raises(KeyError, match="nope"):
            engine.get_document("nope")
        with pytest.raises(KeyError):
            engine.subscribe_to_changes("nope")

    def test_system_config_is_a_copy(self, engine):
        config = engine.get_system_config()
        config["env"] = "changed"
        assert engine.get_system_config() == {"env": "test"}

    def test_default_renderer(self, engine):
        assert isinstance(engine.get_template_renderer(), JinjaTemplateRenderer)

    def test_remove_document(self, engine):
        doc_id = engine.create_document({"a": 1})
        assert engine.remove_document(doc_id) == {"a": 1}
        with pytest.raises(KeyError):
            engine.get_document(doc_id)


@pytest.mark.unit
class TestChangeRequests:
    def test_publish_requires_running_loop(self, engine):
        doc_id = engine.create_document()
        with pytest.raises(RuntimeError):
            engine.publish_change_request(doc_id, "a", 1)

    def test_applied_asynchronously_in_order(self, engine):
        async def scenario():
            doc_id = engine.create_document()
            for value in (1, 2, 3):
                engine.publish_change_request(doc_id, "x", value)
            assert engine.get_document(doc_id) == {}
            await asyncio.sleep(0)
            return doc_id

        doc_id = asyncio.run(scenario())
        assert engine.get_document(doc_id) == {"x": 3}
        assert engine.get_document_version(doc_id) == 3

    def test_value_is_copied_at_publish(self, engine):
        async def scenario():
            doc_id = engine.create_document()
            value = {"n": 1}
            engine.publish_change_request(doc_id, "v", value)
            value["n"] = 2
            await asyncio.sleep(0)
            return engine.get_document(doc_id)

        assert asyncio.run(scenario()) == {"v": {"n": 1}}

    def test_change_to_removed_document_is_dropped(self, engine):
        async def scenario():
            doc_id = engine.create_document()
            engine.publish_change_request(doc_id, "x", 1)
            engine.remove_document(doc_id)
            await asyncio.sleep(0)

        asyncio.run(scenario())


@pytest.mark.unit
class TestSubscriptions:
    def test_document_subscription_sees_every_field(self, engine):
        async def scenario():
            doc_id = engine.create_document()
            sub = engine.subscribe_to_changes(doc_id)
            engine.publish_change_request(doc_id, "a", 1)
            return doc_id, await asyncio.wait_for(sub.wait(), timeout=1)

        doc_id, event = asyncio.run(scenario())
        assert event == ChangeEvent(doc_id=doc_id, field="a", version=1)

    def test_field_subscription_filters(self, engine):
        async def scenario():
            doc_id = engine.create_document()
            sub = engine.subscribe_to_changes(doc_id, field="b")
            engine.publish_change_request(doc_id, "a", 1)
            await asyncio.sleep(0)
            waiter = asyncio.create_task(sub.wait())
            await asyncio.sleep(0.05)
            assert not waiter.done()
            engine.publish_change_request(doc_id, "b", 2)
            return await asyncio.wait_for(waiter, timeout=1)

        event = asyncio.run(scenario())
        assert event.field == "b"
        assert event.version == 2

    def test_other_documents_filtered(self, engine):
        async def scenario():
            doc_id = engine.create_document()
            other = engine.create_document()
            sub = engine.subscribe_to_changes(doc_id)
            engine.publish_change_request(other, "a", 1)
            await asyncio.sleep(0)
            waiter = asyncio.create_task(sub.wait())
            await asyncio.sleep(0.05)
            done = waiter.done()
            waiter.cancel()
            return done

        assert asyncio.run(scenario()) is False

    def test_events_coalesce_to_latest(self, engine):
        async def scenario():
            doc_id = engine.create_document()
            sub = engine.subscribe_to_changes(doc_id)
            for field in ("a", "b", "c"):
                engine.publish_change_request(doc_id, field, 1)
            await asyncio.sleep(0)
            return await sub.wait()

        event = asyncio.run(scenario())
        assert event.field == "c"
        assert event.version == 3

    def test_clear_forgets_received_events(self, engine):
        async def scenario():
            doc_id = engine.create_document()
            sub = engine.subscribe_to_changes(doc_id)
            engine.publish_change_request(doc_id, "a", 1)
            await asyncio.sleep(0)
            sub.clear()
            waiter = asyncio.create_task(sub.wait())
            await asyncio.sleep(0.05)
            done = waiter.done()
            waiter.cancel()
            return done

        assert asyncio.run(scenario()) is False

    def test_dispose_is_idempotent_and_counted(self, engine):
        doc_id = engine.create_document()
        sub = engine.subscribe_to_changes(doc_id)
        other = engine.subscribe_to_changes(doc_id, field="x")
        assert engine.live_subscriptions(doc_id) == 2
        assert engine.live_subscriptions() == 2
        sub.dispose()
        sub.dispose()
        assert sub.disposed
        assert engine.live_subscriptions(doc_id) == 1
        with other:
            pass
        assert other.disposed
        assert engine.live_subscriptions() == 0

    def test_wait_on_disposed_raises(self, engine):
        doc_id = engine.create_document()
        sub = engine.subscribe_to_changes(doc_id)
        sub.dispose()

        with pytest.raises(RuntimeError, match="disposed"):
            asyncio.run(sub.wait())

    def test_disposed_subscription_ignores_events(self, engine):
        doc_id = engine.create_document()
        sub = engine.subscribe_to_changes(doc_id)
        sub.dispose()
        sub.notify(ChangeEvent(doc_id=doc_id, field="a", version=1))
        assert sub._latest is None
        assert "disposed" in repr(sub)


@pytest.mark.unit
class TestCommitChange:
    def test_returns_matching_confirmation(self, engine):
        async def scenario():
            doc_id = engine.create_document()
            event = await commit_change(engine, doc_id, "p", [1, 2])
            return doc_id, event

        doc_id, event = asyncio.run(scenario())
        assert event.field == "p"
        assert engine.get_document(doc_id) == {"p": [1, 2]}
        assert engine.live_subscriptions(doc_id) == 0

    def test_concurrent_commits_each_confirmed(self, engine):
        async def scenario():
            doc_id = engine.create_document()
            events = await asyncio.gather(
                *(commit_change(engine, doc_id, f"f{i}", i) for i in range(5))
            )
            return doc_id, events

        doc_id, events = asyncio.run(scenario())
        assert [e.field for e in events] == [f"f{i}" for i in range(5)]
        assert engine.get_document(doc_id) == {f"f{i}": i for i in range(5)}


@pytest.mark.integration
class TestEngineRun:
    def test_run_section(self, engine):
        root = StepRegistry().build(
            engine,
            {
                "name": "root",
                "steps": [
                    {"name": "a", "class": "template", "vars": {"value": "{{ doc.seed + 1 }}"}, "register": "a"},
                ],
            },
        )
        assert asyncio.run(engine.run(root, {"seed": 1})) == {"seed": 1, "a": 2}

    def test_run_plain_step_commits_its_field(self, engine):
        step = make_step(Constant, engine, vars={"value": "x"}, register_to="only")
        assert asyncio.run(engine.run(step)) == {"only": "x"}

    @pytest.mark.parametrize("text", ["None", "123"])
    def test_template_step_copies_string_field_verbatim(self, engine, text):
        step = StepRegistry().build(
            engine,
            {"name": "copy", "class": "template", "register": "out", "vars": {"value": "{{ doc.s }}"}},
        )
        doc = asyncio.run(asyncio.wait_for(engine.run(step, {"s": text}), timeout=2))
        assert doc == {"s": text, "out": text}

    def test_custom_renderer_is_exposed(self):
        renderer = JinjaTemplateRenderer(strict=False)
        assert InMemoryEngine(renderer=renderer).get_template_renderer() is renderer
