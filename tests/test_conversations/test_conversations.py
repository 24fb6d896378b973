"""
Tests para el store de conversaciones.

Cubre:
- Ciclo de vida (start, get, delete, clear) y expulsión por capacidad
- Mensaje developer fijado en el índice 0
- Recorte por max_messages
- Ventana de contexto (format_for_api)
- Metadatos acumulativos y opciones por conversación
- compact (resumen)
- Export / import
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from costgate.core import (
    ConversationImportError,
    ConversationNotFoundError,
    ConversationStore,
)
from costgate.core.conversations import SUMMARY_PREFIX


class FakeClock:
    """Reloj que avanza un segundo en cada lectura."""

    def __init__(self) -> None:
        self.now = datetime(2026, 6, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now = self.now + timedelta(seconds=1)
        return self.now


# ── Fixtures ──────────────────────────────────────────────────────────────


@pytest.fixture
def store() -> ConversationStore:
    return ConversationStore(max_conversations=5, max_messages=6, default_context_window=4, clock=FakeClock())


def fill(store: ConversationStore, conversation_id: str, count: int) -> None:
    for i in range(count):
        store.add_message(conversation_id, "user" if i % 2 == 0 else "assistant", f"m{i}")


# ── Tests: lifecycle ──────────────────────────────────────────────────────


class TestLifecycle:
    """Tests para creación, búsqueda y borrado."""

    def test_start_returns_unique_ids(self, store: ConversationStore) -> None:
        ids = {store.start(f"topic {i}") for i in range(3)}
        assert len(ids) == 3
        assert all(cid.startswith("conv_") for cid in ids)

    def test_start_with_instructions_pins(self, store: ConversationStore) -> None:
        cid = store.start("t", instructions="Answer in French")
        conversation = store.get(cid)
        assert conversation.pinned is not None
        assert conversation.pinned.content == "Answer in French"
        assert store.get_instructions(cid) == "Answer in French"

    def test_unknown_id(self, store: ConversationStore) -> None:
        with pytest.raises(ConversationNotFoundError, match="Conversation nope not found"):
            store.get("nope")
        assert store.get_instructions("nope") is None

    def test_delete_and_clear(self, store: ConversationStore) -> None:
        a = store.start("a")
        store.start("b")
        assert store.delete(a) is True
        assert store.delete(a) is False
        assert a not in store
        assert store.clear() == 1
        assert len(store) == 0

    def test_capacity_evicts_least_recently_active(self, store: ConversationStore) -> None:
        """Con capacidad 5, la sexta conversación expulsa la menos activa."""
        ids = [store.start(f"t{i}") for i in range(5)]
        # Touch the first one so the second becomes the oldest
        store.add_message(ids[0], "user", "still here")

        newest = store.start("t5")

        assert len(store) == 5
        assert ids[1] not in store
        assert ids[0] in store
        assert newest in store
        with pytest.raises(ConversationNotFoundError):
            store.add_message(ids[1], "user", "hello?")


# ── Tests: messages ───────────────────────────────────────────────────────


class TestMessages:
    """Tests para add_message y el mensaje fijado."""

    def test_invalid_role(self, store: ConversationStore) -> None:
        cid = store.start("t")
        with pytest.raises(ValueError):
            store.add_message(cid, "system", "nope")

    def test_trim_keeps_most_recent(self, store: ConversationStore) -> None:
        cid = store.start("t")
        fill(store, cid, 9)
        contents = [m.content for m in store.get(cid).messages]
        assert contents == ["m3", "m4", "m5", "m6", "m7", "m8"]

    def test_trim_never_drops_pinned(self, store: ConversationStore) -> None:
        cid = store.start("t", instructions="rules")
        fill(store, cid, 20)
        messages = store.get(cid).messages
        assert len(messages) == 6
        assert messages[0].role == "developer"
        assert messages[0].content == "rules"
        assert [m.content for m in messages[1:]] == ["m15", "m16", "m17", "m18", "m19"]

    def test_developer_message_replaces_pin(self, store: ConversationStore) -> None:
        cid = store.start("t", instructions="old rules")
        fill(store, cid, 2)
        store.add_message(cid, "developer", "new rules")
        messages = store.get(cid).messages
        assert messages[0].content == "new rules"
        assert sum(1 for m in messages if m.role == "developer") == 1
        assert len(messages) == 3

    def test_developer_message_inserted_at_front(self, store: ConversationStore) -> None:
        cid = store.start("t")
        fill(store, cid, 2)
        store.add_message(cid, "developer", "late rules")
        assert store.get(cid).messages[0].role == "developer"

    def test_add_message_touches_last_active(self, store: ConversationStore) -> None:
        cid = store.start("t")
        before = store.get(cid).metadata.last_active
        store.add_message(cid, "user", "hi")
        assert store.get(cid).metadata.last_active > before


# ── Tests: context window ─────────────────────────────────────────────────


class TestFormatForApi:
    """Tests para la ventana de contexto enviada al modelo."""

    def test_default_window(self, store: ConversationStore) -> None:
        cid = store.start("t", instructions="rules")
        fill(store, cid, 5)
        messages = store.format_for_api(cid)
        assert [m["content"] for m in messages] == ["m1", "m2", "m3", "m4"]
        assert all(m["role"] != "developer" for m in messages)

    def test_new_message_appended(self, store: ConversationStore) -> None:
        cid = store.start("t")
        fill(store, cid, 2)
        messages = store.format_for_api(cid, new_message="next question")
        assert messages[-1] == {"role": "user", "content": "next question"}
        assert len(messages) == 3

    def test_per_conversation_override(self, store: ConversationStore) -> None:
        cid = store.start("t")
        fill(store, cid, 5)
        store.set_options(cid, context_limit=2)
        assert [m["content"] for m in store.format_for_api(cid)] == ["m3", "m4"]

    def test_explicit_window_wins(self, store: ConversationStore) -> None:
        cid = store.start("t")
        fill(store, cid, 5)
        store.set_options(cid, context_limit=2)
        assert len(store.format_for_api(cid, window=1)) == 1


# ── Tests: metadata ───────────────────────────────────────────────────────


class TestMetadata:
    """Tests para metadatos, opciones, listados y estadísticas."""

    def test_update_metadata_accumulates(self, store: ConversationStore) -> None:
        cid = store.start("t")
        store.update_metadata(cid, total_cost=0.25, token_count=100)
        store.update_metadata(cid, total_cost=0.5, token_count=40)
        metadata = store.get(cid).metadata
        assert metadata.total_cost == pytest.approx(0.75)
        assert metadata.token_count == 140

    def test_set_options(self, store: ConversationStore) -> None:
        cid = store.start("t", budget_limit=1.0)
        metadata = store.set_options(cid, budget_limit=2.5, context_limit=0)
        assert metadata.budget_limit == 2.5
        assert metadata.context_limit == 1

    def test_get_metadata_is_serializable(self, store: ConversationStore) -> None:
        cid = store.start("pricing", instructions="rules", budget_limit=3.0)
        data = store.get_metadata(cid)
        json.dumps(data)
        assert data["id"] == cid
        assert data["metadata"]["topic"] == "pricing"
        assert data["metadata"]["budget_limit"] == 3.0
        assert data["messages"][0]["role"] == "developer"

    def test_list_most_recent_first(self, store: ConversationStore) -> None:
        a = store.start("a")
        b = store.start("b")
        store.add_message(a, "user", "bump")
        listed = store.list_conversations()
        assert [c["id"] for c in listed] == [a, b]
        assert listed[0]["messages"] == 1

    def test_stats(self, store: ConversationStore) -> None:
        a = store.start("a", instructions="rules")
        b = store.start("b")
        fill(store, b, 3)
        store.update_metadata(a, total_cost=0.1, token_count=10)
        store.update_metadata(b, total_cost=0.2, token_count=20)
        assert store.stats() == {
            "total_conversations": 2,
            "total_messages": 4,
            "total_cost": pytest.approx(0.3),
            "total_tokens": 30,
        }


# ── Tests: compact ────────────────────────────────────────────────────────


class TestCompact:
    """Tests para el plegado de mensajes antiguos en un resumen."""

    def test_folds_older_messages(self) -> None:
        store = ConversationStore(max_messages=50, clock=FakeClock())
        cid = store.start("t", instructions="rules")
        fill(store, cid, 10)

        folded = store.compact(cid, "they talked about prices", keep_recent=3)

        assert folded == 7
        messages = store.get(cid).messages
        assert messages[0].content == "rules"
        assert messages[1].role == "assistant"
        assert messages[1].content == SUMMARY_PREFIX + "they talked about prices"
        assert [m.content for m in messages[2:]] == ["m7", "m8", "m9"]

    def test_nothing_to_fold(self, store: ConversationStore) -> None:
        cid = store.start("t")
        fill(store, cid, 2)
        assert store.compact(cid, "x", keep_recent=4) == 0
        assert len(store.get(cid).messages) == 2


# ── Tests: export / import ────────────────────────────────────────────────


class TestInterchange:
    """Tests para export / import."""

    def test_import_mints_new_id(self, store: ConversationStore) -> None:
        cid = store.start("t", instructions="rules", budget_limit=2.0)
        fill(store, cid, 3)
        store.update_metadata(cid, total_cost=0.4, token_count=90)
        exported = store.export_conversation(cid)

        new_id = store.import_conversation(exported)

        assert new_id != cid
        original = store.get(cid)
        imported = store.get(new_id)
        assert [m.content for m in imported.messages] == [m.content for m in original.messages]
        assert imported.metadata.total_cost == pytest.approx(0.4)
        assert imported.metadata.budget_limit == 2.0
        assert imported.pinned is not None

    def test_export_format(self, store: ConversationStore) -> None:
        cid = store.start("t")
        store.add_message(cid, "user", "hello")
        data = json.loads(store.export_conversation(cid))
        assert set(data) == {"id", "messages", "metadata"}
        assert data["messages"][0]["role"] == "user"
        assert "timestamp" in data["messages"][0]

    @pytest.mark.parametrize(
        "payload",
        [
            "not json at all",
            "[1, 2, 3]",
            json.dumps({"messages": []}),
            json.dumps({"messages": [{"role": "robot", "content": "x", "timestamp": "2026-01-01T00:00:00"}],
                        "metadata": {"created": "2026-01-01T00:00:00", "last_active": "2026-01-01T00:00:00"}}),
            json.dumps({"messages": 7, "metadata": {}}),
        ],
    )
    def test_malformed_rejected(self, store: ConversationStore, payload: str) -> None:
        with pytest.raises(ConversationImportError, match="Failed to import conversation"):
            store.import_conversation(payload)
        assert len(store) == 0

    def test_developer_not_first_rejected(self, store: ConversationStore) -> None:
        stamp = "2026-01-01T00:00:00+00:00"
        payload = json.dumps(
            {
                "id": "conv_x",
                "messages": [
                    {"role": "user", "content": "hi", "timestamp": stamp},
                    {"role": "developer", "content": "rules", "timestamp": stamp},
                ],
                "metadata": {"created": stamp, "last_active": stamp},
            }
        )
        with pytest.raises(ConversationImportError):
            store.import_conversation(payload)

    def test_import_trims_to_cap(self, store: ConversationStore) -> None:
        stamp = "2026-01-01T00:00:00+00:00"
        payload = json.dumps(
            {
                "id": "conv_big",
                "messages": [{"role": "user", "content": f"m{i}", "timestamp": stamp} for i in range(10)],
                "metadata": {"created": stamp, "last_active": stamp, "topic": "big"},
            }
        )
        new_id = store.import_conversation(payload)
        assert [m.content for m in store.get(new_id).messages] == ["m4", "m5", "m6", "m7", "m8", "m9"]
