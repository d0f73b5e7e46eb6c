import tempfile
from pathlib import Path

from diagram_core.domain.models import ConversationMeta, ConversationPayload, DiagramVersion
from diagram_core.infrastructure.storage.json_store import JsonLocalStore


def test_json_store_metas_and_payload():
    with tempfile.TemporaryDirectory() as d:
        store = JsonLocalStore(root=Path(d) / ".storage", user_id="u1")
        metas = [ConversationMeta(id="c1", created_at=1, updated_at=2, title="hello")]
        store.write_metas(metas)
        payload = ConversationPayload(
            messages=[{"id": "m1", "role": "user", "parts": [{"type": "text", "text": "hi"}]}],
            xml="<a/>",
            session_id="s1",
            diagram_versions=[DiagramVersion(id="v1", created_at=5, xml="<a/>")],
            diagram_version_cursor=0,
            diagram_version_marks={0: 0},
        )
        store.write_payload("c1", payload)

        assert store.read_metas() == metas
        loaded = store.read_payload("c1")
        assert loaded == payload
        assert store.read_payload("missing") is None


def test_json_store_remove_payload_is_idempotent():
    with tempfile.TemporaryDirectory() as d:
        store = JsonLocalStore(root=d, user_id="u1")
        store.write_payload("c1", ConversationPayload.empty())
        store.remove_payload("c1")
        store.remove_payload("c1")
        assert store.read_payload("c1") is None


def test_json_store_cursor_and_current_pointer():
    with tempfile.TemporaryDirectory() as d:
        store = JsonLocalStore(root=d, user_id="u1")
        assert store.read_sync_cursor() == "0"
        assert store.read_current_conversation_id() == ""
        store.write_sync_cursor("17")
        store.write_current_conversation_id("c9")
        assert store.read_sync_cursor() == "17"
        assert store.read_current_conversation_id() == "c9"


def test_json_store_users_are_isolated():
    with tempfile.TemporaryDirectory() as d:
        a = JsonLocalStore(root=d, user_id="alice")
        b = JsonLocalStore(root=d, user_id="bob")
        a.write_metas([ConversationMeta(id="c1", created_at=1, updated_at=1)])
        a.write_sync_cursor("5")
        assert b.read_metas() == []
        assert b.read_sync_cursor() == "0"


def test_json_store_corrupt_files_read_as_empty():
    with tempfile.TemporaryDirectory() as d:
        store = JsonLocalStore(root=d, user_id="u1")
        user_root = Path(d).resolve() / "users" / "u1"
        (user_root / "conversations.json").write_text("{not json", encoding="utf-8")
        (user_root / "payloads" / "c1.json").write_text("[1, 2", encoding="utf-8")
        assert store.read_metas() == []
        assert store.read_payload("c1") is None


def test_json_store_unsafe_user_id_stays_under_root():
    with tempfile.TemporaryDirectory() as d:
        store = JsonLocalStore(root=d, user_id="../evil")
        store.write_sync_cursor("3")
        assert not (Path(d).resolve().parent / "evil").exists()
        assert store.read_sync_cursor() == "3"
