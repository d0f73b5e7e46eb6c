import asyncio
import tempfile

from diagram_core.api.service import get_sync_status, list_conversations, open_session
from diagram_core.remote.memory_store import InMemoryRemoteStore


def settings_stub(root):
    class SettingsStub:
        storage_root = root
        push_debounce_seconds = 0.01
        post_push_pull_delay_seconds = 0.01
        pull_interval_seconds = 60
        pull_limit = 200
        push_batch_size = 50
        max_versions = 50
        max_xml_size = 10_000
        anonymous_conversation_quota = 3
        title_max_length = 24

    return SettingsStub()


def test_anonymous_session_works_offline():
    with tempfile.TemporaryDirectory() as d:
        remote = InMemoryRemoteStore()
        session = open_session(remote=remote, cfg=settings_stub(d))
        cid = session.start()
        session.controller.update_messages([{"role": "user", "content": "Draw a pipeline"}])

        items = list_conversations(session)
        assert items == [
            {
                "id": cid,
                "title": "Draw a pipeline",
                "created_at": items[0]["created_at"],
                "updated_at": items[0]["updated_at"],
                "active": True,
            }
        ]
        assert remote.get(cid) is None
        assert get_sync_status(session)["cursor"] == "0"
        session.close()


def test_two_devices_converge_through_remote():
    with tempfile.TemporaryDirectory() as d1, tempfile.TemporaryDirectory() as d2:
        remote = InMemoryRemoteStore()

        async def run():
            laptop = open_session("u1", authenticated=True, remote=remote, cfg=settings_stub(d1))
            laptop.start()
            laptop.controller.update_messages([{"role": "user", "content": "from laptop"}])
            laptop.controller.ensure_version_for_message(0, "<laptop/>")
            await asyncio.sleep(0.05)
            laptop_id = laptop.controller.current_conversation_id

            phone = open_session("u1", authenticated=True, remote=remote, cfg=settings_stub(d2))
            phone.start()
            await asyncio.sleep(0.05)
            ids = {m.id for m in phone.controller.conversations}

            laptop.close()
            phone.close()
            return laptop_id, ids, phone

        laptop_id, ids, phone = asyncio.run(run())
        assert laptop_id in ids
        payload = phone.store.read_payload(laptop_id)
        assert [v.xml for v in payload.diagram_versions] == ["<laptop/>"]
        assert get_sync_status(phone)["last_ok_at"] is not None


def test_switch_user_rebinds_store():
    with tempfile.TemporaryDirectory() as d:
        session = open_session(remote=InMemoryRemoteStore(), cfg=settings_stub(d))
        anon_id = session.start()

        async def run():
            return session.switch_user("u2", True)

        new_id = asyncio.run(run())
        session.coordinator.close()
        assert new_id != anon_id
        assert session.store.user_id == "u2"
        assert session.controller.authenticated
        assert [m.id for m in session.store.read_metas()] == [new_id]
