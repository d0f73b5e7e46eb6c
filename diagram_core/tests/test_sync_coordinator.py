import asyncio
import tempfile

from diagram_core.domain.exceptions import NetworkError
from diagram_core.domain.models import ConversationMeta, ConversationPayload, ConversationRecord, sort_metas
from diagram_core.infrastructure.storage.json_store import JsonLocalStore
from diagram_core.remote.http_store import HttpRemoteStore
from diagram_core.remote.memory_store import InMemoryRemoteStore
from diagram_core.sync.coordinator import PULL_AFTER_PUSH_KEY, SyncCoordinator


class SettingsStub:
    push_debounce_seconds = 0.02
    post_push_pull_delay_seconds = 0.02
    pull_interval_seconds = 60
    pull_limit = 200
    push_batch_size = 2


class RecordingRemote(InMemoryRemoteStore):
    def __init__(self):
        super().__init__()
        self.fail_next = None
        self.push_calls = []
        self.pull_calls = []

    async def push(self, conversations):
        self.push_calls.append(list(conversations))
        self._raise_pending()
        return await super().push(conversations)

    async def pull(self, cursor, limit):
        self.pull_calls.append((cursor, limit))
        self._raise_pending()
        return await super().pull(cursor, limit)

    def _raise_pending(self):
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error


def seed(store, cid, updated_at, xml="<a/>", title=None):
    store.write_payload(cid, ConversationPayload(xml=xml, session_id="s"))
    metas = [m for m in store.read_metas() if m.id != cid]
    metas.append(ConversationMeta(id=cid, created_at=updated_at, updated_at=updated_at, title=title))
    store.write_metas(sort_metas(metas))


def remote_record(cid, updated_at, xml="<r/>", deleted=False):
    return ConversationRecord(
        id=cid,
        created_at=1,
        updated_at=updated_at,
        deleted=deleted,
        payload=None if deleted else ConversationPayload(xml=xml, session_id="remote"),
    )


def make(tmp, remote=None, authenticated=True, online=True):
    store = JsonLocalStore(root=tmp, user_id="u1")
    remote = remote or RecordingRemote()
    coord = SyncCoordinator(
        store, remote, user_id="u1", authenticated=authenticated, online=online, cfg=SettingsStub()
    )
    return store, remote, coord


def test_queue_push_debounces_per_conversation():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d)
        seed(store, "c1", 10, xml="<first/>")

        async def run():
            coord.queue_push("c1")
            await asyncio.sleep(0.005)
            seed(store, "c1", 11, xml="<second/>")
            coord.queue_push("c1")
            assert coord.has_pending_push("c1")
            await asyncio.sleep(0.06)
            coord.close()

        asyncio.run(run())
        assert len(remote.push_calls) == 1
        assert remote.push_calls[0][0].payload.xml == "<second/>"
        assert remote.get("c1").updated_at == 11


def test_queue_push_is_noop_when_unauthenticated():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d, authenticated=False)
        seed(store, "c1", 10)

        async def run():
            coord.queue_push("c1", immediate=True)
            assert not coord.has_pending_push("c1")
            await asyncio.sleep(0.01)
            assert not await coord.pull_once()

        asyncio.run(run())
        assert remote.push_calls == []
        assert remote.pull_calls == []


def test_push_skipped_while_offline():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d, online=False)
        seed(store, "c1", 10)
        assert asyncio.run(coord.push_now("c1")) is False
        assert remote.push_calls == []


def test_push_without_payload_is_skipped_unless_deleted():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d)

        async def run():
            assert not await coord.push_now("ghost")
            assert await coord.push_now("ghost", deleted=True)
            coord.close()

        asyncio.run(run())
        assert len(remote.push_calls) == 1
        assert remote.push_calls[0][0].deleted
        assert remote.push_calls[0][0].payload is None


def test_push_success_advances_cursor_and_schedules_pull():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d)
        seed(store, "c1", 10)

        async def run():
            assert await coord.push_now("c1")
            assert coord._timers.is_pending(PULL_AFTER_PUSH_KEY)
            await asyncio.sleep(0.06)
            coord.close()

        asyncio.run(run())
        assert store.read_sync_cursor() == "1"
        assert coord.last_ok_at is not None
        assert coord.last_error_at is None
        assert remote.pull_calls == [("1", 200)]


def test_push_failure_records_error_timestamp():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d)
        seed(store, "c1", 10)
        remote.fail_next = NetworkError(code="NETWORK_ERROR", message="down")

        async def run():
            assert not await coord.push_now("c1")
            assert not coord._timers.is_pending(PULL_AFTER_PUSH_KEY)
            assert coord.last_error_at is not None
            assert await coord.push_now("c1")
            coord.close()

        asyncio.run(run())
        assert coord.last_error_at is None
        assert coord.status.in_flight == 0


def test_pull_applies_newer_remote_and_keeps_newer_local():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d)
        seed(store, "c1", 100, xml="<local/>")
        seed(store, "c2", 100, xml="<local2/>")
        asyncio.run(remote.push([remote_record("c1", 50, "<stale/>"), remote_record("c2", 200, "<fresh/>")]))

        assert asyncio.run(coord.pull_once())
        assert store.read_payload("c1").xml == "<local/>"
        assert store.read_payload("c2").xml == "<fresh/>"
        assert store.read_metas()[0].id == "c2"
        assert store.read_sync_cursor() == "2"


def test_pull_equal_timestamp_keeps_local():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d)
        seed(store, "c1", 100, xml="<local/>")
        asyncio.run(remote.push([remote_record("c1", 100, "<remote/>")]))
        asyncio.run(coord.pull_once())
        assert store.read_payload("c1").xml == "<local/>"


def test_pull_is_idempotent():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d)
        seed(store, "local", 5)
        store.write_current_conversation_id("local")
        asyncio.run(remote.push([remote_record("c1", 10)]))
        changes = []
        coord.on_conversations_changed = changes.append

        asyncio.run(coord.pull_once())
        metas = store.read_metas()
        cursor = store.read_sync_cursor()
        payload = store.read_payload("c1")
        asyncio.run(coord.pull_once())

        assert store.read_metas() == metas
        assert store.read_sync_cursor() == cursor
        assert store.read_payload("c1") == payload
        assert store.read_current_conversation_id() == "local"
        assert len(changes) == 1


def test_pull_reloads_active_conversation_when_replaced():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d)
        seed(store, "c1", 10)
        store.write_current_conversation_id("c1")
        asyncio.run(remote.push([remote_record("c1", 20, "<newer/>")]))
        reloaded = []
        coord.on_reload_conversation = reloaded.append

        asyncio.run(coord.pull_once())
        assert reloaded == ["c1"]


def test_remote_delete_switches_active_conversation():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d)
        seed(store, "c1", 10)
        seed(store, "c2", 20)
        store.write_current_conversation_id("c2")
        asyncio.run(remote.push([remote_record("c2", 30, deleted=True)]))
        active = []
        coord.on_active_conversation_changed = active.append

        asyncio.run(coord.pull_once())
        assert store.read_payload("c2") is None
        assert [m.id for m in store.read_metas()] == ["c1"]
        assert store.read_current_conversation_id() == "c1"
        assert active == ["c1"]


def test_remote_delete_of_last_conversation_creates_replacement():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d)
        seed(store, "c1", 10)
        store.write_current_conversation_id("c1")
        asyncio.run(remote.push([remote_record("c1", 30, deleted=True)]))
        active = []
        coord.on_active_conversation_changed = active.append

        async def run():
            assert await coord.pull_once()
            new_id = store.read_current_conversation_id()
            assert coord.has_pending_push(new_id)
            coord.close()
            return new_id

        new_id = asyncio.run(run())
        metas = store.read_metas()
        assert [m.id for m in metas] == [new_id]
        assert new_id != "c1"
        assert store.read_payload(new_id).messages == []
        assert active == [new_id]


def test_second_pull_while_in_flight_returns_immediately():
    with tempfile.TemporaryDirectory() as d:

        class SlowRemote(RecordingRemote):
            gate = None

            async def pull(self, cursor, limit):
                await self.gate.wait()
                return await super().pull(cursor, limit)

        store, remote, coord = make(d, remote=SlowRemote())

        async def run():
            remote.gate = asyncio.Event()
            first = asyncio.ensure_future(coord.pull_once())
            await asyncio.sleep(0)
            assert coord.pull_in_flight
            assert await coord.pull_once() is False
            remote.gate.set()
            assert await first
            assert not coord.pull_in_flight

        asyncio.run(run())
        assert len(remote.pull_calls) == 1


def test_pull_failure_keeps_cursor():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d)
        store.write_sync_cursor("4")
        remote.fail_next = NetworkError(code="NETWORK_ERROR", message="down")
        assert asyncio.run(coord.pull_once()) is False
        assert store.read_sync_cursor() == "4"
        assert coord.last_error_at is not None
        assert not coord.pull_in_flight


def test_push_all_batches_local_conversations():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d)
        for i in range(3):
            seed(store, f"c{i}", 10 + i)
        store.write_metas(store.read_metas() + [ConversationMeta(id="no-payload", created_at=1, updated_at=1)])

        assert asyncio.run(coord.push_all()) == 3
        assert [len(batch) for batch in remote.push_calls] == [2, 1]
        assert store.read_sync_cursor() == "3"


def test_bootstrap_pulls_then_pushes_then_pulls_once_per_user():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d)
        seed(store, "local", 10, xml="<local/>")
        asyncio.run(remote.push([remote_record("cloud", 20, "<cloud/>")]))
        remote.push_calls.clear()

        async def run():
            await coord.bootstrap()
            await coord.bootstrap()
            coord.close()

        asyncio.run(run())
        assert remote.pull_calls[0][0] == "0"
        assert len(remote.pull_calls) == 2
        assert len(remote.push_calls) == 1
        assert store.read_payload("cloud").xml == "<cloud/>"
        assert remote.get("local").payload.xml == "<local/>"


def test_start_bootstraps_and_close_cancels_timers():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d)
        seed(store, "c1", 10)

        async def run():
            coord.start()
            await asyncio.sleep(0.01)
            coord.queue_push("c1")
            coord.close()
            await asyncio.sleep(0.05)

        asyncio.run(run())
        # only the bootstrap push; the debounced push was cancelled
        assert len(remote.push_calls) == 1
        assert len(remote.pull_calls) == 2


def test_back_online_triggers_pull():
    with tempfile.TemporaryDirectory() as d:
        store, remote, coord = make(d, online=False)

        async def run():
            coord.set_online(True)
            await asyncio.sleep(0.01)
            coord.close()

        asyncio.run(run())
        assert remote.pull_calls == [("0", 200)]
        assert coord.status.is_online


def test_malformed_remote_page_records_error_and_keeps_cursor(monkeypatch):
    class HttpSettings(SettingsStub):
        http_timeout = 1.0
        sync_base_url = "https://sync.example.com/api/trpc"
        sync_api_token = "tok"

    class Resp:
        status_code = 200
        text = ""

        def json(self):
            record = {"id": "c1", "createdAt": 1, "updatedAt": 2, "payload": {"diagramVersions": [{"xml": "<a/>"}]}}
            return {"result": {"data": {"json": {"cursor": "9", "conversations": [record]}}}}

    class Client:
        def __init__(self, *a, **kw):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        async def post(self, url, json=None, headers=None):
            return Resp()

    monkeypatch.setattr("httpx.AsyncClient", Client)
    with tempfile.TemporaryDirectory() as d:
        store = JsonLocalStore(root=d, user_id="u1")
        store.write_sync_cursor("4")
        coord = SyncCoordinator(store, HttpRemoteStore(HttpSettings()), user_id="u1", authenticated=True, cfg=HttpSettings())

        assert asyncio.run(coord.pull_once()) is False
        assert store.read_sync_cursor() == "4"
        assert store.read_payload("c1") is None
        assert coord.last_error_at is not None
        assert not coord.pull_in_flight
