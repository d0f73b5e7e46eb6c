"""本地存储与远端存储之间的同步协调器。

职责：
- 推送：按会话 id 防抖（queue_push），只发送最后一次调度时的本地数据；
- 拉取：基于游标的增量拉取（pull_once），同一时间最多一个拉取在进行；
- 冲突：按 updated_at 的 last-write-wins，远端更新严格更大时才覆盖本地；
- 删除：远端删除记录会移除本地 payload 与元数据，必要时切换/新建当前会话；
- 启动：每个登录用户每次会话只做一次「拉取 -> 全量推送 -> 拉取」的对账。

所有传输失败只记录为 last_error_at 时间戳，不会抛给 UI 层。
"""

from dataclasses import dataclass
from typing import Callable, List, Optional

from diagram_core.config.settings import settings
from diagram_core.domain.conversation import LocalConversationStore, RemoteConversationStore
from diagram_core.domain.exceptions import BusinessError
from diagram_core.domain.models import (
    ConversationMeta,
    ConversationPayload,
    ConversationRecord,
    create_conversation_id,
    now_ms,
    sort_metas,
)
from diagram_core.infrastructure.logging.logger import bind_logger
from diagram_core.sync.timers import TaskScheduler


PULL_AFTER_PUSH_KEY = "pull:after-push"
PULL_INTERVAL_KEY = "pull:interval"


def _push_key(conversation_id: str) -> str:
    return f"push:{conversation_id}"


@dataclass
class SyncStatus:
    is_online: bool
    in_flight: int
    last_ok_at: Optional[int]
    last_error_at: Optional[int]
    cursor: str


class SyncCoordinator:
    """单个用户的同步协调器。

    store 必须绑定到 user_id 对应的本地命名空间。回调以字段形式保存，
    所有者可以随时替换，协调器总是调用最新的值：

    - on_conversations_changed(metas): 元数据列表被远端变更改写后调用；
    - on_active_conversation_changed(id): 当前会话被远端删除、切换到其他会话后调用；
    - on_reload_conversation(id): 当前会话被远端较新的副本覆盖后调用。
    """

    def __init__(
        self,
        store: LocalConversationStore,
        remote: RemoteConversationStore,
        *,
        user_id: Optional[str] = None,
        authenticated: bool = False,
        online: bool = True,
        cfg=settings,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = store
        self._remote = remote
        self._cfg = cfg
        self._clock = clock
        self.user_id = user_id
        self.authenticated = authenticated
        self._online = online
        self._logger = bind_logger(component="sync", user_id=user_id)
        self._timers = TaskScheduler()
        self._pull_in_flight = False
        self._bootstrapped_user_id: Optional[str] = None
        self._in_flight = 0
        self.last_ok_at: Optional[int] = None
        self.last_error_at: Optional[int] = None

        self.on_conversations_changed: Optional[Callable[[List[ConversationMeta]], None]] = None
        self.on_active_conversation_changed: Optional[Callable[[str], None]] = None
        self.on_reload_conversation: Optional[Callable[[str], None]] = None

    # ---- 状态 ----

    @property
    def is_authenticated(self) -> bool:
        return self.authenticated and bool(self.user_id)

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def pull_in_flight(self) -> bool:
        return self._pull_in_flight

    @property
    def status(self) -> SyncStatus:
        return SyncStatus(
            is_online=self._online,
            in_flight=self._in_flight,
            last_ok_at=self.last_ok_at,
            last_error_at=self.last_error_at,
            cursor=self._store.read_sync_cursor(),
        )

    def has_pending_push(self, conversation_id: str) -> bool:
        return self._timers.is_pending(_push_key(conversation_id))

    # ---- 生命周期与触发器 ----

    def start(self) -> None:
        """登录后开始同步：首次对账 + 周期拉取；未登录时停止周期拉取。"""

        if not self.is_authenticated:
            self._bootstrapped_user_id = None
            self._timers.stop_interval(PULL_INTERVAL_KEY)
            return
        if self._bootstrapped_user_id != self.user_id:
            self._timers.spawn(self.bootstrap)
        self._timers.start_interval(PULL_INTERVAL_KEY, self._cfg.pull_interval_seconds, self.pull_once)

    def set_user(
        self,
        user_id: Optional[str],
        authenticated: bool,
        store: Optional[LocalConversationStore] = None,
    ) -> None:
        if store is not None:
            self._store = store
        self.user_id = user_id
        self.authenticated = authenticated
        self._logger = bind_logger(component="sync", user_id=user_id)
        self.start()

    def close(self) -> None:
        """取消所有待发推送、周期拉取与进行中的任务。"""

        self._timers.close()

    def set_online(self, online: bool) -> None:
        was_online = self._online
        self._online = online
        if online and not was_online:
            self._logger.info("Network back online, pulling remote changes")
            self.request_pull()

    def notify_focus(self) -> None:
        self.request_pull()

    def notify_visibility(self, visible: bool) -> None:
        if visible:
            self.request_pull()

    def request_pull(self) -> None:
        if not self.is_authenticated or not self._online:
            return
        self._timers.spawn(self.pull_once)

    # ---- 推送 ----

    def queue_push(self, conversation_id: str, *, immediate: bool = False, deleted: bool = False) -> None:
        """防抖推送：取消该会话已有的定时器，按最后一次调用的参数重新调度。"""

        if not self.is_authenticated:
            return
        delay = 0.0 if immediate else self._cfg.push_debounce_seconds

        async def fire() -> None:
            await self.push_now(conversation_id, deleted=deleted)

        self._timers.schedule(_push_key(conversation_id), delay, fire)

    def build_push_record(self, conversation_id: str, *, deleted: bool = False) -> ConversationRecord:
        meta = next((m for m in self._store.read_metas() if m.id == conversation_id), None)
        now = self._clock()
        return ConversationRecord(
            id=conversation_id,
            title=meta.title if meta else None,
            created_at=meta.created_at if meta else now,
            updated_at=meta.updated_at if meta else now,
            deleted=deleted,
            payload=None if deleted else self._store.read_payload(conversation_id),
        )

    async def push_now(self, conversation_id: str, *, deleted: bool = False) -> bool:
        if not self.is_authenticated or not self._online:
            return False
        record = self.build_push_record(conversation_id, deleted=deleted)
        if not record.deleted and record.payload is None:
            return False

        self._in_flight += 1
        try:
            result = await self._remote.push([record])
        except BusinessError as e:
            self._record_error("push", e, conversation_id=conversation_id)
            return False
        finally:
            self._in_flight = max(0, self._in_flight - 1)

        self._advance_cursor(result.cursor)
        self._record_ok()
        self._timers.schedule(PULL_AFTER_PUSH_KEY, self._cfg.post_push_pull_delay_seconds, self.pull_once)
        return True

    async def push_all(self) -> int:
        """把所有带 payload 的本地会话分批推送，返回成功推送的会话数。"""

        if not self.is_authenticated or not self._online:
            return 0
        records = []
        for meta in self._store.read_metas():
            payload = self._store.read_payload(meta.id)
            if payload is None:
                continue
            records.append(
                ConversationRecord(
                    id=meta.id,
                    title=meta.title,
                    created_at=meta.created_at,
                    updated_at=meta.updated_at,
                    payload=payload,
                )
            )

        pushed = 0
        batch_size = self._cfg.push_batch_size
        for start in range(0, len(records), batch_size):
            batch = records[start : start + batch_size]
            self._in_flight += 1
            try:
                result = await self._remote.push(batch)
            except BusinessError as e:
                self._record_error("bulk push", e, batch_size=len(batch))
                continue
            finally:
                self._in_flight = max(0, self._in_flight - 1)
            self._advance_cursor(result.cursor)
            self._record_ok()
            pushed += len(batch)
        return pushed

    # ---- 拉取 ----

    async def pull_once(self) -> bool:
        """拉取一次远端变更；已有拉取在进行时直接返回 False（不排队）。"""

        if not self.is_authenticated or not self._online:
            return False
        if self._pull_in_flight:
            return False

        self._pull_in_flight = True
        self._in_flight += 1
        try:
            cursor = self._store.read_sync_cursor()
            result = await self._remote.pull(cursor, self._cfg.pull_limit)
            if result.conversations:
                self.apply_remote_conversations(result.conversations)
            self._advance_cursor(result.cursor)
        except BusinessError as e:
            self._record_error("pull", e)
            return False
        finally:
            self._pull_in_flight = False
            self._in_flight = max(0, self._in_flight - 1)

        self._record_ok()
        return True

    def apply_remote_conversations(self, records: List[ConversationRecord]) -> None:
        if not records:
            return
        active_id = self._store.read_current_conversation_id()
        meta_by_id = {m.id: m for m in self._store.read_metas()}
        reload_active = False
        active_removed = False

        for record in records:
            if not record.id:
                continue

            if record.deleted:
                meta_by_id.pop(record.id, None)
                self._store.remove_payload(record.id)
                if record.id == active_id:
                    active_removed = True
                continue

            local = meta_by_id.get(record.id)
            if local is not None and local.updated_at >= record.updated_at:
                continue

            now = self._clock()
            self._store.write_payload(record.id, record.payload or ConversationPayload())
            meta_by_id[record.id] = ConversationMeta(
                id=record.id,
                created_at=record.created_at or now,
                updated_at=record.updated_at or now,
                title=record.title,
            )
            if record.id == active_id:
                reload_active = True

        metas = sort_metas(list(meta_by_id.values()))
        self._store.write_metas(metas)
        self._notify(self.on_conversations_changed, metas)

        if active_removed:
            if metas:
                next_id = metas[0].id
                self._store.write_current_conversation_id(next_id)
                self._notify(self.on_active_conversation_changed, next_id)
                return
            new_id = self._create_replacement_conversation()
            self._notify(self.on_conversations_changed, self._store.read_metas())
            self._notify(self.on_active_conversation_changed, new_id)
            self.queue_push(new_id, immediate=True)
            return

        if reload_active and active_id:
            self._notify(self.on_reload_conversation, active_id)

    # ---- 首次对账 ----

    async def bootstrap(self) -> None:
        """每个登录用户每次会话只执行一次。

        先拉取再推送：推送会把游标推进到最新事件，若先推送，
        新设备从 "0" 开始的首次拉取就看不到云端已有的历史会话。
        """

        if not self.is_authenticated:
            return
        if self._bootstrapped_user_id == self.user_id:
            return
        self._bootstrapped_user_id = self.user_id
        self._logger.info("Bootstrapping sync")

        await self.pull_once()
        await self.push_all()
        await self.pull_once()

    # ---- 内部实现 ----

    def _create_replacement_conversation(self) -> str:
        new_id = create_conversation_id()
        now = self._clock()
        self._store.write_payload(new_id, ConversationPayload.empty())
        self._store.write_metas([ConversationMeta(id=new_id, created_at=now, updated_at=now)])
        self._store.write_current_conversation_id(new_id)
        return new_id

    def _advance_cursor(self, cursor: Optional[str]) -> None:
        if cursor:
            self._store.write_sync_cursor(cursor)

    def _record_ok(self) -> None:
        self.last_ok_at = self._clock()
        self.last_error_at = None

    def _record_error(self, action: str, error: BusinessError, **fields) -> None:
        self.last_error_at = self._clock()
        self._logger.warning(
            f"Sync {action} failed: {error.message}",
            extra={"extra": {"code": error.code, **fields}},
        )

    @staticmethod
    def _notify(callback, value) -> None:
        if callback is not None:
            callback(value)
