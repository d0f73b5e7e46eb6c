"""当前会话控制器。

ConversationController 独占当前打开会话的内存状态（消息、图表 XML、版本历史），
负责：
- 启动时恢复当前会话，打开/切换/新建/删除会话；
- 每次版本历史变更或消息变更后立即写入本地存储，并调度一次防抖推送；
- 响应同步协调器的回调（元数据变更、当前会话被远端删除或覆盖）。
"""

import logging
from typing import Any, Callable, List, Optional

from diagram_core.config.settings import settings
from diagram_core.domain.conversation import DiagramRenderer, LocalConversationStore
from diagram_core.domain.exceptions import BusinessError
from diagram_core.domain.models import (
    ChatMessage,
    ConversationMeta,
    ConversationPayload,
    DiagramVersionState,
    create_conversation_id,
    now_ms,
    sort_metas,
)
from diagram_core.history.version_history import DiagramVersionHistory, VersionResult
from diagram_core.infrastructure.logging.logger import bind_logger
from diagram_core.sessions.payload import ConversationState, PayloadAssembler

# (conversation_id, *, immediate=False, deleted=False)
QueuePush = Callable[..., None]


def _message_text(message: ChatMessage) -> str:
    parts = message.get("parts")
    if isinstance(parts, list):
        for part in parts:
            if isinstance(part, dict) and part.get("type") == "text":
                return str(part.get("text") or "")
    content = message.get("content")
    return content if isinstance(content, str) else ""


def derive_conversation_title(messages: List[ChatMessage], max_length: int = 24) -> Optional[str]:
    """使用第一条用户消息的前 max_length 个字符作为标题。"""

    first_user = next((m for m in messages if isinstance(m, dict) and m.get("role") == "user"), None)
    if first_user is None:
        return None
    text = _message_text(first_user).strip()
    return text[:max_length] or None


class ConversationController:
    def __init__(
        self,
        store: LocalConversationStore,
        renderer: DiagramRenderer,
        *,
        queue_push: Optional[QueuePush] = None,
        authenticated: bool = False,
        cfg=settings,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = store
        self._renderer = renderer
        self._cfg = cfg
        self._clock = clock
        # 总是调用最新设置的推送回调
        self.queue_push: Optional[QueuePush] = queue_push
        self.authenticated = authenticated

        self.state = ConversationState()
        self.history = DiagramVersionHistory(
            display_chart=self._display_chart,
            max_versions=cfg.max_versions,
            max_xml_size=cfg.max_xml_size,
            clock=clock,
        )
        self.assembler = PayloadAssembler(self.state, self.history, renderer)
        self._conversations: List[ConversationMeta] = []
        self._current_id = ""
        self.has_restored = False

    # ---- 只读视图 ----

    @property
    def conversations(self) -> List[ConversationMeta]:
        return list(self._conversations)

    @property
    def current_conversation_id(self) -> str:
        return self._current_id

    def get_conversation_display_title(self, conversation_id: str, locale: str = "en") -> str:
        """优先使用保存的标题，否则按列表位置显示为「会话 N」/「Session N」。"""

        for idx, meta in enumerate(self._conversations):
            if meta.id != conversation_id:
                continue
            if meta.title:
                return meta.title
            return f"会话 {idx + 1}" if locale == "zh-CN" else f"Session {idx + 1}"
        return conversation_id

    def rebind(self, store: LocalConversationStore, authenticated: bool) -> str:
        """切换用户：保存旧用户的当前会话后，改用新用户的本地存储并重新恢复。"""

        self.flush()
        self._store = store
        self.authenticated = authenticated
        self._current_id = ""
        return self.restore()

    # ---- 打开与保存 ----

    def restore(self) -> str:
        """启动时恢复：使用存储中的当前会话，否则取最近更新的会话，否则新建。"""

        metas = sort_metas(self._store.read_metas())
        current = self._store.read_current_conversation_id()
        if not any(m.id == current for m in metas):
            current = metas[0].id if metas else ""
        if not current:
            current = self._create_empty_conversation()
            metas = self._store.read_metas()
        self._conversations = metas
        self._set_current(current)
        self.load_conversation(current)
        self.has_restored = True
        self._log(logging.INFO, "Restored conversation", conversation_id=current, total=len(metas))
        return current

    def load_conversation(self, conversation_id: str) -> None:
        payload = self._store.read_payload(conversation_id)
        if payload is None:
            payload = ConversationPayload.empty()
        self.assembler.apply_payload_to_ui(payload)

    def on_renderer_ready(self) -> None:
        self.assembler.on_renderer_ready()

    def persist_current_conversation(
        self,
        *,
        messages: Optional[List[ChatMessage]] = None,
        xml: Optional[str] = None,
        session_id: Optional[str] = None,
        version_state: Optional[DiagramVersionState] = None,
    ) -> None:
        """把覆盖字段与已存储的 payload 合并后写入本地，并调度一次防抖推送。"""

        conversation_id = self._current_id
        if not conversation_id:
            return
        existing = self._store.read_payload(conversation_id) or ConversationPayload.empty(
            session_id=self.state.session_id
        )
        versions = version_state or self.history.get_state_snapshot()
        merged = ConversationPayload(
            messages=list(messages) if messages is not None else existing.messages,
            xml=xml if xml is not None else existing.xml,
            session_id=session_id or existing.session_id or self.state.session_id,
            diagram_versions=versions.versions,
            diagram_version_cursor=versions.cursor,
            diagram_version_marks=versions.marks,
        )
        self._store.write_payload(conversation_id, merged)
        self._touch_meta(conversation_id, merged.messages)
        self._queue(conversation_id)

    def flush(self) -> None:
        """立即保存当前内存中的完整会话状态。"""

        if not self._current_id:
            return
        snapshot = self.assembler.create_payload_snapshot()
        self.persist_current_conversation(
            messages=snapshot.messages,
            xml=snapshot.xml,
            session_id=snapshot.session_id,
        )

    def update_messages(self, messages: List[ChatMessage]) -> None:
        self.state.messages = list(messages)
        self.persist_current_conversation(messages=self.state.messages)

    def update_chart_xml(self, xml: str) -> None:
        self.state.chart_xml = xml or ""
        self.persist_current_conversation(xml=self.state.chart_xml)

    # ---- 版本历史（每次变更后持久化） ----

    def ensure_version_for_message(self, message_index: int, xml: str, note: Optional[str] = None) -> VersionResult:
        result = self.history.ensure_version_for_message(message_index, xml, note)
        if result.ok:
            self.persist_current_conversation()
        return result

    def append_diagram_version(self, xml: str, note: Optional[str] = None) -> VersionResult:
        result = self.history.append_diagram_version(xml, note)
        if result.created:
            self.persist_current_conversation()
        return result

    def restore_diagram_version_index(self, index: int) -> bool:
        moved = self.history.restore_diagram_version_index(index)
        if moved:
            self.persist_current_conversation(xml=self.state.chart_xml)
        return moved

    def undo_diagram(self) -> bool:
        moved = self.history.undo_diagram()
        if moved:
            self.persist_current_conversation(xml=self.state.chart_xml)
        return moved

    def redo_diagram(self) -> bool:
        moved = self.history.redo_diagram()
        if moved:
            self.persist_current_conversation(xml=self.state.chart_xml)
        return moved

    def truncate_versions_after_message(self, message_index: int) -> None:
        self.history.truncate_versions_after_message(message_index)
        self.persist_current_conversation()

    # ---- 会话操作 ----

    def new_chat(self, keep_diagram: bool = False) -> bool:
        if not self.authenticated and len(self._store.read_metas()) >= self._cfg.anonymous_conversation_quota:
            self._log(logging.INFO, "Anonymous conversation quota reached")
            return False

        xml = self.state.chart_xml if keep_diagram else ""
        try:
            self.flush()
            new_id = self._create_empty_conversation(xml=xml)
        except BusinessError as e:
            self._log(logging.ERROR, f"Failed to create new conversation: {e.message}", code=e.code)
            return False

        self._conversations = self._store.read_metas()
        self._set_current(new_id)
        self.assembler.apply_payload_to_ui(self._store.read_payload(new_id) or ConversationPayload.empty(xml=xml))
        if keep_diagram and xml:
            self.state.chart_xml = xml
        self._queue(new_id, immediate=True)
        return True

    def select_conversation(self, conversation_id: str) -> None:
        if not conversation_id or conversation_id == self._current_id:
            return
        self.flush()
        self._set_current(conversation_id)
        self.load_conversation(conversation_id)

    def delete_conversation(self, conversation_id: str) -> None:
        if conversation_id == self._current_id:
            self.flush()
        self._queue(conversation_id, immediate=True, deleted=True)
        self._store.remove_payload(conversation_id)

        metas = [m for m in self._store.read_metas() if m.id != conversation_id]
        self._store.write_metas(metas)
        self._conversations = metas
        self._log(logging.INFO, "Deleted conversation", conversation_id=conversation_id)

        if conversation_id != self._current_id:
            return
        if metas:
            next_id = metas[0].id
        else:
            next_id = self._create_empty_conversation()
            self._conversations = self._store.read_metas()
            self._queue(next_id, immediate=True)
        self._set_current(next_id)
        self.load_conversation(next_id)

    # ---- 同步协调器回调 ----

    def handle_conversations_changed(self, metas: List[ConversationMeta]) -> None:
        self._conversations = list(metas)

    def handle_active_conversation_changed(self, conversation_id: str) -> None:
        self._current_id = conversation_id
        self.load_conversation(conversation_id)

    def handle_reload_conversation(self, conversation_id: str) -> None:
        if conversation_id == self._current_id:
            self.load_conversation(conversation_id)

    # ---- 内部实现 ----

    def _display_chart(self, xml: str, skip_validation: bool = False) -> Optional[str]:
        result = self._renderer.display_chart(xml, skip_validation)
        if result is not None:
            self.state.chart_xml = xml
        return result

    def _set_current(self, conversation_id: str) -> None:
        self._current_id = conversation_id
        self._store.write_current_conversation_id(conversation_id)

    def _create_empty_conversation(self, xml: str = "") -> str:
        new_id = create_conversation_id()
        now = self._clock()
        self._store.write_payload(new_id, ConversationPayload.empty(xml=xml))
        metas = [ConversationMeta(id=new_id, created_at=now, updated_at=now)] + self._store.read_metas()
        self._store.write_metas(sort_metas(metas))
        return new_id

    def _touch_meta(self, conversation_id: str, messages: List[ChatMessage]) -> None:
        now = self._clock()
        metas = self._store.read_metas()
        found = False
        for meta in metas:
            if meta.id != conversation_id:
                continue
            found = True
            # updated_at 在同一副本内单调不减
            meta.updated_at = max(now, meta.updated_at)
            meta.title = meta.title or derive_conversation_title(messages, self._cfg.title_max_length)
        if not found:
            metas.insert(
                0,
                ConversationMeta(
                    id=conversation_id,
                    created_at=now,
                    updated_at=now,
                    title=derive_conversation_title(messages, self._cfg.title_max_length),
                ),
            )
        self._conversations = sort_metas(metas)
        self._store.write_metas(self._conversations)

    def _queue(self, conversation_id: str, **opts: Any) -> None:
        if self.queue_push is not None:
            self.queue_push(conversation_id, **opts)

    def _log(self, level: int, message: str, **fields: Any) -> None:
        log = bind_logger(
            component="conversation",
            user_id=getattr(self._store, "user_id", None),
            conversation_id=self._current_id or None,
        )
        log.log(level, message, extra={"extra": fields})
