"""会话 payload 的组装与应用。

- create_payload_snapshot: 把内存中的会话状态（消息、当前 XML、session id、
  版本历史快照）组装成一个 ConversationPayload，用于持久化与同步。
- apply_payload_to_ui: 打开会话时的逆操作，把 payload 恢复到内存与渲染组件。

渲染组件的就绪是异步的：未就绪时要显示的 XML 先放进 pending_diagram_xml，
等 on_renderer_ready() 被调用后再显示。
"""

from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple

from diagram_core.domain.conversation import DiagramRenderer
from diagram_core.domain.models import (
    ChatMessage,
    ConversationPayload,
    DiagramVersion,
    DiagramVersionState,
    create_session_id,
    now_ms,
)
from diagram_core.history.version_history import DiagramVersionHistory


@dataclass
class ConversationState:
    """当前打开会话的内存状态（由 ConversationController 独占）。"""

    messages: List[ChatMessage] = field(default_factory=list)
    chart_xml: str = ""
    session_id: str = field(default_factory=create_session_id)
    processed_tool_calls: Set[str] = field(default_factory=set)
    auto_retry_count: int = 0
    edit_failure_count: int = 0
    force_display_next: bool = False
    pending_diagram_xml: Optional[str] = None


def collect_tool_call_ids(messages: List[ChatMessage]) -> Set[str]:
    """收集消息中已经出现过的工具调用 ID，避免重新打开会话后重复处理。"""

    ids: Set[str] = set()
    for message in messages:
        parts = message.get("parts") if isinstance(message, dict) else None
        if not isinstance(parts, list):
            continue
        for part in parts:
            if not isinstance(part, dict):
                continue
            part_type = part.get("type")
            tool_call_id = part.get("toolCallId")
            if isinstance(part_type, str) and part_type.startswith("tool-") and isinstance(tool_call_id, str):
                ids.add(tool_call_id)
    return ids


def migrate_snapshots_to_versions(
    snapshots: List[Tuple[int, str]], clock=now_ms
) -> DiagramVersionState:
    """把旧格式 ``[(messageIndex, xml), ...]`` 快照迁移为版本历史。"""

    now = clock()
    versions = [
        DiagramVersion(
            id=f"migrated-{mi}-{idx}",
            created_at=now - (len(snapshots) - idx) * 1000,
            xml=xml,
            note="migrated",
        )
        for idx, (mi, xml) in enumerate(snapshots)
    ]
    marks = {}
    for mi, xml in snapshots:
        found = next((i for i, v in enumerate(versions) if v.xml == xml), -1)
        if found >= 0:
            marks[mi] = found
    return DiagramVersionState(versions=versions, cursor=len(versions) - 1, marks=marks)


class PayloadAssembler:
    def __init__(self, state: ConversationState, history: DiagramVersionHistory, renderer: DiagramRenderer):
        self.state = state
        self.history = history
        self.renderer = renderer

    def create_payload_snapshot(self) -> ConversationPayload:
        version_state = self.history.get_state_snapshot()
        return ConversationPayload(
            messages=list(self.state.messages),
            xml=self.state.chart_xml or "",
            session_id=self.state.session_id,
            diagram_versions=version_state.versions,
            diagram_version_cursor=version_state.cursor,
            diagram_version_marks=version_state.marks,
        )

    def apply_payload_to_ui(self, payload: ConversationPayload) -> None:
        state = self.state
        state.messages = list(payload.messages)
        self.renderer.set_messages(list(state.messages))
        state.session_id = payload.session_id or create_session_id()

        state.processed_tool_calls = collect_tool_call_ids(state.messages)
        state.auto_retry_count = 0
        state.edit_failure_count = 0
        state.force_display_next = False
        state.pending_diagram_xml = None

        if not payload.diagram_versions and payload.legacy_snapshots:
            version_state = migrate_snapshots_to_versions(payload.legacy_snapshots)
        else:
            version_state = DiagramVersionState(
                versions=list(payload.diagram_versions),
                cursor=payload.diagram_version_cursor,
                marks=dict(payload.diagram_version_marks),
            )
        self.history.restore_state(version_state)

        # 优先使用显式 xml，其次是恢复后游标处的版本
        xml_to_load = payload.xml or self.history.current_xml
        if not xml_to_load:
            self.renderer.clear_diagram()
            state.chart_xml = ""
        elif self.renderer.is_ready:
            self._display(xml_to_load)
        else:
            state.pending_diagram_xml = xml_to_load

    def on_renderer_ready(self) -> None:
        """渲染组件就绪后显示排队的 XML。"""

        pending = self.state.pending_diagram_xml
        self.state.pending_diagram_xml = None
        if pending:
            self._display(pending)

    def _display(self, xml: str) -> None:
        if self.renderer.display_chart(xml, True) is not None:
            self.state.chart_xml = xml
