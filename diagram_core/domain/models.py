"""会话与图表历史的统一数据模型。

本模块定义了本地存储、版本历史与远端同步之间共享的标准数据结构：

- ConversationMeta: 会话元数据（updated_at 是冲突解决的依据）。
- DiagramVersion: 一个不可变的图表快照。
- ConversationPayload: 一个会话完整的可持久化/可复制单元。
- ConversationRecord: 推送/拉取时在线路上传输的一条会话记录。
- PushResult / PullResult: 远端存储的返回结果。

线路格式（JSON）使用 camelCase 字段名，时间戳为毫秒整数；
所有模型都通过 to_dict / from_dict 在两者之间转换。
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4


# 聊天消息由外部对话组件产生，这里只当作不透明的 JSON 对象保存
ChatMessage = Dict[str, Any]


def now_ms() -> int:
    """当前时间（毫秒时间戳）。"""

    return int(time.time() * 1000)


def create_conversation_id() -> str:
    return f"conv-{now_ms()}-{uuid4().hex[:6]}"


def create_session_id() -> str:
    return f"session-{now_ms()}-{uuid4().hex[:7]}"


def create_version_id() -> str:
    return f"v-{now_ms()}-{uuid4().hex[:6]}"


@dataclass
class ConversationMeta:
    id: str
    created_at: int
    updated_at: int
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.title:
            data["title"] = self.title
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationMeta":
        return cls(
            id=str(data["id"]),
            created_at=int(data.get("createdAt") or 0),
            updated_at=int(data.get("updatedAt") or 0),
            title=data.get("title") or None,
        )


@dataclass(frozen=True)
class DiagramVersion:
    """一次图表快照，创建后不可变。"""

    id: str
    created_at: int
    xml: str
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "createdAt": self.created_at, "xml": self.xml}
        if self.note is not None:
            data["note"] = self.note
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DiagramVersion":
        return cls(
            id=str(data["id"]),
            created_at=int(data.get("createdAt") or 0),
            xml=str(data.get("xml") or ""),
            note=data.get("note"),
        )


@dataclass
class DiagramVersionState:
    """版本历史三元组：版本列表、游标、消息索引 -> 版本索引的标记。"""

    versions: List[DiagramVersion] = field(default_factory=list)
    cursor: int = -1
    marks: Dict[int, int] = field(default_factory=dict)


@dataclass
class ConversationPayload:
    """一个会话的完整持久化单元。

    - messages: 有序的聊天消息。
    - xml: 当前显示的图表 XML。
    - session_id: 对话会话标识，缺失时加载方会重新生成。
    - diagram_versions / diagram_version_cursor / diagram_version_marks:
      版本历史引擎的状态快照。
    - legacy_snapshots: 旧格式 ``[[messageIndex, xml], ...]``，仅在读取老数据时出现，
      由 PayloadAssembler 迁移为版本列表。
    """

    messages: List[ChatMessage] = field(default_factory=list)
    xml: str = ""
    session_id: str = ""
    diagram_versions: List[DiagramVersion] = field(default_factory=list)
    diagram_version_cursor: int = -1
    diagram_version_marks: Dict[int, int] = field(default_factory=dict)
    legacy_snapshots: List[Tuple[int, str]] = field(default_factory=list)

    @classmethod
    def empty(cls, session_id: Optional[str] = None, xml: str = "") -> "ConversationPayload":
        return cls(session_id=session_id or create_session_id(), xml=xml)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "messages": list(self.messages),
            "xml": self.xml,
            "sessionId": self.session_id,
            "diagramVersions": [v.to_dict() for v in self.diagram_versions],
            "diagramVersionCursor": self.diagram_version_cursor,
            # JSON 对象的键只能是字符串
            "diagramVersionMarks": {str(k): v for k, v in self.diagram_version_marks.items()},
        }
        if self.legacy_snapshots:
            data["snapshots"] = [[mi, xml] for mi, xml in self.legacy_snapshots]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationPayload":
        messages = data.get("messages")
        versions = data.get("diagramVersions")
        cursor = data.get("diagramVersionCursor")
        raw_marks = data.get("diagramVersionMarks")
        marks: Dict[int, int] = {}
        if isinstance(raw_marks, dict):
            for k, v in raw_marks.items():
                try:
                    marks[int(k)] = int(v)
                except (TypeError, ValueError):
                    continue
        snapshots: List[Tuple[int, str]] = []
        for item in data.get("snapshots") or []:
            if isinstance(item, (list, tuple)) and len(item) == 2:
                try:
                    snapshots.append((int(item[0]), str(item[1] or "")))
                except (TypeError, ValueError):
                    continue
        return cls(
            messages=list(messages) if isinstance(messages, list) else [],
            xml=str(data.get("xml") or ""),
            session_id=str(data.get("sessionId") or ""),
            diagram_versions=[DiagramVersion.from_dict(v) for v in versions] if isinstance(versions, list) else [],
            diagram_version_cursor=cursor if isinstance(cursor, int) else -1,
            diagram_version_marks=marks,
            legacy_snapshots=snapshots,
        )


@dataclass
class ConversationRecord:
    """推送/拉取使用的会话记录。

    推送时 deleted 记录不携带 payload；拉取时 deleted 记录的 payload 可以忽略。
    """

    id: str
    created_at: int
    updated_at: int
    title: Optional[str] = None
    deleted: bool = False
    payload: Optional[ConversationPayload] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.title:
            data["title"] = self.title
        if self.deleted:
            data["deleted"] = True
        if self.payload is not None:
            data["payload"] = self.payload.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationRecord":
        payload = data.get("payload")
        return cls(
            id=str(data.get("id") or ""),
            created_at=int(data.get("createdAt") or 0),
            updated_at=int(data.get("updatedAt") or 0),
            title=data.get("title") or None,
            deleted=bool(data.get("deleted")),
            payload=ConversationPayload.from_dict(payload) if isinstance(payload, dict) else None,
        )

    def to_meta(self) -> ConversationMeta:
        return ConversationMeta(
            id=self.id,
            created_at=self.created_at,
            updated_at=self.updated_at,
            title=self.title,
        )


@dataclass
class PushResult:
    cursor: str
    pushed_ids: List[str] = field(default_factory=list)


@dataclass
class PullResult:
    cursor: str
    conversations: List[ConversationRecord] = field(default_factory=list)


def sort_metas(metas: List[ConversationMeta]) -> List[ConversationMeta]:
    """按 updated_at 降序排列（本地元数据列表的存储顺序）。"""

    return sorted(metas, key=lambda m: m.updated_at, reverse=True)
