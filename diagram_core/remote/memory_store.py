"""进程内的远端存储实现。

与服务端语义一致：
- push 按 id upsert 会话，删除记录保留最后一次 payload 并打上 deleted 标记；
- 每条推送的记录追加一条同步事件，事件自增 id 即游标；
- pull 读取游标之后的最多 limit 条事件，返回这些事件涉及的会话（去重），
  游标推进到最后一条事件；没有新事件时游标保持不变。

用于离线开发与测试；一个实例对应一个用户。
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from diagram_core.domain.conversation import RemoteConversationStore
from diagram_core.domain.exceptions import ValidationError
from diagram_core.domain.models import (
    ConversationPayload,
    ConversationRecord,
    PullResult,
    PushResult,
)

MAX_PUSH_BATCH = 50
MAX_PULL_LIMIT = 200


@dataclass
class _SyncEvent:
    id: int
    conversation_id: str
    type: str


class InMemoryRemoteStore(RemoteConversationStore):
    def __init__(self) -> None:
        self._conversations: Dict[str, ConversationRecord] = {}
        self._events: List[_SyncEvent] = []

    async def push(self, conversations: List[ConversationRecord]) -> PushResult:
        if len(conversations) > MAX_PUSH_BATCH:
            raise ValidationError(code="BATCH_TOO_LARGE", message=f"At most {MAX_PUSH_BATCH} conversations per push")

        for record in conversations:
            existing = self._conversations.get(record.id)
            if record.deleted and existing is not None:
                payload = existing.payload
            else:
                payload = _copy_payload(record.payload) or ConversationPayload()
            self._conversations[record.id] = ConversationRecord(
                id=record.id,
                title=record.title,
                created_at=record.created_at,
                updated_at=record.updated_at,
                deleted=record.deleted,
                payload=payload,
            )
        for record in conversations:
            self._append_event(record.id, "delete" if record.deleted else "upsert")

        return PushResult(cursor=self._last_cursor(), pushed_ids=[r.id for r in conversations])

    async def pull(self, cursor: str, limit: int) -> PullResult:
        try:
            after = int(cursor or "0")
        except ValueError:
            raise ValidationError(code="INVALID_CURSOR", message=f"Invalid cursor: {cursor!r}")
        limit = max(1, min(limit, MAX_PULL_LIMIT))

        events = [e for e in self._events if e.id > after][:limit]
        if not events:
            return PullResult(cursor=str(after), conversations=[])

        seen: List[str] = []
        for event in events:
            if event.conversation_id not in seen:
                seen.append(event.conversation_id)
        records = [self._snapshot(cid) for cid in seen if cid in self._conversations]
        return PullResult(cursor=str(events[-1].id), conversations=records)

    # ---- 查询 ----

    def get(self, conversation_id: str) -> Optional[ConversationRecord]:
        if conversation_id not in self._conversations:
            return None
        return self._snapshot(conversation_id)

    def _append_event(self, conversation_id: str, event_type: str) -> None:
        self._events.append(_SyncEvent(id=len(self._events) + 1, conversation_id=conversation_id, type=event_type))

    def _last_cursor(self) -> str:
        return str(self._events[-1].id) if self._events else "0"

    def _snapshot(self, conversation_id: str) -> ConversationRecord:
        stored = self._conversations[conversation_id]
        return ConversationRecord(
            id=stored.id,
            title=stored.title,
            created_at=stored.created_at,
            updated_at=stored.updated_at,
            deleted=stored.deleted,
            payload=_copy_payload(stored.payload),
        )


def _copy_payload(payload: Optional[ConversationPayload]) -> Optional[ConversationPayload]:
    if payload is None:
        return None
    return ConversationPayload.from_dict(payload.to_dict())
