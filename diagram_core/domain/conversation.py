from typing import Optional, List, Protocol

from .models import (
    ChatMessage,
    ConversationMeta,
    ConversationPayload,
    ConversationRecord,
    PullResult,
    PushResult,
)


class LocalConversationStore(Protocol):
    """本地持久化存储，每个实例绑定一个用户（匿名用户为 "anonymous"）。

    只负责读写，不包含任何业务逻辑。
    """

    user_id: str

    def read_metas(self) -> List[ConversationMeta]:
        ...

    def write_metas(self, metas: List[ConversationMeta]) -> None:
        ...

    def read_payload(self, conversation_id: str) -> Optional[ConversationPayload]:
        ...

    def write_payload(self, conversation_id: str, payload: ConversationPayload) -> None:
        ...

    def remove_payload(self, conversation_id: str) -> None:
        ...

    def read_sync_cursor(self) -> str:
        ...

    def write_sync_cursor(self, cursor: str) -> None:
        ...

    def read_current_conversation_id(self) -> str:
        ...

    def write_current_conversation_id(self, conversation_id: str) -> None:
        ...


class RemoteConversationStore(Protocol):
    """远端权威存储，只通过 push / pull 访问。"""

    async def push(self, conversations: List[ConversationRecord]) -> PushResult:
        ...

    async def pull(self, cursor: str, limit: int) -> PullResult:
        ...


class DiagramRenderer(Protocol):
    """图表渲染与消息展示组件（外部实现）。

    display_chart 返回校验后的 XML；返回 None 表示图表被拒绝，
    不能被当作新的显示状态。
    """

    is_ready: bool

    def display_chart(self, xml: str, skip_validation: bool = False) -> Optional[str]:
        ...

    def clear_diagram(self) -> None:
        ...

    def set_messages(self, messages: List[ChatMessage]) -> None:
        ...
