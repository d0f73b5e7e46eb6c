"""当前会话的内存状态、payload 组装与会话控制器。"""

from .controller import ConversationController, derive_conversation_title
from .payload import ConversationState, PayloadAssembler, collect_tool_call_ids, migrate_snapshots_to_versions

__all__ = [
    "ConversationController",
    "ConversationState",
    "PayloadAssembler",
    "collect_tool_call_ids",
    "derive_conversation_title",
    "migrate_snapshots_to_versions",
]
