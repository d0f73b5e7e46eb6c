"""远端存储集成层。

该包下的模块负责：
- 提供基于 HTTP 的远端存储客户端 (http_store)。
- 提供与服务端语义一致的进程内实现 (memory_store)，用于测试与离线开发。
"""

from typing import Literal, Optional

from diagram_core.config.settings import settings
from diagram_core.domain.conversation import RemoteConversationStore
from diagram_core.remote.http_store import HttpRemoteStore
from diagram_core.remote.memory_store import InMemoryRemoteStore


def create_remote_store(name: Optional[str] = None) -> RemoteConversationStore:
    """根据名称创建远端存储，默认使用 HTTP。"""

    store_name = (name or "http").lower()
    if store_name == "memory":
        return InMemoryRemoteStore()
    return HttpRemoteStore(settings)


RemoteStoreName = Literal["http", "memory"]
