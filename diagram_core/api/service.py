"""对外 API 服务模块。

把本地存储、远端存储、会话控制器与同步协调器装配成一个 DiagramSession，
并提供简化的函数接口供上层应用调用。

注意：登录用户的同步依赖 asyncio 事件循环，start()/switch_user() 需要在
运行中的事件循环内调用。
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from diagram_core.config.settings import settings
from diagram_core.domain.conversation import DiagramRenderer, RemoteConversationStore
from diagram_core.infrastructure.logging.logger import logger
from diagram_core.infrastructure.storage.json_store import JsonLocalStore
from diagram_core.remote import create_remote_store
from diagram_core.sessions.controller import ConversationController
from diagram_core.sync.coordinator import SyncCoordinator


class HeadlessRenderer(DiagramRenderer):
    """无界面的渲染组件：始终就绪，只记录最后显示的 XML。"""

    def __init__(self) -> None:
        self.is_ready = True
        self.xml = ""
        self.messages: List[Dict[str, Any]] = []

    def display_chart(self, xml: str, skip_validation: bool = False) -> Optional[str]:
        self.xml = xml
        return xml

    def clear_diagram(self) -> None:
        self.xml = ""

    def set_messages(self, messages: List[Dict[str, Any]]) -> None:
        self.messages = list(messages)


@dataclass
class DiagramSession:
    store: JsonLocalStore
    remote: RemoteConversationStore
    controller: ConversationController
    coordinator: SyncCoordinator

    def start(self) -> str:
        """恢复当前会话并（登录时）启动同步，返回当前会话 id。"""

        conversation_id = self.controller.restore()
        self.coordinator.start()
        return conversation_id

    def switch_user(self, user_id: Optional[str], authenticated: bool) -> str:
        self.store = JsonLocalStore(root=self.store.root, user_id=user_id or "anonymous")
        conversation_id = self.controller.rebind(self.store, authenticated)
        self.coordinator.set_user(user_id, authenticated, store=self.store)
        logger.info("Switched user", extra={"extra": {"user_id": user_id, "authenticated": authenticated}})
        return conversation_id

    def close(self) -> None:
        self.controller.flush()
        self.coordinator.close()


def open_session(
    user_id: Optional[str] = None,
    *,
    authenticated: bool = False,
    renderer: Optional[DiagramRenderer] = None,
    remote: Optional[RemoteConversationStore] = None,
    cfg=settings,
) -> DiagramSession:
    """装配一个会话：控制器的推送请求交给协调器，协调器的回调交给控制器。"""

    store = JsonLocalStore(root=cfg.storage_root, user_id=user_id or "anonymous")
    remote = remote or create_remote_store()
    coordinator = SyncCoordinator(store, remote, user_id=user_id, authenticated=authenticated, cfg=cfg)
    controller = ConversationController(
        store,
        renderer or HeadlessRenderer(),
        queue_push=coordinator.queue_push,
        authenticated=authenticated,
        cfg=cfg,
    )
    coordinator.on_conversations_changed = controller.handle_conversations_changed
    coordinator.on_active_conversation_changed = controller.handle_active_conversation_changed
    coordinator.on_reload_conversation = controller.handle_reload_conversation
    return DiagramSession(store=store, remote=remote, controller=controller, coordinator=coordinator)


def list_conversations(session: DiagramSession, locale: str = "en") -> List[Dict[str, Any]]:
    """列出所有会话（按 updated_at 降序）。

    Returns:
        会话列表，每项包含 id, title, created_at, updated_at, active
    """
    controller = session.controller
    return [
        {
            "id": m.id,
            "title": controller.get_conversation_display_title(m.id, locale),
            "created_at": m.created_at,
            "updated_at": m.updated_at,
            "active": m.id == controller.current_conversation_id,
        }
        for m in controller.conversations
    ]


def get_sync_status(session: DiagramSession) -> Dict[str, Any]:
    status = session.coordinator.status
    return {
        "is_online": status.is_online,
        "in_flight": status.in_flight,
        "last_ok_at": status.last_ok_at,
        "last_error_at": status.last_error_at,
        "cursor": status.cursor,
    }
