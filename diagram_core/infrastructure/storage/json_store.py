import json
import os
import re
from pathlib import Path
from typing import Any, List, Optional
from uuid import uuid4

from diagram_core.config.settings import settings
from diagram_core.domain.conversation import LocalConversationStore
from diagram_core.domain.exceptions import BusinessError
from diagram_core.domain.models import ConversationMeta, ConversationPayload
from diagram_core.infrastructure.logging.logger import bind_logger


_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


def _safe_name(value: str) -> str:
    return _SAFE_NAME.sub("_", value) or "_"


class JsonLocalStore(LocalConversationStore):
    """基于 JSON 文件的本地存储。

    目录结构（每个用户一个子目录）::

        <root>/users/<user_id>/conversations.json   元数据列表（updated_at 降序）
        <root>/users/<user_id>/payloads/<id>.json    每个会话一个 payload
        <root>/users/<user_id>/sync_cursor           同步游标
        <root>/users/<user_id>/current_conversation  当前会话 id
    """

    def __init__(self, root: str | Path | None = None, user_id: str = "anonymous"):
        self.user_id = user_id or "anonymous"
        self._logger = bind_logger(component="store", user_id=self.user_id)
        self._root = Path(root or settings.storage_root).resolve()
        self._user_root = self._root / "users" / _safe_name(self.user_id)
        self._payload_root = self._user_root / "payloads"
        self._payload_root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    # ---- 元数据 ----

    def read_metas(self) -> List[ConversationMeta]:
        data = self._read_json(self._user_root / "conversations.json")
        if not isinstance(data, list):
            return []
        items: List[ConversationMeta] = []
        for raw in data:
            try:
                items.append(ConversationMeta.from_dict(raw))
            except (KeyError, TypeError, ValueError):
                continue
        return items

    def write_metas(self, metas: List[ConversationMeta]) -> None:
        self._write_json(self._user_root / "conversations.json", [m.to_dict() for m in metas])

    # ---- payload ----

    def read_payload(self, conversation_id: str) -> Optional[ConversationPayload]:
        data = self._read_json(self._payload_path(conversation_id))
        if not isinstance(data, dict):
            return None
        try:
            return ConversationPayload.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            self._logger.warning(
                "Unreadable payload",
                extra={"extra": {"conversation_id": conversation_id, "error": str(e)}},
            )
            return None

    def write_payload(self, conversation_id: str, payload: ConversationPayload) -> None:
        self._write_json(self._payload_path(conversation_id), payload.to_dict())

    def remove_payload(self, conversation_id: str) -> None:
        path = self._payload_path(conversation_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise BusinessError(code="STORE_DELETE_ERROR", message=str(e))

    # ---- 游标与当前会话指针 ----

    def read_sync_cursor(self) -> str:
        return self._read_text(self._user_root / "sync_cursor") or "0"

    def write_sync_cursor(self, cursor: str) -> None:
        self._write_text(self._user_root / "sync_cursor", cursor)

    def read_current_conversation_id(self) -> str:
        return self._read_text(self._user_root / "current_conversation")

    def write_current_conversation_id(self, conversation_id: str) -> None:
        self._write_text(self._user_root / "current_conversation", conversation_id)

    # ---- 辅助方法 ----

    def _payload_path(self, conversation_id: str) -> Path:
        return self._payload_root / f"{_safe_name(conversation_id)}.json"

    def _read_json(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            self._logger.warning(f"Failed to read {path.name}: {e}")
            return None

    def _read_text(self, path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8").strip() if path.exists() else ""
        except OSError:
            return ""

    def _write_json(self, path: Path, obj: Any) -> None:
        self._write_text(path, json.dumps(obj, ensure_ascii=False))

    def _write_text(self, path: Path, text: str) -> None:
        tmp_path = path.parent / f"{path.name}.{uuid4().hex}.tmp"
        try:
            tmp_path.write_text(text, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e))
