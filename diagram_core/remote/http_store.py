"""HTTP 远端存储适配器。

与服务端的 tRPC 会话同步接口对接：
- URL: {base_url}/conversation.push 与 {base_url}/conversation.pull（非批量调用）
- 认证: Authorization: Bearer <token>
- 请求体使用 superjson 信封 ``{"json": input}``；
  成功响应为 ``{"result": {"data": {"json": output}}}``，
  失败响应为 ``{"error": {"json": {"message": ..., "data": {"code": ...}}}}``。

字段使用 camelCase，时间戳为毫秒整数。服务端单次拉取最多 100 条，
超过的 limit 会在发送前被截断。
"""

from typing import Any, Dict, List

import httpx

from diagram_core.config.settings import settings
from diagram_core.domain.conversation import RemoteConversationStore
from diagram_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from diagram_core.domain.models import ConversationRecord, PullResult, PushResult

SERVER_MAX_PULL_LIMIT = 100


class HttpRemoteStore(RemoteConversationStore):
    """基于 httpx.AsyncClient 的远端存储客户端。"""

    name = "http"

    def __init__(self, cfg=settings, token: str | None = None):
        self._settings = cfg
        self._token = token if token is not None else getattr(cfg, "sync_api_token", None)

    async def push(self, conversations: List[ConversationRecord]) -> PushResult:
        data = await self._call("conversation.push", {"conversations": [c.to_dict() for c in conversations]})
        return PushResult(
            cursor=str(data.get("cursor") or ""),
            pushed_ids=[str(i) for i in data.get("pushedIds") or []],
        )

    async def pull(self, cursor: str, limit: int) -> PullResult:
        limit = max(1, min(limit, SERVER_MAX_PULL_LIMIT))
        data = await self._call("conversation.pull", {"cursor": cursor, "limit": limit})
        raw = data.get("conversations")
        if not isinstance(raw, list):
            raw = []
        try:
            records = [ConversationRecord.from_dict(c) for c in raw if isinstance(c, dict)]
        except (KeyError, TypeError, ValueError) as e:
            # 整页作废：游标不前进，下一次拉取重试同一页
            raise ApiError(code="BAD_RESPONSE", message=f"Malformed conversation record: {e!r}", http_status=502)
        return PullResult(cursor=str(data.get("cursor") or cursor), conversations=records)

    # ---- 辅助方法 ----

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    async def _call(self, procedure: str, body: Dict[str, Any]) -> Dict[str, Any]:
        base = getattr(self._settings, "sync_base_url", None)
        if not base:
            raise ValidationError(code="MISSING_SYNC_URL", message="sync_base_url not set")
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(f"{base}/{procedure}", json={"json": body}, headers=self._headers())
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

        try:
            envelope = resp.json()
        except ValueError:
            envelope = None
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Sync rate limit", http_status=429)
        if resp.status_code >= 400:
            raise ApiError(
                code=_error_code(envelope) or "API_ERROR",
                message=_error_message(envelope) or resp.text,
                http_status=resp.status_code,
            )

        data = _unwrap_result(envelope)
        if not isinstance(data, dict):
            raise ApiError(code="BAD_RESPONSE", message="Expected a tRPC result object", http_status=resp.status_code)
        return data


def _unwrap_result(envelope: Any) -> Any:
    result = envelope.get("result") if isinstance(envelope, dict) else None
    if not isinstance(result, dict):
        return None
    data = result.get("data")
    if isinstance(data, dict) and "json" in data:
        return data["json"]
    return data


def _error_body(envelope: Any) -> Dict[str, Any]:
    if not isinstance(envelope, dict) or not isinstance(envelope.get("error"), dict):
        return {}
    error = envelope["error"]
    body = error.get("json", error)
    return body if isinstance(body, dict) else {}


def _error_code(envelope: Any) -> str:
    data = _error_body(envelope).get("data")
    code = data.get("code") if isinstance(data, dict) else None
    return str(code) if code else ""


def _error_message(envelope: Any) -> str:
    return str(_error_body(envelope).get("message") or "")
