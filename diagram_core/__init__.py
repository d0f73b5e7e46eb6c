"""Diagram Core 顶层包。

该包提供图表对话应用的会话存储与同步核心实现，
包括配置加载、领域模型、图表版本历史、会话 payload 组装、
会话控制器、本地持久化与云端同步协调等能力。
"""

from diagram_core.api.service import DiagramSession, open_session

__all__ = ["DiagramSession", "open_session"]
