"""领域层模型与协议。

包含：
- models: 会话元数据、会话 payload、图表版本与同步记录模型。
- conversation: 本地存储、远端存储与图表渲染组件的 Protocol 抽象。
- exceptions: 业务异常类型定义。
"""
