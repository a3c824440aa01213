"""领域层模型与协议。

包含：
- models: Message / Session / SessionState / Attachment 等会话与记录模型。
- suggestions: 模型回复中的结构化建议（Envelope）。
- state_machine: 教练会话的纯函数状态转移。
- exceptions: 业务异常类型定义。
"""
