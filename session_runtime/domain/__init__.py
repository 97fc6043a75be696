"""领域层模型与协议。

包含：
- commands / events: 命令与事件的封闭联合类型及 JSON 编解码。
- session: 读模型（Session / Message）及 MessageStore 协议。
- models: 流式文本条目与取消令牌。
- exceptions: 业务异常类型定义。
"""
