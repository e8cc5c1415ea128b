"""领域层模型与协议。

包含：
- models: Message / Task / Event / ChatHistoryRecord 以及编排瞬态结构。
- exceptions: 错误分类与用户文案。
- result: 每轮编排的 Ok / Err 返回值。
"""
