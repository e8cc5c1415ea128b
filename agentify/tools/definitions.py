"""工具数据结构定义。

这些 dataclass 描述了“工具调用”的 schema，既用于：
- 将可用工具列表暴露给 LLM（ToolDef / ToolParam）。
- 在编排循环中保存和执行模型触发的工具调用（ToolCall / ToolResult）。
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union


ToolFunc = Callable[[Dict[str, Any]], Any]


@dataclass
class ToolParam:
    """单个工具参数的定义。"""

    name: str
    description: str = ""
    required: bool = False
    schema: Dict[str, Any] = field(default_factory=lambda: {"type": "string"})


@dataclass
class ToolDef:
    """一个可供 LLM 调用的工具定义。

    - instruction: 附加使用说明，会拼接到 description 后面一起发给模型。
    - execute: 实际执行函数，接收解析后的参数字典。
    """

    name: str
    description: str
    params: Dict[str, ToolParam] = field(default_factory=dict)
    instruction: str = ""
    execute: Optional[ToolFunc] = None

    def full_description(self) -> str:
        if self.instruction:
            return f"{self.description}\n\n{self.instruction}"
        return self.description

    def parameters_schema(self) -> Dict[str, Any]:
        """转换成 JSON Schema 风格的参数描述。"""

        properties: Dict[str, Any] = {}
        required = []
        for name, param in self.params.items():
            prop = dict(param.schema or {"type": "string"})
            if param.description:
                prop["description"] = param.description
            properties[name] = prop
            if param.required:
                required.append(name)
        schema: Dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            schema["required"] = required
        return schema


@dataclass
class ToolCall:
    """模型发起的一次工具调用请求。

    arguments 可能已经是结构化的 dict，也可能是模型原样返回的 JSON 文本，
    解析在执行前由 ToolInvocationLoop 完成。
    """

    id: str
    name: str
    arguments: Union[Dict[str, Any], str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            arguments=data.get("arguments") if data.get("arguments") is not None else {},
        )

    def arguments_json(self) -> str:
        if isinstance(self.arguments, str):
            return self.arguments
        return json.dumps(self.arguments, ensure_ascii=False)


@dataclass
class ToolResult:
    """工具执行结果。

    无论成功失败都会构造该对象（而不是抛异常），以便把失败原因回传给模型。
    """

    success: bool
    tool_name: str
    result: Any = None
    error: Optional[str] = None
    call_id: Optional[str] = None
    duration_ms: Optional[int] = None

    def to_message_content(self) -> str:
        """序列化为 role=tool 消息的 content。"""

        payload = {"result": self.result} if self.success else {"error": self.error}
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "toolName": self.tool_name}
        if self.success:
            data["result"] = self.result
        else:
            data["error"] = self.error
        return data
