"""工具注册表：保存可供模型调用的工具，并按 Provider 输出工具定义。"""

import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from agentify.domain.exceptions import AgentError, ToolExecutionError, UnknownToolError
from agentify.tools.definitions import ToolDef, ToolFunc, ToolParam, ToolResult
from agentify.utils.validators import validate_tool


OPENAI_STYLE_PROVIDERS = ("openai", "deepseek", "custom")


class ToolRegistry:
    def __init__(self, tools: Optional[Iterable[ToolDef]] = None):
        self._tools: Dict[str, ToolDef] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: ToolDef, instruction_file: Union[str, Path, None] = None) -> ToolDef:
        """注册（或覆盖）一个工具。instruction_file 的内容会替换 tool.instruction。"""

        validate_tool(tool)
        if instruction_file is not None:
            tool.instruction = Path(instruction_file).read_text(encoding="utf-8")
        self._tools[tool.name] = tool
        return tool

    def register_function(
        self,
        name: str,
        description: str,
        func: ToolFunc,
        params: Optional[Dict[str, ToolParam]] = None,
        instruction: str = "",
    ) -> ToolDef:
        return self.register(
            ToolDef(name=name, description=description, params=dict(params or {}), instruction=instruction, execute=func)
        )

    def register_many(self, tools: Iterable[ToolDef]) -> List[Dict[str, Any]]:
        """批量注册，单个失败不影响其他工具，返回每个工具的注册结果。"""

        results: List[Dict[str, Any]] = []
        for tool in tools:
            try:
                self.register(tool)
                results.append({"success": True, "tool": tool.name})
            except (AgentError, OSError) as e:
                results.append({"success": False, "tool": getattr(tool, "name", None), "error": str(e)})
        return results

    def remove(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def clear(self) -> None:
        self._tools.clear()

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get_tool(self, name: str) -> ToolDef:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(
                code="TOOL_NOT_FOUND",
                message=f'Tool "{name}" not found. Available tools: {", ".join(self.tool_names())}',
                http_status=404,
                tool_name=name,
                available_tools=self.tool_names(),
            )
        return tool

    def tool_names(self) -> List[str]:
        return list(self._tools)

    def all_tools(self) -> List[ToolDef]:
        return list(self._tools.values())

    def count(self) -> int:
        return len(self._tools)

    def execute_tool(self, name: str, arguments: Dict[str, Any]) -> ToolResult:
        """执行工具并计时。

        未注册或执行抛错时抛出 ToolError，由 ToolInvocationLoop 转换成失败的 ToolResult。
        """

        tool = self.get_tool(name)
        if tool.execute is None:
            raise ToolExecutionError(
                code="TOOL_EXEC_FAILED",
                message=f"Tool {name} has no execute function",
                tool_name=name,
            )
        start = time.perf_counter()
        try:
            result = tool.execute(arguments)
        except Exception as e:
            raise ToolExecutionError(
                code="TOOL_EXEC_FAILED",
                message=f"Tool execution failed: {name}: {e}",
                tool_name=name,
                original_error=type(e).__name__,
            ) from e
        return ToolResult(
            success=True,
            tool_name=name,
            result=result,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

    def get_tool_definitions(self, provider: str = "openai") -> List[Dict[str, Any]]:
        defs: List[Dict[str, Any]] = []
        for tool in self._tools.values():
            if provider in OPENAI_STYLE_PROVIDERS:
                defs.append(
                    {
                        "type": "function",
                        "function": {
                            "name": tool.name,
                            "description": tool.full_description(),
                            "parameters": tool.parameters_schema(),
                        },
                    }
                )
            elif provider == "anthropic":
                defs.append(
                    {
                        "name": tool.name,
                        "description": tool.full_description(),
                        "input_schema": tool.parameters_schema(),
                    }
                )
            else:
                defs.append(
                    {
                        "name": tool.name,
                        "description": tool.full_description(),
                        "parameters": tool.parameters_schema(),
                    }
                )
        return defs

    def summary_lines(self) -> List[str]:
        return [f"- {tool.name}: {tool.description}" for tool in self._tools.values()]
