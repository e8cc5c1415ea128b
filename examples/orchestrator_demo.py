"""Minimal demonstration of the conversation orchestrator with one tool.

读取 .env 中的 AGENTIFY_API_URL / AGENTIFY_API_KEY / AGENTIFY_MODEL 后运行。
"""

from dotenv import load_dotenv

load_dotenv()

from agentify import ConversationOrchestrator, ToolDef, ToolParam, TurnOptions  # noqa: E402


def add(args):
    return sum(float(x) for x in str(args["expr"]).split("+"))


if __name__ == "__main__":
    orchestrator = ConversationOrchestrator(instruction="你是一个有用的AI助手。需要计算时请调用 calculator 工具。")
    orchestrator.add_tool(
        ToolDef(
            name="calculator",
            description="Add numbers written as 'a+b+c'",
            params={"expr": ToolParam(name="expr", description="Expression such as 2+2", required=True)},
            execute=add,
        )
    )

    question = "2+2 等于多少？"
    print("User:", question)
    print("Agent: ", end="", flush=True)
    result = orchestrator.turn(
        question,
        TurnOptions(
            on_token=lambda t: print(t, end="", flush=True),
            on_tool_call=lambda call: print(f"\n[tool] {call.name}({call.arguments})", flush=True),
        ),
    )
    if not orchestrator.config.stream or result.finish_reason in ("error", "max_rounds"):
        print(result.content)
    print()
    print("Storage:", orchestrator.storage_info()["total"]["size_formatted"])
