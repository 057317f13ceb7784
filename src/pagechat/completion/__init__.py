from pagechat.completion.client import CompletionClient, CompletionResult
from pagechat.completion.tools import ToolExecutor, default_tool_executor

__all__ = ["CompletionClient", "CompletionResult", "ToolExecutor", "default_tool_executor"]
