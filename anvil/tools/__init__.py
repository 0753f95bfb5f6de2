"""Tools module -- default ToolExecutor and change-set tools."""

from anvil.tools.changes import register_change_tools
from anvil.tools.registry import RegisteredTool, ToolRegistry

__all__ = ["RegisteredTool", "ToolRegistry", "register_change_tools"]
