"""Local capability tools exposed to the agent through the registry."""

from .analysis import AnalysisTool
from .base import MethodSchema, Param, Tool, ToolSchema
from .exec import ExecTool
from .filesystem import FilesystemTool
from .network import NetworkTool

__all__ = [
    "AnalysisTool",
    "ExecTool",
    "FilesystemTool",
    "MethodSchema",
    "NetworkTool",
    "Param",
    "Tool",
    "ToolSchema",
]
