"""turnloop - agentic turn loop between a user, an LLM and local tools."""

__version__ = "0.1.0"

from turnloop.config import Config
from turnloop.core.client import ConversationClient
from turnloop.tools.registry import ToolRegistry, create_tool_registry

__all__ = ["Config", "ConversationClient", "ToolRegistry", "create_tool_registry", "__version__"]
