"""AI client, prompts and tool declarations."""

from .client import AIClient, ClientSettings, OpenAIChatEndpoint

__all__ = ["AIClient", "ClientSettings", "OpenAIChatEndpoint"]
