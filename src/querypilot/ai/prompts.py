"""Prompt templates for the data assistant."""

from __future__ import annotations

from typing import Sequence


def system_prompt(*, tool_names: Sequence[str] = (), format_hint: str | None = None) -> str:
    """Return the system instruction sent ahead of every conversation."""
    tools = ", ".join(tool_names) if tool_names else "the declared tools"
    prompt = f"""You are a helpful assistant that helps users explore and query their Google BigQuery data.

When a user asks a question:
1. First, understand what data they're asking about
2. Use list_datasets to see available datasets if needed
3. Use list_tables to see tables in relevant datasets
4. Use get_table_schema to understand table structure before querying
5. Use run_query to execute SQL queries and get answers
6. Present results in a clear, conversational way

Available tools: {tools}.

Always explain what you're doing and why. If you need several queries or must explore the schema,
do that, and join tables when the answer needs it. Never answer that there is no data without checking.

When a [ROUTING_HINT] block is present, prefer the recommended tables and follow the markdown template exactly."""
    if format_hint:
        prompt += f"\n\n{format_hint}"
    return prompt


def routing_block(message: str, routing_hint: str, format_hint: str = "") -> str:
    """Append the routing hint and answer template to a user message."""
    if not routing_hint and not format_hint:
        return message
    sections = [section for section in (routing_hint, format_hint) if section]
    body = "\n\n".join(sections)
    return f"{message}\n\n[ROUTING_HINT]\n{body}\n[/ROUTING_HINT]\n\nUse the suggested tables when applicable."


def format_tool_error(name: str, error: str) -> str:
    return f"Tool '{name}' failed: {error}"


__all__ = ["system_prompt", "routing_block", "format_tool_error"]
