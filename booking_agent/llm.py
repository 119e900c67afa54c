"""Model-boundary builders shared by the orchestration loop and the extractor."""

from __future__ import annotations

from typing import Any

from langchain_anthropic import ChatAnthropic

from booking_agent.config import ANTHROPIC_API_KEY, FAST_MODEL_NAME, MODEL_NAME


def build_tool_llm(tools: list[dict[str, Any]]):
    """Primary model bound to the booking tool catalogue."""
    llm = ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.1,
        max_tokens=1024,
    )
    return llm.bind_tools(tools)


def build_fast_llm() -> ChatAnthropic:
    """Cheap model for structured extraction (no tools)."""
    return ChatAnthropic(
        model=FAST_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.0,
        max_tokens=512,
    )


def content_text(content: Any) -> str:
    """Flatten an AIMessage ``content`` (string or content blocks) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content or "")
