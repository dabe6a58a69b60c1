"""
Context window management: heuristic token estimation and history
truncation that never separates a tool_use from its tool_result.
"""

import logging
import math
from typing import Any

from .types import ModelDefaults, TokenEstimation, TruncationResult, dumps_compact

logger = logging.getLogger(__name__)

# Mixed prose and code averages about 3.2 characters per token.
CHARS_PER_TOKEN = 3.2
# Tool schemas are dense JSON.
TOOL_CHARS_PER_TOKEN = 3
MESSAGE_OVERHEAD_TOKENS = 4

OVERBUDGET_NOTICE = (
    "Warning: System prompt and tools exceed context limit. "
    "Unable to include any conversation history."
)


def estimate_tokens(content: str | None) -> int:
    if not content:
        return 0
    return math.ceil(len(content) / CHARS_PER_TOKEN)


def estimate_system_tokens(system: list[dict[str, Any]] | None) -> int:
    if not isinstance(system, list):
        return 0
    return sum(estimate_tokens(block.get("text") or "") for block in system)


def estimate_messages_tokens(messages: list[dict[str, Any]] | None) -> int:
    if not isinstance(messages, list):
        return 0
    return estimate_tokens(dumps_compact(messages)) + len(messages) * MESSAGE_OVERHEAD_TOKENS


def estimate_tools_tokens(tools: list[dict[str, Any]] | None) -> int:
    if not isinstance(tools, list):
        return 0
    return math.ceil(len(dumps_compact(tools)) / TOOL_CHARS_PER_TOKEN)


def estimate_request_tokens(
    payload: dict[str, Any],
    max_tokens: int = ModelDefaults.MAX_CONTEXT_TOKENS,
    safety_margin: float = ModelDefaults.CONTEXT_SAFETY_MARGIN,
) -> TokenEstimation:
    """Estimate the size of an Anthropic-shaped request body."""
    system_tokens = estimate_system_tokens(payload.get("system"))
    messages_tokens = estimate_messages_tokens(payload.get("messages"))
    tools_tokens = estimate_tools_tokens(payload.get("tools"))
    total_tokens = system_tokens + messages_tokens + tools_tokens

    effective_limit = max_tokens * (1 - safety_margin)
    is_over_limit = total_tokens > effective_limit
    return TokenEstimation(
        system_tokens=system_tokens,
        messages_tokens=messages_tokens,
        tools_tokens=tools_tokens,
        total_tokens=total_tokens,
        is_over_limit=is_over_limit,
        over_limit_by=total_tokens - math.floor(effective_limit) if is_over_limit else 0,
    )


def get_tool_use_ids(message: dict[str, Any]) -> list[str]:
    """Tool call ids issued by a message, in either OpenAI or Anthropic shape."""
    ids = [call["id"] for call in message.get("tool_calls") or [] if call.get("id")]
    content = message.get("content")
    if isinstance(content, list):
        ids.extend(
            block["id"]
            for block in content
            if isinstance(block, dict) and block.get("type") == "tool_use" and block.get("id")
        )
    return ids


def get_tool_result_ids(message: dict[str, Any]) -> list[str]:
    """Tool call ids answered by a message, in either OpenAI or Anthropic shape."""
    ids = [message["tool_call_id"]] if message.get("tool_call_id") else []
    content = message.get("content")
    if isinstance(content, list):
        ids.extend(
            block["tool_use_id"]
            for block in content
            if isinstance(block, dict)
            and block.get("type") == "tool_result"
            and block.get("tool_use_id")
        )
    return ids


def _pair_groups(messages: list[dict[str, Any]]) -> list[int]:
    """Group index per message; messages linked by a tool id share a group."""
    parent = list(range(len(messages)))

    def find(index: int) -> int:
        while parent[index] != index:
            parent[index] = parent[parent[index]]
            index = parent[index]
        return index

    use_index: dict[str, int] = {}
    result_index: dict[str, int] = {}
    for index, message in enumerate(messages):
        for tool_id in get_tool_use_ids(message):
            use_index[tool_id] = index
        for tool_id in get_tool_result_ids(message):
            result_index[tool_id] = index

    for tool_id, use in use_index.items():
        result = result_index.get(tool_id)
        if result is not None:
            parent[find(use)] = find(result)

    return [find(index) for index in range(len(messages))]


def truncate_messages(
    messages: list[dict[str, Any]],
    target_tokens: int,
    system_tokens: int,
    tools_tokens: int,
) -> TruncationResult:
    """Keep the newest messages that fit in ``target_tokens``.

    Messages are considered newest first. A message joined to others through
    tool_use/tool_result ids is only kept together with all of them. A group
    that does not fit is skipped and scanning continues with older messages.
    """
    if not messages:
        return TruncationResult(messages=[], truncated=False, removed_count=0)

    available = target_tokens - system_tokens - tools_tokens
    if available <= 0:
        return TruncationResult(
            messages=[],
            truncated=True,
            removed_count=len(messages),
            truncation_notice=OVERBUDGET_NOTICE,
        )

    costs = [estimate_tokens(dumps_compact(message)) + MESSAGE_OVERHEAD_TOKENS for message in messages]
    groups = _pair_groups(messages)
    members: dict[int, list[int]] = {}
    for index, group in enumerate(groups):
        members.setdefault(group, []).append(index)

    included: set[int] = set()
    used = 0
    for index in range(len(messages) - 1, -1, -1):
        if index in included:
            continue
        group = members[groups[index]]
        needed = sum(costs[member] for member in group if member not in included)
        if used + needed <= available:
            included.update(group)
            used += needed

    kept = [message for index, message in enumerate(messages) if index in included]
    removed_count = len(messages) - len(kept)
    if not removed_count:
        return TruncationResult(messages=kept, truncated=False, removed_count=0)

    logger.info(f"✂️ Truncated {removed_count} of {len(messages)} messages (~{used} tokens kept)")
    return TruncationResult(
        messages=kept,
        truncated=True,
        removed_count=removed_count,
        truncation_notice=(
            f"[Context truncated: {removed_count} earlier message(s) removed to fit within token limit]"
        ),
    )
