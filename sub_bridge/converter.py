"""
Conversion between OpenAI Chat Completions and Anthropic Messages formats.
"""

import logging
import re
import time
from typing import Any

from openai.types.chat import ChatCompletionMessageParam, ChatCompletionToolParam

from .errors import InvalidRequestError
from .types import (
    ClaudeContentBlock,
    ClaudeContentBlockImage,
    ClaudeContentBlockImageBase64Source,
    ClaudeContentBlockImageURLSource,
    ClaudeContentBlockText,
    ClaudeContentBlockToolResult,
    ClaudeContentBlockToolUse,
    ClaudeMessage,
    ClaudeMessagesRequest,
    ClaudeSystemContent,
    ClaudeTool,
    Constants,
    ModelDefaults,
    dumps_compact,
    generate_unique_id,
    parse_content_block,
    try_parse_json,
)

logger = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)

SYSTEM_PREAMBLE = (
    "You are Claude Code, Anthropic's official CLI for Claude.",
    "[Proxied via Sub Bridge - user's Claude subscription]",
)
SYSTEM_REMINDER = (
    "Remember: You are Claude (by Anthropic), powered by the Opus 4.5 model. "
    "If asked about your identity, you are Claude, not any other AI model."
)

_STOP_REASON_MAP = {
    Constants.STOP_END_TURN: Constants.FINISH_STOP,
    Constants.STOP_SEQUENCE: Constants.FINISH_STOP,
    Constants.STOP_MAX_TOKENS: Constants.FINISH_LENGTH,
    Constants.STOP_TOOL_USE: Constants.FINISH_TOOL_CALLS,
}


def map_stop_reason(stop_reason: str | None) -> str:
    """Map Anthropic stop_reason to OpenAI finish_reason."""
    return _STOP_REASON_MAP.get(stop_reason, Constants.FINISH_STOP)


def max_tokens_for_model(model: str) -> int:
    if "opus" in model:
        return ModelDefaults.OPUS_MAX_TOKENS
    return ModelDefaults.DEFAULT_MAX_TOKENS


def _parse_tool_arguments(arguments: Any, fallback_key: str) -> dict[str, Any]:
    """Parse tool arguments into a dict, wrapping anything unparseable."""
    if arguments is None or arguments == "":
        return {}
    if isinstance(arguments, dict):
        return arguments
    if not isinstance(arguments, str):
        return {fallback_key: arguments}

    decoded = try_parse_json(arguments)
    if decoded.ok and isinstance(decoded.value, dict):
        return decoded.value
    logger.debug(f"Tool arguments are not a JSON object, wrapping as '{fallback_key}'")
    return {fallback_key: arguments}


def convert_content_block_to_claude(block: Any) -> ClaudeContentBlock | None:
    """Convert one OpenAI user content part; None means drop it."""
    if isinstance(block, str):
        return ClaudeContentBlockText(text=block)
    if not isinstance(block, dict):
        return None

    block_type = block.get("type")
    if block_type == "text":
        return ClaudeContentBlockText(text=block.get("text") or "")

    if block_type == "image_url":
        image_url = block.get("image_url")
        url = image_url if isinstance(image_url, str) else (image_url or {}).get("url")
        if not url:
            return None

        match = _DATA_URL_RE.match(url)
        if match:
            media_type, data = match.groups()
            return ClaudeContentBlockImage(
                source=ClaudeContentBlockImageBase64Source(media_type=media_type, data=data)
            )
        return ClaudeContentBlockImage(source=ClaudeContentBlockImageURLSource(url=url))

    # Already Anthropic-shaped, or something we forward untouched
    return parse_content_block(block)


def _append_tool_use(converted: list[ClaudeMessage], tool_use: ClaudeContentBlockToolUse):
    last = converted[-1] if converted else None
    if last is not None and last.role == "assistant" and isinstance(last.content, list):
        last.content.append(tool_use)
    else:
        converted.append(ClaudeMessage(role="assistant", content=[tool_use]))


def _append_tool_result(converted: list[ClaudeMessage], tool_result: ClaudeContentBlockToolResult):
    # Anthropic wants every result for one assistant turn in a single user turn.
    last = converted[-1] if converted else None
    if (
        last is not None
        and last.role == "user"
        and isinstance(last.content, list)
        and last.content
        and isinstance(last.content[0], ClaudeContentBlockToolResult)
    ):
        last.content.append(tool_result)
    else:
        converted.append(ClaudeMessage(role="user", content=[tool_result]))


def _assistant_blocks(content: list[Any]) -> list[ClaudeContentBlock]:
    blocks: list[ClaudeContentBlock] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") == "text" and isinstance(block.get("text"), str):
            blocks.append(ClaudeContentBlockText(text=block["text"]))
        elif block.get("type") == Constants.CONTENT_TOOL_USE:
            blocks.append(parse_content_block(block))
    return blocks


def _tool_result_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    return dumps_compact(content)


def convert_messages(messages: list[ChatCompletionMessageParam | dict[str, Any]]) -> list[ClaudeMessage]:
    """Convert OpenAI chat messages (and Responses-style tool items) to Anthropic messages."""
    converted: list[ClaudeMessage] = []

    for msg in messages:
        if not isinstance(msg, dict):
            continue
        item_type = msg.get("type")

        if item_type in ("custom_tool_call", "function_call"):
            tool_input = msg.get("input") or msg.get("arguments")
            _append_tool_use(
                converted,
                ClaudeContentBlockToolUse(
                    id=msg.get("call_id") or generate_unique_id("toolu"),
                    name=msg.get("name") or "",
                    input=_parse_tool_arguments(tool_input, "command"),
                ),
            )
            continue

        if item_type in ("custom_tool_call_output", "function_call_output"):
            _append_tool_result(
                converted,
                ClaudeContentBlockToolResult(
                    tool_use_id=msg.get("call_id") or "",
                    content=_tool_result_content(msg.get("output") or ""),
                ),
            )
            continue

        role = msg.get("role")
        if not role:
            continue
        content = msg.get("content")

        if role == Constants.ROLE_ASSISTANT and msg.get("tool_calls"):
            blocks: list[ClaudeContentBlock] = []
            if isinstance(content, str) and content:
                blocks.append(ClaudeContentBlockText(text=content))
            elif isinstance(content, list):
                blocks.extend(_assistant_blocks(content))

            for tool_call in msg["tool_calls"]:
                function = tool_call.get("function") or {}
                arguments = function.get("arguments") or tool_call.get("arguments")
                blocks.append(
                    ClaudeContentBlockToolUse(
                        id=tool_call.get("id") or generate_unique_id("toolu"),
                        name=function.get("name") or tool_call.get("name") or "",
                        input=_parse_tool_arguments(arguments, "raw"),
                    )
                )
            converted.append(ClaudeMessage(role="assistant", content=blocks))
            continue

        if role == Constants.ROLE_TOOL:
            _append_tool_result(
                converted,
                ClaudeContentBlockToolResult(
                    tool_use_id=msg.get("tool_call_id") or "",
                    content=_tool_result_content(content if content is not None else ""),
                ),
            )
            continue

        if role == Constants.ROLE_ASSISTANT:
            if isinstance(content, list):
                blocks = _assistant_blocks(content)
                converted.append(ClaudeMessage(role="assistant", content=blocks or ""))
            else:
                converted.append(ClaudeMessage(role="assistant", content=content or ""))
            continue

        # Everything else is user-authored; unknown roles included.
        if role != Constants.ROLE_USER:
            logger.debug(f"Treating message with role '{role}' as a user message")
        if isinstance(content, list):
            blocks = []
            for block in content:
                converted_block = convert_content_block_to_claude(block)
                if converted_block is not None:
                    blocks.append(converted_block)
            converted.append(ClaudeMessage(role="user", content=blocks or ""))
        else:
            converted.append(ClaudeMessage(role="user", content=content if isinstance(content, str) else ""))

    ensure_assistant_content(converted)
    return converted


def ensure_assistant_content(messages: list[ClaudeMessage]) -> None:
    """Replace empty assistant content with a placeholder, in place."""
    # Anthropic rejects empty assistant content anywhere but the final turn.
    for message in messages:
        if message.role != "assistant":
            continue
        if isinstance(message.content, str):
            message.content = message.content.rstrip() or Constants.ASSISTANT_PLACEHOLDER
        elif not message.content:
            message.content = [ClaudeContentBlockText(text=Constants.ASSISTANT_PLACEHOLDER)]
        else:
            for block in message.content:
                if isinstance(block, ClaudeContentBlockText):
                    block.text = block.text.rstrip() or Constants.ASSISTANT_PLACEHOLDER


def convert_tools(tools: list[ChatCompletionToolParam | dict[str, Any]] | None) -> list[ClaudeTool] | None:
    """Normalize OpenAI tool definitions; only the last one gets a cache directive."""
    if not tools:
        return None

    converted: list[ClaudeTool] = []
    for tool in tools:
        if tool.get("type") == Constants.TOOL_FUNCTION and tool.get("function"):
            function = tool["function"]
            converted.append(
                ClaudeTool(
                    name=function.get("name", ""),
                    description=function.get("description") or "",
                    input_schema=function.get("parameters") or dict(Constants.EMPTY_TOOL_SCHEMA),
                )
            )
        elif tool.get("name"):
            converted.append(
                ClaudeTool(
                    name=tool["name"],
                    description=tool.get("description") or "",
                    input_schema=tool.get("input_schema")
                    or tool.get("parameters")
                    or dict(Constants.EMPTY_TOOL_SCHEMA),
                )
            )
        else:
            logger.warning(f"Dropping tool definition without a name: {tool}")

    if converted:
        converted[-1].cache_control = dict(Constants.CACHE_EPHEMERAL)
    return converted or None


def convert_tool_choice(tool_choice: Any) -> dict[str, Any] | None:
    """Map OpenAI tool_choice onto Anthropic's; None means omit the field."""
    if tool_choice is None or tool_choice == "none":
        return None
    if tool_choice == "auto":
        return {"type": "auto"}
    if tool_choice == "required":
        return {"type": "any"}
    if isinstance(tool_choice, dict):
        function = tool_choice.get("function")
        if isinstance(function, dict) and function.get("name"):
            return {"type": "tool", "name": function["name"]}
        choice_type = tool_choice.get("type")
        if choice_type in ("auto", "any") or (choice_type == "tool" and tool_choice.get("name")):
            return tool_choice
    logger.warning(f"Dropping unrecognized tool_choice: {tool_choice!r}")
    return None


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type") in ("text", "input_text")
        )
    return ""


def normalize_chat_input(body: dict[str, Any]) -> list[dict[str, Any]]:
    """Messages from ``messages``, or from the Responses-style ``input``/``user`` fields."""
    messages = body.get("messages")
    if messages:
        return list(messages)

    source = body.get("input")
    if isinstance(source, str):
        messages = [{"role": "user", "content": source}]
    elif isinstance(source, list):
        messages = list(source)
    else:
        return []

    user = body.get("user")
    if isinstance(user, str) and user:
        messages = [{"role": "system", "content": user}, *messages]
    return messages


def split_system_messages(messages: list[dict[str, Any]]) -> tuple[list[str], list[dict[str, Any]]]:
    """Separate system/developer instructions from the conversation."""
    system_texts = []
    conversation = []
    for message in messages:
        if isinstance(message, dict) and message.get("role") in (
            Constants.ROLE_SYSTEM,
            Constants.ROLE_DEVELOPER,
        ):
            system_texts.append(_message_text(message.get("content")))
        else:
            conversation.append(message)
    return system_texts, conversation


def build_system_blocks(system_texts: list[str]) -> list[ClaudeSystemContent]:
    blocks = [ClaudeSystemContent(text=text) for text in SYSTEM_PREAMBLE]
    blocks.extend(ClaudeSystemContent(text=text) for text in system_texts)
    blocks.append(ClaudeSystemContent(text=SYSTEM_REMINDER))
    blocks[-1].cache_control = dict(Constants.CACHE_EPHEMERAL)
    return blocks


def build_anthropic_request(body: dict[str, Any], model: str) -> ClaudeMessagesRequest:
    """Build the outbound Messages API request from a Chat Completions body."""
    system_texts, conversation = split_system_messages(normalize_chat_input(body))
    if not conversation:
        raise InvalidRequestError("No messages provided")

    request = ClaudeMessagesRequest(
        model=model,
        max_tokens=max_tokens_for_model(model),
        messages=convert_messages(conversation),
        system=build_system_blocks(system_texts),
        stream=body.get("stream"),
        stop_sequences=_stop_sequences(body.get("stop_sequences", body.get("stop"))),
        temperature=body.get("temperature"),
        top_p=body.get("top_p"),
        top_k=body.get("top_k"),
        tools=convert_tools(body.get("tools")),
        tool_choice=convert_tool_choice(body.get("tool_choice")),
    )
    return request


def _stop_sequences(stop: Any) -> list[str] | None:
    if isinstance(stop, str):
        return [stop]
    if isinstance(stop, list) and stop:
        return [str(item) for item in stop]
    return None


def convert_non_streaming_response(response: dict[str, Any], model: str) -> dict[str, Any]:
    """Convert an Anthropic Messages response into a ``chat.completion`` object."""
    text_parts = []
    tool_calls = []
    for raw_block in response.get("content") or []:
        block = parse_content_block(raw_block)
        if isinstance(block, ClaudeContentBlockText):
            text_parts.append(block.text)
        elif isinstance(block, ClaudeContentBlockToolUse):
            tool_calls.append(block.to_openai())

    message: dict[str, Any] = {
        "role": "assistant",
        "content": "".join(text_parts) if text_parts else None,
    }
    if tool_calls:
        message["tool_calls"] = tool_calls

    usage = response.get("usage") or {}
    prompt_tokens = usage.get("input_tokens", 0)
    completion_tokens = usage.get("output_tokens", 0)

    return {
        "id": f"chatcmpl-{str(response.get('id', 'unknown')).replace('msg_', '', 1)}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": response.get("model") or model,
        "choices": [
            {
                "index": 0,
                "message": message,
                "finish_reason": map_stop_reason(response.get("stop_reason")),
            }
        ],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }
