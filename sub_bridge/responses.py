"""
Conversion from OpenAI Chat Completions messages to Responses API input items.

Items that already look like Responses API items are normalized and passed
through, so feeding converted output back in yields the same items.
"""

import logging
import time
import uuid
from typing import Any

from openai.types.chat import ChatCompletionMessageParam
from openai.types.responses import ResponseInputItemParam

from .types import Constants, dumps_compact

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = (
    "You are Codex, a coding agent. You and the user share the same workspace "
    "and collaborate to achieve the user's goals."
)


def _text_type(role: str) -> str:
    return "output_text" if role == Constants.ROLE_ASSISTANT else "input_text"


def _stringify(value: Any) -> str:
    return value if isinstance(value, str) else dumps_compact(value)


def convert_content_part(part: Any, role: str) -> dict[str, Any] | None:
    """Convert one Chat Completions content part to a Responses content part."""
    if isinstance(part, str):
        return {"type": _text_type(role), "text": part}
    if not isinstance(part, dict):
        return None

    part_type = part.get("type")
    if part_type == "text":
        return {"type": _text_type(role), "text": part.get("text", "")}

    if part_type == "image_url":
        image_url = part.get("image_url")
        url = image_url if isinstance(image_url, str) else (image_url or {}).get("url")
        if url:
            converted = {"type": "input_image", "image_url": url}
            if isinstance(image_url, dict) and image_url.get("detail"):
                converted["detail"] = image_url["detail"]
            return converted

    if part_type == "input_audio" and "input_audio" in part:
        audio = part.get("input_audio") or {}
        return {
            "type": "input_text",
            "text": f"[Audio input: format={audio.get('format') or 'unknown'}]",
        }

    if part_type == "file" and "file" in part:
        file = part.get("file") or {}
        converted = {"type": "input_file"}
        for key in ("file_id", "filename", "file_data"):
            if file.get(key):
                converted[key] = file[key]
        return converted

    logger.warning(f"Unknown content part type: {part_type}")
    return {"type": "input_text", "text": f"[Unknown content type: {dumps_compact(part)}]"}


def convert_content(content: Any, role: str) -> list[dict[str, Any]]:
    if content is None:
        return []
    if isinstance(content, str):
        if not content.strip():
            return []
        return [{"type": _text_type(role), "text": content}]
    if isinstance(content, list):
        parts = []
        for part in content:
            converted = convert_content_part(part, role)
            if converted:
                parts.append(converted)
        return parts

    logger.warning(f"Unexpected content format: {type(content).__name__}")
    return [{"type": "input_text", "text": dumps_compact(content)}]


def _message_item(role: str, parts: list[dict[str, Any]]) -> list[dict[str, Any]]:
    if not parts:
        return []
    return [{"type": "message", "role": role, "content": parts}]


def _fallback_call_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def convert_message(msg: ChatCompletionMessageParam | dict[str, Any]) -> list[ResponseInputItemParam]:
    """Convert one chat message into zero or more Responses input items."""
    if not isinstance(msg, dict):
        logger.warning(f"Invalid message: {msg!r}")
        return []

    role = msg.get("role")
    content = msg.get("content")

    if role in (Constants.ROLE_SYSTEM, Constants.ROLE_DEVELOPER):
        return _message_item(Constants.ROLE_DEVELOPER, convert_content(content, "user"))

    if role == Constants.ROLE_USER:
        return _message_item("user", convert_content(content, "user"))

    if role == Constants.ROLE_ASSISTANT:
        items = _message_item("assistant", convert_content(content, "assistant"))

        for tool_call in msg.get("tool_calls") or []:
            if tool_call.get("type") == "custom":
                custom = tool_call.get("custom") or {}
                name, arguments = custom.get("name"), custom.get("input")
            else:
                function = tool_call.get("function") or {}
                name, arguments = function.get("name"), function.get("arguments")
            items.append(
                {
                    "type": "function_call",
                    "name": name or "unknown",
                    "arguments": arguments if isinstance(arguments, str) else dumps_compact(arguments or {}),
                    "call_id": tool_call.get("id") or _fallback_call_id("call"),
                }
            )

        function_call = msg.get("function_call")
        if function_call:
            name = function_call.get("name") or "unknown"
            items.append(
                {
                    "type": "function_call",
                    "name": name,
                    "arguments": function_call.get("arguments") or "{}",
                    # Legacy function-role replies are keyed by name.
                    "call_id": name,
                }
            )
        return items

    if role == Constants.ROLE_TOOL:
        call_id = msg.get("tool_call_id")
        if not call_id:
            return []
        return [
            {
                "type": "function_call_output",
                "call_id": call_id,
                "output": _stringify(content if content is not None else ""),
            }
        ]

    if role == Constants.ROLE_FUNCTION:
        return [
            {
                "type": "function_call_output",
                "call_id": msg.get("name") or _fallback_call_id("func"),
                "output": _stringify(content if content is not None else ""),
            }
        ]

    logger.warning(f"Unknown message role: {role}")
    if not content:
        return []
    return _message_item("user", convert_content(content, "user"))


def is_responses_api_item(item: Any) -> bool:
    if not isinstance(item, dict):
        return False
    item_type = item.get("type")
    if item_type == "message" and item.get("role") and "content" in item:
        return True
    if item_type == "function_call" and "name" in item:
        return True
    if item_type == "function_call_output" and "call_id" in item:
        return True
    return False


def normalize_responses_content(content: Any, role: str) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": _text_type(role), "text": content}]
    if not isinstance(content, list):
        return [{"type": "input_text", "text": dumps_compact(content)}]

    parts = []
    for block in content:
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type in ("input_text", "output_text"):
            if isinstance(block.get("text"), str):
                parts.append(block)
        elif block_type == "text" and isinstance(block.get("text"), str):
            parts.append({"type": _text_type(role), "text": block["text"]})
        elif block_type in ("input_image", "image_url"):
            url = block.get("image_url") or block.get("url")
            if url:
                parts.append(
                    {"type": "input_image", "image_url": url if isinstance(url, str) else url.get("url")}
                )
        elif block_type == "input_file":
            parts.append(block)
        else:
            logger.warning(f"Unknown content block type: {block_type}")
            parts.append({"type": "input_text", "text": f"[{block_type}: {dumps_compact(block)}]"})
    return parts


def normalize_responses_api_item(item: dict[str, Any]) -> ResponseInputItemParam | None:
    item_type = item.get("type")
    if item_type == "message":
        content = normalize_responses_content(item.get("content"), item.get("role"))
        if not content:
            return None
        return {"type": "message", "role": item["role"], "content": content}

    if item_type == "function_call":
        arguments = item.get("arguments")
        return {
            "type": "function_call",
            "name": item.get("name") or "unknown",
            "arguments": arguments if isinstance(arguments, str) else dumps_compact(arguments or {}),
            "call_id": item.get("call_id") or item.get("id") or _fallback_call_id("call"),
        }

    if item_type == "function_call_output":
        output = item.get("output")
        return {
            "type": "function_call_output",
            "call_id": item.get("call_id") or item.get("id"),
            "output": _stringify(output if output is not None else ""),
        }
    return None


def convert_messages_to_input(messages: list[Any]) -> list[ResponseInputItemParam]:
    """Convert a mixed list of chat messages and Responses items."""
    items = []
    for message in messages:
        if not message:
            continue
        if is_responses_api_item(message):
            normalized = normalize_responses_api_item(message)
            if normalized:
                items.append(normalized)
            continue
        items.extend(convert_message(message))
    return items


def convert_to_responses_format(
    body: dict[str, Any],
) -> tuple[list[ResponseInputItemParam], list[ResponseInputItemParam]]:
    """Split a chat request into ``(input, developer_messages)``."""
    source = body.get("messages") or body.get("input") or []
    if isinstance(source, str):
        source = [{"role": "user", "content": source}]

    items = []
    developer_messages = []
    for item in convert_messages_to_input(source):
        if item.get("type") == "message" and item.get("role") in (
            Constants.ROLE_DEVELOPER,
            Constants.ROLE_SYSTEM,
        ):
            developer_messages.append(item)
        else:
            items.append(item)
    return items, developer_messages


def convert_tools_to_responses(tools: Any) -> list[dict[str, Any]]:
    """Flatten Chat Completions function tools into Responses tool definitions."""
    if not isinstance(tools, list):
        return []
    converted = []
    for tool in tools:
        if not isinstance(tool, dict):
            continue
        function = tool.get("function")
        if tool.get("type") == Constants.TOOL_FUNCTION and isinstance(function, dict):
            flat = {"type": "function", "name": function.get("name", "")}
            if function.get("description"):
                flat["description"] = function["description"]
            flat["parameters"] = function.get("parameters") or dict(Constants.EMPTY_TOOL_SCHEMA)
            if "strict" in function:
                flat["strict"] = function["strict"]
            converted.append(flat)
        else:
            converted.append(tool)
    return converted


def build_responses_body(body: dict[str, Any], model: str, instructions: str) -> dict[str, Any]:
    """Build the Responses request; the backend only accepts streaming."""
    items, developer_messages = convert_to_responses_format(body)
    full_input = [*developer_messages, *items]
    if not full_input:
        full_input.append(
            {
                "type": "message",
                "role": "user",
                "content": [{"type": "input_text", "text": "Hello."}],
            }
        )

    return {
        "model": model,
        "instructions": instructions,
        "input": full_input,
        "tools": convert_tools_to_responses(body.get("tools")),
        "tool_choice": "auto",
        "parallel_tool_calls": False,
        "stream": True,
        "store": False,
    }
