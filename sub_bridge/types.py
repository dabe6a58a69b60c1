"""
Pydantic models and type definitions for the Sub Bridge proxy.
This module contains the routing data model, the Anthropic content-block
union, context-estimation results and shared constants.
"""

import json
import logging
import time
import uuid
from typing import Any, Literal, NamedTuple

from openai.types.chat import ChatCompletionMessageToolCallParam
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class ModelDefaults:
    """Default values and limits for upstream requests"""

    # Context window
    MAX_CONTEXT_TOKENS = 200_000
    CONTEXT_SAFETY_MARGIN = 0.05

    # Output token budgets per model family
    OPUS_MAX_TOKENS = 32_000
    DEFAULT_MAX_TOKENS = 64_000

    # Default server settings
    DEFAULT_HOST = "0.0.0.0"
    DEFAULT_PORT = 8787
    DEFAULT_LOG_LEVEL = "INFO"
    DEFAULT_MAX_RETRIES = 2
    DEFAULT_REQUEST_TIMEOUT = 600.0

    # Upstream endpoints
    ANTHROPIC_BASE_URL = "https://api.anthropic.com"
    OPENAI_BASE_URL = "https://api.openai.com/v1"
    CHATGPT_BASE_URL = "https://chatgpt.com/backend-api/codex"
    CHATGPT_DEFAULT_MODEL = "gpt-5.2-codex"
    CLAUDE_TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
    CLAUDE_OAUTH_CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
    MODELS_CATALOG_URL = "https://models.dev/api.json"


class Constants:
    """Constants for better maintainability"""

    ROLE_USER = "user"
    ROLE_ASSISTANT = "assistant"
    ROLE_SYSTEM = "system"
    ROLE_DEVELOPER = "developer"
    ROLE_TOOL = "tool"
    ROLE_FUNCTION = "function"

    CONTENT_TEXT = "text"
    CONTENT_IMAGE = "image"
    CONTENT_TOOL_USE = "tool_use"
    CONTENT_TOOL_RESULT = "tool_result"

    TOOL_FUNCTION = "function"

    STOP_END_TURN = "end_turn"
    STOP_MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    STOP_TOOL_USE = "tool_use"

    FINISH_STOP = "stop"
    FINISH_LENGTH = "length"
    FINISH_TOOL_CALLS = "tool_calls"

    EVENT_MESSAGE_START = "message_start"
    EVENT_MESSAGE_STOP = "message_stop"
    EVENT_MESSAGE_DELTA = "message_delta"
    EVENT_CONTENT_BLOCK_START = "content_block_start"
    EVENT_CONTENT_BLOCK_STOP = "content_block_stop"
    EVENT_CONTENT_BLOCK_DELTA = "content_block_delta"
    EVENT_PING = "ping"
    EVENT_ERROR = "error"

    DELTA_TEXT = "text_delta"
    DELTA_INPUT_JSON = "input_json_delta"

    RESPONSE_CREATED = "response.created"
    RESPONSE_TEXT_DELTA = "response.output_text.delta"
    RESPONSE_ITEM_DONE = "response.output_item.done"
    RESPONSE_COMPLETED = "response.completed"
    RESPONSE_FAILED = "response.failed"
    RESPONSE_ERROR = "error"

    BRIDGE_TOKEN_PREFIX = "sb1."
    BRIDGE_TOKEN_ISSUER = "sub-bridge"

    CACHE_EPHEMERAL = {"type": "ephemeral"}
    EMPTY_TOOL_SCHEMA = {"type": "object", "properties": {}}
    ASSISTANT_PLACEHOLDER = "..."

    ANTHROPIC_VERSION = "2023-06-01"
    ANTHROPIC_BETA = "oauth-2025-04-20,prompt-caching-2024-07-31"
    CHATGPT_ORIGINATOR = "codex_cli_rs"

    # Fields forwarded to the Messages API, everything else is dropped.
    ANTHROPIC_ALLOWED_FIELDS = (
        "model",
        "messages",
        "max_tokens",
        "stop_sequences",
        "stream",
        "system",
        "temperature",
        "top_p",
        "top_k",
        "tools",
        "tool_choice",
    )


ContextOverflowMode = Literal["truncate", "error", "warn"]
CONTEXT_OVERFLOW_MODES: tuple[str, ...] = ("truncate", "error", "warn")

Backend = Literal["anthropic", "chatgpt", "openai"]


def generate_unique_id(prefix: str) -> str:
    """
    Generate a unique ID with specified prefix, timestamp and random suffix.
    Format: <prefix>_<timestamp_ms>_<random_hex>
    """
    timestamp_ms = int(time.time() * 1000)
    random_suffix = uuid.uuid4().hex[:8]
    return f"{prefix}_{timestamp_ms}_{random_suffix}"


def to_base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    encoded = ""
    while value:
        value, remainder = divmod(value, 36)
        encoded = digits[remainder] + encoded
    return encoded


def dumps_compact(value: Any) -> str:
    """Serialize JSON without whitespace, matching what upstream APIs emit."""
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


# === Fallible JSON decoding ===
class JsonDecodeResult(NamedTuple):
    ok: bool
    value: Any = None
    error: str | None = None


def try_parse_json(text: Any) -> JsonDecodeResult:
    """Decode a JSON string, returning a result instead of raising."""
    if not isinstance(text, (str, bytes, bytearray)):
        return JsonDecodeResult(False, None, f"expected text, got {type(text).__name__}")
    try:
        return JsonDecodeResult(True, json.loads(text))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        return JsonDecodeResult(False, None, str(e))


# === Routing models ===
class ModelMapping(BaseModel):
    from_model: str = Field(alias="from")
    to_model: str = Field(alias="to")

    model_config = ConfigDict(populate_by_name=True)


class KeyConfig(BaseModel):
    """One routed credential plus the client models it serves."""

    mappings: list[ModelMapping] = Field(default_factory=list)
    api_key: str
    account_id: str | None = None


class OAuthTokens(BaseModel):
    """Upstream credentials carried inside a bridge token."""

    claude_token: str | None = None
    claude_refresh_token: str | None = None
    chatgpt_token: str | None = None
    chatgpt_account_id: str | None = None

    def is_empty(self) -> bool:
        return not (self.claude_token or self.chatgpt_token or self.chatgpt_account_id)


class ParsedKeys(BaseModel):
    """Routing table parsed from one Authorization header."""

    configs: list[KeyConfig] = Field(default_factory=list)
    default_key: str | None = None
    default_account_id: str | None = None
    oauth: OAuthTokens | None = None
    oauth_error: str | None = None


class TokenInfo(BaseModel):
    token: str
    account_id: str | None = None


class ModelRoute(BaseModel):
    claude_model: str
    api_key: str


class RouteDecision(BaseModel):
    """Outcome of backend selection for one request."""

    backend: Backend
    model: str
    token: TokenInfo
    used_oauth_claude: bool = False
    refresh_token: str | None = None


# === Context models ===
class TokenEstimation(BaseModel):
    system_tokens: int
    messages_tokens: int
    tools_tokens: int
    total_tokens: int
    is_over_limit: bool
    over_limit_by: int


class TruncationResult(BaseModel):
    messages: list[dict[str, Any]]
    truncated: bool
    removed_count: int
    truncation_notice: str | None = None


# === Stream translator output ===
class StreamEvent(BaseModel):
    type: Literal["chunk", "done", "error"]
    data: dict[str, Any] | None = None


# === Content Block Classes ===
class ClaudeContentBlockText(BaseModel):
    model_config = ConfigDict(
        validate_assignment=False, str_strip_whitespace=False, extra="ignore"
    )

    type: Literal["text"] = "text"
    text: str
    cache_control: dict[str, Any] | None = None


class ClaudeContentBlockImageBase64Source(BaseModel):
    type: Literal["base64"] = "base64"
    media_type: str
    data: str


class ClaudeContentBlockImageURLSource(BaseModel):
    type: Literal["url"] = "url"
    url: str


class ClaudeContentBlockImage(BaseModel):
    model_config = ConfigDict(
        validate_assignment=False, str_strip_whitespace=False, extra="ignore"
    )

    type: Literal["image"] = "image"
    source: ClaudeContentBlockImageBase64Source | ClaudeContentBlockImageURLSource


class ClaudeContentBlockToolUse(BaseModel):
    model_config = ConfigDict(
        validate_assignment=False, str_strip_whitespace=False, extra="ignore"
    )

    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any]

    def to_openai(self) -> ChatCompletionMessageToolCallParam:
        """Convert Claude tool_use to OpenAI tool_call format."""
        try:
            arguments_str = dumps_compact(self.input)
        except (TypeError, ValueError):
            arguments_str = "{}"

        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": arguments_str},
        }


class ClaudeContentBlockToolResult(BaseModel):
    model_config = ConfigDict(
        validate_assignment=False, str_strip_whitespace=False, extra="ignore"
    )

    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str | list[dict[str, Any]]


class ClaudeContentBlockUnknown(BaseModel):
    """Any block type this proxy does not interpret; forwarded untouched."""

    model_config = ConfigDict(extra="allow")

    type: str


ClaudeContentBlock = (
    ClaudeContentBlockText
    | ClaudeContentBlockImage
    | ClaudeContentBlockToolUse
    | ClaudeContentBlockToolResult
    | ClaudeContentBlockUnknown
)

_BLOCK_TYPES: dict[str, type[BaseModel]] = {
    Constants.CONTENT_TEXT: ClaudeContentBlockText,
    Constants.CONTENT_IMAGE: ClaudeContentBlockImage,
    Constants.CONTENT_TOOL_USE: ClaudeContentBlockToolUse,
    Constants.CONTENT_TOOL_RESULT: ClaudeContentBlockToolResult,
}


def parse_content_block(raw: dict[str, Any]) -> ClaudeContentBlock:
    """Validate a raw Anthropic content block, keeping unrecognized variants."""
    model = _BLOCK_TYPES.get(raw.get("type"))
    if model is None:
        return ClaudeContentBlockUnknown.model_validate(raw)
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        logger.debug(f"Forwarding malformed {raw.get('type')} block as-is: {e}")
        return ClaudeContentBlockUnknown.model_validate(raw)


class ClaudeMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str | list[ClaudeContentBlock]

    def to_payload(self) -> dict[str, Any]:
        if isinstance(self.content, str):
            return {"role": self.role, "content": self.content}
        return {
            "role": self.role,
            "content": [block.model_dump(exclude_none=True) for block in self.content],
        }


class ClaudeSystemContent(BaseModel):
    type: Literal["text"] = "text"
    text: str
    cache_control: dict[str, Any] | None = None


class ClaudeTool(BaseModel):
    name: str
    description: str = ""
    input_schema: dict[str, Any]
    cache_control: dict[str, Any] | None = None


class ClaudeMessagesRequest(BaseModel):
    """Outbound Messages API request, restricted to the forwarded fields."""

    model_config = ConfigDict(extra="ignore")

    model: str
    max_tokens: int
    messages: list[ClaudeMessage]
    system: list[ClaudeSystemContent] | None = None
    stop_sequences: list[str] | None = None
    stream: bool | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    tools: list[ClaudeTool] | None = None
    tool_choice: dict[str, Any] | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(
            exclude_none=True, exclude={"messages"}, include=set(Constants.ANTHROPIC_ALLOWED_FIELDS)
        )
        payload["messages"] = [message.to_payload() for message in self.messages]
        return payload
