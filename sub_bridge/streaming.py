"""
Streaming response translation into OpenAI ``chat.completion.chunk`` objects.

Two translators share the same output contract: one reads Anthropic
Messages SSE, the other reads Responses API SSE. Both are per-request
state machines fed with decoded text as it arrives from the upstream.
"""

import codecs
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any, Protocol

from .types import (
    Constants,
    StreamEvent,
    dumps_compact,
    to_base36,
    try_parse_json,
)

logger = logging.getLogger(__name__)

DONE_FRAME = "data: [DONE]\n\n"


class ByteStream(Protocol):
    """Upstream body: an async iterator of bytes that must be released."""

    def aiter_bytes(self) -> AsyncIterator[bytes]: ...

    async def aclose(self) -> None: ...


class SSEFrameBuffer:
    """Incremental splitter for ``text/event-stream`` payloads.

    Text is buffered until a blank line closes a frame; the trailing partial
    frame is kept for the next call. Each ``data:`` line is JSON-decoded and
    lines that fail to decode are skipped.
    """

    def __init__(self):
        self._buffer = ""
        self.skipped_frames = 0

    def feed(self, text: str) -> list[dict[str, Any]]:
        if not text:
            return []
        self._buffer += text.replace("\r\n", "\n")
        frames = self._buffer.split("\n\n")
        self._buffer = frames.pop()
        return self._decode_frames(frames)

    def flush(self) -> list[dict[str, Any]]:
        remaining, self._buffer = self._buffer, ""
        if not remaining.strip():
            return []
        return self._decode_frames([remaining])

    def _decode_frames(self, frames: list[str]) -> list[dict[str, Any]]:
        payloads = []
        for frame in frames:
            for line in frame.split("\n"):
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if not data or data == "[DONE]":
                    continue
                decoded = try_parse_json(data)
                if not decoded.ok or not isinstance(decoded.value, dict):
                    self.skipped_frames += 1
                    logger.warning(f"Skipping undecodable SSE data: {data[:200]}")
                    continue
                payloads.append(decoded.value)
        return payloads


class ChatChunkTranslator(ABC):
    """Shared state and chunk construction for both upstream grammars."""

    def __init__(self, model: str):
        now = time.time()
        self.id = f"chatcmpl-{to_base36(int(now * 1000))}"
        self.model = model
        self.created = int(now)
        self.role_sent = False
        self.done = False
        self.tool_call_index = 0
        self.chunks_emitted = 0
        self._frames = SSEFrameBuffer()

    def process(self, text: str) -> list[StreamEvent]:
        """Feed decoded upstream text, returning translated events in order."""
        logger.debug(f"STREAM_CHUNK: {text!r}")
        events: list[StreamEvent] = []
        for payload in self._frames.feed(text):
            if self.done:
                break
            events.extend(self.handle_event(payload))
        return events

    def finish(self) -> list[StreamEvent]:
        """Flush buffered text at end of stream and guarantee a terminal event."""
        events: list[StreamEvent] = []
        for payload in self._frames.flush():
            if self.done:
                break
            events.extend(self.handle_event(payload))
        if not self.done:
            logger.debug("Upstream stream ended without a terminal event")
            self.done = True
            events.append(StreamEvent(type="done"))
        return events

    @property
    def skipped_frames(self) -> int:
        return self._frames.skipped_frames

    @abstractmethod
    def handle_event(self, payload: dict[str, Any]) -> list[StreamEvent]:
        """Translate one decoded upstream event."""

    def _with_role(self, delta: dict[str, Any]) -> dict[str, Any]:
        if not self.role_sent:
            delta["role"] = "assistant"
            self.role_sent = True
        return delta

    def _chunk(
        self,
        delta: dict[str, Any],
        finish_reason: str | None = None,
        usage: dict[str, Any] | None = None,
    ) -> StreamEvent:
        data = {
            "id": self.id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }
        if usage:
            data["usage"] = usage
        self.chunks_emitted += 1
        return StreamEvent(type="chunk", data=data)

    def _done(self) -> StreamEvent:
        self.done = True
        return StreamEvent(type="done")

    def _error(self, message: str, error_type: str) -> StreamEvent:
        return StreamEvent(
            type="error",
            data={"error": {"message": message, "type": error_type, "code": error_type}},
        )


def map_usage(usage: dict[str, Any] | None) -> dict[str, int] | None:
    """Normalize Anthropic or Responses usage to Chat Completions naming."""
    if not usage:
        return None
    prompt = usage.get("input_tokens", usage.get("prompt_tokens", 0)) or 0
    completion = usage.get("output_tokens", usage.get("completion_tokens", 0)) or 0
    total = usage.get("total_tokens")
    return {
        "prompt_tokens": prompt,
        "completion_tokens": completion,
        "total_tokens": total if total is not None else prompt + completion,
    }


class AnthropicStreamConverter(ChatChunkTranslator):
    """Translates Anthropic Messages SSE events into chat completion chunks."""

    def __init__(self, model: str):
        super().__init__(model)
        self.input_tokens = 0
        # content block index -> {tool_index, id, name, arguments, initial_input}
        self.tool_blocks: dict[int, dict[str, Any]] = {}

    def handle_event(self, payload: dict[str, Any]) -> list[StreamEvent]:
        event_type = payload.get("type")

        if event_type == Constants.EVENT_MESSAGE_START:
            message = payload.get("message") or {}
            if message.get("id"):
                self.id = f"chatcmpl-{str(message['id']).replace('msg_', '', 1)}"
            if message.get("model"):
                self.model = message["model"]
            self.input_tokens = (message.get("usage") or {}).get("input_tokens", 0)
            return []

        if event_type == Constants.EVENT_CONTENT_BLOCK_START:
            return self._handle_block_start(payload)

        if event_type == Constants.EVENT_CONTENT_BLOCK_DELTA:
            return self._handle_block_delta(payload)

        if event_type == Constants.EVENT_CONTENT_BLOCK_STOP:
            return self._handle_block_stop(payload)

        if event_type == Constants.EVENT_MESSAGE_DELTA:
            delta = payload.get("delta") or {}
            usage = payload.get("usage") or {}
            output_tokens = usage.get("output_tokens", 0)
            finish_reason = _map_stop_reason(delta.get("stop_reason"), bool(self.tool_blocks))
            return [
                self._chunk(
                    {},
                    finish_reason,
                    {
                        "prompt_tokens": self.input_tokens,
                        "completion_tokens": output_tokens,
                        "total_tokens": self.input_tokens + output_tokens,
                    },
                )
            ]

        if event_type == Constants.EVENT_MESSAGE_STOP:
            return [self._done()]

        if event_type == Constants.EVENT_ERROR:
            error = payload.get("error") or {}
            logger.error(f"Upstream stream error: {error}")
            return [
                self._error(
                    error.get("message", "Upstream stream error"), error.get("type", "api_error")
                )
            ]

        # ping and anything newer than this translator
        return []

    def _handle_block_start(self, payload: dict[str, Any]) -> list[StreamEvent]:
        block = payload.get("content_block") or {}
        block_type = block.get("type")

        if block_type == Constants.CONTENT_TOOL_USE:
            state = {
                "tool_index": self.tool_call_index,
                "id": block.get("id", ""),
                "name": block.get("name", ""),
                "arguments": "",
                "initial_input": block.get("input") or {},
            }
            self.tool_blocks[payload.get("index", 0)] = state
            self.tool_call_index += 1
            delta = {
                "tool_calls": [
                    {
                        "index": state["tool_index"],
                        "id": state["id"],
                        "type": "function",
                        "function": {"name": state["name"], "arguments": ""},
                    }
                ]
            }
            return [self._chunk(self._with_role(delta))]

        if block_type == Constants.CONTENT_TEXT and block.get("text"):
            return [self._chunk(self._with_role({"content": block["text"]}))]
        return []

    def _handle_block_delta(self, payload: dict[str, Any]) -> list[StreamEvent]:
        delta = payload.get("delta") or {}
        delta_type = delta.get("type")

        if delta_type == Constants.DELTA_TEXT:
            text = delta.get("text", "")
            if not text:
                return []
            return [self._chunk(self._with_role({"content": text}))]

        if delta_type == Constants.DELTA_INPUT_JSON:
            state = self.tool_blocks.get(payload.get("index", 0))
            if state is None:
                logger.warning(f"input_json_delta for unknown block {payload.get('index')}")
                return []
            state["arguments"] += delta.get("partial_json", "")
            return []

        # thinking and signature deltas have no chat completion counterpart
        return []

    def _handle_block_stop(self, payload: dict[str, Any]) -> list[StreamEvent]:
        state = self.tool_blocks.get(payload.get("index", 0))
        if state is None or state.get("closed"):
            return []
        state["closed"] = True
        arguments = state["arguments"]
        if not arguments:
            arguments = dumps_compact(state["initial_input"]) if state["initial_input"] else "{}"
        delta = {
            "tool_calls": [
                {"index": state["tool_index"], "function": {"arguments": arguments}}
            ]
        }
        return [self._chunk(delta)]


def _map_stop_reason(stop_reason: str | None, saw_tool_calls: bool) -> str:
    if stop_reason == Constants.STOP_MAX_TOKENS:
        return Constants.FINISH_LENGTH
    if stop_reason == Constants.STOP_TOOL_USE:
        return Constants.FINISH_TOOL_CALLS
    if stop_reason in (Constants.STOP_END_TURN, Constants.STOP_SEQUENCE):
        return Constants.FINISH_STOP
    return Constants.FINISH_TOOL_CALLS if saw_tool_calls else Constants.FINISH_STOP


class ChatGptStreamConverter(ChatChunkTranslator):
    """Translates Responses API SSE events into chat completion chunks."""

    def __init__(self, model: str):
        super().__init__(model)
        self.saw_text_delta = False
        self.tool_calls_seen = False
        # Upstream repeats terminal item events; ids only ever get added.
        self.processed_item_ids: set[str] = set()
        self._synthetic_ids = 0

    def handle_event(self, payload: dict[str, Any]) -> list[StreamEvent]:
        kind = payload.get("type")

        if kind == Constants.RESPONSE_CREATED:
            response_id = (payload.get("response") or {}).get("id")
            if response_id:
                response_id = str(response_id)
                if response_id.startswith("resp_"):
                    response_id = response_id[len("resp_"):]
                self.id = f"chatcmpl-{response_id}"
            return []

        if kind == Constants.RESPONSE_TEXT_DELTA and isinstance(payload.get("delta"), str):
            self.saw_text_delta = True
            return [self._chunk(self._with_role({"content": payload["delta"]}))]

        if kind == Constants.RESPONSE_ITEM_DONE and isinstance(payload.get("item"), dict):
            return self._handle_item_done(payload["item"])

        if kind == Constants.RESPONSE_COMPLETED:
            usage = map_usage((payload.get("response") or {}).get("usage"))
            finish = Constants.FINISH_TOOL_CALLS if self.tool_calls_seen else Constants.FINISH_STOP
            return [self._chunk({}, finish, usage), self._done()]

        if kind == Constants.RESPONSE_ERROR:
            logger.error(f"Upstream stream error: {payload}")
            return [
                self._error(
                    payload.get("message") or "Upstream stream error",
                    payload.get("code") or "api_error",
                )
            ]

        if kind == Constants.RESPONSE_FAILED:
            error = (payload.get("response") or {}).get("error") or {}
            logger.error(f"Upstream response failed: {error}")
            return [
                self._error(
                    error.get("message") or "Upstream response failed",
                    error.get("code") or "api_error",
                )
            ]

        return []

    def _item_id(self, item: dict[str, Any]) -> str:
        item_id = item.get("id") or item.get("call_id")
        if item_id:
            return str(item_id)
        self._synthetic_ids += 1
        return f"{item.get('type')}_{self._synthetic_ids}"

    def _handle_item_done(self, item: dict[str, Any]) -> list[StreamEvent]:
        item_id = self._item_id(item)
        if item_id in self.processed_item_ids:
            logger.debug(f"Skipping repeated output item {item_id}")
            return []
        self.processed_item_ids.add(item_id)

        item_type = item.get("type")
        if item_type == "message" and item.get("role") == "assistant":
            # Text already streamed through deltas must not be sent twice.
            if self.saw_text_delta:
                return []
            blocks = item.get("content") if isinstance(item.get("content"), list) else []
            text = "".join(
                block["text"]
                for block in blocks
                if isinstance(block, dict)
                and block.get("type") == "output_text"
                and isinstance(block.get("text"), str)
            )
            if not text:
                return []
            return [self._chunk(self._with_role({"content": text}))]

        if item_type == "function_call":
            self.tool_calls_seen = True
            index = self.tool_call_index
            self.tool_call_index += 1
            delta = {
                "tool_calls": [
                    {
                        "index": index,
                        "id": item.get("call_id") or item.get("id") or f"call_{index}",
                        "type": "function",
                        "function": {
                            "name": item.get("name") or "unknown",
                            "arguments": item.get("arguments") or "",
                        },
                    }
                ]
            }
            return [self._chunk(self._with_role(delta))]

        return []


class ChatCompletionAggregator:
    """Folds translated chunks into a single ``chat.completion`` object."""

    def __init__(self):
        self.content = ""
        self.tool_calls: dict[str, dict[str, Any]] = {}
        self.usage: dict[str, Any] | None = None
        self.error: dict[str, Any] | None = None

    def add(self, event: StreamEvent):
        if event.type == "error":
            self.error = event.data
            return
        if event.type != "chunk" or not event.data:
            return

        choices = event.data.get("choices") or [{}]
        delta = choices[0].get("delta") or {}
        if delta.get("content"):
            self.content += delta["content"]

        for tool_call in delta.get("tool_calls") or []:
            if tool_call.get("id"):
                if tool_call["id"] not in self.tool_calls:
                    self.tool_calls[tool_call["id"]] = {
                        **tool_call,
                        "function": dict(tool_call.get("function") or {}),
                    }
            elif tool_call.get("index") is not None:
                self._merge_continuation(tool_call)

        if event.data.get("usage"):
            self.usage = event.data["usage"]

    def _merge_continuation(self, fragment: dict[str, Any]):
        arguments = (fragment.get("function") or {}).get("arguments")
        if not arguments:
            return
        for existing in self.tool_calls.values():
            if existing.get("index") == fragment["index"]:
                function = existing.setdefault("function", {})
                function["arguments"] = (function.get("arguments") or "") + arguments
                return
        logger.warning(f"Dropping tool call fragment for unknown index {fragment['index']}")

    def result(self, translator: ChatChunkTranslator) -> dict[str, Any]:
        tool_calls = [
            {key: value for key, value in call.items() if key != "index"}
            for call in self.tool_calls.values()
        ]
        message: dict[str, Any] = {"role": "assistant", "content": self.content or None}
        if tool_calls:
            message["tool_calls"] = tool_calls

        return {
            "id": translator.id,
            "object": "chat.completion",
            "created": translator.created,
            "model": translator.model,
            "choices": [
                {
                    "index": 0,
                    "message": message,
                    "finish_reason": Constants.FINISH_TOOL_CALLS if tool_calls else Constants.FINISH_STOP,
                }
            ],
            "usage": self.usage or {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
        }


async def translate_stream(
    upstream: ByteStream, translator: ChatChunkTranslator
) -> AsyncIterator[StreamEvent]:
    """Decode upstream bytes and yield translated events in arrival order.

    The upstream is released on every exit path, including when the consumer
    stops iterating early because the client went away.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        async for raw in upstream.aiter_bytes():
            for event in translator.process(decoder.decode(raw)):
                yield event
                if event.type == "done":
                    return
        for event in translator.process(decoder.decode(b"", final=True)):
            yield event
            if event.type == "done":
                return
        for event in translator.finish():
            yield event
    finally:
        await upstream.aclose()
        logger.debug(
            f"🌊 STREAM COMPLETE - Model: {translator.model}, Chunks: {translator.chunks_emitted}, "
            f"Skipped frames: {translator.skipped_frames}"
        )


def format_sse(event: StreamEvent) -> str:
    if event.type == "done":
        return DONE_FRAME
    return f"data: {dumps_compact(event.data)}\n\n"


async def stream_chat_chunks(
    upstream: ByteStream, translator: ChatChunkTranslator
) -> AsyncIterator[str]:
    """SSE frames for the client, always terminated by ``[DONE]``."""
    done_sent = False
    events = translate_stream(upstream, translator)
    try:
        async for event in events:
            yield format_sse(event)
            if event.type == "done":
                done_sent = True
            elif event.type == "error":
                break
    finally:
        await events.aclose()
    if not done_sent:
        yield DONE_FRAME


async def aggregate_stream(
    upstream: ByteStream, translator: ChatChunkTranslator
) -> tuple[dict[str, Any], dict[str, Any] | None]:
    """Drain a stream into ``(chat.completion, error_payload_or_None)``."""
    aggregator = ChatCompletionAggregator()
    events = translate_stream(upstream, translator)
    try:
        async for event in events:
            aggregator.add(event)
            if event.type == "error":
                break
    finally:
        await events.aclose()
    return aggregator.result(translator), aggregator.error
