"""
Per-request orchestration: routing, conversion, dispatch and response
translation for the three upstream backends.
"""

import logging
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import httpx
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask

from .auth import TokenRefreshError, TokenResolver
from .config import Config
from .context import estimate_request_tokens, truncate_messages
from .converter import build_anthropic_request, convert_non_streaming_response
from .errors import AuthError, ContextOverflowError, UpstreamError, upstream_error_from_response
from .responses import DEFAULT_INSTRUCTIONS, build_responses_body
from .routing import (
    load_model_aliases,
    normalize_chatgpt_model,
    parse_routed_keys,
    select_backend,
)
from .streaming import (
    AnthropicStreamConverter,
    ChatGptStreamConverter,
    aggregate_stream,
    stream_chat_chunks,
)
from .transport import EgressTransport, UpstreamResponse
from .types import Constants, RouteDecision

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def load_chatgpt_instructions(instructions_file: str | None) -> str:
    if not instructions_file:
        return DEFAULT_INSTRUCTIONS
    path = Path(instructions_file)
    if not path.exists():
        logger.warning(f"ChatGPT instructions file not found: {instructions_file}, using default")
        return DEFAULT_INSTRUCTIONS
    return path.read_text(encoding="utf-8")


class ProxyOrchestrator:
    """Serves one Chat Completions request against the routed upstream.

    Holds only process-wide collaborators; everything derived from a request
    lives in locals of ``handle_chat_completion``.
    """

    def __init__(
        self,
        config: Config,
        transport: EgressTransport,
        resolver: TokenResolver,
        aliases: dict[str, str] | None = None,
    ):
        self.config = config
        self.transport = transport
        self.resolver = resolver
        self.aliases = aliases if aliases is not None else load_model_aliases(config.model_aliases_file)
        self.chatgpt_instructions = load_chatgpt_instructions(config.chatgpt_instructions_file)

    async def handle_chat_completion(
        self,
        body: dict[str, Any],
        authorization: str | None,
        path: str = "/v1/chat/completions",
    ) -> Response:
        requested_model = body.get("model") or ""
        is_streaming = body.get("stream") is True

        parsed_keys = parse_routed_keys(authorization, self.resolver, self.aliases)
        decision = select_backend(requested_model, parsed_keys, self.aliases)

        if decision.backend == "anthropic":
            return await self._handle_anthropic(body, requested_model, decision, is_streaming, path)
        if decision.backend == "chatgpt":
            return await self._handle_chatgpt(body, requested_model, decision, is_streaming, path)
        return await self._handle_openai(body, requested_model, decision, is_streaming, path)

    # --- Anthropic Messages backend ---

    def _anthropic_headers(self, token: str, is_streaming: bool) -> dict[str, str]:
        return {
            "content-type": "application/json",
            "authorization": f"Bearer {token}",
            "anthropic-beta": Constants.ANTHROPIC_BETA,
            "anthropic-version": Constants.ANTHROPIC_VERSION,
            "accept": "text/event-stream" if is_streaming else "application/json",
        }

    async def _send_anthropic(
        self, payload: dict[str, Any], token: str, is_streaming: bool
    ) -> UpstreamResponse:
        return await self.transport.send(
            f"{self.config.anthropic_base_url}/v1/messages",
            self._anthropic_headers(token, is_streaming),
            payload,
            vendor="anthropic",
        )

    def apply_context_policy(self, payload: dict[str, Any], label: str) -> dict[str, Any]:
        """Enforce the configured overflow policy on a prepared request body."""
        estimate = estimate_request_tokens(
            payload, self.config.max_context_tokens, self.config.context_safety_margin
        )
        if not estimate.is_over_limit:
            return payload

        max_tokens = self.config.max_context_tokens
        mode = self.config.context_overflow

        if mode == "error":
            raise ContextOverflowError(
                f"Context too large: estimated {estimate.total_tokens:,} tokens exceeds {max_tokens:,} limit. "
                f"Breakdown: system={estimate.system_tokens:,}, messages={estimate.messages_tokens:,}, "
                f"tools={estimate.tools_tokens:,}. "
                "Enable context truncation with --context-overflow=truncate or reduce your conversation history."
            )

        if mode == "truncate":
            result = truncate_messages(
                payload["messages"],
                self.config.effective_context_limit,
                estimate.system_tokens,
                estimate.tools_tokens,
            )
            payload = {**payload, "messages": result.messages}
            if result.truncation_notice:
                payload["system"] = [
                    {"type": "text", "text": result.truncation_notice},
                    *payload.get("system", []),
                ]
            new_estimate = estimate_request_tokens(
                payload, self.config.max_context_tokens, self.config.context_safety_margin
            )
            logger.info(
                f"✂️ {label} (truncated: -{result.removed_count} msgs, ~{new_estimate.total_tokens:,} tokens)"
            )
            return payload

        logger.warning(
            f"⚠️ Context estimated at {estimate.total_tokens:,} tokens, may exceed {max_tokens:,} limit"
        )
        return payload

    async def _handle_anthropic(
        self,
        body: dict[str, Any],
        requested_model: str,
        decision: RouteDecision,
        is_streaming: bool,
        path: str,
    ) -> Response:
        request = build_anthropic_request(body, decision.model)
        payload = request.to_payload()

        log_request_beautifully(
            "POST",
            path,
            requested_model,
            decision.model,
            len(payload["messages"]),
            len(payload.get("tools", [])),
            "claude",
        )
        payload = self.apply_context_policy(payload, f"{requested_model} → {decision.model}")

        response = await self._send_anthropic(payload, decision.token.token, is_streaming)
        if response.status_code == 401 and decision.used_oauth_claude and decision.refresh_token:
            await response.aclose()
            response = await self._retry_with_refreshed_token(
                payload, decision.refresh_token, is_streaming
            )

        if not response.ok:
            raise upstream_error_from_response(
                response.status_code, await response.read_text(), "anthropic"
            )

        if is_streaming:
            logger.info(f"🔗 STREAMING: Starting for {decision.model}")
            return StreamingResponse(
                stream_chat_chunks(response, AnthropicStreamConverter(decision.model)),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
                background=BackgroundTask(response.aclose),
            )

        data = await response.read_json()
        return JSONResponse(content=convert_non_streaming_response(data, decision.model))

    async def _retry_with_refreshed_token(
        self, payload: dict[str, Any], refresh_token: str, is_streaming: bool
    ) -> UpstreamResponse:
        logger.info("🔄 Claude access token rejected, refreshing once")
        try:
            refreshed = await self.resolver.refresh_claude_token(refresh_token)
        except (TokenRefreshError, httpx.HTTPError) as e:
            logger.error(f"Claude OAuth refresh failed: {e}")
            raise AuthError("Claude OAuth refresh failed. Please re-authenticate.") from e

        if not refreshed.get("access_token"):
            raise AuthError("Claude OAuth refresh failed. Please re-authenticate.")
        return await self._send_anthropic(payload, refreshed["access_token"], is_streaming)

    # --- Responses backend ---

    async def _handle_chatgpt(
        self,
        body: dict[str, Any],
        requested_model: str,
        decision: RouteDecision,
        is_streaming: bool,
        path: str,
    ) -> Response:
        model = normalize_chatgpt_model(requested_model, self.config.chatgpt_default_model)
        responses_body = build_responses_body(body, model, self.chatgpt_instructions)
        log_request_beautifully(
            "POST",
            path,
            requested_model,
            model,
            len(responses_body["input"]),
            len(responses_body["tools"]),
            "chatgpt",
        )

        account_id = decision.token.account_id
        if not account_id:
            raise AuthError("ChatGPT account id missing. Re-login to refresh your ChatGPT token.")

        response = await self.transport.send(
            f"{self.config.chatgpt_base_url}/responses",
            {
                "content-type": "application/json",
                "authorization": f"Bearer {decision.token.token}",
                "chatgpt-account-id": account_id,
                "originator": Constants.CHATGPT_ORIGINATOR,
                "accept": "text/event-stream",
            },
            responses_body,
            vendor="chatgpt",
        )
        if not response.ok:
            raise upstream_error_from_response(
                response.status_code, await response.read_text(), "chatgpt"
            )

        translator = ChatGptStreamConverter(model)
        if is_streaming:
            return StreamingResponse(
                stream_chat_chunks(response, translator),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
                background=BackgroundTask(response.aclose),
            )

        completion, error = await aggregate_stream(response, translator)
        if error:
            details = error["error"]
            raise UpstreamError(
                f"ChatGPT error: {details['message']}", 502, error_type=details["type"]
            )
        return JSONResponse(content=completion)

    # --- Chat Completions passthrough ---

    async def _handle_openai(
        self,
        body: dict[str, Any],
        requested_model: str,
        decision: RouteDecision,
        is_streaming: bool,
        path: str,
    ) -> Response:
        log_request_beautifully(
            "POST",
            path,
            requested_model,
            requested_model,
            len(body.get("messages") or []),
            len(body.get("tools") or []),
            "openai",
        )
        response = await self.transport.send(
            f"{self.config.openai_base_url}/chat/completions",
            {
                "content-type": "application/json",
                "authorization": f"Bearer {decision.token.token}",
            },
            body,
            vendor="openai",
        )
        if not response.ok:
            raise upstream_error_from_response(
                response.status_code, await response.read_text(), "openai"
            )

        if is_streaming:
            return StreamingResponse(
                relay_bytes(response),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
                background=BackgroundTask(response.aclose),
            )
        return JSONResponse(content=await response.read_json(), status_code=response.status_code)


async def relay_bytes(response: UpstreamResponse) -> AsyncIterator[bytes]:
    """Pass an upstream body through untouched."""
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    finally:
        await response.aclose()


# Define ANSI color codes for terminal output
class Colors:
    CYAN = "\033[96m"
    BLUE = "\033[94m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    MAGENTA = "\033[95m"
    RESET = "\033[0m"
    BOLD = "\033[1m"


def log_request_beautifully(
    method, path, requested_model, upstream_model, num_messages, num_tools, backend
):
    """Log one routed request showing the client model to upstream model mapping."""
    requested_display = f"{Colors.CYAN}{requested_model or '(none)'}{Colors.RESET}"
    upstream_display = f"{Colors.GREEN}{upstream_model}{Colors.RESET}"
    backend_display = f"{Colors.YELLOW}({backend}){Colors.RESET}"

    endpoint = path.split("?")[0]

    tools_str = f"{Colors.MAGENTA}{num_tools} tools{Colors.RESET}"
    messages_str = f"{Colors.BLUE}{num_messages} messages{Colors.RESET}"

    log_line = f"{Colors.BOLD}{method} {endpoint}{Colors.RESET} {backend_display}"
    model_line = f"{requested_display} → {upstream_display} {tools_str} {messages_str}"

    print(log_line)
    print(model_line)
    sys.stdout.flush()
    logger.info(f"ROUTE {requested_model} → {upstream_model} ({backend})")
