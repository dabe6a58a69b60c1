"""
Error taxonomy for the proxy and the OpenAI-style error envelope.
"""

import logging
from typing import Any

from fastapi.responses import JSONResponse, Response

from .types import try_parse_json

logger = logging.getLogger(__name__)


class ProxyError(Exception):
    """Base error carrying everything needed to answer the client."""

    status_code = 500
    error_type = "api_error"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_type: str | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_type is not None:
            self.error_type = error_type
        self.code = code or self.error_type

    def envelope(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.code,
            }
        }

    def to_response(self) -> Response:
        return JSONResponse(status_code=self.status_code, content=self.envelope())


class RoutingError(ProxyError):
    status_code = 400
    error_type = "invalid_request_error"

    def __init__(self, requested_model: str):
        super().__init__(
            format_model_not_configured(requested_model), code="model_not_configured"
        )
        self.requested_model = requested_model


class AuthError(ProxyError):
    status_code = 401
    error_type = "authentication_error"


class InvalidRequestError(ProxyError):
    status_code = 400
    error_type = "invalid_request_error"


class ContextOverflowError(ProxyError):
    status_code = 400
    error_type = "invalid_request_error"

    def __init__(self, message: str):
        super().__init__(message, code="context_length_exceeded")


class DecodeError(ProxyError):
    """An upstream success body that is not valid JSON."""

    status_code = 502


class UpstreamError(ProxyError):
    """Non-2xx upstream response, or an unreachable upstream."""

    def __init__(
        self,
        message: str,
        status_code: int,
        error_type: str = "api_error",
        raw_body: str | None = None,
        media_type: str | None = None,
    ):
        super().__init__(message, status_code=status_code, error_type=error_type)
        self.raw_body = raw_body
        self.media_type = media_type

    def to_response(self) -> Response:
        if self.raw_body is not None:
            return Response(
                content=self.raw_body,
                status_code=self.status_code,
                media_type=self.media_type,
            )
        return super().to_response()


def format_model_not_configured(requested_model: str) -> str:
    return (
        f'Model "{requested_model}" is not configured. To use this model, either:\n'
        "\n"
        "1. Add a model mapping to your API key: o3=opus-4.5:sk-ant-xxx\n"
        "2. Add a default API key for OpenAI/ChatGPT fallback\n"
        "3. Login via Sub Bridge OAuth to use your Claude/ChatGPT subscription\n"
        "\n"
        "See https://github.com/buremba/sub-bridge for setup instructions."
    )


def _friendly_anthropic_message(error_type: str, message: str) -> str:
    if error_type == "rate_limit_error":
        return f"Rate limit exceeded: {message}"
    elif error_type == "authentication_error":
        return f"Authentication failed: {message}"
    elif error_type == "invalid_request_error":
        return f"Invalid request: {message}"
    return message


def _friendly_chatgpt_message(status_code: int, error_type: str, message: str) -> str:
    if status_code == 401 or error_type == "authentication_error":
        return f"ChatGPT authentication failed: {message}. Try re-logging in."
    elif status_code == 429 or error_type == "rate_limit_error":
        return f"ChatGPT rate limit exceeded: {message}"
    elif status_code == 400 or error_type == "invalid_request_error":
        return f"Invalid request to ChatGPT: {message}"
    return message


def upstream_error_from_response(
    status_code: int, body_text: str, vendor: str = "anthropic"
) -> UpstreamError:
    """Map an upstream error body onto the uniform envelope.

    Bodies that are not JSON objects are kept verbatim so the client sees
    exactly what the upstream sent, with the same status code.
    """
    logger.error(f"Upstream {vendor} error ({status_code}): {body_text[:500]}")

    decoded = try_parse_json(body_text)
    if not decoded.ok or not isinstance(decoded.value, dict):
        return UpstreamError(body_text, status_code, raw_body=body_text)

    # Chat Completions vendors already speak the client's error dialect.
    if vendor == "openai":
        return UpstreamError(
            body_text, status_code, raw_body=body_text, media_type="application/json"
        )

    payload = decoded.value
    nested = payload.get("error") if isinstance(payload.get("error"), dict) else {}

    if vendor == "chatgpt":
        message = (
            nested.get("message")
            or payload.get("message")
            or payload.get("detail")
            or body_text[:200]
            or "Unknown error"
        )
        error_type = nested.get("type") or payload.get("type") or "api_error"
        friendly = _friendly_chatgpt_message(status_code, error_type, str(message))
    else:
        message = nested.get("message") or "Unknown error"
        error_type = nested.get("type") or "api_error"
        friendly = _friendly_anthropic_message(error_type, message)

    return UpstreamError(friendly, status_code, error_type=error_type)
