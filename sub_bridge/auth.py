"""
TokenResolver: bridge credential decryption and Claude token refresh.

Bridge credentials look like ``sb1.<base64url(nonce + ciphertext + tag)>``.
The payload is JSON encrypted with AES-256-GCM under a 32-byte server
secret stored on disk.
"""

import base64
import logging
import os
import secrets
import time
from pathlib import Path
from typing import Any

import httpx
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .types import Constants, ModelDefaults, OAuthTokens, dumps_compact, try_parse_json

logger = logging.getLogger(__name__)

# AES-256 key length (32 bytes)
KEY_LENGTH = 32

# Nonce length for GCM (12 bytes is recommended)
NONCE_LENGTH = 12

# GCM authentication tag length
TAG_LENGTH = 16

INVALID_BRIDGE_TOKEN = "OAuth token invalid or expired. Please re-authenticate."


class EncryptionError(Exception):
    """Encryption/Decryption error"""


class TokenRefreshError(Exception):
    """The upstream refused to exchange a refresh token."""


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def is_bridge_token(token: str) -> bool:
    return token.startswith(Constants.BRIDGE_TOKEN_PREFIX)


class TokenResolver:
    """
    Decrypts bridge credentials into upstream tokens and refreshes
    expired Claude access tokens.

    The secret is read lazily; when the file is missing a new one is
    generated and written with owner-only permissions.
    """

    def __init__(
        self,
        secret_file: Path | str,
        client_id: str = ModelDefaults.CLAUDE_OAUTH_CLIENT_ID,
        token_url: str = ModelDefaults.CLAUDE_TOKEN_URL,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.secret_file = Path(secret_file)
        self.client_id = client_id
        self.token_url = token_url
        self.http_client = http_client
        self._key: bytes | None = None

    @property
    def key(self) -> bytes:
        if self._key is None:
            self._key = self._get_or_create_key()
        return self._key

    def _get_or_create_key(self) -> bytes:
        if self.secret_file.exists():
            secret = self.secret_file.read_bytes()
            if len(secret) == KEY_LENGTH:
                return secret
            logger.warning(
                f"Secret file {self.secret_file} has {len(secret)} bytes, expected {KEY_LENGTH}; regenerating"
            )

        secret = secrets.token_bytes(KEY_LENGTH)
        self.secret_file.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.secret_file.write_bytes(secret)
        os.chmod(self.secret_file, 0o600)
        logger.info(f"🔑 Generated new bridge secret at {self.secret_file}")
        return secret

    def encrypt(self, plaintext: str) -> str:
        nonce = secrets.token_bytes(NONCE_LENGTH)
        # AESGCM appends the 16-byte tag to the ciphertext.
        ciphertext = AESGCM(self.key).encrypt(nonce, plaintext.encode("utf-8"), None)
        return _b64url_encode(nonce + ciphertext)

    def decrypt(self, encoded: str) -> str:
        try:
            combined = _b64url_decode(encoded)
        except ValueError as e:
            raise EncryptionError(f"Invalid encrypted data: {e}") from e

        if len(combined) < NONCE_LENGTH + TAG_LENGTH:
            raise EncryptionError("Invalid encrypted data: too short")

        nonce = combined[:NONCE_LENGTH]
        try:
            plaintext = AESGCM(self.key).decrypt(nonce, combined[NONCE_LENGTH:], None)
        except InvalidTag as e:
            raise EncryptionError("Decryption failed: invalid or tampered data") from e
        return plaintext.decode("utf-8")

    def create_bridge_token(self, payload: dict[str, Any]) -> str:
        """Encrypt a bridge payload into an ``sb1.`` token."""
        return Constants.BRIDGE_TOKEN_PREFIX + self.encrypt(dumps_compact(payload))

    def decode_bridge_token(self, token: str) -> dict[str, Any] | None:
        """Decrypt and validate a bridge token; None when invalid or expired."""
        if not is_bridge_token(token):
            return None

        try:
            plaintext = self.decrypt(token[len(Constants.BRIDGE_TOKEN_PREFIX):])
        except (EncryptionError, UnicodeDecodeError) as e:
            logger.warning(f"Bridge token rejected: {e}")
            return None

        decoded = try_parse_json(plaintext)
        if not decoded.ok or not isinstance(decoded.value, dict):
            logger.warning("Bridge token rejected: payload is not a JSON object")
            return None

        payload = decoded.value
        if payload.get("iss") != Constants.BRIDGE_TOKEN_ISSUER:
            return None
        if not payload.get("sub") or not payload.get("aud"):
            return None
        if not payload.get("exp") or not payload.get("iat"):
            return None
        if time.time() > payload["exp"]:
            logger.info("Bridge token expired")
            return None
        return payload

    def resolve_bridge_credential(self, token: str) -> tuple[OAuthTokens | None, str | None]:
        """Return ``(tokens, error)`` for a bridge credential."""
        payload = self.decode_bridge_token(token)
        if payload is None:
            return None, INVALID_BRIDGE_TOKEN

        providers = payload.get("providers") or {}
        claude = providers.get("claude") or {}
        chatgpt = providers.get("chatgpt") or {}
        return (
            OAuthTokens(
                claude_token=claude.get("access_token"),
                claude_refresh_token=claude.get("refresh_token"),
                chatgpt_token=chatgpt.get("access_token"),
                chatgpt_account_id=chatgpt.get("account_id"),
            ),
            None,
        )

    async def refresh_claude_token(self, refresh_token: str) -> dict[str, Any]:
        """Exchange a refresh token for a new Claude access token.

        Returns a dict with ``access_token`` and, when the upstream sends
        them, ``refresh_token`` and ``expires_in``.
        """
        body = {
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "refresh_token": refresh_token,
        }
        headers = {"content-type": "application/json"}

        if self.http_client is not None:
            response = await self.http_client.post(self.token_url, json=body, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=httpx.Timeout(30.0)) as client:
                response = await client.post(self.token_url, json=body, headers=headers)

        if response.status_code >= 400:
            raise TokenRefreshError(
                f"Token refresh failed ({response.status_code}): {response.text[:200]}"
            )

        decoded = try_parse_json(response.text)
        if not decoded.ok or not isinstance(decoded.value, dict):
            raise TokenRefreshError("Token refresh returned a non-JSON body")

        data = decoded.value
        logger.info("🔄 Refreshed Claude OAuth access token")
        return {
            "access_token": data.get("access_token"),
            "refresh_token": data.get("refresh_token"),
            "expires_in": data.get("expires_in"),
        }
