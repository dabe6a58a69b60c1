"""
KeyRouter: parses the Authorization header into a routing table and picks
the upstream backend for a requested model.

Header grammar (space separated, comma fallback for a single token)::

    o3=opus-4.5,o3-mini=sonnet-4.5:sk-ant-xxx sk-openai-xxx
    sk-chatgpt-xxx#acct_1
    sb1.<bridge credential>
"""

import logging
import re
from pathlib import Path

import yaml

from .auth import TokenResolver, is_bridge_token
from .errors import AuthError, RoutingError
from .types import (
    KeyConfig,
    ModelMapping,
    ModelRoute,
    OAuthTokens,
    ParsedKeys,
    RouteDecision,
    TokenInfo,
)

logger = logging.getLogger(__name__)

MODEL_ALIASES: dict[str, str] = {
    "opus-4.5": "claude-opus-4-5-20251101",
    "sonnet-4.5": "claude-sonnet-4-5-20250514",
}

CLAUDE_PREFIX = "claude-"

MISSING_API_KEY = (
    "Missing API key. Pass it as 'Authorization: Bearer <key>', "
    "for example 'Bearer o3=opus-4.5:sk-ant-xxx sk-openai-xxx'."
)

_BEARER_RE = re.compile(r"^Bearer\s+", re.IGNORECASE)


def load_model_aliases(aliases_file: str | None = None) -> dict[str, str]:
    """Built-in aliases merged with an optional YAML ``alias: model-id`` file."""
    aliases = dict(MODEL_ALIASES)
    if not aliases_file:
        return aliases

    path = Path(aliases_file)
    if not path.exists():
        logger.warning(f"Model aliases file not found: {aliases_file}")
        return aliases

    with path.open() as file:
        extra = yaml.safe_load(file)

    if not isinstance(extra, dict):
        logger.warning(f"Model aliases file {aliases_file} is not a mapping, ignoring it")
        return aliases

    for alias, model_id in extra.items():
        aliases[str(alias)] = str(model_id)
    logger.info(f"📋 Loaded {len(extra)} model aliases from {aliases_file}")
    return aliases


def split_provider_tokens(full_token: str) -> list[str]:
    """Split the credential string into provider tokens."""
    if not full_token:
        return []
    by_space = full_token.split()
    if len(by_space) > 1:
        return by_space

    single = by_space[0] if by_space else ""
    if "," not in single:
        return [single] if single else []

    # "a=b,c=d:key,other" keeps the mapping list attached to its key and
    # treats whatever follows the key as extra plain tokens.
    last_colon = single.rfind(":")
    if last_colon != -1:
        mapping_part = single[:last_colon]
        token_part = single[last_colon + 1:]
        if "," in token_part:
            split_tokens = [t.strip() for t in token_part.split(",") if t.strip()]
            if split_tokens:
                return [f"{mapping_part}:{split_tokens[0]}", *split_tokens[1:]]
        elif "=" in mapping_part and ":" not in mapping_part:
            # A single routed entry; its commas separate mappings.
            return [single]

    return [t.strip() for t in single.split(",") if t.strip()]


def parse_token_with_account(token: str) -> TokenInfo:
    hash_index = token.find("#")
    if hash_index > 0:
        return TokenInfo(token=token[:hash_index], account_id=token[hash_index + 1:])
    return TokenInfo(token=token)


def is_jwt_token(token: str) -> bool:
    parts = token.split(".")
    return len(parts) == 3 and all(parts)


def merge_oauth_tokens(target: OAuthTokens, incoming: OAuthTokens | None) -> None:
    """Fill fields of ``target`` that are still empty; never overwrite."""
    if incoming is None:
        return
    for field in ("claude_token", "claude_refresh_token", "chatgpt_token", "chatgpt_account_id"):
        value = getattr(incoming, field)
        if value and not getattr(target, field):
            setattr(target, field, value)


def _parse_mappings(mappings_part: str, aliases: dict[str, str]) -> list[ModelMapping]:
    mappings = []
    for pair in mappings_part.split(","):
        if "=" not in pair:
            logger.debug(f"Skipping malformed model mapping '{pair}'")
            continue
        source, target = pair.split("=", 1)
        target = target.strip()
        mappings.append(
            ModelMapping(from_model=source.strip(), to_model=aliases.get(target, target))
        )
    return mappings


def parse_routed_keys(
    auth_header: str | None,
    resolver: TokenResolver,
    aliases: dict[str, str] | None = None,
) -> ParsedKeys:
    """Parse an Authorization header value into ``ParsedKeys``.

    Routed entries that cannot be parsed are skipped. A bridge credential
    that fails to decrypt is reported through ``oauth_error`` rather than
    dropped.
    """
    if not auth_header:
        return ParsedKeys()
    if aliases is None:
        aliases = MODEL_ALIASES

    full_token = _BEARER_RE.sub("", auth_header).strip()
    tokens = split_provider_tokens(full_token)

    parsed = ParsedKeys()
    oauth_tokens = OAuthTokens()

    for token in tokens:
        if not token:
            continue

        # Plain key or bridge credential
        if "=" not in token:
            info = parse_token_with_account(token)
            if is_bridge_token(info.token):
                bridge_tokens, error = resolver.resolve_bridge_credential(info.token)
                if error:
                    parsed.oauth_error = error
                merge_oauth_tokens(oauth_tokens, bridge_tokens)
                continue
            if parsed.default_key is None:
                parsed.default_key = info.token
                parsed.default_account_id = info.account_id
            continue

        last_colon = token.rfind(":")
        if last_colon == -1:
            logger.debug("Skipping routed key without a credential")
            continue

        mappings_part = token[:last_colon]
        info = parse_token_with_account(token[last_colon + 1:])
        api_key = info.token
        if is_bridge_token(api_key):
            bridge_tokens, error = resolver.resolve_bridge_credential(api_key)
            if error:
                parsed.oauth_error = error
                continue
            merge_oauth_tokens(oauth_tokens, bridge_tokens)
            if not bridge_tokens.claude_token:
                continue
            api_key = bridge_tokens.claude_token

        parsed.configs.append(
            KeyConfig(
                mappings=_parse_mappings(mappings_part, aliases),
                api_key=api_key,
                account_id=info.account_id,
            )
        )

    if not oauth_tokens.is_empty():
        parsed.oauth = oauth_tokens
    return parsed


def resolve_alias(model: str, aliases: dict[str, str] | None = None) -> str:
    if aliases is None:
        aliases = MODEL_ALIASES
    return aliases.get(model, model)


def is_claude_model(model: str, aliases: dict[str, str] | None = None) -> bool:
    if aliases is None:
        aliases = MODEL_ALIASES
    return model.startswith(CLAUDE_PREFIX) or aliases.get(model, "").startswith(CLAUDE_PREFIX)


def resolve_model_routing(
    requested_model: str,
    parsed_keys: ParsedKeys,
    aliases: dict[str, str] | None = None,
) -> ModelRoute | None:
    """First matching mapping in parse order, then alias, then default key."""
    for config in parsed_keys.configs:
        for mapping in config.mappings:
            if mapping.from_model == requested_model:
                return ModelRoute(claude_model=mapping.to_model, api_key=config.api_key)

    resolved_model = resolve_alias(requested_model, aliases)

    if is_claude_model(requested_model, aliases) and parsed_keys.default_key:
        return ModelRoute(claude_model=resolved_model, api_key=parsed_keys.default_key)

    # Unmapped models still go out with the default key as-is
    if parsed_keys.default_key:
        return ModelRoute(claude_model=resolved_model, api_key=parsed_keys.default_key)

    return None


def normalize_chatgpt_model(requested_model: str, default_model: str) -> str:
    if requested_model and "codex" in requested_model:
        return requested_model
    return default_model


def select_backend(
    requested_model: str,
    parsed_keys: ParsedKeys,
    aliases: dict[str, str] | None = None,
) -> RouteDecision:
    """Pick the upstream for a request.

    Raises AuthError when no credential was supplied or a bridge credential
    was rejected, and RoutingError when the supplied credentials cannot
    serve the requested model.
    """
    if parsed_keys.oauth_error:
        raise AuthError(parsed_keys.oauth_error)

    oauth = parsed_keys.oauth
    has_oauth = bool(oauth and (oauth.claude_token or oauth.chatgpt_token))
    if not parsed_keys.configs and not parsed_keys.default_key and not has_oauth:
        raise AuthError(MISSING_API_KEY)

    routing = resolve_model_routing(requested_model, parsed_keys, aliases)
    if routing is None and oauth and oauth.claude_token:
        resolved_model = resolve_alias(requested_model, aliases)
        if resolved_model.startswith(CLAUDE_PREFIX):
            routing = ModelRoute(claude_model=resolved_model, api_key=oauth.claude_token)

    is_claude = routing is not None and (
        routing.claude_model.startswith(CLAUDE_PREFIX)
        or is_claude_model(requested_model, aliases)
        or any(
            mapping.from_model == requested_model
            for config in parsed_keys.configs
            for mapping in config.mappings
        )
    )

    if not is_claude:
        if parsed_keys.default_key:
            token = TokenInfo(
                token=parsed_keys.default_key, account_id=parsed_keys.default_account_id
            )
            # Responses-vendor keys are only recognizable by an account id
            # or their JWT shape.
            if token.account_id or is_jwt_token(token.token):
                return RouteDecision(backend="chatgpt", model=requested_model, token=token)
            return RouteDecision(backend="openai", model=requested_model, token=token)
        if oauth and oauth.chatgpt_token:
            return RouteDecision(
                backend="chatgpt",
                model=requested_model,
                token=TokenInfo(token=oauth.chatgpt_token, account_id=oauth.chatgpt_account_id),
            )
        raise RoutingError(requested_model)

    used_oauth_claude = bool(oauth and oauth.claude_token and routing.api_key == oauth.claude_token)
    return RouteDecision(
        backend="anthropic",
        model=routing.claude_model,
        token=TokenInfo(token=routing.api_key),
        used_oauth_claude=used_oauth_claude,
        refresh_token=oauth.claude_refresh_token if oauth else None,
    )
