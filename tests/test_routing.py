import os
import sys
import tempfile
import time
import unittest
from pathlib import Path

# Add the parent directory to the sys.path to allow imports from the package
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from sub_bridge.auth import INVALID_BRIDGE_TOKEN, TokenResolver
from sub_bridge.errors import AuthError, RoutingError
from sub_bridge.routing import (
    MISSING_API_KEY,
    is_jwt_token,
    load_model_aliases,
    normalize_chatgpt_model,
    parse_routed_keys,
    resolve_model_routing,
    select_backend,
    split_provider_tokens,
)
from sub_bridge.types import ParsedKeys

OPUS = "claude-opus-4-5-20251101"
SONNET = "claude-sonnet-4-5-20250514"


def bridge_payload(providers, expires_in=3600):
    now = int(time.time())
    return {
        "iss": "sub-bridge",
        "sub": "user-1",
        "aud": "sub-bridge",
        "iat": now,
        "exp": now + expires_in,
        "providers": providers,
    }


class RoutingTestCase(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.resolver = TokenResolver(Path(tmp.name) / "secret.key")

    def parse(self, header):
        return parse_routed_keys(header, self.resolver)


class TestSplitProviderTokens(unittest.TestCase):
    def test_space_separated_tokens(self):
        self.assertEqual(
            split_provider_tokens("o3=opus-4.5:sk-ant-xxx sk-openai-xxx"),
            ["o3=opus-4.5:sk-ant-xxx", "sk-openai-xxx"],
        )

    def test_comma_after_routed_key_starts_a_new_token(self):
        self.assertEqual(
            split_provider_tokens("o3=opus-4.5:sk-ant-xxx,sk-openai-xxx"),
            ["o3=opus-4.5:sk-ant-xxx", "sk-openai-xxx"],
        )

    def test_mapping_list_commas_stay_with_their_key(self):
        token = "o3=opus-4.5,o3-mini=sonnet-4.5:sk-ant-xxx"
        self.assertEqual(split_provider_tokens(token), [token])

    def test_plain_keys_split_on_commas(self):
        self.assertEqual(split_provider_tokens("sk-a,sk-b"), ["sk-a", "sk-b"])

    def test_empty(self):
        self.assertEqual(split_provider_tokens(""), [])


class TestParseRoutedKeys(RoutingTestCase):
    def test_routed_key_with_default(self):
        parsed = self.parse("Bearer o3=opus-4.5,o3-mini=sonnet-4.5:sk-ant-xxx sk-openai-xxx")

        self.assertEqual(len(parsed.configs), 1)
        config = parsed.configs[0]
        self.assertEqual(config.api_key, "sk-ant-xxx")
        self.assertEqual(
            [(m.from_model, m.to_model) for m in config.mappings],
            [("o3", OPUS), ("o3-mini", SONNET)],
        )
        self.assertEqual(parsed.default_key, "sk-openai-xxx")
        self.assertIsNone(parsed.oauth)
        self.assertIsNone(parsed.oauth_error)

    def test_token_order_does_not_matter(self):
        forward = self.parse("Bearer o3=opus-4.5:sk-ant-xxx sk-openai-xxx")
        backward = self.parse("Bearer sk-openai-xxx o3=opus-4.5:sk-ant-xxx")
        self.assertEqual(forward, backward)

    def test_account_suffix(self):
        parsed = self.parse("Bearer sk-chatgpt-xxx#acct_1")
        self.assertEqual(parsed.default_key, "sk-chatgpt-xxx")
        self.assertEqual(parsed.default_account_id, "acct_1")

    def test_first_plain_key_is_the_default(self):
        parsed = self.parse("Bearer sk-first sk-second")
        self.assertEqual(parsed.default_key, "sk-first")

    def test_bearer_prefix_is_case_insensitive(self):
        self.assertEqual(self.parse("bearer sk-x").default_key, "sk-x")

    def test_missing_header(self):
        self.assertEqual(self.parse(None), ParsedKeys())
        self.assertEqual(self.parse(""), ParsedKeys())

    def test_malformed_mapping_pairs_are_skipped(self):
        parsed = self.parse("Bearer o3=opus-4.5,junk:sk-ant-xxx")
        self.assertEqual([m.from_model for m in parsed.configs[0].mappings], ["o3"])

    def test_bridge_credential_fills_oauth(self):
        token = self.resolver.create_bridge_token(
            bridge_payload(
                {
                    "claude": {"access_token": "claude-access", "refresh_token": "claude-refresh"},
                    "chatgpt": {"access_token": "chatgpt-access", "account_id": "acct_9"},
                }
            )
        )
        parsed = self.parse(f"Bearer {token}")

        self.assertIsNone(parsed.default_key)
        self.assertEqual(parsed.oauth.claude_token, "claude-access")
        self.assertEqual(parsed.oauth.claude_refresh_token, "claude-refresh")
        self.assertEqual(parsed.oauth.chatgpt_token, "chatgpt-access")
        self.assertEqual(parsed.oauth.chatgpt_account_id, "acct_9")

    def test_invalid_bridge_credential_sets_error(self):
        parsed = self.parse("Bearer sb1.not-valid")
        self.assertEqual(parsed.oauth_error, INVALID_BRIDGE_TOKEN)
        self.assertIsNone(parsed.oauth)

    def test_expired_bridge_credential_sets_error(self):
        token = self.resolver.create_bridge_token(
            bridge_payload({"claude": {"access_token": "claude-access"}}, expires_in=-10)
        )
        self.assertEqual(self.parse(f"Bearer {token}").oauth_error, INVALID_BRIDGE_TOKEN)

    def test_bridge_credential_as_routed_key(self):
        token = self.resolver.create_bridge_token(
            bridge_payload({"claude": {"access_token": "claude-access"}})
        )
        parsed = self.parse(f"Bearer o3=opus-4.5:{token}")
        self.assertEqual(parsed.configs[0].api_key, "claude-access")
        self.assertEqual(parsed.oauth.claude_token, "claude-access")


class TestSelectBackend(RoutingTestCase):
    def test_mapped_model_goes_to_anthropic(self):
        parsed = self.parse("Bearer o3=opus-4.5,o3-mini=sonnet-4.5:sk-ant-xxx sk-openai-xxx")
        decision = select_backend("o3", parsed)

        self.assertEqual(decision.backend, "anthropic")
        self.assertEqual(decision.model, OPUS)
        self.assertEqual(decision.token.token, "sk-ant-xxx")
        self.assertFalse(decision.used_oauth_claude)

    def test_unmapped_model_uses_default_key_on_openai(self):
        parsed = self.parse("Bearer o3=opus-4.5:sk-ant-xxx sk-openai-xxx")
        decision = select_backend("gpt-4o", parsed)

        self.assertEqual(decision.backend, "openai")
        self.assertEqual(decision.model, "gpt-4o")
        self.assertEqual(decision.token.token, "sk-openai-xxx")

    def test_account_id_selects_chatgpt(self):
        decision = select_backend("gpt-5", self.parse("Bearer sk-chatgpt-xxx#acct_1"))
        self.assertEqual(decision.backend, "chatgpt")
        self.assertEqual(decision.token.token, "sk-chatgpt-xxx")
        self.assertEqual(decision.token.account_id, "acct_1")

    def test_jwt_shaped_key_selects_chatgpt(self):
        self.assertTrue(is_jwt_token("aaa.bbb.ccc"))
        self.assertFalse(is_jwt_token("sk-openai-xxx"))
        decision = select_backend("gpt-5", self.parse("Bearer aaa.bbb.ccc"))
        self.assertEqual(decision.backend, "chatgpt")
        self.assertIsNone(decision.token.account_id)

    def test_claude_alias_with_default_key(self):
        decision = select_backend("opus-4.5", self.parse("Bearer sk-ant-default"))
        self.assertEqual(decision.backend, "anthropic")
        self.assertEqual(decision.model, OPUS)
        self.assertEqual(decision.token.token, "sk-ant-default")

    def test_first_mapping_wins(self):
        parsed = self.parse("Bearer o3=opus-4.5:sk-first o3=sonnet-4.5:sk-second")
        route = resolve_model_routing("o3", parsed)
        self.assertEqual(route.claude_model, OPUS)
        self.assertEqual(route.api_key, "sk-first")

    def test_no_credentials_raises_auth_error(self):
        with self.assertRaises(AuthError) as ctx:
            select_backend("gpt-4o", ParsedKeys())

        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(ctx.exception.error_type, "authentication_error")
        self.assertEqual(ctx.exception.message, MISSING_API_KEY)

    def test_unmatched_model_raises_routing_error(self):
        with self.assertRaises(RoutingError) as ctx:
            select_backend("gpt-4o", self.parse("Bearer o3=opus-4.5:sk-ant-xxx"))

        error = ctx.exception
        self.assertEqual(error.status_code, 400)
        self.assertEqual(error.code, "model_not_configured")
        self.assertIn('Model "gpt-4o" is not configured', error.message)
        self.assertIn("o3=opus-4.5:sk-ant-xxx", error.message)

    def test_oauth_error_raises_auth_error(self):
        with self.assertRaises(AuthError) as ctx:
            select_backend("o3", self.parse("Bearer sb1.not-valid sk-openai-xxx"))
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(ctx.exception.message, INVALID_BRIDGE_TOKEN)

    def test_oauth_claude_fallback(self):
        token = self.resolver.create_bridge_token(
            bridge_payload(
                {"claude": {"access_token": "claude-access", "refresh_token": "claude-refresh"}}
            )
        )
        decision = select_backend("sonnet-4.5", self.parse(f"Bearer {token}"))

        self.assertEqual(decision.backend, "anthropic")
        self.assertEqual(decision.model, SONNET)
        self.assertEqual(decision.token.token, "claude-access")
        self.assertTrue(decision.used_oauth_claude)
        self.assertEqual(decision.refresh_token, "claude-refresh")

    def test_oauth_chatgpt_fallback(self):
        token = self.resolver.create_bridge_token(
            bridge_payload(
                {
                    "claude": {"access_token": "claude-access"},
                    "chatgpt": {"access_token": "chatgpt-access", "account_id": "acct_9"},
                }
            )
        )
        decision = select_backend("gpt-5", self.parse(f"Bearer {token}"))

        self.assertEqual(decision.backend, "chatgpt")
        self.assertEqual(decision.token.token, "chatgpt-access")
        self.assertEqual(decision.token.account_id, "acct_9")

    def test_oauth_routed_key_marks_oauth_use(self):
        token = self.resolver.create_bridge_token(
            bridge_payload({"claude": {"access_token": "claude-access"}})
        )
        decision = select_backend("o3", self.parse(f"Bearer o3=opus-4.5:{token}"))
        self.assertTrue(decision.used_oauth_claude)


class TestModelNames(unittest.TestCase):
    def test_normalize_chatgpt_model(self):
        self.assertEqual(
            normalize_chatgpt_model("gpt-5.1-codex-max", "gpt-5.2-codex"), "gpt-5.1-codex-max"
        )
        self.assertEqual(normalize_chatgpt_model("gpt-4o", "gpt-5.2-codex"), "gpt-5.2-codex")
        self.assertEqual(normalize_chatgpt_model("", "gpt-5.2-codex"), "gpt-5.2-codex")

    def test_load_model_aliases_merges_yaml(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "aliases.yaml"
            path.write_text("haiku-4.5: claude-haiku-4-5-20251001\n")
            aliases = load_model_aliases(str(path))

        self.assertEqual(aliases["haiku-4.5"], "claude-haiku-4-5-20251001")
        self.assertEqual(aliases["opus-4.5"], OPUS)

    def test_load_model_aliases_missing_file(self):
        aliases = load_model_aliases("/nonexistent/aliases.yaml")
        self.assertEqual(aliases["sonnet-4.5"], SONNET)


if __name__ == "__main__":
    unittest.main()
