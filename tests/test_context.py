import sys
import unittest
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sub_bridge.context import (
    MESSAGE_OVERHEAD_TOKENS,
    OVERBUDGET_NOTICE,
    estimate_request_tokens,
    estimate_tokens,
    estimate_tools_tokens,
    get_tool_result_ids,
    get_tool_use_ids,
    truncate_messages,
)
from sub_bridge.types import dumps_compact


def cost(message):
    return estimate_tokens(dumps_compact(message)) + MESSAGE_OVERHEAD_TOKENS


def text_message(index, size=200):
    role = "user" if index % 2 == 0 else "assistant"
    return {"role": role, "content": f"message {index} " + "x" * size}


def tool_use(tool_id):
    return {
        "role": "assistant",
        "content": [{"type": "tool_use", "id": tool_id, "name": "ls", "input": {"path": "."}}],
    }


def tool_result(tool_id, output="a.txt\nb.txt"):
    return {
        "role": "user",
        "content": [{"type": "tool_result", "tool_use_id": tool_id, "content": output}],
    }


class TestEstimation(unittest.TestCase):
    def test_estimate_tokens(self):
        self.assertEqual(estimate_tokens(""), 0)
        self.assertEqual(estimate_tokens(None), 0)
        self.assertEqual(estimate_tokens("abcd"), 2)

    def test_tools_are_denser(self):
        self.assertEqual(estimate_tools_tokens([{"name": "x"}]), 5)
        self.assertEqual(estimate_tools_tokens(None), 0)

    def test_request_over_limit(self):
        payload = {"system": [{"type": "text", "text": "a" * 3199}]}
        estimate = estimate_request_tokens(payload, max_tokens=1000, safety_margin=0.05)

        self.assertEqual(estimate.system_tokens, 1000)
        self.assertEqual(estimate.messages_tokens, 0)
        self.assertEqual(estimate.total_tokens, 1000)
        self.assertTrue(estimate.is_over_limit)
        self.assertEqual(estimate.over_limit_by, 50)

    def test_request_under_limit(self):
        payload = {"messages": [{"role": "user", "content": "hi"}]}
        estimate = estimate_request_tokens(payload)
        self.assertFalse(estimate.is_over_limit)
        self.assertEqual(estimate.over_limit_by, 0)
        self.assertGreater(estimate.messages_tokens, MESSAGE_OVERHEAD_TOKENS)

    def test_tool_ids_in_both_shapes(self):
        self.assertEqual(get_tool_use_ids({"tool_calls": [{"id": "call_1"}]}), ["call_1"])
        self.assertEqual(get_tool_use_ids(tool_use("toolu_1")), ["toolu_1"])
        self.assertEqual(get_tool_result_ids({"role": "tool", "tool_call_id": "call_1"}), ["call_1"])
        self.assertEqual(get_tool_result_ids(tool_result("toolu_1")), ["toolu_1"])


class TestTruncation(unittest.TestCase):
    def test_fits_without_truncation(self):
        messages = [text_message(i) for i in range(3)]
        result = truncate_messages(messages, 100_000, 100, 100)

        self.assertFalse(result.truncated)
        self.assertEqual(result.removed_count, 0)
        self.assertIsNone(result.truncation_notice)
        self.assertEqual(result.messages, messages)

    def test_empty_conversation(self):
        result = truncate_messages([], 10, 100, 100)
        self.assertFalse(result.truncated)
        self.assertEqual(result.messages, [])

    def test_system_and_tools_over_budget(self):
        messages = [text_message(i) for i in range(4)]
        result = truncate_messages(messages, 100, 80, 30)

        self.assertTrue(result.truncated)
        self.assertEqual(result.messages, [])
        self.assertEqual(result.removed_count, 4)
        self.assertEqual(result.truncation_notice, OVERBUDGET_NOTICE)

    def test_tool_pair_is_never_split(self):
        messages = [text_message(i) for i in range(20)]
        messages[2] = tool_use("toolu_1")
        messages[3] = tool_result("toolu_1")
        budget = sum(cost(message) for message in messages[-5:])

        result = truncate_messages(messages, budget + 50, 50, 0)

        self.assertEqual(messages[2] in result.messages, messages[3] in result.messages)
        self.assertEqual(result.messages, messages[-5:])
        self.assertEqual(result.removed_count, 15)
        self.assertEqual(
            result.truncation_notice,
            "[Context truncated: 15 earlier message(s) removed to fit within token limit]",
        )

    def test_tool_result_pulls_in_its_tool_use(self):
        messages = [
            text_message(0),
            tool_use("toolu_1"),
            tool_result("toolu_1"),
            text_message(3),
        ]
        budget = cost(messages[1]) + cost(messages[2]) + cost(messages[3])

        result = truncate_messages(messages, budget, 0, 0)

        self.assertEqual(result.messages, messages[1:])
        self.assertEqual(result.removed_count, 1)
        self.assertTrue(result.truncated)

    def test_skipped_pair_does_not_stop_older_messages(self):
        messages = [
            {"role": "user", "content": "hi"},
            tool_use("toolu_1"),
            tool_result("toolu_1", output="y" * 400),
            text_message(3),
            text_message(4),
        ]
        self.assertGreater(cost(messages[1]) + cost(messages[2]), cost(messages[0]))
        budget = cost(messages[0]) + cost(messages[3]) + cost(messages[4])

        result = truncate_messages(messages, budget, 0, 0)

        self.assertEqual(result.messages, [messages[0], messages[3], messages[4]])
        self.assertEqual(result.removed_count, 2)

    def test_openai_shaped_pair(self):
        messages = [
            {"role": "assistant", "tool_calls": [{"id": "call_1", "function": {"name": "ls"}}]},
            {"role": "tool", "tool_call_id": "call_1", "content": "z" * 400},
            text_message(2),
        ]
        budget = cost(messages[1]) + cost(messages[2])

        result = truncate_messages(messages, budget, 0, 0)

        self.assertEqual(result.messages, [messages[2]])
        self.assertEqual(result.removed_count, 2)

    def test_truncation_is_idempotent(self):
        messages = [text_message(i) for i in range(10)]
        budget = sum(cost(message) for message in messages[-4:])

        first = truncate_messages(messages, budget, 0, 0)
        second = truncate_messages(first.messages, budget, 0, 0)

        self.assertTrue(first.truncated)
        self.assertFalse(second.truncated)
        self.assertEqual(second.messages, first.messages)


if __name__ == "__main__":
    unittest.main()
