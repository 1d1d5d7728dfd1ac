import unittest

from meeting_agent.llm import (
    clamp_confidence,
    extract_chat_content_best_effort,
    json_flag_best_effort,
    parse_json_object_best_effort,
)


class TestLLMResponseParsing(unittest.TestCase):
    def test_extract_chat_content_handles_none_choices(self):
        class _MalformedResp:
            choices = None

        content = extract_chat_content_best_effort(_MalformedResp())
        self.assertEqual(content, "")

    def test_extract_chat_content_handles_content_parts(self):
        resp = {
            "choices": [
                {
                    "message": {
                        "content": [
                            {"text": "line one"},
                            {"text": "line two"},
                        ]
                    }
                }
            ]
        }
        content = extract_chat_content_best_effort(resp)
        self.assertEqual(content, "line one\nline two")

    def test_parse_json_object(self):
        self.assertEqual(parse_json_object_best_effort('{"a": 1}'), {"a": 1})
        self.assertEqual(parse_json_object_best_effort('noise {"a": 2} trailing'), {"a": 2})
        self.assertEqual(parse_json_object_best_effort("[1, 2]"), {})
        self.assertEqual(parse_json_object_best_effort("not json"), {})
        self.assertEqual(parse_json_object_best_effort(None), {})

    def test_json_flag_fallback(self):
        self.assertTrue(json_flag_best_effort('{"isEndOfConversation": true, oops', "isEndOfConversation"))
        self.assertFalse(json_flag_best_effort('{"isEndOfConversation": false}', "isEndOfConversation"))

    def test_clamp_confidence(self):
        self.assertEqual(clamp_confidence("1.7"), 1.0)
        self.assertEqual(clamp_confidence(-3), 0.0)
        self.assertEqual(clamp_confidence("x", default=0.4), 0.4)


if __name__ == "__main__":
    unittest.main()
