import base64
import io
import unittest
from unittest.mock import patch
from urllib import error

from docguard import llm_provider


class TestResponseParsing(unittest.TestCase):
    def test_extracts_top_level_output_text(self):
        self.assertEqual(llm_provider._extract_openai_text({"output_text": "CONNECTED"}), "CONNECTED")

    def test_extracts_text_from_output_content(self):
        payload = {"output": [{"type": "message", "content": [{"type": "output_text", "text": "CONNECTED"}]}]}

        self.assertEqual(llm_provider._extract_openai_text(payload), "CONNECTED")

    def test_collects_anthropic_text_blocks(self):
        payload = {"content": [{"type": "text", "text": "{\"a\": 1}"}, {"type": "tool_use", "id": "x"}]}

        self.assertEqual(llm_provider._collect_anthropic_text(payload), "{\"a\": 1}")

    def test_collects_gemini_parts(self):
        payload = {"candidates": [{"content": {"parts": [{"text": "one"}, {"text": "two"}]}}]}

        self.assertEqual(llm_provider._collect_gemini_text(payload), "one\ntwo")


class TestPdfExtractionRequests(unittest.TestCase):
    def test_anthropic_request_carries_document_block_and_timeout(self):
        with patch("docguard.llm_provider._post_json", return_value={"content": [{"type": "text", "text": "{}"}]}) as mocked:
            result = llm_provider.extract_pdf_with_anthropic(
                api_key="test-key",
                model="claude-test",
                pdf_bytes=b"%PDF-1.4",
                system_prompt="SYSTEM",
                user_prompt="USER",
                timeout=7,
            )

        self.assertEqual(result.status, "success")
        self.assertEqual(result.model, "claude-test")
        url, payload, headers, timeout = mocked.call_args.args
        self.assertEqual(url, llm_provider.ANTHROPIC_MESSAGES_URL)
        self.assertEqual(headers["x-api-key"], "test-key")
        self.assertEqual(timeout, 7)
        self.assertEqual(payload["system"], "SYSTEM")
        document = payload["messages"][0]["content"][0]
        self.assertEqual(document["type"], "document")
        self.assertEqual(base64.b64decode(document["source"]["data"]), b"%PDF-1.4")

    def test_openai_request_uses_input_file_and_json_format(self):
        with patch("docguard.llm_provider._post_json", return_value={"output_text": "{}"}) as mocked:
            llm_provider.extract_pdf_with_openai("k", "gpt-test", b"%PDF", "SYSTEM", "USER", filename="a.pdf")

        payload = mocked.call_args.args[1]
        file_part = payload["input"][0]["content"][0]
        self.assertEqual(file_part["type"], "input_file")
        self.assertTrue(file_part["file_data"].startswith("data:application/pdf;base64,"))
        self.assertEqual(payload["text"]["format"]["type"], "json_object")

    def test_empty_response_is_flagged_as_empty(self):
        with patch("docguard.llm_provider._post_json", return_value={"content": []}):
            result = llm_provider.extract_pdf_with_anthropic("k", "m", b"%PDF", "S", "U")

        self.assertEqual(result.status, "error")
        self.assertEqual(result.error_kind, "empty")

    def test_http_error_is_flagged_as_request_failure(self):
        http_error = error.HTTPError(
            url="https://api.anthropic.com/v1/messages",
            code=401,
            msg="Unauthorized",
            hdrs=None,
            fp=io.BytesIO(b'{"error": {"message": "invalid x-api-key"}}'),
        )
        with patch("docguard.llm_provider._post_json", side_effect=http_error):
            result = llm_provider.extract_pdf_with_gemini("k", "m", b"%PDF", "S", "U")

        self.assertEqual(result.status, "error")
        self.assertEqual(result.error_kind, "request")
        self.assertIn("HTTP 401: invalid x-api-key", result.warnings[0])

    def test_network_failure_is_flagged_as_request_failure(self):
        with patch("docguard.llm_provider._post_json", side_effect=TimeoutError("timed out")):
            result = llm_provider.generate_text_with_openai("k", "m", "prompt")

        self.assertEqual(result.error_kind, "request")
        self.assertIn("failed before receiving a response", result.warnings[0])


def test_generate_text_with_anthropic_sends_system_prompt():
    with patch("docguard.llm_provider._post_json", return_value={"content": [{"type": "text", "text": "hi"}]}) as mocked:
        result = llm_provider.generate_text_with_anthropic("k", "m", "hello", system_prompt="Be grounded.")

    assert result.raw_response == "hi"
    assert mocked.call_args.args[1]["system"] == "Be grounded."
