import json
import unittest
from unittest.mock import patch

import pytest

from docguard.errors import EmptyVisionResponse, InvalidVisionJSON, VisionRequestFailed
from docguard.llm_provider import LlmJsonResult
from docguard.models import VISION_PDF
from docguard.vision_extraction import (
    VISION_SYSTEM_PROMPT,
    VisionExtractor,
    build_vision_extractor,
    parse_vision_payload,
)


def _success(raw: str) -> LlmJsonResult:
    return LlmJsonResult(status="success", raw_response=raw, warnings=[], model="claude-test")


class TestVisionExtractor(unittest.TestCase):
    def setUp(self):
        self.extractor = VisionExtractor(provider="anthropic", api_key="test-key", model="claude-test", timeout_seconds=3)

    def test_success_maps_full_text_tables_and_provenance(self):
        raw = json.dumps({
            "summary": "Invoice summary",
            "full_text": "Invoice INV-9 for PO SG-001",
            "tables": [{"title": "Lines", "headers": ["Item", "Qty"], "rows": [["Widget", 4]]}],
        })
        with patch("docguard.vision_extraction.extract_pdf_with_anthropic", return_value=_success(raw)) as mocked:
            result = self.extractor.extract("invoice.pdf", b"%PDF-1.4")

        self.assertEqual(result.full_text, "Invoice INV-9 for PO SG-001")
        self.assertEqual(result.summary, "Invoice summary")
        self.assertEqual(result.tables[0].rows, [["Widget", "4"]])
        self.assertEqual(result.provenance.route, VISION_PDF)
        self.assertEqual(result.provenance.model, "claude-test")
        self.assertIsNotNone(result.provenance.latency_ms)
        self.assertEqual(mocked.call_args.args[3], VISION_SYSTEM_PROMPT)
        self.assertEqual(mocked.call_args.kwargs["timeout"], 3)

    def test_missing_full_text_falls_back_to_summary_and_tables_default_empty(self):
        with patch("docguard.vision_extraction.extract_pdf_with_anthropic", return_value=_success('{"summary": "Only summary"}')):
            result = self.extractor.extract("memo.pdf", b"%PDF")

        self.assertEqual(result.full_text, "Only summary")
        self.assertEqual(result.tables, [])

    def test_empty_response_raises_empty_vision_response(self):
        empty = LlmJsonResult(status="error", raw_response="{}", warnings=["no text"], error_kind="empty")
        with patch("docguard.vision_extraction.extract_pdf_with_anthropic", return_value=empty):
            with self.assertRaises(EmptyVisionResponse):
                self.extractor.extract("memo.pdf", b"%PDF")

    def test_non_json_raises_invalid_vision_json_with_parse_error(self):
        with patch("docguard.vision_extraction.extract_pdf_with_anthropic", return_value=_success("Here is your summary!")):
            with self.assertRaises(InvalidVisionJSON) as ctx:
                self.extractor.extract("memo.pdf", b"%PDF")

        self.assertIn("Expecting value", ctx.exception.parse_error)

    def test_request_failure_raises_vision_request_failed(self):
        failed = LlmJsonResult(status="error", raw_response=None, warnings=["HTTP 500"], error_kind="request")
        with patch("docguard.vision_extraction.extract_pdf_with_anthropic", return_value=failed):
            with self.assertRaises(VisionRequestFailed):
                self.extractor.extract("memo.pdf", b"%PDF")

    def test_openai_provider_dispatches_to_openai_client(self):
        extractor = VisionExtractor(provider="openai", api_key="k", model="gpt-test")
        with patch("docguard.vision_extraction.extract_pdf_with_openai", return_value=_success('{"full_text": "x"}')) as mocked:
            extractor.extract("a.pdf", b"%PDF")

        self.assertTrue(mocked.called)


def test_parse_vision_payload_accepts_fenced_json():
    full_text, _summary, tables = parse_vision_payload("a.pdf", '```json\n{"full_text": "hello", "tables": []}\n```')

    assert full_text == "hello"
    assert tables == []


@pytest.mark.parametrize("raw", ['["not", "an", "object"]', '{"tables": "nope"}', '{"full_text": "x", "tables": [{"rows": "bad"}]}'])
def test_parse_vision_payload_rejects_wrong_shapes(raw):
    with pytest.raises(InvalidVisionJSON):
        parse_vision_payload("a.pdf", raw)


def test_factory_returns_none_without_credentials(make_settings, caplog):
    settings = make_settings(vision_provider="")

    with caplog.at_level("WARNING"):
        extractor = build_vision_extractor(settings)

    assert extractor is None
    assert "Vision extraction unavailable" in caplog.text


def test_factory_builds_extractor_for_configured_key(make_settings):
    settings = make_settings(vision_provider="", openai_api_key="sk-test", vision_model="gpt-custom")

    extractor = build_vision_extractor(settings)

    assert extractor is not None
    assert extractor.provider == "openai"
    assert extractor.model == "gpt-custom"
