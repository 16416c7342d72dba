from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib import error, request

logger = logging.getLogger(__name__)

OPENAI_RESPONSES_URL = "https://api.openai.com/v1/responses"
ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
GEMINI_URL_TEMPLATE = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent?key={api_key}"

DEFAULT_TIMEOUT_SECONDS = 60.0


@dataclass(frozen=True)
class LlmJsonResult:
    status: str
    raw_response: str | None
    warnings: list[str] = field(default_factory=list)
    error_kind: str | None = None
    model: str | None = None


def _post_json(url: str, payload: dict[str, Any], headers: dict[str, str], timeout: float) -> dict[str, Any]:
    body = json.dumps(payload).encode("utf-8")
    req = request.Request(url, data=body, headers=headers, method="POST")
    with request.urlopen(req, timeout=timeout) as response:
        response_body = response.read().decode("utf-8")
    return json.loads(response_body)


def _http_error_warning(provider_name: str, exc: error.HTTPError) -> str:
    response_excerpt = ""
    try:
        response_body = exc.read().decode("utf-8", errors="replace").strip()
    except Exception:  # noqa: BLE001
        response_body = ""

    if response_body:
        try:
            parsed = json.loads(response_body)
            if isinstance(parsed, dict):
                error_payload = parsed.get("error")
                if isinstance(error_payload, dict):
                    message = error_payload.get("message")
                    if isinstance(message, str) and message.strip():
                        response_excerpt = message.strip()
        except json.JSONDecodeError:
            response_excerpt = response_body[:200]

    if response_excerpt:
        return f"{provider_name} request failed with HTTP {exc.code}: {response_excerpt}"

    return f"{provider_name} request failed with HTTP {exc.code}."


def _collect_gemini_text(response_payload: dict[str, Any]) -> str | None:
    candidates = response_payload.get("candidates") or []
    if not candidates:
        return None

    parts = (candidates[0].get("content") or {}).get("parts") or []
    extracted: list[str] = []
    for part in parts:
        text = part.get("text") if isinstance(part, dict) else None
        if isinstance(text, str) and text.strip():
            extracted.append(text.strip())

    if extracted:
        return "\n".join(extracted)
    return None


def _collect_anthropic_text(response_payload: dict[str, Any]) -> str | None:
    blocks = response_payload.get("content") or []
    extracted = [
        block["text"].strip()
        for block in blocks
        if isinstance(block, dict)
        and block.get("type") == "text"
        and isinstance(block.get("text"), str)
        and block["text"].strip()
    ]
    if extracted:
        return "\n".join(extracted)
    return None


def _extract_openai_text(response_payload: dict[str, Any]) -> str | None:
    output_text = response_payload.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text.strip()

    extracted: list[str] = []
    for item in response_payload.get("output") or []:
        if not isinstance(item, dict) or not isinstance(item.get("content"), list):
            continue
        for part in item["content"]:
            if not isinstance(part, dict):
                continue
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                extracted.append(text.strip())

    if extracted:
        return "\n".join(extracted)
    return None


def _call_provider(
    provider_name: str,
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    timeout: float,
    collect_text: Callable[[dict[str, Any]], str | None],
    model: str,
) -> LlmJsonResult:
    try:
        response_payload = _post_json(url, payload, headers, timeout)
    except error.HTTPError as exc:
        return LlmJsonResult(
            status="error",
            raw_response=None,
            warnings=[_http_error_warning(provider_name, exc)],
            error_kind="request",
            model=model,
        )
    except Exception as exc:  # noqa: BLE001
        logger.debug("%s request failed: %s", provider_name, exc)
        return LlmJsonResult(
            status="error",
            raw_response=None,
            warnings=[f"{provider_name} request failed before receiving a response."],
            error_kind="request",
            model=model,
        )

    extracted_text = collect_text(response_payload)
    if extracted_text:
        return LlmJsonResult(status="success", raw_response=extracted_text, warnings=[], model=model)

    return LlmJsonResult(
        status="error",
        raw_response=json.dumps(response_payload),
        warnings=[f"{provider_name} response did not contain text content."],
        error_kind="empty",
        model=model,
    )


def _anthropic_headers(api_key: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "x-api-key": api_key,
        "anthropic-version": ANTHROPIC_VERSION,
    }


def _openai_headers(api_key: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {api_key}",
    }


def extract_pdf_with_anthropic(
    api_key: str,
    model: str,
    pdf_bytes: bytes,
    system_prompt: str,
    user_prompt: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    max_output_tokens: int = 8000,
) -> LlmJsonResult:
    pdf_b64 = base64.b64encode(pdf_bytes).decode("ascii")
    payload = {
        "model": model,
        "max_tokens": max_output_tokens,
        "system": system_prompt,
        "messages": [
            {
                "role": "user",
                "content": [
                    {
                        "type": "document",
                        "source": {"type": "base64", "media_type": "application/pdf", "data": pdf_b64},
                    },
                    {"type": "text", "text": user_prompt},
                ],
            }
        ],
    }
    return _call_provider(
        "Anthropic", ANTHROPIC_MESSAGES_URL, payload, _anthropic_headers(api_key), timeout, _collect_anthropic_text, model
    )


def extract_pdf_with_openai(
    api_key: str,
    model: str,
    pdf_bytes: bytes,
    system_prompt: str,
    user_prompt: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    max_output_tokens: int = 8000,
    filename: str = "document.pdf",
) -> LlmJsonResult:
    pdf_b64 = base64.b64encode(pdf_bytes).decode("ascii")
    payload = {
        "model": model,
        "instructions": system_prompt,
        "input": [
            {
                "role": "user",
                "content": [
                    {
                        "type": "input_file",
                        "filename": filename,
                        "file_data": f"data:application/pdf;base64,{pdf_b64}",
                    },
                    {"type": "input_text", "text": user_prompt},
                ],
            }
        ],
        "max_output_tokens": max_output_tokens,
        "text": {"format": {"type": "json_object"}},
    }
    return _call_provider(
        "OpenAI", OPENAI_RESPONSES_URL, payload, _openai_headers(api_key), timeout, _extract_openai_text, model
    )


def extract_pdf_with_gemini(
    api_key: str,
    model: str,
    pdf_bytes: bytes,
    system_prompt: str,
    user_prompt: str,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    max_output_tokens: int = 8000,
) -> LlmJsonResult:
    pdf_b64 = base64.b64encode(pdf_bytes).decode("ascii")
    payload = {
        "systemInstruction": {"parts": [{"text": system_prompt}]},
        "contents": [
            {
                "parts": [
                    {"inline_data": {"mime_type": "application/pdf", "data": pdf_b64}},
                    {"text": user_prompt},
                ]
            }
        ],
        "generationConfig": {
            "responseMimeType": "application/json",
            "maxOutputTokens": max_output_tokens,
        },
    }
    endpoint = GEMINI_URL_TEMPLATE.format(model=model, api_key=api_key)
    return _call_provider(
        "Gemini", endpoint, payload, {"Content-Type": "application/json"}, timeout, _collect_gemini_text, model
    )


def generate_text_with_openai(
    api_key: str,
    model: str,
    prompt: str,
    system_prompt: str | None = None,
    max_output_tokens: int = 1024,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> LlmJsonResult:
    payload: dict[str, Any] = {
        "model": model,
        "input": prompt,
        "max_output_tokens": max_output_tokens,
    }
    if system_prompt:
        payload["instructions"] = system_prompt
    return _call_provider(
        "OpenAI", OPENAI_RESPONSES_URL, payload, _openai_headers(api_key), timeout, _extract_openai_text, model
    )


def generate_text_with_gemini(
    api_key: str,
    model: str,
    prompt: str,
    system_prompt: str | None = None,
    max_output_tokens: int = 1024,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> LlmJsonResult:
    payload: dict[str, Any] = {
        "contents": [{"parts": [{"text": prompt}]}],
        "generationConfig": {
            "maxOutputTokens": max_output_tokens,
        },
    }
    if system_prompt:
        payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
    endpoint = GEMINI_URL_TEMPLATE.format(model=model, api_key=api_key)
    return _call_provider(
        "Gemini", endpoint, payload, {"Content-Type": "application/json"}, timeout, _collect_gemini_text, model
    )


def generate_text_with_anthropic(
    api_key: str,
    model: str,
    prompt: str,
    system_prompt: str | None = None,
    max_output_tokens: int = 1024,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> LlmJsonResult:
    payload: dict[str, Any] = {
        "model": model,
        "max_tokens": max_output_tokens,
        "messages": [{"role": "user", "content": prompt}],
    }
    if system_prompt:
        payload["system"] = system_prompt
    return _call_provider(
        "Anthropic", ANTHROPIC_MESSAGES_URL, payload, _anthropic_headers(api_key), timeout, _collect_anthropic_text, model
    )
