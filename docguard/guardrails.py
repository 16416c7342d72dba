from __future__ import annotations

import json
import logging
import re
import unicodedata
from dataclasses import asdict, dataclass
from typing import Callable, Pattern

logger = logging.getLogger(__name__)

PROMPT_INJECTION = "prompt_injection"
INAPPROPRIATE = "inappropriate"
OFF_TOPIC = "off_topic"
BULK_EXTRACTION = "bulk_extraction"
SYSTEM_MANIPULATION = "system_manipulation"

HIGH = "high"
MEDIUM = "medium"
LOW = "low"

DEFAULT_BULK_FILE_THRESHOLD = 5


@dataclass(frozen=True)
class GuardrailContext:
    file_count: int = 0
    bulk_file_threshold: int = DEFAULT_BULK_FILE_THRESHOLD


@dataclass(frozen=True)
class GuardrailDecision:
    allowed: bool
    blocked_type: str | None = None
    severity: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class GuardrailRule:
    category: str
    severity: str
    reason: str
    predicate: Callable[[str, GuardrailContext], bool]

    def matches(self, message: str, context: GuardrailContext) -> bool:
        return self.predicate(message, context)


def _compile(patterns: list[str]) -> tuple[Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


def _matches_any(patterns: tuple[Pattern[str], ...], message: str) -> bool:
    return any(pattern.search(message) for pattern in patterns)


INJECTION_PATTERNS = _compile([
    r"\bignore\s+(?:all\s+|any\s+|the\s+|your\s+)?(?:previous|all|above|prior|earlier)\s+(?:instructions|prompts|rules|directions)",
    r"\bdisregard\s+(?:all\s+|any\s+|the\s+|your\s+)?(?:previous|prior|above|earlier)?\s*(?:instructions|prompts|rules)",
    r"\bforget\s+(?:everything|all|previous|your)\b",
    r"\byou\s+are\s+now\b",
    r"\b(?:here\s+are|follow|these\s+are)\s+(?:your\s+|my\s+)?new\s+instructions\b",
    r"\bnew\s+instructions\s*:",
    r"\bsystem\s*:?\s*role\b",
    r"\[system\]",
    r"\bpretend\s+(?:you'?re|you\s+are|to\s+be)\b",
    r"\bact\s+as\s+(?:if\s+you|an?\s+(?:ai|assistant|unrestricted|different|new)\b)",
    r"\byour\s+(?:system\s+)?prompt\b",
    r"\breveal\s+your\b",
    r"\bwhat\s+(?:are\s+)?your\s+instructions\b",
    r"\bbypass\s+your\b",
    r"\boverride\s+your\b",
    r"<\|im_start\|>",
    r"\{system\}",
])

INAPPROPRIATE_PATTERNS = _compile([
    r"\btell\s+me\s+(?:a\s+|some\s+)?jokes?\b",
    r"\b(?:something|anything)\s+funny\b",
    r"\badult\s+content\b",
    r"\b(?:nsfw|porn\w*|explicit\s+content)\b",
    r"\bwrite\s+(?:me\s+)?a\s+(?:poem|song|rap)\b",
])

OFF_TOPIC_PATTERNS = _compile([
    r"\b(?:weather|forecast|sunny|rainy)\b",
    r"\b(?:sports?|football|soccer|basketball|tennis|world\s+cup|olympics?)\b",
    r"\b(?:news|headlines?|current\s+events?)\b",
    r"\b(?:politics?|political|elections?|president|parliament)\b",
    r"\b(?:celebrit(?:y|ies)|actors?|actress(?:es)?|movie\s+stars?)\b",
    r"\b(?:movies?|films?|cinema|netflix|tv\s+shows?)\b",
    r"\b(?:recipes?|cooking|restaurants?)\b",
    r"\b(?:stock\s+market|crypto\w*|bitcoin)\b",
])

# Any of these keeps an off-topic keyword from blocking a question about the tenant's own data.
BUSINESS_CONTEXT_PATTERN = re.compile(
    r"\b(?:shipments?|deliver(?:y|ies)|tracking|orders?|po|invoices?|documents?|files?|uploads?|uploaded"
    r"|customers?|records?|reports?|revenue|sales|sell(?:s|ing)?|sold|suppliers?|vendors?|purchases?"
    r"|inventory|units?|costs?|prices?|margins?|budgets?|totals?|sheets?|spreadsheets?|quarters?|q[1-4]"
    r"|how\s+many)\b"
    r"|\b[a-z]{2,}-\d+\b",
    re.IGNORECASE,
)

BULK_PATTERNS = _compile([
    r"\bshow\s+(?:me\s+)?all\s+(?:the\s+|of\s+the\s+)?(?:customer|client|phone|email|address|password|credit|card)",
    r"\bexport\s+all\b",
    r"\bdump\s+(?:all|entire|whole|complete|the)\s+(?:\w+\s+)?(?:database|data|records)\b",
    r"\bgive\s+me\s+(?:all|every|(?:a\s+|the\s+)?complete\s+list\s+of)\s+(?:the\s+)?(?:customer|client|user|account)",
    r"\blist\s+(?:all|every)\s+(?:the\s+)?(?:password|credit|card|ssn|nric)",
    r"\bdownload\s+(?:all|entire|whole|the\s+entire|the\s+whole)\s+(?:\w+\s+)?database\b",
])

# Applied only once the scope holds many files.
STRICT_BULK_PATTERNS = _compile([
    r"\b(?:list|show|give|export|send|extract|copy|print|output)\b.*\b(?:all|every|each)\b.*"
    r"\b(?:e-?mails?|phone\s+numbers?|phones|addresses|contacts?|nric|ssn|passwords?)\b",
    r"\b(?:show|give|dump|export|print|download|copy|output)\b.*\b(?:entire|whole|complete|full)\s+"
    r"(?:dataset|data\s*set|spreadsheet|database|table|file|workbook)\b",
])

SYSTEM_PATTERNS = _compile([
    r"\baccess\s+(?:the\s+)?(?:server|database|system|admin|root)\b",
    r"\b(?:sudo|chmod|chown)\b",
    r"\brm\s+-rf\b",
    r"\bdrop\s+(?:table|database)\b",
    r"\bdelete\s+from\s+\w+",
    r"\binsert\s+into\s+\w+",
    r"\btruncate\s+table\b",
    r"\bunion\s+(?:all\s+)?select\b",
    r";\s*(?:select\s+.+\s+from|insert\s+into|update\s+\w+\s+set|delete\s+from)\b",
    r"\$\{.*\}",
    r"\beval\s*\(",
    r"\bexec\s*\(",
])


def _is_off_topic(message: str, _context: GuardrailContext) -> bool:
    if not _matches_any(OFF_TOPIC_PATTERNS, message):
        return False
    return BUSINESS_CONTEXT_PATTERN.search(message) is None


def _is_bulk_extraction(message: str, context: GuardrailContext) -> bool:
    if _matches_any(BULK_PATTERNS, message):
        return True
    if context.file_count >= context.bulk_file_threshold:
        return _matches_any(STRICT_BULK_PATTERNS, message)
    return False


def _pattern_rule(patterns: tuple[Pattern[str], ...]) -> Callable[[str, GuardrailContext], bool]:
    return lambda message, _context: _matches_any(patterns, message)


# Evaluated in this order; the first matching rule decides.
DEFAULT_RULES: tuple[GuardrailRule, ...] = (
    GuardrailRule(
        category=PROMPT_INJECTION,
        severity=HIGH,
        reason="I can only help with questions about your uploaded documents and tracking data.",
        predicate=_pattern_rule(INJECTION_PATTERNS),
    ),
    GuardrailRule(
        category=INAPPROPRIATE,
        severity=MEDIUM,
        reason=(
            "I'm designed to help with business document queries. Please ask about your uploaded files, "
            "tracking data, or business information."
        ),
        predicate=_pattern_rule(INAPPROPRIATE_PATTERNS),
    ),
    GuardrailRule(
        category=OFF_TOPIC,
        severity=LOW,
        reason=(
            "I can help you with questions about your uploaded documents, tracking data, orders, shipments, "
            "and business information. What would you like to know?"
        ),
        predicate=_is_off_topic,
    ),
    GuardrailRule(
        category=BULK_EXTRACTION,
        severity=HIGH,
        reason=(
            "For security reasons, I can answer specific queries but not export all records. "
            "Please ask about specific items (e.g., 'What's the status of PO-12345?')."
        ),
        predicate=_is_bulk_extraction,
    ),
    GuardrailRule(
        category=SYSTEM_MANIPULATION,
        severity=HIGH,
        reason="I can only help with questions about your uploaded documents.",
        predicate=_pattern_rule(SYSTEM_PATTERNS),
    ),
)


def normalize_message(message: str) -> str:
    normalized = unicodedata.normalize("NFKC", message or "")
    return re.sub(r"\s+", " ", normalized).strip().lower()


class GuardrailClassifier:
    def __init__(self, rules: tuple[GuardrailRule, ...] = DEFAULT_RULES):
        self.rules = rules

    def classify(self, message: str, context: GuardrailContext | None = None) -> GuardrailDecision:
        context = context or GuardrailContext()
        normalized = normalize_message(message)
        for rule in self.rules:
            if rule.matches(normalized, context):
                return GuardrailDecision(
                    allowed=False,
                    blocked_type=rule.category,
                    severity=rule.severity,
                    reason=rule.reason,
                )
        return GuardrailDecision(allowed=True)


def log_blocked_request(tenant_id: str, persona_id: str, message: str, decision: GuardrailDecision) -> dict:
    entry = {
        "tenant_id": tenant_id,
        "persona_id": persona_id,
        "message": (message or "")[:200],
        "blocked_type": decision.blocked_type,
        "severity": decision.severity,
    }
    logger.warning(
        "Guardrail blocked message tenant=%s persona=%s type=%s severity=%s message=%r",
        tenant_id,
        persona_id,
        decision.blocked_type,
        decision.severity,
        entry["message"],
    )
    return entry


CONTACT_INTENT_PATTERN = re.compile(r"\{\{contact_intent:(\{.*?\})\}\}\s*$", re.IGNORECASE | re.DOTALL)

OUTPUT_REDACTIONS: tuple[tuple[Pattern[str], str], ...] = (
    (re.compile(r"\b[A-Z]:\\[^\s]+"), "[FILE_PATH]"),
    (re.compile(r"(?<![\w/])/[^\s]*/(?:uploads|processed|temp|manifests)(?:/[^\s]*)?"), "[FILE_PATH]"),
    (
        re.compile(
            r"\b(?:192\.168\.\d{1,3}\.\d{1,3}|10\.\d{1,3}\.\d{1,3}\.\d{1,3}|172\.(?:1[6-9]|2\d|3[01])\.\d{1,3}\.\d{1,3})\b"
        ),
        "[IP_ADDRESS]",
    ),
    (re.compile(r"\bsk-[A-Za-z0-9_-]{8,}"), "[API_KEY]"),
    (re.compile(r"\bBearer\s+[A-Za-z0-9._~+/-]+=*"), "[AUTH_TOKEN]"),
)


@dataclass(frozen=True)
class SanitizedOutput:
    text: str
    contact_intent: dict | None = None

    def to_dict(self) -> dict:
        return asdict(self)


def extract_contact_intent(output: str) -> tuple[str, dict | None]:
    match = CONTACT_INTENT_PATTERN.search(output or "")
    if match is None:
        return output or "", None

    try:
        parsed = json.loads(match.group(1))
    except json.JSONDecodeError as exc:
        logger.warning("Failed to parse contact intent payload: %s", exc)
        parsed = None
    return output[: match.start()].rstrip(), parsed if isinstance(parsed, dict) else None


def sanitize_output(output: str) -> SanitizedOutput:
    """Mask infrastructure details a model reply must never expose."""

    text, contact_intent = extract_contact_intent(output)
    for pattern, replacement in OUTPUT_REDACTIONS:
        text = pattern.sub(replacement, text)
    return SanitizedOutput(text=text, contact_intent=contact_intent)


GROUNDING_RULES = """
GROUNDING RULES:
1. Use only information explicitly present in the uploaded files listed above.
2. If the information is not in the files, answer: "I don't have that information in the uploaded files."
3. Never invent PO numbers, dates, names, quantities or any other details.
4. If file content is garbled or unreadable, say so and share only the readable parts.
5. A file marked as unavailable could not be read; do not guess its contents.
6. You cannot access external systems, real-time information, or modify any data.
It is better to say "I don't know" than to make anything up.
""".strip()
