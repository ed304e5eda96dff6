"""
AI classification for bank-statement transactions.

Talks to any OpenAI-compatible `/chat/completions` endpoint over httpx and
asks for a vendor name + expense category as structured JSON. Every
failure (not configured, HTTP error, unparseable reply) degrades to
`None`; callers fall back to what they already know.

Token usage is priced per model and recorded in the tenant
`ai_usage_events` collection so the dashboard can report total spend.
"""

import json
from typing import Optional, Sequence

import httpx
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel

from venue.config import settings
from venue.tenant import get_tenant_collection
from venue.utils import Logger, utc_now
from .rules import coerce_expense_category, normalize_vendor
from .schemas import EXPENSE_CATEGORIES

logger = Logger("venue.receipts.ai")

MODEL_PRICING_PER_1K_TOKENS = {
    "gpt-4o-mini": {"prompt": 0.00015, "completion": 0.0006},
    "gpt-4o-mini-2024-07-18": {"prompt": 0.00015, "completion": 0.0006},
    "gpt-4o": {"prompt": 0.0025, "completion": 0.01},
    "gpt-4.1-mini": {"prompt": 0.0004, "completion": 0.0016},
}

SYSTEM_PROMPT = (
    "You are an expert bookkeeper for a UK pub and hospitality business.\n"
    "You classify bank transactions into vendor names and expense categories.\n"
    "Common vendors include breweries, food wholesalers, HMRC, energy providers, "
    "local councils, insurers, waste management and payment processors.\n"
    "Transactions are in GBP. Use UK English in vendor names.\n"
    "Only respond with valid JSON matching the schema. Use null when genuinely unsure."
)


class ClassificationUsage(BaseModel):
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0


class ClassificationResult(BaseModel):
    vendor_name: Optional[str] = None
    expense_category: Optional[str] = None
    reasoning: Optional[str] = None
    confidence: Optional[int] = None
    suggested_rule_keywords: Optional[str] = None


class ClassificationOutcome(BaseModel):
    result: ClassificationResult
    usage: Optional[ClassificationUsage] = None


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    pricing = MODEL_PRICING_PER_1K_TOKENS.get(model, MODEL_PRICING_PER_1K_TOKENS["gpt-4o-mini"])
    cost = (prompt_tokens / 1000) * pricing["prompt"] + (completion_tokens / 1000) * pricing["completion"]
    return round(cost, 6)


def _extract_content(content) -> Optional[str]:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts).strip() or None
    return None


def _confidence(value) -> Optional[int]:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return None
    rounded = round(value)
    return rounded if 0 <= rounded <= 100 else None


def _short_text(value, limit: int) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed[:limit] if trimmed else None


class ReceiptClassifier:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.model = model or settings.openai_model
        self.timeout = timeout or settings.openai_timeout_seconds
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _build_prompt(
        self,
        details: str,
        amount_in: Optional[float],
        amount_out: Optional[float],
        transaction_type: Optional[str],
        direction: str,
        existing_vendor: Optional[str],
        existing_expense: Optional[str],
        categories: Sequence[str],
    ) -> str:
        if direction == "in":
            amount = amount_in or amount_out or 0
        else:
            amount = amount_out or amount_in or 0

        lines = [
            f"Transaction details: {details}",
            f"Amount: £{amount:.2f}",
            f"Transaction type: {transaction_type}" if transaction_type else None,
            f"Direction: {'Money in' if direction == 'in' else 'Money out'}",
            f"Existing vendor: {existing_vendor}" if existing_vendor else None,
            f"Existing expense category: {existing_expense}" if existing_expense else None,
            "Allowed expense categories:",
            *(f"- {c}" for c in categories),
            "",
            "Return JSON with keys vendor_name, expense_category, reasoning, "
            "confidence (0-100), suggested_rule_keywords (comma-separated keywords "
            "for matching this type of transaction). Use null where you are unsure.",
        ]
        return "\n".join(line for line in lines if line is not None)

    def _response_format(self, categories: Sequence[str]) -> dict:
        return {
            "type": "json_schema",
            "json_schema": {
                "name": "receipt_classification",
                "schema": {
                    "type": "object",
                    "properties": {
                        "vendor_name": {"type": ["string", "null"]},
                        "expense_category": {
                            "type": ["string", "null"],
                            "enum": [*categories, None],
                        },
                        "reasoning": {"type": ["string", "null"]},
                        "confidence": {"type": ["number", "null"]},
                        "suggested_rule_keywords": {"type": ["string", "null"]},
                    },
                    "required": ["vendor_name", "expense_category"],
                    "additionalProperties": False,
                },
            },
        }

    async def classify(
        self,
        details: str,
        amount_in: Optional[float] = None,
        amount_out: Optional[float] = None,
        transaction_type: Optional[str] = None,
        direction: str = "out",
        existing_vendor: Optional[str] = None,
        existing_expense: Optional[str] = None,
        categories: Sequence[str] = EXPENSE_CATEGORIES,
    ) -> Optional[ClassificationOutcome]:
        """Classify one transaction. Returns None when unavailable or on any failure."""
        if not self.enabled:
            logger.debug("OpenAI not configured; skipping classification")
            return None

        body = {
            "model": self.model,
            "temperature": 0.1,
            "max_tokens": 300,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": self._build_prompt(
                        details, amount_in, amount_out, transaction_type,
                        direction, existing_vendor, existing_expense, categories,
                    ),
                },
            ],
            "response_format": self._response_format(categories),
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(f"{self.base_url}/chat/completions", json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"OpenAI classification request failed: {e}")
            return None

        if resp.status_code >= 400:
            logger.error(f"OpenAI classification request failed ({resp.status_code}): {resp.text[:200]}")
            return None

        try:
            payload = resp.json()
        except ValueError:
            logger.error("OpenAI classification returned non-JSON payload")
            return None

        if not isinstance(payload, dict):
            logger.error("OpenAI classification payload is not an object")
            return None

        choices = payload.get("choices")
        first = choices[0] if isinstance(choices, list) and choices else None
        message = first.get("message") if isinstance(first, dict) else None
        content = _extract_content(message.get("content") if isinstance(message, dict) else None)
        if not content:
            logger.warning("OpenAI classification returned empty content")
            return None

        try:
            parsed = json.loads(content)
        except ValueError as e:
            logger.error(f"Failed to parse OpenAI classification response: {e}")
            return None
        if not isinstance(parsed, dict):
            logger.error("OpenAI classification response is not an object")
            return None

        result = ClassificationResult(
            vendor_name=normalize_vendor(parsed.get("vendor_name")),
            expense_category=coerce_expense_category(parsed.get("expense_category")),
            reasoning=_short_text(parsed.get("reasoning"), 200),
            confidence=_confidence(parsed.get("confidence")),
            suggested_rule_keywords=_short_text(parsed.get("suggested_rule_keywords"), 300),
        )

        usage = None
        raw_usage = payload.get("usage")
        if isinstance(raw_usage, dict):
            model = raw_usage.get("model") or payload.get("model") or self.model
            try:
                prompt_tokens = int(raw_usage.get("prompt_tokens") or 0)
                completion_tokens = int(raw_usage.get("completion_tokens") or 0)
                total_tokens = int(raw_usage.get("total_tokens") or prompt_tokens + completion_tokens)
            except (TypeError, ValueError):
                logger.warning("OpenAI classification returned unreadable usage; not recorded")
            else:
                usage = ClassificationUsage(
                    model=model,
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    total_tokens=total_tokens,
                    cost=calculate_cost(model, prompt_tokens, completion_tokens),
                )

        return ClassificationOutcome(result=result, usage=usage)


async def record_ai_usage(
    db: AsyncIOMotorDatabase,
    org_slug: str,
    usage: Optional[ClassificationUsage],
    context: str,
) -> None:
    """Store one usage event. A failed write is logged, never raised."""
    if usage is None:
        return
    try:
        await get_tenant_collection(db, org_slug, "ai_usage_events").insert_one(
            {"context": context, **usage.model_dump(), "created_at": utc_now()}
        )
    except Exception as e:
        logger.error(f"Failed to record OpenAI usage: {e}")
