"""AI collaborator: monthly insight text and receipt scanning.

Both paths are best effort. Any failure or malformed model output degrades
to a fixed fallback so the calling ledger operation is never blocked.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date
from typing import Any, Optional

import google.generativeai as genai

from amounts import format_amount, parse_amount
from config import get_settings
from errors import ExternalDegraded, InvalidAmount
from schemas import MonthlyStats, ScannedReceipt


logger = logging.getLogger(__name__)

FALLBACK_INSIGHTS = [
    "Your highest expense category this month might need attention.",
    "Consider setting up a budget for better financial management.",
    "Track your recurring expenses to identify potential savings.",
]

RECEIPT_CATEGORIES = (
    "housing",
    "transportation",
    "groceries",
    "utilities",
    "entertainment",
    "food",
    "shopping",
    "healthcare",
    "education",
    "personal",
    "travel",
    "insurance",
    "gifts",
    "bills",
    "other-expense",
)

RECEIPT_PROMPT = f"""Analyze this receipt image and extract the following information in JSON format:
- Total amount (just the number)
- Date (in ISO format)
- Description or items purchased (brief summary)
- Merchant/store name
- Suggested category (one of: {",".join(RECEIPT_CATEGORIES)})

Only respond with valid JSON in this exact format:
{{"amount": number, "date": "ISO date string", "description": "string", "merchantName": "string", "category": "string"}}

If it's not a receipt, return an empty object."""

_FENCE = re.compile(r"```(?:json)?\n?")


def strip_code_fences(text: str) -> str:
    return _FENCE.sub("", text).strip()


class GeminiClient:
    def __init__(
        self, api_key: Optional[str] = None, model_name: Optional[str] = None
    ) -> None:
        settings = get_settings()
        api_key = api_key or settings.gemini_api_key
        if not api_key:
            raise ExternalDegraded("Gemini API key is not configured")
        genai.configure(api_key=api_key)
        self._model = genai.GenerativeModel(
            model_name=model_name or settings.gemini_model
        )

    def generate(self, content: Any) -> str:
        response = self._model.generate_content(content)
        return response.text


class _UsesClient:
    def __init__(self, client: Optional[Any] = None) -> None:
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = GeminiClient()
        return self._client


class InsightGenerator(_UsesClient):
    def prompt(self, stats: MonthlyStats, month_name: str) -> str:
        categories = ", ".join(
            f"{name}: {format_amount(cents)}"
            for name, cents in stats.by_category.items()
        )
        net = stats.income_cents - stats.expense_cents
        return f"""Analyze this financial data and provide 3 concise, actionable insights.
Focus on spending patterns and practical advice.
Keep it friendly and conversational.

Financial Data for {month_name}:
- Total Income: {format_amount(stats.income_cents)}
- Total Expenses: {format_amount(stats.expense_cents)}
- Net Income: {format_amount(net)}
- Expense Categories: {categories or "none"}

Format the response as a JSON array of strings, like this:
["insight 1", "insight 2", "insight 3"]"""

    def generate(self, stats: MonthlyStats, month_name: str) -> list[str]:
        try:
            text = self._get_client().generate(self.prompt(stats, month_name))
            data = json.loads(strip_code_fences(text))
        except Exception as exc:
            logger.warning(f"insights_fallback: month={month_name} error={exc!r}")
            return list(FALLBACK_INSIGHTS)
        if (
            not isinstance(data, list)
            or not data
            or not all(isinstance(item, str) and item.strip() for item in data)
        ):
            logger.warning(f"insights_fallback: month={month_name} error=malformed")
            return list(FALLBACK_INSIGHTS)
        return [item.strip() for item in data]


class ReceiptScanner(_UsesClient):
    def scan(self, content: bytes, mime_type: str) -> ScannedReceipt:
        try:
            text = self._get_client().generate(
                [{"mime_type": mime_type, "data": content}, RECEIPT_PROMPT]
            )
            data = json.loads(strip_code_fences(text))
        except Exception as exc:
            logger.warning(f"receipt_scan_fallback: error={exc!r}")
            return ScannedReceipt()
        if not isinstance(data, dict) or not data:
            return ScannedReceipt()
        return _receipt_from_payload(data)


def _receipt_from_payload(data: dict[str, Any]) -> ScannedReceipt:
    try:
        amount_cents = parse_amount(str(data.get("amount", "")))
    except InvalidAmount:
        amount_cents = 0

    scanned_date: Optional[date] = None
    raw_date = data.get("date")
    if isinstance(raw_date, str) and raw_date:
        try:
            scanned_date = date.fromisoformat(raw_date[:10])
        except ValueError:
            scanned_date = None

    category = str(data.get("category") or "").strip().lower()
    if category not in RECEIPT_CATEGORIES:
        category = "other-expense"

    return ScannedReceipt(
        amount_cents=amount_cents,
        date=scanned_date,
        description=str(data.get("description") or "").strip(),
        merchant_name=str(data.get("merchantName") or "").strip(),
        category=category,
    )
