from __future__ import annotations

import json
import logging
from typing import Optional

from openai import OpenAI
from pydantic import TypeAdapter, ValidationError

from config import Settings, get_settings
from schemas import MonthlyStats

logger = logging.getLogger(__name__)

INSIGHT_COUNT = 3

FALLBACK_INSIGHTS = [
    "Your highest expense category this month might need attention.",
    "Consider setting up a budget for better financial management.",
    "Track your recurring expenses to identify potential savings.",
]

SYSTEM_PROMPT = (
    "You are a personal finance assistant. "
    "Given monthly aggregate figures, reply with ONLY a JSON array of exactly "
    f"{INSIGHT_COUNT} short, concise, actionable insights as strings. "
    "Keep the tone friendly and conversational."
)

_insights_adapter = TypeAdapter(list[str])


def _build_user_prompt(stats: MonthlyStats, month_label: str) -> str:
    return (
        f"Financial data for {month_label}:\n"
        f"{json.dumps(stats.as_amounts(), ensure_ascii=False)}\n"
        'Format: ["insight 1", "insight 2", "insight 3"]'
    )


def parse_insights(content: str) -> list[str]:
    """Extract the insight list from a model reply; raises ValueError."""
    start = content.find("[")
    end = content.rfind("]")
    if start == -1 or end == -1 or end < start:
        raise ValueError("Model did not return a JSON array")
    try:
        items = _insights_adapter.validate_json(content[start : end + 1])
    except ValidationError as exc:
        raise ValueError("Model returned a malformed insight list") from exc
    insights = [item.strip() for item in items if item and item.strip()]
    if len(insights) < INSIGHT_COUNT:
        raise ValueError(f"Expected {INSIGHT_COUNT} insights, got {len(insights)}")
    return insights[:INSIGHT_COUNT]


class InsightGenerator:
    """Best-effort insight text; every failure degrades to the fallback list."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[OpenAI] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._client = client

    def _get_client(self) -> Optional[OpenAI]:
        if self._client is None and self.settings.openai_api_key:
            self._client = OpenAI(
                api_key=self.settings.openai_api_key,
                timeout=self.settings.insights_timeout_secs,
                max_retries=1,
            )
        return self._client

    def generate(self, stats: MonthlyStats, month_label: str) -> list[str]:
        client = self._get_client()
        if client is None:
            return list(FALLBACK_INSIGHTS)
        try:
            resp = client.chat.completions.create(
                model=self.settings.insights_model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": _build_user_prompt(stats, month_label)},
                ],
                temperature=0.4,
                max_tokens=300,
            )
            content = resp.choices[0].message.content or ""
            return parse_insights(content)
        except Exception as exc:
            logger.warning(f"insights_fallback: month={month_label} error={exc!r}")
            return list(FALLBACK_INSIGHTS)
