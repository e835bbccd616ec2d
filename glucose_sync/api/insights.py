"""AI trend summary of recent glucose data."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal

import openai
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from glucose_sync.data.glucose_repository import GlucoseRepository, get_glucose_repository
from glucose_sync.utils.config import Settings, get_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["insights"])

RAW_RANGES = {"24h": 24, "48h": 48}
TREND_RANGE_DAYS = {"7d": 7, "14d": 14, "30d": 30, "90d": 90}
RAW_READING_LIMIT = 150
MIN_RAW_READINGS = 3
MAX_TOKENS = 300

RAW_SYSTEM_PROMPT = (
    "Analyze these raw glucose logs (last {range}). Identify immediate patterns "
    "(spikes, drops). Format as bullet points."
)
TREND_SYSTEM_PROMPT = (
    "You are a diabetes expert. Compare these weekly glucose statistics for the last {range}. "
    "Identify if control is improving or worsening. Look for changes in variability "
    "(Standard Deviation) or Average. Highlight specific weeks that look best/worst. "
    "Format as concise bullet points '•'."
)


class InsightRequest(BaseModel):
    """Body of an analysis request."""

    range: Literal["24h", "48h", "7d", "14d", "30d", "90d"] = Field("48h", description="Time range to analyze")


class InsightResponse(BaseModel):
    analysis: str


class InsufficientDataError(Exception):
    """Raised when there is too little data to analyze."""


def _fmt(value: Any) -> str:
    return "n/a" if value is None else str(round(value))


def format_raw_readings(readings: List[Dict[str, Any]]) -> str:
    return "\n".join(
        f"- {r['measured_at'].isoformat()}: {_fmt(r['glucose_mgdl'])} mg/dL" for r in readings
    )


def format_weekly_stats(weeks: List[Dict[str, Any]]) -> str:
    return "\n".join(
        f"Week of {w['week'].date().isoformat()}: Avg {_fmt(w['avg'])}, Var {_fmt(w['stddev'])}, "
        f"Min {_fmt(w['min'])}, Max {_fmt(w['max'])} (Readings: {w['count']})"
        for w in weeks
    )


async def build_prompt(range_name: str, repo: GlucoseRepository) -> Dict[str, str]:
    """
    Build the system prompt and data block for a range.

    Raises:
        InsufficientDataError: When there is not enough data
    """
    now = datetime.now(timezone.utc)
    if range_name in RAW_RANGES:
        since = now - timedelta(hours=RAW_RANGES[range_name])
        readings = await repo.glucose_values_since(since, RAW_READING_LIMIT)
        if len(readings) < MIN_RAW_READINGS:
            raise InsufficientDataError("Insufficient data.")
        return {
            "system": RAW_SYSTEM_PROMPT.format(range=range_name),
            "data": format_raw_readings(readings),
        }

    since = now - timedelta(days=TREND_RANGE_DAYS[range_name])
    weeks = await repo.weekly_aggregates(since)
    if not weeks:
        raise InsufficientDataError("Insufficient data for trend analysis.")
    return {
        "system": TREND_SYSTEM_PROMPT.format(range=range_name),
        "data": format_weekly_stats(weeks),
    }


async def generate_analysis(system_prompt: str, data: str, settings: Settings) -> str:
    """
    Ask the chat completion model for a summary.

    Raises:
        ValueError: When no usable API key is configured
        openai.OpenAIError: On any API failure
    """
    if not settings.ai_enabled:
        raise ValueError("Missing API Key")
    client = openai.AsyncOpenAI(
        api_key=settings.openai_api_key.get_secret_value(),
        timeout=settings.openai_timeout_seconds,
    )
    response = await client.chat.completions.create(
        model=settings.openai_model,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": f"Data:\n{data}"},
        ],
        max_tokens=MAX_TOKENS,
    )
    choice = response.choices[0] if response.choices else None
    return (choice.message.content or "") if choice else ""


@router.post("/analyze", response_model=InsightResponse)
async def analyze(
    body: InsightRequest,
    settings: Settings = Depends(get_settings),
    repo: GlucoseRepository = Depends(get_glucose_repository),
) -> InsightResponse:
    """
    Summarize glucose trends for the requested range.

    Failures are reported in the analysis text with status 200.
    """
    logger.info("Analysis requested", extra={"log_type": "insights", "range": body.range})
    try:
        prompt = await build_prompt(body.range, repo)
    except InsufficientDataError as e:
        return InsightResponse(analysis=str(e))
    except Exception as e:
        logger.error(f"Could not load data for analysis: {e}", extra={"log_type": "insights_error"})
        return InsightResponse(analysis=f"AI Error: {e}")

    try:
        analysis = await generate_analysis(prompt["system"], prompt["data"], settings)
    except (ValueError, openai.OpenAIError) as e:
        logger.error(f"AI Error: {e}", extra={"log_type": "insights_error"})
        return InsightResponse(analysis=f"AI Error: {e}")
    return InsightResponse(analysis=analysis)
