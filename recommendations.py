"""
AI analytics for a machine.

Machine state is summarized as plain text and sent to an OpenAI-compatible chat completion endpoint, which is
asked to answer in JSON. Replies are parsed leniently: the whole text first, then the first {...} block. The
performance numbers themselves are computed here from salesHistory; only the commentary comes from the model.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import openai

import config
from errors import ConfigurationError, ExternalServiceError, ValidationError
from inventory import get_machine
from schemas import Machine, utcnow

logger = logging.getLogger(__name__)

TIME_RANGES = {"week": 7, "month": 30, "quarter": 90, "year": 365}

RECOMMENDATION_CATEGORIES = ("pricing", "inventory", "restock", "location", "maintenance")

RECOMMENDATIONS_SYSTEM_PROMPT = """\
You are an analyst for a vending machine operator. Given the state of one machine, suggest concrete actions
that would increase revenue or reduce waste.

Respond with a single JSON object and nothing else, shaped exactly like:
{"recommendations": [{"recommendation": "<short action>", "reasoning": "<one or two sentences>",
"priority": <1 (urgent) to 5 (nice to have)>, "category": "<pricing|inventory|restock|location|maintenance>"}]}
Give between three and five recommendations.
"""

INSIGHTS_SYSTEM_PROMPT = """\
You are an analyst for a vending machine operator. Given a machine's performance over two consecutive periods,
explain in at most three sentences what changed and what the operator should watch.

Respond with a single JSON object and nothing else: {"insights": "<text>"}
"""


class CompletionClient:
    """Chat completion client for OpenAI or any endpoint that speaks its API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = config.OPENAI_BASE_URL,
        model: str = config.OPENAI_MODEL,
        timeout: float = config.AI_TIMEOUT_SECONDS,
        http_client: Optional[httpx.Client] = None,
    ):
        self.model = model
        # one attempt per request; failures map to a 502
        self.client = openai.OpenAI(
            api_key=api_key,
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            max_retries=0,
            http_client=http_client,
        )

    def complete(self, system_prompt: str, user_prompt: str, temperature: float = 0.4) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=temperature,
            )
        except openai.APIStatusError as e:
            logger.error("Completion service answered %s: %s", e.status_code, str(e)[:200])
            raise ExternalServiceError(f"Completion service returned {e.status_code}") from e
        except openai.APIError as e:
            logger.error("Completion service call failed: %s", e)
            raise ExternalServiceError("Completion service unavailable") from e

        if not response.choices:
            raise ExternalServiceError("Unexpected completion response", raw=response.model_dump_json()[:2000])
        return response.choices[0].message.content or ""


def get_completion_client() -> CompletionClient:
    if not config.OPENAI_API_KEY:
        raise ConfigurationError("AI service is not configured (OPENAI_API_KEY is missing)")
    return CompletionClient(
        api_key=config.OPENAI_API_KEY,
        base_url=config.OPENAI_BASE_URL,
        model=config.OPENAI_MODEL,
        timeout=config.AI_TIMEOUT_SECONDS,
    )


def extract_json(text: str) -> Any:
    """Parse a model reply that should be JSON but may be wrapped in prose or code fences."""
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        pass
    start = text.find("{") if text else -1
    end = text.rfind("}") if text else -1
    if start != -1 and end > start:
        try:
            return json.loads(text[start:end + 1])
        except ValueError:
            pass
    raise ExternalServiceError("AI response was not valid JSON", raw=text)


def build_machine_summary(machine: Machine) -> str:
    lines = [
        f"Machine {machine.id} ({machine.name}) at {machine.location}.",
        f"Lifetime revenue: {machine.total_revenue:.2f}. Uncollected cash: {machine.active_revenue:.2f}.",
        f"Cash box full: {'yes' if machine.is_cash_full else 'no'}. Stock full: {'yes' if machine.is_stock_full else 'no'}.",
        "Slots:",
    ]
    for slot in machine.content:
        lines.append(
            f"- {slot.key}: {slot.name}, {slot.amount} in stock, cost {slot.original_price:.2f}, "
            f"price {slot.retail_price:.2f}, expires {slot.expiry_date}"
        )

    top = sorted(machine.total_sales.items(), key=lambda item: item[1], reverse=True)[:5]
    if top:
        lines.append("Top sellers (units, lifetime):")
        lines.extend(f"- {name}: {units}" for name, units in top)
    else:
        lines.append("No sales recorded yet.")

    recent = machine.sales_history[-10:]
    if recent:
        lines.append("Most recent sales:")
        for sale in reversed(recent):
            lines.append(f"- {sale.date.isoformat()}: {sale.name} for {sale.retail_price:.2f}")
    return "\n".join(lines)


def _normalize_recommendation(item: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(item, dict) or not item.get("recommendation"):
        return None
    try:
        priority = int(item.get("priority", 3))
    except (TypeError, ValueError):
        priority = 3
    category = str(item.get("category", "inventory")).lower()
    return {
        "recommendation": str(item["recommendation"]),
        "reasoning": str(item.get("reasoning", "")),
        "priority": min(max(priority, 1), 5),
        "category": category if category in RECOMMENDATION_CATEGORIES else "inventory",
    }


def get_machine_recommendations(machine_id: str, client: Optional[CompletionClient] = None) -> dict:
    client = client or get_completion_client()
    machine = get_machine(machine_id)

    reply = client.complete(RECOMMENDATIONS_SYSTEM_PROMPT, build_machine_summary(machine))
    parsed = extract_json(reply)
    items = parsed.get("recommendations") if isinstance(parsed, dict) else parsed
    if not isinstance(items, list):
        raise ExternalServiceError("AI response did not contain recommendations", raw=reply)

    recommendations = [rec for rec in map(_normalize_recommendation, items) if rec is not None]
    logger.info("Generated %s recommendations for machine %s", len(recommendations), machine_id)
    return {
        "machineId": machine.id,
        "generatedAt": utcnow().isoformat(),
        "recommendations": recommendations,
    }


# Performance metrics

def _as_utc(value: datetime) -> datetime:
    # pymongo hands back naive datetimes that are UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _comparison(current: float, previous: float) -> dict:
    if previous:
        change = (current - previous) / previous * 100
    else:
        change = 100.0 if current > 0 else 0.0
    return {"current": round(current, 2), "previous": round(previous, 2), "percentChange": round(change, 2)}


def compute_performance_metrics(machine: Machine, time_range: str, now: Optional[datetime] = None) -> dict:
    """Compare the last `time_range` window with the window before it."""
    if time_range not in TIME_RANGES:
        raise ValidationError(f"Invalid time range! Use one of: {', '.join(TIME_RANGES)}")
    now = _as_utc(now or utcnow())
    length = timedelta(days=TIME_RANGES[time_range])
    current_start = now - length
    previous_start = current_start - length

    current_sales: List = []
    previous_sales: List = []
    for sale in machine.sales_history:
        when = _as_utc(sale.date)
        if current_start < when <= now:
            current_sales.append(sale)
        elif previous_start < when <= current_start:
            previous_sales.append(sale)

    current_revenue = sum(sale.retail_price for sale in current_sales)
    previous_revenue = sum(sale.retail_price for sale in previous_sales)
    current_units = len(current_sales)
    previous_units = len(previous_sales)

    # restocks are not logged, so stock at the end of the previous window is estimated as on hand + sold since
    on_hand = sum(slot.amount for slot in machine.content)
    current_turnover = current_units / (current_units + on_hand) if current_units + on_hand else 0.0
    previous_on_hand = on_hand + current_units
    previous_turnover = (
        previous_units / (previous_units + previous_on_hand) if previous_units + previous_on_hand else 0.0
    )

    units_by_name: Dict[str, int] = {}
    for sale in current_sales:
        units_by_name[sale.name] = units_by_name.get(sale.name, 0) + 1
    if units_by_name:
        name, units = max(units_by_name.items(), key=lambda item: item[1])
        top_seller = {"name": name, "units": units}
    else:
        top_seller = {"name": "No data", "units": 0}

    return {
        "machineId": machine.id,
        "timeRange": time_range,
        "topSeller": top_seller,
        "monthlyComparisons": {
            "revenue": _comparison(current_revenue, previous_revenue),
            "sales": _comparison(current_units, previous_units),
            "averageTicket": _comparison(
                current_revenue / current_units if current_units else 0.0,
                previous_revenue / previous_units if previous_units else 0.0,
            ),
            "stockTurnover": _comparison(current_turnover, previous_turnover),
        },
    }


def get_performance_metrics(machine_id: str, time_range: str, client: Optional[CompletionClient] = None) -> dict:
    client = client or get_completion_client()
    machine = get_machine(machine_id)
    metrics = compute_performance_metrics(machine, time_range)

    prompt = (
        f"{build_machine_summary(machine)}\n\n"
        f"Period length: {time_range}.\n"
        f"Comparison with the previous period: {json.dumps(metrics['monthlyComparisons'])}\n"
        f"Top seller this period: {metrics['topSeller']['name']} ({metrics['topSeller']['units']} units)."
    )
    reply = client.complete(INSIGHTS_SYSTEM_PROMPT, prompt)
    parsed = extract_json(reply)
    insights = parsed.get("insights") if isinstance(parsed, dict) else None
    if not isinstance(insights, str):
        raise ExternalServiceError("AI response did not contain insights", raw=reply)

    metrics["aiInsights"] = insights
    return metrics
