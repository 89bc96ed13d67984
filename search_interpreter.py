"""
Natural-language search interpretation.

A text-completion provider turns "iPhone nuevo por menos de 10000" into
structured filters. Whatever the provider sends back is coerced field by
field; if nothing usable comes back, the whole query becomes a plain
title search.
"""

import json
import logging
import os
from typing import Any, Callable, Dict, Optional, Tuple

from openai import OpenAI
from pydantic import BaseModel, Field

from catalog import ProductFilters, get_category
from schemas import CATEGORIES, CATEGORY_IDS, CONDITIONS, Condition

logger = logging.getLogger(__name__)

OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

# Half-widths of the price bands, as a fraction of the stated price
AROUND_PRICE_RATIO = 0.10
EXACT_PRICE_RATIO = 0.05

# prompt, output JSON schema -> dict or JSON text
Completion = Callable[[str, Dict[str, Any]], Any]

_CONDITION_ALIASES = {
    "nuevo": "Nuevo", "nueva": "Nuevo", "new": "Nuevo",
    "usado": "Usado", "usada": "Usado", "used": "Usado",
}


class SearchQueryOutput(BaseModel):
    search_term: Optional[str] = Field(
        None, description="The core product or item the user is looking for. Concise and generic."
    )
    category: Optional[str] = Field(
        None,
        description=f"The suggested product category. Must be one of: {', '.join(CATEGORY_IDS)}",
        json_schema_extra={"enum": CATEGORY_IDS},
    )
    condition: Optional[Condition] = Field(None, description="The condition of the product if mentioned.")
    min_price: Optional[float] = Field(None, description="The minimum price extracted from the query.")
    max_price: Optional[float] = Field(None, description="The maximum price extracted from the query.")


def price_band(price: float, ratio: float = AROUND_PRICE_RATIO) -> Tuple[float, float]:
    delta = price * ratio
    return round(price - delta, 2), round(price + delta, 2)


PROMPT_TEMPLATE = """You are an intelligent search query interpreter for a Tijuana-based marketplace app. Your task is to analyze the user's search query and break it down into structured search parameters.

User Query: {query}

Analyze the query and extract the following information:
- search_term: the main item (e.g. "laptop", "bicicleta", "zapatos de mujer"), separate from modifiers like price, condition, or category.
- category: a relevant category, if it can be inferred. Available categories are: {categories}.
- condition: the product's condition, if specified (either "Nuevo" or "Usado").
- min_price and max_price, if mentioned:
  - For phrases like "less than 500 pesos" or "no more than 500", set max_price to 500.
  - For "more than 1000", set min_price to 1000.
  - For "around 2000", set a range of +/-{around:.0f}%: min_price {around_min:g}, max_price {around_max:g}.
  - If a single price is mentioned (e.g. "iPhone for 8000"), set min_price and max_price within +/-{exact:.0f}% of it.

Return a JSON object with only these keys. If a field is not present in the query, omit it. Be concise with the search_term."""


def build_prompt(query: str) -> str:
    around_min, around_max = price_band(2000, AROUND_PRICE_RATIO)
    return PROMPT_TEMPLATE.format(
        query=query,
        categories=", ".join(CATEGORY_IDS),
        around=AROUND_PRICE_RATIO * 100,
        around_min=around_min,
        around_max=around_max,
        exact=EXACT_PRICE_RATIO * 100,
    )


_client: Optional[OpenAI] = None


def _get_client() -> OpenAI:
    global _client
    if _client is None:
        _client = OpenAI()
    return _client


def openai_complete(prompt: str, output_schema: Dict[str, Any]) -> str:
    response = _get_client().chat.completions.create(
        model=OPENAI_MODEL,
        temperature=0,
        response_format={"type": "json_object"},
        messages=[
            {"role": "system", "content": "Reply with one JSON object matching this JSON schema:\n" + json.dumps(output_schema)},
            {"role": "user", "content": prompt},
        ],
    )
    return response.choices[0].message.content or ""


def _coerce_price(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        value = value.replace("$", "").replace(",", "").strip()
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    return price if price >= 0 else None


def _coerce_category(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if get_category(value.lower()):
        return value.lower()
    # providers sometimes answer with the display name
    return next((c.id for c in CATEGORIES if c.name.lower() == value.lower()), None)


def coerce_output(raw: Any) -> SearchQueryOutput:
    """Validate provider output against SearchQueryOutput, dropping bad fields."""
    if not isinstance(raw, dict):
        raise ValueError(f"expected a JSON object, got {type(raw).__name__}")

    term = raw.get("search_term")
    term = term.strip() if isinstance(term, str) else None
    condition = raw.get("condition")
    condition = _CONDITION_ALIASES.get(condition.strip().lower()) if isinstance(condition, str) else None

    min_price = _coerce_price(raw.get("min_price"))
    max_price = _coerce_price(raw.get("max_price"))
    if min_price is not None and max_price is not None and min_price > max_price:
        min_price, max_price = max_price, min_price

    return SearchQueryOutput(
        search_term=term or None,
        category=_coerce_category(raw.get("category")),
        condition=condition if condition in CONDITIONS else None,
        min_price=min_price,
        max_price=max_price,
    )


def interpret_search_query(query: str, complete: Optional[Completion] = None) -> SearchQueryOutput:
    """Interpret `query`, falling back to a plain search on the original text.

    Never raises: provider errors and unusable output both take the
    fallback path.
    """
    fallback = SearchQueryOutput(search_term=query) if query and query.strip() else SearchQueryOutput()
    if not query or not query.strip():
        return fallback

    complete = complete or openai_complete
    try:
        raw = complete(build_prompt(query), SearchQueryOutput.model_json_schema())
        if isinstance(raw, (str, bytes)):
            raw = json.loads(raw)
        result = coerce_output(raw)
    except Exception:
        logger.warning("Search interpretation failed for %r, using plain search", query, exc_info=True)
        return fallback

    if not result.model_dump(exclude_none=True):
        logger.info("Nothing extracted from %r, using plain search", query)
        return fallback
    return result


def filters_from_interpretation(output: SearchQueryOutput) -> ProductFilters:
    return ProductFilters(
        search_term=output.search_term,
        categories=[output.category] if output.category else None,
        conditions=[output.condition] if output.condition else None,
        min_price=output.min_price,
        max_price=output.max_price,
    )
