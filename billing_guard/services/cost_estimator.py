"""
Cost Estimator — prompt + model + billing mode → priced estimate
=================================================================

PURPOSE:
    Pure function used before every costed AI call. No side effects and
    never raises: malformed input degrades to a zero-or-positive estimate.

TOKEN APPROXIMATION:
    input_tokens = ceil(len(prompt) / 4)  (≈ 4 characters per English token)
    Only monotonicity and determinism are required, not exactness.

COST CALCULATION (USD per token):
    provider_cost = input_tokens × input_rate + output_tokens × output_rate
    platform_fee  = provider_cost × PLATFORM_FEE_FRACTION   (platform_managed only)
    total         = provider_cost + platform_fee

FALLBACK RATE:
    Models missing from RATE_TABLE are priced at FALLBACK_RATE, the most
    expensive known model (openai/gpt-4), so an unknown model never
    estimates cheaper than any known one.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from billing_guard.config import settings
from billing_guard.schemas.billing import BillingMode, CostEstimate

logger = logging.getLogger(__name__)

__all__ = [
    "TokenRate",
    "RATE_TABLE",
    "FALLBACK_RATE",
    "CHARS_PER_TOKEN",
    "DEFAULT_OUTPUT_TOKENS",
    "approximate_tokens",
    "get_rate",
    "estimate",
    "format_cost_message",
]

CHARS_PER_TOKEN = 4
DEFAULT_OUTPUT_TOKENS = 1000


@dataclass(frozen=True)
class TokenRate:
    input_usd: Decimal
    output_usd: Decimal


RATE_TABLE: Mapping[Tuple[str, str], TokenRate] = MappingProxyType({
    ("openai", "gpt-4"): TokenRate(Decimal("0.00003"), Decimal("0.00006")),
    ("openai", "gpt-4-turbo"): TokenRate(Decimal("0.00001"), Decimal("0.00003")),
    ("openai", "gpt-3.5-turbo"): TokenRate(Decimal("0.0000005"), Decimal("0.0000015")),
    ("gemini", "gemini-pro"): TokenRate(Decimal("0.0000005"), Decimal("0.0000015")),
    ("gemini", "gemini-ultra"): TokenRate(Decimal("0.000001"), Decimal("0.000002")),
})

FALLBACK_RATE: TokenRate = RATE_TABLE[("openai", "gpt-4")]


def approximate_tokens(text: Optional[str]) -> int:
    if not text:
        return 0
    return math.ceil(len(str(text)) / CHARS_PER_TOKEN)


def _coerce_tokens(value) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError):
        return 0


def get_rate(provider: str, model: str) -> TokenRate:
    rate = RATE_TABLE.get(((provider or "").lower(), (model or "").lower()))
    if rate is None:
        logger.debug("No rate for %s/%s — using fallback rate", provider, model)
        return FALLBACK_RATE
    return rate


def estimate(
    prompt_text: Optional[str],
    expected_output_tokens: int = DEFAULT_OUTPUT_TOKENS,
    provider: str = "openai",
    model: str = "gpt-4-turbo",
    billing_mode: BillingMode = BillingMode.BRING_YOUR_OWN_KEY,
    fee_fraction: Optional[Decimal] = None,
) -> CostEstimate:
    """Price one costed operation.

    Args:
        prompt_text: Full prompt sent to the provider.
        expected_output_tokens: Expected completion size; negatives count as 0.
        provider: Provider id, e.g. "openai" or "gemini".
        model: Model id; unknown models use FALLBACK_RATE.
        billing_mode: Mode the estimate is computed under.
        fee_fraction: Override for the platform fee fraction.

    Returns:
        CostEstimate with all amounts >= 0.
    """
    input_tokens = approximate_tokens(prompt_text)
    output_tokens = _coerce_tokens(expected_output_tokens)
    rate = get_rate(provider, model)

    provider_cost = input_tokens * rate.input_usd + output_tokens * rate.output_usd

    if billing_mode == BillingMode.PLATFORM_MANAGED:
        fraction = fee_fraction if fee_fraction is not None else settings.platform_fee_fraction
        platform_fee = provider_cost * fraction
    else:
        platform_fee = Decimal("0")

    return CostEstimate(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        provider_cost_usd=provider_cost,
        platform_fee_usd=platform_fee,
        total_cost_usd=provider_cost + platform_fee,
        billing_mode=billing_mode if isinstance(billing_mode, str) else str(billing_mode),
    )


def format_cost_message(
    cost: CostEstimate,
    trial_pages_used: Optional[int] = None,
    trial_pages_limit: Optional[int] = None,
) -> str:
    """Render a one-line cost message for confirmation dialogs."""
    if cost.billing_mode == BillingMode.TRIAL:
        return (
            f"Est. AI cost: ${cost.total_cost_usd:.2f} "
            f"(covered by trial - {trial_pages_used}/{trial_pages_limit} pages)"
        )

    if cost.billing_mode == BillingMode.BRING_YOUR_OWN_KEY:
        return f"Est. AI cost: ${cost.provider_cost_usd:.2f} (billed to your provider account)"

    if cost.billing_mode == BillingMode.PLATFORM_MANAGED:
        return (
            f"Est. AI cost: ${cost.total_cost_usd:.2f} "
            f"(provider: ${cost.provider_cost_usd:.2f} + platform fee ${cost.platform_fee_usd:.2f})"
        )

    return f"Est. AI cost: ${cost.total_cost_usd:.2f}"
