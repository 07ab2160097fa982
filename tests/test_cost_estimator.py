"""
Cost Estimator Tests
====================

Token approximation, rate lookup with fallback, platform fee by billing
mode, monotonicity, and the display message.
"""

from decimal import Decimal

import pytest

from billing_guard.schemas.billing import BillingMode
from billing_guard.services.cost_estimator import (
    FALLBACK_RATE,
    RATE_TABLE,
    approximate_tokens,
    estimate,
    format_cost_message,
    get_rate,
)


class TestTokenApproximation:

    def test_four_chars_per_token_rounded_up(self):
        assert approximate_tokens("abcd") == 1
        assert approximate_tokens("abcde") == 2
        assert approximate_tokens("a" * 400) == 100

    def test_empty_prompt_is_zero(self):
        assert approximate_tokens("") == 0
        assert approximate_tokens(None) == 0


class TestRates:

    def test_known_model(self):
        assert get_rate("openai", "gpt-4-turbo") == RATE_TABLE[("openai", "gpt-4-turbo")]

    def test_lookup_is_case_insensitive(self):
        assert get_rate("OpenAI", "GPT-3.5-Turbo") == RATE_TABLE[("openai", "gpt-3.5-turbo")]

    def test_unknown_model_uses_fallback(self):
        assert get_rate("openai", "gpt-99") == FALLBACK_RATE

    def test_fallback_is_most_expensive_known_rate(self):
        for rate in RATE_TABLE.values():
            assert FALLBACK_RATE.input_usd >= rate.input_usd
            assert FALLBACK_RATE.output_usd >= rate.output_usd


class TestEstimate:

    def test_bring_your_own_key_has_no_platform_fee(self):
        """400 chars, 1000 output tokens on gpt-4-turbo."""
        est = estimate("x" * 400, 1000, "openai", "gpt-4-turbo", BillingMode.BRING_YOUR_OWN_KEY)
        assert est.input_tokens == 100
        assert est.output_tokens == 1000
        assert est.provider_cost_usd == Decimal("0.031")
        assert est.platform_fee_usd == 0
        assert est.total_cost_usd == Decimal("0.031")

    def test_platform_managed_adds_five_percent(self):
        est = estimate("x" * 400, 1000, "openai", "gpt-4-turbo", BillingMode.PLATFORM_MANAGED)
        assert est.platform_fee_usd == Decimal("0.00155")
        assert est.total_cost_usd == Decimal("0.03255")

    def test_trial_has_no_platform_fee(self):
        est = estimate("x" * 400, 1000, "openai", "gpt-4-turbo", BillingMode.TRIAL)
        assert est.platform_fee_usd == 0
        assert est.billing_mode == BillingMode.TRIAL

    def test_fee_fraction_override(self):
        est = estimate("x" * 400, 0, "openai", "gpt-4", BillingMode.PLATFORM_MANAGED, fee_fraction=Decimal("0.10"))
        assert est.provider_cost_usd == Decimal("0.003")
        assert est.platform_fee_usd == Decimal("0.0003")

    def test_empty_prompt_and_zero_output_is_free(self):
        est = estimate("", 0)
        assert est.total_cost_usd == 0
        assert est.input_tokens == 0

    def test_negative_output_tokens_count_as_zero(self):
        est = estimate("abcd", -50)
        assert est.output_tokens == 0
        assert est.total_cost_usd >= 0

    def test_garbage_output_tokens_do_not_raise(self):
        est = estimate("abcd", "lots")
        assert est.output_tokens == 0

    @pytest.mark.parametrize("mode", list(BillingMode))
    def test_longer_prompt_never_cheaper(self, mode):
        short = estimate("a" * 100, 500, "gemini", "gemini-pro", mode)
        long = estimate("a" * 1000, 500, "gemini", "gemini-pro", mode)
        assert long.total_cost_usd >= short.total_cost_usd

    def test_deterministic(self):
        assert estimate("same prompt", 10) == estimate("same prompt", 10)


class TestFormatCostMessage:

    def test_trial_message_shows_pages(self):
        est = estimate("x" * 400, 1000, billing_mode=BillingMode.TRIAL)
        msg = format_cost_message(est, 3, 10)
        assert "covered by trial" in msg
        assert "3/10 pages" in msg

    def test_byok_message_mentions_provider_account(self):
        est = estimate("x" * 400, 1000, billing_mode=BillingMode.BRING_YOUR_OWN_KEY)
        assert "billed to your provider account" in format_cost_message(est)

    def test_platform_message_splits_fee(self):
        est = estimate("x" * 4000, 2000, billing_mode=BillingMode.PLATFORM_MANAGED)
        msg = format_cost_message(est)
        assert "platform fee" in msg
        assert msg.startswith("Est. AI cost: $")
