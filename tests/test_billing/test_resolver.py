"""Tests for BYOK > team > credits key resolution and post-success settlement."""

from unittest.mock import MagicMock

import pytest

from studyrag.billing.actions import CreditAction
from studyrag.billing.ledger import DeductionResult
from studyrag.billing.resolver import KeyResolver
from studyrag.config import Settings
from studyrag.errors import InsufficientCreditsError, NoUsableKeyError, SignInRequiredError
from studyrag.schemas import KeySource, Provider

from conftest import SERVER_OPENAI_KEY, TEAM_KEY


@pytest.fixture
def spy_ledger(ledger):
    """Real ledger behaviour with call tracking."""
    spy = MagicMock(wraps=ledger)
    return spy


@pytest.fixture
def resolver(settings, spy_ledger, team_store):
    return KeyResolver(settings, spy_ledger, team_store)


class TestResolve:

    def test_byok_wins_and_never_touches_ledger(self, resolver, spy_ledger):
        resolution = resolver.resolve(Provider.OPENAI, "gpt-4o", user_id="tara", api_key="sk-user-own-key-999")

        assert resolution.key_source == KeySource.BYOK
        assert resolution.api_key.get_secret_value() == "sk-user-own-key-999"
        assert not resolution.needs_deduction
        assert spy_ledger.method_calls == []

    def test_byok_works_for_anonymous_callers(self, resolver):
        resolution = resolver.resolve(Provider.ANTHROPIC, None, api_key="sk-ant-user-key-0001")
        assert resolution.key_source == KeySource.BYOK
        assert resolution.provider == Provider.ANTHROPIC
        assert resolution.model == "claude-haiku-4-5-20251001"

    def test_team_key_used_without_billing(self, resolver, spy_ledger):
        resolution = resolver.resolve(Provider.OPENAI, "gpt-4", user_id="tim")

        assert resolution.key_source == KeySource.TEAM
        assert resolution.team_name == "Biology Club"
        assert resolution.api_key.get_secret_value() == TEAM_KEY
        assert spy_ledger.method_calls == []

    def test_team_provider_overrides_requested_provider(self, resolver):
        resolution = resolver.resolve(Provider.ANTHROPIC, "claude-sonnet-4-6", user_id="tara")
        assert resolution.provider == Provider.OPENAI
        assert resolution.model == "gpt-4o-mini"

    def test_credits_mode_computes_cost(self, resolver):
        resolution = resolver.resolve(Provider.OPENAI, "gpt-4o", user_id="alice")

        assert resolution.key_source == KeySource.CREDITS
        assert resolution.api_key.get_secret_value() == SERVER_OPENAI_KEY
        assert resolution.action == CreditAction.ASK_GPT4O
        assert resolution.cost == 5
        assert resolution.balance == 100
        assert resolution.needs_deduction

    def test_keyless_team_member_falls_through_to_credits(self, resolver, ledger):
        ledger.add("kyle", 10)
        assert resolver.resolve(Provider.OPENAI, "gpt-3.5-turbo", user_id="kyle").key_source == KeySource.CREDITS

    def test_insufficient_credits_discloses_cost_and_balance(self, resolver):
        with pytest.raises(InsufficientCreditsError) as excinfo:
            resolver.resolve(Provider.OPENAI, "gpt-4o", user_id="bob")

        assert excinfo.value.cost == 5
        assert excinfo.value.balance == 2
        body = excinfo.value.to_dict()
        assert body["required"] == 5 and body["balance"] == 2

    def test_quantity_multiplies_cost(self, resolver):
        resolution = resolver.resolve(
            Provider.OPENAI, "text-embedding-3-large", user_id="alice",
            action=CreditAction.UPLOAD_DOCUMENT_PAGE, quantity=12,
        )
        assert resolution.cost == 12
        with pytest.raises(InsufficientCreditsError):
            resolver.resolve(
                Provider.OPENAI, None, user_id="bob",
                action=CreditAction.UPLOAD_DOCUMENT_PAGE, quantity=3,
            )

    def test_anonymous_credits_request_needs_sign_in(self, resolver):
        with pytest.raises(SignInRequiredError):
            resolver.resolve(Provider.OPENAI, "gpt-4o-mini")

    def test_missing_server_key_falls_back_to_default_provider(self, resolver):
        resolution = resolver.resolve(Provider.ANTHROPIC, "claude-sonnet-4-6", user_id="alice")
        assert resolution.provider == Provider.OPENAI
        assert resolution.model == "gpt-4o-mini"
        assert resolution.action == CreditAction.ASK_GPT4O

    def test_no_key_anywhere(self, ledger, team_store):
        resolver = KeyResolver(Settings(log_file=None), ledger, team_store)
        with pytest.raises(NoUsableKeyError) as excinfo:
            resolver.resolve(Provider.OPENAI, "gpt-4o", user_id="alice")
        assert excinfo.value.status_code == 401


class TestSettle:

    def test_deducts_exactly_once(self, resolver, spy_ledger):
        resolution = resolver.resolve(Provider.OPENAI, "gpt-4o", user_id="alice")

        assert resolver.settle(resolution, "asked") == 95
        spy_ledger.deduct.assert_called_once()
        assert spy_ledger.deduct.call_args.args[2]["description"] == "asked"

    def test_non_credit_modes_never_deduct(self, resolver, spy_ledger):
        resolution = resolver.resolve(Provider.OPENAI, "gpt-4o", user_id="tim")
        assert resolver.settle(resolution) is None
        spy_ledger.deduct.assert_not_called()

    def test_ledger_failure_is_logged_not_raised(self, settings, team_store, log_records):
        ledger = MagicMock()
        ledger.get_cost.return_value = 5
        ledger.get_balance.return_value = 50
        ledger.deduct.side_effect = RuntimeError("database unavailable")
        resolver = KeyResolver(settings, ledger, team_store)

        resolution = resolver.resolve(Provider.OPENAI, "gpt-4o", user_id="alice")

        assert resolver.settle(resolution) is None
        assert any(r["level"].name == "ERROR" for r in log_records)

    def test_refused_deduction_returns_none(self, settings, team_store):
        ledger = MagicMock()
        ledger.get_cost.return_value = 5
        ledger.get_balance.return_value = 5
        ledger.deduct.return_value = DeductionResult(success=False, new_balance=0, error="Insufficient credits")
        resolver = KeyResolver(settings, ledger, team_store)

        assert resolver.settle(resolver.resolve(Provider.OPENAI, "gpt-4o", user_id="alice")) is None
