"""
Key / Credit Resolver
----------------------
Decides, before any paid call is made, which provider key serves a request
and whether the caller's credits pay for it.

Tiers, strictly in priority order:

  BYOK     caller supplied their own key     -> used as-is, never billed
  TEAM     caller's team has a shared key    -> team's provider, never billed
  CREDITS  server key                        -> caller must be signed in and
                                                hold enough credits

Credits are only taken after the work succeeds, through settle().
"""
from __future__ import annotations

from typing import Any, Optional

from loguru import logger
from pydantic import BaseModel, SecretStr

from studyrag.billing.actions import CreditAction, credit_action_for
from studyrag.billing.ledger import CreditLedger
from studyrag.billing.teams import TeamKeyStore
from studyrag.config import Settings
from studyrag.errors import InsufficientCreditsError, NoUsableKeyError, SignInRequiredError
from studyrag.schemas import KeySource, Provider


class KeyResolution(BaseModel):
    """Outcome of tier resolution for one request."""

    key_source: KeySource
    provider: Provider
    model: str
    api_key: SecretStr
    user_id: Optional[str] = None
    team_name: Optional[str] = None
    action: Optional[CreditAction] = None
    quantity: int = 1
    cost: int = 0
    balance: Optional[int] = None

    @property
    def needs_deduction(self) -> bool:
        return self.key_source == KeySource.CREDITS and self.cost > 0 and self.user_id is not None

    def credentials(self) -> dict[Provider, SecretStr]:
        return {self.provider: self.api_key}


class KeyResolver:
    """
    Usage:
        resolver = KeyResolver(settings, ledger, team_store)
        resolution = resolver.resolve(Provider.OPENAI, "gpt-4o-mini", user_id="u1")
        ...  # do the paid work with resolution.api_key
        resolver.settle(resolution, description="Asked a question")
    """

    def __init__(self, settings: Settings, ledger: CreditLedger, team_store: TeamKeyStore) -> None:
        self.settings = settings
        self.ledger = ledger
        self.team_store = team_store

    def resolve(
        self,
        provider: Provider,
        model: Optional[str] = None,
        user_id: Optional[str] = None,
        api_key: Optional[str] = None,
        action: Optional[CreditAction] = None,
        quantity: int = 1,
    ) -> KeyResolution:
        model = model or self.settings.default_model_for(provider)

        # 1. BYOK
        if api_key and api_key.strip():
            logger.info(f"[KeyResolver] Using caller-supplied key | {provider.value}/{model}")
            return KeyResolution(
                key_source=KeySource.BYOK,
                provider=provider,
                model=model,
                api_key=SecretStr(api_key.strip()),
                user_id=user_id,
            )

        # 2. Team
        if user_id:
            team_key = self.team_store.get_team_key(user_id)
            if team_key is not None:
                team_model = model if team_key.provider == provider else self.settings.default_model_for(team_key.provider)
                logger.info(
                    f"[KeyResolver] Using team key from {team_key.team_name!r} | "
                    f"{team_key.provider.value}/{team_model}"
                )
                return KeyResolution(
                    key_source=KeySource.TEAM,
                    provider=team_key.provider,
                    model=team_model,
                    api_key=team_key.api_key,
                    user_id=user_id,
                    team_name=team_key.team_name,
                )

        # 3. Server credits
        server_key = self.settings.server_key_for(provider)
        if server_key is None:
            fallback = self.settings.default_provider
            server_key = self.settings.server_key_for(fallback)
            if server_key is None:
                raise NoUsableKeyError()
            logger.info(
                f"[KeyResolver] No server key for {provider.value}; falling back to {fallback.value}"
            )
            provider, model = fallback, self.settings.default_model_for(fallback)

        if not user_id:
            raise SignInRequiredError()

        action = action or credit_action_for(provider, model)
        cost = self.ledger.get_cost(action) * quantity
        balance = self.ledger.get_balance(user_id)
        if balance < cost:
            logger.warning(f"[KeyResolver] {user_id} needs {cost} credits for {action.value}, has {balance}")
            raise InsufficientCreditsError(cost=cost, balance=balance, action=action.value)

        logger.info(
            f"[KeyResolver] Using server credits | {provider.value}/{model} | "
            f"{action.value} x{quantity} = {cost} (balance {balance})"
        )
        return KeyResolution(
            key_source=KeySource.CREDITS,
            provider=provider,
            model=model,
            api_key=server_key,
            user_id=user_id,
            action=action,
            quantity=quantity,
            cost=cost,
            balance=balance,
        )

    def settle(
        self,
        resolution: KeyResolution,
        description: str = "",
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[int]:
        """
        Take the credits for a request that has already succeeded.

        Returns the new balance, or None when nothing was deducted.  Ledger
        failures are logged and never raised: the caller's work is done.
        """
        if not resolution.needs_deduction or resolution.action is None:
            return None

        payload = {"description": description, **(metadata or {})}
        try:
            result = self.ledger.deduct(
                resolution.user_id, resolution.action, payload, quantity=resolution.quantity
            )
        except Exception as exc:
            logger.error(f"[KeyResolver] Deduction failed for {resolution.user_id}: {exc}")
            return None

        if not result.success:
            logger.error(
                f"[KeyResolver] Deduction refused for {resolution.user_id} after success: "
                f"{result.error} (balance {result.new_balance})"
            )
            return None
        return result.new_balance
