"""
Credit Ledger
--------------
`CreditLedger` is the contract the resolver and pipeline bill against.
`InMemoryCreditLedger` is the local implementation used by the CLI, the API
server and the tests; it can be persisted to a JSON file.

Balances are integers and never go negative: deduct() is an atomic
"take N if balance >= N, otherwise refuse" under a lock.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from pydantic import BaseModel, Field

from studyrag.billing.actions import DEFAULT_CREDIT_COSTS, CreditAction
from studyrag.utils.helpers import load_json, save_json


class CreditAccount(BaseModel):
    user_id: str
    balance: int = Field(default=0, ge=0)


class DeductionResult(BaseModel):
    success: bool
    new_balance: int
    error: Optional[str] = None


class CreditTransaction(BaseModel):
    user_id: str
    amount: int                       # negative for usage, positive for grants
    balance_after: int
    action: Optional[str] = None
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CreditLedger(ABC):
    """Per-user integer credit balances plus the action cost table."""

    @abstractmethod
    def get_balance(self, user_id: str) -> int:
        ...

    @abstractmethod
    def get_cost(self, action: CreditAction | str) -> int:
        ...

    @abstractmethod
    def deduct(
        self,
        user_id: str,
        action: CreditAction | str,
        metadata: Optional[dict[str, Any]] = None,
        quantity: int = 1,
    ) -> DeductionResult:
        ...

    @abstractmethod
    def add(self, user_id: str, amount: int, reason: str = "") -> int:
        ...


class InMemoryCreditLedger(CreditLedger):
    """
    Thread-safe ledger held in memory, optionally backed by a JSON file.

    Usage:
        ledger = InMemoryCreditLedger.load("data/credits.json")
        ledger.add("user-1", 100, "starter credits")
        ledger.deduct("user-1", CreditAction.ASK_GPT4O)
        ledger.save()
    """

    def __init__(
        self,
        balances: Optional[dict[str, int]] = None,
        costs: Optional[dict[str, int]] = None,
        path: Optional[str | Path] = None,
    ) -> None:
        self._accounts: dict[str, CreditAccount] = {
            uid: CreditAccount(user_id=uid, balance=bal) for uid, bal in (balances or {}).items()
        }
        self._costs: dict[str, int] = {a.value: c for a, c in DEFAULT_CREDIT_COSTS.items()}
        if costs:
            self._costs.update({_action_key(a): int(c) for a, c in costs.items()})
        self._transactions: list[CreditTransaction] = []
        self.path = Path(path) if path else None
        self._lock = threading.Lock()

    # --- Reads ----------------------------------------------------------------

    def get_balance(self, user_id: str) -> int:
        with self._lock:
            account = self._accounts.get(user_id)
            return account.balance if account else 0

    def get_cost(self, action: CreditAction | str) -> int:
        """Cost of one unit of `action`; unknown actions are free."""
        return self._costs.get(_action_key(action), 0)

    def transactions(self, user_id: str, limit: int = 50) -> list[CreditTransaction]:
        """Most recent transactions first."""
        with self._lock:
            history = [t for t in self._transactions if t.user_id == user_id]
        return list(reversed(history))[:limit]

    # --- Writes ---------------------------------------------------------------

    def deduct(
        self,
        user_id: str,
        action: CreditAction | str,
        metadata: Optional[dict[str, Any]] = None,
        quantity: int = 1,
    ) -> DeductionResult:
        if quantity < 1:
            raise ValueError(f"quantity must be >= 1, got {quantity}")
        cost = self.get_cost(action) * quantity
        metadata = dict(metadata or {})

        with self._lock:
            account = self._accounts.setdefault(user_id, CreditAccount(user_id=user_id))
            if account.balance < cost:
                logger.warning(
                    f"[CreditLedger] Refused {_action_key(action)} x{quantity} for {user_id}: "
                    f"need {cost}, have {account.balance}"
                )
                return DeductionResult(
                    success=False,
                    new_balance=account.balance,
                    error="Insufficient credits",
                )
            account.balance -= cost
            self._transactions.append(
                CreditTransaction(
                    user_id=user_id,
                    amount=-cost,
                    balance_after=account.balance,
                    action=_action_key(action),
                    description=str(metadata.pop("description", "")),
                    metadata=metadata,
                )
            )
            new_balance = account.balance

        logger.info(
            f"[CreditLedger] Deducted {cost} from {user_id} ({_action_key(action)} x{quantity}) "
            f"| balance={new_balance}"
        )
        return DeductionResult(success=True, new_balance=new_balance)

    def add(self, user_id: str, amount: int, reason: str = "") -> int:
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")
        with self._lock:
            account = self._accounts.setdefault(user_id, CreditAccount(user_id=user_id))
            account.balance += amount
            self._transactions.append(
                CreditTransaction(
                    user_id=user_id,
                    amount=amount,
                    balance_after=account.balance,
                    description=reason,
                )
            )
            new_balance = account.balance
        logger.info(f"[CreditLedger] Added {amount} to {user_id} ({reason or 'grant'}) | balance={new_balance}")
        return new_balance

    # --- Persistence ----------------------------------------------------------

    def save(self, path: Optional[str | Path] = None) -> None:
        target = Path(path) if path else self.path
        if target is None:
            raise ValueError("No path given and ledger was not loaded from a file")
        with self._lock:
            payload = {
                "balances": {uid: a.balance for uid, a in self._accounts.items()},
                "costs": dict(self._costs),
                "transactions": [t.model_dump(mode="json") for t in self._transactions],
            }
        save_json(payload, target)
        logger.debug(f"[CreditLedger] Saved {len(payload['balances'])} account(s) -> {target}")

    @classmethod
    def load(cls, path: str | Path) -> "InMemoryCreditLedger":
        """Load from a JSON file; a missing file gives an empty ledger bound to that path."""
        path = Path(path)
        if not path.exists():
            return cls(path=path)
        data = load_json(path)
        ledger = cls(
            balances=data.get("balances", {}),
            costs=data.get("costs"),
            path=path,
        )
        ledger._transactions = [CreditTransaction(**t) for t in data.get("transactions", [])]
        logger.debug(f"[CreditLedger] Loaded {len(ledger._accounts)} account(s) from {path}")
        return ledger


def _action_key(action: CreditAction | str) -> str:
    return action.value if isinstance(action, CreditAction) else str(action)
