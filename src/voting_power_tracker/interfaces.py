"""
Collaborator interfaces consumed by the engine.
"""

from typing import Any, Optional, Protocol, Tuple

from .models import BalanceReading, BehaviorProfile


class BalanceReader(Protocol):
    def read_balance(self, address: str) -> Optional[BalanceReading]:
        """Return current balance/delegation data, or None if the address is unknown."""
        ...


class Cache(Protocol):
    def get(self, key: str) -> Tuple[Any, bool]:
        ...

    def set(self, key: str, value: Any, ttl: float) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class BlockSource(Protocol):
    def current_block(self) -> int:
        ...


class BehaviorSource(Protocol):
    def profile(self, address: str) -> Optional[BehaviorProfile]:
        """Voting/delegation behaviour for an address, None when unknown."""
        ...


class SignalSource(Protocol):
    def delegation_trend(self, address: str) -> float:
        ...

    def market_condition(self) -> float:
        ...

    def proposal_activity(self, address: str) -> float:
        ...
