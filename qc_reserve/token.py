"""
Fungible token capability consumed by the reserve ledger
"""

from dataclasses import dataclass
from typing import List, Dict, Any

from .errors import ErrorKind, ReserveError


@dataclass
class TokenMetadata:
    name: str
    symbol: str
    decimals: int


class InMemoryToken:
    """Minimal token ledger exposing mint and burn to the reserve ledger"""

    def __init__(self, metadata: TokenMetadata = None):
        self.metadata = metadata or TokenMetadata(name="Reserve-backed BTC", symbol="qcBTC", decimals=8)
        self.total_supply = 0
        self._balances = {}  # holder -> balance
        self._history = []

    def balance_of(self, holder: str) -> int:
        return self._balances.get(holder, 0)

    def mint(self, to: str, amount: int):
        if amount <= 0:
            raise ReserveError(ErrorKind.INVALID_AMOUNT, "Mint amount must be positive")

        self._balances[to] = self.balance_of(to) + amount
        self.total_supply += amount
        self._record('mint', None, to, amount)

    def burn(self, holder: str, amount: int):
        if amount <= 0:
            raise ReserveError(ErrorKind.INVALID_AMOUNT, "Burn amount must be positive")

        balance = self.balance_of(holder)
        if balance < amount:
            raise ReserveError(
                ErrorKind.TOKEN_OPERATION_FAILED,
                f"{holder} holds {balance}, cannot burn {amount}")

        self._balances[holder] = balance - amount
        self.total_supply -= amount
        self._record('burn', holder, None, amount)

    def transfer(self, from_holder: str, to_holder: str, amount: int) -> bool:
        """Move tokens between holders"""
        if amount <= 0:
            return False

        from_balance = self.balance_of(from_holder)
        if from_balance < amount:
            return False

        self._balances[from_holder] = from_balance - amount
        self._balances[to_holder] = self.balance_of(to_holder) + amount
        self._record('transfer', from_holder, to_holder, amount)
        return True

    def _record(self, action: str, source, target, amount: int):
        self._history.append({
            'action': action,
            'from': source,
            'to': target,
            'amount': amount,
            'sequence': len(self._history)
        })

    def get_history(self) -> List[Dict[str, Any]]:
        return self._history.copy()
