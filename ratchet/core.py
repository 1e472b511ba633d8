from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Optional, Literal, List
from collections import deque
import logging

logger = logging.getLogger(__name__)

TradeSide = Literal["buy", "sell", "bond_open", "bond_add", "bond_settle", "bond_policy"]


def format_balances(balances: Dict[str, int]) -> str:
    if not balances:
        return "(empty)"
    items = sorted(balances.items(), key=lambda kv: kv[0])
    return ", ".join(f"{account}:{amount}" for account, amount in items)

# -----------------------------
# Errors
# -----------------------------
class ProtocolError(Exception):
    """Base class for every rejection raised by the protocol."""


class PreconditionError(ProtocolError):
    """Operation rejected before any state was written."""


class InvalidAmount(PreconditionError):
    pass


class InsufficientBalance(PreconditionError):
    pass


class MarketHalted(PreconditionError):
    """Slip pool drained below the operating threshold while price is under the ATH."""


class UnknownPosition(PreconditionError):
    pass


class NotPositionOwner(PreconditionError):
    pass


class Unauthorized(PreconditionError):
    pass


def require_amount(amount) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"amount must be an int, got {type(amount).__name__}")
    if amount <= 0:
        raise InvalidAmount(f"amount must be positive, got {amount}")
    return amount

# -----------------------------
# Events
# -----------------------------
@dataclass
class Event:
    tick: int
    event_type: str
    actor_id: Optional[str] = None
    bond_id: Optional[int] = None
    amount: Optional[int] = None
    meta: dict = field(default_factory=dict)

class EventLog:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.events = deque(maxlen=maxlen)

    def add(self, e: Event) -> None:
        self.events.append(e)

    def tail(self, n: int = 200) -> List[Event]:
        if n <= 0:
            return []
        if n >= len(self.events):
            return list(self.events)
        return list(self.events)[-n:]

    def since(self, tick: int) -> List[Event]:
        out: List[Event] = []
        for e in reversed(self.events):
            if e.tick < tick:
                break
            out.append(e)
        out.reverse()
        return out

# -----------------------------
# Clock / capabilities
# -----------------------------
class Clock:
    """Externally driven monotonic tick counter; the core never reads a wall clock."""

    def __init__(self, start: int = 0) -> None:
        self.now = int(start)

    def advance(self, n: int = 1) -> int:
        if n < 0:
            raise ValueError("clock cannot move backwards")
        self.now += int(n)
        return self.now


class ManagerCapability:
    """Opaque token; the bond ledger accepts manager calls only through the instance it was given."""

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"ManagerCapability({self.name!r})"

# -----------------------------
# Token ledgers
# -----------------------------
class TokenLedger:
    def __init__(self, symbol: str, decimals: int) -> None:
        self.symbol = symbol
        self._decimals = int(decimals)
        self.balances: Dict[str, int] = {}
        self.debug_balances: bool = False

    def decimals(self) -> int:
        return self._decimals

    def balance_of(self, account: str) -> int:
        return int(self.balances.get(account, 0))

    def whole(self, amount: int) -> float:
        return amount / (10 ** self._decimals)

    def units(self, whole_amount: float) -> int:
        return int(round(whole_amount * (10 ** self._decimals)))

    def require_balance(self, account: str, amount: int) -> None:
        have = self.balance_of(account)
        if have < amount:
            raise InsufficientBalance(
                f"{account} holds {have} {self.symbol}, needs {amount}"
            )

    def _credit(self, account: str, amount: int) -> None:
        self.balances[account] = self.balance_of(account) + int(amount)

    def _debit(self, account: str, amount: int) -> None:
        self.require_balance(account, amount)
        left = self.balance_of(account) - int(amount)
        if left == 0:
            self.balances.pop(account, None)
        else:
            self.balances[account] = left

    def _debugging(self) -> bool:
        return self.debug_balances and logger.isEnabledFor(logging.DEBUG)

    def _balances_of(self, *accounts: str) -> Dict[str, int]:
        return {a: self.balance_of(a) for a in accounts}

    def _debug_change(self, action: str, account: str, amount: int, before: Dict[str, int]) -> None:
        after = self._balances_of(*before)
        logger.debug(
            "[BAL] token=%s action=%s account=%s amount=%d before={ %s } after={ %s }",
            self.symbol,
            action,
            account,
            amount,
            format_balances(before),
            format_balances(after),
        )


class CollateralAsset(TokenLedger):
    """Reference collateral; `holder` is the account that custodies the reserve."""

    def __init__(self, symbol: str, decimals: int, holder: str = "reserve") -> None:
        super().__init__(symbol, decimals)
        self.holder = holder

    def fund(self, account: str, amount: int) -> None:
        debug = self._debugging()
        before = self._balances_of(account) if debug else {}
        self._credit(account, require_amount(amount))
        if debug:
            self._debug_change("fund", account, amount, before)

    def transfer_in(self, source: str, amount: int) -> None:
        debug = self._debugging()
        before = self._balances_of(source, self.holder) if debug else {}
        self._debit(source, require_amount(amount))
        self._credit(self.holder, amount)
        if debug:
            self._debug_change("transfer_in", source, amount, before)

    def transfer_out(self, dest: str, amount: int) -> None:
        if amount == 0:
            return
        debug = self._debugging()
        before = self._balances_of(self.holder, dest) if debug else {}
        self._debit(self.holder, require_amount(amount))
        self._credit(dest, amount)
        if debug:
            self._debug_change("transfer_out", dest, amount, before)


class NativeUnit(TokenLedger):
    def __init__(self, symbol: str, decimals: int) -> None:
        super().__init__(symbol, decimals)
        self.total_supply: int = 0

    def mint(self, to: str, amount: int) -> None:
        if amount == 0:
            return
        debug = self._debugging()
        before = self._balances_of(to) if debug else {}
        self._credit(to, require_amount(amount))
        self.total_supply += amount
        if debug:
            self._debug_change("mint", to, amount, before)

    def burn(self, source: str, amount: int) -> None:
        debug = self._debugging()
        before = self._balances_of(source) if debug else {}
        self._debit(source, require_amount(amount))
        self.total_supply -= amount
        if debug:
            self._debug_change("burn", source, amount, before)

    def transfer(self, source: str, dest: str, amount: int) -> None:
        if amount == 0:
            return
        debug = self._debugging()
        before = self._balances_of(source, dest) if debug else {}
        self._debit(source, require_amount(amount))
        self._credit(dest, amount)
        if debug:
            self._debug_change("transfer", dest, amount, before)

# -----------------------------
# Receipts
# -----------------------------
@dataclass
class TradeReceipt:
    tick: int
    actor: str
    side: TradeSide
    amount_in: int
    amount_out: int
    status: Literal["executed", "failed"]
    bond_id: Optional[int] = None
    fail_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "tick": self.tick,
            "actor": self.actor,
            "side": self.side,
            "amount_in": int(self.amount_in),
            "amount_out": int(self.amount_out),
            "status": self.status,
            "bond_id": self.bond_id,
            "fail_reason": self.fail_reason,
        }

class ReceiptStore:
    def __init__(self, maxlen: Optional[int] = None) -> None:
        self.receipts = deque(maxlen=maxlen)

    def add(self, r: TradeReceipt) -> None:
        self.receipts.append(r)

    def tail(self, n: int = 200) -> List[TradeReceipt]:
        return list(self.receipts)[-n:]
