"""
Shared fakes for the distributor tests. Nothing here touches the network.
"""

import json
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest
from solders.hash import Hash

from reward_distributor.core.exceptions import (
    OversizeTransactionError,
    RecipientError,
    TransactionFailedError,
    TransientLedgerError,
)
from reward_distributor.core.types import Cycle


async def no_sleep(seconds: float) -> None:
    return None


class SleepRecorder:
    """Drop-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeClock:
    def __init__(self, now: float = 0.0, on_sleep=None):
        self.current = now
        self.sleeps: List[float] = []
        self.on_sleep = on_sleep

    def now(self) -> float:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += seconds
        if self.on_sleep:
            self.on_sleep(self)


class FakeTransaction(tuple):
    """The rows of one built batch, carrying a signature like a signed transaction."""

    signatures: List[str]


def transaction_signature(transaction) -> Optional[str]:
    signatures = getattr(transaction, "signatures", None)
    return str(signatures[0]) if signatures else None


class FakeBuilder:
    """Stands in for TransferBuilder; the "transaction" is the tuple of rows."""

    def __init__(self, max_rows: int = 100, bad_wallets: Tuple[str, ...] = ()):
        self.max_rows = max_rows
        self.bad_wallets = set(bad_wallets)
        self.built: List[tuple] = []

    def build_transfers(self, rows, blockhash):
        for row in rows:
            if row.wallet in self.bad_wallets:
                raise RecipientError(row.wallet, "malformed address")
        if len(rows) > self.max_rows:
            raise OversizeTransactionError(f"Transaction too large: {len(rows)} rows", {"rows": len(rows)})
        transaction = FakeTransaction(rows)
        self.built.append(transaction)
        transaction.signatures = [f"tx{len(self.built)}"]
        return transaction

    def row_for_instruction(self, rows, index):
        position = (index - 2) // 2
        return rows[position] if 0 <= position < len(rows) else None


class FakeLedger:
    """
    Ledger double for the submitter and stage handlers.

    ``send_errors`` / ``confirm_errors`` are consumed in order; ``None``
    entries mean success. A send error is raised before the transaction
    lands, while each of the first ``lost_replies`` sends lands and then
    times out. Confirming a signature that never landed reports an expired
    blockhash. A batch paying one of ``failing_wallets`` fails preflight on
    that row's transfer instruction.
    """

    def __init__(
        self,
        send_errors: Optional[List[Optional[Exception]]] = None,
        confirm_errors: Optional[List[Optional[Exception]]] = None,
        holders: Optional[Dict[str, int]] = None,
        token_balances: Optional[List[int]] = None,
        sol_balances: Optional[List[int]] = None,
        mint_info=None,
        lost_replies: int = 0,
        failing_wallets: Tuple[str, ...] = ()
    ):
        self.send_errors = list(send_errors or [])
        self.confirm_errors = list(confirm_errors or [])
        self.holders = holders or {}
        self.token_balances = list(token_balances or [])
        self.sol_balances = list(sol_balances or [])
        self.mint_info = mint_info
        self.lost_replies = lost_replies
        self.failing_wallets = set(failing_wallets)
        self.sent: List[Any] = []
        self.landed: Set[str] = set()
        self.confirmed: List[str] = []
        self.rotations = 0

    def rotate_endpoint(self):
        self.rotations += 1

    async def get_latest_blockhash(self):
        return Hash.default(), 1_000

    async def send_transaction(self, transaction) -> str:
        if self.send_errors:
            error = self.send_errors.pop(0)
            if error is not None:
                raise error
        if isinstance(transaction, FakeTransaction):
            for position, row in enumerate(transaction):
                if row.wallet in self.failing_wallets:
                    raise TransactionFailedError(None, "InstructionError(...)", 2 + 2 * position + 1)

        self.sent.append(transaction)
        signature = f"sig{len(self.sent)}"
        self.landed.add(signature)
        if transaction_signature(transaction):
            self.landed.add(transaction_signature(transaction))

        if self.lost_replies:
            self.lost_replies -= 1
            raise TransientLedgerError("Request timed out")
        return signature

    async def confirm_transaction(self, signature, last_valid_block_height, timeout=90.0):
        if self.confirm_errors:
            error = self.confirm_errors.pop(0)
            if error is not None:
                raise error
        if signature not in self.landed:
            raise TransientLedgerError("Blockhash expired before confirmation")
        self.confirmed.append(signature)

    def paid_wallets(self) -> List[str]:
        """Wallets paid by landed FakeBuilder transactions, in order."""
        return [row.wallet for tx in self.sent for row in tx]

    async def get_token_holders(self, mint):
        return dict(self.holders)

    async def get_token_balance(self, owner, mint):
        return self.token_balances.pop(0) if len(self.token_balances) > 1 else self.token_balances[0]

    async def get_sol_balance(self, owner):
        return self.sol_balances.pop(0) if len(self.sol_balances) > 1 else self.sol_balances[0]

    async def get_mint_info(self, mint):
        return self.mint_info


class FakeResponse:
    def __init__(self, status: int, body: Any):
        self.status = status
        self._body = body

    async def text(self) -> str:
        if isinstance(self._body, str):
            return self._body
        return json.dumps(self._body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """
    Minimal aiohttp.ClientSession double.

    ``routes`` maps ``(METHOD, url)`` to a list of ``(status, body)``
    replies consumed in order; the last reply repeats. A reply may also be
    an exception instance, which is raised from ``request``.
    """

    def __init__(self, routes: Dict[Tuple[str, str], List[Any]]):
        self.routes = {key: list(replies) for key, replies in routes.items()}
        self.calls: List[SimpleNamespace] = []

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append(SimpleNamespace(method=method, url=url, params=params, json=json, headers=headers or {}))
        replies = self.routes[(method, url)]
        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if isinstance(reply, Exception):
            raise reply
        status, body = reply
        return FakeResponse(status, body)


@pytest.fixture
def cycle():
    return Cycle.for_time(600.0, 300)


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()
