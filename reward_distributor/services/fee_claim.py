"""
Creator-fee claim service (PumpPortal trade API).
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aiohttp
import structlog
from solders.pubkey import Pubkey

from reward_distributor.core.exceptions import TransientServiceError
from reward_distributor.core.types import ClaimResult, Cycle
from reward_distributor.services.http import request_json


logger = structlog.get_logger(__name__)

SIGNATURE_KEYS = ("signature", "tx", "txid", "txId", "result", "sig")


def extract_signature(payload: Any) -> Optional[str]:
    """Pick the transaction reference out of a loosely shaped response."""
    if not isinstance(payload, dict):
        return None
    for key in SIGNATURE_KEYS:
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class FeeClaimService:
    """
    Collects accrued creator fees into the distribution wallet.

    The claim request carries ``claim:<cycleId>`` as its idempotency key, so
    a retried request inside the same cycle cannot claim twice. The claimed
    amount is measured as the wallet's lamport delta once the claim settles.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        ledger,
        wallet: Pubkey,
        tracked_mint: str,
        base_url: str = "https://pumpportal.fun",
        api_key: str = "",
        priority_fee: float = 0.000001,
        pool: str = "pump",
        settle_seconds: float = 3.0,
        max_tries: int = 3,
        timeout: float = 15.0
    ):
        self.session = session
        self.ledger = ledger
        self.wallet = wallet
        self.tracked_mint = tracked_mint
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.priority_fee = priority_fee
        self.pool = pool
        self.settle_seconds = settle_seconds
        self.max_tries = max(1, max_tries)
        self.timeout = timeout
        self.logger = logger.bind(service="fee_claim")
        self._sleep = asyncio.sleep

    def _headers(self, idempotency_key: str) -> Dict[str, str]:
        headers = {"Idempotency-Key": idempotency_key}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _request_claim(self, idempotency_key: str) -> Any:
        body = {
            "action": "collectCreatorFee",
            "priorityFee": self.priority_fee,
            "pool": self.pool,
            "mint": self.tracked_mint,
        }
        params = {"api-key": self.api_key} if self.api_key else None

        for attempt in range(self.max_tries):
            try:
                return await request_json(
                    self.session,
                    "POST",
                    f"{self.base_url}/api/trade",
                    params=params,
                    json_body=body,
                    headers=self._headers(idempotency_key),
                    timeout=self.timeout
                )
            except TransientServiceError as e:
                if attempt == self.max_tries - 1:
                    raise
                self.logger.warning(
                    "Claim request failed, retrying",
                    attempt=attempt + 1,
                    idempotency_key=idempotency_key,
                    error=e.message
                )
                await self._sleep(1.0 * (attempt + 1))

    async def claim(self, cycle: Cycle) -> ClaimResult:
        """Claim fees for ``cycle`` and report the lamports that arrived."""
        idempotency_key = cycle.idempotency_key("claim")
        self.logger.info("💰 Collecting creator fees", cycle_id=cycle.id)

        before = await self.ledger.get_sol_balance(self.wallet)
        payload = await self._request_claim(idempotency_key)
        reference = extract_signature(payload)

        await self._sleep(self.settle_seconds)
        after = await self.ledger.get_sol_balance(self.wallet)
        claimed = max(0, after - before)

        self.logger.info(
            "🟢 Fees claimed" if claimed > 0 else "⚪ No fee change",
            cycle_id=cycle.id,
            lamports=claimed,
            reference=reference
        )
        return ClaimResult(
            at=datetime.now(timezone.utc),
            amount_moved=claimed,
            reference_id=reference
        )
