"""
Swap service: converts claimed SOL into the reward token through the
Jupiter quote / swap API.
"""

import re
import base64
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict

import aiohttp
import structlog
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from reward_distributor.core.exceptions import (
    ExternalServiceError,
    LedgerError,
    TransientLedgerError,
    TransientServiceError,
)
from reward_distributor.core.types import Cycle, SwapResult
from reward_distributor.services.http import request_json


logger = structlog.get_logger(__name__)

WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"

# Aggregator program error raised when the route's minimum output is not met
SLIPPAGE_ERROR = re.compile(r"0x1771|Custom\(6001\)")


class SwapService:
    """
    Quote-then-swap against the aggregator, signing locally.

    Rate limits and transient failures are retried with a linear backoff;
    a slippage failure refreshes the quote before the next attempt.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        ledger,
        keypair: Keypair,
        output_mint: str,
        base_url: str = "https://lite-api.jup.ag/swap/v1",
        slippage_bps: int = 300,
        max_tries: int = 6,
        retry_sleep: float = 1.0,
        confirm_timeout: float = 90.0,
        timeout: float = 8.0
    ):
        self.session = session
        self.ledger = ledger
        self.keypair = keypair
        self.output_mint = output_mint
        self.base_url = base_url.rstrip("/")
        self.slippage_bps = slippage_bps
        self.max_tries = max(1, max_tries)
        self.retry_sleep = retry_sleep
        self.confirm_timeout = confirm_timeout
        self.timeout = timeout
        self.logger = logger.bind(service="swap")
        self._sleep = asyncio.sleep

    async def quote(self, lamports: int) -> Dict[str, Any]:
        """Fetch an exact-in SOL -> reward token quote."""
        params = {
            "inputMint": WRAPPED_SOL_MINT,
            "outputMint": self.output_mint,
            "amount": str(lamports),
            "slippageBps": str(self.slippage_bps),
            "swapMode": "ExactIn",
            "onlyDirectRoutes": "false",
        }
        for attempt in range(self.max_tries):
            try:
                quote = await request_json(
                    self.session, "GET", f"{self.base_url}/quote", params=params, timeout=self.timeout
                )
            except TransientServiceError as e:
                if attempt == self.max_tries - 1:
                    raise
                self.logger.warning("Quote request throttled", attempt=attempt + 1, error=e.message)
                await self._sleep(self.retry_sleep * (attempt + 1))
                continue

            if not quote.get("routePlan"):
                raise ExternalServiceError("No swap route available", {"output_mint": self.output_mint, "lamports": lamports})
            return quote

    async def execute(self, quote: Dict[str, Any], idempotency_key: str) -> str:
        """Request the swap transaction for ``quote``, sign it, send and confirm it."""
        body = {
            "quoteResponse": quote,
            "userPublicKey": str(self.keypair.pubkey()),
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        payload = await request_json(
            self.session,
            "POST",
            f"{self.base_url}/swap",
            json_body=body,
            headers={"Idempotency-Key": idempotency_key},
            timeout=self.timeout
        )
        encoded = payload.get("swapTransaction")
        if not encoded:
            raise ExternalServiceError("Swap response carried no transaction", {"keys": sorted(payload)})

        unsigned = VersionedTransaction.from_bytes(base64.b64decode(encoded))
        signed = VersionedTransaction(unsigned.message, [self.keypair])

        last_valid = payload.get("lastValidBlockHeight")
        if last_valid is None:
            _, last_valid = await self.ledger.get_latest_blockhash()

        signature = await self.ledger.send_transaction(signed)
        await self.ledger.confirm_transaction(signature, int(last_valid), timeout=self.confirm_timeout)
        return signature

    async def swap(self, cycle: Cycle, lamports: int) -> SwapResult:
        """
        Spend ``lamports`` on the reward token for ``cycle``.

        The received amount is measured from the wallet's reward balance, not
        taken from the quote.
        """
        idempotency_key = cycle.idempotency_key("swap")
        before = await self.ledger.get_token_balance(self.keypair.pubkey(), self.output_mint)

        quote = await self.quote(lamports)
        signature = None
        for attempt in range(self.max_tries):
            try:
                signature = await self.execute(quote, idempotency_key)
                break
            except (TransientServiceError, TransientLedgerError) as e:
                if attempt == self.max_tries - 1:
                    raise
                self.logger.warning("Swap attempt failed, retrying", attempt=attempt + 1, error=e.message)
                await self._sleep(self.retry_sleep * (attempt + 1))
            except LedgerError as e:
                if attempt == self.max_tries - 1 or not SLIPPAGE_ERROR.search(e.message):
                    raise
                self.logger.warning("⚠️ Route failed on slippage, refreshing quote", attempt=attempt + 1)
                quote = await self.quote(lamports)

        after = await self.ledger.get_token_balance(self.keypair.pubkey(), self.output_mint)
        received = max(0, after - before)

        self.logger.info(
            "✅ Swap completed",
            cycle_id=cycle.id,
            lamports_spent=lamports,
            received=received,
            signature=signature
        )
        return SwapResult(
            at=datetime.now(timezone.utc),
            amount_moved=received,
            reference_id=signature,
            amount_spent=lamports
        )
