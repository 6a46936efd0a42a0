"""
Solana ledger adapter with endpoint failover.

This service provides:
- Holder enumeration across the SPL Token and Token-2022 programs
- Mint / balance lookups and blockhash queries
- Raw transaction submission with status-polling confirmation
- Typed error classification (transient / structural / fatal)
- Round-robin endpoint rotation on transient failures
"""

import re
import time
import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone

import httpx
import structlog
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.core import RPCException
from solana.rpc.types import MemcmpOpts, TokenAccountOpts, TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

from reward_distributor.core.exceptions import (
    LedgerError,
    OversizeTransactionError,
    TransactionFailedError,
    TransientLedgerError,
    UnconfirmedTransactionError,
)


logger = structlog.get_logger(__name__)


# Maximum serialized transaction size accepted by the cluster
PACKET_DATA_SIZE = 1232

# SPL Token account layout size; Token-2022 accounts carry extensions
TOKEN_ACCOUNT_SIZE = 165

TRANSIENT_PATTERNS = re.compile(
    r"429|too many requests|rate.?limit|timed? ?out|timeout|temporar|econn|etimedout|"
    r"blockhash not found|block height exceeded|connection (reset|closed|refused|aborted)|"
    r"eai_again|enotfound|node is behind|service unavailable|bad gateway|-32005",
    re.IGNORECASE,
)
OVERSIZE_PATTERNS = re.compile(
    r"too large|transaction size|packet size|exceeds .*(1232|limit)|"
    r"too many (instructions|account keys)|encoding overruns",
    re.IGNORECASE,
)
INSTRUCTION_ERROR = re.compile(r"InstructionError\(\(?(\d+)")

_CONFIRMED = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)


def classify_error(error: BaseException) -> LedgerError:
    """
    Map a raw client failure onto the typed ledger error taxonomy.

    Provider error codes, HTTP statuses and transport exceptions are checked
    first; the fixed pattern set is the last resort for free-form messages.
    """
    if isinstance(error, LedgerError):
        return error

    cause = error.__cause__ if isinstance(error, SolanaRpcException) and error.__cause__ else error
    message = str(error) or type(error).__name__
    details = {"error_type": type(cause).__name__}

    if isinstance(cause, httpx.HTTPStatusError):
        status = cause.response.status_code
        details["status"] = status
        if status == 429 or status >= 500:
            return TransientLedgerError(f"HTTP {status}: {message}", details)
        if status == 413:
            return OversizeTransactionError(f"HTTP {status}: {message}", details)
        return LedgerError(f"HTTP {status}: {message}", details)

    if isinstance(cause, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return TransientLedgerError(message, details)

    if isinstance(error, RPCException):
        details["rpc_error"] = _rpc_error_payload(error)
        payload = error.args[0] if error.args else None
        simulation_error = getattr(getattr(payload, "data", None), "err", None)
        index = instruction_error_index(simulation_error)
        if index is not None:
            return TransactionFailedError(None, message, index)

    if OVERSIZE_PATTERNS.search(message):
        return OversizeTransactionError(message, details)
    if TRANSIENT_PATTERNS.search(message):
        return TransientLedgerError(message, details)
    return LedgerError(message, details)


def instruction_error_index(err: Any) -> Optional[int]:
    """Index of the failing instruction in a transaction error, if it names one."""
    if err is None:
        return None
    index = getattr(err, "index", None)
    if isinstance(index, int):
        return index
    match = INSTRUCTION_ERROR.search(str(err))
    return int(match.group(1)) if match else None


@dataclass
class RpcEndpoint:
    """Runtime state of one configured RPC endpoint."""
    url: str
    priority: int
    error_count: int = 0
    success_count: int = 0
    last_error_time: Optional[datetime] = None
    errors_by_type: Dict[str, int] = field(default_factory=dict)


@dataclass
class MintInfo:
    """Decimals and owning token program of a mint."""
    address: str
    decimals: int
    program_id: Pubkey


class LedgerClient:
    """
    Solana RPC adapter with bounded retries and endpoint failover.

    Every call goes through ``_call``: a failure is classified, and on a
    transient error the active endpoint rotates and the call is retried from
    scratch with the same arguments. Structural and fatal errors propagate
    immediately as typed exceptions.
    """

    def __init__(
        self,
        endpoints: List[str],
        commitment: str = "confirmed",
        timeout: int = 30,
        max_retries: int = 5,
        retry_delay: float = 0.25,
        confirm_poll_interval: float = 2.0,
        client_factory: Optional[Callable[[str], Any]] = None,
    ):
        if not endpoints:
            raise ValueError("At least one RPC endpoint is required")

        self.logger = logger.bind(service="ledger_client")
        self.commitment = Commitment(commitment)
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.confirm_poll_interval = confirm_poll_interval
        self._sleep = asyncio.sleep

        self.endpoints = [RpcEndpoint(url=url, priority=i) for i, url in enumerate(endpoints)]
        self._current_endpoint_index = 0

        factory = client_factory or self._default_client
        self._clients: Dict[str, Any] = {ep.url: factory(ep.url) for ep in self.endpoints}

        self.logger.info(
            "RPC endpoints configured",
            total_endpoints=len(self.endpoints),
            primary_url=_redact(self.endpoints[0].url),
            backup_count=len(self.endpoints) - 1
        )

    def _default_client(self, url: str) -> AsyncClient:
        return AsyncClient(url, commitment=self.commitment, timeout=self.timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Clean up all client connections."""
        for client in self._clients.values():
            try:
                await client.close()
            except Exception as e:
                self.logger.warning("Error closing RPC client", error=str(e))

    @property
    def active_endpoint(self) -> RpcEndpoint:
        return self.endpoints[self._current_endpoint_index]

    def rotate_endpoint(self) -> RpcEndpoint:
        """Switch to the next configured endpoint (no-op with a single one)."""
        previous = self.active_endpoint
        self._current_endpoint_index = (self._current_endpoint_index + 1) % len(self.endpoints)
        if self.active_endpoint is not previous:
            self.logger.info(
                "Rotated RPC endpoint",
                from_endpoint=_redact(previous.url),
                to_endpoint=_redact(self.active_endpoint.url)
            )
        return self.active_endpoint

    def _record(self, endpoint: RpcEndpoint, error: Optional[LedgerError] = None):
        if error is None:
            endpoint.success_count += 1
            if endpoint.error_count > 0:
                endpoint.error_count -= 1
            return
        endpoint.error_count += 1
        endpoint.last_error_time = datetime.now(timezone.utc)
        kind = error.kind.value
        endpoint.errors_by_type[kind] = endpoint.errors_by_type.get(kind, 0) + 1

    async def _call(self, method: str, *args, **kwargs) -> Any:
        """
        Invoke ``method`` on the active endpoint's client with failover.

        Raises:
            LedgerError: typed failure once retries are exhausted or the
                error is not transient
        """
        last_error: Optional[LedgerError] = None

        for attempt in range(self.max_retries):
            endpoint = self.active_endpoint
            client = self._clients[endpoint.url]
            try:
                result = await getattr(client, method)(*args, **kwargs)
            except Exception as e:
                error = classify_error(e)
                self._record(endpoint, error)
                last_error = error

                if not isinstance(error, TransientLedgerError):
                    raise error from e

                self.logger.warning(
                    "Transient RPC failure",
                    method=method,
                    endpoint=_redact(endpoint.url),
                    attempt=attempt + 1,
                    error=error.message
                )
                if attempt < self.max_retries - 1:
                    self.rotate_endpoint()
                    await self._sleep(self.retry_delay * (attempt + 1))
                continue

            self._record(endpoint)
            if attempt > 0:
                self.logger.info(
                    "Request succeeded after retries",
                    method=method,
                    endpoint=_redact(endpoint.url),
                    attempt=attempt + 1
                )
            return result

        self.logger.error(
            "All RPC attempts failed",
            method=method,
            max_retries=self.max_retries,
            last_error=last_error.message if last_error else None
        )
        raise last_error or LedgerError(f"All RPC attempts failed for {method}")

    # Reads

    async def get_token_holders(self, mint: str) -> Dict[str, int]:
        """
        Enumerate every holder of ``mint`` with its balance in base units.

        Accounts are read from both the SPL Token and Token-2022 programs and
        balances are summed per owner across programs and accounts.
        """
        merged: Dict[str, int] = {}
        for program_id, fixed_size in ((TOKEN_PROGRAM_ID, True), (TOKEN_2022_PROGRAM_ID, False)):
            filters: List[Any] = [MemcmpOpts(offset=0, bytes=mint)]
            if fixed_size:
                filters.insert(0, TOKEN_ACCOUNT_SIZE)

            resp = await self._call(
                "get_program_accounts_json_parsed",
                program_id,
                commitment=self.commitment,
                filters=filters
            )
            accounts = 0
            for keyed in resp.value:
                owner, amount = _parse_token_account(keyed.account.data)
                if owner is None or amount <= 0:
                    continue
                merged[owner] = merged.get(owner, 0) + amount
                accounts += 1

            self.logger.debug(
                "Token accounts enumerated",
                program=str(program_id),
                accounts=accounts
            )

        self.logger.info("Holders enumerated", mint=mint, holders=len(merged))
        return merged

    async def get_mint_info(self, mint: str) -> MintInfo:
        """Look up a mint's decimals and the token program that owns it."""
        resp = await self._call(
            "get_account_info_json_parsed",
            Pubkey.from_string(mint),
            commitment=self.commitment
        )
        account = resp.value
        if account is None:
            raise LedgerError(f"Mint account not found: {mint}", {"mint": mint})
        info = account.data.parsed["info"]
        return MintInfo(address=mint, decimals=int(info["decimals"]), program_id=account.owner)

    async def get_sol_balance(self, owner: Pubkey) -> int:
        """Lamport balance of ``owner``."""
        resp = await self._call("get_balance", owner, commitment=self.commitment)
        return int(resp.value)

    async def get_token_balance(self, owner: Pubkey, mint: str) -> int:
        """Total base-unit balance of ``mint`` across all of ``owner``'s token accounts."""
        resp = await self._call(
            "get_token_accounts_by_owner_json_parsed",
            owner,
            TokenAccountOpts(mint=Pubkey.from_string(mint)),
            commitment=self.commitment
        )
        total = 0
        for keyed in resp.value:
            _, amount = _parse_token_account(keyed.account.data)
            total += amount
        return total

    async def get_latest_blockhash(self) -> Tuple[Hash, int]:
        """Fresh blockhash and the last block height at which it is valid."""
        resp = await self._call("get_latest_blockhash", commitment=self.commitment)
        return resp.value.blockhash, resp.value.last_valid_block_height

    async def get_block_height(self) -> int:
        resp = await self._call("get_block_height", commitment=self.commitment)
        return int(resp.value)

    # Writes

    async def send_transaction(self, transaction: VersionedTransaction) -> str:
        """
        Submit a signed transaction and return its signature.

        Resending the same signed bytes is idempotent, so transient failures
        are retried by ``_call`` without rebuilding the transaction.
        """
        raw = bytes(transaction)
        if len(raw) > PACKET_DATA_SIZE:
            raise OversizeTransactionError(
                f"Transaction too large: {len(raw)} > {PACKET_DATA_SIZE}",
                {"size": len(raw), "limit": PACKET_DATA_SIZE}
            )
        opts = TxOpts(skip_preflight=False, preflight_commitment=self.commitment, max_retries=0)
        resp = await self._call("send_raw_transaction", raw, opts=opts)
        return str(resp.value)

    async def confirm_transaction(
        self,
        signature: str,
        last_valid_block_height: int,
        timeout: float = 90.0
    ) -> None:
        """
        Poll signature status until the transaction is confirmed.

        Raises:
            TransactionFailedError: the transaction landed with an error
            TransientLedgerError: the blockhash expired without the transaction
                landing, so it is safe to rebuild and resend
            UnconfirmedTransactionError: outcome still unknown at the deadline
        """
        sig = Signature.from_string(signature)
        started = time.monotonic()

        while True:
            # A failed poll says nothing about the transaction; keep polling
            try:
                resp = await self._call("get_signature_statuses", [sig])
                status = resp.value[0] if resp.value else None
                expired = status is None and await self.get_block_height() > last_valid_block_height
            except TransientLedgerError as e:
                self.logger.warning("Status poll failed", signature=signature[:20] + "...", error=e.message)
                status, expired = None, False

            if status is not None:
                if status.err is not None:
                    raise TransactionFailedError(signature, str(status.err), instruction_error_index(status.err))
                if status.confirmation_status in _CONFIRMED:
                    return
            elif expired:
                raise TransientLedgerError(
                    "Blockhash expired before confirmation",
                    {"signature": signature, "last_valid_block_height": last_valid_block_height}
                )

            waited = time.monotonic() - started
            if waited >= timeout:
                raise UnconfirmedTransactionError(signature, waited)
            await self._sleep(self.confirm_poll_interval)

    # Monitoring

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active_endpoint": _redact(self.active_endpoint.url),
            "endpoints": [
                {**asdict(ep), "url": _redact(ep.url), "last_error_time": ep.last_error_time.isoformat() if ep.last_error_time else None}
                for ep in self.endpoints
            ],
        }

    async def health_check(self) -> Dict[str, Any]:
        """Check every endpoint with get_slot."""
        results = {}
        for endpoint in self.endpoints:
            start_time = time.time()
            try:
                await self._clients[endpoint.url].get_slot()
                results[_redact(endpoint.url)] = {"healthy": True, "response_time": time.time() - start_time}
            except Exception as e:
                results[_redact(endpoint.url)] = {"healthy": False, "error": str(e)}
        return {"timestamp": datetime.now(timezone.utc).isoformat(), "endpoints": results}


def _parse_token_account(data: Any) -> Tuple[Optional[str], int]:
    """Owner and raw amount from a jsonParsed token account."""
    parsed = getattr(data, "parsed", None)
    if not isinstance(parsed, dict):
        return None, 0
    info = parsed.get("info") or {}
    amount = (info.get("tokenAmount") or {}).get("amount") or "0"
    return info.get("owner"), int(amount)


def _rpc_error_payload(error: RPCException) -> str:
    payload = error.args[0] if error.args else None
    return type(payload).__name__ if payload is not None else "unknown"


def _redact(url: str) -> str:
    """Hide API keys carried in query strings."""
    return re.sub(r"(api[-_]?key=)[^&]+", r"\1***", url, flags=re.IGNORECASE)
