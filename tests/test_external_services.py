"""
Test the fee-claim and swap services against a fake HTTP session.
"""

import base64

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.transaction import VersionedTransaction

from reward_distributor.core.exceptions import (
    ExternalServiceError,
    LedgerError,
    TransientServiceError,
)
from reward_distributor.services.fee_claim import FeeClaimService, extract_signature
from reward_distributor.services.http import request_json
from reward_distributor.services.swap import SwapService, WRAPPED_SOL_MINT

from conftest import FakeLedger, FakeSession, SleepRecorder


CLAIM_URL = "https://pumpportal.example/api/trade"
QUOTE_URL = "https://jup.example/quote"
SWAP_URL = "https://jup.example/swap"
QUOTE = {"inAmount": "700000", "outAmount": "1234", "routePlan": [{"swapInfo": {}}]}


def swap_transaction(payer: Keypair) -> str:
    message = MessageV0.try_compile(payer.pubkey(), [], [], Hash.default())
    return base64.b64encode(bytes(VersionedTransaction(message, [payer]))).decode()


class TestRequestJson:

    @pytest.mark.asyncio
    async def test_decodes_json(self):
        session = FakeSession({("GET", QUOTE_URL): [(200, {"a": 1})]})
        assert await request_json(session, "GET", QUOTE_URL) == {"a": 1}

    @pytest.mark.asyncio
    async def test_non_json_and_empty_bodies(self):
        session = FakeSession({("GET", QUOTE_URL): [(200, "plain text"), (200, "")]})
        assert await request_json(session, "GET", QUOTE_URL) == {"raw": "plain text"}
        assert await request_json(session, "GET", QUOTE_URL) == {}

    @pytest.mark.asyncio
    async def test_status_classification(self):
        session = FakeSession({("GET", QUOTE_URL): [(429, "slow down"), (400, "bad")]})

        with pytest.raises(TransientServiceError):
            await request_json(session, "GET", QUOTE_URL)
        with pytest.raises(ExternalServiceError) as exc_info:
            await request_json(session, "GET", QUOTE_URL)
        assert not isinstance(exc_info.value, TransientServiceError)
        assert exc_info.value.details["status"] == 400


class TestFeeClaim:

    def _service(self, session, ledger, **options):
        service = FeeClaimService(
            session,
            ledger,
            Keypair().pubkey(),
            "TrackedMint111",
            base_url="https://pumpportal.example",
            api_key="key",
            **options
        )
        service._sleep = SleepRecorder()
        return service

    @pytest.mark.asyncio
    async def test_claim_measures_balance_delta(self, cycle):
        session = FakeSession({("POST", CLAIM_URL): [(200, {"signature": "5xClaim"})]})
        ledger = FakeLedger(sol_balances=[1_000_000, 4_500_000])
        service = self._service(session, ledger, settle_seconds=3.0)

        result = await service.claim(cycle)

        assert result.amount_moved == 3_500_000
        assert result.reference_id == "5xClaim"
        assert service._sleep.calls == [3.0]
        call, = session.calls
        assert call.json["action"] == "collectCreatorFee"
        assert call.json["mint"] == "TrackedMint111"
        assert call.headers["Idempotency-Key"] == f"claim:{cycle.id}"
        assert call.params == {"api-key": "key"}

    @pytest.mark.asyncio
    async def test_claim_retries_rate_limit(self, cycle):
        session = FakeSession({("POST", CLAIM_URL): [(429, "slow"), (200, {"tx": "abc"})]})
        service = self._service(session, FakeLedger(sol_balances=[10, 10]))

        result = await service.claim(cycle)

        assert result.amount_moved == 0
        assert result.reference_id == "abc"
        assert len(session.calls) == 2
        assert {c.headers["Idempotency-Key"] for c in session.calls} == {f"claim:{cycle.id}"}

    @pytest.mark.asyncio
    async def test_claim_gives_up_after_max_tries(self, cycle):
        session = FakeSession({("POST", CLAIM_URL): [(503, "down")]})
        service = self._service(session, FakeLedger(sol_balances=[10]), max_tries=2)

        with pytest.raises(TransientServiceError):
            await service.claim(cycle)
        assert len(session.calls) == 2

    def test_extract_signature(self):
        assert extract_signature({"txid": "x"}) == "x"
        assert extract_signature({"signature": "", "sig": "y"}) == "y"
        assert extract_signature(["not", "a", "dict"]) is None


class TestSwap:

    def _service(self, session, ledger, keypair, **options):
        service = SwapService(
            session,
            ledger,
            keypair,
            "RewardMint111",
            base_url="https://jup.example",
            **options
        )
        service._sleep = SleepRecorder()
        return service

    @pytest.mark.asyncio
    async def test_swap_signs_and_measures_received(self, cycle):
        keypair = Keypair()
        session = FakeSession({
            ("GET", QUOTE_URL): [(200, QUOTE)],
            ("POST", SWAP_URL): [(200, {"swapTransaction": swap_transaction(keypair), "lastValidBlockHeight": 77})],
        })
        ledger = FakeLedger(token_balances=[100, 1_334])
        service = self._service(session, ledger, keypair)

        result = await service.swap(cycle, 700_000)

        assert result.amount_moved == 1_234
        assert result.amount_spent == 700_000
        assert result.reference_id == "sig1"
        quote_call, swap_call = session.calls
        assert quote_call.params["inputMint"] == WRAPPED_SOL_MINT
        assert quote_call.params["amount"] == "700000"
        assert swap_call.headers["Idempotency-Key"] == f"swap:{cycle.id}"
        assert swap_call.json["userPublicKey"] == str(keypair.pubkey())
        signed, = ledger.sent
        assert signed.message.account_keys[0] == keypair.pubkey()

    @pytest.mark.asyncio
    async def test_slippage_failure_refreshes_quote(self, cycle):
        keypair = Keypair()
        session = FakeSession({
            ("GET", QUOTE_URL): [(200, QUOTE)],
            ("POST", SWAP_URL): [(200, {"swapTransaction": swap_transaction(keypair)})],
        })
        ledger = FakeLedger(
            send_errors=[LedgerError("custom program error: 0x1771")],
            token_balances=[0, 50],
        )
        service = self._service(session, ledger, keypair)

        result = await service.swap(cycle, 1_000)

        assert result.amount_moved == 50
        assert [c.method for c in session.calls] == ["GET", "POST", "GET", "POST"]

    @pytest.mark.asyncio
    async def test_other_ledger_errors_propagate(self, cycle):
        keypair = Keypair()
        session = FakeSession({
            ("GET", QUOTE_URL): [(200, QUOTE)],
            ("POST", SWAP_URL): [(200, {"swapTransaction": swap_transaction(keypair)})],
        })
        ledger = FakeLedger(send_errors=[LedgerError("insufficient lamports")], token_balances=[0])
        service = self._service(session, ledger, keypair)

        with pytest.raises(LedgerError):
            await service.swap(cycle, 1_000)

    @pytest.mark.asyncio
    async def test_quote_retries_rate_limit(self):
        session = FakeSession({("GET", QUOTE_URL): [(429, "slow"), (200, QUOTE)]})
        service = self._service(session, FakeLedger(), Keypair())

        assert await service.quote(1_000) == QUOTE
        assert service._sleep.calls == [1.0]

    @pytest.mark.asyncio
    async def test_no_route_is_an_error(self):
        session = FakeSession({("GET", QUOTE_URL): [(200, {"routePlan": []})]})
        service = self._service(session, FakeLedger(), Keypair())

        with pytest.raises(ExternalServiceError):
            await service.quote(1_000)
