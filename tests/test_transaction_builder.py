"""
Test transfer and burn transaction building with real keypairs.
"""

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction
from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID

from reward_distributor.core.exceptions import OversizeTransactionError, RecipientError
from reward_distributor.core.types import AllocationRow
from reward_distributor.services.ledger_client import MintInfo, PACKET_DATA_SIZE
from reward_distributor.services.transaction_builder import TransferBuilder


@pytest.fixture
def payer():
    return Keypair()


@pytest.fixture
def builder(payer):
    mint = MintInfo(address=str(Keypair().pubkey()), decimals=6, program_id=TOKEN_PROGRAM_ID)
    return TransferBuilder(payer, mint)


def rows(count, amount=1_000):
    return [AllocationRow(wallet=str(Keypair().pubkey()), amount=amount) for _ in range(count)]


def test_builds_signed_transfer(builder, payer):
    tx = builder.build_transfers(rows(2), Hash.default())

    assert isinstance(tx, VersionedTransaction)
    assert len(bytes(tx)) <= PACKET_DATA_SIZE
    assert tx.message.account_keys[0] == payer.pubkey()
    assert len(tx.signatures) == 1
    # compute limit + compute price + (create ATA + transfer) per row
    assert len(tx.message.instructions) == 2 + 2 * 2


def test_too_many_rows_is_oversize(builder):
    with pytest.raises(OversizeTransactionError) as exc_info:
        builder.build_transfers(rows(30), Hash.default())

    assert exc_info.value.details["rows"] == 30


def test_malformed_wallet_is_recipient_error(builder):
    bad = AllocationRow(wallet="not-a-wallet", amount=5)

    with pytest.raises(RecipientError) as exc_info:
        builder.build_transfers(rows(1) + [bad], Hash.default())

    assert exc_info.value.wallet == "not-a-wallet"
    assert isinstance(exc_info.value.__cause__, ValueError)


def test_paying_the_distribution_wallet_is_rejected(builder, payer):
    with pytest.raises(RecipientError):
        builder.build_transfers([AllocationRow(str(payer.pubkey()), 5)], Hash.default())


def test_zero_amount_is_rejected(builder):
    with pytest.raises(RecipientError):
        builder.build_transfers(rows(1, amount=0), Hash.default())


def test_empty_batch_is_rejected(builder):
    with pytest.raises(ValueError):
        builder.build_transfers([], Hash.default())


def test_builds_burn(builder):
    tx = builder.build_burn(500, Hash.default())

    assert len(tx.message.instructions) == 3


def test_token_2022_mint_uses_its_program(payer):
    mint = MintInfo(address=str(Keypair().pubkey()), decimals=9, program_id=TOKEN_2022_PROGRAM_ID)
    builder = TransferBuilder(payer, mint)

    tx = builder.build_transfers(rows(1), Hash.default())

    assert TOKEN_2022_PROGRAM_ID in tx.message.account_keys
    assert TOKEN_PROGRAM_ID not in tx.message.account_keys


def test_instruction_index_maps_to_its_row(builder):
    batch = rows(3)
    tx = builder.build_transfers(batch, Hash.default())
    last = len(tx.message.instructions) - 1

    assert builder.row_for_instruction(batch, 0) is None
    assert builder.row_for_instruction(batch, 1) is None
    assert builder.row_for_instruction(batch, 2) == batch[0]
    assert builder.row_for_instruction(batch, 5) == batch[1]
    assert builder.row_for_instruction(batch, last) == batch[2]
    assert builder.row_for_instruction(batch, last + 1) is None
