"""
Transaction builder for reward transfers and burns.
Compiles and signs versioned transactions with the distribution wallet.
"""

from typing import List, Optional, Sequence

import structlog
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
from spl.token.instructions import (
    BurnCheckedParams,
    TransferCheckedParams,
    burn_checked,
    create_idempotent_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)

from reward_distributor.core.exceptions import OversizeTransactionError, RecipientError
from reward_distributor.core.types import AllocationRow
from reward_distributor.services.ledger_client import MintInfo, PACKET_DATA_SIZE


logger = structlog.get_logger(__name__)

# Compute-budget limit and price come first in every transaction
PREAMBLE_INSTRUCTIONS = 2
# Idempotent ATA create, then transfer_checked
INSTRUCTIONS_PER_ROW = 2


class TransferBuilder:
    """
    Builds signed transactions paying the reward token out of the
    distribution wallet's associated token account.

    Each transfer transaction carries a compute-budget preamble, then for
    every row an idempotent create of the recipient's associated token
    account followed by a ``transfer_checked``.
    """

    def __init__(
        self,
        keypair: Keypair,
        mint: MintInfo,
        compute_unit_limit: int = 400_000,
        priority_fee_micro_lamports: int = 5_000
    ):
        self.keypair = keypair
        self.mint = mint
        self.mint_pubkey = Pubkey.from_string(mint.address)
        self.compute_unit_limit = compute_unit_limit
        self.priority_fee_micro_lamports = priority_fee_micro_lamports
        self.source = get_associated_token_address(
            keypair.pubkey(), self.mint_pubkey, token_program_id=mint.program_id
        )
        self.logger = logger.bind(service="transfer_builder")

    @property
    def payer(self) -> Pubkey:
        return self.keypair.pubkey()

    def row_for_instruction(self, rows: Sequence[AllocationRow], index: int) -> Optional[AllocationRow]:
        """The row whose instructions include ``index`` in a transaction from ``build_transfers``."""
        if index < PREAMBLE_INSTRUCTIONS:
            return None
        position = (index - PREAMBLE_INSTRUCTIONS) // INSTRUCTIONS_PER_ROW
        return rows[position] if position < len(rows) else None

    def _preamble(self) -> List[Instruction]:
        return [
            set_compute_unit_limit(self.compute_unit_limit),
            set_compute_unit_price(self.priority_fee_micro_lamports),
        ]

    def _recipient(self, row: AllocationRow) -> Pubkey:
        if row.amount <= 0:
            raise RecipientError(row.wallet, "non-positive amount")
        try:
            owner = Pubkey.from_string(row.wallet)
        except ValueError as e:
            raise RecipientError(row.wallet, "malformed address") from e
        if owner == self.payer:
            raise RecipientError(row.wallet, "recipient is the distribution wallet")
        return owner

    def transfer_instructions(self, row: AllocationRow) -> List[Instruction]:
        owner = self._recipient(row)
        destination = get_associated_token_address(
            owner, self.mint_pubkey, token_program_id=self.mint.program_id
        )
        return [
            create_idempotent_associated_token_account(
                payer=self.payer,
                owner=owner,
                mint=self.mint_pubkey,
                token_program_id=self.mint.program_id,
            ),
            transfer_checked(
                TransferCheckedParams(
                    program_id=self.mint.program_id,
                    source=self.source,
                    mint=self.mint_pubkey,
                    dest=destination,
                    owner=self.payer,
                    amount=row.amount,
                    decimals=self.mint.decimals,
                    signers=[],
                )
            ),
        ]

    def build_transfers(self, rows: Sequence[AllocationRow], blockhash: Hash) -> VersionedTransaction:
        """
        Build one signed transaction paying every row.

        Raises:
            RecipientError: a row's wallet cannot be paid
            OversizeTransactionError: the serialized transaction exceeds the
                packet size limit
        """
        if not rows:
            raise ValueError("Cannot build a transfer transaction without rows")

        instructions = self._preamble()
        for row in rows:
            instructions.extend(self.transfer_instructions(row))
        return self._compile(instructions, blockhash, rows=len(rows))

    def build_burn(self, amount: int, blockhash: Hash) -> VersionedTransaction:
        """Build a signed transaction burning ``amount`` from the source account."""
        instructions = self._preamble()
        instructions.append(
            burn_checked(
                BurnCheckedParams(
                    program_id=self.mint.program_id,
                    account=self.source,
                    mint=self.mint_pubkey,
                    owner=self.payer,
                    amount=amount,
                    decimals=self.mint.decimals,
                    signers=[],
                )
            )
        )
        return self._compile(instructions, blockhash, rows=0)

    def _compile(self, instructions: List[Instruction], blockhash: Hash, rows: int) -> VersionedTransaction:
        message = MessageV0.try_compile(
            payer=self.payer,
            instructions=instructions,
            address_lookup_table_accounts=[],
            recent_blockhash=blockhash,
        )
        transaction = VersionedTransaction(message, [self.keypair])

        size = len(bytes(transaction))
        if size > PACKET_DATA_SIZE:
            raise OversizeTransactionError(
                f"Transaction too large: {size} > {PACKET_DATA_SIZE}",
                {"size": size, "limit": PACKET_DATA_SIZE, "rows": rows}
            )
        return transaction
