"""
Batch submitter for reward transfers.
"""

import time
import asyncio
from collections import deque
from typing import Deque, List, Optional, Sequence

import structlog

from reward_distributor.core.exceptions import (
    ErrorKind,
    LedgerError,
    OversizeTransactionError,
    RecipientError,
    TransactionFailedError,
    TransientLedgerError,
    UnconfirmedTransactionError,
)
from reward_distributor.core.types import AllocationRow, SubmissionBatch, SubmissionReport


logger = structlog.get_logger(__name__)


class BatchSubmitter:
    """
    Pushes allocation rows to the ledger in adaptively sized batches.

    The instruction limit per transaction is not known up front, so the
    batch width is discovered empirically: it halves on an oversize
    rejection and grows by one after a run of successes. Batches go out in
    bounded concurrent waves; everything that fails transiently in a wave is
    re-queued for the next wave after a backoff and an endpoint rotation.

    Every row handed to ``submit_all`` ends up in exactly one bucket of the
    returned report: delivered, failed, dropped or unconfirmed.
    """

    def __init__(
        self,
        ledger,
        builder,
        batch_size_default: int = 8,
        batch_size_max: int = 10,
        grow_after_successes: int = 3,
        max_in_flight: int = 3,
        min_submit_interval: float = 0.25,
        max_attempts: int = 5,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        confirm_timeout: float = 90.0,
    ):
        self.ledger = ledger
        self.builder = builder
        self.batch_size_max = max(1, batch_size_max)
        self.batch_size = min(max(1, batch_size_default), self.batch_size_max)
        self.grow_after_successes = max(1, grow_after_successes)
        self.max_in_flight = max(1, max_in_flight)
        self.min_submit_interval = min_submit_interval
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.confirm_timeout = confirm_timeout

        self.logger = logger.bind(service="batch_submitter")
        self._sleep = asyncio.sleep
        self._monotonic = time.monotonic
        self._gap_lock = asyncio.Lock()
        self._last_submit_at: Optional[float] = None
        self._success_streak = 0

    def backoff_delay(self, attempt: int) -> float:
        """Exponential backoff for the given (1-based) attempt, capped."""
        return min(self.backoff_max, self.backoff_base * (2 ** max(0, attempt - 1)))

    async def submit_all(self, rows: Sequence[AllocationRow]) -> SubmissionReport:
        """
        Deliver every row, retrying and resizing batches as needed.

        Args:
            rows: Allocation rows in submission order

        Returns:
            SubmissionReport accounting for every input row
        """
        report = SubmissionReport()
        queue: Deque[AllocationRow] = deque(rows)
        pending: Deque[SubmissionBatch] = deque()
        start_time = self._monotonic()

        self.logger.info(
            "🚀 Starting batch submission",
            rows=len(queue),
            batch_size=self.batch_size,
            max_in_flight=self.max_in_flight
        )

        while queue or pending:
            wave = self._next_wave(queue, pending)
            report.rounds += 1

            outcomes = await asyncio.gather(
                *(self._submit_spaced(batch) for batch in wave),
                return_exceptions=True
            )

            returned_rows: List[AllocationRow] = []
            retry_attempt = 0
            for batch, outcome in zip(wave, outcomes):
                attempt = self._handle_outcome(batch, outcome, report, returned_rows, pending)
                retry_attempt = max(retry_attempt, attempt)

            queue.extendleft(reversed(returned_rows))

            if retry_attempt:
                delay = self.backoff_delay(retry_attempt)
                self.ledger.rotate_endpoint()
                self.logger.info(
                    "⏱️ Backing off before retry round",
                    delay=f"{delay:.2f}s",
                    pending_batches=len(pending)
                )
                await self._sleep(delay)

        report.final_batch_size = self.batch_size
        elapsed = self._monotonic() - start_time

        log = self.logger.warning if (report.failed or report.unconfirmed or report.dropped) else self.logger.info
        log(
            "🏁 Batch submission completed",
            delivered=len(report.delivered),
            failed=len(report.failed),
            dropped=len(report.dropped),
            unconfirmed=len(report.unconfirmed),
            transactions=report.transactions_sent,
            rounds=report.rounds,
            final_batch_size=self.batch_size,
            total_time=f"{elapsed:.2f}s"
        )
        return report

    def _next_wave(self, queue: Deque[AllocationRow], pending: Deque[SubmissionBatch]) -> List[SubmissionBatch]:
        wave: List[SubmissionBatch] = []

        # Retried batches go first; split any that no longer fit the width
        while pending and len(wave) < self.max_in_flight:
            batch = pending.popleft()
            if batch.size > self.batch_size:
                queue.extendleft(reversed(batch.rows))
                continue
            wave.append(batch)

        while queue and len(wave) < self.max_in_flight:
            take = min(self.batch_size, len(queue))
            wave.append(SubmissionBatch(rows=tuple(queue.popleft() for _ in range(take))))

        return wave

    async def _submit_spaced(self, batch: SubmissionBatch) -> str:
        async with self._gap_lock:
            if self._last_submit_at is not None:
                wait = self._last_submit_at + self.min_submit_interval - self._monotonic()
                if wait > 0:
                    await self._sleep(wait)
            self._last_submit_at = self._monotonic()
        return await self.submit_batch(batch)

    async def submit_batch(self, batch: SubmissionBatch) -> str:
        """
        Build, sign, send and confirm one batch; returns the signature.

        The signature is fixed once the transaction is signed, so a send whose
        reply was lost is still confirmed by polling for it. Only an expired
        blockhash (``TransientLedgerError`` from confirmation) means the
        transaction can never land and the rows may be rebuilt.
        """
        blockhash, last_valid_block_height = await self.ledger.get_latest_blockhash()
        transaction = self.builder.build_transfers(batch.rows, blockhash)
        signature = str(transaction.signatures[0])
        try:
            await self.ledger.send_transaction(transaction)
        except TransientLedgerError as e:
            self.logger.warning(
                "Send failed, checking whether the batch landed",
                rows=batch.size,
                signature=signature[:20] + "...",
                error=e.message
            )
        await self.ledger.confirm_transaction(
            signature, last_valid_block_height, timeout=self.confirm_timeout
        )
        return signature

    def _handle_outcome(
        self,
        batch: SubmissionBatch,
        outcome,
        report: SubmissionReport,
        returned_rows: List[AllocationRow],
        pending: Deque[SubmissionBatch]
    ) -> int:
        """Apply one batch result; returns the retry attempt number when re-queued."""
        if isinstance(outcome, str):
            report.delivered.extend(batch.rows)
            report.signatures.append(outcome)
            report.transactions_sent += 1
            self._on_success()
            self.logger.info(
                "✅ Batch delivered",
                rows=batch.size,
                amount=batch.amount,
                signature=outcome[:20] + "..."
            )
            return 0

        self._success_streak = 0

        if isinstance(outcome, OversizeTransactionError):
            if batch.size <= 1:
                report.failed.extend(batch.rows)
                self.logger.error(
                    "❌ Single transfer exceeds transaction limits",
                    wallet=batch.rows[0].wallet,
                    error=outcome.message
                )
                return 0
            previous = self.batch_size
            # Batches of one wave share a width; halve once per rejected size
            self.batch_size = max(1, min(self.batch_size, batch.size // 2))
            returned_rows.extend(batch.rows)
            self.logger.warning(
                "Transaction oversize, shrinking batch",
                rows=batch.size,
                previous_batch_size=previous,
                batch_size=self.batch_size
            )
            return 0

        if isinstance(outcome, RecipientError):
            return self._drop_recipient(batch, outcome.wallet, outcome.details.get("reason"), report, pending)

        if isinstance(outcome, TransactionFailedError) and outcome.instruction_index is not None:
            row = self.builder.row_for_instruction(batch.rows, outcome.instruction_index)
            if row is not None:
                # A failed transaction pays nobody, so the other rows are safe to resend
                return self._drop_recipient(batch, row.wallet, outcome.details.get("error"), report, pending)

        if isinstance(outcome, TransientLedgerError):
            batch.retry.attempts += 1
            batch.retry.last_error = ErrorKind.TRANSIENT
            if batch.retry.attempts >= self.max_attempts:
                report.failed.extend(batch.rows)
                self.logger.error(
                    "❌ Batch failed after retries",
                    rows=batch.size,
                    attempts=batch.retry.attempts,
                    error=outcome.message
                )
                return 0
            pending.append(batch)
            self.logger.warning(
                "Transient failure, batch re-queued",
                rows=batch.size,
                attempt=batch.retry.attempts,
                error=outcome.message
            )
            return batch.retry.attempts

        if isinstance(outcome, UnconfirmedTransactionError):
            report.unconfirmed.extend(batch.rows)
            report.signatures.append(outcome.signature)
            report.transactions_sent += 1
            self.logger.error(
                "⚠️ Batch outcome unknown, not resending",
                rows=batch.size,
                signature=outcome.signature
            )
            return 0

        report.failed.extend(batch.rows)
        if isinstance(outcome, LedgerError):
            self.logger.error("❌ Batch failed", rows=batch.size, code=outcome.code, error=outcome.message)
        else:
            self.logger.error(
                "❌ Unexpected batch error",
                rows=batch.size,
                error=str(outcome),
                error_type=type(outcome).__name__
            )
        return 0

    def _drop_recipient(
        self,
        batch: SubmissionBatch,
        wallet: str,
        reason: Optional[str],
        report: SubmissionReport,
        pending: Deque[SubmissionBatch]
    ) -> int:
        """Drop the rows paying ``wallet`` and re-queue the rest of the batch."""
        bad = [row for row in batch.rows if row.wallet == wallet]
        rest = tuple(row for row in batch.rows if row.wallet != wallet)
        if not bad:
            report.failed.extend(batch.rows)
            self.logger.error("Recipient error for wallet outside batch", wallet=wallet, reason=reason)
            return 0
        report.dropped.extend(bad)
        self.logger.warning(
            "🚫 Dropped invalid recipient",
            wallet=wallet,
            amount=sum(row.amount for row in bad),
            reason=reason
        )
        if rest:
            pending.appendleft(SubmissionBatch(rows=rest, retry=batch.retry))
        return 0

    def _on_success(self):
        self._success_streak += 1
        if self._success_streak >= self.grow_after_successes and self.batch_size < self.batch_size_max:
            self.batch_size += 1
            self._success_streak = 0
            self.logger.debug("Batch size increased", batch_size=self.batch_size)
