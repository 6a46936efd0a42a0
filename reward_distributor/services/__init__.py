"""
Ledger, external service and distribution pipeline components.
"""

from .allocation import AllocationPolicy, allocate
from .batch_submitter import BatchSubmitter
from .ledger_client import LedgerClient, MintInfo, classify_error
from .transaction_builder import TransferBuilder

__all__ = [
    "AllocationPolicy",
    "allocate",
    "BatchSubmitter",
    "LedgerClient",
    "MintInfo",
    "classify_error",
    "TransferBuilder",
]
