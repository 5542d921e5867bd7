from .ledger_service import LedgerEntry, LedgerReason, LedgerService

__all__ = ["LedgerEntry", "LedgerReason", "LedgerService"]
