from .expiration import ExpirationReport, expiration_reference, expire_points, unspent_points
from .ledger_service import BalanceAudit, LedgerService, generate_reference, signed_delta

__all__ = [
    "BalanceAudit",
    "ExpirationReport",
    "expiration_reference",
    "LedgerService",
    "expire_points",
    "generate_reference",
    "signed_delta",
    "unspent_points",
]
