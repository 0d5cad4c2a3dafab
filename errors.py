"""
Error taxonomy shared by every component.

Each error carries a machine-readable ``kind`` and the offending ``field`` so a
caller can tell "fix your input" (``retryable=False``) from "wait and retry"
(``retryable=True``) from "this will never succeed" (``permanent=True``).
"""
from typing import Optional


class LedgerError(Exception):
    kind = "LedgerError"
    retryable = False
    permanent = False

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "field": self.field,
            "message": self.message,
            "retryable": self.retryable,
            "permanent": self.permanent,
        }


class AlreadyRegistered(LedgerError):
    kind = "AlreadyRegistered"
    permanent = True


class InvalidRole(LedgerError):
    kind = "InvalidRole"


class NotRegistered(LedgerError):
    kind = "NotRegistered"


class NotFound(LedgerError):
    kind = "NotFound"


class NotAuthorized(LedgerError):
    kind = "NotAuthorized"
    permanent = True


class NotAPatient(LedgerError):
    kind = "NotAPatient"


class TargetIsPatient(LedgerError):
    kind = "TargetIsPatient"


class InvalidType(LedgerError):
    kind = "InvalidType"


class BadCredentials(LedgerError):
    kind = "BadCredentials"


class AuditAppendFailed(LedgerError):
    kind = "AuditAppendFailed"
    retryable = True

    def __init__(self, message: str, field: Optional[str] = "record_id", record=None):
        super().__init__(message, field)
        # Set when raised after a committed ledger write
        self.record = record
