"""
Ledger Errors

Every mutation either fails before producing a write plan or raises one of
these after a well-defined prefix has been committed (PartialBatchFailure).
All errors derive from ValueError so callers that guard ledger calls with
`except ValueError` keep working.
"""

from typing import List, Optional


class LedgerError(ValueError):
    """Base class for ledger errors"""
    retryable = False


class ValidationError(LedgerError):
    """Malformed input: negative amounts, unknown enum values, bad percentages"""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)


class SequenceConflict(LedgerError):
    """Concurrent sequence assignment (invoice number, chit month); retry with fresh state"""
    retryable = True

    def __init__(self, scope: str, message: Optional[str] = None):
        self.scope = scope
        super().__init__(message or f"Sequence conflict on {scope}; reload and retry")


class VersionConflict(SequenceConflict):
    """A record changed since it was read; the stale write was rejected"""

    def __init__(self, entity_type: str, entity_id: str,
                 expected_version: Optional[int], actual_version: Optional[int]):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"{entity_type}:{entity_id}",
            f"{entity_type} {entity_id} is at version {actual_version}, "
            f"expected {expected_version}"
        )


class IntegrityViolation(LedgerError):
    """A state that must be reconciled by hand; never corrected silently"""

    def __init__(self, message: str, entity_type: Optional[str] = None,
                 entity_id: Optional[str] = None):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(message)


class OrphanedWrite(IntegrityViolation):
    """A step failed and earlier committed writes could not be rolled back"""

    def __init__(self, operation: str, failed_step: str, records: List[str],
                 cause: Optional[BaseException] = None):
        self.operation = operation
        self.failed_step = failed_step
        self.records = records
        self.cause = cause
        super().__init__(
            f"{operation} failed at step '{failed_step}' and could not be rolled back; "
            f"orphaned records: {', '.join(records)}"
        )


class DependencyNotFound(LedgerError):
    """A referenced invoice, auction, payment or account does not exist"""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class PartialBatchFailure(LedgerError):
    """A chunked bulk operation stopped after `committed` of `total` records"""

    def __init__(self, operation: str, committed: int, total: int,
                 cause: Optional[BaseException] = None):
        self.operation = operation
        self.committed = committed
        self.total = total
        self.cause = cause
        super().__init__(
            f"{operation} failed after {committed} of {total} records were committed"
            + (f": {cause}" if cause else "")
        )

    @property
    def remaining(self) -> int:
        return self.total - self.committed
