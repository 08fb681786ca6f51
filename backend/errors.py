"""
Exception hierarchy for the production tracking service

Store errors come from the entity store adapters and reach callers unmodified.
Validation errors are raised by the service layer before anything is written.
Cascade errors report an aggregation chain that stopped part way up the tree.
"""
from typing import Dict, List, Optional


class ProductionError(Exception):
    """Base class for all production tracking errors"""


class StoreError(ProductionError):
    """Failure reported by the backing record store"""

    def __init__(self, message: str, kind: Optional[str] = None, record_id: Optional[str] = None):
        self.kind = kind
        self.record_id = record_id
        super().__init__(message)


class RecordNotFoundError(StoreError):
    """Requested record does not exist"""

    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} id={record_id} not found", kind, record_id)


class ConstraintViolationError(StoreError):
    """Write rejected by the store: constraint violation or conflicting write"""


class TransportError(StoreError):
    """Store could not be reached or the connection failed mid-request"""


class ValidationError(ProductionError):
    """Input violates a business rule; raised before any write happens

    details maps field names to human-readable problems.
    """

    def __init__(self, message: str, details: Optional[Dict[str, str]] = None):
        self.details = details or {}
        super().__init__(message)


class CascadeError(ProductionError):
    """Progress cascade failed after at least one level was persisted

    The levels in completed_levels hold fresh values; everything above
    failed_level is stale until the next cascade or a manual refresh.
    """

    def __init__(self, component_id: str, completed_levels: List[str], failed_level: str):
        self.component_id = component_id
        self.completed_levels = list(completed_levels)
        self.failed_level = failed_level
        super().__init__(
            f"Progress cascade for component {component_id} failed at {failed_level} "
            f"(updated: {', '.join(completed_levels) or 'none'})"
        )
