from dtrlog.engine import TimesheetEngine
from dtrlog.errors import DtrlogError, FetchFailed, HasChildren, InvariantViolation, MutationFailed
from dtrlog.gateway import LocalStoreGateway, StoreGateway, StoreResult
from dtrlog.models import DTR, ClockEvent, Timelog, Timesheet

__version__ = "0.1.0"

__all__ = [
    "ClockEvent",
    "DTR",
    "DtrlogError",
    "FetchFailed",
    "HasChildren",
    "InvariantViolation",
    "LocalStoreGateway",
    "MutationFailed",
    "StoreGateway",
    "StoreResult",
    "Timelog",
    "Timesheet",
    "TimesheetEngine",
]
