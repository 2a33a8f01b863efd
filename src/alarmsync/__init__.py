"""alarmsync - Client-side ordering and reconciliation of live security alarms."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("alarmsync")
except PackageNotFoundError:
    __version__ = "0+local"
from alarmsync.config import AlarmSyncConfig
from alarmsync.console import AlarmConsole
from alarmsync.dispatcher import EventDispatcher
from alarmsync.exceptions import (
    AlarmActionError,
    AlarmFallbackError,
    AlarmSyncConfigError,
    AlarmSyncError,
    AlarmTransportError,
    EnvelopeValidationError,
    InvalidTransitionError,
    UnknownAlarmError,
)
from alarmsync.models import (
    Alarm,
    AlarmStatus,
    AlarmUpdateMessage,
    AlarmView,
    AppState,
    BackfillRequest,
    Category,
    ConnectionStatus,
    StackSnapshot,
    SyncState,
)
from alarmsync.optimistic import OptimisticCoordinator
from alarmsync.state.events import ApplyOutcome, OverlayResolution, StoreChange, UpdateSource
from alarmsync.state.ordering import OrderingEngine
from alarmsync.state.store import StackStore
from alarmsync.sync.reconciler import SequenceReconciler
from alarmsync.sync.retry import BackfillRetryPolicy

__all__ = [
    "__version__",
    "Alarm",
    "AlarmActionError",
    "AlarmConsole",
    "AlarmFallbackError",
    "AlarmStatus",
    "AlarmSyncConfig",
    "AlarmSyncConfigError",
    "AlarmSyncError",
    "AlarmTransportError",
    "AlarmUpdateMessage",
    "AlarmView",
    "AppState",
    "ApplyOutcome",
    "BackfillRequest",
    "BackfillRetryPolicy",
    "Category",
    "ConnectionStatus",
    "EnvelopeValidationError",
    "EventDispatcher",
    "InvalidTransitionError",
    "OptimisticCoordinator",
    "OrderingEngine",
    "OverlayResolution",
    "SequenceReconciler",
    "StackSnapshot",
    "StackStore",
    "StoreChange",
    "SyncState",
    "UnknownAlarmError",
    "UpdateSource",
]
