"""Backend package for the FLaMO matching and entitlement core."""

from .access import AccessResolver
from .config import BackendSettings, load_settings
from .errors import CoreError, ErrorCode, StoreUnavailableError
from .ledger import EntitlementLedger
from .matching import MatchService
from .models import Outcome, PurchaseEvent
from .presence import PresenceService
from .security import generate_session_code
from .store import CoreStore, InMemoryCoreStore, PostgresCoreStore, create_store
from .vibelock import VibeLockService

__all__ = [
    "AccessResolver",
    "BackendSettings",
    "CoreError",
    "CoreStore",
    "create_store",
    "EntitlementLedger",
    "ErrorCode",
    "generate_session_code",
    "InMemoryCoreStore",
    "load_settings",
    "MatchService",
    "Outcome",
    "PostgresCoreStore",
    "PresenceService",
    "PurchaseEvent",
    "StoreUnavailableError",
    "VibeLockService",
]
