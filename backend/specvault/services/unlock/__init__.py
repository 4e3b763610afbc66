"""
Spec Unlock Services

Decides who may see a vehicle's full specification, at what cost, and
records the outcome.

- SpecUnlockService: transactional orchestrator (single entry point)
- SnapshotStore: append-only spec snapshots keyed by vehicle fingerprint
- RetentionStateTracker: provider retention backoff + one free retry
- EntitlementResolver: premium status and capped monthly allowance
- CreditLedger: append-only paid unlock credits
- IdentityCache: registration core-identity documents
"""

from .errors import UnlockError, UnlockErrorCode, InvalidIdentityError, ProviderError
from .fingerprint import build_fingerprint, extract_core_identity, fingerprint_document
from .identity_cache import IdentityCache
from .snapshot_store import SnapshotStore, derive_engine_code
from .retention import RetentionStateTracker, RetentionState, RetentionTransition
from .entitlements import EntitlementResolver
from .credit_ledger import CreditLedger
from .providers import SpecProviderClient, TyreProviderClient, build_tyre_configurations
from .unlock_service import SpecUnlockService, normalize_registration, resolve_unlock_source

__all__ = [
    'UnlockError',
    'UnlockErrorCode',
    'InvalidIdentityError',
    'ProviderError',
    'build_fingerprint',
    'extract_core_identity',
    'fingerprint_document',
    'IdentityCache',
    'SnapshotStore',
    'derive_engine_code',
    'RetentionStateTracker',
    'RetentionState',
    'RetentionTransition',
    'EntitlementResolver',
    'CreditLedger',
    'SpecProviderClient',
    'TyreProviderClient',
    'build_tyre_configurations',
    'SpecUnlockService',
    'normalize_registration',
    'resolve_unlock_source',
]
