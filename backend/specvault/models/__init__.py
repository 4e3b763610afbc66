"""SpecVault - Data Models"""
from .unlock import (
    UnlockSource, ProviderStatus, Requester, CoreIdentity,
    ProviderResult, TyrePosition, TyreConfiguration,
    UnlockResult, RetentionDecision,
)

__all__ = [
    "UnlockSource", "ProviderStatus", "Requester", "CoreIdentity",
    "ProviderResult", "TyrePosition", "TyreConfiguration",
    "UnlockResult", "RetentionDecision",
]
