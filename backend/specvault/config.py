"""
SpecVault - Runtime Configuration
Environment-driven settings for providers and unlock policy
"""
import os

# Vehicle data provider (spec + tyre packages share one lookup endpoint)
SPEC_API_BASE_URL = os.getenv("SPEC_API_BASE_URL", "https://uk.api.vehicledataglobal.com")
SPEC_API_KEY = os.getenv("SPEC_API_KEY", "")
SPEC_PACKAGE_NAME = os.getenv("SPEC_PACKAGE_NAME", "VehicleDetails")
TYRE_PACKAGE_NAME = os.getenv("TYRE_PACKAGE_NAME", "TyreDetails")
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"))

# Unlock policy
IDENTITY_CACHE_TTL_HOURS = int(os.getenv("IDENTITY_CACHE_TTL_HOURS", "24"))
RETENTION_RETRY_DAYS = int(os.getenv("RETENTION_RETRY_DAYS", "7"))
MONTHLY_FREE_UNLOCKS = int(os.getenv("MONTHLY_FREE_UNLOCKS", "3"))

# Auth
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "specvault-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
