"""
Fingerprint Builder

Derives a stable digest from the attributes that identify a physical
vehicle. When the digest for a registration changes, the plate has been
reassigned to a different vehicle.

Pure functions only - no I/O.
"""
import hashlib
import json
import re
from typing import Any, Dict, Optional

from ...models.unlock import CoreIdentity
from .errors import InvalidIdentityError


# Accepted source keys per attribute (DVLA vehicle enquiry names first)
IDENTITY_FIELD_ALIASES = {
    "make": ("make", "Make", "dvla_make"),
    "first_registration_month": (
        "monthOfFirstRegistration",
        "month_of_first_registration",
        "first_registration_month",
        "firstRegistrationMonth",
    ),
    "engine_capacity_cc": ("engineCapacity", "engine_capacity", "engine_capacity_cc", "engineCapacityCc"),
    "fuel_type": ("fuelType", "fuel_type"),
    "body_style": ("bodyStyle", "body_style", "wheelplan"),
}

_MONTH_PATTERN = re.compile(r"^(\d{4})-(\d{1,2})")


def _first_present(document: Dict[str, Any], keys) -> Any:
    for key in keys:
        value = document.get(key)
        if value not in (None, ""):
            return value
    return None


def _normalize_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = " ".join(str(value).split()).upper()
    return text or None


def _normalize_month(value: Any) -> Optional[str]:
    if value is None:
        return None
    match = _MONTH_PATTERN.match(str(value).strip())
    if not match:
        return _normalize_text(value)
    year, month = match.groups()
    return f"{year}-{int(month):02d}"


def _normalize_capacity(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError):
        raise InvalidIdentityError(f"Engine capacity is not numeric: {value!r}")


def extract_core_identity(document: Optional[Dict[str, Any]]) -> CoreIdentity:
    """
    Reduce a registration lookup document to its core identity.

    Raises:
        InvalidIdentityError: document missing or has no make
    """
    if not isinstance(document, dict):
        raise InvalidIdentityError("Identity document is missing")

    make = _normalize_text(_first_present(document, IDENTITY_FIELD_ALIASES["make"]))
    if not make:
        raise InvalidIdentityError("Identity document has no make")

    return CoreIdentity(
        make=make,
        first_registration_month=_normalize_month(
            _first_present(document, IDENTITY_FIELD_ALIASES["first_registration_month"])
        ),
        engine_capacity_cc=_normalize_capacity(
            _first_present(document, IDENTITY_FIELD_ALIASES["engine_capacity_cc"])
        ),
        fuel_type=_normalize_text(_first_present(document, IDENTITY_FIELD_ALIASES["fuel_type"])),
        body_style=_normalize_text(_first_present(document, IDENTITY_FIELD_ALIASES["body_style"])),
    )


def build_fingerprint(identity: CoreIdentity) -> str:
    """
    SHA256 hex digest of a core identity.

    Keys are sorted so equal identities always hash equally.
    """
    if not identity.make:
        raise InvalidIdentityError("Core identity has no make")
    state_json = json.dumps(identity.to_dict(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(state_json.encode()).hexdigest()


def fingerprint_document(document: Optional[Dict[str, Any]]) -> str:
    """Extract the core identity from a lookup document and fingerprint it."""
    return build_fingerprint(extract_core_identity(document))
