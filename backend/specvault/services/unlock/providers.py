"""
Vehicle data provider clients.

Thin HTTP wrappers around the provider's lookup endpoint. Both the spec
package and the tyre package are served from the same URL and differ only
by PackageName. Transport failures surface as ProviderError so callers can
treat them as recoverable.
"""
import logging
from typing import Any, Callable, Dict, List, Optional

import requests

from ... import config
from ...models.db_models import utcnow
from ...models.unlock import ProviderResult, TyreConfiguration, TyrePosition
from .errors import ProviderError

logger = logging.getLogger(__name__)


DocumentBuilder = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]

SPEC_DOCUMENT_VERSION = 2


def default_document_builder(results: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Wrap raw provider results as a spec document.

    Rendering the human-readable spec is done by the document builder the
    application wires in; this default keeps the results intact.
    """
    if not results or not results.get("VehicleDetails"):
        return None
    return {
        "_meta": {
            "generated_at": utcnow().isoformat(),
            "spec_version": SPEC_DOCUMENT_VERSION,
        },
        "results": results,
    }


def extract_status_code(payload: Dict[str, Any]) -> Optional[str]:
    """Provider status code, wherever this API version put it."""
    header = payload.get("Header") or {}
    for value in (
        payload.get("StatusCode"),
        payload.get("statusCode"),
        header.get("StatusCode"),
        header.get("statusCode"),
    ):
        if value is not None:
            return str(value)
    return None


class _LookupClient:
    """Shared GET against {base}/r2/lookup."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or config.SPEC_API_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.SPEC_API_KEY
        self.timeout = timeout or config.PROVIDER_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def _lookup(self, package_name: str, registration: str) -> Dict[str, Any]:
        try:
            response = self.session.get(
                f"{self.base_url}/r2/lookup",
                params={"ApiKey": self.api_key, "PackageName": package_name, "Vrm": registration},
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json() or {}
        except requests.RequestException as e:
            raise ProviderError(f"{package_name} lookup failed for {registration}: {e}") from e
        except ValueError as e:
            raise ProviderError(f"{package_name} lookup returned invalid JSON for {registration}") from e


class SpecProviderClient(_LookupClient):
    """Fetches the vehicle details package."""

    def __init__(
        self,
        package_name: Optional[str] = None,
        document_builder: DocumentBuilder = default_document_builder,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.package_name = package_name or config.SPEC_PACKAGE_NAME
        self.document_builder = document_builder

    def fetch(self, registration: str) -> ProviderResult:
        payload = self._lookup(self.package_name, registration)
        status_code = extract_status_code(payload)
        results = payload.get("Results") or {}
        document = self.document_builder(results) if results.get("VehicleDetails") else None
        logger.info(f"Spec provider answered {status_code} for {registration}")
        return ProviderResult(document=document, status_code=status_code)


# =============================================================================
# TYRES
# =============================================================================

def _tyre_position(tyre: Optional[Dict[str, Any]]) -> Optional[TyrePosition]:
    if not tyre:
        return None
    pressure = tyre.get("Pressure") or {}
    return TyrePosition(
        size=tyre.get("SizeDescription"),
        load_index=tyre.get("LoadIndex"),
        speed_index=tyre.get("SpeedIndex"),
        pressure_normal=pressure.get("TyrePressure"),
        pressure_laden=pressure.get("TyrePressureLaden"),
    )


def build_tyre_configurations(payload: Dict[str, Any]) -> List[TyreConfiguration]:
    """Parse Results.TyreDetails.TyreDetailsList into fitment options."""
    items = (((payload or {}).get("Results") or {}).get("TyreDetails") or {}).get("TyreDetailsList") or []

    configurations = []
    for item in items:
        front = item.get("Front") or {}
        rear = item.get("Rear") or {}
        front_tyre = front.get("Tyre")
        rear_tyre = rear.get("Tyre")
        wheel_inches = (front_tyre or {}).get("RimDiameterInches")
        if wheel_inches is None:
            wheel_inches = (rear_tyre or {}).get("RimDiameterInches")
        configurations.append(TyreConfiguration(
            wheel_inches=wheel_inches,
            front=_tyre_position(front_tyre),
            rear=_tyre_position(rear_tyre),
            rim=front.get("Rim"),
            hub=item.get("Hub"),
            fixing=item.get("Fixing"),
        ))
    return configurations


class TyreProviderClient(_LookupClient):
    """Fetches the tyre details package."""

    def __init__(self, package_name: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        self.package_name = package_name or config.TYRE_PACKAGE_NAME

    def fetch(self, registration: str) -> List[TyreConfiguration]:
        return build_tyre_configurations(self._lookup(self.package_name, registration))
