from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import httpx

from shipping_connector.config import settings
from shipping_connector.errors import CarrierAPIError
from shipping_connector.utils.logger import carrier_logger, logger


@dataclass(frozen=True)
class Address:
    name: str
    address: str
    city: str
    state: str
    postal_code: str
    country: str
    company: Optional[str] = None
    phone: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Address":
        return cls(
            name=data.get("name") or "",
            address=data.get("address") or "",
            city=data.get("city") or "",
            state=data.get("state") or data.get("province") or "",
            postal_code=data.get("postal_code") or "",
            country=data.get("country") or "",
            company=data.get("company"),
            phone=data.get("phone"),
        )

    @property
    def compact_postal_code(self) -> str:
        return "".join(self.postal_code.split())


@dataclass(frozen=True)
class PackageDetails:
    """Parcel dimensions in inches and weight in pounds."""

    weight: float
    length: float
    width: float
    height: float
    value: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PackageDetails":
        return cls(
            weight=float(data["weight"]),
            length=float(data.get("length") or 0),
            width=float(data.get("width") or 0),
            height=float(data.get("height") or 0),
            value=float(data["value"]) if data.get("value") is not None else None,
        )


@dataclass(frozen=True)
class ShipmentOptions:
    signature_required: bool = False
    insurance: bool = False
    saturday_delivery: bool = False


@dataclass(frozen=True)
class ShipmentDetails:
    """Everything a carrier needs to quote or book one parcel."""

    from_address: Address
    to_address: Address
    package: PackageDetails
    options: ShipmentOptions = field(default_factory=ShipmentOptions)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShipmentDetails":
        options = data.get("options") or {}
        return cls(
            from_address=Address.from_dict(data["from"]),
            to_address=Address.from_dict(data["to"]),
            package=PackageDetails.from_dict(data["package"]),
            options=ShipmentOptions(
                signature_required=bool(options.get("signature_required", False)),
                insurance=bool(options.get("insurance", False)),
                saturday_delivery=bool(options.get("saturday_delivery", False)),
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": asdict(self.from_address),
            "to": asdict(self.to_address),
            "package": asdict(self.package),
            "options": asdict(self.options),
        }


@dataclass
class RateResponse:
    id: str
    service_code: str
    service_name: str
    carrier: str
    rate: float
    currency: str = "USD"
    estimated_days: Optional[str] = None
    estimated_delivery: Optional[str] = None
    zone: Optional[str] = None
    markup: Optional[float] = None
    total_rate: Optional[float] = None

    @property
    def effective_total(self) -> float:
        return self.total_rate if self.total_rate is not None else self.rate

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RateResponse":
        def _opt_float(key: str) -> Optional[float]:
            value = data.get(key)
            return float(value) if value is not None else None

        def _opt_str(key: str) -> Optional[str]:
            value = data.get(key)
            return str(value) if value is not None else None

        return cls(
            id=str(data.get("id") or f"{data.get('carrier', '')}_{data.get('service_code', '')}"),
            service_code=str(data.get("service_code") or ""),
            service_name=str(data.get("service_name") or ""),
            carrier=str(data.get("carrier") or ""),
            rate=float(data.get("rate") or 0),
            currency=data.get("currency") or "USD",
            estimated_days=_opt_str("estimated_days"),
            estimated_delivery=_opt_str("estimated_delivery"),
            zone=_opt_str("zone"),
            markup=_opt_float("markup"),
            total_rate=_opt_float("total_rate"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ShipmentResponse:
    id: str
    tracking_number: str
    cost: float
    currency: str
    service_code: str
    service_name: str
    carrier: str
    label_url: Optional[str] = None
    label_pdf: Optional[str] = None  # base64

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LabelResult:
    label_url: Optional[str] = None
    label_pdf: Optional[str] = None  # base64

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TrackingResult:
    tracking_number: str
    carrier: str
    status: Optional[str] = None
    description: Optional[str] = None
    last_event_at: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CarrierServiceInfo:
    code: str
    name: str
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class CredentialValidation:
    valid: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def apply_markup(rate: float, markup_percent: float) -> Tuple[float, float]:
    """Return ``(markup, total)`` for a percentage markup on ``rate``."""
    markup = (rate * (markup_percent or 0)) / 100
    return markup, rate + markup


class CarrierInterface:
    """Contract every carrier adapter implements.

    All operations are coroutines. Failures raise :class:`CarrierError`
    subclasses; aggregate callers decide whether to degrade or propagate.
    """

    carrier_name: str = ""

    async def get_rates(self, details: ShipmentDetails) -> List[RateResponse]:  # pragma: no cover - interface
        raise NotImplementedError

    async def create_shipment(self, details: ShipmentDetails, service_code: str) -> ShipmentResponse:  # pragma: no cover - interface
        raise NotImplementedError

    async def purchase_label(self, shipment_id: str) -> LabelResult:  # pragma: no cover - interface
        raise NotImplementedError

    async def track_shipment(self, tracking_number: str) -> TrackingResult:  # pragma: no cover - interface
        raise NotImplementedError

    async def validate_credentials(self) -> CredentialValidation:  # pragma: no cover - interface
        raise NotImplementedError

    async def get_services(self) -> List[CarrierServiceInfo]:  # pragma: no cover - interface
        raise NotImplementedError


class HttpCarrier(CarrierInterface):
    """Shared httpx plumbing for adapters that talk to a vendor API directly.

    ``transport`` is handed to every ``httpx.AsyncClient`` the adapter opens,
    which lets tests plug in ``httpx.MockTransport``.
    """

    def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: Optional[float] = None):
        self._transport = transport
        self._timeout = timeout if timeout is not None else settings.CARRIER_HTTP_TIMEOUT_SECONDS

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout, connect=10.0),
            transport=self._transport,
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        action: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request; any non-2xx answer becomes :class:`CarrierAPIError`.

        ``action`` is the human label used in the error, e.g. "rating".
        """
        try:
            async with self._client() as client:
                resp = await client.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            carrier_logger.log_carrier_event(
                self.carrier_name,
                f"{action}_transport_error",
                f"{method} {url} failed",
                status="error",
                error=str(exc),
            )
            raise CarrierAPIError(
                f"{self.carrier_name} {action} failed: {exc}",
                carrier=self.carrier_name,
            ) from exc

        if not resp.is_success:
            body = resp.text
            carrier_logger.log_carrier_event(
                self.carrier_name,
                f"{action}_failed",
                f"{method} {url} returned {resp.status_code}",
                response_data={"status_code": resp.status_code},
                status="error",
                error=body[:500],
            )
            raise CarrierAPIError(
                f"{self.carrier_name} {action} failed: {body}",
                carrier=self.carrier_name,
                status_code=resp.status_code,
                body=body,
            )

        logger.debug("%s %s %s -> %s", self.carrier_name, method, url, resp.status_code)
        return resp
