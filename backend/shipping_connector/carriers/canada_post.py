from __future__ import annotations

import base64
from typing import Any, Dict, List, Optional
from xml.etree import ElementTree as ET

import httpx

from shipping_connector.carriers.base import (
    CarrierServiceInfo,
    CredentialValidation,
    HttpCarrier,
    LabelResult,
    RateResponse,
    ShipmentDetails,
    ShipmentResponse,
    TrackingResult,
    apply_markup,
)
from shipping_connector.config import settings
from shipping_connector.errors import CarrierAPIError, CarrierConfigurationError, CarrierError
from shipping_connector.utils.logger import logger
from shipping_connector.utils.xml_utils import find_text, parse_xml, xml_text


RATE_NS = "http://www.canadapost.ca/ws/ship/rate-v4"
NCS_NS = "http://www.canadapost.ca/ws/ship/ncs-v2"

RATE_MEDIA_TYPE = "application/vnd.cpc.ship.rate-v4+xml"
NCS_MEDIA_TYPE = "application/vnd.cpc.ship.ncs-v2+xml"
SERVICE_MEDIA_TYPE = "application/vnd.cpc.ship.service-v3+xml"
TRACK_MEDIA_TYPE = "application/vnd.cpc.track+xml"

LB_TO_KG = 0.453592
IN_TO_CM = 2.54

CANADA_POST_SERVICES: Dict[str, str] = {
    "DOM.RP": "Regular Parcel",
    "DOM.EP": "Expedited Parcel",
    "DOM.XP": "Xpresspost",
    "DOM.XP.CERT": "Xpresspost Certified",
    "DOM.PC": "Priority",
    "DOM.DT": "Delivered Tonight",
}

CANADA_POST_SERVICE_DESCRIPTIONS: Dict[str, str] = {
    "DOM.RP": "Regular ground delivery",
    "DOM.EP": "Expedited ground delivery",
    "DOM.XP": "Fast delivery with tracking",
    "DOM.XP.CERT": "Xpresspost with signature",
    "DOM.PC": "Fastest domestic service",
    "DOM.DT": "Same day evening delivery",
}


def canada_post_service_name(code: str) -> str:
    return CANADA_POST_SERVICES.get(code, f"Canada Post Service {code}")


def _kg(pounds: float) -> str:
    return f"{pounds * LB_TO_KG:.2f}"


def _cm(inches: float) -> str:
    return f"{inches * IN_TO_CM:.1f}"


def _parcel_characteristics(details: ShipmentDetails) -> str:
    pkg = details.package
    return (
        "<parcel-characteristics>"
        f"<weight>{_kg(pkg.weight)}</weight>"
        "<dimensions>"
        f"<length>{_cm(pkg.length)}</length>"
        f"<width>{_cm(pkg.width)}</width>"
        f"<height>{_cm(pkg.height)}</height>"
        "</dimensions>"
        "</parcel-characteristics>"
    )


def _destination(details: ShipmentDetails) -> str:
    to = details.to_address
    country = (to.country or "CA").upper()
    if country == "CA":
        inner = f"<domestic><postal-code>{xml_text(to.compact_postal_code)}</postal-code></domestic>"
    elif country == "US":
        inner = f"<united-states><zip-code>{xml_text(to.compact_postal_code)}</zip-code></united-states>"
    else:
        inner = f"<international><country-code>{xml_text(country)}</country-code></international>"
    return f"<destination>{inner}</destination>"


class CanadaPostCarrier(HttpCarrier):
    carrier_name = "Canada Post"

    def __init__(
        self,
        credentials: Dict[str, Any],
        markup: float = 0,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(transport=transport, timeout=timeout)
        self.credentials: Dict[str, Any] = dict(credentials)
        self.markup = markup or 0
        self.base_url = settings.canada_post_base_url(
            bool(self.credentials.get("is_production"))
        ).rstrip("/")

    def _auth(self) -> tuple:
        api_key = self.credentials.get("api_key")
        api_secret = self.credentials.get("api_secret")
        if not api_key or not api_secret:
            raise CarrierConfigurationError(
                "Canada Post api_key and api_secret are required", carrier=self.carrier_name
            )
        return (api_key, api_secret)

    def build_rate_request(self, details: ShipmentDetails) -> str:
        contract_id = self.credentials.get("contract_id")
        contract = f"<contract-id>{xml_text(contract_id)}</contract-id>" if contract_id else ""
        return (
            '<?xml version="1.0" encoding="UTF-8"?>'
            f'<mailing-scenario xmlns="{RATE_NS}">'
            f"<customer-number>{xml_text(self.credentials.get('customer_number'))}</customer-number>"
            f"{contract}"
            f"{_parcel_characteristics(details)}"
            f"<origin-postal-code>{xml_text(details.from_address.compact_postal_code)}</origin-postal-code>"
            f"{_destination(details)}"
            "</mailing-scenario>"
        )

    def build_shipment_request(self, details: ShipmentDetails, service_code: str) -> str:
        sender = details.from_address
        dest = details.to_address
        return (
            '<?xml version="1.0" encoding="UTF-8"?>'
            f'<non-contract-shipment xmlns="{NCS_NS}">'
            "<delivery-spec>"
            f"<service-code>{xml_text(service_code)}</service-code>"
            "<sender>"
            f"<name>{xml_text(sender.name)}</name>"
            f"<company>{xml_text(sender.company)}</company>"
            f"<contact-phone>{xml_text(sender.phone)}</contact-phone>"
            "<address-details>"
            f"<address-line-1>{xml_text(sender.address)}</address-line-1>"
            f"<city>{xml_text(sender.city)}</city>"
            f"<prov-state>{xml_text(sender.state)}</prov-state>"
            f"<country-code>{xml_text(sender.country)}</country-code>"
            f"<postal-zip-code>{xml_text(sender.compact_postal_code)}</postal-zip-code>"
            "</address-details>"
            "</sender>"
            "<destination>"
            f"<name>{xml_text(dest.name)}</name>"
            f"<company>{xml_text(dest.company)}</company>"
            "<address-details>"
            f"<address-line-1>{xml_text(dest.address)}</address-line-1>"
            f"<city>{xml_text(dest.city)}</city>"
            f"<prov-state>{xml_text(dest.state)}</prov-state>"
            f"<country-code>{xml_text(dest.country)}</country-code>"
            f"<postal-zip-code>{xml_text(dest.compact_postal_code)}</postal-zip-code>"
            "</address-details>"
            "</destination>"
            f"{_parcel_characteristics(details)}"
            "<print-preferences><output-format>8.5x11</output-format></print-preferences>"
            "</delivery-spec>"
            "</non-contract-shipment>"
        )

    async def get_rates(self, details: ShipmentDetails) -> List[RateResponse]:
        if not self.credentials.get("customer_number"):
            raise CarrierConfigurationError(
                "Canada Post customer number is required for rating", carrier=self.carrier_name
            )

        resp = await self._request(
            "POST",
            f"{self.base_url}/rs/ship/price",
            action="rating",
            auth=self._auth(),
            headers={"Content-Type": RATE_MEDIA_TYPE, "Accept": RATE_MEDIA_TYPE},
            content=self.build_rate_request(details).encode("utf-8"),
        )
        return self._parse_rates(resp.text)

    def _parse_rates(self, xml_response: str) -> List[RateResponse]:
        try:
            root = ET.fromstring(xml_response)
        except ET.ParseError as exc:
            raise CarrierAPIError(
                f"Canada Post returned invalid XML: {exc}", carrier=self.carrier_name, body=xml_response
            ) from exc

        rates: List[RateResponse] = []
        for quote in root.findall(".//{*}price-quote"):
            code = find_text(quote, "{*}service-code") or ""
            due = find_text(quote, "{*}price-details/{*}due")
            if due is None:
                logger.warning("Canada Post quote %s has no price; skipping", code)
                continue

            rate = float(due)
            markup, total = apply_markup(rate, self.markup)
            rates.append(
                RateResponse(
                    id=f"cp_{code}",
                    service_code=code,
                    service_name=find_text(quote, "{*}service-name") or canada_post_service_name(code),
                    carrier=self.carrier_name,
                    rate=rate,
                    currency="CAD",
                    estimated_days=find_text(quote, "{*}service-standard/{*}expected-transit-time"),
                    estimated_delivery=find_text(quote, "{*}service-standard/{*}expected-delivery-date"),
                    markup=markup,
                    total_rate=total,
                )
            )
        return rates

    async def create_shipment(self, details: ShipmentDetails, service_code: str) -> ShipmentResponse:
        resp = await self._request(
            "POST",
            f"{self.base_url}/rs/ncs/ncs",
            action="shipment creation",
            auth=self._auth(),
            headers={"Content-Type": NCS_MEDIA_TYPE, "Accept": NCS_MEDIA_TYPE},
            content=self.build_shipment_request(details, service_code).encode("utf-8"),
        )

        try:
            root = ET.fromstring(resp.text)
        except ET.ParseError as exc:
            raise CarrierAPIError(
                f"Canada Post returned invalid XML: {exc}", carrier=self.carrier_name, body=resp.text
            ) from exc

        shipment_id = find_text(root, ".//{*}shipment-id")
        tracking_pin = find_text(root, ".//{*}tracking-pin")
        if not shipment_id:
            raise CarrierAPIError(
                "Canada Post shipment response has no shipment-id",
                carrier=self.carrier_name,
                status_code=resp.status_code,
                body=resp.text,
            )

        label_url = None
        for link in root.findall(".//{*}links/{*}link"):
            if link.get("rel") == "label":
                label_url = link.get("href")
                break

        due = find_text(root, ".//{*}shipment-price/{*}due")

        return ShipmentResponse(
            id=shipment_id,
            tracking_number=tracking_pin or "",
            label_url=label_url,
            cost=float(due) if due else 0.0,
            currency="CAD",
            service_code=service_code,
            service_name=canada_post_service_name(service_code),
            carrier=self.carrier_name,
        )

    async def purchase_label(self, shipment_id: str) -> LabelResult:
        resp = await self._request(
            "GET",
            f"{self.base_url}/rs/ncs/{shipment_id}/label",
            action="label download",
            auth=self._auth(),
            headers={"Accept": "application/pdf"},
        )
        return LabelResult(label_pdf=base64.b64encode(resp.content).decode("ascii"))

    async def track_shipment(self, tracking_number: str) -> TrackingResult:
        resp = await self._request(
            "GET",
            f"{self.base_url}/vis/track/pin/{tracking_number}/summary",
            action="tracking",
            auth=self._auth(),
            headers={"Accept": TRACK_MEDIA_TYPE},
        )

        try:
            root = ET.fromstring(resp.text)
        except ET.ParseError as exc:
            raise CarrierAPIError(
                f"Canada Post returned invalid XML: {exc}", carrier=self.carrier_name, body=resp.text
            ) from exc

        event_type = find_text(root, ".//{*}event-type")
        return TrackingResult(
            tracking_number=tracking_number,
            carrier=self.carrier_name,
            status=event_type.upper() if event_type else None,
            description=find_text(root, ".//{*}event-description"),
            last_event_at=find_text(root, ".//{*}event-date-time"),
            raw=parse_xml(resp.text),
        )

    async def validate_credentials(self) -> CredentialValidation:
        try:
            await self._request(
                "GET",
                f"{self.base_url}/rs/ship/service",
                action="credential check",
                auth=self._auth(),
                headers={"Accept": SERVICE_MEDIA_TYPE},
            )
            return CredentialValidation(valid=True)
        except CarrierAPIError as exc:
            if exc.body is not None:
                return CredentialValidation(valid=False, error=f"Invalid credentials: {exc.body}")
            return CredentialValidation(valid=False, error=exc.message)
        except CarrierError as exc:
            return CredentialValidation(valid=False, error=exc.message)

    async def get_services(self) -> List[CarrierServiceInfo]:
        return [
            CarrierServiceInfo(code=code, name=name, description=CANADA_POST_SERVICE_DESCRIPTIONS.get(code))
            for code, name in CANADA_POST_SERVICES.items()
        ]
