import base64
from xml.etree import ElementTree as ET

import httpx
import pytest

from shipping_connector.carriers.base import ShipmentDetails
from shipping_connector.carriers.canada_post import (
    NCS_MEDIA_TYPE,
    RATE_MEDIA_TYPE,
    RATE_NS,
    CanadaPostCarrier,
)
from shipping_connector.errors import CarrierAPIError, CarrierConfigurationError

CREDENTIALS = {
    "api_key": "cp-key",
    "api_secret": "cp-secret",
    "customer_number": "0008035576",
}

PRICE_QUOTES = f"""<?xml version="1.0" encoding="UTF-8"?>
<price-quotes xmlns="{RATE_NS}">
  <price-quote>
    <service-code>DOM.EP</service-code>
    <service-name>Expedited Parcel</service-name>
    <price-details><base>10.00</base><due>12.50</due></price-details>
    <service-standard>
      <expected-transit-time>2</expected-transit-time>
      <expected-delivery-date>2024-01-08</expected-delivery-date>
    </service-standard>
  </price-quote>
  <price-quote>
    <service-code>DOM.PC</service-code>
    <price-details><due>30.00</due></price-details>
  </price-quote>
</price-quotes>
"""


def _basic(user: str, password: str) -> str:
    return "Basic " + base64.b64encode(f"{user}:{password}".encode()).decode()


def test_rate_request_converts_units_and_compacts_postal_codes(shipment_details):
    xml = CanadaPostCarrier({**CREDENTIALS, "contract_id": "42708517"}).build_rate_request(shipment_details)
    root = ET.fromstring(xml)
    ns = {"cp": RATE_NS}

    assert root.findtext("cp:customer-number", namespaces=ns) == "0008035576"
    assert root.findtext("cp:contract-id", namespaces=ns) == "42708517"
    assert root.findtext("cp:parcel-characteristics/cp:weight", namespaces=ns) == "4.54"
    assert root.findtext("cp:parcel-characteristics/cp:dimensions/cp:length", namespaces=ns) == "30.5"
    assert root.findtext("cp:parcel-characteristics/cp:dimensions/cp:height", namespaces=ns) == "15.2"
    assert root.findtext("cp:origin-postal-code", namespaces=ns) == "K1A0B1"
    assert root.findtext("cp:destination/cp:domestic/cp:postal-code", namespaces=ns) == "M5V2T6"


def test_rate_request_destination_depends_on_country(shipment_payload):
    carrier = CanadaPostCarrier(CREDENTIALS)
    ns = {"cp": RATE_NS}

    us = dict(shipment_payload, to={**shipment_payload["to"], "country": "US", "postal_code": "10001"})
    root = ET.fromstring(carrier.build_rate_request(ShipmentDetails.from_dict(us)))
    assert root.findtext("cp:destination/cp:united-states/cp:zip-code", namespaces=ns) == "10001"

    gb = dict(shipment_payload, to={**shipment_payload["to"], "country": "gb", "postal_code": "SW1A 1AA"})
    root = ET.fromstring(carrier.build_rate_request(ShipmentDetails.from_dict(gb)))
    assert root.findtext("cp:destination/cp:international/cp:country-code", namespaces=ns) == "GB"


def test_shipment_request_escapes_text(shipment_payload):
    payload = dict(shipment_payload, to={**shipment_payload["to"], "name": "Smith & Sons <Ltd>"})
    xml = CanadaPostCarrier(CREDENTIALS).build_shipment_request(ShipmentDetails.from_dict(payload), "DOM.EP")

    assert "Smith &amp; Sons &lt;Ltd&gt;" in xml
    ET.fromstring(xml)


@pytest.mark.asyncio
async def test_get_rates_parses_quotes_and_applies_markup(shipment_details):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text=PRICE_QUOTES)

    carrier = CanadaPostCarrier(CREDENTIALS, markup=10, transport=httpx.MockTransport(handler))
    rates = await carrier.get_rates(shipment_details)

    request = seen[0]
    assert request.url.host == "ct.soa-gw.canadapost.ca"
    assert request.url.path == "/rs/ship/price"
    assert request.headers["content-type"] == RATE_MEDIA_TYPE
    assert request.headers["authorization"] == _basic("cp-key", "cp-secret")

    expedited, priority = rates
    assert expedited.id == "cp_DOM.EP"
    assert expedited.currency == "CAD"
    assert expedited.rate == 12.5
    assert expedited.total_rate == pytest.approx(13.75)
    assert expedited.estimated_days == "2"
    assert expedited.estimated_delivery == "2024-01-08"
    assert priority.service_name == "Priority"


@pytest.mark.asyncio
async def test_get_rates_requires_customer_number(shipment_details):
    carrier = CanadaPostCarrier({"api_key": "k", "api_secret": "s"})

    with pytest.raises(CarrierConfigurationError):
        await carrier.get_rates(shipment_details)


@pytest.mark.asyncio
async def test_get_rates_requires_api_key(shipment_details):
    carrier = CanadaPostCarrier({"customer_number": "1"})

    with pytest.raises(CarrierConfigurationError, match="api_key"):
        await carrier.get_rates(shipment_details)


@pytest.mark.asyncio
async def test_vendor_error_body_is_kept(shipment_details):
    error_xml = "<messages><message><code>9111</code><description>Bad postal code</description></message></messages>"
    transport = httpx.MockTransport(lambda request: httpx.Response(400, text=error_xml))

    with pytest.raises(CarrierAPIError) as exc_info:
        await CanadaPostCarrier(CREDENTIALS, transport=transport).get_rates(shipment_details)

    assert exc_info.value.status_code == 400
    assert "Bad postal code" in exc_info.value.body


@pytest.mark.asyncio
async def test_create_shipment_reads_identifiers_and_label_link(shipment_details):
    response = """<shipment-info xmlns="http://www.canadapost.ca/ws/ship/ncs-v2">
      <shipment-id>406951321983787352</shipment-id>
      <tracking-pin>123456789012</tracking-pin>
      <links>
        <link rel="self" href="https://ct.soa-gw.canadapost.ca/rs/ncs/406951321983787352" media-type="x"/>
        <link rel="label" href="https://ct.soa-gw.canadapost.ca/ers/artifact/76108cb5192002d5/20238/0" media-type="application/pdf"/>
      </links>
      <shipment-price><due>14.90</due></shipment-price>
    </shipment-info>"""

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/rs/ncs/ncs"
        assert request.headers["accept"] == NCS_MEDIA_TYPE
        assert b"<service-code>DOM.EP</service-code>" in request.content
        return httpx.Response(200, text=response)

    carrier = CanadaPostCarrier(CREDENTIALS, transport=httpx.MockTransport(handler))
    shipment = await carrier.create_shipment(shipment_details, "DOM.EP")

    assert shipment.id == "406951321983787352"
    assert shipment.tracking_number == "123456789012"
    assert shipment.label_url.endswith("/20238/0")
    assert shipment.cost == 14.9
    assert shipment.service_name == "Expedited Parcel"


@pytest.mark.asyncio
async def test_purchase_label_returns_base64_pdf():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/rs/ncs/406951321983787352/label"
        return httpx.Response(200, content=b"%PDF-1.4 label")

    label = await CanadaPostCarrier(CREDENTIALS, transport=httpx.MockTransport(handler)).purchase_label(
        "406951321983787352"
    )

    assert base64.b64decode(label.label_pdf) == b"%PDF-1.4 label"
    assert label.label_url is None


@pytest.mark.asyncio
async def test_track_shipment_summary():
    summary = """<tracking-summary xmlns="http://www.canadapost.ca/ws/track">
      <pin-summary>
        <pin>1371134583769923</pin>
        <event-date-time>2024-01-05T14:30:00</event-date-time>
        <event-description>Item successfully delivered</event-description>
        <event-type>Delivered</event-type>
      </pin-summary>
    </tracking-summary>"""
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text=summary))

    result = await CanadaPostCarrier(CREDENTIALS, transport=transport).track_shipment("1371134583769923")

    assert result.status == "DELIVERED"
    assert result.description == "Item successfully delivered"
    assert result.last_event_at == "2024-01-05T14:30:00"
    assert result.raw["tracking-summary"]["pin-summary"]["pin"]["#text"] == "1371134583769923"


@pytest.mark.asyncio
async def test_validate_credentials_reports_rejection():
    transport = httpx.MockTransport(lambda request: httpx.Response(401, text="Unauthorized"))

    result = await CanadaPostCarrier(CREDENTIALS, transport=transport).validate_credentials()

    assert result.valid is False
    assert result.error == "Invalid credentials: Unauthorized"


@pytest.mark.asyncio
async def test_validate_credentials_success_and_static_services():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<services/>"))
    carrier = CanadaPostCarrier({**CREDENTIALS, "is_production": True}, transport=transport)

    assert carrier.base_url == "https://soa-gw.canadapost.ca"
    assert (await carrier.validate_credentials()).valid is True
    codes = [s.code for s in await carrier.get_services()]
    assert "DOM.XP" in codes
