import json

import pytest

from shipping_connector.carriers.shipstation import ShipStationCarrier
from shipping_connector.errors import CarrierAPIError, CarrierConfigurationError
from shipping_connector.services import supabase_client


class FakeFunctions:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def invoke(self, function_name, invoke_options=None):
        self.calls.append((function_name, invoke_options))
        response = self.responses[function_name]
        if isinstance(response, Exception):
            raise response
        return response


class FakeSupabase:
    def __init__(self, responses):
        self.functions = FakeFunctions(responses)


@pytest.mark.asyncio
async def test_get_rates_invokes_edge_function_with_credentials(shipment_details):
    rates_payload = {
        "rates": [
            {"id": "ss_usps", "service_code": "usps_priority", "service_name": "USPS Priority", "carrier": "USPS", "rate": 8.5},
        ]
    }
    client = FakeSupabase({"shipstation-get-rates": json.dumps(rates_payload).encode()})
    carrier = ShipStationCarrier("key", "secret", markup=20, supabase_client=client)

    rates = await carrier.get_rates(shipment_details)

    name, options = client.functions.calls[0]
    assert name == "shipstation-get-rates"
    assert options["body"]["apiKey"] == "key"
    assert options["body"]["apiSecret"] == "secret"
    assert options["body"]["shipmentDetails"]["from"]["postal_code"] == "K1A 0B1"
    assert rates[0].carrier == "USPS"
    assert rates[0].markup == pytest.approx(1.7)
    assert rates[0].total_rate == pytest.approx(10.2)


@pytest.mark.asyncio
async def test_error_payload_is_wrapped(shipment_details):
    client = FakeSupabase({"shipstation-get-rates": {"error": "Invalid API key"}})
    carrier = ShipStationCarrier("key", "secret", supabase_client=client)

    with pytest.raises(CarrierAPIError, match="Failed to get ShipStation rates: Invalid API key"):
        await carrier.get_rates(shipment_details)


@pytest.mark.asyncio
async def test_create_shipment_maps_response(shipment_details):
    client = FakeSupabase(
        {
            "shipstation-create-label": {
                "shipment_id": 98765,
                "tracking_number": "9400111899223197428490",
                "label_url": "https://labels.example.com/98765.pdf",
                "cost": "7.15",
                "service_name": "USPS Priority Mail",
            }
        }
    )
    carrier = ShipStationCarrier("key", "secret", supabase_client=client)

    shipment = await carrier.create_shipment(shipment_details, "usps_priority_mail")

    assert client.functions.calls[0][1]["body"]["serviceCode"] == "usps_priority_mail"
    assert shipment.id == "98765"
    assert shipment.cost == 7.15
    assert shipment.service_code == "usps_priority_mail"
    assert shipment.carrier == "ShipStation"


@pytest.mark.asyncio
async def test_create_shipment_failure_is_wrapped(shipment_details):
    client = FakeSupabase({"shipstation-create-label": RuntimeError("edge function timed out")})
    carrier = ShipStationCarrier("key", "secret", supabase_client=client)

    with pytest.raises(CarrierAPIError, match="Failed to create ShipStation shipment"):
        await carrier.create_shipment(shipment_details, "usps_priority_mail")


@pytest.mark.asyncio
async def test_track_shipment():
    client = FakeSupabase({"shipstation-track-shipment": {"status": "IN_TRANSIT", "status_description": "Departed facility"}})

    result = await ShipStationCarrier("key", "secret", supabase_client=client).track_shipment("9400")

    assert client.functions.calls[0][1]["body"]["trackingNumber"] == "9400"
    assert result.status == "IN_TRANSIT"
    assert result.description == "Departed facility"


@pytest.mark.asyncio
async def test_services_degrade_to_empty_and_validation_reports_error():
    client = FakeSupabase(
        {
            "shipstation-get-services": RuntimeError("boom"),
            "shipstation-validate-credentials": {"error": "401 Unauthorized"},
        }
    )
    carrier = ShipStationCarrier("key", "secret", supabase_client=client)

    assert await carrier.get_services() == []
    result = await carrier.validate_credentials()
    assert result.valid is False
    assert "401" in result.error
    assert (await carrier.purchase_label("98765")).to_dict() == {"label_url": None, "label_pdf": None}


@pytest.mark.asyncio
async def test_missing_supabase_configuration(monkeypatch, shipment_details):
    monkeypatch.setattr("shipping_connector.carriers.shipstation.get_supabase_client", lambda: None)

    carrier = ShipStationCarrier("key", "secret")

    with pytest.raises(CarrierAPIError) as exc_info:
        await carrier.get_rates(shipment_details)
    assert isinstance(exc_info.value.__cause__, CarrierConfigurationError)


def test_supabase_client_is_none_without_settings(monkeypatch):
    monkeypatch.setattr(supabase_client.settings, "SUPABASE_URL", None)
    monkeypatch.setattr(supabase_client, "_supabase_client", None)

    assert supabase_client.get_supabase_client() is None
