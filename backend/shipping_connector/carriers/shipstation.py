"""ShipStation adapter.

ShipStation is never called directly from here: each operation invokes a
Supabase edge function (``shipstation-*``) that holds the vendor integration
and returns payloads already shaped like our response types.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

from shipping_connector.carriers.base import (
    CarrierInterface,
    CarrierServiceInfo,
    CredentialValidation,
    LabelResult,
    RateResponse,
    ShipmentDetails,
    ShipmentResponse,
    TrackingResult,
    apply_markup,
)
from shipping_connector.errors import CarrierAPIError, CarrierConfigurationError
from shipping_connector.services.supabase_client import get_supabase_client
from shipping_connector.utils.logger import carrier_logger, logger


class ShipStationCarrier(CarrierInterface):
    carrier_name = "ShipStation"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        markup: float = 0,
        *,
        supabase_client: Any = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.markup = markup or 0
        self._supabase = supabase_client

    def _client(self) -> Any:
        client = self._supabase or get_supabase_client()
        if client is None:
            raise CarrierConfigurationError(
                "Supabase is not configured; ShipStation edge functions are unavailable",
                carrier=self.carrier_name,
            )
        return client

    async def _invoke(self, function_name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        payload = dict(body)
        payload["apiKey"] = self.api_key
        payload["apiSecret"] = self.api_secret

        client = self._client()
        carrier_logger.log_carrier_event(
            self.carrier_name,
            "edge_function_call",
            f"Invoking {function_name}",
            request_data={"api_key": self.api_key},
        )
        data = await asyncio.to_thread(
            client.functions.invoke,
            function_name,
            invoke_options={"body": payload, "responseType": "json"},
        )
        if isinstance(data, (bytes, bytearray)):
            data = data.decode("utf-8")
        if isinstance(data, str):
            data = json.loads(data) if data else {}
        if isinstance(data, dict) and data.get("error"):
            raise CarrierAPIError(str(data["error"]), carrier=self.carrier_name, body=json.dumps(data))
        return data or {}

    async def get_rates(self, details: ShipmentDetails) -> List[RateResponse]:
        try:
            data = await self._invoke("shipstation-get-rates", {"shipmentDetails": details.to_dict()})
        except Exception as exc:
            logger.error("ShipStation getRates error: %s", exc)
            raise CarrierAPIError(
                f"Failed to get ShipStation rates: {exc}", carrier=self.carrier_name
            ) from exc

        rates: List[RateResponse] = []
        for raw in data.get("rates") or []:
            rate = RateResponse.from_dict(raw)
            if self.markup:
                rate.markup, rate.total_rate = apply_markup(rate.rate, self.markup)
            rates.append(rate)
        return rates

    async def create_shipment(self, details: ShipmentDetails, service_code: str) -> ShipmentResponse:
        try:
            data = await self._invoke(
                "shipstation-create-label",
                {"shipmentDetails": details.to_dict(), "serviceCode": service_code},
            )
            return ShipmentResponse(
                id=str(data.get("id") or data.get("shipment_id") or ""),
                tracking_number=data.get("tracking_number") or "",
                label_url=data.get("label_url"),
                label_pdf=data.get("label_pdf"),
                cost=float(data.get("cost") or 0),
                currency=data.get("currency") or "USD",
                service_code=data.get("service_code") or service_code,
                service_name=data.get("service_name") or service_code,
                carrier=data.get("carrier") or self.carrier_name,
            )
        except Exception as exc:
            logger.error("ShipStation createShipment error: %s", exc)
            raise CarrierAPIError(
                f"Failed to create ShipStation shipment: {exc}", carrier=self.carrier_name
            ) from exc

    async def purchase_label(self, shipment_id: str) -> LabelResult:
        # Labels are created together with the shipment.
        return LabelResult()

    async def track_shipment(self, tracking_number: str) -> TrackingResult:
        try:
            data = await self._invoke("shipstation-track-shipment", {"trackingNumber": tracking_number})
        except Exception as exc:
            logger.error("ShipStation trackShipment error: %s", exc)
            raise CarrierAPIError(
                f"Failed to track ShipStation shipment: {exc}", carrier=self.carrier_name
            ) from exc

        return TrackingResult(
            tracking_number=tracking_number,
            carrier=self.carrier_name,
            status=data.get("status"),
            description=data.get("description") or data.get("status_description"),
            last_event_at=data.get("last_event_at") or data.get("updated_at"),
            raw=data,
        )

    async def validate_credentials(self) -> CredentialValidation:
        try:
            await self._invoke("shipstation-validate-credentials", {})
            return CredentialValidation(valid=True)
        except Exception as exc:
            return CredentialValidation(valid=False, error=str(exc))

    async def get_services(self) -> List[CarrierServiceInfo]:
        try:
            data = await self._invoke("shipstation-get-services", {})
        except Exception as exc:
            logger.error("ShipStation getServices error: %s", exc)
            return []

        return [
            CarrierServiceInfo(
                code=str(item.get("code") or ""),
                name=str(item.get("name") or item.get("code") or ""),
                description=item.get("description"),
            )
            for item in data.get("services") or []
        ]
