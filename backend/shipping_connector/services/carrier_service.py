import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from shipping_connector.carriers.base import (
    CarrierInterface,
    CarrierServiceInfo,
    CredentialValidation,
    LabelResult,
    RateResponse,
    ShipmentDetails,
    ShipmentResponse,
    TrackingResult,
)
from shipping_connector.carriers.canada_post import CanadaPostCarrier
from shipping_connector.carriers.shipstation import ShipStationCarrier
from shipping_connector.carriers.ups import UPSCarrier
from shipping_connector.errors import CarrierNotFoundError
from shipping_connector.services.carrier_config_service import carrier_config_service
from shipping_connector.utils.logger import logger


@dataclass
class CarrierConfig:
    carrier_name: str
    credentials: Dict[str, Any] = field(default_factory=dict)
    markup: float = 0
    is_active: bool = True


def _rate_sort_key(rate: RateResponse):
    return (rate.effective_total, rate.carrier, rate.service_code)


class CarrierService:
    """Registry of configured carrier adapters with concurrent rate shopping.

    Adapters are keyed by lower-cased carrier name. Aggregate calls
    (``get_all_rates``, ``get_all_services``) degrade per carrier; calls that
    target one carrier propagate its errors.
    """

    def __init__(
        self,
        configs: Optional[List[CarrierConfig]] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        supabase_client: Any = None,
    ):
        self._carriers: Dict[str, CarrierInterface] = {}
        self._transport = transport
        self._supabase_client = supabase_client
        for config in configs or []:
            self.add_carrier(config)

    @property
    def transport(self) -> Optional[httpx.AsyncBaseTransport]:
        return self._transport

    def _build(self, config: CarrierConfig, **extra: Any) -> Optional[CarrierInterface]:
        name = config.carrier_name.lower()
        if name == "ups":
            return UPSCarrier(config.credentials, config.markup or 0, transport=self._transport, **extra)
        if name in ("canada_post", "canadapost"):
            return CanadaPostCarrier(config.credentials, config.markup or 0, transport=self._transport)
        if name == "shipstation":
            return ShipStationCarrier(
                config.credentials.get("api_key"),
                config.credentials.get("api_secret"),
                config.markup or 0,
                supabase_client=self._supabase_client,
            )
        return None

    def add_carrier(self, config: CarrierConfig, **extra: Any) -> None:
        if not config.is_active:
            return

        try:
            carrier = self._build(config, **extra)
        except Exception as e:
            logger.error(f"Failed to add carrier {config.carrier_name}: {e}", exc_info=True)
            return

        if carrier is None:
            logger.warning(f"Unknown carrier: {config.carrier_name}")
            return

        self._carriers[config.carrier_name.lower()] = carrier
        logger.info(f"Added carrier: {config.carrier_name}")

    def register(self, carrier_name: str, carrier: CarrierInterface) -> None:
        self._carriers[carrier_name.lower()] = carrier

    def remove_carrier(self, carrier_name: str) -> None:
        self._carriers.pop(carrier_name.lower(), None)

    def get_carrier(self, carrier_name: str) -> Optional[CarrierInterface]:
        return self._carriers.get(carrier_name.lower())

    def available_carriers(self) -> List[str]:
        return list(self._carriers.keys())

    def _require(self, carrier_name: str) -> CarrierInterface:
        carrier = self.get_carrier(carrier_name)
        if carrier is None:
            raise CarrierNotFoundError(carrier_name)
        return carrier

    async def get_all_rates(self, details: ShipmentDetails) -> List[RateResponse]:
        """Quote every registered carrier concurrently, cheapest first.

        A carrier that fails contributes no rates; the others are unaffected.
        """

        async def _safe_rates(name: str, carrier: CarrierInterface) -> List[RateResponse]:
            try:
                return await carrier.get_rates(details)
            except Exception as e:
                logger.error(f"Failed to get rates from {name}: {e}")
                return []

        results = await asyncio.gather(
            *(_safe_rates(name, carrier) for name, carrier in self._carriers.items())
        )

        all_rates = [rate for rates in results for rate in rates]
        all_rates.sort(key=_rate_sort_key)
        return all_rates

    async def find_best_rate(self, details: ShipmentDetails) -> Optional[RateResponse]:
        rates = await self.get_all_rates(details)
        return rates[0] if rates else None

    async def get_rates_from_carrier(self, carrier_name: str, details: ShipmentDetails) -> List[RateResponse]:
        return await self._require(carrier_name).get_rates(details)

    async def create_shipment(
        self, carrier_name: str, details: ShipmentDetails, service_code: str
    ) -> ShipmentResponse:
        return await self._require(carrier_name).create_shipment(details, service_code)

    async def track_shipment(self, carrier_name: str, tracking_number: str) -> TrackingResult:
        return await self._require(carrier_name).track_shipment(tracking_number)

    async def purchase_label(self, carrier_name: str, shipment_id: str) -> LabelResult:
        return await self._require(carrier_name).purchase_label(shipment_id)

    async def validate_carrier_credentials(self, carrier_name: str) -> CredentialValidation:
        carrier = self.get_carrier(carrier_name)
        if carrier is None:
            return CredentialValidation(valid=False, error="Carrier not found")
        return await carrier.validate_credentials()

    async def get_carrier_services(self, carrier_name: str) -> List[CarrierServiceInfo]:
        return await self._require(carrier_name).get_services()

    async def get_all_services(self) -> Dict[str, List[CarrierServiceInfo]]:
        services: Dict[str, List[CarrierServiceInfo]] = {}
        for name, carrier in self._carriers.items():
            try:
                services[name] = await carrier.get_services()
            except Exception as e:
                logger.error(f"Failed to get services from {name}: {e}")
                services[name] = []
        return services

    @classmethod
    def for_user(
        cls,
        db: Session,
        user_id: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        supabase_client: Any = None,
    ) -> "CarrierService":
        """Build a service from the user's active carrier configurations.

        UPS tokens obtained by the adapter are written back to the owning row.
        """
        service = cls(transport=transport, supabase_client=supabase_client)
        for row in carrier_config_service.list_configurations(db, user_id):
            config = CarrierConfig(
                carrier_name=row.carrier_name,
                credentials=carrier_config_service.get_credentials(row),
                markup=row.markup or 0,
                is_active=bool(row.is_active),
            )
            extra: Dict[str, Any] = {}
            if row.carrier_name.lower() == "ups":
                extra["on_token_refreshed"] = (
                    lambda credentials, row=row: carrier_config_service.update_credentials(db, row, credentials)
                )
            service.add_carrier(config, **extra)

        logger.info(f"Loaded carriers for user {user_id}: {service.available_carriers()}")
        return service
