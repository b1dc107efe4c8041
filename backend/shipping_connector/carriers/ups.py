"""UPS adapter (OAuth + JSON Rating / Shipping / Tracking APIs).

Credentials are the ``api_credentials`` bag stored in carrier_configurations
(client_id, client_secret, account_number, access_token, refresh_token,
token_expires_at, enable_negotiated_rates, country_code, postal_code,
environment). The adapter keeps its own copy and reports refreshed tokens
through ``on_token_refreshed`` so the owner can persist them.
"""
from __future__ import annotations

import asyncio
import inspect
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from shipping_connector.carriers.base import (
    Address,
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
from shipping_connector.errors import (
    CarrierAPIError,
    CarrierConfigurationError,
    CarrierError,
    CarrierOperationNotSupported,
)
from shipping_connector.utils.logger import carrier_logger, logger
from shipping_connector.utils.token_utils import (
    expiry_from_expires_in,
    mask_token,
    token_is_fresh,
)
from shipping_connector.utils.xml_utils import as_list


TokenCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]

UPS_SERVICES: Dict[str, str] = {
    "01": "UPS Next Day Air",
    "02": "UPS 2nd Day Air",
    "03": "UPS Ground",
    "07": "UPS Worldwide Express",
    "08": "UPS Worldwide Expedited",
    "11": "UPS Standard",
    "12": "UPS 3 Day Select",
    "13": "UPS Next Day Air Saver",
    "14": "UPS Next Day Air Early",
    "54": "UPS Worldwide Express Plus",
    "59": "UPS 2nd Day Air A.M.",
    "65": "UPS Saver",
}

UPS_SERVICE_DESCRIPTIONS: Dict[str, str] = {
    "03": "Ground delivery",
    "12": "3 business days",
    "02": "2 business days",
    "59": "2 business days AM",
    "01": "Next business day",
    "13": "Next business day afternoon",
    "14": "Next business day morning",
}

# Activity status type -> normalized tracking status.
UPS_STATUS_MAP: Dict[str, str] = {
    "M": "PRE_TRANSIT",
    "I": "IN_TRANSIT",
    "P": "IN_TRANSIT",
    "D": "DELIVERED",
    "X": "EXCEPTION",
    "RS": "RETURN_TO_SENDER",
}

PACKAGING_CUSTOMER_SUPPLIED = "02"


def ups_service_name(code: str) -> str:
    return UPS_SERVICES.get(code, f"UPS Service {code}")


def _ups_address(addr: Address) -> Dict[str, Any]:
    return {
        "AddressLine": [addr.address],
        "City": addr.city,
        "StateProvinceCode": addr.state,
        "PostalCode": addr.postal_code,
        "CountryCode": addr.country,
    }


def _ups_package(details: ShipmentDetails, *, verbose_units: bool) -> Dict[str, Any]:
    pkg = details.package
    dim_unit: Dict[str, str] = {"Code": "IN"}
    weight_unit: Dict[str, str] = {"Code": "LBS"}
    packaging: Dict[str, str] = {"Code": PACKAGING_CUSTOMER_SUPPLIED}
    if verbose_units:
        dim_unit["Description"] = "Inches"
        weight_unit["Description"] = "Pounds"
        packaging["Description"] = "Package"
    return {
        "PackagingType": packaging,
        "Dimensions": {
            "UnitOfMeasurement": dim_unit,
            "Length": str(pkg.length),
            "Width": str(pkg.width),
            "Height": str(pkg.height),
        },
        "PackageWeight": {
            "UnitOfMeasurement": weight_unit,
            "Weight": str(pkg.weight),
        },
    }


class UPSCarrier(HttpCarrier):
    carrier_name = "UPS"

    def __init__(
        self,
        credentials: Dict[str, Any],
        markup: float = 0,
        *,
        on_token_refreshed: Optional[TokenCallback] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(transport=transport, timeout=timeout)
        self.credentials: Dict[str, Any] = dict(credentials)
        self.markup = markup or 0
        self._on_token_refreshed = on_token_refreshed
        self._auth_lock = asyncio.Lock()

    @property
    def base_url(self) -> str:
        return settings.ups_base_url(self.credentials.get("environment")).rstrip("/")

    def _headers(self, token: str, prefix: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "transId": f"{prefix}_{int(time.time() * 1000)}",
            "transactionSrc": settings.UPS_TRANSACTION_SOURCE,
        }

    async def authenticate(self, *, lookahead: timedelta = timedelta(0), force: bool = False) -> str:
        """Return a usable access token, fetching a new one if needed.

        A cached token is reused while it stays valid past ``now + lookahead``
        unless ``force`` is set. Otherwise the refresh_token grant is used
        when a refresh token is
        known, falling back to client_credentials.
        """
        async with self._auth_lock:
            if not force and token_is_fresh(self.credentials, lookahead=lookahead):
                return self.credentials["access_token"]

            client_id = self.credentials.get("client_id")
            client_secret = self.credentials.get("client_secret")
            if not client_id or not client_secret:
                raise CarrierConfigurationError(
                    "UPS client_id and client_secret are required",
                    carrier=self.carrier_name,
                )

            refresh_token = self.credentials.get("refresh_token")
            if refresh_token:
                form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
            else:
                form = {"grant_type": "client_credentials"}

            carrier_logger.log_carrier_event(
                self.carrier_name,
                "token_request",
                "Requesting UPS access token",
                request_data={"grant_type": form["grant_type"], "client_id": client_id},
            )

            resp = await self._request(
                "POST",
                f"{self.base_url}/security/v1/oauth/token",
                action="authentication",
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                data=form,
                auth=(client_id, client_secret),
            )
            try:
                payload = resp.json()
            except ValueError:
                payload = {}

            access_token = payload.get("access_token") if isinstance(payload, dict) else None
            if not access_token:
                raise CarrierAPIError(
                    "UPS authentication failed: response did not include an access_token",
                    carrier=self.carrier_name,
                    status_code=resp.status_code,
                    body=resp.text,
                )

            self.credentials["access_token"] = access_token
            if payload.get("refresh_token"):
                self.credentials["refresh_token"] = payload["refresh_token"]
            expires_at = expiry_from_expires_in(payload.get("expires_in"))
            if expires_at:
                self.credentials["token_expires_at"] = expires_at

            logger.info(
                "UPS token obtained via %s: token=%s expires_at=%s",
                form["grant_type"],
                mask_token(access_token),
                self.credentials.get("token_expires_at"),
            )

            if self._on_token_refreshed is not None:
                result = self._on_token_refreshed(dict(self.credentials))
                if inspect.isawaitable(result):
                    await result

            return access_token

    async def get_rates(self, details: ShipmentDetails) -> List[RateResponse]:
        token = await self.authenticate(
            lookahead=timedelta(minutes=settings.UPS_RATE_TOKEN_LOOKAHEAD_MINUTES)
        )

        account_number = self.credentials.get("account_number")
        if not account_number:
            raise CarrierConfigurationError(
                "UPS account number is required for rating", carrier=self.carrier_name
            )
        if not self.credentials.get("postal_code") or not self.credentials.get("country_code"):
            raise CarrierConfigurationError(
                "UPS account postal code and country code are required for rating",
                carrier=self.carrier_name,
            )

        shipment: Dict[str, Any] = {
            "Shipper": {
                "Name": details.from_address.name,
                "ShipperNumber": account_number,
                "Address": _ups_address(details.from_address),
            },
            "ShipTo": {
                "Name": details.to_address.name,
                "Address": _ups_address(details.to_address),
            },
            "ShipFrom": {
                "Name": details.from_address.name,
                "Address": _ups_address(details.from_address),
            },
            "Package": [_ups_package(details, verbose_units=True)],
        }

        negotiated = bool(self.credentials.get("enable_negotiated_rates"))
        if negotiated:
            shipment["RateInformation"] = {"NegotiatedRatesIndicator": ""}

        rating_request = {
            "RateRequest": {
                "Request": {
                    "RequestOption": "Shop",
                    "TransactionReference": {
                        "CustomerContext": f"Rating_{int(time.time() * 1000)}",
                    },
                },
                "Shipment": shipment,
            }
        }

        resp = await self._request(
            "POST",
            f"{self.base_url}/api/rating/v1/Shop",
            action="rating",
            headers=self._headers(token, "Rating"),
            json=rating_request,
        )
        return self._parse_rates(resp.json(), negotiated=negotiated)

    def _parse_rates(self, data: Dict[str, Any], *, negotiated: bool) -> List[RateResponse]:
        rates: List[RateResponse] = []
        rated_shipments = as_list((data.get("RateResponse") or {}).get("RatedShipment"))

        for shipment in rated_shipments:
            service_code = (shipment.get("Service") or {}).get("Code") or "UNKNOWN"
            total_charges = shipment.get("TotalCharges") or {}
            negotiated_charges = shipment.get("NegotiatedRateCharges")

            if negotiated and negotiated_charges:
                rate = float(negotiated_charges["TotalCharge"]["MonetaryValue"])
            else:
                rate = float(total_charges.get("MonetaryValue") or 0)

            markup, total = apply_markup(rate, self.markup)
            transit = (shipment.get("GuaranteedDelivery") or {}).get("BusinessDaysInTransit")

            rates.append(
                RateResponse(
                    id=f"ups_{service_code}",
                    service_code=service_code,
                    service_name=ups_service_name(service_code),
                    carrier=self.carrier_name,
                    rate=rate,
                    currency=total_charges.get("CurrencyCode") or "USD",
                    estimated_days=str(transit) if transit is not None else None,
                    markup=markup,
                    total_rate=total,
                )
            )

        return rates

    async def create_shipment(self, details: ShipmentDetails, service_code: str) -> ShipmentResponse:
        token = await self.authenticate(
            lookahead=timedelta(minutes=settings.UPS_SHIPMENT_TOKEN_LOOKAHEAD_MINUTES)
        )
        account_number = self.credentials.get("account_number")
        if not account_number:
            raise CarrierConfigurationError(
                "UPS account number is required to create shipments", carrier=self.carrier_name
            )

        package = _ups_package(details, verbose_units=False)
        package["Description"] = "Package"

        shipment_request = {
            "ShipmentRequest": {
                "Request": {
                    "RequestOption": "nonvalidate",
                    "TransactionReference": {
                        "CustomerContext": f"Shipment_{int(time.time() * 1000)}",
                    },
                },
                "Shipment": {
                    "Description": "Shipment",
                    "Shipper": {
                        "Name": details.from_address.name,
                        "ShipperNumber": account_number,
                        "Address": _ups_address(details.from_address),
                    },
                    "ShipTo": {
                        "Name": details.to_address.name,
                        "Address": _ups_address(details.to_address),
                    },
                    "ShipFrom": {
                        "Name": details.from_address.name,
                        "Address": _ups_address(details.from_address),
                    },
                    "Service": {
                        "Code": service_code,
                        "Description": ups_service_name(service_code),
                    },
                    "Package": [package],
                    "PaymentInformation": {
                        "ShipmentCharge": {
                            "Type": "01",  # Transportation
                            "BillShipper": {"AccountNumber": account_number},
                        }
                    },
                },
                "LabelSpecification": {
                    "LabelImageFormat": {"Code": "PDF"},
                    "HTTPUserAgent": "Mozilla/4.5",
                },
            }
        }

        resp = await self._request(
            "POST",
            f"{self.base_url}/api/shipments/v1/ship",
            action="shipment creation",
            headers=self._headers(token, "Shipment"),
            json=shipment_request,
        )
        data = resp.json()

        try:
            results = data["ShipmentResponse"]["ShipmentResults"]
            package_result = as_list(results["PackageResults"])[0]
            charges = results["ShipmentCharges"]["TotalCharges"]
            return ShipmentResponse(
                id=results["ShipmentIdentificationNumber"],
                tracking_number=package_result["TrackingNumber"],
                label_pdf=(package_result.get("ShippingLabel") or {}).get("GraphicImage"),
                cost=float(charges["MonetaryValue"]),
                currency=charges.get("CurrencyCode") or "USD",
                service_code=service_code,
                service_name=ups_service_name(service_code),
                carrier=self.carrier_name,
            )
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise CarrierAPIError(
                f"UPS shipment response could not be parsed: {exc}",
                carrier=self.carrier_name,
                status_code=resp.status_code,
                body=resp.text,
            ) from exc

    async def purchase_label(self, shipment_id: str) -> LabelResult:
        raise CarrierOperationNotSupported(
            "UPS label retrieval not implemented - labels are provided during shipment creation",
            carrier=self.carrier_name,
        )

    async def track_shipment(self, tracking_number: str) -> TrackingResult:
        token = await self.authenticate()
        headers = self._headers(token, "Track")
        headers.pop("Content-Type")

        resp = await self._request(
            "GET",
            f"{self.base_url}/api/track/v1/details/{tracking_number}",
            action="tracking",
            headers=headers,
            params={"locale": "en_US"},
        )
        data = resp.json()
        result = TrackingResult(tracking_number=tracking_number, carrier=self.carrier_name, raw=data)

        try:
            shipment = as_list(data["trackResponse"]["shipment"])[0]
            package = as_list(shipment["package"])[0]
            activity = as_list(package["activity"])[0]
        except (KeyError, IndexError, TypeError):
            logger.warning("UPS tracking payload had no activity for %s", tracking_number)
            return result

        status_obj = activity.get("status") or {}
        status_type = status_obj.get("type") or status_obj.get("code")
        result.status = UPS_STATUS_MAP.get(status_type or "", "UNKNOWN")
        result.description = status_obj.get("description")

        date_str, time_str = activity.get("date"), activity.get("time")
        if date_str and time_str:
            try:
                result.last_event_at = datetime.strptime(
                    f"{date_str} {time_str}", "%Y%m%d %H%M%S"
                ).isoformat()
            except ValueError:
                pass

        return result

    async def validate_credentials(self) -> CredentialValidation:
        try:
            await self.authenticate(force=True)
            return CredentialValidation(valid=True)
        except CarrierError as exc:
            return CredentialValidation(valid=False, error=exc.message)

    async def get_services(self) -> List[CarrierServiceInfo]:
        return [
            CarrierServiceInfo(code=code, name=UPS_SERVICES[code], description=description)
            for code, description in UPS_SERVICE_DESCRIPTIONS.items()
        ]
