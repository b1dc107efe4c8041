from __future__ import annotations

from typing import Optional


class CarrierError(Exception):
    """Base error for carrier operations.

    ``body`` holds the raw vendor response text when there is one so callers
    can surface exactly what the carrier said.
    """

    def __init__(
        self,
        message: str,
        *,
        carrier: Optional[str] = None,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.carrier = carrier
        self.status_code = status_code
        self.body = body

    def to_dict(self) -> dict:
        return {
            "carrier": self.carrier,
            "message": self.message,
            "status_code": self.status_code,
            "body": self.body,
        }


class CarrierAPIError(CarrierError):
    """The carrier (or its proxy) answered with a non-2xx response or failed in transit."""


class CarrierConfigurationError(CarrierError):
    """Credentials or account details required for the call are missing."""


class CarrierNotFoundError(CarrierError):
    def __init__(self, carrier_name: str):
        super().__init__(f"Carrier not found: {carrier_name}", carrier=carrier_name)


class CarrierOperationNotSupported(CarrierError):
    """The carrier has no equivalent for the requested operation."""


class UPSReauthorizationRequired(CarrierError):
    """The stored UPS grant cannot be refreshed; the user must reconnect UPS."""

    code = "ups_reauthorize"

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message, carrier="UPS", status_code=status_code, body=body)
