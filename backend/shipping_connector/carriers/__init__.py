from shipping_connector.carriers.base import (
    Address,
    CarrierInterface,
    CarrierServiceInfo,
    CredentialValidation,
    LabelResult,
    PackageDetails,
    RateResponse,
    ShipmentDetails,
    ShipmentOptions,
    ShipmentResponse,
    TrackingResult,
    apply_markup,
)
from shipping_connector.carriers.canada_post import CanadaPostCarrier
from shipping_connector.carriers.shipstation import ShipStationCarrier
from shipping_connector.carriers.ups import UPSCarrier

__all__ = [
    "Address",
    "CarrierInterface",
    "CarrierServiceInfo",
    "CredentialValidation",
    "LabelResult",
    "PackageDetails",
    "RateResponse",
    "ShipmentDetails",
    "ShipmentOptions",
    "ShipmentResponse",
    "TrackingResult",
    "apply_markup",
    "CanadaPostCarrier",
    "ShipStationCarrier",
    "UPSCarrier",
]
