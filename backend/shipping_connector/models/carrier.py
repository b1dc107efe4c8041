from pydantic import BaseModel, Field
from typing import Any, Dict, Optional
from datetime import datetime


class AddressIn(BaseModel):
    name: str = ""
    company: Optional[str] = None
    address: str = ""
    city: str = ""
    state: str = ""
    postal_code: str
    country: str
    phone: Optional[str] = None


class PackageIn(BaseModel):
    weight: float = Field(..., gt=0, description="Weight in pounds")
    length: float = Field(12, gt=0, description="Length in inches")
    width: float = Field(12, gt=0, description="Width in inches")
    height: float = Field(6, gt=0, description="Height in inches")
    value: Optional[float] = None


class ShipmentOptionsIn(BaseModel):
    signature_required: bool = False
    insurance: bool = False
    saturday_delivery: bool = False


class ShipmentDetailsIn(BaseModel):
    from_: AddressIn = Field(..., alias="from")
    to: AddressIn
    package: PackageIn
    options: ShipmentOptionsIn = Field(default_factory=ShipmentOptionsIn)

    class Config:
        populate_by_name = True


class CreateShipmentRequest(BaseModel):
    shipment: ShipmentDetailsIn
    service_code: str


class CarrierConfigurationCreate(BaseModel):
    carrier_name: str
    account_number: Optional[str] = None
    api_credentials: Dict[str, Any] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)
    markup: float = Field(0, ge=0, le=100, description="Markup percentage applied to quoted rates")
    is_active: bool = True


class CarrierConfigurationResponse(BaseModel):
    id: str
    carrier_name: str
    account_number: Optional[str]
    markup: float
    is_active: bool
    settings: Optional[Dict[str, Any]] = None
    has_access_token: bool = False
    has_refresh_token: bool = False
    token_expires_at: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AuthorizationCodeRequest(BaseModel):
    code: str
    redirect_uri: str
