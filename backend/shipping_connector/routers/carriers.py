from datetime import timedelta
from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from shipping_connector.carriers.base import ShipmentDetails
from shipping_connector.carriers.ups import UPSCarrier
from shipping_connector.config import settings
from shipping_connector.errors import (
    CarrierAPIError,
    CarrierConfigurationError,
    CarrierError,
    CarrierNotFoundError,
    CarrierOperationNotSupported,
    UPSReauthorizationRequired,
)
from shipping_connector.models.carrier import (
    AuthorizationCodeRequest,
    CarrierConfigurationCreate,
    CarrierConfigurationResponse,
    CreateShipmentRequest,
    ShipmentDetailsIn,
)
from shipping_connector.models_sqlalchemy import get_db
from shipping_connector.services import ups_auth
from shipping_connector.services.auth import get_current_user_id
from shipping_connector.services.carrier_config_service import carrier_config_service
from shipping_connector.services.carrier_service import CarrierService
from shipping_connector.utils.logger import carrier_logger, logger


router = APIRouter(
    prefix="/api/carriers",
    tags=["carriers"],
    dependencies=[Depends(get_current_user_id)],
)


def get_carrier_transport() -> Optional[httpx.AsyncBaseTransport]:
    """Transport for outbound carrier HTTP; None uses the network."""
    return None


def get_carrier_service(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_carrier_transport),
) -> CarrierService:
    return CarrierService.for_user(db, user_id, transport=transport)


def _http_error(exc: CarrierError) -> HTTPException:
    if isinstance(exc, CarrierNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message)
    if isinstance(exc, UPSReauthorizationRequired):
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": exc.code, "message": exc.message},
        )
    if isinstance(exc, CarrierConfigurationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    if isinstance(exc, CarrierOperationNotSupported):
        return HTTPException(status_code=status.HTTP_501_NOT_IMPLEMENTED, detail=exc.message)
    if isinstance(exc, CarrierAPIError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=exc.to_dict())
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.message)


async def _sync_ups_token(
    db: Session,
    user_id: str,
    service: CarrierService,
    lookahead_minutes: int,
    *,
    strict: bool,
) -> None:
    """Make sure the UPS adapter starts from a stored, non-expired token.

    With ``strict`` False (rate shopping across carriers) a UPS token problem
    is logged and UPS is left to fail on its own inside the fan-out.
    """
    carrier = service.get_carrier("ups")
    if not isinstance(carrier, UPSCarrier):
        return
    try:
        credentials = await ups_auth.ensure_valid_ups_token(
            db, user_id, lookahead=timedelta(minutes=lookahead_minutes), transport=service.transport
        )
    except CarrierError as exc:
        if strict:
            raise
        logger.warning(f"UPS token not refreshed for user {user_id}: {exc.message}")
        return
    carrier.credentials.update(credentials)


def _details(body: ShipmentDetailsIn) -> ShipmentDetails:
    return ShipmentDetails.from_dict(body.model_dump(by_alias=True))


@router.post("/rates")
async def get_all_rates(
    body: ShipmentDetailsIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: CarrierService = Depends(get_carrier_service),
) -> List[Dict[str, Any]]:
    await _sync_ups_token(db, user_id, service, settings.UPS_RATE_TOKEN_LOOKAHEAD_MINUTES, strict=False)
    rates = await service.get_all_rates(_details(body))
    return [rate.to_dict() for rate in rates]


@router.post("/rates/best")
async def get_best_rate(
    body: ShipmentDetailsIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: CarrierService = Depends(get_carrier_service),
) -> Optional[Dict[str, Any]]:
    await _sync_ups_token(db, user_id, service, settings.UPS_RATE_TOKEN_LOOKAHEAD_MINUTES, strict=False)
    best = await service.find_best_rate(_details(body))
    return best.to_dict() if best else None


@router.get("/services")
async def get_all_services(
    service: CarrierService = Depends(get_carrier_service),
) -> Dict[str, List[Dict[str, Any]]]:
    services = await service.get_all_services()
    return {name: [info.to_dict() for info in infos] for name, infos in services.items()}


@router.get("/configurations", response_model=List[CarrierConfigurationResponse])
async def list_configurations(
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    configs = carrier_config_service.list_configurations(db, user_id, active_only=not include_inactive)
    return [carrier_config_service.to_response(config) for config in configs]


@router.put("/configurations", response_model=CarrierConfigurationResponse)
async def upsert_configuration(
    body: CarrierConfigurationCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    config = carrier_config_service.upsert_configuration(db, user_id, body)
    return carrier_config_service.to_response(config)


@router.get("/logs")
async def get_carrier_logs(
    limit: int = Query(100, ge=1, le=1000),
    carrier: Optional[str] = Query(None),
) -> Dict[str, Any]:
    logs = carrier_logger.get_logs(limit=limit, carrier=carrier)
    return {"logs": logs, "total": len(logs)}


@router.post("/ups/token/refresh")
async def refresh_ups_token(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_carrier_transport),
) -> Dict[str, Any]:
    try:
        credentials = await ups_auth.ensure_valid_ups_token(db, user_id, transport=transport)
    except CarrierError as exc:
        raise _http_error(exc)
    return {"success": True, "token_expires_at": credentials.get("token_expires_at")}


@router.post("/ups/oauth/callback")
async def ups_oauth_callback(
    body: AuthorizationCodeRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_carrier_transport),
) -> Dict[str, Any]:
    try:
        credentials = await ups_auth.exchange_authorization_code(
            db, user_id, body.code, body.redirect_uri, transport=transport
        )
    except CarrierError as exc:
        raise _http_error(exc)
    return {"success": True, "token_expires_at": credentials.get("token_expires_at")}


@router.delete("/ups/token")
async def clear_ups_token(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    try:
        expires_at = ups_auth.clear_ups_token(db, user_id)
    except CarrierError as exc:
        raise _http_error(exc)
    return {
        "success": True,
        "message": "UPS token cleared; re-authentication required",
        "token_expires_at": expires_at.isoformat() if expires_at else None,
    }


@router.post("/{carrier}/rates")
async def get_carrier_rates(
    carrier: str,
    body: ShipmentDetailsIn,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: CarrierService = Depends(get_carrier_service),
) -> List[Dict[str, Any]]:
    try:
        if carrier.lower() == "ups":
            await _sync_ups_token(db, user_id, service, settings.UPS_RATE_TOKEN_LOOKAHEAD_MINUTES, strict=True)
        rates = await service.get_rates_from_carrier(carrier, _details(body))
    except CarrierError as exc:
        raise _http_error(exc)
    return [rate.to_dict() for rate in rates]


@router.post("/{carrier}/shipments")
async def create_shipment(
    carrier: str,
    body: CreateShipmentRequest,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    service: CarrierService = Depends(get_carrier_service),
) -> Dict[str, Any]:
    try:
        if carrier.lower() == "ups":
            await _sync_ups_token(
                db, user_id, service, settings.UPS_SHIPMENT_TOKEN_LOOKAHEAD_MINUTES, strict=True
            )
        shipment = await service.create_shipment(carrier, _details(body.shipment), body.service_code)
    except CarrierError as exc:
        raise _http_error(exc)
    logger.info(f"Created {carrier} shipment {shipment.id} (tracking {shipment.tracking_number})")
    return shipment.to_dict()


@router.post("/{carrier}/shipments/{shipment_id}/label")
async def purchase_label(
    carrier: str,
    shipment_id: str,
    service: CarrierService = Depends(get_carrier_service),
) -> Dict[str, Any]:
    try:
        label = await service.purchase_label(carrier, shipment_id)
    except CarrierError as exc:
        raise _http_error(exc)
    return label.to_dict()


@router.get("/{carrier}/track/{tracking_number}")
async def track_shipment(
    carrier: str,
    tracking_number: str,
    service: CarrierService = Depends(get_carrier_service),
) -> Dict[str, Any]:
    try:
        result = await service.track_shipment(carrier, tracking_number)
    except CarrierError as exc:
        raise _http_error(exc)
    return result.to_dict()


@router.post("/{carrier}/validate")
async def validate_credentials(
    carrier: str,
    service: CarrierService = Depends(get_carrier_service),
) -> Dict[str, Any]:
    result = await service.validate_carrier_credentials(carrier)
    return result.to_dict()


@router.get("/{carrier}/services")
async def get_carrier_services(
    carrier: str,
    service: CarrierService = Depends(get_carrier_service),
) -> List[Dict[str, Any]]:
    try:
        services = await service.get_carrier_services(carrier)
    except CarrierError as exc:
        raise _http_error(exc)
    return [info.to_dict() for info in services]
