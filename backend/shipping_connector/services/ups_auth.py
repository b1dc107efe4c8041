"""UPS OAuth token lifecycle for stored carrier configurations.

Tokens live in ``carrier_configurations.api_credentials`` for the user's
active UPS row. ``ensure_valid_ups_token`` is the single entry point used
before UPS calls; it refreshes through ``/security/v1/oauth/refresh`` when
the cached token is inside the lookahead window.
"""
import asyncio
import weakref
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.orm import Session

from shipping_connector.config import settings
from shipping_connector.errors import CarrierAPIError, CarrierConfigurationError, UPSReauthorizationRequired
from shipping_connector.services.carrier_config_service import carrier_config_service
from shipping_connector.utils.logger import carrier_logger, logger
from shipping_connector.utils.token_utils import (
    expiry_from_expires_in,
    mask_token,
    parse_expiry,
    token_fingerprint,
    token_is_fresh,
)

UPS_CARRIER_NAME = "UPS"

# Entries disappear once no task holds or waits on the lock.
_refresh_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _lock_for(user_id: str) -> asyncio.Lock:
    lock = _refresh_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _refresh_locks[user_id] = lock
    return lock


def _token_payload(resp: httpx.Response, action: str) -> Dict[str, Any]:
    """Parse a 2xx OAuth reply; it must carry both an access token and its lifetime."""
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict) or not payload.get("access_token") or not payload.get("expires_in"):
        raise CarrierAPIError(
            f"UPS {action} returned an unusable token response",
            carrier=UPS_CARRIER_NAME,
            status_code=resp.status_code,
            body=resp.text,
        )
    return payload


def _load_ups_config(db: Session, user_id: str):
    config = carrier_config_service.get_configuration(db, user_id, UPS_CARRIER_NAME)
    if config is None:
        raise CarrierConfigurationError("UPS not configured for this user", carrier=UPS_CARRIER_NAME)
    return config


async def ensure_valid_ups_token(
    db: Session,
    user_id: str,
    *,
    lookahead: Optional[timedelta] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """Return UPS credentials (with ``account_number``) holding a usable token.

    Raises:
        CarrierConfigurationError: the user has no active UPS configuration.
        UPSReauthorizationRequired: the token is stale and cannot be refreshed
            (no refresh token, or UPS rejected the refresh).
    """
    if lookahead is None:
        lookahead = timedelta(minutes=settings.UPS_RATE_TOKEN_LOOKAHEAD_MINUTES)

    config = _load_ups_config(db, user_id)
    credentials = carrier_config_service.get_credentials(config)
    if token_is_fresh(credentials, lookahead=lookahead):
        return credentials

    async with _lock_for(user_id):
        # Another task may have refreshed while we waited for the lock.
        db.refresh(config)
        credentials = carrier_config_service.get_credentials(config)
        if token_is_fresh(credentials, lookahead=lookahead):
            logger.info("UPS token for user %s was refreshed concurrently; reusing it", user_id)
            return credentials

        logger.info(
            "UPS token for user %s needs refresh (expires_at=%s, now=%s)",
            user_id,
            credentials.get("token_expires_at"),
            datetime.now(timezone.utc).isoformat(),
        )

        refresh_token = credentials.get("refresh_token")
        if not refresh_token:
            raise UPSReauthorizationRequired(
                "UPS token expired and no refresh token is stored; reconnect UPS"
            )

        client_id = credentials.get("client_id")
        client_secret = credentials.get("client_secret")
        if not client_id or not client_secret:
            raise CarrierConfigurationError(
                "UPS client_id and client_secret are required", carrier=UPS_CARRIER_NAME
            )

        base_url = settings.ups_base_url(credentials.get("environment")).rstrip("/")
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(settings.CARRIER_HTTP_TIMEOUT_SECONDS, connect=10.0),
                transport=transport,
            ) as client:
                resp = await client.post(
                    f"{base_url}/security/v1/oauth/refresh",
                    headers={
                        "Content-Type": "application/x-www-form-urlencoded",
                        "x-merchant-id": client_id,
                    },
                    data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                    auth=(client_id, client_secret),
                )
        except httpx.RequestError as exc:
            raise CarrierAPIError(f"UPS token refresh failed: {exc}", carrier=UPS_CARRIER_NAME) from exc

        if not resp.is_success:
            carrier_logger.log_carrier_event(
                UPS_CARRIER_NAME,
                "token_refresh_failed",
                f"Refresh returned {resp.status_code}",
                response_data={"status_code": resp.status_code},
                status="error",
                error=resp.text[:500],
            )
            raise UPSReauthorizationRequired(
                f"Failed to refresh UPS token: {resp.text}",
                status_code=resp.status_code,
                body=resp.text,
            )

        token_data = _token_payload(resp, "token refresh")
        credentials["access_token"] = token_data.get("access_token")
        credentials["refresh_token"] = token_data.get("refresh_token") or refresh_token
        credentials["token_expires_at"] = expiry_from_expires_in(token_data.get("expires_in"))

        carrier_config_service.update_credentials(db, config, credentials)
        carrier_logger.log_carrier_event(
            UPS_CARRIER_NAME,
            "token_refreshed",
            "UPS access token refreshed",
            response_data={"token_expires_at": credentials["token_expires_at"]},
        )
        logger.info(
            "UPS token refreshed for user %s: token=%s fingerprint=%s expires_at=%s",
            user_id,
            mask_token(credentials["access_token"]),
            token_fingerprint(credentials["access_token"]),
            credentials["token_expires_at"],
        )
        return credentials


async def exchange_authorization_code(
    db: Session,
    user_id: str,
    code: str,
    redirect_uri: str,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """Complete the UPS OAuth authorization-code flow and store the tokens."""
    config = _load_ups_config(db, user_id)
    credentials = carrier_config_service.get_credentials(config)

    client_id = credentials.get("client_id")
    client_secret = credentials.get("client_secret")
    if not client_id or not client_secret:
        raise CarrierConfigurationError(
            "UPS client_id and client_secret are required", carrier=UPS_CARRIER_NAME
        )

    base_url = settings.ups_base_url(credentials.get("environment")).rstrip("/")
    try:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(settings.CARRIER_HTTP_TIMEOUT_SECONDS, connect=10.0),
            transport=transport,
        ) as client:
            resp = await client.post(
                f"{base_url}/security/v1/oauth/token",
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "x-merchant-id": client_id,
                },
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": redirect_uri,
                },
                auth=(client_id, client_secret),
            )
    except httpx.RequestError as exc:
        raise CarrierAPIError(f"UPS token exchange failed: {exc}", carrier=UPS_CARRIER_NAME) from exc

    if not resp.is_success:
        raise CarrierAPIError(
            f"UPS token exchange failed: {resp.text}",
            carrier=UPS_CARRIER_NAME,
            status_code=resp.status_code,
            body=resp.text,
        )

    token_data = _token_payload(resp, "token exchange")
    credentials["access_token"] = token_data.get("access_token")
    if token_data.get("refresh_token"):
        credentials["refresh_token"] = token_data["refresh_token"]
    credentials["token_expires_at"] = expiry_from_expires_in(token_data.get("expires_in"))

    carrier_config_service.update_credentials(db, config, credentials)
    logger.info(
        "UPS authorization completed for user %s: token=%s expires_at=%s",
        user_id,
        mask_token(credentials["access_token"]),
        credentials["token_expires_at"],
    )
    return credentials


def clear_ups_token(db: Session, user_id: str) -> Optional[datetime]:
    """Invalidate the stored UPS access token; returns the new (past) expiry."""
    config = _load_ups_config(db, user_id)
    carrier_config_service.clear_token(db, config)
    return parse_expiry(carrier_config_service.get_credentials(config).get("token_expires_at"))
