import asyncio
import base64
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from shipping_connector.errors import CarrierAPIError, CarrierConfigurationError, UPSReauthorizationRequired
from shipping_connector.models.carrier import CarrierConfigurationCreate
from shipping_connector.services import ups_auth
from shipping_connector.services.carrier_config_service import carrier_config_service
from shipping_connector.utils import crypto
from shipping_connector.utils.token_utils import format_expiry, parse_expiry

USER_ID = "user-ups"


def _seed(db, **overrides):
    credentials = {
        "client_id": "cid",
        "client_secret": "csecret",
        "access_token": "old-token",
        "refresh_token": "refresh-1",
        "token_expires_at": format_expiry(datetime.now(timezone.utc) - timedelta(minutes=5)),
        "environment": "sandbox",
    }
    credentials.update(overrides)
    credentials = {k: v for k, v in credentials.items() if v is not None}
    return carrier_config_service.upsert_configuration(
        db,
        USER_ID,
        CarrierConfigurationCreate(carrier_name="UPS", account_number="A1B2C3", api_credentials=credentials),
    )


class RecordingHandler:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.payload = payload if payload is not None else {"access_token": "new-token", "expires_in": 14399}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code >= 400:
            return httpx.Response(self.status_code, text='{"response":{"errors":[{"code":"250002"}]}}')
        return httpx.Response(self.status_code, json=self.payload)


@pytest.mark.asyncio
async def test_expired_token_refreshes_once_and_persists(db_session):
    _seed(db_session)
    handler = RecordingHandler()

    credentials = await ups_auth.ensure_valid_ups_token(
        db_session, USER_ID, transport=httpx.MockTransport(handler)
    )

    assert len(handler.requests) == 1
    request = handler.requests[0]
    assert request.url.host == "wwwcie.ups.com"
    assert request.url.path == "/security/v1/oauth/refresh"
    assert request.headers["x-merchant-id"] == "cid"
    assert request.headers["authorization"] == "Basic " + base64.b64encode(b"cid:csecret").decode()
    form = parse_qs(request.content.decode())
    assert form == {"grant_type": ["refresh_token"], "refresh_token": ["refresh-1"]}

    assert credentials["access_token"] == "new-token"
    assert credentials["refresh_token"] == "refresh-1"
    assert credentials["account_number"] == "A1B2C3"

    config = carrier_config_service.get_configuration(db_session, USER_ID, "UPS")
    stored = carrier_config_service.get_credentials(config)
    assert stored["access_token"] == "new-token"
    assert parse_expiry(stored["token_expires_at"]) > datetime.now(timezone.utc)
    assert crypto.is_encrypted(config.api_credentials["access_token"])


@pytest.mark.asyncio
async def test_rotated_refresh_token_is_stored(db_session):
    _seed(db_session)
    handler = RecordingHandler(payload={"access_token": "new-token", "refresh_token": "refresh-2", "expires_in": 60})

    await ups_auth.ensure_valid_ups_token(db_session, USER_ID, transport=httpx.MockTransport(handler))

    config = carrier_config_service.get_configuration(db_session, USER_ID, "UPS")
    assert carrier_config_service.get_credentials(config)["refresh_token"] == "refresh-2"


@pytest.mark.asyncio
async def test_missing_refresh_token_requires_reauthorization_without_http(db_session):
    _seed(db_session, refresh_token=None)
    handler = RecordingHandler()

    with pytest.raises(UPSReauthorizationRequired) as exc_info:
        await ups_auth.ensure_valid_ups_token(db_session, USER_ID, transport=httpx.MockTransport(handler))

    assert exc_info.value.code == "ups_reauthorize"
    assert handler.requests == []


@pytest.mark.asyncio
async def test_fresh_token_is_returned_without_http(db_session):
    _seed(db_session, token_expires_at=format_expiry(datetime.now(timezone.utc) + timedelta(hours=2)))
    handler = RecordingHandler()

    credentials = await ups_auth.ensure_valid_ups_token(
        db_session, USER_ID, transport=httpx.MockTransport(handler)
    )

    assert credentials["access_token"] == "old-token"
    assert handler.requests == []


@pytest.mark.asyncio
async def test_shipment_lookahead_refreshes_token_close_to_expiry(db_session):
    _seed(db_session, token_expires_at=format_expiry(datetime.now(timezone.utc) + timedelta(minutes=10)))
    handler = RecordingHandler()
    transport = httpx.MockTransport(handler)

    # Rate calls still accept a token with ten minutes left.
    await ups_auth.ensure_valid_ups_token(db_session, USER_ID, transport=transport)
    assert handler.requests == []

    credentials = await ups_auth.ensure_valid_ups_token(
        db_session, USER_ID, lookahead=timedelta(minutes=30), transport=transport
    )
    assert len(handler.requests) == 1
    assert credentials["access_token"] == "new-token"


@pytest.mark.asyncio
async def test_rejected_refresh_requires_reauthorization(db_session):
    _seed(db_session)
    handler = RecordingHandler(status_code=401)

    with pytest.raises(UPSReauthorizationRequired) as exc_info:
        await ups_auth.ensure_valid_ups_token(db_session, USER_ID, transport=httpx.MockTransport(handler))

    assert exc_info.value.status_code == 401
    assert "250002" in exc_info.value.body
    config = carrier_config_service.get_configuration(db_session, USER_ID, "UPS")
    assert carrier_config_service.get_credentials(config)["access_token"] == "old-token"


@pytest.mark.parametrize(
    "reply",
    [
        {"json": {"access_token": "new-token"}},
        {"json": {"expires_in": 3600}},
        {"text": "<html>gateway</html>"},
    ],
)
@pytest.mark.asyncio
async def test_unusable_refresh_reply_keeps_stored_token(db_session, reply):
    _seed(db_session)
    stored_before = carrier_config_service.get_credentials(
        carrier_config_service.get_configuration(db_session, USER_ID, "UPS")
    )

    with pytest.raises(CarrierAPIError, match="unusable token response") as exc_info:
        await ups_auth.ensure_valid_ups_token(
            db_session, USER_ID, transport=httpx.MockTransport(lambda request: httpx.Response(200, **reply))
        )

    assert exc_info.value.status_code == 200
    config = carrier_config_service.get_configuration(db_session, USER_ID, "UPS")
    stored = carrier_config_service.get_credentials(config)
    assert stored["access_token"] == "old-token"
    assert stored["token_expires_at"] == stored_before["token_expires_at"]


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(db_session):
    _seed(db_session)
    handler = RecordingHandler()
    transport = httpx.MockTransport(handler)

    first, second = await asyncio.gather(
        ups_auth.ensure_valid_ups_token(db_session, USER_ID, transport=transport),
        ups_auth.ensure_valid_ups_token(db_session, USER_ID, transport=transport),
    )

    assert len(handler.requests) == 1
    assert first["access_token"] == second["access_token"] == "new-token"


@pytest.mark.asyncio
async def test_missing_configuration_raises(db_session):
    with pytest.raises(CarrierConfigurationError, match="UPS not configured"):
        await ups_auth.ensure_valid_ups_token(db_session, "nobody")


@pytest.mark.asyncio
async def test_exchange_authorization_code_stores_tokens(db_session):
    _seed(db_session, access_token=None, refresh_token=None, token_expires_at=None)
    handler = RecordingHandler(payload={"access_token": "auth-token", "refresh_token": "auth-refresh", "expires_in": 14399})

    await ups_auth.exchange_authorization_code(
        db_session,
        USER_ID,
        "code-123",
        "https://app.example.com/ups/callback",
        transport=httpx.MockTransport(handler),
    )

    request = handler.requests[0]
    assert request.url.path == "/security/v1/oauth/token"
    form = parse_qs(request.content.decode())
    assert form["grant_type"] == ["authorization_code"]
    assert form["code"] == ["code-123"]

    config = carrier_config_service.get_configuration(db_session, USER_ID, "UPS")
    stored = carrier_config_service.get_credentials(config)
    assert stored["access_token"] == "auth-token"
    assert stored["refresh_token"] == "auth-refresh"


def test_clear_ups_token_forces_reauthentication(db_session):
    _seed(db_session, token_expires_at=format_expiry(datetime.now(timezone.utc) + timedelta(hours=2)))

    expires_at = ups_auth.clear_ups_token(db_session, USER_ID)

    assert expires_at < datetime.now(timezone.utc)
    config = carrier_config_service.get_configuration(db_session, USER_ID, "UPS")
    stored = carrier_config_service.get_credentials(config)
    assert stored["access_token"] is None
    assert stored["refresh_token"] == "refresh-1"


@pytest.mark.asyncio
async def test_exchange_without_expiry_is_rejected(db_session):
    _seed(db_session, access_token=None, refresh_token=None, token_expires_at=None)
    handler = RecordingHandler(payload={"access_token": "auth-token"})

    with pytest.raises(CarrierAPIError, match="unusable token response"):
        await ups_auth.exchange_authorization_code(
            db_session,
            USER_ID,
            "code-123",
            "https://app.example.com/ups/callback",
            transport=httpx.MockTransport(handler),
        )

    config = carrier_config_service.get_configuration(db_session, USER_ID, "UPS")
    assert carrier_config_service.get_credentials(config).get("access_token") is None


@pytest.mark.asyncio
async def test_refresh_lock_is_released_after_use(db_session):
    _seed(db_session)

    await ups_auth.ensure_valid_ups_token(
        db_session, USER_ID, transport=httpx.MockTransport(RecordingHandler())
    )

    assert USER_ID not in ups_auth._refresh_locks
