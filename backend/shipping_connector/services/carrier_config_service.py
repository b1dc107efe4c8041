import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from shipping_connector.models.carrier import CarrierConfigurationCreate, CarrierConfigurationResponse
from shipping_connector.models_sqlalchemy.models import CarrierConfiguration
from shipping_connector.utils import crypto
from shipping_connector.utils.logger import logger


# Written into token_expires_at to force re-authentication on next use.
EXPIRED_SENTINEL = "2000-01-01T00:00:00Z"


class CarrierConfigService:

    def get_configuration(
        self,
        db: Session,
        user_id: str,
        carrier_name: str,
        active_only: bool = True,
    ) -> Optional[CarrierConfiguration]:
        query = db.query(CarrierConfiguration).filter(
            and_(
                CarrierConfiguration.user_id == user_id,
                func.lower(CarrierConfiguration.carrier_name) == carrier_name.lower(),
            )
        )
        if active_only:
            query = query.filter(CarrierConfiguration.is_active.is_(True))
        return query.first()

    def list_configurations(
        self,
        db: Session,
        user_id: str,
        active_only: bool = True,
    ) -> List[CarrierConfiguration]:
        query = db.query(CarrierConfiguration).filter(CarrierConfiguration.user_id == user_id)
        if active_only:
            query = query.filter(CarrierConfiguration.is_active.is_(True))
        return query.order_by(CarrierConfiguration.carrier_name).all()

    def upsert_configuration(
        self,
        db: Session,
        user_id: str,
        data: CarrierConfigurationCreate,
    ) -> CarrierConfiguration:
        """Create or update the user's configuration for ``data.carrier_name``.

        Credentials are merged into the stored bag so a partial update (for
        example a new markup or account number) keeps existing tokens.
        """
        existing = self.get_configuration(db, user_id, data.carrier_name, active_only=False)
        now = datetime.now(timezone.utc)

        if existing:
            merged = self.get_credentials(existing, include_account_number=False)
            merged.update(data.api_credentials)
            existing.api_credentials = crypto.seal_credentials(merged)
            existing.account_number = data.account_number or existing.account_number
            existing.settings = data.settings or existing.settings
            existing.markup = data.markup
            existing.is_active = data.is_active
            existing.updated_at = now
            db.commit()
            db.refresh(existing)
            logger.info(f"Updated carrier configuration: {existing.id} ({existing.carrier_name})")
            return existing

        config = CarrierConfiguration(
            id=str(uuid.uuid4()),
            user_id=user_id,
            carrier_name=data.carrier_name,
            account_number=data.account_number,
            api_credentials=crypto.seal_credentials(dict(data.api_credentials)),
            settings=data.settings,
            markup=data.markup,
            is_active=data.is_active,
            created_at=now,
            updated_at=now,
        )
        db.add(config)
        db.commit()
        db.refresh(config)
        logger.info(f"Created carrier configuration: {config.id} ({config.carrier_name})")
        return config

    def get_credentials(
        self,
        config: CarrierConfiguration,
        include_account_number: bool = True,
    ) -> Dict[str, Any]:
        """Return the plaintext credential bag for ``config``."""
        credentials = crypto.open_credentials(config.api_credentials or {})
        if include_account_number and config.account_number:
            credentials["account_number"] = config.account_number
        return credentials

    def update_credentials(
        self,
        db: Session,
        config: CarrierConfiguration,
        credentials: Dict[str, Any],
    ) -> CarrierConfiguration:
        """Persist a new credential bag (for example after a token refresh)."""
        stored = dict(credentials)
        # account_number lives in its own column
        stored.pop("account_number", None)
        config.api_credentials = crypto.seal_credentials(stored)
        config.updated_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(config)
        logger.info(
            "Saved credentials for carrier configuration %s (%s), token_expires_at=%s",
            config.id,
            config.carrier_name,
            stored.get("token_expires_at"),
        )
        return config

    def clear_token(self, db: Session, config: CarrierConfiguration) -> CarrierConfiguration:
        """Drop the cached access token so the next call has to re-authenticate."""
        credentials = self.get_credentials(config, include_account_number=False)
        credentials["access_token"] = None
        credentials["token_expires_at"] = EXPIRED_SENTINEL
        logger.info(f"Clearing cached token for carrier configuration {config.id} ({config.carrier_name})")
        return self.update_credentials(db, config, credentials)

    def to_response(self, config: CarrierConfiguration) -> CarrierConfigurationResponse:
        credentials = self.get_credentials(config, include_account_number=False)
        return CarrierConfigurationResponse(
            id=config.id,
            carrier_name=config.carrier_name,
            account_number=config.account_number,
            markup=config.markup or 0.0,
            is_active=bool(config.is_active),
            settings=config.settings,
            has_access_token=bool(credentials.get("access_token")),
            has_refresh_token=bool(credentials.get("refresh_token")),
            token_expires_at=credentials.get("token_expires_at"),
            created_at=config.created_at,
            updated_at=config.updated_at,
        )


carrier_config_service = CarrierConfigService()
