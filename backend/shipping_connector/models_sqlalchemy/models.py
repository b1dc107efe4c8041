from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, String, UniqueConstraint

from shipping_connector.models_sqlalchemy import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CarrierConfiguration(Base):
    """Per-tenant carrier connection.

    ``api_credentials`` is the carrier's opaque credential bag (OAuth client,
    API keys, cached tokens and their expiry). Secret fields are stored as
    ``ENC:v1:`` blobs, see ``shipping_connector.utils.crypto``.
    """

    __tablename__ = "carrier_configurations"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    carrier_name = Column(String(50), nullable=False)
    account_number = Column(String(100), nullable=True)
    api_credentials = Column(JSON, nullable=False, default=dict)
    settings = Column(JSON, nullable=True, default=dict)
    markup = Column(Float, nullable=False, default=0.0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "carrier_name", name="uq_carrier_configurations_user_carrier"),
        Index("idx_carrier_configurations_user_active", "user_id", "is_active"),
    )
