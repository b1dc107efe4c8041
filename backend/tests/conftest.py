import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shipping_connector.carriers.base import ShipmentDetails
from shipping_connector.models_sqlalchemy import Base
from shipping_connector.models_sqlalchemy import models  # noqa: F401  (registers tables)
from shipping_connector.services import ups_auth
from shipping_connector.utils.logger import carrier_logger


@pytest.fixture
def db_session():
    """Fresh in-memory SQLite database with the carrier tables created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture(autouse=True)
def _reset_shared_state():
    # Locks are bound to the event loop that first waits on them and every
    # async test gets its own loop.
    ups_auth._refresh_locks.clear()
    carrier_logger.clear_logs()
    yield
    ups_auth._refresh_locks.clear()


@pytest.fixture
def shipment_payload():
    return {
        "from": {
            "name": "Warehouse",
            "address": "100 Queen St",
            "city": "Ottawa",
            "state": "ON",
            "postal_code": "K1A 0B1",
            "country": "CA",
            "phone": "613-555-0100",
        },
        "to": {
            "name": "Jane Buyer",
            "address": "1 Main St",
            "city": "Toronto",
            "state": "ON",
            "postal_code": "M5V 2T6",
            "country": "CA",
        },
        "package": {"weight": 10, "length": 12, "width": 10, "height": 6},
        "options": {"signature_required": False},
    }


@pytest.fixture
def shipment_details(shipment_payload):
    return ShipmentDetails.from_dict(shipment_payload)
