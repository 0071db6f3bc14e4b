"""
Tracking Service Test Configuration

Unit and component tests run against the in-memory store. Store and API
tests use an in-memory SQLite database through aiosqlite.
"""
import os

import pytest

os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite+aiosqlite:///:memory:")

from functools import partial  # noqa: E402

from shared.config import Settings  # noqa: E402
from services.tracking_service.access import load_authorized_shipment  # noqa: E402
from services.tracking_service.broadcast import BroadcastHub  # noqa: E402
from services.tracking_service.eta import EtaPredictor  # noqa: E402
from services.tracking_service.ingestion import IngestionGateway  # noqa: E402
from services.tracking_service.recommendations import RecommendationEngine  # noqa: E402
from services.tracking_service.route_analysis import (  # noqa: E402
    RouteAnalysisEngine,
    RouteAnalysisService,
)

from .fixtures import FixedClock, courier_of, make_shipment  # noqa: E402
from .mocks import InMemoryLocationStore  # noqa: E402

SQLITE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
def settings():
    return Settings(database_url_override=SQLITE_URL)


@pytest.fixture
def eta_predictor(settings):
    return EtaPredictor(settings)


@pytest.fixture
def recommendation_engine(settings, eta_predictor):
    return RecommendationEngine(settings, eta_predictor)


@pytest.fixture
def route_engine(settings):
    return RouteAnalysisEngine(settings)


@pytest.fixture
def store():
    return InMemoryLocationStore()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def hub(store):
    return BroadcastHub(authorizer=partial(load_authorized_shipment, store), send_timeout=0.2)


@pytest.fixture
def gateway(store, hub, settings, clock, eta_predictor, recommendation_engine, route_engine):
    return IngestionGateway(
        store=store,
        hub=hub,
        settings=settings,
        eta_predictor=eta_predictor,
        recommendation_engine=recommendation_engine,
        route_analysis=RouteAnalysisService(store, route_engine),
        clock=clock,
    )


@pytest.fixture
def shipment(store):
    """Pending shipment from Delhi to Mumbai"""
    return store.add_shipment(make_shipment())


@pytest.fixture
def courier(shipment):
    return courier_of(shipment)
