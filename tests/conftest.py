import pytest

from factories import context, seed_master_data
from inventory_control.database import init_db, make_engine, make_session_factory
from inventory_control.events import event_bus
from inventory_control.services.audit_service import integrity_monitor


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = make_session_factory(engine)()
    seed_master_data(session)
    yield session
    session.close()


@pytest.fixture
def ctx():
    return context()


@pytest.fixture
def staff_ctx():
    return context(role="STAFF", user_id="user-2")


@pytest.fixture
def other_ctx():
    return context(organization_id="org-globex", user_id="user-9")


@pytest.fixture
def events():
    received = []

    def record(topic, payload):
        received.append((topic, payload))

    event_bus.subscribe("*", record)
    yield received
    event_bus.unsubscribe("*", record)


@pytest.fixture(autouse=True)
def reset_integrity_monitor():
    integrity_monitor.reset()
    yield
    integrity_monitor.reset()
