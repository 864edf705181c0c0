import pytest
from opentelemetry import trace

from signaldesk.config import SignalDeskSettings
from signaldesk.core.bus import EventBus, reset_event_bus
from signaldesk.core.scheduler import ManualScheduler

from factories import T0, FakePlatformClient


@pytest.fixture(autouse=True)
def disable_tracing():
    """Disable OpenTelemetry tracer console exports to prevent Pytest stdout closed exceptions."""
    # Set a dummy provider so background spans do not log to pytest stdout on exit
    from opentelemetry.sdk.trace import TracerProvider
    trace.set_tracer_provider(TracerProvider())
    yield


@pytest.fixture(autouse=True)
def reset_bus_singleton():
    reset_event_bus()
    yield
    reset_event_bus()


@pytest.fixture
def scheduler():
    return ManualScheduler(start=T0)


@pytest.fixture
def fake_client(scheduler):
    return FakePlatformClient(scheduler)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def settings():
    return SignalDeskSettings(_env_file=None)
