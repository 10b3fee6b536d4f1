import pytest
import pytest_asyncio

from coordinator.services.coordinator import QueueCoordinator
from shared.models.queue import ResourceCapacity
from tests.fakes import FakeClock, MemoryQueueStore, RecordingEmitter, StaticCapacityOracle


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryQueueStore(clock)


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def oracle():
    return StaticCapacityOracle(
        ResourceCapacity(station_id=1, max_queue_length=2, average_session_minutes=30, owner_id="owner-1"),
        ResourceCapacity(station_id=2, max_queue_length=5, average_session_minutes=20),
        ResourceCapacity(station_id=3, is_open=False),
        ResourceCapacity(station_id=4, max_queue_length=3, average_session_minutes=45),
    )


@pytest_asyncio.fixture
async def coordinator(store, oracle, emitter, clock):
    coordinator = QueueCoordinator(store, oracle, emitter, clock=clock)
    yield coordinator
    await coordinator.stop()
