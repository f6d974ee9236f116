import pytest

from radar_gateway.audit_log import AuditWriter
from radar_gateway.metrics import MetricsAggregator
from radar_gateway.store import GatewayStore


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


class RecordingAudit:
    """Stands in for AuditWriter; remembers every call."""

    def __init__(self):
        self.calls = []

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)

        async def _record(*args, **kwargs):
            self.calls.append((name, args, kwargs))

        return _record

    def names(self):
        return [c[0] for c in self.calls]

    def find(self, name):
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return GatewayStore(db_path=str(tmp_path / "radar.db"))


@pytest.fixture
def audit(store):
    return AuditWriter(store)


@pytest.fixture
def recording_audit():
    return RecordingAudit()


@pytest.fixture
def metrics(clock):
    return MetricsAggregator(clock=clock, export=False)
