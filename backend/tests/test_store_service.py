import pytest

from canteen.errors import ServiceUnavailableError
from canteen.services.store_service import StoreGate


class ScriptedGate(StoreGate):
    """Gate whose pings follow a fixed script instead of touching the engine."""

    def __init__(self, results, **kwargs):
        self.now = 0.0
        self.sleeps = []
        super().__init__(sleep=self._sleep, clock=lambda: self.now, **kwargs)
        self.results = list(results)
        self.pings = 0

    def _sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def ping(self):
        self.pings += 1
        ok = self.results.pop(0) if self.results else False
        self.ready = ok
        self.last_error = None if ok else "connection refused"
        return ok


def test_backoff_doubles_until_ready():
    gate = ScriptedGate([False, False, False, True], connect_budget=40.0)
    assert gate.wait_until_ready() is True
    assert gate.pings == 4
    assert gate.sleeps == [0.25, 0.5, 1.0]


def test_backoff_is_capped_and_gives_up_after_budget():
    gate = ScriptedGate([], connect_budget=20.0)
    assert gate.wait_until_ready() is False
    assert max(gate.sleeps) == 5.0
    assert gate.now == pytest.approx(20.0)


def test_ensure_ready_raises_service_unavailable():
    gate = ScriptedGate([False], request_wait=0.0)
    with pytest.raises(ServiceUnavailableError) as err:
        gate.ensure_ready()
    assert err.value.status_code == 503
    assert gate.pings == 1


def test_ensure_ready_skips_ping_once_ready():
    gate = ScriptedGate([True])
    gate.ensure_ready()
    gate.ensure_ready()
    assert gate.pings == 1


def test_real_ping_against_test_database(app):
    with app.app_context():
        gate = StoreGate()
        assert gate.ping() is True
        assert gate.to_dict() == {"ready": True, "last_error": None}
