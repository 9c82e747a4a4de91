# Ensure project root is on sys.path for test imports
import pathlib
import sys

import pytest

root = pathlib.Path(__file__).resolve().parent.parent
if str(root) not in sys.path:
    sys.path.insert(0, str(root))

from scope_desk import ConnectionManager, SimulatedDriver  # noqa: E402


class FixedRandom:
    """Random source returning the same draw every time."""

    def __init__(self, value: float = 0.5) -> None:
        self.value = value
        self.calls = 0

    def random(self) -> float:
        self.calls += 1
        return self.value


class RecordingResolver:
    """Resolver returning a fixed driver for chosen identifiers."""

    def __init__(self, drivers=None) -> None:
        self.drivers = dict(drivers or {})
        self.calls: list[str] = []

    def __call__(self, identifier):
        self.calls.append(identifier)
        return self.drivers.get(identifier)


@pytest.fixture
def fixed_random():
    return FixedRandom(0.5)


@pytest.fixture
def sim_driver(fixed_random):
    return SimulatedDriver(rng=fixed_random)


@pytest.fixture
def stub_manager():
    resolver = RecordingResolver()
    manager = ConnectionManager(driver_ids=("LeCroy.ActiveDSOCtrl.1", "LeCroy.ActiveDSO"), resolver=resolver)
    manager.resolver_calls = resolver.calls
    yield manager
    manager.close()


@pytest.fixture
def live_manager(sim_driver):
    resolver = RecordingResolver({"LeCroy.ActiveDSO": sim_driver})
    manager = ConnectionManager(driver_ids=("LeCroy.ActiveDSOCtrl.1", "LeCroy.ActiveDSO"), resolver=resolver)
    manager.resolver_calls = resolver.calls
    yield manager
    manager.close()
