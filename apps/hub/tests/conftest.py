import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from fastapi.testclient import TestClient  # noqa: E402

from config import settings  # noqa: E402
from hardware import SimulatedAnalogBus, SimulatedRelayBoard  # noqa: E402
from main import create_app  # noqa: E402
from services.actuator import ZoneActuator  # noqa: E402
from services.actuator_state import ActuatorStateStore  # noqa: E402
from services.history import HistoryStore  # noqa: E402
from services.notifications import NotificationService  # noqa: E402
from services.storage import SettingsStore  # noqa: E402

# Local noon keeps small clock advances on the same calendar day.
BASE_EPOCH_MS = int(datetime(2024, 5, 1, 12, 0, 0).timestamp() * 1000)


class FakeClock:
    def __init__(self, start_ms: int = BASE_EPOCH_MS) -> None:
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings_override() -> Callable[..., None]:
    original: Dict[str, Any] = {}

    def _apply(**overrides: Any) -> None:
        for key, value in overrides.items():
            if key not in original:
                original[key] = getattr(settings, key)
            setattr(settings, key, value)

    yield _apply

    for key, value in original.items():
        setattr(settings, key, value)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def relays() -> SimulatedRelayBoard:
    return SimulatedRelayBoard()


@pytest.fixture
def analog() -> SimulatedAnalogBus:
    bus = SimulatedAnalogBus({channel: 16_000.0 for channel in range(4)})
    bus.open()
    return bus


@pytest.fixture
def settings_store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json", zone_count=4)


@pytest.fixture
def state_store(tmp_path: Path) -> ActuatorStateStore:
    return ActuatorStateStore(tmp_path / "actuator_state.json")


@pytest.fixture
def history(tmp_path: Path) -> HistoryStore:
    return HistoryStore(db_path=tmp_path / "history.sqlite", max_rows=1000)


@pytest.fixture
def notifier() -> NotificationService:
    return NotificationService()


@pytest.fixture
def make_actuator(
    relays: SimulatedRelayBoard,
    settings_store: SettingsStore,
    state_store: ActuatorStateStore,
    history: HistoryStore,
    notifier: NotificationService,
    clock: FakeClock,
) -> Callable[..., ZoneActuator]:
    def _build(**overrides: Any) -> ZoneActuator:
        options: Dict[str, Any] = {
            "relays": relays,
            "settings_store": settings_store,
            "state_store": state_store,
            "history": history,
            "notifier": notifier,
            "manual_cooldown_ms": 300_000,
            "clock": clock,
        }
        options.update(overrides)
        actuator = ZoneActuator(**options)
        actuator.initialize()
        return actuator

    return _build


@pytest.fixture
def hub_settings(tmp_path: Path, settings_override: Callable[..., None]) -> None:
    settings_override(
        hardware_backend="simulated",
        zone_count=4,
        adc_channels=[0, 1, 2, 3],
        zone_settings_path=str(tmp_path / "data" / "settings.json"),
        actuator_state_path=str(tmp_path / "data" / "actuator_state.json"),
        history_db=str(tmp_path / "data" / "history.sqlite"),
        sensor_sample_delay_ms=0.0,
        sensor_channel_delay_ms=0.0,
        notify_webhook_url=None,
        max_daily_manual_waterings=None,
        manual_cooldown_seconds=300.0,
    )
    yield


@pytest.fixture
def client(hub_settings: None) -> TestClient:
    app = create_app(run_checks=False)
    with TestClient(app) as test_client:
        yield test_client
