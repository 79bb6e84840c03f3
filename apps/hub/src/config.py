from pathlib import Path
from typing import List, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Load apps/hub/.env and accept env keys in any case
    _env_file = Path(__file__).resolve().parent.parent / ".env"
    model_config = SettingsConfigDict(env_file=str(_env_file), extra="ignore", case_sensitive=False)

    app_name: str = "Irrigation Hub"
    app_version: str = "0.1.0"
    debug: bool = True
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    port: int = 8000

    # Hardware
    hardware_backend: Literal["simulated", "gpio"] = Field(
        default="simulated",
        description="Relay/ADC backend. 'gpio' drives real pins through gpiozero and smbus2.",
    )
    zone_count: int = Field(default=4, ge=1, le=16, description="Fixed number of irrigation zones.")
    relay_pins: List[int] = Field(default_factory=lambda: [17, 27, 22, 23])
    relay_active_high: bool = Field(default=False, description="Relay boards in use are active-LOW.")
    adc_channels: List[int] = Field(default_factory=lambda: [0, 1, 2, 3])
    adc_i2c_bus: int = Field(default=1, ge=0)
    adc_address: int = Field(default=0x48, ge=0x03, le=0x77)

    # Watering limits
    watering_duration_ms: int = Field(default=10_000, gt=0, description="Default manual watering duration.")
    manual_cooldown_seconds: float = Field(
        default=300.0,
        ge=0.0,
        description="Minimum interval between manual watering starts for one zone.",
    )
    max_daily_manual_waterings: int | None = Field(
        default=None,
        ge=1,
        description="Optional cap on manual starts per zone per day. Scheduled and moisture starts are exempt.",
    )

    # Moisture calibration in raw ADC units; capacitive sensors read lower when wetter
    moisture_threshold_air: float = 27_800.0
    moisture_threshold_dry: float = 19_000.0
    moisture_threshold_moist: float = 13_000.0
    moisture_threshold_wet: float = 5_000.0
    moisture_threshold_water: float = 0.0

    # Sensor sampling
    sensor_attempts: int = Field(default=5, ge=1, le=50)
    sensor_sample_delay_ms: float = Field(default=50.0, ge=0.0)
    sensor_channel_delay_ms: float = Field(default=100.0, ge=0.0)
    sensor_outlier_tolerance: float = Field(default=3_000.0, gt=0.0)
    sensor_outlier_max_fraction: float = Field(default=0.4, ge=0.0, le=1.0)

    # Decision engine
    moisture_check_interval_seconds: float = Field(default=900.0, ge=5.0, description="Every 15 minutes.")
    moisture_initial_delay_seconds: float = Field(default=30.0, ge=0.0)
    moisture_hysteresis_window: int = Field(default=3, ge=1, le=20)

    daily_reset_poll_seconds: float = Field(default=60.0, ge=1.0)
    time_zone: str | None = Field(
        default=None,
        description="IANA zone for schedules, e.g. Europe/Berlin. Unset means the host clock.",
    )

    # Persistence
    zone_settings_path: str = Field(default="data/settings.json", description="JSON file with zone configuration.")
    actuator_state_path: str = Field(
        default="data/actuator_state.json",
        description="JSON snapshot of per-zone actuator counters.",
    )
    history_db: str = Field(default="data/history.sqlite", description="SQLite database for watering history.")
    history_max_rows: int = Field(default=1000, ge=10)

    # Notifications
    notify_webhook_url: str | None = Field(
        default=None,
        description="Optional webhook endpoint that receives watering and alert events as JSON.",
    )
    notify_timeout: float = Field(default=5.0, ge=0.5)
    notify_history_limit: int = Field(default=200, ge=10)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def normalize_cors(cls, v):
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("["):
                import json
                return json.loads(s)
            if s in ("", "*"):
                return ["*"]
            return [p.strip() for p in s.split(",")]
        return v

    @field_validator("relay_pins", "adc_channels", mode="before")
    @classmethod
    def normalize_int_list(cls, v):
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("["):
                import json
                return json.loads(s)
            return [int(p.strip()) for p in s.split(",") if p.strip()]
        return v

    @field_validator("time_zone")
    @classmethod
    def check_time_zone(cls, v):
        if v is None or not v.strip():
            return None
        try:
            ZoneInfo(v.strip())
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown time zone {v!r}") from exc
        return v.strip()

settings = Settings()
