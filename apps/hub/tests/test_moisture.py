import pytest

from services.moisture import MoistureThresholds, classify


@pytest.mark.parametrize(
    ("raw", "percent", "status"),
    [
        (30_000.0, 0, "air"),
        (23_400.0, 15, "dry"),
        (19_000.0, 31, "moist"),
        (16_000.0, 51, "moist"),
        (9_000.0, 81, "wet"),
        (5_000.0, 91, "water"),
        (0.0, 100, "water"),
    ],
)
def test_classify_bands(raw: float, percent: int, status: str) -> None:
    result = classify(raw)
    assert result.percent == percent
    assert result.status == status


def test_classify_clamps_below_water_threshold() -> None:
    result = classify(-2_500.0)
    assert result.percent == 100
    assert result.status == "water"


def test_classify_is_monotonic_as_soil_gets_wetter() -> None:
    previous = -1
    for raw in range(32_000, -1_000, -250):
        percent = classify(float(raw)).percent
        assert 0 <= percent <= 100
        assert percent >= previous
        previous = percent


def test_custom_thresholds_shift_bands() -> None:
    thresholds = MoistureThresholds(air=2_000.0, dry=1_500.0, moist=1_000.0, wet=500.0, water=0.0)
    assert classify(1_750.0, thresholds).status == "dry"
    assert classify(1_200.0, thresholds).status == "moist"


def test_thresholds_must_decrease() -> None:
    with pytest.raises(ValueError):
        MoistureThresholds(air=10_000.0, dry=19_000.0)
