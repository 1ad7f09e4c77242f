"""Tests for configuration settings."""
import pytest

from tipsync.config import DATA_DIR, DEFAULT_UNITS, Settings, SyncSettings, settings


def test_data_directory_exists():
    """Test that the data directory is created."""
    assert DATA_DIR.exists()


def test_settings_defaults():
    """Test default settings values."""
    sync = SyncSettings()
    assert sync.timer_enabled is True
    assert sync.timer_duration == 900
    assert sync.snooze_duration == 300
    assert sync.timer_debounce == 0.5
    assert settings.paths.timer_state_file.parent == DATA_DIR
    assert "mg" in DEFAULT_UNITS
    assert len(set(DEFAULT_UNITS)) == len(DEFAULT_UNITS)


@pytest.mark.parametrize(
    "overrides",
    [
        {"timer_duration": 0},
        {"snooze_duration": -1},
        {"timer_debounce": -0.1},
        {"retry_interval": 0},
        {"timezone": "Mars/Olympus_Mons"},
    ],
)
def test_invalid_settings_are_rejected(overrides):
    with pytest.raises(ValueError):
        Settings(sync=SyncSettings(**overrides)).validate()


def test_valid_timezone():
    Settings(sync=SyncSettings(timezone="UTC")).validate()


if __name__ == "__main__":
    pytest.main([__file__])
