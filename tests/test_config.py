"""
Tests for Session Configuration
===============================

Defaults, validation, environment variables and command-line overrides.
"""

import pytest

from probe_flasher.comms.boot import BootMode
from probe_flasher.config import ENV_PREFIX, FlashConfig


class TestDefaults:
    """Tests for default settings."""

    def test_defaults(self):
        config = FlashConfig()
        assert config.baud_rate == 115200
        assert config.boot_mode is BootMode.DTR_LOW_RTS_HIGH
        assert config.read_timeout == 0.8
        assert config.erase_timeout == 25.0
        assert config.command_attempts == 3
        assert config.handshake_attempts == 3
        assert config.erase_mode == "mass"
        assert config.flash_base == 0x08000000
        assert config.max_chunk_size == 256
        assert config.verify is False
        assert config.reset_after is True
        assert config.start_address is None

    def test_boot_mode_from_string(self):
        assert FlashConfig(boot_mode="rts-low-only").boot_mode is BootMode.RTS_LOW_ONLY

    def test_describe(self):
        described = FlashConfig().describe()
        assert described["baud_rate"] == 115200
        assert "identify_required" in described


class TestValidation:
    """Tests for setting validation."""

    @pytest.mark.parametrize("overrides", [
        {"baud_rate": 12345},
        {"boot_mode": "sideways"},
        {"erase_mode": "pages"},
        {"read_timeout": 0},
        {"erase_timeout": -1.0},
        {"command_attempts": 0},
        {"handshake_attempts": 0},
        {"page_size": 0},
        {"max_chunk_size": 258},
        {"max_chunk_size": 6},
        {"start_address": -1},
        {"start_address": 0x1_0000_0000},
    ])
    def test_invalid_settings(self, overrides):
        with pytest.raises(ValueError):
            FlashConfig(**overrides)

    def test_overrides_ignore_none(self):
        """None means 'not given' and keeps the current value."""
        config = FlashConfig(baud_rate=9600)
        updated = config.with_overrides(baud_rate=None, verify=True, boot_mode="none")
        assert updated.baud_rate == 9600
        assert updated.verify is True
        assert updated.boot_mode is BootMode.NONE
        assert config.verify is False

    def test_overrides_are_validated(self):
        with pytest.raises(ValueError):
            FlashConfig().with_overrides(erase_mode="everything")

    def test_start_address_limits(self):
        assert FlashConfig(start_address=0).start_address == 0
        assert FlashConfig(start_address=0xFFFFFFFF).start_address == 0xFFFFFFFF
        with pytest.raises(ValueError, match="Start address"):
            FlashConfig().with_overrides(start_address=-4)


class TestFromEnv:
    """Tests for environment variables."""

    def test_empty_environment(self):
        assert FlashConfig.from_env({}) == FlashConfig()

    def test_values(self):
        env = {
            ENV_PREFIX + "BAUD": "57600",
            ENV_PREFIX + "BOOT_MODE": "RTS_LOW_DTR_HIGH",
            ENV_PREFIX + "READ_TIMEOUT": "1.5",
            ENV_PREFIX + "ERASE_TIMEOUT": "40",
            ENV_PREFIX + "ATTEMPTS": "5",
            ENV_PREFIX + "HANDSHAKE_ATTEMPTS": "4",
            ENV_PREFIX + "ERASE_MODE": "Sectors",
            ENV_PREFIX + "FLASH_BASE": "0x08004000",
            ENV_PREFIX + "PAGE_SIZE": "2048",
            ENV_PREFIX + "VERIFY": "yes",
            ENV_PREFIX + "IDENTIFY_REQUIRED": "1",
        }
        config = FlashConfig.from_env(env)
        assert config.baud_rate == 57600
        assert config.boot_mode is BootMode.RTS_LOW_DTR_HIGH
        assert config.read_timeout == 1.5
        assert config.erase_timeout == 40.0
        assert config.command_attempts == 5
        assert config.handshake_attempts == 4
        assert config.erase_mode == "sectors"
        assert config.flash_base == 0x08004000
        assert config.page_size == 2048
        assert config.verify is True
        assert config.identify_required is True

    def test_invalid_values_are_ignored(self, caplog):
        """Bad values are logged and the default is kept."""
        env = {
            ENV_PREFIX + "BAUD": "fast",
            ENV_PREFIX + "BOOT_MODE": "sideways",
            ENV_PREFIX + "VERIFY": "maybe",
            ENV_PREFIX + "PAGE_SIZE": "2048",
        }
        config = FlashConfig.from_env(env)
        assert config.baud_rate == 115200
        assert config.boot_mode is BootMode.DTR_LOW_RTS_HIGH
        assert config.verify is False
        assert config.page_size == 2048
        assert "PROBE_FLASHER_BAUD" in caplog.text
        assert "PROBE_FLASHER_VERIFY" in caplog.text

    def test_out_of_range_value_is_ignored(self):
        """Values that fail validation are dropped like unparsable ones."""
        config = FlashConfig.from_env({ENV_PREFIX + "BAUD": "12345"})
        assert config.baud_rate == 115200

    def test_reads_os_environ(self, monkeypatch):
        monkeypatch.setenv(ENV_PREFIX + "ERASE_MODE", "sectors")
        assert FlashConfig.from_env().erase_mode == "sectors"
