"""
Probe Flasher - Configuration
=============================

Session settings: serial parameters, timing, retry counts and flashing
policy. Configuration can come from:
- Default values (defined here)
- Environment variables (FlashConfig.from_env)
- Command-line options (FlashConfig.with_overrides)

Timing values are in seconds. The defaults match the STM32 ROM
bootloader on a 115200 baud link:
- 0.8 s per reply (enough for a 256 byte write at 9600 baud)
- 25 s for a mass erase of 1 MiB parts
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from typing import Any, Optional

from probe_flasher.comms.boot import DEFAULT_BOOT_MODE, BootMode
from probe_flasher.comms.commands import DEFAULT_ERASE_TIMEOUT, MAX_TRANSFER_SIZE
from probe_flasher.comms.link import DEFAULT_ATTEMPTS, DEFAULT_TIMEOUT
from probe_flasher.comms.serial import DEFAULT_BAUD_RATE, VALID_BAUD_RATES
from probe_flasher.image.builder import DEFAULT_FLASH_BASE, DEFAULT_PAGE_SIZE

logger = logging.getLogger(__name__)

ERASE_MODES = ("mass", "sectors")

ENV_PREFIX = "PROBE_FLASHER_"


@dataclass
class FlashConfig:
    """
    Settings for one identify or flash session.

    Attributes:
        baud_rate: Serial speed (default: 115200)
        boot_mode: DTR/RTS wiring convention (default: dtr-low-rts-high)
        read_timeout: Seconds to wait for each reply (default: 0.8)
        erase_timeout: Seconds to wait for an erase to finish (default: 25)
        command_attempts: Transmissions of a frame that gets no reply (default: 3)
        handshake_attempts: Sync byte attempts after reset (default: 3)
        erase_mode: "mass" or "sectors" (default: "mass")
        flash_base: Address of flash page 0 (default: 0x08000000)
        page_size: Flash page size for sector erase (default: 1024)
        max_chunk_size: Largest WRITE_MEMORY payload (default: 256)
        verify: Read back and compare after writing (default: False)
        reset_after: Start the application after flashing (default: True)
        start_address: GO address; None uses the image base (default: None)
        identify_required: Fail a flash when identification fails (default: False)
    """

    # Serial link
    baud_rate: int = DEFAULT_BAUD_RATE
    boot_mode: BootMode = DEFAULT_BOOT_MODE

    # Timing and retries
    read_timeout: float = DEFAULT_TIMEOUT
    erase_timeout: float = DEFAULT_ERASE_TIMEOUT
    command_attempts: int = DEFAULT_ATTEMPTS
    handshake_attempts: int = DEFAULT_ATTEMPTS

    # Flashing policy
    erase_mode: str = "mass"
    flash_base: int = DEFAULT_FLASH_BASE
    page_size: int = DEFAULT_PAGE_SIZE
    max_chunk_size: int = MAX_TRANSFER_SIZE
    verify: bool = False
    reset_after: bool = True
    start_address: Optional[int] = None
    identify_required: bool = False

    def __post_init__(self):
        if not isinstance(self.boot_mode, BootMode):
            self.boot_mode = BootMode.parse(self.boot_mode)
        self.validate()

    def validate(self) -> None:
        """
        Check values that would only fail later, on the hardware.

        Raises:
            ValueError: Describing the first invalid setting.
        """
        if self.baud_rate not in VALID_BAUD_RATES:
            raise ValueError(f"Invalid baud rate: {self.baud_rate}")
        if self.erase_mode not in ERASE_MODES:
            raise ValueError(
                f"Invalid erase mode: {self.erase_mode!r} (use {' or '.join(ERASE_MODES)})"
            )
        if self.read_timeout <= 0 or self.erase_timeout <= 0:
            raise ValueError("Timeouts must be positive")
        if self.command_attempts < 1 or self.handshake_attempts < 1:
            raise ValueError("Attempt counts must be at least 1")
        if self.page_size <= 0:
            raise ValueError("Page size must be positive")
        if not 4 <= self.max_chunk_size <= MAX_TRANSFER_SIZE or self.max_chunk_size % 4:
            raise ValueError(
                f"Chunk size must be a multiple of 4 between 4 and {MAX_TRANSFER_SIZE}"
            )
        if self.start_address is not None and not 0 <= self.start_address <= 0xFFFFFFFF:
            raise ValueError(f"Start address out of range: {self.start_address:#x}")

    def with_overrides(self, **overrides: Any) -> "FlashConfig":
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    # ═══════════════════════════════════════════════════════════════════════════
    # FACTORY METHODS
    # ═══════════════════════════════════════════════════════════════════════════

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "FlashConfig":
        """
        Create FlashConfig from environment variables.

        Environment variables (all optional):
            PROBE_FLASHER_BAUD: Baud rate (integer)
            PROBE_FLASHER_BOOT_MODE: Boot mode name (e.g. "rts-low-dtr-high")
            PROBE_FLASHER_READ_TIMEOUT: Reply timeout in seconds
            PROBE_FLASHER_ERASE_TIMEOUT: Erase timeout in seconds
            PROBE_FLASHER_ATTEMPTS: Command attempts
            PROBE_FLASHER_HANDSHAKE_ATTEMPTS: Sync byte attempts
            PROBE_FLASHER_ERASE_MODE: "mass" or "sectors"
            PROBE_FLASHER_FLASH_BASE: Flash base address (0x prefix allowed)
            PROBE_FLASHER_PAGE_SIZE: Flash page size in bytes
            PROBE_FLASHER_VERIFY: "1"/"true"/"yes" to verify after writing
            PROBE_FLASHER_IDENTIFY_REQUIRED: "1"/"true"/"yes" to require identify

        Invalid values are logged and ignored.

        Returns:
            FlashConfig with values from environment variables
        """
        env = os.environ if environ is None else environ
        config = cls()

        parsers = {
            "BAUD": ("baud_rate", int),
            "BOOT_MODE": ("boot_mode", BootMode.parse),
            "READ_TIMEOUT": ("read_timeout", float),
            "ERASE_TIMEOUT": ("erase_timeout", float),
            "ATTEMPTS": ("command_attempts", int),
            "HANDSHAKE_ATTEMPTS": ("handshake_attempts", int),
            "ERASE_MODE": ("erase_mode", str.lower),
            "FLASH_BASE": ("flash_base", _parse_int),
            "PAGE_SIZE": ("page_size", _parse_int),
            "VERIFY": ("verify", _parse_bool),
            "IDENTIFY_REQUIRED": ("identify_required", _parse_bool),
        }

        for suffix, (attr, parse) in parsers.items():
            if raw := env.get(ENV_PREFIX + suffix):
                try:
                    config = replace(config, **{attr: parse(raw.strip())})
                except ValueError as e:
                    logger.warning("Ignoring %s%s=%r: %s", ENV_PREFIX, suffix, raw, e)

        return config

    def describe(self) -> dict[str, Any]:
        """Settings as a plain dict, logged at DEBUG when a session connects."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _parse_int(text: str) -> int:
    return int(text, 0)


def _parse_bool(text: str) -> bool:
    value = text.lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {text!r}")
