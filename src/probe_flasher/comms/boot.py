"""
Boot Mode Entry Sequencer
=========================

STM32 parts enter the ROM bootloader when BOOT0 is high while the chip
comes out of reset. USB-serial adapters expose two spare modem-control
outputs, DTR and RTS, and boards wire them to NRST and BOOT0 in several
different ways. This module turns the wiring convention, selected by
name, into timed line changes.

Wiring Conventions
------------------
Each BootMode names the line that drives reset and the level that holds
the target in reset, followed by the line and level that select the
bootloader:

    dtr-low-rts-high    DTR low = reset,  RTS high = boot (FlyMcu default)
    dtr-high-rts-high   DTR high = reset, RTS high = boot
    dtr-high-rts-low    DTR high = reset, RTS low = boot
    dtr-high-only       DTR high = reset, BOOT0 strapped on the board
    rts-low-dtr-high    RTS low = reset,  DTR high = boot
    rts-low-dtr-low     RTS low = reset,  DTR low = boot
    rts-low-only        RTS low = reset,  BOOT0 strapped
    rts-high-only       RTS high = reset, BOOT0 strapped
    none                no line changes; the operator sets up the target

Levels are the pyserial signal state (``port.dtr = True`` is HIGH here),
not the electrical level at the connector, which adapters usually invert.

Sequences
---------
The modes are data. Every mode's entry and exit sequence is computed by
the same two functions from its BootModeConfig, and one BootSequencer
plays any sequence:

    enter:  reset idle, boot idle  ──hold idle_delay──►
            boot select            ──hold select_delay──►
            reset active           ──hold settle_delay──►
            reset idle             ──hold startup_delay──►  (boot stays selected)

    leave:  boot idle              ──hold select_delay──►
            reset active           ──hold settle_delay──►
            reset idle             ──hold startup_delay──►
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Final, Optional

from probe_flasher.comms.serial import Transport

logger = logging.getLogger(__name__)


# =============================================================================
# Line Definitions
# =============================================================================

class Line(str, Enum):
    """Modem-control output lines."""

    DTR = "dtr"
    RTS = "rts"


class Level(IntEnum):
    """Signal state written to a control line."""

    LOW = 0
    HIGH = 1

    def inverted(self) -> "Level":
        return Level.HIGH if self == Level.LOW else Level.LOW


@dataclass(frozen=True)
class LineStep:
    """
    One step of a line sequence: drive a line, then wait.

    Attributes:
        line: Line to drive
        level: Level to drive it to
        hold: Seconds to wait after the change (0 for none)
    """

    line: Line
    level: Level
    hold: float = 0.0

    def __str__(self) -> str:
        return f"{self.line.name}={self.level.name} hold {self.hold * 1000:.0f}ms"


# =============================================================================
# Boot Modes
# =============================================================================

class BootMode(str, Enum):
    """Named wiring conventions for reset and boot-select lines."""

    NONE = "none"
    DTR_LOW_RTS_HIGH = "dtr-low-rts-high"
    DTR_HIGH_RTS_HIGH = "dtr-high-rts-high"
    DTR_HIGH_RTS_LOW = "dtr-high-rts-low"
    DTR_HIGH_ONLY = "dtr-high-only"
    RTS_LOW_DTR_HIGH = "rts-low-dtr-high"
    RTS_LOW_DTR_LOW = "rts-low-dtr-low"
    RTS_LOW_ONLY = "rts-low-only"
    RTS_HIGH_ONLY = "rts-high-only"

    @classmethod
    def parse(cls, name: str) -> "BootMode":
        """
        Look up a mode by its dashed name.

        Raises:
            ValueError: For unknown names, listing the valid ones.
        """
        try:
            return cls(name.strip().lower().replace("_", "-"))
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown boot mode: {name!r}. Valid modes: {valid}") from None


# Default delays (seconds)
IDLE_DELAY: Final[float] = 0.100
SELECT_DELAY: Final[float] = 0.050
SETTLE_DELAY: Final[float] = 0.100
STARTUP_DELAY: Final[float] = 0.200


@dataclass(frozen=True)
class BootModeConfig:
    """
    Immutable description of one wiring convention.

    Attributes:
        mode: The BootMode this config describes
        reset_line: Line wired to NRST (None for BootMode.NONE)
        reset_level: Level that holds the target in reset
        boot_line: Line wired to BOOT0 (None when BOOT0 is strapped)
        boot_level: Level that selects the bootloader
        idle_delay: Hold after driving both lines idle
        select_delay: Hold after changing boot-select
        settle_delay: How long reset is held active
        startup_delay: Wait after releasing reset for the boot ROM to start
    """

    mode: BootMode
    reset_line: Optional[Line] = None
    reset_level: Level = Level.LOW
    boot_line: Optional[Line] = None
    boot_level: Level = Level.HIGH
    idle_delay: float = IDLE_DELAY
    select_delay: float = SELECT_DELAY
    settle_delay: float = SETTLE_DELAY
    startup_delay: float = STARTUP_DELAY

    @property
    def drives_lines(self) -> bool:
        return self.reset_line is not None

    @property
    def drives_boot_select(self) -> bool:
        return self.boot_line is not None

    def entry_steps(self) -> tuple[LineStep, ...]:
        """Sequence that resets the target into the bootloader."""
        if self.reset_line is None:
            return ()

        steps = [LineStep(self.reset_line, self.reset_level.inverted())]
        if self.boot_line is not None:
            steps.append(LineStep(self.boot_line, self.boot_level.inverted()))
        steps[-1] = LineStep(steps[-1].line, steps[-1].level, self.idle_delay)

        if self.boot_line is not None:
            steps.append(LineStep(self.boot_line, self.boot_level, self.select_delay))

        steps.extend(self._reset_pulse())
        return tuple(steps)

    def exit_steps(self) -> tuple[LineStep, ...]:
        """Sequence that resets the target into its application."""
        if self.reset_line is None:
            return ()

        steps = []
        if self.boot_line is not None:
            steps.append(
                LineStep(self.boot_line, self.boot_level.inverted(), self.select_delay)
            )
        steps.extend(self._reset_pulse())
        return tuple(steps)

    def _reset_pulse(self) -> list[LineStep]:
        return [
            LineStep(self.reset_line, self.reset_level, self.settle_delay),
            LineStep(self.reset_line, self.reset_level.inverted(), self.startup_delay),
        ]


BOOT_MODES: Final[dict[BootMode, BootModeConfig]] = {
    BootMode.NONE: BootModeConfig(BootMode.NONE),
    BootMode.DTR_LOW_RTS_HIGH: BootModeConfig(
        BootMode.DTR_LOW_RTS_HIGH, Line.DTR, Level.LOW, Line.RTS, Level.HIGH
    ),
    BootMode.DTR_HIGH_RTS_HIGH: BootModeConfig(
        BootMode.DTR_HIGH_RTS_HIGH, Line.DTR, Level.HIGH, Line.RTS, Level.HIGH
    ),
    BootMode.DTR_HIGH_RTS_LOW: BootModeConfig(
        BootMode.DTR_HIGH_RTS_LOW, Line.DTR, Level.HIGH, Line.RTS, Level.LOW
    ),
    BootMode.DTR_HIGH_ONLY: BootModeConfig(
        BootMode.DTR_HIGH_ONLY, Line.DTR, Level.HIGH
    ),
    BootMode.RTS_LOW_DTR_HIGH: BootModeConfig(
        BootMode.RTS_LOW_DTR_HIGH, Line.RTS, Level.LOW, Line.DTR, Level.HIGH
    ),
    BootMode.RTS_LOW_DTR_LOW: BootModeConfig(
        BootMode.RTS_LOW_DTR_LOW, Line.RTS, Level.LOW, Line.DTR, Level.LOW
    ),
    BootMode.RTS_LOW_ONLY: BootModeConfig(
        BootMode.RTS_LOW_ONLY, Line.RTS, Level.LOW
    ),
    BootMode.RTS_HIGH_ONLY: BootModeConfig(
        BootMode.RTS_HIGH_ONLY, Line.RTS, Level.HIGH
    ),
}

# Mode used when none is given; matches the FlyMcu wiring
DEFAULT_BOOT_MODE: Final[BootMode] = BootMode.DTR_LOW_RTS_HIGH


def get_boot_config(mode: "BootMode | str") -> BootModeConfig:
    """Return the BootModeConfig for a mode or mode name."""
    if not isinstance(mode, BootMode):
        mode = BootMode.parse(mode)
    return BOOT_MODES[mode]


# =============================================================================
# Sequencer
# =============================================================================

class BootSequencer:
    """
    Plays boot-mode line sequences on a Transport.

    The sequencer never retries. If the target does not answer the
    handshake afterwards, the session fails.
    """

    def __init__(self, transport: Transport, config: BootModeConfig):
        self.transport = transport
        self.config = config

    def enter_bootloader(self) -> None:
        """Reset the target with boot-select asserted."""
        if not self.config.drives_lines:
            logger.info("Boot mode 'none': expecting the target to be in bootloader already")
            return
        logger.info("Entering bootloader (%s)", self.config.mode.value)
        self._play(self.config.entry_steps())

    def leave_bootloader(self) -> None:
        """Reset the target with boot-select released so the application runs."""
        if not self.config.drives_lines:
            logger.debug("Boot mode 'none': no reset line to pulse")
            return
        logger.info("Resetting target into application (%s)", self.config.mode.value)
        self._play(self.config.exit_steps())

    def release_boot_select(self) -> None:
        """
        Drive boot-select to its idle level without resetting.

        Used after a GO command so the next hardware reset starts the
        application rather than the bootloader.
        """
        if self.config.boot_line is None:
            return
        self._play((LineStep(self.config.boot_line, self.config.boot_level.inverted()),))

    def _play(self, steps: tuple[LineStep, ...]) -> None:
        for step in steps:
            logger.debug("Line step: %s", step)
            if step.line == Line.DTR:
                self.transport.set_dtr(bool(step.level))
            else:
                self.transport.set_rts(bool(step.level))
            if step.hold > 0:
                time.sleep(step.hold)
