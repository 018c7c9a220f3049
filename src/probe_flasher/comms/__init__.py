"""
Bootloader Communication
========================

This package talks to the STM32 ROM bootloader over a UART link
(ST AN3155) and drives the DTR/RTS lines that put the target into
bootloader mode.

Module Structure
----------------
- **checksum**: Command complements and XOR checksums
- **serial**: Port enumeration, exclusive port ownership, SerialLink
- **link**: Framing, ACK/NACK handling, timeouts and retries
- **boot**: Boot mode table and the DTR/RTS sequencer
- **commands**: The bootloader command set (GET, ERASE, WRITE, GO, ...)
- **session**: Complete identify/flash operations with progress events

Layering
--------
    session ─► commands ─► link ─► Transport (SerialLink or a test double)
       └─────► boot ──────────────►┘

Quick Start
-----------
Low-level use, without the session orchestrator:

    from probe_flasher.comms import (
        Bootloader, BootloaderLink, BootSequencer, SerialLink, get_boot_config,
    )

    transport = SerialLink.open('/dev/ttyUSB0', baud_rate=115200)
    try:
        BootSequencer(transport, get_boot_config("dtr-low-rts-high")).enter_bootloader()
        bootloader = Bootloader(BootloaderLink(transport))
        bootloader.synchronize()
        print(bootloader.identify())
    finally:
        transport.close()

For complete operations use probe_flasher.comms.session (imported
separately, since it depends on probe_flasher.config).

Thread Safety
-------------
The classes here are NOT thread-safe. One session owns one port; run
sessions for different ports on separate threads.
"""

# =============================================================================
# Public API Exports
# =============================================================================

# Checksums
from probe_flasher.comms.checksum import (
    COMMAND_CHECK,
    complement,
    encode_address,
    frame_command,
    frame_with_checksum,
    verify_checksum,
    verify_command,
    xor_checksum,
)

# Serial port utilities
from probe_flasher.comms.serial import (
    DEFAULT_BAUD_RATE,
    VALID_BAUD_RATES,
    PortInfo,
    SerialLink,
    Transport,
    claim_port,
    close_serial_port,
    find_usb_serial_port,
    format_port_list,
    is_port_claimed,
    list_serial_ports,
    open_serial_port,
)

# Framing layer
from probe_flasher.comms.link import (
    SYNC_BYTE,
    BootloaderLink,
    Reply,
    TraceSink,
)

# Boot entry
from probe_flasher.comms.boot import (
    BOOT_MODES,
    DEFAULT_BOOT_MODE,
    BootMode,
    BootModeConfig,
    BootSequencer,
    Level,
    Line,
    LineStep,
    get_boot_config,
)

# Command engine
from probe_flasher.comms.commands import (
    CHIP_IDS,
    MAX_TRANSFER_SIZE,
    WRITE_GRANULARITY,
    Bootloader,
    BootloaderInfo,
    Command,
    EraseTarget,
    MassErase,
    SectorRange,
    check_write_support,
)

__all__ = [
    # Checksums
    "COMMAND_CHECK",
    "complement",
    "encode_address",
    "frame_command",
    "frame_with_checksum",
    "verify_checksum",
    "verify_command",
    "xor_checksum",
    # Serial
    "DEFAULT_BAUD_RATE",
    "VALID_BAUD_RATES",
    "PortInfo",
    "SerialLink",
    "Transport",
    "claim_port",
    "close_serial_port",
    "find_usb_serial_port",
    "format_port_list",
    "is_port_claimed",
    "list_serial_ports",
    "open_serial_port",
    # Framing
    "SYNC_BYTE",
    "BootloaderLink",
    "Reply",
    "TraceSink",
    # Boot entry
    "BOOT_MODES",
    "DEFAULT_BOOT_MODE",
    "BootMode",
    "BootModeConfig",
    "BootSequencer",
    "Level",
    "Line",
    "LineStep",
    "get_boot_config",
    # Commands
    "CHIP_IDS",
    "MAX_TRANSFER_SIZE",
    "WRITE_GRANULARITY",
    "Bootloader",
    "BootloaderInfo",
    "Command",
    "EraseTarget",
    "MassErase",
    "SectorRange",
    "check_write_support",
]
