"""
Probe Flasher - STM32 UART Bootloader Flashing
==============================================

This package flashes firmware onto STM32 microcontrollers through the
ROM bootloader's UART protocol (ST AN3155). It toggles the adapter's DTR
and RTS lines to reset the target into the bootloader, writes an Intel
HEX image and starts the application.

Main Components
---------------
- **comms**: Bootloader protocol engine
    Framing, boot mode sequencing, command set and the session orchestrator

- **image**: Firmware image handling
    Intel HEX parsing, segment merging and write planning

- **config**: Session settings
    Defaults, environment variables, CLI overrides

Quick Start
-----------
Flash a file:
    >>> from probe_flasher import flash
    >>> result = flash("/dev/ttyUSB0", "firmware.hex", boot_mode="dtr-low-rts-high")
    >>> result.ok, result.duration_ms

Identify the bootloader:
    >>> from probe_flasher import identify
    >>> info = identify("COM5")
    >>> hex(info.product_id)

Follow progress from a worker thread:
    >>> import queue, threading
    >>> events = queue.Queue()
    >>> threading.Thread(
    ...     target=flash, args=("COM5", "firmware.hex"), kwargs={"sink": events.put}
    ... ).start()

Or use the command-line tool:
    $ probe-flasher ports
    $ probe-flasher -p /dev/ttyUSB0 identify
    $ probe-flasher -p /dev/ttyUSB0 flash firmware.hex

Reference Documentation
-----------------------
- ST AN3155: USART protocol used in the STM32 bootloader
- ST AN2606: STM32 system memory boot mode
"""

__version__ = "0.1.0"

# =============================================================================
# Public API Exports
# =============================================================================

from probe_flasher.errors import (
    ErrorKind,
    FlasherError,
    CommsError,
    LinkUnavailable,
    PortBusy,
    HandshakeTimeout,
    ProtocolRejected,
    UnexpectedResponse,
    CommandTimeout,
    UnsupportedOperation,
    VerifyError,
    ImageError,
    ImageUnavailable,
    HexParseError,
    OverlapError,
)

from probe_flasher.config import FlashConfig

from probe_flasher.comms.boot import BootMode

from probe_flasher.comms.session import (
    Done,
    Failed,
    FlashResult,
    FlashSession,
    IdentifyResult,
    LogEvent,
    ProgressEvent,
    SessionState,
    flash,
    identify,
    list_ports,
)

from probe_flasher.image import (
    FirmwareImage,
    MemorySegment,
    WriteChunk,
    build_image,
    load_hex_file,
    plan_chunks,
)

__all__ = [
    # Version info
    "__version__",
    # Exception hierarchy
    "ErrorKind",
    "FlasherError",
    "CommsError",
    "LinkUnavailable",
    "PortBusy",
    "HandshakeTimeout",
    "ProtocolRejected",
    "UnexpectedResponse",
    "CommandTimeout",
    "UnsupportedOperation",
    "VerifyError",
    "ImageError",
    "ImageUnavailable",
    "HexParseError",
    "OverlapError",
    # Configuration
    "FlashConfig",
    "BootMode",
    # Sessions
    "Done",
    "Failed",
    "FlashResult",
    "FlashSession",
    "IdentifyResult",
    "LogEvent",
    "ProgressEvent",
    "SessionState",
    "flash",
    "identify",
    "list_ports",
    # Images
    "FirmwareImage",
    "MemorySegment",
    "WriteChunk",
    "build_image",
    "load_hex_file",
    "plan_chunks",
]
