"""
Serial Port Utilities for the UART Bootloader
==============================================

This module owns everything that touches the physical serial port:

- Port enumeration and detection of likely USB-serial adapters
- Opening the port with the settings the ROM bootloader expects
- Exclusive ownership of a port for the duration of one session
- The Transport protocol the bootloader engine is written against

Serial Port Settings
--------------------
The STM32 system memory bootloader (ST AN3155) detects the baud rate from
the first sync byte and then expects:
- Baud Rate: 1200 to 115200
- Data Bits: 8
- Parity: Even
- Stop Bits: 1
- Flow Control: None (DTR/RTS are driven by hand for reset/boot select)

Transport Abstraction
---------------------
The protocol code never calls pyserial directly. It talks to a Transport:
anything with write/read/set_dtr/set_rts/reset_input_buffer/close. The
SerialLink class is the pyserial-backed implementation; the test suite
supplies a simulated bootloader with the same methods.
"""

import logging
import platform
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Final, Iterator, Optional, Protocol

import serial
import serial.tools.list_ports

from probe_flasher.errors import LinkUnavailable, PortBusy

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Baud rates accepted by the bootloader's auto-baud detection
VALID_BAUD_RATES: Final[tuple[int, ...]] = (
    1200, 2400, 4800, 9600, 14400, 19200, 38400, 57600, 115200,
)

# Default baud rate
DEFAULT_BAUD_RATE: Final[int] = 115200

# Default read timeout in seconds
DEFAULT_TIMEOUT: Final[float] = 0.8

# USB Vendor IDs for common USB-serial adapters
USB_VENDOR_IDS: Final[dict[int, str]] = {
    0x0403: "FTDI",          # Future Technology Devices International
    0x10C4: "Silicon Labs",  # Silicon Labs CP210x
    0x067B: "Prolific",      # Prolific Technology
    0x1A86: "QinHeng",       # QinHeng Electronics (CH340/CH343)
    0x0483: "STMicroelectronics",  # ST-LINK virtual COM port
}


# =============================================================================
# Transport Protocol
# =============================================================================

class Transport(Protocol):
    """
    Byte-level capability set required by the bootloader engine.

    ``read`` returns fewer than ``size`` bytes (possibly none) when the
    timeout expires; it never raises for a timeout.
    """

    def write(self, data: bytes) -> None: ...

    def read(self, size: int, timeout: float) -> bytes: ...

    def set_dtr(self, level: bool) -> None: ...

    def set_rts(self, level: bool) -> None: ...

    def reset_input_buffer(self) -> None: ...

    def close(self) -> None: ...


# =============================================================================
# Port Information
# =============================================================================

@dataclass(frozen=True)
class PortInfo:
    """
    Information about an available serial port.

    Attributes:
        device: System device path (e.g., '/dev/ttyUSB0', 'COM3')
        description: Human-readable description from the driver
        manufacturer: Device manufacturer (if available)
        product: Product name (if available)
        serial_number: Device serial number (if available)
        vid: USB Vendor ID (None for non-USB ports)
        pid: USB Product ID (None for non-USB ports)
    """

    device: str
    description: str
    manufacturer: Optional[str]
    product: Optional[str]
    serial_number: Optional[str]
    vid: Optional[int]
    pid: Optional[int]

    @property
    def is_usb(self) -> bool:
        """Return True if this is a USB-serial adapter."""
        return self.vid is not None

    @property
    def vendor_name(self) -> Optional[str]:
        """Return the vendor name for known USB adapters."""
        if self.vid is not None:
            return USB_VENDOR_IDS.get(self.vid)
        return None

    @property
    def label(self) -> str:
        """
        Short label for selection lists: device plus product name.

        Driver suffixes such as " (COM3)" are stripped from the product.
        """
        product = self.product or ""
        paren = product.find(" (")
        if paren >= 0:
            product = product[:paren]
        return f"{self.device} - {product}" if product else self.device

    def __str__(self) -> str:
        """Format port info for display."""
        parts = [self.device]
        if self.description and self.description != self.device:
            parts.append(f"- {self.description}")
        if self.vendor_name:
            parts.append(f"({self.vendor_name})")
        return " ".join(parts)


# =============================================================================
# Port Enumeration
# =============================================================================

def _is_listable(device: str) -> bool:
    """Filter out ports that are never bootloader links."""
    if platform.system() == "Darwin":
        # tty.* duplicates of cu.* block on open; skip Bluetooth/debug consoles
        if not device.startswith("/dev/cu."):
            return False
        if "Bluetooth" in device or "debug-console" in device:
            return False
    return True


def list_serial_ports() -> list[PortInfo]:
    """
    List all available serial ports on the system.

    Returns:
        List of PortInfo objects describing available ports.

    Example:
        >>> for port in list_serial_ports():
        ...     print(port.label)
        /dev/ttyUSB0 - CP2102 USB to UART Bridge Controller
    """
    ports = []

    for port in serial.tools.list_ports.comports():
        if not _is_listable(port.device):
            continue
        info = PortInfo(
            device=port.device,
            description=port.description or "",
            manufacturer=port.manufacturer,
            product=port.product,
            serial_number=port.serial_number,
            vid=port.vid,
            pid=port.pid,
        )
        ports.append(info)
        logger.debug(
            "Found port: %s (vid=%s, pid=%s)",
            port.device,
            f"{port.vid:04X}" if port.vid else "N/A",
            f"{port.pid:04X}" if port.pid else "N/A",
        )

    return ports


def find_usb_serial_port() -> Optional[str]:
    """
    Attempt to auto-detect the USB-serial adapter wired to the target.

    Known adapter vendors are preferred over unknown USB ports. Hardware
    ports (no VID) are never picked.

    Returns:
        Device path of the detected port, or None if not found.
    """
    usb_ports = [p for p in list_serial_ports() if p.is_usb]

    if not usb_ports:
        logger.debug("No USB serial ports found")
        return None

    for port in usb_ports:
        if port.vendor_name is not None:
            logger.info("Auto-detected port: %s (%s)", port.device, port.vendor_name)
            return port.device

    first_usb = usb_ports[0]
    logger.info(
        "Using first USB serial port: %s (%s)",
        first_usb.device, first_usb.description
    )
    return first_usb.device


def format_port_list(ports: list[PortInfo], verbose: bool = False) -> str:
    """
    Format a list of ports for display to the user.

    Args:
        ports: List of PortInfo objects to format.
        verbose: If True, include additional details.

    Returns:
        Formatted string with one port per line.
    """
    if not ports:
        return "No serial ports found."

    lines = []
    for port in ports:
        marker = "*" if port.is_usb else " "
        if verbose:
            line = f"{marker} {port.device}"
            if port.description:
                line += f"\n    Description: {port.description}"
            if port.manufacturer:
                line += f"\n    Manufacturer: {port.manufacturer}"
            if port.vid is not None:
                line += f"\n    USB VID:PID: {port.vid:04X}:{port.pid or 0:04X}"
                if port.vendor_name:
                    line += f" ({port.vendor_name})"
            if port.serial_number:
                line += f"\n    Serial: {port.serial_number}"
            lines.append(line)
        else:
            lines.append(f"{marker} {port.label}")

    return "\n".join(lines)


# =============================================================================
# Port Ownership
# =============================================================================

_claimed_ports: set[str] = set()
_claim_lock = threading.Lock()


@contextmanager
def claim_port(device: str) -> Iterator[str]:
    """
    Reserve a port name for one session.

    A second claim on the same name fails immediately instead of waiting,
    so two sessions can never interleave bytes on one wire.

    Raises:
        PortBusy: If the port is already claimed in this process.
    """
    with _claim_lock:
        if device in _claimed_ports:
            raise PortBusy(f"Serial port {device} is already in use by another session")
        _claimed_ports.add(device)
    try:
        yield device
    finally:
        with _claim_lock:
            _claimed_ports.discard(device)


def is_port_claimed(device: str) -> bool:
    """Return True if a session currently owns the port."""
    with _claim_lock:
        return device in _claimed_ports


# =============================================================================
# Port Configuration
# =============================================================================

def open_serial_port(
    device: str,
    baud_rate: int = DEFAULT_BAUD_RATE,
    timeout: float = DEFAULT_TIMEOUT,
) -> serial.Serial:
    """
    Open and configure a serial port for the ROM bootloader.

    Args:
        device: Serial port device path (e.g., '/dev/ttyUSB0', 'COM3').
        baud_rate: One of VALID_BAUD_RATES. Default is 115200.
        timeout: Read timeout in seconds. Default is 0.8.

    Returns:
        Configured and opened serial.Serial object.

    Raises:
        LinkUnavailable: If the port cannot be opened or configured.
        ValueError: If baud_rate is not a valid value.

    Note:
        The caller is responsible for closing the port when done.
    """
    if baud_rate not in VALID_BAUD_RATES:
        valid_str = ", ".join(str(b) for b in VALID_BAUD_RATES)
        raise ValueError(
            f"Invalid baud rate: {baud_rate}. Valid rates: {valid_str}"
        )

    logger.info("Opening serial port: %s at %d baud", device, baud_rate)

    try:
        port = serial.Serial(
            port=device,
            baudrate=baud_rate,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_EVEN,
            stopbits=serial.STOPBITS_ONE,
            timeout=timeout,
            write_timeout=timeout,
            xonxoff=False,      # No software flow control
            rtscts=False,       # No hardware flow control
            dsrdtr=False,       # DTR is driven manually for reset
            exclusive=True,
        )
    except serial.SerialException as e:
        error_msg = str(e)

        if "Permission denied" in error_msg:
            raise LinkUnavailable(
                f"Permission denied accessing {device}. "
                "You may need to add your user to the 'dialout' group: "
                "sudo usermod -a -G dialout $USER"
            ) from e
        elif "No such file" in error_msg or "not found" in error_msg.lower():
            raise LinkUnavailable(
                f"Serial port not found: {device}. "
                "Use 'probe-flasher ports' to list available ports."
            ) from e
        elif "busy" in error_msg.lower() or "in use" in error_msg.lower():
            raise LinkUnavailable(
                f"Serial port {device} is busy. "
                "Close any other programs using the port."
            ) from e
        else:
            raise LinkUnavailable(f"Cannot open {device}: {e}") from e

    if platform.system() == "Darwin":
        # macOS drivers need the lines idle and some settling before use
        port.dtr = False
        port.rts = False
        time.sleep(0.2)

    port.reset_input_buffer()
    port.reset_output_buffer()
    logger.debug("Port opened: %s (timeout=%.1f)", device, timeout)

    return port


def close_serial_port(port: Optional[serial.Serial]) -> None:
    """
    Close a serial port, flushing buffers first.

    Errors raised while closing are logged, since the session outcome has
    already been decided by then.
    """
    if port is None:
        return

    try:
        if port.is_open:
            port.reset_input_buffer()
            port.reset_output_buffer()
            port.close()
            logger.debug("Serial port closed")
    except (OSError, serial.SerialException) as e:
        logger.warning("Error closing serial port: %s", e)


# =============================================================================
# Serial Link
# =============================================================================

class SerialLink:
    """
    pyserial-backed Transport.

    Wraps one open serial.Serial. Reads temporarily switch the port
    timeout to the requested window and restore it afterwards.

    Usage:
        link = SerialLink.open('/dev/ttyUSB0', baud_rate=115200)
        try:
            link.write(b'\\x7f')
            reply = link.read(1, timeout=0.8)
        finally:
            link.close()
    """

    def __init__(self, port: serial.Serial):
        self.port = port

    @classmethod
    def open(
        cls,
        device: str,
        baud_rate: int = DEFAULT_BAUD_RATE,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> "SerialLink":
        """Open a port with bootloader settings and wrap it."""
        return cls(open_serial_port(device, baud_rate=baud_rate, timeout=timeout))

    @property
    def device(self) -> str:
        return self.port.port

    @property
    def is_open(self) -> bool:
        return bool(self.port.is_open)

    def write(self, data: bytes) -> None:
        try:
            self.port.write(data)
            self.port.flush()
        except serial.SerialException as e:
            raise LinkUnavailable(f"Write to {self.device} failed: {e}") from e

    def read(self, size: int, timeout: float) -> bytes:
        old_timeout = self.port.timeout
        self.port.timeout = timeout
        try:
            return bytes(self.port.read(size))
        except serial.SerialException as e:
            raise LinkUnavailable(f"Read from {self.device} failed: {e}") from e
        finally:
            self.port.timeout = old_timeout

    def set_dtr(self, level: bool) -> None:
        self.port.dtr = level

    def set_rts(self, level: bool) -> None:
        self.port.rts = level

    def reset_input_buffer(self) -> None:
        self.port.reset_input_buffer()

    def close(self) -> None:
        close_serial_port(self.port)
