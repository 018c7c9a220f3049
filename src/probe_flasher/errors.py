"""
Probe Flasher Error Hierarchy
=============================

This module defines the exception hierarchy for the whole package. All
exceptions inherit from FlasherError, allowing callers to catch every
flasher-related error with a single except clause.

Exception Hierarchy
-------------------
FlasherError (base)
├── CommsError (serial link and bootloader protocol)
│   ├── LinkUnavailable - port cannot be opened or configured
│   │   └── PortBusy - port already owned by another session
│   ├── HandshakeTimeout - bootloader never answered the sync byte
│   ├── ProtocolRejected - device replied NACK
│   ├── UnexpectedResponse - device replied with a non ACK/NACK byte
│   ├── CommandTimeout - no reply within the read window, after retries
│   ├── UnsupportedOperation - device does not implement a command
│   └── VerifyError - read-back data differs from the image
└── ImageError (firmware image handling)
    ├── ImageUnavailable - HEX file missing or unreadable
    └── HexParseError - malformed HEX record
        └── OverlapError - two records disagree about one address

Every class carries an ErrorKind. The session orchestrator reports a
failed session by kind, so front ends can branch on the kind without
importing the class tree.

Error messages include the context that was known when the error was
raised:

    write memory rejected by device (address 0x08001000, phase writing)
    firmware.hex:12: error: record checksum mismatch
"""

from enum import Enum
from typing import Optional


# =============================================================================
# Error Kinds
# =============================================================================

class ErrorKind(str, Enum):
    """Stable identifiers for session failure reasons."""

    LINK_UNAVAILABLE = "link-unavailable"
    HANDSHAKE_TIMEOUT = "handshake-timeout"
    PROTOCOL_REJECTED = "protocol-rejected"
    COMMAND_TIMEOUT = "command-timeout"
    UNSUPPORTED_OPERATION = "unsupported-operation"
    VERIFY_FAILED = "verify-failed"
    HEX_PARSE_ERROR = "hex-parse-error"
    IMAGE_UNAVAILABLE = "image-unavailable"
    INTERNAL = "internal"


# =============================================================================
# Base Exception Class
# =============================================================================

class FlasherError(Exception):
    """
    Base exception for all probe flasher errors.

    Attributes:
        message: The error description
        address: Target memory address involved (optional)
        phase: Session phase in which the error occurred (optional)
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        address: Optional[int] = None,
        phase: Optional[str] = None,
    ):
        self.message = message
        self.address = address
        self.phase = phase
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        context = []
        if self.address is not None:
            context.append(f"address 0x{self.address:08X}")
        if self.phase:
            context.append(f"phase {self.phase}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message

    def with_context(
        self,
        address: Optional[int] = None,
        phase: Optional[str] = None,
    ) -> "FlasherError":
        """
        Fill in missing context and refresh the formatted message.

        Context already present is kept, so the innermost caller wins.
        Returns self to allow ``raise err.with_context(...)``.
        """
        if self.address is None and address is not None:
            self.address = address
        if self.phase is None and phase is not None:
            self.phase = phase
        self.args = (self._format_message(),)
        return self


# =============================================================================
# Communication Exceptions
# =============================================================================

class CommsError(FlasherError):
    """Base exception for serial link and bootloader protocol errors."""

    kind = ErrorKind.PROTOCOL_REJECTED


class LinkUnavailable(CommsError):
    """
    The serial port cannot be opened or configured.

    Raised when:
    - Serial port not found
    - Permission denied
    - Port busy (opened by another program)

    Never retried: the port may be absent or owned elsewhere.
    """

    kind = ErrorKind.LINK_UNAVAILABLE


class PortBusy(LinkUnavailable):
    """The port is already owned by a running session in this process."""


class HandshakeTimeout(CommsError):
    """
    The bootloader never synchronized.

    Raised after the sync byte went unanswered for every handshake
    attempt. Usually the target is not in bootloader mode or the boot
    mode does not match the board wiring.
    """

    kind = ErrorKind.HANDSHAKE_TIMEOUT


class ProtocolRejected(CommsError):
    """
    The device explicitly rejected a request with NACK.

    A NACK means the device understood the bytes but refused them: bad
    checksum, bad address or a protected region. Never retried.
    """

    kind = ErrorKind.PROTOCOL_REJECTED


class UnexpectedResponse(CommsError):
    """The device replied with a byte that is neither ACK nor NACK."""

    kind = ErrorKind.PROTOCOL_REJECTED

    def __init__(
        self,
        value: int,
        message: str = "",
        address: Optional[int] = None,
        phase: Optional[str] = None,
    ):
        self.value = value
        if not message:
            message = f"unexpected response byte 0x{value:02X}"
        super().__init__(message, address=address, phase=phase)


class CommandTimeout(CommsError):
    """
    No reply within the read window.

    Raised by the framing layer once its bounded retries are used up.
    """

    kind = ErrorKind.COMMAND_TIMEOUT


class UnsupportedOperation(CommsError):
    """The bootloader does not implement a command the operation needs."""

    kind = ErrorKind.UNSUPPORTED_OPERATION


class VerifyError(CommsError):
    """Memory read back from the target differs from the image."""

    kind = ErrorKind.VERIFY_FAILED

    def __init__(
        self,
        address: int,
        expected: int,
        actual: int,
        phase: Optional[str] = None,
    ):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"verification failed: read 0x{actual:02X}, expected 0x{expected:02X}",
            address=address,
            phase=phase,
        )


# =============================================================================
# Image Exceptions
# =============================================================================

class ImageError(FlasherError):
    """Base exception for firmware image errors."""

    kind = ErrorKind.HEX_PARSE_ERROR


class ImageUnavailable(ImageError):
    """The HEX file does not exist or cannot be read."""

    kind = ErrorKind.IMAGE_UNAVAILABLE


class HexParseError(ImageError):
    """
    Malformed or ambiguous Intel HEX input.

    Attributes:
        line: 1-indexed line number of the offending record (optional)
        filename: Source file name, or "<input>" for in-memory text
    """

    kind = ErrorKind.HEX_PARSE_ERROR

    def __init__(
        self,
        message: str,
        line: Optional[int] = None,
        filename: str = "<input>",
        address: Optional[int] = None,
    ):
        self.line = line
        self.filename = filename
        super().__init__(message, address=address)

    @property
    def location(self) -> str:
        """'file:line', or just the file name when the line is unknown."""
        if self.line is not None:
            return f"{self.filename}:{self.line}"
        return self.filename

    def _format_message(self) -> str:
        return f"{self.location}: error: {super()._format_message()}"


class OverlapError(HexParseError):
    """
    Two data records write different values to the same address.

    The image would be ambiguous, so it is rejected instead of letting the
    later record win.
    """

    def __init__(
        self,
        address: int,
        first_line: Optional[int],
        line: Optional[int],
        filename: str = "<input>",
    ):
        self.first_line = first_line
        message = "conflicting data for address"
        if first_line is not None:
            message += f", first written on line {first_line}"
        super().__init__(message, line=line, filename=filename, address=address)
