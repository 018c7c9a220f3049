"""
Bootloader Framing Layer
========================

This module implements the byte-level framing of the STM32 UART
bootloader protocol (ST AN3155). It handles:

- Command framing (opcode + one's complement)
- Payload framing (payload + XOR checksum)
- ACK/NACK interpretation
- Per-response timeouts and the bounded retry policy
- The sync byte handshake after reset
- Optional mirroring of all traffic to a trace sink

Protocol Overview
-----------------
Every exchange is host-initiated and answered with a single status byte:

    Host                              Device
    ───────────────────────────────   ──────
    [opcode] [opcode ^ 0xFF]    ───►
                                ◄───  ACK (0x79) / NACK (0x1F)
    [payload ...] [xor(payload)] ───►
                                ◄───  ACK / NACK

Retry Policy
------------
- No byte within the read window: the same frame is sent again, up to
  ``attempts`` times in total, then CommandTimeout is raised.
- NACK: raised immediately as ProtocolRejected. The device parsed the
  request and refused it, so identical bytes would be refused again.
- Any other byte: UnexpectedResponse, not retried.

Long-running steps (mass erase) are waited for once with a long timeout
through read_ack(); re-sending an erase request is never done.
"""

import logging
import time
from enum import IntEnum
from typing import Callable, Final, Optional

from probe_flasher.comms.checksum import frame_command, frame_with_checksum
from probe_flasher.comms.serial import Transport
from probe_flasher.errors import (
    CommandTimeout,
    HandshakeTimeout,
    ProtocolRejected,
    UnexpectedResponse,
)

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Protocol Constants
# =============================================================================

# Byte sent once after reset so the bootloader can measure the baud rate
SYNC_BYTE: Final[int] = 0x7F

# Default per-response timeout (seconds)
DEFAULT_TIMEOUT: Final[float] = 0.8

# Default number of transmissions for a frame that gets no reply
DEFAULT_ATTEMPTS: Final[int] = 3

# Pause between handshake attempts (seconds)
HANDSHAKE_SPACING: Final[float] = 0.1

# Type alias for the traffic mirror: (direction "TX"/"RX", bytes)
TraceSink = Callable[[str, bytes], None]


class Reply(IntEnum):
    """Single-byte status replies sent by the bootloader."""

    ACK = 0x79
    NACK = 0x1F


# =============================================================================
# Framing Layer
# =============================================================================

class BootloaderLink:
    """
    Framed request/response exchanges over a Transport.

    The link has no notion of which command is running; it only knows how
    to put frames on the wire, collect replies and apply the retry policy.
    The Command Engine (probe_flasher.comms.commands) builds on it.

    Usage:
        link = BootloaderLink(transport, timeout=0.8)
        link.send_command(0x00, "GET")
        count = link.read_response(1)[0]
    """

    # Pause before re-sending a frame that got no reply (seconds)
    RETRY_DELAY: Final[float] = 0.05

    def __init__(
        self,
        transport: Transport,
        timeout: float = DEFAULT_TIMEOUT,
        attempts: int = DEFAULT_ATTEMPTS,
        trace: Optional[TraceSink] = None,
    ):
        """
        Initialize the framing layer.

        Args:
            transport: Open transport (SerialLink or a test double).
            timeout: Seconds to wait for each reply.
            attempts: Total transmissions of a frame that gets no reply.
            trace: Optional sink receiving every TX/RX byte block.
        """
        if attempts < 1:
            raise ValueError(f"attempts must be at least 1, got {attempts}")
        self.transport = transport
        self.timeout = timeout
        self.attempts = attempts
        self.trace = trace

    # -------------------------------------------------------------------------
    # Raw I/O
    # -------------------------------------------------------------------------

    def send(self, data: bytes) -> None:
        """Write bytes without waiting for a reply."""
        self.transport.write(data)
        logger.debug("TX %d bytes: %s", len(data), data.hex(" "))
        self._mirror("TX", data)

    def receive(self, size: int, timeout: Optional[float] = None) -> bytes:
        """Read up to size bytes; a short result means the timeout expired."""
        data = self.transport.read(size, self.timeout if timeout is None else timeout)
        if data:
            logger.debug("RX %d bytes: %s", len(data), data.hex(" "))
            self._mirror("RX", data)
        return data

    def flush_input(self) -> None:
        """Discard anything the device sent that nobody asked for."""
        self.transport.reset_input_buffer()

    def _mirror(self, direction: str, data: bytes) -> None:
        if self.trace is None:
            return
        try:
            self.trace(direction, data)
        except Exception as e:
            logger.warning("Trace sink failed: %s", e)

    # -------------------------------------------------------------------------
    # Replies
    # -------------------------------------------------------------------------

    def read_reply(self, timeout: Optional[float] = None) -> Optional[Reply]:
        """
        Read one status byte.

        Returns:
            Reply.ACK or Reply.NACK, or None if nothing arrived in time.

        Raises:
            UnexpectedResponse: If the byte is neither ACK nor NACK.
        """
        data = self.receive(1, timeout)
        if not data:
            return None
        try:
            return Reply(data[0])
        except ValueError:
            raise UnexpectedResponse(data[0]) from None

    def read_ack(self, what: str, timeout: Optional[float] = None) -> None:
        """
        Wait once for an ACK, without re-sending anything.

        Raises:
            ProtocolRejected: On NACK.
            CommandTimeout: If no reply arrives within timeout.
        """
        reply = self.read_reply(timeout)
        if reply is None:
            raise CommandTimeout(f"{what}: no response from device")
        if reply == Reply.NACK:
            raise ProtocolRejected(f"{what} rejected by device")

    def read_response(self, expected_len: int, timeout: Optional[float] = None) -> bytes:
        """
        Read exactly expected_len data bytes.

        Reads continue while bytes keep arriving; the first read that
        returns nothing ends the wait.

        Raises:
            CommandTimeout: If fewer bytes arrive.
        """
        buffer = bytearray()
        while len(buffer) < expected_len:
            chunk = self.receive(expected_len - len(buffer), timeout)
            if not chunk:
                raise CommandTimeout(
                    f"expected {expected_len} response bytes, got {len(buffer)}"
                )
            buffer.extend(chunk)
        return bytes(buffer)

    # -------------------------------------------------------------------------
    # Framed Exchanges
    # -------------------------------------------------------------------------

    def transact(self, frame: bytes, what: str) -> None:
        """
        Send a frame and wait for ACK, re-sending on silence.

        Args:
            frame: Complete frame, checksum included.
            what: Description used in log and error messages.

        Raises:
            ProtocolRejected: On NACK (not retried).
            UnexpectedResponse: On a garbage reply byte.
            CommandTimeout: If every attempt went unanswered.
        """
        for attempt in range(1, self.attempts + 1):
            self.send(frame)
            reply = self.read_reply()

            if reply == Reply.ACK:
                return
            if reply == Reply.NACK:
                raise ProtocolRejected(f"{what} rejected by device")

            logger.debug(
                "%s: no response (attempt %d/%d)", what, attempt, self.attempts
            )
            if attempt < self.attempts:
                time.sleep(self.RETRY_DELAY)

        raise CommandTimeout(
            f"{what}: no response after {self.attempts} attempts"
        )

    def send_command(self, opcode: int, what: Optional[str] = None) -> None:
        """Send a command byte with its complement and wait for ACK."""
        self.transact(frame_command(opcode), what or f"command 0x{opcode:02X}")

    def send_framed(self, payload: bytes, what: str = "payload") -> None:
        """Send a payload with its XOR checksum and wait for ACK."""
        self.transact(frame_with_checksum(payload), what)

    # -------------------------------------------------------------------------
    # Handshake
    # -------------------------------------------------------------------------

    def synchronize(
        self,
        attempts: int = DEFAULT_ATTEMPTS,
        spacing: float = HANDSHAKE_SPACING,
    ) -> None:
        """
        Send the sync byte until the bootloader answers.

        The boot ROM may still be starting when the first byte arrives,
        so stale input is discarded and the byte is re-sent after a short
        pause. A NACK means the bootloader already measured the baud rate
        on an earlier byte and is waiting for commands.

        Raises:
            HandshakeTimeout: If no attempt is answered.
        """
        for attempt in range(1, attempts + 1):
            self.flush_input()
            self.send(bytes([SYNC_BYTE]))
            try:
                reply = self.read_reply()
            except UnexpectedResponse as e:
                logger.debug("Handshake attempt %d: %s", attempt, e)
                reply = None

            if reply == Reply.ACK:
                logger.info("Bootloader synchronized")
                return
            if reply == Reply.NACK:
                logger.info("Bootloader already synchronized")
                return

            logger.debug("Handshake attempt %d/%d unanswered", attempt, attempts)
            if attempt < attempts:
                time.sleep(spacing)

        raise HandshakeTimeout(
            f"No answer to sync byte after {attempts} attempts. "
            "Check the boot mode wiring and that the target is powered."
        )
