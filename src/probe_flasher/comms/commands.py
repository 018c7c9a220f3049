"""
Bootloader Command Engine
=========================

This module implements the STM32 ROM bootloader command set on top of the
framing layer. Each method performs one complete command exchange:

    Command         Opcode  Used for
    ─────────────── ──────  ─────────────────────────────────────────
    GET             0x00    Version and supported command list
    GET_VERSION     0x01    Version and option bytes
    GET_ID          0x02    Product ID
    READ_MEMORY     0x11    Read-back verification
    GO              0x21    Start the flashed application
    WRITE_MEMORY    0x31    Programming, at most 256 bytes per command
    ERASE           0x43    Legacy erase (8-bit page numbers)
    EXTENDED_ERASE  0x44    Extended erase (16-bit page numbers)

Payload Shapes
--------------
- Address: 4 bytes big-endian + XOR checksum
- Write data: [N-1] [N data bytes] [XOR of N-1 and data]
- Read length: [N-1] [(N-1) ^ 0xFF]
- Mass erase: FF FF 00 (extended) or FF 00 (legacy)
- Page erase (extended): [count-1 : 16 bit] [pages : 16 bit each] [XOR]
- Page erase (legacy): [count-1] [pages : 8 bit each] [XOR]

Erase frames are never re-sent. The device may take many seconds to
answer and a second request would start the erase again.
"""

import logging
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Final, Optional, Union

from probe_flasher.comms.checksum import complement, encode_address, xor_checksum
from probe_flasher.comms.link import BootloaderLink, Reply
from probe_flasher.errors import (
    CommsError,
    ProtocolRejected,
    UnexpectedResponse,
    UnsupportedOperation,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

class Command(IntEnum):
    """Bootloader command opcodes."""

    GET = 0x00
    GET_VERSION = 0x01
    GET_ID = 0x02
    READ_MEMORY = 0x11
    GO = 0x21
    WRITE_MEMORY = 0x31
    ERASE = 0x43
    EXTENDED_ERASE = 0x44


# Largest payload accepted by READ_MEMORY and WRITE_MEMORY
MAX_TRANSFER_SIZE: Final[int] = 256

# Write addresses and lengths must be multiples of this
WRITE_GRANULARITY: Final[int] = 4

# Default wait for an erase to finish (seconds)
DEFAULT_ERASE_TIMEOUT: Final[float] = 25.0

# Page count limits for the two erase commands
MAX_LEGACY_PAGES: Final[int] = 255
MAX_EXTENDED_PAGES: Final[int] = 0xFFF0

# Product IDs returned by GET_ID (ST AN2606)
CHIP_IDS: Final[dict[int, str]] = {
    0x410: "STM32F10x Medium-density",
    0x411: "STM32F2xxx",
    0x412: "STM32F10x Low-density",
    0x413: "STM32F405xx/07xx and STM32F415xx/17xx",
    0x414: "STM32F10x High-density",
    0x416: "STM32L1xxx6(8/B) Medium-density ultralow power line",
    0x418: "STM32F105xx/107xx Connectivity line",
    0x419: "STM32F42xxx and STM32F43xxx",
    0x420: "STM32F10x Medium-density value line",
    0x422: "STM32F302xB(C)/303xB(C)/358xx",
    0x423: "STM32F401xB(C)",
    0x428: "STM32F10x High-density value line",
    0x430: "STM32F10x XL-density",
    0x431: "STM32F411xx",
    0x432: "STM32F373xx/378xx",
    0x433: "STM32F401xD(E)",
    0x435: "STM32L43xxx/44xxx",
    0x438: "STM32F303x4(6/8)/334xx/328xx",
    0x439: "STM32F301xx/302x4(6/8)/318xx",
    0x440: "STM32F030x8/05x",
    0x442: "STM32F030xC/09x",
    0x444: "STM32F03xx4/6",
    0x445: "STM32F04xxx/070x6",
    0x446: "STM32F302xD(E)/303xD(E)/398xx",
    0x448: "STM32F070xB/071xx/072xx",
    0x449: "STM32F74xxx/75xxx",
    0x451: "STM32F76xxx/77xxx",
    0x460: "STM32G07xxx/08xxx",
    0x468: "STM32G431xx/441xx",
}


# =============================================================================
# Data Types
# =============================================================================

@dataclass(frozen=True)
class BootloaderInfo:
    """
    Identification data read from the bootloader.

    Attributes:
        version: Protocol version byte (0x31 is version 3.1)
        commands: Opcodes the bootloader reported in GET
        product_id: Value from GET_ID, or None if it could not be read
    """

    version: int
    commands: tuple[int, ...] = ()
    product_id: Optional[int] = None

    def supports(self, command: int) -> bool:
        return command in self.commands

    @property
    def version_string(self) -> str:
        return f"{self.version >> 4}.{self.version & 0x0F}"

    @property
    def device_name(self) -> Optional[str]:
        if self.product_id is None:
            return None
        return CHIP_IDS.get(self.product_id)

    def __str__(self) -> str:
        parts = [f"bootloader v{self.version_string}"]
        if self.product_id is not None:
            parts.append(f"PID 0x{self.product_id:04X}")
        if self.device_name:
            parts.append(f"({self.device_name})")
        return " ".join(parts)


@dataclass(frozen=True)
class MassErase:
    """Erase the whole flash."""


@dataclass(frozen=True)
class SectorRange:
    """Erase the listed flash pages only."""

    pages: tuple[int, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.pages:
            raise ValueError("SectorRange needs at least one page")
        if any(p < 0 or p > 0xFFFF for p in self.pages):
            raise ValueError("Page numbers must be in range 0..65535")


EraseTarget = Union[MassErase, SectorRange]


# =============================================================================
# Command Engine
# =============================================================================

class Bootloader:
    """
    STM32 ROM bootloader command set.

    Operations are only valid after synchronize() succeeded. The engine
    remembers the BootloaderInfo from the last identify() and uses it to
    pick the erase command.

    Usage:
        bootloader = Bootloader(BootloaderLink(transport))
        bootloader.synchronize()
        info = bootloader.identify()
        bootloader.erase(MassErase())
        bootloader.write(0x08000000, data)
    """

    def __init__(
        self,
        link: BootloaderLink,
        erase_timeout: float = DEFAULT_ERASE_TIMEOUT,
        handshake_attempts: int = 3,
    ):
        self.link = link
        self.erase_timeout = erase_timeout
        self.handshake_attempts = handshake_attempts
        self.info: Optional[BootloaderInfo] = None

    # -------------------------------------------------------------------------
    # Handshake and Identification
    # -------------------------------------------------------------------------

    def synchronize(self) -> None:
        """
        Perform the sync byte handshake.

        Raises:
            HandshakeTimeout: If the bootloader never answers.
        """
        self.link.synchronize(attempts=self.handshake_attempts)

    def get(self) -> tuple[int, tuple[int, ...]]:
        """
        Run GET and return (version, supported opcodes).

        Raises:
            ProtocolRejected: On NACK.
            CommandTimeout: On silence.
        """
        self.link.send_command(Command.GET, "GET")
        count = self.link.read_response(1)[0]
        # count is one less than the number of bytes that follow
        data = self.link.read_response(count + 1)
        self.link.read_ack("GET")
        version, commands = data[0], tuple(data[1:])
        logger.debug(
            "Bootloader version 0x%02X, commands: %s",
            version, " ".join(f"{c:02X}" for c in commands),
        )
        return version, commands

    def get_version(self) -> tuple[int, int, int]:
        """Run GET_VERSION and return (version, option byte 1, option byte 2)."""
        self.link.send_command(Command.GET_VERSION, "GET_VERSION")
        data = self.link.read_response(3)
        self.link.read_ack("GET_VERSION")
        return data[0], data[1], data[2]

    def get_id(self) -> int:
        """Run GET_ID and return the product ID."""
        self.link.send_command(Command.GET_ID, "GET_ID")
        count = self.link.read_response(1)[0]
        data = self.link.read_response(count + 1)
        self.link.read_ack("GET_ID")
        return int.from_bytes(data, "big")

    def identify(self) -> BootloaderInfo:
        """
        Read version, supported commands and product ID.

        Devices that omit GET_ID still identify; their product ID is None.

        Raises:
            ProtocolRejected: If GET is NACKed.
            CommandTimeout: If GET gets no reply.
        """
        version, commands = self.get()

        product_id = None
        try:
            product_id = self.get_id()
        except CommsError as e:
            logger.warning("GET_ID failed, continuing without product ID: %s", e)
            self.link.flush_input()

        self.info = BootloaderInfo(version, commands, product_id)
        logger.info("Identified %s", self.info)
        return self.info

    # -------------------------------------------------------------------------
    # Erase
    # -------------------------------------------------------------------------

    def erase_command(self) -> Command:
        """
        Pick the erase command for this device.

        Extended erase is assumed when the device was never identified.

        Raises:
            UnsupportedOperation: If the device reports neither erase command.
        """
        if self.info is None or self.info.supports(Command.EXTENDED_ERASE):
            return Command.EXTENDED_ERASE
        if self.info.supports(Command.ERASE):
            return Command.ERASE
        raise UnsupportedOperation("Device supports neither ERASE nor EXTENDED_ERASE")

    def erase(self, target: EraseTarget) -> None:
        """
        Erase the whole flash or a set of pages.

        Raises:
            UnsupportedOperation: If no erase command is available.
            ValueError: If too many pages are given for the command.
            ProtocolRejected: On NACK.
            CommandTimeout: If the erase does not finish in erase_timeout.
        """
        command = self.erase_command()
        extended = command == Command.EXTENDED_ERASE

        if isinstance(target, MassErase):
            payload = b"\xff\xff\x00" if extended else b"\xff\x00"
            description = "mass erase"
        else:
            payload = self._page_erase_payload(target.pages, extended)
            description = f"erase of {len(target.pages)} page(s)"

        logger.info("Starting %s (%s)", description, command.name)
        self.link.send_command(command, command.name)
        self.link.send(payload)
        self.link.read_ack(description, timeout=self.erase_timeout)
        logger.info("Erase complete")

    @staticmethod
    def _page_erase_payload(pages: tuple[int, ...], extended: bool) -> bytes:
        count = len(pages)
        if extended:
            if count > MAX_EXTENDED_PAGES:
                raise ValueError(f"Cannot erase more than {MAX_EXTENDED_PAGES} pages at once")
            body = struct.pack(f">H{count}H", count - 1, *pages)
        else:
            if count > MAX_LEGACY_PAGES:
                raise ValueError(f"Cannot erase more than {MAX_LEGACY_PAGES} pages at once")
            if any(p > 0xFF for p in pages):
                raise ValueError("Legacy ERASE only addresses pages 0..255")
            body = bytes([count - 1, *pages])
        return body + bytes([xor_checksum(body)])

    # -------------------------------------------------------------------------
    # Memory Access
    # -------------------------------------------------------------------------

    def write(self, address: int, data: bytes) -> None:
        """
        Program up to 256 bytes at address.

        The address step and the data step are acknowledged separately.

        Raises:
            ValueError: For misaligned or oversized chunks (nothing is sent).
            ProtocolRejected, CommandTimeout: With the chunk address attached.
        """
        if not 1 <= len(data) <= MAX_TRANSFER_SIZE:
            raise ValueError(f"Write length must be 1..{MAX_TRANSFER_SIZE}, got {len(data)}")
        if address % WRITE_GRANULARITY or len(data) % WRITE_GRANULARITY:
            raise ValueError(
                f"Write at 0x{address:08X} ({len(data)} bytes) is not "
                f"{WRITE_GRANULARITY}-byte aligned"
            )

        try:
            self.link.send_command(Command.WRITE_MEMORY, "WRITE_MEMORY")
            self.link.transact(encode_address(address), "write address")
            self.link.send_framed(bytes([len(data) - 1]) + data, "write data")
        except CommsError as e:
            raise e.with_context(address=address)

    def read(self, address: int, length: int) -> bytes:
        """
        Read 1..256 bytes from address.

        Raises:
            ValueError: For an out-of-range length.
            ProtocolRejected: If the area is protected or the address invalid.
            CommandTimeout: On silence or a short reply.
        """
        if not 1 <= length <= MAX_TRANSFER_SIZE:
            raise ValueError(f"Read length must be 1..{MAX_TRANSFER_SIZE}, got {length}")

        try:
            self.link.send_command(Command.READ_MEMORY, "READ_MEMORY")
            self.link.transact(encode_address(address), "read address")
            n = length - 1
            self.link.transact(bytes([n, complement(n)]), "read length")
            return self.link.read_response(length)
        except CommsError as e:
            raise e.with_context(address=address)

    def go(self, address: int) -> None:
        """
        Jump to address.

        Only the command ACK is required. The bootloader stops talking once
        it has jumped, so a missing address ACK is logged, not raised.

        Raises:
            ProtocolRejected: If the command or the address is NACKed.
            CommandTimeout: If the command byte gets no reply.
        """
        self.link.send_command(Command.GO, "GO")
        self.link.send(encode_address(address))
        try:
            reply = self.link.read_reply()
        except UnexpectedResponse as e:
            logger.debug("GO: ignoring byte after jump: %s", e)
            reply = Reply.ACK
        if reply is None:
            logger.info("GO 0x%08X sent; no address acknowledge", address)
        elif reply == Reply.NACK:
            raise ProtocolRejected("GO address rejected by device", address=address)
        else:
            logger.info("Target running from 0x%08X", address)


def check_write_support(info: BootloaderInfo) -> None:
    """
    Fail early if an identified device cannot be programmed.

    Raises:
        UnsupportedOperation: If WRITE_MEMORY or both erase commands are missing.
    """
    if not info.supports(Command.WRITE_MEMORY):
        raise UnsupportedOperation("Device does not support WRITE_MEMORY")
    if not (info.supports(Command.ERASE) or info.supports(Command.EXTENDED_ERASE)):
        raise UnsupportedOperation("Device supports neither ERASE nor EXTENDED_ERASE")
