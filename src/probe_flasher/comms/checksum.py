"""
Checksums for the STM32 UART Bootloader Protocol
=================================================

The ROM bootloader (ST AN3155) protects every host-to-device frame with a
one-byte XOR checksum:

- A command byte is followed by its one's complement, so the pair XORs to
  0xFF and the device can validate it without a separate checksum field.
- A multi-byte payload (address, length + data, page list) is followed by
  the XOR of all payload bytes, so payload + checksum XORs to zero.

Usage
-----
    from probe_flasher.comms.checksum import frame_command, frame_with_checksum

    frame_command(0x31)                     # b'\\x31\\xce'
    frame_with_checksum(b'\\x08\\x00\\x00\\x00')  # b'\\x08\\x00\\x00\\x00\\x08'
"""

from functools import reduce
from operator import xor
from typing import Final, Iterable

# Value a command byte and its complement XOR to
COMMAND_CHECK: Final[int] = 0xFF


def xor_checksum(data: Iterable[int], initial: int = 0x00) -> int:
    """
    Calculate the XOR of all bytes in data.

    Args:
        data: Bytes (or any iterable of ints 0-255) to fold.
        initial: Starting value, e.g. a length byte sent ahead of data.

    Returns:
        8-bit checksum value.
    """
    return reduce(xor, data, initial) & 0xFF


def complement(value: int) -> int:
    """Return the one's complement of a single byte."""
    return (value ^ COMMAND_CHECK) & 0xFF


def frame_command(opcode: int) -> bytes:
    """Encode a command byte followed by its complement."""
    return bytes([opcode & 0xFF, complement(opcode)])


def frame_with_checksum(payload: bytes) -> bytes:
    """Append the XOR checksum to a multi-byte payload."""
    return bytes(payload) + bytes([xor_checksum(payload)])


def verify_checksum(frame: bytes) -> bool:
    """
    Check a frame that ends with its XOR checksum.

    A correct frame XORs to zero over all of its bytes, checksum included.
    """
    if len(frame) < 2:
        return False
    return xor_checksum(frame) == 0


def verify_command(frame: bytes) -> bool:
    """Check a two-byte command frame (opcode, complement)."""
    return len(frame) == 2 and (frame[0] ^ frame[1]) == COMMAND_CHECK


def encode_address(address: int) -> bytes:
    """
    Encode a 32-bit address as a checksummed big-endian frame.

    Raises:
        ValueError: If address does not fit in 32 bits.
    """
    if not 0 <= address <= 0xFFFFFFFF:
        raise ValueError(f"Address out of range: 0x{address:X}")
    return frame_with_checksum(address.to_bytes(4, "big"))
