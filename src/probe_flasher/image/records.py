"""
Intel HEX Record Parsing
========================

Decodes the text lines of an Intel HEX file into validated HexRecord
objects. Every record is checked on its own before it is used:

    :LLAAAATTDD...DDCC

    LL      payload length in bytes
    AAAA    16-bit load offset (big-endian)
    TT      record type
    DD      payload
    CC      two's complement of the sum of all preceding bytes

Record Types
------------
    00  DATA                        payload at base + offset
    01  END_OF_FILE                 no payload; ends the file
    02  EXTENDED_SEGMENT_ADDRESS    base = value << 4
    03  START_SEGMENT_ADDRESS       CS:IP start address
    04  EXTENDED_LINEAR_ADDRESS     base = value << 16
    05  START_LINEAR_ADDRESS        32-bit start address

Address state (the current base) is tracked by the builder; this module
only decodes lines.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Final, Iterable, Iterator

from probe_flasher.errors import HexParseError

# Fixed payload lengths for the non-data record types
_PAYLOAD_LENGTHS: Final[dict[int, int]] = {
    0x01: 0,
    0x02: 2,
    0x03: 4,
    0x04: 2,
    0x05: 4,
}

_HEX_DIGITS: Final[frozenset[str]] = frozenset("0123456789abcdefABCDEF")


class RecordType(IntEnum):
    """Intel HEX record types."""

    DATA = 0x00
    END_OF_FILE = 0x01
    EXTENDED_SEGMENT_ADDRESS = 0x02
    START_SEGMENT_ADDRESS = 0x03
    EXTENDED_LINEAR_ADDRESS = 0x04
    START_LINEAR_ADDRESS = 0x05


@dataclass(frozen=True)
class HexRecord:
    """
    One decoded line of an Intel HEX file.

    Attributes:
        record_type: The RecordType
        offset: 16-bit load offset from the record
        data: Payload bytes
        checksum: Checksum byte as stored in the file
        line: 1-indexed source line number
    """

    record_type: RecordType
    offset: int
    data: bytes
    checksum: int
    line: int = 0

    @property
    def value(self) -> int:
        """Payload as a big-endian integer (address records)."""
        return int.from_bytes(self.data, "big")

    def __str__(self) -> str:
        return (
            f"{self.record_type.name} @0x{self.offset:04X} "
            f"[{len(self.data)} bytes] (line {self.line})"
        )


def record_checksum(body: bytes) -> int:
    """Two's complement of the byte sum, as stored at the end of a record."""
    return (-sum(body)) & 0xFF


def parse_record(text: str, line: int = 0, filename: str = "<input>") -> HexRecord:
    """
    Decode and validate a single record line.

    Args:
        text: One line of the file, with or without trailing whitespace.
        line: Line number used in error messages.
        filename: File name used in error messages.

    Raises:
        HexParseError: If the record is malformed in any way.
    """
    def fail(message: str) -> HexParseError:
        return HexParseError(message, line=line, filename=filename)

    text = text.strip()
    if not text.startswith(":"):
        raise fail("record does not start with ':'")

    digits = text[1:]
    if not digits or any(c not in _HEX_DIGITS for c in digits):
        raise fail("record contains non-hexadecimal characters")
    if len(digits) % 2:
        raise fail("record has an odd number of hex digits")

    raw = bytes.fromhex(digits)
    if len(raw) < 5:
        raise fail("record is too short")

    length = raw[0]
    if len(raw) != length + 5:
        raise fail(
            f"length field says {length} data bytes, record has {len(raw) - 5}"
        )

    stored = raw[-1]
    expected = record_checksum(raw[:-1])
    if stored != expected:
        raise fail(
            f"checksum mismatch: stored 0x{stored:02X}, computed 0x{expected:02X}"
        )

    try:
        record_type = RecordType(raw[3])
    except ValueError:
        raise fail(f"unknown record type 0x{raw[3]:02X}") from None

    fixed = _PAYLOAD_LENGTHS.get(record_type)
    if fixed is not None and length != fixed:
        raise fail(
            f"{record_type.name} record must carry {fixed} data bytes, got {length}"
        )

    return HexRecord(
        record_type=record_type,
        offset=int.from_bytes(raw[1:3], "big"),
        data=raw[4:-1],
        checksum=stored,
        line=line,
    )


def parse_hex(lines: Iterable[str], filename: str = "<input>") -> Iterator[HexRecord]:
    """
    Decode records from text lines.

    Blank lines are skipped. Iteration stops after the END_OF_FILE record;
    anything after it is not read.

    Raises:
        HexParseError: On the first malformed record.
    """
    for number, text in enumerate(lines, start=1):
        if not text.strip():
            continue
        record = parse_record(text, number, filename)
        yield record
        if record.record_type == RecordType.END_OF_FILE:
            return


def format_record(record_type: int, offset: int, data: bytes = b"") -> str:
    """Encode one record line; the inverse of parse_record."""
    body = bytes([len(data)]) + offset.to_bytes(2, "big") + bytes([record_type]) + data
    return ":" + (body + bytes([record_checksum(body)])).hex().upper()
