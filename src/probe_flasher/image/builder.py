"""
Firmware Image Builder
======================

Turns HEX records into a validated memory image and plans the write
commands that transfer it:

    HEX lines ─► HexRecords ─► MemorySegments ─► WriteChunks
                 (records)     (FirmwareImage)   (plan_chunks)

The whole pipeline runs before the serial port is opened, so a corrupt
or ambiguous file never leads to a half-finished erase/write cycle.

Merging Rules
-------------
- Each address may be given a value by several records only if they all
  agree. Disagreement raises OverlapError naming both source lines.
- Adjacent runs are merged, so the resulting segments are sorted,
  non-overlapping and separated by real gaps.

Chunk Planning
--------------
The bootloader writes whole 4-byte words, at most 256 bytes per command.
plan_chunks() widens each segment to word boundaries, joins segments
whose widened ranges touch, fills the holes with the fill byte (0xFF, the
erased flash value) and slices the result into chunks.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Iterable, Optional, Union

from probe_flasher.errors import HexParseError, ImageUnavailable, OverlapError
from probe_flasher.image.records import RecordType, parse_hex

logger = logging.getLogger(__name__)

# Chunk planning defaults
DEFAULT_CHUNK_SIZE: Final[int] = 256
DEFAULT_GRANULARITY: Final[int] = 4
FILL_BYTE: Final[int] = 0xFF

# Flash layout defaults used to compute erase pages
DEFAULT_FLASH_BASE: Final[int] = 0x08000000
DEFAULT_PAGE_SIZE: Final[int] = 1024


# =============================================================================
# Data Types
# =============================================================================

@dataclass(frozen=True)
class MemorySegment:
    """A contiguous run of bytes at an absolute address."""

    address: int
    data: bytes

    @property
    def end_address(self) -> int:
        """First address after the segment."""
        return self.address + len(self.data)

    def __len__(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class FirmwareImage:
    """
    A validated firmware image.

    Attributes:
        segments: Sorted, non-overlapping, non-adjacent segments
        start_address: Entry point from a type 03/05 record, if present
    """

    segments: tuple[MemorySegment, ...]
    start_address: Optional[int] = None

    @property
    def base_address(self) -> int:
        return self.segments[0].address

    @property
    def end_address(self) -> int:
        return self.segments[-1].end_address

    @property
    def size(self) -> int:
        """Number of bytes defined by the file (gaps excluded)."""
        return sum(len(s) for s in self.segments)

    def byte_at(self, address: int) -> Optional[int]:
        for segment in self.segments:
            if segment.address <= address < segment.end_address:
                return segment.data[address - segment.address]
        return None

    def __str__(self) -> str:
        return (
            f"{self.size} bytes in {len(self.segments)} segment(s), "
            f"0x{self.base_address:08X}-0x{self.end_address - 1:08X}"
        )


@dataclass(frozen=True)
class WriteChunk:
    """One WRITE_MEMORY payload."""

    address: int
    data: bytes

    @property
    def end_address(self) -> int:
        return self.address + len(self.data)


# =============================================================================
# Image Building
# =============================================================================

def build_image(lines: Iterable[str], filename: str = "<input>") -> FirmwareImage:
    """
    Parse HEX text lines into a FirmwareImage.

    Args:
        lines: Lines of an Intel HEX file.
        filename: Name used in error messages.

    Raises:
        HexParseError: For malformed records or a file without data.
        OverlapError: If two records disagree about an address.
    """
    # address -> (value, line that first defined it)
    memory: dict[int, tuple[int, int]] = {}
    base = 0
    start_address = None
    seen_eof = False

    for record in parse_hex(lines, filename):
        rtype = record.record_type

        if rtype == RecordType.DATA:
            address = base + record.offset
            for i, value in enumerate(record.data):
                where = (address + i) & 0xFFFFFFFF
                previous = memory.get(where)
                if previous is None:
                    memory[where] = (value, record.line)
                elif previous[0] != value:
                    raise OverlapError(where, previous[1], record.line, filename)
        elif rtype == RecordType.EXTENDED_SEGMENT_ADDRESS:
            base = record.value << 4
        elif rtype == RecordType.EXTENDED_LINEAR_ADDRESS:
            base = record.value << 16
        elif rtype == RecordType.START_SEGMENT_ADDRESS:
            cs, ip = record.value >> 16, record.value & 0xFFFF
            start_address = (cs << 4) + ip
        elif rtype == RecordType.START_LINEAR_ADDRESS:
            start_address = record.value
        elif rtype == RecordType.END_OF_FILE:
            seen_eof = True

    if not seen_eof:
        logger.warning("%s: no END_OF_FILE record; using the records read so far", filename)

    if not memory:
        raise HexParseError("file contains no data records", filename=filename)

    image = FirmwareImage(_merge(memory), start_address)
    logger.debug("Built image from %s: %s", filename, image)
    return image


def _merge(memory: dict[int, tuple[int, int]]) -> tuple[MemorySegment, ...]:
    segments = []
    run_start: Optional[int] = None
    run = bytearray()

    for address in sorted(memory):
        if run_start is not None and address == run_start + len(run):
            run.append(memory[address][0])
            continue
        if run_start is not None:
            segments.append(MemorySegment(run_start, bytes(run)))
        run_start = address
        run = bytearray([memory[address][0]])

    if run_start is not None:
        segments.append(MemorySegment(run_start, bytes(run)))
    return tuple(segments)


def load_hex_file(path: Union[str, Path]) -> FirmwareImage:
    """
    Read and parse an Intel HEX file.

    Raises:
        ImageUnavailable: If the file is missing or unreadable.
        HexParseError: If the content is invalid.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="ascii")
    except FileNotFoundError:
        raise ImageUnavailable(f"HEX file not found: {path}") from None
    except (OSError, UnicodeDecodeError) as e:
        raise ImageUnavailable(f"Cannot read HEX file {path}: {e}") from e

    image = build_image(text.splitlines(), filename=path.name)
    logger.info("Loaded %s: %s", path.name, image)
    return image


# =============================================================================
# Write Planning
# =============================================================================

def plan_chunks(
    image: FirmwareImage,
    max_chunk_size: int = DEFAULT_CHUNK_SIZE,
    granularity: int = DEFAULT_GRANULARITY,
    fill: int = FILL_BYTE,
) -> list[WriteChunk]:
    """
    Split an image into aligned, padded WRITE_MEMORY chunks.

    Every chunk starts on a multiple of granularity, has a length that is a
    multiple of granularity, and is at most max_chunk_size bytes long.
    Chunks are returned in ascending address order.

    Raises:
        ValueError: If the sizes are inconsistent.
    """
    if granularity < 1 or max_chunk_size < granularity or max_chunk_size % granularity:
        raise ValueError(
            f"max_chunk_size ({max_chunk_size}) must be a positive multiple "
            f"of granularity ({granularity})"
        )

    # Widen segments to granularity and join the ranges that touch
    ranges: list[list[int]] = []
    for segment in image.segments:
        start = segment.address - segment.address % granularity
        end = -(-segment.end_address // granularity) * granularity
        if ranges and start <= ranges[-1][1]:
            ranges[-1][1] = max(ranges[-1][1], end)
        else:
            ranges.append([start, end])

    chunks = []
    segments = iter(image.segments)
    pending = next(segments, None)
    for start, end in ranges:
        block = bytearray([fill]) * (end - start)
        while pending is not None and pending.address < end:
            offset = pending.address - start
            block[offset:offset + len(pending)] = pending.data
            pending = next(segments, None)

        for offset in range(0, len(block), max_chunk_size):
            chunks.append(
                WriteChunk(start + offset, bytes(block[offset:offset + max_chunk_size]))
            )

    logger.debug(
        "Planned %d chunk(s) for %d image bytes", len(chunks), image.size
    )
    return chunks


def pages_for_chunks(
    chunks: Iterable[WriteChunk],
    flash_base: int = DEFAULT_FLASH_BASE,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> tuple[int, ...]:
    """
    Return the sorted flash page numbers touched by the chunks.

    Raises:
        ValueError: If a chunk lies below flash_base.
    """
    pages = set()
    for chunk in chunks:
        if chunk.address < flash_base:
            raise ValueError(
                f"Chunk at 0x{chunk.address:08X} is below flash base 0x{flash_base:08X}"
            )
        first = (chunk.address - flash_base) // page_size
        last = (chunk.end_address - 1 - flash_base) // page_size
        pages.update(range(first, last + 1))
    return tuple(sorted(pages))
