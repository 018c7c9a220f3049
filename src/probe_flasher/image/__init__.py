"""
Firmware Image Handling
=======================

Reads Intel HEX files and turns them into write plans for the bootloader.

Module Structure
----------------
- **records**: Intel HEX record decoding and validation
- **builder**: Segment merging, overlap detection and chunk planning

Quick Start
-----------
    from probe_flasher.image import load_hex_file, plan_chunks

    image = load_hex_file("firmware.hex")
    for chunk in plan_chunks(image):
        print(f"0x{chunk.address:08X}: {len(chunk.data)} bytes")
"""

# =============================================================================
# Public API Exports
# =============================================================================

from probe_flasher.image.records import (
    HexRecord,
    RecordType,
    format_record,
    parse_hex,
    parse_record,
    record_checksum,
)

from probe_flasher.image.builder import (
    DEFAULT_CHUNK_SIZE,
    DEFAULT_FLASH_BASE,
    DEFAULT_GRANULARITY,
    DEFAULT_PAGE_SIZE,
    FILL_BYTE,
    FirmwareImage,
    MemorySegment,
    WriteChunk,
    build_image,
    load_hex_file,
    pages_for_chunks,
    plan_chunks,
)

__all__ = [
    # Records
    "HexRecord",
    "RecordType",
    "format_record",
    "parse_hex",
    "parse_record",
    "record_checksum",
    # Builder constants
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_FLASH_BASE",
    "DEFAULT_GRANULARITY",
    "DEFAULT_PAGE_SIZE",
    "FILL_BYTE",
    # Builder
    "FirmwareImage",
    "MemorySegment",
    "WriteChunk",
    "build_image",
    "load_hex_file",
    "pages_for_chunks",
    "plan_chunks",
]
