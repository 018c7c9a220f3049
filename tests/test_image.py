"""
Tests for Firmware Image Handling
=================================

This module tests Intel HEX decoding and write planning:
- Record validation (start code, digits, length, checksum, type)
- Address records and segment merging
- Overlap detection
- Chunk planning (alignment, size limit, padding)
- Erase page computation
- File loading errors

The intelhex package is used as an independent reference where noted.
"""

import io

import pytest

from probe_flasher.errors import (
    ErrorKind,
    HexParseError,
    ImageUnavailable,
    OverlapError,
)
from probe_flasher.image import (
    FILL_BYTE,
    FirmwareImage,
    MemorySegment,
    RecordType,
    WriteChunk,
    build_image,
    format_record,
    load_hex_file,
    pages_for_chunks,
    parse_hex,
    parse_record,
    plan_chunks,
    record_checksum,
)

from conftest import firmware_bytes, make_hex

EOF = ":00000001FF"


# =============================================================================
# Record Tests
# =============================================================================

class TestParseRecord:
    """Tests for single record decoding."""

    def test_data_record(self):
        """A data record decodes to offset, payload and checksum."""
        record = parse_record(":0300300002337A1E", line=4)
        assert record.record_type == RecordType.DATA
        assert record.offset == 0x0030
        assert record.data == b"\x02\x33\x7a"
        assert record.checksum == 0x1E
        assert record.line == 4

    def test_lowercase_and_whitespace(self):
        """Lowercase digits and trailing whitespace are accepted."""
        record = parse_record(":0300300002337a1e \r\n")
        assert record.data == b"\x02\x33\x7a"

    def test_end_of_file(self):
        record = parse_record(EOF)
        assert record.record_type == RecordType.END_OF_FILE
        assert record.data == b""

    def test_address_value(self):
        """Address records expose their payload as an integer."""
        record = parse_record(format_record(RecordType.EXTENDED_LINEAR_ADDRESS, 0, b"\x08\x00"))
        assert record.value == 0x0800

    def test_checksum_mismatch(self):
        """A wrong checksum names the file, line and both values."""
        with pytest.raises(HexParseError) as excinfo:
            parse_record(":0300300002337A1F", line=5, filename="firmware.hex")
        error = excinfo.value
        assert error.line == 5
        assert str(error).startswith("firmware.hex:5: error: checksum mismatch")
        assert "stored 0x1F, computed 0x1E" in str(error)
        assert error.kind == ErrorKind.HEX_PARSE_ERROR

    @pytest.mark.parametrize("text, message", [
        ("0300300002337A1E", "does not start with ':'"),
        (":", "non-hexadecimal"),
        (":03003000023G7A1E", "non-hexadecimal"),
        (":0300300002337A1", "odd number"),
        (":0000", "too short"),
        (":0400300002337A1E", "length field"),
        (":00000006FA", "unknown record type 0x06"),
        (":0100000100FE", "END_OF_FILE record must carry 0"),
        (":0100000408F3", "EXTENDED_LINEAR_ADDRESS record must carry 2"),
    ])
    def test_malformed_records(self, text, message):
        """Every malformed record is rejected with a specific message."""
        with pytest.raises(HexParseError) as excinfo:
            parse_record(text, line=1)
        assert message in str(excinfo.value)

    def test_format_record(self):
        """format_record produces the canonical uppercase line."""
        assert format_record(RecordType.DATA, 0x0030, b"\x02\x33\x7a") == ":0300300002337A1E"
        assert format_record(RecordType.END_OF_FILE, 0) == EOF

    def test_record_checksum(self):
        assert record_checksum(bytes.fromhex("0300300002337A")) == 0x1E
        assert record_checksum(b"") == 0x00


class TestParseHex:
    """Tests for multi-line decoding."""

    def test_stops_after_eof(self):
        """Lines after END_OF_FILE are never read."""
        records = list(parse_hex([":0300300002337A1E", EOF, "not a record"]))
        assert [r.record_type for r in records] == [RecordType.DATA, RecordType.END_OF_FILE]

    def test_blank_lines_keep_numbering(self):
        """Blank lines are skipped but still counted."""
        records = list(parse_hex(["", ":0300300002337A1E", "", EOF]))
        assert [r.line for r in records] == [2, 4]

    def test_error_reports_line(self):
        with pytest.raises(HexParseError) as excinfo:
            list(parse_hex([":0300300002337A1E", "garbage", EOF], "app.hex"))
        assert excinfo.value.line == 2
        assert excinfo.value.filename == "app.hex"


# =============================================================================
# Image Building Tests
# =============================================================================

class TestBuildImage:
    """Tests for segment building and address records."""

    def test_extended_segment_address(self):
        """Data at segment base 0x2FD0 + offset 0x30 lands at 0x3000."""
        image = build_image([":0200000202FDFD", ":0300300002337A1E", EOF])
        assert image.segments == (MemorySegment(0x3000, b"\x02\x33\x7a"),)
        assert image.base_address == 0x3000
        assert image.size == 3

    def test_extended_linear_address(self):
        """Linear address records set the upper 16 bits."""
        image = build_image(make_hex({0x08000000: b"\x01\x02\x03\x04"}).splitlines())
        assert image.segments == (MemorySegment(0x08000000, b"\x01\x02\x03\x04"),)

    def test_parsing_is_repeatable(self):
        """Parsing the same text twice gives equal images."""
        lines = make_hex({0x08000000: firmware_bytes(100), 0x08000400: b"\xaa" * 8}).splitlines()
        assert build_image(lines) == build_image(lines)

    def test_adjacent_records_merge(self):
        """Consecutive records form one segment."""
        data = firmware_bytes(64)
        image = build_image(make_hex({0x08000000: data}, record_size=16).splitlines())
        assert len(image.segments) == 1
        assert image.segments[0].data == data

    def test_gaps_split_segments(self):
        """Separated data forms sorted, separate segments."""
        image = build_image(make_hex({
            0x08000400: b"\x05\x06",
            0x08000000: b"\x01\x02",
        }).splitlines())
        assert [s.address for s in image.segments] == [0x08000000, 0x08000400]
        assert image.end_address == 0x08000402

    def test_segment_across_64k_boundary(self):
        """Records on both sides of a 64 KiB boundary join up."""
        data = firmware_bytes(32)
        image = build_image(make_hex({0x0800FFF0: data}).splitlines())
        assert image.segments == (MemorySegment(0x0800FFF0, data),)

    def test_identical_overlap_is_tolerated(self):
        """The same bytes written twice are not an error."""
        record = ":0400000001020304F2"
        image = build_image([record, record, EOF])
        assert image.segments == (MemorySegment(0, b"\x01\x02\x03\x04"),)

    def test_conflicting_overlap(self):
        """Different values for one address raise OverlapError."""
        lines = [":0400000001020304F2", ":0400000001020305F1", EOF]
        with pytest.raises(OverlapError) as excinfo:
            build_image(lines, "app.hex")
        error = excinfo.value
        assert error.address == 0x00000003
        assert error.first_line == 1
        assert error.line == 2
        assert error.kind == ErrorKind.HEX_PARSE_ERROR

    def test_no_data(self):
        """A file without data records is rejected."""
        with pytest.raises(HexParseError) as excinfo:
            build_image([EOF], "empty.hex")
        assert "no data records" in str(excinfo.value)

    def test_missing_eof_warns(self, caplog):
        """A file without END_OF_FILE still loads, with a warning."""
        image = build_image([":0300300002337A1E"], "cut.hex")
        assert image.size == 3
        assert "no END_OF_FILE" in caplog.text

    def test_start_linear_address(self):
        lines = [
            ":0300300002337A1E",
            format_record(RecordType.START_LINEAR_ADDRESS, 0, b"\x08\x00\x01\x31"),
            EOF,
        ]
        assert build_image(lines).start_address == 0x08000131

    def test_start_segment_address(self):
        """CS:IP start addresses are converted to linear."""
        lines = [
            ":0300300002337A1E",
            format_record(RecordType.START_SEGMENT_ADDRESS, 0, b"\x10\x00\x20\x00"),
            EOF,
        ]
        assert build_image(lines).start_address == 0x12000

    def test_image_accessors(self):
        image = FirmwareImage((
            MemorySegment(0x08000000, b"\x01\x02"),
            MemorySegment(0x08000010, b"\x03"),
        ))
        assert image.byte_at(0x08000001) == 0x02
        assert image.byte_at(0x08000002) is None
        assert image.byte_at(0x08000010) == 0x03
        assert str(image) == "3 bytes in 2 segment(s), 0x08000000-0x08000010"

    def test_matches_intelhex(self):
        """Byte contents agree with the intelhex package."""
        from intelhex import IntelHex

        reference = IntelHex()
        reference.puts(0x08000000, firmware_bytes(300))
        reference.puts(0x0800FFF8, firmware_bytes(24, seed=5))
        reference.puts(0x20000000, b"\x01\x02\x03")
        reference.start_addr = {"EIP": 0x08000131}
        text = io.StringIO()
        reference.write_hex_file(text)

        image = build_image(text.getvalue().splitlines())
        assert image.start_address == 0x08000131
        assert image.size == len(reference)
        for address in reference.addresses():
            assert image.byte_at(address) == reference[address]

    def test_generated_hex_reads_in_intelhex(self):
        """Records written by format_record are valid Intel HEX."""
        from intelhex import IntelHex

        blocks = {0x08000000: firmware_bytes(40), 0x08020000: b"\xde\xad\xbe\xef"}
        reference = IntelHex(io.StringIO(make_hex(blocks)))
        for address, data in blocks.items():
            assert reference.gets(address, len(data)) == data


# =============================================================================
# Write Planning Tests
# =============================================================================

def assert_valid_plan(image, chunks, max_size=256):
    """Alignment, size and coverage properties every plan must have."""
    for chunk in chunks:
        assert chunk.address % 4 == 0
        assert len(chunk.data) % 4 == 0
        assert 0 < len(chunk.data) <= max_size
    for before, after in zip(chunks, chunks[1:]):
        assert before.end_address <= after.address

    planned = {}
    for chunk in chunks:
        for i, value in enumerate(chunk.data):
            planned[chunk.address + i] = value
    for segment in image.segments:
        for i, value in enumerate(segment.data):
            assert planned[segment.address + i] == value
    for address, value in planned.items():
        if image.byte_at(address) is None:
            assert value == FILL_BYTE


class TestPlanChunks:
    """Tests for chunk planning."""

    def test_plan_properties(self):
        """Plans for assorted layouts are aligned, bounded and complete."""
        images = [
            FirmwareImage((MemorySegment(0x08000000, firmware_bytes(2560)),)),
            FirmwareImage((MemorySegment(0x08000003, firmware_bytes(10)),)),
            FirmwareImage((
                MemorySegment(0x08000000, b"\x01\x02"),
                MemorySegment(0x08000003, b"\x03\x04\x05\x06\x07"),
            )),
            FirmwareImage((
                MemorySegment(0x08000101, firmware_bytes(700)),
                MemorySegment(0x08004000, firmware_bytes(5, seed=9)),
            )),
        ]
        for image in images:
            assert_valid_plan(image, plan_chunks(image))
            assert_valid_plan(image, plan_chunks(image, max_chunk_size=64), max_size=64)

    def test_full_chunks(self):
        """2560 aligned bytes are ten 256-byte chunks."""
        image = FirmwareImage((MemorySegment(0x08000000, firmware_bytes(2560)),))
        chunks = plan_chunks(image)
        assert len(chunks) == 10
        assert [c.address for c in chunks] == [0x08000000 + 256 * i for i in range(10)]

    def test_unaligned_segment_is_padded(self):
        """Padding fills out to word boundaries on both sides."""
        image = FirmwareImage((MemorySegment(0x08000003, b"\x11" * 10),))
        chunks = plan_chunks(image)
        assert chunks == [WriteChunk(0x08000000, b"\xff" * 3 + b"\x11" * 10 + b"\xff" * 3)]

    def test_segments_sharing_a_word_merge(self):
        """Segments whose widened ranges touch become one run."""
        image = FirmwareImage((
            MemorySegment(0x08000000, b"\x01\x02"),
            MemorySegment(0x08000003, b"\x03"),
        ))
        assert plan_chunks(image) == [WriteChunk(0x08000000, b"\x01\x02\xff\x03")]

    def test_distant_segments_stay_apart(self):
        """Large gaps are not filled."""
        image = FirmwareImage((
            MemorySegment(0x08000000, b"\x01\x02\x03\x04"),
            MemorySegment(0x08001000, b"\x05\x06\x07\x08"),
        ))
        assert [c.address for c in plan_chunks(image)] == [0x08000000, 0x08001000]

    def test_custom_fill(self):
        image = FirmwareImage((MemorySegment(0x08000001, b"\x01"),))
        assert plan_chunks(image, fill=0x00) == [WriteChunk(0x08000000, b"\x00\x01\x00\x00")]

    def test_inconsistent_sizes(self):
        image = FirmwareImage((MemorySegment(0x08000000, b"\x01"),))
        with pytest.raises(ValueError):
            plan_chunks(image, max_chunk_size=6)
        with pytest.raises(ValueError):
            plan_chunks(image, max_chunk_size=2)


class TestPagesForChunks:
    """Tests for erase page computation."""

    def test_pages(self):
        """Chunks crossing a page boundary touch both pages."""
        chunks = [
            WriteChunk(0x08000000, b"\x00" * 256),
            WriteChunk(0x08000400, b"\x00" * 8),
            WriteChunk(0x080007FC, b"\x00" * 8),
        ]
        assert pages_for_chunks(chunks) == (0, 1, 2)

    def test_page_size(self):
        chunks = [WriteChunk(0x08004000, b"\x00" * 4)]
        assert pages_for_chunks(chunks, page_size=2048) == (8,)

    def test_below_flash_base(self):
        with pytest.raises(ValueError):
            pages_for_chunks([WriteChunk(0x00000000, b"\x00" * 4)])


# =============================================================================
# File Loading Tests
# =============================================================================

class TestLoadHexFile:
    """Tests for reading HEX files from disk."""

    def test_load(self, write_hex):
        path = write_hex({0x08000000: firmware_bytes(48)})
        image = load_hex_file(path)
        assert image.segments == (MemorySegment(0x08000000, firmware_bytes(48)),)

    def test_accepts_string_path(self, write_hex):
        path = write_hex({0x08000000: b"\x01\x02\x03\x04"})
        assert load_hex_file(str(path)).size == 4

    def test_missing_file(self, tmp_path):
        with pytest.raises(ImageUnavailable) as excinfo:
            load_hex_file(tmp_path / "missing.hex")
        assert excinfo.value.kind == ErrorKind.IMAGE_UNAVAILABLE
        assert "not found" in str(excinfo.value)

    def test_binary_file(self, tmp_path):
        """Non-ASCII content cannot be a HEX file."""
        path = tmp_path / "firmware.bin"
        path.write_bytes(b"\x7fELF\xff\xfe\x00")
        with pytest.raises(ImageUnavailable):
            load_hex_file(path)

    def test_errors_name_the_file(self, tmp_path):
        """Parse errors carry the file's name and the line."""
        path = tmp_path / "bad.hex"
        path.write_text(":0300300002337A1E\n:0300300002337A1F\n:00000001FF\n")
        with pytest.raises(HexParseError) as excinfo:
            load_hex_file(path)
        assert str(excinfo.value).startswith("bad.hex:2: error:")
