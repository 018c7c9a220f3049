"""
Test Configuration for Probe Flasher
====================================

Fixtures shared by all test modules:

- SimulatedBootloader: an in-memory STM32 ROM bootloader implementing the
  Transport protocol. It parses the bytes the host writes, answers with
  ACK/NACK and data, keeps a flash memory map and records everything it
  saw (line changes, erases, writes, GO).
- ScriptedTransport: answers each write with the next canned reply, for
  framing-layer tests that need exact control over replies.
- An autouse fixture replacing time.sleep, so boot sequences and retries
  run instantly. The requested delays are recorded.
"""

import time
from collections import deque
from typing import Optional

import pytest

from probe_flasher.comms.checksum import xor_checksum
from probe_flasher.image.records import RecordType, format_record

ACK = 0x79
NACK = 0x1F
SYNC = 0x7F

GET = 0x00
GET_VERSION = 0x01
GET_ID = 0x02
READ_MEMORY = 0x11
GO = 0x21
WRITE_MEMORY = 0x31
ERASE = 0x43
EXTENDED_ERASE = 0x44

ALL_COMMANDS = (
    GET, GET_VERSION, GET_ID, READ_MEMORY, GO, WRITE_MEMORY, EXTENDED_ERASE,
)
LEGACY_COMMANDS = (
    GET, GET_VERSION, GET_ID, READ_MEMORY, GO, WRITE_MEMORY, ERASE,
)


# =============================================================================
# Simulated Bootloader
# =============================================================================

class SimulatedBootloader:
    """
    Scriptable STM32 bootloader behind the Transport interface.

    Args:
        commands: Opcodes reported by GET and accepted by the parser.
        version: Protocol version byte.
        product_id: GET_ID value, or None to NACK GET_ID.
        silent_syncs: Number of sync bytes to ignore before answering.
        sync_reply: Byte sent in answer to the first sync (ACK or NACK).
        silent_commands: {opcode: count} commands to ignore count times.
        nack_write_addresses: WRITE_MEMORY addresses whose address frame
            is NACKed.
        corrupt_reads: Addresses whose byte is inverted when read back.
    """

    def __init__(
        self,
        commands=ALL_COMMANDS,
        version: int = 0x31,
        product_id: Optional[int] = 0x0410,
        silent_syncs: int = 0,
        sync_reply: int = ACK,
        silent_commands: Optional[dict[int, int]] = None,
        nack_write_addresses=(),
        corrupt_reads=(),
    ):
        self.commands = tuple(commands)
        self.version = version
        self.product_id = product_id
        self.silent_syncs = silent_syncs
        self.sync_reply = sync_reply
        self.silent_commands = dict(silent_commands or {})
        self.nack_write_addresses = set(nack_write_addresses)
        self.corrupt_reads = set(corrupt_reads)

        self.memory: dict[int, int] = {}
        self.tx = bytearray()          # everything the host wrote
        self.rx = bytearray()          # pending replies for the host
        self.line_actions: list[tuple[str, bool]] = []
        self.erases: list[tuple[str, object]] = []
        self.writes: list[tuple[int, bytes]] = []
        self.reads: list[tuple[int, int]] = []
        self.go_address: Optional[int] = None
        self.input_flushes = 0
        self.closed = False

        self._parser = self._protocol()
        next(self._parser)

    # -------------------------------------------------------------------------
    # Transport interface
    # -------------------------------------------------------------------------

    def write(self, data: bytes) -> None:
        self.tx.extend(data)
        for byte in data:
            if self._parser is None:
                return
            try:
                self._parser.send(byte)
            except StopIteration:
                self._parser = None

    def read(self, size: int, timeout: float) -> bytes:
        data = bytes(self.rx[:size])
        del self.rx[:size]
        return data

    def set_dtr(self, level: bool) -> None:
        self.line_actions.append(("dtr", level))

    def set_rts(self, level: bool) -> None:
        self.line_actions.append(("rts", level))

    def reset_input_buffer(self) -> None:
        self.input_flushes += 1
        self.rx.clear()

    def close(self) -> None:
        self.closed = True

    # -------------------------------------------------------------------------
    # Helpers for tests
    # -------------------------------------------------------------------------

    def read_back(self, address: int, length: int) -> bytes:
        return bytes(self.memory.get(address + i, 0xFF) for i in range(length))

    @property
    def written_addresses(self) -> list[int]:
        return [address for address, _ in self.writes]

    # -------------------------------------------------------------------------
    # Protocol
    # -------------------------------------------------------------------------

    def _reply(self, *data: int) -> None:
        self.rx.extend(data)

    def _take(self, count: int):
        data = bytearray()
        while len(data) < count:
            data.append((yield))
        return bytes(data)

    def _address(self):
        frame = yield from self._take(5)
        if xor_checksum(frame) != 0:
            return None
        return int.from_bytes(frame[:4], "big")

    def _protocol(self):
        # Auto-baud: wait for an answered sync byte
        while True:
            byte = yield
            if byte != SYNC:
                continue
            if self.silent_syncs > 0:
                self.silent_syncs -= 1
                continue
            self._reply(self.sync_reply)
            break

        while True:
            opcode = yield
            if opcode == SYNC:
                # Already synchronized
                self._reply(NACK)
                continue
            check = yield
            if opcode ^ check != 0xFF or opcode not in self.commands:
                self._reply(NACK)
                continue
            if self.silent_commands.get(opcode, 0) > 0:
                self.silent_commands[opcode] -= 1
                continue

            handler = {
                GET: self._get,
                GET_VERSION: self._get_version,
                GET_ID: self._get_id,
                READ_MEMORY: self._read_memory,
                GO: self._go,
                WRITE_MEMORY: self._write_memory,
                ERASE: self._erase,
                EXTENDED_ERASE: self._extended_erase,
            }[opcode]
            running = yield from handler()
            if running:
                return

    def _get(self):
        self._reply(ACK, len(self.commands), self.version, *self.commands, ACK)
        return False
        yield

    def _get_version(self):
        self._reply(ACK, self.version, 0x00, 0x00, ACK)
        return False
        yield

    def _get_id(self):
        if self.product_id is None:
            self._reply(NACK)
            return False
        self._reply(ACK, 0x01, self.product_id >> 8, self.product_id & 0xFF, ACK)
        return False
        yield

    def _read_memory(self):
        self._reply(ACK)
        address = yield from self._address()
        if address is None:
            self._reply(NACK)
            return False
        self._reply(ACK)
        n, check = yield from self._take(2)
        if n ^ check != 0xFF:
            self._reply(NACK)
            return False
        self._reply(ACK)
        data = bytearray(self.read_back(address, n + 1))
        for i in range(len(data)):
            if address + i in self.corrupt_reads:
                data[i] ^= 0xFF
        self.reads.append((address, n + 1))
        self._reply(*data)
        return False

    def _go(self):
        self._reply(ACK)
        address = yield from self._address()
        if address is None:
            self._reply(NACK)
            return False
        self._reply(ACK)
        self.go_address = address
        return True

    def _write_memory(self):
        self._reply(ACK)
        address = yield from self._address()
        if address is None or address in self.nack_write_addresses:
            self._reply(NACK)
            return False
        self._reply(ACK)
        n = (yield from self._take(1))[0]
        data = yield from self._take(n + 1)
        checksum = (yield from self._take(1))[0]
        if xor_checksum(data, n) != checksum:
            self._reply(NACK)
            return False
        for i, value in enumerate(data):
            self.memory[address + i] = value
        self.writes.append((address, data))
        self._reply(ACK)
        return False

    def _erase(self):
        self._reply(ACK)
        n = (yield from self._take(1))[0]
        if n == 0xFF:
            yield from self._take(1)
            self.erases.append(("legacy", "mass"))
        else:
            pages = yield from self._take(n + 1)
            yield from self._take(1)
            self.erases.append(("legacy", tuple(pages)))
        self.memory.clear()
        self._reply(ACK)
        return False

    def _extended_erase(self):
        self._reply(ACK)
        raw = yield from self._take(2)
        n = int.from_bytes(raw, "big")
        if n == 0xFFFF:
            yield from self._take(1)
            self.erases.append(("extended", "mass"))
        else:
            body = yield from self._take(2 * (n + 1))
            yield from self._take(1)
            pages = tuple(
                int.from_bytes(body[i:i + 2], "big") for i in range(0, len(body), 2)
            )
            self.erases.append(("extended", pages))
        self.memory.clear()
        self._reply(ACK)
        return False


# =============================================================================
# Scripted Transport
# =============================================================================

class ScriptedTransport:
    """
    Transport that answers each write with the next scripted reply.

    An empty reply (b"") simulates silence. Writes beyond the script get
    no reply.
    """

    def __init__(self, *replies: bytes):
        self.replies = deque(replies)
        self.writes: list[bytes] = []
        self.rx = bytearray()
        self.input_flushes = 0
        self.line_actions: list[tuple[str, bool]] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        self.writes.append(bytes(data))
        if self.replies:
            self.rx.extend(self.replies.popleft())

    def read(self, size: int, timeout: float) -> bytes:
        data = bytes(self.rx[:size])
        del self.rx[:size]
        return data

    def set_dtr(self, level: bool) -> None:
        self.line_actions.append(("dtr", level))

    def set_rts(self, level: bool) -> None:
        self.line_actions.append(("rts", level))

    def reset_input_buffer(self) -> None:
        self.input_flushes += 1
        self.rx.clear()

    def close(self) -> None:
        self.closed = True


# =============================================================================
# HEX Helpers
# =============================================================================

def make_hex(blocks: dict[int, bytes], record_size: int = 16, eof: bool = True) -> str:
    """Build Intel HEX text for {address: data} using linear address records."""
    lines = []
    upper = None
    for address, data in sorted(blocks.items()):
        offset = 0
        while offset < len(data):
            where = address + offset
            # Keep each record inside one 64 KiB window
            size = min(record_size, len(data) - offset, 0x10000 - (where & 0xFFFF))
            piece = data[offset:offset + size]
            offset += size
            if where >> 16 != upper:
                upper = where >> 16
                lines.append(format_record(
                    RecordType.EXTENDED_LINEAR_ADDRESS, 0, upper.to_bytes(2, "big")
                ))
            lines.append(format_record(RecordType.DATA, where & 0xFFFF, piece))
    if eof:
        lines.append(format_record(RecordType.END_OF_FILE, 0))
    return "\n".join(lines) + "\n"


def firmware_bytes(size: int, seed: int = 1) -> bytes:
    """Deterministic non-0xFF test pattern."""
    return bytes(((i * 7 + seed) % 0xFE) for i in range(size))


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def sleeps(monkeypatch) -> list[float]:
    """Replace time.sleep; returns the list of requested delays."""
    recorded: list[float] = []
    monkeypatch.setattr(time, "sleep", recorded.append)
    return recorded


@pytest.fixture
def device() -> SimulatedBootloader:
    """A responsive bootloader supporting extended erase."""
    return SimulatedBootloader()


@pytest.fixture
def factory_for():
    """Build a transport factory returning the given transport."""
    def build(transport):
        def open_transport(port: str, baud_rate: int, timeout: float):
            build.opened.append((port, baud_rate, timeout))
            return transport
        return open_transport

    build.opened = []
    return build


@pytest.fixture
def write_hex(tmp_path):
    """Write HEX text for {address: data} to a file and return its path."""
    def write(blocks: dict[int, bytes], name: str = "firmware.hex", **kwargs):
        path = tmp_path / name
        path.write_text(make_hex(blocks, **kwargs))
        return path
    return write
