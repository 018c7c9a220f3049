"""
Flash Session Orchestrator
==========================

This module runs complete identify and flash operations. A FlashSession
owns the serial link for its lifetime and walks an explicit state
machine:

    IDLE ─► CONNECTING ─► ENTERING_BOOT ─► HANDSHAKING ─► IDENTIFYING
                                                              │
          ┌──────────────── (identify) ◄──────────────────────┤
          │                                                   ▼
          │            RUNNING ◄── VERIFYING ◄── WRITING ◄── ERASING
          │               │            │            │
          ▼               ▼            ▼            ▼
    DISCONNECTING ◄──────────────────────────────────────────── ─► DONE

Any error moves the session to FAILED, which is terminal. The link is
closed and the port released on every path, success or failure.

Events
------
Front ends receive ProgressEvent and LogEvent objects through a sink,
any callable taking one event (for example ``queue.Queue.put`` when the
session runs on a worker thread). Events arrive in the order they were
generated. LogEvents are produced by a logging.Handler attached to the
``probe_flasher`` logger for the duration of the call, so everything the
package logs at INFO and above reaches the sink.

Results
-------
identify() and flash() never raise for device or file problems. They
return an IdentifyResult or FlashResult whose ``outcome`` is Done or
Failed; Failed carries the ErrorKind, the phase and, where known, the
target address.
"""

import logging
import threading
import time
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Final, Iterator, Optional, Union

from probe_flasher.comms.boot import BootMode, BootSequencer, get_boot_config
from probe_flasher.comms.commands import (
    Bootloader,
    BootloaderInfo,
    Command,
    EraseTarget,
    MassErase,
    SectorRange,
    check_write_support,
)
from probe_flasher.comms.link import BootloaderLink, TraceSink
from probe_flasher.comms.serial import (
    PortInfo,
    SerialLink,
    Transport,
    claim_port,
    list_serial_ports,
)
from probe_flasher.config import FlashConfig
from probe_flasher.errors import (
    CommsError,
    ErrorKind,
    FlasherError,
    HexParseError,
    ImageError,
    UnsupportedOperation,
    VerifyError,
)
from probe_flasher.image.builder import (
    DEFAULT_GRANULARITY,
    FirmwareImage,
    WriteChunk,
    load_hex_file,
    pages_for_chunks,
    plan_chunks,
)

logger = logging.getLogger(__name__)

# Logger whose records are forwarded to event sinks
PACKAGE_LOGGER: Final[str] = "probe_flasher"


# =============================================================================
# States and Transitions
# =============================================================================

class SessionState(Enum):
    """Phases of a session. The value is the phase name used in events."""

    IDLE = "idle"
    CONNECTING = "connecting"
    ENTERING_BOOT = "entering-boot"
    HANDSHAKING = "handshaking"
    IDENTIFYING = "identifying"
    ERASING = "erasing"
    WRITING = "writing"
    VERIFYING = "verifying"
    RUNNING = "running"
    DISCONNECTING = "disconnecting"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.DONE, SessionState.FAILED)


_S = SessionState

_FORWARD: Final[dict[SessionState, frozenset[SessionState]]] = {
    _S.IDLE: frozenset({_S.CONNECTING}),
    _S.CONNECTING: frozenset({_S.ENTERING_BOOT}),
    _S.ENTERING_BOOT: frozenset({_S.HANDSHAKING}),
    _S.HANDSHAKING: frozenset({_S.IDENTIFYING}),
    _S.IDENTIFYING: frozenset({_S.ERASING, _S.DISCONNECTING}),
    _S.ERASING: frozenset({_S.WRITING}),
    _S.WRITING: frozenset({_S.VERIFYING, _S.RUNNING, _S.DISCONNECTING}),
    _S.VERIFYING: frozenset({_S.RUNNING, _S.DISCONNECTING}),
    _S.RUNNING: frozenset({_S.DISCONNECTING}),
    _S.DISCONNECTING: frozenset({_S.DONE}),
    _S.DONE: frozenset(),
    _S.FAILED: frozenset(),
}

# FAILED is reachable from every non-terminal state
TRANSITIONS: Final[dict[SessionState, frozenset[SessionState]]] = {
    state: targets if state.is_terminal else targets | {_S.FAILED}
    for state, targets in _FORWARD.items()
}


# =============================================================================
# Events and Outcomes
# =============================================================================

@dataclass(frozen=True)
class ProgressEvent:
    """Progress snapshot: ``done`` of ``total`` units finished in ``phase``."""

    phase: str
    percent: int
    done: int
    total: int

    def __str__(self) -> str:
        return f"{self.phase}: {self.done}/{self.total} ({self.percent}%)"


@dataclass(frozen=True)
class LogEvent:
    """A log line for presentation. ``timestamp`` is local time, HH:MM:SS."""

    level: str
    message: str
    timestamp: str

    def __str__(self) -> str:
        return f"[{self.timestamp}] {self.level.upper()}: {self.message}"


Event = Union[ProgressEvent, LogEvent]
EventSink = Callable[[Event], None]

# Factory opening the transport: (device, baud_rate, timeout) -> Transport
TransportFactory = Callable[[str, int, float], Transport]


@dataclass(frozen=True)
class Done:
    """Successful outcome."""

    elapsed: float


@dataclass(frozen=True)
class Failed:
    """
    Failed outcome.

    Attributes:
        kind: ErrorKind of the originating error
        message: Error description
        phase: Phase name in which the error occurred
        address: Target address involved, if any
    """

    kind: ErrorKind
    message: str
    phase: Optional[str] = None
    address: Optional[int] = None

    def __str__(self) -> str:
        text = f"{self.kind.value}: {self.message}"
        if self.address is not None:
            text += f" at 0x{self.address:08X}"
        if self.phase:
            text += f" (during {self.phase})"
        return text


Outcome = Union[Done, Failed]


@dataclass(frozen=True)
class IdentifyResult:
    """Result of identify()."""

    ok: bool
    bootloader_version: Optional[int] = None
    product_id: Optional[int] = None
    supported_commands: tuple[int, ...] = ()
    device_name: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    outcome: Optional[Outcome] = None


@dataclass(frozen=True)
class FlashResult:
    """Result of flash()."""

    ok: bool
    duration_ms: Optional[int] = None
    bytes_written: int = 0
    chunks_written: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    outcome: Optional[Outcome] = None


# =============================================================================
# Log Forwarding
# =============================================================================

class EventLogHandler(logging.Handler):
    """
    Logging handler that turns records into LogEvents.

    Only records from the thread that created the handler are forwarded,
    so sessions running side by side on worker threads keep their logs
    apart.
    """

    def __init__(self, sink: EventSink, level: int = logging.INFO):
        super().__init__(level)
        self.sink = sink
        self.thread_id = threading.get_ident()

    def filter(self, record: logging.LogRecord) -> bool:
        return record.thread == self.thread_id and super().filter(record)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                level=record.levelname.lower(),
                message=record.getMessage(),
                timestamp=time.strftime("%H:%M:%S", time.localtime(record.created)),
            )
            self.sink(event)
        except Exception:
            self.handleError(record)


# Active forward_logs() calls; the first one in lowers the package logger
# level and the last one out restores it
_forwarding_lock = threading.Lock()
_forwarding_count = 0
_saved_level = logging.NOTSET


@contextmanager
def forward_logs(sink: Optional[EventSink], level: int = logging.INFO) -> Iterator[None]:
    """
    Forward package log records at level and above to sink while active.

    Calls may overlap on different threads; each handler keeps its own
    level and thread filter while they share the package logger.
    """
    global _forwarding_count, _saved_level

    if sink is None:
        yield
        return

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    handler = EventLogHandler(sink, level)
    with _forwarding_lock:
        if _forwarding_count == 0:
            _saved_level = package_logger.level
        _forwarding_count += 1
        if package_logger.getEffectiveLevel() > level:
            package_logger.setLevel(level)
        package_logger.addHandler(handler)
    try:
        yield
    finally:
        with _forwarding_lock:
            package_logger.removeHandler(handler)
            _forwarding_count -= 1
            if _forwarding_count == 0:
                package_logger.setLevel(_saved_level)


def open_transport(device: str, baud_rate: int, timeout: float) -> Transport:
    """Default TransportFactory: a pyserial SerialLink."""
    return SerialLink.open(device, baud_rate=baud_rate, timeout=timeout)


# =============================================================================
# Session
# =============================================================================

class FlashSession:
    """
    One identify or flash operation against one serial port.

    A session is single-use: create it, call run_identify() or
    run_flash() once, read the result.
    """

    def __init__(
        self,
        port: str,
        config: Optional[FlashConfig] = None,
        sink: Optional[EventSink] = None,
        transport_factory: Optional[TransportFactory] = None,
        trace: Optional[TraceSink] = None,
    ):
        self.port = port
        self.config = config or FlashConfig()
        self.sink = sink
        self.transport_factory = transport_factory or open_transport
        self.trace = trace

        self.state = SessionState.IDLE
        self.outcome: Optional[Outcome] = None
        self.transport: Optional[Transport] = None
        self.bootloader: Optional[Bootloader] = None
        self.sequencer: Optional[BootSequencer] = None
        self.info: Optional[BootloaderInfo] = None

        self.image: Optional[FirmwareImage] = None
        self.chunks: list[WriteChunk] = []
        self.pages: tuple[int, ...] = ()
        self.chunks_done = 0
        self.bytes_written = 0

        self._resources = ExitStack()
        self._started = 0.0

    # -------------------------------------------------------------------------
    # State Machine
    # -------------------------------------------------------------------------

    def transition(self, new_state: SessionState) -> None:
        """
        Move to new_state.

        Raises:
            RuntimeError: If the transition is not in TRANSITIONS.
        """
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal session transition {self.state.name} -> {new_state.name}"
            )
        logger.debug("Session state %s -> %s", self.state.name, new_state.name)
        self.state = new_state

    def _fail(self, error: Exception) -> Failed:
        phase = self.state.value
        if isinstance(error, FlasherError):
            error.with_context(phase=phase)
            message = error.message
            if isinstance(error, HexParseError):
                message = f"{error.location}: {message}"
            failed = Failed(error.kind, message, error.phase, error.address)
        else:
            logger.exception("Unexpected error during %s", phase)
            failed = Failed(ErrorKind.INTERNAL, str(error) or type(error).__name__, phase)
        logger.error("Failed: %s", failed)
        if not self.state.is_terminal:
            self.transition(SessionState.FAILED)
        self.outcome = failed
        return failed

    def _finish(self) -> None:
        """Close the link and release the port; runs on every path."""
        if self.state is not SessionState.FAILED:
            self.transition(SessionState.DISCONNECTING)
        logger.debug("Disconnecting from %s", self.port)
        self._resources.close()
        self.transport = None
        if self.state is not SessionState.FAILED:
            self.transition(SessionState.DONE)
            self.outcome = Done(time.monotonic() - self._started)

    def _emit(self, event: Event) -> None:
        if self.sink is None:
            return
        try:
            self.sink(event)
        except Exception as e:
            logger.debug("Event sink failed: %s", e)

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _connect(self) -> None:
        self.transition(SessionState.CONNECTING)
        config = self.config
        logger.info("Connecting to %s at %d baud", self.port, config.baud_rate)
        logger.debug("Settings: %s", config.describe())

        self._resources.enter_context(claim_port(self.port))
        self.transport = self.transport_factory(
            self.port, config.baud_rate, config.read_timeout
        )
        self._resources.callback(self.transport.close)

        link = BootloaderLink(
            self.transport,
            timeout=config.read_timeout,
            attempts=config.command_attempts,
            trace=self.trace,
        )
        self.bootloader = Bootloader(
            link,
            erase_timeout=config.erase_timeout,
            handshake_attempts=config.handshake_attempts,
        )
        self.sequencer = BootSequencer(self.transport, get_boot_config(config.boot_mode))

    def _enter_boot(self) -> None:
        self.transition(SessionState.ENTERING_BOOT)
        self.sequencer.enter_bootloader()

    def _handshake(self) -> None:
        self.transition(SessionState.HANDSHAKING)
        logger.info("Connecting to bootloader...")
        self.bootloader.synchronize()

    def _identify(self, required: bool) -> None:
        self.transition(SessionState.IDENTIFYING)
        try:
            self.info = self.bootloader.identify()
        except CommsError as e:
            if required:
                raise
            logger.warning("Identification failed, continuing: %s", e)
            self.bootloader.link.flush_input()
            return

        logger.info(
            "Bootloader v%s, product ID %s%s",
            self.info.version_string,
            "unknown" if self.info.product_id is None else f"0x{self.info.product_id:04X}",
            f" ({self.info.device_name})" if self.info.device_name else "",
        )

    def _erase(self) -> None:
        self.transition(SessionState.ERASING)
        target: EraseTarget
        if self.config.erase_mode == "sectors":
            target = SectorRange(self.pages)
            logger.info("Erasing %d page(s)...", len(self.pages))
        else:
            target = MassErase()
            logger.info("Erasing flash...")
        try:
            self.bootloader.erase(target)
        except ValueError as e:
            raise UnsupportedOperation(str(e)) from e

    def _write(self) -> None:
        self.transition(SessionState.WRITING)
        total = len(self.chunks)
        logger.info("Writing %d bytes in %d chunk(s)...", self.image.size, total)

        for chunk in self.chunks:
            self.bootloader.write(chunk.address, chunk.data)
            self.chunks_done += 1
            self.bytes_written += len(chunk.data)
            self._emit(ProgressEvent(
                phase=SessionState.WRITING.value,
                percent=self.chunks_done * 100 // total,
                done=self.chunks_done,
                total=total,
            ))

        logger.info("Wrote %d bytes", self.bytes_written)

    def _verify(self) -> None:
        self.transition(SessionState.VERIFYING)
        total = len(self.chunks)
        logger.info("Verifying...")

        for done, chunk in enumerate(self.chunks, start=1):
            actual = self.bootloader.read(chunk.address, len(chunk.data))
            if actual != chunk.data:
                offset = next(
                    i for i, (a, b) in enumerate(zip(actual, chunk.data)) if a != b
                )
                raise VerifyError(
                    chunk.address + offset, chunk.data[offset], actual[offset]
                )
            self._emit(ProgressEvent(
                phase=SessionState.VERIFYING.value,
                percent=done * 100 // total,
                done=done,
                total=total,
            ))

        logger.info("Verification passed")

    def _run(self) -> None:
        self.transition(SessionState.RUNNING)
        address = self.config.start_address
        if address is None:
            address = self.image.base_address

        go_supported = self.info is None or self.info.supports(Command.GO)
        if go_supported:
            logger.info("Starting application at 0x%08X...", address)
            try:
                self.bootloader.go(address)
            except CommsError as e:
                logger.warning("GO failed (%s), trying a hardware reset", e)
            else:
                self.sequencer.release_boot_select()
                return

        if self.sequencer.config.drives_lines:
            logger.info("Resetting target to run the application...")
            self.sequencer.leave_bootloader()
        else:
            logger.warning(
                "Cannot start the application: GO unavailable and boot mode "
                "'%s' has no reset line; reset the target by hand",
                self.config.boot_mode.value,
            )

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def prepare(self, image: FirmwareImage) -> None:
        """
        Plan the writes (and erase pages) for image.

        Raises:
            ImageError: If the image cannot be placed in flash.
        """
        self.image = image
        self.chunks = plan_chunks(
            image,
            max_chunk_size=self.config.max_chunk_size,
            granularity=DEFAULT_GRANULARITY,
        )
        if self.config.erase_mode == "sectors":
            try:
                self.pages = pages_for_chunks(
                    self.chunks, self.config.flash_base, self.config.page_size
                )
            except ValueError as e:
                raise ImageError(str(e)) from e

    def run_identify(self) -> IdentifyResult:
        """Connect, enter the bootloader and identify it."""
        self._started = time.monotonic()
        try:
            self._connect()
            self._enter_boot()
            self._handshake()
            self._identify(required=True)
        except Exception as e:
            self._fail(e)
        finally:
            self._finish()

        if isinstance(self.outcome, Failed):
            return IdentifyResult(
                ok=False,
                error=str(self.outcome),
                error_kind=self.outcome.kind,
                outcome=self.outcome,
            )
        return IdentifyResult(
            ok=True,
            bootloader_version=self.info.version,
            product_id=self.info.product_id,
            supported_commands=self.info.commands,
            device_name=self.info.device_name,
            outcome=self.outcome,
        )

    def run_flash(self, image: FirmwareImage) -> FlashResult:
        """Erase, write and optionally verify and start image."""
        self._started = time.monotonic()
        try:
            self.prepare(image)
            self._connect()
            self._enter_boot()
            self._handshake()
            self._identify(required=self.config.identify_required)
            if self.info is not None:
                check_write_support(self.info)
            self._erase()
            self._write()
            if self.config.verify:
                self._verify()
            if self.config.reset_after:
                self._run()
        except Exception as e:
            self._fail(e)
        finally:
            self._finish()

        return self._flash_result()

    def _flash_result(self) -> FlashResult:
        if isinstance(self.outcome, Failed):
            return FlashResult(
                ok=False,
                bytes_written=self.bytes_written,
                chunks_written=self.chunks_done,
                error=str(self.outcome),
                error_kind=self.outcome.kind,
                outcome=self.outcome,
            )
        logger.info("Flash complete in %.1fs", self.outcome.elapsed)
        return FlashResult(
            ok=True,
            duration_ms=int(self.outcome.elapsed * 1000),
            bytes_written=self.bytes_written,
            chunks_written=self.chunks_done,
            outcome=self.outcome,
        )


# =============================================================================
# Convenience Functions
# =============================================================================

def list_ports() -> list[PortInfo]:
    """List serial ports that could reach a bootloader."""
    return list_serial_ports()


def _session_config(
    config: Optional[FlashConfig], **overrides
) -> FlashConfig:
    return (config or FlashConfig()).with_overrides(**overrides)


def identify(
    port: str,
    baud: Optional[int] = None,
    boot_mode: Optional[Union[BootMode, str]] = None,
    config: Optional[FlashConfig] = None,
    sink: Optional[EventSink] = None,
    transport_factory: Optional[TransportFactory] = None,
    trace: Optional[TraceSink] = None,
) -> IdentifyResult:
    """
    Identify the bootloader on port.

    Args:
        port: Serial device (e.g. '/dev/ttyUSB0', 'COM5').
        baud: Baud rate; overrides config.
        boot_mode: Boot mode or its name; overrides config.
        config: Base settings (default: FlashConfig()).
        sink: Receives LogEvents.
        transport_factory: Opens the transport (default: pyserial).
        trace: Receives raw TX/RX bytes.

    Returns:
        IdentifyResult; ``ok`` is False on any failure.
    """
    with forward_logs(sink):
        try:
            config = _session_config(config, baud_rate=baud, boot_mode=boot_mode)
        except ValueError as e:
            logger.error("Invalid settings: %s", e)
            failed = Failed(ErrorKind.INTERNAL, str(e), SessionState.IDLE.value)
            return IdentifyResult(
                ok=False, error=str(failed), error_kind=failed.kind, outcome=failed
            )
        session = FlashSession(port, config, sink, transport_factory, trace)
        return session.run_identify()


def flash(
    port: str,
    hex_path: Union[str, Path],
    baud: Optional[int] = None,
    boot_mode: Optional[Union[BootMode, str]] = None,
    reset_after: Optional[bool] = None,
    config: Optional[FlashConfig] = None,
    sink: Optional[EventSink] = None,
    transport_factory: Optional[TransportFactory] = None,
    trace: Optional[TraceSink] = None,
) -> FlashResult:
    """
    Flash an Intel HEX file through the bootloader on port.

    The file is read, validated and planned before the port is opened;
    a bad file never touches the target.

    Args:
        port: Serial device.
        hex_path: Path to the Intel HEX file.
        baud: Baud rate; overrides config.
        boot_mode: Boot mode or its name; overrides config.
        reset_after: Start the application afterwards; overrides config.
        config: Base settings (default: FlashConfig()).
        sink: Receives ProgressEvents and LogEvents.
        transport_factory: Opens the transport (default: pyserial).
        trace: Receives raw TX/RX bytes.

    Returns:
        FlashResult; ``ok`` is False on any failure.
    """
    with forward_logs(sink):
        try:
            config = _session_config(
                config, baud_rate=baud, boot_mode=boot_mode, reset_after=reset_after
            )
        except ValueError as e:
            logger.error("Invalid settings: %s", e)
            failed = Failed(ErrorKind.INTERNAL, str(e), SessionState.IDLE.value)
            return FlashResult(
                ok=False, error=str(failed), error_kind=failed.kind, outcome=failed
            )

        session = FlashSession(port, config, sink, transport_factory, trace)
        try:
            image = load_hex_file(hex_path)
        except ImageError as e:
            session._fail(e)
            return session._flash_result()
        return session.run_flash(image)
