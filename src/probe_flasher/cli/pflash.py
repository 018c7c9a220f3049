"""
probe-flasher - STM32 UART Bootloader Command-Line Interface
============================================================

This module implements the command-line interface for flashing STM32
microcontrollers through the ROM bootloader's UART protocol.

Usage Examples
--------------
List available serial ports:
    $ probe-flasher ports

Show the supported DTR/RTS wiring conventions:
    $ probe-flasher modes

Identify the bootloader:
    $ probe-flasher -p /dev/ttyUSB0 identify

Flash a HEX file and start it:
    $ probe-flasher -p COM5 flash firmware.hex

Flash, verify, and leave the target in the bootloader:
    $ probe-flasher -p COM5 flash --verify --no-reset firmware.hex

Check a HEX file without touching hardware:
    $ probe-flasher check firmware.hex

Hardware Setup
--------------
Connect the adapter's TX/RX to the target's USART1 (PA9/PA10 on most
parts) and wire DTR/RTS to NRST/BOOT0 as described by the chosen boot
mode. With ``-m none``, set BOOT0 and reset the target by hand first.

Settings can also come from PROBE_FLASHER_* environment variables; see
probe_flasher.config. Command-line options take precedence.

Exit Codes
----------
0 - Success
1 - Link, bootloader or verification error
2 - Invalid arguments or HEX file error
3 - Internal error
"""

import logging
from typing import Optional

import click

from probe_flasher import __version__
from probe_flasher.cli.errors import ExitCode, fail, handle_cli_exception
from probe_flasher.comms.boot import BOOT_MODES, BootMode
from probe_flasher.comms.serial import (
    VALID_BAUD_RATES,
    find_usb_serial_port,
    format_port_list,
)
from probe_flasher.comms.session import (
    Event,
    ProgressEvent,
    flash as flash_image,
    identify as identify_device,
    list_ports,
)
from probe_flasher.config import ERASE_MODES, FlashConfig
from probe_flasher.errors import ImageError
from probe_flasher.image import load_hex_file, pages_for_chunks, plan_chunks

# Configure logging
logger = logging.getLogger(__name__)


# =============================================================================
# CLI Context and Utilities
# =============================================================================

class Context:
    """
    Shared context for CLI commands.

    Stores the port, verbosity and the settings merged from the
    environment and the group options.
    """

    def __init__(self) -> None:
        self.port: Optional[str] = None
        self.verbose: bool = False
        self.trace: bool = False
        self.config: FlashConfig = FlashConfig()

    def setup_logging(self) -> None:
        """Configure logging based on verbosity."""
        level = logging.DEBUG if self.verbose else logging.INFO
        logging.basicConfig(
            level=level,
            format="%(levelname)s: %(message)s" if self.verbose else "%(message)s",
        )

    def require_port(self) -> str:
        """Return the selected port, auto-detecting one if none was given."""
        port = self.port or find_usb_serial_port()
        if not port:
            click.echo("Error: No serial port specified and auto-detect failed.", err=True)
            click.echo("Use --port or 'probe-flasher ports' to find available ports.", err=True)
            raise SystemExit(ExitCode.INVALID_ARGS)
        return port

    def trace_sink(self):
        """Raw byte printer for --trace, or None."""
        if not self.trace:
            return None

        def echo_trace(direction: str, data: bytes) -> None:
            click.echo(f"{direction} {data.hex(' ')}", err=True)

        return echo_trace


pass_context = click.make_pass_decorator(Context, ensure=True)


def progress_bar(current: int, total: int, label: str = "") -> None:
    """Simple text progress bar for chunk transfers."""
    if total == 0:
        return
    percent = current * 100 // total
    filled = percent // 2
    bar = "=" * filled + "-" * (50 - filled)
    click.echo(f"\r{label}[{bar}] {percent:3d}% ({current}/{total} chunks)", nl=False)
    if current >= total:
        click.echo()  # Newline at end


def show_progress(event: Event) -> None:
    """Event sink: draw ProgressEvents; log lines are printed by logging."""
    if isinstance(event, ProgressEvent):
        progress_bar(event.done, event.total, f"{event.phase.capitalize():<10}")


# =============================================================================
# Main CLI Group
# =============================================================================

@click.group()
@click.option(
    "-p", "--port",
    type=str,
    default=None,
    help="Serial port device (auto-detect if not specified)",
)
@click.option(
    "-b", "--baud",
    type=click.Choice([str(b) for b in VALID_BAUD_RATES]),
    default=None,
    help="Baud rate (default: 115200)",
)
@click.option(
    "-m", "--boot-mode",
    type=click.Choice([m.value for m in BootMode]),
    default=None,
    help="DTR/RTS wiring convention (default: dtr-low-rts-high)",
)
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable verbose output",
)
@click.option(
    "--timeout",
    type=float,
    default=None,
    help="Reply timeout in seconds (default: 0.8)",
)
@click.option(
    "--trace",
    is_flag=True,
    help="Print every byte sent and received",
)
@click.version_option(version=__version__, prog_name="probe-flasher")
@pass_context
def main(
    ctx: Context,
    port: Optional[str],
    baud: Optional[str],
    boot_mode: Optional[str],
    verbose: bool,
    timeout: Optional[float],
    trace: bool,
) -> None:
    """
    Flash STM32 microcontrollers through the UART bootloader.

    The target is reset into its ROM bootloader with the adapter's DTR and
    RTS lines, programmed from an Intel HEX file and started again.

    Use 'probe-flasher ports' to list available serial ports and
    'probe-flasher modes' to pick the boot mode matching your wiring.
    """
    ctx.port = port
    ctx.verbose = verbose
    ctx.trace = trace
    ctx.setup_logging()

    try:
        ctx.config = FlashConfig.from_env().with_overrides(
            baud_rate=int(baud) if baud else None,
            boot_mode=boot_mode,
            read_timeout=timeout,
        )
    except ValueError as e:
        handle_cli_exception(e, verbose)


# =============================================================================
# Ports Command
# =============================================================================

@main.command()
@click.option(
    "--detailed", "-d",
    is_flag=True,
    help="Show detailed port information",
)
def ports(detailed: bool) -> None:
    """
    List available serial ports.

    USB-serial adapters are marked with '*'.

    Example:
        probe-flasher ports
        probe-flasher ports --detailed
    """
    port_list = list_ports()

    if not port_list:
        click.echo("No serial ports found.")
        click.echo("\nTips:")
        click.echo("  - Connect your USB-serial adapter")
        click.echo("  - On Linux, ensure you have permission (dialout group)")
        return

    click.echo("Available serial ports:")
    click.echo(format_port_list(port_list, verbose=detailed))

    auto_port = find_usb_serial_port()
    if auto_port:
        click.echo(f"\nSuggested port: {auto_port}")
    else:
        click.echo("\nNo USB-serial adapter auto-detected.")


# =============================================================================
# Modes Command
# =============================================================================

@main.command()
def modes() -> None:
    """
    List boot modes and the line levels they use.

    The first line named is wired to NRST, the second to BOOT0.
    """
    for mode, config in BOOT_MODES.items():
        if not config.drives_lines:
            description = "no line changes (enter the bootloader by hand)"
        else:
            description = (
                f"{config.reset_line.name} {config.reset_level.name.lower()} = reset"
            )
            if config.boot_line is not None:
                description += (
                    f", {config.boot_line.name} "
                    f"{config.boot_level.name.lower()} = bootloader"
                )
        click.echo(f"  {mode.value:<20} {description}")


# =============================================================================
# Identify Command
# =============================================================================

@main.command()
@pass_context
def identify(ctx: Context) -> None:
    """
    Identify the bootloader and the chip.

    Resets the target into the bootloader and prints the protocol version,
    product ID and supported commands.

    Example:
        probe-flasher -p /dev/ttyUSB0 identify
        probe-flasher -p COM5 -m rts-low-dtr-high identify
    """
    port = ctx.require_port()
    click.echo(f"Identifying bootloader on {port}...")

    result = identify_device(
        port, config=ctx.config, sink=show_progress, trace=ctx.trace_sink()
    )
    if not result.ok:
        fail(result.error, result.error_kind)

    version = result.bootloader_version
    click.echo(f"\nBootloader version: {version >> 4}.{version & 0x0F} (0x{version:02X})")
    if result.product_id is not None:
        name = f" ({result.device_name})" if result.device_name else ""
        click.echo(f"Product ID:         0x{result.product_id:04X}{name}")
    else:
        click.echo("Product ID:         unknown")
    commands = " ".join(f"{c:02X}" for c in result.supported_commands)
    click.echo(f"Commands:           {commands}")


# =============================================================================
# Flash Command
# =============================================================================

@main.command()
@click.argument("file", type=click.Path(dir_okay=False))
@click.option(
    "--no-reset",
    is_flag=True,
    help="Leave the target in the bootloader after flashing",
)
@click.option(
    "--verify",
    is_flag=True,
    help="Read back and compare after writing",
)
@click.option(
    "--erase",
    "erase_mode",
    type=click.Choice(ERASE_MODES),
    default=None,
    help="Erase the whole flash or only the pages the image uses (default: mass)",
)
@click.option(
    "--start-address",
    type=str,
    default=None,
    help="Address for GO (default: image base address)",
)
@click.option(
    "--require-identify",
    is_flag=True,
    help="Abort if the bootloader cannot be identified",
)
@pass_context
def flash(
    ctx: Context,
    file: str,
    no_reset: bool,
    verify: bool,
    erase_mode: Optional[str],
    start_address: Optional[str],
    require_identify: bool,
) -> None:
    """
    Flash an Intel HEX file.

    FILE is the .hex file to program. It is validated completely before
    the target is touched.

    Example:
        probe-flasher -p /dev/ttyUSB0 flash firmware.hex
        probe-flasher -p COM5 flash --erase sectors --verify firmware.hex
    """
    port = ctx.require_port()

    try:
        config = ctx.config.with_overrides(
            verify=verify or None,
            erase_mode=erase_mode,
            start_address=int(start_address, 0) if start_address else None,
            identify_required=require_identify or None,
            reset_after=False if no_reset else None,
        )
    except ValueError as e:
        handle_cli_exception(e, ctx.verbose)

    click.echo(f"Flashing {file} via {port}...")
    result = flash_image(
        port, file, config=config, sink=show_progress, trace=ctx.trace_sink()
    )
    if not result.ok:
        fail(result.error, result.error_kind)

    click.echo(
        f"\nDone: {result.bytes_written} bytes in {result.chunks_written} chunk(s), "
        f"{result.duration_ms / 1000:.1f}s"
    )


# =============================================================================
# Check Command
# =============================================================================

@main.command()
@click.argument("file", type=click.Path(dir_okay=False))
@pass_context
def check(ctx: Context, file: str) -> None:
    """
    Validate a HEX file and show the write plan.

    No serial port is used.

    Example:
        probe-flasher check firmware.hex
    """
    try:
        image = load_hex_file(file)
        chunks = plan_chunks(image, max_chunk_size=ctx.config.max_chunk_size)
    except ImageError as e:
        handle_cli_exception(e, ctx.verbose)

    click.echo(f"{file}: {image}")
    for segment in image.segments:
        click.echo(
            f"  0x{segment.address:08X}-0x{segment.end_address - 1:08X} "
            f"({len(segment)} bytes)"
        )
    if image.start_address is not None:
        click.echo(f"Start address: 0x{image.start_address:08X}")
    click.echo(f"Write plan: {len(chunks)} chunk(s)")

    try:
        pages = pages_for_chunks(chunks, ctx.config.flash_base, ctx.config.page_size)
    except ValueError:
        click.echo("Image is not inside flash; sector erase is not possible")
    else:
        click.echo(
            f"Sector erase: {len(pages)} page(s) of {ctx.config.page_size} bytes"
        )


if __name__ == "__main__":
    main()
