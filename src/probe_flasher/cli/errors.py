"""
CLI Error Handling
==================

Maps session failures and exceptions to messages and exit codes.
"""

import sys
import traceback
from enum import IntEnum
from typing import NoReturn, Optional

import click

from probe_flasher.errors import ErrorKind, FlasherError, HexParseError


class ExitCode(IntEnum):
    """Exit codes for probe-flasher."""
    SUCCESS = 0
    FLASH_ERROR = 1      # Link, bootloader or verification failure
    INVALID_ARGS = 2     # Invalid arguments, missing or malformed HEX file
    INTERNAL_ERROR = 3   # Unexpected internal error


def exit_code_for(kind: Optional[ErrorKind]) -> ExitCode:
    """Exit code for a failed session's ErrorKind."""
    if kind is None:
        return ExitCode.SUCCESS
    if kind in (ErrorKind.HEX_PARSE_ERROR, ErrorKind.IMAGE_UNAVAILABLE):
        return ExitCode.INVALID_ARGS
    if kind == ErrorKind.INTERNAL:
        return ExitCode.INTERNAL_ERROR
    return ExitCode.FLASH_ERROR


def fail(message: str, kind: Optional[ErrorKind]) -> NoReturn:
    """Print a failure message to stderr and exit with the kind's code."""
    click.echo(f"Error: {message}", err=True)
    sys.exit(exit_code_for(kind))


def handle_cli_exception(error: Exception, verbose: bool = False) -> NoReturn:
    """
    Exception handler for errors raised outside a session.

    Args:
        error: The exception that was raised
        verbose: If True, print full traceback for internal errors

    Raises:
        SystemExit: Always exits with an appropriate exit code
    """
    if isinstance(error, HexParseError):
        # HexParseError already carries "file:line: error:"
        click.echo(str(error), err=True)
        sys.exit(ExitCode.INVALID_ARGS)

    elif isinstance(error, FlasherError):
        click.echo(f"Error: {error}", err=True)
        sys.exit(exit_code_for(error.kind))

    elif isinstance(error, (click.BadParameter, ValueError)):
        click.echo(f"Error: {error}", err=True)
        sys.exit(ExitCode.INVALID_ARGS)

    else:
        click.echo(f"Internal error: {error}", err=True)
        if verbose:
            traceback.print_exc()
        sys.exit(ExitCode.INTERNAL_ERROR)
