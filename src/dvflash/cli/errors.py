"""
CLI Error Handling
==================

Maps exceptions to operator-facing messages and process exit codes.
"""

import sys
import traceback
from enum import IntEnum
from typing import NoReturn

import click


class ExitCode(IntEnum):
    """Exit codes of the dvflash tool."""
    SUCCESS = 0
    TRANSFER_ERROR = 1   # Serial, protocol or device-side failure
    INVALID_ARGS = 2     # Invalid arguments or missing input files
    INTERNAL_ERROR = 3   # Unexpected internal error


def handle_cli_exception(error: Exception, verbose: bool = False) -> NoReturn:
    """
    Report an exception and exit with the matching exit code.

    Args:
        error: The exception that was raised.
        verbose: If True, print the traceback of internal errors.

    Raises:
        SystemExit: Always.
    """
    from dvflash.errors import DVFlashError, MissingInputError, PlanError

    if isinstance(error, (PlanError, MissingInputError)):
        click.echo(f"Error: {error}", err=True)
        sys.exit(ExitCode.INVALID_ARGS)

    elif isinstance(error, DVFlashError):
        click.echo(f"Error: {error}", err=True)
        sys.exit(ExitCode.TRANSFER_ERROR)

    elif isinstance(error, (click.BadParameter, FileNotFoundError, PermissionError)):
        click.echo(f"Error: {error}", err=True)
        sys.exit(ExitCode.INVALID_ARGS)

    else:
        click.echo(f"Internal error: {error}", err=True)
        if verbose:
            traceback.print_exception(type(error), error, error.__traceback__)
        sys.exit(ExitCode.INTERNAL_ERROR)
