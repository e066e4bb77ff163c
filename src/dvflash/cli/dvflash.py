"""
dvflash - DM644x Serial Boot and Flash Command-Line Interface
=============================================================

This module implements the command-line interface for booting and flashing
TI DM644x (DaVinci) boards over UART0. The board must be strapped for UART
boot so that its ROM boot loader announces BOOTME on power-up.

Usage Examples
--------------
List available serial ports:
    $ dvflash ports

Send an application to DDR and run it:
    $ dvflash -p /dev/ttyUSB0 boot app.bin

Burn the embedded UBL and U-Boot to NAND:
    $ dvflash flash nand u-boot.bin

Burn your own UBL and an application binary image to NOR:
    $ dvflash flash nor --format bin --ubl my_ubl.bin app.bin

Erase NOR flash:
    $ dvflash erase nor

Power-cycle or reset the board after starting a command; dvflash waits
for the ROM boot loader to announce itself.

Exit Codes
----------
0 - Success
1 - Connection, protocol or device-side failure
2 - Invalid arguments or missing input files
3 - Internal error
"""

import logging
from pathlib import Path
from typing import Optional

import click

from dvflash import __version__
from dvflash.cli.errors import ExitCode, handle_cli_exception
from dvflash.comms import (
    FlashWorker,
    SerialTransport,
    close_serial_port,
    format_port_list,
    get_default_port,
    list_serial_ports,
    open_serial_port,
)
from dvflash.images import get_embedded_loader, read_image_file
from dvflash.plan import (
    COMMAND_FLASH_TYPES,
    COMMAND_OPERATIONS,
    CommandPlan,
    MagicFlag,
    Operation,
    PayloadFormat,
    build_plan,
)

logger = logging.getLogger(__name__)

# Seconds between checks for Ctrl+C while the worker runs
JOIN_INTERVAL = 0.2


# =============================================================================
# CLI Context and Utilities
# =============================================================================

class Context:
    """
    Shared context for CLI commands.

    Stores the options given to the dvflash group.
    """

    def __init__(self) -> None:
        self.port: Optional[str] = None
        self.verbose: bool = False
        self.no_rbl: bool = False
        self.entry_point: Optional[int] = None
        self.loader_dir: Optional[str] = None
        self.token_timeout: Optional[float] = None

    def setup_logging(self) -> None:
        """Configure logging based on verbosity."""
        level = logging.DEBUG if self.verbose else logging.INFO
        logging.basicConfig(
            level=level,
            format="%(levelname)s: %(message)s" if self.verbose else "%(message)s",
        )


pass_context = click.make_pass_decorator(Context, ensure=True)


class AddressType(click.ParamType):
    """
    Click parameter type for hexadecimal addresses.

    Accepts '81080000', '0x81080000' or '0X81080000'.
    """
    name = "address"

    def convert(self, value, param: Optional[click.Parameter],
                ctx: Optional[click.Context]) -> int:
        if isinstance(value, int):
            return value

        text = value.strip()
        if text[:2].lower() == "0x":
            text = text[2:]
        try:
            address = int(text, 16)
        except ValueError:
            self.fail(f"'{value}' is not a hexadecimal address", param, ctx)

        if address > 0xFFFFFFFF:
            self.fail(f"'{value}' does not fit in 32 bits", param, ctx)
        return address


ADDRESS = AddressType()

FLASH_FAMILIES = ("nor", "nand")

BURN_COMMANDS = {
    ("nor", "srec"): MagicFlag.NOR_SREC_BURN,
    ("nor", "bin"): MagicFlag.NOR_BIN_BURN,
    ("nand", "srec"): MagicFlag.NAND_SREC_BURN,
    ("nand", "bin"): MagicFlag.NAND_BIN_BURN,
}

ERASE_COMMANDS = {
    "nor": MagicFlag.NOR_GLOBAL_ERASE,
    "nand": MagicFlag.NAND_GLOBAL_ERASE,
}


def confirm_boot_mode(question: str) -> bool:
    """Ask the operator whether to continue on a board not in UART boot mode."""
    return click.confirm(question, default=False)


def make_plan(
    ctx: Context,
    command: MagicFlag,
    app_file: Optional[str] = None,
    ubl_file: Optional[str] = None,
    payload_format: PayloadFormat = PayloadFormat.SREC,
) -> CommandPlan:
    """
    Load the input images and build the command plan.

    Every file is read before the serial port is opened, so missing input
    never leaves the device half-way through a handshake.
    """
    flash_type = COMMAND_FLASH_TYPES[command]
    operation = COMMAND_OPERATIONS[command]

    app_image = read_image_file(app_file) if app_file else None
    loader_image = read_image_file(ubl_file) if ubl_file else None

    needs_embedded = not ctx.no_rbl or (
        operation == Operation.LOADER_AND_APPLICATION and loader_image is None
    )
    first_stage_image = None
    if needs_embedded:
        first_stage_image = get_embedded_loader(flash_type, ctx.loader_dir)

    return build_plan(
        command,
        app_image=app_image,
        app_name=Path(app_file).name if app_file else "",
        entry_point=ctx.entry_point,
        first_stage_required=not ctx.no_rbl,
        first_stage_image=first_stage_image,
        loader_image=loader_image,
        loader_name=Path(ubl_file).name if ubl_file else "",
        payload_format=payload_format,
    )


def wait_for_worker(worker: FlashWorker) -> None:
    """Join the worker, turning Ctrl+C into a cancellation request."""
    while worker.is_alive():
        try:
            worker.join(JOIN_INTERVAL)
        except KeyboardInterrupt:
            click.echo("\nCancelling...", err=True)
            worker.cancel()


def execute_plan(ctx: Context, plan: CommandPlan) -> None:
    """
    Open the port, run the plan on a worker thread and report the outcome.

    Raises:
        SystemExit: With TRANSFER_ERROR if the run did not succeed.
    """
    port_device = ctx.port or get_default_port()

    click.echo(plan.describe())
    click.echo(f"Using serial port {port_device}.")
    if plan.first_stage_required:
        click.echo("Waiting for the DVEVM (power-cycle or reset the board)...")

    serial_port = open_serial_port(port_device)
    try:
        worker = FlashWorker(
            SerialTransport(serial_port),
            plan,
            verbose=ctx.verbose,
            confirm=confirm_boot_mode,
            token_timeout=ctx.token_timeout,
        )
        worker.start()
        wait_for_worker(worker)
    finally:
        close_serial_port(serial_port)

    if worker.error is not None:
        raise worker.error

    outcome = worker.outcome
    if outcome is None or not outcome.succeeded:
        summary = outcome.summary if outcome else "no result"
        click.echo(f"\nOperation failed: {summary}", err=True)
        raise SystemExit(ExitCode.TRANSFER_ERROR)

    click.echo(f"\n{outcome.summary}")


# =============================================================================
# Main CLI Group
# =============================================================================

@click.group()
@click.option(
    "-p", "--port",
    type=str,
    default=None,
    help="Serial port device (default: /dev/ttyS0, or COM1 on Windows)",
)
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Show all output from the board and debug messages",
)
@click.option(
    "--no-rbl",
    is_flag=True,
    help="Skip the ROM boot loader stage (a UBL is already running)",
)
@click.option(
    "-s", "--start",
    "entry_point",
    type=ADDRESS,
    default=None,
    help="Application entry point in hex (default: 81080000)",
)
@click.option(
    "--loader-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Directory holding ubl_davinci_nor.bin / ubl_davinci_nand.bin",
)
@click.option(
    "--token-timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds to wait for each board response (default: wait forever)",
)
@click.version_option(version=__version__, prog_name="dvflash")
@pass_context
def main(
    ctx: Context,
    port: Optional[str],
    verbose: bool,
    no_rbl: bool,
    entry_point: Optional[int],
    loader_dir: Optional[str],
    token_timeout: Optional[float],
) -> None:
    """
    Boot, flash and erase TI DM644x (DaVinci) boards over UART.

    Set the board to UART boot mode, start a command, then power-cycle or
    reset the board. Use 'dvflash ports' to list available serial ports.
    """
    ctx.port = port
    ctx.verbose = verbose
    ctx.no_rbl = no_rbl
    ctx.entry_point = entry_point
    ctx.loader_dir = loader_dir
    ctx.token_timeout = token_timeout
    ctx.setup_logging()


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

    Example:
        dvflash ports
        dvflash ports --detailed
    """
    port_list = list_serial_ports()

    if not port_list:
        click.echo("No serial ports found.")
        click.echo("\nTips:")
        click.echo("  - Connect your USB-serial adapter")
        click.echo("  - On Linux, ensure you have permission (dialout group)")
        return

    click.echo("Available serial ports:")
    click.echo(format_port_list(port_list, verbose=detailed))
    click.echo(f"\nDefault port: {get_default_port()}")


# =============================================================================
# Application Commands
# =============================================================================

@main.command()
@click.argument("app_file", type=click.Path(dir_okay=False))
@click.option(
    "--raw",
    is_flag=True,
    help="Send a binary application as-is instead of as S-records",
)
@pass_context
def boot(ctx: Context, app_file: str, raw: bool) -> None:
    """
    Send an application to DDR and run it.

    APP_FILE is a binary image or S-record file.

    Example:
        dvflash boot app.bin
        dvflash -s 0x81080000 boot app.srec
    """
    fmt = PayloadFormat.BINARY if raw else PayloadFormat.SREC
    try:
        plan = make_plan(ctx, MagicFlag.SAFE, app_file, payload_format=fmt)
        execute_plan(ctx, plan)
    except Exception as e:
        handle_cli_exception(e, verbose=ctx.verbose)


@main.command()
@click.argument("app_file", type=click.Path(dir_okay=False))
@pass_context
def restore(ctx: Context, app_file: str) -> None:
    """
    Restore NOR flash with a bootable application.

    APP_FILE is the NOR boot image (binary or S-record).

    Example:
        dvflash restore nor_image.bin
    """
    try:
        plan = make_plan(ctx, MagicFlag.NOR_RESTORE, app_file)
        execute_plan(ctx, plan)
    except Exception as e:
        handle_cli_exception(e, verbose=ctx.verbose)


@main.command()
@click.argument("family", type=click.Choice(FLASH_FAMILIES, case_sensitive=False))
@click.argument("app_file", type=click.Path(dir_okay=False))
@click.option(
    "--format", "image_format",
    type=click.Choice(["srec", "bin"], case_sensitive=False),
    default="srec",
    help="How the board writes the application: as S-records or raw binary",
)
@click.option(
    "--ubl", "ubl_file",
    type=click.Path(dir_okay=False),
    default=None,
    help="Burn this UBL instead of the embedded one",
)
@click.option(
    "--raw",
    is_flag=True,
    help="Send a binary application as-is instead of as S-records",
)
@pass_context
def flash(
    ctx: Context,
    family: str,
    app_file: str,
    image_format: str,
    ubl_file: Optional[str],
    raw: bool,
) -> None:
    """
    Burn a UBL and an application to NOR or NAND flash.

    FAMILY is nor or nand. APP_FILE is the application (for example
    U-Boot) to write after the UBL.

    Example:
        dvflash flash nand u-boot.bin
        dvflash flash nor --format bin --ubl my_ubl.bin app.bin
    """
    command = BURN_COMMANDS[(family.lower(), image_format.lower())]
    fmt = PayloadFormat.BINARY if raw else PayloadFormat.SREC
    try:
        plan = make_plan(ctx, command, app_file, ubl_file, payload_format=fmt)
        execute_plan(ctx, plan)
    except Exception as e:
        handle_cli_exception(e, verbose=ctx.verbose)


@main.command()
@click.argument("family", type=click.Choice(FLASH_FAMILIES, case_sensitive=False))
@pass_context
def erase(ctx: Context, family: str) -> None:
    """
    Globally erase NOR or NAND flash.

    Example:
        dvflash erase nor
    """
    try:
        plan = make_plan(ctx, ERASE_COMMANDS[family.lower()])
        execute_plan(ctx, plan)
    except Exception as e:
        handle_cli_exception(e, verbose=ctx.verbose)


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    main()
