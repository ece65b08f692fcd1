"""Command-line entry point (Typer-based).

Parses service-level options (``--dry-run``, ``--version``,
``--log-level``, ``--log-format``, ``--env-file``), the simulated fleet
size (``--buttons``, ``--wearables``, ``--repeaters``, ``--room``,
``--site``, ``--scenario``) and ``--show-qr``, then hands off to
:meth:`ProvisioningService.run`.

Exit codes: 0 on clean shutdown, 1 for configuration errors, 3 for
runtime errors.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import TYPE_CHECKING, Annotated, get_args

import typer
from pydantic import ValidationError

from deckhand._fleet import FLEET_SCENARIOS
from deckhand._service import FleetPlan, ProvisioningService
from deckhand._settings import LoggingSettings, Settings

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

# ---------------------------------------------------------------------------
# Allowed values (extracted from LoggingSettings Literal types)
# ---------------------------------------------------------------------------

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)


def build_cli(service: ProvisioningService) -> typer.Typer:
    """Construct the Typer CLI around *service*.

    The returned app exposes a single default command.  When invoked it
    loads settings, applies CLI overrides, configures *service* and runs
    it to completion.
    """
    cli = typer.Typer(
        help=f"{service.name} v{service.version}: device provisioning and fleet simulation",
        add_completion=False,
    )

    @cli.callback(invoke_without_command=True)
    def main(
        version_flag: Annotated[
            bool | None,
            typer.Option("--version", is_eager=True, help="Show version and exit."),
        ] = None,
        dry_run: Annotated[
            bool,
            typer.Option("--dry-run", help="Use an in-process transport instead of a broker."),
        ] = False,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help="Override log level."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help="Override log format."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Path to .env file."),
        ] = ".env",
        buttons: Annotated[
            int,
            typer.Option("--buttons", min=0, help="Simulated call buttons to provision."),
        ] = 0,
        wearables: Annotated[
            int,
            typer.Option("--wearables", min=0, help="Simulated wearables to provision."),
        ] = 0,
        repeaters: Annotated[
            int,
            typer.Option("--repeaters", min=0, help="Simulated repeaters to provision."),
        ] = 0,
        room: Annotated[
            str,
            typer.Option("--room", help="Room for simulated devices."),
        ] = "Lobby",
        site: Annotated[
            str | None,
            typer.Option("--site", help="Site for simulated devices (default from settings)."),
        ] = None,
        scenario: Annotated[
            str | None,
            typer.Option("--scenario", help="Named fleet layout to provision as well."),
        ] = None,
        show_qr: Annotated[
            bool,
            typer.Option("--show-qr", help="Print each issued provisioning QR code."),
        ] = False,
    ) -> None:
        # -- version ---------------------------------------------------------
        if version_flag:
            typer.echo(f"{service.name} v{service.version}")
            raise typer.Exit()

        # -- validate enum-like options -------------------------------------
        if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
            raise typer.BadParameter(
                f"Invalid log level '{log_level}'. Choose from: {', '.join(_VALID_LOG_LEVELS)}",
                param_hint="'--log-level'",
            )

        if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
            raise typer.BadParameter(
                f"Invalid log format '{log_format}'. "
                f"Choose from: {', '.join(_VALID_LOG_FORMATS)}",
                param_hint="'--log-format'",
            )

        if scenario is not None and scenario not in FLEET_SCENARIOS:
            raise typer.BadParameter(
                f"Unknown scenario '{scenario}'. Choose from: {', '.join(FLEET_SCENARIOS)}",
                param_hint="'--scenario'",
            )

        # -- build settings -------------------------------------------------
        try:
            settings = Settings(_env_file=env_file)  # type: ignore[call-arg]
        except ValidationError as exc:
            logger.error("Configuration error: %s", exc)
            raise SystemExit(EXIT_CONFIG_ERROR) from exc

        # -- apply CLI overrides --------------------------------------------
        if log_level is not None:
            settings.logging = settings.logging.model_copy(update={"level": log_level.upper()})

        if log_format is not None:
            settings.logging = settings.logging.model_copy(update={"format": log_format.lower()})

        service.dry_run = dry_run
        service.show_qr = show_qr
        service.plan = FleetPlan(
            buttons=buttons,
            wearables=wearables,
            repeaters=repeaters,
            room=room,
            site=site,
            layout=FLEET_SCENARIOS[scenario] if scenario else (),
        )

        # -- run the async lifecycle ----------------------------------------
        try:
            with contextlib.suppress(KeyboardInterrupt):
                asyncio.run(service.run(settings=settings))
        except SystemExit:
            raise
        except Exception as exc:
            logger.error("Runtime error: %s", exc)
            sys.exit(EXIT_RUNTIME_ERROR)

    return cli


def main(argv: Sequence[str] | None = None) -> None:
    """Console-script entry point."""
    from deckhand import __version__  # noqa: PLC0415

    cli = build_cli(ProvisioningService(version=__version__))
    cli(args=list(argv) if argv is not None else None)
