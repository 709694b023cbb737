"""Command-line entry point (Typer-based).

:func:`build_cli` constructs a Typer app that parses the service-level
options (``--version``, ``--check``, ``--log-level``, ``--log-format``,
``--env-file``) and hands off to :meth:`Bridge._run_async`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import TYPE_CHECKING, Annotated, get_args

import typer
from pydantic import ValidationError

from dingzsync._settings import LoggingSettings

if TYPE_CHECKING:
    from dingzsync._app import Bridge
    from dingzsync._settings import Settings

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


def build_cli(bridge: Bridge) -> typer.Typer:
    """Construct the Typer CLI for *bridge*."""
    version = bridge.version

    cli = typer.Typer(
        help=f"dingzsync v{version}: keeps dingz and myStrom devices in sync with MQTT",
    )

    @cli.callback(invoke_without_command=True)
    def main(
        version_flag: Annotated[
            bool | None,
            typer.Option(
                "--version",
                is_eager=True,
                help="Show version and exit.",
            ),
        ] = None,
        check: Annotated[
            bool,
            typer.Option("--check", help="Validate the configuration and exit."),
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
    ) -> None:
        if version_flag:
            typer.echo(f"dingzsync v{version}")
            raise typer.Exit()

        if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
            raise typer.BadParameter(
                f"Invalid log level '{log_level}'. "
                f"Choose from: {', '.join(_VALID_LOG_LEVELS)}",
                param_hint="'--log-level'",
            )

        if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
            raise typer.BadParameter(
                f"Invalid log format '{log_format}'. "
                f"Choose from: {', '.join(_VALID_LOG_FORMATS)}",
                param_hint="'--log-format'",
            )

        try:
            settings: Settings = bridge.settings_class(_env_file=env_file)  # type: ignore[call-arg]
        except ValidationError as exc:
            logger.error("Configuration error: %s", exc)
            raise SystemExit(EXIT_CONFIG_ERROR) from exc

        if log_level is not None:
            settings.logging = settings.logging.model_copy(
                update={"level": log_level.upper()},
            )
        if log_format is not None:
            settings.logging = settings.logging.model_copy(
                update={"format": log_format.lower()},
            )

        if check:
            for device in settings.devices:
                typer.echo(f"{device.family.value:<15} {device.address:<20} {device.name}")
            typer.echo(f"{len(settings.devices)} device(s) configured")
            raise typer.Exit(EXIT_OK)

        try:
            with contextlib.suppress(KeyboardInterrupt):
                asyncio.run(bridge._run_async(settings=settings))
        except SystemExit:
            raise
        except Exception as exc:
            logger.error("Runtime error: %s", exc)
            sys.exit(EXIT_RUNTIME_ERROR)

    return cli


def main() -> None:
    """Console-script entry point."""
    from dingzsync import __version__
    from dingzsync._app import Bridge

    build_cli(Bridge(version=__version__))()
