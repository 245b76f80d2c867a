"""
Command line entry point for the clickstream stack orchestrator.

Runs single dispatcher steps and the pipeline admission checks outside of
the workflow engine.
"""

import functools
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import click
import pydantic
from botocore.exceptions import BotoCoreError, ClientError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from clickstream_orchestrator import __version__
from clickstream_orchestrator.auth.session import SessionProvider
from clickstream_orchestrator.core.config import ConfigManager, OrchestratorConfig
from clickstream_orchestrator.core.exceptions import (
    AuthenticationError, ClickstreamError, ConfigurationError, ServiceError,
    StackDeploymentFailed, ValidationError
)
from clickstream_orchestrator.services.dispatcher import StackActionDispatcher
from clickstream_orchestrator.services.models import StackCommand
from clickstream_orchestrator.services.network import NetworkInspector
from clickstream_orchestrator.validation.admission import AdmissionGate
from clickstream_orchestrator.validation.pipeline import PipelineConfig, PipelineResources
from clickstream_orchestrator.validation.schedule import validate_interval


console = Console()

# Exit codes for different error types
EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_VALIDATION_ERROR = 3
EXIT_SERVICE_ERROR = 4
EXIT_STACK_FAILED = 5


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _read_json(path: str) -> Dict[str, Any]:
    try:
        with open(path, 'r') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{path} is not valid JSON: {e}")


def handle_errors(func: Callable) -> Callable:
    """Map orchestrator errors onto exit codes."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ValidationError as e:
            console.print(f"❌ [red]{escape(str(e))}[/red]")
            sys.exit(EXIT_VALIDATION_ERROR)
        except pydantic.ValidationError as e:
            console.print(f"❌ [red]Validation error: invalid pipeline definition: {escape(str(e))}[/red]")
            sys.exit(EXIT_VALIDATION_ERROR)
        except StackDeploymentFailed as e:
            console.print(f"❌ [red]Stack {e.stack_name} ended in {e.status}: {escape(str(e))}[/red]")
            sys.exit(EXIT_STACK_FAILED)
        except ConfigurationError as e:
            console.print(f"❌ [red]Configuration error: {escape(str(e))}[/red]")
            sys.exit(EXIT_CONFIG_ERROR)
        except (AuthenticationError, ServiceError, ClientError, BotoCoreError) as e:
            console.print(f"❌ [red]Service error: {escape(str(e))}[/red]")
            sys.exit(EXIT_SERVICE_ERROR)
        except ClickstreamError as e:
            console.print(f"❌ [red]{escape(str(e))}[/red]")
            sys.exit(EXIT_GENERAL_ERROR)

    return wrapper


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Configuration directory (defaults to ~/.clickstream-orchestrator)",
)
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx: click.Context, verbose: bool = False, config_dir: Optional[Path] = None) -> None:
    """Clickstream pipeline stack orchestrator."""
    configure_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj['config_dir'] = config_dir


def _load_config(ctx: click.Context) -> OrchestratorConfig:
    return ConfigManager(ctx.obj.get('config_dir')).load_or_default()


@cli.command()
@click.argument("event_file", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
@handle_errors
def dispatch(ctx: click.Context, event_file: str) -> None:
    """Run one stack action step and print the next command."""
    config = _load_config(ctx)
    command = StackCommand.from_event(_read_json(event_file))
    session = SessionProvider(config).get_session(command.input.region)

    next_command = StackActionDispatcher(session, config).dispatch(command)
    console.print_json(json.dumps(next_command.to_event(), default=str))


@cli.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--resources",
    "resources_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Existing resources the pipeline depends on (provisioned Redshift)",
)
@click.pass_context
@handle_errors
def validate(ctx: click.Context, pipeline_file: str, resources_file: Optional[str] = None) -> None:
    """Run the admission checks for a pipeline definition."""
    config = _load_config(ctx)
    pipeline = PipelineConfig.model_validate(_read_json(pipeline_file))
    resources = PipelineResources()
    if resources_file:
        resources = PipelineResources.model_validate(_read_json(resources_file))

    session = SessionProvider(config).get_session(pipeline.region)
    resources = AdmissionGate.for_pipeline(session, pipeline, config).admit(pipeline, resources)

    console.print("✅ [green]Pipeline admitted[/green]")
    if resources.quick_sight_subnet_ids:
        console.print(f"QuickSight subnets: {', '.join(resources.quick_sight_subnet_ids)}")


@cli.command("check-schedule")
@click.argument("expression")
@click.pass_context
@handle_errors
def check_schedule(ctx: click.Context, expression: str) -> None:
    """Check that a schedule expression is not too frequent."""
    config = _load_config(ctx)
    validate_interval(
        expression,
        min_interval_ms=config.cron_min_interval_ms,
        occurrences=config.cron_occurrences,
        min_rate_minutes=config.min_rate_minutes,
    )
    console.print(f"✅ [green]{escape(expression)} is a valid schedule[/green]")


@cli.command()
@click.option("--region", required=True, help="Region whose VPCs are listed")
@click.pass_context
@handle_errors
def vpcs(ctx: click.Context, region: str) -> None:
    """List the VPCs a pipeline network can be placed in."""
    from rich.table import Table

    config = _load_config(ctx)
    session = SessionProvider(config).get_session(region)

    grid = Table(show_header=True)
    grid.add_column("VPC")
    grid.add_column("Name")
    grid.add_column("CIDR")
    grid.add_column("Default")
    for vpc in NetworkInspector(session, region).describe_vpcs():
        grid.add_row(vpc["id"], vpc["name"] or "", vpc["cidr"], "yes" if vpc["is_default"] else "")

    console.print(grid)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
