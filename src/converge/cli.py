"""
converge CLI - plan, apply and inspect declarative infrastructure.
"""

import asyncio
import json
import logging
import signal
import sys
from typing import Any, Awaitable, Callable

import click
import yaml
from tabulate import tabulate

from converge.base import InstanceKey
from converge.config import Config, load_config
from converge.engine import Engine
from converge.errors import ConvergeError
from converge.loader import load_configuration
from converge.main import build_engine
from converge.main import main as serve_main

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _run(config: Config, action: Callable[[Engine], Awaitable[Any]]) -> Any:
    """Build the engine, run ``action`` and close the engine again."""

    async def runner():
        engine = await build_engine(config)
        try:
            return await action(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(runner())
    except (ConvergeError, ValueError, FileNotFoundError, yaml.YAMLError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _echo_data(data: Any, output: str) -> None:
    if output == "yaml":
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
    else:
        click.echo(json.dumps(data, indent=2))


@click.group()
@click.option("--state", "state_path", help="Path of the JSON state file")
@click.option("--schemas", "schema_path", help="Schema file or directory")
@click.option("--provider", help="Provider entry point name")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
)
@click.pass_context
def cli(ctx, state_path, schema_path, provider, log_level):
    """converge - declarative reconciliation of remote resources"""
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)
    config = load_config()
    if state_path:
        config.state.backend = "file"
        config.state.path = state_path
    if schema_path:
        config.providers.schema_path = schema_path
    if provider:
        config.providers.provider = provider
    ctx.obj = config


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table")
@click.pass_obj
def plan(config, filename, output):
    """Show the changes needed to converge on a configuration file"""

    async def action(engine: Engine):
        return await engine.plan(load_configuration(filename))

    result = _run(config, action)
    if output == "table":
        click.echo(result.render())
    else:
        _echo_data(result.to_dict(), output)


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.option("--auto-approve", is_flag=True, help="Skip the confirmation prompt")
@click.pass_obj
def apply(config, filename, auto_approve):
    """Plan and apply a configuration file"""

    async def action(engine: Engine):
        built = await engine.plan(load_configuration(filename))
        click.echo(built.render())
        if built.is_empty:
            return None
        if not auto_approve and not click.confirm("Apply these changes?"):
            click.echo("Apply cancelled")
            return None

        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        except (NotImplementedError, RuntimeError):
            pass
        return await engine.apply(built, cancel_event)

    result = _run(config, action)
    if result is None:
        return

    rows = []
    for key in sorted(result.outcomes):
        outcome = result.outcomes[key]
        rows.append(
            [str(key), outcome.kind.value, outcome.status.value, str(outcome.error or "")]
        )
    click.echo(tabulate(rows, headers=["Instance", "Action", "Status", "Error"], tablefmt="grid"))
    click.echo(f"Apply complete: {result.summary()}")
    if not result.success:
        sys.exit(1)


@cli.command()
@click.option("--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table")
@click.pass_obj
def refresh(config, output):
    """Compare recorded state with the remote system"""

    async def action(engine: Engine):
        return await engine.refresh()

    report = _run(config, action)
    if output == "table":
        click.echo(report.render())
    else:
        _echo_data(report.to_dict(), output)


@cli.group()
def state():
    """Inspect and edit recorded state"""
    pass


@state.command("list")
@click.pass_obj
def state_list(config):
    """List instances recorded in state"""

    async def action(engine: Engine):
        return await engine.store.read()

    snapshot = _run(config, action)
    rows = [
        [str(key), instance.id or "-", len(instance.attributes)]
        for key, instance in sorted(snapshot.instances.items())
    ]
    rows.extend([str(key), key.deposed, "-"] for key in snapshot.deposed_keys())
    if not rows:
        click.echo("No instances in state")
        return
    click.echo(tabulate(rows, headers=["Instance", "ID", "Attributes"], tablefmt="grid"))
    click.echo(f"Serial: {snapshot.serial}")


@state.command("show")
@click.argument("address")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="json")
@click.pass_obj
def state_show(config, address, output):
    """Show one recorded instance"""

    async def action(engine: Engine):
        snapshot = await engine.store.read()
        return snapshot.get(InstanceKey.parse(address))

    instance = _run(config, action)
    if instance is None:
        click.echo(f"Error: {address} is not in state", err=True)
        sys.exit(1)
    _echo_data(instance.to_dict(), output)


@cli.command("import")
@click.argument("address")
@click.argument("remote_id")
@click.pass_obj
def import_instance(config, address, remote_id):
    """Adopt an existing remote object into state"""

    async def action(engine: Engine):
        return await engine.import_instance(InstanceKey.parse(address), remote_id)

    instance = _run(config, action)
    click.echo(f"Imported {instance.key} (id: {instance.id})")


@cli.command()
@click.argument("address")
@click.pass_obj
def forget(config, address):
    """Remove an instance from state without deleting it remotely"""

    async def action(engine: Engine):
        return await engine.forget(InstanceKey.parse(address))

    instance = _run(config, action)
    click.echo(f"Removed {instance.key} from state")


@cli.command()
@click.pass_obj
def serve(config):
    """Run the inspection API and periodic drift checks"""
    logging.getLogger().setLevel(config.api.log_level.upper())
    asyncio.run(serve_main(config))


if __name__ == "__main__":
    cli()
