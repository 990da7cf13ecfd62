"""CLI interface for chainctl."""

import json
import multiprocessing
import sys
from typing import Optional, Tuple

import click
from pydantic import ValidationError

from .config import get_settings
from .engine import build_engines, install_engines
from .errors import ConfigError, SubmissionRejected
from .log import configure_logging
from .models import ChainLinkConfig, ChainType, UnitState
from .registry import load_job_modules
from .storage import Storage
from .worker import Worker

# Global storage instance
_storage: Optional[Storage] = None

CHAIN_TYPES = click.Choice([t.value for t in ChainType])


def get_storage() -> Storage:
    """Get or create storage instance."""
    global _storage
    if _storage is None:
        _storage = Storage(get_settings().data_dir)
    return _storage


def _engines(modules: Tuple[str, ...] = ()):
    """Build and install the process engines on the shared storage."""
    load_job_modules(list(get_settings().job_modules) + list(modules))
    batch, queueable = build_engines(storage=get_storage())
    install_engines(batch, queueable)
    return batch, queueable


@click.group()
def cli():
    """chainctl - configuration-driven job chains"""
    configure_logging(get_settings().log_level)


@cli.group()
def chain():
    """Start chains"""
    pass


@chain.command("start")
@click.argument("identifier")
@click.option("--type", "chain_type", type=CHAIN_TYPES, default="batch", help="Chain type")
@click.option("--params", default=None, help="Initial parameters as a JSON object")
@click.option("--module", "modules", multiple=True, help="Module that registers jobs")
def chain_start(identifier: str, chain_type: str, params: Optional[str], modules: Tuple[str, ...]):
    """Start a chain at IDENTIFIER.

    Example:
        chainctl chain start load_accounts --params '{"mode":"full"}'
    """
    try:
        parameters = json.loads(params) if params else {}
        if not isinstance(parameters, dict):
            raise click.BadParameter("parameters must be a JSON object", param_hint="--params")
        batch, queueable = _engines(modules)
        engine = batch if ChainType(chain_type) == ChainType.BATCH else queueable
        tracking_id = engine.start(identifier, parameters)
        click.echo(f"✓ Chain started at {identifier}: {tracking_id}")
    except json.JSONDecodeError as e:
        click.echo(f"✗ Invalid JSON: {e}", err=True)
        sys.exit(1)
    except (ConfigError, SubmissionRejected) as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)


@cli.group()
def worker():
    """Manage worker processes"""
    pass


def _worker_process(worker_id: int, modules: Tuple[str, ...], drain: bool):
    """Run a single worker process."""
    settings = get_settings()
    configure_logging(settings.log_level)
    batch, _ = _engines(modules)
    batch.platform.worker_id = worker_id
    w = Worker(batch.platform, batch.scheduler, worker_id)
    w.run(settings.poll_interval, max_idle_ticks=1 if drain else None)


@worker.command("start")
@click.option("--count", default=1, help="Number of workers to start")
@click.option("--module", "modules", multiple=True, help="Module that registers jobs")
@click.option("--drain", is_flag=True, help="Exit once nothing is ready to run")
def worker_start(count: int, modules: Tuple[str, ...], drain: bool):
    """Start one or more workers.

    Example:
        chainctl worker start --count 3 --module myjobs
    """
    if count < 1:
        click.echo("✗ Count must be at least 1", err=True)
        sys.exit(1)

    if count == 1:
        _worker_process(1, modules, drain)
        return

    click.echo(f"Starting {count} worker(s)...")
    processes = []
    try:
        for i in range(count):
            p = multiprocessing.Process(target=_worker_process, args=(i + 1, modules, drain))
            p.start()
            processes.append(p)

        # Wait for all processes
        for p in processes:
            p.join()

    except KeyboardInterrupt:
        click.echo("\nShutting down workers...")
        for p in processes:
            if p.is_alive():
                p.terminate()
        for p in processes:
            p.join(timeout=5)
            if p.is_alive():
                p.kill()
        click.echo("Workers stopped")


@cli.command()
def status():
    """Show unit, timer and config counts.

    Example:
        chainctl status
    """
    stats = get_storage().get_stats()
    settings = get_settings()

    click.echo("\n" + "=" * 50)
    click.echo("chainctl Status")
    click.echo("=" * 50)
    click.echo(f"Total Units:    {stats['total']}")
    click.echo(f"  Pending:      {stats['pending']}")
    click.echo(f"  Running:      {stats['running']}")
    click.echo(f"  Completed:    {stats['completed']}")
    click.echo(f"  Failed:       {stats['failed']}")
    click.echo(f"Timers:         {stats['timers']}")
    click.echo(f"Chain Configs:  {stats['configs']}")
    click.echo("\nSettings:")
    click.echo(f"  Max Active Batch Jobs:  {settings.max_active_batch_jobs}")
    click.echo(f"  Max Enqueue Per Burst:  {settings.max_enqueue_per_burst}")
    click.echo("=" * 50 + "\n")


@cli.command("units")
@click.option("--state", type=click.Choice([s.value for s in UnitState]), help="Filter by state")
@click.option("--limit", default=10, help="Maximum units to display")
def list_units(state: Optional[str], limit: int):
    """List submitted units.

    Example:
        chainctl units --state failed
    """
    storage = get_storage()
    units = storage.get_units_by_state(UnitState(state)) if state else storage.get_all_units()
    units = units[:limit]

    if not units:
        click.echo("No units found")
        return

    click.echo(f"\n{'Tracking ID':<34} {'Job':<24} {'State':<10} {'Attempt':<8} {'Eligible':<20}")
    click.echo("-" * 98)
    for unit in units:
        eligible = unit.eligible_at.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(
            f"{unit.tracking_id:<34} {unit.request.job_identifier:<24} "
            f"{unit.state.value:<10} {unit.request.attempt:<8} {eligible:<20}"
        )
    click.echo()


@cli.group()
def config():
    """Manage chain link configs"""
    pass


@config.command("add")
@click.argument("config_json")
def config_add(config_json: str):
    """Add a chain link config.

    Example:
        chainctl config add '{"current_job":"a","next_job":"b","execution_delay":"PT5M"}'
    """
    try:
        link = ChainLinkConfig(**json.loads(config_json))
    except json.JSONDecodeError as e:
        click.echo(f"✗ Invalid JSON: {e}", err=True)
        sys.exit(1)
    except ValidationError as e:
        click.echo(f"✗ Invalid config: {e}", err=True)
        sys.exit(1)

    storage = get_storage()
    if link.is_active and any(c.is_active for c in storage.find(link.chain_type, link.current_job)):
        click.echo(f"✗ An active config already exists for {link.current_job}", err=True)
        sys.exit(1)
    storage.add_config(link)
    click.echo(f"✓ Config for {link.current_job} added")


@config.command("list")
@click.option("--type", "chain_type", type=CHAIN_TYPES, default=None, help="Filter by chain type")
def config_list(chain_type: Optional[str]):
    """List chain link configs."""
    configs = get_storage().list_configs(ChainType(chain_type) if chain_type else None)
    if not configs:
        click.echo("No configs found")
        return

    click.echo(f"\n{'Job':<24} {'Next':<24} {'Type':<10} {'Active':<7} {'Retries':<8} {'Delay':<10}")
    click.echo("-" * 86)
    for c in configs:
        click.echo(
            f"{c.current_job:<24} {(c.next_job or '-'):<24} {c.chain_type.value:<10} "
            f"{('yes' if c.is_active else 'no'):<7} {c.max_retries:<8} {str(c.execution_delay):<10}"
        )
    click.echo()


@config.command("show")
@click.argument("identifier")
@click.option("--type", "chain_type", type=CHAIN_TYPES, default="batch", help="Chain type")
def config_show(identifier: str, chain_type: str):
    """Show every record for IDENTIFIER."""
    configs = get_storage().find(ChainType(chain_type), identifier)
    if not configs:
        click.echo(f"✗ No config for {identifier}", err=True)
        sys.exit(1)
    for c in configs:
        click.echo(json.dumps(c.model_dump(mode="json"), indent=2))


@config.command("deactivate")
@click.argument("identifier")
@click.option("--type", "chain_type", type=CHAIN_TYPES, default="batch", help="Chain type")
def config_deactivate(identifier: str, chain_type: str):
    """Switch off IDENTIFIER, abandoning chains that reach it."""
    try:
        changed = get_storage().deactivate_config(ChainType(chain_type), identifier)
    except ConfigError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ {identifier} deactivated ({changed} record(s) changed)")


if __name__ == "__main__":
    cli()
