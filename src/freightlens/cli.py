"""CLI entrypoint for freightlens."""

import json
import os
from pathlib import Path

import click

from freightlens import __version__
from freightlens.agent.contracts import GenerateReportRequest
from freightlens.core.exceptions import AppError
from freightlens.llm.router import get_current_config
from freightlens.orchestrator.runtime import run_report
from freightlens.store.demo_data import DEMO_CUSTOMERS, seed_demo_data
from freightlens.store.duckdb_store import ShipmentStore


DEFAULT_DB_PATH = os.environ.get("FL_DB_PATH", "./data/freightlens.duckdb")


def _db_option(func):
    return click.option(
        "--db-path",
        default=DEFAULT_DB_PATH,
        type=click.Path(),
        help=f"Path to DuckDB database file (default: {DEFAULT_DB_PATH})",
    )(func)


@click.group()
@click.version_option(__version__)
def main():
    """freightlens - AI report builder for shipment analytics."""
    pass


@main.command("init-db")
@_db_option
def init_db(db_path: str):
    """Create all tables (safe to run repeatedly)."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    try:
        ShipmentStore(db_path).initialize()
    except AppError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Initialized schema in {db_path}")


@main.command("seed-demo")
@_db_option
@click.option("--rows", default=250, show_default=True, help="Shipments per demo customer")
@click.option("--seed", default=7, show_default=True, help="Random seed")
def seed_demo(db_path: str, rows: int, seed: int):
    """Load deterministic demo shipments for two customers."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    try:
        counts = seed_demo_data(ShipmentStore(db_path), rows_per_customer=rows, seed=seed)
    except AppError as e:
        raise click.ClickException(str(e)) from e
    for table, count in counts.items():
        click.echo(f"  {table}: {count}")
    click.echo(f"Demo customers: {', '.join(DEMO_CUSTOMERS)}")


@main.command()
@click.argument("prompt")
@_db_option
@click.option("--customer-id", required=True, help="Tenant to run the request as")
@click.option("--admin", is_flag=True, default=False, help="Run with admin access")
@click.option("--json-output", is_flag=True, default=False, help="Print the full response as JSON")
def ask(prompt: str, db_path: str, customer_id: str, admin: bool, json_output: bool):
    """Ask the report agent to build a report."""
    if not Path(db_path).exists():
        raise click.ClickException(f"Database not found at {db_path}. Run 'freightlens init-db' first.")

    request = GenerateReportRequest(prompt=prompt, customer_id=customer_id, is_admin=admin)
    response = run_report(db_path, request)

    if json_output:
        click.echo(json.dumps(response.model_dump(mode="json"), indent=2))
        return

    click.echo(response.message)
    if response.data:
        click.echo(f"\nReport: {response.data.get('name')}")
        for i, section in enumerate(response.data.get("sections") or [], 1):
            click.echo(f"  {i}. [{section.get('type')}] {section.get('title') or ''}")
    if response.validation_errors:
        click.echo("\nValidation errors:")
        for error in response.validation_errors:
            click.echo(f"  - {error}")
    click.echo(f"\n{len(response.tool_executions)} tool calls in {response.rounds} rounds")
    if not response.success:
        raise SystemExit(1)


@main.command()
@_db_option
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True)
def serve(db_path: str, host: str, port: int):
    """Run the HTTP API."""
    import uvicorn

    from freightlens.api.server import create_app

    uvicorn.run(create_app(db_path), host=host, port=port, log_level="info")


@main.command("llm-config")
def llm_config():
    """Show the active LLM provider configuration."""
    config = get_current_config()
    for key, value in config.items():
        click.echo(f"{key}: {value}")


if __name__ == "__main__":
    main()
