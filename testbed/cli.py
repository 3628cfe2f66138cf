"""
Command line tools.

Usage::

    testbed check tests/harness_config.py     # Boot the app and check its databases
"""

import click
import sqlalchemy as sa

from testbed.config import HarnessConfig
from testbed.connector import Connector
from testbed.db import SQLAlchemy
from testbed.exceptions import HarnessError


@click.group()
def main():
    """Tools for the testbed harness."""


@main.command("check")
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--entry-url",
    default="http://localhost/index-test.php",
    show_default=True,
    help="Entry URL the simulated requests are sent to.",
)
def check_command(config_file, entry_url):
    """
    Boot the application once and verify its database connections.

    Loads CONFIG_FILE the same way the harness does before every test,
    lists the components the harness can reach, and runs a trivial
    query on every configured database bind.
    """
    click.echo("=" * 60)
    click.echo("  testbed: Application Check")
    click.echo("=" * 60)
    click.echo(f"\n  Config file: {config_file}\n")

    # -- Step 1: Boot --------------------------------------------------------
    click.echo("[1/3] Booting application...")
    try:
        config = HarnessConfig.from_mapping({"configFile": config_file, "entryUrl": entry_url})
        config.validate()
        connector = Connector(config.server_params())
        connector.configure(config)
        application = connector.start_app()
    except HarnessError as exc:
        click.secho(f"      ✗ Boot failed: {exc}", fg="red")
        raise SystemExit(1) from exc
    click.secho(f"      ✓ Booted '{application.flask_app.name}'.", fg="green")

    failed = False
    try:
        # -- Step 2: Components ----------------------------------------------
        click.echo("[2/3] Checking components...")
        for name in sorted(application.get_components(True)):
            try:
                component = application.get(name, throw=False)
            except Exception as exc:  # pylint: disable=broad-exception-caught
                click.secho(f"      ✗ {name}: {exc}", fg="red")
                failed = True
                continue
            if component is None:
                click.secho(f"      - {name}: not configured", fg="yellow")
            else:
                click.secho(f"      ✓ {name}: {type(component).__name__}", fg="green")

        # -- Step 3: Databases -----------------------------------------------
        click.echo("[3/3] Checking database connections...")
        db = application.get("db", throw=False)
        if not isinstance(db, SQLAlchemy):
            click.secho("      ✗ The app does not use testbed.db.SQLAlchemy.", fg="red")
            failed = True
        else:
            for bind_key, connection in db.connections().items():
                label = bind_key or "default"
                try:
                    connection.open().execute(sa.text("SELECT 1"))
                    click.secho(f"      ✓ {label}: {connection.safe_dsn}", fg="green")
                except Exception as exc:  # pylint: disable=broad-exception-caught
                    click.secho(f"      ✗ {label}: {exc}", fg="red")
                    failed = True
                finally:
                    connection.close()
    finally:
        connector.reset_application()

    click.echo()
    if failed:
        raise SystemExit(1)
    click.secho("  All checks passed.", fg="green")
