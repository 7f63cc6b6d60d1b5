"""cf-switch CLI.

Usage:
    cf-switch run                         # Run the service (reads env config)
    cf-switch reconcile                   # One reconciliation pass, print the rule
    cf-switch expression a.com b.com      # Preview the match expression offline
    cf-switch check-spec rules.yaml       # Validate a rule spec file
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path

import click

from .cloudflare import CloudflareClient
from .config import Config, ConfigurationError
from .expression import build_expression, invalid_hostnames, normalize_hostnames
from .main import main as service_main
from .main import setup_logging
from .models import RuleResponse
from .reconciler import Reconciler, ReconcilerError
from .spec_loader import SpecLoadError, load_rule_spec

VERSION = "0.1.0"


def load_config() -> Config:
    """Load configuration from the environment.

    Raises:
        click.ClickException: If configuration is invalid.
    """
    try:
        return Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name="cf-switch")
def cli() -> None:
    """cf-switch: keep a single Cloudflare WAF block rule in shape.

    Configuration is read from the environment (CLOUDFLARE_ZONE_ID,
    CLOUDFLARE_API_TOKEN, DEST_HOSTNAMES, ...).
    """
    pass


@cli.command()
@click.option("--http-addr", help="Listen address, e.g. :8080 (overrides HTTP_ADDR)")
@click.option("--interval", help="Reconcile interval, e.g. 60s or 5m (overrides RECONCILE_INTERVAL)")
@click.option("--local", is_flag=True, help="Use an ephemeral API token (RUNNING_LOCALLY=true)")
@click.pass_context
def run(ctx: click.Context, http_addr: str | None, interval: str | None, local: bool) -> None:
    """Run the reconciler and the HTTP API until interrupted."""
    if http_addr:
        os.environ["HTTP_ADDR"] = http_addr
    if interval:
        os.environ["RECONCILE_INTERVAL"] = interval
    if local:
        os.environ["RUNNING_LOCALLY"] = "true"

    ctx.exit(asyncio.run(service_main()))


@cli.command()
@click.option("--verbose", "-v", is_flag=True, help="Emit JSON logs to stdout")
def reconcile(verbose: bool) -> None:
    """Run a single reconciliation pass and print the resulting rule."""
    config = load_config()
    if verbose:
        setup_logging(config.log_level)

    async def reconcile_once() -> RuleResponse:
        async with CloudflareClient(
            config.api_token,
            base_url=config.cloudflare_base_url,
            timeout_seconds=config.request_timeout_seconds,
        ) as client:
            rule = await Reconciler(client, config).reconcile_once()
        return RuleResponse.from_rule(rule)

    try:
        response = asyncio.run(reconcile_once())
    except ReconcilerError as e:
        raise click.ClickException(str(e)) from e

    click.echo(json.dumps(response.model_dump(), indent=2))


@cli.command()
@click.argument("hostnames", nargs=-1)
def expression(hostnames: tuple[str, ...]) -> None:
    """Print the match expression for HOSTNAMES.

    Hostnames are normalized the same way the service does it, and may be
    given as separate arguments or comma-separated.
    """
    normalized = normalize_hostnames(hostnames)
    invalid = invalid_hostnames(normalized)
    if invalid:
        raise click.ClickException(f"Invalid hostnames: {', '.join(invalid)}")
    click.echo(build_expression(normalized))


@cli.command("check-spec")
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def check_spec(spec_file: Path) -> None:
    """Validate a rule spec file and show the desired state."""
    try:
        spec = load_rule_spec(spec_file)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    click.secho(f"✓ {spec_file} is valid", fg="green")
    click.echo(f"  Hostnames: {', '.join(spec.hostnames)}")
    if spec.default_enabled is not None:
        click.echo(f"  Default enabled: {str(spec.default_enabled).lower()}")
    click.echo(f"  Expression: {build_expression(spec.hostnames)}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
