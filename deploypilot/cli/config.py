"""
DeployPilot CLI - Configuration commands
"""
import json
from typing import Optional

import click
import yaml

from deploypilot.cli.common import config_manager
from deploypilot.core.exceptions import ConfigurationError


@click.group()
def config():
    """Inspect the effective configuration"""
    pass


@config.command()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="YAML config file")
@click.option("--json", "as_json", is_flag=True, help="Print as JSON instead of YAML")
@click.pass_context
def show(ctx, config_path: Optional[str], as_json: bool):
    """Show current configuration (sanitized)"""
    manager = config_manager(ctx, config_path)
    try:
        cfg = manager.load()
    except ConfigurationError as e:
        click.echo(f"❌ Configuration error: {e.message}", err=True)
        ctx.exit(1)

    data = cfg.sanitized()
    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    source = manager.config_path if manager.config_path.exists() else "defaults + environment"
    click.echo(f"⚙️  Current Configuration ({source})\n")
    click.echo(yaml.safe_dump(data, sort_keys=False, default_flow_style=False).rstrip())


@config.command()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="YAML config file")
@click.pass_context
def check(ctx, config_path: Optional[str]):
    """Check that the configuration is complete enough to run"""
    try:
        cfg = config_manager(ctx, config_path).load()
        cfg.validate()
    except ConfigurationError as e:
        click.echo(f"❌ {e.message}", err=True)
        ctx.exit(1)

    click.echo(f"✅ SSH target: {cfg.ssh.user}@{cfg.ssh.address} (base path {cfg.ssh.base_path})")
    for label, enabled in (
        ("Secret source", cfg.has_secret_source),
        ("DNS provider", cfg.has_dns_provider),
        ("Notifier", cfg.has_notifier),
    ):
        click.echo(f"{'✅' if enabled else '⚠️ '} {label}: {'configured' if enabled else 'not configured'}")
