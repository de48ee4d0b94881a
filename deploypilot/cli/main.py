"""
DeployPilot CLI - Main entry point
"""
from pathlib import Path
from typing import Optional

import click

from deploypilot import __version__
from deploypilot.cli import config, run

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--env-file",
    type=click.Path(dir_okay=False),
    default=None,
    help=".env file to read (default: ./.env if present)",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Override the configured log level",
)
@click.pass_context
def cli(ctx, env_file: Optional[str], log_level: Optional[str]):
    """
    🚀 DeployPilot - Remote deployments over SSH

    Fetches secrets, runs the repository's deploy script on the target host,
    then updates DNS and posts a notification.

    WORKFLOW:

    1. Check the effective configuration:
       deploypilot config show

    2. Validate a request file:
       deploypilot validate request.json

    3. Preview the remote command (no network access):
       deploypilot plan request.json

    4. Run it:
       deploypilot run request.json
    """
    ctx.ensure_object(dict)
    ctx.obj["env_file"] = Path(env_file) if env_file else None
    ctx.obj["log_level"] = log_level


# Register subcommands
cli.add_command(run.run_cmd)
cli.add_command(run.plan_cmd)
cli.add_command(run.validate_cmd)
cli.add_command(config.config)


if __name__ == "__main__":
    cli()
