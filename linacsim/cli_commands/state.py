"""
CLI commands for inspecting and resetting the shared scenario state.
"""

import json
import sys

import click
import structlog

from linacsim.core.config import get_settings
from linacsim.core.models import SharedScenarioState
from linacsim.data.shared_state import create_channel

logger = structlog.get_logger(__name__)


@click.group()
def state():
    """Shared console/imaging state commands."""
    pass


@state.command()
@click.argument("scenario_id")
def show(scenario_id: str):
    """Print the shared record for SCENARIO_ID."""
    channel = create_channel(get_settings().sync)
    try:
        raw = channel.read_raw(scenario_id)
        if raw is None:
            click.echo(f"No shared state for {scenario_id}")
            sys.exit(1)
        click.echo(json.dumps(raw, indent=2))
    finally:
        channel.close()


@state.command()
@click.argument("scenario_id")
@click.confirmation_option(prompt="Overwrite the shared state with zero shifts?")
def reset(scenario_id: str):
    """Overwrite SCENARIO_ID's shared record with zero shifts."""
    channel = create_channel(get_settings().sync)
    try:
        channel.write(scenario_id, SharedScenarioState(scenario_id=scenario_id).to_wire(), merge=False)
        logger.info("Shared state reset", scenario_id=scenario_id)
        click.echo(f"✓ Reset shared state for {scenario_id}")
    finally:
        channel.close()
