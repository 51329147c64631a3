"""
"Doctor" command: configuration and sync diagnostics for a study station.

Runs a series of checks and prints a concise report:
 - Config summary
 - Sync transport status (file store, broadcast)
 - Optional scenario file sanity check
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click

from linacsim.core.config import get_settings, print_configuration_summary, validate_sync_settings
from linacsim.core.exceptions import ScenarioLoadError
from linacsim.data.scenario_loader import load_scenario
from linacsim.services.delivery import delivery_seconds, is_deliverable


@click.command()
@click.option("--scenario", "scenario_file", help="Scenario JSON to sanity-check")
def doctor(scenario_file: Optional[str]):
    """Run emulator diagnostics and print a summary report."""
    click.echo("LINAC Emulator Doctor")
    click.echo("=" * 40)

    print_configuration_summary()
    cfg = get_settings()

    status = validate_sync_settings()
    click.echo("\nSync Status:")
    for k, v in status.items():
        click.echo(f"  {k}: {v}")

    state_dir = Path(cfg.sync.state_dir)
    if state_dir.exists():
        records = sorted(p.name for p in state_dir.glob("*.json"))
        click.echo(f"\n✓ State dir {state_dir} ({len(records)} records)")
    else:
        click.echo(f"\n✗ State dir not created yet: {state_dir}")

    if not scenario_file:
        return

    try:
        scenario = load_scenario(scenario_file, cfg)
    except ScenarioLoadError as e:
        click.echo(f"\n✗ Scenario: {e}")
        raise SystemExit(1)

    click.echo(f"\n✓ Scenario {scenario.scenario_id}: {len(scenario.fields)} fields")
    total = 0.0
    for i, field in enumerate(scenario.fields, 1):
        secs = delivery_seconds(field.monitor_units, field.dose_rate, cfg.simulation) if is_deliverable(field) else 0.0
        total += secs
        kind = "imaging" if field.is_imaging else field.technique.value
        click.echo(f"  {i}. {field.name or '(unnamed)'} [{kind}] {field.monitor_units:.1f} MU, ~{secs:.1f}s")
    click.echo(f"  Simulated delivery: ~{total:.1f}s")
