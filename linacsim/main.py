"""
Main application entry point for the LINAC study emulator.

Provides the CLI for both displays: the treatment console and the imaging
monitor, each run as its own process against the same scenario.
"""

import asyncio
import contextlib
import json
import sys
from pathlib import Path
from typing import Dict, Optional, Tuple

import click
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from linacsim.cli_commands.doctor import doctor
from linacsim.cli_commands.state import state
from linacsim.controllers.console import ConsoleCallbacks, ConsoleController
from linacsim.controllers.imaging import ImagingController, describe_shift
from linacsim.core.config import get_settings, print_configuration_summary
from linacsim.core.exceptions import ConfigurationError, LinacSimError, ScenarioLoadError
from linacsim.core.logging import set_correlation_id, setup_logging
from linacsim.core.models import ScenarioMarkers
from linacsim.data.scenario_loader import derive_scenario_id, load_scenario
from linacsim.data.shared_state import SharedStateChannel, create_channel
from linacsim.services.seed import seed as seed_offset

console = Console()


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit JSON logs instead of rich console output")
@click.option("--correlation-id", help="Set correlation ID for session tracing")
@click.pass_context
def main(ctx, debug: bool, json_logs: bool, correlation_id: Optional[str]):
    """Dual-display LINAC treatment emulator for human-factors studies.

    Run `console` and `imaging` in two terminals (or on two stations sharing
    LINAC_STATE_DIR) against the same scenario file.
    """
    ctx.ensure_object(dict)

    try:
        settings = get_settings()
    except ConfigurationError as e:
        console.print(f"[red]Configuration Error:[/red] {e}")
        sys.exit(1)
    setup_logging(debug=debug or settings.debug, rich_output=not json_logs)
    ctx.obj["correlation_id"] = set_correlation_id(correlation_id)
    ctx.obj["debug"] = debug


main.add_command(state)
main.add_command(doctor)


async def _poll_forever(channel: SharedStateChannel, interval: float) -> None:
    """Pick up the other display's writes between operator actions."""
    while True:
        channel.poll()
        await asyncio.sleep(interval)


async def _with_polling(channel: SharedStateChannel, interval: float, coro):
    poller = asyncio.create_task(_poll_forever(channel, interval))
    try:
        return await coro
    finally:
        poller.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await poller


def _load_or_exit(scenario_file: str, debug: bool):
    try:
        return load_scenario(scenario_file)
    except ScenarioLoadError as e:
        console.print(f"[red]Failed to load scenario:[/red] {e}")
        if debug:
            import traceback

            console.print(traceback.format_exc())
        sys.exit(1)


# Console display


def _render_console(controller: ConsoleController) -> None:
    view = controller.view()

    table = Table(title=f"{view['scenario_id']} - {view['stage'].upper()}")
    table.add_column("#", style="cyan")
    table.add_column("Field")
    table.add_column("Type")
    table.add_column("MU plan", justify="right")
    table.add_column("MU actual", justify="right")
    table.add_column("Gantry", justify="right")
    table.add_column("Status")

    for row in view["fields"]:
        status = "done" if row["done"] else ("off" if not row["active"] else "")
        marker = ">" if row["selected"] else ""
        table.add_row(
            f"{marker}{row['index'] + 1}",
            row["name"] or "-",
            "imaging" if row["imaging"] else row["beam_type"],
            f"{row['plan_mu']:.1f}",
            f"{row['delivered_mu']:.1f}",
            f"{row['gantry_actual']:.1f}",
            status,
        )
    console.print(table)

    shift = controller.current_shift
    applied = view["shifts_applied_at"] or "not applied"
    console.print(f"Couch shift: {describe_shift(shift)} ({applied})")
    if view["checklist"] is not None:
        for i, (item, checked) in enumerate(view["checklist"], 1):
            console.print(f"  [{'x' if checked else ' '}] {i}. {item}")
    if view["override_required"]:
        console.print(f"[yellow]Override required:[/yellow] {', '.join(view['override_required'])}")
    console.print(f"[bold]{view['status']}[/bold]")


CONSOLE_HELP = (
    "Commands: view | prepare | check <n|all> | uncheck <n> | confirm | cancel | ready | "
    "select <n> | activate <n> | deactivate <n> | override | beam | deliver-all | record | quit"
)


async def _console_repl(controller: ConsoleController) -> None:
    console.print(CONSOLE_HELP)
    _render_console(controller)
    while True:
        try:
            line = await asyncio.to_thread(input, "console> ")
        except EOFError:
            return
        parts = line.strip().split()
        if not parts:
            continue
        cmd, args = parts[0].lower(), parts[1:]

        def arg_index() -> Optional[int]:
            try:
                return int(args[0]) - 1
            except (IndexError, ValueError):
                console.print("[red]Expected a number[/red]")
                return None

        if cmd in ("quit", "exit"):
            return
        if cmd == "help":
            console.print(CONSOLE_HELP)
            continue

        if cmd == "view":
            pass
        elif cmd == "prepare":
            controller.prepare()
        elif cmd == "check" and args and args[0] == "all":
            controller.check_all()
        elif cmd in ("check", "uncheck"):
            i = arg_index()
            if i is not None:
                controller.check_item(i, cmd == "check")
        elif cmd == "confirm":
            controller.confirm_prepare()
        elif cmd == "cancel":
            controller.cancel_prepare()
        elif cmd == "ready":
            controller.ready()
        elif cmd == "select":
            i = arg_index()
            if i is not None:
                controller.select_field(i)
        elif cmd in ("activate", "deactivate"):
            i = arg_index()
            if i is not None:
                controller.set_field_active(i, cmd == "activate")
        elif cmd == "override":
            controller.acknowledge_override()
        elif cmd == "beam":
            await _deliver_with_progress(controller, controller.beam_on())
        elif cmd == "deliver-all":
            await _deliver_with_progress(controller, controller.deliver_remaining())
        elif cmd == "record":
            controller.record()
        else:
            console.print(f"[red]Unknown command:[/red] {cmd}")
            continue
        _render_console(controller)


async def _deliver_with_progress(controller: ConsoleController, coro):
    fields = controller.scenario.fields
    tasks: Dict[int, int] = {}
    with Progress(
        TextColumn("{task.description}"),
        BarColumn(),
        TextColumn("{task.fields[mu]:>7.1f} MU  gantry {task.fields[gantry]:>5.1f}"),
        console=console,
    ) as progress:

        def on_progress(index: int, mu: float, gantry: Optional[float]) -> None:
            if index not in tasks:
                tasks[index] = progress.add_task(
                    fields[index].name or f"Field {index + 1}",
                    total=max(fields[index].monitor_units, 1e-9),
                    mu=0.0,
                    gantry=0.0,
                )
            progress.update(tasks[index], completed=mu, mu=mu, gantry=gantry or 0.0)

        previous = controller.simulator.on_progress
        controller.simulator.on_progress = on_progress
        try:
            return await coro
        finally:
            controller.simulator.on_progress = previous


async def _console_auto(controller: ConsoleController) -> None:
    """Scripted run: Prepare, check everything, deliver every field, Record."""
    controller.prepare()
    controller.check_all()
    controller.confirm_prepare()
    if controller.workflow.override_required:
        console.print(
            f"[yellow]Override required:[/yellow] {', '.join(controller.workflow.override_reasons)}"
        )
        controller.acknowledge_override()
    await _deliver_with_progress(controller, controller.deliver_remaining())
    controller.record()
    _render_console(controller)


@main.command(name="console")
@click.argument("scenario_file")
@click.option("--auto", is_flag=True, help="Run the whole workflow without prompting")
@click.option("--fast", is_flag=True, help="Skip the delivery animation delays")
@click.option("--study-log", type=click.Path(dir_okay=False), help="Append lifecycle events as JSON lines")
@click.pass_context
def console_cmd(ctx, scenario_file: str, auto: bool, fast: bool, study_log: Optional[str]):
    """Run the treatment console for SCENARIO_FILE."""
    settings = get_settings()
    scenario = _load_or_exit(scenario_file, ctx.obj["debug"])

    def log_event(event: str, payload: dict) -> None:
        if not study_log:
            return
        line = {"event": event, "correlation_id": ctx.obj["correlation_id"], **payload}
        with Path(study_log).open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(line) + "\n")

    def marker_payload(markers: ScenarioMarkers) -> dict:
        return markers.model_dump(mode="json")

    callbacks = ConsoleCallbacks(
        on_scenario_start=lambda m: log_event("scenario_start", marker_payload(m)),
        on_scenario_end=lambda m: log_event("scenario_end", marker_payload(m)),
        on_field_selected=lambda i: log_event("field_selected", {"fieldIndex": i}),
        on_record=lambda payload: log_event("record", payload),
    )

    async def no_delay(_seconds: float) -> None:
        await asyncio.sleep(0)

    channel = create_channel(settings.sync)
    controller = ConsoleController(
        scenario,
        channel,
        settings=settings,
        callbacks=callbacks,
        sleep=no_delay if fast else asyncio.sleep,
    )
    try:
        session = _console_auto(controller) if auto else _console_repl(controller)
        asyncio.run(_with_polling(channel, settings.sync.poll_interval, session))
    except KeyboardInterrupt:
        console.print("\n[yellow]Console closed[/yellow]")
    except LinacSimError as e:
        console.print(f"[red]Console Error:[/red] {e}")
        sys.exit(1)
    finally:
        controller.close()
        channel.close()


# Imaging display


def _parse_shift(values: Tuple[str, ...]) -> Dict[str, float]:
    shifts = {}
    for item in values:
        axis, sep, value = item.partition("=")
        if not sep:
            raise click.BadParameter(f"expected AXIS=VALUE, got {item!r}", param_hint="--shift")
        try:
            shifts[axis.strip()] = float(value)
        except ValueError:
            raise click.BadParameter(f"not a number: {value!r}", param_hint="--shift") from None
    return shifts


def _render_imaging(imaging: ImagingController) -> None:
    transform = imaging.overlay_transform()
    console.print(f"[cyan]{imaging.scenario_id}[/cyan] shift: {describe_shift(imaging.shift)}")
    console.print(f"  overlay: {transform.css()}")
    if imaging.status_message:
        console.print(f"  {imaging.status_message}")


async def _watch_imaging(imaging: ImagingController, interval: float) -> None:
    last = None
    while True:
        current = (imaging.shift, imaging.applied_at)
        if current != last:
            _render_imaging(imaging)
            last = current
        await asyncio.sleep(interval)


@main.command()
@click.argument("scenario")
@click.option("--shift", "shifts", multiple=True, help="AXIS=VALUE (VRT, LAT, LNG, PITCH); repeatable")
@click.option("--nudge", "nudges", multiple=True, help="AXIS=DELTA added to the current value; repeatable")
@click.option("--reset", "reset_shifts", is_flag=True, help="Zero the local shifts before editing")
@click.option("--apply", "apply_shifts", is_flag=True, help="Commit the shifts to the console")
@click.option("--watch", is_flag=True, help="Keep running and print shared-state updates")
@click.pass_context
def imaging(ctx, scenario: str, shifts, nudges, reset_shifts: bool, apply_shifts: bool, watch: bool):
    """Run the imaging display for SCENARIO (a scenario file or id)."""
    settings = get_settings()

    record = None
    if scenario.lower().endswith(".json") or Path(scenario).exists():
        record = _load_or_exit(scenario, ctx.obj["debug"])
        scenario_id = record.scenario_id
    else:
        scenario_id = derive_scenario_id(scenario)

    channel = create_channel(settings.sync)
    imaging_ctl = ImagingController(scenario_id, channel, scenario=record)
    try:
        if record is not None:
            console.print(f"Expected imaging: {record.imaging_type or '-'}")
            console.print(f"Notes: {record.imaging_notes or '-'}")

        try:
            if reset_shifts:
                imaging_ctl.reset()
            for axis, value in _parse_shift(shifts).items():
                imaging_ctl.set_axis(axis, value)
            for axis, delta in _parse_shift(nudges).items():
                imaging_ctl.nudge(axis, delta)
        except ValueError as e:
            raise click.BadParameter(str(e)) from None

        if apply_shifts:
            imaging_ctl.apply()
        _render_imaging(imaging_ctl)

        if watch:
            asyncio.run(
                _with_polling(
                    channel,
                    settings.sync.poll_interval,
                    _watch_imaging(imaging_ctl, settings.sync.poll_interval),
                )
            )
    except KeyboardInterrupt:
        console.print("\n[yellow]Imaging closed[/yellow]")
    finally:
        imaging_ctl.close()
        channel.close()


@main.command()
@click.argument("scenario_id")
def seed(scenario_id: str):
    """Show the seeded overlay misalignment for SCENARIO_ID."""
    offset = seed_offset(derive_scenario_id(scenario_id))
    table = Table(title=f"Seed for {derive_scenario_id(scenario_id)}")
    table.add_column("Component", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Translate X (px)", f"{offset.translate_x:.0f}")
    table.add_row("Translate Y (px)", f"{offset.translate_y:.0f}")
    table.add_row("Rotation (deg)", f"{offset.rotate_deg:.4f}")
    table.add_row("Scale", f"{offset.scale:.5f}")
    console.print(table)


@main.command()
def config():
    """Display current configuration."""
    print_configuration_summary()


if __name__ == "__main__":
    main()
