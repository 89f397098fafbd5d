from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, NoReturn, Optional

import typer

from cli.config import CLIConfig, load_config
from cli.render import render_sensor_data, render_sources, render_summary
from datastore.registry import create_backend
from logging_config import configure_logging
from models.errors import DataStoreError
from models.records import SensorData, Source
from models.timestamps import parse_timestamp
from services.manager import DataManager, build_default_manager


@dataclass
class CLIState:
    config: CLIConfig
    manager: DataManager


app = typer.Typer(
    help="Administer and query a wattstore sensor data store.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1)
    return state


def _build_manager(config: CLIConfig) -> DataManager:
    if config.backend is None:
        return build_default_manager()
    return DataManager(create_backend(config.backend))


def _parse_time(value: str, param: str) -> datetime:
    try:
        return parse_timestamp(value)
    except ValueError as exc:
        raise typer.BadParameter(f"{value!r} is not an ISO-8601 timestamp", param_hint=param) from exc


def _parse_properties(pairs: Optional[List[str]]) -> Dict[str, str]:
    properties: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"{pair!r} is not in key=value form", param_hint="--property")
        properties[key.strip()] = value.strip()
    return properties


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _show(data: Optional[SensorData], heading: str, missing: str) -> None:
    if data is None:
        _fail(missing)
    render_sensor_data(data, heading=heading)


@app.callback()
def main(
    ctx: typer.Context,
    backend: Optional[str] = typer.Option(
        None,
        "--backend",
        "-b",
        help="Storage backend to open (defaults to WATTSTORE_STORAGE_BACKEND).",
    ),
    interval: Optional[int] = typer.Option(
        None,
        "--interval",
        "-i",
        min=0,
        help="Default sampling interval in minutes for energy and carbon (0 = tenth of range).",
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL."),
) -> None:
    """Entry point for the CLI."""
    configure_logging(log_level.upper() if log_level else None)
    config = load_config(backend=backend, interval_minutes=interval)
    try:
        manager = _build_manager(config)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--backend") from exc
    ctx.obj = CLIState(config=config, manager=manager)
    ctx.call_on_close(manager.close)


@app.command("init")
def init_command(
    ctx: typer.Context,
    wipe: bool = typer.Option(False, "--wipe", help="Delete all sources and sensor data first."),
) -> None:
    """Prepare the store, optionally wiping existing data."""
    state = _get_state(ctx)
    if wipe:
        if not state.manager.wipe_data():
            _fail("Wipe failed.")
        typer.secho("All data wiped.", fg=typer.colors.YELLOW)
    status = "fresh" if state.manager.is_freshly_created() else "existing"
    typer.secho(f"Store ready ({status}, backend={state.manager.backend.name}).", fg=typer.colors.GREEN)


@app.command("maintain")
def maintain_command(ctx: typer.Context) -> None:
    """Purge expired cache entries, compact storage and refresh indexes."""
    state = _get_state(ctx)
    if not state.manager.perform_maintenance() or not state.manager.index_tables():
        _fail("Maintenance failed.")
    typer.secho("Maintenance complete.", fg=typer.colors.GREEN)


@app.command("snapshot")
def snapshot_command(ctx: typer.Context) -> None:
    """Write a backend snapshot to the configured snapshot path."""
    state = _get_state(ctx)
    if not state.manager.make_snapshot():
        _fail("Snapshot not written.")
    typer.secho("Snapshot written.", fg=typer.colors.GREEN)


@app.command("sources")
def sources_command(ctx: typer.Context) -> None:
    """List every source."""
    render_sources(_get_state(ctx).manager.get_sources())


@app.command("add-source")
def add_source_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Source name."),
    owner: str = typer.Option("", "--owner", help="Owning user."),
    public: bool = typer.Option(False, "--public/--private", help="Visibility of the source."),
    sub_source: Optional[List[str]] = typer.Option(
        None,
        "--sub-source",
        "-s",
        help="Sub-source name; repeat to build a virtual source.",
    ),
    prop: Optional[List[str]] = typer.Option(
        None, "--property", "-p", help="Source property as key=value; repeatable."
    ),
    overwrite: bool = typer.Option(False, "--overwrite", help="Replace an existing source."),
) -> None:
    """Define a source; giving sub-sources makes it virtual."""
    state = _get_state(ctx)
    sub_sources = tuple(sub_source or ())
    try:
        source = Source(
            name=name,
            owner=owner,
            public=public,
            virtual=bool(sub_sources),
            sub_sources=sub_sources,
            properties=_parse_properties(prop),
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="name") from exc
    if not state.manager.store_source(source, overwrite=overwrite):
        _fail(f"Source {name!r} was not stored (duplicate name or sub-source cycle).")
    typer.secho(f"Stored source {name}.", fg=typer.colors.GREEN)


@app.command("store")
def store_command(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Source name."),
    timestamp: str = typer.Argument(..., help="ISO-8601 timestamp of the reading."),
    prop: Optional[List[str]] = typer.Option(
        None, "--property", "-p", help="Reading property as key=value; repeatable."
    ),
    tool: str = typer.Option("wattstore-cli", "--tool", help="Tool that produced the reading."),
) -> None:
    """Store a single sensor reading."""
    state = _get_state(ctx)
    parsed_time = _parse_time(timestamp, "timestamp")
    properties = _parse_properties(prop)
    try:
        data = SensorData(source=source, timestamp=parsed_time, tool=tool, properties=properties)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="source") from exc
    if not state.manager.store_sensor_data(data):
        _fail(f"Reading for {source} at {data.timestamp.isoformat()} was not stored.")
    typer.secho("Stored sensor data.", fg=typer.colors.GREEN)


@app.command("summary")
def summary_command(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Source name."),
) -> None:
    """Show the span and count of readings for a source."""
    summary = _get_state(ctx).manager.get_source_summary(source)
    if summary is None:
        _fail(f"Unknown source {source!r}.")
    render_summary(summary)


@app.command("latest")
def latest_command(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Source name."),
) -> None:
    """Show the newest reading for a source."""
    state = _get_state(ctx)
    try:
        data = state.manager.get_latest_sensor_data(source)
    except DataStoreError as exc:
        _fail(str(exc))
    _show(data, "Latest Sensor Data", f"No readings for {source!r}.")


@app.command("power")
def power_command(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Source name."),
    timestamp: str = typer.Argument(..., help="ISO-8601 timestamp."),
) -> None:
    """Show generated and consumed power at a moment."""
    state = _get_state(ctx)
    try:
        data = state.manager.get_power(source, _parse_time(timestamp, "timestamp"))
    except DataStoreError as exc:
        _fail(str(exc))
    _show(data, "Power", f"Power for {source!r} could not be computed.")


@app.command("energy")
def energy_command(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Source name."),
    start: str = typer.Argument(..., help="ISO-8601 start of the range."),
    end: Optional[str] = typer.Argument(None, help="ISO-8601 end (defaults to the latest reading)."),
) -> None:
    """Show energy generated and consumed over a range, in watt-hours."""
    state = _get_state(ctx)
    start_time = _parse_time(start, "start")
    end_time = _parse_time(end, "end") if end is not None else None
    try:
        data = state.manager.get_energy(
            source, start_time, end_time, state.config.interval_minutes
        )
    except DataStoreError as exc:
        _fail(str(exc))
    _show(data, "Energy", f"Energy for {source!r} could not be computed.")


@app.command("carbon")
def carbon_command(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Source name."),
    start: str = typer.Argument(..., help="ISO-8601 start of the range."),
    end: Optional[str] = typer.Argument(None, help="ISO-8601 end (defaults to the latest reading)."),
) -> None:
    """Show pounds of CO2 emitted over a range."""
    state = _get_state(ctx)
    start_time = _parse_time(start, "start")
    end_time = _parse_time(end, "end") if end is not None else None
    try:
        data = state.manager.get_carbon(
            source, start_time, end_time, state.config.interval_minutes
        )
    except DataStoreError as exc:
        _fail(str(exc))
    _show(data, "Carbon", f"Carbon for {source!r} could not be computed.")
