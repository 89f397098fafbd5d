from __future__ import annotations

from typing import Any, Iterable, Sequence

import typer

from models.records import SensorData, Source, SourceSummary


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def render_sensor_data(data: SensorData, heading: str = "Sensor Data") -> None:
    echo_heading(heading)
    echo_key_values(
        [
            ("source", data.source_name),
            ("timestamp", data.timestamp.isoformat()),
            ("tool", data.tool or "-"),
        ]
    )
    if data.properties:
        typer.echo("properties:")
        for key in sorted(data.properties):
            typer.echo(f"  - {key}: {data.properties[key]}")


def render_summary(summary: SourceSummary) -> None:
    echo_heading(f"Summary for {summary.source}")
    first = summary.first_timestamp.isoformat() if summary.first_timestamp else "-"
    last = summary.last_timestamp.isoformat() if summary.last_timestamp else "-"
    echo_key_values(
        [
            ("first_timestamp", first),
            ("last_timestamp", last),
            ("total_sensor_data", summary.total_sensor_data),
        ]
    )


def render_sources(sources: Sequence[Source]) -> None:
    echo_heading("Sources")
    if not sources:
        typer.echo("No sources defined.")
        return
    for source in sources:
        if source.virtual:
            typer.echo(f"  - {source.name} (virtual: {', '.join(source.sub_source_names)})")
        else:
            typer.echo(f"  - {source.name}")
