from __future__ import annotations

import asyncio
import json
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, NoReturn

import typer
from rich.console import Console
from rich.panel import Panel

from agent_timeline.connection import DEFAULT_SERVER_URL, ConnectionState
from agent_timeline.controller import TimelineController
from agent_timeline.logging_setup import configure_logging
from agent_timeline.playback import SPEEDS
from agent_timeline.recording import FileRecordingSink, RecordingImportError, RecordingNotFound
from agent_timeline.render import format_entry, recordings_table, stats_tables
from agent_timeline.views import compute_stats

app = typer.Typer(help="Watch, record and replay an AI coding agent's event stream.", no_args_is_help=True)
recordings_app = typer.Typer(help="List, inspect, export, import and delete stored recordings.", no_args_is_help=True)

DEFAULT_HOME = Path("~/.agent-timeline")
LOG_FILE_NAME = "agent-timeline.log"

SERVER_OPTION = typer.Option(
    DEFAULT_SERVER_URL, "--server", envvar="AGENT_TIMELINE_SERVER", help="Agent server base URL."
)
HOME_OPTION = typer.Option(
    DEFAULT_HOME, "--home", envvar="AGENT_TIMELINE_HOME", help="Directory holding recordings and the search index."
)
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Log debug output.")


def _resolve_home(home: Path) -> Path:
    return home.expanduser().resolve()


def _check_speed(speed: float) -> float:
    if speed not in SPEEDS:
        raise typer.BadParameter(f"Speed must be one of {', '.join(str(s) for s in SPEEDS)}")
    return speed


def _fail(message: str) -> NoReturn:
    Console(stderr=True).print(f"[red]{message}[/]")
    raise typer.Exit(1)


@contextmanager
def _raw_log(path: Path | None) -> Iterator[Callable[[Any, str], None] | None]:
    if path is None:
        yield None
        return
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:

        def write(payload: Any, directory: str) -> None:
            handle.write(json.dumps({"directory": directory, "payload": payload}, ensure_ascii=False) + "\n")
            handle.flush()

        yield write


@app.command("watch")
def watch_command(
    server: str = SERVER_OPTION,
    home: Path = HOME_OPTION,
    no_record: bool = typer.Option(False, "--no-record", help="Do not store a recording of this session."),
    raw_log: Path | None = typer.Option(None, "--raw-log", help="Append every raw server event to this JSONL file."),
    speed: float = typer.Option(1.0, "--speed", help="Initial playback speed."),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Follow the live event stream in a TUI."""
    from agent_timeline.tui import TimelineApp

    home = _resolve_home(home)
    _check_speed(speed)
    configure_logging(verbose, log_file=home / LOG_FILE_NAME)
    sink = None if no_record else FileRecordingSink(home)
    with _raw_log(raw_log) as on_raw_event:
        controller = TimelineController(server, sink=sink, speed=speed, on_raw_event=on_raw_event)
        TimelineApp(controller).run()
    if controller.recorder is not None and controller.recorder.last_recording_id:
        typer.echo(f"Recorded {controller.recorder.last_recording_id}")


@app.command("tail")
def tail_command(
    server: str = SERVER_OPTION,
    home: Path = HOME_OPTION,
    no_record: bool = typer.Option(False, "--no-record", help="Do not store a recording of this session."),
    raw_log: Path | None = typer.Option(None, "--raw-log", help="Append every raw server event to this JSONL file."),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Print one line per timeline entry until interrupted."""
    configure_logging(verbose)
    home = _resolve_home(home)
    console = Console()
    sink = None if no_record else FileRecordingSink(home)

    async def run(on_raw_event: Callable[[Any, str], None] | None) -> None:
        controller = TimelineController(server, sink=sink, on_raw_event=on_raw_event)
        printed = 0

        def print_new(store) -> None:
            nonlocal printed
            for entry in store.entries[printed:]:
                console.print(format_entry(entry))
            printed = len(store)

        def print_state(state: ConnectionState, detail: str) -> None:
            style = "green" if state is ConnectionState.CONNECTED else "yellow"
            console.print(f"[{style}]{state.value}[/] [dim]{detail}[/]")

        controller.store.subscribe(print_new)
        controller.on_connection_state(print_state)
        controller.connect()
        try:
            await asyncio.Event().wait()
        finally:
            await controller.close()
            if controller.recorder is not None and controller.recorder.last_recording_id:
                console.print(f"Recorded {controller.recorder.last_recording_id}")

    with _raw_log(raw_log) as on_raw_event:
        try:
            asyncio.run(run(on_raw_event))
        except KeyboardInterrupt:
            console.print("[dim]stopped[/]")


@app.command("replay")
def replay_command(
    recording_id: str = typer.Argument(..., help="Recording to replay."),
    home: Path = HOME_OPTION,
    speed: float = typer.Option(1.0, "--speed", help="Playback speed."),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Replay a stored recording in the TUI."""
    from agent_timeline.tui import TimelineApp

    home = _resolve_home(home)
    _check_speed(speed)
    sink = FileRecordingSink(home)
    try:
        sink.get_meta(recording_id)
    except RecordingNotFound as exc:
        _fail(str(exc))
    configure_logging(verbose, log_file=home / LOG_FILE_NAME)
    controller = TimelineController(speed=speed)
    TimelineApp(controller, live=False, sink=sink, recording_id=recording_id).run()


@recordings_app.command("list")
def recordings_list(home: Path = HOME_OPTION) -> None:
    """List stored recordings, newest first."""
    metas = FileRecordingSink(_resolve_home(home)).list_recordings()
    if not metas:
        typer.echo("No recordings.")
        return
    Console().print(recordings_table(metas))


@recordings_app.command("show")
def recordings_show(
    recording_id: str = typer.Argument(...),
    home: Path = HOME_OPTION,
    limit: int | None = typer.Option(None, "--limit", "-n", help="Only print the first N entries."),
) -> None:
    """Print the entries of a recording."""
    sink = FileRecordingSink(_resolve_home(home))
    try:
        meta = sink.get_meta(recording_id)
        events = sink.load_recording_events(recording_id)
    except RecordingNotFound as exc:
        _fail(str(exc))
    console = Console()
    console.print(recordings_table([meta]))
    for entry in events[:limit] if limit is not None else events:
        console.print(format_entry(entry))


@recordings_app.command("stats")
def recordings_stats(recording_id: str = typer.Argument(...), home: Path = HOME_OPTION) -> None:
    """Summarize tokens, cost, tools and errors of a recording."""
    sink = FileRecordingSink(_resolve_home(home))
    try:
        events = sink.load_recording_events(recording_id)
    except RecordingNotFound as exc:
        _fail(str(exc))
    console = Console()
    totals, breakdown, tools = stats_tables(compute_stats(events))
    console.print(Panel(totals, title=f"[bold]{recording_id}", border_style="dim"))
    console.print(breakdown)
    if tools.row_count:
        console.print(tools)


@recordings_app.command("export")
def recordings_export(
    recording_id: str = typer.Argument(...),
    home: Path = HOME_OPTION,
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to this file instead of stdout."),
    no_redact: bool = typer.Option(False, "--no-redact", help="Do not redact API keys, tokens, or passwords."),
) -> None:
    """Export a recording as a JSON document."""
    sink = FileRecordingSink(_resolve_home(home))
    try:
        blob = sink.export_recording(recording_id, redact=not no_redact)
    except RecordingNotFound as exc:
        _fail(str(exc))
    if output is None:
        typer.echo(blob, nl=False)
        return
    output = output.expanduser()
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(blob, encoding="utf-8")
    typer.echo(f"Exported {recording_id} to {output}")


@recordings_app.command("import")
def recordings_import(
    path: Path = typer.Argument(..., help="JSON file produced by `recordings export`."),
    home: Path = HOME_OPTION,
) -> None:
    """Import a recording from an exported JSON document."""
    path = path.expanduser()
    if not path.exists():
        _fail(f"File not found: {path}")
    sink = FileRecordingSink(_resolve_home(home))
    try:
        recording_id = sink.import_recording(path.read_text(encoding="utf-8"))
    except RecordingImportError as exc:
        _fail(f"Import failed: {exc}")
    typer.echo(f"Imported {recording_id}")


@recordings_app.command("delete")
def recordings_delete(
    recording_id: str = typer.Argument(...),
    home: Path = HOME_OPTION,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Delete a stored recording."""
    sink = FileRecordingSink(_resolve_home(home))
    try:
        sink.get_meta(recording_id)
    except RecordingNotFound as exc:
        _fail(str(exc))
    if not yes:
        typer.confirm(f"Delete {recording_id}?", abort=True)
    sink.delete_recording(recording_id)
    typer.echo(f"Deleted {recording_id}")


@recordings_app.command("search")
def recordings_search(
    query: str = typer.Argument(..., help="Words to look for in labels, tool names and errors."),
    home: Path = HOME_OPTION,
    limit: int = typer.Option(20, "--limit", "-n"),
) -> None:
    """Full-text search across stored recordings."""
    from agent_timeline.search import ensure_index, query_index

    root = _resolve_home(home)
    ensure_index(root)
    hits = query_index(root, query, limit=limit)
    if not hits:
        typer.echo("No matches.")
        return
    console = Console()
    for hit in hits:
        console.print(
            f"[cyan]{hit['recording_id']}[/]  events={hit['event_count']}  "
            f"sessions={','.join(hit['sessions']) or '-'}  [dim]score={hit['score']:.2f}[/]"
        )


app.add_typer(recordings_app, name="recordings")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
