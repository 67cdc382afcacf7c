from __future__ import annotations

from rich.table import Table
from rich.text import Text

from agent_timeline.models import ACTOR_LABELS, ACTOR_STYLES, CATEGORY_STYLES, RecordingMeta, TimelineEntry
from agent_timeline.utils import format_duration, format_relative_time, format_timestamp
from agent_timeline.views import TimelineStats


def format_entry(entry: TimelineEntry) -> Text:
    line = Text()
    line.append(format_timestamp(entry.timestamp), style="dim")
    line.append(" ")
    line.append(f"{entry.from_actor.value:>6}", style=ACTOR_STYLES[entry.from_actor])
    line.append(" → ", style="dim")
    line.append(f"{entry.to_actor.value:<6}", style=ACTOR_STYLES[entry.to_actor])
    line.append(f" [{entry.category.value}] ", style=CATEGORY_STYLES[entry.category])
    line.append(entry.label)
    duration = (entry.metadata or {}).get("duration")
    if duration:
        line.append(f"  {format_duration(duration)}", style="dim")
    return line


def recordings_table(metas: list[RecordingMeta]) -> Table:
    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("Recording")
    table.add_column("Started", style="dim")
    table.add_column("Duration", justify="right")
    table.add_column("Events", justify="right")
    table.add_column("Sessions")
    for meta in metas:
        duration = format_duration(meta.end_time - meta.start_time) if meta.end_time else "[yellow]open[/]"
        table.add_row(
            f"[cyan]{meta.id}[/]",
            format_relative_time(meta.start_time),
            duration,
            str(meta.event_count),
            ", ".join(meta.session_ids) or "-",
        )
    return table


def stats_tables(stats: TimelineStats) -> list[Table]:
    totals = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    totals.add_column("Metric", style="dim")
    totals.add_column("Value", justify="right")
    totals.add_row("Events", str(stats.total_events))
    totals.add_row("Duration", format_duration(stats.duration))
    totals.add_row("Tokens", f"{stats.total_tokens} (in {stats.tokens_in} · out {stats.tokens_out} · reasoning {stats.tokens_reasoning})")
    totals.add_row("Cost", f"${stats.total_cost:.4f}" if stats.total_cost else "$0")
    totals.add_row("LLM steps", str(stats.llm_steps))
    totals.add_row("Errors", f"[red]{stats.error_count}[/]" if stats.error_count else "0")

    breakdown = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    breakdown.add_column("Category")
    breakdown.add_column("Count", justify="right")
    breakdown.add_column("Actor")
    breakdown.add_column("Count", justify="right")
    categories = list(stats.category_counts.items())
    actors = list(stats.actor_counts.items())
    for row in range(max(len(categories), len(actors))):
        category, category_count = categories[row] if row < len(categories) else (None, None)
        actor, actor_count = actors[row] if row < len(actors) else (None, None)
        breakdown.add_row(
            Text(category.value, style=CATEGORY_STYLES[category]) if category else "",
            str(category_count) if category else "",
            Text(ACTOR_LABELS[actor], style=ACTOR_STYLES[actor]) if actor else "",
            str(actor_count) if actor else "",
        )

    tools = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    tools.add_column("Tool")
    tools.add_column("Calls", justify="right")
    tools.add_column("Avg duration", justify="right")
    for tool in stats.tools:
        tools.add_row(tool.name, str(tool.count), format_duration(tool.avg_duration))
    return [totals, breakdown, tools]
