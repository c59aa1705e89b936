"""
Terminal rendering for the leaderboard command.
"""

from datetime import datetime, timedelta
from typing import Optional

from rich.console import Console
from rich.table import Table

from token_pet.core.leaderboard import LeaderboardView
from token_pet.core.ranking import Period, SortField
from token_pet.storage.models import animal_label

PERIOD_TITLES = {
    Period.TODAY: "Today's",
    Period.SEVEN_DAYS: "7-Day",
    Period.THIRTY_DAYS: "30-Day",
    Period.ALL: "All-Time",
}

SORT_TITLES = {
    SortField.TOKENS: "Token Usage",
    SortField.COST: "Cost Spending",
    SortField.SURVIVAL: "Survival Time",
}


def format_tokens(num: int) -> str:
    """Abbreviate large token counts (1.5K, 2.3M, 1.0B)."""
    if num >= 1_000_000_000:
        return f"{num / 1_000_000_000:.1f}B"
    if num >= 1_000_000:
        return f"{num / 1_000_000:.1f}M"
    if num >= 1_000:
        return f"{num / 1_000:.1f}K"
    return str(num)


def leaderboard_title(view: LeaderboardView) -> str:
    return f"🏆 {PERIOD_TITLES[view.query.period]} {SORT_TITLES[view.query.sort_by]} Leaderboard"


def reset_countdown(period: Period, now: Optional[datetime] = None) -> str:
    """Time left until the period's rankings roll over."""
    if period is Period.ALL:
        return "⏰ All-time rankings (no reset)"

    now = now or datetime.now()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period is Period.TODAY:
        reset_time = midnight + timedelta(days=1)
        label = "daily rankings reset"
    elif period is Period.SEVEN_DAYS:
        days_until_monday = (7 - now.weekday()) % 7 or 7
        reset_time = midnight + timedelta(days=days_until_monday)
        label = "weekly rankings reset"
    else:
        if now.month == 12:
            reset_time = midnight.replace(year=now.year + 1, month=1, day=1)
        else:
            reset_time = midnight.replace(month=now.month + 1, day=1)
        label = "monthly rankings reset"

    remaining = reset_time - now
    hours = int(remaining.total_seconds() // 3600)
    minutes = int(remaining.total_seconds() % 3600 // 60)

    if hours > 24:
        return f"⏰ {hours // 24}d {hours % 24}h until {label}"
    if hours > 0:
        return f"⏰ {hours}h {minutes}m until {label}"
    return f"⏰ {minutes}m until {label}"


def render_leaderboard(console: Console, view: LeaderboardView, now: Optional[datetime] = None) -> None:
    """Print the leaderboard table, or the empty-state guidance."""
    console.print(f"\n[bold]{leaderboard_title(view)}[/bold]")

    if view.is_empty:
        console.print("\n📭 No data available for the selected time period.")
        console.print("\n💡 Suggestions:")
        for suggestion in view.suggestions:
            console.print(f"  • {suggestion}")
        return

    table = Table(show_lines=False)
    for header in ("Rank", "Pet Name", "Type", "Tokens", "Cost", "Survival", "Status"):
        table.add_column(header)

    for entry in view.entries:
        table.add_row(
            f"#{entry.rank}",
            entry.pet_name,
            animal_label(entry.animal_type),
            format_tokens(entry.total_tokens),
            view.format_cost(entry),
            f"{entry.survival_days}d",
            "✅ Alive" if entry.is_alive else "💀 Dead",
        )
    console.print(table)

    if view.offline:
        console.print("\n📡 Offline Mode: Showing local data only (cost data unavailable)")
    else:
        console.print(f"\n{reset_countdown(view.query.period, now)}")
