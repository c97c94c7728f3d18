#!/usr/bin/env python3
"""
Rich Progress UI for Plan Generation
====================================

Terminal progress for a plan run: one bar advanced per finished day, a
status line per day, and a summary table of the finished plan.

Plug ``PlanProgressUI.on_day`` into PlanGenerator as the progress callback.
"""

import time
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from plan_models import MealPlan

PLAN_HEADER = """
Perfect Plate Meal Planner
=========================="""

_STATUS_STYLES = {
    "accepted": "green",
    "failed": "red",
}


@dataclass
class ProgressStats:
    """Statistics for progress tracking."""
    total: int
    completed: int = 0
    failed: int = 0
    start_time: float = 0.0

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time

    @property
    def success_rate(self) -> float:
        if self.completed + self.failed == 0:
            return 0.0
        return self.completed / (self.completed + self.failed)

    @property
    def eta_seconds(self) -> Optional[float]:
        done = self.completed + self.failed
        if done == 0:
            return None
        return self.elapsed_time / done * (self.total - done)


class PlanProgressUI:
    """
    Rich terminal UI for plan generation.

    Usage:
        ui = PlanProgressUI()
        ui.start_plan(["Monday", "Tuesday"])
        generator = PlanGenerator(client, progress_callback=ui.on_day)
        plan = await generator.generate_plan(profile, ["Monday", "Tuesday"])
        ui.finish_plan()
        ui.show_plan(plan)
    """

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()
        self.stats = ProgressStats(total=0)
        self.day_log: List[str] = []
        self._progress: Optional[Progress] = None
        self._task = None

    def show_welcome(self):
        self.console.print(PLAN_HEADER)

    def start_plan(self, day_labels: List[str]):
        """Open the progress bar for ``day_labels``."""
        self.stats = ProgressStats(total=len(day_labels), start_time=time.time())
        self.day_log = []
        self.console.print(Panel(
            f"🚀 Generating {len(day_labels)} days: {', '.join(day_labels)}",
            title="Plan Generation", border_style="blue",
        ))
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            console=self.console,
        )
        self._progress.start()
        self._task = self._progress.add_task("Generating days", total=len(day_labels))

    def on_day(self, progress) -> None:
        """Progress callback: ``progress`` is a plan_generator.DayProgress."""
        status = progress.status.value
        if status == "accepted":
            self.stats.completed += 1
        else:
            self.stats.failed += 1

        line = f"Day {progress.index}/{progress.total} {progress.day_label}: {status}"
        self.day_log.append(line)
        style = _STATUS_STYLES.get(status, "yellow")
        if self._progress is not None:
            self._progress.console.print(f"[{style}]{line}[/{style}]")
            self._progress.update(self._task, completed=progress.index,
                                  description=f"Generating days ({progress.day_label})")
        else:
            self.console.print(f"[{style}]{line}[/{style}]")

    def finish_plan(self):
        """Close the progress bar and print a one-line summary."""
        if self._progress is not None:
            self._progress.stop()
            self._progress = None

        elapsed = self.stats.elapsed_time
        if self.stats.failed == 0:
            self.console.print(f"✅ Completed: {self.stats.completed}/{self.stats.total} days in {elapsed:.1f}s",
                               style="green")
        elif self.stats.completed:
            self.console.print(f"⚠️ Partial: {self.stats.completed}/{self.stats.total} days, "
                               f"{self.stats.failed} failed ({elapsed:.1f}s)", style="yellow")
        else:
            self.console.print(f"❌ Failed: no days generated ({elapsed:.1f}s)", style="red")

    def build_plan_table(self, plan: MealPlan) -> Table:
        """One row per day: each meal's title and the day's calories."""
        table = Table(title=plan.title, show_lines=True)
        table.add_column("Day", style="bold")
        for meal in ("Breakfast", "Lunch", "Dinner"):
            table.add_column(meal)
        table.add_column("kcal", justify="right")

        for day in plan.days:
            titles = []
            for meal_name in ("Breakfast", "Lunch", "Dinner"):
                meal = day.meal(meal_name)
                titles.append(meal.item.title if meal and meal.item else "-")
            calories = str(day.totals.calories) if day.totals else "-"
            table.add_row(day.day, *titles, calories)
        return table

    def show_plan(self, plan: MealPlan):
        self.console.print(self.build_plan_table(plan))
        notice = plan.partial_notice()
        if notice:
            self.console.print(f"⚠️ {notice}", style="yellow")

    def show_status(self, message: str, style: str = "info"):
        if style == "error":
            self.console.print(f"Error: {message}", style="red")
        elif style == "warning":
            self.console.print(f"Warning: {message}", style="yellow")
        else:
            self.console.print(message)

    def create_timer(self, operation_name: str) -> 'Timer':
        return Timer(operation_name, self.console)


class Timer:
    """Simple timer for measuring operation duration."""

    def __init__(self, operation: str, console: Optional[Console] = None):
        self.operation = operation
        self.console = console or Console()
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    def __enter__(self):
        self.start_time = time.time()
        self.console.print(f"⏱️  Started: {self.operation} at {datetime.now().strftime('%H:%M:%S')}", style="blue")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.end_time = time.time()
        duration = self.end_time - self.start_time
        style = "green" if exc_type is None else "red"
        self.console.print(f"⏱️  Completed: {self.operation} in {duration:.1f}s", style=style)
