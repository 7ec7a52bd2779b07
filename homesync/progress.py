"""
Progress rendering for `homesync push` — rich live progress bars.

Usage::

    tracker = PushProgress(total_files=3, total_bytes=1 << 20, target="nas:3999")
    tracker.start()

    with tracker.file("photos/a.jpg", size=52311) as fp:
        for chunk in ...:
            fp.advance(len(chunk))

    tracker.stop()

One bar tracks the whole batch, a second one the file currently in flight.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)


class FileProgress:
    """Handle returned by PushProgress.file(); advance it by bytes sent."""

    def __init__(self, progress: Progress, task_id: TaskID, batch_id: TaskID) -> None:
        self._progress = progress
        self._task_id = task_id
        self._batch_id = batch_id

    def advance(self, n: int) -> None:
        self._progress.advance(self._task_id, n)
        self._progress.advance(self._batch_id, n)


class PushProgress:
    """Live batch + per-file progress on stderr."""

    def __init__(self, total_files: int, total_bytes: int, target: str) -> None:
        self.total_files = total_files
        self.files_done = 0
        self._target = target
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.description}[/]"),
            BarColumn(bar_width=None),
            DownloadColumn(),
            TransferSpeedColumn(),
            TimeRemainingColumn(),
            console=Console(stderr=True),
            expand=True,
        )
        self._batch = self._progress.add_task(self._label(), total=max(total_bytes, 1))

    def _label(self) -> str:
        return f"[cyan]↑ {escape(self._target)}[/] {self.files_done}/{self.total_files}"

    def start(self) -> None:
        self._progress.start()

    def stop(self) -> None:
        self._progress.stop()

    @contextmanager
    def file(self, filename: str, size: int) -> Generator[FileProgress, None, None]:
        task_id = self._progress.add_task(f"[dim]{escape(filename)}[/]", total=max(size, 1))
        try:
            yield FileProgress(self._progress, task_id, self._batch)
        finally:
            self.files_done += 1
            self._progress.remove_task(task_id)
            self._progress.update(self._batch, description=self._label())


class NullProgress:
    """No-op stand-in for --quiet and for library use."""

    files_done = 0

    def start(self) -> None: ...
    def stop(self) -> None: ...

    @contextmanager
    def file(self, filename: str, size: int) -> Generator[FileProgress, None, None]:
        class _NopFP:
            def advance(self, n: int) -> None: ...
        yield _NopFP()  # type: ignore[misc]
