from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Any


def _cell(value: Any) -> str:
    # Keep each value on one table row; pipes would split the column.
    if value is None:
        return ""
    text = str(value).replace("\r", " ").replace("\n", " ")
    return text.replace("|", "\\|")


def render_table(rows: list[dict[str, Any]], *, max_rows: int) -> list[str]:
    if not rows:
        return []
    columns: list[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    lines = [
        "| " + " | ".join(_cell(column) for column in columns) + " |",
        "| " + " | ".join("---" for _ in columns) + " |",
    ]
    shown = rows[: max(1, max_rows)]
    for row in shown:
        lines.append("| " + " | ".join(_cell(row.get(column)) for column in columns) + " |")
    if len(rows) > len(shown):
        lines.append("")
        lines.append(f"_Showing {len(shown)} of {len(rows)} rows._")
    return lines


class MarkdownReport:
    """Incrementally built health-check report.

    One ``##`` section per check definition, one ``###`` subsection per
    instance/database the check ran on. The status summary is rendered at the
    top once every result is in.
    """

    def __init__(self, *, cluster_name: str, started_at: datetime, max_rows: int) -> None:
        self.cluster_name = cluster_name
        self.started_at = started_at
        self.max_rows = max_rows
        self._body: list[str] = []
        self._statuses: Counter[str] = Counter()

    def begin_check(self, title: str) -> None:
        self._body.extend([f"## {title}", ""])

    def add_result(
        self,
        *,
        heading: str,
        status: str,
        rows: list[dict[str, Any]] | None,
        error: str | None = None,
    ) -> None:
        self._statuses[status] += 1
        self._body.extend([f"### {heading}", "", f"**Status:** {status}", ""])
        if error:
            self._body.extend([f"Error: `{_cell(error)}`", ""])
            return
        if not rows:
            self._body.extend(["No rows returned.", ""])
            return
        self._body.extend(render_table(rows, max_rows=self.max_rows))
        self._body.append("")

    def render(self, *, completed_at: datetime | None = None) -> str:
        lines = [
            f"# Health check report: {self.cluster_name}",
            "",
            f"**Started:** {self.started_at.isoformat()}  ",
        ]
        if completed_at is not None:
            lines.append(f"**Completed:** {completed_at.isoformat()}  ")
        total = sum(self._statuses.values())
        summary = ", ".join(
            f"{count} {status}" for status, count in sorted(self._statuses.items())
        )
        lines.extend([f"**Results:** {total} ({summary or 'none'})", ""])
        lines.extend(self._body)
        return "\n".join(lines).rstrip() + "\n"


def render_failure(*, cluster_label: str, started_at: datetime, message: str) -> str:
    return "\n".join(
        [
            f"# Health check report: {cluster_label}",
            "",
            f"**Started:** {started_at.isoformat()}  ",
            "**Status:** failed",
            "",
            message,
            "",
        ]
    )
