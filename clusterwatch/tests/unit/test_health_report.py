from __future__ import annotations

from datetime import datetime, timezone

from clusterwatch.services.health.report import MarkdownReport, render_failure, render_table


STARTED = datetime(2026, 5, 4, 8, 30, tzinfo=timezone.utc)


def test_report_has_one_section_per_check_and_target() -> None:
    report = MarkdownReport(cluster_name="orders", started_at=STARTED, max_rows=10)
    report.begin_check("Blocked sessions")
    report.add_result(heading="a:5432 (writer) / app", status="warning", rows=[{"pid": 1, "query": "SELECT 1"}])
    report.add_result(heading="b:5432 (reader) / app", status="error", rows=None, error="could not connect to b")
    report.begin_check("Database sizes")
    report.add_result(heading="a:5432 (writer) / app", status="success", rows=[])

    markdown = report.render(completed_at=STARTED)

    assert markdown.startswith("# Health check report: orders\n")
    assert markdown.count("\n## ") == 2
    assert markdown.count("\n### ") == 3
    assert "**Results:** 3 (1 error, 1 success, 1 warning)" in markdown
    assert "| pid | query |" in markdown
    assert "Error: `could not connect to b`" in markdown
    assert "No rows returned." in markdown


def test_tables_are_truncated_and_cells_escaped() -> None:
    rows = [{"name": f"idx_{n}", "note": "a|b\nc"} for n in range(5)]
    lines = render_table(rows, max_rows=2)

    assert lines[0] == "| name | note |"
    assert lines[2] == "| idx_0 | a\\|b c |"
    assert len([line for line in lines if line.startswith("| idx_")]) == 2
    assert lines[-1] == "_Showing 2 of 5 rows._"


def test_columns_are_the_union_of_row_keys() -> None:
    lines = render_table([{"a": 1}, {"a": 2, "b": None}], max_rows=10)
    assert lines[0] == "| a | b |"
    assert lines[2] == "| 1 |  |"


def test_failure_body_explains_why() -> None:
    body = render_failure(cluster_label="orders", started_at=STARTED, message="cluster has no instances")
    assert "**Status:** failed" in body
    assert "cluster has no instances" in body
