import pytest
import pandas as pd
from datetime import datetime, timedelta, timezone

from locviz import (
    ProgressReporter, LineRecord, ChartConfig, Dashboard, Page, parse_row,
    aggregate_commits,
)

PACIFIC = timezone(timedelta(hours=-8))


def _row(commit, stamp, file, line, type_, depth, length, author="Ada Lovelace"):
    date, clock = stamp.split("T")
    return {
        "commit": commit,
        "file": file,
        "line": str(line),
        "depth": str(depth),
        "length": str(length),
        "type": type_,
        "author": author,
        "date": date,
        "time": clock[:8],
        "timezone": clock[8:],
        "datetime": stamp,
    }


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def sample_rows():
    """
    Three commits spread over one week, all at -08:00:
    aaa111 Mon 09:00 (10 lines), bbb222 Wed 14:30 (50 lines),
    ccc333 Sat 23:00 (5 lines).
    """
    rows = []
    for line in range(1, 11):
        rows.append(_row("aaa111", "2025-02-10T09:00:00-08:00", "src/app.py",
                         line, "py", line % 3, 20 + line))
    for line in range(1, 31):
        rows.append(_row("bbb222", "2025-02-12T14:30:00-08:00", "src/chart.js",
                         line, "js", 2, 40, author="Grace Hopper"))
    for line in range(11, 31):
        rows.append(_row("bbb222", "2025-02-12T14:30:00-08:00", "src/app.py",
                         line, "py", 1, 10, author="Grace Hopper"))
    for line in range(1, 6):
        rows.append(_row("ccc333", "2025-02-15T23:00:00-08:00", "README.md",
                         line, "md", 0, 60))
    return rows


@pytest.fixture
def loc_csv(tmp_path, sample_rows):
    path = tmp_path / "loc.csv"
    pd.DataFrame(sample_rows).to_csv(path, index=False)
    return str(path)


@pytest.fixture
def sample_records(sample_rows):
    return [parse_row(row, i + 1) for i, row in enumerate(sample_rows)]


@pytest.fixture
def sample_commits(sample_records):
    return aggregate_commits(sample_records, "https://github.com/example/portfolio")


@pytest.fixture
def record_factory():
    """Build LineRecords with sensible defaults; override any field."""
    def make(**overrides):
        moment = overrides.pop("datetime", datetime(2025, 2, 10, 9, 0, tzinfo=PACIFIC))
        values = {
            "commit_id": "abc1234",
            "file": "src/app.py",
            "line": 1,
            "type": "py",
            "depth": 0,
            "length": 10,
            "author": "Ada Lovelace",
            "date": moment.replace(hour=0, minute=0, second=0),
            "time": moment.strftime("%H:%M:%S"),
            "timezone": "-08:00",
            "datetime": moment,
        }
        values.update(overrides)
        return LineRecord(**values)

    return make


@pytest.fixture
def dashboard(sample_records):
    config = ChartConfig(repository_url="https://github.com/example/portfolio")
    return Dashboard(sample_records, Page(), config).initialize()
