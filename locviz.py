#!/usr/bin/env python3
"""
Commit Scatter Engine - linked views over a line-level commit table (v1.0.0)

Turns a flat `loc.csv` table (one row per changed line) into the state behind
an interactive commit scatterplot:

- One point per commit, x = calendar time, y = time of day, r = lines changed
- Summary statistics for the whole dataset or any filtered subset
- Rectangular brush selection driving the stats, file and language panels
- A time-progress slider that cumulatively reveals commits in order
- Per-file unit visualization (one marker per line, colored by language)
- Frontend-ready JSON export of the rendered page containers

The page itself (navigation, styling, layout) is not modelled here. The engine
only writes text, attributes and child elements into containers the page
provides, looked up by id.

Version: 1.0.0
"""

import bisect
import hashlib
import json
import math
import os
import re
import sys
import time
from collections import defaultdict
from dataclasses import InitVar, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import click
import pandas as pd
import yaml
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm


VERSION = "1.0.0"
SCHEMA_VERSION = "1.0.0"

WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

# d3.schemeTableau10
TABLEAU10 = (
    "#4e79a7", "#f28e2c", "#e15759", "#76b7b2", "#59a14f",
    "#edc949", "#af7aa1", "#ff9da7", "#9c755f", "#bab0ab",
)

TIME_OF_DAY_COLORS = {
    "morning": "rgba(255, 165, 0, 0.7)",
    "afternoon": "rgba(255, 200, 0, 0.7)",
    "evening": "rgba(255, 140, 0, 0.7)",
    "night": "rgba(70, 130, 180, 0.7)",
}

NOT_AVAILABLE = "N/A"


# ============================================================================
# ERRORS
# ============================================================================


class LoadFailure(Exception):
    """The source table could not be fetched or parsed. Fatal to initialization."""


class MalformedRecordError(LoadFailure):
    """A single row had non-numeric counters or unparsable dates."""

    def __init__(self, row_number: int, column: str, value: Any, reason: str = ""):
        self.row_number = row_number
        self.column = column
        self.value = value
        message = f"Malformed record at row {row_number}: {column}={value!r}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class MissingContainerError(LookupError):
    """A page container referenced by a render step does not exist."""

    def __init__(self, container_id: str):
        self.container_id = container_id
        super().__init__(f"Page has no container '#{container_id}'")


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Console output for the load, render and export stages.

    Stages are timed from `stage_start` to `stage_complete`, row parsing gets
    a tqdm bar, and the run ends with a summary table. Quiet mode prints
    nothing except errors; `detail` lines only appear in verbose mode.
    """

    RULE = "-" * 70

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self._started = time.perf_counter()
        self._stage_started: Dict[str, float] = {}

    def _paint(self, text: str, *styles: str) -> str:
        if not self.use_colors or not styles:
            return text
        return "".join(styles) + text + Style.RESET_ALL

    def _say(self, text: str = "", *styles: str):
        if not self.quiet:
            print(self._paint(text, *styles))

    def _table(self, rows: Dict[str, Any]):
        width = max(len(str(key)) for key in rows)
        for key, value in rows.items():
            self._say(f"   {str(key):<{width}}  {value}")

    def stage_start(self, stage: str, message: str = ""):
        self._stage_started[stage] = time.perf_counter()
        self._say()
        self._say(f"▶ {stage}", Fore.BLUE, Style.BRIGHT)
        if message:
            self._say(f"   {message}")

    def stage_complete(self, stage: str, stats: Optional[Dict[str, Any]] = None):
        started = self._stage_started.pop(stage, time.perf_counter())
        self._say(f"✔ {stage} done ({time.perf_counter() - started:.2f}s)", Fore.GREEN)
        if stats and self.verbose:
            self._table(stats)

    def create_progress_bar(
        self, total: int, desc: str = "Processing", unit: str = " rows"
    ) -> Optional[tqdm]:
        """A tqdm bar on stderr, or None when quiet"""
        if self.quiet:
            return None
        return tqdm(
            total=total,
            desc=self._paint(desc, Fore.CYAN),
            unit=unit,
            leave=False,
            dynamic_ncols=True,
        )

    def info(self, message: str):
        self._say(f"· {message}")

    def detail(self, message: str):
        if self.verbose:
            self._say(f"   · {message}", Style.DIM)

    def warning(self, message: str):
        self._say(f"! {message}", Fore.YELLOW, Style.BRIGHT)

    def error(self, message: str):
        # shown even when quiet
        print(self._paint(f"ERROR: {message}", Fore.RED, Style.BRIGHT), file=sys.stderr)

    def summary(self, stats: Dict[str, Any], outcome: str = ""):
        """Closing table of run facts, total time and an optional outcome line"""
        self._say()
        self._say(self.RULE, Fore.CYAN)
        self._say("Summary", Fore.MAGENTA, Style.BRIGHT)
        if stats:
            self._table(stats)
        self._say(f"   finished in {time.perf_counter() - self._started:.2f}s", Fore.YELLOW)
        if outcome:
            self._say(outcome, Fore.GREEN, Style.BRIGHT)
        self._say(self.RULE, Fore.CYAN)


# ============================================================================
# CONFIGURATION
# ============================================================================


CONFIG_FILE_NAMES = (".locviz.yaml", ".locviz.yml", ".locviz.json")


class UsableArea(NamedTuple):
    top: float
    right: float
    bottom: float
    left: float
    width: float
    height: float


PIXEL_FIELDS = (
    "width", "height", "margin_top", "margin_right", "margin_bottom", "margin_left",
    "tooltip_offset",
)


def _config_number(name: str, value: Any, kind: type):
    """Coerce a config value ('800' from a YAML string, 0.5, 12) or raise ValueError"""
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number, got {value!r}")
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}") from None


@dataclass
class ChartConfig:
    """Chart geometry and encoding parameters"""

    width: int = 1000
    height: int = 600
    margin_top: int = 10
    margin_right: int = 10
    margin_bottom: int = 30
    margin_left: int = 20
    radius_range: Tuple[float, float] = (2, 30)
    base_opacity: float = 0.7
    tooltip_offset: int = 10
    radius_domain: str = "global"
    repository_url: str = ""

    def __post_init__(self):
        for name in PIXEL_FIELDS:
            setattr(self, name, _config_number(name, getattr(self, name), int))
        self.base_opacity = _config_number("base_opacity", self.base_opacity, float)

        try:
            low, high = self.radius_range
        except (TypeError, ValueError):
            raise ValueError(
                f"radius_range needs two values, got {self.radius_range!r}"
            ) from None
        self.radius_range = (
            _config_number("radius_range", low, float),
            _config_number("radius_range", high, float),
        )

        area = self.usable_area()
        if area.width <= 0 or area.height <= 0:
            raise ValueError(
                f"margins leave no plotting area in a {self.width}x{self.height} chart"
            )
        if self.radius_domain not in ("global", "filtered"):
            raise ValueError(
                f"radius_domain must be 'global' or 'filtered', got {self.radius_domain!r}"
            )

    def usable_area(self) -> UsableArea:
        return UsableArea(
            top=self.margin_top,
            right=self.width - self.margin_right,
            bottom=self.height - self.margin_bottom,
            left=self.margin_left,
            width=self.width - self.margin_left - self.margin_right,
            height=self.height - self.margin_top - self.margin_bottom,
        )

    @classmethod
    def from_resolver(cls, resolver: "ConfigResolver") -> "ChartConfig":
        defaults = cls()
        values = {
            f.name: resolver.get(f.name, getattr(defaults, f.name)) for f in fields(cls)
        }
        return cls(**values)


def load_config_file(config_path: str) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.
    Supports .locviz.yaml, .locviz.yml and .locviz.json
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            return yaml.safe_load(f) or {}
        elif file_ext == ".json":
            return json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")


def find_config_file(source_dir: str) -> Optional[str]:
    """
    Auto-discover configuration file next to the source table or in the
    current directory.
    """
    for search_dir in (source_dir, os.getcwd()):
        for config_name in CONFIG_FILE_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path

    return None


PRESETS = {
    "standard": {},
    "compact": {"width": 600, "height": 400, "radius_range": (2, 18)},
}


class ConfigResolver:
    """
    Resolve configuration with precedence: CLI > Config File > Preset > Defaults
    """

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        preset_name: Optional[str],
        source_dir: str,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = {}
        reporter = reporter or ProgressReporter(quiet=True)

        if config_path:
            self.config = load_config_file(config_path)
        else:
            auto_path = find_config_file(source_dir)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    reporter.info(f"Auto-discovered configuration: {auto_path}")
                except (OSError, ValueError, yaml.YAMLError) as e:
                    reporter.warning(f"Found config file but failed to load: {e}")

        # Normalize config keys (kebab-case to snake_case)
        self.config = {k.replace("-", "_"): v for k, v in self.config.items()}

        final_preset_name = preset_name or self.config.get("preset")
        self.preset = PRESETS.get(final_preset_name, {}) if final_preset_name else {}

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve value based on precedence"""
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        if key in self.preset:
            return self.preset[key]
        return default


# ============================================================================
# DATA STRUCTURES & MODELS
# ============================================================================


@dataclass(frozen=True)
class LineRecord:
    """One changed line of one file in one commit."""

    commit_id: str
    file: str
    line: int
    type: str
    depth: int
    length: int
    author: str
    date: datetime
    time: str
    timezone: str
    datetime: datetime


@dataclass(frozen=True)
class Commit:
    """
    Aggregate over all line records sharing a commit id.

    The constituent records are passed in as `records` but are not a field:
    they live in the private `_lines` tuple, exposed read-only through
    `lines`, and stay out of `fields()`, `asdict()`, `repr()` and equality.
    """

    id: str
    url: str
    author: str
    date: datetime
    time: str
    timezone: str
    datetime: datetime
    hour_frac: float
    total_lines: int
    records: InitVar[Sequence[LineRecord]]

    def __post_init__(self, records: Sequence[LineRecord]):
        object.__setattr__(self, "_lines", tuple(records))

    @classmethod
    def from_lines(cls, commit_id: str, lines: Sequence[LineRecord], url: str = "") -> "Commit":
        first = lines[0]
        return cls(
            id=commit_id,
            url=url,
            author=first.author,
            date=first.date,
            time=first.time,
            timezone=first.timezone,
            datetime=first.datetime,
            hour_frac=first.datetime.hour + first.datetime.minute / 60,
            total_lines=len(lines),
            records=lines,
        )

    @property
    def lines(self) -> Tuple[LineRecord, ...]:
        return self._lines

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            data[f.name] = value.isoformat() if isinstance(value, datetime) else value
        return data


@dataclass
class CommitStats:
    """Summary of a set of line records and the commits they belong to"""

    total_loc: int = 0
    total_commits: int = 0
    num_files: int = 0
    max_file_length: int = 0
    longest_file: str = NOT_AVAILABLE
    avg_file_length: int = 0
    avg_line_length: int = 0
    longest_line: int = 0
    max_depth: int = 0
    avg_depth: float = 0.0
    most_productive_period: str = NOT_AVAILABLE
    most_productive_day: str = NOT_AVAILABLE

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def rows(self) -> List[Tuple[str, str]]:
        """(label, value) pairs in stats panel order"""
        return [
            ("Total LOC", str(self.total_loc)),
            ("Total commits", str(self.total_commits)),
            ("Number of files", str(self.num_files)),
            ("Maximum file length (lines)", str(self.max_file_length)),
            ("Longest file", self.longest_file),
            ("Average file length (lines)", str(self.avg_file_length)),
            ("Average line length (characters)", str(self.avg_line_length)),
            ("Longest line (characters)", str(self.longest_line)),
            ("Maximum depth", str(self.max_depth)),
            ("Average depth", f"{self.avg_depth:.2f}"),
            ("Most productive time of day", self.most_productive_period),
            ("Most productive day of week", self.most_productive_day),
        ]


@dataclass
class FilterState:
    """Slider position and the cutoff instant derived from it"""

    progress: float = 100.0
    max_time: Optional[datetime] = None


class BrushRect(NamedTuple):
    """Axis-aligned brush rectangle in chart coordinates, normalized."""

    x0: float
    y0: float
    x1: float
    y1: float

    @classmethod
    def from_corners(cls, corners) -> Optional["BrushRect"]:
        """Accepts None, a BrushRect, ((x0, y0), (x1, y1)) or (x0, y0, x1, y1)."""
        if corners is None:
            return None
        if isinstance(corners, BrushRect):
            return corners
        if len(corners) == 2:
            (ax, ay), (bx, by) = corners
        else:
            ax, ay, bx, by = corners
        return cls(min(ax, bx), min(ay, by), max(ax, bx), max(ay, by))

    def contains(self, x: float, y: float) -> bool:
        return self.x0 <= x <= self.x1 and self.y0 <= y <= self.y1


# ============================================================================
# RECORD LOADER
# ============================================================================


REQUIRED_COLUMNS = (
    "commit", "file", "line", "depth", "length", "type",
    "author", "date", "time", "timezone", "datetime",
)
INTEGER_COLUMNS = ("line", "depth", "length")

_OFFSET_RE = re.compile(r"([+-])(\d{2}):?(\d{2})")
_COMPACT_OFFSET_RE = re.compile(r"([+-]\d{2})(\d{2})$")


def parse_offset(value: str) -> timezone:
    """'+05:30', '-0800', 'Z' or '' (UTC) to a fixed-offset tzinfo"""
    text = value.strip()
    if not text or text in ("Z", "z"):
        return timezone.utc
    match = _OFFSET_RE.fullmatch(text)
    if not match:
        raise ValueError(f"invalid UTC offset {value!r}")
    sign, hours, minutes = match.groups()
    delta = timedelta(hours=int(hours), minutes=int(minutes))
    return timezone(-delta if sign == "-" else delta)


def parse_instant(value: str, default_tz: timezone) -> datetime:
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _COMPACT_OFFSET_RE.sub(r"\1:\2", text) if "T" in text else text
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_tz)
    return parsed


def _to_int(value: str) -> int:
    text = value.strip()
    try:
        return int(text)
    except ValueError:
        number = float(text)
        if not number.is_integer():
            raise ValueError(f"{value!r} is not an integer")
        return int(number)


def parse_row(row: Dict[str, str], row_number: int) -> LineRecord:
    """Coerce one text row into a LineRecord or raise MalformedRecordError"""
    numbers = {}
    for column in INTEGER_COLUMNS:
        try:
            numbers[column] = _to_int(row[column])
        except (ValueError, OverflowError) as e:
            raise MalformedRecordError(row_number, column, row[column], "not a number") from e

    try:
        tz = parse_offset(row["timezone"])
    except ValueError as e:
        raise MalformedRecordError(row_number, "timezone", row["timezone"], str(e)) from e

    try:
        date = datetime.fromisoformat(row["date"].strip()).replace(
            hour=0, minute=0, second=0, microsecond=0, tzinfo=tz
        )
    except ValueError as e:
        raise MalformedRecordError(row_number, "date", row["date"], str(e)) from e

    try:
        instant = parse_instant(row["datetime"], tz)
    except ValueError as e:
        raise MalformedRecordError(row_number, "datetime", row["datetime"], str(e)) from e

    return LineRecord(
        commit_id=row["commit"],
        file=row["file"],
        line=numbers["line"],
        type=row["type"],
        depth=numbers["depth"],
        length=numbers["length"],
        author=row["author"],
        date=date,
        time=row["time"],
        timezone=row["timezone"],
        datetime=instant,
    )


def parse_records(
    rows: Sequence[Dict[str, str]], reporter: Optional[ProgressReporter] = None
) -> List[LineRecord]:
    """
    Parse text rows into LineRecords, in order.

    The whole load is aborted on the first malformed row: commit aggregation
    assumes a complete dataset.
    """
    reporter = reporter or ProgressReporter(quiet=True)
    progress_bar = reporter.create_progress_bar(total=len(rows), desc="Parsing rows")
    records = []
    try:
        for index, row in enumerate(rows):
            records.append(parse_row(row, index + 1))
            if progress_bar:
                progress_bar.update(1)
    finally:
        if progress_bar:
            progress_bar.close()
    return records


def load_records(
    source: str, reporter: Optional[ProgressReporter] = None
) -> List[LineRecord]:
    """
    Read a loc.csv table into LineRecords.

    Args:
        source: Path (or URL understood by pandas) of the CSV table

    Returns:
        Records in file order

    Raises:
        LoadFailure: the table is missing, unreadable or lacks columns
        MalformedRecordError: a row has non-numeric counters or bad dates
    """
    try:
        frame = pd.read_csv(source, dtype=str, keep_default_na=False, encoding="utf-8")
    except FileNotFoundError as e:
        raise LoadFailure(f"Source table not found: {source}") from e
    except pd.errors.EmptyDataError as e:
        raise LoadFailure(f"Source table is empty: {source}") from e
    except (pd.errors.ParserError, UnicodeDecodeError, OSError) as e:
        raise LoadFailure(f"Failed to read {source}: {e}") from e

    missing = [column for column in REQUIRED_COLUMNS if column not in frame.columns]
    if missing:
        raise LoadFailure(f"Source table is missing columns: {', '.join(missing)}")

    return parse_records(frame.to_dict("records"), reporter)


# ============================================================================
# COMMIT AGGREGATOR
# ============================================================================


def commit_url(repository_url: str, commit_id: str) -> str:
    if not repository_url:
        return ""
    return f"{repository_url.rstrip('/')}/commit/{commit_id}"


def aggregate_commits(
    records: Iterable[LineRecord], repository_url: str = ""
) -> List[Commit]:
    """
    Group line records into commits.

    Commits come out in first-occurrence order of their ids; each commit's
    lines keep input order. Scalar metadata is taken from the first record.
    """
    groups: Dict[str, List[LineRecord]] = {}
    for record in records:
        groups.setdefault(record.commit_id, []).append(record)

    return [
        Commit.from_lines(commit_id, lines, commit_url(repository_url, commit_id))
        for commit_id, lines in groups.items()
    ]


def flatten_lines(commits: Iterable[Commit]) -> List[LineRecord]:
    return [record for commit in commits for record in commit.lines]


# ============================================================================
# STATISTICS REDUCER
# ============================================================================


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def day_period(moment: datetime) -> str:
    """English day period of a wall-clock time"""
    hour = moment.hour
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 21:
        return "evening"
    return "night"


def weekday_name(moment: datetime) -> str:
    return WEEKDAYS[moment.weekday()]


def _busiest(buckets: Dict[str, int]) -> str:
    # max() keeps the first bucket discovered on ties
    if not buckets:
        return NOT_AVAILABLE
    return max(buckets.items(), key=lambda item: item[1])[0]


def compute_stats(lines: Sequence[LineRecord], commits: Sequence[Commit]) -> CommitStats:
    """
    Summarize lines and commits.

    Pure and safe on empty input: zero counts and "N/A" labels come back
    instead of an error, so the same reducer serves the full dataset and any
    filtered or selected subset.
    """
    stats = CommitStats(total_loc=len(lines), total_commits=len(commits))
    if not lines:
        return stats

    file_lengths: Dict[str, int] = {}
    work_by_period: Dict[str, int] = defaultdict(int)
    work_by_day: Dict[str, int] = defaultdict(int)
    for record in lines:
        file_lengths[record.file] = max(file_lengths.get(record.file, record.line), record.line)
        work_by_period[day_period(record.datetime)] += record.length
        work_by_day[weekday_name(record.datetime)] += record.length

    longest_file, max_file_length = max(file_lengths.items(), key=lambda item: item[1])

    stats.num_files = len(file_lengths)
    stats.max_file_length = max_file_length
    stats.longest_file = longest_file
    stats.avg_file_length = round_half_up(sum(file_lengths.values()) / len(file_lengths))
    stats.avg_line_length = round_half_up(sum(r.length for r in lines) / len(lines))
    stats.longest_line = max(r.length for r in lines)
    stats.max_depth = max(r.depth for r in lines)
    stats.avg_depth = round(sum(r.depth for r in lines) / len(lines), 2)
    stats.most_productive_period = _busiest(work_by_period)
    stats.most_productive_day = _busiest(work_by_day)
    return stats


# ============================================================================
# SCALES
# ============================================================================


_E10 = math.sqrt(50)
_E5 = math.sqrt(10)
_E2 = math.sqrt(2)


def _tick_factor(error: float) -> int:
    if error >= _E10:
        return 10
    if error >= _E5:
        return 5
    if error >= _E2:
        return 2
    return 1


def tick_increment(start: float, stop: float, count: int) -> float:
    """Positive: tick spacing. Negative: the reciprocal of a sub-unit spacing."""
    step = (stop - start) / max(0, count)
    power = math.floor(math.log10(step))
    factor = _tick_factor(step / 10 ** power)
    if power >= 0:
        return factor * 10 ** power
    return -(10 ** -power) / factor


def tick_step(start: float, stop: float, count: int) -> float:
    step0 = abs(stop - start) / max(0, count)
    step1 = 10 ** math.floor(math.log10(step0))
    step1 *= _tick_factor(step0 / step1)
    return -step1 if stop < start else step1


def tick_values(start: float, stop: float, count: int = 10) -> List[float]:
    if count <= 0:
        return []
    if start == stop:
        return [start]
    reverse = stop < start
    if reverse:
        start, stop = stop, start
    increment = tick_increment(start, stop, count)
    if increment == 0 or not math.isfinite(increment):
        return []
    if increment > 0:
        first, last = math.ceil(start / increment), math.floor(stop / increment)
        ticks = [(first + i) * increment for i in range(last - first + 1)]
    else:
        increment = -increment
        first, last = math.ceil(start * increment), math.floor(stop * increment)
        ticks = [(first + i) / increment for i in range(last - first + 1)]
    return ticks[::-1] if reverse else ticks


class LinearScale:
    """Continuous map from a numeric domain onto a numeric range"""

    def __init__(self, domain=(0.0, 1.0), range_=(0.0, 1.0), clamp: bool = False):
        self.domain = (float(domain[0]), float(domain[1]))
        self.range = (float(range_[0]), float(range_[1]))
        self.clamp = clamp

    def _transform(self, value: float) -> float:
        return value

    def _untransform(self, value: float) -> float:
        return value

    def _clamped(self, t: float) -> float:
        return min(max(t, 0.0), 1.0) if self.clamp else t

    def __call__(self, value: float) -> float:
        d0, d1 = (self._transform(d) for d in self.domain)
        span = d1 - d0
        # degenerate domains map to the middle of the range
        t = 0.5 if span == 0 else self._clamped((self._transform(value) - d0) / span)
        r0, r1 = self.range
        return r0 * (1 - t) + r1 * t

    def invert(self, value: float) -> float:
        r0, r1 = self.range
        span = r1 - r0
        t = 0.5 if span == 0 else self._clamped((value - r0) / span)
        d0, d1 = (self._transform(d) for d in self.domain)
        return self._untransform(d0 * (1 - t) + d1 * t)

    def ticks(self, count: int = 10) -> List[float]:
        return tick_values(self.domain[0], self.domain[1], count)


class SqrtScale(LinearScale):
    """Square-root scale: output area, not radius, grows linearly with input."""

    def _transform(self, value: float) -> float:
        return math.copysign(math.sqrt(abs(value)), value)

    def _untransform(self, value: float) -> float:
        return math.copysign(value * value, value)


class OrdinalScale:
    """Assigns palette entries to values in order of first use, cycling."""

    def __init__(self, palette: Sequence[str], domain: Iterable[str] = ()):
        self.palette = tuple(palette)
        self._index: Dict[str, int] = {}
        for value in domain:
            self(value)

    def __call__(self, value: str) -> str:
        if value not in self._index:
            self._index[value] = len(self._index)
        return self.palette[self._index[value] % len(self.palette)]

    @property
    def domain(self) -> List[str]:
        return list(self._index)


_UNIT_SECONDS = {
    "second": 1,
    "minute": 60,
    "hour": 3600,
    "day": 86400,
    "week": 604800,
    "month": 2592000,
    "year": 31536000,
}

TIME_TICK_INTERVALS = (
    ("second", 1), ("second", 5), ("second", 15), ("second", 30),
    ("minute", 1), ("minute", 5), ("minute", 15), ("minute", 30),
    ("hour", 1), ("hour", 3), ("hour", 6), ("hour", 12),
    ("day", 1), ("day", 2), ("week", 1),
    ("month", 1), ("month", 3), ("year", 1),
)
_TICK_DURATIONS = [_UNIT_SECONDS[unit] * step for unit, step in TIME_TICK_INTERVALS]


class TimeInterval:
    """Calendar interval (unit x step) on the wall clock of each datetime."""

    def __init__(self, unit: str, step: int = 1):
        self.unit = unit
        self.step = step

    def __repr__(self):
        return f"TimeInterval({self.unit!r}, {self.step})"

    def __eq__(self, other):
        return isinstance(other, TimeInterval) and (self.unit, self.step) == (other.unit, other.step)

    def floor(self, moment: datetime) -> datetime:
        step = self.step
        if self.unit == "second":
            return moment.replace(microsecond=0, second=moment.second - moment.second % step)
        if self.unit == "minute":
            return moment.replace(
                second=0, microsecond=0, minute=moment.minute - moment.minute % step
            )
        if self.unit == "hour":
            return moment.replace(
                minute=0, second=0, microsecond=0, hour=moment.hour - moment.hour % step
            )
        midnight = moment.replace(hour=0, minute=0, second=0, microsecond=0)
        if self.unit == "day":
            return midnight - timedelta(days=(moment.day - 1) % step)
        if self.unit == "week":
            # weeks start on Sunday
            return midnight - timedelta(days=(moment.weekday() + 1) % 7)
        if self.unit == "month":
            month0 = moment.month - 1
            return midnight.replace(day=1, month=month0 - month0 % step + 1)
        return midnight.replace(month=1, day=1, year=moment.year - moment.year % step)

    def offset(self, moment: datetime, count: int = 1) -> datetime:
        amount = self.step * count
        if self.unit == "month":
            months = moment.year * 12 + moment.month - 1 + amount
            return moment.replace(year=months // 12, month=months % 12 + 1)
        if self.unit == "year":
            return moment.replace(year=moment.year + amount)
        return moment + timedelta(seconds=_UNIT_SECONDS[self.unit] * amount)

    def ceil(self, moment: datetime) -> datetime:
        floored = self.floor(moment)
        if floored == moment:
            return floored
        return self.floor(self.offset(floored))

    def range(self, start: datetime, stop: datetime) -> List[datetime]:
        """Interval boundaries in [start, stop]"""
        moments = []
        current = self.ceil(start)
        while current <= stop:
            moments.append(current)
            current = self.floor(self.offset(current))
        return moments


def time_tick_interval(start: datetime, stop: datetime, count: int = 10) -> Optional[TimeInterval]:
    """Pick the calendar interval whose spacing is closest to span / count."""
    target = abs(stop.timestamp() - start.timestamp()) / count
    if target == 0:
        return None
    i = bisect.bisect_right(_TICK_DURATIONS, target)
    if i == len(_TICK_DURATIONS):
        year = _UNIT_SECONDS["year"]
        step = tick_step(start.timestamp() / year, stop.timestamp() / year, count)
        return TimeInterval("year", max(1, int(round(abs(step)))))
    if i == 0:
        return TimeInterval("second", 1)
    lower, upper = TIME_TICK_INTERVALS[i - 1], TIME_TICK_INTERVALS[i]
    unit, step = lower if target / _TICK_DURATIONS[i - 1] < _TICK_DURATIONS[i] / target else upper
    return TimeInterval(unit, step)


class TimeScale:
    """Linear scale from aware datetimes onto a numeric range."""

    def __init__(self, domain: Tuple[datetime, datetime], range_=(0.0, 1.0), clamp: bool = False):
        self.tz = domain[0].tzinfo or timezone.utc
        self.domain = (domain[0].astimezone(self.tz), domain[1].astimezone(self.tz))
        self.range = (float(range_[0]), float(range_[1]))
        self._linear = LinearScale(
            (self.domain[0].timestamp(), self.domain[1].timestamp()), range_, clamp
        )

    def __call__(self, moment: datetime) -> float:
        return self._linear(moment.timestamp())

    def invert(self, value: float) -> datetime:
        return datetime.fromtimestamp(self._linear.invert(value), self.tz)

    def nice(self, count: int = 10) -> "TimeScale":
        """Copy of this scale with the domain rounded outward to interval boundaries"""
        start, stop = self.domain
        interval = time_tick_interval(start, stop, count)
        if interval is None:
            return self
        return TimeScale(
            (interval.floor(start), interval.ceil(stop)), self.range, self._linear.clamp
        )

    def ticks(self, count: int = 10) -> List[datetime]:
        start, stop = self.domain
        interval = time_tick_interval(start, stop, count)
        if interval is None:
            return [start]
        return interval.range(start, stop)


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def datetime_extent(commits: Sequence[Commit]) -> Tuple[datetime, datetime]:
    if not commits:
        return EPOCH, EPOCH
    moments = [commit.datetime for commit in commits]
    return min(moments), max(moments)


def radius_scale_for(commits: Sequence[Commit], radius_range: Tuple[float, float]) -> SqrtScale:
    totals = [commit.total_lines for commit in commits] or [1]
    return SqrtScale((min(totals), max(totals)), radius_range, clamp=True)


class ScaleManager:
    """
    Owns every scale the views share.

    `progress_scale` and `language_colors` are fixed from the complete
    dataset at construction; `time_scale` (and `radius_scale` when the
    radius domain is "filtered") follow the active commit set via `update`.
    """

    def __init__(self, commits: Sequence[Commit], config: ChartConfig):
        self.config = config
        area = config.usable_area()
        self.hour_scale = LinearScale((0, 24), (area.bottom, area.top))
        self.progress_scale = TimeScale(datetime_extent(commits), (0, 100))
        self.language_colors = OrdinalScale(
            TABLEAU10, (record.type for record in flatten_lines(commits))
        )
        self.global_radius_scale = radius_scale_for(commits, config.radius_range)
        self.radius_scale = self.global_radius_scale
        self.time_scale = TimeScale(datetime_extent(commits), (area.left, area.right)).nice()

    def update(self, active_commits: Sequence[Commit]):
        """Re-derive the active-set scales; an empty set keeps the previous domains."""
        if not active_commits:
            return
        area = self.config.usable_area()
        self.time_scale = TimeScale(
            datetime_extent(active_commits), (area.left, area.right)
        ).nice()
        if self.config.radius_domain == "filtered":
            self.radius_scale = radius_scale_for(active_commits, self.config.radius_range)

    def point(self, commit: Commit) -> Tuple[float, float]:
        return self.time_scale(commit.datetime), self.hour_scale(commit.hour_frac)


# ============================================================================
# PAGE CONTAINERS
# ============================================================================


class Element:
    """A rendered node: tag, text, attributes, classes, inline style, children."""

    def __init__(
        self,
        tag: str,
        text: str = "",
        attrs: Optional[Dict[str, Any]] = None,
        children: Optional[List["Element"]] = None,
        classes: Iterable[str] = (),
    ):
        self.tag = tag
        self.text = text
        self.attrs = dict(attrs or {})
        self.children = list(children or [])
        self.classes = set(classes)
        self.style: Dict[str, Any] = {}

    def append(self, child: "Element") -> "Element":
        self.children.append(child)
        return child

    def clear(self):
        self.text = ""
        self.children = []

    def find(self, element_id: str) -> Optional["Element"]:
        """Depth-first lookup by the `id` attribute"""
        for child in self.children:
            if child.attrs.get("id") == element_id:
                return child
            found = child.find(element_id)
            if found is not None:
                return found
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = {"tag": self.tag}
        if self.text:
            data["text"] = self.text
        if self.attrs:
            data["attrs"] = self.attrs
        if self.classes:
            data["classes"] = sorted(self.classes)
        if self.style:
            data["style"] = self.style
        if self.children:
            data["children"] = [child.to_dict() for child in self.children]
        return data


class Container(Element):
    """A page-owned element the engine renders into"""

    def __init__(self, container_id: str, tag: str = "div"):
        super().__init__(tag)
        self.id = container_id
        self.hidden = False

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["id"] = self.id
        data["hidden"] = self.hidden
        return data


STATS = "stats"
CHART = "chart"
TOOLTIP = "commit-tooltip"
FILES = "files"
LANGUAGE_BREAKDOWN = "language-breakdown"
SELECTION_COUNT = "selection-count"
PROGRESS_SLIDER = "commit-progress"
MAX_TIME_LABEL = "commit-max-time"

DEFAULT_CONTAINERS = {
    STATS: "div",
    CHART: "div",
    TOOLTIP: "dl",
    FILES: "dl",
    LANGUAGE_BREAKDOWN: "dl",
    SELECTION_COUNT: "p",
    PROGRESS_SLIDER: "input",
    MAX_TIME_LABEL: "time",
}


class Page:
    """The containers a page exposes, by id. Any of them may be absent."""

    def __init__(self, container_ids: Optional[Iterable[str]] = None):
        ids = list(DEFAULT_CONTAINERS) if container_ids is None else list(container_ids)
        unknown = [cid for cid in ids if cid not in DEFAULT_CONTAINERS]
        if unknown:
            raise ValueError(f"Unknown container ids: {', '.join(unknown)}")
        self._containers = {cid: Container(cid, DEFAULT_CONTAINERS[cid]) for cid in ids}
        # the tooltip only shows while a point is hovered
        if TOOLTIP in self._containers:
            self._containers[TOOLTIP].hidden = True

    def __getitem__(self, container_id: str) -> Container:
        try:
            return self._containers[container_id]
        except KeyError:
            raise MissingContainerError(container_id) from None

    def __contains__(self, container_id: str) -> bool:
        return container_id in self._containers

    def to_dict(self) -> Dict[str, Any]:
        return {cid: container.to_dict() for cid, container in self._containers.items()}


# ============================================================================
# SELECTION ENGINE
# ============================================================================


def is_commit_selected(rect: Optional[BrushRect], commit: Commit, scales: ScaleManager) -> bool:
    if rect is None:
        return False
    x, y = scales.point(commit)
    return rect.contains(x, y)


def selected_commits(
    rect: Optional[BrushRect], commits: Sequence[Commit], scales: ScaleManager
) -> List[Commit]:
    """Commits inside the brush; empty when there is no brush."""
    if rect is None:
        return []
    return [commit for commit in commits if is_commit_selected(rect, commit, scales)]


def selection_count_label(count: int) -> str:
    return f"{count or 'No'} commits selected"


def language_breakdown(lines: Sequence[LineRecord]) -> List[Tuple[str, int, float]]:
    """(language, line count, proportion) in order of first appearance"""
    counts: Dict[str, int] = {}
    for record in lines:
        counts[record.type] = counts.get(record.type, 0) + 1
    total = len(lines)
    return [(language, count, count / total) for language, count in counts.items()]


def format_breakdown_entry(count: int, proportion: float) -> str:
    return f"{count} lines ({proportion:.1%})"


class FileUnits(NamedTuple):
    name: str
    line_count: int
    colors: List[str]


def file_units(lines: Sequence[LineRecord], colors: OrdinalScale) -> List[FileUnits]:
    """Per-file unit markers, largest file first (stable on ties)."""
    by_file: Dict[str, List[LineRecord]] = {}
    for record in lines:
        by_file.setdefault(record.file, []).append(record)
    entries = [
        FileUnits(name, len(records), [colors(record.type) for record in records])
        for name, records in by_file.items()
    ]
    return sorted(entries, key=lambda entry: -entry.line_count)


# ============================================================================
# FORMATTING
# ============================================================================


def _clock(moment: datetime) -> str:
    hour = moment.hour % 12 or 12
    return f"{hour}:{moment.minute:02d} {'PM' if moment.hour >= 12 else 'AM'}"


def format_full_date(moment: datetime) -> str:
    """'Monday, February 10, 2025'"""
    return (
        f"{WEEKDAYS[moment.weekday()]}, {MONTHS[moment.month - 1]} "
        f"{moment.day}, {moment.year}"
    )


def format_short_time(moment: datetime) -> str:
    """'2:32 PM'"""
    return _clock(moment)


def format_long_datetime(moment: datetime) -> str:
    """'February 10, 2025 at 2:32 PM'"""
    return f"{MONTHS[moment.month - 1]} {moment.day}, {moment.year} at {_clock(moment)}"


def format_hour_tick(hour: float) -> str:
    return f"{int(hour) % 24:02d}:00"


def format_time_tick(moment: datetime) -> str:
    """Multi-scale axis label: the coarsest unit the tick is not aligned to."""
    if moment.second:
        return f":{moment.second:02d}"
    if moment.minute:
        return f"{moment.hour % 12 or 12:02d}:{moment.minute:02d}"
    if moment.hour:
        return f"{moment.hour % 12 or 12:02d} {'PM' if moment.hour >= 12 else 'AM'}"
    if moment.day != 1:
        if moment.weekday() == 6:
            return f"{MONTHS[moment.month - 1][:3]} {moment.day:02d}"
        return f"{WEEKDAYS[moment.weekday()][:3]} {moment.day:02d}"
    if moment.month != 1:
        return MONTHS[moment.month - 1]
    return str(moment.year)


# ============================================================================
# SCATTER VIEW
# ============================================================================


def time_of_day_bucket(hour_frac: float) -> str:
    if 6 <= hour_frac < 12:
        return "morning"
    if 12 <= hour_frac < 18:
        return "afternoon"
    if 18 <= hour_frac < 22:
        return "evening"
    return "night"


def time_of_day_color(hour_frac: float) -> str:
    return TIME_OF_DAY_COLORS[time_of_day_bucket(hour_frac)]


@dataclass(frozen=True)
class PointState:
    id: str
    cx: float
    cy: float
    r: float
    fill: str
    total_lines: int
    selected: bool = False


@dataclass
class ScatterFrame:
    """Everything the chart shows for one (commits, scales, brush) triple"""

    points: List[PointState]
    x_ticks: List[Tuple[float, str]]
    y_ticks: List[Tuple[float, str]]


class PointJoin(NamedTuple):
    enter: List[PointState]
    update: List[PointState]
    exit: List[str]


def build_scatter_frame(
    commits: Sequence[Commit], scales: ScaleManager, brush: Optional[BrushRect] = None
) -> ScatterFrame:
    """
    Compute the chart state without touching the page.

    Points are ordered largest commit first so smaller dots draw on top.
    """
    ordered = sorted(commits, key=lambda commit: -commit.total_lines)
    points = []
    for commit in ordered:
        cx, cy = scales.point(commit)
        points.append(
            PointState(
                id=commit.id,
                cx=cx,
                cy=cy,
                r=scales.radius_scale(commit.total_lines),
                fill=time_of_day_color(commit.hour_frac),
                total_lines=commit.total_lines,
                selected=brush is not None and brush.contains(cx, cy),
            )
        )
    x_ticks = [(scales.time_scale(t), format_time_tick(t)) for t in scales.time_scale.ticks()]
    y_ticks = [(scales.hour_scale(h), format_hour_tick(h)) for h in scales.hour_scale.ticks()]
    return ScatterFrame(points=points, x_ticks=x_ticks, y_ticks=y_ticks)


def join_points(current_ids: Iterable[str], points: Sequence[PointState]) -> PointJoin:
    """Keyed enter/update/exit split of the next points against the rendered ids."""
    current = list(current_ids)
    rendered = set(current)
    incoming = {point.id for point in points}
    return PointJoin(
        enter=[point for point in points if point.id not in rendered],
        update=[point for point in points if point.id in rendered],
        exit=[commit_id for commit_id in current if commit_id not in incoming],
    )


class BrushState(Enum):
    IDLE = "idle"
    BRUSHING = "brushing"


class ScatterView:
    """
    Applies scatter frames to the chart container and owns the gestures.

    Point elements are keyed by commit id and reused across renders. Brush
    start, move and end all call `on_brush` with the current rectangle.
    """

    def __init__(
        self,
        page: Page,
        config: ChartConfig,
        on_brush: Optional[Callable[[Optional[BrushRect]], None]] = None,
    ):
        self.page = page
        self.config = config
        self.on_brush = on_brush
        self.brush_state = BrushState.IDLE
        self.nodes: Dict[str, Element] = {}
        self.points: Dict[str, PointState] = {}
        self.last_join: Optional[PointJoin] = None
        self._svg: Optional[Element] = None
        self._groups: Dict[str, Element] = {}

    def _ensure_svg(self) -> Dict[str, Element]:
        chart = self.page[CHART]
        if self._svg is not None and self._svg in chart.children:
            return self._groups
        area = self.config.usable_area()
        self._svg = Element(
            "svg",
            attrs={"viewBox": f"0 0 {self.config.width} {self.config.height}"},
        )
        self._svg.style["overflow"] = "visible"
        self._groups = {
            "gridlines": Element(
                "g", attrs={"transform": f"translate({area.left}, 0)"}, classes={"gridlines"}
            ),
            "x-axis": Element(
                "g", attrs={"transform": f"translate(0, {area.bottom})"}, classes={"x-axis"}
            ),
            "y-axis": Element(
                "g", attrs={"transform": f"translate({area.left}, 0)"}, classes={"y-axis"}
            ),
            "brush": Element("g", classes={"brush"}),
            "dots": Element("g", classes={"dots"}),
        }
        for group in self._groups.values():
            self._svg.append(group)
        chart.clear()
        chart.append(self._svg)
        self.nodes = {}
        self.points = {}
        return self._groups

    def _render_axes(self, groups: Dict[str, Element], frame: ScatterFrame):
        area = self.config.usable_area()
        groups["gridlines"].children = [
            Element("line", attrs={"y1": y, "y2": y, "x1": 0, "x2": area.width}, classes={"tick"})
            for y, _ in frame.y_ticks
        ]
        groups["x-axis"].children = [
            Element("text", label, attrs={"x": x}, classes={"tick"}) for x, label in frame.x_ticks
        ]
        groups["y-axis"].children = [
            Element("text", label, attrs={"y": y}, classes={"tick"}) for y, label in frame.y_ticks
        ]

    def _point_node(self, point: PointState) -> Element:
        node = Element("circle", attrs={"data-id": point.id})
        self._position(node, point)
        node.attrs["fill"] = point.fill
        node.style["fill-opacity"] = self.config.base_opacity
        return node

    @staticmethod
    def _position(node: Element, point: PointState):
        node.attrs.update(cx=point.cx, cy=point.cy, r=point.r)
        if point.selected:
            node.classes.add("selected")
        else:
            node.classes.discard("selected")

    def render(self, frame: ScatterFrame) -> PointJoin:
        """Join the frame's points onto the chart and refresh the axes."""
        groups = self._ensure_svg()
        self._render_axes(groups, frame)

        join = join_points(self.points, frame.points)
        for commit_id in join.exit:
            del self.nodes[commit_id]
        for point in join.enter:
            self.nodes[point.id] = self._point_node(point)
        for point in join.update:
            self._position(self.nodes[point.id], point)

        groups["dots"].children = [self.nodes[point.id] for point in frame.points]
        self.points = {point.id: point for point in frame.points}
        self.last_join = join
        return join

    def mark_selected(self, rect: Optional[BrushRect]):
        for commit_id, point in self.points.items():
            node = self.nodes[commit_id]
            if rect is not None and rect.contains(point.cx, point.cy):
                node.classes.add("selected")
            else:
                node.classes.discard("selected")
        brush = self._ensure_svg()["brush"]
        brush.children = []
        if rect is not None:
            brush.append(
                Element(
                    "rect",
                    attrs={
                        "x": rect.x0,
                        "y": rect.y0,
                        "width": rect.x1 - rect.x0,
                        "height": rect.y1 - rect.y0,
                    },
                    classes={"selection"},
                )
            )

    def set_highlight(self, commit_id: str, highlighted: bool) -> bool:
        node = self.nodes.get(commit_id)
        if node is None:
            return False
        node.style["fill-opacity"] = 1 if highlighted else self.config.base_opacity
        return True

    # Brush gesture: IDLE -> BRUSHING on start, back to IDLE on end

    def brush_start(self, rect):
        self.brush_state = BrushState.BRUSHING
        self._brushed(rect)

    def brush_move(self, rect):
        self.brush_state = BrushState.BRUSHING
        self._brushed(rect)

    def brush_end(self, rect):
        self.brush_state = BrushState.IDLE
        self._brushed(rect)

    def _brushed(self, rect):
        if self.on_brush is not None:
            self.on_brush(BrushRect.from_corners(rect))


# ============================================================================
# PANELS
# ============================================================================


def render_stats(page: Page, stats: CommitStats):
    container = page[STATS]
    container.clear()
    dl = container.append(Element("dl", classes={"stats"}))
    for label, value in stats.rows():
        dl.append(Element("dt", label))
        dl.append(Element("dd", value))


def render_selection_count(page: Page, count: int):
    page[SELECTION_COUNT].text = selection_count_label(count)


def render_language_breakdown(page: Page, lines: Sequence[LineRecord]):
    container = page[LANGUAGE_BREAKDOWN]
    container.clear()
    for language, count, proportion in language_breakdown(lines):
        container.append(Element("dt", language))
        container.append(Element("dd", format_breakdown_entry(count, proportion)))


def render_files(page: Page, entries: Sequence[FileUnits]):
    container = page[FILES]
    container.clear()
    for entry in entries:
        container.append(
            Element(
                "dt",
                children=[Element("code", entry.name), Element("small", f"{entry.line_count} lines")],
            )
        )
        dd = container.append(Element("dd"))
        for color in entry.colors:
            unit = dd.append(Element("div", classes={"loc"}))
            unit.style["--color"] = color


def render_time_label(page: Page, progress: float, max_time: Optional[datetime]):
    slider = page[PROGRESS_SLIDER]
    slider.attrs.update(type="range", min=0, max=100, value=progress)
    label = page[MAX_TIME_LABEL]
    if max_time is None:
        label.text = ""
        label.attrs.pop("datetime", None)
        return
    label.text = format_long_datetime(max_time)
    label.attrs["datetime"] = max_time.isoformat()


def render_tooltip_content(page: Page, commit: Optional[Commit]):
    if commit is None:
        return
    container = page[TOOLTIP]
    container.clear()
    link = Element(
        "a", commit.id[:7], attrs={"id": "commit-link", "href": commit.url, "target": "_blank"}
    )
    rows = (
        ("Commit", Element("dd", children=[link])),
        ("Date", Element("dd", format_full_date(commit.datetime), attrs={"id": "commit-date"})),
        ("Time", Element("dd", format_short_time(commit.datetime), attrs={"id": "commit-time"})),
        ("Author", Element("dd", commit.author, attrs={"id": "commit-author"})),
        ("Lines edited", Element("dd", str(commit.total_lines), attrs={"id": "commit-lines"})),
    )
    for label, value in rows:
        container.append(Element("dt", label))
        container.append(value)


def update_tooltip_visibility(page: Page, visible: bool):
    page[TOOLTIP].hidden = not visible


def update_tooltip_position(page: Page, pointer: Tuple[float, float], offset: int):
    x, y = pointer
    style = page[TOOLTIP].style
    style["left"] = f"{x + offset}px"
    style["top"] = f"{y + offset}px"


# ============================================================================
# TIME-PROGRESS CONTROLLER & DASHBOARD
# ============================================================================


@dataclass
class AppState:
    """
    All session state of one dashboard.

    ScaleManager owns the scales; TimeProgressController owns `filter` and
    `filtered_commits`; the brush handler owns `brush`.
    """

    records: List[LineRecord]
    commits: List[Commit]
    scales: ScaleManager
    filter: FilterState = field(default_factory=FilterState)
    filtered_commits: List[Commit] = field(default_factory=list)
    brush: Optional[BrushRect] = None


def commits_until(commits: Sequence[Commit], max_time: datetime) -> List[Commit]:
    return [commit for commit in commits if commit.datetime <= max_time]


class TimeProgressController:
    """Slider position -> cutoff instant -> filtered commits (and active scales)."""

    def __init__(self, state: AppState):
        self.state = state

    def apply(self, progress: float) -> List[Commit]:
        progress = min(max(float(progress), 0.0), 100.0)
        max_time = self.state.scales.progress_scale.invert(progress)
        # progress 0 reveals nothing, not the earliest commit
        filtered = commits_until(self.state.commits, max_time) if progress > 0 else []

        self.state.filter.progress = progress
        self.state.filter.max_time = max_time if self.state.commits else None
        self.state.filtered_commits = filtered
        self.state.scales.update(filtered)
        return filtered


class Dashboard:
    """
    Wires records, scales, views and panels around one AppState.

    Every render step goes through `_render`, which skips steps whose
    container the page does not provide.
    """

    def __init__(
        self,
        records: List[LineRecord],
        page: Optional[Page] = None,
        config: Optional[ChartConfig] = None,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.config = config or ChartConfig()
        self.page = page if page is not None else Page()
        self.reporter = reporter or ProgressReporter(quiet=True)
        commits = aggregate_commits(records, self.config.repository_url)
        self.state = AppState(
            records=records, commits=commits, scales=ScaleManager(commits, self.config)
        )
        self.progress = TimeProgressController(self.state)
        self.scatter = ScatterView(self.page, self.config, on_brush=self._brushed)
        self._by_id = {commit.id: commit for commit in commits}

    @classmethod
    def from_csv(
        cls,
        source: str,
        page: Optional[Page] = None,
        config: Optional[ChartConfig] = None,
        reporter: Optional[ProgressReporter] = None,
    ) -> "Dashboard":
        records = load_records(source, reporter)
        return cls(records, page, config, reporter).initialize()

    def _render(self, step: str, render: Callable, *args) -> bool:
        try:
            render(*args)
        except MissingContainerError as e:
            self.reporter.detail(f"Skipped {step}: {e}")
            return False
        return True

    # Derived views

    def selected_commits(self) -> List[Commit]:
        return selected_commits(self.state.brush, self.state.filtered_commits, self.state.scales)

    def panel_commits(self) -> List[Commit]:
        """The selection, or every active commit when nothing is selected"""
        return self.selected_commits() or self.state.filtered_commits

    def lines_of(self, commits: Sequence[Commit]) -> List[LineRecord]:
        """Line records of `commits` in load order"""
        ids = {commit.id for commit in commits}
        return [record for record in self.state.records if record.commit_id in ids]

    def stats(self) -> CommitStats:
        commits = self.panel_commits()
        return compute_stats(self.lines_of(commits), commits)

    # Rendering

    def _render_scatter(self):
        frame = build_scatter_frame(
            self.state.filtered_commits, self.state.scales, self.state.brush
        )
        self._render("scatter plot", self.scatter.render, frame)

    def _render_files(self):
        entries = file_units(
            self.lines_of(self.panel_commits()), self.state.scales.language_colors
        )
        self._render("file units", render_files, self.page, entries)

    def _render_stats(self):
        self._render("stats", render_stats, self.page, self.stats())

    def _render_selection(self):
        selected = self.selected_commits()
        self._render("selection count", render_selection_count, self.page, len(selected))
        lines = self.lines_of(selected or self.state.filtered_commits)
        self._render("language breakdown", render_language_breakdown, self.page, lines)

    def _render_time_label(self):
        self._render(
            "time label",
            render_time_label,
            self.page,
            self.state.filter.progress,
            self.state.filter.max_time,
        )

    # Interactions

    def initialize(self) -> "Dashboard":
        """Render everything with all commits visible."""
        return self.set_progress(self.state.filter.progress)

    def set_progress(self, progress: float) -> "Dashboard":
        self.progress.apply(progress)
        self._render_scatter()
        self._render_files()
        self._render_stats()
        self._render_selection()
        self._render_time_label()
        return self

    def brush_start(self, rect):
        self.scatter.brush_start(rect)

    def brush_move(self, rect):
        self.scatter.brush_move(rect)

    def brush_end(self, rect):
        self.scatter.brush_end(rect)

    def _brushed(self, rect: Optional[BrushRect]):
        self.state.brush = rect
        self._render("selection marks", self.scatter.mark_selected, rect)
        self._render_selection()
        self._render_stats()
        self._render_files()

    def hover(self, commit_id: str, pointer: Optional[Tuple[float, float]] = None) -> bool:
        """Highlight a visible commit and show its tooltip at the pointer."""
        commit = self._by_id.get(commit_id)
        point = self.scatter.points.get(commit_id)
        if commit is None or point is None:
            return False
        pointer = pointer if pointer is not None else (point.cx, point.cy)
        self._render("highlight", self.scatter.set_highlight, commit_id, True)
        self._render("tooltip", render_tooltip_content, self.page, commit)
        self._render("tooltip", update_tooltip_visibility, self.page, True)
        self._render(
            "tooltip", update_tooltip_position, self.page, pointer, self.config.tooltip_offset
        )
        return True

    def unhover(self, commit_id: str):
        self._render("highlight", self.scatter.set_highlight, commit_id, False)
        self._render("tooltip", update_tooltip_visibility, self.page, False)

    def snapshot(self) -> Dict[str, Any]:
        max_time = self.state.filter.max_time
        return {
            "schema_version": SCHEMA_VERSION,
            "progress": self.state.filter.progress,
            "max_time": max_time.isoformat() if max_time else None,
            "brush": list(self.state.brush) if self.state.brush else None,
            "brush_state": self.scatter.brush_state.value,
            "visible_commits": len(self.state.filtered_commits),
            "selected_commits": [commit.id for commit in self.selected_commits()],
            "page": self.page.to_dict(),
        }


# ============================================================================
# EXPORT & MANIFEST
# ============================================================================


def export_json(data: Any, output_path: str) -> int:
    """Write data as JSON, returning the number of bytes written"""
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    return os.path.getsize(output_path)


def generate_manifest(
    output_dir: str, dashboard: Dashboard, source: str, datasets: Dict[str, str]
) -> Dict[str, Any]:
    """Generate manifest.json with dataset checksums"""
    manifest = {
        "generator_version": VERSION,
        "schema_version": SCHEMA_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "source": source,
        "total_records": len(dashboard.state.records),
        "total_commits": len(dashboard.state.commits),
        "datasets": {},
    }

    for dataset_name, file_path in datasets.items():
        full_path = os.path.join(output_dir, file_path)
        if os.path.exists(full_path):
            with open(full_path, "rb") as f:
                data = f.read()

            manifest["datasets"][dataset_name] = {
                "file": file_path,
                "file_size_bytes": len(data),
                "sha256": hashlib.sha256(data).hexdigest(),
            }

    export_json(manifest, os.path.join(output_dir, "manifest.json"))
    return manifest


# ============================================================================
# CLI INTERFACE
# ============================================================================


def _parse_brush(ctx, param, value):
    if value is None:
        return None
    try:
        corners = [float(part) for part in value.split(",")]
    except ValueError:
        raise click.BadParameter("expected four numbers: X0,Y0,X1,Y1")
    if len(corners) != 4:
        raise click.BadParameter("expected four numbers: X0,Y0,X1,Y1")
    return BrushRect.from_corners(corners)


def _parse_panels(ctx, param, value):
    if value is None:
        return None
    ids = [part.strip() for part in value.split(",") if part.strip()]
    unknown = [cid for cid in ids if cid not in DEFAULT_CONTAINERS]
    if unknown:
        raise click.BadParameter(f"unknown container ids: {', '.join(unknown)}")
    return ids


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument(
    "source",
    type=click.Path(exists=True, dir_okay=False, resolve_path=True),
)
@click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=False),
    help="Output directory (default: locviz_output_TIMESTAMP)",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
@click.option(
    "--preset",
    type=click.Choice(sorted(PRESETS)),
    help="Use predefined chart configuration",
)
# Interaction replay
@click.option(
    "--progress",
    type=click.FloatRange(0, 100),
    help="Time-progress slider position (0-100)",
)
@click.option(
    "--brush",
    callback=_parse_brush,
    help="Brush rectangle in chart coordinates: X0,Y0,X1,Y1",
)
@click.option("--hover", help="Commit id to show in the tooltip")
# Chart configuration
@click.option("--repository-url", help="Base URL for commit links")
@click.option(
    "--radius-domain",
    type=click.Choice(["global", "filtered"]),
    help="Derive point radii from all commits or from the visible ones",
)
@click.option(
    "--panels",
    callback=_parse_panels,
    help="Comma-separated container ids the page provides (default: all)",
)
# Output Control
@click.option(
    "-q", "--quiet", is_flag=True, default=None, help="Suppress progress output"
)
@click.option(
    "-v",
    "--verbose",
    is_flag=True,
    default=None,
    help="Show detailed progress information",
)
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.version_option(version=VERSION)
def main(source, output, config, preset, progress, brush, hover, panels, **kwargs):
    """
    Build the commit scatter dashboard state from a loc.csv table and export
    it as frontend-ready JSON.
    """
    resolver = ConfigResolver(kwargs, config, preset, os.path.dirname(source))

    quiet = resolver.get("quiet", False)
    verbose = resolver.get("verbose", False)
    no_color = resolver.get("no_color", False)
    if not no_color:
        colorama_init(autoreset=True)
    reporter = ProgressReporter(quiet=quiet, verbose=verbose, use_colors=not no_color)

    try:
        chart_config = ChartConfig.from_resolver(resolver)
    except (TypeError, ValueError) as e:
        reporter.error(f"Invalid configuration: {e}")
        sys.exit(2)

    output_dir = output or f"locviz_output_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

    reporter.stage_start("Loading", f"Reading line records: {source}")
    try:
        records = load_records(source, reporter)
    except LoadFailure as e:
        reporter.error(f"Load failed: {e}")
        sys.exit(1)
    reporter.stage_complete("Loading", {"Rows": f"{len(records):,}"})

    reporter.stage_start("Rendering", "Computing scales, views and panels...")
    page = Page(panels)
    dashboard = Dashboard(records, page, chart_config, reporter).initialize()
    if progress is not None:
        dashboard.set_progress(progress)
    if brush is not None:
        dashboard.brush_start(brush)
        dashboard.brush_end(brush)
    if hover and not dashboard.hover(hover):
        reporter.warning(f"Commit {hover} is not visible at progress {dashboard.state.filter.progress:g}")
    reporter.stage_complete(
        "Rendering",
        {
            "Visible commits": len(dashboard.state.filtered_commits),
            "Selected commits": len(dashboard.selected_commits()),
        },
    )

    reporter.stage_start("Export", f"Writing datasets to {output_dir}")
    datasets = {
        "dashboard": "dashboard.json",
        "commits": "commits.json",
        "stats": "stats.json",
    }
    export_json(dashboard.snapshot(), os.path.join(output_dir, datasets["dashboard"]))
    export_json(
        [commit.to_dict() for commit in dashboard.state.commits],
        os.path.join(output_dir, datasets["commits"]),
    )
    export_json(dashboard.stats().to_dict(), os.path.join(output_dir, datasets["stats"]))
    generate_manifest(output_dir, dashboard, source, datasets)
    reporter.stage_complete("Export")

    reporter.summary(
        {
            "Source": source,
            "Output directory": output_dir,
            "Line records": f"{len(records):,}",
            "Commits": f"{len(dashboard.state.commits):,}",
            "Visible commits": f"{len(dashboard.state.filtered_commits):,}",
            "Progress": f"{dashboard.state.filter.progress:g}",
        },
        outcome=f"Dashboard exported to: {output_dir}",
    )


if __name__ == "__main__":
    main()
