#!/usr/bin/env python3
"""
Hourglass - Time-Tracking Aggregation Pipeline (v1.0.0)

Turns yearly Toggl CSV exports into the nested histogram document
(`data.json`) rendered by the chart frontend:
- Keyword-based tag classification of every time entry
- Hour expansion of entries in the observer's local timezone
- Nested time-bucket histograms by tag, project and project+description
- Flat duration totals and "most recent" time buckets with readable labels
- Histogram view model used to pick the winning series per bucket

Stages (each fully materialised before the next one starts):
- Ingest: CSV rows -> normalised entries -> `raw`
- Expand: `raw` -> one row per local hour touched -> `houred`
- Aggregate: tag lookups, totals, histograms, time buckets
- Export: every aggregate table -> one JSON document

Version: 1.0.0
"""

import cProfile
import hashlib
import io
import json
import os
import pstats
import re
import sqlite3
import sys
import time
from contextlib import closing
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import click
import pandas as pd
import psutil
import yaml
from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

colorama_init(autoreset=True)


# Version information
VERSION = "1.0.0"
SCHEMA_VERSION = "1.0.0"


# ============================================================================
# CATALOGUES: TAGS, TIME COMPONENTS, SLICE TYPES, TIME TYPES
# ============================================================================


# Output order for tag lists follows this tuple, never discovery order
TAGS = (
    "Apply",
    "Beyond",
    "Community",
    "Compost",
    "Dogs",
    "Email",
    "Exercise",
    "Fun",
    "Hustle",
    "Meeting",
    "Networking",
    "New",
    "PNNL",
    "Paid",
    "Research",
    "Resume",
    "Scholarship",
    "School",
    "UNKNOWN",
    "Work",
)
UNKNOWN_TAG = "UNKNOWN"
TAG_ORDER = {tag: index for index, tag in enumerate(TAGS)}


@dataclass(frozen=True)
class TagRule:
    """One keyword matcher: the tag is assigned when the pattern matches."""

    tag: str
    matcher: "re.Pattern"

    def matches(self, text: str) -> bool:
        return self.matcher.search(text) is not None


def _rule(tag: str, pattern: str) -> TagRule:
    return TagRule(tag, re.compile(f"({pattern})", re.IGNORECASE))


PROJECT_RULES = (
    _rule("Hustle", r"leht"),
    _rule("Beyond", r"refactor|kitchen"),
    _rule("Community", r"refactor"),
    _rule("Fun", r"exercise|scuba|motorcycle|avalanche"),
    _rule("Exercise", r"exercise"),
    _rule("New", r"scuba|motorcycle|avalanche"),
    _rule("Dogs", r"dog"),
    _rule("Paid", r"innovation|teaching assistant|hopped|pika"),
    _rule("School", r"\d{3}|^class$"),
    _rule("Scholarship", r"scholarship"),
    _rule("Compost", r"capstone|compost"),
)

DESCRIPTION_RULES = (
    _rule("Apply", r"apply|application"),
    _rule("Meeting", r"meet"),
    _rule("Networking", r"network|attend"),
    _rule("Resume", r"resume"),
    _rule("Research", r"research"),
    _rule("Community", r"trio|sacnas"),
    _rule("Scholarship", r"ford|scholarship"),
    _rule("Beyond", r"gift card|recommendation|thank you"),
    _rule("Work", r"work|code|interview"),
    _rule("Email", r"email|letter"),
    _rule("Compost", r"compost"),
    _rule("Dogs", r"dog"),
    _rule("New", r"skin"),
    _rule("Exercise", r"exercise"),
    _rule("PNNL", r"pnnl|apartment"),
)

# Known data-entry typos, keyed by exact project then exact description
DESCRIPTION_FIXES: Dict[str, Dict[str, str]] = {
    "Get Hired at Dream Job": {
        "Prepare for SACNAS": "Prepare for SACNAS - Network",
        "Search for housing": "Search for apartment",
    },
    "CS 461 Capstone": {
        "Homwork": "Homework",
    },
}


class TimeComponent(Enum):
    """Bucket components; the value doubles as the `houred` column name."""

    HOUR = "hour"
    DAY = "day"
    MONTH = "month"
    YEAR = "year"


class Statistic(Enum):
    COUNT = "count"
    COMPLEX_COUNT = "complexCount"
    SUM = "sum"


@dataclass(frozen=True)
class SliceDescriptor:
    """
    A named time-slice type: which bucket components to group by and which
    statistic to compute. Components are listed innermost first, so
    `hourMonthYearCount` nests year -> month -> hour in the output.
    """

    name: str
    components: Tuple[TimeComponent, ...]
    statistic: Statistic

    @property
    def nesting(self) -> Tuple[TimeComponent, ...]:
        """Components ordered outermost first"""
        return tuple(reversed(self.components))

    @property
    def columns(self) -> List[str]:
        return [component.value for component in self.nesting]

    @property
    def leaf(self) -> TimeComponent:
        return self.components[0]


_H, _D, _M, _Y = (
    TimeComponent.HOUR,
    TimeComponent.DAY,
    TimeComponent.MONTH,
    TimeComponent.YEAR,
)

SLICE_TYPES: Dict[str, SliceDescriptor] = {
    descriptor.name: descriptor
    for descriptor in (
        SliceDescriptor("hourCount", (_H,), Statistic.COUNT),
        SliceDescriptor("hourDayCount", (_H, _D), Statistic.COUNT),
        SliceDescriptor("hourMonthCount", (_H, _M), Statistic.COUNT),
        SliceDescriptor("hourYearCount", (_H, _Y), Statistic.COUNT),
        SliceDescriptor("hourDayMonthCount", (_H, _D, _M), Statistic.COUNT),
        SliceDescriptor("hourDayYearCount", (_H, _D, _Y), Statistic.COUNT),
        SliceDescriptor("hourMonthYearCount", (_H, _M, _Y), Statistic.COUNT),
        SliceDescriptor("hourDayMonthYearCount", (_H, _D, _M, _Y), Statistic.COUNT),
        SliceDescriptor("dayCount", (_D,), Statistic.COMPLEX_COUNT),
        SliceDescriptor("dayYearCount", (_D, _Y), Statistic.COMPLEX_COUNT),
        SliceDescriptor("dayMonthCount", (_D, _M), Statistic.COMPLEX_COUNT),
        SliceDescriptor("dayMonthYearCount", (_D, _M, _Y), Statistic.COMPLEX_COUNT),
        SliceDescriptor("monthCount", (_M,), Statistic.COMPLEX_COUNT),
        SliceDescriptor("monthYearCount", (_M, _Y), Statistic.COMPLEX_COUNT),
        SliceDescriptor("yearCount", (_Y,), Statistic.COMPLEX_COUNT),
        SliceDescriptor("yearSum", (_Y,), Statistic.SUM),
    )
}


@dataclass(frozen=True)
class SliceDimension:
    """An axis aggregates are computed over, and where its results live."""

    name: str
    keys: Tuple[str, ...]
    table: str
    tags_table: Optional[str] = None


DIMENSIONS = (
    SliceDimension("type", ("type",), "totals_typed"),
    SliceDimension(
        "group", ("project", "description"), "totals_grouped", "tags_grouped"
    ),
    SliceDimension("project", ("project",), "totals_project", "tags_project"),
)

# Flat calendar buckets for `byTime`: label pieces are `houred` columns or
# literal separators. `year` is the only one computed from raw seconds.
TIME_TYPES: Dict[str, Optional[Tuple[str, ...]]] = {
    "hour": ("hour",),
    "hourYear": ("year", "_", "hour"),
    "hourMonth": ("month", "_", "hour"),
    "hourMonthYear": ("year", "-", "month", "_", "hour"),
    "hourDay": ("day", "_", "hour"),
    "hourDayYear": ("year", "_", "day", "_", "hour"),
    "hourDayMonth": ("month", "_", "day", "_", "hour"),
    "hourDayMonthYear": ("year", "-", "month", "_", "day", "_", "hour"),
    "date": ("date",),
    "day": ("day",),
    "dayYear": ("year", "_", "day"),
    "dayMonth": ("month", "_", "day"),
    "dayMonthYear": ("year", "-", "month", "_", "day"),
    "month": ("month",),
    "monthYear": ("year", "-", "month"),
    "week": ("week",),
    "weekMonth": ("month", "_", "week_of_month"),
    "year": None,
}


def resolve_slice_types(names: Optional[Sequence[str]]) -> List[SliceDescriptor]:
    """Map slice-type names to descriptors, keeping catalogue order."""
    if names is None:
        return list(SLICE_TYPES.values())

    unknown = [name for name in names if name not in SLICE_TYPES]
    if unknown:
        raise ValueError(f"Unknown slice type(s): {', '.join(unknown)}")

    wanted = set(names)
    return [d for name, d in SLICE_TYPES.items() if name in wanted]


# ============================================================================
# HISTOGRAM VALUES
# ============================================================================


@dataclass(frozen=True)
class Count:
    """Bare count or sum leaf"""

    value: int

    def to_json(self) -> int:
        return self.value

    @classmethod
    def from_json(cls, raw: Any) -> "Count":
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ValueError(f"unexpected data for the histogram: {json.dumps(raw)}")
        return cls(raw)


@dataclass(frozen=True)
class ComplexCount:
    """
    Distinct calendar days that contributed (`count`) next to the number of
    expanded hour rows (`hourCount`). hour_count >= count always holds.
    """

    count: int
    hour_count: int

    def to_json(self) -> Dict[str, int]:
        return {"count": self.count, "hourCount": self.hour_count}

    @classmethod
    def from_json(cls, raw: Any) -> "ComplexCount":
        if not isinstance(raw, dict) or "count" not in raw or "hourCount" not in raw:
            raise ValueError(f"unexpected data for the histogram: {json.dumps(raw)}")
        return cls(int(raw["count"]), int(raw["hourCount"]))


def histogram_value(
    descriptor: SliceDescriptor, raw: Any, count_type: str = "hourCount"
) -> int:
    """
    Read one histogram leaf as a number. The leaf shape is decided by the
    descriptor's statistic; absent leaves read as zero.
    """
    if raw is None:
        return 0
    if descriptor.statistic is Statistic.COMPLEX_COUNT:
        value = ComplexCount.from_json(raw)
        return value.hour_count if count_type == "hourCount" else value.count
    return Count.from_json(raw).value


# ============================================================================
# TIME LABELS & FORMATTING
# ============================================================================


DAY_NAMES = (
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
)
MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


class HourLabeler:
    """
    Structured bucket labels for one local hour. Labels are zero-padded so
    that lexicographic order matches calendar order within a component.
    Day of week is 0=Sunday.
    """

    def get_labels(self, local_hour: datetime) -> Dict[str, str]:
        # equal instants in different zones hash alike; key on wall time
        return dict(self._labels(local_hour.replace(tzinfo=None)))

    @staticmethod
    @lru_cache(maxsize=10000)
    def _labels(local_hour: datetime) -> Tuple[Tuple[str, str], ...]:
        return tuple({
            "hour": f"{local_hour.hour:02d}",
            "day": str((local_hour.weekday() + 1) % 7),
            "month": f"{local_hour.month:02d}",
            "year": f"{local_hour.year:04d}",
            "date": local_hour.date().isoformat(),
            "week": local_hour.strftime("%W_%Y"),
            "week_of_month": str(local_hour.day // 7),
        }.items())


def ordinal(number: int) -> str:
    if 10 <= number % 100 <= 20:
        suffix = "th"
    else:
        suffix = {1: "st", 2: "nd", 3: "rd"}.get(number % 10, "th")
    return f"{number}{suffix}"


def hour_name(hour: str) -> str:
    value = int(hour)
    if value == 0:
        return "12 midnight"
    if value == 12:
        return "12 noon"
    return f"{value % 12 or 12} {'am' if value < 12 else 'pm'}"


def day_name(day: str) -> str:
    return DAY_NAMES[int(day)]


def month_name(month: str) -> str:
    return MONTH_NAMES[int(month) - 1]


def _year_month(value: str) -> Tuple[str, str]:
    year, month = value.split("-")
    return year, month


def format_time_label(time_type: str, value: str) -> str:
    """
    Human-readable text for a flat time bucket, e.g. hour "14" -> "2 pm",
    monthYear "2022-03" -> "March in 2022".
    """
    if time_type == "hour":
        return hour_name(value)
    if time_type == "hourYear":
        year, hour = value.split("_")
        return f"{hour_name(hour)} in {year}"
    if time_type == "hourMonth":
        month, hour = value.split("_")
        return f"{hour_name(hour)} in {month_name(month)}"
    if time_type == "hourMonthYear":
        year_month, hour = value.split("_")
        year, month = _year_month(year_month)
        return f"{hour_name(hour)} in {month_name(month)} {year}"
    if time_type == "hourDay":
        day, hour = value.split("_")
        return f"{day_name(day)}s at {hour_name(hour)}"
    if time_type == "hourDayYear":
        year, day, hour = value.split("_")
        return f"{day_name(day)}s at {hour_name(hour)} in {year}"
    if time_type == "hourDayMonth":
        month, day, hour = value.split("_")
        return f"{day_name(day)}s at {hour_name(hour)} in {month_name(month)}"
    if time_type == "hourDayMonthYear":
        year_month, day, hour = value.split("_")
        year, month = _year_month(year_month)
        return f"{day_name(day)}s at {hour_name(hour)} in {month_name(month)} {year}"
    if time_type == "date":
        day = date.fromisoformat(value)
        weekday = DAY_NAMES[(day.weekday() + 1) % 7]
        return f"{weekday}, {MONTH_NAMES[day.month - 1]} {ordinal(day.day)}, {day.year}"
    if time_type == "day":
        return day_name(value)
    if time_type == "dayYear":
        year, day = value.split("_")
        return f"{day_name(day)}s in {year}"
    if time_type == "dayMonth":
        month, day = value.split("_")
        return f"{day_name(day)}s in {month_name(month)}"
    if time_type == "dayMonthYear":
        year_month, day = value.split("_")
        year, month = _year_month(year_month)
        return f"{day_name(day)}s in {month_name(month)} {year}"
    if time_type == "month":
        return month_name(value)
    if time_type == "monthYear":
        year, month = _year_month(value)
        return f"{month_name(month)} in {year}"
    if time_type == "week":
        # %W numbering starts at week 00
        week, year = value.split("_")
        return f"{ordinal(int(week) + 1)} week of {year}"
    if time_type == "weekMonth":
        month, week = value.split("_")
        return f"{ordinal(int(week) + 1)} week of {month_name(month)}"
    if time_type == "year":
        return value
    raise ValueError(f"Unknown time type: {time_type}")


# Short axis labels for chart keys
AXIS_FORMATTERS: Dict[TimeComponent, Callable[[str], str]] = {
    TimeComponent.HOUR: lambda v: f"{int(v) % 12 or 12}{'am' if int(v) < 12 else 'pm'}",
    TimeComponent.DAY: day_name,
    TimeComponent.MONTH: lambda v: month_name(v)[:3],
    TimeComponent.YEAR: lambda v: v,
}


# ============================================================================
# ERRORS
# ============================================================================


class IngestError(ValueError):
    """A CSV row that cannot become a time entry. Aborts the whole run."""


# ============================================================================
# PERFORMANCE & RESOURCE MONITORING
# ============================================================================


class MemoryMonitor:
    """
    Samples the process RSS between pipeline steps. A limit turns the sample
    into a hard stop naming the step that crossed it.
    """

    def __init__(self, limit_mb: Optional[float] = None):
        self.limit_mb = limit_mb
        self.peak_mb = 0.0
        self.peak_step: Optional[str] = None

    def check_memory(self, step: str = "") -> float:
        """Current RSS in MB; raises MemoryError beyond the limit"""
        rss_mb = psutil.Process(os.getpid()).memory_info().rss / 1024 / 1024
        if rss_mb > self.peak_mb:
            self.peak_mb = rss_mb
            self.peak_step = step or None

        if self.limit_mb and rss_mb > self.limit_mb:
            where = f" while {step}" if step else ""
            raise MemoryError(
                f"Memory limit of {self.limit_mb}MB exceeded{where}: {rss_mb:.1f}MB in use"
            )

        return rss_mb

    def get_peak(self) -> float:
        return self.peak_mb


class ProfilingContext:
    """cProfile around a pipeline run; `--profile` prints and dumps the stats."""

    def __init__(
        self, enabled: bool = False, output_path: Optional[str] = None, top_n: int = 20
    ):
        self.enabled = enabled
        self.output_path = output_path
        self.top_n = top_n
        self.profiler = None

    def __enter__(self):
        if self.enabled:
            self.profiler = cProfile.Profile()
            self.profiler.enable()
        return self

    def __exit__(self, *args):
        if not (self.enabled and self.profiler):
            return
        self.profiler.disable()

        if self.output_path:
            self.profiler.dump_stats(self.output_path)

        buffer = io.StringIO()
        stats = pstats.Stats(self.profiler, stream=buffer)
        stats.strip_dirs().sort_stats("cumulative").print_stats(self.top_n)
        print(f"\n{'-'*70}")
        print(f"Hourglass profile: {self.top_n} slowest calls by cumulative time")
        print(f"{'-'*70}")
        print(buffer.getvalue())


def chunk_iterator(items: List, chunk_size: int = 1000):
    """Yield fixed-size slices of a list; the last one may be shorter."""
    for i in range(0, len(items), chunk_size):
        yield items[i : i + chunk_size]


# ============================================================================
# CONFIGURATION FILE SUPPORT
# ============================================================================


CONFIG_NAMES = (".hourglass.yaml", ".hourglass.yml", ".hourglass.json")


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML or JSON file."""
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


def find_config_file(search_dir: str) -> Optional[str]:
    """
    Auto-discover a configuration file in the data directory or the current
    directory, in that order.
    """
    for directory in (search_dir, os.getcwd()):
        for config_name in CONFIG_NAMES:
            config_path = os.path.join(directory, config_name)
            if os.path.exists(config_path):
                return config_path

    return None


PRESETS: Dict[str, Dict[str, Any]] = {
    "full": {"slice_types": list(SLICE_TYPES)},
    "essential": {
        "slice_types": [
            "hourCount",
            "dayCount",
            "dayMonthYearCount",
            "monthCount",
            "monthYearCount",
            "yearCount",
            "yearSum",
        ]
    },
    "totals": {"slice_types": []},
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
        search_dir: str,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = {}
        self.preset = {}
        self.config_path = config_path

        if config_path:
            self.config = load_config_file(config_path)
        else:
            auto_path = find_config_file(search_dir)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.config_path = auto_path
                    print(f"Auto-discovered configuration: {auto_path}")
                except (OSError, ValueError, yaml.YAMLError) as e:
                    print(
                        f"Warning: Found config file but failed to load: {e}",
                        file=sys.stderr,
                    )

        # kebab-case keys are accepted in files
        self.config = {k.replace("-", "_"): v for k, v in self.config.items()}

        final_preset_name = preset_name or self.config.get("preset")
        self.preset = self._get_preset(final_preset_name)

    def _get_preset(self, name: Optional[str]) -> Dict[str, Any]:
        """Return configuration dictionary for a named preset"""
        if not name:
            return {}
        if name not in PRESETS:
            raise ValueError(f"Unknown preset: {name}")
        return PRESETS[name]

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve value based on precedence"""
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        if key in self.preset:
            return self.preset[key]
        return default


def load_timezone(name: Optional[str]):
    """Resolve an IANA timezone name; UTC needs no tz database."""
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {name}") from e


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Console reporting for pipeline runs
    - Color-coded output (colorama)
    - Progress bars (tqdm)
    - Stage timing
    """

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times = {}

    def _colorize(self, text: str, color: str) -> str:
        """Apply color if enabled"""
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def stage_start(self, stage_name: str, message: str = ""):
        """Mark the start of a pipeline stage"""
        if self.quiet:
            return
        self.stage_times[stage_name] = time.time()

        separator = self._colorize("=" * 70, Fore.CYAN)
        stage_text = self._colorize(f"🔄 {stage_name}", Fore.BLUE + Style.BRIGHT)

        print(f"\n{separator}")
        print(stage_text)
        if message:
            print(f"   {message}")
        print(separator)

    def stage_complete(self, stage_name: str, stats: Optional[Dict] = None):
        """Mark completion of a pipeline stage"""
        if self.quiet:
            return
        elapsed = time.time() - self.stage_times.get(stage_name, time.time())

        complete_text = self._colorize(
            f"✅ {stage_name} complete ({elapsed:.2f}s)", Fore.GREEN + Style.BRIGHT
        )
        print(complete_text)

        if stats and self.verbose:
            for key, value in stats.items():
                print(f"   {key}: {value}")

    def create_progress_bar(
        self, total: Optional[int], desc: str = "Processing", unit: str = " rows"
    ) -> Optional[tqdm]:
        """Create a progress bar, or None when output is suppressed"""
        if self.quiet:
            return None

        return tqdm(
            total=total,
            desc=self._colorize(desc, Fore.CYAN),
            unit=unit,
            ncols=100,
            leave=False,
        )

    def info(self, message: str):
        """Display informational message"""
        if not self.quiet:
            info_text = self._colorize("ℹ️  ", Fore.BLUE)
            print(f"{info_text}{message}")

    def warning(self, message: str):
        """Display warning message"""
        if not self.quiet:
            warning_text = self._colorize("⚠️  ", Fore.YELLOW + Style.BRIGHT)
            print(f"{warning_text}{message}")

    def error(self, message: str):
        """Display error message (always shown)"""
        error_text = self._colorize(f"❌ ERROR: {message}", Fore.RED + Style.BRIGHT)
        print(error_text, file=sys.stderr)

    def success(self, message: str):
        """Display success message"""
        if not self.quiet:
            success_text = self._colorize(f"✨ {message}", Fore.GREEN + Style.BRIGHT)
            print(success_text)

    def summary(self, stats: Dict[str, Any]):
        """Closing table of run counters, labels aligned"""
        if self.quiet:
            return
        elapsed = time.time() - self.start_time

        rule = self._colorize("-" * 70, Fore.CYAN)
        print(f"\n{rule}")
        print(self._colorize("⌛ Time log aggregated", Fore.MAGENTA + Style.BRIGHT))
        print(rule)
        width = max((len(key) for key in stats), default=0)
        for key, value in stats.items():
            print(f"   {key.ljust(width)}  {value}")

        print(self._colorize(f"\n   {'Elapsed'.ljust(width)}  {elapsed:.2f}s", Fore.YELLOW))
        print(f"{rule}\n")


@dataclass
class RunMetrics:
    """Counters and timings for one pipeline run"""

    files_read: int = 0
    entries_ingested: int = 0
    insert_failures: int = 0
    hour_rows: int = 0
    orphaned_slices: int = 0
    aggregate_times: Dict[str, float] = field(default_factory=dict)
    memory_peak_mb: float = 0.0
    total_time: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "files_read": self.files_read,
            "entries_ingested": self.entries_ingested,
            "insert_failures": self.insert_failures,
            "hour_rows": self.hour_rows,
            "orphaned_slices": self.orphaned_slices,
            "aggregate_times": {
                name: round(seconds, 3)
                for name, seconds in self.aggregate_times.items()
            },
            "memory_peak_mb": round(self.memory_peak_mb, 2),
            "total_time_seconds": round(self.total_time, 2),
        }


# ============================================================================
# ENTRY NORMALIZER & TAG CLASSIFIER
# ============================================================================


@dataclass(frozen=True)
class TimeEntry:
    """One normalised CSV row. `start`/`end` are aware local datetimes."""

    project: str
    description: str
    tags: Tuple[str, ...]
    billable: bool
    start: datetime
    end: datetime
    duration: int


def clean_description(project: str, description: str) -> str:
    return DESCRIPTION_FIXES.get(project, {}).get(description, description)


def classify_tags(project: str, description: str) -> Tuple[str, ...]:
    """
    Every tag whose project or description matcher fires, in TAGS order.
    Both rule lists always run; no matcher firing yields ("UNKNOWN",).
    """
    found = {rule.tag for rule in PROJECT_RULES if rule.matches(project)}
    found.update(rule.tag for rule in DESCRIPTION_RULES if rule.matches(description))

    if not found:
        return (UNKNOWN_TAG,)
    return tuple(sorted(found, key=TAG_ORDER.__getitem__))


# Positional layout of a Toggl detailed export; other columns are ignored
CSV_COLUMNS = {
    3: "project",
    5: "description",
    6: "billable",
    7: "start_date",
    8: "start_time",
    9: "end_date",
    10: "end_time",
}
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


class EntryNormalizer:
    """Turns one CSV record into a TimeEntry in the configured timezone."""

    def __init__(self, tz=timezone.utc):
        self.tz = tz

    def parse_timestamp(self, date_text: str, time_text: str) -> datetime:
        try:
            naive = datetime.strptime(f"{date_text} {time_text}", TIMESTAMP_FORMAT)
        except (TypeError, ValueError) as e:
            raise IngestError(
                f"Unparseable date/time: {date_text!r} {time_text!r}"
            ) from e
        return naive.replace(tzinfo=self.tz)

    def normalize(
        self, record: Dict[str, str], source: str = "<csv>", line: int = 0
    ) -> TimeEntry:
        try:
            start = self.parse_timestamp(record["start_date"], record["start_time"])
            end = self.parse_timestamp(record["end_date"], record["end_time"])
        except IngestError as e:
            raise IngestError(f"{source}:{line}: {e}") from e

        # elapsed seconds must be measured on the UTC timeline across DST
        elapsed = end.astimezone(timezone.utc) - start.astimezone(timezone.utc)
        if elapsed < timedelta(0):
            raise IngestError(
                f"{source}:{line}: entry ends before it starts "
                f"({start.isoformat()} > {end.isoformat()})"
            )

        project = record["project"]
        description = clean_description(project, record["description"])

        return TimeEntry(
            project=project,
            description=description,
            tags=classify_tags(project, description),
            billable=record["billable"] != "No",
            start=start,
            end=end,
            duration=int(elapsed.total_seconds()),
        )


def read_time_log(path: str, chunk_size: int = 1000) -> Iterator[Tuple[int, Dict]]:
    """
    Stream `(line_number, record)` pairs from one CSV export. The header
    row is skipped; columns are picked by position.
    """
    positions = sorted(CSV_COLUMNS)
    line = 1
    try:
        with pd.read_csv(
            path,
            header=0,
            usecols=positions,
            dtype=str,
            keep_default_na=False,
            chunksize=chunk_size,
        ) as reader:
            for chunk in reader:
                chunk.columns = [CSV_COLUMNS[p] for p in positions]
                for record in chunk.to_dict("records"):
                    line += 1
                    yield line, record
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise IngestError(f"{path}: {e}") from e
    except ValueError as e:
        if isinstance(e, IngestError):
            raise
        # usecols outside the file's column count
        raise IngestError(f"{path}: {e}") from e


def resolve_inputs(inputs: Sequence[str], pattern: str) -> List[str]:
    """Expand directories with `pattern` and check every file exists."""
    paths: List[str] = []
    for item in inputs:
        candidate = Path(item)
        if candidate.is_dir():
            paths.extend(str(p) for p in sorted(candidate.glob(pattern)))
        elif candidate.is_file():
            paths.append(str(candidate))
        else:
            raise FileNotFoundError(f"Input not found: {item}")

    if not paths:
        raise FileNotFoundError(f"No CSV files matched {pattern!r} in {list(inputs)}")
    return paths


# ============================================================================
# HOUR EXPANDER
# ============================================================================


ONE_HOUR = timedelta(hours=1)
TICK = timedelta(microseconds=1)


def truncate_hour(moment: datetime, tz) -> datetime:
    """`moment` in `tz`, with minutes and below dropped."""
    return moment.astimezone(tz).replace(minute=0, second=0, microsecond=0)


def expand_hours(entry: TimeEntry, tz) -> Iterator[datetime]:
    """
    Lazily yield the start of every local hour the entry touches, from the
    hour of `start` through the hour containing `end - 1 tick`. Always yields
    at least one hour. Stepping happens on the UTC timeline so repeated or
    skipped local hours around DST changes are handled.

    The UTC cursor only ever moves forward: with a 30-minute DST shift the
    next UTC hour can truncate back onto the hour just yielded, in which
    case the step is repeated from one hour further on.
    """
    current = truncate_hour(entry.start, tz)
    cursor = current.astimezone(timezone.utc)
    last_moment = max(entry.end - TICK, entry.start)
    last = truncate_hour(last_moment, tz).astimezone(timezone.utc)

    while True:
        yield current
        step = cursor + ONE_HOUR
        following = truncate_hour(step, tz)
        while following.astimezone(timezone.utc) <= cursor:
            step += ONE_HOUR
            following = truncate_hour(step, tz)
        if following.astimezone(timezone.utc) > last:
            break
        current = following
        cursor = following.astimezone(timezone.utc)


class HourExpander:
    """Builds `houred` rows: one copy of an entry per local hour touched."""

    def __init__(self, tz=timezone.utc):
        self.tz = tz
        self.labeler = HourLabeler()

    def expand(self, entry: TimeEntry) -> Iterator[datetime]:
        return expand_hours(entry, self.tz)

    def rows(self, entries: Sequence[TimeEntry]) -> List[Dict[str, Any]]:
        rows = []
        for entry in entries:
            for hour_start in self.expand(entry):
                row = {
                    "project": entry.project,
                    "description": entry.description,
                    "tags": entry.tags,
                    "duration": entry.duration,
                    "hour_start": hour_start.isoformat(),
                }
                row.update(self.labeler.get_labels(hour_start))
                rows.append(row)
        return rows


# ============================================================================
# STORAGE
# ============================================================================


TABLES: Dict[str, List[str]] = {
    "raw": [
        "project",
        "description",
        "tags",
        "billable",
        "start",
        "end",
        "duration",
        "year",
    ],
    "houred": [
        "project",
        "description",
        "tags",
        "duration",
        "hour_start",
        "hour",
        "day",
        "month",
        "year",
        "date",
        "week",
        "week_of_month",
    ],
    "tags_grouped": ["project", "description", "types"],
    "tags_project": ["project", "types"],
    "totals": ["slice_type", "slice_key", "total_time"],
    "totals_grouped": ["project", "description", "types", "hist_type", "hist"],
    "totals_project": ["project", "types", "hist_type", "hist"],
    "totals_typed": ["type", "hist_type", "hist"],
    "totals_time": ["time_type", "time_value", "total_time"],
}


class TimeStore:
    """
    In-memory relational store: one DataFrame per table. Entering the
    context drops and recreates every table; leaving releases them.

        with TimeStore() as store:
            store.insert("raw", records)
    """

    def __init__(self):
        self.tables: Dict[str, pd.DataFrame] = {}

    def __enter__(self) -> "TimeStore":
        self.reset()
        return self

    def __exit__(self, *args):
        self.tables.clear()
        return False

    def reset(self):
        """Drop every table and recreate it empty"""
        self.tables = {name: pd.DataFrame(columns=cols) for name, cols in TABLES.items()}

    def table(self, name: str) -> pd.DataFrame:
        if name not in self.tables:
            raise KeyError(f"Unknown or released table: {name}")
        return self.tables[name]

    def append(self, name: str, frame: pd.DataFrame) -> int:
        """Append rows to a table, aligned to its columns. Returns rows added."""
        current = self.table(name)
        frame = frame.reindex(columns=TABLES[name]).reset_index(drop=True)
        if frame.empty:
            return 0
        if current.empty:
            self.tables[name] = frame
        else:
            self.tables[name] = pd.concat([current, frame], ignore_index=True)
        return len(frame)

    def insert(self, name: str, records: Sequence[Dict[str, Any]]) -> int:
        if not records:
            return 0
        return self.append(name, pd.DataFrame.from_records(records, columns=TABLES[name]))

    def count(self, name: str) -> int:
        return len(self.table(name))

    def persist(self, db_path: str) -> int:
        """
        Write every table into a SQLite file, replacing earlier tables. Tag
        lists and histograms are stored as JSON text.
        """
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        written = 0
        with closing(sqlite3.connect(db_path)) as conn:
            for name, frame in self.tables.items():
                frame = frame.copy()
                for column in frame.columns:
                    if frame[column].dtype == object:
                        frame[column] = frame[column].map(_sql_value)
                frame.to_sql(name, conn, if_exists="replace", index=False)
                written += len(frame)
            conn.commit()
        return written


def _sql_value(value: Any) -> Any:
    if isinstance(value, (tuple, list, dict)):
        return json.dumps(value, ensure_ascii=False)
    return value


# ============================================================================
# BUCKET AGGREGATOR
# ============================================================================


def fold_histogram(
    stats: pd.DataFrame, keys: Sequence[str], levels: Sequence[str], value: str = "value"
) -> pd.DataFrame:
    """
    Fold a flat grouped table into nested histograms, one level at a time
    from the innermost level outward. `levels` is ordered outermost first.
    Each fold embeds the inner dicts as objects, keyed by the level label.
    Returns one row per slice key with the nested dict in `value`.
    """
    current = stats
    for depth in range(len(levels) - 1, -1, -1):
        level = levels[depth]
        outer = list(keys) + list(levels[:depth])
        rows = []
        for outer_key, group in current.groupby(outer, sort=True):
            if not isinstance(outer_key, tuple):
                outer_key = (outer_key,)
            nested = dict(zip(group[level].tolist(), group[value].tolist()))
            rows.append(outer_key + (nested,))
        current = pd.DataFrame(rows, columns=outer + [value])
    return current


class BucketAggregator:
    """
    Generic nested-histogram aggregation driven by SliceDescriptor: one
    algorithm for every slice type and every slice dimension.
    """

    def __init__(
        self,
        store: TimeStore,
        reporter: Optional[ProgressReporter] = None,
        memory_monitor: Optional[MemoryMonitor] = None,
    ):
        self.store = store
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.memory_monitor = memory_monitor
        self.orphaned: List[str] = []
        self._typed: Optional[pd.DataFrame] = None

    def source(self, dimension: SliceDimension) -> pd.DataFrame:
        """Expanded rows for a dimension; tags are exploded for `type`."""
        houred = self.store.table("houred")
        if dimension.name != "type":
            return houred
        if self._typed is None:
            self._typed = houred.explode("tags").rename(columns={"tags": "type"})
        return self._typed

    @staticmethod
    def compute(
        frame: pd.DataFrame, keys: Sequence[str], descriptor: SliceDescriptor
    ) -> pd.DataFrame:
        """Group by slice keys plus bucket columns and compute the leaf values."""
        by = list(keys) + descriptor.columns
        if frame.empty:
            return pd.DataFrame(columns=by + ["value"])

        grouped = frame.groupby(by, sort=True)
        if descriptor.statistic is Statistic.COUNT:
            stats = grouped.size().rename("hour_count").reset_index()
            values = [Count(int(n)).to_json() for n in stats["hour_count"]]
        elif descriptor.statistic is Statistic.COMPLEX_COUNT:
            stats = grouped.agg(
                count=("date", "nunique"), hour_count=("date", "size")
            ).reset_index()
            values = [
                ComplexCount(int(days), int(hours)).to_json()
                for days, hours in zip(stats["count"], stats["hour_count"])
            ]
        else:
            stats = grouped["duration"].sum().rename("total").reset_index()
            values = [Count(int(total)).to_json() for total in stats["total"]]

        stats = stats[by].copy()
        stats["value"] = pd.Series(values, index=stats.index, dtype=object)
        return stats

    def histograms(
        self, frame: pd.DataFrame, keys: Sequence[str], descriptor: SliceDescriptor
    ) -> pd.DataFrame:
        """Group, compute and fold. One row per slice key."""
        stats = self.compute(frame, keys, descriptor)
        if stats.empty:
            return pd.DataFrame(columns=list(keys) + ["value"])
        return fold_histogram(stats, keys, descriptor.columns)

    def attach_tags(
        self, folded: pd.DataFrame, keys: Sequence[str], tags: pd.DataFrame
    ) -> Tuple[pd.DataFrame, List[Tuple]]:
        """
        Join the "tags seen" lookup onto each slice key. Keys without tags are
        dropped from the result and returned as orphans.
        """
        merged = folded.merge(tags, on=list(keys), how="left", indicator=True)
        orphan_mask = merged["_merge"] == "left_only"
        orphans = [
            tuple(row) for row in merged.loc[orphan_mask, list(keys)].itertuples(index=False)
        ]
        kept = merged.loc[~orphan_mask].drop(columns="_merge")
        return kept, orphans

    def aggregate(self, descriptor: SliceDescriptor, dimension: SliceDimension) -> int:
        """Compute one slice type over one dimension into its table."""
        folded = self.histograms(self.source(dimension), dimension.keys, descriptor)

        if dimension.tags_table:
            folded, orphans = self.attach_tags(
                folded, dimension.keys, self.store.table(dimension.tags_table)
            )
            for orphan in orphans:
                message = (
                    f"Orphaned slice dropped ({dimension.name} {descriptor.name}): "
                    f"{'|'.join(str(part) for part in orphan)} has no known tags"
                )
                self.orphaned.append(message)
                self.reporter.warning(message)

        result = folded.rename(columns={"value": "hist"}).assign(hist_type=descriptor.name)
        written = self.store.append(dimension.table, result)

        if self.memory_monitor:
            self.memory_monitor.check_memory(f"building {descriptor.name} by {dimension.name}")
        return written


def build_tag_lookups(store: TimeStore) -> Tuple[int, int]:
    """Fill `tags_grouped` and `tags_project`: tags seen per slice key."""
    raw = store.table("raw")
    if raw.empty:
        return 0, 0

    exploded = raw[["project", "description", "tags"]].explode("tags")

    def collect(frame: pd.DataFrame, keys: List[str]) -> pd.DataFrame:
        rows = []
        for key, group in frame.groupby(keys, sort=True):
            if not isinstance(key, tuple):
                key = (key,)
            seen = set(group["tags"].tolist())
            rows.append(key + (tuple(sorted(seen, key=TAG_ORDER.__getitem__)),))
        return pd.DataFrame(rows, columns=keys + ["types"])

    grouped = store.append("tags_grouped", collect(exploded, ["project", "description"]))
    project = store.append("tags_project", collect(exploded, ["project"]))
    return grouped, project


# ============================================================================
# TOTAL AGGREGATOR
# ============================================================================


class TotalAggregator:
    """
    Flat duration totals from raw entries (true elapsed seconds, no hour
    expansion), plus the flat calendar buckets behind `byTime`.
    """

    def __init__(self, store: TimeStore):
        self.store = store

    def totals(self) -> int:
        raw = self.store.table("raw")
        if raw.empty:
            return 0

        by_project = raw.groupby("project", sort=True)["duration"].sum()
        by_group = raw.groupby(["project", "description"], sort=True)["duration"].sum()
        # an entry with N tags counts fully towards each of its N tags
        by_type = raw.explode("tags").groupby("tags", sort=True)["duration"].sum()

        records = [
            {"slice_type": "project", "slice_key": key, "total_time": int(total)}
            for key, total in by_project.items()
        ]
        records += [
            {
                "slice_type": "project.description",
                "slice_key": f"{project}|{description}",
                "total_time": int(total),
            }
            for (project, description), total in by_group.items()
        ]
        records += [
            {"slice_type": "type", "slice_key": key, "total_time": int(total)}
            for key, total in by_type.items()
        ]
        return self.store.insert("totals", records)

    @staticmethod
    def time_labels(frame: pd.DataFrame, parts: Sequence[str]) -> pd.Series:
        labels = pd.Series("", index=frame.index, dtype=object)
        for part in parts:
            labels = labels + (frame[part] if part in frame.columns else part)
        return labels

    def time_totals(self) -> int:
        houred = self.store.table("houred")
        raw = self.store.table("raw")
        records = []

        for time_type, parts in TIME_TYPES.items():
            if parts is None:
                if raw.empty:
                    continue
                sums = raw.groupby("year", sort=True)["duration"].sum()
            else:
                if houred.empty:
                    continue
                sums = self.time_labels(houred, parts).value_counts().sort_index()

            records += [
                {"time_type": time_type, "time_value": label, "total_time": int(total)}
                for label, total in sums.items()
            ]

        return self.store.insert("totals_time", records)


# ============================================================================
# EXPORT ASSEMBLER
# ============================================================================


def _time_value(row) -> Dict[str, Any]:
    return {
        "totalTime": int(row.total_time),
        "timeString": format_time_label(row.time_type, row.time_value),
        "originalTime": row.time_value,
    }


class ExportAssembler:
    """Reads every aggregate table back and builds the `data.json` document."""

    def __init__(self, store: TimeStore, top_n: int = 3):
        self.store = store
        self.top_n = top_n
        self.slice_order = {d.name: i for i, d in enumerate(SLICE_TYPES.values())}

    def top_by_time(self) -> Dict[str, List[Dict[str, Any]]]:
        """
        Per time type, the `top_n` buckets with the greatest label (most recent
        for zero-padded calendar labels), then ordered by total descending.
        """
        result = {time_type: [] for time_type in TIME_TYPES}
        frame = self.store.table("totals_time")
        for time_type, group in frame.groupby("time_type", sort=False):
            top = group.sort_values("time_value", ascending=False).head(self.top_n)
            top = top.sort_values("total_time", ascending=False, kind="mergesort")
            result[time_type] = [_time_value(row) for row in top.itertuples(index=False)]
        return result

    def all_by_time(self) -> Dict[str, List[Dict[str, Any]]]:
        result = {time_type: [] for time_type in TIME_TYPES}
        frame = self.store.table("totals_time").sort_values(
            ["time_type", "time_value"], kind="mergesort"
        )
        for row in frame.itertuples(index=False):
            result[row.time_type].append(_time_value(row))
        return result

    def _totals(self, slice_type: str) -> Dict[str, int]:
        frame = self.store.table("totals")
        frame = frame[frame["slice_type"] == slice_type].sort_values("slice_key")
        return {
            row.slice_key: int(row.total_time) for row in frame.itertuples(index=False)
        }

    def _ordered(self, frame: pd.DataFrame, keys: List[str]) -> pd.DataFrame:
        order = frame["hist_type"].map(self.slice_order)
        return frame.assign(_order=order).sort_values(keys + ["_order"], kind="mergesort")

    def by_type(self) -> Dict[str, Any]:
        frame = self.store.table("totals_typed")
        frame = frame.assign(_tag=frame["type"].map(TAG_ORDER))
        frame = self._ordered(frame, ["_tag"])

        all_types: Dict[str, Dict[str, Any]] = {}
        for row in frame.itertuples(index=False):
            all_types.setdefault(row.type, {})[row.hist_type] = row.hist

        totals = self._totals("type")
        ordered_totals = {
            tag: totals[tag] for tag in sorted(totals, key=TAG_ORDER.__getitem__)
        }
        return {"all": all_types, "totals": ordered_totals}

    def by_group(self) -> Dict[str, Any]:
        frame = self._ordered(self.store.table("totals_grouped"), ["project", "description"])

        all_groups: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for row in frame.itertuples(index=False):
            descriptions = all_groups.setdefault(row.project, {})
            entry = descriptions.setdefault(
                row.description,
                {
                    "project": row.project,
                    "description": row.description,
                    "type": list(row.types),
                },
            )
            entry[row.hist_type] = row.hist

        return {"all": all_groups, "totals": self._totals("project.description")}

    def by_project(self) -> Dict[str, Any]:
        frame = self._ordered(self.store.table("totals_project"), ["project"])

        all_projects: Dict[str, Dict[str, Any]] = {}
        for row in frame.itertuples(index=False):
            entry = all_projects.setdefault(
                row.project, {"project": row.project, "type": list(row.types)}
            )
            entry[row.hist_type] = row.hist

        return {"all": all_projects, "totals": self._totals("project")}

    def assemble(self) -> Dict[str, Any]:
        return {
            "byTime": {"top": self.top_by_time(), "all": self.all_by_time()},
            "byType": self.by_type(),
            "byGroup": self.by_group(),
            "byProject": self.by_project(),
        }


def write_document(document: Dict[str, Any], output_path: str) -> str:
    """Write the document as JSON; identical input gives identical bytes."""
    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(document, f, indent=2, ensure_ascii=False)
    return output_path


# ============================================================================
# PIPELINE
# ============================================================================


class TimeLogPipeline:
    """
    One batch run: ingest -> expand -> aggregate -> export. Every run starts
    from empty tables, so re-running after a failure is always safe.
    """

    def __init__(
        self,
        timezone_name: str = "UTC",
        reporter: Optional[ProgressReporter] = None,
        slice_types: Optional[Sequence[str]] = None,
        top_n: int = 3,
        memory_limit_mb: Optional[float] = None,
        expand_chunk_size: int = 5000,
    ):
        self.timezone_name = timezone_name
        self.tz = load_timezone(timezone_name)
        self.reporter = reporter or ProgressReporter()
        self.slice_types = resolve_slice_types(slice_types)
        self.top_n = top_n
        self.expand_chunk_size = expand_chunk_size
        self.normalizer = EntryNormalizer(self.tz)
        self.expander = HourExpander(self.tz)
        self.memory_monitor = MemoryMonitor(limit_mb=memory_limit_mb)
        self.metrics = RunMetrics()
        self.errors: List[str] = []

    # -- ingest -------------------------------------------------------------

    @staticmethod
    def _storable(entry: TimeEntry) -> bool:
        return (
            isinstance(entry.project, str)
            and isinstance(entry.description, str)
            and isinstance(entry.duration, int)
            and entry.duration >= 0
            and bool(entry.tags)
        )

    def insert_entries(self, store: TimeStore, entries: Sequence[TimeEntry]) -> int:
        """
        Insert entries into `raw`. Rows that cannot be stored are reported and
        skipped; the run carries on.
        """
        records = []
        for entry in entries:
            if not self._storable(entry):
                message = f"Failed to write a row to the store: {entry!r}"
                self.errors.append(message)
                self.reporter.error(message)
                self.metrics.insert_failures += 1
                continue
            records.append(
                {
                    "project": entry.project,
                    "description": entry.description,
                    "tags": entry.tags,
                    "billable": entry.billable,
                    "start": entry.start.isoformat(),
                    "end": entry.end.isoformat(),
                    "duration": entry.duration,
                    "year": f"{entry.start.astimezone(self.tz).year:04d}",
                }
            )
        return store.insert("raw", records)

    def ingest_file(self, store: TimeStore, path: str) -> int:
        """Normalise a whole file before inserting any of it."""
        progress_bar = self.reporter.create_progress_bar(
            None, desc=f"Reading {os.path.basename(path)}"
        )
        entries = []
        try:
            for line, record in read_time_log(path):
                entries.append(self.normalizer.normalize(record, source=path, line=line))
                if progress_bar:
                    progress_bar.update(1)
        finally:
            if progress_bar:
                progress_bar.close()

        inserted = self.insert_entries(store, entries)
        self.reporter.info(f"Read {len(entries):,} rows from {path} ({inserted:,} stored)")
        return inserted

    def ingest(self, store: TimeStore, paths: Sequence[str]) -> int:
        self.reporter.stage_start("Ingest", f"Reading {len(paths)} CSV file(s)...")
        for path in paths:
            self.metrics.entries_ingested += self.ingest_file(store, path)
            self.metrics.files_read += 1
        self.reporter.stage_complete(
            "Ingest", {"Entries stored": f"{store.count('raw'):,}"}
        )
        return self.metrics.entries_ingested

    # -- expand -------------------------------------------------------------

    def expand(self, store: TimeStore) -> int:
        self.reporter.stage_start("Hour Expansion", "Creating one row per hour touched...")
        raw = store.table("raw")
        entries = [
            TimeEntry(
                project=row.project,
                description=row.description,
                tags=row.tags,
                billable=bool(row.billable),
                start=datetime.fromisoformat(row.start),
                end=datetime.fromisoformat(row.end),
                duration=int(row.duration),
            )
            for row in raw.itertuples(index=False)
        ]

        for chunk in chunk_iterator(entries, self.expand_chunk_size):
            store.insert("houred", self.expander.rows(chunk))
            self.memory_monitor.check_memory("expanding entries into hours")

        self.metrics.hour_rows = store.count("houred")
        self.reporter.stage_complete(
            "Hour Expansion", {"Hour rows": f"{self.metrics.hour_rows:,}"}
        )
        return self.metrics.hour_rows

    # -- aggregate ----------------------------------------------------------

    def aggregate(self, store: TimeStore):
        self.reporter.stage_start("Aggregation", "Building tag lookups and totals...")
        build_tag_lookups(store)

        totals = TotalAggregator(store)
        totals.totals()
        totals.time_totals()

        buckets = BucketAggregator(store, self.reporter, self.memory_monitor)
        progress_bar = self.reporter.create_progress_bar(
            len(self.slice_types) * len(DIMENSIONS), desc="Histograms", unit=" slices"
        )
        try:
            for descriptor in self.slice_types:
                started = time.time()
                for dimension in DIMENSIONS:
                    buckets.aggregate(descriptor, dimension)
                    if progress_bar:
                        progress_bar.update(1)
                self.metrics.aggregate_times[descriptor.name] = time.time() - started
        finally:
            if progress_bar:
                progress_bar.close()

        self.errors.extend(buckets.orphaned)
        self.metrics.orphaned_slices = len(buckets.orphaned)
        self.reporter.stage_complete(
            "Aggregation",
            {
                "Slice types": len(self.slice_types),
                "Orphaned slices": self.metrics.orphaned_slices,
            },
        )

    # -- run ----------------------------------------------------------------

    def run(self, paths: Sequence[str], database: Optional[str] = None) -> Dict[str, Any]:
        """Run every stage against a fresh store and return the document."""
        start_time = time.time()
        with TimeStore() as store:
            self.ingest(store, paths)
            self.expand(store)
            self.aggregate(store)

            self.reporter.stage_start("Export", "Assembling document...")
            document = ExportAssembler(store, self.top_n).assemble()
            self.reporter.stage_complete("Export")

            if database:
                store.persist(database)
                self.reporter.info(f"Tables written to {database}")

        self.metrics.memory_peak_mb = self.memory_monitor.get_peak()
        self.metrics.total_time = time.time() - start_time
        return document


def run_pipeline(csv_sources: Sequence[str], **options) -> Dict[str, Any]:
    """Stateless entry point: CSV files in, `data.json` document out."""
    options.setdefault("reporter", ProgressReporter(quiet=True))
    return TimeLogPipeline(**options).run(csv_sources)


# ============================================================================
# MANIFEST
# ============================================================================


def generate_manifest(output_dir: str, pipeline: TimeLogPipeline, data_path: str):
    """Generate manifest.json describing the run and the document it wrote"""
    with open(data_path, "rb") as f:
        data = f.read()

    manifest = {
        "generator_version": VERSION,
        "schema_version": SCHEMA_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "timezone": pipeline.timezone_name,
        "slice_types": [d.name for d in pipeline.slice_types],
        "run_metrics": pipeline.metrics.to_dict(),
        "document": {
            "file": os.path.basename(data_path),
            "file_size_bytes": len(data),
            "sha256": hashlib.sha256(data).hexdigest(),
        },
    }

    manifest_path = os.path.join(output_dir, "manifest.json")
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, ensure_ascii=False)

    return manifest


# ============================================================================
# HISTOGRAM VIEW MODEL
# ============================================================================


HOURS = tuple(f"{hour:02d}" for hour in range(24))
DAYS = tuple(str(day) for day in range(7))
MONTHS = tuple(f"{month:02d}" for month in range(1, 13))
COUNT_TYPES = ("count", "hourCount")

SECTIONS = (
    ("byTime", "top"),
    ("byTime", "all"),
    ("byType", "all"),
    ("byType", "totals"),
    ("byGroup", "all"),
    ("byGroup", "totals"),
    ("byProject", "all"),
    ("byProject", "totals"),
)


@dataclass
class HistogramSeries:
    name: str
    hist: Dict[str, int]


def missing_sections(document: Any) -> List[str]:
    """
    Everything the charts need but the document lacks. An empty list means
    the document can be rendered.
    """
    if not isinstance(document, dict):
        return ["document"]

    missing = []
    for outer, inner in SECTIONS:
        section = document.get(outer)
        if not isinstance(section, dict) or not isinstance(section.get(inner), dict):
            missing.append(f"{outer}.{inner}")

    if "byTime.top" not in missing and not document["byTime"]["top"].get("year"):
        missing.append("byTime.top.year")
    if "byTime.all" not in missing and document["byTime"]["all"].get("date") is None:
        missing.append("byTime.all.date")
    return missing


def is_final_by_type(data: Any, slice_types: Optional[Sequence[str]] = None) -> bool:
    if not data or not isinstance(data, dict):
        return False
    required = list(slice_types) if slice_types is not None else list(SLICE_TYPES)
    for key, value in data.items():
        if key not in TAG_ORDER:
            return False
        if not value or not isinstance(value, dict):
            return False
        if not all(name in value for name in required):
            return False
        if "project" in value:
            return False
    return True


def is_final_by_group(data: Any) -> bool:
    if not data or not isinstance(data, dict):
        return False
    for project, descriptions in data.items():
        if not isinstance(project, str) or not isinstance(descriptions, dict):
            return False
        for description, value in descriptions.items():
            if not isinstance(description, str):
                return False
            if isinstance(value, dict) and "description" in value:
                continue
            return False
    return True


def is_final_by_project(data: Any) -> bool:
    if not data or not isinstance(data, dict):
        return False
    for project, value in data.items():
        if not isinstance(project, str):
            return False
        if isinstance(value, dict) and "project" in value and "description" not in value:
            continue
        return False
    return True


def iter_section_series(section: Dict[str, Any], kind: str) -> Iterator[Tuple[str, Dict]]:
    """Yield `(series name, slice-type map)` for a byType/byGroup/byProject `all`."""
    if kind == "type":
        for tag in TAGS:
            if tag in section:
                yield tag, section[tag]
    elif kind == "project":
        for project in sorted(section):
            yield project, section[project]
    elif kind == "group":
        for project in sorted(section):
            for description in sorted(section[project]):
                yield f"{project}|{description}", section[project][description]
    else:
        raise ValueError(f"Unknown section kind: {kind}")


def data_years(section: Dict[str, Any], kind: str, slice_type: str) -> Tuple[str, ...]:
    """Every year between the first and last year present in a year-keyed slice."""
    seen = set()
    for _, slices in iter_section_series(section, kind):
        hist = slices.get(slice_type)
        if isinstance(hist, dict):
            seen.update(int(year) for year in hist)
    if not seen:
        return ()
    return tuple(f"{year:04d}" for year in range(min(seen), max(seen) + 1))


def bucket_keys(component: TimeComponent) -> Tuple[str, ...]:
    if component is TimeComponent.HOUR:
        return HOURS
    if component is TimeComponent.DAY:
        return DAYS
    if component is TimeComponent.MONTH:
        return MONTHS
    raise ValueError("Year keys depend on the data; pass them explicitly")


def make_histogram_data(
    slice_type: str,
    section: Dict[str, Any],
    kind: str = "type",
    year: Optional[str] = None,
    month: Optional[str] = None,
    day: Optional[str] = None,
    count_type: Optional[str] = None,
    convert: Optional[Callable[[int], int]] = None,
    keys: Optional[Sequence[str]] = None,
) -> List[HistogramSeries]:
    """
    Zero-filled series for one slice type. Outer nesting levels are indexed
    with `year`/`month`/`day`; a missing option fails before any data is read.
    Complex counts read `hourCount` unless `count_type="count"`.
    """
    descriptor = SLICE_TYPES.get(slice_type)
    if descriptor is None:
        raise ValueError(f"incorrect/unhandled time slice: {slice_type}")

    options = {
        TimeComponent.YEAR: year,
        TimeComponent.MONTH: month,
        TimeComponent.DAY: day,
    }
    indexing = []
    for component in descriptor.nesting[:-1]:
        value = options[component]
        if value is None:
            raise ValueError(f"need to pass in a {component.value} option for {slice_type}")
        indexing.append(value)

    if count_type is None:
        count_type = "hourCount"
    if count_type not in COUNT_TYPES:
        raise ValueError(f"count_type must be one of {COUNT_TYPES}, got {count_type!r}")

    if keys is None:
        if descriptor.leaf is TimeComponent.YEAR:
            keys = data_years(section, kind, slice_type)
        else:
            keys = bucket_keys(descriptor.leaf)

    series = []
    for name, slices in iter_section_series(section, kind):
        hist = slices.get(slice_type)
        for index in indexing:
            hist = hist.get(index) if isinstance(hist, dict) else None

        values = {}
        for key in keys:
            raw = hist.get(key) if isinstance(hist, dict) else None
            value = histogram_value(descriptor, raw, count_type)
            values[key] = convert(value) if convert else value
        series.append(HistogramSeries(name, values))

    return series


def select_max_series(
    series: Sequence[HistogramSeries], keys: Sequence[str]
) -> List[HistogramSeries]:
    """
    For every key keep only the series holding the maximum (all of them on a
    tie), zero-fill the rest, and drop series that end up all zero.
    """
    if not series:
        return []

    staged: Dict[str, Dict[str, int]] = {}
    for key in keys:
        best: List[HistogramSeries] = []
        for candidate in series:
            if key not in candidate.hist:
                raise ValueError("every histogram element must be filled")
            if not best or candidate.hist[key] > best[0].hist[key]:
                best = [candidate]
            elif candidate.hist[key] == best[0].hist[key]:
                best.append(candidate)
        for winner in best:
            staged.setdefault(winner.name, {})[key] = winner.hist[key]

    result = []
    for name, values in staged.items():
        if all(value == 0 for value in values.values()):
            continue
        result.append(HistogramSeries(name, {key: values.get(key, 0) for key in keys}))
    return result


def build_sunburst(totals: Dict[str, int]) -> Dict[str, Any]:
    """`byGroup.totals` as a project -> description tree."""
    projects: Dict[str, List[Dict[str, Any]]] = {}
    for group_key, value in totals.items():
        project, separator, description = group_key.partition("|")
        if not separator:
            raise ValueError(f"The group key is malformed: {group_key}")
        projects.setdefault(project, []).append({"name": description, "value": value})

    return {
        "name": "All",
        "children": [
            {"name": project, "children": children}
            for project, children in projects.items()
        ],
    }


def day_heatmap(day_data: Sequence[Dict[str, Any]], year: int) -> Tuple[Dict[int, List], int]:
    """
    Lay `byTime.all.date` into a weekday (0=Sunday) x week grid covering the
    whole year, Sunday-to-Saturday weeks. Returns the grid and its maximum.
    """
    values = {item["originalTime"]: item["totalTime"] for item in day_data}
    first = date(year, 1, 1)
    last = date(year, 12, 31)
    current = first - timedelta(days=(first.weekday() + 1) % 7)
    end = last + timedelta(days=6 - (last.weekday() + 1) % 7)

    grid: Dict[int, List[Dict[str, Any]]] = {weekday: [] for weekday in range(7)}
    biggest = 0
    while current <= end:
        label = current.isoformat()
        value = values.get(label, 0)
        biggest = max(biggest, value)
        grid[(current.weekday() + 1) % 7].append({"x": label, "y": value})
        current += timedelta(days=1)
    return grid, biggest


# ============================================================================
# CLI INTERFACE
# ============================================================================


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(version=VERSION)
def main():
    """
    Hourglass - personal time-tracking analytics.

    Turns Toggl CSV exports into the histogram document the charts render.
    """


@main.command("run")
@click.argument("inputs", nargs=-1, type=click.Path())
@click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=False),
    help="Output directory for data.json (default: public)",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
@click.option(
    "--preset",
    type=click.Choice(list(PRESETS)),
    help="Use a predefined slice-type selection",
)
@click.option("--timezone", "timezone_name", help="IANA timezone of the CSV times")
@click.option("--file-pattern", help="Glob used for input directories")
@click.option("--top-n", type=int, help="Most recent buckets kept per time type")
@click.option(
    "--slice-type",
    "slice_types",
    multiple=True,
    type=click.Choice(list(SLICE_TYPES)),
    help="Only build these slice types (repeatable)",
)
@click.option("--memory-limit", type=float, help="Memory limit in MB")
@click.option(
    "--database",
    type=click.Path(dir_okay=False),
    help="Also persist every table into this SQLite file",
)
@click.option(
    "--profile", is_flag=True, default=None, help="Enable performance profiling"
)
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
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would be processed without running the pipeline",
)
def run(inputs, output, config, preset, **kwargs):
    """Ingest CSV exports (files or directories) and write data.json."""
    kwargs["timezone"] = kwargs.pop("timezone_name")
    kwargs["slice_types"] = list(kwargs["slice_types"]) or None

    search_dir = os.getcwd()
    if inputs:
        first = Path(inputs[0])
        search_dir = str(first if first.is_dir() else first.parent)

    resolver = ConfigResolver(kwargs, config, preset, search_dir)

    quiet = resolver.get("quiet", False)
    verbose = resolver.get("verbose", False)
    no_color = resolver.get("no_color", False)
    dry_run = resolver.get("dry_run", False)

    reporter = ProgressReporter(quiet=quiet, verbose=verbose, use_colors=not no_color)

    inputs = list(inputs) or list(resolver.get("inputs", []) or [])
    if not inputs:
        ctx = click.get_current_context()
        click.echo(ctx.get_help())
        ctx.exit(2)

    timezone_name = resolver.get("timezone", "UTC")
    file_pattern = resolver.get("file_pattern", "Toggl_time_entries_*.csv")
    top_n = resolver.get("top_n", 3)
    slice_types = resolver.get("slice_types")
    memory_limit = resolver.get("memory_limit")
    database = resolver.get("database")
    profile = resolver.get("profile", False)
    output_dir = output or resolver.get("output", "public")

    try:
        paths = resolve_inputs(inputs, file_pattern)
        descriptors = resolve_slice_types(slice_types)
        load_timezone(timezone_name)
    except (FileNotFoundError, ValueError) as e:
        reporter.error(str(e))
        sys.exit(1)

    if dry_run:
        reporter.info("DRY RUN MODE - No data will be processed")
        reporter.info(f"Timezone: {timezone_name}")
        reporter.info(f"Top buckets per time type: {top_n}")
        if memory_limit:
            reporter.info(f"Memory limit: {memory_limit} MB")
        reporter.info("\nInput files:")
        for path in paths:
            reporter.info(f"  ✓ {path}")
        reporter.info("\nSlice types:")
        for descriptor in descriptors:
            reporter.info(f"  ✓ {descriptor.name} ({descriptor.statistic.value})")
        reporter.info(f"\nOutput: {os.path.join(output_dir, 'data.json')}")
        return

    os.makedirs(output_dir, exist_ok=True)
    profile_path = os.path.join(output_dir, "profile_stats.prof") if profile else None

    try:
        with ProfilingContext(enabled=profile, output_path=profile_path):
            pipeline = TimeLogPipeline(
                timezone_name=timezone_name,
                reporter=reporter,
                slice_types=slice_types,
                top_n=top_n,
                memory_limit_mb=memory_limit,
            )
            document = pipeline.run(paths, database=database)

            data_path = write_document(document, os.path.join(output_dir, "data.json"))
            generate_manifest(output_dir, pipeline, data_path)

            if pipeline.errors:
                with open(
                    os.path.join(output_dir, "hourglass_errors.txt"),
                    "w",
                    encoding="utf-8",
                ) as f:
                    f.write("\n".join(pipeline.errors))
                reporter.warning("Errors logged to hourglass_errors.txt")

        reporter.summary(
            {
                "Files read": pipeline.metrics.files_read,
                "Entries": f"{pipeline.metrics.entries_ingested:,}",
                "Hour rows": f"{pipeline.metrics.hour_rows:,}",
                "Slice types": len(pipeline.slice_types),
                "Orphaned slices": pipeline.metrics.orphaned_slices,
                "Output": data_path,
            }
        )
        reporter.success(f"Pipeline complete! Document saved to: {data_path}")

    except Exception as e:
        reporter.error(f"Pipeline failed: {str(e)}")
        if verbose:
            import traceback

            traceback.print_exc()
        sys.exit(1)


@main.command("inspect")
@click.argument("data_json", type=click.Path(dir_okay=False))
@click.option(
    "--slice-type",
    default="hourCount",
    type=click.Choice(list(SLICE_TYPES)),
    help="Slice type to chart",
)
@click.option(
    "--section",
    default="type",
    type=click.Choice(["type", "group", "project"]),
    help="Series source: tags, project+description, or projects",
)
@click.option("--year", help="Year for year-scoped slice types (YYYY)")
@click.option("--month", help="Month for month-scoped slice types (MM)")
@click.option("--day", help="Day of week for day-scoped slice types (0=Sunday)")
@click.option("--count-type", type=click.Choice(COUNT_TYPES), help="Complex count field")
@click.option("--no-color", is_flag=True, default=False, help="Disable colored output")
def inspect(data_json, slice_type, section, year, month, day, count_type, no_color):
    """Show the winning series per bucket for one slice type of DATA_JSON."""
    reporter = ProgressReporter(use_colors=not no_color)

    try:
        with open(data_json, "r", encoding="utf-8") as f:
            document = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        reporter.warning(f"Missing data: could not read {data_json} ({e})")
        return

    missing = missing_sections(document)
    if missing:
        reporter.warning(f"Missing data: {', '.join(missing)}")
        return

    source = {"type": "byType", "group": "byGroup", "project": "byProject"}[section]
    data = document[source]["all"]

    try:
        series = make_histogram_data(
            slice_type,
            data,
            kind=section,
            year=year,
            month=month,
            day=day,
            count_type=count_type,
        )
    except ValueError as e:
        reporter.error(str(e))
        sys.exit(2)

    descriptor = SLICE_TYPES[slice_type]
    keys = list(series[0].hist) if series else []
    winners = select_max_series(series, keys)
    formatter = AXIS_FORMATTERS[descriptor.leaf]

    click.echo(f"{slice_type} by {section}")
    for key in keys:
        leaders = [f"{s.name}={s.hist[key]}" for s in winners if s.hist[key]]
        click.echo(f"  {formatter(key):>10}  {', '.join(leaders) or '-'}")


if __name__ == "__main__":
    main()
