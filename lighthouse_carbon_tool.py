# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pandas",
# ]
# ///
"""Lighthouse Carbon Report CLI Tool.

Reads a directory of Lighthouse JSON reports, estimates the carbon
footprint of every audited page from its transferred bytes, and writes a
static HTML site grouped by host (global index, per-host index, per-page
detail).
"""

from __future__ import annotations

import argparse
import html
import json
import math
import os
import re
import sys
import time
import tomllib
import traceback
import webbrowser
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

import pandas as pd

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TOOL_DIR = Path(__file__).resolve().parent

DEFAULT_MONTHLY_VIEWS = 10000
DEFAULT_OUTPUT_DIR = "./carbon-reports-by-host"
DEFAULT_TEMPLATE_DIR = TOOL_DIR / "templates"
VALID_EXPORT_FORMATS = ("csv", "json", "both")

REPORT_EXTENSION = ".json"
INPUT_DIR_CANDIDATES = [
    Path(".lighthouseci"),
    Path(".lighthouseci") / "lh-reports",
    Path("lh-reports"),
]

UNKNOWN_URL = "unknown-url"
UNKNOWN_HOST = "unknown-host"
NOT_AVAILABLE = "n/a"

MAX_FILENAME_LENGTH = 180
KG_CO2_PER_TREE_YEAR = 21

# Sustainable Web Design model, v3 constants
KWH_PER_GB = 0.81
BYTES_PER_GB = 1000 * 1000 * 1000
GLOBAL_GRID_INTENSITY = 442  # gCO2e per kWh
RENEWABLES_GRID_INTENSITY = 50
ENERGY_SHARES = {
    "data_center": 0.15,
    "network": 0.14,
    "consumer_device": 0.52,
    "production": 0.19,
}

CONFIG_FILENAMES = ["carbon-report.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "carbon-report",
]
MONTHLY_VIEWS_ENV_VAR = "CARBON_MONTHLY_VIEWS"

# Placeholders each template may use: {{NAME}}
TEMPLATE_FIELDS = {
    "detail.html": frozenset({
        "TITLE", "HOSTNAME", "URL", "GENERATED_AT", "TRANSFER_KB", "TRANSFER_MB",
        "PERF", "CO2_PER_VISIT", "CO2_PER_MONTH", "CO2_PER_YEAR", "TREES_PER_YEAR",
        "MONTHLY_VIEWS", "RATING_CLASS", "RATING_TEXT", "LHR_EXCERPT",
    }),
    "host-index.html": frozenset({
        "HOSTNAME", "GENERATED_AT", "MONTHLY_VIEWS", "TOTAL_URLS", "AVG_CO2",
        "AVG_PERF", "TOTAL_YEARLY_CO2", "ROWS",
    }),
    "host-row.html": frozenset({
        "DETAIL_FILE", "URL", "TRANSFER_MB", "PERF", "CO2_PER_VISIT", "CO2_PER_MONTH",
        "TREES_PER_YEAR", "RATING_CLASS", "RATING_TEXT", "RATING_TEXT_PLAIN",
    }),
    "top-index.html": frozenset({
        "MONTHLY_VIEWS", "GENERATED_AT", "HOSTS",
    }),
}

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+?)\}\}")
PROTOCOL_PATTERN = re.compile(r"(^\w+:|^)//", re.ASCII)
URL_DELIMITER_PATTERN = re.compile(r"[:?#]")
UNSAFE_FILENAME_PATTERN = re.compile(r"[^\w.-]", re.ASCII)

# Where a URL may live in a report, most specific first.
URL_PATHS = [
    ("requestedUrl",),
    ("finalUrl",),
    ("lhr", "finalUrl"),
    ("lhr", "requestedUrl"),
    ("lighthouseResult", "requestedUrl"),
    ("lighthouseResult", "finalUrl"),
    ("finalDisplayedUrl",),
]
# Plain LHR, LHCI wrapper, PageSpeed Insights API envelope
REPORT_ROOTS = [(), ("lhr",), ("lighthouseResult",)]
EXCERPT_KEYS = ("categories", "audits", "lhr", "lighthouseResult")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class CarbonReportError(Exception):
    """Base class for errors that abort a report run."""


class NoDataFoundError(CarbonReportError):
    """Raised when none of the candidate input directories exist."""


class NoValidReportsError(CarbonReportError):
    """Raised when the input directory holds no parseable report."""


class TemplateError(CarbonReportError):
    """Raised when a template file is missing or uses unknown placeholders."""


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Rating:
    label: str
    label_plain: str
    css_class: str


EXCELLENT = Rating("🟢 Excellent", "Excellent", "rating-green")
GOOD = Rating("🟡 Good", "Good", "rating-yellow")
FAIR = Rating("🟠 Fair", "Fair", "rating-orange")
POOR = Rating("🔴 Poor", "Poor", "rating-red")

# (exclusive upper bound in gCO2 per visit, rating)
RATING_THRESHOLDS = [
    (0.5, EXCELLENT),
    (1.0, GOOD),
    (2.0, FAIR),
]


@dataclass(frozen=True)
class AuditReport:
    """One Lighthouse run, normalized to the fields the pipeline reads."""

    url: str
    transfer_bytes: float = 0
    performance_score: float | None = None  # 0..1, None when not reported
    excerpt_json: str = "{}"
    source_path: Path | None = None


@dataclass(frozen=True)
class PageMetrics:
    """Carbon and performance figures for a single page."""

    transfer_bytes: float
    performance_fraction: float | None
    co2_grams: float
    monthly_kg: float
    yearly_kg: float
    trees_per_year: float
    rating: Rating

    @property
    def transfer_kb(self) -> float:
        return self.transfer_bytes / 1024

    @property
    def transfer_mb(self) -> float:
        return self.transfer_bytes / 1024 / 1024

    @property
    def performance_score(self) -> int | None:
        if self.performance_fraction is None:
            return None
        return round_half_up(self.performance_fraction * 100)

    def display_values(self) -> dict[str, str]:
        """Template-ready strings with the fixed display precision."""
        return {
            "TRANSFER_KB": f"{self.transfer_kb:.2f}",
            "TRANSFER_MB": f"{self.transfer_mb:.2f}",
            "PERF": format_score(self.performance_score),
            "CO2_PER_VISIT": f"{self.co2_grams:.6f}",
            "CO2_PER_MONTH": f"{self.monthly_kg:.3f}",
            "CO2_PER_YEAR": f"{self.yearly_kg:.2f}",
            "TREES_PER_YEAR": f"{self.trees_per_year:.2f}",
            "RATING_CLASS": self.rating.css_class,
            "RATING_TEXT": self.rating.label,
            "RATING_TEXT_PLAIN": self.rating.label_plain,
        }


@dataclass(frozen=True)
class HostSummary:
    hostname: str
    total_urls: int
    avg_co2: float
    avg_performance: int | None
    total_yearly_kg: float


@dataclass
class HostStats:
    """Running totals for one host, fed page by page."""

    total_co2: float = 0.0
    total_performance: float = 0.0
    performance_count: int = 0
    count: int = 0

    def add_page(self, metrics: PageMetrics) -> None:
        self.total_co2 += metrics.co2_grams
        self.count += 1
        if metrics.performance_fraction is not None:
            self.total_performance += metrics.performance_fraction * 100
            self.performance_count += 1

    def finalize(self, hostname: str, monthly_views: float) -> HostSummary:
        """Compute averages once every page of the host has been added."""
        avg_co2 = self.total_co2 / self.count if self.count > 0 else 0.0
        avg_performance = None
        if self.performance_count > 0:
            avg_performance = round_half_up(self.total_performance / self.performance_count)
        return HostSummary(
            hostname=hostname,
            total_urls=self.count,
            avg_co2=avg_co2,
            avg_performance=avg_performance,
            total_yearly_kg=self.total_co2 * monthly_views * 12 / 1000,
        )


@dataclass
class RunSummary:
    output_root: Path
    index_path: Path
    hosts: list[HostSummary]
    pages: pd.DataFrame
    generated_at: str

    @property
    def page_count(self) -> int:
        return len(self.pages)


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Return the first carbon-report.toml found in the cwd or ~/.config/carbon-report."""
    candidates = (directory / name for directory in CONFIG_SEARCH_PATHS for name in CONFIG_FILENAMES)
    return next((path for path in candidates if path.is_file()), None)


def load_config(config_path: Path | None) -> dict:
    """Read the [settings] and [profiles] tables of a carbon-report config.

    No path means no config. An unreadable or malformed file ends the run
    with exit status 1.
    """
    if config_path is None:
        return {}
    try:
        raw = config_path.read_bytes()
    except OSError as exc:
        print(f"Error: cannot read config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    try:
        return tomllib.loads(raw.decode("utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as exc:
        print(f"Error: malformed config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags and the positional monthly views
      2. Profile values
      3. [settings] defaults from config
      4. CARBON_MONTHLY_VIEWS environment variable (monthly views only)
      5. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    profile = {}
    if profile_name:
        profiles = config.get("profiles", {})
        if profile_name not in profiles:
            available = ", ".join(profiles.keys()) if profiles else "(none)"
            print(
                f"Error: profile '{profile_name}' not found in config. Available: {available}",
                file=sys.stderr,
            )
            sys.exit(1)
        profile = profiles[profile_name]

    config_key_map = {
        "monthly_views": "monthly_views",
        "input_dir": "input_dir",
        "output_dir": "output_dir",
        "template_dir": "template_dir",
        "export_format": "export_format",
        "verbose": "verbose",
        "open_browser": "open_browser",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))
    if getattr(args, "monthly_views", None) is not None:
        cli_explicit.add("monthly_views")

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    if getattr(args, "monthly_views", None) is None:
        env_views = os.environ.get(MONTHLY_VIEWS_ENV_VAR)
        if env_views:
            args.monthly_views = env_views

    return args


def resolve_monthly_views(value: object) -> int | float:
    """Parse a monthly view count, falling back to the default silently.

    Anything that is not a finite number greater than zero yields
    DEFAULT_MONTHLY_VIEWS. Whole numbers come back as int so they render
    without a decimal part.
    """
    if value is None or isinstance(value, bool):
        return DEFAULT_MONTHLY_VIEWS
    try:
        views = float(value)
    except (TypeError, ValueError):
        return DEFAULT_MONTHLY_VIEWS
    if not math.isfinite(views) or views <= 0:
        return DEFAULT_MONTHLY_VIEWS
    return int(views) if views.is_integer() else views


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


def _mark_explicit(namespace: argparse.Namespace, dest: str) -> None:
    namespace._explicit_args = [*getattr(namespace, "_explicit_args", []), dest]


class TrackingAction(argparse.Action):
    """Store the value and note the dest so config files cannot override it."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        _mark_explicit(namespace, self.dest)


class TrackingStoreTrueAction(argparse.Action):
    """Boolean switch (--verbose, --open) that also notes it was given on the command line."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        _mark_explicit(namespace, self.dest)


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="carbon-report",
        description="Generate per-host carbon footprint reports from Lighthouse JSON results",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("monthly_views", nargs="?", default=None, help=f"Assumed monthly page views (default: {DEFAULT_MONTHLY_VIEWS})")
    parser.add_argument("-i", "--input-dir", dest="input_dir", action=TrackingAction, default=None, help="Directory of Lighthouse JSON reports (default: first of .lighthouseci, .lighthouseci/lh-reports, lh-reports)")
    parser.add_argument("-o", "--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Root directory for the generated HTML reports")
    parser.add_argument("--template-dir", dest="template_dir", action=TrackingAction, default=str(DEFAULT_TEMPLATE_DIR), help="Directory holding the four HTML templates")
    parser.add_argument("--export", dest="export_format", action=TrackingAction, default=None, choices=VALID_EXPORT_FORMATS, help="Also write per-page metrics as csv, json, or both")
    parser.add_argument("--open", dest="open_browser", action=TrackingStoreTrueAction, default=False, help="Open the top-level index in a browser when done")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose output to stderr")
    return parser


# ---------------------------------------------------------------------------
# Report Loading
# ---------------------------------------------------------------------------


def default_input_candidates(base_dir: Path = TOOL_DIR, cwd: Path | None = None) -> list[Path]:
    """Candidate report directories, next to the tool first, then in cwd."""
    cwd = cwd or Path.cwd()
    return [base_dir / candidate for candidate in INPUT_DIR_CANDIDATES] + [
        cwd / ".lighthouseci",
        cwd / "lh-reports",
    ]


def find_input_dir(candidates: Iterable[Path]) -> Path:
    """Return the first candidate directory that exists."""
    candidates = list(candidates)
    for candidate in candidates:
        if candidate.is_dir():
            return candidate
    looked_in = "\n".join(f"   - {candidate}" for candidate in candidates)
    raise NoDataFoundError(f"no Lighthouse CI data found. Looked in:\n{looked_in}")


def _dig(data: object, *keys: str) -> object:
    """Walk nested dicts, returning None at the first missing level."""
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _is_number(value: object) -> bool:
    """True for a finite int or float that fits in a float (bools excluded)."""
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    try:
        return math.isfinite(float(value))
    except OverflowError:
        return False


def normalize_report(raw: dict, source_path: Path | None = None) -> AuditReport:
    """Collapse the nesting variants of a Lighthouse report into one record.

    Each field falls back independently: the URL to "unknown-url", the
    transferred bytes to 0 and the performance score to None. A score of
    exactly 0 is kept as an observed score.
    """
    url = UNKNOWN_URL
    for path in URL_PATHS:
        candidate = _dig(raw, *path)
        if isinstance(candidate, str) and candidate:
            url = candidate
            break

    transfer_bytes = 0
    for root in REPORT_ROOTS:
        value = _dig(raw, *root, "audits", "total-byte-weight", "numericValue")
        if _is_number(value) and value >= 0:
            transfer_bytes = value
            break

    performance_score = None
    for root in REPORT_ROOTS:
        value = _dig(raw, *root, "categories", "performance", "score")
        if _is_number(value) and 0 <= value <= 1:
            performance_score = float(value)
            break

    excerpt = next((raw[key] for key in EXCERPT_KEYS if raw.get(key)), {})
    return AuditReport(
        url=url,
        transfer_bytes=transfer_bytes,
        performance_score=performance_score,
        excerpt_json=json.dumps(excerpt, indent=2, ensure_ascii=False),
        source_path=source_path,
    )


def load_audit_reports(input_dir: Path, verbose: bool = False) -> list[AuditReport]:
    """Parse every report file in input_dir (non-recursive, sorted by name).

    Files that fail to parse are skipped with a warning. Raises
    NoValidReportsError when nothing usable is left.
    """
    report_paths = sorted(
        path for path in input_dir.iterdir()
        if path.is_file() and path.name.endswith(REPORT_EXTENSION)
    )

    reports: list[AuditReport] = []
    for report_path in report_paths:
        try:
            with open(report_path, encoding="utf-8") as fh:
                raw = json.load(fh)
        except (OSError, ValueError) as exc:
            print(f"Warning: failed to parse {report_path}: {exc}", file=sys.stderr)
            continue
        if not isinstance(raw, dict):
            print(f"Warning: failed to parse {report_path}: not a JSON object", file=sys.stderr)
            continue
        if verbose:
            print(f"  Loaded {report_path.name}", file=sys.stderr)
        reports.append(normalize_report(raw, report_path))

    if not reports:
        raise NoValidReportsError(f"no valid Lighthouse reports found in: {input_dir}")
    return reports


# ---------------------------------------------------------------------------
# Host Grouping
# ---------------------------------------------------------------------------


def hostname_for_url(url: str) -> str:
    """Extract the hostname of url, or "unknown-host" if there is none."""
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return UNKNOWN_HOST
    return hostname or UNKNOWN_HOST


def group_by_host(reports: Iterable[AuditReport]) -> dict[str, list[tuple[str, AuditReport]]]:
    """Group reports by hostname, keeping discovery order within each host."""
    by_host: dict[str, list[tuple[str, AuditReport]]] = {}
    for report in reports:
        hostname = hostname_for_url(report.url)
        by_host.setdefault(hostname, []).append((report.url, report))
    return by_host


# ---------------------------------------------------------------------------
# Emissions & Rating
# ---------------------------------------------------------------------------


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves going up."""
    return math.floor(value + 0.5)


def estimate_co2_per_visit(transfer_bytes: float, green_hosting: bool = False) -> float:
    """Estimate grams of CO2e emitted by transferring transfer_bytes once.

    Sustainable Web Design model: the energy for the transfer is split
    across data centre, network, consumer device and production, and every
    share is multiplied by the global grid intensity. Green hosting only
    changes the intensity of the data centre share.
    """
    if transfer_bytes < 1:
        return 0.0
    energy_kwh = transfer_bytes / BYTES_PER_GB * KWH_PER_GB
    co2_grams = 0.0
    for component, share in ENERGY_SHARES.items():
        intensity = GLOBAL_GRID_INTENSITY
        if green_hosting and component == "data_center":
            intensity = RENEWABLES_GRID_INTENSITY
        co2_grams += energy_kwh * share * intensity
    return co2_grams


def classify_rating(co2_grams: float) -> Rating:
    """Map grams of CO2 per visit to a rating; boundaries go to the worse tier."""
    for upper_bound, rating in RATING_THRESHOLDS:
        if co2_grams < upper_bound:
            return rating
    return POOR


def compute_page_metrics(
    report: AuditReport,
    monthly_views: float,
    estimator: Callable[[float], float] = estimate_co2_per_visit,
) -> PageMetrics:
    """Project per-visit emissions of one page onto monthly and yearly figures."""
    co2_grams = estimator(report.transfer_bytes)
    yearly_kg = co2_grams * monthly_views * 12 / 1000
    return PageMetrics(
        transfer_bytes=report.transfer_bytes,
        performance_fraction=report.performance_score,
        co2_grams=co2_grams,
        monthly_kg=co2_grams * monthly_views / 1000,
        yearly_kg=yearly_kg,
        trees_per_year=yearly_kg / KG_CO2_PER_TREE_YEAR,
        rating=classify_rating(co2_grams),
    )


def format_score(score: int | None) -> str:
    return NOT_AVAILABLE if score is None else str(score)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def escape_html(value: object) -> str:
    """Escape &, <, > and double quotes for insertion into HTML."""
    text = "" if value is None else str(value)
    return html.escape(text, quote=False).replace('"', "&quot;")


def load_templates(template_dir: Path) -> dict[str, str]:
    """Read the four report templates, validating their placeholders."""
    templates: dict[str, str] = {}
    for name, allowed in TEMPLATE_FIELDS.items():
        template_path = Path(template_dir) / name
        if not template_path.is_file():
            raise TemplateError(f"template not found: {template_path}")
        text = template_path.read_text(encoding="utf-8")
        unknown = set(PLACEHOLDER_PATTERN.findall(text)) - allowed
        if unknown:
            raise TemplateError(
                f"template {template_path} uses unknown placeholder(s): {', '.join(sorted(unknown))}"
            )
        templates[name] = text
    return templates


def render_template(name: str, template: str, fields: Mapping[str, object]) -> str:
    """Substitute {{NAME}} tokens; absent or None values render as ""."""
    unknown = set(fields) - TEMPLATE_FIELDS[name]
    if unknown:
        raise ValueError(f"unknown field(s) for {name}: {', '.join(sorted(unknown))}")

    def substitute(match: re.Match) -> str:
        value = fields.get(match.group(1))
        return "" if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(substitute, template)


# ---------------------------------------------------------------------------
# Output Paths
# ---------------------------------------------------------------------------


def sanitize_filename(value: object) -> str:
    """Turn a URL or hostname into a filesystem-safe name (max 180 chars)."""
    text = str(value or "")
    text = PROTOCOL_PATTERN.sub("", text, count=1)
    text = URL_DELIMITER_PATTERN.sub("", text)
    text = UNSAFE_FILENAME_PATTERN.sub("-", text)
    return text[:MAX_FILENAME_LENGTH]


def host_directory_name(hostname: str, taken: set[str]) -> str:
    """Pick the output directory name for hostname, unique among taken.

    Names that sanitize to nothing, "." or ".." use "unknown-host". Two hosts
    that sanitize to the same name get -2, -3, ... suffixes in the order they
    are written. The chosen name is added to taken.
    """
    base = sanitize_filename(hostname)
    if base in ("", ".", ".."):
        base = UNKNOWN_HOST
    name = base
    suffix = 2
    while name in taken or name == "index.html":
        name = f"{base}-{suffix}"
        suffix += 1
    taken.add(name)
    return name


def detail_filename(url: str, taken: set[str]) -> str:
    """Pick the detail page filename for url, unique among taken.

    Repeated names get -2, -3, ... suffixes in discovery order. The chosen
    name is added to taken.
    """
    base = sanitize_filename(url) or f"report-{int(time.time() * 1000)}"
    filename = f"{base}.html"
    suffix = 2
    while filename in taken or filename == "index.html":
        filename = f"{base}-{suffix}.html"
        suffix += 1
    taken.add(filename)
    return filename


# ---------------------------------------------------------------------------
# Report Generation
# ---------------------------------------------------------------------------


def _write_host_reports(
    hostname: str,
    pages: list[tuple[str, AuditReport]],
    host_dir: Path,
    templates: dict[str, str],
    monthly_views: float,
    estimator: Callable[[float], float],
    generated_at: str,
    verbose: bool = False,
) -> tuple[HostSummary, list[dict]]:
    """Write the detail pages and index of one host."""
    host_dir.mkdir(parents=True, exist_ok=True)
    stats = HostStats()
    rows_html: list[str] = []
    page_rows: list[dict] = []
    taken: set[str] = set()

    for url, report in pages:
        metrics = compute_page_metrics(report, monthly_views, estimator)
        stats.add_page(metrics)
        display = metrics.display_values()
        detail_file = detail_filename(url, taken)
        safe_url = escape_html(url)

        detail_html = render_template("detail.html", templates["detail.html"], {
            "TITLE": f"Carbon + Lighthouse Report - {safe_url}",
            "HOSTNAME": escape_html(hostname),
            "URL": safe_url,
            "GENERATED_AT": generated_at,
            "TRANSFER_KB": display["TRANSFER_KB"],
            "TRANSFER_MB": display["TRANSFER_MB"],
            "PERF": display["PERF"],
            "CO2_PER_VISIT": display["CO2_PER_VISIT"],
            "CO2_PER_MONTH": display["CO2_PER_MONTH"],
            "CO2_PER_YEAR": display["CO2_PER_YEAR"],
            "TREES_PER_YEAR": display["TREES_PER_YEAR"],
            "MONTHLY_VIEWS": monthly_views,
            "RATING_CLASS": display["RATING_CLASS"],
            "RATING_TEXT": display["RATING_TEXT"],
            "LHR_EXCERPT": escape_html(report.excerpt_json),
        })
        (host_dir / detail_file).write_text(detail_html, encoding="utf-8")
        if verbose:
            print(f"  {url} -> {detail_file} ({display['CO2_PER_VISIT']} g/visit)", file=sys.stderr)

        rows_html.append(render_template("host-row.html", templates["host-row.html"], {
            "DETAIL_FILE": detail_file,
            "URL": safe_url,
            "TRANSFER_MB": display["TRANSFER_MB"],
            "PERF": display["PERF"],
            "CO2_PER_VISIT": display["CO2_PER_VISIT"],
            "CO2_PER_MONTH": display["CO2_PER_MONTH"],
            "TREES_PER_YEAR": display["TREES_PER_YEAR"],
            "RATING_CLASS": display["RATING_CLASS"],
            "RATING_TEXT": display["RATING_TEXT"],
            "RATING_TEXT_PLAIN": display["RATING_TEXT_PLAIN"],
        }))

        page_rows.append({
            "host": hostname,
            "url": url,
            "detail_file": f"{host_dir.name}/{detail_file}",
            "transfer_bytes": metrics.transfer_bytes,
            "performance_score": metrics.performance_score,
            "co2_grams_per_visit": metrics.co2_grams,
            "co2_monthly_kg": metrics.monthly_kg,
            "co2_yearly_kg": metrics.yearly_kg,
            "trees_per_year": metrics.trees_per_year,
            "rating": metrics.rating.label_plain,
        })

    summary = stats.finalize(hostname, monthly_views)
    host_index_html = render_template("host-index.html", templates["host-index.html"], {
        "HOSTNAME": escape_html(hostname),
        "GENERATED_AT": generated_at,
        "MONTHLY_VIEWS": monthly_views,
        "TOTAL_URLS": summary.total_urls,
        "AVG_CO2": f"{summary.avg_co2:.4f}",
        "AVG_PERF": format_score(summary.avg_performance),
        "TOTAL_YEARLY_CO2": f"{summary.total_yearly_kg:.2f}",
        "ROWS": "\n".join(rows_html),
    })
    (host_dir / "index.html").write_text(host_index_html, encoding="utf-8")
    return summary, page_rows


def generate_carbon_reports(
    input_dir: Path,
    output_root: Path,
    template_dir: Path = DEFAULT_TEMPLATE_DIR,
    monthly_views: float = DEFAULT_MONTHLY_VIEWS,
    estimator: Callable[[float], float] = estimate_co2_per_visit,
    generated_at: str | None = None,
    verbose: bool = False,
) -> RunSummary:
    """Load reports from input_dir and write the host-grouped HTML site.

    Hosts are written in sorted order, pages within a host in discovery
    order. Templates are validated before anything is written.
    """
    input_dir = Path(input_dir)
    output_root = Path(output_root)
    reports = load_audit_reports(input_dir, verbose=verbose)
    templates = load_templates(Path(template_dir))
    by_host = group_by_host(reports)
    if generated_at is None:
        generated_at = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")

    output_root.mkdir(parents=True, exist_ok=True)
    host_items: list[str] = []
    host_summaries: list[HostSummary] = []
    page_rows: list[dict] = []
    taken_dirs: set[str] = set()

    for hostname in sorted(by_host):
        pages = by_host[hostname]
        host_dir = output_root / host_directory_name(hostname, taken_dirs)
        summary, rows = _write_host_reports(
            hostname, pages, host_dir, templates, monthly_views, estimator, generated_at, verbose,
        )
        host_summaries.append(summary)
        page_rows.extend(rows)
        host_items.append(
            f'<li><a href="./{host_dir.name}/index.html">{escape_html(hostname)}</a>'
            f" &mdash; {len(pages)} URL(s)</li>"
        )
        print(f"Wrote {len(pages)} report(s) for host: {hostname} -> {host_dir}", file=sys.stderr)

    index_path = output_root / "index.html"
    top_index_html = render_template("top-index.html", templates["top-index.html"], {
        "MONTHLY_VIEWS": monthly_views,
        "GENERATED_AT": generated_at,
        "HOSTS": "\n".join(host_items),
    })
    index_path.write_text(top_index_html, encoding="utf-8")

    return RunSummary(
        output_root=output_root,
        index_path=index_path,
        hosts=host_summaries,
        pages=pd.DataFrame(page_rows),
        generated_at=generated_at,
    )


# ---------------------------------------------------------------------------
# Summary & Data Export
# ---------------------------------------------------------------------------


def _print_host_summary(summary: RunSummary) -> None:
    """Print one line of aggregate figures per host to stderr."""
    if not summary.hosts:
        return
    table = pd.DataFrame([
        {
            "host": host.hostname,
            "urls": host.total_urls,
            "avg_co2_g": f"{host.avg_co2:.4f}",
            "avg_perf": format_score(host.avg_performance),
            "yearly_co2_kg": f"{host.total_yearly_kg:.2f}",
        }
        for host in summary.hosts
    ])
    print("\nSummary:", file=sys.stderr)
    print(table.to_string(index=False), file=sys.stderr)


def output_csv(pages: pd.DataFrame, output_path: Path) -> str:
    """Write the per-page carbon table as carbon-summary.csv, one row per audited URL."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    pages.to_csv(output_path, index=False)
    return str(output_path)


def output_json(dataframe: pd.DataFrame, output_path: Path, monthly_views: float, generated_at: str) -> str:
    """Write the per-page table under a metadata envelope stamped with the run time."""
    output_path.parent.mkdir(parents=True, exist_ok=True)

    results = []
    for record in dataframe.to_dict(orient="records"):
        score = record.get("performance_score")
        record["performance_score"] = None if pd.isna(score) else int(score)
        results.append(record)

    output_data = {
        "metadata": {
            "generated_at": generated_at,
            "tool_version": __version__,
            "monthly_views": monthly_views,
            "total_hosts": int(dataframe["host"].nunique()) if "host" in dataframe.columns else 0,
            "total_urls": len(dataframe),
        },
        "results": results,
    }

    with open(output_path, "w", encoding="utf-8") as fh:
        json.dump(output_data, fh, indent=2, default=str)

    return str(output_path)


def _write_data_files(summary: RunSummary, export_format: str, monthly_views: float) -> list[str]:
    """Write carbon-summary.csv and/or .json into the output root."""
    written_files: list[str] = []
    if export_format in ("csv", "both"):
        written_files.append(output_csv(summary.pages, summary.output_root / "carbon-summary.csv"))
    if export_format in ("json", "both"):
        written_files.append(output_json(summary.pages, summary.output_root / "carbon-summary.json", monthly_views, summary.generated_at))

    print("\nData written to:", file=sys.stderr)
    for filepath in written_files:
        print(f"  {filepath}", file=sys.stderr)
    return written_files


# ---------------------------------------------------------------------------
# Command
# ---------------------------------------------------------------------------


def cmd_generate(args: argparse.Namespace) -> int:
    """Run the whole report pipeline for parsed CLI args. Returns exit code."""
    verbose = getattr(args, "verbose", False)
    monthly_views = resolve_monthly_views(getattr(args, "monthly_views", None))
    export_format = getattr(args, "export_format", None)
    if export_format and export_format not in VALID_EXPORT_FORMATS:
        print(f"Warning: ignoring unknown export format '{export_format}'", file=sys.stderr)
        export_format = None

    try:
        input_dir_arg = getattr(args, "input_dir", None)
        if input_dir_arg:
            candidates = [Path(input_dir_arg)]
        else:
            candidates = default_input_candidates()
        input_dir = find_input_dir(candidates)
        print(f"Found Lighthouse data at: {input_dir}", file=sys.stderr)
        if verbose:
            print(f"  Assuming {monthly_views} monthly views", file=sys.stderr)

        summary = generate_carbon_reports(
            input_dir=input_dir,
            output_root=Path(getattr(args, "output_dir", DEFAULT_OUTPUT_DIR)),
            template_dir=Path(getattr(args, "template_dir", DEFAULT_TEMPLATE_DIR)),
            monthly_views=monthly_views,
            verbose=verbose,
        )
        _print_host_summary(summary)
        if export_format:
            _write_data_files(summary, export_format, monthly_views)
    except CarbonReportError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:
        print(f"Error: report generation failed: {exc}", file=sys.stderr)
        if verbose:
            traceback.print_exc(file=sys.stderr)
        return 1

    print(f"\nAll reports written to: {summary.output_root}", file=sys.stderr)
    print(f"Open {summary.index_path} in your browser.", file=sys.stderr)

    if getattr(args, "open_browser", False):
        webbrowser.open(summary.index_path.resolve().as_uri())
    return 0


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    parser = build_argument_parser()
    args = parser.parse_args()

    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)

    exit_code = cmd_generate(args)
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
