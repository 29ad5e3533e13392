# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests",
#   "pandas",
#   "openpyxl",
#   "matplotlib",
#   "playwright",
# ]
# ///
"""Lighthouse Trend CLI Tool.

Repeatedly audits a single page (component) with Lighthouse, appends every
sample to a per-component Excel history, and renders trend charts with the
averages of each metric set.
"""

from __future__ import annotations

import argparse
import json
import os
import re
import subprocess
import sys
import tempfile
import threading
import time
import tomllib
import zipfile
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Protocol
from urllib.parse import quote, urlparse

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import pandas as pd
import requests
from openpyxl.utils import get_column_letter
from openpyxl.utils.exceptions import InvalidFileException

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"
PAGESPEED_TIMEOUT = 120

VALID_ENGINES = ("lighthouse", "pagespeed")
VALID_STRATEGIES = ("mobile", "desktop")

DEFAULT_ITERATIONS = 5
DEFAULT_INTERVAL_MS = 180_000
DEFAULT_METRIC_SET = "general"
DEFAULT_OUTPUT_DIR = "./reports"
DEFAULT_ENGINE = "lighthouse"
DEFAULT_STRATEGY = "mobile"
DEFAULT_DEBUGGING_PORT = 9222
DEFAULT_LIGHTHOUSE_BIN = "lighthouse"
DEFAULT_COOKIE_NAME = "VtexIdclientAutCookie"

CONFIG_FILENAMES = ["lighthouse-trend.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "lighthouse-trend",
]

# Lighthouse categories: (category_id, snapshot_field)
CATEGORY_METRICS = [
    ("performance", "performance"),
    ("accessibility", "accessibility"),
    ("best-practices", "best_practices"),
    ("seo", "seo"),
]

# Lighthouse audits parsed from their displayValue: (audit_id, snapshot_field)
TIMING_METRICS = [
    ("first-contentful-paint", "first_contentful_paint"),
    ("largest-contentful-paint", "largest_contentful_paint"),
    ("speed-index", "speed_index"),
    ("total-blocking-time", "total_blocking_time"),
    ("cumulative-layout-shift", "cumulative_layout_shift"),
]

AUDIT_CATEGORIES = [category_id for category_id, _ in CATEGORY_METRICS]
CATEGORY_FIELD_NAMES = [field_name for _, field_name in CATEGORY_METRICS]
TIMING_AUDIT_IDS = {field_name: audit_id for audit_id, field_name in TIMING_METRICS}

HISTORY_COLUMNS = [
    "timestamp",
    *CATEGORY_FIELD_NAMES,
    *(field_name for _, field_name in TIMING_METRICS),
]

# Headers written by the first generation of the report workbook.
LEGACY_HEADER_MAP = {
    "Timestamp": "timestamp",
    "Performance": "performance",
    "Accessibility": "accessibility",
    "Best Practices": "best_practices",
    "SEO": "seo",
}

HISTORY_SHEET_NAME = "Lighthouse Report"
HISTORY_COLUMN_WIDTH = 20
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

CHART_SIZE = (10, 6)
CHART_DPI = 120


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class LighthouseTrendError(Exception):
    """Base class for every failure surfaced by the tool."""


class ConfigurationError(LighthouseTrendError):
    """Raised when the workflow configuration is incomplete or invalid."""


class AuditProviderError(LighthouseTrendError):
    """Raised when the audit engine fails to produce a result."""


class MalformedAuditError(LighthouseTrendError):
    """Raised when an audit result lacks an expected category or audit."""


class UnparseableDurationError(LighthouseTrendError):
    """Raised when a display value cannot be converted to milliseconds."""


class UnknownMetricSetError(LighthouseTrendError):
    """Raised when a metric set name is not registered."""


class EmptyHistoryError(LighthouseTrendError):
    """Raised when there are no rows to average or chart."""


class HistoryStoreError(LighthouseTrendError):
    """Raised when an existing history workbook cannot be read."""


# ---------------------------------------------------------------------------
# Data Model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricSnapshot:
    """One normalized, timestamped Lighthouse sample."""

    timestamp: str
    performance: float | None
    accessibility: float | None
    best_practices: float | None
    seo: float | None
    first_contentful_paint: float | None = None
    largest_contentful_paint: float | None = None
    speed_index: float | None = None
    total_blocking_time: float | None = None
    cumulative_layout_shift: float | None = None


@dataclass(frozen=True)
class MetricField:
    name: str
    label: str
    color: str
    unit: str
    extract: Callable[[MetricSnapshot], float | None]


@dataclass(frozen=True)
class MetricSetConfig:
    """A named group of fields that are charted and averaged together."""

    name: str
    title: str
    fields: tuple[MetricField, ...]
    formatter: Callable[[tuple[MetricField, ...], dict[str, float]], str]

    @property
    def field_names(self) -> list[str]:
        return [metric_field.name for metric_field in self.fields]

    def averages_label(self, averages: dict[str, float]) -> str:
        return self.formatter(self.fields, averages)


@dataclass(frozen=True)
class WorkflowConfig:
    """Everything one sampling run needs, passed in explicitly."""

    url: str
    component: str
    auth_cookie: str | None = None
    iterations: int = DEFAULT_ITERATIONS
    interval_ms: int = DEFAULT_INTERVAL_MS
    metric_set: str = DEFAULT_METRIC_SET

    def __post_init__(self):
        if not self.url:
            raise ConfigurationError("a target URL is required (argument, config 'url' or URL env var)")
        if not self.component or not self.component.strip():
            raise ConfigurationError("a component name is required (--component, config or COMPONENT env var)")
        if self.iterations < 1:
            raise ConfigurationError(f"iterations must be at least 1, got {self.iterations}")
        if self.interval_ms < 0:
            raise ConfigurationError(f"interval must not be negative, got {self.interval_ms} ms")
        get_metric_set(self.metric_set)


@dataclass
class WorkflowResult:
    snapshots: list[MetricSnapshot] = field(default_factory=list)
    charts: list[Path] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Metric Sets
# ---------------------------------------------------------------------------


def format_score_averages(fields: tuple[MetricField, ...], averages: dict[str, float]) -> str:
    """Subtitle for 0-100 category scores, e.g. 'Avg Performance: 85.00/100'."""
    return " | ".join(f"Avg {f.label}: {averages[f.name]:.2f}/100" for f in fields)


def format_timing_averages(fields: tuple[MetricField, ...], averages: dict[str, float]) -> str:
    """Subtitle for timings, with units where the field has one."""
    parts = []
    for metric_field in fields:
        suffix = f" {metric_field.unit}" if metric_field.unit else ""
        parts.append(f"Avg {metric_field.label}: {averages[metric_field.name]:.2f}{suffix}")
    return " | ".join(parts)


def _accessor(name: str) -> Callable[[MetricSnapshot], float | None]:
    def extract(snapshot: MetricSnapshot) -> float | None:
        return getattr(snapshot, name)

    extract.__name__ = f"extract_{name}"
    return extract


GENERAL_METRIC_SET = MetricSetConfig(
    name="general",
    title="Lighthouse Category Scores",
    fields=(
        MetricField("performance", "Performance", "#4bc0c0", "", _accessor("performance")),
        MetricField("accessibility", "Accessibility", "#003333", "", _accessor("accessibility")),
        MetricField("best_practices", "Best Practices", "#99cc00", "", _accessor("best_practices")),
        MetricField("seo", "SEO", "#330000", "", _accessor("seo")),
    ),
    formatter=format_score_averages,
)

PERFORMANCE_METRIC_SET = MetricSetConfig(
    name="performance",
    title="Lighthouse Performance Timings",
    fields=(
        MetricField("first_contentful_paint", "FCP", "#ff6384", "ms", _accessor("first_contentful_paint")),
        MetricField("largest_contentful_paint", "LCP", "#36a2eb", "ms", _accessor("largest_contentful_paint")),
        MetricField("speed_index", "Speed Index", "#ffce56", "ms", _accessor("speed_index")),
        MetricField("total_blocking_time", "TBT", "#9966ff", "ms", _accessor("total_blocking_time")),
        MetricField("cumulative_layout_shift", "CLS", "#ff9f40", "", _accessor("cumulative_layout_shift")),
    ),
    formatter=format_timing_averages,
)

METRIC_SETS: dict[str, MetricSetConfig] = {}


def register_metric_set(metric_set: MetricSetConfig) -> MetricSetConfig:
    """Add a metric set to the registry. Every field must be a history column."""
    unknown = [name for name in metric_set.field_names if name not in HISTORY_COLUMNS]
    if unknown:
        raise ValueError(f"metric set '{metric_set.name}' references unknown fields: {', '.join(unknown)}")
    METRIC_SETS[metric_set.name] = metric_set
    return metric_set


register_metric_set(GENERAL_METRIC_SET)
register_metric_set(PERFORMANCE_METRIC_SET)


def get_metric_set(name: str) -> MetricSetConfig:
    try:
        return METRIC_SETS[name]
    except KeyError:
        available = ", ".join(METRIC_SETS) or "(none)"
        raise UnknownMetricSetError(f"unknown metric set '{name}'. Available: {available}") from None


def covered_metric_sets(metric_set_name: str) -> list[str]:
    """Metric sets whose fields are all stored when sampling with metric_set_name.

    Category scores are always stored, so 'general' is covered by every run.
    """
    stored = set(CATEGORY_FIELD_NAMES) | set(get_metric_set(metric_set_name).field_names)
    return [name for name, config in METRIC_SETS.items() if set(config.field_names) <= stored]


# ---------------------------------------------------------------------------
# Config & Profile
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Find the first existing config file in search paths."""
    for search_dir in CONFIG_SEARCH_PATHS:
        for filename in CONFIG_FILENAMES:
            candidate = search_dir / filename
            if candidate.is_file():
                return candidate
    return None


def load_config(config_path: Path | None) -> dict:
    """Parse a TOML config file and return its contents as a dict."""
    if config_path is None:
        return {}
    try:
        with open(config_path, "rb") as fh:
            return tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        print(f"Error: malformed config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)
    except OSError as exc:
        print(f"Error: cannot read config file {config_path}: {exc}", file=sys.stderr)
        sys.exit(1)


def apply_profile(args: argparse.Namespace, config: dict, profile_name: str | None) -> argparse.Namespace:
    """Merge config [settings] and optional profile into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags / positional arguments
      2. Profile values
      3. [settings] defaults from config
      4. Environment variables (URL, COMPONENT, VTEX_ID_CLIENT_AUT_COOKIE, PAGESPEED_API_KEY)
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

    # Map config keys to argparse dest names
    config_key_map = {
        "auth_cookie": "auth_cookie",
        "cookie_name": "cookie_name",
        "iterations": "iterations",
        "interval_ms": "interval_ms",
        "metric_set": "metric_set",
        "output_dir": "output_dir",
        "engine": "engine",
        "api_key": "api_key",
        "strategy": "strategy",
        "lighthouse_bin": "lighthouse_bin",
        "debugging_port": "debugging_port",
        "verbose": "verbose",
    }

    cli_explicit = set(getattr(args, "_explicit_args", []))

    for config_key, arg_dest in config_key_map.items():
        if arg_dest in cli_explicit:
            continue  # CLI flag takes priority
        if config_key in profile:
            setattr(args, arg_dest, profile[config_key])
        elif config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    # Positional targets only fall back when left empty on the command line
    for config_key, env_var in (("url", "URL"), ("component", "COMPONENT")):
        if getattr(args, config_key, None):
            continue
        value = profile.get(config_key) or settings.get(config_key) or os.environ.get(env_var)
        setattr(args, config_key, value)

    env_fallbacks = {
        "auth_cookie": "VTEX_ID_CLIENT_AUT_COOKIE",
        "api_key": "PAGESPEED_API_KEY",
    }
    for arg_dest, env_var in env_fallbacks.items():
        if not getattr(args, arg_dest, None):
            env_value = os.environ.get(env_var)
            if env_value:
                setattr(args, arg_dest, env_value)

    return args


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        explicit = getattr(namespace, "_explicit_args", [])
        explicit.append(self.dest)
        namespace._explicit_args = explicit


def _add_engine_arguments(subparser: argparse.ArgumentParser) -> None:
    subparser.add_argument("--component", dest="component", action=TrackingAction, default=None, help="Component name the history is stored under (or set COMPONENT env var)")
    subparser.add_argument("--auth-cookie", dest="auth_cookie", action=TrackingAction, default=None, help="Authentication cookie value (or set VTEX_ID_CLIENT_AUT_COOKIE env var)")
    subparser.add_argument("--cookie-name", dest="cookie_name", action=TrackingAction, default=DEFAULT_COOKIE_NAME, help=f"Authentication cookie name (default: {DEFAULT_COOKIE_NAME})")
    subparser.add_argument("--engine", dest="engine", action=TrackingAction, default=DEFAULT_ENGINE, choices=VALID_ENGINES, help="Audit engine: local lighthouse CLI or PageSpeed Insights API")
    subparser.add_argument("--api-key", dest="api_key", action=TrackingAction, default=None, help="PageSpeed API key (or set PAGESPEED_API_KEY env var)")
    subparser.add_argument("-s", "--strategy", dest="strategy", action=TrackingAction, default=DEFAULT_STRATEGY, choices=VALID_STRATEGIES, help="PageSpeed strategy: mobile or desktop")
    subparser.add_argument("--lighthouse-bin", dest="lighthouse_bin", action=TrackingAction, default=DEFAULT_LIGHTHOUSE_BIN, help="Path to the lighthouse executable")
    subparser.add_argument("--debugging-port", dest="debugging_port", action=TrackingAction, type=int, default=DEFAULT_DEBUGGING_PORT, help=f"Chromium remote debugging port (default: {DEFAULT_DEBUGGING_PORT})")
    subparser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory for history workbooks and charts")
    subparser.add_argument("--no-report", dest="no_report", action=TrackingStoreTrueAction, default=False, help="Skip chart generation (history only)")


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="lighthouse-trend",
        description="Lighthouse Trend CLI Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-p", "--profile", dest="profile", action=TrackingAction, default=None, help="Named profile from config file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose output to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- run ---
    run_parser = subparsers.add_parser("run", help="Sample a page repeatedly, append to history, and chart the trend")
    run_parser.add_argument("url", nargs="?", default=None, help="URL to audit (or set URL env var)")
    run_parser.add_argument("-n", "--iterations", dest="iterations", action=TrackingAction, type=int, default=DEFAULT_ITERATIONS, help=f"Number of audits (default: {DEFAULT_ITERATIONS})")
    run_parser.add_argument("-i", "--interval-ms", dest="interval_ms", action=TrackingAction, type=int, default=DEFAULT_INTERVAL_MS, help=f"Milliseconds to wait after each audit (default: {DEFAULT_INTERVAL_MS})")
    run_parser.add_argument("-m", "--metric-set", dest="metric_set", action=TrackingAction, default=DEFAULT_METRIC_SET, choices=sorted(METRIC_SETS), help="Metric set to collect and chart")
    _add_engine_arguments(run_parser)

    # --- quick-check ---
    quick_check_parser = subparsers.add_parser("quick-check", help="Single audit with the general metric set, no waiting")
    quick_check_parser.add_argument("url", nargs="?", default=None, help="URL to audit (or set URL env var)")
    _add_engine_arguments(quick_check_parser)

    # --- report ---
    report_parser = subparsers.add_parser("report", help="Render trend charts from stored history")
    report_parser.add_argument("component", nargs="?", default=None, help="Component name (or set COMPONENT env var)")
    report_parser.add_argument("-m", "--metric-set", dest="metric_set", action=TrackingAction, default="all", choices=["all", *sorted(METRIC_SETS)], help="Metric set to chart (default: all)")
    report_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory holding history workbooks and charts")

    # --- summary ---
    summary_parser = subparsers.add_parser("summary", help="Print stored row count and averages per metric set")
    summary_parser.add_argument("component", nargs="?", default=None, help="Component name (or set COMPONENT env var)")
    summary_parser.add_argument("--output-dir", dest="output_dir", action=TrackingAction, default=DEFAULT_OUTPUT_DIR, help="Directory holding history workbooks")

    return parser


# ---------------------------------------------------------------------------
# URL & Component Handling
# ---------------------------------------------------------------------------


def validate_url(url: str) -> str | None:
    """Validate and normalize a URL. Returns the URL or None if invalid."""
    url = url.strip()
    if not url or url.startswith("#"):
        return None

    # Add scheme if missing
    if not url.startswith(("http://", "https://")):
        url = "https://" + url

    parsed = urlparse(url)
    if not parsed.netloc or "." not in parsed.netloc:
        return None
    return url


def safe_component_name(component: str) -> str:
    """Percent-encode a component identifier for use in file names.

    The mapping is one-to-one, so distinct components never share a workbook
    or chart: 'checkout page' -> 'checkout%20page', 'cart/step' -> 'cart%2Fstep'.
    """
    if not component or not component.strip():
        raise ConfigurationError("component name must not be blank")
    return quote(component, safe="")


# ---------------------------------------------------------------------------
# Page Sessions
# ---------------------------------------------------------------------------


class SessionProvider(Protocol):
    def open_session(self, url: str, auth_cookie: str | None): ...

    def close_session(self, session) -> None: ...


@dataclass
class PageSession:
    playwright: object
    context: object
    page: object
    profile_dir: tempfile.TemporaryDirectory


class PlaywrightSessionProvider:
    """Headless Chromium with the auth cookie set, reachable over remote debugging.

    A persistent context is used so the cookie lives in the browser's default
    context, which is where Lighthouse opens its own tab.
    """

    def __init__(self, debugging_port: int = DEFAULT_DEBUGGING_PORT, cookie_name: str = DEFAULT_COOKIE_NAME, headless: bool = True):
        self.debugging_port = debugging_port
        self.cookie_name = cookie_name
        self.headless = headless

    def open_session(self, url: str, auth_cookie: str | None) -> PageSession:
        from playwright.sync_api import sync_playwright

        profile_dir = tempfile.TemporaryDirectory(prefix="lighthouse-trend-")
        playwright = sync_playwright().start()
        try:
            context = playwright.chromium.launch_persistent_context(
                profile_dir.name,
                headless=self.headless,
                args=[f"--remote-debugging-port={self.debugging_port}"],
            )
            if auth_cookie:
                context.add_cookies([{
                    "name": self.cookie_name,
                    "value": auth_cookie,
                    "domain": urlparse(url).hostname,
                    "path": "/",
                }])
            page = context.pages[0] if context.pages else context.new_page()
            page.goto(url, wait_until="domcontentloaded")
        except BaseException:
            playwright.stop()
            profile_dir.cleanup()
            raise
        return PageSession(playwright=playwright, context=context, page=page, profile_dir=profile_dir)

    def close_session(self, session: PageSession) -> None:
        try:
            session.context.close()
        finally:
            session.playwright.stop()
            session.profile_dir.cleanup()


class NullSessionProvider:
    """For remote engines that never touch a local browser."""

    def open_session(self, url: str, auth_cookie: str | None) -> None:
        return None

    def close_session(self, session) -> None:
        return None


# ---------------------------------------------------------------------------
# Audit Providers
# ---------------------------------------------------------------------------


class AuditProvider(Protocol):
    def audit(self, url: str, metric_set: str) -> dict: ...


class LighthouseCliAuditProvider:
    """Runs the lighthouse CLI against the Chromium started by the session."""

    def __init__(self, debugging_port: int = DEFAULT_DEBUGGING_PORT, lighthouse_bin: str = DEFAULT_LIGHTHOUSE_BIN):
        self.debugging_port = debugging_port
        self.lighthouse_bin = lighthouse_bin

    def build_command(self, url: str) -> list[str]:
        return [
            self.lighthouse_bin,
            url,
            f"--port={self.debugging_port}",
            "--output=json",
            "--output-path=stdout",
            "--quiet",
            f"--only-categories={','.join(AUDIT_CATEGORIES)}",
        ]

    def audit(self, url: str, metric_set: str) -> dict:
        """Return the Lighthouse result (lhr) for url.

        All categories are always requested; metric_set only decides which
        audits are parsed later.
        """
        cmd = self.build_command(url)
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as exc:
            raise AuditProviderError(f"cannot start {self.lighthouse_bin}: {exc}") from exc

        if proc.returncode != 0:
            detail = (proc.stderr or "").strip()[-200:]
            raise AuditProviderError(f"lighthouse exited with code {proc.returncode} for {url}: {detail}")

        try:
            return json.loads(proc.stdout)
        except json.JSONDecodeError as exc:
            raise MalformedAuditError(f"lighthouse output for {url} is not valid JSON: {exc}") from exc


class PageSpeedAuditProvider:
    """Audits through the PageSpeed Insights v5 API. Failed requests are not retried."""

    def __init__(self, api_key: str | None = None, strategy: str = DEFAULT_STRATEGY):
        self.api_key = api_key
        self.strategy = strategy

    def audit(self, url: str, metric_set: str) -> dict:
        # requests supports list values for repeated query params
        params: dict[str, str | list[str]] = {
            "url": url,
            "strategy": self.strategy,
            "category": list(AUDIT_CATEGORIES),
        }
        if self.api_key:
            params["key"] = self.api_key

        try:
            response = requests.get(PAGESPEED_API_URL, params=params, timeout=PAGESPEED_TIMEOUT)
        except requests.RequestException as exc:
            raise AuditProviderError(f"PageSpeed request failed for {url}: {exc}") from exc

        if response.status_code != 200:
            try:
                error_body = response.json()
                error_detail = error_body.get("error", {}).get("message", response.text[:200])
            except (ValueError, KeyError, AttributeError):
                error_detail = response.text[:200]
            raise AuditProviderError(f"HTTP {response.status_code} for {url} ({self.strategy}): {error_detail}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedAuditError(f"PageSpeed response for {url} is not valid JSON") from exc

        lighthouse = payload.get("lighthouseResult") if isinstance(payload, dict) else None
        if not isinstance(lighthouse, dict):
            raise MalformedAuditError(f"PageSpeed response for {url} has no lighthouseResult")
        return lighthouse


def build_providers(args: argparse.Namespace) -> tuple[SessionProvider, AuditProvider]:
    """Pick the session and audit providers for the configured engine."""
    engine = getattr(args, "engine", DEFAULT_ENGINE)
    port = int(getattr(args, "debugging_port", DEFAULT_DEBUGGING_PORT))
    if engine == "pagespeed":
        return NullSessionProvider(), PageSpeedAuditProvider(
            api_key=getattr(args, "api_key", None),
            strategy=getattr(args, "strategy", DEFAULT_STRATEGY),
        )
    if engine == "lighthouse":
        return (
            PlaywrightSessionProvider(port, getattr(args, "cookie_name", DEFAULT_COOKIE_NAME)),
            LighthouseCliAuditProvider(port, getattr(args, "lighthouse_bin", DEFAULT_LIGHTHOUSE_BIN)),
        )
    raise ConfigurationError(f"unknown audit engine '{engine}'. Available: {', '.join(VALID_ENGINES)}")


# ---------------------------------------------------------------------------
# Metrics Extraction
# ---------------------------------------------------------------------------

_THOUSANDS_COMMA = re.compile(r",(?=\d{3}(?:\D|$))")
_DECIMAL_NUMBER = re.compile(r"[+-]?\d+(?:\.\d+)?")


def _normalize_number(text: str) -> str:
    text = _THOUSANDS_COMMA.sub("", text)
    return text.replace(",", ".")


def parse_duration(text: str) -> float:
    """Convert a Lighthouse display value into milliseconds.

    '1,234 ms' -> 1234.0, '12,5ms' -> 12.5, '1.2 s' -> 1200.0, '0.05' -> 0.05.
    """
    if not isinstance(text, str):
        raise UnparseableDurationError(f"duration must be a string, got {type(text).__name__}")

    cleaned = text.replace("\u00a0", " ").strip()
    multiplier = 1.0
    if cleaned.endswith("ms"):
        number = cleaned[:-2]
    elif cleaned.endswith("s"):
        number = cleaned[:-1]
        multiplier = 1000.0
    else:
        number = cleaned
    number = _normalize_number(number.strip())

    # float() alone would also take 'nan', 'inf' and '1_000'
    if not _DECIMAL_NUMBER.fullmatch(number):
        raise UnparseableDurationError(f"cannot parse duration '{text}'")
    return float(number) * multiplier


def _category_score(raw_audit: dict, category_id: str) -> float:
    category = raw_audit.get("categories", {}).get(category_id)
    if not isinstance(category, dict) or "score" not in category:
        raise MalformedAuditError(f"audit result has no '{category_id}' category")
    score = category["score"]
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise MalformedAuditError(f"category '{category_id}' has no numeric score (got {score!r})")
    return round(score * 100, 2)


def _audit_display_value(raw_audit: dict, audit_id: str) -> str:
    audit = raw_audit.get("audits", {}).get(audit_id)
    if not isinstance(audit, dict) or audit.get("displayValue") is None:
        raise MalformedAuditError(f"audit result has no display value for '{audit_id}'")
    return audit["displayValue"]


def build_snapshot(raw_audit: dict, requested_fields, now: datetime | None = None) -> MetricSnapshot:
    """Normalize a Lighthouse result into a MetricSnapshot.

    Category scores are always included. Timing fields are parsed only when
    listed in requested_fields; the rest stay None.
    """
    if not isinstance(raw_audit, dict):
        raise MalformedAuditError(f"audit result must be a JSON object, got {type(raw_audit).__name__}")

    moment = now or datetime.now()
    values: dict[str, object] = {"timestamp": moment.strftime(TIMESTAMP_FORMAT)}

    for category_id, field_name in CATEGORY_METRICS:
        values[field_name] = _category_score(raw_audit, category_id)

    for field_name in requested_fields:
        audit_id = TIMING_AUDIT_IDS.get(field_name)
        if audit_id is None:
            continue
        values[field_name] = parse_duration(_audit_display_value(raw_audit, audit_id))

    return MetricSnapshot(**values)


# ---------------------------------------------------------------------------
# History Store
# ---------------------------------------------------------------------------


def _cell_to_float(value) -> float | None:
    if value is None or pd.isna(value):
        return None
    return float(value)


def _row_to_snapshot(row: dict) -> MetricSnapshot:
    timestamp = row.get("timestamp")
    values: dict[str, object] = {
        "timestamp": "" if timestamp is None or pd.isna(timestamp) else str(timestamp),
    }
    for column in HISTORY_COLUMNS[1:]:
        try:
            values[column] = _cell_to_float(row.get(column))
        except (TypeError, ValueError) as exc:
            raise HistoryStoreError(f"non-numeric value {row.get(column)!r} in column '{column}'") from exc
    return MetricSnapshot(**values)


class HistoryStore:
    """Append-only Excel history, one workbook per component.

    Each append rewrites the workbook to a temporary file beside it and swaps
    it in with os.replace, so readers never see a half-written file. Appends
    to the same component are serialized within the process; separate
    processes writing one component must be serialized by the caller.
    """

    def __init__(self, output_dir: str | Path = DEFAULT_OUTPUT_DIR, verbose: bool = False):
        self.output_dir = Path(output_dir)
        self.verbose = verbose
        self._locks: dict[Path, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def table_path(self, component: str) -> Path:
        return self.output_dir / f"lighthouse-report-{safe_component_name(component)}.xlsx"

    def _lock_for(self, path: Path) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(path, threading.Lock())

    def _read_frame(self, path: Path) -> pd.DataFrame:
        try:
            frame = pd.read_excel(path, sheet_name=HISTORY_SHEET_NAME, engine="openpyxl")
        except (ValueError, OSError, KeyError, zipfile.BadZipFile, InvalidFileException) as exc:
            raise HistoryStoreError(f"cannot read history workbook {path}: {exc}") from exc
        frame = frame.rename(columns=LEGACY_HEADER_MAP)
        return frame.reindex(columns=HISTORY_COLUMNS)

    def read_all(self, component: str) -> list[MetricSnapshot]:
        """Return every stored snapshot in append order ([] if there is no workbook)."""
        path = self.table_path(component)
        if not path.is_file():
            return []
        frame = self._read_frame(path)
        return [_row_to_snapshot(row) for row in frame.to_dict("records")]

    def append(self, component: str, snapshot: MetricSnapshot) -> Path:
        """Append one row for component and return the workbook path."""
        path = self.table_path(component)
        with self._lock_for(path):
            records = self._read_frame(path).to_dict("records") if path.is_file() else []
            records.append(asdict(snapshot))
            self._write_atomic(pd.DataFrame(records, columns=HISTORY_COLUMNS), path)
        if self.verbose:
            print(f"  Appended row {len(records)} to {path}", file=sys.stderr)
        return path

    def _write_atomic(self, frame: pd.DataFrame, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}-", suffix=".xlsx", dir=path.parent)
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            with pd.ExcelWriter(tmp_path, engine="openpyxl") as writer:
                frame.to_excel(writer, sheet_name=HISTORY_SHEET_NAME, index=False)
                worksheet = writer.sheets[HISTORY_SHEET_NAME]
                for column_index in range(1, len(HISTORY_COLUMNS) + 1):
                    worksheet.column_dimensions[get_column_letter(column_index)].width = HISTORY_COLUMN_WIDTH
            with open(tmp_path, "rb") as handle:
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise


# ---------------------------------------------------------------------------
# Trend Reporting
# ---------------------------------------------------------------------------


def eligible_rows(history: list[MetricSnapshot], metric_set: MetricSetConfig) -> list[MetricSnapshot]:
    """Rows carrying every field of metric_set. Others are left out of averages and charts."""
    return [
        snapshot for snapshot in history
        if all(metric_field.extract(snapshot) is not None for metric_field in metric_set.fields)
    ]


def compute_averages(history: list[MetricSnapshot], metric_set: MetricSetConfig) -> dict[str, float]:
    """Arithmetic mean of each field of metric_set, rounded to 2 decimals."""
    rows = eligible_rows(history, metric_set)
    if not rows:
        raise EmptyHistoryError(f"no rows with '{metric_set.name}' metrics to average")

    frame = pd.DataFrame(
        {metric_field.name: [metric_field.extract(row) for row in rows] for metric_field in metric_set.fields},
        dtype=float,
    )
    means = frame.mean()
    return {name: round(float(means[name]), 2) for name in metric_set.field_names}


def render_trend_chart(
    history: list[MetricSnapshot],
    metric_set: MetricSetConfig,
    averages: dict[str, float],
    output_path: Path,
    component: str,
) -> Path:
    """Draw one line per field over the history timestamps and save it as PNG."""
    positions = list(range(len(history)))
    labels = [snapshot.timestamp for snapshot in history]

    fig, ax = plt.subplots(figsize=CHART_SIZE, dpi=CHART_DPI)
    for metric_field in metric_set.fields:
        values = [metric_field.extract(snapshot) for snapshot in history]
        ax.plot(positions, values, label=metric_field.label, color=metric_field.color, marker="o", linewidth=2)

    # One tick per row, duplicates included
    ax.set_xticks(positions)
    ax.set_xticklabels(labels, rotation=45, ha="right", fontsize=8)
    ax.grid(alpha=0.35)
    ax.legend(loc="best")
    fig.suptitle(f"{metric_set.title} - {component}", fontsize=14, weight="bold")
    ax.set_title(metric_set.averages_label(averages), fontsize=9)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(output_path, dpi=CHART_DPI, bbox_inches="tight")
    plt.close(fig)
    return output_path


class TrendReporter:
    def __init__(self, store: HistoryStore, output_dir: str | Path | None = None):
        self.store = store
        self.output_dir = Path(output_dir) if output_dir is not None else store.output_dir

    def chart_path(self, component: str, metric_set_name: str) -> Path:
        return self.output_dir / f"{safe_component_name(component)}-{metric_set_name}.png"

    def render(self, component: str, metric_set_name: str) -> Path:
        """Chart the full history of component for one metric set."""
        metric_set = get_metric_set(metric_set_name)
        history = self.store.read_all(component)
        if not history:
            raise EmptyHistoryError(f"no history recorded for component '{component}'")

        rows = eligible_rows(history, metric_set)
        averages = compute_averages(rows, metric_set)
        output_path = render_trend_chart(rows, metric_set, averages, self.chart_path(component, metric_set_name), component)
        print(f"Chart written to: {output_path}", file=sys.stderr)
        return output_path


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


class SamplingOrchestrator:
    """Runs the timed audit loop for one component.

    Any failure ends the run; iterations already appended stay in the history.
    """

    def __init__(
        self,
        config: WorkflowConfig,
        session_provider: SessionProvider,
        audit_provider: AuditProvider,
        store: HistoryStore,
        reporter: TrendReporter | None = None,
        sleep: Callable[[float], None] | None = None,
        verbose: bool = False,
    ):
        self.config = config
        self.session_provider = session_provider
        self.audit_provider = audit_provider
        self.store = store
        self.reporter = reporter
        self.sleep = sleep or time.sleep
        self.verbose = verbose

    def sample(self) -> list[MetricSnapshot]:
        """Audit config.iterations times, appending each snapshot to the store."""
        metric_set = get_metric_set(self.config.metric_set)
        total = self.config.iterations
        wait_seconds = self.config.interval_ms / 1000
        snapshots: list[MetricSnapshot] = []

        for iteration in range(1, total + 1):
            print(f"  Audit {iteration}/{total} of {self.config.url} ({metric_set.name})...", file=sys.stderr)
            raw_audit = self.audit_provider.audit(self.config.url, metric_set.name)
            snapshot = build_snapshot(raw_audit, metric_set.field_names)
            self.store.append(self.config.component, snapshot)
            snapshots.append(snapshot)

            if self.verbose:
                print(f"  {format_snapshot_line(snapshot, metric_set)}", file=sys.stderr)
                print(f"  Waiting {wait_seconds:g}s...", file=sys.stderr)
            self.sleep(wait_seconds)

        return snapshots

    def run(self) -> WorkflowResult:
        """Open one session, sample, chart, and always release the session."""
        result = WorkflowResult()
        session = self.session_provider.open_session(self.config.url, self.config.auth_cookie)
        try:
            result.snapshots = self.sample()
            if self.reporter is not None:
                for metric_set_name in covered_metric_sets(self.config.metric_set):
                    result.charts.append(self.reporter.render(self.config.component, metric_set_name))
        finally:
            self.session_provider.close_session(session)
        return result


# ---------------------------------------------------------------------------
# Terminal Output
# ---------------------------------------------------------------------------


def format_snapshot_line(snapshot: MetricSnapshot, metric_set: MetricSetConfig) -> str:
    parts = [snapshot.timestamp]
    for metric_field in metric_set.fields:
        value = metric_field.extract(snapshot)
        parts.append(f"{metric_field.label}={value:g}" if value is not None else f"{metric_field.label}=-")
    return "  ".join(parts)


def format_summary_table(component: str, history: list[MetricSnapshot]) -> str:
    """Format row count and per-metric-set averages as an aligned terminal table."""
    lines = [
        f"\n{'=' * 60}",
        f"  Component: {component}",
        f"  Rows:      {len(history)}",
    ]
    if history:
        lines.append(f"  Range:     {history[0].timestamp} .. {history[-1].timestamp}")
    lines.append(f"{'=' * 60}")

    for name, metric_set in METRIC_SETS.items():
        lines.append(f"  --- {metric_set.title} ({name}) ---")
        try:
            averages = compute_averages(history, metric_set)
        except EmptyHistoryError:
            lines.append("    no data")
            continue
        for metric_field in metric_set.fields:
            suffix = f" {metric_field.unit}" if metric_field.unit else ""
            lines.append(f"    {metric_field.label:.<34} {averages[metric_field.name]:.2f}{suffix}")

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Subcommand: run
# ---------------------------------------------------------------------------


def _resolve_url(args: argparse.Namespace) -> str:
    if not getattr(args, "url", None):
        raise ConfigurationError("a target URL is required (argument, config 'url' or URL env var)")
    url = validate_url(args.url)
    if not url:
        raise ConfigurationError(f"invalid URL: {args.url}")
    return url


def _resolve_component(args: argparse.Namespace) -> str:
    component = getattr(args, "component", None)
    if not component:
        raise ConfigurationError("a component name is required (argument, --component, config or COMPONENT env var)")
    return component


def _execute_workflow(args: argparse.Namespace, config: WorkflowConfig) -> WorkflowResult:
    verbose = getattr(args, "verbose", False)
    session_provider, audit_provider = build_providers(args)
    store = HistoryStore(getattr(args, "output_dir", DEFAULT_OUTPUT_DIR), verbose=verbose)
    reporter = None if getattr(args, "no_report", False) else TrendReporter(store)

    orchestrator = SamplingOrchestrator(
        config,
        session_provider,
        audit_provider,
        store,
        reporter=reporter,
        verbose=verbose,
    )
    print(
        f"Sampling {config.url} as '{config.component}': {config.iterations} audit(s), "
        f"{config.interval_ms} ms apart, metric set '{config.metric_set}'",
        file=sys.stderr,
    )
    result = orchestrator.run()
    print(f"History: {store.table_path(config.component)} (+{len(result.snapshots)} rows)", file=sys.stderr)
    return result


def cmd_run(args: argparse.Namespace) -> None:
    """Sample a page repeatedly, append to history, and chart the trend."""
    config = WorkflowConfig(
        url=_resolve_url(args),
        component=_resolve_component(args),
        auth_cookie=getattr(args, "auth_cookie", None),
        iterations=int(args.iterations),
        interval_ms=int(args.interval_ms),
        metric_set=args.metric_set,
    )
    _execute_workflow(args, config)


# ---------------------------------------------------------------------------
# Subcommand: quick-check
# ---------------------------------------------------------------------------


def cmd_quick_check(args: argparse.Namespace) -> None:
    """Single general audit with no wait: the degenerate case of run."""
    config = WorkflowConfig(
        url=_resolve_url(args),
        component=_resolve_component(args),
        auth_cookie=getattr(args, "auth_cookie", None),
        iterations=1,
        interval_ms=0,
        metric_set=DEFAULT_METRIC_SET,
    )
    result = _execute_workflow(args, config)
    for snapshot in result.snapshots:
        print(format_snapshot_line(snapshot, GENERAL_METRIC_SET))


# ---------------------------------------------------------------------------
# Subcommand: report
# ---------------------------------------------------------------------------


def cmd_report(args: argparse.Namespace) -> None:
    """Render trend charts from the stored history of a component."""
    component = _resolve_component(args)
    store = HistoryStore(getattr(args, "output_dir", DEFAULT_OUTPUT_DIR))
    reporter = TrendReporter(store)

    metric_set_name = getattr(args, "metric_set", "all")
    if metric_set_name != "all":
        reporter.render(component, metric_set_name)
        return

    history = store.read_all(component)
    if not history:
        raise EmptyHistoryError(f"no history recorded for component '{component}'")
    for name, metric_set in METRIC_SETS.items():
        if eligible_rows(history, metric_set):
            reporter.render(component, name)
        else:
            print(f"Skipping '{name}': no rows carry its metrics", file=sys.stderr)


# ---------------------------------------------------------------------------
# Subcommand: summary
# ---------------------------------------------------------------------------


def cmd_summary(args: argparse.Namespace) -> None:
    """Print stored row count and averages per metric set."""
    component = _resolve_component(args)
    store = HistoryStore(getattr(args, "output_dir", DEFAULT_OUTPUT_DIR))
    print(format_summary_table(component, store.read_all(component)))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    # Load config
    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)

    # Apply profile and config defaults
    profile_name = getattr(args, "profile", None)
    args = apply_profile(args, config, profile_name)

    # Dispatch to subcommand
    commands = {
        "run": cmd_run,
        "quick-check": cmd_quick_check,
        "report": cmd_report,
        "summary": cmd_summary,
    }

    handler = commands.get(args.command)
    if not handler:
        parser.print_help()
        sys.exit(1)

    try:
        handler(args)
    except LighthouseTrendError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
