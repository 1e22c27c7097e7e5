# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "requests",
#   "pandas",
#   "google-auth",
#   "python-dotenv",
# ]
# ///
"""Lighthouse Batch Audit Tool.

Runs Lighthouse against a list of URLs under a set of device/network
emulation profiles and appends one flat row per (URL, profile) pair to a
Google Sheet or a CSV file for trend tracking.
"""

from __future__ import annotations

import argparse
import json
import math
import os
import shutil
import socket
import subprocess
import sys
import tempfile
import time
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import quote, urljoin, urlparse

import google.auth
import pandas as pd
import requests
from dotenv import find_dotenv, load_dotenv
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account

__version__ = "0.3.0"

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

VALID_CATEGORIES = ("performance", "accessibility", "best-practices", "seo")
VALID_SINKS = ("sheets", "csv")

DEFAULT_CATEGORIES = list(VALID_CATEGORIES)
DEFAULT_SINK = "sheets"
DEFAULT_SHEET_NAME = "Results"
DEFAULT_SHEET_ANCHOR = "A1"
DEFAULT_CSV_PATH = "./lighthouse-results.csv"
DEFAULT_TIMESTAMP_FORMAT = "%Y-%m-%d"
DEFAULT_AUDIT_TIMEOUT = 180.0
DEFAULT_LIGHTHOUSE_PATH = "lighthouse"

CHROME_STARTUP_TIMEOUT = 30.0
CHROME_SHUTDOWN_TIMEOUT = 5.0
CHROME_CANDIDATES = (
    "google-chrome",
    "google-chrome-stable",
    "chromium",
    "chromium-browser",
    "chrome",
)
DEFAULT_CHROME_FLAGS = [
    "--headless=new",
    "--disable-gpu",
    "--no-first-run",
    "--no-default-browser-check",
    "--disable-extensions",
]

SHEETS_APPEND_URL = "https://sheets.googleapis.com/v4/spreadsheets/{spreadsheet_id}/values/{range}:append"
SHEETS_SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]
SHEETS_TIMEOUT = 60

CONFIG_FILENAMES = ["lighthouse-batch.toml"]
CONFIG_SEARCH_PATHS = [
    Path.cwd(),
    Path.home() / ".config" / "lighthouse-batch",
]

EMPTY = ""

# Fixed column order shared by success and error rows.
ROW_COLUMNS = [
    "timestamp",
    "domain",
    "url",
    "profile",
    "site_version",
    "fcp_s",
    "lcp_s",
    "tbt_s",
    "cls",
    "speed_index_s",
    "performance_score",
    "accessibility_score",
    "best_practices_score",
    "seo_score",
    "error",
]

# Timing audits: (audit_id, output_column_name), values reported in ms
TIMING_AUDITS = [
    ("first-contentful-paint", "fcp_s"),
    ("largest-contentful-paint", "lcp_s"),
    ("total-blocking-time", "tbt_s"),
    ("speed-index", "speed_index_s"),
]

CLS_AUDIT = "cumulative-layout-shift"

# Category scores: (category_id, output_column_name)
CATEGORY_SCORES = [
    ("performance", "performance_score"),
    ("accessibility", "accessibility_score"),
    ("best-practices", "best_practices_score"),
    ("seo", "seo_score"),
]

# Lighthouse's stock mobile (Moto G Power, slow 4G) and desktop presets.
DEFAULT_PROFILES = {
    "Mobile": {
        "formFactor": "mobile",
        "throttlingMethod": "simulate",
        "screenEmulation": {
            "mobile": True,
            "width": 412,
            "height": 823,
            "deviceScaleFactor": 1.75,
            "disabled": False,
        },
        "throttling": {
            "rttMs": 150,
            "throughputKbps": 1638.4,
            "requestLatencyMs": 562.5,
            "downloadThroughputKbps": 1474.56,
            "uploadThroughputKbps": 675,
            "cpuSlowdownMultiplier": 4,
        },
        "emulatedUserAgent": (
            "Mozilla/5.0 (Linux; Android 11; moto g power (2022)) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/131.0.0.0 Mobile Safari/537.36"
        ),
    },
    "Desktop": {
        "formFactor": "desktop",
        "throttlingMethod": "simulate",
        "screenEmulation": {
            "mobile": False,
            "width": 1350,
            "height": 940,
            "deviceScaleFactor": 1,
            "disabled": False,
        },
        "throttling": {
            "rttMs": 40,
            "throughputKbps": 10240,
            "requestLatencyMs": 0,
            "downloadThroughputKbps": 0,
            "uploadThroughputKbps": 0,
            "cpuSlowdownMultiplier": 1,
        },
        "emulatedUserAgent": (
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
        ),
    },
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class AuditError(Exception):
    """Raised when a Lighthouse invocation fails."""


class BrowserLaunchError(AuditError):
    """Raised when Chrome cannot be started or never exposes its debugging port."""


class SinkError(Exception):
    """Raised when a batch of rows cannot be delivered to the sink."""


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Profile:
    """A named emulation profile; settings go to Lighthouse untouched."""

    name: str
    settings: dict = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class AuditFailure:
    """Result of an audit that produced no usable Lighthouse result."""

    message: str


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


def discover_config_path() -> Path | None:
    """Return the first lighthouse-batch.toml found in the search paths."""
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


# Map [settings] keys to argparse dest names
CONFIG_KEY_MAP = {
    "urls_file": "file",
    "base_url": "base_url",
    "enabled_profiles": "profile_names",
    "categories": "categories",
    "sink": "sink",
    "spreadsheet_id": "spreadsheet_id",
    "sheet_name": "sheet_name",
    "credentials_file": "credentials_file",
    "csv_path": "csv_path",
    "chrome_path": "chrome_path",
    "chrome_flags": "chrome_flags",
    "debugging_port": "port",
    "lighthouse_path": "lighthouse_path",
    "audit_timeout": "timeout",
    "timestamp_format": "timestamp_format",
    "verbose": "verbose",
}

# Environment fallbacks: (env var, argparse dest)
ENV_FALLBACKS = [
    ("GOOGLE_SHEETS_ID", "spreadsheet_id"),
    ("GOOGLE_SERVICE_ACCOUNT_FILE", "credentials_file"),
    ("CHROME_PATH", "chrome_path"),
]


def load_environment(dotenv_path: str | Path | None = None) -> bool:
    """Load a .env file into os.environ (default: nearest one above the CWD).

    Variables already set in the environment are not overridden.
    """
    return load_dotenv(dotenv_path or find_dotenv(usecwd=True))


def apply_config(args: argparse.Namespace, config: dict) -> argparse.Namespace:
    """Merge the config [settings] table and environment into args.

    Resolution order (highest priority wins):
      1. Explicit CLI flags
      2. [settings] values from config
      3. Environment variables
      4. Built-in defaults (already in args)
    """
    settings = config.get("settings", {})
    cli_explicit = explicit_dests(args)

    for config_key, arg_dest in CONFIG_KEY_MAP.items():
        if arg_dest in cli_explicit or not hasattr(args, arg_dest):
            continue
        if config_key in settings:
            setattr(args, arg_dest, settings[config_key])

    # Positional URLs are never tracked; only fall back when none were given
    if hasattr(args, "urls") and not args.urls and settings.get("urls"):
        args.urls = list(settings["urls"])

    for env_name, arg_dest in ENV_FALLBACKS:
        if hasattr(args, arg_dest) and not getattr(args, arg_dest):
            env_value = os.environ.get(env_name)
            if env_value:
                setattr(args, arg_dest, env_value)

    return args


# ---------------------------------------------------------------------------
# Profile Registry
# ---------------------------------------------------------------------------


def build_profile_registry(config: dict, selected: list[str] | None = None) -> list[Profile]:
    """Build the ordered list of profiles to audit under.

    [profiles.<Name>] tables in the config replace the built-in Mobile/Desktop
    pair. `selected` narrows the registry to the named profiles, in the order
    given; an unknown name exits with an error.
    """
    configured = config.get("profiles") or DEFAULT_PROFILES
    registry = [Profile(name=name, settings=dict(settings)) for name, settings in configured.items()]

    if not selected:
        return registry

    by_name = {profile.name: profile for profile in registry}
    missing = [name for name in selected if name not in by_name]
    if missing:
        available = ", ".join(by_name) if by_name else "(none)"
        print(
            f"Error: unknown profile(s) {', '.join(missing)}. Available: {available}",
            file=sys.stderr,
        )
        sys.exit(1)
    return [by_name[name] for name in selected]


def describe_profile(profile: Profile) -> str:
    """One-line summary of a profile for the `profiles` listing."""
    settings = profile.settings
    form_factor = settings.get("formFactor", "?")
    throttling = settings.get("throttling") or {}
    parts = [f"{profile.name:<12} formFactor={form_factor}"]
    if "rttMs" in throttling:
        parts.append(f"rtt={throttling['rttMs']}ms")
    if "throughputKbps" in throttling:
        parts.append(f"throughput={throttling['throughputKbps']}Kbps")
    if "cpuSlowdownMultiplier" in throttling:
        parts.append(f"cpu={throttling['cpuSlowdownMultiplier']}x")
    return "  ".join(parts)


# ---------------------------------------------------------------------------
# CLI Argument Parser
# ---------------------------------------------------------------------------


class TrackingAction(argparse.Action):
    """Argparse action that records which flags were explicitly provided."""

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, values)
        _mark_explicit(namespace, self.dest)


class TrackingAppendAction(argparse.Action):
    """Like append, but tracks the dest and starts from an empty list."""

    def __call__(self, parser, namespace, values, option_string=None):
        current = list(getattr(namespace, self.dest) or []) if self.dest in explicit_dests(namespace) else []
        current.append(values)
        setattr(namespace, self.dest, current)
        _mark_explicit(namespace, self.dest)


class TrackingStoreTrueAction(argparse.Action):
    """Like store_true but tracks that the flag was explicitly set."""

    def __init__(self, option_strings, dest, default=False, required=False, help=None):
        super().__init__(option_strings=option_strings, dest=dest, nargs=0, const=True, default=default, required=required, help=help)

    def __call__(self, parser, namespace, values, option_string=None):
        setattr(namespace, self.dest, True)
        _mark_explicit(namespace, self.dest)


EXPLICIT_MARKER = "_explicit_"


def _mark_explicit(namespace: argparse.Namespace, dest: str) -> None:
    # Subparsers copy their namespace over the parent's; one attribute per dest
    setattr(namespace, f"{EXPLICIT_MARKER}{dest}", True)


def explicit_dests(namespace: argparse.Namespace) -> set[str]:
    """Dest names of the flags given explicitly on the command line."""
    return {key[len(EXPLICIT_MARKER):] for key in vars(namespace) if key.startswith(EXPLICIT_MARKER)}


def _add_audit_arguments(subparser: argparse.ArgumentParser) -> None:
    """Flags shared by every subcommand that launches Chrome + Lighthouse."""
    subparser.add_argument("--profile", dest="profile_names", action=TrackingAppendAction, default=None, help="Profile name to audit under (repeatable; default: all)")
    subparser.add_argument("--categories", dest="categories", action=TrackingAction, nargs="+", default=DEFAULT_CATEGORIES, choices=VALID_CATEGORIES, help="Lighthouse categories")
    subparser.add_argument("--chrome-path", dest="chrome_path", action=TrackingAction, default=None, help="Chrome/Chromium binary (or set CHROME_PATH env var)")
    subparser.add_argument("--chrome-flag", dest="chrome_flags", action=TrackingAppendAction, default=[], help="Extra Chrome flag (repeatable)")
    subparser.add_argument("--port", dest="port", action=TrackingAction, type=int, default=0, help="Remote debugging port (0 = pick a free port)")
    subparser.add_argument("--lighthouse-path", dest="lighthouse_path", action=TrackingAction, default=DEFAULT_LIGHTHOUSE_PATH, help="Lighthouse CLI executable")
    subparser.add_argument("--timeout", dest="timeout", action=TrackingAction, type=float, default=DEFAULT_AUDIT_TIMEOUT, help="Seconds before a single Lighthouse run is abandoned")


def build_argument_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="lighthouse-batch",
        description="Lighthouse Batch Audit Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-c", "--config", dest="config", action=TrackingAction, default=None, help="Path to config TOML file")
    parser.add_argument("-v", "--verbose", dest="verbose", action=TrackingStoreTrueAction, default=False, help="Verbose output to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- run ---
    run_parser = subparsers.add_parser("run", help="Audit every URL under every profile and append the rows to the sink")
    run_parser.add_argument("urls", nargs="*", default=[], help="URLs to audit")
    run_parser.add_argument("-f", "--file", dest="file", action=TrackingAction, default=None, help="File with one URL per line")
    run_parser.add_argument("--base-url", dest="base_url", action=TrackingAction, default=None, help="Origin that relative entries (/path) are resolved against")
    run_parser.add_argument("--sink", dest="sink", action=TrackingAction, default=DEFAULT_SINK, choices=VALID_SINKS, help="Where rows are appended: sheets or csv")
    run_parser.add_argument("--spreadsheet-id", dest="spreadsheet_id", action=TrackingAction, default=None, help="Google Sheets id (or set GOOGLE_SHEETS_ID env var)")
    run_parser.add_argument("--sheet-name", dest="sheet_name", action=TrackingAction, default=DEFAULT_SHEET_NAME, help="Sheet/tab the rows are appended to")
    run_parser.add_argument("--credentials", dest="credentials_file", action=TrackingAction, default=None, help="Service account JSON key (or set GOOGLE_SERVICE_ACCOUNT_FILE)")
    run_parser.add_argument("--csv-path", dest="csv_path", action=TrackingAction, default=DEFAULT_CSV_PATH, help="CSV file rows are appended to when --sink csv")
    run_parser.add_argument("--timestamp-format", dest="timestamp_format", action=TrackingAction, default=DEFAULT_TIMESTAMP_FORMAT, help="strftime format of the run timestamp column")
    _add_audit_arguments(run_parser)

    # --- check ---
    check_parser = subparsers.add_parser("check", help="Audit a single URL and print the results")
    check_parser.add_argument("url", help="URL to check")
    _add_audit_arguments(check_parser)

    # --- profiles ---
    subparsers.add_parser("profiles", help="List the configured emulation profiles")

    return parser


# ---------------------------------------------------------------------------
# Target List
# ---------------------------------------------------------------------------


def validate_url(url: str, base_url: str | None = None) -> str | None:
    """Validate and normalize a URL. Returns the URL or None if invalid."""
    url = url.strip()
    if not url or url.startswith("#"):
        return None

    if url.startswith("/"):
        if not base_url:
            return None
        url = urljoin(base_url, url)

    # Add scheme if missing
    if not url.startswith(("http://", "https://")):
        url = "https://" + url

    parsed = urlparse(url)
    if not parsed.netloc or "." not in parsed.netloc:
        return None
    return url


def load_targets(
    url_args: list[str],
    file_path: str | None,
    base_url: str | None = None,
    allow_stdin: bool = True,
) -> list[str]:
    """Load URLs from positional args, file, or stdin.

    Order is preserved and duplicates are kept; invalid entries are skipped
    with a warning. An empty result is returned as-is.
    """
    raw_urls: list[str] = []

    if url_args:
        raw_urls.extend(url_args)
    elif file_path:
        path = Path(file_path)
        if not path.is_file():
            print(f"Error: URL file not found: {file_path}", file=sys.stderr)
            sys.exit(1)
        raw_urls.extend(path.read_text().splitlines())
    elif allow_stdin and not sys.stdin.isatty():
        raw_urls.extend(sys.stdin.read().splitlines())

    targets: list[str] = []
    for raw in raw_urls:
        cleaned = validate_url(raw, base_url)
        if cleaned:
            targets.append(cleaned)
        elif raw.strip() and not raw.strip().startswith("#"):
            print(f"Warning: skipping invalid URL: {raw.strip()}", file=sys.stderr)

    return targets


# ---------------------------------------------------------------------------
# Browser Process Manager
# ---------------------------------------------------------------------------


def find_chrome_binary() -> str | None:
    """Locate a Chrome/Chromium executable on PATH."""
    for candidate in CHROME_CANDIDATES:
        found = shutil.which(candidate)
        if found:
            return found
    return None


def _pick_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _wait_for_debugger(process: subprocess.Popen, port: int, timeout: float) -> None:
    """Poll Chrome's /json/version endpoint until it answers or the deadline passes."""
    version_url = f"http://127.0.0.1:{port}/json/version"
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if process.poll() is not None:
            raise BrowserLaunchError(f"Chrome exited with code {process.returncode} before opening port {port}")
        try:
            response = requests.get(version_url, timeout=1)
            if response.status_code == 200:
                return
        except requests.RequestException:
            pass
        time.sleep(0.25)
    raise BrowserLaunchError(f"Chrome did not open debugging port {port} within {timeout:.0f}s")


class LocalChrome:
    """Launches an isolated headless Chrome per audit and tears it down afterwards.

    acquire() returns the remote debugging port Lighthouse connects to;
    release(port) terminates that Chrome and removes its profile directory.
    """

    def __init__(
        self,
        chrome_path: str | None = None,
        extra_flags: list[str] | None = None,
        port: int = 0,
        startup_timeout: float = CHROME_STARTUP_TIMEOUT,
        verbose: bool = False,
    ):
        self.chrome_path = chrome_path
        self.flags = DEFAULT_CHROME_FLAGS + list(extra_flags or [])
        self.port = port
        self.startup_timeout = startup_timeout
        self.verbose = verbose
        self._sessions: dict[int, tuple[subprocess.Popen, str]] = {}

    def acquire(self) -> int:
        binary = self.chrome_path or find_chrome_binary()
        if not binary:
            raise BrowserLaunchError("no Chrome/Chromium binary found (set --chrome-path or CHROME_PATH)")

        port = self.port or _pick_free_port()
        user_data_dir = tempfile.mkdtemp(prefix="lighthouse-batch-chrome-")
        cmd = [
            binary,
            f"--remote-debugging-port={port}",
            f"--user-data-dir={user_data_dir}",
            *self.flags,
            "about:blank",
        ]
        if self.verbose:
            print(f"  Launching Chrome on port {port}", file=sys.stderr)
        try:
            process = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except (OSError, ValueError) as exc:
            shutil.rmtree(user_data_dir, ignore_errors=True)
            raise BrowserLaunchError(f"cannot start {binary}: {exc}") from exc

        self._sessions[port] = (process, user_data_dir)
        try:
            _wait_for_debugger(process, port, self.startup_timeout)
        except BrowserLaunchError:
            self.release(port)
            raise
        return port

    def release(self, port: int) -> None:
        session = self._sessions.pop(port, None)
        if session is None:
            return
        process, user_data_dir = session
        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=CHROME_SHUTDOWN_TIMEOUT)
            except subprocess.TimeoutExpired:
                process.kill()
                try:
                    process.wait(timeout=CHROME_SHUTDOWN_TIMEOUT)
                except subprocess.TimeoutExpired:
                    print(f"Warning: Chrome on port {port} (pid {process.pid}) did not exit after kill", file=sys.stderr)
        shutil.rmtree(user_data_dir, ignore_errors=True)
        if self.verbose:
            print(f"  Chrome on port {port} stopped", file=sys.stderr)


# ---------------------------------------------------------------------------
# Audit Engine
# ---------------------------------------------------------------------------


class LighthouseCli:
    """Runs the Lighthouse CLI against an already running Chrome."""

    def __init__(
        self,
        lighthouse_path: str = DEFAULT_LIGHTHOUSE_PATH,
        categories: list[str] | None = None,
        timeout: float = DEFAULT_AUDIT_TIMEOUT,
    ):
        self.lighthouse_path = lighthouse_path
        self.categories = categories or DEFAULT_CATEGORIES
        self.timeout = timeout

    def build_command(self, url: str, port: int, config_path: str) -> list[str]:
        return [
            self.lighthouse_path,
            url,
            f"--port={port}",
            "--output=json",
            "--output-path=stdout",
            "--quiet",
            f"--config-path={config_path}",
            f"--only-categories={','.join(self.categories)}",
        ]

    def run(self, url: str, settings: dict, port: int) -> dict:
        """Audit `url` and return the parsed Lighthouse result.

        Raises AuditError on a non-zero exit or unparseable output, and
        TimeoutError when the run exceeds the configured timeout.
        """
        lighthouse_config = {"extends": "lighthouse:default", "settings": settings}
        with tempfile.NamedTemporaryFile("w", suffix=".json", prefix="lighthouse-config-", delete=False) as fh:
            json.dump(lighthouse_config, fh)
            config_path = fh.name

        try:
            completed = subprocess.run(
                self.build_command(url, port, config_path),
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise TimeoutError(f"Lighthouse timed out after {self.timeout:.0f}s for {url}") from exc
        finally:
            os.unlink(config_path)

        if completed.returncode != 0:
            stderr_tail = (completed.stderr or "").strip()[-300:]
            raise AuditError(f"lighthouse exited with code {completed.returncode} for {url}: {stderr_tail}")

        try:
            return json.loads(completed.stdout)
        except ValueError as exc:
            raise AuditError(f"lighthouse produced invalid JSON for {url}: {exc}") from exc


# ---------------------------------------------------------------------------
# Audit Invoker
# ---------------------------------------------------------------------------


def _describe_exception(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


def check_result_complete(lhr: object) -> str | None:
    """Return why a Lighthouse result is unusable, or None if it is usable."""
    if not isinstance(lhr, dict):
        return "audit engine returned no result"
    runtime_error = lhr.get("runtimeError")
    if isinstance(runtime_error, dict) and runtime_error.get("code"):
        return f"Lighthouse runtime error {runtime_error['code']}: {runtime_error.get('message', '')}".rstrip(": ")
    if not isinstance(lhr.get("categories"), dict) or not isinstance(lhr.get("audits"), dict):
        return "incomplete Lighthouse result (missing categories or audits)"
    return None


def invoke_audit(target: str, profile: Profile, browser, engine) -> dict | AuditFailure:
    """Run one audit for (target, profile) inside its own browser session.

    The browser endpoint is always released, whatever happens. Failures are
    returned as AuditFailure values, never raised.
    """
    try:
        endpoint = browser.acquire()
    except Exception as exc:
        return AuditFailure(_describe_exception(exc))

    try:
        lhr = engine.run(target, profile.settings, endpoint)
    except Exception as exc:
        return AuditFailure(_describe_exception(exc))
    finally:
        try:
            browser.release(endpoint)
        except Exception as exc:
            print(f"Warning: could not release browser on {endpoint}: {_describe_exception(exc)}", file=sys.stderr)

    problem = check_result_complete(lhr)
    if problem:
        return AuditFailure(problem)
    return lhr


# ---------------------------------------------------------------------------
# Metric Normalization
# ---------------------------------------------------------------------------


def _mapping(value: object) -> dict:
    return value if isinstance(value, dict) else {}


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def extract_domain(url: str) -> str:
    """Host component of the URL, or an empty string if it cannot be parsed."""
    try:
        return urlparse(url).hostname or EMPTY
    except (ValueError, AttributeError, TypeError):
        return EMPTY


def format_seconds(milliseconds: object) -> str:
    """Convert a millisecond value to seconds with two decimals ("" if absent or zero)."""
    if not _is_number(milliseconds) or not milliseconds:
        return EMPTY
    return f"{milliseconds / 1000:.2f}"


def scale_score(score: object) -> int | float | str:
    """Scale a 0-1 category score to 0-100 ("" if absent)."""
    if not _is_number(score):
        return EMPTY
    scaled = round(score * 100, 2)
    return int(scaled) if scaled == int(scaled) else scaled


def _prefix_fields(target: str, profile: Profile, timestamp: str) -> dict:
    return {
        "timestamp": timestamp,
        "domain": extract_domain(target),
        "url": target,
        "profile": profile.name,
        "site_version": EMPTY,
    }


def _row_from_fields(fields: dict) -> list:
    return [fields.get(column, EMPTY) for column in ROW_COLUMNS]


def normalize_result(lhr: dict, target: str, profile: Profile, timestamp: str) -> list:
    """Map a Lighthouse result onto a fixed-width row."""
    fields = _prefix_fields(target, profile, timestamp)

    lighthouse = _mapping(lhr)
    audits = _mapping(lighthouse.get("audits"))
    categories = _mapping(lighthouse.get("categories"))

    for audit_id, column_name in TIMING_AUDITS:
        value = _mapping(audits.get(audit_id)).get("numericValue")
        fields[column_name] = format_seconds(value)

    # CLS is already unitless
    cls_value = _mapping(audits.get(CLS_AUDIT)).get("numericValue")
    fields["cls"] = round(cls_value, 2) if _is_number(cls_value) else EMPTY

    for category_id, column_name in CATEGORY_SCORES:
        score = _mapping(categories.get(category_id)).get("score")
        fields[column_name] = scale_score(score)

    return _row_from_fields(fields)


def build_error_row(target: str, profile: Profile, timestamp: str, message: str) -> list:
    """Row for a failed pair: same prefix and width, blank metrics, trailing diagnostic."""
    fields = _prefix_fields(target, profile, timestamp)
    fields["error"] = f"ERROR: {message or 'unknown failure'}"
    return _row_from_fields(fields)


# ---------------------------------------------------------------------------
# Batch Processing
# ---------------------------------------------------------------------------


def run_timestamp(timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT) -> str:
    """Timestamp shared by every row of one run."""
    return datetime.now(timezone.utc).strftime(timestamp_format)


def process_matrix(
    targets: list[str],
    profiles: list[Profile],
    browser,
    engine,
    timestamp: str,
    verbose: bool = False,
) -> list[list]:
    """Audit every (target, profile) pair in target-major order.

    Exactly one row is produced per pair; a failed pair becomes an error row
    and the loop moves on.
    """
    rows: list[list] = []
    total_tasks = len(targets) * len(profiles)
    if total_tasks == 0:
        return rows

    for target in targets:
        for profile in profiles:
            if verbose:
                print(f"  Auditing {target} ({profile.name})...", file=sys.stderr)
            result = invoke_audit(target, profile, browser, engine)
            if isinstance(result, AuditFailure):
                print(f"\n  Error: {target} ({profile.name}): {result.message}", file=sys.stderr)
                rows.append(build_error_row(target, profile, timestamp, result.message))
            else:
                rows.append(normalize_result(result, target, profile, timestamp))
            print(
                f"\r  Progress: {len(rows)}/{total_tasks}",
                end="",
                file=sys.stderr,
                flush=True,
            )

    print("", file=sys.stderr)  # newline after progress
    return rows


def rows_to_dataframe(rows: list[list]) -> pd.DataFrame:
    return pd.DataFrame(rows, columns=ROW_COLUMNS)


def _print_run_summary(rows: list[list]) -> None:
    """Print row/error counts and average performance score per profile to stderr."""
    if not rows:
        return
    dataframe = rows_to_dataframe(rows)
    error_count = int((dataframe["error"] != EMPTY).sum())

    print("\nSummary:", file=sys.stderr)
    print(f"  URLs audited:  {dataframe['url'].nunique()}", file=sys.stderr)
    print(f"  Rows:          {len(dataframe)}", file=sys.stderr)
    if error_count:
        print(f"  Errors:        {error_count}", file=sys.stderr)

    dataframe["performance_score"] = pd.to_numeric(dataframe["performance_score"], errors="coerce")
    averages = dataframe.groupby("profile", sort=False)["performance_score"].mean().dropna()
    for profile_name, average in averages.items():
        print(f"  Avg score ({profile_name}): {average:.0f}", file=sys.stderr)


def run_pipeline(
    targets: list[str],
    profiles: list[Profile],
    browser,
    engine,
    sink,
    timestamp_format: str = DEFAULT_TIMESTAMP_FORMAT,
    verbose: bool = False,
) -> int:
    """Audit the whole matrix, then deliver every row to the sink in one call.

    Returns the number of rows appended. SinkError propagates to the caller.
    """
    timestamp = run_timestamp(timestamp_format)
    rows = process_matrix(targets, profiles, browser, engine, timestamp, verbose=verbose)
    _print_run_summary(rows)

    if not rows:
        print("No rows to append.", file=sys.stderr)
        return 0

    print(f"Appending {len(rows)} row(s) to {sink.describe()}...", file=sys.stderr)
    appended = sink.append(rows)
    print("Done!", file=sys.stderr)
    return appended


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


def _authorized_session(credentials_file: str | None):
    """Build a requests session authorised for the Sheets API."""
    try:
        if credentials_file:
            credentials = service_account.Credentials.from_service_account_file(
                credentials_file, scopes=SHEETS_SCOPES
            )
        else:
            credentials, _ = google.auth.default(scopes=SHEETS_SCOPES)
    except (GoogleAuthError, OSError, ValueError) as exc:
        raise SinkError(f"cannot load Google credentials: {exc}") from exc
    return AuthorizedSession(credentials)


class GoogleSheetsSink:
    """Appends rows below the existing data of a sheet via values:append."""

    def __init__(
        self,
        spreadsheet_id: str,
        sheet_name: str = DEFAULT_SHEET_NAME,
        credentials_file: str | None = None,
        anchor: str = DEFAULT_SHEET_ANCHOR,
        session=None,
    ):
        self.spreadsheet_id = spreadsheet_id
        self.sheet_name = sheet_name
        self.credentials_file = credentials_file
        self.anchor = anchor
        self._session = session

    @property
    def range(self) -> str:
        return f"{self.sheet_name}!{self.anchor}"

    def describe(self) -> str:
        return f"Google Sheet {self.spreadsheet_id} ({self.range})"

    def append(self, rows: list[list]) -> int:
        if not rows:
            return 0

        session = self._session or _authorized_session(self.credentials_file)
        url = SHEETS_APPEND_URL.format(
            spreadsheet_id=self.spreadsheet_id,
            range=quote(self.range, safe=""),
        )
        try:
            response = session.post(
                url,
                params={"valueInputOption": "USER_ENTERED", "insertDataOption": "INSERT_ROWS"},
                json={"majorDimension": "ROWS", "values": rows},
                timeout=SHEETS_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise SinkError(f"Sheets append failed: {exc}") from exc

        if response.status_code != 200:
            try:
                error_detail = response.json().get("error", {}).get("message", response.text[:200])
            except (ValueError, AttributeError):
                error_detail = response.text[:200]
            raise SinkError(f"HTTP {response.status_code} from Sheets append: {error_detail}")

        try:
            updated_rows = response.json().get("updates", {}).get("updatedRows")
        except (ValueError, AttributeError):
            updated_rows = None
        return updated_rows if isinstance(updated_rows, int) else len(rows)


class CsvSink:
    """Appends rows to a local CSV file, writing the header only for a new file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def describe(self) -> str:
        return f"CSV file {self.path}"

    def append(self, rows: list[list]) -> int:
        if not rows:
            return 0
        write_header = not self.path.is_file() or self.path.stat().st_size == 0
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            rows_to_dataframe(rows).to_csv(self.path, mode="a", header=write_header, index=False)
        except OSError as exc:
            raise SinkError(f"cannot append to {self.path}: {exc}") from exc
        return len(rows)


def build_sink(args: argparse.Namespace):
    """Construct the sink selected by --sink."""
    if args.sink == "csv":
        return CsvSink(args.csv_path)

    if not args.spreadsheet_id:
        print("Error: no spreadsheet id (use --spreadsheet-id or GOOGLE_SHEETS_ID)", file=sys.stderr)
        sys.exit(1)
    return GoogleSheetsSink(
        spreadsheet_id=args.spreadsheet_id,
        sheet_name=args.sheet_name,
        credentials_file=args.credentials_file,
    )


# ---------------------------------------------------------------------------
# Terminal Output
# ---------------------------------------------------------------------------


def format_terminal_table(rows: list[list]) -> str:
    """Format rows as an aligned terminal table, one block per (url, profile)."""
    lines = []
    for row in rows:
        row_data = dict(zip(ROW_COLUMNS, row))
        lines.append(f"\n{'=' * 60}")
        lines.append(f"  URL:      {row_data['url']}")
        lines.append(f"  Profile:  {row_data['profile']}")

        if row_data["error"]:
            lines.append(f"  Error:    {row_data['error']}")
            lines.append(f"{'=' * 60}")
            continue

        lines.append(f"{'=' * 60}")

        score = row_data["performance_score"]
        if score != EMPTY:
            score_indicator = "GOOD" if score >= 90 else ("NEEDS WORK" if score >= 50 else "POOR")
            lines.append(f"  Performance Score: {score}/100 ({score_indicator})")

        for label, key in [("Accessibility", "accessibility_score"), ("Best Practices", "best_practices_score"), ("SEO", "seo_score")]:
            val = row_data[key]
            if val != EMPTY:
                lines.append(f"  {label}: {val}/100")

        lines.append("")
        lines.append("  --- Lab Data ---")
        lab_display = [
            ("  First Contentful Paint", "fcp_s", "s"),
            ("  Largest Contentful Paint", "lcp_s", "s"),
            ("  Total Blocking Time", "tbt_s", "s"),
            ("  Cumulative Layout Shift", "cls", ""),
            ("  Speed Index", "speed_index_s", "s"),
        ]
        for label, key, unit in lab_display:
            val = row_data[key]
            if val != EMPTY:
                suffix = f" {unit}" if unit else ""
                lines.append(f"  {label:.<36} {val}{suffix}")

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _build_browser_and_engine(args: argparse.Namespace) -> tuple[LocalChrome, LighthouseCli]:
    browser = LocalChrome(
        chrome_path=args.chrome_path,
        extra_flags=args.chrome_flags,
        port=args.port,
        verbose=args.verbose,
    )
    engine = LighthouseCli(
        lighthouse_path=args.lighthouse_path,
        categories=args.categories,
        timeout=args.timeout,
    )
    return browser, engine


def cmd_run(args: argparse.Namespace, config: dict) -> None:
    """Audit the configured URL x profile matrix and append the rows to the sink."""
    targets = load_targets(args.urls, args.file, base_url=args.base_url)
    profiles = build_profile_registry(config, args.profile_names)
    sink = build_sink(args)
    browser, engine = _build_browser_and_engine(args)

    print(
        f"Auditing {len(targets)} URL(s) x {len(profiles)} profile(s): "
        f"{', '.join(p.name for p in profiles) or '(none)'}",
        file=sys.stderr,
    )
    try:
        run_pipeline(
            targets,
            profiles,
            browser,
            engine,
            sink,
            timestamp_format=args.timestamp_format,
            verbose=args.verbose,
        )
    except SinkError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


def cmd_check(args: argparse.Namespace, config: dict) -> None:
    """Audit a single URL under the selected profiles and print the results."""
    url = validate_url(args.url)
    if not url:
        print(f"Error: invalid URL: {args.url}", file=sys.stderr)
        sys.exit(1)

    profiles = build_profile_registry(config, args.profile_names)
    browser, engine = _build_browser_and_engine(args)
    rows = process_matrix([url], profiles, browser, engine, run_timestamp(), verbose=args.verbose)
    print(format_terminal_table(rows))


def cmd_profiles(args: argparse.Namespace, config: dict) -> None:
    """List the profile registry."""
    for profile in build_profile_registry(config):
        print(describe_profile(profile))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main() -> None:
    load_environment()
    parser = build_argument_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    config_path = Path(args.config) if args.config else discover_config_path()
    config = load_config(config_path)
    args = apply_config(args, config)

    commands = {
        "run": cmd_run,
        "check": cmd_check,
        "profiles": cmd_profiles,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args, config)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
