#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: 2025 The Linux Foundation

"""
torpat.ch Site Generator - Tor Browser Patch Uplift and Locale Monitoring

This script builds the static torpat.ch site:
- Patch uplift table correlating Tor Browser patches with Mozilla bugs
- nginx redirect map from Tor ticket numbers to single patches
- One link page per ticket that carries several patches
- Tor Browser locale progress and web portal translation pages

Architecture:
- Single script with modular internal structure
- Configuration-driven with template + site overrides
- Pure correlation/classification core, HTTP and git access at the edges
- Every fetch is best-effort: failures degrade to empty results
"""

import argparse
import copy
import csv
import datetime
import functools
import hashlib
import html
import io
import json
import logging
import re
import subprocess
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

try:
    import yaml  # type: ignore
except ImportError:
    print(
        "ERROR: PyYAML is required. Install with: pip install PyYAML", file=sys.stderr
    )
    sys.exit(1)

try:
    import httpx  # type: ignore
except ImportError:
    print("ERROR: httpx is required. Install with: pip install httpx", file=sys.stderr)
    sys.exit(1)

try:
    from bs4 import BeautifulSoup  # type: ignore
except ImportError:
    print(
        "ERROR: beautifulsoup4 is required. Install with: pip install beautifulsoup4",
        file=sys.stderr,
    )
    sys.exit(1)

# =============================================================================
# CONSTANTS
# =============================================================================

SCRIPT_VERSION = "1.0.0"
DEFAULT_CONFIG_DIR = "configuration"
DEFAULT_SITE = "torpat.ch"
DEFAULT_OUTPUT_DIR = "site"
DEFAULT_COMMIT_COUNT = 300

NO_BUG_NUMBER = "None"

DEFAULT_URLS = {
    "patch_base": "https://gitweb.torproject.org/tor-browser.git/patch/?id=",
    "bugzilla": "https://bugzilla.mozilla.org",
    "trac": "https://trac.torproject.org",
    "hg": "https://hg.mozilla.org/mozilla-central",
    "transifex_api": "https://api.transifex.com",
    "transifex_www": "https://www.transifex.com",
    "translation_tree": "https://gitweb.torproject.org/translation.git/tree/",
    "firefox_locales": "https://www.mozilla.org/en-US/firefox/all/",
    "tbb_alpha_download": "https://www.torproject.org/download/alpha/",
    "dist": "https://dist.torproject.org/torbrowser/",
    "locale_names": "https://ss64.com/locale.html",
    "source": "https://github.com/arthuredelstein/torpatches",
}

# Commit messages that carry no parseable ticket number
BUG_NUMBER_OVERRIDES = {
    "Allow std::unordered_*.": "24197",
    "Don't break accessibility support for Windows": "21240",
    'Revert "Getting Tor Browser to build with accessibility enabled on Windows"': "21240",
    "Getting Tor Browser to build with accessibility enabled on Windows": "21240",
    "We don't take the SANDBOX_EXPORTS path and fix compile issues along our way": "16010",
}

# Tor tickets whose Mozilla bug lost its "(Tor NNNN)" tag
MOZILLA_BUG_OVERRIDES = {
    "24052": [{"id": "1412081"}],
    "24398": [{"id": "1412081"}],
}

# Fragments that mark a commit as upstream Mozilla work
MOZILLA_COMMIT_MARKERS = [
    "r=",
    "a=",
    "No bug,",
    "CLOSED TREE",
    "Backed out changeset",
    "1289001) for bustage",
]

NO_UPLIFT_KEYWORDS = {"tbb-no-uplift", "tbb-no-uplift-60"}
NO_UPLIFT_TICKET_IDS = {"11641", "13252"}
NO_UPLIFT_TITLE_FRAGMENTS = ["Omnibox: Add DDG"]

# Classification states
NO_UPLIFT = "no-uplift"
UNFILED = "unfiled"
RESOLVED = "resolved"
UNRESOLVED = "unresolved"

TRAC_HEADERS = ["id", "summary", "keywords", "status"]

BUGZILLA_TOR_QUERY = {
    "include_fields": "id,whiteboard,summary,status,resolution,priority,keywords",
    "f1": "status_whiteboard",
    "f2": "short_desc",
    "j_top": "OR",
    "o1": "anywordssubstr",
    "o2": "anywordssubstr",
    "v1": "[tor",
    "v2": "[tor (tor [Tor (Tor",
}

TBB_LOCALE_RESOURCES = [
    "abouttor-homepage",
    "browseronboardingproperties",
    "tor-browser-android-strings",
    "tor-launcher-network-settingsdtd",
    "tor-launcher-properties",
    "torbutton-aboutdialogdtd",
    "torbutton-abouttbupdatedtd",
    "torbutton-branddtd",
    "torbutton-brandproperties",
    "torbutton-torbuttondtd",
    "torbutton-torbuttonproperties",
]

COUNTING_KEYS = [
    "untranslated_words",
    "translated_words",
    "translated_entities",
    "untranslated_entities",
    "reviewed",
]

# Firefox region-qualified locales that Tor Browser ships unqualified
LOCALE_ALIASES = {
    "bn_BD": "bn",
    "bn_IN": "bn",
    "en_US": "en",
    "es_ES": "es",
    "fy_NL": "fy",
    "ga_IE": "ga",
    "gu_IN": "gu",
    "hi_IN": "hi",
    "hr_HR": "hr",
    "hy_AM": "hy",
    "ko_KR": "ko",
    "ms_MY": "ms",
    "nb_NO": "nb",
    "ne_NP": "ne",
    "nn_NO": "nn",
    "pa_IN": "pa",
    "pt_PT": "pt",
    "si_LK": "si",
    "sk_SK": "sk",
    "sl_SI": "sl",
    "sv_SE": "sv",
    "ur_PK": "ur",
}

TIER_1_LANGUAGES = {
    "en", "fa", "es", "ru", "zh_CN", "pt_BR", "fr", "de", "ko", "tr", "it", "ar",
}

# Locales already covered by another deployed locale
REDUNDANT_LOCALES = {"en", "sv"}

LOCALE_TABLE_HEADERS = [
    "locale",
    "locale_name",
    "tbb_deployed",
    "firefox",
    "translated_entities",
    "untranslated_entities",
    "reviewed",
    "translated_words",
    "untranslated_words",
]

WEB_PORTAL_TABLE_HEADERS = [
    "language",
    "completed",
    "translated_entities",
    "reviewed_percentage",
    "last_commiter",
    "last_update",
]

UPLIFT_CSS = """
body { font-family: sans-serif; font-size: 13px; }
table.uplift { border-collapse: collapse; width: 100%; }
table.uplift td, table.uplift th { border: 1px solid #ccc; padding: 3px 6px; vertical-align: top; }
table.uplift tr.header { background-color: #eee; }
tr.resolved { background-color: #dfd; }
tr.unresolved { background-color: #ffd; }
tr.unfiled { background-color: #fdd; }
tr.no-uplift { background-color: #ddd; }
td p { margin: 0; }
a.resolved { text-decoration: line-through; }
"""

LOCALE_CSS = """
body { font-family: sans-serif; font-size: 13px; }
p.label { font-weight: bold; margin-bottom: 2px; }
table.locale { border-collapse: collapse; }
table.locale td, table.locale th { border: 1px solid #ccc; padding: 3px 6px; }
table.locale tr.header { background-color: #eee; }
"""

# =============================================================================
# API STATISTICS TRACKING
# =============================================================================

API_SERVICES = {
    "bugzilla": "Bugzilla",
    "trac": "Trac",
    "hg": "Mercurial",
    "transifex": "Transifex",
    "web": "Web Page",
}


class APIStatistics:
    """Track statistics for external service calls."""

    def __init__(self):
        """Initialize statistics tracker."""
        self.stats = {
            service: {"success": 0, "errors": {}} for service in API_SERVICES
        }

    def record_success(self, api_type: str) -> None:
        """Record a successful API call."""
        if api_type in self.stats:
            self.stats[api_type]["success"] += 1

    def record_error(self, api_type: str, status_code: int) -> None:
        """Record an API error by status code."""
        if api_type in self.stats:
            errors = self.stats[api_type]["errors"]
            errors[status_code] = errors.get(status_code, 0) + 1

    def record_exception(self, api_type: str, error_type: str = "exception") -> None:
        """Record an API exception (non-HTTP error)."""
        if api_type in self.stats:
            errors = self.stats[api_type]["errors"]
            errors[error_type] = errors.get(error_type, 0) + 1

    def get_total_calls(self, api_type: str) -> int:
        """Get total number of API calls (success + errors)."""
        if api_type not in self.stats:
            return 0
        success = self.stats[api_type]["success"]
        errors = sum(self.stats[api_type]["errors"].values())
        return success + errors

    def get_total_errors(self, api_type: str) -> int:
        """Get total number of errors for an API."""
        if api_type not in self.stats:
            return 0
        return sum(self.stats[api_type]["errors"].values())

    def has_errors(self) -> bool:
        """Check if any service has errors."""
        return any(self.get_total_errors(api_type) > 0 for api_type in self.stats)

    def format_console_output(self) -> str:
        """Format statistics for console output."""
        lines = []

        for api_type, label in API_SERVICES.items():
            if self.get_total_calls(api_type) == 0:
                continue
            lines.append(f"\n📊 {label} API Statistics:")
            lines.append(f"   ✅ Successful calls: {self.stats[api_type]['success']}")
            total_errors = self.get_total_errors(api_type)
            if total_errors > 0:
                lines.append(f"   ❌ Failed calls: {total_errors}")
                for code, count in sorted(
                    self.stats[api_type]["errors"].items(), key=lambda x: str(x[0])
                ):
                    lines.append(f"      • Error {code}: {count}")

        return "\n".join(lines) if lines else ""


# Global statistics tracker
api_stats = APIStatistics()


# =============================================================================
# LOGGING SETUP
# =============================================================================


def setup_logging(
    level: str = "INFO", include_timestamps: bool = True
) -> logging.Logger:
    """Configure logging with structured format."""
    log_format = "[%(levelname)s]"
    if include_timestamps:
        log_format = "[%(asctime)s] " + log_format
    log_format += " %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format=log_format,
        datefmt="%Y-%m-%d %H:%M:%S UTC" if include_timestamps else None,
    )

    logger = logging.getLogger("torpatches")
    return logger


# =============================================================================
# CONFIGURATION LOADING AND DEEP MERGE
# =============================================================================


def deep_merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries, with override taking precedence."""
    result = copy.deepcopy(base)

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge_dicts(result[key], value)
        else:
            result[key] = copy.deepcopy(value)

    return result


def load_yaml_config(config_path: Path) -> Dict[str, Any]:
    """Load and parse a YAML configuration file."""
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_path}: {e}")


def find_site_config(config_dir: Path, site: str) -> Optional[Path]:
    """Find the site override file, exact name first, then case-insensitively."""
    site_config_name = f"{site}.config"

    exact_match = config_dir / site_config_name
    if exact_match.exists():
        return exact_match

    for config_file in config_dir.glob("*.config"):
        if config_file.name.lower() == site_config_name.lower():
            return config_file

    return None


def load_configuration(config_dir: Path, site: str) -> dict[str, Any]:
    """
    Load configuration with template + site override merge strategy.

    Args:
        config_dir: Directory containing configuration files
        site: Site name for the override file

    Returns:
        Merged configuration dictionary
    """
    template_path = config_dir / "template.config"
    if not template_path.exists():
        raise FileNotFoundError(f"Template configuration not found: {template_path}")

    print(f"📝 Loading template config: {template_path}", file=sys.stderr)
    template_config = load_yaml_config(template_path)

    site_config = {}
    site_path = find_site_config(config_dir, site)
    if site_path:
        print(f"📝 Loading site config: {site_path}", file=sys.stderr)
        site_config = load_yaml_config(site_path)
    else:
        print(
            f"⚠️  No site-specific config found for '{site}' - using template defaults only",
            file=sys.stderr,
        )

    merged_config = deep_merge_dicts(template_config, site_config)
    merged_config["site"] = site

    return merged_config


def compute_config_digest(config: Dict[str, Any]) -> str:
    """Compute SHA256 digest of configuration for reproducibility tracking."""
    config_json = json.dumps(config, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(config_json.encode("utf-8")).hexdigest()


def config_url(config: dict[str, Any], key: str) -> str:
    """Look up a service URL, falling back to the built-in default."""
    return config.get("urls", {}).get(key) or DEFAULT_URLS[key]


# =============================================================================
# TEXT EXTRACTION
# =============================================================================


def match(pattern: str, text: Optional[str]) -> Optional[str]:
    """Return the first capture group of the first match of pattern in text."""
    if text is None:
        return None
    found = re.search(pattern, text)
    if found is None:
        return None
    return found.group(1)


def contains_any(text: Optional[str], fragments: Iterable[str]) -> bool:
    """Check whether any of the fragments occurs in text."""
    if not text:
        return False
    return any(fragment in text for fragment in fragments)


# =============================================================================
# BUG NUMBER RESOLUTION
# =============================================================================

BUG_NUMBER_PATTERNS = [
    r"(TB\d+)",
    r"(?i:bug) #?([0-9.]+)",
    r"#?([0-9]+)",
]


def bug_number(commit_message: str) -> str:
    """
    Extract the Tor ticket number from a commit message.

    Patterns are tried in priority order; messages with no number fall back
    to BUG_NUMBER_OVERRIDES and finally to the "None" sentinel.
    """
    for pattern in BUG_NUMBER_PATTERNS:
        number = match(pattern, commit_message)
        if number is not None:
            return number
    return BUG_NUMBER_OVERRIDES.get(commit_message, NO_BUG_NUMBER)


def cleanup_bug_number(number: Optional[str]) -> Optional[str]:
    """Reduce a ticket number to the leading digits Trac understands."""
    return match(r"^([0-9]+)", number)


def patch_url(commit_hash: str, base: str = DEFAULT_URLS["patch_base"]) -> str:
    """Returns a URL for a tor-browser patch, given the hash."""
    return f"{base}{commit_hash}"


# =============================================================================
# MOZILLA BUG CORRELATION
# =============================================================================


def tor_ids_from_mozilla_bug(mozilla_bug: dict[str, Any]) -> set[str]:
    """
    Extract Tor ticket labels from a Bugzilla bug's summary and whiteboard.

    E.g. 'Tests for first-party isolation of cache (Tor 13749)' -> {'13749'}
    """
    summary = mozilla_bug.get("summary") or ""
    whiteboard = mozilla_bug.get("whiteboard") or ""
    return set(re.findall(r"[\[(](?i:tor) (.+?)[)\],]", summary)) | set(
        re.findall(r"\[tor (.+?)\]", whiteboard)
    )


def mozilla_bugs_by_tor_id(
    mozilla_bugs: Optional[List[dict[str, Any]]],
    overrides: Optional[dict[str, List[dict[str, Any]]]] = None,
) -> dict[str, List[dict[str, Any]]]:
    """Group Mozilla bugs by the Tor ticket numbers they reference."""
    if overrides is None:
        overrides = MOZILLA_BUG_OVERRIDES

    by_tor_id: dict[str, List[dict[str, Any]]] = {}
    for mozilla_bug in mozilla_bugs or []:
        for tor_id in sorted(tor_ids_from_mozilla_bug(mozilla_bug)):
            by_tor_id.setdefault(tor_id, []).append(dict(mozilla_bug, tor=tor_id))

    for tor_id, pinned_bugs in overrides.items():
        by_tor_id[tor_id] = [dict(bug) for bug in pinned_bugs]

    return by_tor_id


# =============================================================================
# PATCH CLASSIFICATION
# =============================================================================


def bugzilla_fixed(mozilla_bug: dict[str, Any]) -> bool:
    """A Mozilla bug counts as fixed only when resolved as FIXED."""
    return mozilla_bug.get("resolution") == "FIXED"


def extract_keywords(keywords: Any) -> Optional[List[str]]:
    """Split a Trac keyword string into a case-insensitively sorted list."""
    if keywords is None:
        return None
    if isinstance(keywords, str):
        keywords = [k for k in re.split(r"[,\s]+", keywords) if k]
    return sorted(keywords, key=str.lower)


def _trac_keywords(row: dict[str, Any]) -> List[str]:
    trac = row.get("trac") or {}
    return extract_keywords(trac.get("keywords")) or []


def _is_no_uplift(row: dict[str, Any]) -> bool:
    ticket_id = row.get("id") or ""
    return (
        any(keyword in NO_UPLIFT_KEYWORDS for keyword in _trac_keywords(row))
        or ticket_id.startswith("TB")
        or ticket_id in NO_UPLIFT_TICKET_IDS
        or contains_any(row.get("title"), NO_UPLIFT_TITLE_FRAGMENTS)
    )


def _is_unfiled(row: dict[str, Any]) -> bool:
    return not row.get("bugzilla")


def _is_resolved(row: dict[str, Any]) -> bool:
    return all(bugzilla_fixed(bug) for bug in row.get("bugzilla") or [])


# Evaluated top to bottom, first match wins
CLASSIFICATION_RULES: List[Tuple[Callable[[dict[str, Any]], bool], str]] = [
    (_is_no_uplift, NO_UPLIFT),
    (_is_unfiled, UNFILED),
    (_is_resolved, RESOLVED),
]


def classify_row(row: dict[str, Any]) -> str:
    """Decide the uplift state of a correlated patch row."""
    for predicate, state in CLASSIFICATION_RULES:
        if predicate(row):
            return state
    return UNRESOLVED


# =============================================================================
# COMMIT PARTITIONING
# =============================================================================


def remove_mozilla_commits(commits: Iterable[dict[str, str]]) -> List[dict[str, str]]:
    """Remove mozilla commits, which are obvious from an 'r=' tag or similar."""
    return [
        commit
        for commit in commits or []
        if not contains_any(commit.get("message"), MOZILLA_COMMIT_MARKERS)
    ]


def group_by_bug_number(
    commits: Iterable[dict[str, str]],
) -> dict[str, List[dict[str, str]]]:
    """Group commits by ticket number, keeping first-seen order."""
    groups: dict[str, List[dict[str, str]]] = {}
    for commit in commits:
        groups.setdefault(bug_number(commit["message"]), []).append(commit)
    return groups


def singles_and_multiples(
    commits: Iterable[dict[str, str]],
) -> Tuple[dict[str, List[dict[str, str]]], dict[str, List[dict[str, str]]]]:
    """
    Split tickets into those with a single patch and those with several.

    Returns:
        (single_patch_bugs, multiple_patch_bugs), both keyed by ticket number
    """
    single: dict[str, List[dict[str, str]]] = {}
    multiple: dict[str, List[dict[str, str]]] = {}
    for ticket, ticket_commits in group_by_bug_number(
        remove_mozilla_commits(commits)
    ).items():
        if len(ticket_commits) == 1:
            single[ticket] = ticket_commits
        else:
            multiple[ticket] = ticket_commits
    return single, multiple


# =============================================================================
# UPLIFT DATA ASSEMBLY
# =============================================================================


def trac_ids(commits: Iterable[dict[str, str]]) -> List[str]:
    """Trac-compatible ticket ids for the commits, without duplicates."""
    ids = []
    for commit in commits:
        ticket = cleanup_bug_number(bug_number(commit["message"]))
        if ticket is not None and ticket not in ids:
            ids.append(ticket)
    return ids


def assemble_row(
    commit: dict[str, str],
    mozilla_bug_map: Optional[dict[str, List[dict[str, Any]]]],
    trac_data: Optional[dict[str, dict[str, Any]]] = None,
    review_flags: Optional[Callable[[Any], Iterable[str]]] = None,
    hg_commits: Optional[Callable[[Any], Iterable[dict[str, Any]]]] = None,
) -> dict[str, Any]:
    """
    Combine Tor and Mozilla data for one Tor patch.

    The Mozilla bug map is keyed by the ticket number exactly as resolved
    from the commit message, while Trac data is keyed by the cleaned number.
    """
    ticket_id = bug_number(commit["message"])

    bugzilla = []
    for mozilla_bug in (mozilla_bug_map or {}).get(ticket_id, []):
        enriched = dict(mozilla_bug)
        if review_flags is not None:
            enriched["flags"] = list(review_flags(mozilla_bug.get("id")))
        else:
            enriched["flags"] = list(mozilla_bug.get("flags") or [])
        if hg_commits is not None:
            enriched["hg"] = list(hg_commits(mozilla_bug.get("id")))
        bugzilla.append(enriched)

    trac = None
    id_clean = cleanup_bug_number(ticket_id)
    if trac_data and id_clean in trac_data:
        trac = dict(trac_data[id_clean])
        trac["keywords"] = extract_keywords(trac.get("keywords")) or []

    return {
        "hash": commit["hash"],
        "title": commit["message"],
        "id": ticket_id,
        "bugzilla": bugzilla,
        "trac": trac,
    }


def assemble_uplift_data(
    commits: Iterable[dict[str, str]],
    mozilla_bug_map: Optional[dict[str, List[dict[str, Any]]]],
    trac_data: Optional[dict[str, dict[str, Any]]] = None,
    review_flags: Optional[Callable[[Any], Iterable[str]]] = None,
    hg_commits: Optional[Callable[[Any], Iterable[dict[str, Any]]]] = None,
) -> List[dict[str, Any]]:
    """Build the uplift table rows, one per commit, in commit order."""
    return [
        assemble_row(commit, mozilla_bug_map, trac_data, review_flags, hg_commits)
        for commit in commits or []
    ]


# =============================================================================
# GIT ACCESS
# =============================================================================


def safe_git_command(
    cmd: list[str], cwd: Path | None, logger: logging.Logger
) -> tuple[bool, str]:
    """
    Execute a git command safely with error handling.

    Returns:
        (success: bool, output_or_error: str)
    """
    try:
        git_result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=300,  # 5 minute timeout
        )
        return (
            git_result.returncode == 0,
            git_result.stdout.strip() or git_result.stderr.strip(),
        )
    except subprocess.TimeoutExpired:
        logger.error(f"Git command timed out in {cwd}: {' '.join(cmd)}")
        return False, "Command timed out"
    except Exception as e:
        logger.error(f"Unexpected error running git command in {cwd}: {e}")
        return False, str(e)


def fetch_latest_branches(repo_dir: Path, logger: logging.Logger) -> bool:
    """Download the latest remote branches in a git repository."""
    success, output = safe_git_command(
        ["git", "fetch", "origin"], repo_dir.resolve(), logger
    )
    if not success:
        logger.warning(f"git fetch failed in {repo_dir}: {output}")
    return success


def list_branches(repo_dir: Path, logger: logging.Logger) -> List[str]:
    """List names of git branches, local and remote."""
    success, output = safe_git_command(["git", "branch", "-a"], repo_dir, logger)
    if not success:
        logger.warning(f"Could not list branches in {repo_dir}: {output}")
        return []
    return [line.strip().lstrip("* ") for line in output.splitlines() if line.strip()]


def _version_key(version: str) -> tuple[int, ...]:
    return tuple(int(part) for part in re.findall(r"\d+", version))


def newest_tor_browser_branch(branches: Iterable[str]) -> Optional[str]:
    """
    Get the name of the most recent Tor Browser branch.

    Branches are named remotes/origin/tor-browser-<firefox>esr-<tor browser>-N
    and are ranked by Tor Browser version, then Firefox version.
    """
    candidates = []
    for branch in branches:
        found = re.search(r"remotes/origin/tor-browser-(.*?)esr-(.*?)-.*?$", branch)
        if found:
            candidates.append(
                (_version_key(found.group(2)), _version_key(found.group(1)), found.group(0))
            )
    if not candidates:
        return None
    return max(candidates)[2]


def latest_commits(
    repo_dir: Path, branch: str, n: int, logger: logging.Logger
) -> List[dict[str, str]]:
    """Get the latest n commits on the given branch, newest first."""
    success, output = safe_git_command(
        ["git", "log", "--oneline", f"{branch}~{n}..{branch}"], repo_dir, logger
    )
    if not success:
        logger.warning(f"git log failed for {branch}: {output}")
        return []

    commits = []
    for line in output.splitlines():
        parts = line.strip().split(None, 1)
        if not parts:
            continue
        commits.append(
            {"hash": parts[0], "message": parts[1] if len(parts) > 1 else ""}
        )
    return commits


# =============================================================================
# HTTP CLIENTS
# =============================================================================


class ServiceClient:
    """Base class for best-effort clients of one external service."""

    api_type = "web"

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 30.0,
        stats: Optional[APIStatistics] = None,
        auth: Optional[Tuple[str, str]] = None,
        user_agent: str = f"torpatches/{SCRIPT_VERSION}",
    ):
        """Initialize the HTTP client."""
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.stats = stats or api_stats
        self.logger = logging.getLogger("torpatches")
        self.client = httpx.Client(
            timeout=httpx.Timeout(timeout, connect=10.0),
            follow_redirects=True,
            auth=auth,
            headers={"User-Agent": user_agent},
        )

    def __enter__(self):
        """Enter context manager."""
        return self

    def __exit__(self, *args):
        """Exit context manager and cleanup."""
        self.close()

    def close(self):
        """Close HTTP client."""
        if hasattr(self, "client"):
            self.client.close()

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{path}"

    def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> Optional[httpx.Response]:
        """GET a resource, returning None on any failure."""
        url = self._url(path)
        try:
            response = self.client.get(url, params=params)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            self.stats.record_exception(self.api_type, type(e).__name__)
            self.logger.error(f"❌ Error: {self.api_type} request failed for {url}: {e}")
            return None

        if response.status_code != 200:
            self.stats.record_error(self.api_type, response.status_code)
            self.logger.warning(
                f"❌ Error: {self.api_type} query returned error code: {response.status_code} for {url}"
            )
            return None

        self.stats.record_success(self.api_type)
        self.logger.debug(f"Fetched {url}")
        return response

    def get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        """GET a JSON document, returning None on any failure."""
        response = self._get(path, params)
        if response is None:
            return None
        try:
            return response.json()
        except ValueError as e:
            self.stats.record_exception(self.api_type, "invalid_json")
            self.logger.error(f"Invalid JSON response from {response.url}: {e}")
            return None

    def get_text(self, path: str, params: Optional[dict[str, Any]] = None) -> str:
        """GET a text document, returning an empty string on any failure."""
        response = self._get(path, params)
        return response.text if response is not None else ""


class WebPageFetcher(ServiceClient):
    """Fetches plain HTML pages and directory listings."""

    api_type = "web"


def latest_review_status(flags: List[dict[str, Any]]) -> Optional[str]:
    """Status of the last review flag in an attachment's flag list."""
    reviews = [flag for flag in flags if flag.get("name") == "review"]
    if not reviews:
        return None
    return reviews[-1].get("status")


class BugzillaAPIClient(ServiceClient):
    """Client for the bugzilla.mozilla.org REST API."""

    api_type = "bugzilla"

    def fetch_tor_bugs(self) -> List[dict[str, Any]]:
        """Retrieve bugs tagged [tor or (Tor in whiteboard or summary."""
        data = self.get_json("/rest/bug", params=BUGZILLA_TOR_QUERY)
        if not isinstance(data, dict):
            return []
        bugs = data.get("bugs") or []
        self.logger.info(f"Fetched {len(bugs)} Tor-tagged bugs from Bugzilla")
        return bugs

    def fetch_attachments(self, bug_id: Any) -> List[dict[str, Any]]:
        """Retrieve the attachment records of one bug."""
        data = self.get_json(f"/rest/bug/{bug_id}/attachment")
        if not isinstance(data, dict):
            return []
        return (data.get("bugs") or {}).get(str(bug_id)) or []

    def fetch_review_flags(self, bug_id: Any) -> List[str]:
        """Distinct latest review statuses of the bug's live attachments."""
        statuses = {
            latest_review_status(attachment.get("flags") or [])
            for attachment in self.fetch_attachments(bug_id)
            if attachment.get("is_obsolete") != 1
        }
        statuses.discard(None)
        return sorted(statuses)


class TracClient(ServiceClient):
    """Client for the Tor Trac ticket query CSV export."""

    api_type = "trac"

    def fetch_tickets(self, ids: Iterable[str], headers: List[str]) -> List[List[str]]:
        """Retrieve CSV rows (header row first) for a list of ticket ids."""
        ids = list(ids)
        if not ids:
            return []
        id_clause = "&or&".join(f"id={ticket}" for ticket in ids)
        col_clause = "&".join(f"col={header}" for header in headers)
        text = self.get_text(f"/projects/tor/query?{id_clause}&{col_clause}&format=csv")
        if not text:
            return []
        try:
            return list(csv.reader(io.StringIO(text.lstrip("\ufeff"))))
        except csv.Error as e:
            self.stats.record_exception(self.api_type, "invalid_csv")
            self.logger.error(f"Invalid CSV from Trac: {e}")
            return []

    def fetch_trac_data(self, ids: Iterable[str]) -> dict[str, dict[str, str]]:
        """Map ticket ids to their summary, keywords and status."""
        rows = self.fetch_tickets(ids, TRAC_HEADERS)
        trac_data = {}
        for row in rows[1:]:
            record = dict(zip(TRAC_HEADERS, row))
            ticket = record.pop("id", None)
            if ticket:
                trac_data[ticket] = record
        self.logger.info(f"Fetched {len(trac_data)} tickets from Trac")
        return trac_data


class MercurialClient(ServiceClient):
    """Client for the mozilla-central json-log."""

    api_type = "hg"

    def fetch_commits(self, mozilla_bug_id: Any) -> List[dict[str, Any]]:
        """Fetch all mozilla-central commits for a given Mozilla bug."""
        data = self.get_json(f"/json-log?rev=Bug+{mozilla_bug_id}")
        if not isinstance(data, dict):
            return []
        return data.get("entries") or []


class TransifexAPIClient(ServiceClient):
    """Client for the Transifex REST API, authenticated with an API token."""

    api_type = "transifex"

    def __init__(
        self,
        token: Optional[str],
        api_url: str = DEFAULT_URLS["transifex_api"],
        www_url: str = DEFAULT_URLS["transifex_www"],
        timeout: float = 30.0,
        stats: Optional[APIStatistics] = None,
        user_agent: str = f"torpatches/{SCRIPT_VERSION}",
    ):
        super().__init__(
            api_url,
            timeout=timeout,
            stats=stats,
            auth=("api", token) if token else None,
            user_agent=user_agent,
        )
        self.www_url = www_url.rstrip("/")

    def statistics(self, project: str, resource: str) -> dict[str, Any]:
        """Get per-language statistics on a resource."""
        data = self.get_json(
            f"{self.www_url}/api/2/project/{project}/resource/{resource}/stats/"
        )
        return data if isinstance(data, dict) else {}


def read_transifex_token(path: str) -> Optional[str]:
    """Read the Transifex API token from a file such as ~/.transifex."""
    token_path = Path(path).expanduser()
    try:
        return token_path.read_text(encoding="utf-8").strip() or None
    except FileNotFoundError:
        logging.getLogger("torpatches").warning(f"Transifex token file not found: {token_path}")
        return None


# =============================================================================
# LOCALE ANALYSIS
# =============================================================================


def normalize_locale(locale: Optional[str]) -> Optional[str]:
    """Bring a locale code into Tor Browser's underscore form."""
    if not locale:
        return locale
    underscored = locale.replace("-", "_")
    return LOCALE_ALIASES.get(underscored, underscored)


def analyze_translation_completeness(
    stats_by_resource: List[dict[str, dict[str, Any]]],
) -> List[dict[str, Any]]:
    """
    Sum translation counts per locale across Tor Browser resources.

    Only locales present in every resource are reported.
    """
    if not stats_by_resource:
        return []

    locales = set(stats_by_resource[0])
    for resource_stats in stats_by_resource[1:]:
        locales &= set(resource_stats)

    progress = []
    for locale in sorted(locales):
        sums: dict[str, Any] = {key: 0 for key in COUNTING_KEYS}
        for resource_stats in stats_by_resource:
            for key in COUNTING_KEYS:
                sums[key] += resource_stats[locale].get(key) or 0
        sums["locale"] = locale
        progress.append(sums)
    return progress


def completed_locales_in_branch(tree_html: str) -> List[str]:
    """Locale files listed in a translation.git tree page."""
    entries = re.findall(r"translation.git/tree/(.*?)\?h=", tree_html or "")
    return [
        entry.replace(".json", "")
        for entry in entries
        if entry and entry != "README" and not entry.startswith(".")
    ]


def completed_locales(tree_pages: Iterable[str]) -> List[str]:
    """Locales completed in every one of the given branch tree pages."""
    locale_sets = [set(completed_locales_in_branch(page)) for page in tree_pages]
    if not locale_sets:
        return []
    return [
        locale.replace("_", "-") for locale in sorted(set.intersection(*locale_sets))
    ]


def firefox_locales(page_html: str) -> List[str]:
    """Deployed Firefox locales from the mozilla.org download page."""
    return sorted(
        {normalize_locale(lang) for lang in re.findall(r'lang="(.+?)"', page_html or "")}
    )


def tbb_alpha_locales(page_html: str) -> List[str]:
    """Locales offered on the Tor Browser alpha download page."""
    return sorted(
        set(re.findall(r"tor-browser-linux64.*?a.*?_(.*?)\.tar.xz[^.]", page_html or ""))
    )


def tbb_locales_we_can_add(translated: Iterable[str], released: Iterable[str]) -> List[str]:
    """Translated locales not yet released and not redundant."""
    return sorted(set(translated) - set(released) - REDUNDANT_LOCALES)


def parse_file_size(size: Optional[str]) -> float:
    """Convert a directory listing size such as 52M into bytes."""
    if size is None:
        return 0
    if size.endswith("G"):
        factor = 1073741824
    elif size.endswith("M"):
        factor = 1048576
    elif size.endswith("K"):
        factor = 1024
    else:
        factor = 1
    number = match(r"([0-9.]+)", size)
    if number is None:
        return 0
    return factor * float(number)


def file_sizes(listing: str, locale: Optional[str] = None) -> List[float]:
    """File sizes in bytes from a dist directory listing, largest first."""
    locale_token = f"_{locale}." if locale else None
    sizes = []
    for line in (listing or "").split("\n"):
        if locale_token and locale_token not in line:
            continue
        size = match(r"\s([0-9.]+[KM]?)\s*?$", line)
        if size is not None:
            sizes.append(parse_file_size(size))
    return sorted(sizes, reverse=True)


def dist_urls(listing: str, home: str) -> List[str]:
    """Sub-directory URLs of a dist.torproject.org listing."""
    urls = []
    for line in (listing or "").split("\n"):
        if "folder.gif" not in line:
            continue
        href = match(r'href="(.*?)"', line)
        if href is not None:
            urls.append(f"{home}{href}")
    return urls


def locale_names(page_html: str) -> dict[str, str]:
    """Map normalized locale codes to language names from the ss64 locale table."""
    names = {}
    soup = BeautifulSoup(page_html or "", "html.parser")
    for row in soup.select("#localetbl tr"):
        cells = [cell.get_text(strip=True) for cell in row.find_all("td")]
        if len(cells) >= 2:
            names[normalize_locale(cells[1])] = cells[0]
    return names


def tbb_locale_progress(
    progress: List[dict[str, Any]],
    names: dict[str, str],
    firefox: Iterable[str],
    current: Iterable[str],
) -> List[dict[str, Any]]:
    """Annotate translation progress with language names and deployment status."""
    firefox_set = {normalize_locale(locale) for locale in firefox}
    current_set = {normalize_locale(locale) for locale in current}
    annotated = []
    for row in progress:
        locale = normalize_locale(row.get("locale"))
        annotated.append(
            dict(
                row,
                locale_name=names.get(locale),
                firefox="yes" if locale in firefox_set else "no",
                tbb_deployed="yes" if locale in current_set else "no",
            )
        )
    return annotated


def de_key(data: dict[str, dict[str, Any]], key: str) -> List[dict[str, Any]]:
    """Flatten a map of maps, storing each outer key in the inner map under key."""
    return [dict(inner, **{key: str(outer)}) for outer, inner in data.items()]


def web_portal_data(stats: dict[str, dict[str, Any]]) -> List[dict[str, Any]]:
    """Per-language rows, most translated entities first."""
    rows = sorted(de_key(stats or {}, "language"), key=lambda row: row["language"])
    return sorted(rows, key=lambda row: row.get("translated_entities") or 0, reverse=True)


# =============================================================================
# HTML RENDERING
# =============================================================================


def now_string() -> str:
    """Returns the current date-time in UTC as a reasonably readable string."""
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%b-%d %H:%M UTC")


def compress_css(css: str) -> str:
    return re.sub(r"\s+", " ", css).strip()


def esc(value: Any) -> str:
    return html.escape("" if value is None else str(value))


# Ticket ids that are safe as a URL path segment and a file name
PAGE_NAME_PATTERN = r"[\w.-]*\w[\w.-]*"


def is_page_name(ticket: Optional[str]) -> bool:
    """Whether a ticket id can name a page under the site directory."""
    return ticket is not None and re.fullmatch(PAGE_NAME_PATTERN, ticket) is not None


def redirect_line(ticket: str, commits: List[dict[str, str]], base: str = DEFAULT_URLS["patch_base"]) -> str:
    """An nginx rule sending /<ticket> straight to its only patch."""
    return f"location /{ticket} {{ rewrite ^ {patch_url(commits[0]['hash'], base)}; }}\n"


def redirect_file_content(
    single_patch_bugs: dict[str, List[dict[str, str]]],
    base: str = DEFAULT_URLS["patch_base"],
) -> str:
    """nginx redirect rules for every single-patch ticket."""
    lines = ["location /uplift { rewrite ^ / ; }\n"]
    lines.extend(
        redirect_line(ticket, commits, base)
        for ticket, commits in single_patch_bugs.items()
        if is_page_name(ticket)
    )
    return "".join(lines)


def maps_to_table_rows(header_items: List[str], data: Iterable[dict[str, Any]]) -> List[List[Any]]:
    """Takes a list of maps and converts them to table rows."""
    return [[datum.get(item) for item in header_items] for datum in data]


def table_rows_to_html(header_items: List[str], class_name: str, rows: List[List[Any]]) -> str:
    header = "".join(f"<th>{esc(item)}</th>" for item in header_items)
    body = "".join(
        "<tr>" + "".join(f"<td>{esc(item)}</td>" for item in row) + "</tr>"
        for row in rows
    )
    return f'<table class="{esc(class_name)}"><tr class="header">{header}</tr>{body}</table>'


class PageRenderer:
    """Renders the torpat.ch pages and writes them into the site directory."""

    def __init__(self, config: dict[str, Any], logger: logging.Logger) -> None:
        self.config = config
        self.logger = logger
        self.site_dir = Path(config.get("output", {}).get("site_dir", DEFAULT_OUTPUT_DIR))
        self.patch_base = config_url(config, "patch_base")

    # --- page furniture -----------------------------------------------------

    def embed_css(self, css: str) -> str:
        return f'<style type="text/css">{compress_css(css)}</style>'

    def _stylesheet(self, name: str, default_css: str) -> str:
        """Built-in stylesheet, unless output.css names a replacement file."""
        css_file = self.config.get("output", {}).get("css", {}).get(name)
        if css_file:
            try:
                return Path(css_file).read_text(encoding="utf-8")
            except OSError as e:
                self.logger.warning(f"Could not read stylesheet {css_file}: {e}")
        return default_css

    def head(self, title: str, css: Optional[str] = None) -> str:
        style = self.embed_css(css) if css else ""
        return f'<head><title>{esc(title)}</title><meta charset="utf-8">{style}</head>'

    def footer(self) -> str:
        """A footer for each page."""
        return (
            f'<p><span style="font-style: italic">Last update: {esc(now_string())} </span>'
            f'<span><a href="{esc(config_url(self.config, "source"))}">(Source on github)</a></span></p>'
        )

    def page(self, title: str, body: str, css: Optional[str] = None) -> str:
        return f"<!DOCTYPE html>\n<html>{self.head(title, css)}<body>{body}{self.footer()}</body></html>\n"

    # --- uplift table -------------------------------------------------------

    def hg_patch_list_html(self, hg: Optional[List[dict[str, Any]]]) -> str:
        """Links to the mozilla-central changesets landed for one bug."""
        if not hg:
            return ""
        hg_base = config_url(self.config, "hg")
        links = ",&nbsp;".join(
            f'<a title="{esc(commit.get("desc"))}" href="{esc(hg_base)}/rev/{esc(commit.get("node"))}">'
            f'{esc((commit.get("node") or "")[:8])}</a>'
            for commit in hg
        )
        return f"<span>&nbsp;[{links}]</span>"

    def bugzilla_list_html(self, bugzilla: List[dict[str, Any]]) -> str:
        """One line per Mozilla bug with priority and review flags."""
        bugzilla_base = config_url(self.config, "bugzilla")
        paragraphs = []
        for bug in bugzilla:
            fixed = bugzilla_fixed(bug)
            priority = bug.get("priority")
            text = (
                f'<a class="{RESOLVED if fixed else UNRESOLVED}" title="{esc(bug.get("summary"))}" '
                f'href="{esc(bugzilla_base)}/{esc(bug.get("id"))}">{esc(bug.get("id"))}</a>'
            )
            if not fixed and priority and priority != "--":
                text += f" ({esc(priority)})"
            text += " "
            flags = bug.get("flags") or []
            if flags:
                text += "[" + ",".join(f"r{esc(flag)}" for flag in flags) + "]"
            text += self.hg_patch_list_html(bug.get("hg"))
            paragraphs.append(f"<p>{text}</p>")
        return "".join(paragraphs)

    def uplift_table(self, rows: List[dict[str, Any]], show_completed: bool) -> str:
        """Generates the entire uplift table in HTML."""
        trac_base = config_url(self.config, "trac")
        lines = [
            '<table class="uplift">',
            '<tr class="header"><th>Tor #</th><th>Tor keywords</th><th>Tor hash</th>'
            "<th>Tor name</th><th>Moz # (Prio)</th></tr>",
        ]
        for row in rows:
            state = classify_row(row)
            if not show_completed and state not in (UNRESOLVED, UNFILED):
                continue
            trac = row.get("trac") or {}
            keywords = "".join(f"<p>{esc(k)}</p>" for k in _trac_keywords(row))
            lines.append(
                f'<tr class="{state}">'
                f'<td class="id"><a href="{esc(trac_base)}/{esc(row["id"])}" title="{esc(trac.get("summary"))}">{esc(row["id"])}</a></td>'
                f'<td class="keywords">{keywords}</td>'
                f'<td class="hash"><a href="{esc(patch_url(row["hash"], self.patch_base))}">{esc(row["hash"])}</a></td>'
                f'<td class="title">{esc(row["title"])}</td>'
                f"<td>{self.bugzilla_list_html(row.get('bugzilla') or [])}</td>"
                "</tr>"
            )
        lines.append("</table>")
        return "\n".join(lines)

    def uplift_page(self, rows: List[dict[str, Any]], show_completed: bool) -> str:
        title = "Tor Browser patches for uplift"
        body = f"<h3>{esc(title)}</h3>{self.uplift_table(rows, show_completed)}"
        return self.page(title, body, self._stylesheet("uplift", UPLIFT_CSS))

    # --- patch link pages ---------------------------------------------------

    def html_patch_list(self, commits: List[dict[str, str]]) -> str:
        """Creates an HTML list of links to patches given in commits."""
        items = "".join(
            f'<li>{esc(commit["hash"])} <a href="{esc(patch_url(commit["hash"], self.patch_base))}">'
            f'{esc(commit["message"])}</a></li>'
            for commit in commits
        )
        return f"<pre><ul>{items}</ul></pre>"

    def patch_list_page(self, title: str, commits: List[dict[str, str]]) -> str:
        return self.page(title, f"<h3>{esc(title)}</h3>{self.html_patch_list(commits)}")

    # --- locale pages -------------------------------------------------------

    def tbb_locale_table(self, progress: List[dict[str, Any]]) -> str:
        rows = sorted(progress, key=lambda row: row.get("locale") or "")
        rows = sorted(rows, key=lambda row: row.get("translated_entities") or 0, reverse=True)
        return table_rows_to_html(
            LOCALE_TABLE_HEADERS, "locale", maps_to_table_rows(LOCALE_TABLE_HEADERS, rows)
        )

    def tbb_locale_page(self, data: dict[str, Any]) -> str:
        resources = "<br>".join(esc(resource) for resource in data.get("resources", []))
        body = (
            "<h2>Monitoring Tor Browser locales</h2>"
            '<p class="label">Tor Browser alphas already deployed:</p>'
            f"<p>{esc(', '.join(data.get('current', [])))}</p>"
            '<p class="label">Translated locales not yet deployed:</p>'
            f"<p>{esc(', '.join(data.get('new', [])))}</p>"
            '<p class="label">Total occupied Tor Browser disk space:</p>'
            f"<p>{data.get('gb_total', 0):.2f} GB</p>"
            '<p class="label">Needed disk space for one locale:</p>'
            f"<p>{data.get('gb_single', 0):.2f} GB</p>"
            '<p class="label">String files required for Tor Browser:</p>'
            f"<p>{resources}</p>"
            '<p class="label">Translation progress:</p>'
            f"<p>{self.tbb_locale_table(data.get('progress', []))}</p>"
        )
        return self.page(
            "torpat.ch: Tor Browser locales", body, self._stylesheet("locale", LOCALE_CSS)
        )

    def web_portal_page(self, name: str, stats: dict[str, dict[str, Any]]) -> str:
        all_rows = web_portal_data(stats)
        tier_1 = [row for row in all_rows if row["language"] in TIER_1_LANGUAGES]
        headers = WEB_PORTAL_TABLE_HEADERS
        body = (
            f"<h1>Monitoring {esc(name)} locales</h1>"
            '<p class="label">Translation progress (Tier 1 locales):</p>'
            f"{table_rows_to_html(headers, 'locale', maps_to_table_rows(headers, tier_1))}"
            '<p class="label">Translation progress (all locales):</p>'
            f"{table_rows_to_html(headers, 'locale', maps_to_table_rows(headers, all_rows))}"
        )
        return self.page(
            f"torpat.ch: Monitoring {name} locales", body, self._stylesheet("locale", LOCALE_CSS)
        )

    # --- file output --------------------------------------------------------

    def _write(self, path: Path, content: str) -> Path:
        if not path.is_absolute():
            path = self.site_dir / path
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        self.logger.debug(f"Wrote {path}")
        return path

    def write_uplift_pages(self, rows: List[dict[str, Any]]) -> List[Path]:
        output = self.config.get("output", {})
        written = [
            self._write(
                Path(output.get("uplift_page", "index.html")),
                self.uplift_page(rows, self.config.get("uplift", {}).get("show_completed", False)),
            )
        ]
        all_page = output.get("uplift_all_page")
        if all_page:
            written.append(self._write(Path(all_page), self.uplift_page(rows, True)))
        self.logger.info(f"Wrote uplift table with {len(rows)} patches")
        return written

    def write_redirect_file(self, single_patch_bugs: dict[str, List[dict[str, str]]]) -> Path:
        """Create a redirect file from the single-patch bugs map."""
        redirect_file = Path(self.config.get("output", {}).get("redirect_file", "redirects.txt"))
        path = self._write(redirect_file, redirect_file_content(single_patch_bugs, self.patch_base))
        self.logger.info(f"Wrote {len(single_patch_bugs)} redirects to {path}")
        return path

    def write_indirect_page(self, ticket: str, commits: List[dict[str, str]]) -> Optional[Path]:
        """Create a page listing every patch for a multi-patch ticket."""
        if not is_page_name(ticket):
            self.logger.warning(f"Skipping link page for unusable ticket id {ticket!r}")
            return None
        title = f"Patches for Tor Browser Bug #{ticket}"
        return self._write(Path(ticket), self.patch_list_page(title, commits))

    def write_tbb_locale_page(self, data: dict[str, Any]) -> Path:
        locale_page = self.config.get("output", {}).get("locale_page", "locales")
        return self._write(Path(locale_page), self.tbb_locale_page(data))

    def write_web_portal_page(self, name: str, stats: dict[str, dict[str, Any]], path: str) -> Path:
        return self._write(Path(path), self.web_portal_page(name, stats))


# =============================================================================
# MAIN ORCHESTRATION AND CLI ENTRY POINT
# =============================================================================


class TorPatchesReporter:
    """Main orchestrator for the torpat.ch site."""

    def __init__(self, config: dict[str, Any], logger: logging.Logger) -> None:
        self.config = config
        self.logger = logger
        self.renderer = PageRenderer(config, logger)
        http_config = config.get("http", {})
        self.timeout = float(http_config.get("timeout", 30.0))
        self.user_agent = http_config.get("user_agent") or f"torpatches/{SCRIPT_VERSION}"

    def read_commits(self) -> List[dict[str, str]]:
        """Latest Tor Browser patches on the newest branch, Mozilla commits removed."""
        git_config = self.config.get("git", {})
        repo_dir = Path(git_config.get("repo_dir", "../tor-browser"))
        if git_config.get("fetch", True):
            fetch_latest_branches(repo_dir, self.logger)

        branch = git_config.get("branch") or newest_tor_browser_branch(
            list_branches(repo_dir, self.logger)
        )
        if not branch:
            self.logger.error(f"No tor-browser branch found in {repo_dir}")
            return []

        count = int(git_config.get("commit_count", DEFAULT_COMMIT_COUNT))
        self.logger.info(f"Reading {count} commits from {branch}")
        return remove_mozilla_commits(latest_commits(repo_dir, branch, count, self.logger))

    def collect_uplift_data(self, commits: List[dict[str, str]]) -> List[dict[str, Any]]:
        """Retrieves the full uplift table data given a list of tor patches."""
        uplift_config = self.config.get("uplift", {})

        with BugzillaAPIClient(
            config_url(self.config, "bugzilla"), self.timeout, user_agent=self.user_agent
        ) as bugzilla:
            mozilla_bug_map = mozilla_bugs_by_tor_id(bugzilla.fetch_tor_bugs())

            trac_data = None
            if uplift_config.get("include_trac", True):
                with TracClient(
                    config_url(self.config, "trac"), self.timeout, user_agent=self.user_agent
                ) as trac:
                    trac_data = trac.fetch_trac_data(trac_ids(commits))

            review_flags = None
            if uplift_config.get("include_review_flags", True):
                review_flags = functools.lru_cache(maxsize=None)(bugzilla.fetch_review_flags)

            with MercurialClient(
                config_url(self.config, "hg"), self.timeout, user_agent=self.user_agent
            ) as hg:
                hg_commits = None
                if uplift_config.get("include_hg", False):
                    hg_commits = functools.lru_cache(maxsize=None)(hg.fetch_commits)

                return assemble_uplift_data(
                    commits, mozilla_bug_map, trac_data, review_flags, hg_commits
                )

    def write_patch_pages(self) -> dict[str, int]:
        """Write the uplift table, redirect map and multi-patch link pages."""
        commits = self.read_commits()
        single, multiple = singles_and_multiples(commits)

        rows = self.collect_uplift_data(commits)
        self.renderer.write_uplift_pages(rows)
        self.renderer.write_redirect_file(single)
        link_pages = [
            self.renderer.write_indirect_page(ticket, ticket_commits)
            for ticket, ticket_commits in multiple.items()
        ]

        states: dict[str, int] = {}
        for row in rows:
            state = classify_row(row)
            states[state] = states.get(state, 0) + 1
        self.logger.info(f"Patch states: {states}")

        return {
            "patches": len(rows),
            "redirects": sum(1 for ticket in single if is_page_name(ticket)),
            "link_pages": sum(1 for path in link_pages if path is not None),
        }

    def _transifex_token(self) -> Optional[str]:
        transifex_config = self.config.get("transifex", {})
        if transifex_config.get("token"):
            return transifex_config["token"]
        return read_transifex_token(transifex_config.get("token_file", "~/.transifex"))

    def _disk_space_bytes(self, web: WebPageFetcher, pages: List[str], locale: Optional[str]) -> float:
        """Disk space on dist.torproject.org taken by one locale, or by everything."""
        return sum(sum(file_sizes(web.get_text(page), locale)) for page in pages)

    def collect_locale_data(self, transifex: TransifexAPIClient, web: WebPageFetcher) -> dict[str, Any]:
        transifex_config = self.config.get("transifex", {})
        project = transifex_config.get("project", "torproject")
        resources = transifex_config.get("resources") or TBB_LOCALE_RESOURCES

        progress = analyze_translation_completeness(
            [transifex.statistics(project, resource) for resource in resources]
        )
        current = tbb_alpha_locales(web.get_text(config_url(self.config, "tbb_alpha_download")))
        firefox = firefox_locales(web.get_text(config_url(self.config, "firefox_locales")))
        names = locale_names(web.get_text(config_url(self.config, "locale_names")))

        tree_url = config_url(self.config, "translation_tree")
        translated = completed_locales(
            web.get_text(f"{tree_url}?h={branch}_completed")
            for branch in transifex_config.get("completed_branches", [])
        )

        dist_home = config_url(self.config, "dist")
        pages = dist_urls(web.get_text(dist_home), dist_home)
        gigabyte = 1073741824

        return {
            "resources": resources,
            "current": current,
            "new": tbb_locales_we_can_add(translated, current),
            "gb_total": self._disk_space_bytes(web, pages, None) / gigabyte,
            "gb_single": self._disk_space_bytes(web, pages, "zh-CN") / gigabyte,
            "progress": tbb_locale_progress(progress, names, firefox, current),
        }

    def write_locale_pages(self) -> dict[str, int]:
        """Write the Tor Browser locale page and one page per web portal."""
        transifex_config = self.config.get("transifex", {})
        token = self._transifex_token()
        if not token:
            self.logger.warning("No Transifex token configured - translation statistics will be empty")

        with TransifexAPIClient(
            token,
            api_url=config_url(self.config, "transifex_api"),
            www_url=config_url(self.config, "transifex_www"),
            timeout=self.timeout,
            user_agent=self.user_agent,
        ) as transifex, WebPageFetcher(timeout=self.timeout, user_agent=self.user_agent) as web:
            data = self.collect_locale_data(transifex, web)
            self.renderer.write_tbb_locale_page(data)

            portals = self.config.get("web_portals") or []
            for portal in portals:
                stats = transifex.statistics(portal["project"], portal["resource"])
                self.renderer.write_web_portal_page(portal["name"], stats, portal["path"])

        self.logger.info(f"Wrote locale page with {len(data['progress'])} locales")
        return {"locales": len(data["progress"]), "web_portals": len(portals)}


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Generate the torpat.ch patch uplift and locale pages",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s patches --repo-dir ../tor-browser
  %(prog)s locales --output-dir ../../torpat.ch
  %(prog)s all --no-fetch --show-completed --verbose
        """,
    )

    parser.add_argument(
        "command",
        choices=["patches", "locales", "all"],
        help="Which pages to generate",
    )

    parser.add_argument(
        "--site",
        default=DEFAULT_SITE,
        help=f"Site name (used for config override, default: {DEFAULT_SITE})",
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=DEFAULT_CONFIG_DIR,
        help=f"Configuration directory (default: {DEFAULT_CONFIG_DIR})",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        help="Site output directory (overrides output.site_dir)",
    )
    parser.add_argument(
        "--repo-dir",
        type=Path,
        help="Path to the tor-browser git clone (overrides git.repo_dir)",
    )
    parser.add_argument(
        "--commit-count",
        type=int,
        help="Number of branch commits to examine (overrides git.commit_count)",
    )

    parser.add_argument(
        "--no-fetch", action="store_true", help="Skip 'git fetch' before reading commits"
    )
    parser.add_argument(
        "--show-completed",
        action="store_true",
        help="Include resolved and no-uplift patches in the main uplift table",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable verbose logging"
    )
    parser.add_argument(
        "--validate-only", action="store_true", help="Validate configuration and exit"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level from configuration",
    )

    return parser.parse_args(argv)


def apply_argument_overrides(config: dict[str, Any], args: argparse.Namespace) -> dict[str, Any]:
    """Fold command line overrides into the loaded configuration."""
    config = copy.deepcopy(config)
    if args.output_dir:
        config.setdefault("output", {})["site_dir"] = str(args.output_dir)
    if args.repo_dir:
        config.setdefault("git", {})["repo_dir"] = str(args.repo_dir)
    if args.commit_count:
        config.setdefault("git", {})["commit_count"] = args.commit_count
    if args.no_fetch:
        config.setdefault("git", {})["fetch"] = False
    if args.show_completed:
        config.setdefault("uplift", {})["show_completed"] = True
    if args.log_level:
        config.setdefault("logging", {})["level"] = args.log_level
    elif args.verbose:
        config.setdefault("logging", {})["level"] = "DEBUG"
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    try:
        args = parse_arguments(argv)

        try:
            config = load_configuration(args.config_dir, args.site)
        except Exception as e:
            print(f"ERROR: Failed to load configuration: {e}", file=sys.stderr)
            return 1

        config = apply_argument_overrides(config, args)

        log_config = config.get("logging", {})
        logger = setup_logging(
            level=log_config.get("level", "INFO"),
            include_timestamps=log_config.get("include_timestamps", True),
        )

        logger.info(f"torpatches v{SCRIPT_VERSION}")
        logger.info(f"Site: {args.site}")
        logger.info(f"Configuration digest: {compute_config_digest(config)[:12]}...")

        if args.validate_only:
            logger.info("Configuration validation successful")
            print(f"✅ Configuration valid for site '{args.site}'")
            print(f"   - Output directory: {config.get('output', {}).get('site_dir', DEFAULT_OUTPUT_DIR)}")
            print(f"   - Web portals: {len(config.get('web_portals') or [])}")
            return 0

        reporter = TorPatchesReporter(config, logger)
        summary: dict[str, int] = {}

        if args.command in ("patches", "all"):
            summary.update(reporter.write_patch_pages())
        if args.command in ("locales", "all"):
            summary.update(reporter.write_locale_pages())

        print("\n✅ Site generation completed successfully!")
        for key, value in summary.items():
            print(f"   - {key.replace('_', ' ').capitalize()}: {value}")
        print(f"   - Output directory: {reporter.renderer.site_dir}")

        api_stats_output = api_stats.format_console_output()
        if api_stats_output:
            print(api_stats_output)

        return 0

    except KeyboardInterrupt:
        print("\n❌ Operation cancelled by user", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"❌ Unexpected error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
