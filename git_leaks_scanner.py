#!/usr/bin/env python3
"""
===================================================================
GIT LEAKS SCANNER - SCAN ORCHESTRATION & TRIAGE SERVICE
===================================================================

PURPOSE:
    Runs gitleaks against a list of git repositories, keeps every
    scan and its findings on disk, and serves them to a dashboard
    where people triage each finding as confirmed, false positive
    or still pending.

PIPELINE (one scan):
    pending -> scanning -> clone -> count commits -> gitleaks -> persist
    The scan ends as completed or failed. The cloned working directory
    is removed afterwards whatever the outcome.

FEATURES:
    ✓ Async pipeline: clone, commit count and gitleaks run as subprocesses
    ✓ Shallow clones (bounded depth) into per-scan working directories
    ✓ Optional history window (--since-days) shared by commit count and scan
    ✓ File-based report store: metadata.json + one detail file per scan
    ✓ Finding triage: pending / false_positive / confirmed
    ✓ Aggregate stats across completed scans
    ✓ Optional concurrency limit for "scan all"
    ✓ Startup recovery of scans interrupted by a crash
    ✓ Repository discovery from a GitHub organization or user
    ✓ aiohttp JSON API for the dashboard
    ✓ Structured JSON logging for observability

REQUIREMENTS:
    External tools on PATH: git, gitleaks (v8)
    Install dependencies:
        pip install aiohttp aiofiles PyGithub tqdm

USAGE:
    # Start the dashboard API (default mode)
    python git_leaks_scanner.py --serve --port 3000

    # Scan one repository from repos.txt, last 30 days only
    python git_leaks_scanner.py --repo my-service --since-days 30

    # Scan every configured repository plus a GitHub organization
    export GITHUB_TOKEN="ghp_your_token_here"
    python git_leaks_scanner.py --all --org my-org

    # Inspect stored results
    python git_leaks_scanner.py --list
    python git_leaks_scanner.py --stats

CONFIGURATION:
    Set via environment variables:
    - REPOS_FILE: Repository list, one URL per line (default: repos.txt)
    - REPORTS_DIR: Report store location (default: reports)
    - TEMP_DIR: Working directory for clones (default: temp)
    - GIT_BINARY / GITLEAKS_BINARY: Executables (default: git / gitleaks)
    - CLONE_DEPTH: Git shallow clone depth (default: 1000)
    - MAX_CONCURRENT_SCANS: Parallel scans, 0 = unbounded (default: 0)
    - SHUTDOWN_GRACE_SECONDS: Wait for running scans on shutdown (default: 0)
    - HOST / PORT: API bind address (default: 0.0.0.0 / 3000)
    - GITHUB_TOKEN / TARGET_ORG: Optional GitHub repository discovery
    - LOG_FORMAT: text|json (default: text)

===================================================================
"""
import argparse
import asyncio
import contextlib
import dataclasses
import json
import logging
import os
import re
import shutil
import sys
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from tqdm import tqdm
from typing import List, Dict, Any, Optional, Tuple

# Third-party imports with error handling
try:
    from github import Github, Auth, GithubException, RateLimitExceededException
    from aiohttp import web
    import aiofiles
    import aiofiles.os
except ImportError as e:
    print(f"ERROR: Missing required dependency: {e}")
    print("Install with: pip install aiohttp aiofiles PyGithub tqdm")
    sys.exit(1)


# ===================================================================
# CONFIGURATION & CONSTANTS
# ===================================================================

# Environment-driven configuration
REPOS_FILE = Path(os.environ.get("REPOS_FILE", "repos.txt"))
REPORTS_DIR = Path(os.environ.get("REPORTS_DIR", "reports"))
TEMP_DIR = Path(os.environ.get("TEMP_DIR", "temp"))
GIT_BINARY = os.environ.get("GIT_BINARY", "git")
GITLEAKS_BINARY = os.environ.get("GITLEAKS_BINARY", "gitleaks")
CLONE_DEPTH = int(os.environ.get("CLONE_DEPTH", "1000"))
CLONE_TIMEOUT_SECONDS = int(os.environ.get("CLONE_TIMEOUT_SECONDS", "300"))
SCAN_TIMEOUT_SECONDS = int(os.environ.get("SCAN_TIMEOUT_SECONDS", "600"))
MAX_CONCURRENT_SCANS = int(os.environ.get("MAX_CONCURRENT_SCANS", "0"))  # 0 = unbounded
SHUTDOWN_GRACE_SECONDS = float(os.environ.get("SHUTDOWN_GRACE_SECONDS", "0"))
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3000"))
LOG_FORMAT = os.environ.get("LOG_FORMAT", "text")  # text|json

# GitHub repository discovery (optional)
GITHUB_TOKEN = os.environ.get("GITHUB_TOKEN")
TARGET_ORG = os.environ.get("TARGET_ORG", "")
GITHUB_API_BACKOFF_BASE = float(os.environ.get("GITHUB_API_BACKOFF_BASE", "2.0"))
GITHUB_API_MAX_RETRIES = int(os.environ.get("GITHUB_API_MAX_RETRIES", "5"))

# Operational constants
COMMIT_COUNT_TIMEOUT_SECONDS = 60
DIAGNOSTIC_MAX_CHARS = 2000       # Captured stderr kept in error messages
SCANNER_VERSION = "1.0.0"

# Working directories are named after scan ids: <repo name>-<epoch ms>
SCAN_ID_PATTERN = re.compile(r"^.+-\d{13,}$")

# Report store layout
METADATA_FILENAME = "metadata.json"
DETAIL_SUFFIX = "-detail.json"

# gitleaks exit codes treated as success
GITLEAKS_EXIT_NO_LEAKS = 0
GITLEAKS_EXIT_LEAKS_FOUND = 1

INTERRUPTED_ERROR = "Interrupted: the scanner process exited before this scan finished"
CANCELLED_ERROR = "Scan cancelled"


# ===================================================================
# LOGGING SETUP
# ===================================================================

class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add custom fields
        if hasattr(record, 'scan_id'):
            log_data["scan_id"] = record.scan_id
        if hasattr(record, 'repo'):
            log_data["repo"] = record.repo
        if hasattr(record, 'finding_count'):
            log_data["finding_count"] = record.finding_count

        return json.dumps(log_data)


def setup_logging(log_format: str = "text") -> logging.Logger:
    """Setup logging with either text or JSON format."""
    logger = logging.getLogger(__name__)
    logger.setLevel(logging.INFO)

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

    logger.addHandler(handler)
    return logger


logger = setup_logging(LOG_FORMAT)


# ===================================================================
# ERRORS
# ===================================================================

class ScannerError(Exception):
    """Base class for failures that end a scan."""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


class CloneError(ScannerError):
    """git clone exited non-zero, timed out or could not be started."""


class ScanExecutionError(ScannerError):
    """gitleaks exited with a code other than 'no leaks' or 'leaks found'."""


class ReportParseError(ScannerError):
    """A gitleaks report exists but is not a JSON list of findings."""


# ===================================================================
# DATA MODEL
# ===================================================================

class ScanStatus(str, Enum):
    """Lifecycle of a scan: pending -> scanning -> completed | failed."""

    PENDING = "pending"
    SCANNING = "scanning"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({ScanStatus.COMPLETED, ScanStatus.FAILED})


class ReviewStatus(str, Enum):
    """Triage state of a single finding."""

    PENDING = "pending"
    FALSE_POSITIVE = "false_positive"
    CONFIRMED = "confirmed"


@dataclass(frozen=True)
class RepoConfig:
    """A scan target."""
    name: str
    url: str


@dataclass
class ScanResult:
    """Metadata of one scan. Serialized with the dashboard's camelCase keys."""
    id: str
    repo_name: str
    repo_url: str
    timestamp: str
    commit_count: int = 0
    since_days: Optional[int] = None
    report_path: str = ""
    findings_count: int = 0
    status: ScanStatus = ScanStatus.PENDING
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "repoName": self.repo_name,
            "repoUrl": self.repo_url,
            "timestamp": self.timestamp,
            "commitCount": self.commit_count,
            "reportPath": self.report_path,
            "findingsCount": self.findings_count,
            "status": self.status.value,
        }
        if self.since_days is not None:
            data["sinceDays"] = self.since_days
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanResult":
        return cls(
            id=data["id"],
            repo_name=data.get("repoName", ""),
            repo_url=data.get("repoUrl", ""),
            timestamp=data.get("timestamp", ""),
            commit_count=int(data.get("commitCount") or 0),
            since_days=data.get("sinceDays"),
            report_path=data.get("reportPath") or "",
            findings_count=int(data.get("findingsCount") or 0),
            status=ScanStatus(data.get("status", ScanStatus.PENDING.value)),
            error=data.get("error"),
        )


FINDING_OWN_KEYS = ("id", "reviewStatus")

# gitleaks report key -> LeakFinding attribute
GITLEAKS_FIELDS = {
    "Description": "description",
    "StartLine": "start_line",
    "EndLine": "end_line",
    "StartColumn": "start_column",
    "EndColumn": "end_column",
    "Match": "match",
    "Secret": "secret",
    "File": "file",
    "Commit": "commit",
    "Entropy": "entropy",
    "Author": "author",
    "Email": "email",
    "Date": "date",
    "Message": "message",
    "Tags": "tags",
    "RuleID": "rule_id",
    "Fingerprint": "fingerprint",
}


@dataclass
class LeakFinding:
    """
    One secret occurrence reported by gitleaks.

    Everything except ``review_status`` is copied verbatim from the
    gitleaks report. Keys gitleaks adds beyond the known set are kept
    in ``extra`` so they survive a save/load cycle.
    """
    id: str
    description: str = ""
    start_line: int = 0
    end_line: int = 0
    start_column: int = 0
    end_column: int = 0
    match: str = ""
    secret: str = ""
    file: str = ""
    commit: str = ""
    entropy: float = 0.0
    author: str = ""
    email: str = ""
    date: str = ""
    message: str = ""
    tags: List[str] = field(default_factory=list)
    rule_id: str = ""
    fingerprint: str = ""
    review_status: ReviewStatus = ReviewStatus.PENDING
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_gitleaks(cls, raw: Dict[str, Any], index: int) -> "LeakFinding":
        """Build a finding from one raw gitleaks record, assigning its scan-local id."""
        return cls._from_record(raw, f"finding-{index}", ReviewStatus.PENDING)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LeakFinding":
        return cls._from_record(data, data["id"], coerce_review_status(data.get("reviewStatus")))

    @classmethod
    def _from_record(cls, record: Dict[str, Any], finding_id: str,
                     review_status: ReviewStatus) -> "LeakFinding":
        known = {attr: record[key] for key, attr in GITLEAKS_FIELDS.items() if key in record}
        # id and reviewStatus belong to this store, never to the raw record
        extra = {
            k: v for k, v in record.items()
            if k not in GITLEAKS_FIELDS and k not in FINDING_OWN_KEYS
        }
        return cls(id=finding_id, review_status=review_status, extra=extra, **known)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id}
        for key, attr in GITLEAKS_FIELDS.items():
            data[key] = getattr(self, attr)
        data.update(self.extra)
        data["reviewStatus"] = self.review_status.value
        return data


@dataclass
class ScanReport:
    """Detail record: scan metadata plus its ordered findings."""
    result: ScanResult
    findings: List[LeakFinding] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = self.result.to_dict()
        data["findings"] = [finding.to_dict() for finding in self.findings]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanReport":
        return cls(
            result=ScanResult.from_dict(data),
            findings=[LeakFinding.from_dict(f) for f in data.get("findings", [])],
        )


def coerce_review_status(value: Any) -> ReviewStatus:
    """Map a stored review status to the enum; unknown values count as pending."""
    try:
        return ReviewStatus(value)
    except ValueError:
        return ReviewStatus.PENDING


# ===================================================================
# UTILITY FUNCTIONS
# ===================================================================

def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace('+00:00', 'Z')


def since_date(since_days: int, today: Optional[datetime] = None) -> str:
    """
    Calendar date (YYYY-MM-DD) of "since_days ago".

    Used as the lower bound for both ``git rev-list --since`` and the
    gitleaks ``--log-opts`` window so the two always agree.
    """
    today = today or datetime.now(timezone.utc)
    return (today - timedelta(days=since_days)).date().isoformat()


def decode_output(data: Optional[bytes]) -> str:
    """Decode captured subprocess output, truncated for error messages."""
    if not data:
        return ""
    return data.decode('utf-8', errors='ignore').strip()[:DIAGNOSTIC_MAX_CHARS]


async def run_process(
    args: List[str],
    timeout: float,
    cwd: Optional[Path] = None
) -> Tuple[int, bytes, bytes]:
    """
    Run a subprocess to completion and capture its output.

    The process is killed if the timeout expires or the calling task
    is cancelled, so no external tool outlives its scan.

    Args:
        args: Executable and arguments (no shell involved)
        timeout: Seconds before asyncio.TimeoutError is raised
        cwd: Optional working directory

    Returns:
        (returncode, stdout, stderr)
    """
    proc = await asyncio.create_subprocess_exec(
        *args,
        cwd=str(cwd) if cwd else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE
    )

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError):
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise

    return proc.returncode, stdout, stderr


# ===================================================================
# REPOSITORY CONFIGURATION
# ===================================================================

def parse_repo_url(url: str) -> Optional[RepoConfig]:
    """
    Build a RepoConfig from a clone URL.

    The name is the last path segment without ``.git``; the URL is
    normalized to end in ``.git``.
    """
    url = url.strip()
    url_path = url[:-len(".git")] if url.endswith(".git") else url
    name = url_path.split("/")[-1]

    if not name:
        return None

    return RepoConfig(name=name, url=url if url.endswith(".git") else f"{url}.git")


def load_repos(repos_file: Path = REPOS_FILE) -> List[RepoConfig]:
    """
    Load scan targets from a text file (one URL per line).

    Blank lines and lines starting with '#' are skipped.

    Args:
        repos_file: Path to the repository list

    Returns:
        List of RepoConfig, empty if the file is missing
    """
    try:
        content = Path(repos_file).read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning(f"Repository list not found: {repos_file}")
        return []

    repos = []
    for line in content.splitlines():
        url = line.strip()
        if not url or url.startswith("#"):
            continue

        repo = parse_repo_url(url)
        if repo:
            repos.append(repo)
        else:
            logger.warning(f"Skipping repository line without a name: {url}")

    return repos


async def github_api_call_with_backoff(func, *args, max_retries: int = GITHUB_API_MAX_RETRIES, **kwargs):
    """
    Execute a blocking PyGithub call off the event loop, backing off
    exponentially when GitHub reports a rate limit.

    Args:
        func: Synchronous callable
        *args: Positional arguments for func
        max_retries: Maximum number of attempts
        **kwargs: Keyword arguments for func

    Returns:
        Result of func call
    """
    for attempt in range(max_retries):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)

        except RateLimitExceededException:
            if attempt == max_retries - 1:
                raise

        except GithubException as e:
            if e.status != 403 or 'rate limit' not in str(e).lower() or attempt == max_retries - 1:
                raise

        wait_time = GITHUB_API_BACKOFF_BASE ** attempt
        logger.warning(f"GitHub rate limit hit (attempt {attempt + 1}/{max_retries}), backing off {wait_time:.1f}s")
        await asyncio.sleep(wait_time)

    raise RuntimeError(f"GitHub API call failed after {max_retries} attempts")


async def load_org_repos(org_name: str, token: Optional[str] = None) -> List[RepoConfig]:
    """
    List the non-archived repositories of a GitHub organization or user.

    Args:
        org_name: GitHub organization or user name
        token: Optional GitHub token (anonymous access otherwise)

    Returns:
        List of RepoConfig using each repository's HTTPS clone URL
    """
    github_client = Github(auth=Auth.Token(token)) if token else Github()

    try:
        try:
            logger.info(f"Attempting to access {org_name} as organization...")
            owner = await github_api_call_with_backoff(github_client.get_organization, org_name)
        except GithubException as e:
            if e.status != 404:
                raise
            logger.info(f"Not an organization, trying {org_name} as user...")
            owner = await github_api_call_with_backoff(github_client.get_user, org_name)

        repos = await github_api_call_with_backoff(lambda: list(owner.get_repos()))
    finally:
        github_client.close()

    active_repos = [
        RepoConfig(name=repo.name, url=repo.clone_url)
        for repo in repos
        if not repo.archived
    ]
    logger.info(f"✓ Found {len(active_repos)} active repositories for {org_name} ({len(repos)} total)")
    return active_repos


class RepoCatalog:
    """Configured scan targets: the repository list file plus optional GitHub discovery."""

    def __init__(self, repos_file: Path = REPOS_FILE, org: Optional[str] = None,
                 token: Optional[str] = None):
        self.repos_file = Path(repos_file)
        self.org = org
        self.token = token
        self._org_repos: List[RepoConfig] = []

    async def refresh_org(self) -> List[RepoConfig]:
        """Re-fetch the GitHub repository list; a no-op without an org."""
        if self.org:
            self._org_repos = await load_org_repos(self.org, self.token)
        return list(self._org_repos)

    def repos(self) -> List[RepoConfig]:
        # The file is re-read on every call so edits apply without a restart
        repos = load_repos(self.repos_file)
        known = {repo.name for repo in repos}
        repos.extend(repo for repo in self._org_repos if repo.name not in known)
        return repos

    def find(self, name: str) -> Optional[RepoConfig]:
        return next((repo for repo in self.repos() if repo.name == name), None)


# ===================================================================
# VCS GATEWAY (git)
# ===================================================================

class GitGateway:
    """Clone, commit counting and working-directory cleanup via the git CLI."""

    def __init__(
        self,
        temp_dir: Path = TEMP_DIR,
        git_binary: str = GIT_BINARY,
        clone_depth: int = CLONE_DEPTH,
        clone_timeout: float = CLONE_TIMEOUT_SECONDS
    ):
        self.temp_dir = Path(temp_dir)
        self.git_binary = git_binary
        self.clone_depth = clone_depth
        self.clone_timeout = clone_timeout

    def workdir_for(self, name: str) -> Path:
        """Working directory owned by ``name`` (the scan id)."""
        return self.temp_dir / name

    async def clone(self, url: str, name: str) -> Path:
        """
        Shallow-clone a repository into a fresh working directory.

        Any existing directory for ``name`` is removed first. On failure
        the partial clone is removed before the error propagates.

        Args:
            url: Repository clone URL
            name: Working directory key

        Returns:
            Path to the cloned repository

        Raises:
            CloneError: git exited non-zero, timed out or could not start
        """
        target_dir = self.workdir_for(name)

        await self.cleanup(target_dir)
        await aiofiles.os.makedirs(self.temp_dir, exist_ok=True)

        logger.info(f"Cloning {url} to {target_dir}...")

        try:
            try:
                returncode, _, stderr = await run_process(
                    [
                        self.git_binary, "clone",
                        "-c", "core.longpaths=true",
                        f"--depth={self.clone_depth}",
                        url,
                        str(target_dir),
                    ],
                    timeout=self.clone_timeout
                )
            except asyncio.TimeoutError:
                raise CloneError(f"Failed to clone repository: timed out after {self.clone_timeout}s")
            except OSError as e:
                raise CloneError(f"Failed to clone repository: cannot run {self.git_binary}: {e}") from e

            if returncode != 0:
                output = decode_output(stderr)
                raise CloneError(f"Failed to clone repository: {output}", output)

        except Exception:
            await self.cleanup(target_dir)
            raise

        logger.info(f"✓ Cloned {url} successfully")
        return target_dir

    async def commit_count(self, repo_dir: Path, since_days: Optional[int] = None) -> int:
        """
        Count commits reachable from HEAD, optionally only those since
        ``since_days`` ago. Any failure yields 0.
        """
        args = [self.git_binary, "rev-list", "--count"]
        if since_days:
            args.append(f"--since={since_date(since_days)}")
        args.append("HEAD")

        try:
            returncode, stdout, stderr = await run_process(
                args, timeout=COMMIT_COUNT_TIMEOUT_SECONDS, cwd=repo_dir
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Commit count failed for {repo_dir}: {e}")
            return 0

        if returncode != 0:
            logger.debug(f"Commit count failed for {repo_dir}: {decode_output(stderr)}")
            return 0

        try:
            return int(stdout.decode('utf-8', errors='ignore').strip())
        except ValueError:
            return 0

    async def cleanup(self, repo_dir: Path) -> None:
        """Remove a working directory; a missing directory is not an error."""
        if not await aiofiles.os.path.exists(repo_dir):
            return

        await asyncio.to_thread(shutil.rmtree, repo_dir, ignore_errors=True)
        logger.info(f"Cleaned up {repo_dir}")

    async def sweep(self) -> int:
        """
        Remove working directories left behind by a previous process.

        Only directories named like a scan id are touched; anything else
        in ``temp_dir`` belongs to someone else. Only safe before any scan
        of this process has started.

        Returns:
            Number of directories removed
        """
        if not await aiofiles.os.path.isdir(self.temp_dir):
            return 0

        removed = 0
        for entry in await aiofiles.os.listdir(self.temp_dir):
            path = self.temp_dir / entry
            if not SCAN_ID_PATTERN.match(entry) or not await aiofiles.os.path.isdir(path):
                continue

            await self.cleanup(path)
            if await aiofiles.os.path.exists(path):
                logger.warning(f"Could not remove stale working directory {path}")
            else:
                removed += 1

        if removed:
            logger.warning(f"Removed {removed} stale working directories from {self.temp_dir}")
        return removed


# ===================================================================
# SCAN RUNNER (gitleaks)
# ===================================================================

async def parse_report(report_path: Path) -> List[LeakFinding]:
    """
    Parse a gitleaks JSON report.

    A missing file means gitleaks found nothing. A file that exists but
    is not a JSON list of objects is an error.

    Args:
        report_path: Path of the gitleaks JSON report

    Returns:
        Findings in report order, ids "finding-0", "finding-1", ...

    Raises:
        ReportParseError: report present but malformed
    """
    try:
        async with aiofiles.open(report_path, 'r', encoding='utf-8') as f:
            content = await f.read()
    except FileNotFoundError:
        logger.debug(f"No report at {report_path}, treating as zero findings")
        return []

    if not content.strip():
        return []

    try:
        raw_findings = json.loads(content)
    except json.JSONDecodeError as e:
        raise ReportParseError(f"Malformed gitleaks report {report_path}: {e}") from e

    if not isinstance(raw_findings, list) or not all(isinstance(raw, dict) for raw in raw_findings):
        raise ReportParseError(f"Malformed gitleaks report {report_path}: expected a list of findings")

    return [LeakFinding.from_gitleaks(raw, index) for index, raw in enumerate(raw_findings)]


class GitleaksRunner:
    """Runs ``gitleaks detect`` against a working directory."""

    def __init__(
        self,
        reports_dir: Path = REPORTS_DIR,
        gitleaks_binary: str = GITLEAKS_BINARY,
        scan_timeout: float = SCAN_TIMEOUT_SECONDS
    ):
        self.reports_dir = Path(reports_dir)
        self.gitleaks_binary = gitleaks_binary
        self.scan_timeout = scan_timeout
        self._issued_paths = set()

    def report_path_for(self, repo_name: str) -> Path:
        """Unique raw report path: <repo>_<UTC timestamp to the microsecond>.json."""
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        report_path = self.reports_dir / f"{repo_name}_{timestamp}.json"

        suffix = 1
        while report_path in self._issued_paths or report_path.exists():
            report_path = self.reports_dir / f"{repo_name}_{timestamp}_{suffix}.json"
            suffix += 1

        self._issued_paths.add(report_path)
        return report_path

    async def run(
        self,
        repo_dir: Path,
        repo_name: str,
        since_days: Optional[int] = None
    ) -> Tuple[str, List[LeakFinding]]:
        """
        Scan a cloned repository.

        Args:
            repo_dir: Cloned repository
            repo_name: Repository name, used in the report file name
            since_days: Restrict git history to the last N days

        Returns:
            (report_path, findings)

        Raises:
            ScanExecutionError: unexpected exit code, timeout or missing binary
            ReportParseError: report present but malformed
        """
        await aiofiles.os.makedirs(self.reports_dir, exist_ok=True)
        report_path = self.report_path_for(repo_name)

        args = [
            self.gitleaks_binary,
            "detect",
            "--source", str(repo_dir),
            "--report-path", str(report_path),
            "--report-format", "json",
        ]

        if since_days:
            args.append(f"--log-opts=--since={since_date(since_days)}")

        logger.info(f"Running gitleaks scan: {' '.join(args)}")

        try:
            returncode, _, stderr = await run_process(args, timeout=self.scan_timeout)
        except asyncio.TimeoutError:
            raise ScanExecutionError(f"Gitleaks scan timed out after {self.scan_timeout}s")
        except OSError as e:
            raise ScanExecutionError(f"Gitleaks scan failed: cannot run {self.gitleaks_binary}: {e}") from e

        if returncode not in (GITLEAKS_EXIT_NO_LEAKS, GITLEAKS_EXIT_LEAKS_FOUND):
            output = decode_output(stderr)
            raise ScanExecutionError(f"Gitleaks scan failed (exit code {returncode}): {output}", output)

        findings = await parse_report(report_path)
        return str(report_path), findings


# ===================================================================
# REPORT STORE
# ===================================================================

class ReportStore:
    """
    File-based persistence of scans and findings.

    Layout under ``reports_dir``:
        metadata.json          {"scans": [ScanResult, ...]}, newest first
        <scan id>-detail.json  ScanReport for scans that produced findings

    Every read-modify-write cycle runs under one asyncio lock, and every
    file is written to a temporary name and then replaced.
    """

    def __init__(self, reports_dir: Path = REPORTS_DIR):
        self.reports_dir = Path(reports_dir)
        self.metadata_file = self.reports_dir / METADATA_FILENAME
        self._lock = asyncio.Lock()

    def detail_path(self, scan_id: str) -> Path:
        return self.reports_dir / f"{scan_id}{DETAIL_SUFFIX}"

    async def _read_json(self, path: Path) -> Any:
        async with aiofiles.open(path, 'r', encoding='utf-8') as f:
            return json.loads(await f.read())

    async def _write_json(self, path: Path, data: Any) -> None:
        await aiofiles.os.makedirs(self.reports_dir, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.tmp")
        async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(data, indent=2))
        await aiofiles.os.replace(tmp_path, path)

    async def _load_metadata(self) -> List[ScanResult]:
        try:
            metadata = await self._read_json(self.metadata_file)
            entries = metadata.get("scans", [])
        except FileNotFoundError:
            return []
        except (ValueError, AttributeError) as e:
            logger.error(f"Unreadable metadata file {self.metadata_file}, treating as empty: {e}")
            return []

        if not isinstance(entries, list):
            logger.error(f"Unreadable metadata file {self.metadata_file}, treating as empty: 'scans' is not a list")
            return []

        # One bad entry must not cost the rest of the history
        scans = []
        for entry in entries:
            try:
                scans.append(ScanResult.from_dict(entry))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping unreadable scan entry in {self.metadata_file}: {e}")
        return scans

    async def _save_metadata(self, scans: List[ScanResult]) -> None:
        await self._write_json(self.metadata_file, {"scans": [scan.to_dict() for scan in scans]})

    async def _load_findings(self, scan_id: str) -> Optional[List[LeakFinding]]:
        try:
            detail = await self._read_json(self.detail_path(scan_id))
            return ScanReport.from_dict(detail).findings
        except FileNotFoundError:
            return None
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Unreadable detail record for {scan_id}: {e}")
            return None

    async def _get_report(self, scan_id: str) -> Optional[ScanReport]:
        scans = await self._load_metadata()
        scan = next((s for s in scans if s.id == scan_id), None)
        if scan is None:
            return None

        findings = await self._load_findings(scan_id)
        return ScanReport(result=scan, findings=findings or [])

    async def save(self, result: ScanResult, findings: Optional[List[LeakFinding]] = None) -> None:
        """
        Upsert a scan into the metadata collection (new scans go first).

        When findings are given and the scan has a report path, the full
        detail record is written as well.
        """
        async with self._lock:
            scans = await self._load_metadata()

            index = next((i for i, s in enumerate(scans) if s.id == result.id), None)
            if index is None:
                scans.insert(0, dataclasses.replace(result))
            else:
                scans[index] = dataclasses.replace(result)

            await self._save_metadata(scans)

            if findings is not None and result.report_path:
                report = ScanReport(result=result, findings=findings)
                await self._write_json(self.detail_path(result.id), report.to_dict())

    async def update_status(self, scan_id: str, status: ScanStatus, error: Optional[str] = None) -> bool:
        """Set a scan's status (and error). Returns False if the id is unknown."""
        async with self._lock:
            scans = await self._load_metadata()
            scan = next((s for s in scans if s.id == scan_id), None)
            if scan is None:
                return False

            scan.status = ScanStatus(status)
            if error:
                scan.error = error
            await self._save_metadata(scans)
            return True

    async def list_scans(self) -> List[ScanResult]:
        """All scans, newest first."""
        return await self._load_metadata()

    async def get_report(self, scan_id: str) -> Optional[ScanReport]:
        """Scan metadata with its findings, or None if the id is unknown."""
        return await self._get_report(scan_id)

    async def set_finding_status(self, scan_id: str, finding_id: str, status: ReviewStatus) -> bool:
        """
        Change one finding's review status.

        Args:
            scan_id: Owning scan
            finding_id: Scan-local finding id
            status: New review status

        Returns:
            False if the scan or the finding is unknown

        Raises:
            ValueError: status is not a valid review status
        """
        status = ReviewStatus(status)

        async with self._lock:
            report = await self._get_report(scan_id)
            if report is None:
                return False

            finding = next((f for f in report.findings if f.id == finding_id), None)
            if finding is None:
                return False

            finding.review_status = status
            await self._write_json(self.detail_path(scan_id), report.to_dict())

        logger.info(f"Finding {finding_id} of {scan_id} marked {status.value}", extra={"scan_id": scan_id})
        return True

    async def delete(self, scan_id: str) -> bool:
        """Remove a scan and its detail record. Returns False if the id is unknown."""
        async with self._lock:
            scans = await self._load_metadata()
            remaining = [s for s in scans if s.id != scan_id]
            if len(remaining) == len(scans):
                return False

            await self._save_metadata(remaining)

            try:
                await aiofiles.os.remove(self.detail_path(scan_id))
            except FileNotFoundError:
                pass

        logger.info(f"Deleted report {scan_id}", extra={"scan_id": scan_id})
        return True

    async def clear(self) -> None:
        """Remove every file in the reports directory."""
        async with self._lock:
            if not await aiofiles.os.path.isdir(self.reports_dir):
                return

            removed = 0
            for entry in await aiofiles.os.listdir(self.reports_dir):
                path = self.reports_dir / entry
                if await aiofiles.os.path.isfile(path):
                    await aiofiles.os.remove(path)
                    removed += 1

        logger.info(f"Cleared {removed} files from {self.reports_dir}")

    async def stats(self) -> Dict[str, int]:
        """
        Aggregate across completed scans.

        Reads the detail record of every completed scan, so the cost grows
        linearly with the number of stored scans.
        """
        scans = await self._load_metadata()
        completed = [s for s in scans if s.status == ScanStatus.COMPLETED]

        stats = {
            "totalScans": len(completed),
            "totalCommits": 0,
            "totalFindings": 0,
            "confirmedLeaks": 0,
            "falsePositives": 0,
            "pendingReview": 0,
        }

        for scan in completed:
            stats["totalCommits"] += scan.commit_count or 0
            findings = await self._load_findings(scan.id) or []
            stats["totalFindings"] += len(findings)
            for finding in findings:
                if finding.review_status == ReviewStatus.CONFIRMED:
                    stats["confirmedLeaks"] += 1
                elif finding.review_status == ReviewStatus.FALSE_POSITIVE:
                    stats["falsePositives"] += 1
                else:
                    stats["pendingReview"] += 1

        return stats

    async def reconcile(self) -> List[str]:
        """
        Fail scans a previous process left in pending or scanning.

        Pending scans are first recorded as scanning, so every stored scan
        still moves pending -> scanning -> failed.

        Returns:
            Ids of the scans marked failed
        """
        async with self._lock:
            scans = await self._load_metadata()
            interrupted = [s for s in scans if s.status not in TERMINAL_STATUSES]
            if not interrupted:
                return []

            if any(s.status == ScanStatus.PENDING for s in interrupted):
                for scan in interrupted:
                    scan.status = ScanStatus.SCANNING
                await self._save_metadata(scans)

            for scan in interrupted:
                scan.status = ScanStatus.FAILED
                scan.error = INTERRUPTED_ERROR
            await self._save_metadata(scans)

        logger.warning(f"Marked {len(interrupted)} interrupted scans as failed")
        return [scan.id for scan in interrupted]


# ===================================================================
# SCAN ORCHESTRATION
# ===================================================================

class ScanOrchestrator:
    """
    Drives scans through clone -> count -> gitleaks -> persist.

    Each scan gets its own working directory keyed by scan id, so
    concurrent scans of the same repository never collide. Without a
    limit every triggered scan starts immediately; ``max_concurrent_scans``
    caps how many run at once (the rest wait as pending).
    """

    def __init__(
        self,
        store: ReportStore,
        git: Optional[GitGateway] = None,
        runner: Optional[GitleaksRunner] = None,
        max_concurrent_scans: int = MAX_CONCURRENT_SCANS
    ):
        self.store = store
        self.git = git or GitGateway()
        self.runner = runner or GitleaksRunner(store.reports_dir)
        self._semaphore = asyncio.Semaphore(max_concurrent_scans) if max_concurrent_scans > 0 else None
        self._tasks: Dict[str, asyncio.Task] = {}
        self._last_id_ms = 0

    def _next_scan_id(self, repo_name: str) -> str:
        # Strictly increasing so ids are never reused within a process
        now_ms = int(time.time() * 1000)
        self._last_id_ms = max(now_ms, self._last_id_ms + 1)
        return f"{repo_name}-{self._last_id_ms}"

    @property
    def active_scans(self) -> List[str]:
        return list(self._tasks)

    async def create_scan(self, repo: RepoConfig, since_days: Optional[int] = None) -> ScanResult:
        """Allocate a scan id and persist the scan as pending."""
        result = ScanResult(
            id=self._next_scan_id(repo.name),
            repo_name=repo.name,
            repo_url=repo.url,
            timestamp=utc_now_iso(),
            since_days=since_days or None,
        )
        await self.store.save(result)
        logger.info(f"Scan {result.id} created for {repo.name}", extra={"scan_id": result.id, "repo": repo.name})
        return result

    async def run_scan(
        self,
        repo: RepoConfig,
        since_days: Optional[int] = None,
        result: Optional[ScanResult] = None
    ) -> ScanResult:
        """
        Run the full pipeline for one repository and wait for it.

        Pipeline failures never raise: they end the scan as failed with
        the error text recorded.

        Args:
            repo: Scan target
            since_days: Restrict commit count and scan to the last N days
            result: Scan created earlier by create_scan (created here if None)

        Returns:
            The scan in its terminal state
        """
        if result is None:
            result = await self.create_scan(repo, since_days)

        try:
            async with self._semaphore or contextlib.nullcontext():
                return await self._execute(repo, result)
        except asyncio.CancelledError:
            if result.status == ScanStatus.PENDING:
                await self._fail(result, CANCELLED_ERROR)
            raise

    async def _fail(self, result: ScanResult, error: str) -> None:
        # A scan cancelled while queued never left pending; record scanning first
        if result.status == ScanStatus.PENDING:
            result.status = ScanStatus.SCANNING
            await self.store.save(result)

        result.status = ScanStatus.FAILED
        result.error = error
        await self.store.save(result)

    async def _execute(self, repo: RepoConfig, result: ScanResult) -> ScanResult:
        log_extra = {"scan_id": result.id, "repo": repo.name}
        workdir = self.git.workdir_for(result.id)

        try:
            try:
                result.status = ScanStatus.SCANNING
                await self.store.save(result)

                repo_dir = await self.git.clone(repo.url, result.id)

                result.commit_count = await self.git.commit_count(repo_dir, result.since_days)
                logger.info(f"Repository has {result.commit_count} commits", extra=log_extra)

                report_path, findings = await self.runner.run(repo_dir, repo.name, result.since_days)

                result.report_path = report_path
                result.findings_count = len(findings)
                result.status = ScanStatus.COMPLETED
                await self.store.save(result, findings)

                logger.info(
                    f"Scan completed: {len(findings)} findings",
                    extra={**log_extra, "finding_count": len(findings)}
                )

            except asyncio.CancelledError:
                logger.warning(f"Scan {result.id} cancelled", extra=log_extra)
                await self._fail(result, CANCELLED_ERROR)
                raise

            except Exception as e:
                logger.error(f"Scan failed: {e}", extra=log_extra)
                await self._fail(result, str(e) or e.__class__.__name__)

        finally:
            await self.git.cleanup(workdir)

        return result

    async def start_scan(self, repo: RepoConfig, since_days: Optional[int] = None) -> ScanResult:
        """
        Persist a pending scan and run its pipeline in the background.

        Returns:
            Snapshot of the pending scan (poll the store for progress)
        """
        result = await self.create_scan(repo, since_days)
        snapshot = dataclasses.replace(result)

        task = asyncio.create_task(self.run_scan(repo, result=result), name=f"scan:{result.id}")
        self._tasks[result.id] = task
        task.add_done_callback(lambda t, scan_id=result.id: self._on_task_done(scan_id, t))

        return snapshot

    async def start_scan_all(self, repos: List[RepoConfig], since_days: Optional[int] = None) -> List[ScanResult]:
        """Start one background scan per repository."""
        return [await self.start_scan(repo, since_days) for repo in repos]

    def _on_task_done(self, scan_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(scan_id, None)
        if task.cancelled():
            return

        exc = task.exception()
        if exc is not None:
            logger.error(f"Background scan {scan_id} crashed: {exc}", exc_info=exc, extra={"scan_id": scan_id})

    async def wait_all(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for every background scan to finish, including scans started
        while waiting. The scans are never cancelled here.

        Args:
            timeout: Seconds to wait at most (None waits indefinitely)

        Returns:
            False if the timeout expired with scans still running
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        while self._tasks:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return False
            await asyncio.wait(list(self._tasks.values()), timeout=remaining)

        return True

    async def shutdown(self, grace_seconds: float = SHUTDOWN_GRACE_SECONDS) -> None:
        """
        Stop background scans: wait up to ``grace_seconds`` for them to
        finish, then cancel the rest. Each cancelled scan is recorded as failed.
        """
        if not self._tasks:
            return

        if grace_seconds > 0:
            logger.info(f"Waiting up to {grace_seconds:g}s for {len(self._tasks)} in-flight scans...")
            if await self.wait_all(grace_seconds):
                logger.info("✓ All in-flight scans finished")
                return

        tasks = list(self._tasks.values())
        logger.warning(f"Cancelling {len(tasks)} in-flight scans: {', '.join(self.active_scans)}")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def recover_interrupted_scans(orchestrator: ScanOrchestrator) -> None:
    """Startup recovery: drop stray clones and fail scans a crash left open."""
    await orchestrator.git.sweep()
    await orchestrator.store.reconcile()


async def scan_repos_with_progress(
    orchestrator: ScanOrchestrator,
    repos: List[RepoConfig],
    since_days: Optional[int] = None
) -> List[ScanResult]:
    """Scan repositories concurrently and wait for all of them, with a progress bar."""
    scan_tasks = [orchestrator.run_scan(repo, since_days) for repo in repos]

    results = []
    with tqdm(total=len(scan_tasks), desc="Scanning repos", unit="repo") as pbar:
        for coro in asyncio.as_completed(scan_tasks):
            results.append(await coro)
            pbar.update(1)

    return results


# ===================================================================
# HTTP API (dashboard)
# ===================================================================

STORE_KEY = web.AppKey("store", ReportStore)
ORCHESTRATOR_KEY = web.AppKey("orchestrator", ScanOrchestrator)
CATALOG_KEY = web.AppKey("catalog", RepoCatalog)

routes = web.RouteTableDef()


class BadRequest(ValueError):
    """Invalid request payload."""


def error_response(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def read_json_body(request: web.Request) -> Dict[str, Any]:
    if not request.body_exists:
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise BadRequest("Invalid JSON body")
    if not isinstance(body, dict):
        raise BadRequest("JSON body must be an object")
    return body


def parse_since_days(value: Any) -> Optional[int]:
    """sinceDays from a request: empty means no window, otherwise a positive integer."""
    if value in (None, "", 0):
        return None
    try:
        days = int(value)
    except (TypeError, ValueError):
        raise BadRequest("sinceDays must be a positive integer")
    if days <= 0:
        raise BadRequest("sinceDays must be a positive integer")
    return days


@web.middleware
async def cors_middleware(request: web.Request, handler) -> web.StreamResponse:
    if request.method == "OPTIONS":
        response = web.Response()
    else:
        try:
            response = await handler(request)
        except BadRequest as e:
            response = error_response(str(e), 400)

    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, PATCH, DELETE, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return response


@routes.get("/api/repos")
async def get_repos(request: web.Request) -> web.Response:
    return web.json_response([asdict(repo) for repo in request.app[CATALOG_KEY].repos()])


@routes.post("/api/scan")
async def trigger_scan(request: web.Request) -> web.Response:
    body = await read_json_body(request)
    repo_name = body.get("repoName")
    since_days = parse_since_days(body.get("sinceDays"))

    repo = request.app[CATALOG_KEY].find(repo_name) if repo_name else None
    if repo is None:
        return error_response("Repository not found", 404)

    result = await request.app[ORCHESTRATOR_KEY].start_scan(repo, since_days)
    return web.json_response({"message": "Scan started", "repoName": repo.name, "scanId": result.id})


@routes.post("/api/scan-all")
async def trigger_scan_all(request: web.Request) -> web.Response:
    body = await read_json_body(request)
    since_days = parse_since_days(body.get("sinceDays"))

    repos = request.app[CATALOG_KEY].repos()
    results = await request.app[ORCHESTRATOR_KEY].start_scan_all(repos, since_days)
    return web.json_response({
        "message": "Scanning all repositories",
        "count": len(results),
        "scanIds": [result.id for result in results],
    })


@routes.get("/api/reports")
async def list_reports(request: web.Request) -> web.Response:
    scans = await request.app[STORE_KEY].list_scans()
    return web.json_response([scan.to_dict() for scan in scans])


@routes.delete("/api/reports")
async def clear_reports(request: web.Request) -> web.Response:
    await request.app[STORE_KEY].clear()
    return web.json_response({"message": "All reports cleared"})


@routes.get("/api/reports/{id}")
async def get_report(request: web.Request) -> web.Response:
    report = await request.app[STORE_KEY].get_report(request.match_info["id"])
    if report is None:
        return error_response("Report not found", 404)
    return web.json_response(report.to_dict())


@routes.delete("/api/reports/{id}")
async def delete_report(request: web.Request) -> web.Response:
    if not await request.app[STORE_KEY].delete(request.match_info["id"]):
        return error_response("Report not found", 404)
    return web.json_response({"message": "Report deleted"})


@routes.patch("/api/reports/{id}/findings/{finding_id}")
async def update_finding(request: web.Request) -> web.Response:
    body = await read_json_body(request)
    try:
        review_status = ReviewStatus(body.get("reviewStatus"))
    except ValueError:
        return error_response("Invalid review status", 400)

    updated = await request.app[STORE_KEY].set_finding_status(
        request.match_info["id"], request.match_info["finding_id"], review_status
    )
    if not updated:
        return error_response("Finding not found", 404)
    return web.json_response({"message": "Updated"})


@routes.get("/api/stats")
async def get_stats(request: web.Request) -> web.Response:
    return web.json_response(await request.app[STORE_KEY].stats())


def create_app(
    orchestrator: ScanOrchestrator,
    catalog: RepoCatalog,
    recover_on_startup: bool = True
) -> web.Application:
    """
    Build the dashboard API application.

    Args:
        orchestrator: Scan orchestrator (its store backs the report routes)
        catalog: Scan targets
        recover_on_startup: Sweep stray clones and fail interrupted scans on startup
    """
    app = web.Application(middlewares=[cors_middleware])
    app[ORCHESTRATOR_KEY] = orchestrator
    app[STORE_KEY] = orchestrator.store
    app[CATALOG_KEY] = catalog
    app.add_routes(routes)

    async def on_startup(app: web.Application) -> None:
        if recover_on_startup:
            await recover_interrupted_scans(orchestrator)
        if catalog.org:
            try:
                await catalog.refresh_org()
            except Exception as e:
                logger.error(f"Failed to list repositories for {catalog.org}: {e}")

    async def on_cleanup(app: web.Application) -> None:
        await orchestrator.shutdown()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


# ===================================================================
# COMMAND LINE INTERFACE
# ===================================================================

def positive_int(value: str) -> int:
    days = int(value)
    if days <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return days


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments and display help information."""
    parser = argparse.ArgumentParser(
        description='Scan git repositories with gitleaks and triage the findings',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
ENVIRONMENT VARIABLES:
  REPOS_FILE            Repository list, one URL per line (default: repos.txt)
  REPORTS_DIR           Report store location (default: reports)
  TEMP_DIR              Working directory for clones (default: temp)
  MAX_CONCURRENT_SCANS  Parallel scans, 0 = unbounded (default: 0)
  SHUTDOWN_GRACE_SECONDS  Seconds the API waits for running scans on shutdown (default: 0)
  GITHUB_TOKEN          GitHub token for --org discovery
  TARGET_ORG            Default for --org

USAGE EXAMPLES:
  Start the dashboard API:
    python git_leaks_scanner.py --serve --port 3000

  Scan one repository, last 30 days:
    python git_leaks_scanner.py --repo my-service --since-days 30

  Scan everything, four at a time:
    python git_leaks_scanner.py --all --max-concurrent 4

EXIT CODES:
  0   Success
  1   Error (unknown repository, failed scan, etc.)
  130 Interrupted by user (Ctrl+C)
        '''
    )

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--serve', action='store_true', help='Run the dashboard API (default)')
    mode.add_argument('--repo', type=str, metavar='NAME', help='Scan one configured repository')
    mode.add_argument('--all', action='store_true', help='Scan every configured repository')
    mode.add_argument('--list', action='store_true', help='Print stored scans as JSON')
    mode.add_argument('--stats', action='store_true', help='Print aggregate stats as JSON')
    mode.add_argument('--clear', action='store_true', help='Delete all stored reports')

    parser.add_argument(
        '--since-days',
        type=positive_int,
        metavar='N',
        help='Only count and scan commits from the last N days'
    )

    parser.add_argument(
        '--org',
        type=str,
        default=TARGET_ORG,
        help='Also scan repositories of this GitHub organization or user'
    )

    parser.add_argument('--repos-file', type=Path, default=REPOS_FILE,
                        help=f'Repository list (default: {REPOS_FILE})')
    parser.add_argument('--reports-dir', type=Path, default=REPORTS_DIR,
                        help=f'Report store location (default: {REPORTS_DIR})')
    parser.add_argument('--temp-dir', type=Path, default=TEMP_DIR,
                        help=f'Working directory for clones (default: {TEMP_DIR})')

    parser.add_argument(
        '--max-concurrent',
        type=int,
        default=MAX_CONCURRENT_SCANS,
        help=f'Maximum parallel scans, 0 = unbounded (default: {MAX_CONCURRENT_SCANS})'
    )

    parser.add_argument('--host', type=str, default=HOST, help=f'API bind host (default: {HOST})')
    parser.add_argument('--port', type=int, default=PORT, help=f'API port (default: {PORT})')

    parser.add_argument(
        '--log-format',
        type=str,
        choices=['text', 'json'],
        default=LOG_FORMAT,
        help=f'Logging format (default: {LOG_FORMAT})'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose debug logging'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {SCANNER_VERSION}'
    )

    return parser.parse_args(argv)


async def run_cli_scans(
    orchestrator: ScanOrchestrator,
    catalog: RepoCatalog,
    repo_name: Optional[str] = None,
    since_days: Optional[int] = None
) -> int:
    """Scan one or all configured repositories in the foreground."""
    await catalog.refresh_org()

    if repo_name:
        repo = catalog.find(repo_name)
        if repo is None:
            logger.error(f"Repository not found: {repo_name}")
            return 1
        repos = [repo]
    else:
        repos = catalog.repos()

    if not repos:
        logger.warning("No repositories configured")
        return 1

    logger.info(f"Scanning {len(repos)} repositories...")
    results = await scan_repos_with_progress(orchestrator, repos, since_days)

    for result in results:
        if result.status == ScanStatus.FAILED:
            logger.error(f"✗ {result.repo_name}: {result.error}")
        else:
            logger.info(f"✓ {result.repo_name}: {result.findings_count} findings in {result.commit_count} commits")

    return 1 if any(r.status == ScanStatus.FAILED for r in results) else 0


def run_server(orchestrator: ScanOrchestrator, catalog: RepoCatalog, host: str, port: int) -> None:
    logger.info("=" * 70)
    logger.info("GIT LEAKS SCANNER DASHBOARD")
    logger.info("=" * 70)
    logger.info(f"Server running at http://{host}:{port}")
    logger.info(f"Repository list: {catalog.repos_file}")
    logger.info(f"Reports directory: {orchestrator.store.reports_dir}")
    logger.info("=" * 70)

    web.run_app(create_app(orchestrator, catalog), host=host, port=port, print=None)


# ===================================================================
# MAIN ENTRY POINT
# ===================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point with validation and error handling."""
    args = parse_arguments(argv)

    setup_logging(args.log_format)
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    store = ReportStore(args.reports_dir)
    orchestrator = ScanOrchestrator(
        store,
        git=GitGateway(args.temp_dir),
        runner=GitleaksRunner(args.reports_dir),
        max_concurrent_scans=args.max_concurrent
    )
    catalog = RepoCatalog(args.repos_file, org=args.org or None, token=GITHUB_TOKEN)

    try:
        if args.list:
            scans = asyncio.run(store.list_scans())
            print(json.dumps([scan.to_dict() for scan in scans], indent=2))
            return 0

        if args.stats:
            print(json.dumps(asyncio.run(store.stats()), indent=2))
            return 0

        if args.clear:
            asyncio.run(store.clear())
            return 0

        if args.repo or args.all:
            return asyncio.run(run_cli_scans(orchestrator, catalog, args.repo, args.since_days))

        run_server(orchestrator, catalog, args.host, args.port)
        return 0

    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
