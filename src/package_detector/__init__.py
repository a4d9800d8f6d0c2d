# SPDX-FileCopyrightText: 2023-present ferstar <zhangjianfei3@gmail.com>
#
# SPDX-License-Identifier: MIT
import argparse
import bisect
import concurrent.futures
import contextlib
import enum
import fnmatch
import json
import os
import re
import shutil
import subprocess
import sys
import time
import warnings
from collections import Counter
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[import-not-found]

import httpx
from packaging.version import InvalidVersion, Version

__version__ = "1.0.1"

# Constants
MANIFEST_NAME = "package.json"
LOCKFILE_NAME = "package-lock.json"
CONFIG_NAME = ".package-detector.toml"
MAX_SCAN_DEPTH = 20
MAX_WORKERS_LIMIT = 64

DEPENDENCY_GROUPS = (
    ("dependencies", "production"),
    ("devDependencies", "development"),
    ("peerDependencies", "peer"),
    ("optionalDependencies", "optional"),
)
DEFAULT_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs", ".vue", ".svelte")
DEFAULT_EXCLUDE_DIRS = frozenset(
    {"node_modules", ".git", "dist", "build", "coverage", ".next", ".nuxt", ".cache"},
)

# Finding categories and severities
UNUSED = "unused"
OUTDATED = "outdated"
DUPLICATE = "duplicate"
HEAVY = "heavy"
INFRASTRUCTURE = "infrastructure"
LOW = "low"
MEDIUM = "medium"
HIGH = "high"

_QUOTED = r"""(?P<quote>['"`])(?P<module>[^'"`\r\n]+)(?P=quote)"""
IMPORT_FROM_P = re.compile(
    r"(?<![\w$.])import\s+(?:type\s+)?(?:[\w$]+\s*,\s*)?(?:\{[^}]*\}|\*\s*as\s+[\w$]+|[\w$]+)\s+from\s*" + _QUOTED,
)
IMPORT_BARE_P = re.compile(r"(?<![\w$.])import\s*" + _QUOTED)
EXPORT_FROM_P = re.compile(
    r"(?<![\w$.])export\s+(?:type\s+)?(?:\{[^}]*\}|\*(?:\s*as\s+[\w$]+)?)\s*from\s*" + _QUOTED,
)
LOAD_CALL_P = re.compile(r"(?<![\w$.])(?:require|import)\s*\(\s*" + _QUOTED + r"\s*\)")
IMPORT_PATTERNS = (IMPORT_FROM_P, IMPORT_BARE_P, EXPORT_FROM_P, LOAD_CALL_P)

NPM_OUTDATED_SPLIT_P = re.compile(r"\s+")
NPM_LS_LINE_P = re.compile(r"^[\s│├└─┬|`+\\-]+(?P<name>@?[^@\s]+)@(?P<version>\S+)")

TYPES_SCOPE = "@types/"
TYPE_DEFINITIONS_REASON = "Type definitions - needed for TypeScript support"

# Packages the project needs for building, testing or linting but never imports
INFRASTRUCTURE_PACKAGES: dict[str, str] = {
    # Build tools
    "typescript": "Build tool - needed for TypeScript compilation",
    "ts-node": "Development tool - needed for running TypeScript directly",
    "webpack": "Build tool - needed for bundling",
    "webpack-cli": "Build tool - needed for running webpack from scripts",
    "vite": "Build tool - needed for bundling and the dev server",
    "rollup": "Build tool - needed for bundling",
    "esbuild": "Build tool - needed for bundling",
    "@babel/core": "Build tool - needed for transpiling",
    # Testing frameworks
    "jest": "Testing framework - needed for running tests",
    "ts-jest": "TypeScript testing - needed for Jest TypeScript support",
    "vitest": "Testing framework - needed for running tests",
    "mocha": "Testing framework - needed for running tests",
    # Linters and formatters
    "eslint": "Linter - needed for lint scripts",
    "prettier": "Formatter - needed for format scripts",
    # Development tools
    "rimraf": "Development tool - needed for clean script",
    "nodemon": "Development tool - needed for restarting the dev server",
    "concurrently": "Development tool - needed for running scripts in parallel",
    "husky": "Development tool - needed for git hooks",
    "lint-staged": "Development tool - needed for pre-commit checks",
}

BUNDLEPHOBIA_URL = "https://bundlephobia.com/api/size"
USER_AGENT = f"package-detector/{__version__}"


class ManifestError(Exception):
    """Base class for package.json loading failures."""


class ManifestNotFoundError(ManifestError):
    pass


class ManifestParseError(ManifestError):
    pass


class NpmCommandError(RuntimeError):
    pass


class BundlephobiaRateLimitError(Exception):
    pass


@dataclass(frozen=True)
class DependencyDeclaration:
    name: str
    version_range: str
    kind: str


@dataclass
class Finding:
    category: str
    package_name: str
    message: str
    severity: str = MEDIUM
    metadata: dict | None = None

    @property
    def is_infrastructure(self) -> bool:
        return self.category == UNUSED and bool(self.metadata) and self.metadata.get("category") == INFRASTRUCTURE


@dataclass(frozen=True)
class InfrastructureCheck:
    is_infrastructure: bool
    reason: str | None = None


@dataclass
class SourceScan:
    """Files collected by :func:`find_project_files` plus non-fatal traversal warnings."""

    files: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class AnalysisCache:
    """Import and usage memo tables for a single analysis run.

    The owner calls :meth:`reset` once at the start of every run, source files
    may have changed between runs.
    """

    imports: dict[str, list[str]] = field(default_factory=dict)
    usage: dict[tuple[str, frozenset[str]], bool] = field(default_factory=dict)

    def reset(self) -> None:
        self.imports.clear()
        self.usage.clear()


@dataclass(frozen=True)
class SizeThresholds:
    """Gzipped size limits in bytes."""

    small: int = 50 * 1024
    medium: int = 100 * 1024
    large: int = 500 * 1024


@dataclass
class DetectorConfig:
    project_dir: Path = field(default_factory=Path.cwd)
    extensions: tuple[str, ...] = DEFAULT_EXTENSIONS
    exclude_dirs: frozenset[str] = DEFAULT_EXCLUDE_DIRS
    max_depth: int = MAX_SCAN_DEPTH
    ignore: set[str] = field(default_factory=set)
    infrastructure: dict[str, str] = field(default_factory=dict)
    respect_gitignore: bool = False
    heavy_thresholds: SizeThresholds = field(default_factory=SizeThresholds)
    heavy_batch_size: int = 5
    heavy_batch_delay: float = 0.1
    http_timeout: float = 10.0


class DetectionOutcome(enum.Enum):
    NO_DEPENDENCIES = "no-dependencies"
    CLEAN = "clean"
    INFRASTRUCTURE_ONLY = "infrastructure-only"
    ISSUES_FOUND = "issues-found"
    FAILED = "failed"


@dataclass(frozen=True)
class UsageStat:
    used: bool
    import_count: int
    is_infrastructure: bool


@dataclass
class UsageAnalysis:
    total_dependencies: int
    used_packages: list[str] = field(default_factory=list)
    unused_packages: list[str] = field(default_factory=list)
    infrastructure_packages: list[str] = field(default_factory=list)
    usage_stats: dict[str, UsageStat] = field(default_factory=dict)


@dataclass(frozen=True)
class OutdatedPackage:
    package: str
    current: str
    wanted: str
    latest: str
    location: str


@dataclass(frozen=True)
class BundleSize:
    name: str
    version: str
    size: int
    gzip: int
    dependency_sizes: list = field(default_factory=list)
    description: str | None = None


class GitignoreFilter:
    """A simple gitignore-style pattern matcher rooted at the scanned project."""

    def __init__(self, root: Path, gitignore_path: Path | None = None):
        """Initialize the GitignoreFilter.

        Args:
            root: Directory the patterns are relative to.
            gitignore_path: Path to a .gitignore file. Defaults to ``root / ".gitignore"``.
        """
        self.root = Path(root).absolute()
        self.patterns: list[tuple[str, bool, bool]] = []  # (pattern, is_negation, is_anchored)

        gitignore_path = gitignore_path or self.root / ".gitignore"
        if gitignore_path.is_file():
            self._load_patterns(gitignore_path)

    def _load_patterns(self, gitignore_path: Path) -> None:
        try:
            lines = gitignore_path.read_text(encoding="utf-8").splitlines()
        except (OSError, UnicodeDecodeError) as e:
            warnings.warn(f"Could not read {gitignore_path}: {e}", stacklevel=2)
            return

        for raw_line in lines:
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue

            is_negation = line.startswith("!")
            if is_negation:
                line = line[1:]

            # A leading or inner slash pins the pattern to the root
            is_anchored = "/" in line.rstrip("/")
            line = line.strip("/")
            if line:
                self.patterns.append((line, is_negation, is_anchored))

    def should_ignore(self, path: Path) -> bool:
        """Return True when the last matching pattern for ``path`` is not a negation.

        Relative paths are taken as relative to the filter's root.
        """
        rel_path = Path(path)
        if rel_path.is_absolute():
            try:
                rel_path = rel_path.relative_to(self.root)
            except ValueError:
                return False

        rel_path_str = rel_path.as_posix()
        ignored = False
        for pattern, is_negation, is_anchored in self.patterns:
            if is_anchored:
                matches = fnmatch.fnmatch(rel_path_str, pattern) or rel_path_str.startswith(f"{pattern}/")
            else:
                matches = any(fnmatch.fnmatch(part, pattern) for part in rel_path.parts)
            if matches:
                ignored = not is_negation
        return ignored


def supports_color() -> bool:
    """Check if the terminal supports color output."""
    # Check environment variables first
    if os.environ.get("NO_COLOR"):
        return False

    if os.environ.get("FORCE_COLOR"):
        return True

    # Check if output is redirected
    if not hasattr(sys.stdout, "isatty") or not sys.stdout.isatty():
        return False

    term = os.environ.get("TERM", "") or ""
    return term.lower() not in ("dumb", "unknown")


def colorize(text: str, color_code: str) -> str:
    """Add color to text if terminal supports it."""
    if supports_color():
        return f"\033[{color_code}m{text}\033[0m"
    return text


def red(text: str) -> str:
    return colorize(text, "91")


def green(text: str) -> str:
    return colorize(text, "92")


def yellow(text: str) -> str:
    return colorize(text, "93")


def blue(text: str) -> str:
    return colorize(text, "94")


def magenta(text: str) -> str:
    return colorize(text, "95")


def cyan(text: str) -> str:
    return colorize(text, "96")


def gray(text: str) -> str:
    return colorize(text, "90")


class Reporter:
    """Collects findings from every detector and prints the grouped report."""

    def __init__(self) -> None:
        self._findings: list[Finding] = []

    def add_finding(self, finding: Finding) -> None:
        self._findings.append(finding)

    def add_findings(self, findings: Iterable[Finding]) -> None:
        self._findings.extend(findings)

    def clear(self) -> None:
        self._findings = []

    def get_findings(self) -> list[Finding]:
        return list(self._findings)

    def print_header(self) -> None:
        print(blue("\nPackage Detector Analysis Report"))
        print(gray("=" * 50))

    def print_results(self) -> None:
        if not self._findings:
            print(green(f"No issues detected! Your {MANIFEST_NAME} looks clean."))
            return

        truly_unused = [f for f in self._findings if f.category == UNUSED and not f.is_infrastructure]
        infrastructure = [f for f in self._findings if f.is_infrastructure]
        sections = [
            ("Truly Unused Packages:", truly_unused, red),
            ("Infrastructure Packages (needed for project but not imported):", infrastructure, cyan),
            ("Outdated Packages:", self._by_category(OUTDATED), yellow),
            ("Duplicate Packages:", self._by_category(DUPLICATE), blue),
            ("Heavy Packages:", self._by_category(HEAVY), magenta),
        ]
        for title, findings, color in sections:
            if not findings:
                continue
            print(color(f"\n{title}"))
            for finding in findings:
                print(color(f"  - {finding.package_name} - {finding.message}"))
                for recommendation in (finding.metadata or {}).get("recommendations", []):
                    print(gray(f"      {recommendation}"))

        self.print_summary()

    def print_summary(self) -> None:
        unused = self._by_category(UNUSED)
        infrastructure = sum(1 for f in unused if f.is_infrastructure)
        print(gray("\n" + "=" * 50))
        print(cyan("Summary:"))
        print(gray(f"  Total issues found: {len(self._findings)}"))
        if unused:
            print(red(f"  Truly unused packages: {len(unused) - infrastructure}"))
            if infrastructure:
                print(cyan(f"  Infrastructure packages: {infrastructure}"))
        for category, label, color in (
            (OUTDATED, "Outdated packages", yellow),
            (DUPLICATE, "Duplicate packages", blue),
            (HEAVY, "Heavy packages", magenta),
        ):
            count = len(self._by_category(category))
            if count:
                print(color(f"  {label}: {count}"))

    def print_usage_analysis(self, analysis: UsageAnalysis) -> None:
        print(cyan(f"\nPackage usage ({analysis.total_dependencies} dependencies):"))
        for name, stat in sorted(analysis.usage_stats.items()):
            if stat.used:
                status = green("used")
            elif stat.is_infrastructure:
                status = cyan("infrastructure")
            else:
                status = red("unused")
            print(f"  {name}: {status} ({stat.import_count} imports)")

    def print_error(self, message: str) -> None:
        print(red(f"Error: {message}"))

    def print_warning(self, message: str) -> None:
        print(yellow(f"Warning: {message}"))

    def print_info(self, message: str) -> None:
        print(blue(f"Info: {message}"))

    def print_success(self, message: str) -> None:
        print(green(message))

    def _by_category(self, category: str) -> list[Finding]:
        return [f for f in self._findings if f.category == category]


@contextlib.contextmanager
def forward_warnings(reporter: Reporter) -> Iterator[None]:
    """Relay warnings raised inside the block to ``reporter`` once it exits."""
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            yield
        finally:
            for warning in caught:
                reporter.print_warning(str(warning.message))


def param_as_set(value: str) -> set[str]:
    return {v.strip() for v in value.split(",") if v.strip()}


def normalize_extensions(extensions: Iterable[str]) -> tuple[str, ...]:
    return tuple(ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in extensions if ext)


def is_scoped_package(package_name: str) -> bool:
    return package_name.startswith("@")


def read_package_json(project_dir: Path | str | None = None) -> dict:
    """Read and parse the project's package.json.

    Raises:
        ManifestNotFoundError: package.json does not exist in ``project_dir``.
        ManifestParseError: the file is not a JSON object.
    """
    package_path = Path(project_dir or Path.cwd()) / MANIFEST_NAME
    if not package_path.is_file():
        msg = f"{MANIFEST_NAME} not found in {package_path.parent}"
        raise ManifestNotFoundError(msg)

    try:
        data = json.loads(package_path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        msg = f"Failed to parse {MANIFEST_NAME}: {e}"
        raise ManifestParseError(msg) from e

    if not isinstance(data, dict):
        msg = f"Failed to parse {MANIFEST_NAME}: expected a JSON object, got {type(data).__name__}"
        raise ManifestParseError(msg)
    return data


def load_dependency_declarations(project_dir: Path | str | None = None) -> list[DependencyDeclaration]:
    """Load every declared dependency, tagged with the group it came from."""
    data = read_package_json(project_dir)
    declarations = []
    for group, kind in DEPENDENCY_GROUPS:
        entries = data.get(group) or {}
        if not isinstance(entries, dict):
            msg = f'Failed to parse {MANIFEST_NAME}: "{group}" must be an object'
            raise ManifestParseError(msg)
        for name, version_range in entries.items():
            declarations.append(DependencyDeclaration(name, str(version_range), kind))
    return declarations


def get_all_dependencies(project_dir: Path | str | None = None) -> dict[str, str]:
    """Merge production, dev, peer and optional dependencies into one mapping.

    A name declared in several groups keeps the version range of the last group read.
    """
    return {d.name: d.version_range for d in load_dependency_declarations(project_dir)}


def find_project_files(
    root: Path | str | None = None,
    extensions: Iterable[str] = DEFAULT_EXTENSIONS,
    exclude_dirs: Iterable[str] = DEFAULT_EXCLUDE_DIRS,
    *,
    max_depth: int = MAX_SCAN_DEPTH,
    gitignore_filter: GitignoreFilter | None = None,
) -> SourceScan:
    """Collect source files under ``root``.

    Args:
        root: Directory to scan, defaults to the current working directory.
        extensions: File extensions to collect, compared case-insensitively.
        exclude_dirs: Directory names that are pruned without descending.
        max_depth: Deeper directories are silently skipped.
        gitignore_filter: Optional filter for paths matched by .gitignore.

    Returns:
        A SourceScan with the collected paths. Unreadable directories and entries
        are skipped and described in ``SourceScan.warnings``.
    """
    root_path = Path(root or Path.cwd()).absolute()
    wanted = set(normalize_extensions(extensions))
    excluded = set(exclude_dirs)
    scan = SourceScan()

    def scan_directory(current: Path, depth: int) -> None:
        if depth > max_depth:
            return

        try:
            with os.scandir(current) as it:
                entries = list(it)
        except OSError as e:
            scan.warnings.append(f"Could not read directory {current}: {e}")
            return

        for entry in entries:
            path = Path(entry.path)
            if gitignore_filter and gitignore_filter.should_ignore(path):
                continue
            try:
                is_dir = entry.is_dir()
                is_file = not is_dir and entry.is_file()
            except OSError as e:
                scan.warnings.append(f"Could not access {path}: {e}")
                continue

            if is_dir:
                if entry.name not in excluded:
                    scan_directory(path, depth + 1)
            elif is_file and path.suffix.lower() in wanted:
                scan.files.append(str(path))

    scan_directory(root_path, 0)
    return scan


def scan_imports(content: str) -> list[str]:
    """Extract literal module paths from JavaScript/TypeScript source text.

    This is a lexical scan, not a parser. It finds static ``import``/``export ... from``
    statements and ``require()``/``import()`` calls whose argument is a quoted literal.
    Paths built from variables or template substitutions are not visible to it.
    """
    imports = []
    for pattern in IMPORT_PATTERNS:
        for match in pattern.finditer(content):
            module = match.group("module")
            if match.group("quote") == "`" and "${" in module:
                continue
            imports.append(module)
    return imports


def extract_imports(file_path: Path | str, cache: AnalysisCache | None = None) -> list[str]:
    """Return the import references of one file, reading it at most once per cache."""
    key = str(file_path)
    if cache is not None and key in cache.imports:
        return cache.imports[key]

    try:
        content = Path(file_path).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        warnings.warn(f"Could not read file {file_path}: {e}", stacklevel=2)
        imports: list[str] = []
    else:
        imports = scan_imports(content)

    if cache is not None:
        return cache.imports.setdefault(key, imports)
    return imports


def reference_matches(package_name: str, reference: str) -> bool:
    if reference == package_name or reference.startswith(f"{package_name}/"):
        return True
    # Scoped names match on a bare prefix, so "@scope/foo" is satisfied by "@scope/foobar" too
    return is_scoped_package(package_name) and reference.startswith(package_name)


def _has_prefix(sorted_references: list[str], prefix: str) -> bool:
    index = bisect.bisect_left(sorted_references, prefix)
    return index < len(sorted_references) and sorted_references[index].startswith(prefix)


def is_package_used(
    package_name: str,
    project_files: Sequence[Path | str],
    cache: AnalysisCache | None = None,
) -> bool:
    """Check whether any file imports ``package_name``, stopping at the first match."""
    cache_key = (package_name, frozenset(str(f) for f in project_files))
    if cache is not None and cache_key in cache.usage:
        return cache.usage[cache_key]

    used = any(
        reference_matches(package_name, reference)
        for file_path in project_files
        for reference in extract_imports(file_path, cache)
    )
    if cache is not None:
        cache.usage[cache_key] = used
    return used


def batch_check_package_usage(
    package_names: Iterable[str],
    project_files: Sequence[Path | str],
    cache: AnalysisCache | None = None,
) -> dict[str, bool]:
    """Check many packages against one shared pass over the project's imports.

    Every file is scanned once, then each package is answered with a set lookup for
    exact matches and a binary search over the sorted references for prefix matches.
    """
    files_key = frozenset(str(f) for f in project_files)
    results: dict[str, bool] = {}
    pending = []
    for name in package_names:
        if cache is not None and (name, files_key) in cache.usage:
            results[name] = cache.usage[(name, files_key)]
        else:
            pending.append(name)

    if not pending:
        return results

    all_imports: set[str] = set()
    for file_path in project_files:
        all_imports.update(extract_imports(file_path, cache))
    sorted_imports = sorted(all_imports)

    for name in pending:
        used = (
            name in all_imports
            or _has_prefix(sorted_imports, f"{name}/")
            or (is_scoped_package(name) and _has_prefix(sorted_imports, name))
        )
        results[name] = used
        if cache is not None:
            cache.usage[(name, files_key)] = used
    return results


def classify_package(package_name: str, extra: dict[str, str] | None = None) -> InfrastructureCheck:
    """Tell build, test and tooling packages apart from dead dependencies.

    Only meaningful for packages that are not imported anywhere.
    """
    reason = (extra or {}).get(package_name) or INFRASTRUCTURE_PACKAGES.get(package_name)
    if reason:
        return InfrastructureCheck(is_infrastructure=True, reason=reason)
    if package_name.startswith(TYPES_SCOPE):
        return InfrastructureCheck(is_infrastructure=True, reason=TYPE_DEFINITIONS_REASON)
    return InfrastructureCheck(is_infrastructure=False)


def scan_sources(config: DetectorConfig) -> SourceScan:
    gitignore_filter = GitignoreFilter(config.project_dir) if config.respect_gitignore else None
    return find_project_files(
        config.project_dir,
        config.extensions,
        config.exclude_dirs,
        max_depth=config.max_depth,
        gitignore_filter=gitignore_filter,
    )


class UnusedPackageDetector:
    """Finds declared dependencies that no source file imports.

    The detector owns the run cache and resets it at the start of every :meth:`run`,
    so repeated runs in one process never see stale imports.
    """

    def __init__(self, reporter: Reporter | None = None, config: DetectorConfig | None = None):
        self.reporter = reporter if reporter is not None else Reporter()
        self.config = config or DetectorConfig()
        self.cache = AnalysisCache()

    def run(self) -> DetectionOutcome:
        self.cache.reset()
        self.reporter.print_info("Scanning project files for imports...")

        try:
            dependencies = get_all_dependencies(self.config.project_dir)
            if not dependencies:
                self.reporter.print_info(f"No dependencies found in {MANIFEST_NAME}")
                return DetectionOutcome.NO_DEPENDENCIES

            candidates = [name for name in dependencies if name not in self.config.ignore]
            if len(candidates) < len(dependencies):
                self.reporter.print_info(f"Ignoring {len(dependencies) - len(candidates)} packages")

            scan = scan_sources(self.config)
            for message in scan.warnings:
                self.reporter.print_warning(message)
            self.reporter.print_info(f"Found {len(scan.files)} project files to analyze")

            with forward_warnings(self.reporter):
                usage = batch_check_package_usage(candidates, scan.files, self.cache)
        except (ManifestError, OSError) as e:
            self.reporter.print_error(f"Failed to detect unused packages: {e}")
            return DetectionOutcome.FAILED

        unused, infrastructure = self.partition_unused(usage)
        self.reporter.add_findings(unused + infrastructure)
        return self._summarize(unused, infrastructure)

    def partition_unused(self, usage: dict[str, bool]) -> tuple[list[Finding], list[Finding]]:
        """Split packages with a False verdict into truly unused and infrastructure findings."""
        unused: list[Finding] = []
        infrastructure: list[Finding] = []
        for package_name, used in usage.items():
            if used:
                continue
            check = classify_package(package_name, self.config.infrastructure)
            if check.is_infrastructure:
                infrastructure.append(
                    Finding(
                        category=UNUSED,
                        package_name=package_name,
                        message=f"Infrastructure package: {check.reason}",
                        severity=LOW,
                        metadata={"category": INFRASTRUCTURE, "reason": check.reason},
                    ),
                )
            else:
                unused.append(
                    Finding(
                        category=UNUSED,
                        package_name=package_name,
                        message="Not imported anywhere in the project",
                        severity=MEDIUM,
                    ),
                )
        return unused, infrastructure

    def _summarize(self, unused: list[Finding], infrastructure: list[Finding]) -> DetectionOutcome:
        if unused:
            self.reporter.print_info(f"Found {len(unused)} truly unused packages")
        if infrastructure:
            self.reporter.print_info(
                f"Found {len(infrastructure)} infrastructure packages (needed for project but not imported)",
            )

        if not unused and not infrastructure:
            self.reporter.print_success("No unused packages found! All dependencies are being used.")
            return DetectionOutcome.CLEAN
        if not unused:
            self.reporter.print_success("No truly unused packages found! Only infrastructure packages detected.")
            return DetectionOutcome.INFRASTRUCTURE_ONLY
        return DetectionOutcome.ISSUES_FOUND


def detect_unused_packages(
    reporter: Reporter | None = None,
    config: DetectorConfig | None = None,
) -> DetectionOutcome:
    return UnusedPackageDetector(reporter, config).run()


def get_package_usage_analysis(
    config: DetectorConfig | None = None,
    cache: AnalysisCache | None = None,
) -> UsageAnalysis:
    """Count matching import references for every declared package."""
    config = config or DetectorConfig()
    cache = cache if cache is not None else AnalysisCache()
    dependencies = get_all_dependencies(config.project_dir)
    scan = scan_sources(config)

    reference_counts: Counter[str] = Counter()
    for file_path in scan.files:
        reference_counts.update(extract_imports(file_path, cache))

    analysis = UsageAnalysis(total_dependencies=len(dependencies))
    for name in dependencies:
        import_count = sum(count for ref, count in reference_counts.items() if reference_matches(name, ref))
        used = import_count > 0
        is_infrastructure = classify_package(name, config.infrastructure).is_infrastructure
        analysis.usage_stats[name] = UsageStat(used=used, import_count=import_count, is_infrastructure=is_infrastructure)
        if used:
            analysis.used_packages.append(name)
        elif is_infrastructure:
            analysis.infrastructure_packages.append(name)
        else:
            analysis.unused_packages.append(name)
    return analysis


def execute_npm_command(args: Sequence[str], cwd: Path | str | None = None) -> str:
    """Run npm and return its stdout.

    Some npm commands (``outdated``, ``ls``) exit non-zero while still printing a
    usable report, so stdout is returned whenever there is any.
    """
    npm = shutil.which("npm") or "npm"
    try:
        result = subprocess.run([npm, *args], cwd=cwd, capture_output=True, text=True, check=False)
    except OSError as e:
        msg = f"npm command failed: {e}"
        raise NpmCommandError(msg) from e

    if result.returncode != 0 and not result.stdout.strip():
        detail = result.stderr.strip() or f"exit code {result.returncode}"
        msg = f"npm command failed: {detail}"
        raise NpmCommandError(msg)
    return result.stdout


def parse_npm_outdated(output: str) -> list[OutdatedPackage]:
    """Parse the table printed by ``npm outdated``."""
    results = []
    lines = output.strip().splitlines()
    # Skip header line
    for raw_line in lines[1:]:
        line = raw_line.strip()
        if not line:
            continue
        parts = NPM_OUTDATED_SPLIT_P.split(line)
        if len(parts) >= 5:
            results.append(OutdatedPackage(*parts[:5]))
    return results


def parse_npm_outdated_json(output: str) -> list[OutdatedPackage]:
    """Parse ``npm outdated --json``. Raises ValueError on malformed output."""
    data = json.loads(output)
    if not isinstance(data, dict):
        msg = "unexpected npm outdated output"
        raise ValueError(msg)

    results = []
    for name, info in data.items():
        # Workspaces report one entry per dependent
        if isinstance(info, list):
            info = info[0] if info else {}
        if not isinstance(info, dict):
            msg = f"unexpected npm outdated entry for {name}"
            raise ValueError(msg)
        results.append(
            OutdatedPackage(
                package=name,
                current=str(info.get("current", "missing")),
                wanted=str(info.get("wanted", "")),
                latest=str(info.get("latest", "")),
                location=str(info.get("location") or "unknown"),
            ),
        )
    return results


def get_outdated_severity(current: str, latest: str) -> str:
    try:
        current_version = Version(current)
        latest_version = Version(latest)
    except InvalidVersion:
        return MEDIUM

    if latest_version.major > current_version.major:
        return HIGH
    if (latest_version.major, latest_version.minor) > (current_version.major, current_version.minor):
        return MEDIUM
    return LOW


def detect_outdated_packages(reporter: Reporter, config: DetectorConfig | None = None) -> list[Finding]:
    """Report packages with newer published versions according to ``npm outdated``."""
    config = config or DetectorConfig()
    reporter.print_info("Checking for outdated packages...")
    try:
        if not get_all_dependencies(config.project_dir):
            reporter.print_info(f"No dependencies found in {MANIFEST_NAME}")
            return []

        output = execute_npm_command(["outdated", "--json"], config.project_dir)
        try:
            outdated = parse_npm_outdated_json(output) if output.strip() else []
        except ValueError:
            outdated = parse_npm_outdated(execute_npm_command(["outdated"], config.project_dir))
    except (ManifestError, NpmCommandError, OSError) as e:
        reporter.print_error(f"Failed to detect outdated packages: {e}")
        return []

    findings = [
        Finding(
            category=OUTDATED,
            package_name=pkg.package,
            message=f"Current: {pkg.current}, Latest: {pkg.latest}",
            severity=get_outdated_severity(pkg.current, pkg.latest),
            metadata={"current": pkg.current, "wanted": pkg.wanted, "latest": pkg.latest, "location": pkg.location},
        )
        for pkg in outdated
        if pkg.package not in config.ignore
    ]
    if findings:
        reporter.add_findings(findings)
        reporter.print_info(f"Found {len(findings)} outdated packages")
    else:
        reporter.print_success("All packages are up to date")
    return findings


def parse_npm_ls(output: str) -> list[tuple[str, str]]:
    """Extract ``(name, version)`` pairs from the tree printed by ``npm ls``."""
    packages = []
    for line in output.splitlines():
        match = NPM_LS_LINE_P.match(line)
        if match:
            packages.append((match.group("name"), match.group("version")))
    return packages


def find_duplicate_versions(packages: Iterable[tuple[str, str]]) -> dict[str, list[str]]:
    versions: dict[str, list[str]] = {}
    for name, version in packages:
        seen = versions.setdefault(name, [])
        if version not in seen:
            seen.append(version)
    return {name: found for name, found in versions.items() if len(found) > 1}


def find_duplicates_in_lockfile(lock_data: dict) -> dict[str, list[str]]:
    """Find packages resolved at several versions in a parsed package-lock.json."""
    packages: list[tuple[str, str]] = []

    if isinstance(lock_data.get("packages"), dict):
        # lockfileVersion 2 and 3: flat "node_modules/a/node_modules/b" keys
        for key, info in lock_data["packages"].items():
            if "node_modules/" not in key or not isinstance(info, dict) or "version" not in info:
                continue
            packages.append((key.rsplit("node_modules/", 1)[-1], info["version"]))
    else:

        def scan_dependencies(dependencies: dict) -> None:
            for name, info in dependencies.items():
                if not isinstance(info, dict):
                    continue
                if "version" in info:
                    packages.append((name, info["version"]))
                if isinstance(info.get("dependencies"), dict):
                    scan_dependencies(info["dependencies"])

        scan_dependencies(lock_data.get("dependencies") or {})

    return find_duplicate_versions(packages)


def _duplicate_findings(duplicates: dict[str, list[str]], source: str | None = None) -> list[Finding]:
    findings = []
    for name, versions in duplicates.items():
        metadata: dict = {"versions": versions, "count": len(versions)}
        if source:
            metadata["source"] = source
        prefix = "Multiple versions in lockfile" if source else "Multiple versions"
        findings.append(
            Finding(
                category=DUPLICATE,
                package_name=name,
                message=f"{prefix}: {', '.join(versions)}",
                severity=HIGH if len(versions) > 2 else MEDIUM,
                metadata=metadata,
            ),
        )
    return findings


def detect_duplicate_packages(reporter: Reporter, config: DetectorConfig | None = None) -> list[Finding]:
    """Report packages installed at several versions according to ``npm ls --all``."""
    config = config or DetectorConfig()
    reporter.print_info("Checking for duplicate packages...")
    try:
        if not get_all_dependencies(config.project_dir):
            reporter.print_info(f"No dependencies found in {MANIFEST_NAME}")
            return []
        output = execute_npm_command(["ls", "--all"], config.project_dir)
    except (ManifestError, NpmCommandError, OSError) as e:
        reporter.print_error(f"Failed to detect duplicate packages: {e}")
        return []

    findings = _duplicate_findings(find_duplicate_versions(parse_npm_ls(output)))
    if findings:
        reporter.add_findings(findings)
        reporter.print_info(f"Found {len(findings)} packages with duplicate versions")
    else:
        reporter.print_success("No duplicate packages found")
    return findings


def detect_duplicate_packages_from_lockfile(
    reporter: Reporter,
    config: DetectorConfig | None = None,
) -> list[Finding]:
    config = config or DetectorConfig()
    reporter.print_info(f"Checking for duplicate packages in {LOCKFILE_NAME}...")
    lock_path = Path(config.project_dir) / LOCKFILE_NAME
    if not lock_path.is_file():
        reporter.print_warning(f"{LOCKFILE_NAME} not found, skipping lockfile analysis")
        return []

    try:
        lock_data = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        reporter.print_error(f"Failed to detect duplicate packages from lockfile: {e}")
        return []

    findings = _duplicate_findings(find_duplicates_in_lockfile(lock_data), source=LOCKFILE_NAME)
    if findings:
        reporter.add_findings(findings)
        reporter.print_info(f"Found {len(findings)} packages with duplicate versions in lockfile")
    else:
        reporter.print_success("No duplicate packages found in lockfile")
    return findings


def format_size(size_bytes: float) -> str:
    """Format a byte count the way humans read it, e.g. ``1.5 KB``."""
    if size_bytes == 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    value = float(size_bytes)
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    return f"{round(value, 1):g} {units[unit]}"


def get_size_recommendations(gzip_size: int, thresholds: SizeThresholds) -> list[str]:
    if gzip_size > thresholds.large:
        return [
            "Consider using a lighter alternative",
            "Check if you need the full package or just specific modules",
        ]
    if gzip_size > thresholds.medium:
        return [
            "Consider tree-shaking to reduce bundle size",
            "Check if you can use dynamic imports for this package",
        ]
    return []


def classify_size(gzip_size: int, thresholds: SizeThresholds) -> tuple[str, str] | None:
    """Return ``(severity, message)`` for a package above the small threshold, else None."""
    if gzip_size > thresholds.large:
        return HIGH, f"Very large package: {format_size(gzip_size)} (gzipped)"
    if gzip_size > thresholds.medium:
        return MEDIUM, f"Large package: {format_size(gzip_size)} (gzipped)"
    if gzip_size > thresholds.small:
        return LOW, f"Medium package: {format_size(gzip_size)} (gzipped)"
    return None


def get_bundlephobia_info(client: httpx.Client, package_name: str) -> BundleSize | None:
    """Look up a package's bundle size. Returns None for packages Bundlephobia does not know."""
    response = client.get(BUNDLEPHOBIA_URL, params={"package": package_name})
    if response.status_code == 404:
        return None
    if response.status_code == 429:
        msg = "Rate limited by Bundlephobia API"
        raise BundlephobiaRateLimitError(msg)
    response.raise_for_status()

    data = response.json() or {}
    if not isinstance(data, dict):
        msg = f"unexpected Bundlephobia response for {package_name}"
        raise ValueError(msg)
    return BundleSize(
        name=data.get("name") or package_name,
        version=data.get("version") or "unknown",
        size=data.get("size") or 0,
        gzip=data.get("gzip") or 0,
        dependency_sizes=data.get("dependencySizes") or [],
        description=data.get("description"),
    )


def detect_heavy_packages(
    reporter: Reporter,
    config: DetectorConfig | None = None,
    client: httpx.Client | None = None,
) -> list[Finding]:
    """Report packages whose gzipped bundle exceeds the configured thresholds.

    Packages already reported as unused are skipped. Lookups run in batches of
    ``config.heavy_batch_size`` with ``config.heavy_batch_delay`` seconds between
    batches to stay under Bundlephobia's rate limit.
    """
    config = config or DetectorConfig()
    reporter.print_info("Checking for heavy packages using Bundlephobia...")
    try:
        dependencies = get_all_dependencies(config.project_dir)
    except (ManifestError, OSError) as e:
        reporter.print_error(f"Failed to detect heavy packages: {e}")
        return []
    if not dependencies:
        reporter.print_info(f"No dependencies found in {MANIFEST_NAME}")
        return []

    already_unused = {f.package_name for f in reporter.get_findings() if f.category == UNUSED}
    candidates = [name for name in dependencies if name not in already_unused and name not in config.ignore]
    batch_size = max(1, min(config.heavy_batch_size, MAX_WORKERS_LIMIT))

    own_client = client is None
    if own_client:
        client = httpx.Client(timeout=config.http_timeout, headers={"User-Agent": USER_AGENT})

    findings = []
    try:
        with concurrent.futures.ThreadPoolExecutor(max_workers=batch_size) as executor:
            for start in range(0, len(candidates), batch_size):
                batch = candidates[start : start + batch_size]
                futures = {name: executor.submit(get_bundlephobia_info, client, name) for name in batch}
                for name, future in futures.items():
                    try:
                        info = future.result()
                    except (httpx.HTTPError, BundlephobiaRateLimitError, ValueError) as e:
                        reporter.print_warning(f"Could not check size for {name}: {e}")
                        continue
                    if info is None:
                        continue
                    classified = classify_size(info.gzip, config.heavy_thresholds)
                    if classified:
                        severity, message = classified
                        findings.append(
                            Finding(
                                category=HEAVY,
                                package_name=name,
                                message=message,
                                severity=severity,
                                metadata={
                                    "size": info.size,
                                    "gzip": info.gzip,
                                    "version": info.version,
                                    "description": info.description,
                                    "recommendations": get_size_recommendations(info.gzip, config.heavy_thresholds),
                                },
                            ),
                        )
                if start + batch_size < len(candidates) and config.heavy_batch_delay > 0:
                    time.sleep(config.heavy_batch_delay)
    finally:
        if own_client:
            client.close()

    if findings:
        reporter.add_findings(findings)
        reporter.print_info(f"Found {len(findings)} heavy packages")
    else:
        reporter.print_success("No heavy packages found")
    return findings


def _str_list(data: dict, key: str) -> list[str] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        warnings.warn(f'Ignoring "{key}" in config: expected a list of strings', stacklevel=3)
        return None
    return value


def _number(data: dict, key: str, default: float) -> float:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        warnings.warn(f'Ignoring "{key}" in config: expected a number', stacklevel=3)
        return default
    return value


def load_config(project_dir: Path | str | None = None, path: Path | str | None = None) -> DetectorConfig:
    """Load detector settings from ``.package-detector.toml``.

    Supports:
    - extensions, exclude-dirs, ignore (lists of strings)
    - max-depth, respect-gitignore
    - [infrastructure] package = "reason"
    - [heavy] small-kb, medium-kb, large-kb, batch-size, batch-delay, timeout

    A missing or malformed file leaves the defaults in place.
    """
    project_dir = Path(project_dir or Path.cwd()).absolute()
    config = DetectorConfig(project_dir=project_dir)
    config_path = Path(path) if path else project_dir / CONFIG_NAME
    if not config_path.is_file():
        if path:
            warnings.warn(f"Config file {config_path} not found, using defaults", stacklevel=2)
        return config

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except (tomllib.TOMLDecodeError, OSError) as e:
        warnings.warn(f"Failed to parse {config_path}: {e}", stacklevel=2)
        return config

    if (extensions := _str_list(data, "extensions")) is not None:
        config.extensions = normalize_extensions(extensions)
    if (exclude_dirs := _str_list(data, "exclude-dirs")) is not None:
        config.exclude_dirs = frozenset(exclude_dirs)
    if (ignore := _str_list(data, "ignore")) is not None:
        config.ignore = set(ignore)
    if isinstance(data.get("max-depth"), int):
        config.max_depth = data["max-depth"]
    if isinstance(data.get("respect-gitignore"), bool):
        config.respect_gitignore = data["respect-gitignore"]

    infrastructure = data.get("infrastructure", {})
    if isinstance(infrastructure, dict):
        config.infrastructure = {str(k): str(v) for k, v in infrastructure.items()}

    heavy = data.get("heavy", {})
    if isinstance(heavy, dict):
        defaults = config.heavy_thresholds
        config.heavy_thresholds = SizeThresholds(
            small=int(_number(heavy, "small-kb", defaults.small / 1024) * 1024),
            medium=int(_number(heavy, "medium-kb", defaults.medium / 1024) * 1024),
            large=int(_number(heavy, "large-kb", defaults.large / 1024) * 1024),
        )
        config.heavy_batch_size = int(_number(heavy, "batch-size", config.heavy_batch_size))
        config.heavy_batch_delay = float(_number(heavy, "batch-delay", config.heavy_batch_delay))
        config.http_timeout = float(_number(heavy, "timeout", config.http_timeout))
    return config


def run(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="package-detector",
        description="Detect unused, outdated, duplicate and heavy packages in a Node.js project.",
    )
    parser.add_argument("--unused", action="store_true", help="detect unused packages")
    parser.add_argument("--outdated", action="store_true", help="detect outdated packages")
    parser.add_argument("--duplicates", action="store_true", help="detect duplicate packages")
    parser.add_argument("--heavy", action="store_true", help="detect heavy packages")
    parser.add_argument("--all", action="store_true", help="run all detectors (default)")
    parser.add_argument("-d", "--dst-dir", default="", help="project directory to check (default: cwd)")
    parser.add_argument(
        "-i",
        "--ignore",
        type=param_as_set,
        default=set(),
        help="ignore,packages,with,comma,separated",
    )
    parser.add_argument("--extensions", type=param_as_set, help="source extensions to scan, e.g. .js,.ts")
    parser.add_argument("--exclude-dirs", type=param_as_set, help="directory names to skip while scanning")
    parser.add_argument("--config", type=Path, help=f"path to a config file (default: {CONFIG_NAME})")
    parser.add_argument(
        "--lockfile",
        action="store_true",
        help=f"detect duplicates from {LOCKFILE_NAME} instead of npm ls",
    )
    parser.add_argument("--usage-stats", action="store_true", help="print import counts for every dependency")
    parser.add_argument(
        "--respect-gitignore",
        action="store_true",
        help="skip files matched by the project's .gitignore",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    args = parser.parse_args(argv)

    reporter = Reporter()
    project_dir = Path(args.dst_dir or Path.cwd()).absolute()
    with forward_warnings(reporter):
        config = load_config(project_dir, args.config)
    config.ignore |= args.ignore
    if args.extensions:
        config.extensions = normalize_extensions(args.extensions)
    if args.exclude_dirs:
        config.exclude_dirs = frozenset(args.exclude_dirs)
    if args.respect_gitignore:
        config.respect_gitignore = True

    try:
        declarations = load_dependency_declarations(project_dir)
    except (ManifestError, OSError) as e:
        reporter.print_error(str(e))
        return 1

    run_all = args.all or not any([args.unused, args.outdated, args.duplicates, args.heavy])
    reporter.print_header()
    if run_all:
        reporter.print_info("Running all package detectors...")
    reporter.clear()

    outcome = None
    if run_all or args.unused:
        outcome = detect_unused_packages(reporter, config)
    if args.usage_stats:
        reporter.print_usage_analysis(get_package_usage_analysis(config))
    if run_all or args.outdated:
        detect_outdated_packages(reporter, config)
    if run_all or args.duplicates:
        if args.lockfile:
            detect_duplicate_packages_from_lockfile(reporter, config)
        else:
            detect_duplicate_packages(reporter, config)
    if run_all or args.heavy:
        detect_heavy_packages(reporter, config)

    # An empty manifest is not a clean one
    if declarations:
        reporter.print_results()
    return 1 if outcome is DetectionOutcome.FAILED else 0


def main() -> None:
    """Main entry point for the application."""
    try:
        sys.exit(run())
    except KeyboardInterrupt:
        print()
        Reporter().print_info("Process interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
