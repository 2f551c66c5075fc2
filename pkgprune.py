#
# pkgprune
#
# A small CLI tool to prune superseded package archives from a package manager's file cache.
#
# Copyright (c) 2025-2026 Thomas Kuhlmann
#
# Licensed under the MIT License. See LICENSE file in the project root for license information.
#

import argparse
import os
import re
import shutil
import subprocess
import sys
import traceback
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from functools import cmp_to_key
from os import stat_result
from pathlib import Path, PurePath
from types import SimpleNamespace
from typing import NoReturn, Optional, TextIO, TypeVar, Union, no_type_check


VERSION: str = "dev-1.0.0"

SCRIPT_START = datetime.now().timestamp()

DEFAULT_CACHE_DIR: str = "/var/cache/pacman/pkg/"

DEFAULT_CONFIG_FILE: str = "/etc/pacman.conf"

DEFAULT_KEEP: int = 3

SIGNATURE_SUFFIX: str = ".sig"

PACKAGE_FILE_PATTERN = re.compile(r"\.pkg\.tar(?:\.[A-Za-z0-9]+)?$")

INSTALLED_PACKAGES_COMMAND: tuple[str, ...] = ("pacman", "-Qq")

_DIGITS = frozenset("0123456789")
_LETTERS = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ")

Identity = tuple[str, str]

_P = TypeVar("_P", str, Path)


class IntegrityCheckFailedError(Exception):
    pass


class ExternalCommandError(Exception):
    pass


class ConfigNamespace(SimpleNamespace):
    pass


def _compare_segments(a: str, b: str) -> int:
    """Compare two version strings segment by segment (rpm style).

    Runs of digits compare numerically, runs of letters lexicographically,
    anything else is a separator. A numeric run beats an alpha run, and a
    trailing alpha run (``1.0rc1`` vs ``1.0``) marks the older version.
    """
    if a == b:
        return 0

    len_a, len_b = len(a), len(b)
    i = j = 0
    prev_i = prev_j = 0
    while i < len_a and j < len_b:
        while i < len_a and a[i] not in _DIGITS and a[i] not in _LETTERS:
            i += 1
        while j < len_b and b[j] not in _DIGITS and b[j] not in _LETTERS:
            j += 1
        if i >= len_a or j >= len_b:
            break

        # Different separator lengths decide on their own
        if i - prev_i != j - prev_j:
            return -1 if i - prev_i < j - prev_j else 1

        start_i, start_j = i, j
        charset = _DIGITS if a[i] in _DIGITS else _LETTERS
        is_num = charset is _DIGITS
        while i < len_a and a[i] in charset:
            i += 1
        while j < len_b and b[j] in charset:
            j += 1
        segment_a, segment_b = a[start_i:i], b[start_j:j]

        if not segment_b:  # Segment types differ: numeric is newer than alpha
            return 1 if is_num else -1

        if is_num:
            segment_a, segment_b = segment_a.lstrip("0"), segment_b.lstrip("0")
            if len(segment_a) != len(segment_b):
                return 1 if len(segment_a) > len(segment_b) else -1

        if segment_a != segment_b:
            return 1 if segment_a > segment_b else -1

        prev_i, prev_j = i, j

    if i >= len_a and j >= len_b:
        return 0

    # One side has something left: an alpha remainder is older, anything else newer
    if (i >= len_a and b[j] not in _LETTERS) or (i < len_a and a[i] in _LETTERS):
        return -1
    return 1


def _split_evr(evr: str) -> tuple[str, str, Optional[str]]:
    digits = len(evr) - len(evr.lstrip("0123456789"))
    if digits < len(evr) and evr[digits] == ":":
        epoch, rest = evr[:digits] or "0", evr[digits + 1 :]
    else:
        epoch, rest = "0", evr
    version, sep, release = rest.rpartition("-")
    if not sep:
        return epoch, rest, None
    return epoch, version, release


def vercmp(a: str, b: str) -> int:
    """Compare two ``[epoch:]version[-release]`` strings.

    Returns -1, 0 or 1. Epochs are compared first, then versions, and the
    releases only when both sides carry one.
    """
    if a == b:
        return 0
    epoch_a, version_a, release_a = _split_evr(a)
    epoch_b, version_b, release_b = _split_evr(b)
    result = _compare_segments(epoch_a, epoch_b)
    if result == 0:
        result = _compare_segments(version_a, version_b)
        if result == 0 and release_a is not None and release_b is not None:
            result = _compare_segments(release_a, release_b)
    return result


@dataclass(frozen=True)
class PackageFile:
    path: str
    name: str
    version: str
    release: str
    arch: str

    @property
    def evr(self) -> str:
        return f"{self.version}-{self.release}"

    @property
    def identity(self) -> Identity:
        return (self.name, self.arch)

    @classmethod
    def parse(cls, path: Union[str, PurePath]) -> Optional["PackageFile"]:
        """Split ``<name>-<version>-<release>-<arch>.<ext>`` into its parts.

        The last three dash separated segments never belong to the name, which
        is how names with embedded hyphens are recovered. Returns None for names
        that do not have this shape.
        """
        segments = PurePath(path).name.split("-")
        if len(segments) < 4:
            return None
        version, release, arch_ext = segments[-3:]
        arch, dot, _ = arch_ext.partition(".")
        name = "-".join(segments[:-3])
        if not (name and version and release and arch and dot):
            return None
        return cls(str(path), name, version, release, arch)


def _cmp(a: str, b: str) -> int:
    return (a > b) - (a < b)


def compare_package_files(a: Union[str, PurePath], b: Union[str, PurePath]) -> int:
    package_a, package_b = PackageFile.parse(a), PackageFile.parse(b)
    if package_a is None and package_b is None:
        return _cmp(str(a), str(b))
    if package_a is None or package_b is None:
        return 1 if package_a is None else -1  # Unparsable names go last
    return _cmp(package_a.name, package_b.name) or vercmp(package_a.evr, package_b.evr) or _cmp(package_a.arch, package_b.arch) or _cmp(package_a.path, package_b.path)


def sort_package_files(files: Iterable[_P]) -> list[_P]:
    return sorted(files, key=cmp_to_key(compare_package_files))


class LogLevel(IntEnum):
    ERROR = 0
    WARN = 1
    INFO = 2
    DEBUG = 3

    @classmethod
    def from_name_or_number(cls, prefix: str) -> "LogLevel":
        try:
            return next(m for m in cls if m.name.startswith(prefix.upper()))
        except StopIteration:
            try:
                return cls(int(prefix))
            except ValueError:
                raise ValueError("Invalid log level: " + prefix)


class Logger:
    _decisions: dict[str, list[tuple[str, Optional[str]]]]
    _args: ConfigNamespace

    def __init__(self, args: ConfigNamespace) -> None:
        self._args = args
        self._decisions = defaultdict(list)

    def has_log_level(self, level: LogLevel) -> bool:
        return level <= int(self._args.verbose)

    def _raw_verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        print(f"[{prefix or LogLevel(level).name}] {message}", file=file or sys.stderr)

    def verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        if self.has_log_level(level):
            self._raw_verbose(level, message, file, prefix)

    def add_decision(self, level: LogLevel, file: Union[str, PurePath], message: str, debug: Optional[str] = None) -> None:
        if not self.has_log_level(level):
            return
        if self.has_log_level(LogLevel.DEBUG):  # Decision history (latest first) and debug details only with debug log level
            self._decisions[str(file)].insert(0, (message, debug))
        else:
            self._decisions[str(file)][:] = [(message, None)]

    def _format_decision(self, decision: tuple[str, Optional[str]]) -> str:
        message, debug = decision
        return message + (f" ({debug})" if debug is not None else "")

    def print_decisions(self) -> None:
        if not self._decisions:
            return
        longest_file_name_length = max(len(PurePath(p).name) for p in self._decisions)
        for file in sort_package_files(self._decisions):
            decisions = self._decisions[file]
            if not decisions:
                continue
            self._raw_verbose(LogLevel.INFO, f"{PurePath(file).name:<{longest_file_name_length}}: {self._format_decision(decisions[0])}")
            if not self.has_log_level(LogLevel.DEBUG):
                continue
            for idx, decision in enumerate(decisions[1:]):
                self._raw_verbose(LogLevel.DEBUG, f"{' ' * ((longest_file_name_length + 2) + idx * 4)}└── {self._format_decision(decision)}")


Family = tuple[PackageFile, ...]


def group_families(paths: Iterable[Union[str, PurePath]], include: Iterable[str] = (), exclude: Iterable[str] = ()) -> dict[Identity, Family]:
    """Group package files by (name, arch), honouring the include and exclude sets.

    Exclusion wins over inclusion. Families keep the enumeration order of
    ``paths``; file names that cannot be parsed are dropped, and a path listed
    more than once only counts at its first occurrence.
    """
    include_set, exclude_set = frozenset(include), frozenset(exclude)
    families: dict[Identity, list[PackageFile]] = defaultdict(list)
    seen: set[str] = set()
    for path in paths:
        package = PackageFile.parse(path)
        if package is None:
            continue
        if package.path in seen:
            continue
        seen.add(package.path)
        if include_set and package.name not in include_set:
            continue
        if exclude_set and package.name in exclude_set:
            continue
        families[package.identity].append(package)
    return {identity: tuple(family) for identity, family in families.items()}


@dataclass
class SelectionResult:
    candidates: list[PackageFile]
    retained: list[PackageFile]


class CandidateSelector:
    _families: dict[Identity, Family]
    _keep: int
    _arch: Optional[str]
    _logger: Optional[Logger]

    def __init__(self, families: dict[Identity, Family], keep: int, arch: Optional[str] = None, logger: Optional[Logger] = None) -> None:
        if keep < 0:
            raise ValueError(f"Invalid keep count {keep}: must be an integer >= 0")
        self._families = families
        self._keep = keep
        self._arch = arch
        self._logger = logger

    def _add_decision(self, level: LogLevel, package: PackageFile, message: str) -> None:
        if self._logger is not None:
            self._logger.add_decision(level, package.path, message, debug=f"version: {package.evr}, arch: {package.arch}")

    @staticmethod
    def sort_family(family: Iterable[PackageFile]) -> list[PackageFile]:
        return sorted(family, key=cmp_to_key(lambda a, b: vercmp(a.evr, b.evr)))  # Oldest first, stable for equal versions

    def select(self) -> SelectionResult:
        candidates: list[PackageFile] = []
        retained: list[PackageFile] = []
        for (_, arch), family in self._families.items():
            if self._arch is not None and arch != self._arch:
                continue  # Wrong architecture: neither kept nor pruned
            ordered = self.sort_family(family)
            split = max(0, len(ordered) - self._keep)
            for package in ordered[:split]:
                self._add_decision(LogLevel.INFO, package, f"Pruning: {len(ordered) - split} newer version(s) kept")
            for index, package in enumerate(reversed(ordered[split:]), start=1):
                self._add_decision(LogLevel.DEBUG, package, f"Keeping {index:02d}/{self._keep:02d}")
            candidates.extend(ordered[:split])
            retained.extend(ordered[split:])

        # Never prune a file that is also retained (e.g. duplicated input)
        overlap = {p.path for p in candidates} & {p.path for p in retained}
        if overlap:
            raise IntegrityCheckFailedError(f"Files are both kept and pruned: {', '.join(sorted(overlap))}!!")

        return SelectionResult(candidates, retained)


def find_candidates(paths: Iterable[Union[str, PurePath]], keep: int, arch: Optional[str] = None, include: Iterable[str] = (), exclude: Iterable[str] = ()) -> list[str]:
    families = group_families(paths, include, exclude)
    return [package.path for package in CandidateSelector(families, keep, arch).select().candidates]


class ModernHelpFormatter(argparse.HelpFormatter):
    @no_type_check
    def __init__(self, *a, **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, max_help_position=30, width=160, **kw)

    @no_type_check
    def start_section(self, heading) -> None:  # noqa: ANN001
        super().start_section(heading.capitalize())


class ModernStrictArgumentParser(argparse.ArgumentParser):
    @no_type_check
    def __init__(self, *a, **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, **kw)
        self._errors: list[str] = []

    def add_error(self, msg: str) -> None:
        if msg not in self._errors:
            self._errors.append(msg)

    def error(self, message: str) -> NoReturn:
        self.print_usage()
        print("\nError(s):")
        for line in message.split("\n"):
            print(f"  • {line}")
        print("\nHint: Try '--help' for more information.")
        sys.exit(2)

    # Argument type helpers
    def non_negative_int_argument(self, value: str) -> int:
        try:
            int_value = int(value)
            if int_value < 0:
                raise ValueError
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid value '{value}': must be an integer >= 0")
        return int_value

    def verbose_argument(self, value: str) -> LogLevel:
        try:
            return LogLevel.from_name_or_number(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid verbose value '{value}' (use ERROR, WARN, INFO, DEBUG or 0, 1, 2, 3)")

    def parse_positive_time_argument(self, time_str: str) -> float:
        time_str = time_str.strip(" ")
        m = re.fullmatch(r"([0-9]+(?:\.[0-9]*)?)(?: ?([hdwmyq]))?", time_str)
        if not m:
            raise argparse.ArgumentTypeError(f"Invalid time format: '{time_str}'")
        multipliers = {"": 1, "h": 60 * 60, "d": 24 * 60 * 60, "w": 7 * 24 * 60 * 60, "m": 30 * 24 * 60 * 60, "q": 90 * 24 * 60 * 60, "y": 365 * 24 * 60 * 60}
        result = float(m.group(1)) * multipliers[m.group(2) or ""]
        if result < 1:  # Must be >= 1 s
            raise argparse.ArgumentTypeError(f"Time value must be >= 1 s: '{time_str}'")
        return result

    @staticmethod
    def format_size(bytes: int) -> str:
        units = ["", "K", "M", "G", "T", "P", "E"]
        idx, value = 0, float(bytes)
        while value >= 1024 and idx < len(units) - 1:
            value /= 1024
            idx += 1
        return f"{value:.2f}".rstrip("0").rstrip(".") + units[idx]

    @staticmethod
    def format_time(seconds: int) -> str:
        units = [("y", 365 * 24 * 60 * 60), ("q", 90 * 24 * 60 * 60), ("m", 30 * 24 * 60 * 60), ("w", 7 * 24 * 60 * 60), ("d", 24 * 60 * 60), ("h", 60 * 60), ("", 1)]
        value, suffix = float(seconds), ""
        for s, v in units:
            if seconds >= v:
                value = seconds / v
                suffix = s
                break
        return f"{value:.2f}".rstrip("0").rstrip(".") + suffix

    # Internal helper methods
    def _suggest(self, argument: str) -> list[str]:
        opts = [o for a in self._actions for o in a.option_strings if o.startswith("--")]
        cand = [o for o in opts if abs(len(o) - len(argument)) <= 2 and sum(a != b for a, b in zip(o, argument)) <= 2]
        return cand[:1]

    @no_type_check
    def _collect_raw_args(self, args):  # noqa: ANN202, ANN001
        if args is not None:
            return list(args)
        return sys.argv[1:]  # default argparse behavior

    @no_type_check
    def _detect_duplicate_flags(self, raw_args) -> None:  # noqa: ANN001
        # Normalize option strings
        alias = {opt: action.option_strings[0] for action in self._actions for opt in action.option_strings}
        repeatable = {opt for action in self._actions if isinstance(action, argparse._AppendAction) for opt in action.option_strings}
        seen = set()

        for tok in raw_args:
            if tok == "--":
                break
            if not tok.startswith("-") or tok == "-":  # "-" reads from stdin
                continue

            # Extract option (handles -k3, -k=3, --keep=3)
            opt = tok.split("=", 1)[0]

            # Handle -k3 → -k
            if len(opt) > 2 and opt.startswith("-") and not opt.startswith("--"):
                opt = opt[:2]

            key = alias.get(opt, opt)
            if key in repeatable:
                continue

            if key in seen:
                self.add_error(f"Duplicate flag: {key}")
            seen.add(key)

    @no_type_check
    def _validate_arguments(self, ns) -> None:  # noqa: ANN001
        # quiet and verbose are exclusive
        if ns.quiet and ns.verbose is not None:
            self.add_error("--quiet and --verbose cannot be used together")

        # Default verbosity, if none given
        if ns.verbose is None:
            ns.verbose = LogLevel.ERROR if ns.list_only is not None or ns.quiet else LogLevel.INFO

        # normalize 0-byte separator
        if ns.list_only == "\\0":
            ns.list_only = "\0"
        elif ns.list_only == "":
            self.add_error("--list-only separator must not be empty")

        # incompatible options (list-only and verbose > ERROR)
        if ns.list_only is not None and ns.verbose > LogLevel.ERROR:
            self.add_error("--list-only and --verbose (> ERROR) cannot be used together")

        # comma separated ignore lists
        ns.ignore = [name.strip() for value in (ns.ignore or []) for name in value.split(",") if name.strip()]
        ns.packages = list(ns.packages or [])

        if ns.arch is not None and not ns.arch.strip():
            self.add_error("--arch must not be empty")

    # Main hook
    @no_type_check
    def parse_known_args(self, args=None, namespace=None) -> tuple[argparse.Namespace, list[str]]:  # noqa: ANN001
        self._errors = []
        raw_args = self._collect_raw_args(args)
        self._detect_duplicate_flags(raw_args)

        ns, unknown = super().parse_known_args(raw_args, namespace or argparse.Namespace())

        if unknown:
            sug = self._suggest(unknown[0])
            if sug:
                self.add_error(f"Unknown option: {unknown[0]} (did you mean {sug[0]}?)")
            else:
                self.add_error(f"Unknown option: {unknown[0]}")

        self._validate_arguments(ns)

        if self._errors:
            msg = "\n".join(f"{e}" for e in self._errors)
            self.error(msg)

        return ns, unknown


def create_parser() -> ModernStrictArgumentParser:
    parser: ModernStrictArgumentParser = ModernStrictArgumentParser(
        description=f"pkgprune {VERSION}\n\nA small CLI tool to prune superseded package archives from a package cache",
        usage=("pkgprune <operation> [options] [package ...]\n\nExample:\n  pkgprune -d -k 2\n  pkgprune linux glibc -r -u -k 0 -c /var/cache/pacman/pkg\n  pkgprune linux --list-only='\\0'"),
        epilog="Use with caution!! This tool deletes files when --remove is set.",
        formatter_class=ModernHelpFormatter,
        add_help=False,
    )

    g_ops = parser.add_argument_group("Operations")
    g_main = parser.add_argument_group("Main arguments")
    g_filter = parser.add_argument_group("Filter arguments")
    g_behavior = parser.add_argument_group("Behavior arguments")
    g_common = parser.add_argument_group("Common arguments")

    # operations (exactly one)
    ops = g_ops.add_mutually_exclusive_group(required=True)
    ops.add_argument("--dryrun", "-d", action="store_true", help="Show candidate packages and reclaimable disk space, change nothing")
    ops.add_argument("--move", "-m", type=str, metavar="dir", default=None, help="Move candidate packages (and their signatures) into dir")
    ops.add_argument("--remove", "-r", action="store_true", help="Delete candidate packages (and their signatures)")
    # fmt: off
    ops.add_argument("--list-only", "-L", nargs="?", const="\n", default=None, metavar="sep",
        help="Output only file paths of candidates (incompatible with --verbose) (optional separator (sep): e.g. '\\0'; use --list-only=sep, a separate word after -L is taken as sep)")
    # fmt: on

    # positional and main arguments
    g_main.add_argument("packages", nargs="*", metavar="package", help="Only consider these packages ('-' reads names from stdin)")
    g_main.add_argument("--cachedir", "-c", action="append", metavar="dir", default=None, help="Cache directory to scan, may be repeated (default: CacheDir from config)")
    g_main.add_argument("--config", type=str, metavar="file", default=DEFAULT_CONFIG_FILE, help=f"Package manager config to read CacheDir from (default: {DEFAULT_CONFIG_FILE})")
    g_main.add_argument("--keep", "-k", type=parser.non_negative_int_argument, metavar="N", default=DEFAULT_KEEP, help=f"Keep the N newest versions of each package (default: {DEFAULT_KEEP})")

    # filter arguments
    g_filter.add_argument("--arch", "-a", type=str, metavar="arch", default=None, help="Only consider packages of this architecture")
    g_filter.add_argument("--ignore", "-i", action="append", metavar="pkgs", default=None, help="Ignore packages, comma separated, may be repeated ('-' reads names from stdin)")
    g_filter.add_argument("--uninstalled", "-u", action="store_true", help="Only consider packages which are not installed")
    g_filter.add_argument("--min-atime", type=parser.parse_positive_time_argument, metavar="age", default=None, help="Keep packages accessed more recently than age (e.g. 3600, 1h, 1d, 1w, 1m, 1q, 1y - with 1 month = 30 days)")
    g_filter.add_argument("--min-mtime", type=parser.parse_positive_time_argument, metavar="age", default=None, help="Keep packages modified more recently than age (e.g. 3600, 1h, 1d, 1w, 1m, 1q, 1y - with 1 month = 30 days)")

    # behavior flags
    g_behavior.add_argument("--force", "-f", action="store_true", help="Overwrite existing files in the move target, pass -f to mv/rm when escalating")
    g_behavior.add_argument("--no-sudo", action="store_false", dest="use_sudo", default=True, help="Never escalate privileges with sudo (default: escalate, if a directory is not writable)")
    # fmt: off
    g_behavior.add_argument("--verbose", "-V", "-v", type=parser.verbose_argument, default=None, nargs="?", const=LogLevel.DEBUG, metavar="lev",
        help="Verbosity level: 0 = error, 1 = warn, 2 = info, 3 = debug (default: 'debug', if specified without value; 'info' otherwise; use numbers or names)")
    # fmt: on
    g_behavior.add_argument("--quiet", "-q", action="store_true", help="Only output errors")

    # common flags
    g_common.add_argument("--version", "-R", action="version", version=f"%(prog)s {VERSION}")
    g_common.add_argument("--help", "-h", "-H", action="help", help="Show this help message and exit")
    g_common.add_argument("--stacktrace", action="store_true", help=argparse.SUPPRESS)

    return parser


def parse_arguments() -> ConfigNamespace:
    parser = create_parser()
    args = parser.parse_args()
    return ConfigNamespace(**vars(args))


def read_cache_dirs(config_file: Path) -> list[Path]:
    """Read ``CacheDir`` entries from the [options] section of a pacman style config.

    Falls back to the default cache directory, if the file is missing or has no entry.
    """
    cache_dirs: list[Path] = []
    if config_file.is_file():
        section: Optional[str] = None
        for line in config_file.read_text(encoding="utf-8").splitlines():
            line = line.split("#", 1)[0].strip()
            if not line:
                continue
            if line.startswith("[") and line.endswith("]"):
                section = line[1:-1].strip()
                continue
            key, sep, value = line.partition("=")
            if section == "options" and sep and key.strip() == "CacheDir":
                cache_dirs.extend(Path(v) for v in value.split())
    return cache_dirs or [Path(DEFAULT_CACHE_DIR)]


def unique_dirs(directories: Iterable[Path]) -> list[Path]:
    """Drop directories that resolve to one already listed, keeping the first spelling."""
    unique: dict[Path, Path] = {}
    for directory in directories:
        unique.setdefault(directory.resolve(), directory)
    return list(unique.values())


def query_installed_packages(command: Iterable[str] = INSTALLED_PACKAGES_COMMAND) -> set[str]:
    command = list(command)
    try:
        result = subprocess.run(command, check=True, capture_output=True, text=True)
    except FileNotFoundError as e:
        raise ExternalCommandError(f"Command not found: {command[0]}") from e
    except subprocess.CalledProcessError as e:
        raise ExternalCommandError(f"'{' '.join(command)}' failed with exit code {e.returncode}: {(e.stderr or '').strip()}") from e
    return set(result.stdout.split())


def read_stdin_names(stream: Optional[TextIO] = None) -> list[str]:
    return (stream or sys.stdin).read().split()


def build_filter_sets(args: ConfigNamespace, logger: Logger) -> tuple[frozenset[str], frozenset[str]]:
    stdin_names = read_stdin_names() if "-" in args.packages or "-" in args.ignore else []

    def expand(values: list[str]) -> set[str]:
        return {name for value in values for name in (stdin_names if value == "-" else [value])}

    include = expand(args.packages)
    exclude = expand(args.ignore)
    if args.uninstalled:
        installed = query_installed_packages()
        logger.verbose(LogLevel.DEBUG, f"Installed packages excluded: {len(installed)}")
        exclude |= installed
    return frozenset(include), frozenset(exclude)


class FileStatsCache:
    _file_stats_cache: dict[Path, stat_result]

    def __init__(self) -> None:
        self._file_stats_cache = {}

    def _stat(self, file: Path) -> stat_result:
        if file not in self._file_stats_cache:
            self._file_stats_cache[file] = file.stat()
        return self._file_stats_cache[file]

    def get_file_seconds(self, file: Path, age_type: str) -> int:
        return int(getattr(self._stat(file), f"st_{age_type}"))

    def get_file_bytes(self, file: Path) -> int:
        return self._stat(file).st_size


def read_cache_dir(cache_dir: Path, logger: Logger) -> list[Path]:
    if not cache_dir.exists():
        raise FileNotFoundError(f"Cache directory not found: {cache_dir}")
    if not cache_dir.is_dir():
        raise NotADirectoryError(f"Cache directory is not a directory: {cache_dir}")

    matches = [file for file in cache_dir.iterdir() if file.is_file() and not file.is_symlink() and PACKAGE_FILE_PATTERN.search(file.name)]

    for file in matches:
        if PackageFile.parse(file) is None:
            logger.verbose(LogLevel.DEBUG, f"Skipping malformed package file name: {file.name}")

    return sort_package_files(matches)


def find_signature(file: Path) -> Optional[Path]:
    signature = file.with_name(file.name + SIGNATURE_SUFFIX)
    if signature.is_file() and not signature.is_symlink():
        return signature
    return None


def filter_recently_used(candidates: list[Path], args: ConfigNamespace, logger: Logger, file_stats_cache: FileStatsCache) -> list[Path]:
    protected: set[Path] = set()
    for age_type in ("atime", "mtime"):
        min_age = getattr(args, f"min_{age_type}")
        if min_age is None:
            continue
        threshold = SCRIPT_START - min_age
        for file in candidates:
            file_time = file_stats_cache.get_file_seconds(file, age_type)
            if file_time > threshold and file not in protected:
                logger.add_decision(LogLevel.INFO, file, f"Keeping: {age_type} within {ModernStrictArgumentParser.format_time(int(min_age))}", debug=f"{age_type}: {datetime.fromtimestamp(file_time)}")
                protected.add(file)
    return [file for file in candidates if file not in protected]


def process_cache_dir(cache_dir: Path, args: ConfigNamespace, include: frozenset[str], exclude: frozenset[str], logger: Logger, file_stats_cache: FileStatsCache) -> list[Path]:
    files = read_cache_dir(cache_dir, logger)
    logger.verbose(LogLevel.DEBUG, f"Found {len(files)} package files in '{cache_dir}'")

    families = group_families([str(file) for file in files], include, exclude)
    result = CandidateSelector(families, args.keep, args.arch, logger).select()
    candidates = filter_recently_used([Path(package.path) for package in result.candidates], args, logger, file_stats_cache)
    logger.verbose(LogLevel.INFO, f"'{cache_dir}': {len(candidates)} candidates, {len(result.retained)} packages kept")

    # Check, if child of cache directory
    for file in candidates:
        if file.parent.resolve() != cache_dir.resolve():
            raise IntegrityCheckFailedError(f"File '{file}' is not a child of cache directory '{cache_dir}'")

    signatures: list[Path] = []
    for file in candidates:
        signature = find_signature(file)
        if signature is not None:
            logger.add_decision(LogLevel.INFO, signature, f"Pruning: signature of {file.name}")
            signatures.append(signature)

    return sort_package_files(candidates + signatures)


def needs_privileges(directories: Iterable[Path]) -> bool:
    return any(not os.access(directory, os.W_OK) for directory in directories)


def run_escalated(command: list[str], logger: Logger) -> None:
    full_command = ["sudo", *command]
    logger.verbose(LogLevel.DEBUG, f"Running: {' '.join(full_command)}")
    try:
        subprocess.run(full_command, check=True)
    except FileNotFoundError as e:
        raise ExternalCommandError("Command not found: sudo") from e
    except subprocess.CalledProcessError as e:
        raise ExternalCommandError(f"'{' '.join(command[:2])} ...' failed with exit code {e.returncode}") from e


def run_deletion(file: Path, args: ConfigNamespace, logger: Logger) -> bool:
    logger.verbose(LogLevel.DEBUG, f"DELETING: {file.name}")
    try:
        file.unlink()
    except OSError as e:  # Catch deletion error, print it, and continue
        logger.verbose(LogLevel.WARN, f"Error while deleting file '{file.name}': {e}")
        return False
    return True


def run_move(file: Path, args: ConfigNamespace, logger: Logger) -> bool:
    target = Path(args.move) / file.name
    logger.verbose(LogLevel.DEBUG, f"MOVING: {file.name} -> {target}")
    if target.exists() and not args.force:
        logger.verbose(LogLevel.WARN, f"Error while moving file '{file.name}': '{target}' already exists (use --force to overwrite)")
        return False
    try:
        shutil.move(str(file), str(target))
    except OSError as e:  # Catch move error, print it, and continue
        logger.verbose(LogLevel.WARN, f"Error while moving file '{file.name}': {e}")
        return False
    return True


def apply_action(files: list[Path], cache_dir: Path, args: ConfigNamespace, logger: Logger) -> list[Path]:
    if not files:
        return []

    if args.list_only is not None:
        for file in files:
            print(file.absolute(), end=args.list_only)  # List mode
        return files

    if args.dryrun:
        for file in files:
            logger.verbose(LogLevel.DEBUG, f"DRY-RUN: {file.name}")  # Just simulate
        return files

    if args.move is not None:
        action, command = run_move, ["mv", "-f" if args.force else "-n"]  # -n: never overwrite without --force
    elif args.remove:
        action, command = run_deletion, ["rm"] + (["-f"] if args.force else [])
    else:
        raise ValueError("No operation selected (use one of --dryrun, --move, --remove, --list-only)")

    directories = [cache_dir] + ([Path(args.move)] if args.move is not None else [])
    if args.use_sudo and needs_privileges(directories):
        logger.verbose(LogLevel.INFO, f"'{cache_dir}' is not writable, escalating privileges with sudo")
        command += ["--", *(str(file) for file in files)] + ([str(args.move)] if args.move is not None else [])
        run_escalated(command, logger)
        return files

    return [file for file in files if action(file, args, logger)]


def summarize(processed: list[Path], total_bytes: int, args: ConfigNamespace, logger: Logger) -> None:
    count = sum(1 for file in processed if not file.name.endswith(SIGNATURE_SUFFIX))
    if not count:
        logger.verbose(LogLevel.INFO, "no candidate packages found for pruning")
        return
    saved = ModernStrictArgumentParser.format_size(total_bytes)
    if args.dryrun:
        logger.verbose(LogLevel.INFO, f"finished dry run: {count} candidates (disk space saved: {saved})")
    elif args.move is not None:
        logger.verbose(LogLevel.INFO, f"finished: {count} packages moved (disk space saved: {saved})")
    elif args.remove:
        logger.verbose(LogLevel.INFO, f"finished: {count} packages removed (disk space saved: {saved})")


def handle_exception(exception: Exception, exit_code: int, stacktrace: bool, prefix: str = "") -> None:
    if stacktrace:
        traceback.print_exc()
    print(f"[{prefix or LogLevel.ERROR.name}] {exception}", file=sys.stderr)
    sys.exit(exit_code)


def main() -> None:
    args: Optional[ConfigNamespace] = None

    try:
        args = parse_arguments()

        file_stats_cache = FileStatsCache()
        logger = Logger(args)

        logger.verbose(LogLevel.DEBUG, f"Parsed arguments: {args}")

        cache_dirs = [Path(d) for d in args.cachedir] if args.cachedir else read_cache_dirs(Path(args.config))
        cache_dirs = unique_dirs(cache_dirs)
        logger.verbose(LogLevel.DEBUG, "Cache directories: " + ", ".join(f"'{d}'" for d in cache_dirs))

        if args.move is not None:
            move_dir = Path(args.move)
            if not move_dir.is_dir():
                raise NotADirectoryError(f"Move target is not a directory: {move_dir}")
            if any(move_dir.resolve() == d.resolve() for d in cache_dirs):
                raise ValueError(f"Move target must not be a cache directory: {move_dir}")

        include, exclude = build_filter_sets(args, logger)
        logger.verbose(LogLevel.DEBUG, f"Include set: {len(include)} names, exclude set: {len(exclude)} names")

        plan: list[tuple[Path, list[Path]]] = [(cache_dir, process_cache_dir(cache_dir, args, include, exclude, logger, file_stats_cache)) for cache_dir in cache_dirs]

        logger.print_decisions()

        processed: list[Path] = []
        total_bytes = 0
        for cache_dir, candidates in plan:
            sizes = {file: file_stats_cache.get_file_bytes(file) for file in candidates}  # Before the files are gone
            done = apply_action(candidates, cache_dir, args, logger)
            processed.extend(done)
            total_bytes += sum(sizes[file] for file in done)

        summarize(processed, total_bytes, args, logger)

    except OSError as e:
        handle_exception(e, 1, args.stacktrace if args is not None else True)
    except (ValueError, argparse.ArgumentTypeError) as e:
        handle_exception(e, 2, args.stacktrace if args is not None else True)
    except ExternalCommandError as e:
        handle_exception(e, 4, args.stacktrace if args is not None else True)
    except IntegrityCheckFailedError as e:
        handle_exception(e, 7, args.stacktrace if args is not None else True)
    except Exception as e:
        handle_exception(e, 9, args.stacktrace if args is not None else True, prefix="UNEXPECTED ERROR")


if __name__ == "__main__":
    main()
