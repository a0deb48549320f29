#!/usr/bin/env python3
"""
MIT No Attribution License (MIT-0)

Copyright (c) 2026 Scott Morrison

Permission is hereby granted, free of charge, to any person obtaining a copy of this
software and associated documentation files (the "Software"), to deal in the Software
without restriction, including without limitation the rights to use, copy, modify,
merge, publish, distribute, sublicense, and/or sell copies of the Software, and to
permit persons to whom the Software is furnished to do so.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR IMPLIED,
INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY, FITNESS FOR A
PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT
HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN ACTION OF
CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN CONNECTION WITH THE SOFTWARE OR
THE USE OR OTHER DEALINGS IN THE SOFTWARE.
"""

from __future__ import annotations

import enum
import getpass
import os
import re
import shlex
import shutil
import stat
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Protocol

VERSION = "scpfetch/1.0.0"
DEFAULT_DEST_DIR = "./downloaded_files"
SERVERS_FILE_NAME = "Sourceservers.txt"
# Seconds; bounds connection establishment only, not the whole transfer.
CONNECT_TIMEOUT = 30

REASON_INVALID_FORMAT = "invalid format"
REASON_SHORT_FORM = "short form requires default user"

# sshpass reports its own failures through these exit codes.
SSHPASS_EXIT_CODES = {
    2: "sshpass: conflicting arguments",
    3: "sshpass: general runtime error",
    4: "sshpass: unrecognized response from ssh",
    5: "sshpass: invalid/incorrect password",
    6: "sshpass: host public key is unknown",
}


class UsageError(RuntimeError):
    """Raised for malformed command-line arguments."""


class FatalConfigError(RuntimeError):
    """Raised when the servers file cannot be used; aborts before any transfer."""


class EntryForm(enum.Enum):
    LABELED = "labeled"
    FULL = "full"
    SHORT = "short"


@dataclass(frozen=True)
class TransferRequest:
    """One accepted servers-file entry, before credential resolution."""

    raw_line: str
    user: str
    host: str
    remote_path: str
    label: str | None = None
    form: EntryForm = EntryForm.FULL


@dataclass(frozen=True)
class RejectedEntry:
    raw_line: str
    reason: str


@dataclass(frozen=True)
class ResolvedTransfer:
    request: TransferRequest
    user: str
    secret: str | None = field(default=None, repr=False)

    @property
    def source_spec(self) -> str:
        return f"{self.user}@{self.request.host}:{self.request.remote_path}"

    @property
    def suffix(self) -> str:
        return self.request.label or self.request.host


@dataclass
class TransferOutcome:
    resolved: ResolvedTransfer
    destination_path: Path
    succeeded: bool
    error: str = ""


@dataclass
class FailedTransfer:
    host: str
    source: str
    error: str


@dataclass
class RunSummary:
    """Running totals for one invocation, owned by :func:`run`."""

    total_count: int = 0
    success_count: int = 0
    failures: list[FailedTransfer] = field(default_factory=list)
    interrupted: bool = False

    @property
    def failed_count(self) -> int:
        return self.total_count - self.success_count

    def record(self, outcome: TransferOutcome) -> None:
        """Fold one transfer outcome into the totals."""

        self.total_count += 1
        if outcome.succeeded:
            self.success_count += 1
            return
        self.failures.append(
            FailedTransfer(
                host=outcome.resolved.request.host,
                source=outcome.resolved.source_spec,
                error=outcome.error,
            )
        )


@dataclass(frozen=True)
class RunConfiguration:
    destination_directory: Path
    default_user: str | None
    config_file_path: Path
    quiet: bool = False


@dataclass
class CliOptions:
    destination_directory: str
    default_user: str | None
    servers_file: str | None
    quiet: bool
    show_help: bool
    show_version: bool


class Transport(Protocol):
    """Copies one remote file to a local path, raising RuntimeError on failure."""

    def copy(
        self,
        source: str,
        destination: Path,
        secret: str | None,
        connect_timeout: int = CONNECT_TIMEOUT,
    ) -> None: ...


def _usage_text() -> str:
    """Return CLI help text shared by --help and argument error paths."""

    return (
        "usage: scpfetch [--user USERNAME] [-f servers_file] [-q] [-V] [destination_directory]\n\n"
        "Copy one file from each server listed in ~/Sourceservers.txt and suffix the\n"
        "local copy with the server name.\n\n"
        "supported entry formats:\n"
        "  user@hostname:/path/to/file          full format\n"
        "  @hostname:/path/to/file              short format (requires --user)\n"
        "  label:user@hostname:/path/to/file    labeled format, label replaces hostname suffix\n\n"
        "options:\n"
        "  -u, --user USERNAME         default user for short format entries; the password\n"
        "                              is requested once and reused for this user\n"
        "  -f, --servers-file FILE     servers file (default: ~/Sourceservers.txt)\n"
        "  -q, --quiet                 only print warnings, failures and the summary\n"
        "  -V, --version               show scpfetch version and exit\n"
        "  -h, --help                  show this help message\n\n"
        "arguments:\n"
        f"  destination_directory       local directory for copied files (default: {DEFAULT_DEST_DIR})\n\n"
        "examples:\n"
        "  scpfetch /tmp/downloads\n"
        "  scpfetch --user admin /tmp/downloads\n\n"
        "notes:\n"
        "  password reuse requires sshpass (apt-get install sshpass / yum install sshpass)\n"
    )


def _status(msg: str, quiet: bool = False) -> None:
    """Emit a namespaced status line unless quiet mode is active."""

    if not quiet:
        print(f"[scpfetch] {msg}", flush=True)


def _warn(msg: str) -> None:
    print(f"[scpfetch] warning: {msg}", file=sys.stderr, flush=True)


# Tried in order, first match wins.
_ENTRY_GRAMMARS: tuple[tuple[EntryForm, re.Pattern[str]], ...] = (
    (EntryForm.LABELED, re.compile(r"^(?P<label>[^@:\s]+):(?P<user>[^@]*)@(?P<host>[^:]+):(?P<path>.+)$")),
    (EntryForm.FULL, re.compile(r"^(?P<user>[^@]+)@(?P<host>[^:]+):(?P<path>.+)$")),
    (EntryForm.SHORT, re.compile(r"^@(?P<host>[^:]+):(?P<path>.+)$")),
)


def parse_entry(line: str, default_user: str | None) -> TransferRequest | RejectedEntry | None:
    """Parse one servers-file line.

    Returns None for blank and comment lines, a RejectedEntry when the line is
    malformed or uses the short form without a default user, and a
    TransferRequest otherwise. Short form requests keep an empty user until
    :func:`resolve_credentials` substitutes the default.
    """

    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None

    for form, pattern in _ENTRY_GRAMMARS:
        m = pattern.match(stripped)
        if m is None:
            continue
        groups = m.groupdict()
        user = groups.get("user") or ""
        if not user and not default_user:
            return RejectedEntry(raw_line=stripped, reason=REASON_SHORT_FORM)
        return TransferRequest(
            raw_line=stripped,
            user=user,
            host=m.group("host"),
            remote_path=m.group("path"),
            label=groups.get("label"),
            form=form,
        )
    return RejectedEntry(raw_line=stripped, reason=REASON_INVALID_FORMAT)


def resolve_credentials(
    request: TransferRequest,
    config: RunConfiguration,
    cached_secret: str | None,
) -> ResolvedTransfer:
    """Pick the user and, for default-user entries, the cached secret."""

    # parse_entry rejects short-form entries when there is no default user.
    user = request.user or config.default_user or ""
    secret = None
    if cached_secret and config.default_user and user == config.default_user:
        secret = cached_secret
    return ResolvedTransfer(request=request, user=user, secret=secret)


def acquire_secret(default_user: str, quiet: bool = False) -> str | None:
    """Prompt once for the default user's password.

    Returns None when sshpass is unavailable (the password could not be
    injected anyway), when no terminal is attached, or when the answer is
    empty. Every transfer then falls back to scp's own prompt or the agent.
    """

    if shutil.which("sshpass") is None:
        _warn("sshpass is not installed. Password automation will not work.")
        _warn("install it with: sudo apt-get install sshpass (Ubuntu/Debian) or sudo yum install sshpass (CentOS/RHEL)")
        _warn("continuing with interactive password prompts")
        return None

    _status(f"password will be requested for user '{default_user}' and reused for all servers", quiet=quiet)
    try:
        secret = getpass.getpass(prompt=f"Enter password for {default_user}: ")
    except EOFError:
        _warn("no terminal available for the password prompt; continuing with interactive prompts")
        return None
    return secret or None


def _scp_option_args(with_secret: bool, connect_timeout: int) -> list[str]:
    """Build the scp -o options for password-injected or interactive mode."""

    opts = ["-o", f"ConnectTimeout={connect_timeout}"]
    if with_secret:
        # sshpass cannot answer a host key prompt.
        opts += ["-o", "StrictHostKeyChecking=accept-new"]
    else:
        opts += ["-o", "BatchMode=no"]
    return opts


def _run_scp(
    args: list[str],
    quiet: bool = False,
    capture_output: bool = False,
    secret: str | None = None,
) -> None:
    """Run scp and raise RuntimeError with context on failure.

    When a secret is given, scp runs under ``sshpass -e`` and the secret is
    handed over in the child's SSHPASS environment variable, never in argv.
    """

    cmd = ["scp", *args]
    env = None
    if secret is not None:
        cmd = ["sshpass", "-e", *cmd]
        env = dict(os.environ, SSHPASS=secret)
    _status(f"running: {' '.join(shlex.quote(x) for x in cmd)}", quiet=quiet)
    try:
        if capture_output:
            p = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, env=env)
        else:
            p = subprocess.run(cmd, env=env)
    except FileNotFoundError as e:
        raise RuntimeError(f"{cmd[0]} executable not found: {e}") from e
    if p.returncode != 0:
        detail = ""
        if secret is not None and p.returncode in SSHPASS_EXIT_CODES:
            detail = f": {SSHPASS_EXIT_CODES[p.returncode]}"
        elif capture_output and p.stderr:
            lines = [ln.strip() for ln in p.stderr.splitlines() if ln.strip()]
            if lines:
                # Keep a short but informative stderr slice so root causes are visible.
                tail = " | ".join(lines[-3:])
                detail = f": {tail}"
        raise RuntimeError(f"scp failed with exit code {p.returncode}{detail}")


class ScpTransport:
    """Transport backed by the system scp binary."""

    def __init__(self, quiet: bool = False) -> None:
        self.quiet = quiet

    def copy(
        self,
        source: str,
        destination: Path,
        secret: str | None,
        connect_timeout: int = CONNECT_TIMEOUT,
    ) -> None:
        with_secret = secret is not None
        # "--" keeps a user name starting with "-" from being read as an option.
        args = [*_scp_option_args(with_secret, connect_timeout), "--", source, str(destination)]
        _run_scp(args, quiet=self.quiet, capture_output=with_secret, secret=secret)


def _flatten_name(s: str) -> str:
    return s.replace("/", "_").replace("\\", "_")


def destination_filename(resolved: ResolvedTransfer) -> str:
    """Return ``<basename>-<suffix>`` for the local copy of one entry."""

    name = PurePosixPath(resolved.request.remote_path).name
    if not name:
        name = _flatten_name(resolved.request.remote_path.strip("/")) or "root"
    return f"{_flatten_name(name)}-{_flatten_name(resolved.suffix)}"


def execute_transfer(
    resolved: ResolvedTransfer,
    destination_dir: Path,
    transport: Transport,
    quiet: bool = False,
) -> TransferOutcome:
    """Copy one entry and report the outcome. Transfer errors never propagate."""

    host = resolved.request.host
    dest_path = Path(destination_dir) / destination_filename(resolved)
    _status(f"Copying from {host}: {resolved.source_spec} -> {dest_path}", quiet=quiet)
    try:
        transport.copy(resolved.source_spec, dest_path, resolved.secret, connect_timeout=CONNECT_TIMEOUT)
    except (RuntimeError, OSError) as e:
        _status(f"✗ Failed to copy from {host}")
        _status(f"  error: {e}")
        return TransferOutcome(resolved=resolved, destination_path=dest_path, succeeded=False, error=str(e))
    _status(f"✓ Successfully copied from {host}", quiet=quiet)
    _status(f"  File saved as: {dest_path}", quiet=quiet)
    return TransferOutcome(resolved=resolved, destination_path=dest_path, succeeded=True)


def _classify_error_message(msg: str) -> str:
    """Map raw error text to a stable diagnostic category."""

    m = msg.lower()
    if "permission denied" in m or "publickey" in m or "authentication" in m or "incorrect password" in m:
        return "auth_or_permission"
    if "host key verification failed" in m or "host public key is unknown" in m:
        return "host_key"
    if "connection refused" in m or "connection timed out" in m or "no route to host" in m:
        return "network_connectivity"
    if "name or service not known" in m or "could not resolve hostname" in m:
        return "dns_resolution"
    if "executable not found" in m:
        return "missing_tool"
    if "no such file or directory" in m or "not a regular file" in m:
        return "remote_path"
    return "other"


def _summarize_errors(failures: list[FailedTransfer]) -> dict[str, int]:
    """Count failures per diagnostic category."""

    by_category: dict[str, int] = {}
    for f in failures:
        cat = _classify_error_message(f.error)
        by_category[cat] = by_category.get(cat, 0) + 1
    return by_category


def _default_servers_file() -> Path:
    return Path.home() / SERVERS_FILE_NAME


def _read_servers_file(path: Path) -> list[str]:
    """Return the servers file lines, or raise FatalConfigError."""

    if path.exists() and not path.is_file():
        raise FatalConfigError(f"Servers file {path} is not a regular file")
    if not path.is_file():
        raise FatalConfigError(
            f"Servers file not found at {path}\n"
            "Please create the file with the following formats:\n"
            "  user@hostname:/path/to/source/file\n"
            "  @hostname:/path/to/source/file (requires --user option)"
        )
    try:
        raw = path.read_text(encoding="utf-8-sig", errors="replace")
    except OSError as e:
        raise FatalConfigError(f"Failed to read servers file {path}: {e}") from e
    if not raw:
        raise FatalConfigError(f"Servers file {path} is empty")
    return raw.splitlines()


def _prepare_destination(dest_dir: Path, quiet: bool = False) -> None:
    if dest_dir.is_dir():
        return
    _status(f"Creating destination directory: {dest_dir}", quiet=quiet)
    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        _warn(f"failed to create destination directory {dest_dir}: {e}")


def _report_rejected(entry: RejectedEntry) -> None:
    if entry.reason == REASON_SHORT_FORM:
        _warn(f"short format entry '{entry.raw_line}' requires --user option")
        _warn("use: scpfetch --user USERNAME")
        return
    _warn(f"invalid line format: {entry.raw_line}")
    _warn(
        "expected formats: user@hostname:/path/to/file, "
        "@hostname:/path/to/file (with --user option), "
        "label:user@hostname:/path/to/file"
    )


def _print_banner(config: RunConfiguration) -> None:
    if config.quiet:
        return
    print("=== SCP File Copier ===")
    print(f"Destination directory: {config.destination_directory}")
    print(f"Servers file: {config.config_file_path}")
    if config.default_user:
        print(f"Default user: {config.default_user}")
    print("", flush=True)


def _list_destination(dest_dir: Path) -> None:
    try:
        entries = sorted(dest_dir.iterdir(), key=lambda p: p.name)
    except OSError as e:
        _warn(f"cannot list {dest_dir}: {e}")
        return
    for p in entries:
        try:
            st = p.lstat()
        except OSError:
            print(f"  {'?':>12}  {p.name}")
            continue
        if stat.S_ISDIR(st.st_mode):
            print(f"  {'<dir>':>12}  {p.name}/")
        elif stat.S_ISLNK(st.st_mode):
            print(f"  {'<link>':>12}  {p.name}")
        else:
            print(f"  {st.st_size:>12}  {p.name}")


def _print_summary(summary: RunSummary, dest_dir: Path) -> None:
    print("")
    print("=== Summary ===")
    print(f"Total servers processed: {summary.total_count}")
    print(f"Successful copies: {summary.success_count}")
    print(f"Failed copies: {summary.failed_count}")
    if summary.interrupted:
        print("Run interrupted: remaining entries were not processed.")
    if summary.failures:
        by_category = sorted(_summarize_errors(summary.failures).items(), key=lambda kv: kv[1], reverse=True)
        for cat, count in by_category:
            print(f"  failure category: {cat} count={count}")
    if summary.success_count > 0:
        print("")
        print(f"Files copied to: {dest_dir}")
        print("Listing downloaded files:")
        _list_destination(dest_dir)
    sys.stdout.flush()


def run(
    config: RunConfiguration,
    transport: Transport | None = None,
    secret_provider: Callable[..., str | None] | None = None,
) -> RunSummary:
    """Process every servers-file entry and print the summary.

    Raises FatalConfigError before touching the destination when the servers
    file is missing or empty. Everything after that is reported per entry.
    An interrupt stops the loop but the partial summary is still printed.
    """

    lines = _read_servers_file(config.config_file_path)
    quiet = config.quiet

    _print_banner(config)
    _prepare_destination(config.destination_directory, quiet=quiet)

    secret: str | None = None
    if config.default_user:
        provider = secret_provider or acquire_secret
        secret = provider(config.default_user, quiet=quiet)

    if transport is None:
        transport = ScpTransport(quiet=quiet)

    summary = RunSummary()
    seen_destinations: dict[str, str] = {}
    try:
        for line in lines:
            entry = parse_entry(line, config.default_user)
            if entry is None:
                continue
            if isinstance(entry, RejectedEntry):
                _report_rejected(entry)
                continue

            resolved = resolve_credentials(entry, config, secret)
            dest_name = destination_filename(resolved)
            if dest_name in seen_destinations:
                _warn(f"'{entry.raw_line}' overwrites {dest_name} from '{seen_destinations[dest_name]}'")
            seen_destinations[dest_name] = entry.raw_line

            _status(f"Processing server: {entry.host}", quiet=quiet)
            outcome = execute_transfer(resolved, config.destination_directory, transport, quiet=quiet)
            summary.record(outcome)
    except KeyboardInterrupt:
        summary.interrupted = True
        _warn("interrupted; remaining entries were skipped")

    _print_summary(summary, config.destination_directory)
    return summary


def _parse_cli_args(argv: list[str]) -> CliOptions:
    """Parse scpfetch flags; the last positional argument is the destination."""

    destination = DEFAULT_DEST_DIR
    default_user: str | None = None
    servers_file: str | None = None
    quiet = False
    show_help = False
    show_version = False
    end_of_opts = False

    def _value(flag: str, raw: str | None) -> str:
        if not raw:
            raise UsageError(f"{flag} requires a value")
        return raw

    i = 0
    while i < len(argv):
        a = argv[i]
        if end_of_opts or not a.startswith("-") or a == "-":
            if not a:
                raise UsageError("destination directory must not be empty")
            destination = a
        elif a == "--":
            end_of_opts = True
        elif a in {"--user", "-u"}:
            i += 1
            default_user = _value(a, argv[i] if i < len(argv) else None)
        elif a.startswith("--user="):
            default_user = _value("--user", a.split("=", 1)[1])
        elif a in {"--servers-file", "-f"}:
            i += 1
            servers_file = _value(a, argv[i] if i < len(argv) else None)
        elif a.startswith("--servers-file="):
            servers_file = _value("--servers-file", a.split("=", 1)[1])
        elif a in {"--quiet", "-q"}:
            quiet = True
        elif a in {"--version", "-V"}:
            show_version = True
        elif a in {"--help", "-h"}:
            show_help = True
        else:
            raise UsageError(f"Unknown option {a}")
        i += 1

    return CliOptions(
        destination_directory=destination,
        default_user=default_user,
        servers_file=servers_file,
        quiet=quiet,
        show_help=show_help,
        show_version=show_version,
    )


def main() -> int:
    """CLI entrypoint for scpfetch."""

    try:
        opts = _parse_cli_args(sys.argv[1:])
    except UsageError as e:
        print(f"Error: {e}", file=sys.stderr)
        print(_usage_text(), file=sys.stderr)
        return 2

    if opts.show_help:
        print(_usage_text())
        return 1

    if opts.show_version:
        print(VERSION)
        return 0

    servers_file = Path(opts.servers_file).expanduser() if opts.servers_file else _default_servers_file()
    config = RunConfiguration(
        destination_directory=Path(opts.destination_directory).expanduser(),
        default_user=opts.default_user,
        config_file_path=servers_file,
        quiet=opts.quiet,
    )

    try:
        summary = run(config)
    except FatalConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 130

    return 130 if summary.interrupted else 0


if __name__ == "__main__":
    raise SystemExit(main())
