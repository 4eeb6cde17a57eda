#!/usr/bin/env python3
"""macnotary - sign, notarize and staple trees of macOS binaries.

This module turns a directory of freshly built Mach-O binaries into a
distributable, Apple-trusted artifact:

1. BinaryScanner discovers signable artifacts by their Mach-O header and
   orders them inside-out (nested code before its enclosing bundle)
2. Signer applies a signing identity to every artifact, verifying each
   signature before anything that contains it is signed
3. Archiver packages the signed tree into a disk image or zip archive
4. NotarizationClient submits the archive to Apple's notary service and
   polls with exponential backoff until a verdict or a timeout
5. Stapler attaches the notarization ticket once the archive is accepted

Pipeline sequences these steps, owns the failure policy and produces a
structured run report.

Usage (CLI):
    # Show the signing plan for a build tree
    macnotary scan dist/

    # Sign only
    macnotary sign dist/ -i "John Doe (ABCDE12345)"

    # Sign, archive, notarize and staple
    sign-and-notarize --input dist/ --identity "John Doe (ABCDE12345)" \\
        --keychain-profile AC_PROFILE --timeout 30m --poll-base 10s

Usage (API):
    from macnotary import NotaryToolService, Pipeline, SigningIdentity

    identity = SigningIdentity.from_reference("John Doe (ABCDE12345)")
    pipeline = Pipeline(
        "dist/", identity, NotaryToolService(keychain_profile="AC_PROFILE")
    )
    run = pipeline.run()
    print(run.summary(), run.exit_code)
"""

import argparse
import concurrent.futures
import contextlib
import dataclasses
import datetime
import enum
import fcntl
import graphlib
import hashlib
import heapq
import json
import logging
import os
import plistlib
import re
import secrets
import shutil
import signal
import struct
import subprocess
import sys
import tempfile
import threading
import time
from collections.abc import Iterable, Iterator
from pathlib import Path
from xml.parsers.expat import ExpatError

from macholib import mach_o
from macholib.MachO import MachO

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Environment variable names
ENV_DEV_ID = "DEV_ID"
ENV_KEYCHAIN_PROFILE = "KEYCHAIN_PROFILE"
ENV_CERTIFICATE = "SIGNING_CERTIFICATE"
ENV_CERTIFICATE_PASSWORD = "SIGNING_CERTIFICATE_PASSWORD"

# Signing identity references
ADHOC_IDENTITY = "-"
DEVELOPER_ID_PREFIX = "Developer ID Application: "

# Archive formats accepted by the notary service that we can produce
ARCHIVE_FORMATS = ("dmg", "zip")
DEFAULT_ARCHIVE_FORMAT = "dmg"

# Notarization polling defaults (seconds)
DEFAULT_TIMEOUT = 3600.0
DEFAULT_POLL_BASE = 10.0
DEFAULT_POLL_MAX = 120.0
DEFAULT_POLL_MULTIPLIER = 2.0

# stapler exit codes worth retrying:
# 65: CloudKit query failed, 68: server hostname could not be found
STAPLER_TRANSIENT_CODES = (65, 68)
DEFAULT_STAPLE_ATTEMPTS = 3
DEFAULT_STAPLE_RETRY_DELAY = 30.0

# Process exit codes
EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_REJECTED = 2
EXIT_TIMED_OUT = 3
EXIT_ARCHIVE_FAILED = 4
EXIT_SERVICE_ERROR = 5
EXIT_CANCELLED = 130

# Where a bundle keeps its Info.plist, and the directory holding the
# binary named by CFBundleExecutable, relative to the bundle root.
BUNDLE_LAYOUTS = (
    ("Contents/Info.plist", "Contents/MacOS"),
    ("Versions/Current/Resources/Info.plist", "Versions/Current"),
    ("Resources/Info.plist", ""),
)

# ----------------------------------------------------------------------------
# Optional dotenv support


def _load_dotenv() -> None:
    """Attempt to load .env file if python-dotenv is available."""
    try:
        from dotenv import load_dotenv

        load_dotenv()
    except ImportError:
        pass


_load_dotenv()

# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .macnotary.toml in current directory
    3. macnotary.toml in current directory

    Note: pyproject.toml is intentionally NOT searched because config
    may name signing identities and notary credentials that should not be
    committed to version control.

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Example .macnotary.toml:
        [sign]
        identity = "John Doe (ABCDE12345)"
        entitlements = "entitlements.plist"
        concurrency = 4

        [notarize]
        keychain_profile = "AC_PROFILE"
        timeout = "45m"
        poll_base = "15s"
        poll_max = "2m"

        [archive]
        format = "zip"
    """
    try:
        import tomllib
    except ImportError:
        try:
            import tomli as tomllib  # type: ignore[import-not-found,no-redef]
        except ImportError:
            return {}

    if config_path and config_path.exists():
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".macnotary.toml",
            cwd / "macnotary.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
                return data
            except (OSError, tomllib.TOMLDecodeError) as e:
                logging.getLogger("macnotary").warning(
                    "ignoring unreadable config %s: %s", path, e
                )
                continue

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: object = None,
) -> object:
    """Get a scalar value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "sign", "notarize")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value (str, int, float or bool) or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    value = section_config.get(key, default)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return default


# Global config (loaded lazily)
_config: dict[str, object] | None = None


def get_config() -> dict[str, object]:
    """Get the global configuration, loading it if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


# ----------------------------------------------------------------------------
# Error handling


class NotaryError(Exception):
    """Base exception class for macnotary errors."""

    exit_code = EXIT_FAILURE

    @property
    def reason(self) -> str:
        """Short failure label used in run reports."""
        return type(self).__name__


class CommandError(NotaryError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class ConfigurationError(NotaryError):
    """Exception raised when configuration is invalid."""


class ValidationError(NotaryError):
    """Exception raised when validation fails."""


class TreeLockError(NotaryError):
    """Exception raised when another run owns the working tree."""


class ScanError(NotaryError):
    """Exception raised when no signable artifacts can be discovered."""


class SignError(NotaryError):
    """Exception raised when an artifact cannot be signed."""

    def __init__(self, artifact: Pathlike, reason: str):
        self.artifact = Path(artifact)
        self.detail = reason
        super().__init__(self._message())

    def _message(self) -> str:
        return f"Signing failed for {self.artifact}: {self.detail}"


class VerifyError(SignError):
    """Exception raised when a fresh signature does not verify."""

    def _message(self) -> str:
        return (
            f"Signature verification failed for {self.artifact}: "
            f"{self.detail}"
        )


class ArchiveError(NotaryError):
    """Exception raised when the submission archive cannot be built."""

    exit_code = EXIT_ARCHIVE_FAILED


class SubmissionError(NotaryError):
    """Exception raised when the notary service cannot be used.

    Transient errors (network trouble, server side failures) are retried by
    NotarizationClient; fatal ones (bad credentials) abort immediately.
    """

    exit_code = EXIT_SERVICE_ERROR

    def __init__(
        self,
        message: str,
        transient: bool = False,
        submission_id: str | None = None,
    ):
        self.transient = transient
        self.submission_id = submission_id
        super().__init__(message)


class NotarizationRejected(NotaryError):
    """Exception raised when Apple rejects a submission."""

    exit_code = EXIT_REJECTED
    reason = "Rejected"

    def __init__(self, submission_id: str, log: str | None):
        self.submission_id = submission_id
        self.log = log
        super().__init__(
            f"Notarization request {submission_id} was rejected:\n{log or ''}"
        )


class PollTimeoutError(NotaryError):
    """Exception raised when notarization does not finish in time."""

    exit_code = EXIT_TIMED_OUT
    reason = "TimedOut"

    def __init__(
        self,
        submission_id: str | None,
        timeout: float,
        detail: str | None = None,
    ):
        self.submission_id = submission_id
        self.timeout = timeout
        self.detail = detail
        target = submission_id or "archive submission"
        message = f"Notarization of {target} timed out after {timeout:g}s"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class StapleError(NotaryError):
    """Exception raised when a notarization ticket cannot be stapled.

    A staple failure after acceptance degrades a run instead of failing it:
    Gatekeeper can still fetch the ticket online at install time.
    """

    def __init__(self, target: Pathlike, reason: str, degraded: bool = True):
        self.target = Path(target)
        self.degraded = degraded
        super().__init__(f"Stapling failed for {self.target}: {reason}")


class PipelineCancelled(NotaryError):
    """Exception raised when a run is cancelled by signal or caller."""

    exit_code = EXIT_CANCELLED
    reason = "Cancelled"


# ----------------------------------------------------------------------------
# Binary and identity validation

# Mach-O magic numbers for binary validation
MACHO_MAGIC_NUMBERS = {
    b"\xfe\xed\xfa\xce",  # MH_MAGIC (32-bit)
    b"\xce\xfa\xed\xfe",  # MH_CIGAM (32-bit, reverse byte order)
    b"\xfe\xed\xfa\xcf",  # MH_MAGIC_64 (64-bit)
    b"\xcf\xfa\xed\xfe",  # MH_CIGAM_64 (64-bit, reverse byte order)
    b"\xca\xfe\xba\xbe",  # FAT_MAGIC (universal binary)
    b"\xbe\xba\xfe\xca",  # FAT_CIGAM (universal binary, reverse byte order)
}

# Developer ID format: "Name" or "Name (TEAM_ID)" where TEAM_ID is 10 alphanumeric chars
# The full signing identity is "Developer ID Application: Name (TEAM_ID)"
DEVELOPER_ID_PATTERN = re.compile(
    r"^[A-Za-z][A-Za-z0-9\s\.\-\,\']+(?:\s+\([A-Z0-9]{10}\))?$"
)

# SHA-1 certificate hash as printed by `security find-identity`
IDENTITY_HASH_PATTERN = re.compile(r"^[0-9A-Fa-f]{40}$")

# `security find-identity` line: '  1) <HASH> "<common name>"'
FIND_IDENTITY_PATTERN = re.compile(r'\)\s+([0-9A-Fa-f]{40})\s+"([^"]+)"')


def validate_developer_id(dev_id: str) -> None:
    """Validate Developer ID string format.

    Developer ID should be in one of these formats:
    - "John Doe" (name only)
    - "John Doe (ABCD123456)" (name with 10-character Team ID)

    The full signing identity "Developer ID Application: ..." is constructed
    by SigningIdentity.from_reference().

    Args:
        dev_id: The Developer ID name to validate

    Raises:
        ValidationError: If the Developer ID format is invalid
    """
    if not dev_id or not dev_id.strip():
        raise ValidationError("Developer ID cannot be empty")

    dev_id = dev_id.strip()

    if len(dev_id) < 2:
        raise ValidationError(f"Developer ID is too short: '{dev_id}'")

    if len(dev_id) > 100:
        raise ValidationError(
            f"Developer ID is too long (max 100 characters): '{dev_id}'"
        )

    if not DEVELOPER_ID_PATTERN.match(dev_id):
        raise ValidationError(
            f"Developer ID has invalid format: '{dev_id}'. "
            "Expected format: 'Name' or 'Name (TEAM_ID)' where TEAM_ID is 10 alphanumeric characters"
        )


def is_valid_macho(path: Pathlike) -> bool:
    """Check if a file starts with a Mach-O magic number.

    Args:
        path: Path to the file to check

    Returns:
        True if the file looks like a Mach-O binary, False otherwise
    """
    path = Path(path)
    if not path.exists() or not path.is_file():
        return False

    try:
        with open(path, "rb") as f:
            magic = f.read(4)
        return magic in MACHO_MAGIC_NUMBERS
    except OSError:
        return False


def read_macho_filetype(path: Pathlike) -> int | None:
    """Read the Mach-O file type (MH_EXECUTE, MH_DYLIB, ...) of a binary.

    The magic number is checked first so that ordinary files are rejected
    without parsing. Universal binaries report the type of their first
    slice.

    Args:
        path: Path to the file to inspect

    Returns:
        The header's filetype field, or None if the file is not a
        parseable Mach-O binary
    """
    if not is_valid_macho(path):
        return None
    try:
        macho = MachO(str(path))
    except (ValueError, struct.error, OSError):
        # Java class files share FAT_MAGIC; truncated headers land here too
        return None
    if not macho.headers:
        return None
    filetype: int = macho.headers[0].header.filetype
    return filetype


def classify_binary(path: Pathlike) -> "ArtifactKind | None":
    """Classify a file by its binary header, never by its name.

    Args:
        path: Path to the file to classify

    Returns:
        ArtifactKind.EXECUTABLE or ArtifactKind.DYNAMIC_LIBRARY, or None if
        the file is not signable code
    """
    filetype = read_macho_filetype(path)
    if filetype is None:
        return None
    return MACHO_FILETYPE_KINDS.get(filetype)


def file_checksum(path: Pathlike, chunk_size: int = 1 << 20) -> str:
    """Return the sha256 hex digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


# Durations such as "90", "90s", "5m", "1h", "1h30m" or "2.5m"
DURATION_PATTERN = re.compile(
    r"^(?:(?P<h>\d+(?:\.\d+)?)h)?"
    r"(?:(?P<m>\d+(?:\.\d+)?)m)?"
    r"(?:(?P<s>\d+(?:\.\d+)?)s?)?$"
)


def parse_duration(value: str | int | float) -> float:
    """Parse a duration into seconds.

    Args:
        value: Number of seconds, or a string like "90s", "5m", "1h30m"

    Returns:
        The duration in seconds

    Raises:
        ConfigurationError: If the value is malformed or not positive
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: '{value}'")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip().lower()
        match = DURATION_PATTERN.match(text)
        if not text or match is None:
            raise ConfigurationError(f"Invalid duration: '{value}'")
        seconds = (
            float(match.group("h") or 0) * 3600
            + float(match.group("m") or 0) * 60
            + float(match.group("s") or 0)
        )
    if seconds <= 0:
        raise ConfigurationError(f"Duration must be positive: '{value}'")
    return seconds


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        cyan = "\x1b[36;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if not self.use_color:
            log_fmt = self.fmt
        else:
            log_fmt = self.FORMATS[record.levelno]
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def setup_logging(debug: bool = True, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        debug: Whether to enable debug logging
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
        force=True,
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    log: logging.Logger | None = None,
    include_stderr: bool = False,
    redact: Iterable[str] = (),
) -> str:
    """Run a command and return its output.

    This is the consolidated command execution utility used throughout
    the module. Uses shell=False for security.

    Args:
        command: The command as a list of arguments
        log: Optional logger for debug output
        include_stderr: If True, append stderr to the returned output
            (codesign --display reports on stderr)
        redact: Secret arguments to mask in logs and errors

    Returns:
        The command output

    Raises:
        CommandError: If the command fails
    """
    cmd_str = " ".join(command)
    for secret in redact:
        if secret:
            cmd_str = cmd_str.replace(secret, "****")
    if log:
        log.debug("%s", cmd_str)
    try:
        result = subprocess.run(
            command, shell=False, check=True, text=True, capture_output=True
        )
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e
    if include_stderr:
        return (result.stdout or "") + (result.stderr or "")
    return result.stdout


# ----------------------------------------------------------------------------
# Data model


class ArtifactKind(enum.Enum):
    """What kind of signable unit an Artifact is."""

    EXECUTABLE = "executable"
    DYNAMIC_LIBRARY = "dynamic-library"
    BUNDLE = "bundle"


# Mach-O file types that can carry their own code signature. MH_BUNDLE is
# loadable plugin code (e.g. Python extension modules), signed like a dylib.
MACHO_FILETYPE_KINDS = {
    mach_o.MH_EXECUTE: ArtifactKind.EXECUTABLE,
    mach_o.MH_DYLIB: ArtifactKind.DYNAMIC_LIBRARY,
    mach_o.MH_BUNDLE: ArtifactKind.DYNAMIC_LIBRARY,
}


@dataclasses.dataclass(eq=False)
class Artifact:
    """A signable unit of code discovered by BinaryScanner.

    Identity is the path. Bundles are directories; their main binary
    (CFBundleExecutable) is signed as part of the bundle and is not an
    artifact of its own.

    Attributes:
        path: Location of the file or bundle directory
        kind: Executable, dynamic library or bundle
        depth: Number of bundles enclosing this artifact
        parent: Innermost enclosing bundle, if any
        executable: Main binary of a bundle (bundles only)
        signed: A signature was applied or found during this run
        verified: The signature passed strict verification during this run
    """

    path: Path
    kind: ArtifactKind
    depth: int = 0
    parent: Path | None = None
    executable: Path | None = None
    signed: bool = False
    verified: bool = False

    @property
    def trusted(self) -> bool:
        """True when the artifact is both signed and verified."""
        return self.signed and self.verified


@dataclasses.dataclass(frozen=True)
class SignatureInfo:
    """An existing code signature as reported by ``codesign --display``."""

    authority: str | None
    team_id: str | None
    adhoc: bool
    runtime: bool
    timestamp: bool = False
    entitlements: dict[str, object] | None = None

    @classmethod
    def parse(
        cls, output: str, entitlements: dict[str, object] | None = None
    ) -> "SignatureInfo":
        """Parse ``codesign --display --verbose=2`` output.

        A secure timestamp shows up as a ``Timestamp=`` line; signatures
        made without one only carry ``Signed Time=``.

        Args:
            output: Combined stdout/stderr of the display command
            entitlements: Entitlements embedded in the signature, if read

        Returns:
            The parsed signature description
        """
        authority = None
        team_id = None
        adhoc = False
        runtime = False
        timestamp = False
        for line in output.splitlines():
            line = line.strip()
            if line.startswith("Authority=") and authority is None:
                authority = line.split("=", 1)[1]
            elif line.startswith("TeamIdentifier="):
                value = line.split("=", 1)[1]
                team_id = None if value == "not set" else value
            elif line.startswith("Timestamp="):
                timestamp = True
            elif line == "Signature=adhoc":
                adhoc = True
            match = re.search(r"flags=0x[0-9a-fA-F]+\(([^)]*)\)", line)
            if match:
                flags = match.group(1).split(",")
                runtime = runtime or "runtime" in flags
                adhoc = adhoc or "adhoc" in flags
        return cls(authority, team_id, adhoc, runtime, timestamp, entitlements)


@dataclasses.dataclass(frozen=True)
class SigningIdentity:
    """The identity and options applied to every artifact of a run.

    Attributes:
        reference: What codesign is given: a full "Developer ID
            Application: ..." name, a 40-hex certificate hash, or "-"
            for ad-hoc signing
        hardened_runtime: Sign with ``--options runtime``
        timestamp: Request a secure timestamp
        entitlements: Entitlements plist for executables and bundles
        authority: Certificate common name, when known
    """

    reference: str
    hardened_runtime: bool = True
    timestamp: bool = True
    entitlements: Path | None = None
    authority: str | None = None

    @classmethod
    def from_reference(
        cls,
        reference: str | None = None,
        hardened_runtime: bool = True,
        timestamp: bool = True,
        entitlements: Pathlike | None = None,
    ) -> "SigningIdentity":
        """Build an identity from a user supplied reference.

        Args:
            reference: Developer ID name ("John Doe (ABCDE12345)"), full
                authority, certificate hash, or "-"/empty for ad-hoc.
                Falls back to the DEV_ID environment variable when None.
            hardened_runtime: Sign with the hardened runtime enabled
            timestamp: Request a secure timestamp
            entitlements: Path to an entitlements plist

        Returns:
            The signing identity

        Raises:
            ValidationError: If a Developer ID name is malformed
            ConfigurationError: If the entitlements file does not exist
        """
        if reference is None:
            reference = os.getenv(ENV_DEV_ID)

        entitlements_path: Path | None = None
        if entitlements:
            entitlements_path = Path(entitlements)
            if not entitlements_path.exists():
                raise ConfigurationError(
                    f"Entitlements file not found: {entitlements_path}"
                )

        authority: str | None = None
        if reference is None or reference.strip() in ("", ADHOC_IDENTITY):
            reference = ADHOC_IDENTITY
        elif IDENTITY_HASH_PATTERN.match(reference.strip()):
            # resolved to a common name by CodesignTool.resolve()
            reference = reference.strip().upper()
        elif reference.strip().startswith(DEVELOPER_ID_PREFIX):
            reference = reference.strip()
            validate_developer_id(reference[len(DEVELOPER_ID_PREFIX) :])
            authority = reference
        else:
            validate_developer_id(reference)
            reference = authority = DEVELOPER_ID_PREFIX + reference.strip()

        return cls(
            reference,
            hardened_runtime=hardened_runtime,
            timestamp=timestamp,
            entitlements=entitlements_path,
            authority=authority,
        )

    @property
    def adhoc(self) -> bool:
        """True for ad-hoc signing (no certificate)."""
        return self.reference == ADHOC_IDENTITY

    def load_entitlements(self) -> dict[str, object]:
        """Read the entitlements plist; empty when none is configured.

        Raises:
            ConfigurationError: If the file is not a readable plist dict
        """
        if self.entitlements is None:
            return {}
        try:
            with open(self.entitlements, "rb") as f:
                data = plistlib.load(f)
        except (ValueError, OSError, ExpatError) as e:
            raise ConfigurationError(
                f"Entitlements file {self.entitlements} could not be read: {e}"
            ) from e
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Entitlements file {self.entitlements} is not a dictionary"
            )
        return data

    def matches(
        self, info: SignatureInfo | None, kind: ArtifactKind | None = None
    ) -> bool:
        """Check whether an existing signature was made by this identity.

        Args:
            info: The existing signature, or None if unsigned
            kind: Kind of the signed artifact; entitlements are only
                compared for executables and bundles

        Returns:
            True if re-signing with this identity would change nothing
        """
        if info is None:
            return False
        if self.hardened_runtime and not info.runtime:
            return False
        if kind in (ArtifactKind.EXECUTABLE, ArtifactKind.BUNDLE):
            if (info.entitlements or {}) != self.load_entitlements():
                return False
        if self.adhoc:
            return info.adhoc
        if self.timestamp and not info.timestamp:
            return False
        if info.adhoc or self.authority is None:
            return False
        return info.authority == self.authority


@dataclasses.dataclass(frozen=True)
class SubmissionArchive:
    """The single unit submitted for notarization."""

    path: Path
    format: str
    checksum: str
    artifacts: tuple[Path, ...]


class SubmissionStatus(enum.Enum):
    """State of a notarization submission."""

    SUBMITTED = "Submitted"
    POLLING = "Polling"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    TIMED_OUT = "TimedOut"

    @property
    def terminal(self) -> bool:
        return self in (
            SubmissionStatus.ACCEPTED,
            SubmissionStatus.REJECTED,
            SubmissionStatus.TIMED_OUT,
        )


@dataclasses.dataclass(frozen=True)
class StatusReport:
    """One answer of the notary service about a submission."""

    status: SubmissionStatus
    log: str | None = None
    output: str = ""


@dataclasses.dataclass(frozen=True)
class Ticket:
    """A notarization ticket obtained for a staple target."""

    submission_id: str
    target: Path


class NotarizationSubmission:
    """A submitted archive and its progress through notarization.

    The id is assigned once by the service and cannot change; submitting
    again creates a new NotarizationSubmission.
    """

    def __init__(self, submission_id: str, archive: SubmissionArchive):
        if not submission_id:
            raise SubmissionError(
                f"Notary service returned no submission id for {archive.path}"
            )
        self._id = submission_id
        self.archive = archive
        self.status = SubmissionStatus.SUBMITTED
        self.log: str | None = None
        self.polls = 0
        self.intervals: list[float] = []

    @property
    def id(self) -> str:
        return self._id

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    def __repr__(self) -> str:
        return f"NotarizationSubmission({self._id!r}, {self.status.value})"


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    """Timeout and backoff shape for talking to the notary service.

    Attributes:
        timeout: Overall seconds allowed from submission to verdict
        base_interval: First delay between polls
        max_interval: Upper bound for any delay
        multiplier: Growth factor applied after every poll
        max_transient_failures: Consecutive transient failures tolerated
            before giving up (None: retry until the timeout)
    """

    timeout: float = DEFAULT_TIMEOUT
    base_interval: float = DEFAULT_POLL_BASE
    max_interval: float = DEFAULT_POLL_MAX
    multiplier: float = DEFAULT_POLL_MULTIPLIER
    max_transient_failures: int | None = None

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ConfigurationError("timeout must be positive")
        if self.base_interval <= 0:
            raise ConfigurationError("poll base interval must be positive")
        if self.max_interval < self.base_interval:
            raise ConfigurationError(
                "poll max interval must not be smaller than the base interval"
            )
        if self.multiplier < 1:
            raise ConfigurationError("poll multiplier must be at least 1")
        if (
            self.max_transient_failures is not None
            and self.max_transient_failures < 1
        ):
            raise ConfigurationError("max transient failures must be >= 1")

    def intervals(self) -> Iterator[float]:
        """Yield the backoff delays: base, base*multiplier, ... up to max."""
        interval = self.base_interval
        while True:
            yield interval
            interval = min(interval * self.multiplier, self.max_interval)


class SignOutcome(enum.Enum):
    """Per-artifact result of a signing pass."""

    SIGNED = "signed"
    ALREADY_SIGNED = "already-signed"
    FAILED = "failed"
    NOT_ATTEMPTED = "not-attempted"


class StapleStatus(enum.Enum):
    STAPLED = "stapled"
    DEGRADED = "degraded"
    SKIPPED = "skipped"


@dataclasses.dataclass
class StapleResult:
    status: StapleStatus
    targets: list[Path] = dataclasses.field(default_factory=list)
    error: str | None = None


class RunResult(enum.Enum):
    SUCCESS = "Success"
    FAILED = "Failed"


@dataclasses.dataclass
class PipelineRun:
    """Structured report of one pipeline run."""

    root: Path
    artifacts: list[Artifact] = dataclasses.field(default_factory=list)
    outcomes: dict[Path, SignOutcome] = dataclasses.field(
        default_factory=dict
    )
    archive: SubmissionArchive | None = None
    submission: NotarizationSubmission | None = None
    staple: StapleResult | None = None
    result: RunResult | None = None
    reason: str | None = None
    detail: str | None = None
    exit_code: int | None = None

    @property
    def degraded(self) -> bool:
        """True when notarization succeeded but stapling did not."""
        return (
            self.staple is not None
            and self.staple.status is StapleStatus.DEGRADED
        )

    @property
    def signing_operations(self) -> int:
        """Number of artifacts that were actually (re-)signed."""
        return sum(
            1 for outcome in self.outcomes.values()
            if outcome is SignOutcome.SIGNED
        )

    def succeed(self) -> None:
        self.result = RunResult.SUCCESS
        self.exit_code = EXIT_SUCCESS

    def fail(self, error: NotaryError) -> None:
        self.result = RunResult.FAILED
        self.reason = error.reason
        if isinstance(error, NotarizationRejected):
            self.detail = error.log
        else:
            self.detail = str(error)
        self.exit_code = error.exit_code

    def summary(self) -> str:
        """Render the terminal state, e.g. "Success" or "Failed(Rejected)"."""
        if self.result is RunResult.FAILED:
            return f"Failed({self.reason})"
        if self.result is RunResult.SUCCESS:
            return "Success (degraded)" if self.degraded else "Success"
        return "Incomplete"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON serializable representation of the run."""
        archive = None
        if self.archive is not None:
            archive = {
                "path": str(self.archive.path),
                "format": self.archive.format,
                "checksum": self.archive.checksum,
            }
        submission = None
        if self.submission is not None:
            submission = {
                "id": self.submission.id,
                "status": self.submission.status.value,
                "log": self.submission.log,
                "polls": self.submission.polls,
                "intervals": list(self.submission.intervals),
            }
        staple = None
        if self.staple is not None:
            staple = {
                "status": self.staple.status.value,
                "targets": [str(p) for p in self.staple.targets],
                "error": self.staple.error,
            }
        return {
            "root": str(self.root),
            "result": self.result.value if self.result else None,
            "reason": self.reason,
            "detail": self.detail,
            "degraded": self.degraded,
            "exit_code": self.exit_code,
            "artifacts": [
                {
                    "path": str(a.path),
                    "kind": a.kind.value,
                    "depth": a.depth,
                    "signed": a.signed,
                    "verified": a.verified,
                    "outcome": self.outcomes.get(
                        a.path, SignOutcome.NOT_ATTEMPTED
                    ).value,
                }
                for a in self.artifacts
            ],
            "archive": archive,
            "submission": submission,
            "staple": staple,
        }


# ----------------------------------------------------------------------------
# Cancellation and time


class CancellationToken:
    """Cooperative cancellation shared by every stage of a run."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Block up to timeout seconds; return True if cancelled."""
        return self._event.wait(timeout)


class SystemClock:
    """Wall clock used for polling; tests substitute a fake."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, token: CancellationToken) -> bool:
        """Sleep, waking early on cancellation. Returns True if cancelled."""
        return token.wait(seconds)


# ----------------------------------------------------------------------------
# Binary discovery


def find_bundle_executable(directory: Path) -> Path | None:
    """Locate the main binary of a bundle directory.

    Args:
        directory: Candidate bundle directory

    Returns:
        The Mach-O file named by CFBundleExecutable, or None if the
        directory is not a bundle with signable code
    """
    for plist_path, executable_dir in BUNDLE_LAYOUTS:
        info_plist = directory / plist_path
        if not info_plist.is_file():
            continue
        try:
            with open(info_plist, "rb") as f:
                info = plistlib.load(f)
        except (ValueError, OSError, ExpatError):
            continue
        name = info.get("CFBundleExecutable") if isinstance(info, dict) else None
        if not isinstance(name, str) or not name:
            continue
        executable = directory / executable_dir / name
        if executable.is_file() and classify_binary(executable) is not None:
            return executable
    return None


def nesting_graph(artifacts: Iterable[Artifact]) -> dict[Path, set[Path]]:
    """Map every artifact to the artifacts nested directly beneath it.

    In graphlib terms the nested artifacts are the predecessors of their
    bundle: they must be done before the bundle can start.
    """
    artifacts = list(artifacts)
    graph: dict[Path, set[Path]] = {a.path: set() for a in artifacts}
    for artifact in artifacts:
        if artifact.parent is not None:
            graph[artifact.parent].add(artifact.path)
    return graph


def topological_order(artifacts: Iterable[Artifact]) -> list[Artifact]:
    """Order artifacts inside-out, breaking ties by path.

    Args:
        artifacts: Artifacts with parent links set

    Returns:
        Artifacts such that nested ones precede their enclosing bundle
    """
    by_path = {a.path: a for a in artifacts}
    sorter = graphlib.TopologicalSorter(nesting_graph(by_path.values()))
    sorter.prepare()
    ready: list[tuple[str, Path]] = []
    ordered: list[Artifact] = []
    while sorter.is_active():
        for path in sorter.get_ready():
            heapq.heappush(ready, (str(path), path))
        _, path = heapq.heappop(ready)
        ordered.append(by_path[path])
        sorter.done(path)
    return ordered


class BinaryScanner:
    """Discover signable artifacts in a directory tree.

    Files are classified by their Mach-O header, never by name or
    extension. Directories holding an Info.plist whose CFBundleExecutable
    is Mach-O become bundle artifacts. Symbolic links are not followed.

    Args:
        root: Directory produced by the build
        workers: Threads used to read binary headers (default: CPU count)

    Example:
        artifacts = BinaryScanner("dist/").scan()
    """

    def __init__(self, root: Pathlike, workers: int | None = None) -> None:
        self.root = Path(root)
        if workers is None:
            workers = os.cpu_count() or 1
        if workers < 1:
            raise ConfigurationError(f"Workers must be at least 1: {workers}")
        self.workers = workers
        self.log = logging.getLogger(self.__class__.__name__)

    def check_root(self) -> None:
        """Raise ScanError unless the root is an existing directory."""
        if not self.root.exists():
            raise ScanError(f"Input path does not exist: {self.root}")
        if not self.root.is_dir():
            raise ScanError(f"Input path is not a directory: {self.root}")

    def scan(self) -> list[Artifact]:
        """Walk the tree and return artifacts in signing order.

        Returns:
            Artifacts ordered inside-out, unrelated ones by path

        Raises:
            ScanError: If the root is missing or holds nothing signable
        """
        self.check_root()

        bundles: dict[Path, Artifact] = {}
        claimed: set[Path] = set()
        candidates: list[Path] = []

        # top-down, so an outer bundle claims its binary before
        # e.g. X.framework/Versions/A can be mistaken for a second bundle
        for root, folders, files in os.walk(self.root):
            folders.sort()
            root_path = Path(root)
            executable = find_bundle_executable(root_path)
            if executable is not None and executable.resolve() not in claimed:
                claimed.add(executable.resolve())
                self.log.debug("added bundle: %s", root_path)
                bundles[root_path] = Artifact(
                    path=root_path,
                    kind=ArtifactKind.BUNDLE,
                    executable=executable,
                )
            for fname in sorted(files):
                fpath = root_path / fname
                if fpath.is_symlink():
                    continue
                candidates.append(fpath)

        candidates = [p for p in candidates if p.resolve() not in claimed]
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.workers
        ) as pool:
            kinds = list(pool.map(classify_binary, candidates))

        artifacts = list(bundles.values())
        for fpath, kind in zip(candidates, kinds):
            if kind is None:
                continue
            self.log.debug("added %s: %s", kind.value, fpath)
            artifacts.append(Artifact(path=fpath, kind=kind))

        if not artifacts:
            raise ScanError(
                f"No signable Mach-O artifacts found in {self.root}"
            )

        for artifact in artifacts:
            enclosing = [p for p in artifact.path.parents if p in bundles]
            artifact.parent = enclosing[0] if enclosing else None
            artifact.depth = len(enclosing)

        ordered = topological_order(artifacts)
        self.log.info(
            "found %d artifacts (%d bundles) in %s",
            len(ordered),
            len(bundles),
            self.root,
        )
        return ordered


# ----------------------------------------------------------------------------
# Codesigning


class CodesignTool:
    """Apply, inspect and verify signatures with ``codesign``.

    Args:
        keychain: Keychain holding the signing identity (default: the
            user's search list)
    """

    def __init__(self, keychain: Pathlike | None = None) -> None:
        self.keychain = Path(keychain) if keychain else None
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(
        self, command: list[str], include_stderr: bool = False
    ) -> str:
        """Run a command and return its output.

        Raises:
            CommandError: If the command fails
        """
        return run_command(
            command, log=self.log, include_stderr=include_stderr
        )

    def resolve(self, identity: SigningIdentity) -> SigningIdentity:
        """Fill in the common name of an identity given by certificate hash.

        Args:
            identity: The identity to resolve

        Returns:
            The identity with its authority set

        Raises:
            ConfigurationError: If no matching identity is installed
        """
        if identity.adhoc or identity.authority:
            return identity
        command = ["security", "find-identity", "-v", "-p", "codesigning"]
        if self.keychain:
            command.append(str(self.keychain))
        output = self.run_command(command)
        for line in output.splitlines():
            match = FIND_IDENTITY_PATTERN.search(line)
            if match and match.group(1).upper() == identity.reference:
                self.log.debug(
                    "identity %s is %s", identity.reference, match.group(2)
                )
                return dataclasses.replace(identity, authority=match.group(2))
        raise ConfigurationError(
            f"Signing identity {identity.reference} not found"
            + (f" in {self.keychain}" if self.keychain else "")
        )

    def sign(
        self,
        path: Path,
        identity: SigningIdentity,
        kind: ArtifactKind | None = None,
    ) -> None:
        """Sign a file or bundle, replacing any existing signature.

        Args:
            path: What to sign
            identity: Identity and options to apply
            kind: Kind of artifact; None for containers such as disk
                images, which get neither runtime options nor entitlements
        """
        command = ["codesign", "--sign", identity.reference, "--force"]
        if identity.timestamp and not identity.adhoc:
            command.append("--timestamp")
        else:
            command.append("--timestamp=none")
        if kind is not None and identity.hardened_runtime:
            command.extend(["--options", "runtime"])
        if identity.entitlements and kind in (
            ArtifactKind.EXECUTABLE,
            ArtifactKind.BUNDLE,
        ):
            command.extend(["--entitlements", str(identity.entitlements)])
        if self.keychain:
            command.extend(["--keychain", str(self.keychain)])
        command.append(str(path))

        self.log.info(
            "signing %s: %s", kind.value if kind else "container", path
        )
        self.run_command(command)

    def verify(self, path: Path) -> str | None:
        """Strictly verify the signature of path.

        Returns:
            None if the signature is valid, else codesign's diagnostic
        """
        try:
            self.run_command(
                ["codesign", "--verify", "--strict", "--verbose=2", str(path)]
            )
        except CommandError as e:
            return (e.output or str(e)).strip()
        return None

    def inspect(self, path: Path) -> SignatureInfo | None:
        """Describe the existing signature of path.

        Returns:
            The signature, or None if path is unsigned or unreadable
        """
        try:
            output = self.run_command(
                ["codesign", "--display", "--verbose=2", str(path)],
                include_stderr=True,
            )
        except CommandError as e:
            self.log.debug("no usable signature on %s: %s", path, e.output)
            return None
        return SignatureInfo.parse(output, self.entitlements(path))

    def entitlements(self, path: Path) -> dict[str, object] | None:
        """Entitlements embedded in the signature of path, if any."""
        try:
            output = self.run_command(
                ["codesign", "--display", "--entitlements", "-", "--xml", str(path)]
            )
        except CommandError as e:
            self.log.debug("no entitlements readable on %s: %s", path, e.output)
            return None
        if not output or not output.strip():
            return None
        try:
            data = plistlib.loads(output.encode())
        except (ValueError, ExpatError):
            self.log.debug("unparseable entitlements on %s", path)
            return None
        return data if isinstance(data, dict) else None


class Signer:
    """Sign artifacts inside-out with bounded parallelism.

    Artifacts form a DAG (nested artifacts before their bundle). Independent
    artifacts are signed concurrently on up to ``concurrency`` threads; a
    bundle is only started once everything nested in it has been signed and
    verified. Every signature is verified immediately after signing.

    An artifact that already carries a valid signature from the same
    identity is left alone, so an interrupted run can simply be repeated.
    State is always re-derived from the binaries themselves.

    Args:
        tool: CodesignTool (or compatible) performing the operations
        identity: Identity applied to every artifact
        concurrency: Maximum parallel signing operations (default: CPUs)
        cancel: Token that stops new operations from being issued

    Example:
        signer = Signer(CodesignTool(), SigningIdentity.from_reference("-"))
        signer.sign_all(BinaryScanner("dist/").scan())
    """

    def __init__(
        self,
        tool: CodesignTool,
        identity: SigningIdentity,
        concurrency: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        self.tool = tool
        self.identity = identity
        if concurrency is None:
            concurrency = os.cpu_count() or 1
        self.concurrency = concurrency
        if self.concurrency < 1:
            raise ConfigurationError(
                f"Concurrency must be at least 1: {self.concurrency}"
            )
        self.cancel = cancel or CancellationToken()
        self.outcomes: dict[Path, SignOutcome] = {}
        self.log = logging.getLogger(self.__class__.__name__)

    def sign_one(self, artifact: Artifact) -> SignOutcome:
        """Sign and verify a single artifact.

        Raises:
            SignError: If codesign fails
            VerifyError: If the new signature does not verify
        """
        existing = self.tool.inspect(artifact.path)
        if (
            self.identity.matches(existing, artifact.kind)
            and self.tool.verify(artifact.path) is None
        ):
            artifact.signed = artifact.verified = True
            self.log.info("already signed: %s", artifact.path)
            return SignOutcome.ALREADY_SIGNED

        try:
            self.tool.sign(artifact.path, self.identity, artifact.kind)
        except CommandError as e:
            raise SignError(artifact.path, e.output or str(e)) from e
        artifact.signed = True

        problem = self.tool.verify(artifact.path)
        if problem is not None:
            raise VerifyError(artifact.path, problem)
        artifact.verified = True
        self.log.info("verified: %s", artifact.path)
        return SignOutcome.SIGNED

    def sign_all(self, artifacts: list[Artifact]) -> dict[Path, SignOutcome]:
        """Sign every artifact respecting the nesting DAG.

        On the first failure no further operations are issued, operations
        already running are allowed to finish, and the failure is raised.

        Args:
            artifacts: Artifacts from BinaryScanner

        Returns:
            Outcome per artifact path

        Raises:
            SignError: Identifying the first artifact that failed
            PipelineCancelled: If the cancellation token fired
        """
        self.identity = self.tool.resolve(self.identity)
        by_path = {a.path: a for a in artifacts}
        self.outcomes = {a.path: SignOutcome.NOT_ATTEMPTED for a in artifacts}
        for artifact in artifacts:
            artifact.signed = artifact.verified = False

        sorter = graphlib.TopologicalSorter(nesting_graph(artifacts))
        sorter.prepare()
        ready: list[tuple[str, Path]] = []
        in_flight: dict[concurrent.futures.Future[SignOutcome], Artifact] = {}
        failure: SignError | None = None

        def release_ready() -> None:
            for path in sorter.get_ready():
                heapq.heappush(ready, (str(path), path))

        release_ready()
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="codesign"
        ) as pool:
            while ready or in_flight:
                while (
                    ready
                    and len(in_flight) < self.concurrency
                    and failure is None
                    and not self.cancel.cancelled
                ):
                    _, path = heapq.heappop(ready)
                    future = pool.submit(self.sign_one, by_path[path])
                    in_flight[future] = by_path[path]
                if not in_flight:
                    break

                done, _ = concurrent.futures.wait(
                    in_flight, return_when=concurrent.futures.FIRST_COMPLETED
                )
                for future in sorted(done, key=lambda f: str(in_flight[f].path)):
                    artifact = in_flight.pop(future)
                    try:
                        self.outcomes[artifact.path] = future.result()
                    except SignError as e:
                        self.outcomes[artifact.path] = SignOutcome.FAILED
                        self.log.error("%s", e)
                        if failure is None:
                            failure = e
                        continue
                    sorter.done(artifact.path)
                if failure is None:
                    release_ready()

        if failure is not None:
            raise failure
        if self.cancel.cancelled:
            raise PipelineCancelled(
                f"Signing cancelled: {self.cancel.reason}"
            )
        return self.outcomes


# ----------------------------------------------------------------------------
# Credentials and working tree ownership


class LoginKeychain:
    """Credential scope for an identity already in the keychain search list.

    Nothing is created or destroyed; codesign finds the identity itself.
    """

    @contextlib.contextmanager
    def acquire(self) -> Iterator[Path | None]:
        yield None


class TemporaryKeychain:
    """Credential scope backed by a throwaway keychain.

    The PKCS#12 certificate is imported into a keychain that lives only for
    the duration of ``acquire()``. The keychain is unlocked with a random
    password, added to the user search list so codesign can use it, and
    deleted again on every exit path.

    Args:
        certificate: Path to a .p12 file with the Developer ID identity
        password: Password of the .p12 file (default:
            SIGNING_CERTIFICATE_PASSWORD environment variable)

    Example:
        with TemporaryKeychain("cert.p12").acquire() as keychain:
            CodesignTool(keychain).sign(...)
    """

    def __init__(
        self, certificate: Pathlike, password: str | None = None
    ) -> None:
        self.certificate = Path(certificate)
        if not self.certificate.exists():
            raise ConfigurationError(
                f"Signing certificate not found: {self.certificate}"
            )
        if password is None:
            password = os.getenv(ENV_CERTIFICATE_PASSWORD, "")
        self.certificate_password = password
        self.path: Path | None = None
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(
        self, command: list[str], redact: Iterable[str] = ()
    ) -> str:
        return run_command(command, log=self.log, redact=redact)

    def search_list(self) -> list[str]:
        """Return the user keychain search list."""
        output = self.run_command(["security", "list-keychains", "-d", "user"])
        return [
            line.strip().strip('"')
            for line in output.splitlines()
            if line.strip()
        ]

    @contextlib.contextmanager
    def acquire(self) -> Iterator[Path]:
        """Create the keychain, yield its path, then destroy it."""
        workdir = Path(tempfile.mkdtemp(prefix="macnotary."))
        keychain = workdir / "signing.keychain-db"
        password = secrets.token_urlsafe(32)
        created = False
        original: list[str] | None = None
        try:
            self.run_command(
                ["security", "create-keychain", "-p", password, str(keychain)],
                redact=[password],
            )
            created = True
            self.run_command(
                ["security", "set-keychain-settings", "-lut", "21600",
                 str(keychain)]
            )
            self.run_command(
                ["security", "unlock-keychain", "-p", password, str(keychain)],
                redact=[password],
            )
            self.run_command(
                [
                    "security",
                    "import",
                    str(self.certificate),
                    "-k",
                    str(keychain),
                    "-P",
                    self.certificate_password,
                    "-T",
                    "/usr/bin/codesign",
                ],
                redact=[self.certificate_password],
            )
            self.run_command(
                [
                    "security",
                    "set-key-partition-list",
                    "-S",
                    "apple-tool:,apple:,codesign:",
                    "-s",
                    "-k",
                    password,
                    str(keychain),
                ],
                redact=[password],
            )
            original = self.search_list()
            self.run_command(
                ["security", "list-keychains", "-d", "user", "-s",
                 str(keychain), *original]
            )
            self.path = keychain
            self.log.info("created temporary keychain: %s", keychain)
            yield keychain
        finally:
            self.path = None
            if original is not None:
                try:
                    self.run_command(
                        ["security", "list-keychains", "-d", "user", "-s",
                         *original]
                    )
                except CommandError as e:
                    self.log.error(
                        "could not restore keychain search list: %s", e
                    )
            if created:
                try:
                    self.run_command(
                        ["security", "delete-keychain", str(keychain)]
                    )
                except CommandError as e:
                    self.log.error(
                        "could not delete keychain %s: %s", keychain, e
                    )
            shutil.rmtree(workdir, ignore_errors=True)
            self.log.info("removed temporary keychain")


class TreeLock:
    """Exclusive ownership of a working tree for the duration of a run.

    The lock file sits next to the tree, never inside it, so that it cannot
    break a bundle's sealed resources. The lock is released when the
    process exits, which keeps interrupted runs resumable.
    """

    def __init__(self, root: Pathlike) -> None:
        self.root = Path(root)
        resolved = self.root.resolve()
        self.path = resolved.parent / f".{resolved.name}.macnotary.lock"
        self._fd: int | None = None

    def __enter__(self) -> "TreeLock":
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_RDWR, 0o600)
        except OSError as e:
            raise TreeLockError(
                f"Cannot create lock file {self.path}: {e.strerror or e}"
            ) from e
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            raise TreeLockError(
                f"Another run is processing {self.root} (lock: {self.path})"
            ) from e
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd
        return self

    def __exit__(self, *args: object) -> None:
        if self._fd is not None:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
            self._fd = None


# ----------------------------------------------------------------------------
# Archiving


class Archiver:
    """Package a fully signed tree into a single submission archive.

    Formats:
        dmg: ``hdiutil create`` image (UDZO), signed with the run's identity
        zip: ``ditto -c -k --keepParent`` archive

    Both keep directory structure, permissions and symbolic links, and
    compress losslessly.

    Args:
        source: Root of the signed tree
        output: Archive path (default: <source>.<format> next to source)
        fmt: "dmg" or "zip"
        volume_name: Volume name of a disk image (default: source name)
        tool: CodesignTool used to sign a disk image
        identity: Identity used to sign a disk image

    Example:
        archive = Archiver("dist/", fmt="zip").create(artifacts)
    """

    def __init__(
        self,
        source: Pathlike,
        output: Pathlike | None = None,
        fmt: str = DEFAULT_ARCHIVE_FORMAT,
        volume_name: str | None = None,
        tool: CodesignTool | None = None,
        identity: SigningIdentity | None = None,
    ) -> None:
        self.source = Path(source)
        if fmt not in ARCHIVE_FORMATS:
            raise ConfigurationError(
                f"Unsupported archive format '{fmt}' "
                f"(expected one of: {', '.join(ARCHIVE_FORMATS)})"
            )
        self.format = fmt
        if output:
            self.output = Path(output)
        else:
            self.output = self.source.parent / f"{self.source.name}.{fmt}"
        if self.source.resolve() in self.output.resolve().parents:
            raise ConfigurationError(
                f"Archive {self.output} must not be inside {self.source}"
            )
        self.volume_name = volume_name or self.source.stem
        self.tool = tool
        self.identity = identity
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(self, command: list[str]) -> str:
        return run_command(command, log=self.log)

    def check(self, artifacts: list[Artifact]) -> None:
        """Refuse anything that is not signed and verified.

        Raises:
            ArchiveError: If the precondition does not hold
        """
        if not artifacts:
            raise ArchiveError(f"No artifacts to archive in {self.source}")
        untrusted = [a.path for a in artifacts if not a.trusted]
        if untrusted:
            listed = ", ".join(str(p) for p in untrusted[:5])
            raise ArchiveError(
                f"Refusing to archive {len(untrusted)} artifact(s) that are "
                f"not signed and verified: {listed}"
            )

    def create(self, artifacts: list[Artifact]) -> SubmissionArchive:
        """Build the archive.

        Args:
            artifacts: Every artifact of the tree, all signed and verified

        Returns:
            The archive with its sha256 checksum

        Raises:
            ArchiveError: If a precondition or the archiving tool fails
        """
        self.check(artifacts)

        if self.output.exists():
            self.output.unlink()

        self.log.info("creating %s: %s", self.format, self.output)
        if self.format == "dmg":
            command = [
                "hdiutil",
                "create",
                "-volname",
                self.volume_name,
                "-srcfolder",
                str(self.source),
                "-ov",
                "-format",
                "UDZO",
                str(self.output),
            ]
        else:
            command = [
                "ditto",
                "-c",
                "-k",
                "--sequesterRsrc",
                "--keepParent",
                str(self.source),
                str(self.output),
            ]
        try:
            self.run_command(command)
        except CommandError as e:
            raise ArchiveError(
                f"Failed to create {self.output}: {e.output or e}"
            ) from e

        if not self.output.exists():
            raise ArchiveError(f"Archiving produced no output: {self.output}")

        if self.format == "dmg":
            self.sign_image()

        checksum = file_checksum(self.output)
        self.log.info("archive %s sha256=%s", self.output, checksum)
        return SubmissionArchive(
            path=self.output,
            format=self.format,
            checksum=checksum,
            artifacts=tuple(a.path for a in artifacts),
        )

    def sign_image(self) -> None:
        """Sign and verify the disk image itself."""
        if self.tool is None or self.identity is None:
            self.log.warning("Skipping disk image signing (no identity)")
            return
        if self.identity.adhoc:
            self.log.warning("Skipping disk image signing (ad-hoc identity)")
            return
        try:
            self.tool.sign(self.output, self.identity)
        except CommandError as e:
            raise ArchiveError(
                f"Failed to sign disk image {self.output}: {e.output or e}"
            ) from e
        problem = self.tool.verify(self.output)
        if problem is not None:
            raise ArchiveError(
                f"Disk image signature invalid for {self.output}: {problem}"
            )


# ----------------------------------------------------------------------------
# Notary service


# notarytool diagnostics that mean "try again later"
TRANSIENT_FAILURE_PATTERN = re.compile(
    r"HTTP status code:?\s*5\d\d|NSURLErrorDomain|timed out|"
    r"network connection was lost|appears to be offline|"
    r"could not connect|connection reset|temporarily unavailable",
    re.IGNORECASE,
)

# notarytool diagnostics that no amount of retrying will fix
FATAL_FAILURE_PATTERN = re.compile(
    r"HTTP status code:?\s*40[13]|unable to authenticate|"
    r"invalid credentials|not authorized|unauthorized|forbidden|"
    r"no keychain password item found",
    re.IGNORECASE,
)


def classify_failure(
    error: CommandError, action: str, submission_id: str | None = None
) -> SubmissionError:
    """Turn a failed notarytool invocation into a SubmissionError.

    Network and server side failures are transient; authorization failures
    and anything unrecognised are fatal.

    Args:
        error: The failed command
        action: What was attempted ("submit", "info", ...)
        submission_id: Submission concerned, if any

    Returns:
        The classified error (not raised)
    """
    text = (error.output or str(error)).strip()
    transient = not FATAL_FAILURE_PATTERN.search(text) and bool(
        TRANSIENT_FAILURE_PATTERN.search(text)
    )
    target = f" for {submission_id}" if submission_id else ""
    return SubmissionError(
        f"notarytool {action}{target} failed: {text}",
        transient=transient,
        submission_id=submission_id,
    )


class NotaryService:
    """Contract of the remote notarization service.

    Implementations raise SubmissionError, flagged transient or fatal, when
    the service cannot be reached or refuses the request.
    """

    def submit(self, archive: SubmissionArchive) -> str:
        """Upload an archive and return its submission id."""
        raise NotImplementedError

    def status(self, submission_id: str) -> StatusReport:
        """Report the current state of a submission."""
        raise NotImplementedError

    def fetch_ticket(self, submission_id: str, target: Path) -> Ticket:
        """Obtain the ticket of an accepted submission for target."""
        raise NotImplementedError


class NotaryToolService(NotaryService):
    """NotaryService backed by ``xcrun notarytool`` and ``xcrun stapler``.

    Args:
        keychain_profile: notarytool keychain profile (default:
            KEYCHAIN_PROFILE environment variable)
        notary_args: Extra authentication arguments passed to every
            notarytool call (e.g. ["--key", "AuthKey.p8", ...])
        staple_attempts: Attempts for stapler on known transient errors
        staple_retry_delay: Seconds between stapler attempts
        clock: Time source for the wait between stapler attempts
        cancel: Token that cuts the wait between stapler attempts short

    Environment Variables:
        KEYCHAIN_PROFILE: Keychain profile name (fallback)
    """

    def __init__(
        self,
        keychain_profile: str | None = None,
        notary_args: list[str] | None = None,
        staple_attempts: int = DEFAULT_STAPLE_ATTEMPTS,
        staple_retry_delay: float = DEFAULT_STAPLE_RETRY_DELAY,
        clock: SystemClock | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        self.keychain_profile = keychain_profile or os.getenv(
            ENV_KEYCHAIN_PROFILE
        )
        self.notary_args = list(notary_args or [])
        if not self.keychain_profile and not self.notary_args:
            raise ConfigurationError(
                "Keychain profile required for notarization. "
                "Set KEYCHAIN_PROFILE environment variable or pass "
                "keychain_profile parameter."
            )
        self.staple_attempts = max(1, staple_attempts)
        self.staple_retry_delay = staple_retry_delay
        self.clock = clock or SystemClock()
        self.cancel = cancel or CancellationToken()
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def auth_args(self) -> list[str]:
        args = []
        if self.keychain_profile:
            args.extend(["--keychain-profile", self.keychain_profile])
        return args + self.notary_args

    def run_command(self, command: list[str]) -> str:
        return run_command(command, log=self.log)

    def _load_plist(
        self, output: str, submission_id: str | None = None
    ) -> dict[str, object]:
        try:
            plist = plistlib.loads(output.encode())
        except (ValueError, ExpatError) as e:
            raise SubmissionError(
                "xcrun notarytool returned output that could not be "
                f"parsed: {output}",
                submission_id=submission_id,
            ) from e
        if not isinstance(plist, dict):
            raise SubmissionError(
                f"xcrun notarytool returned unexpected output: {output}",
                submission_id=submission_id,
            )
        return plist

    def submit(self, archive: SubmissionArchive) -> str:
        command = [
            "xcrun",
            "notarytool",
            "submit",
            str(archive.path),
            "--no-wait",
            "--output-format",
            "plist",
        ] + self.auth_args
        try:
            output = self.run_command(command)
        except CommandError as e:
            raise classify_failure(e, "submit") from e
        submission_id = self._load_plist(output).get("id")
        if not isinstance(submission_id, str) or not submission_id:
            raise SubmissionError(
                f"xcrun notarytool returned no submission id: {output}"
            )
        self.log.info(
            "Submitted %s for notarization, request UUID: %s",
            archive.path,
            submission_id,
        )
        return submission_id

    def status(self, submission_id: str) -> StatusReport:
        command = [
            "xcrun",
            "notarytool",
            "info",
            submission_id,
            "--output-format",
            "plist",
        ] + self.auth_args
        try:
            output = self.run_command(command)
        except CommandError as e:
            raise classify_failure(e, "info", submission_id) from e

        status = self._load_plist(output, submission_id).get("status")
        if status == "In Progress":
            return StatusReport(SubmissionStatus.POLLING, output=output)
        if status == "Accepted":
            return StatusReport(SubmissionStatus.ACCEPTED, output=output)
        if status in ("Invalid", "Rejected"):
            log = self.fetch_log(submission_id)
            return StatusReport(
                SubmissionStatus.REJECTED,
                log=log if log is not None else output,
                output=output,
            )
        raise SubmissionError(
            f"Unexpected notarization status '{status}' for {submission_id}",
            submission_id=submission_id,
        )

    def fetch_log(self, submission_id: str) -> str | None:
        """Return the developer log of a submission, if it can be fetched."""
        command = ["xcrun", "notarytool", "log", submission_id]
        command += self.auth_args
        try:
            return self.run_command(command)
        except CommandError as e:
            self.log.error(
                "Failed to get the notarization log for %s: %s",
                submission_id,
                e.output or e,
            )
            return None

    def fetch_ticket(self, submission_id: str, target: Path) -> Ticket:
        """Download the ticket and staple it to target via ``stapler``.

        stapler looks the ticket up by the code directory hash of target,
        so fetching and attaching are a single operation.
        """
        command = ["xcrun", "stapler", "staple", "--verbose", str(target)]
        attempt = 0
        while True:
            attempt += 1
            try:
                self.run_command(command)
                return Ticket(submission_id, Path(target))
            except CommandError as e:
                transient = e.returncode in STAPLER_TRANSIENT_CODES
                if transient and attempt < self.staple_attempts:
                    self.log.warning(
                        "stapler failed for %s (code %d), retrying in %gs",
                        target,
                        e.returncode,
                        self.staple_retry_delay,
                    )
                    if self.clock.sleep(self.staple_retry_delay, self.cancel):
                        raise PipelineCancelled(
                            f"Stapling {target} cancelled: "
                            f"{self.cancel.reason}"
                        ) from e
                    continue
                raise SubmissionError(
                    f"Ticket for {submission_id} could not be stapled to "
                    f"{target}: {e.output or e}",
                    transient=transient,
                    submission_id=submission_id,
                ) from e


# ----------------------------------------------------------------------------
# Notarization


class NotarizationClient:
    """Submit an archive and poll the notary service until a verdict.

    State machine::

        Submitted -> Polling -> {Accepted | Rejected | TimedOut}

    The first poll happens right after submission; later polls are spaced
    by the policy's backoff intervals. Transient service failures are
    retried in place without changing state; fatal ones are raised.
    Timeout and cancellation end the loop like any other state change.

    Args:
        service: The notary service
        policy: Timeout and backoff parameters
        clock: Time source (monotonic() and sleep())
        cancel: Cancellation token

    Example:
        client = NotarizationClient(NotaryToolService(), RetryPolicy())
        submission = client.notarize(archive)
    """

    def __init__(
        self,
        service: NotaryService,
        policy: RetryPolicy | None = None,
        clock: SystemClock | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        self.service = service
        self.policy = policy or RetryPolicy()
        self.clock = clock or SystemClock()
        self.cancel = cancel or CancellationToken()
        self.submission: NotarizationSubmission | None = None
        self.log = logging.getLogger(self.__class__.__name__)

    def notarize(self, archive: SubmissionArchive) -> NotarizationSubmission:
        """Submit the archive and wait for a terminal status.

        Returns:
            The submission in state Accepted, Rejected or TimedOut

        Raises:
            SubmissionError: On fatal service errors, or transient ones
                beyond the policy's tolerance
            PollTimeoutError: If the archive could not even be submitted
                before the timeout
            PipelineCancelled: If the cancellation token fired
        """
        deadline = self.clock.monotonic() + self.policy.timeout
        submission_id = self._submit(archive, deadline)
        self.submission = NotarizationSubmission(submission_id, archive)
        self._poll(self.submission, deadline)
        if not self.submission.terminal:
            raise PipelineCancelled(
                f"Notarization of {submission_id} cancelled: "
                f"{self.cancel.reason}"
            )
        return self.submission

    def _tolerate(self, error: SubmissionError, failures: int) -> None:
        limit = self.policy.max_transient_failures
        if not error.transient or (limit is not None and failures > limit):
            raise error
        self.log.warning("transient notary failure (%d): %s", failures, error)

    def _submit(self, archive: SubmissionArchive, deadline: float) -> str:
        intervals = self.policy.intervals()
        failures = 0
        while not self.cancel.cancelled:
            try:
                return self.service.submit(archive)
            except SubmissionError as e:
                failures += 1
                self._tolerate(e, failures)
                remaining = deadline - self.clock.monotonic()
                if remaining <= 0:
                    raise PollTimeoutError(
                        None, self.policy.timeout, str(e)
                    ) from e
                self.clock.sleep(min(next(intervals), remaining), self.cancel)
        raise PipelineCancelled(
            f"Submission of {archive.path} cancelled: {self.cancel.reason}"
        )

    def _poll(self, submission: NotarizationSubmission, deadline: float) -> None:
        intervals = self.policy.intervals()
        failures = 0
        while not submission.terminal and not self.cancel.cancelled:
            try:
                report = self.service.status(submission.id)
            except SubmissionError as e:
                failures += 1
                self._tolerate(e, failures)
            else:
                failures = 0
                submission.polls += 1
                self._advance(submission, report)
                if submission.terminal:
                    break

            remaining = deadline - self.clock.monotonic()
            if remaining <= 0:
                submission.status = SubmissionStatus.TIMED_OUT
                self.log.error(
                    "notarization of %s timed out after %gs",
                    submission.id,
                    self.policy.timeout,
                )
                break
            interval = next(intervals)
            submission.intervals.append(interval)
            self.clock.sleep(min(interval, remaining), self.cancel)

    def _advance(
        self, submission: NotarizationSubmission, report: StatusReport
    ) -> None:
        status = report.status
        if status is SubmissionStatus.SUBMITTED:
            status = SubmissionStatus.POLLING
        submission.status = status
        if report.log is not None:
            submission.log = report.log

        if status is SubmissionStatus.ACCEPTED:
            self.log.info("Successfully notarized request %s", submission.id)
        elif status is SubmissionStatus.REJECTED:
            self.log.error(
                "Notarization request %s was rejected:\n%s",
                submission.id,
                submission.log,
            )
        else:
            self.log.info(
                "request %s: %s (poll %d)",
                submission.id,
                status.value,
                submission.polls,
            )


# ----------------------------------------------------------------------------
# Stapling


class Stapler:
    """Attach the notarization ticket of an accepted submission.

    A disk image is stapled as a whole. For zip archives the ticket is
    stapled to every bundle in the tree, most nested first; plain Mach-O
    files cannot hold a stapled ticket and rely on online verification.
    """

    def __init__(self, service: NotaryService) -> None:
        self.service = service
        self.log = logging.getLogger(self.__class__.__name__)

    def targets(
        self, archive: SubmissionArchive, artifacts: list[Artifact]
    ) -> list[Path]:
        """Return what the ticket should be stapled to."""
        if archive.format == "dmg":
            return [archive.path]
        bundles = [a for a in artifacts if a.kind is ArtifactKind.BUNDLE]
        bundles.sort(key=lambda a: (-a.depth, str(a.path)))
        return [a.path for a in bundles]

    def staple(
        self, submission: NotarizationSubmission, artifacts: list[Artifact]
    ) -> StapleResult:
        """Staple the ticket to every target.

        Raises:
            StapleError: If the submission is not accepted (not degraded)
                or a ticket cannot be stapled (degraded)
        """
        if submission.status is not SubmissionStatus.ACCEPTED:
            raise StapleError(
                submission.archive.path,
                f"submission {submission.id} is "
                f"{submission.status.value}, not Accepted",
                degraded=False,
            )

        targets = self.targets(submission.archive, artifacts)
        if not targets:
            self.log.warning(
                "nothing to staple in %s; tickets will be checked online",
                submission.archive.path,
            )
            return StapleResult(StapleStatus.SKIPPED)

        stapled: list[Path] = []
        for target in targets:
            self.log.info("Stapling %s", target)
            try:
                self.service.fetch_ticket(submission.id, target)
            except SubmissionError as e:
                raise StapleError(target, str(e)) from e
            stapled.append(target)
        return StapleResult(StapleStatus.STAPLED, stapled)


# ----------------------------------------------------------------------------
# Pipeline


class Pipeline:
    """Scan, sign, archive, notarize and staple a build tree.

    The first hard failure of scanning, signing, archiving or notarization
    ends the run as Failed; a stapling failure only marks it degraded.
    Signing credentials are held only while signing and archiving, and the
    tree is locked against concurrent runs for the whole run.

    Args:
        root: Build tree to process
        identity: Signing identity
        service: Notary service
        tool: CodesignTool (default: a new one)
        credentials: Credential scope with an ``acquire()`` context
            manager yielding a keychain path or None (default:
            LoginKeychain)
        concurrency: Parallel signing operations (default: CPUs)
        policy: Notarization timeout and backoff
        archive_format: "dmg" or "zip"
        output: Archive path (default: next to root)
        clock: Time source for polling
        cancel: Cancellation token

    Example:
        run = Pipeline("dist/", identity, NotaryToolService()).run()
        sys.exit(run.exit_code)
    """

    def __init__(
        self,
        root: Pathlike,
        identity: SigningIdentity,
        service: NotaryService,
        tool: CodesignTool | None = None,
        credentials: LoginKeychain | TemporaryKeychain | None = None,
        concurrency: int | None = None,
        policy: RetryPolicy | None = None,
        archive_format: str = DEFAULT_ARCHIVE_FORMAT,
        output: Pathlike | None = None,
        clock: SystemClock | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        self.root = Path(root)
        self.identity = identity
        self.service = service
        self.tool = tool or CodesignTool()
        self.credentials = credentials or LoginKeychain()
        self.concurrency = concurrency
        self.policy = policy or RetryPolicy()
        if archive_format not in ARCHIVE_FORMATS:
            raise ConfigurationError(
                f"Unsupported archive format '{archive_format}'"
            )
        self.archive_format = archive_format
        self.output = output
        self.clock = clock or SystemClock()
        self.cancel = cancel or CancellationToken()
        self.log = logging.getLogger(self.__class__.__name__)

    def run(self) -> PipelineRun:
        """Execute the pipeline.

        Returns:
            The run report; errors are recorded in it, not raised
        """
        run = PipelineRun(root=self.root)
        try:
            BinaryScanner(self.root, workers=self.concurrency).check_root()
            with TreeLock(self.root):
                archive = self.prepare(run)
                submission = self.notarize(run, archive)
                self.staple(run, submission)
            run.succeed()
        except NotaryError as e:
            self.log.error("%s", e)
            run.fail(e)

        self.log.info("run finished: %s", run.summary())
        return run

    def prepare(self, run: PipelineRun) -> SubmissionArchive:
        """Scan, sign and archive while holding the signing credentials."""
        with self.credentials.acquire() as keychain:
            previous = self.tool.keychain
            if keychain is not None:
                self.tool.keychain = keychain
            try:
                run.artifacts = BinaryScanner(
                    self.root, workers=self.concurrency
                ).scan()
                signer = Signer(
                    self.tool, self.identity, self.concurrency, self.cancel
                )
                try:
                    signer.sign_all(run.artifacts)
                finally:
                    run.outcomes = dict(signer.outcomes)
                archiver = Archiver(
                    self.root,
                    output=self.output,
                    fmt=self.archive_format,
                    tool=self.tool,
                    identity=signer.identity,
                )
                run.archive = archiver.create(run.artifacts)
            finally:
                self.tool.keychain = previous
        return run.archive

    def notarize(
        self, run: PipelineRun, archive: SubmissionArchive
    ) -> NotarizationSubmission:
        """Notarize the archive, raising on anything but Accepted."""
        client = NotarizationClient(
            self.service, self.policy, self.clock, self.cancel
        )
        try:
            submission = client.notarize(archive)
        finally:
            run.submission = client.submission
        if submission.status is SubmissionStatus.REJECTED:
            raise NotarizationRejected(submission.id, submission.log)
        if submission.status is SubmissionStatus.TIMED_OUT:
            raise PollTimeoutError(submission.id, self.policy.timeout)
        return submission

    def staple(
        self, run: PipelineRun, submission: NotarizationSubmission
    ) -> None:
        """Staple the ticket; failure degrades the run instead of failing it."""
        try:
            run.staple = Stapler(self.service).staple(
                submission, run.artifacts
            )
        except StapleError as e:
            self.log.warning(
                "%s; distribution falls back to online ticket checks", e
            )
            run.staple = StapleResult(StapleStatus.DEGRADED, error=str(e))


# ----------------------------------------------------------------------------
# Command-line interface


@contextlib.contextmanager
def cancel_on_signals(token: CancellationToken) -> Iterator[CancellationToken]:
    """Turn SIGINT/SIGTERM into cooperative cancellation of a run.

    Handlers can only be installed from the main thread; elsewhere the
    token is yielded untouched.
    """
    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    def handler(signum: int, frame: object) -> None:
        token.cancel(f"received {signal.Signals(signum).name}")

    previous = {
        signum: signal.signal(signum, handler)
        for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield token
    finally:
        for signum, old in previous.items():
            signal.signal(signum, old)


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    """Add common options to a parser."""
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )


def _add_signing_options(parser: argparse.ArgumentParser) -> None:
    """Add identity and signing options to a parser."""
    parser.add_argument(
        "-i",
        "--identity",
        metavar="ID",
        help=(
            "Developer ID name, certificate hash or '-' for ad-hoc "
            "(or set DEV_ID env var)"
        ),
    )
    parser.add_argument(
        "-e",
        "--entitlements",
        metavar="FILE",
        help="path to entitlements.plist (executables and bundles only)",
    )
    parser.add_argument(
        "-c",
        "--certificate",
        metavar="FILE",
        help=(
            "import this .p12 into a temporary keychain for the run "
            "(or set SIGNING_CERTIFICATE env var)"
        ),
    )
    parser.add_argument(
        "-j",
        "--concurrency",
        type=int,
        metavar="N",
        help="parallel signing operations (default: number of CPUs)",
    )
    parser.add_argument(
        "--no-runtime",
        action="store_true",
        help="do not enable the hardened runtime",
    )
    parser.add_argument(
        "--no-timestamp",
        action="store_true",
        help="do not request a secure timestamp",
    )


def _config_path(value: object) -> str | None:
    return str(value) if value else None


def _build_identity(args: argparse.Namespace) -> SigningIdentity:
    """Resolve the signing identity from args, config and environment."""
    config = get_config()
    reference = args.identity
    if reference is None:
        reference = _config_path(get_config_value(config, "sign", "identity"))
    entitlements = args.entitlements
    if entitlements is None:
        entitlements = _config_path(
            get_config_value(config, "sign", "entitlements")
        )
    return SigningIdentity.from_reference(
        reference,
        hardened_runtime=not args.no_runtime,
        timestamp=not args.no_timestamp,
        entitlements=entitlements,
    )


def _build_credentials(
    args: argparse.Namespace,
) -> LoginKeychain | TemporaryKeychain:
    """Pick the credential scope: a temporary keychain if a .p12 is given."""
    certificate = args.certificate
    if certificate is None:
        certificate = _config_path(
            get_config_value(get_config(), "sign", "certificate")
        )
    if certificate is None:
        certificate = os.getenv(ENV_CERTIFICATE)
    if certificate:
        return TemporaryKeychain(certificate)
    return LoginKeychain()


def _concurrency(args: argparse.Namespace) -> int | None:
    concurrency = args.concurrency
    if concurrency is None:
        value = get_config_value(get_config(), "sign", "concurrency")
        if value is not None:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(
                    f"sign.concurrency must be an integer: {value!r}"
                )
            concurrency = value
    if concurrency is not None and concurrency < 1:
        raise ConfigurationError(
            f"Concurrency must be at least 1: {concurrency}"
        )
    return concurrency


def _print_plan(root: Path, artifacts: list[Artifact]) -> None:
    """Print artifacts in signing order."""
    print(f"Signing plan for {root} ({len(artifacts)} artifacts):")
    for index, artifact in enumerate(artifacts, 1):
        try:
            shown = artifact.path.relative_to(root)
        except ValueError:
            shown = artifact.path
        print(
            f"  {index:3d}. {artifact.kind.value:<16} "
            f"depth={artifact.depth}  {shown}"
        )


def _cmd_scan(args: argparse.Namespace) -> int:
    """Handle 'scan' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    root = Path(args.input)
    artifacts = BinaryScanner(root).scan()
    _print_plan(root, artifacts)
    return EXIT_SUCCESS


def _cmd_sign(args: argparse.Namespace) -> int:
    """Handle 'sign' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macnotary")

    root = Path(args.input)
    identity = _build_identity(args)
    concurrency = _concurrency(args)
    credentials = _build_credentials(args)

    scanner = BinaryScanner(root, workers=concurrency)
    scanner.check_root()
    token = CancellationToken()
    with cancel_on_signals(token), TreeLock(root):
        artifacts = scanner.scan()
        with credentials.acquire() as keychain:
            signer = Signer(
                CodesignTool(keychain), identity, concurrency, token
            )
            outcomes = signer.sign_all(artifacts)

    signed = sum(1 for o in outcomes.values() if o is SignOutcome.SIGNED)
    log.info(
        "Signed %d of %d artifacts in %s (%d already signed)",
        signed,
        len(outcomes),
        root,
        len(outcomes) - signed,
    )
    return EXIT_SUCCESS


def _duration_option(
    value: str | None, section: str, key: str, default: float
) -> float:
    """Apply CLI > config > default for a duration option."""
    if value is not None:
        return parse_duration(value)
    configured = get_config_value(get_config(), section, key)
    if configured is not None:
        if not isinstance(configured, (str, int, float)):
            raise ConfigurationError(f"{section}.{key} must be a duration")
        return parse_duration(configured)
    return default


def _build_policy(args: argparse.Namespace) -> RetryPolicy:
    """Resolve timeout and backoff settings."""
    config = get_config()
    multiplier = args.poll_multiplier
    if multiplier is None:
        value = get_config_value(config, "notarize", "poll_multiplier")
        multiplier = (
            float(value)
            if isinstance(value, (int, float)) and not isinstance(value, bool)
            else DEFAULT_POLL_MULTIPLIER
        )
    max_failures = args.max_transient_failures
    if max_failures is None:
        value = get_config_value(config, "notarize", "max_transient_failures")
        if isinstance(value, int) and not isinstance(value, bool):
            max_failures = value
    return RetryPolicy(
        timeout=_duration_option(
            args.timeout, "notarize", "timeout", DEFAULT_TIMEOUT
        ),
        base_interval=_duration_option(
            args.poll_base, "notarize", "poll_base", DEFAULT_POLL_BASE
        ),
        max_interval=_duration_option(
            args.poll_max, "notarize", "poll_max", DEFAULT_POLL_MAX
        ),
        multiplier=multiplier,
        max_transient_failures=max_failures,
    )


def _cmd_run(args: argparse.Namespace) -> int:
    """Handle 'run' subcommand."""
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("macnotary")
    config = get_config()

    root = Path(args.input)
    identity = _build_identity(args)
    concurrency = _concurrency(args)
    policy = _build_policy(args)

    archive_format = args.format
    if archive_format is None:
        archive_format = str(
            get_config_value(
                config, "archive", "format", DEFAULT_ARCHIVE_FORMAT
            )
        )
    output = args.output
    if output is None:
        output = _config_path(get_config_value(config, "archive", "output"))

    if args.dry_run:
        artifacts = BinaryScanner(root, workers=concurrency).scan()
        _print_plan(root, artifacts)
        print(f"Identity:  {identity.reference}")
        default_output = root.parent / f"{root.name}.{archive_format}"
        print(f"Archive:   {output or default_output}")
        print(
            f"Notarize:  timeout={policy.timeout:g}s "
            f"poll={policy.base_interval:g}s..{policy.max_interval:g}s "
            f"x{policy.multiplier:g}"
        )
        return EXIT_SUCCESS

    keychain_profile = args.keychain_profile
    if keychain_profile is None:
        keychain_profile = _config_path(
            get_config_value(config, "notarize", "keychain_profile")
        )
    token = CancellationToken()
    service = NotaryToolService(
        keychain_profile=keychain_profile,
        notary_args=args.notary_arg,
        cancel=token,
    )

    with cancel_on_signals(token):
        pipeline = Pipeline(
            root,
            identity,
            service,
            credentials=_build_credentials(args),
            concurrency=concurrency,
            policy=policy,
            archive_format=archive_format,
            output=output,
            cancel=token,
        )
        run = pipeline.run()

    if args.report:
        with open(args.report, "w") as f:
            json.dump(run.to_dict(), f, indent=2)
        log.info("Report written to %s", args.report)

    print(run.summary())
    if run.detail and run.reason == NotarizationRejected.reason:
        print(run.detail)
    return run.exit_code if run.exit_code is not None else EXIT_FAILURE


def main(argv: list[str] | None = None) -> None:
    """Command line interface for macnotary."""
    try:
        parser = argparse.ArgumentParser(
            prog="macnotary",
            description=(
                "Sign, notarize and staple trees of macOS binaries."
            ),
            epilog=(
                "Examples:\n"
                "  macnotary scan dist/\n"
                "  macnotary sign dist/ -i 'John Doe (ABCDE12345)'\n"
                "  macnotary run --input dist/ -i 'John Doe (ABCDE12345)' "
                "-k AC_PROFILE\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        parser.add_argument(
            "--version", action="version", version=f"%(prog)s {__version__}"
        )

        subparsers = parser.add_subparsers(
            title="commands",
            dest="command",
            required=True,
        )

        # --- scan subcommand ---
        scan_parser = subparsers.add_parser(
            "scan",
            help="show the signing plan of a build tree",
            description=(
                "Discover Mach-O artifacts and print them in signing order."
            ),
        )
        scan_parser.add_argument(
            "input",
            help="directory produced by the build",
        )
        _add_common_options(scan_parser)
        scan_parser.set_defaults(func=_cmd_scan)

        # --- sign subcommand ---
        sign_parser = subparsers.add_parser(
            "sign",
            help="sign every artifact of a build tree",
            description=(
                "Sign and verify every Mach-O artifact of a tree, inside-out."
            ),
            epilog=(
                "Examples:\n"
                "  macnotary sign dist/\n"
                "  macnotary sign dist/ -i 'John Doe (ABCDE12345)' -j 4\n"
                "  macnotary sign dist/ -i - --no-timestamp\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        sign_parser.add_argument(
            "input",
            help="directory produced by the build",
        )
        _add_signing_options(sign_parser)
        _add_common_options(sign_parser)
        sign_parser.set_defaults(func=_cmd_sign)

        # --- run subcommand ---
        run_parser = subparsers.add_parser(
            "run",
            help="sign, archive, notarize and staple a build tree",
            description=(
                "Sign a build tree, package it, submit it to Apple's notary "
                "service and staple the ticket."
            ),
            epilog=(
                "Examples:\n"
                "  macnotary run --input dist/ -i 'John Doe' -k AC_PROFILE\n"
                "  macnotary run --input dist/ --format zip --timeout 30m\n"
                "  macnotary run --input dist/ --dry-run\n"
            ),
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        run_parser.add_argument(
            "-I",
            "--input",
            required=True,
            metavar="DIR",
            help="directory produced by the build",
        )
        _add_signing_options(run_parser)
        run_parser.add_argument(
            "-k",
            "--keychain-profile",
            metavar="PROFILE",
            help=(
                "keychain profile for notarytool "
                "(or set KEYCHAIN_PROFILE env var)"
            ),
        )
        run_parser.add_argument(
            "--notary-arg",
            action="append",
            metavar="ARG",
            help="extra argument passed to every notarytool call (repeatable)",
        )
        run_parser.add_argument(
            "-t",
            "--timeout",
            metavar="DURATION",
            help="overall notarization timeout, e.g. 30m (default: 1h)",
        )
        run_parser.add_argument(
            "--poll-base",
            metavar="DURATION",
            help="first delay between status polls (default: 10s)",
        )
        run_parser.add_argument(
            "--poll-max",
            metavar="DURATION",
            help="maximum delay between status polls (default: 2m)",
        )
        run_parser.add_argument(
            "--poll-multiplier",
            type=float,
            metavar="X",
            help="backoff growth factor (default: 2)",
        )
        run_parser.add_argument(
            "--max-transient-failures",
            type=int,
            metavar="N",
            help="give up after N consecutive service errors "
            "(default: retry until the timeout)",
        )
        run_parser.add_argument(
            "-f",
            "--format",
            choices=ARCHIVE_FORMATS,
            help="submission archive format (default: dmg)",
        )
        run_parser.add_argument(
            "-o",
            "--output",
            metavar="FILE",
            help="archive path (default: <input>.<format>)",
        )
        run_parser.add_argument(
            "--report",
            metavar="FILE",
            help="write the run report as JSON",
        )
        run_parser.add_argument(
            "--dry-run",
            action="store_true",
            help="show the plan without signing or submitting",
        )
        _add_common_options(run_parser)
        run_parser.set_defaults(func=_cmd_run)

        args = parser.parse_args(argv)
        code = args.func(args)

    except NotaryError as e:
        logging.error(str(e))
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(EXIT_CANCELLED)
    except Exception as e:
        logging.error("Unexpected error: %s", e)
        sys.exit(EXIT_FAILURE)

    sys.exit(code)


def sign_and_notarize() -> None:
    """Entry point of the ``sign-and-notarize`` command."""
    main(["run", *sys.argv[1:]])


if __name__ == "__main__":
    main()
