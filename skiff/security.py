"""Advisory security checks for paths, shell commands and URLs.

These are pattern-matching rules meant to catch common accidental or careless
destructive actions. They are not a sandbox: a determined caller can phrase
a command or path so that no rule matches. Every check is a pure function of
its input and returns a SecurityVerdict.
"""

import enum
import os
import re
import urllib.parse
from dataclasses import dataclass


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class SecurityVerdict:
    allowed: bool
    severity: Severity | None = None
    reason: str | None = None
    suggestion: str | None = None

    @property
    def warned(self) -> bool:
        """True for an allowed verdict that still carries a warning."""
        return self.allowed and self.severity is not None


ALLOW = SecurityVerdict(allowed=True)


def describe(verdict: SecurityVerdict) -> str:
    """Render a verdict as one line for tool results and warnings."""
    if verdict.reason is None:
        return "allowed"
    text = verdict.reason
    if verdict.severity is not None:
        text += f" ({verdict.severity.value})"
    if verdict.suggestion:
        text += f" - {verdict.suggestion}"
    return text


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

# Prefix entries end with "/"; the bare directory itself is matched too.
BLOCKED_PATHS = (
    "/etc/passwd",
    "/etc/shadow",
    "/etc/gshadow",
    "/etc/sudoers",
    "/etc/sudoers.d/",
    "/etc/ssh/",
    "/root/.ssh/",
    "~/.ssh/",
    "/proc/",
    "/sys/",
    "/dev/",
    "/boot/",
)

SENSITIVE_FILE_PATTERNS = (
    re.compile(r"\.env$"),
    re.compile(r"\.env\."),
    re.compile(r"credentials", re.IGNORECASE),
    re.compile(r"secret", re.IGNORECASE),
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"private_key"),
    re.compile(r"\.pem$"),
    re.compile(r"\.key$"),
    re.compile(r"id_rsa"),
    re.compile(r"id_ed25519"),
    re.compile(r"\.netrc"),
    re.compile(r"\.npmrc"),
    re.compile(r"\.pypirc"),
)


def canonicalize(path: str) -> str:
    """Absolute, normalized form of path with ``~`` and ``..`` resolved lexically."""
    return os.path.normpath(os.path.abspath(os.path.expanduser(path)))


def _real(path: str) -> str:
    return os.path.realpath(canonicalize(path))


def _is_under(path: str, root: str) -> bool:
    root = canonicalize(root)
    if path == root:
        return True
    return path.startswith(root.rstrip(os.sep) + os.sep)


def _has_traversal(path: str) -> bool:
    parts = re.split(r"[\\/]", path)
    return ".." in parts


def _blocked_match(canonical: str) -> str | None:
    for blocked in BLOCKED_PATHS:
        expanded = os.path.expanduser(blocked)
        if expanded.endswith("/"):
            if canonical.startswith(expanded) or canonical == expanded[:-1]:
                return blocked
        elif canonical == expanded:
            return blocked
    return None


def validate_path(path: str, allowed_roots=None) -> SecurityVerdict:
    """Check a filesystem path against the blocked and sensitive lists.

    The blocked and sensitive lists are matched against both the lexical
    and the symlink-resolved path. With a non-empty allowed_roots, a path
    written with a ``..`` component, or one inside a root that resolves
    through a symlink, must end up under one of the (resolved) roots.
    """
    if not isinstance(path, str) or not path:
        return SecurityVerdict(
            allowed=False, severity=Severity.LOW, reason="Path must be a non-empty string"
        )
    try:
        canonical = canonicalize(path)
        real = os.path.realpath(canonical)
        real_roots = [_real(root) for root in allowed_roots or ()]
    except (OSError, ValueError) as exc:
        return SecurityVerdict(
            allowed=False, severity=Severity.LOW, reason=f"Invalid path: {exc}"
        )

    blocked = _blocked_match(canonical) or _blocked_match(real)
    if blocked is not None:
        return SecurityVerdict(
            allowed=False,
            severity=Severity.CRITICAL,
            reason=f"Access to {blocked} is blocked for security",
        )

    if real_roots and not any(_is_under(real, root) for root in real_roots):
        if _has_traversal(path):
            return SecurityVerdict(
                allowed=False,
                severity=Severity.HIGH,
                reason="Path traversal detected - path escapes allowed directories",
                suggestion="Use a path inside the working directories",
            )
        if real != canonical and any(_is_under(canonical, root) for root in allowed_roots):
            return SecurityVerdict(
                allowed=False,
                severity=Severity.HIGH,
                reason="Symlink resolves outside allowed directories",
                suggestion="Use a path inside the working directories",
            )

    for pattern in SENSITIVE_FILE_PATTERNS:
        if pattern.search(canonical) or pattern.search(real):
            return SecurityVerdict(
                allowed=True,
                severity=Severity.MEDIUM,
                reason="This appears to be a sensitive file",
                suggestion="Be careful with files containing credentials or secrets",
            )

    return ALLOW


# ---------------------------------------------------------------------------
# Shell commands
# ---------------------------------------------------------------------------

_END = r"(?=\s|;|&|\||\)|$)"
_RM_RECURSIVE = (
    r"\brm\s+(?:-{1,2}[\w-]+\s+)*?"
    r"(?:-[a-zA-Z]*[rR][a-zA-Z]*|--recursive)"
    r"(?:\s+-{1,2}[\w-]+)*\s+"
)


@dataclass(frozen=True)
class _CommandRule:
    pattern: re.Pattern
    severity: Severity
    reason: str
    suggestion: str


def _rule(pattern, severity, reason, suggestion, flags=0):
    return _CommandRule(re.compile(pattern, flags), severity, reason, suggestion)


# Evaluated in order; the first match wins.
DANGEROUS_COMMANDS = (
    _rule(
        _RM_RECURSIVE + r"(?:--\s+)?(?:/|~|\$HOME|\$\{HOME\})/?\*?" + _END,
        Severity.CRITICAL,
        "Recursive deletion of the root or home directory",
        "Delete specific paths inside the project instead",
        re.IGNORECASE,
    ),
    _rule(
        _RM_RECURSIVE + r"(?:--\s+)?\*" + _END,
        Severity.HIGH,
        "Recursive deletion of everything in the current directory",
        "List the exact files or directories to remove",
    ),
    _rule(
        r">\s*/dev/(?:sd|hd|vd|xvd|nvme|mmcblk|disk)",
        Severity.CRITICAL,
        "Direct write to a block device",
        "Writing to a raw disk destroys its filesystem",
    ),
    _rule(
        r"\bmkfs(?:\.\w+)?\b",
        Severity.CRITICAL,
        "Filesystem format utility",
        "Formatting a filesystem erases all of its data",
    ),
    _rule(
        r"\bdd\b.*\bof=/dev/",
        Severity.CRITICAL,
        "Disk image write to a device",
        "Write the image to a regular file instead",
    ),
    _rule(
        r"\bchmod\s+(?:-[a-zA-Z]*R[a-zA-Z]*|--recursive)\s+(?:0?777|a\+rwx|ugo\+rwx)\b",
        Severity.HIGH,
        "Recursive world-writable permission change",
        "Grant only the permissions that are needed, on specific paths",
    ),
    _rule(
        r"\b(?:curl|wget)\b[^|]*\|\s*(?:sudo\s+)?(?:ba|z|k|da)?sh\b",
        Severity.CRITICAL,
        "Remote script piped directly into a shell",
        "Download the script, review it, then run it explicitly",
    ),
    _rule(
        r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
        Severity.CRITICAL,
        "Fork bomb",
        "This command would exhaust system process limits",
    ),
    _rule(
        r">\s*/(?:etc|boot|proc|sys)(?:/|\s|$)",
        Severity.HIGH,
        "Writing to system directories is blocked",
        "Redirect output to a file inside the project",
    ),
    _rule(
        r">\s*/(?:root|var/log)(?:/|\s|$)",
        Severity.HIGH,
        "Writing to system directories is blocked",
        "Redirect output to a file inside the project",
    ),
)

_PRIVILEGE_ESCALATION = re.compile(
    r"\bsudo\s+(?:-s|-i|su)\b|\bsudo\s+(?:ba|z)?sh\b|\bsu\s+-|(?:^|[;&|]\s*)su\s*$"
)


def validate_command(command: str) -> SecurityVerdict:
    """Check a shell command string against the destructive-pattern rules."""
    if not isinstance(command, str) or not command.strip():
        return SecurityVerdict(
            allowed=False, severity=Severity.LOW, reason="Command must be a non-empty string"
        )

    for rule in DANGEROUS_COMMANDS:
        if rule.pattern.search(command):
            return SecurityVerdict(
                allowed=False,
                severity=rule.severity,
                reason=rule.reason,
                suggestion=rule.suggestion,
            )

    if _PRIVILEGE_ESCALATION.search(command):
        return SecurityVerdict(
            allowed=True,
            severity=Severity.MEDIUM,
            reason="Command requires elevated privileges",
            suggestion="This command will request root rights",
        )

    return ALLOW


# ---------------------------------------------------------------------------
# URLs
# ---------------------------------------------------------------------------

BLOCKED_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0", "::1", "::"})

_INTERNAL_HOST_PATTERNS = (
    re.compile(r"^10\."),
    re.compile(r"^172\.(?:1[6-9]|2[0-9]|3[0-1])\."),
    re.compile(r"^192\.168\."),
    re.compile(r"^169\.254\."),
)


def validate_url(url: str) -> SecurityVerdict:
    """Check that a URL is http(s) and does not target a local/private host."""
    invalid = SecurityVerdict(
        allowed=False, severity=Severity.LOW, reason="Invalid URL format"
    )
    if not isinstance(url, str) or not url.strip():
        return invalid
    try:
        parsed = urllib.parse.urlparse(url.strip())
        hostname = parsed.hostname
        parsed.port  # raises ValueError on a malformed port
    except ValueError:
        return invalid
    if not parsed.scheme:
        return invalid

    if parsed.scheme.lower() not in ("http", "https"):
        return SecurityVerdict(
            allowed=False,
            severity=Severity.MEDIUM,
            reason=f"Protocol {parsed.scheme}: is not allowed",
            suggestion="Only http and https URLs can be fetched",
        )
    if not parsed.netloc or not hostname:
        return invalid

    hostname = hostname.lower()
    if hostname in BLOCKED_HOSTS:
        return SecurityVerdict(
            allowed=False, severity=Severity.HIGH, reason="Localhost access is blocked"
        )
    for pattern in _INTERNAL_HOST_PATTERNS:
        if pattern.match(hostname):
            return SecurityVerdict(
                allowed=False,
                severity=Severity.HIGH,
                reason="Internal network access is blocked",
            )
    return ALLOW


# ---------------------------------------------------------------------------
# Output and environment hygiene
# ---------------------------------------------------------------------------

_CURSOR_MOVES = re.compile(r"\x1b\[\d*(?:;\d*)?[ABCDEFGHJKfsu]")
_WINDOW_TITLE = re.compile(r"\x1b\][02];[^\x07]*\x07")
_SCROLL_REGION = re.compile(r"\x1b\[\d*;\d*r")
_SGR = re.compile(r"\x1b\[(?:\d*;)*\d*m")


def _keep_basic_color(match: re.Match) -> str:
    params = match.group(0)[2:-1].split(";")
    codes = [int(p) if p else 0 for p in params]
    if all(0 <= c <= 107 for c in codes):
        return match.group(0)
    return ""


def sanitize_output(text: str) -> str:
    """Strip cursor/title/scroll-region escapes, keeping basic SGR colors."""
    text = _CURSOR_MOVES.sub("", text)
    text = _WINDOW_TITLE.sub("", text)
    text = _SCROLL_REGION.sub("", text)
    return _SGR.sub(_keep_basic_color, text)


SENSITIVE_ENV_MARKERS = (
    "API_KEY",
    "SECRET",
    "TOKEN",
    "PASSWORD",
    "CREDENTIAL",
    "AWS_",
    "PRIVATE_KEY",
)


def safe_env(environ=None) -> dict[str, str]:
    """Copy of the environment without variables that look like secrets."""
    source = os.environ if environ is None else environ
    return {
        key: value
        for key, value in source.items()
        if not any(marker in key.upper() for marker in SENSITIVE_ENV_MARKERS)
    }
