"""
Command safety policy for safety mode.

The validator classifies a shell command string as allowed or denied:

1. Denylist first: an ordered list of substrings and word-anchored verbs,
   each with a reason, is matched against the whole normalized command. A
   hit denies the command no matter what its base verb is, which is what
   catches composition tricks such as ``git log && rm -rf /`` or ``echo $(sudo id)``.
2. Allowlist second: the first token of the command must be a known,
   non-destructive verb. Anything else is denied by default.

This is a heuristic filter, not a sandbox. A command that does harm
through an idiom neither list knows about will get through.
"""

import logging
import re
import shlex

from devagent.types import SafetyDecision

logger = logging.getLogger(__name__)


def _verb(name: str) -> re.Pattern[str]:
    """Match ``name`` as a standalone word or path tail (``/bin/rm``) followed by whitespace."""
    return re.compile(rf"(?<![\w.-]){re.escape(name)}\s")


# Order matters: the first match supplies the reason reported to the model.
# Plain strings are substring matches; short verbs are word-anchored so
# that e.g. ``cat`` or ``git add`` do not trip the ``at``/``dd`` entries.
DENYLIST: list[tuple[str | re.Pattern[str], str]] = [
    # Privilege escalation
    ("sudo", "Privilege escalation is blocked"),
    ("doas", "Privilege escalation is blocked"),
    (_verb("su"), "User switching is blocked"),

    # Destructive file operations
    (_verb("rm"), "File deletion is blocked"),
    ("rmdir", "Directory deletion is blocked"),
    ("unlink", "File deletion is blocked"),
    ("shred", "Secure deletion is blocked"),

    # Moves and permission/ownership changes
    (_verb("mv"), "File moving is blocked (use cp instead)"),
    ("chmod", "Permission changes are blocked"),
    ("chown", "Ownership changes are blocked"),
    ("chgrp", "Group changes are blocked"),
    ("chflags", "Flag changes are blocked"),

    # Disks and mounts
    (_verb("dd"), "Disk operations are blocked"),
    ("mkfs", "Filesystem creation is blocked"),
    ("mount", "Mount operations are blocked"),
    ("umount", "Unmount operations are blocked"),
    ("diskutil", "Disk utility is blocked"),

    # Process termination
    ("pkill", "Process termination is blocked"),
    ("killall", "Process termination is blocked"),
    (re.compile(r"(?<![\w.-])kill\b"), "Process termination is blocked"),

    # Chaining and substitution
    ("; rm", "Command chaining with rm is blocked"),
    ("&& rm", "Command chaining with rm is blocked"),
    ("|| rm", "Command chaining with rm is blocked"),
    ("`rm", "Command substitution with rm is blocked"),
    ("$(rm", "Command substitution with rm is blocked"),
    ("`sudo", "Command substitution with sudo is blocked"),
    ("$(sudo", "Command substitution with sudo is blocked"),
    ("`chmod", "Command substitution with chmod is blocked"),
    ("$(chmod", "Command substitution with chmod is blocked"),
    ("`dd", "Command substitution with dd is blocked"),
    ("$(dd", "Command substitution with dd is blocked"),

    # Download and execute
    ("curl|sh", "Download and execute is blocked"),
    ("curl|bash", "Download and execute is blocked"),
    ("curl | sh", "Download and execute is blocked"),
    ("curl | bash", "Download and execute is blocked"),
    ("wget|sh", "Download and execute is blocked"),
    ("wget|bash", "Download and execute is blocked"),
    ("wget | sh", "Download and execute is blocked"),
    ("wget | bash", "Download and execute is blocked"),
    ("curl -s", "Silent curl (potential payload download) requires review"),

    # Piping into an interpreter
    ("| sh", "Piping to shell is blocked"),
    ("| bash", "Piping to shell is blocked"),
    ("| zsh", "Piping to shell is blocked"),
    ("|sh", "Piping to shell is blocked"),
    ("|bash", "Piping to shell is blocked"),
    ("|zsh", "Piping to shell is blocked"),

    # Redirects into root paths
    (">> /", "Appending to root paths is blocked"),
    (">>/", "Appending to root paths is blocked"),
    ("> /", "Redirecting to root paths is blocked"),
    (">/", "Redirecting to root paths is blocked"),

    # Network backdoors
    (_verb("nc"), "Netcat is blocked"),
    ("netcat", "Netcat is blocked"),
    ("ncat", "Netcat is blocked"),
    ("/dev/tcp", "TCP device access (reverse shell) is blocked"),
    ("/dev/udp", "UDP device access is blocked"),
    ("bash -i", "Interactive bash (reverse shell) is blocked"),
    ("0>&1", "File descriptor redirection (reverse shell) is blocked"),

    # Persistence
    ("crontab", "Cron modification is blocked"),
    (_verb("at"), "Scheduled tasks are blocked"),
    ("launchctl", "LaunchD modification is blocked"),

    # Encoded payloads
    ("base64 -d", "Base64 decoding (potential payload) is blocked"),
    ("base64 --decode", "Base64 decoding (potential payload) is blocked"),
    ("base64 -D", "Base64 decoding (potential payload) is blocked"),

    # Inline code execution
    ("python -c", "Python inline execution is blocked"),
    ("python3 -c", "Python3 inline execution is blocked"),
    ("perl -e", "Perl inline execution is blocked"),
    ("ruby -e", "Ruby inline execution is blocked"),
    ("node -e", "Node inline execution is blocked"),
    ("node --eval", "Node inline execution is blocked"),
    (re.compile(r"(?<![\w.-])(?:ba|z|da|k)?sh\s+-[a-z]*c\b"), "Shell inline execution is blocked"),
    (_verb("eval"), "Shell eval is blocked"),
    (_verb("exec"), "Shell exec is blocked"),

    # xargs feeding destructive verbs
    ("xargs rm", "xargs with rm is blocked"),
    ("xargs sudo", "xargs with sudo is blocked"),
    ("xargs chmod", "xargs with chmod is blocked"),

    # Environment manipulation
    ("export PATH=", "PATH manipulation is blocked"),
    ("export LD_", "Library path manipulation is blocked"),
    ("export DYLD_", "macOS library path manipulation is blocked"),

    # History tampering
    ("history -c", "History clearing is blocked"),
    ("history -w", "History manipulation is blocked"),
    ("unset HISTFILE", "History manipulation is blocked"),

    # SSH tunnels
    ("ssh -R", "SSH reverse tunneling is blocked"),
    ("ssh -L", "SSH local tunneling is blocked"),
    ("ssh -D", "SSH dynamic tunneling is blocked"),
]

ALLOWLIST: frozenset[str] = frozenset({
    # Navigation and listing
    "ls", "pwd", "cd", "tree", "find", "locate", "which", "whereis", "file",
    # Reading
    "cat", "head", "tail", "less", "more", "wc", "grep", "awk", "sed", "cut",
    "sort", "uniq",
    # Version control
    "git", "gh",
    # Build tools and runtimes
    "swift", "swiftc", "xcodebuild", "xcrun", "clang", "make", "cmake",
    "npm", "npx", "yarn", "pnpm", "node", "python", "python3", "pip", "pip3",
    "ruby", "gem", "bundle", "cargo", "rustc", "go",
    # Package managers
    "brew", "port",
    # System information
    "echo", "printf", "date", "cal", "uptime", "whoami", "hostname", "uname",
    "df", "du", "free", "top", "ps", "env", "printenv",
    # Read-only network
    "curl", "wget", "ping", "host", "dig", "nslookup",
    # Archives
    "tar", "zip", "unzip", "gzip", "gunzip",
    # Text processing
    "diff", "patch", "jq", "yq", "xmllint",
    # Safe creation
    "mkdir", "touch",
    # Shell tests
    "test", "[", "true", "false",
})


def normalize(command: str) -> str:
    return command.strip().lower()


def base_command(command: str) -> str:
    """
    First token of a normalized command.

    Uses shell-style tokenization so quoting does not confuse the verb;
    unbalanced quotes fall back to plain whitespace splitting.
    """
    try:
        tokens = shlex.split(command)
    except ValueError:
        tokens = command.split()
    return tokens[0] if tokens else ""


def _matches(pattern: str | re.Pattern[str], normalized: str) -> bool:
    if isinstance(pattern, re.Pattern):
        return pattern.search(normalized) is not None
    return pattern.lower() in normalized


def validate_command(command: str) -> SafetyDecision:
    """Classify ``command`` as allowed or denied (with a reason)."""
    normalized = normalize(command)

    for pattern, reason in DENYLIST:
        if _matches(pattern, normalized):
            logger.warning(f"Blocked command {command!r}: {reason}")
            return SafetyDecision(allowed=False, reason=reason)

    base = base_command(normalized)
    if base in ALLOWLIST:
        return SafetyDecision(allowed=True)

    reason = (
        f"Command '{base}' is not in the allowed list. "
        "Disable Safety Mode to run arbitrary commands."
    )
    logger.warning(f"Blocked command {command!r}: unknown base command")
    return SafetyDecision(allowed=False, reason=reason)


def check_path(path: str) -> SafetyDecision:
    """Reject paths that try to climb out of the working directory."""
    if ".." in path:
        return SafetyDecision(allowed=False, reason="Path traversal blocked by Safety Mode.")
    return SafetyDecision(allowed=True)
