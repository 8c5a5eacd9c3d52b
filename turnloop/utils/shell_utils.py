"""Shell command parsing and allow/block policy helpers."""

import re
import shlex

_ASSIGNMENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*$")
_SHELL_SEPARATOR_TOKENS = {";", "&&", "||", "|", "&"}
_SHELL_WRAPPER_TOKENS = {"sudo", "command", "builtin", "nohup", "time"}


def _compile_shell_pattern(pattern: str) -> re.Pattern[str]:
    """Compile regex pattern with literal fallback for invalid regex input."""
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


def _tokenize_shell_command(command: str) -> list[str]:
    """Tokenize shell command while preserving control operators."""
    lexer = shlex.shlex(command, posix=True, punctuation_chars=";&|")
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def split_shell_segments(command: str) -> list[list[str]]:
    """Split shell command into tokenized segments separated by control operators."""
    tokens = _tokenize_shell_command(command)
    segments: list[list[str]] = []
    current: list[str] = []
    for token in tokens:
        if token in _SHELL_SEPARATOR_TOKENS:
            if current:
                segments.append(current)
                current = []
            continue
        current.append(token)
    if current:
        segments.append(current)
    return segments


def _extract_segment_base_command(tokens: list[str]) -> str:
    """Extract executable command token from a tokenized shell segment."""
    idx = 0
    while idx < len(tokens):
        token = str(tokens[idx]).strip()
        if not token:
            idx += 1
            continue
        if token in _SHELL_WRAPPER_TOKENS:
            idx += 1
            continue
        if _ASSIGNMENT_RE.match(token) and "/" not in token:
            idx += 1
            continue
        return token
    return ""


def get_command_root(command: str) -> str | None:
    """Return the executable name that starts ``command``.

    ``"ls -la /tmp"`` gives ``"ls"``, ``"/usr/bin/git status && npm test"``
    gives ``"git"``.
    """
    cleaned = re.sub(r"[{}()]", "", str(command or "")).strip()
    if not cleaned:
        return None
    first = re.split(r"[\s;&|]+", cleaned)[0]
    root = re.split(r"[/\\]", first)[-1]
    return root or None


def detect_command_substitution(command: str) -> bool:
    """Whether bash would run a ``$(...)``, ``<(...)`` or backtick substitution."""
    in_single = False
    in_double = False
    in_backticks = False
    idx = 0
    while idx < len(command):
        char = command[idx]
        next_char = command[idx + 1] if idx + 1 < len(command) else ""

        if char == "\\" and not in_single:
            idx += 2
            continue

        if char == "'" and not in_double and not in_backticks:
            in_single = not in_single
        elif char == '"' and not in_single and not in_backticks:
            in_double = not in_double

        if not in_single:
            if char == "$" and next_char == "(":
                return True
            if char == "<" and next_char == "(" and not in_double and not in_backticks:
                return True
            if char == "`":
                if not in_backticks:
                    return True
                in_backticks = False
        idx += 1
    return False


def is_blocked_shell_command(command: str, blocked_patterns: list[str]) -> tuple[bool, str]:
    """Evaluate command against blocked patterns using parsed command matching."""
    cleaned = str(command or "").strip()
    if not cleaned:
        return True, "empty_command"

    try:
        segments = split_shell_segments(cleaned)
    except ValueError:
        return True, "unparseable_command"
    if not segments:
        return True, "unparseable_command"

    segment_texts = [" ".join(tokens) for tokens in segments]
    base_commands = [
        base
        for segment in segments
        if (base := _extract_segment_base_command(segment))
    ]
    if not base_commands:
        return True, "unparseable_command"

    for raw_pattern in blocked_patterns or []:
        pattern = str(raw_pattern or "").strip()
        if not pattern:
            continue
        compiled = _compile_shell_pattern(pattern)
        segment_level_pattern = bool(re.search(r"\s", pattern))
        targets = segment_texts if segment_level_pattern else base_commands
        matcher = compiled.search if segment_level_pattern else compiled.match
        for target in targets:
            if matcher(target):
                return True, pattern
    return False, ""


def _is_prefixed_by(command: str, prefix: str) -> bool:
    """Whole-word prefix match: ``npm install`` starts with ``npm``, ``npminstall`` does not."""
    if not command.startswith(prefix):
        return False
    return len(command) == len(prefix) or command[len(prefix)] == " "


def is_command_allowed(
    command: str,
    blocked_patterns: list[str],
    allowed_commands: list[str],
) -> tuple[bool, str]:
    """Check a command against substitution, blocklist and strict allowlist rules.

    Returns:
        Tuple of (allowed, reason)
    """
    if detect_command_substitution(command):
        return False, "Command substitution using $(), <(), or backticks is not allowed for security reasons"

    blocked, matched = is_blocked_shell_command(command, blocked_patterns)
    if blocked:
        if matched == "empty_command":
            return False, "Command cannot be empty."
        if matched == "unparseable_command":
            return False, "Command is not parseable"
        return False, f"Command matches blocked pattern: {matched}"

    allowed = [
        " ".join(str(item).split())
        for item in allowed_commands or []
        if str(item).strip()
    ]
    if not allowed:
        return True, ""

    for tokens in split_shell_segments(command):
        segment = " ".join(tokens)
        base = _extract_segment_base_command(tokens)
        normalized_base = base.split("/")[-1] if base else ""
        if not any(
            _is_prefixed_by(segment, prefix) or normalized_base == prefix
            for prefix in allowed
        ):
            return False, f"Command '{segment}' is not in the allowed commands list"
    return True, ""
