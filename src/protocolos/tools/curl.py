"""cURL command parsing.

Turns command-line style text into a structured request description:
- tokenize(): quote- and escape-aware splitting into flag/url/value tokens
- parse(): best-effort ParsedCommand, never raises on malformed input
- stringify(): canonical command text that re-parses to the same request
- to_request_options(): transport-ready description
- validate(): explicit error/warning report
"""

import re
from base64 import b64encode
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

SUPPORTED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")

_URL_RE = re.compile(r"^(https?|wss?)://", re.IGNORECASE)

# =============================================================================
# Flag table
# =============================================================================

CURL_FLAGS: Dict[str, str] = {
    "-X": "method",
    "--request": "method",
    "-H": "header",
    "--header": "header",
    "-d": "data",
    "--data": "data",
    "--data-raw": "data",
    "--data-binary": "data",
    "--data-ascii": "data",
    "--data-urlencode": "data-urlencode",
    "-u": "user",
    "--user": "user",
    "-L": "location",
    "--location": "location",
    "-v": "verbose",
    "--verbose": "verbose",
    "-k": "insecure",
    "--insecure": "insecure",
    "-o": "output",
    "--output": "output",
    "-A": "user-agent",
    "--user-agent": "user-agent",
    "-b": "cookie",
    "--cookie": "cookie",
    "-c": "cookie-jar",
    "--cookie-jar": "cookie-jar",
    "-e": "referer",
    "--referer": "referer",
    "-F": "form",
    "--form": "form",
    "-T": "upload-file",
    "--upload-file": "upload-file",
    "-I": "head",
    "--head": "head",
    "-s": "silent",
    "--silent": "silent",
    "-S": "show-error",
    "--show-error": "show-error",
    "--compressed": "compressed",
    "--connect-timeout": "connect-timeout",
    "-m": "max-time",
    "--max-time": "max-time",
    "--url": "url",
}

BOOLEAN_FLAGS = {"location", "verbose", "insecure", "head", "silent", "show-error", "compressed"}


class TokenKind(str, Enum):
    """Lexical class of a command token."""

    FLAG = "flag"
    URL = "url"
    VALUE = "value"


@dataclass
class Token:
    kind: TokenKind
    value: str
    quoted: bool = False


@dataclass
class BasicAuthCredentials:
    username: str
    password: str = ""


@dataclass
class ParsedCommand:
    """Structured form of a cURL command."""

    method: str = "GET"
    url: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    basic_auth: Optional[BasicAuthCredentials] = None
    method_explicit: bool = False

    # Boolean switches
    follow_redirects: bool = False
    verbose: bool = False
    insecure: bool = False
    compressed: bool = False
    silent: bool = False

    # Value options that do not affect the request shape
    output_file: Optional[str] = None
    cookie_jar: Optional[str] = None
    upload_file: Optional[str] = None
    form: List[str] = field(default_factory=list)
    connect_timeout: Optional[float] = None
    max_time: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RequestOptions:
    """Transport-ready request description derived from a ParsedCommand."""

    method: str
    url: str
    headers: Dict[str, str]
    body: Optional[str] = None
    follow_redirects: bool = False
    verify_ssl: bool = True
    timeout_s: Optional[float] = None


@dataclass
class CommandValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    parsed: Optional[ParsedCommand] = None


# =============================================================================
# Tokenizer
# =============================================================================


def _categorize(value: str, quoted: bool) -> Token:
    if value.startswith("-") and not quoted:
        return Token(TokenKind.FLAG, value)
    if _URL_RE.match(value):
        return Token(TokenKind.URL, value, quoted)
    return Token(TokenKind.VALUE, value, quoted)


def tokenize(command: str) -> List[Token]:  # noqa: C901
    """Split command text into tokens.

    Single quotes are literal. Inside double quotes a backslash escapes
    ``"``, ``\\``, ``$`` and backtick. Outside quotes a backslash escapes the
    next character, and backslash-newline is a line continuation.
    """
    text = command.strip()
    if re.match(r"^curl(\s|$)", text, re.IGNORECASE):
        text = text[4:]

    tokens: List[Token] = []
    current: List[str] = []
    in_token = False
    quoted = False
    quote_char: Optional[str] = None
    i = 0

    while i < len(text):
        char = text[i]

        if quote_char == "'":
            if char == "'":
                quote_char = None
            else:
                current.append(char)
            i += 1
            continue

        if quote_char == '"':
            if char == "\\" and i + 1 < len(text) and text[i + 1] in '"\\$`':
                current.append(text[i + 1])
                i += 2
                continue
            if char == '"':
                quote_char = None
            else:
                current.append(char)
            i += 1
            continue

        if char == "\\":
            if text[i + 1 : i + 3] == "\r\n":
                i += 3
                continue
            if i + 1 < len(text):
                if text[i + 1] != "\n":
                    current.append(text[i + 1])
                    in_token = True
                i += 2
                continue
            i += 1
            continue

        if char in ("'", '"'):
            quote_char = char
            in_token = True
            quoted = True
            i += 1
            continue

        if char.isspace():
            if in_token:
                tokens.append(_categorize("".join(current), quoted))
                current = []
                in_token = False
                quoted = False
            i += 1
            continue

        current.append(char)
        in_token = True
        i += 1

    if in_token:
        tokens.append(_categorize("".join(current), quoted))

    return tokens


# =============================================================================
# Parser
# =============================================================================


def _parse_float(value: str) -> Optional[float]:
    try:
        return float(value)
    except ValueError:
        return None


def _split_flag(token: str) -> Tuple[Optional[str], Optional[str]]:
    """Resolve a flag token to (canonical name, attached value)."""
    if token in CURL_FLAGS:
        return CURL_FLAGS[token], None
    if token.startswith("--") and "=" in token:
        name, _, value = token.partition("=")
        if name in CURL_FLAGS:
            return CURL_FLAGS[name], value
    if len(token) > 2 and not token.startswith("--"):
        short = token[:2]
        canonical = CURL_FLAGS.get(short)
        if canonical and canonical not in BOOLEAN_FLAGS:
            return canonical, token[2:]
    return None, None


def _expand_short_group(value: str) -> Optional[List[str]]:
    """Split grouped short options (``-sSL``, ``-sXPOST``) into single flags.

    Switches come first; the first option taking a value ends the group and
    keeps the rest of the token as its attached value. Returns None unless
    the token is such a group.
    """
    if value.startswith("--") or len(value) <= 2 or value in CURL_FLAGS:
        return None
    if CURL_FLAGS.get(value[:2]) not in BOOLEAN_FLAGS:
        return None
    flags: List[str] = []
    for index, char in enumerate(value[1:], start=1):
        short = f"-{char}"
        canonical = CURL_FLAGS.get(short)
        if canonical is None:
            return None
        if canonical not in BOOLEAN_FLAGS:
            flags.append(short + value[index + 1 :])
            break
        flags.append(short)
    return flags


def _apply_value(result: ParsedCommand, flag: str, value: str) -> None:  # noqa: C901
    if flag == "method":
        result.method = value.upper()
        result.method_explicit = True
    elif flag == "header":
        colon = value.find(":")
        if colon > 0:
            result.headers[value[:colon].strip()] = value[colon + 1 :].strip()
    elif flag in ("data", "data-urlencode"):
        if flag == "data-urlencode" and "=" in value:
            name, _, content = value.partition("=")
            value = f"{name}={quote(content, safe='')}"
        result.body = value if result.body is None else f"{result.body}&{value}"
    elif flag == "user":
        username, _, password = value.partition(":")
        result.basic_auth = BasicAuthCredentials(username=username, password=password)
    elif flag == "user-agent":
        result.headers["User-Agent"] = value
    elif flag == "cookie":
        result.headers["Cookie"] = value
    elif flag == "referer":
        result.headers["Referer"] = value
    elif flag == "output":
        result.output_file = value
    elif flag == "cookie-jar":
        result.cookie_jar = value
    elif flag == "upload-file":
        result.upload_file = value
    elif flag == "form":
        result.form.append(value)
    elif flag == "connect-timeout":
        result.connect_timeout = _parse_float(value)
    elif flag == "max-time":
        result.max_time = _parse_float(value)
    elif flag == "url":
        result.url = value


def _apply_switch(result: ParsedCommand, flag: str) -> None:
    if flag == "location":
        result.follow_redirects = True
    elif flag == "verbose":
        result.verbose = True
    elif flag == "insecure":
        result.insecure = True
    elif flag == "compressed":
        result.compressed = True
    elif flag == "silent":
        result.silent = True
    elif flag == "head":
        result.method = "HEAD"
        result.method_explicit = True


def parse(command: str) -> ParsedCommand:
    """Parse cURL command text.

    Never raises: unknown flags are skipped, flags missing their value are
    ignored, and malformed headers are dropped.

    Args:
        command: cURL command text (leading ``curl`` optional)

    Returns:
        Best-effort ParsedCommand
    """
    result = ParsedCommand()
    tokens = tokenize(command or "")
    i = 0

    while i < len(tokens):
        token = tokens[i]

        if token.kind == TokenKind.URL:
            result.url = token.value
            i += 1
            continue

        if token.kind == TokenKind.FLAG:
            expanded = _expand_short_group(token.value)
            if expanded:
                tokens[i : i + 1] = [Token(TokenKind.FLAG, short) for short in expanded]
                token = tokens[i]
            flag, attached = _split_flag(token.value)
            if flag is None:
                i += 1
                continue
            if flag in BOOLEAN_FLAGS:
                _apply_switch(result, flag)
                i += 1
                continue
            if attached is not None:
                _apply_value(result, flag, attached)
                i += 1
                continue
            following = tokens[i + 1] if i + 1 < len(tokens) else None
            if following is None or following.kind == TokenKind.FLAG:
                i += 1
                continue
            _apply_value(result, flag, following.value)
            i += 2
            continue

        # Bare value: may be a scheme-less URL or a path relative to a base URL
        if not result.url and token.value.startswith("/"):
            result.url = token.value
        elif not result.url and ("." in token.value or token.value.startswith("localhost")):
            value = token.value
            result.url = value if value.lower().startswith("http") else f"https://{value}"
        i += 1

    if not result.method_explicit and result.method == "GET" and (result.body is not None or result.form):
        result.method = "POST"

    return result


# =============================================================================
# Stringify / request options
# =============================================================================


def shell_quote(value: str) -> str:
    """Single-quote a value for shell-like command text."""
    return "'" + value.replace("'", "'\\''") + "'"


def _format_seconds(value: float) -> str:
    return str(int(value)) if value.is_integer() else repr(value)


def stringify(parsed: ParsedCommand) -> str:
    """Render a ParsedCommand as canonical multi-line cURL text."""
    parts: List[str] = ["curl"]

    if parsed.method != "GET" or parsed.body is not None or parsed.form:
        parts.append(f"-X {parsed.method}")
    if parsed.url:
        # Bare values without a scheme would be re-read as https:// hosts
        bare = _URL_RE.match(parsed.url) or parsed.url.startswith("/")
        parts.append(shell_quote(parsed.url) if bare else f"--url {shell_quote(parsed.url)}")
    for name, value in parsed.headers.items():
        parts.append(f"-H {shell_quote(f'{name}: {value}')}")
    if parsed.basic_auth:
        auth = f"{parsed.basic_auth.username}:{parsed.basic_auth.password}"
        parts.append(f"-u {shell_quote(auth)}")
    if parsed.body is not None:
        parts.append(f"-d {shell_quote(parsed.body)}")
    for form_field in parsed.form:
        parts.append(f"-F {shell_quote(form_field)}")
    if parsed.follow_redirects:
        parts.append("-L")
    if parsed.verbose:
        parts.append("-v")
    if parsed.insecure:
        parts.append("-k")
    if parsed.compressed:
        parts.append("--compressed")
    if parsed.silent:
        parts.append("-s")
    if parsed.output_file is not None:
        parts.append(f"-o {shell_quote(parsed.output_file)}")
    if parsed.cookie_jar is not None:
        parts.append(f"-c {shell_quote(parsed.cookie_jar)}")
    if parsed.upload_file is not None:
        parts.append(f"-T {shell_quote(parsed.upload_file)}")
    if parsed.connect_timeout is not None:
        parts.append(f"--connect-timeout {_format_seconds(parsed.connect_timeout)}")
    if parsed.max_time is not None:
        parts.append(f"-m {_format_seconds(parsed.max_time)}")

    return " \\\n  ".join(parts)


def format_command(command: str) -> str:
    """Normalize command text through parse + stringify."""
    return stringify(parse(command))


def to_request_options(parsed: ParsedCommand) -> RequestOptions:
    """Build a transport-ready description (basic auth becomes a header)."""
    headers = dict(parsed.headers)
    if parsed.basic_auth and not any(k.lower() == "authorization" for k in headers):
        raw = f"{parsed.basic_auth.username}:{parsed.basic_auth.password}".encode("utf-8")
        headers["Authorization"] = f"Basic {b64encode(raw).decode('ascii')}"

    return RequestOptions(
        method=parsed.method,
        url=parsed.url,
        headers=headers,
        body=parsed.body,
        follow_redirects=parsed.follow_redirects,
        verify_ssl=not parsed.insecure,
        timeout_s=parsed.max_time,
    )


# =============================================================================
# Validation
# =============================================================================

_INLINE_SECRET_PATTERNS = [
    re.compile(r"password[=:]\s*\S+", re.IGNORECASE),
    re.compile(r"secret[=:]\s*\S+", re.IGNORECASE),
    re.compile(r"api[_-]?key[=:]\s*\S+", re.IGNORECASE),
]


def _unbalanced_quotes(command: str) -> Optional[str]:
    quote_char: Optional[str] = None
    i = 0
    while i < len(command):
        char = command[i]
        if quote_char is None:
            if char == "\\":
                i += 2
                continue
            if char in ("'", '"'):
                quote_char = char
        elif quote_char == '"' and char == "\\":
            i += 2
            continue
        elif char == quote_char:
            quote_char = None
        i += 1
    return quote_char


def validate(command: str) -> CommandValidation:
    """Validate command text, reporting errors and warnings.

    Errors: empty command, missing URL, unsupported scheme, unknown method.
    Warnings: unbalanced quotes, inline secrets.
    """
    if not command or not command.strip():
        return CommandValidation(valid=False, errors=["Command is empty"])

    errors: List[str] = []
    warnings: List[str] = []
    parsed = parse(command)

    if not parsed.url:
        errors.append("No URL found in command")
    elif not _URL_RE.match(parsed.url):
        errors.append("URL must start with http://, https://, ws://, or wss://")

    if parsed.method not in SUPPORTED_METHODS:
        errors.append(f"Unknown HTTP method: {parsed.method}")

    open_quote = _unbalanced_quotes(command)
    if open_quote == "'":
        warnings.append("Unbalanced single quotes")
    elif open_quote == '"':
        warnings.append("Unbalanced double quotes")

    if any(pattern.search(command) for pattern in _INLINE_SECRET_PATTERNS):
        warnings.append("Command may contain sensitive data")

    return CommandValidation(
        valid=not errors,
        errors=errors,
        warnings=warnings,
        parsed=parsed if not errors else None,
    )
