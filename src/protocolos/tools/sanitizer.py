"""Sensitive field sanitizer.

Masks secrets before anything is logged, displayed or persisted:
- Field-name matching (case-insensitive, substring) against a default list
- Deep, non-mutating sanitization of nested dicts and lists
- Pattern masking of free text (URL userinfo, auth headers, key query params,
  quoted JSON secret fields)

Matching is deliberately loose: a field is sensitive when its name contains
any listed entry, so ``myApiKey`` and ``userPassword`` are caught. The flip
side is that short entries over-match (``pat`` flags ``path``).
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

DEFAULT_SENSITIVE_FIELDS: List[str] = [
    # Authentication secrets
    "password",
    "secret",
    "clientSecret",
    "client_secret",
    "apiKey",
    "api_key",
    "apikey",
    "accessToken",
    "access_token",
    "refreshToken",
    "refresh_token",
    "authToken",
    "auth_token",
    "bearer",
    "token",
    "jwt",
    # OAuth
    "codeVerifier",
    "code_verifier",
    "codeChallenge",
    "code_challenge",
    # Personal access tokens
    "personalAccessToken",
    "personal_access_token",
    "pat",
    "ghToken",
    "gh_token",
    # Database credentials
    "dbPassword",
    "db_password",
    "connectionString",
    "connection_string",
    # Keys
    "privateKey",
    "private_key",
    "secretKey",
    "secret_key",
    "signingKey",
    "signing_key",
    "encryptionKey",
    "encryption_key",
    # SOAP
    "wssePassword",
    "wsse_password",
    # Generic
    "credential",
    "credentials",
    "auth",
    "authorization",
]

SANITIZED_PLACEHOLDER = "********"
MAX_DEPTH_MARKER = "[max depth]"


@dataclass
class SanitizeOptions:
    """Options for sanitization."""

    additional_fields: List[str] = field(default_factory=list)
    exclude_fields: List[str] = field(default_factory=list)
    placeholder: str = SANITIZED_PLACEHOLDER
    deep: bool = True
    max_depth: int = 10
    sanitize_arrays: bool = True


DEFAULT_OPTIONS = SanitizeOptions()


def is_sensitive(name: str, options: Optional[SanitizeOptions] = None) -> bool:
    """Check whether a field name should be masked.

    Exclusions win over every match. Empty names are never sensitive.
    """
    options = options or DEFAULT_OPTIONS
    if not name:
        return False
    lowered = name.lower()
    if lowered in (f.lower() for f in options.exclude_fields):
        return False

    # "contains" subsumes both the exact and the ends-with case
    for entry in [*DEFAULT_SENSITIVE_FIELDS, *options.additional_fields]:
        if entry and entry.lower() in lowered:
            return True
    return False


def _has_value(value: Any) -> bool:
    return value is not None and value != ""


def sanitize_value(key: str, value: Any, options: Optional[SanitizeOptions] = None) -> Any:
    """Return the placeholder if ``key`` is sensitive and ``value`` is non-empty."""
    options = options or DEFAULT_OPTIONS
    if is_sensitive(key, options) and _has_value(value):
        return options.placeholder
    return value


def _sanitize(obj: Any, options: SanitizeOptions, depth: int) -> Any:
    if isinstance(obj, dict):
        if depth >= options.max_depth:
            return MAX_DEPTH_MARKER
        result: Dict[str, Any] = {}
        for key, value in obj.items():
            if is_sensitive(str(key), options):
                result[key] = options.placeholder if _has_value(value) else value
            elif options.deep and isinstance(value, (dict, list)):
                result[key] = _sanitize(value, options, depth + 1)
            else:
                result[key] = value
        return result

    if isinstance(obj, list):
        if not options.sanitize_arrays:
            return list(obj)
        if depth >= options.max_depth:
            return MAX_DEPTH_MARKER
        return [_sanitize(item, options, depth + 1) for item in obj]

    return obj


def sanitize_object(obj: Any, options: Optional[SanitizeOptions] = None) -> Any:
    """Return a sanitized deep copy of ``obj``; the input is never mutated.

    Args:
        obj: Dict (or list/primitive) to sanitize
        options: Extra/excluded fields, placeholder, depth limits

    Returns:
        New structure with sensitive leaf values masked. Containers nested
        deeper than ``max_depth`` are replaced with ``"[max depth]"``.
    """
    return _sanitize(obj, options or DEFAULT_OPTIONS, 0)


_STRING_PATTERNS = [
    # user:password@host
    (re.compile(r"(\b[a-z][a-z0-9+.-]*://)([^:/\s@]+):([^@\s]+)@", re.IGNORECASE), r"\1\2:{p}@"),
    (re.compile(r"(Authorization:\s*Bearer\s+)[^\s'\"]+", re.IGNORECASE), r"\1{p}"),
    (re.compile(r"(Authorization:\s*Basic\s+)[^\s'\"]+", re.IGNORECASE), r"\1{p}"),
    (re.compile(r"(X-API-Key:\s*)[^\s'\"]+", re.IGNORECASE), r"\1{p}"),
    (
        re.compile(
            r"([?&])(api_key|apikey|key|token|access_token|client_secret)=([^&\s'\"]+)",
            re.IGNORECASE,
        ),
        r"\1\2={p}",
    ),
    # "access_token": "..." inside JSON text
    (
        re.compile(
            r"(\"[\w-]*(?:token|secret|password|api_?key)[\w-]*\"\s*:\s*\")[^\"]*(\")",
            re.IGNORECASE,
        ),
        r"\1{p}\2",
    ),
]


def sanitize_string(text: str, options: Optional[SanitizeOptions] = None) -> str:
    """Mask credentials embedded in free text (URLs, header lines, cURL commands)."""
    placeholder = (options or DEFAULT_OPTIONS).placeholder
    result = text
    for pattern, replacement in _STRING_PATTERNS:
        result = pattern.sub(replacement.replace("{p}", placeholder), result)
    return result


def contains_sensitive_fields(obj: Dict[str, Any], options: Optional[SanitizeOptions] = None) -> bool:
    return any(is_sensitive(str(key), options) for key in obj)


def get_sensitive_fields(
    obj: Dict[str, Any], options: Optional[SanitizeOptions] = None, _prefix: str = ""
) -> List[str]:
    """List sensitive field paths, dotted for nested dicts (``auth.password``)."""
    options = options or DEFAULT_OPTIONS
    found: List[str] = []
    for key, value in obj.items():
        path = f"{_prefix}{key}"
        if is_sensitive(str(key), options):
            found.append(path)
        elif options.deep and isinstance(value, dict):
            found.extend(get_sensitive_fields(value, options, f"{path}."))
    return found


def remove_sensitive_fields(obj: Dict[str, Any], options: Optional[SanitizeOptions] = None) -> Dict[str, Any]:
    """Drop sensitive keys entirely instead of masking them."""
    options = options or DEFAULT_OPTIONS
    result: Dict[str, Any] = {}
    for key, value in obj.items():
        if is_sensitive(str(key), options):
            continue
        if options.deep and isinstance(value, dict):
            result[key] = remove_sensitive_fields(value, options)
        else:
            result[key] = value
    return result


def sanitize_for_log(obj: Any) -> str:
    """Render ``obj`` as a sanitized string suitable for log output."""
    if isinstance(obj, str):
        return sanitize_string(obj)
    if isinstance(obj, (dict, list)):
        return json.dumps(sanitize_object(obj), indent=2, default=str)
    return str(obj)


def mask_secret(value: str, visible: int = 4) -> str:
    """Show only the last ``visible`` characters of a secret.

    Short values are fully masked.
    """
    if not value:
        return ""
    if len(value) <= visible * 2:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]
