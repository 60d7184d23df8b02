"""Placeholder resolution for request templates.

Placeholders look like ``{NAME}`` or ``{NAME:arg}``. Resolution runs in a
fixed order:

1. ``{INPUT}``: the literal input value
2. dynamic values: ``{TIMESTAMP}``, ``{UNIX_TIMESTAMP}``, ``{DATE}``,
   ``{TIME}``, ``{UUID}``, ``{RANDOM}``, each computed once per call
3. ``{ENV:name}``: environment lookup
4. ``{VAR:name}``: user variables
5. ``{BASE64:x}``, ``{URL_ENCODE:x}``, ``{JSON:x}``: encoding of the inline argument

Strict mode raises PlaceholderError on the first unresolved placeholder;
lenient mode substitutes a fallback and records the name as unresolved.
"""

import base64
import json
import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

from protocolos.protocols.errors import PlaceholderError
from protocolos.tools.crypto import ALPHANUMERIC, generate_random_string


class PlaceholderKind(str, Enum):
    """Kinds of placeholder, in resolution order."""

    INPUT = "literal-input"
    DYNAMIC = "computed-dynamic"
    ENV = "environment-lookup"
    VAR = "user-variable"
    ENCODING = "encoding-transform"


INPUT_PATTERN = re.compile(r"\{INPUT\}")
DYNAMIC_NAMES = ("TIMESTAMP", "UNIX_TIMESTAMP", "DATE", "TIME", "UUID", "RANDOM")
DYNAMIC_PATTERN = re.compile(r"\{(" + "|".join(DYNAMIC_NAMES) + r")\}")
ENV_PATTERN = re.compile(r"\{ENV:([^}]+)\}")
VAR_PATTERN = re.compile(r"\{VAR:([^}]+)\}")
ENCODING_PATTERN = re.compile(r"\{(BASE64|URL_ENCODE|JSON):([^}]+)\}")

# Used only by extract_placeholders: every form, in document order
_ANY_PATTERN = re.compile(
    r"\{(INPUT|" + "|".join(DYNAMIC_NAMES) + r")\}"
    r"|\{(ENV|VAR|BASE64|URL_ENCODE|JSON):([^}]+)\}"
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PlaceholderContext:
    """Values available to a resolve() call."""

    input: Optional[str] = None
    variables: Dict[str, str] = field(default_factory=dict)
    env_lookup: Callable[[str], Optional[str]] = os.environ.get
    strict: bool = False
    fallback: str = ""

    # Injectable sources for deterministic tests
    clock: Callable[[], datetime] = _utc_now
    uuid_factory: Callable[[], str] = lambda: str(uuid.uuid4())
    random_factory: Callable[[], str] = lambda: generate_random_string(32, ALPHANUMERIC)


@dataclass
class ResolveResult:
    output: str
    resolved_names: List[str] = field(default_factory=list)
    unresolved_names: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.unresolved_names


class _Tracker:
    """Ordered, de-duplicated name bookkeeping for one resolve() call."""

    def __init__(self, context: PlaceholderContext):
        self.context = context
        self.resolved: List[str] = []
        self.unresolved: List[str] = []

    def hit(self, name: str) -> None:
        if name not in self.resolved:
            self.resolved.append(name)

    def miss(self, name: str, kind: PlaceholderKind) -> str:
        if self.context.strict:
            raise PlaceholderError(name, kind.value)
        if name not in self.unresolved:
            self.unresolved.append(name)
        return self.context.fallback


def _dynamic_values(context: PlaceholderContext) -> Dict[str, str]:
    now = context.clock()
    return {
        "TIMESTAMP": now.isoformat().replace("+00:00", "Z"),
        "UNIX_TIMESTAMP": str(int(now.timestamp())),
        "DATE": now.strftime("%Y-%m-%d"),
        "TIME": now.strftime("%H:%M:%S"),
        "UUID": context.uuid_factory(),
        "RANDOM": context.random_factory(),
    }


def _encode(transform: str, value: str) -> str:
    if transform == "BASE64":
        return base64.b64encode(value.encode("utf-8")).decode("ascii")
    if transform == "URL_ENCODE":
        return quote(value, safe="-_.!~*'()")
    return json.dumps(value)


def resolve(template: str, context: Optional[PlaceholderContext] = None) -> ResolveResult:
    """Resolve every placeholder in ``template``.

    Args:
        template: Text containing placeholders
        context: Input, variables, env lookup, strictness and fallback

    Returns:
        ResolveResult with the output text and resolved/unresolved names
        (each name listed once, in first-seen order)

    Raises:
        PlaceholderError: In strict mode, on the first unresolved placeholder
    """
    context = context or PlaceholderContext()
    tracker = _Tracker(context)
    output = template

    # 1. Literal input
    if INPUT_PATTERN.search(output):
        if context.input:
            value = context.input
            tracker.hit("INPUT")
        else:
            value = tracker.miss("INPUT", PlaceholderKind.INPUT)
        output = INPUT_PATTERN.sub(lambda _m: value, output)

    # 2. Dynamic values, computed once
    if DYNAMIC_PATTERN.search(output):
        dynamic = _dynamic_values(context)

        def _dynamic(match: "re.Match[str]") -> str:
            tracker.hit(match.group(1))
            return dynamic[match.group(1)]

        output = DYNAMIC_PATTERN.sub(_dynamic, output)

    # 3. Environment
    def _env(match: "re.Match[str]") -> str:
        name = f"ENV:{match.group(1)}"
        value = context.env_lookup(match.group(1))
        if value:
            tracker.hit(name)
            return value
        return tracker.miss(name, PlaceholderKind.ENV)

    output = ENV_PATTERN.sub(_env, output)

    # 4. User variables
    def _var(match: "re.Match[str]") -> str:
        name = f"VAR:{match.group(1)}"
        if match.group(1) in context.variables:
            tracker.hit(name)
            return str(context.variables[match.group(1)])
        return tracker.miss(name, PlaceholderKind.VAR)

    output = VAR_PATTERN.sub(_var, output)

    # 5. Encoding transforms
    def _encoding(match: "re.Match[str]") -> str:
        tracker.hit(match.group(1))
        return _encode(match.group(1), match.group(2))

    output = ENCODING_PATTERN.sub(_encoding, output)

    return ResolveResult(
        output=output,
        resolved_names=tracker.resolved,
        unresolved_names=tracker.unresolved,
    )


def extract_placeholders(template: str) -> List[str]:
    """List placeholders in document order, without resolving.

    Argument forms (``ENV:HOME``, ``VAR:id``) appear once per occurrence;
    bare names such as ``INPUT`` appear once.
    """
    found: List[str] = []
    for match in _ANY_PATTERN.finditer(template):
        if match.group(1):
            if match.group(1) not in found:
                found.append(match.group(1))
        else:
            found.append(f"{match.group(2)}:{match.group(3)}")
    return found


def validate_placeholders(
    template: str, context: Optional[PlaceholderContext] = None
) -> Tuple[bool, List[str]]:
    """Dry-run resolution in lenient mode; returns (valid, missing names)."""
    base = context or PlaceholderContext()
    lenient = PlaceholderContext(
        input=base.input,
        variables=base.variables,
        env_lookup=base.env_lookup,
        strict=False,
        fallback=base.fallback,
        clock=base.clock,
        uuid_factory=base.uuid_factory,
        random_factory=base.random_factory,
    )
    result = resolve(template, lenient)
    return result.complete, result.unresolved_names


def count_input_placeholders(template: str) -> int:
    return len(INPUT_PATTERN.findall(template))


def escape_for_placeholder(value: str) -> str:
    """Escape a value for embedding inside a quoted template string."""
    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("'", "\\'")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )
