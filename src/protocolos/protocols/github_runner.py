"""GitHub repository runner: repo info, file contents and workflow dispatch.

The command only selects the operation; URLs are always rebuilt from the
configured owner and repo.
"""

import base64
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional, Tuple

from protocolos.kernel.models import Credentials, GithubRepoRunnerConfig, LogLevel, ProtocolType
from protocolos.protocols.base import (
    AuthResult,
    ConfigValidation,
    ConnectionTestResult,
    OutgoingRequest,
    ProtocolHandler,
    RequestCall,
)
from protocolos.protocols.errors import ErrorCode, ProtocolError, TransportError
from protocolos.tools import curl

GITHUB_API_BASE = "https://api.github.com"

_GITHUB_URL_PATTERNS = [
    re.compile(r"github\.com/([^/]+)/([^/]+)"),
    re.compile(r"github\.com:([^/]+)/([^/]+)"),
    re.compile(r"^([^/\s]+)/([^/\s]+)$"),
]
_CONTENTS_RE = re.compile(r"/contents/([^\"'\s?]+)")
_WORKFLOW_RE = re.compile(r"/actions/workflows/([^/\"'\s?]+)")


@dataclass
class RateLimitInfo:
    limit: int
    remaining: int
    reset: datetime


def build_github_api_url(owner: str, repo: str, path: str = "") -> str:
    return f"{GITHUB_API_BASE}/repos/{owner}/{repo}" + (f"/{path}" if path else "")


def build_raw_content_url(owner: str, repo: str, branch: str, path: str) -> str:
    return f"https://raw.githubusercontent.com/{owner}/{repo}/{branch}/{path}"


def build_github_headers(token: Optional[str] = None) -> Dict[str, str]:
    headers = {"Accept": "application/vnd.github.v3+json", "User-Agent": "Protocol-OS"}
    if token:
        headers["Authorization"] = f"token {token}"
    return headers


def parse_github_url(url: str) -> Optional[Tuple[str, str]]:
    """Extract ``(owner, repo)`` from an https, ssh or ``owner/repo`` reference."""
    for pattern in _GITHUB_URL_PATTERNS:
        match = pattern.search(url.strip())
        if match:
            repo = match.group(2)
            if repo.endswith(".git"):
                repo = repo[: -len(".git")]
            return match.group(1), repo
    return None


def decode_github_content(content: str) -> str:
    """Decode the base64 ``content`` field of a contents API response."""
    return base64.b64decode(content.replace("\n", "")).decode("utf-8", errors="replace")


def parse_rate_limit(headers: Mapping[str, str]) -> RateLimitInfo:
    lowered = {k.lower(): v for k, v in headers.items()}
    return RateLimitInfo(
        limit=int(lowered.get("x-ratelimit-limit", "60")),
        remaining=int(lowered.get("x-ratelimit-remaining", "60")),
        reset=datetime.fromtimestamp(int(lowered.get("x-ratelimit-reset", "0")), tz=timezone.utc),
    )


class GithubRepoRunnerHandler(ProtocolHandler):
    """Execute operations against GitHub repositories."""

    protocol_type = ProtocolType.GITHUB_REPO_RUNNER
    config_model = GithubRepoRunnerConfig
    display_name = "GitHub Repo Runner"
    description = "Execute operations on GitHub repositories"

    def required_fields(self) -> List[str]:
        return ["owner", "repo"]

    def optional_fields(self) -> List[str]:
        return ["token", "branch", "path", "workflow_id"]

    def check_configuration(self, config: GithubRepoRunnerConfig, validation: ConfigValidation) -> None:
        if not config.token:
            validation.warnings.append("No token provided - only public repositories accessible, 60 requests/hour limit")

    async def authenticate(self, config: GithubRepoRunnerConfig) -> AuthResult:
        """Confirm the repository is reachable with the configured token."""
        headers = build_github_headers(config.token)
        try:
            response = await self.send(OutgoingRequest("GET", build_github_api_url(config.owner, config.repo), headers))
        except TransportError as exc:
            return AuthResult(success=False, error=str(exc))
        if not 200 <= response.status_code < 300:
            return AuthResult(success=False, error=f"Repository access failed: {response.status_code}")

        rate = parse_rate_limit(response.headers)
        return AuthResult(
            success=True,
            credentials=Credentials(
                headers=headers,
                access_token=config.token,
                token_type="token" if config.token else "",
                extra={"owner": config.owner, "repo": config.repo, "rate_limit_remaining": rate.remaining},
            ),
        )

    async def build_request(
        self, call: RequestCall, config: GithubRepoRunnerConfig, credentials: Credentials
    ) -> OutgoingRequest:
        command = self.resolve_text(call, call.request.command) if call.request.command.strip() else ""
        headers = dict(credentials.headers) or build_github_headers(config.token)

        if "/contents/" in command:
            match = _CONTENTS_RE.search(command)
            path = match.group(1) if match else (config.path or "README.md")
            call.log(LogLevel.INFO, f"Fetching file: {path}")
            url = build_github_api_url(config.owner, config.repo, f"contents/{path}")
            if config.branch:
                url += f"?ref={config.branch}"
            return OutgoingRequest("GET", url, headers)

        if "/actions/workflows/" in command:
            match = _WORKFLOW_RE.search(command)
            workflow_id = config.workflow_id or (match.group(1) if match else None)
            if not workflow_id:
                raise ProtocolError("No workflow id configured", self.protocol_type.value, ErrorCode.PARSE_ERROR)
            call.log(LogLevel.INFO, f"Triggering workflow: {workflow_id}")
            url = build_github_api_url(config.owner, config.repo, f"actions/workflows/{workflow_id}/dispatches")
            headers["Content-Type"] = "application/json"
            return OutgoingRequest("POST", url, headers, json.dumps({"ref": config.branch or "main"}))

        call.log(LogLevel.INFO, "Fetching repo info")
        return OutgoingRequest("GET", build_github_api_url(config.owner, config.repo), headers)

    async def test_connection(self, config: GithubRepoRunnerConfig) -> ConnectionTestResult:
        result = await super().test_connection(config)
        if result.success:
            result.message = "Repository accessible"
        return result

    def generate_sample_curl(self, config: GithubRepoRunnerConfig) -> str:
        owner = config.owner or "owner"
        repo = config.repo or "repo"
        headers = {"Accept": "application/vnd.github.v3+json", "Authorization": "token {GITHUB_TOKEN}"}
        return "\n\n".join(
            [
                "# Get repository info\n" + curl.stringify(curl.ParsedCommand(url=build_github_api_url(owner, repo), headers=headers)),
                "# Get file contents\n"
                + curl.stringify(
                    curl.ParsedCommand(url=build_github_api_url(owner, repo, "contents/README.md"), headers=headers)
                ),
            ]
        )
