"""Async JIRA REST client used by the sync orchestrator.

Requests go through the local CORS proxy when one is configured: the proxy
receives the real JIRA URL in the ``x-target-url`` header and forwards the
request with the caller's Basic auth.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from portfolio.config import DEFAULT_JQL, Settings

log = logging.getLogger(__name__)

_USER_AGENT = "PortfolioTracker/1.0"
_ERROR_BODY_LIMIT = 150

KEY_INITIATIVE_FIELD_NAME = "key initiative"
CATEGORY_FIELD_NAME = "technology squad"
BASE_FIELDS = ("summary", "assignee", "duedate", "created", "status", "project")


class JiraError(Exception):
    """JIRA answered with a non-2xx status or an unexpected payload."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class JiraCredentialsError(ValueError):
    """Domain, email or API token missing."""


def normalize_domain(domain: str) -> str:
    """``https://acme.atlassian.net/jira/`` -> ``acme.atlassian.net``."""
    domain = (domain or "").strip()
    for prefix in ("https://", "http://"):
        if domain.startswith(prefix):
            domain = domain[len(prefix):]
    return domain.split("/", 1)[0]


@dataclass(frozen=True)
class JiraCredentials:
    domain: str
    email: str
    token: str
    jql: str = DEFAULT_JQL

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: str | None) -> JiraCredentials:
        values = {
            "domain": settings.jira_domain, "email": settings.jira_email,
            "token": settings.jira_token, "jql": settings.jira_jql,
        }
        values.update({k: v for k, v in overrides.items() if v})
        return cls(**values)

    def validated(self) -> JiraCredentials:
        """Return a copy with a bare domain. Raises JiraCredentialsError if incomplete."""
        domain = normalize_domain(self.domain)
        if not domain or not self.email or not self.token:
            raise JiraCredentialsError("Missing JIRA credentials")
        return JiraCredentials(domain=domain, email=self.email, token=self.token, jql=self.jql or DEFAULT_JQL)


@dataclass(frozen=True)
class FieldIds:
    """Custom field ids resolved from JIRA field metadata; None means not found."""

    key_initiative: str | None = None
    category: str | None = None

    def query_fields(self) -> list[str]:
        fields = list(BASE_FIELDS)
        fields.extend(f for f in (self.key_initiative, self.category) if f)
        return fields


def _find_field(all_fields: list[dict[str, Any]], needle: str) -> str | None:
    for field in all_fields:
        name = field.get("name")
        if isinstance(name, str) and needle in name.lower():
            return field.get("id")
    return None


def connection_hint(exc: BaseException, proxy_url: str) -> str:
    """Hint appended to user-facing errors when the proxy looks unreachable."""
    if isinstance(exc, httpx.ConnectError):
        target = proxy_url or "the JIRA host"
        return f" (Is the JIRA proxy running at {target}?)"
    return ""


class JiraClient:
    """Thin async wrapper over the JIRA REST v3 endpoints the sync needs.

    Usage::

        async with JiraClient(credentials, proxy_url=settings.jira_proxy_url) as client:
            field_ids = await client.resolve_field_ids()
            issues = await client.search(jql, field_ids.query_fields())
    """

    def __init__(
        self,
        credentials: JiraCredentials,
        *,
        proxy_url: str = "",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.credentials = credentials
        self.proxy_url = proxy_url
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> JiraClient:
        self._client = httpx.AsyncClient(
            auth=httpx.BasicAuth(self.credentials.email, self.credentials.token),
            timeout=httpx.Timeout(self._timeout),
            headers={"User-Agent": _USER_AGENT, "Accept": "application/json"},
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _target(self, path: str) -> str:
        return f"https://{self.credentials.domain}{path}"

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        if self._client is None:
            raise RuntimeError("JiraClient must be used as an async context manager")
        target = self._target(path)
        if self.proxy_url:
            url, headers = self.proxy_url, {"x-target-url": target}
        else:
            url, headers = target, {}
        resp = await self._client.request(method, url, headers=headers, json=payload)
        if resp.status_code >= 400:
            raise JiraError(
                f"JIRA API Error ({resp.status_code}): {resp.text[:_ERROR_BODY_LIMIT]}",
                status_code=resp.status_code,
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise JiraError(f"JIRA returned invalid JSON for {path}") from exc

    async def resolve_field_ids(self) -> FieldIds:
        all_fields = await self._request("GET", "/rest/api/3/field")
        if not isinstance(all_fields, list):
            raise JiraError("Invalid JIRA field metadata response")
        log.debug("Available JIRA fields: %s", [f.get("name") for f in all_fields])
        field_ids = FieldIds(
            key_initiative=_find_field(all_fields, KEY_INITIATIVE_FIELD_NAME),
            category=_find_field(all_fields, CATEGORY_FIELD_NAME),
        )
        if field_ids.key_initiative is None:
            log.warning("No JIRA field matching %r; key initiative data unavailable", KEY_INITIATIVE_FIELD_NAME)
        if field_ids.category is None:
            log.warning("No JIRA field matching %r; categories will be empty", CATEGORY_FIELD_NAME)
        return field_ids

    async def search(self, jql: str, fields: list[str], page_size: int = 100) -> list[dict[str, Any]]:
        """Run a JQL query and return the first page of issues only."""
        log.info("Running JQL query: %s", jql)
        data = await self._request("POST", "/rest/api/3/search/jql", {
            "jql": jql, "fields": fields, "maxResults": page_size,
        })
        if not isinstance(data, dict):
            raise JiraError("Invalid JIRA search response")
        issues = data.get("issues") or []
        total = data.get("total")
        if isinstance(total, int) and total > len(issues):
            log.warning("JQL matched %d issues but only the first %d were fetched", total, len(issues))
        elif data.get("nextPageToken"):
            log.warning("JQL has more than %d results; only the first page was fetched", len(issues))
        return issues
