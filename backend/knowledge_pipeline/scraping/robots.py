"""
Crawl permission check (robots.txt).

Parsing is two-pass:
  1. Group the file into records: one or more `User-agent:` lines followed
     by their `Disallow:` / `Allow:` lines.
  2. Pick the record naming our agent if one exists, otherwise the `*`
     record, and keep its non-empty Disallow values as an ordered list of
     path prefixes.

A path (with its query string) is blocked when it starts with any of the
selected prefixes.

Only a successfully fetched and parsed file can block a URL. Timeouts,
non-200 responses and undecodable bodies are logged and treated as
"allowed".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from urllib.parse import urlsplit

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermissionRules:
    """Disallow prefixes selected for one agent."""
    disallow: tuple[str, ...] = ()
    matched:  str = "none"      # "agent" | "wildcard" | "none"

    def blocking_rule(self, path: str) -> str | None:
        path = path or "/"
        for prefix in self.disallow:
            if path.startswith(prefix):
                return prefix
        return None

    def allows(self, path: str) -> bool:
        return self.blocking_rule(path) is None


@dataclass
class PermissionDecision:
    allowed: bool
    reason:  str
    rule:    str | None = None


@dataclass
class _Record:
    agents:   list[str] = field(default_factory=list)
    disallow: list[str] = field(default_factory=list)


def _product_token(agent: str) -> str:
    """'KnowledgeBot/1.0 (+https://…)' → 'knowledgebot'"""
    return agent.split("/", 1)[0].split(" ", 1)[0].strip().lower()


def _split_records(text: str) -> list[_Record]:
    records: list[_Record] = []
    current: _Record | None = None
    last_was_agent = False

    for raw in text.splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key, value = key.strip().lower(), value.strip()

        if key == "user-agent":
            if current is None or not last_was_agent:
                current = _Record()
                records.append(current)
            current.agents.append(value.lower())
            last_was_agent = True
            continue

        last_was_agent = False
        if current is None:
            continue            # rules before any User-agent line are ignored
        if key == "disallow" and value:
            current.disallow.append(value)

    return records


def parse_permission_file(text: str, user_agent: str) -> PermissionRules:
    """Select the Disallow prefixes that apply to `user_agent`."""
    records = _split_records(text)
    token = _product_token(user_agent)
    full = user_agent.lower()

    specific = [
        r for r in records
        if any(a == full or _product_token(a) == token for a in r.agents if a != "*")
    ]
    if specific:
        prefixes = [p for r in specific for p in r.disallow]
        return PermissionRules(tuple(prefixes), "agent")

    wildcard = [r for r in records if "*" in r.agents]
    if wildcard:
        prefixes = [p for r in wildcard for p in r.disallow]
        return PermissionRules(tuple(prefixes), "wildcard")

    return PermissionRules()


def permission_file_url(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}/robots.txt"


class PermissionChecker:
    """Fetches and evaluates robots.txt for a target URL."""

    def __init__(self, client: httpx.AsyncClient, user_agent: str) -> None:
        self._client = client
        self._user_agent = user_agent

    async def check(self, url: str) -> PermissionDecision:
        robots_url = permission_file_url(url)
        try:
            resp = await self._client.get(robots_url, headers={"User-Agent": self._user_agent})
        except httpx.HTTPError as exc:
            logger.warning("robots.txt unreachable, assuming allowed | url=%s error=%s", robots_url, exc)
            return PermissionDecision(True, "permission file unreachable")

        if resp.status_code != 200:
            logger.info(
                "robots.txt not available, assuming allowed | url=%s status=%d",
                robots_url, resp.status_code,
            )
            return PermissionDecision(True, f"permission file status {resp.status_code}")

        try:
            rules = parse_permission_file(resp.text, self._user_agent)
        except (UnicodeDecodeError, ValueError) as exc:
            logger.warning("robots.txt unparseable, assuming allowed | url=%s error=%s", robots_url, exc)
            return PermissionDecision(True, "permission file unparseable")

        parts = urlsplit(url)
        # Rules such as `Disallow: /search?q=` match against the query too
        path = (parts.path or "/") + (f"?{parts.query}" if parts.query else "")
        rule = rules.blocking_rule(path)
        if rule is not None:
            logger.warning("Scraping disallowed | url=%s rule=Disallow: %s", url, rule)
            return PermissionDecision(False, f"disallowed by {rules.matched} rule", rule)

        logger.debug("Scraping allowed | url=%s rules=%s", url, rules.matched)
        return PermissionDecision(True, f"allowed by {rules.matched} rules")
