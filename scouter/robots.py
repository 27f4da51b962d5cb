"""
FILE DESCRIPTION: robots.txt parsing, per-crawl caching and allow/deny decisions.
KEY FUNCTIONS/CLASSES: parse_robots, compile_pattern, RobotsRuleset, RobotsRule, RobotsCache

Precedence: the most specific user-agent group applies (exact agent name, else '*').
Inside the group the longest matching pattern wins and Allow wins ties.
"""

import re
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from scouter.core import ROBOTS_TIMEOUT, logger


def compile_pattern(pattern: str) -> "re.Pattern":
    """robots.txt path pattern -> prefix regex ('*' any run of characters, trailing '$' anchors the end)."""
    anchored = pattern.endswith("$")
    body = pattern[:-1] if anchored else pattern
    regex = ".*".join(re.escape(part) for part in body.split("*"))
    return re.compile(regex + ("$" if anchored else ""), re.DOTALL)


@dataclass(frozen=True)
class RobotsRule:
    """One Allow/Disallow line. The pattern is compiled once, when the rule is parsed."""
    allow: bool
    pattern: str
    regex: "re.Pattern" = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "regex", compile_pattern(self.pattern))

    def matches(self, path: str) -> bool:
        return self.regex.match(path) is not None


@dataclass(frozen=True)
class RobotsRuleset:
    """
    Parsed robots.txt of one origin.
    Invariant: read-only once built; groups maps a lowercased agent literal to its rules in file order.
    """
    groups: Dict[str, Tuple[RobotsRule, ...]] = field(default_factory=dict)
    sitemaps: Tuple[str, ...] = ()

    def rules_for(self, user_agent: Optional[str]) -> Tuple[RobotsRule, ...]:
        for candidate in _agent_candidates(user_agent):
            if candidate in self.groups:
                return self.groups[candidate]
        return self.groups.get("*", ())

    def is_allowed(self, path: str, user_agent: Optional[str] = None) -> bool:
        if not path:
            path = "/"
        best = None
        for rule in self.rules_for(user_agent):
            if not rule.matches(path):
                continue
            if best is None or len(rule.pattern) > len(best.pattern) \
                    or (len(rule.pattern) == len(best.pattern) and rule.allow and not best.allow):
                best = rule
        return True if best is None else best.allow


ALLOW_ALL = RobotsRuleset()


def _agent_candidates(user_agent: Optional[str]) -> List[str]:
    if not user_agent:
        return []
    full = user_agent.strip().lower()
    candidates = [full]
    # Product token ("Scouter/0.3 (...)" -> "scouter")
    token = re.split(r"[/\s;(]", full, maxsplit=1)[0]
    if token and token not in candidates:
        candidates.append(token)
    return candidates


def parse_robots(text: str) -> RobotsRuleset:
    """
    FLOW: Strips comments -> Groups consecutive User-agent lines ->
    Attaches Allow/Disallow rules to the open group -> Ignores malformed lines.
    """
    groups: Dict[str, List[RobotsRule]] = {}
    sitemaps: List[str] = []
    current_agents: List[str] = []
    group_has_rules = False

    for raw_line in (text or "").splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip().lower()
        value = value.strip()

        if key == "user-agent":
            if group_has_rules:
                current_agents = []
                group_has_rules = False
            if value:
                agent = value.lower()
                current_agents.append(agent)
                groups.setdefault(agent, [])
        elif key in ("allow", "disallow"):
            if not current_agents:
                continue
            group_has_rules = True
            if not value:
                # An empty Disallow allows everything, an empty Allow says nothing
                continue
            rule = RobotsRule(allow=(key == "allow"), pattern=value)
            for agent in current_agents:
                groups[agent].append(rule)
        elif key == "sitemap":
            if value:
                sitemaps.append(value)

    return RobotsRuleset(
        groups={agent: tuple(rules) for agent, rules in groups.items()},
        sitemaps=tuple(sitemaps),
    )


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}".lower()


def path_of(url: str) -> str:
    parsed = urlparse(url)
    path = parsed.path or "/"
    if parsed.query:
        path = f"{path}?{parsed.query}"
    return path


class RobotsCache:
    """
    FLOW: First query for an origin -> Fetches /robots.txt with a short timeout ->
    Parses (or falls back to allow-all) -> Stores once -> Answers every later query from memory.
    One instance per crawl, so concurrent crawls never share rulesets.
    """

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = ROBOTS_TIMEOUT,
                 user_agent: Optional[str] = None):
        self._session = session or requests.Session()
        self._timeout = timeout
        self._user_agent = user_agent
        self._rulesets: Dict[str, RobotsRuleset] = {}
        self._lock = threading.Lock()

    def prime(self, origin: str, text: str) -> RobotsRuleset:
        """Registers robots.txt content for an origin without fetching it."""
        return self._store(origin.rstrip("/").lower(), parse_robots(text))

    def ruleset(self, url: str) -> RobotsRuleset:
        origin = origin_of(url)
        with self._lock:
            cached = self._rulesets.get(origin)
        if cached is not None:
            return cached
        return self._store(origin, self._fetch(origin))

    def is_allowed(self, url: str, user_agent: Optional[str] = None) -> bool:
        return self.ruleset(url).is_allowed(path_of(url), user_agent or self._user_agent)

    def _store(self, origin: str, ruleset: RobotsRuleset) -> RobotsRuleset:
        with self._lock:
            # write-once: a concurrent fetch for the same origin keeps the first result
            return self._rulesets.setdefault(origin, ruleset)

    def _fetch(self, origin: str) -> RobotsRuleset:
        robots_url = f"{origin}/robots.txt"
        headers = {"User-Agent": self._user_agent} if self._user_agent else None
        try:
            r = self._session.get(robots_url, timeout=self._timeout, headers=headers, allow_redirects=True)
        except requests.RequestException as e:
            logger.debug(f"[ROBOTS] {robots_url} unreachable ({e}). Allowing all.")
            return ALLOW_ALL
        if r.status_code != 200:
            logger.debug(f"[ROBOTS] {robots_url} returned {r.status_code}. Allowing all.")
            return ALLOW_ALL
        try:
            ruleset = parse_robots(r.text)
        except (ValueError, UnicodeDecodeError) as e:
            logger.debug(f"[ROBOTS] {robots_url} unparsable ({e}). Allowing all.")
            return ALLOW_ALL
        logger.info(f"[ROBOTS] Loaded {robots_url} ({len(ruleset.groups)} agent groups)")
        return ruleset
