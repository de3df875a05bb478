"""Visit classification: browser, OS, referrer and country keys.

Every function here is total: malformed input falls back to ``other``,
``direct`` or ``unknown`` instead of raising.
"""

import re
from urllib.parse import urlsplit

from user_agents import parse as parse_ua

DEFAULT_KEY = "other"
DIRECT_REFERRER = "direct"
UNKNOWN_COUNTRY = "unknown"
DOT_PLACEHOLDER = "[dot]"

# Matched against the parsed family name, first hit wins
BROWSER_PRIORITY = ["IE", "Firefox", "Chrome", "Opera", "Safari", "Edge"]
OS_PRIORITY = ["Windows", "Mac OS", "Linux", "Android", "iOS"]

_COUNTRY_RE = re.compile(r"^[A-Za-z]{2}$")
_HOSTNAME_RE = re.compile(r"^[\w.-]+$")

# Automation clients the UA parser does not flag as spiders
BOT_UA_PATTERNS: list[re.Pattern] = [
    re.compile(p, re.IGNORECASE) for p in [
        r"curl/",
        r"wget/",
        r"python-requests",
        r"python-urllib",
        r"python-httpx",
        r"Go-http-client",
        r"scrapy",
        r"aiohttp",
        r"node-fetch",
        r"axios/",
        r"libwww-perl",
        r"HeadlessChrome",
        r"PhantomJS",
        r"facebookexternalhit",
        r"Slackbot",
        r"TelegramBot",
        r"Discordbot",
        r"WhatsApp",
    ]
]


def _first_match(family: str, candidates: list[str]) -> str:
    family = family.lower()
    for candidate in candidates:
        if candidate.lower() in family:
            return re.sub(r"\s", "", candidate.lower())
    return DEFAULT_KEY


def classify_user_agent(user_agent: str | None) -> tuple[str, str]:
    """Map a raw User-Agent header to ``(browser, os)`` keys."""
    if not user_agent:
        return DEFAULT_KEY, DEFAULT_KEY
    agent = parse_ua(user_agent)
    browser = _first_match(agent.browser.family or "", BROWSER_PRIORITY)
    os_name = _first_match(agent.os.family or "", OS_PRIORITY)
    return browser, os_name


def classify_referrer(referrer: str | None) -> str:
    """Map a Referer header to an aggregate-map key.

    ``https://www.example.com/x`` becomes ``example[dot]com``; a missing or
    unparseable referrer becomes ``direct``.
    """
    if not referrer:
        return DIRECT_REFERRER
    try:
        hostname = urlsplit(referrer.strip()).hostname
    except ValueError:
        return DIRECT_REFERRER
    if not hostname or not _HOSTNAME_RE.match(hostname):
        return DIRECT_REFERRER
    if hostname.startswith("www."):
        hostname = hostname[4:]
    return hostname.lower().replace(".", DOT_PLACEHOLDER)


def classify_country(country_code: str | None) -> str:
    """Lowercase a two-letter country code, anything else is ``unknown``."""
    if not country_code or not _COUNTRY_RE.match(country_code.strip()):
        return UNKNOWN_COUNTRY
    return country_code.strip().lower()


def is_bot(user_agent: str | None) -> bool:
    """Whether a visit comes from a crawler or an automation client."""
    if not user_agent:
        return False
    if any(p.search(user_agent) for p in BOT_UA_PATTERNS):
        return True
    return parse_ua(user_agent).is_bot
