"""Contact resolver: e-mail addresses and outbound links from a channel page.

Creators publish business e-mails in every shape imaginable
("biz@studio.tv", "biz @ studio . tv", "biz at studio dot tv",
"biz[at]studio[dot]tv"), and their link lists mix social profiles, a
personal site, and YouTube's own redirect wrappers. This module turns
that into:

  - a de-duplicated list of e-mails, in order of first appearance,
    with placeholders and template junk dropped
  - one canonical link per known platform (first match wins) plus at
    most one generic "website" link

Same input, same output: nothing here depends on set iteration order.
"""

from __future__ import annotations

import html as html_lib
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Optional
from urllib.parse import parse_qs, unquote, urlparse

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

# ── E-mail patterns ────────────────────────────────────────────────────────

_LOCAL = r"[a-zA-Z0-9._%+\-]+"
_LABEL = r"[a-zA-Z0-9\-]+"
_TLD = r"[a-zA-Z]{2,}"

_EMAIL_PATTERNS = (
    # standard: name@host.tld
    re.compile(r"(%s)@((?:%s\.)+)(%s)\b" % (_LOCAL, _LABEL, _TLD)),
    # spaced: name @ host . tld
    re.compile(r"(%s)\s*@\s*(%s(?:\s*\.\s*%s)*)\s*\.\s*(%s)\b" % (_LOCAL, _LABEL, _LABEL, _TLD)),
    # worded: name at host dot tld, name [at] host [dot] tld
    re.compile(
        r"(%s)\s*(?:\[\s*at\s*\]|\(\s*at\s*\)|\s+at\s+)\s*(%s)"
        r"\s*(?:\[\s*dot\s*\]|\(\s*dot\s*\)|\s+dot\s+)\s*(%s)\b" % (_LOCAL, _LABEL, _TLD),
        re.IGNORECASE,
    ),
)

_PLACEHOLDER_DOMAINS = (
    "example.com",
    "example.org",
    "domain.com",
    "email.com",
    "yourdomain",
    "wixpress.com",
    "sentry.io",
)

_PLACEHOLDER_LOCALS = {"name", "yourname", "youremail", "email", "user", "username"}

_BAD_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".css", ".js")

# ── Link patterns ──────────────────────────────────────────────────────────

# (platform, pattern over "host/path", canonical URL template). Order matters
# only for display; each platform keeps the first link that matches it.
PLATFORM_PATTERNS: list[tuple[str, re.Pattern, str]] = [
    ("instagram", re.compile(r"^(?:www\.)?instagram\.com/([a-zA-Z0-9._]+)", re.I),
     "https://instagram.com/{}"),
    ("twitter", re.compile(r"^(?:www\.|mobile\.)?(?:twitter\.com|x\.com)/([a-zA-Z0-9_]+)", re.I),
     "https://twitter.com/{}"),
    ("facebook", re.compile(r"^(?:www\.|m\.)?(?:facebook\.com|fb\.com|fb\.me)/([a-zA-Z0-9.\-]+)", re.I),
     "https://facebook.com/{}"),
    ("tiktok", re.compile(r"^(?:www\.)?tiktok\.com/@?([a-zA-Z0-9._]+)", re.I),
     "https://tiktok.com/@{}"),
    ("discord", re.compile(r"^(?:www\.)?(?:discord\.gg|discord\.com/invite)/([a-zA-Z0-9\-]+)", re.I),
     "https://discord.gg/{}"),
    ("twitch", re.compile(r"^(?:www\.)?twitch\.tv/([a-zA-Z0-9_]+)", re.I),
     "https://twitch.tv/{}"),
    ("linkedin", re.compile(r"^(?:[a-z]{2,3}\.)?linkedin\.com/((?:in|company)/[a-zA-Z0-9\-_%]+)", re.I),
     "https://linkedin.com/{}"),
]

# Hosts that count as "the source site": never a channel's own website.
SOURCE_HOSTS = (
    "youtube.com",
    "youtu.be",
    "ytimg.com",
    "ggpht.com",
    "googleusercontent.com",
    "google.com",
    "gstatic.com",
)

# Profile paths that aren't profiles
_RESERVED_PATHS = {"share", "sharer", "intent", "home", "explore", "p", "watch", "hashtag"}

_URL_IN_TEXT = re.compile(r"(?:https?://|www\.)[^\s<>\"')\]]+", re.I)
_BARE_PLATFORM_IN_TEXT = re.compile(
    r"\b(?:instagram\.com|twitter\.com|x\.com|facebook\.com|fb\.me|tiktok\.com|"
    r"discord\.gg|discord\.com/invite|twitch\.tv|linkedin\.com)/[^\s<>\"')\]]+",
    re.I,
)
_HANDLE_MENTION = re.compile(
    r"\b(ig|insta|instagram|twitter|tiktok)\s*[:\-]\s*@?([a-zA-Z0-9._]{2,30})", re.I
)
_HANDLE_PLATFORM = {
    "ig": "instagram.com/{}",
    "insta": "instagram.com/{}",
    "instagram": "instagram.com/{}",
    "twitter": "twitter.com/{}",
    "tiktok": "tiktok.com/@{}",
}


@dataclass
class ContactInfo:
    emails: list[str] = field(default_factory=list)
    email_sources: dict[str, str] = field(default_factory=dict)
    social_links: dict[str, str] = field(default_factory=dict)


# ── E-mails ────────────────────────────────────────────────────────────────


def _is_placeholder_email(email: str) -> bool:
    local, _, domain = email.partition("@")
    if not local or not domain or "." not in domain:
        return True
    if any(email.endswith(suf) for suf in _BAD_SUFFIXES):
        return True
    if local in _PLACEHOLDER_LOCALS:
        return True
    return any(bad in domain for bad in _PLACEHOLDER_DOMAINS)


def extract_emails(text: str | None) -> list[str]:
    """Return the distinct e-mail addresses in ``text``, first-seen order.

    Standard, spaced and worded ("at"/"dot") spellings are all accepted
    and normalized to ``local@domain.tld`` in lower case.
    """
    if not text:
        return []

    text = html_lib.unescape(text)
    hits: list[tuple[int, str]] = []
    for pattern in _EMAIL_PATTERNS:
        for match in pattern.finditer(text):
            local, host, tld = match.groups()
            host = re.sub(r"\s+", "", host).rstrip(".")
            email = f"{local}@{host}.{tld}".lower().strip(".")
            hits.append((match.start(), email))

    emails: list[str] = []
    for _, email in sorted(hits, key=lambda h: h[0]):
        if email in emails or _is_placeholder_email(email):
            continue
        emails.append(email)
    return emails


# ── Links ──────────────────────────────────────────────────────────────────


def unwrap_redirect(url: str) -> str:
    """Turn ``youtube.com/redirect?...&q=<target>`` into ``<target>``."""
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    if host.endswith("youtube.com") and parsed.path == "/redirect":
        target = parse_qs(parsed.query).get("q")
        if target:
            return target[0]
    return url


def _host_and_path(url: str) -> tuple[str, str]:
    if not re.match(r"^[a-z][a-z0-9+.\-]*://", url, re.I):
        url = "https://" + url
    parsed = urlparse(url)
    host = (parsed.hostname or "").lower()
    return host, f"{host}{parsed.path}"


def _is_source_host(host: str) -> bool:
    return any(host == h or host.endswith("." + h) for h in SOURCE_HOSTS)


def classify_link(url: str) -> tuple[Optional[str], Optional[str]]:
    """Classify one outbound URL.

    Returns ``(platform, canonical_url)`` for a known platform,
    ``("website", url)`` for any other external site, and
    ``(None, None)`` for source-site links and non-http schemes.
    """
    url = html_lib.unescape(url.strip())
    if not url or url.startswith(("mailto:", "javascript:", "tel:", "#")):
        return None, None
    if url.startswith("/redirect"):
        url = "https://www.youtube.com" + url
    elif url.startswith("/"):
        return None, None

    url = unwrap_redirect(url)
    host, host_path = _host_and_path(url)
    if not host or "." not in host:
        return None, None

    for platform, pattern, template in PLATFORM_PATTERNS:
        match = pattern.match(host_path)
        if match:
            handle = match.group(1).rstrip(".")
            if handle.lower() in _RESERVED_PATHS:
                return None, None
            return platform, template.format(handle)

    if _is_source_host(host):
        return None, None

    if not url.lower().startswith(("http://", "https://")):
        url = "https://" + url
    return "website", url


def classify_links(urls: Iterable[str]) -> dict[str, str]:
    """Classify a sequence of outbound links.

    Each platform keeps the first link that matches it; "website" is the
    first link that is neither a known platform nor the source site.
    """
    links: dict[str, str] = {}
    for url in urls:
        platform, canonical = classify_link(url)
        if platform and platform not in links:
            links[platform] = canonical
    return _ordered(links)


def extract_social_links(text: str | None) -> dict[str, str]:
    """Platform links mentioned in free text (URLs, bare domains, "IG: @x")."""
    if not text:
        return {}

    hits: list[tuple[int, str]] = []
    for match in _URL_IN_TEXT.finditer(text):
        hits.append((match.start(), match.group(0).rstrip(".,;:!?")))
    for match in _BARE_PLATFORM_IN_TEXT.finditer(text):
        hits.append((match.start(), match.group(0).rstrip(".,;:!?")))
    for match in _HANDLE_MENTION.finditer(text):
        template = _HANDLE_PLATFORM[match.group(1).lower()]
        hits.append((match.start(), template.format(match.group(2).rstrip("."))))

    return classify_links(url for _, url in sorted(hits, key=lambda h: h[0]))


def anchor_hrefs(html: str | None) -> list[str]:
    """All ``<a href>`` values in document order."""
    if not html:
        return []
    soup = BeautifulSoup(html, "html.parser")
    return [a["href"] for a in soup.find_all("a", href=True)]


def _ordered(links: dict[str, str]) -> dict[str, str]:
    order = [p for p, _, _ in PLATFORM_PATTERNS] + ["website"]
    return {p: links[p] for p in order if p in links}


# ── Entry point ────────────────────────────────────────────────────────────


def resolve_contacts(
    text: str | None,
    html: str | None = None,
    description: str | None = None,
    extra_links: Iterable[str] = (),
) -> ContactInfo:
    """Collect e-mails and classified links for one channel.

    ``extra_links`` (the channel's declared links) take precedence over
    anchors in ``html``, which take precedence over mentions in the text.
    E-mails found in ``description`` are tagged "description"; the rest
    "about_page".
    """
    info = ContactInfo()

    for source, blob in (("description", description), ("about_page", text)):
        for email in extract_emails(blob):
            if email not in info.email_sources:
                info.emails.append(email)
                info.email_sources[email] = source

    if html:
        for href in anchor_hrefs(html):
            if href.lower().startswith("mailto:"):
                email = unquote(href[7:].split("?")[0]).strip().lower()
                if email not in info.email_sources and not _is_placeholder_email(email):
                    info.emails.append(email)
                    info.email_sources[email] = "about_page"

    links = classify_links(list(extra_links) + anchor_hrefs(html))
    for platform, url in extract_social_links(
        "\n".join(part for part in (description, text) if part)
    ).items():
        links.setdefault(platform, url)
    info.social_links = _ordered(links)

    logger.debug(
        "Resolved %d emails and %d links", len(info.emails), len(info.social_links)
    )
    return info
