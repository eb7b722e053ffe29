"""Canonical tool identity: URL/text normalization and ToolId hashing.

Everything here is pure. Normalization is idempotent, so a stored canonical
URL can be fed back through ``normalize_url`` and compared for equality.
"""

import hashlib
import re
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit

from .exceptions import InvalidInput

TRACKING_PARAMS = frozenset({
    "fbclid",
    "gclid",
    "msclkid",
    "yclid",
    "igshid",
    "mc_eid",
})

# Prefixes stripped when deriving the root domain, in order.
ROOT_DOMAIN_PREFIXES = ("www.", "app.")

TEXT_SEED_PREFIX = "name:"

# DNS limit; also bounds the root_domain column.
MAX_HOSTNAME_LENGTH = 253

MAX_TEXT_ALIAS_LENGTH = 256

DEFAULT_PORTS = {"http": 80, "https": 443}

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)


@dataclass(frozen=True)
class CanonicalIdentity:
    """Normalized form of a tool reference, derived and never stored on its own."""

    kind: str  # "url" or "text"
    tool_id: str
    canonical_url: Optional[str] = None
    root_domain: Optional[str] = None
    alias: Optional[str] = None
    aliases: List[str] = field(default_factory=list)

    @property
    def is_url(self) -> bool:
        return self.kind == "url"


def looks_like_url(value: str) -> bool:
    """Classify raw input: URL if it has an http(s) scheme, or is a dotted token."""
    if not value:
        return False
    trimmed = value.strip()
    if trimmed.lower().startswith(("http://", "https://")):
        return True
    if " " in trimmed or "@" in trimmed:
        return False
    return "." in trimmed


def _strip_www(host: str) -> str:
    while host.startswith("www.") and "." in host[4:]:
        host = host[4:]
    return host


def normalize_url(value: str) -> str:
    """Return the canonical URL for *value*.

    Raises:
        InvalidInput: on empty input or anything that does not parse as an
            http(s) URL with a hostname.
    """
    raw = (value or "").strip()
    if not raw:
        raise InvalidInput("URL is required")
    with_scheme = raw if _SCHEME_RE.match(raw) else f"https://{raw}"

    try:
        parts = urlsplit(with_scheme)
        port = parts.port
    except ValueError as exc:
        raise InvalidInput(f"Could not parse URL: {raw}") from exc

    scheme = parts.scheme.lower()
    host = parts.hostname or ""
    if scheme not in DEFAULT_PORTS or not host or any(c.isspace() for c in host):
        raise InvalidInput(f"Could not parse URL: {raw}")
    if len(host) > MAX_HOSTNAME_LENGTH:
        raise InvalidInput("Hostname is too long")

    host = _strip_www(host.lower())
    if ":" in host:
        host = f"[{host}]"
    if port is not None and port != DEFAULT_PORTS[scheme]:
        host = f"{host}:{port}"

    path = parts.path.rstrip("/")

    params = [
        (key, val)
        for key, val in parse_qsl(parts.query, keep_blank_values=True)
        if not key.lower().startswith("utm_") and key.lower() not in TRACKING_PARAMS
    ]
    params.sort(key=lambda kv: kv[0])
    query = urlencode(params)

    return f"{scheme}://{host}{path}{'?' + query if query else ''}"


def get_root_domain(hostname: str) -> str:
    """Lowercase *hostname* and strip a leading ``www.`` and/or ``app.`` label."""
    host = (hostname or "").strip().lower()
    for prefix in ROOT_DOMAIN_PREFIXES:
        if host.startswith(prefix) and "." in host[len(prefix):]:
            host = host[len(prefix):]
    return host


def normalize_text_alias(value: str) -> str:
    """Trim, lowercase and collapse whitespace runs to single spaces."""
    alias = " ".join((value or "").split()).lower()
    if not alias:
        raise InvalidInput("Tool name is required")
    if len(alias) > MAX_TEXT_ALIAS_LENGTH:
        raise InvalidInput("Tool name is too long")
    return alias


def compute_tool_id(seed: str) -> str:
    """SHA-256 hex digest of *seed*: a fixed 64-character ToolId."""
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def text_tool_seed(alias: str) -> str:
    """Namespace a text alias so it can never collide with a domain seed."""
    return f"{TEXT_SEED_PREFIX}{alias}"


def derived_aliases(canonical_url: str, root_domain: str) -> List[str]:
    """Aliases every URL-derived record carries."""
    return [root_domain, f"www.{root_domain}", canonical_url]


def identity_from_url(value: str) -> CanonicalIdentity:
    canonical_url = normalize_url(value)
    hostname = urlsplit(canonical_url).hostname or ""
    root_domain = get_root_domain(hostname)
    return CanonicalIdentity(
        kind="url",
        tool_id=compute_tool_id(root_domain),
        canonical_url=canonical_url,
        root_domain=root_domain,
        aliases=derived_aliases(canonical_url, root_domain),
    )


def identity_from_text(value: str) -> CanonicalIdentity:
    alias = normalize_text_alias(value)
    return CanonicalIdentity(
        kind="text",
        tool_id=compute_tool_id(text_tool_seed(alias)),
        alias=alias,
        aliases=[alias],
    )


def resolve_identity(value: str) -> CanonicalIdentity:
    """Classify raw caller input and derive its canonical identity."""
    if not value or not value.strip():
        raise InvalidInput("Input is required")
    if looks_like_url(value):
        return identity_from_url(value)
    return identity_from_text(value)
