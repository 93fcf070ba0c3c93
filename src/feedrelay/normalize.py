from __future__ import annotations

import hashlib
import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

TRACKING_PARAMS = frozenset({"gclid", "fbclid", "igshid", "mc_cid", "mc_eid"})

_DEFAULT_PORTS = {"http": 80, "https": 443}
_WHITESPACE = re.compile(r"\s+")
_PUNCTUATION = re.compile(r"[^\w\s]|_")
_ZERO_WIDTH = re.compile("[\u200b\u200c\u200d\ufeff]")
_ARROWS = (
    ("↔", "<->"),
    ("←", "<-"),
    ("⬅", "<-"),
    ("→", "->"),
    ("➡", "->"),
    ("➔", "->"),
    ("➜", "->"),
    ("➝", "->"),
    ("➞", "->"),
    ("➠", "->"),
)


def collapse_whitespace(value: str | None) -> str:
    if not value:
        return ""
    return _WHITESPACE.sub(" ", str(value)).strip()


def normalize_title(value: str | None) -> str:
    text = collapse_whitespace(value).lower()
    text = _PUNCTUATION.sub(" ", text)
    return collapse_whitespace(text)


def is_tracking_param(key: str) -> bool:
    lowered = key.lower()
    return lowered.startswith("utm_") or lowered in TRACKING_PARAMS


def strip_tracking_params(url: str) -> str:
    """Drop tracking query parameters, leaving the rest of the URL untouched."""
    if not url:
        return url
    try:
        split = urlsplit(url)
    except ValueError:
        return url
    if not split.query:
        return url
    params = parse_qsl(split.query, keep_blank_values=True)
    kept = [(key, value) for key, value in params if not is_tracking_param(key)]
    if len(kept) == len(params):
        return url
    return urlunsplit(
        (split.scheme, split.netloc, split.path, urlencode(kept), split.fragment)
    )


def normalize_url(url: str | None) -> str:
    raw = (url or "").strip()
    if not raw:
        return ""
    if "://" not in raw:
        raw = f"https://{raw.lstrip('/')}"
    try:
        split = urlsplit(raw)
        scheme = split.scheme.lower()
        host = (split.hostname or "").lower()
        port = split.port
    except ValueError:
        return ""
    if not host:
        return ""
    netloc = host
    if split.username:
        credentials = split.username
        if split.password:
            credentials += f":{split.password}"
        netloc = f"{credentials}@{netloc}"
    if port is not None and _DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"
    path = split.path.rstrip("/")
    params = [
        (key, value)
        for key, value in parse_qsl(split.query, keep_blank_values=True)
        if not is_tracking_param(key)
    ]
    query = urlencode(params) if params else ""
    return urlunsplit((scheme, netloc, path, query, ""))


def fingerprint(title: str | None, url: str | None) -> str:
    payload = f"{normalize_title(title)}|{normalize_url(url)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def normalize_message_text(value: str | None) -> str:
    text = str(value or "").replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\u00a0", " ")
    text = _ZERO_WIDTH.sub("", text)
    for glyph, replacement in _ARROWS:
        text = text.replace(glyph, replacement)
    return text.strip()
