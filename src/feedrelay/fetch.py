from __future__ import annotations

import json
import logging
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import feedparser
from bs4 import BeautifulSoup

from .models import Feed, FetchMeta, FetchResult, NormalizedItem
from .normalize import collapse_whitespace, strip_tracking_params
from .utils import log_event, parse_date_value

_JSON_ITEM_PATHS = (
    ("items",),
    ("feed", "items"),
    ("data", "items"),
    ("data",),
    ("results",),
    ("articles",),
    ("entries",),
    ("posts",),
)


class FeedFetchError(RuntimeError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class FeedparserSource:
    """Fetch RSS, Atom and JSON Feed documents with conditional GET."""

    def __init__(
        self,
        timeout_seconds: int = 20,
        user_agent: str = "feedrelay/0.1",
        logger: logging.Logger | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self.logger = logger or logging.getLogger("feedrelay.fetch")

    def fetch(self, feed: Feed) -> FetchResult:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "application/rss+xml, application/atom+xml, application/feed+json, "
            "application/json;q=0.9, application/xml;q=0.8, */*;q=0.5",
        }
        if feed.etag:
            headers["If-None-Match"] = feed.etag
        if feed.last_modified:
            headers["If-Modified-Since"] = feed.last_modified
        try:
            request = Request(feed.url, headers=headers)
            with urlopen(request, timeout=self.timeout_seconds) as response:
                body = response.read()
                response_headers = response.headers
        except HTTPError as exc:
            if exc.code == 304:
                return FetchResult(
                    items=[],
                    meta=FetchMeta(
                        not_modified=True,
                        etag=feed.etag,
                        last_modified=feed.last_modified,
                    ),
                )
            raise FeedFetchError(f"HTTP {exc.code} fetching {feed.url}", status=exc.code) from exc
        except URLError as exc:
            raise FeedFetchError(f"Failed to fetch {feed.url}: {exc.reason}") from exc
        except (TimeoutError, OSError) as exc:
            raise FeedFetchError(f"Failed to fetch {feed.url}: {exc}") from exc

        etag = response_headers.get("ETag")
        last_modified = response_headers.get("Last-Modified")
        content_type = (response_headers.get("Content-Type") or "").lower()
        if _looks_like_json(feed, content_type, body):
            items = parse_json_feed(body)
            detected_type = "json"
        else:
            items, detected_type = self._parse_xml(feed, body)
        return FetchResult(
            items=items,
            meta=FetchMeta(
                not_modified=False,
                etag=etag,
                last_modified=last_modified,
                detected_type=detected_type,
            ),
        )

    def _parse_xml(self, feed: Feed, body: bytes) -> tuple[list[NormalizedItem], str]:
        parsed = feedparser.parse(body)
        entries = parsed.entries or []
        if parsed.bozo:
            if not entries:
                raise FeedFetchError(
                    f"Unparsable feed {feed.url}: {parsed.get('bozo_exception')}"
                )
            log_event(
                self.logger,
                logging.WARNING,
                "feed_parse_warning",
                feed_id=feed.id,
                error=str(parsed.get("bozo_exception")),
            )
        version = str(parsed.get("version") or "")
        detected_type = "atom" if version.startswith("atom") else "rss"
        return [entry_to_item(entry) for entry in entries], detected_type


def _looks_like_json(feed: Feed, content_type: str, body: bytes) -> bool:
    if feed.type == "json" or "json" in content_type:
        return True
    head = body.lstrip()[:1]
    return head in (b"{", b"[")


def strip_html(value: str | None) -> str:
    if not value:
        return ""
    soup = BeautifulSoup(value, "html.parser")
    return collapse_whitespace(soup.get_text(" ", strip=True))


def first_image_from_html(value: str | None) -> str | None:
    if not value or "<img" not in value.lower():
        return None
    soup = BeautifulSoup(value, "html.parser")
    image = soup.find("img")
    src = image.get("src") if image else None
    if isinstance(src, str) and src.startswith(("http://", "https://")):
        return src
    return None


def _clean_link(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    return strip_tracking_params(value.strip())


def entry_to_item(entry: Any) -> NormalizedItem:
    content_html = None
    contents = entry.get("content") or []
    if contents:
        content_html = contents[0].get("value")
    summary_html = entry.get("summary") or entry.get("description")
    image_url = _entry_image(entry) or first_image_from_html(content_html or summary_html)
    published = parse_date_value(entry.get("published_parsed")) or parse_date_value(
        entry.get("updated_parsed")
    )
    categories = [
        str(tag.get("term")).strip()
        for tag in entry.get("tags") or []
        if tag.get("term") and str(tag.get("term")).strip()
    ]
    return NormalizedItem(
        guid=(entry.get("id") or entry.get("guid") or None),
        title=strip_html(entry.get("title")) or None,
        link=_clean_link(entry.get("link")),
        description=strip_html(summary_html) or None,
        content=strip_html(content_html) or None,
        author=collapse_whitespace(entry.get("author")) or None,
        image_url=image_url,
        pub_date=published,
        categories=categories,
        raw={
            key: entry.get(key)
            for key in ("comments", "source")
            if isinstance(entry.get(key), str)
        },
    )


def _entry_image(entry: Any) -> str | None:
    for key in ("media_content", "media_thumbnail"):
        for media in entry.get(key) or []:
            url = media.get("url")
            if url:
                return url
    for enclosure in entry.get("enclosures") or []:
        if str(enclosure.get("type") or "").startswith("image/") and enclosure.get("href"):
            return enclosure.get("href")
    image = entry.get("image")
    if isinstance(image, dict) and image.get("href"):
        return image.get("href")
    return None


def parse_json_feed(body: bytes | str) -> list[NormalizedItem]:
    try:
        document = json.loads(body)
    except (TypeError, ValueError) as exc:
        raise FeedFetchError(f"Invalid JSON feed: {exc}") from exc
    return [_json_entry_to_item(entry) for entry in _json_items(document) if isinstance(entry, dict)]


def _json_items(document: Any) -> list[Any]:
    if isinstance(document, list):
        return document
    if not isinstance(document, dict):
        return []
    for path in _JSON_ITEM_PATHS:
        node: Any = document
        for key in path:
            node = node.get(key) if isinstance(node, dict) else None
        if isinstance(node, list):
            return node
    arrays = [value for value in document.values() if isinstance(value, list)]
    if len(arrays) == 1:
        return arrays[0]
    return []


def _first_text(entry: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str) and value.strip():
            return value
    return None


def _json_entry_to_item(entry: dict[str, Any]) -> NormalizedItem:
    author = entry.get("author")
    if isinstance(author, dict):
        author = author.get("name")
    authors = entry.get("authors")
    if not author and isinstance(authors, list) and authors and isinstance(authors[0], dict):
        author = authors[0].get("name")
    categories = entry.get("tags") or entry.get("categories") or []
    content_html = _first_text(entry, "content_html", "content", "content_text", "body")
    summary = _first_text(entry, "summary", "description", "excerpt")
    image = _first_text(entry, "image", "banner_image", "image_url", "thumbnail")
    return NormalizedItem(
        guid=_first_text(entry, "id", "guid", "uuid"),
        title=strip_html(_first_text(entry, "title", "headline", "name")) or None,
        link=_clean_link(_first_text(entry, "url", "link", "external_url", "permalink")),
        description=strip_html(summary) or None,
        content=strip_html(content_html) or None,
        author=collapse_whitespace(author if isinstance(author, str) else None) or None,
        image_url=image or first_image_from_html(content_html),
        pub_date=parse_date_value(
            _first_text(entry, "date_published", "published", "pubDate", "date", "date_modified")
        ),
        categories=[str(item).strip() for item in categories if str(item).strip()]
        if isinstance(categories, list)
        else [],
        raw={},
    )
