"""Library annotation and tag conventions.

Hey future me - the external library has no structured metadata fields for us, so
everything we know about an imported item lives in a plain-text annotation and in
"Key: value" tags:

```
Video title: Some title
Uploader: Some channel
Upload date: 20240131
Views: 1,234
Video ID: dQw4w9WgXcQ
Playlists: Music, Favorites
Last updated: 2024-02-01
```

Tags: "Platform: youtube.com", "Playlist: Music", "Channel: Some channel", "Year: 2024".

The library scan parses exactly these lines back, so keep writer and parser in this
one module.
"""

import re
from dataclasses import dataclass
from datetime import date
from urllib.parse import urlparse

PLATFORM_TAG_PREFIX = "Platform: "
PLAYLIST_TAG_PREFIX = "Playlist: "
CHANNEL_TAG_PREFIX = "Channel: "
YEAR_TAG_PREFIX = "Year: "
YOUTUBE_PLATFORM_TAG = f"{PLATFORM_TAG_PREFIX}youtube.com"

_VIDEO_ID_LINE = re.compile(r"Video ID: ([A-Za-z0-9_-]+)")
_UPLOADER_LINE = re.compile(r"Uploader: (.+)")
_UPLOAD_DATE_LINE = re.compile(r"Upload date: (\d{8})")
_VIEWS_LINE = re.compile(r"Views: ([\d,]+)")
_TITLE_LINE = re.compile(r"Video title: (.+)")
_PLAYLISTS_LINE = re.compile(r"Playlists: ([^\n]*)")
_LAST_UPDATED_LINE = re.compile(r"Last updated: [^\n]*")

# Order matters: the generic "v=" query parameter is the last resort
_URL_ID_PATTERNS = [
    re.compile(r"youtu\.be/([A-Za-z0-9_-]+)"),
    re.compile(r"youtube\.com/watch\?(?:.*&)?v=([A-Za-z0-9_-]+)"),
    re.compile(r"youtube\.com/embed/([A-Za-z0-9_-]+)"),
    re.compile(r"youtube\.com/v/([A-Za-z0-9_-]+)"),
    re.compile(r"youtube\.com/shorts/([A-Za-z0-9_-]+)"),
    re.compile(r"[?&]v=([A-Za-z0-9_-]+)"),
]


@dataclass
class AnnotationMetadata:
    """Metadata recovered from an annotation."""

    title: str | None = None
    uploader: str | None = None
    upload_date: str | None = None
    view_count: int | None = None


def watch_url(external_id: str) -> str:
    """Canonical watch URL of an external id."""
    return f"https://www.youtube.com/watch?v={external_id}"


def platform_of(url: str) -> str:
    """Host used for the Platform tag (youtube.com for any youtube host)."""
    if "youtube.com" in url or "youtu.be" in url:
        return "youtube.com"
    return urlparse(url).hostname or "unknown"


def extract_external_id(annotation: str | None, url: str | None) -> str | None:
    """External id from the "Video ID:" line, else from a watch/short url."""
    if annotation:
        match = _VIDEO_ID_LINE.search(annotation)
        if match:
            return match.group(1)
    if not url:
        return None
    for pattern in _URL_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def parse_annotation(annotation: str | None, tags: list[str] | None = None) -> AnnotationMetadata:
    """Recover title/uploader/upload date/views from an annotation.

    Falls back to the Channel tag when the uploader line is missing.
    """
    meta = AnnotationMetadata()
    text = annotation or ""

    if match := _TITLE_LINE.search(text):
        meta.title = match.group(1).strip()
    if match := _UPLOADER_LINE.search(text):
        meta.uploader = match.group(1).strip()
    if match := _UPLOAD_DATE_LINE.search(text):
        meta.upload_date = match.group(1)
    if match := _VIEWS_LINE.search(text):
        meta.view_count = int(match.group(1).replace(",", ""))

    if not meta.uploader:
        for tag in tags or []:
            if tag.startswith(CHANNEL_TAG_PREFIX):
                meta.uploader = tag[len(CHANNEL_TAG_PREFIX) :]
                break
    return meta


def build_annotation(
    title: str | None,
    uploader: str | None,
    upload_date: str | None,
    view_count: int | None,
    external_id: str,
    playlist: str | None = None,
) -> str:
    """Annotation written on import."""
    views = f"{view_count:,}" if view_count is not None else "Unknown"
    lines = [
        f"Video title: {title or 'Unknown'}",
        f"Uploader: {uploader or 'Unknown'}",
        f"Upload date: {upload_date or 'Unknown'}",
        f"Views: {views}",
        f"Video ID: {external_id}",
    ]
    if playlist:
        lines.append(f"Playlists: {playlist}")
    return "\n".join(lines)


def build_tags(
    url: str,
    playlist: str | None,
    uploader: str | None,
    upload_date: str | None,
) -> list[str]:
    """Tags written on import."""
    tags = [f"{PLATFORM_TAG_PREFIX}{platform_of(url)}"]
    if playlist:
        tags.append(f"{PLAYLIST_TAG_PREFIX}{playlist}")
    tags.append(f"{CHANNEL_TAG_PREFIX}{uploader or 'Unknown'}")
    if upload_date and len(upload_date) >= 4:
        tags.append(f"{YEAR_TAG_PREFIX}{upload_date[:4]}")
    return tags


def playlists_in(annotation: str | None) -> list[str]:
    """Names on the "Playlists:" line."""
    match = _PLAYLISTS_LINE.search(annotation or "")
    if not match:
        return []
    return [name.strip() for name in match.group(1).split(",") if name.strip()]


def merge_playlist_annotation(
    annotation: str | None, playlist: str, today: date
) -> tuple[str, bool]:
    """Add a playlist to the "Playlists:" line.

    Returns:
        (annotation, changed). "Last updated:" is only stamped when the playlist
        was actually added, so merging twice is a no-op.
    """
    text = annotation or ""
    names = playlists_in(text)
    if playlist in names:
        return text, False

    names.append(playlist)
    playlists_line = f"Playlists: {', '.join(names)}"
    if _PLAYLISTS_LINE.search(text):
        text = _PLAYLISTS_LINE.sub(lambda _: playlists_line, text, count=1)
    else:
        text = f"{text}\n{playlists_line}" if text else playlists_line

    updated_line = f"Last updated: {today.isoformat()}"
    if _LAST_UPDATED_LINE.search(text):
        text = _LAST_UPDATED_LINE.sub(lambda _: updated_line, text, count=1)
    else:
        text = f"{text}\n{updated_line}"
    return text, True


def union(existing: list[str], extra: list[str]) -> list[str]:
    """Order-preserving union of two string lists."""
    merged = list(existing)
    for value in extra:
        if value not in merged:
            merged.append(value)
    return merged
