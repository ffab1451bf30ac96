import os
import re
import logging
import urllib.request
import urllib.error
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

LOG = logging.getLogger(__name__)

DEFAULT_UA = "IPTVPlayer/1.0"
UNGROUPED = "Ungrouped"

# Header attributes that may carry the playlist-wide XMLTV url, in precedence order.
HEADER_EPG_KEYS = ("tvg-url", "url-tvg", "x-tvg-url")

_ATTR_RE = re.compile(r'([\w-]+)="([^"]*)"')
_NAME_RE = re.compile(r',\s*([^,]+)$')


class PlaylistLoadError(RuntimeError):
    """Raised when playlist content cannot be read from a file or URL."""


# =========================
# Channel model
# =========================

@dataclass
class ChannelSource:
    url: str
    quality: Optional[str] = None
    is_working: bool = True
    options: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        return self.quality or self.url


@dataclass
class Channel:
    name: str = ""
    id: int = 0
    sources: List[ChannelSource] = field(default_factory=list)
    current_source_index: int = 0
    logo: Optional[str] = None
    group: Optional[str] = None
    tvg_id: Optional[str] = None
    tvg_name: Optional[str] = None
    language: Optional[str] = None
    country: Optional[str] = None
    tvg_url: Optional[str] = None
    extended_attributes: Dict[str, str] = field(default_factory=dict)
    is_hidden: bool = False
    sort_order: int = 0

    @property
    def url(self) -> str:
        if not self.sources:
            return ""
        return self.sources[self.current_source_index % len(self.sources)].url

    @property
    def source(self) -> Optional[ChannelSource]:
        if not self.sources:
            return None
        return self.sources[self.current_source_index % len(self.sources)]

    @property
    def source_count(self) -> int:
        return len(self.sources)

    def next_source(self) -> bool:
        """Advance to the next source, wrapping around.

        Returns False when there is nothing to cycle through."""
        if len(self.sources) <= 1:
            return False
        self.current_source_index = (self.current_source_index + 1) % len(self.sources)
        return True

    def previous_source(self) -> bool:
        if len(self.sources) <= 1:
            return False
        self.current_source_index = (self.current_source_index - 1) % len(self.sources)
        return True

    def reset_source(self):
        self.current_source_index = 0

    def has_source_url(self, url: str) -> bool:
        folded = (url or "").lower()
        return any(s.url.lower() == folded for s in self.sources)

    def __str__(self) -> str:
        return self.name


@dataclass
class ChannelGroup:
    name: str
    channels: List[Channel] = field(default_factory=list)
    is_expanded: bool = True

    def __str__(self) -> str:
        return f"{self.name} ({len(self.channels)})"


# =========================
# Attribute lexing
# =========================

def extract_attributes(fragment: str) -> Dict[str, str]:
    """Return every key="value" pair in ``fragment``.

    Keys are lower-cased; a repeated key keeps the last value seen."""
    attrs: Dict[str, str] = {}
    if not fragment:
        return attrs
    for match in _ATTR_RE.finditer(fragment):
        attrs[match.group(1).lower()] = match.group(2)
    return attrs


def _truthy(value: str) -> bool:
    return (value or "").strip().lower() in {"true", "1"}


# =========================
# M3U parsing
# =========================

def _parse_extinf(line: str) -> Channel:
    # strip "#EXTINF:"
    content = line[8:]
    channel = Channel()

    for key, value in extract_attributes(content).items():
        if key == "tvg-id":
            channel.tvg_id = value or None
        elif key == "tvg-name":
            channel.tvg_name = value or None
        elif key == "tvg-logo":
            channel.logo = value or None
        elif key == "group-title":
            channel.group = value or None
        elif key == "tvg-language":
            channel.language = value or None
        elif key == "tvg-country":
            channel.country = value or None
        elif key == "tvg-url":
            channel.tvg_url = value or None
        elif key == "hidden":
            channel.is_hidden = _truthy(value)
        else:
            channel.extended_attributes[key] = value

    # Name is whatever follows the last comma; earlier commas may sit inside the name.
    m = _NAME_RE.search(content)
    if m:
        channel.name = m.group(1).strip()
    if not channel.name and channel.tvg_name:
        channel.name = channel.tvg_name
    return channel


def _parse_vlcopt(line: str) -> Tuple[str, str]:
    data = line.split(':', 1)[1] if ':' in line else ""
    key, sep, value = data.partition('=')
    if not sep:
        return "", ""
    return key.strip().lower(), value.strip()


def _scan_raw_channels(lines: List[str]) -> List[Channel]:
    raw: List[Channel] = []
    i = 0
    total = len(lines)
    while i < total:
        line = lines[i]
        if not line.upper().startswith("#EXTINF:"):
            i += 1
            continue

        channel = _parse_extinf(line)
        options: Dict[str, str] = {}
        j = i + 1
        while j < total:
            nxt = lines[j]
            if not nxt.startswith('#'):
                channel.sources.append(ChannelSource(url=nxt, options=options))
                break
            # Any other '#' line, a stray #EXTINF included, is passed over
            # on the way to this entry's url.
            upper = nxt[:11].upper()
            if upper.startswith("#EXTGRP:"):
                if not channel.group:
                    channel.group = nxt[8:].strip() or None
            elif upper.startswith("#EXTVLCOPT"):
                key, value = _parse_vlcopt(nxt)
                if key:
                    options[key] = value
            j += 1
        i = j + 1

        if channel.sources:
            raw.append(channel)
        else:
            LOG.debug("Dropping playlist entry without a stream url: %s", channel.name)
    return raw


def combine_channels(raw_channels: List[Channel]) -> List[Channel]:
    """Fold entries sharing a name (case-insensitive) into multi-source channels.

    The first occurrence owns the entry; later ones contribute new source urls
    and fill in logo/group/tvg-id/tvg-url only where the owner has none. Ids are
    assigned 1-based in first-seen order."""
    combined: Dict[str, Channel] = {}
    for channel in raw_channels:
        key = channel.name.lower()
        existing = combined.get(key)
        if existing is None:
            combined[key] = channel
            continue
        for source in channel.sources:
            if not existing.has_source_url(source.url):
                existing.sources.append(source)
        existing.logo = existing.logo or channel.logo
        existing.group = existing.group or channel.group
        existing.tvg_id = existing.tvg_id or channel.tvg_id
        existing.tvg_url = existing.tvg_url or channel.tvg_url

    result = list(combined.values())
    for idx, channel in enumerate(result, start=1):
        channel.id = idx
    return result


def collect_epg_urls(header_url: Optional[str], channels: List[Channel]) -> List[str]:
    urls: List[str] = []
    seen = set()
    for url in [header_url] + [c.tvg_url for c in channels]:
        if not url:
            continue
        folded = url.lower()
        if folded in seen:
            continue
        seen.add(folded)
        urls.append(url)
    return urls


def parse_m3u(content: str) -> Tuple[List[Channel], List[str]]:
    """Parse M3U/M3U8 text into (channels, epg_urls).

    Never raises for malformed lines; unusable entries are skipped."""
    if content is None:
        return [], []
    if not isinstance(content, str):
        raise TypeError(f"playlist content must be str, not {type(content).__name__}")

    lines = [s for s in (raw.strip() for raw in content.split('\n')) if s]
    if not lines:
        return [], []

    header_url = None
    if lines[0].upper().startswith("#EXTM3U"):
        header_attrs = extract_attributes(lines[0])
        for key in HEADER_EPG_KEYS:
            if key in header_attrs:
                header_url = header_attrs[key]
                break
        lines = lines[1:]

    raw = _scan_raw_channels(lines)
    channels = combine_channels(raw)
    epg_urls = collect_epg_urls(header_url, channels)
    LOG.info("Parsed playlist: %d entries -> %d channels, %d EPG url(s)", len(raw), len(channels), len(epg_urls))
    return channels, epg_urls


# =========================
# Grouping & filtering
# =========================

def group_channels(channels: List[Channel]) -> List[ChannelGroup]:
    groups: Dict[str, ChannelGroup] = {}
    for ch in channels:
        name = ch.group or UNGROUPED
        grp = groups.get(name)
        if grp is None:
            grp = groups[name] = ChannelGroup(name=name)
        grp.channels.append(ch)
    return sorted(groups.values(), key=lambda g: (g.name == UNGROUPED, g.name))


def filter_channels(channels: List[Channel], query: str = "") -> List[Channel]:
    q = (query or "").strip().lower()
    out = []
    for ch in channels:
        if ch.is_hidden:
            continue
        if q and q not in ch.name.lower() and q not in (ch.group or "").lower():
            continue
        out.append(ch)
    out.sort(key=lambda c: (c.sort_order, c.id))
    return out


# =========================
# Loading playlist content
# =========================

def is_remote(source: str) -> bool:
    return (source or "").lower().startswith(("http://", "https://"))


def load_playlist_text(source: str, timeout: int = 30, user_agent: str = DEFAULT_UA) -> str:
    if not source:
        raise ValueError("playlist source is required")
    try:
        if is_remote(source):
            req = urllib.request.Request(source, headers={"User-Agent": user_agent})
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                data = resp.read()
            LOG.debug("Fetched playlist %s (%d bytes)", source, len(data))
            return data.decode("utf-8-sig", errors="replace")
        if not os.path.isfile(source):
            raise FileNotFoundError(f"Playlist file not found: {source}")
        with open(source, "r", encoding="utf-8-sig", errors="replace") as f:
            return f.read()
    except (OSError, urllib.error.URLError, ValueError) as e:
        raise PlaylistLoadError(f"Failed to load playlist {source}: {e}") from e
