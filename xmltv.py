"""Streaming XMLTV reading helpers.

Feeds can be tens of megabytes, so nothing here builds a whole document tree:
bytes are pulled in fixed-size chunks, inflated on the fly when gzip is
detected, and pushed through ``xml.etree.ElementTree.XMLPullParser``. Each
finished ``<channel>``/``<programme>`` subtree is turned into a small record
and then detached from the tree.
"""
import io
import re
import gzip
import logging
import datetime
import urllib.request
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import BinaryIO, Iterable, Iterator, List, Optional, Union

LOG = logging.getLogger(__name__)

CHUNK_SIZE = 65536
GZIP_MAGIC = b"\x1f\x8b"

_TS_HEAD_RX = re.compile(r'^\d{14}', re.ASCII)
_TS_OFFSET_RX = re.compile(r'^([+\-])(\d{2})(\d{2})$', re.ASCII)


# =========================
# XMLTV time parsing (exception-safe)
# =========================

def parse_xmltv_datetime(value: Optional[str]) -> Optional[datetime.datetime]:
    """Parse ``yyyyMMddHHmmss[ ±HHMM]`` into an aware local datetime.

    Returns None for anything that does not fit. Without an offset the
    timestamp is taken as local wall-clock time."""
    if not value:
        return None
    s = str(value).strip()
    if len(s) < 14 or not _TS_HEAD_RX.match(s):
        return None
    try:
        dt = datetime.datetime.strptime(s[:14], "%Y%m%d%H%M%S")
        rest = s[14:].strip()
        if not rest:
            return dt.astimezone()
        m = _TS_OFFSET_RX.match(rest)
        if not m:
            return None
        sign = 1 if m.group(1) == '+' else -1
        offset = datetime.timedelta(hours=int(m.group(2)), minutes=int(m.group(3)))
        tz = datetime.timezone(sign * offset)
        return dt.replace(tzinfo=tz).astimezone()
    except (ValueError, OverflowError, OSError):
        return None


# =========================
# Byte stream handling
# =========================

def is_gzip(src: str, head: bytes) -> bool:
    return (src or "").lower().endswith(".gz") or head[:2] == GZIP_MAGIC


def open_feed(src: str, timeout: int = 60, user_agent: str = "IPTVPlayer/1.0") -> BinaryIO:
    """Open an XMLTV source (http/https url or local path) as a binary stream."""
    if src.lower().startswith(("http://", "https://")):
        req = urllib.request.Request(src, headers={"User-Agent": user_agent})
        resp = urllib.request.urlopen(req, timeout=timeout)
        LOG.debug("HTTP GET %s | status=%s", src, getattr(resp, "status", "?"))
        return resp
    return open(src, "rb")


def open_decoded(src: str, stream: BinaryIO) -> BinaryIO:
    """Return a reader of decoded bytes, gunzipping when the url or first bytes say so.

    The first bytes are peeked, not consumed. Concatenated gzip members and
    zero padding after the last member are handled by ``gzip.GzipFile``."""
    buffered = stream if hasattr(stream, "peek") else io.BufferedReader(stream)
    if is_gzip(src, buffered.peek(2)[:2]):
        return gzip.GzipFile(fileobj=buffered)
    return buffered


def read_chunks(stream: BinaryIO, size: int = CHUNK_SIZE) -> Iterator[bytes]:
    # read1 returns what one underlying read gives, so callers see data as it arrives
    read = getattr(stream, "read1", stream.read)
    while True:
        chunk = read(size)
        if not chunk:
            break
        yield chunk


# =========================
# Element records
# =========================

@dataclass
class XmlTvChannel:
    id: str
    display_names: List[str] = field(default_factory=list)


@dataclass
class XmlTvProgramme:
    channel: str
    start: str
    stop: str
    title: Optional[str] = None
    desc: Optional[str] = None
    category: Optional[str] = None


XmlTvRecord = Union[XmlTvChannel, XmlTvProgramme]


def _local(tag) -> str:
    if not isinstance(tag, str):
        return ""
    return tag.rsplit('}', 1)[-1]


def _text(elem: ET.Element) -> str:
    return "".join(elem.itertext())


def _channel_record(elem: ET.Element) -> Optional[XmlTvChannel]:
    ch_id = elem.get("id")
    if not ch_id:
        return None
    rec = XmlTvChannel(id=ch_id)
    for child in elem.iter():
        if child is elem or _local(child.tag) != "display-name":
            continue
        name = _text(child).strip()
        if name:
            rec.display_names.append(name)
    return rec


def _programme_record(elem: ET.Element) -> Optional[XmlTvProgramme]:
    ch_id = elem.get("channel")
    start = elem.get("start")
    stop = elem.get("stop")
    if not ch_id or not start or not stop:
        return None
    rec = XmlTvProgramme(channel=ch_id, start=start, stop=stop)
    # Scan only this programme's own subtree; a repeated tag keeps its last value.
    for child in elem.iter():
        if child is elem:
            continue
        tag = _local(child.tag)
        if tag == "title":
            rec.title = _text(child).strip()
        elif tag == "desc":
            rec.desc = _text(child).strip()
        elif tag == "category":
            rec.category = _text(child).strip()
    return rec


def iter_xmltv(chunks: Iterable[bytes]) -> Iterator[XmlTvRecord]:
    """Pull ``<channel>`` and ``<programme>`` records out of an XMLTV byte stream.

    Raises ``xml.etree.ElementTree.ParseError`` when the document is malformed;
    records yielded before that point are complete."""
    parser = ET.XMLPullParser(["start", "end"])
    stack: List[ET.Element] = []

    def drain() -> Iterator[XmlTvRecord]:
        for event, elem in parser.read_events():
            if event == "start":
                stack.append(elem)
                continue
            if stack:
                stack.pop()
            parent = stack[-1] if stack else None
            tag = _local(elem.tag)
            if tag == "channel" and parent is not None:
                rec = _channel_record(elem)
            elif tag == "programme" and parent is not None:
                rec = _programme_record(elem)
            else:
                continue
            # Detach the finished subtree so the document never accumulates.
            elem.clear()
            parent.remove(elem)
            if rec is not None:
                yield rec

    for chunk in chunks:
        parser.feed(chunk)
        yield from drain()
    parser.close()
    yield from drain()
