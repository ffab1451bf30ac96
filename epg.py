import os
import time
import zlib
import http.client
import logging
import logging.handlers
import tempfile
import datetime
import threading
import itertools
import concurrent.futures
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

import psutil

from xmltv import (
    XmlTvChannel,
    XmlTvProgramme,
    iter_xmltv,
    open_decoded,
    open_feed,
    parse_xmltv_datetime,
    read_chunks,
)

DEFAULT_UA = "IPTVPlayer/1.0"
DEFAULT_TIMEOUT = 60
UNKNOWN_TITLE = "Unknown"

# =========================
# Debug logging (rotating file) + memory helpers
# =========================

DEBUG = os.getenv("EPG_DEBUG", "0").strip() not in {"0", "false", "False"}
LOG_PATH = os.path.join(tempfile.gettempdir(), "iptvplayer_epg_debug.log")
_logger = logging.getLogger("EPG")
if not _logger.handlers:
    _logger.setLevel(logging.DEBUG if DEBUG else logging.INFO)
    _fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    try:
        _fh = logging.handlers.RotatingFileHandler(LOG_PATH, maxBytes=5 * 1024 * 1024, backupCount=2, encoding="utf-8")
        _fh.setFormatter(_fmt)
        _logger.addHandler(_fh)
        if DEBUG:
            _sh = logging.StreamHandler()
            _sh.setFormatter(_fmt)
            _logger.addHandler(_sh)
        _logger.debug("EPG debug logging initialized. File: %s", LOG_PATH)
    except OSError as e:
        print(f"Could not initialize EPG logger at {LOG_PATH}. Error: {e}")


def _mem_mb() -> int:
    try:
        return int(psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024))
    except psutil.Error:
        return -1


def _safe(s, n=200) -> str:
    s = str(s or "")
    return (s[:n] + "...") if len(s) > n else s


def _now() -> datetime.datetime:
    return datetime.datetime.now().astimezone()


class EpgLoadCancelled(Exception):
    """Raised when an EPG load is cancelled or its index was cleared underneath it."""


# =========================
# Programme
# =========================

@dataclass(frozen=True)
class Programme:
    channel_id: str
    title: str
    start: datetime.datetime
    stop: datetime.datetime
    description: Optional[str] = None
    category: Optional[str] = None

    def is_current(self, now: Optional[datetime.datetime] = None) -> bool:
        now = now or _now()
        return self.start <= now < self.stop

    def is_future(self, now: Optional[datetime.datetime] = None) -> bool:
        now = now or _now()
        return now < self.start

    def progress(self, now: Optional[datetime.datetime] = None) -> float:
        """Fraction of the programme already aired, 0.0 when it is not on now."""
        now = now or _now()
        if not self.is_current(now):
            return 0.0
        total = (self.stop - self.start).total_seconds()
        if total <= 0:
            return 0.0
        elapsed = (now - self.start).total_seconds()
        return min(1.0, max(0.0, elapsed / total))

    @property
    def start_time(self) -> str:
        return self.start.strftime("%H:%M")

    @property
    def time_range(self) -> str:
        return f"{self.start:%H:%M} - {self.stop:%H:%M}"


# =========================
# Document batches
# =========================

@dataclass
class DocumentBatch:
    """Everything one XMLTV document contributed, in document order."""
    url: str
    aliases: List[Tuple[str, str]] = field(default_factory=list)
    programmes: List[Programme] = field(default_factory=list)
    channel_count: int = 0
    skipped: int = 0

    def add_channel(self, rec: XmlTvChannel):
        self.channel_count += 1
        for name in rec.display_names:
            self.aliases.append((name, rec.id))
            # "CCTV-13 News" is also reachable as "CCTV-13"
            space = name.find(' ')
            if space > 0:
                self.aliases.append((name[:space], rec.id))

    def add_programme(self, rec: XmlTvProgramme):
        start = parse_xmltv_datetime(rec.start)
        stop = parse_xmltv_datetime(rec.stop)
        if start is None or stop is None:
            self.skipped += 1
            return
        self.programmes.append(Programme(
            channel_id=rec.channel,
            title=rec.title or UNKNOWN_TITLE,
            start=start,
            stop=stop,
            description=rec.desc or None,
            category=rec.category or None,
        ))


def normalize_name(name: str) -> str:
    """Lower-case and drop '-', ' ', '.', '_' so "CCTV-13" and "cctv13" compare equal."""
    n = (name or "").lower()
    for ch in "- ._":
        n = n.replace(ch, "")
    return n


def _sort_key(p: Programme):
    return p.start


# =========================
# EPG index
# =========================

class EpgIndex:
    """Programmes per XMLTV channel id plus the display-name alias table.

    All lookups are case-insensitive. Aliases are first-registration-wins.
    Iteration follows insertion order."""

    def __init__(self):
        self._programmes: Dict[str, List[Programme]] = {}
        self._ids: Dict[str, str] = {}
        self._aliases: Dict[str, Tuple[str, str, str]] = {}
        self._loaded_urls: Dict[str, str] = {}

    # ---------- reads ----------
    def channel_id(self, candidate: Optional[str]) -> Optional[str]:
        """Canonical spelling of ``candidate`` if it has programmes, else None."""
        if not candidate:
            return None
        return self._ids.get(candidate.lower())

    def alias_target(self, alias: Optional[str]) -> Optional[str]:
        if not alias:
            return None
        entry = self._aliases.get(alias.lower())
        return entry[1] if entry else None

    def aliases(self) -> Iterator[Tuple[str, str]]:
        for alias, target, _norm in self._aliases.values():
            yield alias, target

    def normalized_aliases(self) -> Iterator[Tuple[str, str]]:
        for _alias, target, norm in self._aliases.values():
            yield norm, target

    def channel_ids(self) -> Iterator[str]:
        return iter(list(self._ids.values()))

    def programmes_for(self, channel_id: Optional[str]) -> List[Programme]:
        if not channel_id:
            return []
        return list(self._programmes.get(channel_id.lower(), ()))

    def has_loaded_url(self, url: str) -> bool:
        return bool(url) and url.lower() in self._loaded_urls

    @property
    def loaded_urls(self) -> List[str]:
        return list(self._loaded_urls.values())

    @property
    def channel_count(self) -> int:
        return len(self._programmes)

    @property
    def alias_count(self) -> int:
        return len(self._aliases)

    @property
    def programme_count(self) -> int:
        return sum(len(v) for v in self._programmes.values())

    @property
    def is_loaded(self) -> bool:
        return bool(self._programmes)

    # ---------- writes ----------
    def add_alias(self, alias: str, channel_id: str) -> bool:
        alias = (alias or "").strip()
        if not alias or not channel_id:
            return False
        key = alias.lower()
        if key in self._aliases:
            return False
        self._aliases[key] = (alias, channel_id, normalize_name(alias))
        return True

    def add_programmes(self, programmes: Iterable[Programme], _owned: Optional[Set[str]] = None) -> Set[str]:
        """Append programmes and re-sort every touched channel. Returns the touched keys."""
        touched: Set[str] = set()
        for p in programmes:
            key = p.channel_id.lower()
            lst = self._programmes.get(key)
            if lst is None:
                lst = self._programmes[key] = []
                self._ids[key] = p.channel_id
                if _owned is not None:
                    _owned.add(key)
            elif _owned is not None and key not in _owned:
                # copy-on-write: the list may still be shared with an older snapshot
                lst = self._programmes[key] = list(lst)
                _owned.add(key)
            lst.append(p)
            touched.add(key)
        for key in touched:
            self._programmes[key].sort(key=_sort_key)
        return touched

    def mark_loaded(self, url: str):
        if url:
            self._loaded_urls.setdefault(url.lower(), url)

    def apply(self, batch: DocumentBatch):
        """Merge a document batch into this index in place."""
        for alias, channel_id in batch.aliases:
            self.add_alias(alias, channel_id)
        self.add_programmes(batch.programmes)
        self.mark_loaded(batch.url)

    def merged(self, batch: DocumentBatch) -> "EpgIndex":
        """Return a new index holding this one plus ``batch``; self is left untouched."""
        new = EpgIndex()
        new._programmes = dict(self._programmes)
        new._ids = dict(self._ids)
        new._aliases = dict(self._aliases)
        new._loaded_urls = dict(self._loaded_urls)
        for alias, channel_id in batch.aliases:
            new.add_alias(alias, channel_id)
        new.add_programmes(batch.programmes, _owned=set())
        new.mark_loaded(batch.url)
        return new


# =========================
# Channel resolution
# =========================

class ChannelResolver:
    """Map a playlist channel (tvg-id, display name) onto an XMLTV channel id.

    Strategies, first hit wins, and a hit only counts when the target id has
    programmes:
      1) tvg-id is an XMLTV channel id
      2) tvg-id is a display-name alias
      3) name is a display-name alias
      4) name is an XMLTV channel id
      5) some alias starts with the name
      6) normalized name equals a normalized alias, then a normalized id
    """

    def __init__(self, index: EpgIndex):
        self.index = index

    def resolve(self, declared_id: Optional[str], display_name: Optional[str] = None) -> Optional[str]:
        idx = self.index
        declared_id = (declared_id or "").strip()
        display_name = (display_name or "").strip()

        if declared_id:
            hit = idx.channel_id(declared_id)
            if hit:
                return hit
            hit = idx.channel_id(idx.alias_target(declared_id))
            if hit:
                return hit

        if not display_name:
            _logger.debug("Could not resolve channel: tvg-id=%r name=%r", declared_id, display_name)
            return None

        hit = idx.channel_id(idx.alias_target(display_name))
        if hit:
            return hit
        hit = idx.channel_id(display_name)
        if hit:
            return hit

        folded = display_name.lower()
        for alias, target in idx.aliases():
            if alias.lower().startswith(folded):
                hit = idx.channel_id(target)
                if hit:
                    _logger.debug("Fuzzy matched channel '%s' -> display-name '%s' -> id '%s'", display_name, alias, hit)
                    return hit

        norm = normalize_name(display_name)
        if norm:
            for alias_norm, target in idx.normalized_aliases():
                if alias_norm == norm:
                    hit = idx.channel_id(target)
                    if hit:
                        _logger.debug("Normalized matched channel '%s' -> id '%s'", display_name, hit)
                        return hit
            for ch_id in idx.channel_ids():
                if normalize_name(ch_id) == norm:
                    _logger.debug("Normalized matched channel '%s' -> xmltv-id '%s'", display_name, ch_id)
                    return ch_id

        _logger.debug("Could not resolve channel: tvg-id=%r name=%r", declared_id, _safe(display_name, 120))
        return None


# =========================
# Queries
# =========================

class EpgQuery:
    def __init__(self, index: EpgIndex):
        self.index = index
        self.resolver = ChannelResolver(index)

    def current_programme(self, declared_id: Optional[str], display_name: Optional[str] = None,
                          now: Optional[datetime.datetime] = None) -> Optional[Programme]:
        ch_id = self.resolver.resolve(declared_id, display_name)
        if ch_id is None:
            return None
        now = now or _now()
        programmes = self.index.programmes_for(ch_id)
        for p in programmes:
            if p.start <= now < p.stop:
                return p
        if programmes and DEBUG:
            _logger.debug("No current programme for '%s' at %s. EPG range: %s to %s (%d programmes)",
                          ch_id, now.strftime("%H:%M:%S"), programmes[0].start, programmes[-1].stop, len(programmes))
        return None

    def upcoming_programmes(self, declared_id: Optional[str], display_name: Optional[str] = None,
                            count: int = 5, now: Optional[datetime.datetime] = None) -> List[Programme]:
        if count < 0:
            raise ValueError("count must be >= 0")
        ch_id = self.resolver.resolve(declared_id, display_name)
        if ch_id is None:
            return []
        now = now or _now()
        future = (p for p in self.index.programmes_for(ch_id) if p.start > now)
        return list(itertools.islice(future, count))


# =========================
# Ingestion
# =========================

LOADED = "loaded"
PARTIAL = "partial"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class FeedResult:
    url: str
    status: str
    channels: int = 0
    programmes: int = 0
    skipped: int = 0
    error: Optional[str] = None
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status in (LOADED, PARTIAL, SKIPPED)


def _unique(urls: Iterable[str]) -> List[str]:
    out: List[str] = []
    seen = set()
    for u in urls:
        u = (u or "").strip()
        if not u or u.lower() in seen:
            continue
        seen.add(u.lower())
        out.append(u)
    return out


class EpgIngestor:
    """Download XMLTV feeds one after another and hand each document to ``publish``."""

    def __init__(self, timeout: int = DEFAULT_TIMEOUT, user_agent: str = DEFAULT_UA,
                 opener: Callable = open_feed):
        self.timeout = timeout
        self.user_agent = user_agent
        self._opener = opener

    def _guarded(self, chunks: Iterable[bytes], cancel: Optional[threading.Event]) -> Iterator[bytes]:
        for chunk in chunks:
            if cancel is not None and cancel.is_set():
                raise EpgLoadCancelled()
            yield chunk

    def fetch(self, src: str, cancel: Optional[threading.Event] = None) -> Tuple[FeedResult, Optional[DocumentBatch]]:
        """Read one feed. Network/decode failures come back as a FAILED result."""
        t0 = time.time()
        batch = DocumentBatch(url=src)
        stream = None
        status = LOADED
        error = None
        _logger.debug("EPG START src=%s (mem=%sMB)", src, _mem_mb())
        try:
            stream = self._opener(src, self.timeout, self.user_agent)
            chunks = self._guarded(read_chunks(open_decoded(src, stream)), cancel)
            for rec in iter_xmltv(chunks):
                if isinstance(rec, XmlTvChannel):
                    batch.add_channel(rec)
                else:
                    batch.add_programme(rec)
        except EpgLoadCancelled:
            _logger.info("EPG loading cancelled during %s", src)
            raise
        except ET.ParseError as e:
            # Keep whatever was read before the document broke.
            _logger.warning("EPG PARSE ERROR src=%s : %s (kept %d programmes)", src, e, len(batch.programmes))
            status, error = PARTIAL, str(e)
        except (OSError, ValueError, zlib.error, EOFError, http.client.HTTPException) as e:
            _logger.exception("EPG ERROR src=%s : %s", src, e)
            return FeedResult(src, FAILED, error=str(e), elapsed=time.time() - t0), None
        finally:
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass

        result = FeedResult(src, status, channels=batch.channel_count, programmes=len(batch.programmes),
                            skipped=batch.skipped, error=error, elapsed=time.time() - t0)
        _logger.debug("EPG DONE src=%s channels=%d progs=%d skipped=%d elapsed=%.1fs mem=%sMB",
                      src, result.channels, result.programmes, result.skipped, result.elapsed, _mem_mb())
        return result, batch

    def load(self, urls: Iterable[str], publish: Callable[[DocumentBatch], None],
             is_loaded: Optional[Callable[[str], bool]] = None,
             cancel: Optional[threading.Event] = None) -> List[FeedResult]:
        """Ingest every distinct url in order.

        One feed failing never stops the batch; cancellation raises
        ``EpgLoadCancelled`` and leaves already published documents in place."""
        results: List[FeedResult] = []
        for url in _unique(urls):
            if cancel is not None and cancel.is_set():
                _logger.info("EPG loading cancelled before %s", url)
                raise EpgLoadCancelled()
            if is_loaded is not None and is_loaded(url):
                results.append(FeedResult(url, SKIPPED))
                continue
            result, batch = self.fetch(url, cancel)
            if batch is not None:
                publish(batch)
            results.append(result)
        loaded = sum(1 for r in results if r.status in (LOADED, PARTIAL))
        failed = sum(1 for r in results if r.status == FAILED)
        _logger.info("EPG SUMMARY feeds=%d loaded=%d failed=%d mem=%sMB", len(results), loaded, failed, _mem_mb())
        return results


# =========================
# Service facade
# =========================

class EpgService:
    """Session-wide EPG state: one index snapshot, swapped whole on every change."""

    def __init__(self, ingestor: Optional[EpgIngestor] = None, timeout: int = DEFAULT_TIMEOUT,
                 user_agent: str = DEFAULT_UA):
        self._ingestor = ingestor or EpgIngestor(timeout=timeout, user_agent=user_agent)
        self._index = EpgIndex()
        self._lock = threading.Lock()
        self._generation = 0
        self._cancel: Optional[threading.Event] = None
        self._future: Optional[concurrent.futures.Future] = None
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None

    @property
    def index(self) -> EpgIndex:
        return self._index

    @property
    def is_loaded(self) -> bool:
        return self._index.is_loaded

    @property
    def is_loading(self) -> bool:
        return self._future is not None and not self._future.done()

    def has_loaded_url(self, url: str) -> bool:
        return self._index.has_loaded_url(url)

    def _publish(self, batch: DocumentBatch, generation: int):
        with self._lock:
            if generation != self._generation:
                raise EpgLoadCancelled("EPG data was cleared while loading")
            self._index = self._index.merged(batch)

    def load_epg(self, urls: Iterable[str], cancel: Optional[threading.Event] = None) -> List[FeedResult]:
        with self._lock:
            generation = self._generation
        return self._ingestor.load(
            urls,
            publish=lambda batch: self._publish(batch, generation),
            is_loaded=self.has_loaded_url,
            cancel=cancel,
        )

    def load_epg_async(self, urls: Iterable[str]) -> concurrent.futures.Future:
        """Start loading in the background, cancelling any load still running."""
        self.cancel()
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="EPGLoad")
        cancel = threading.Event()
        self._cancel = cancel
        url_list = list(urls)
        _logger.debug("Starting EPG load for %d url(s)", len(url_list))
        self._future = self._executor.submit(self.load_epg, url_list, cancel)
        return self._future

    def cancel(self):
        if self._cancel is not None:
            self._cancel.set()

    def clear(self):
        """Cancel any running load and drop every channel, alias and loaded url."""
        self.cancel()
        with self._lock:
            self._generation += 1
            self._index = EpgIndex()

    def shutdown(self):
        """Cancel any running load and wait for the worker to leave its fetch."""
        self.cancel()
        if self._executor is not None:
            # cancellation is checked per chunk, so the wait is one read at most
            self._executor.shutdown(wait=True)
            self._executor = None

    # ---------- queries (always against one snapshot) ----------
    def resolve(self, declared_id: Optional[str], display_name: Optional[str] = None) -> Optional[str]:
        return ChannelResolver(self._index).resolve(declared_id, display_name)

    def current_programme(self, declared_id: Optional[str], display_name: Optional[str] = None,
                          now: Optional[datetime.datetime] = None) -> Optional[Programme]:
        return EpgQuery(self._index).current_programme(declared_id, display_name, now=now)

    def upcoming_programmes(self, declared_id: Optional[str], display_name: Optional[str] = None,
                            count: int = 5, now: Optional[datetime.datetime] = None) -> List[Programme]:
        return EpgQuery(self._index).upcoming_programmes(declared_id, display_name, count=count, now=now)
