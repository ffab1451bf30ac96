import os
import logging
import datetime
import threading
import concurrent.futures
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from epg import EpgLoadCancelled, EpgService, Programme
from options import (
    apply_channel_customizations,
    collect_channel_customizations,
    load_config,
    remember_source_index,
    save_config,
)
from player import ERROR, PLAYING, MediaEngine, MediaEngineUnavailableError
from playlist import Channel, ChannelGroup, filter_channels, group_channels, is_remote, load_playlist_text, parse_m3u

LOG = logging.getLogger(__name__)


@dataclass
class GuideInfo:
    current: Optional[Programme] = None
    upcoming: List[Programme] = field(default_factory=list)
    progress: float = 0.0

    @property
    def has_upcoming(self) -> bool:
        return bool(self.upcoming)


def compose_guide(current: Optional[Programme], upcoming: List[Programme],
                  now: Optional[datetime.datetime] = None) -> GuideInfo:
    """Build the now/next view for a channel.

    When nothing is airing but something is scheduled, the first upcoming
    programme is shown as current and dropped from the upcoming list."""
    upcoming = list(upcoming)
    if current is None and upcoming:
        current = upcoming.pop(0)
    progress = current.progress(now) if current is not None else 0.0
    return GuideInfo(current=current, upcoming=upcoming, progress=progress)


class PlaylistSession:
    """One loaded playlist with its EPG data, customizations and playback state."""

    def __init__(self, cfg: Optional[Dict] = None, epg: Optional[EpgService] = None,
                 engine: Optional[MediaEngine] = None,
                 loader: Callable[..., str] = load_playlist_text,
                 persist: bool = True):
        self.cfg = cfg if cfg is not None else load_config()
        self.epg = epg or EpgService(timeout=self.cfg.get("epg_timeout", 60),
                                     user_agent=self.cfg.get("epg_user_agent", "IPTVPlayer/1.0"))
        self.engine = engine
        self.channels: List[Channel] = []
        self.epg_urls: List[str] = []
        self.current_channel: Optional[Channel] = None
        self.epg_future: Optional[concurrent.futures.Future] = None
        self._loader = loader
        self._persist = persist
        self._failovers = 0
        if engine is not None:
            engine.on(ERROR, self._on_playback_error)
            engine.on(PLAYING, self._on_playing)
            engine.set_volume(self.cfg.get("volume", 75))

    def _save(self):
        if self._persist:
            save_config(self.cfg)

    # ---------- playlist ----------
    def load(self, source: str, load_epg: bool = True) -> List[Channel]:
        """Replace the current playlist with ``source``.

        Raises ``PlaylistLoadError`` when the file or url cannot be read."""
        if self.engine is not None:
            self.engine.stop()
        self.current_channel = None
        # Guide data belongs to the old playlist's channel ids.
        self.epg.clear()
        self.epg_future = None

        text = self._loader(source, timeout=self.cfg.get("playlist_timeout", 30))
        channels, epg_urls = parse_m3u(text)

        if source == self.cfg.get("last_playlist_path"):
            apply_channel_customizations(channels, self.cfg)
        else:
            self.cfg["channel_customizations"] = {}
            for ch in channels:
                ch.sort_order = ch.id

        self.channels = channels
        self.epg_urls = epg_urls
        self.cfg["last_playlist_path"] = source
        self._save()
        LOG.info("Loaded %d channels from %s", len(channels), source)

        if load_epg and self.cfg.get("epg_enabled", True) and epg_urls:
            self.epg_future = self.epg.load_epg_async(epg_urls)
            self.epg_future.add_done_callback(self._on_epg_done)
        return channels

    def load_last(self, load_epg: bool = True) -> Optional[List[Channel]]:
        path = self.cfg.get("last_playlist_path") or ""
        if not path or not (is_remote(path) or os.path.isfile(path)):
            return None
        LOG.info("Auto-loading last playlist: %s", path)
        return self.load(path, load_epg=load_epg)

    def _on_epg_done(self, future: concurrent.futures.Future):
        try:
            results = future.result()
        except (EpgLoadCancelled, concurrent.futures.CancelledError):
            LOG.info("EPG loading was cancelled")
            return
        except Exception:
            LOG.exception("Failed to load EPG data")
            return
        failed = [r.url for r in results if not r.ok]
        if failed:
            LOG.warning("EPG feeds failed: %s", ", ".join(failed))

    def visible_channels(self, query: str = "") -> List[Channel]:
        return filter_channels(self.channels, query)

    def groups(self, query: str = "") -> List[ChannelGroup]:
        return group_channels(self.visible_channels(query))

    def save_customizations(self):
        self.cfg["channel_customizations"] = collect_channel_customizations(self.channels)
        self._save()

    # ---------- guide ----------
    def guide(self, channel: Channel, count: Optional[int] = None,
              now: Optional[datetime.datetime] = None) -> GuideInfo:
        if channel is None:
            return GuideInfo()
        count = self.cfg.get("upcoming_count", 5) if count is None else count
        current = self.epg.current_programme(channel.tvg_id, channel.name, now=now)
        upcoming = self.epg.upcoming_programmes(channel.tvg_id, channel.name, count=count, now=now)
        info = compose_guide(current, upcoming, now=now)
        LOG.debug("Guide for '%s': current=%r upcoming=%d",
                  channel.name, info.current.title if info.current else None, len(info.upcoming))
        return info

    # ---------- playback ----------
    def play(self, channel: Channel):
        if self.engine is None:
            raise MediaEngineUnavailableError("no media engine attached")
        if channel is not self.current_channel:
            self._failovers = 0
        self.current_channel = channel
        src = channel.source
        if src is None:
            raise ValueError(f"channel {channel.name!r} has no sources")
        LOG.info("Playing %s (source %d of %d)", channel.name, channel.current_source_index + 1, channel.source_count)
        self.engine.play(src.url, src.options)

    def next_source(self, channel: Optional[Channel] = None) -> bool:
        return self._cycle(channel, forward=True)

    def previous_source(self, channel: Optional[Channel] = None) -> bool:
        return self._cycle(channel, forward=False)

    def _cycle(self, channel: Optional[Channel], forward: bool) -> bool:
        channel = channel or self.current_channel
        if channel is None:
            return False
        moved = channel.next_source() if forward else channel.previous_source()
        if not moved:
            return False
        remember_source_index(self.cfg, channel)
        self._save()
        if channel is self.current_channel and self.engine is not None:
            self.play(channel)
        return True

    def set_volume(self, volume: int) -> int:
        volume = max(0, min(100, int(volume)))
        self.cfg["volume"] = volume
        self._save()
        if self.engine is not None:
            self.engine.set_volume(volume)
        return volume

    def _on_playing(self):
        self._failovers = 0

    def _on_playback_error(self):
        # Called on libVLC's event thread; re-entering libVLC there can deadlock.
        threading.Thread(target=self.failover, daemon=True).start()

    def failover(self) -> bool:
        """Move to the next source after a playback error, trying each source once."""
        channel = self.current_channel
        if channel is None or channel.source_count <= 1:
            return False
        if self._failovers + 1 >= channel.source_count:
            LOG.warning("All %d sources failed for %s", channel.source_count, channel.name)
            return False
        self._failovers += 1
        LOG.info("Playback error on %s, trying source %d of %d", channel.name,
                 (channel.current_source_index + 1) % channel.source_count + 1, channel.source_count)
        return self._cycle(channel, forward=True)

    def close(self):
        self.epg.shutdown()
        if self.engine is not None:
            self.engine.release()
