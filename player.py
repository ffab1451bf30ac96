import logging
from typing import Callable, Dict, List, Optional

try:
    import vlc  # type: ignore
except Exception as _err:  # pragma: no cover - import guard
    vlc = None  # type: ignore
    _VLC_IMPORT_ERROR = _err
else:
    _VLC_IMPORT_ERROR = None

LOG = logging.getLogger(__name__)

DEFAULT_UA = "IPTVPlayer/1.0"

PLAYING = "playing"
PAUSED = "paused"
STOPPED = "stopped"
BUFFERING = "buffering"
ERROR = "error"
EVENTS = (PLAYING, PAUSED, STOPPED, BUFFERING, ERROR)


class MediaEngineUnavailableError(RuntimeError):
    """Raised when libVLC cannot be loaded."""


def _require_vlc():
    if vlc is None:
        detail = _VLC_IMPORT_ERROR or "python-vlc (libVLC) is not installed."
        raise MediaEngineUnavailableError(str(detail))


class MediaEngine:
    """Thin libVLC wrapper: play a url, report playing/paused/stopped/buffering/error."""

    def __init__(self, instance_args: Optional[List[str]] = None, user_agent: str = DEFAULT_UA):
        _require_vlc()
        self.user_agent = user_agent
        self.instance = vlc.Instance(*(instance_args or ["--quiet"]))
        self.player = self.instance.media_player_new()
        self._listeners: Dict[str, List[Callable]] = {e: [] for e in EVENTS}
        self.current_url: Optional[str] = None
        self._attach_events()

    def _attach_events(self):
        em = self.player.event_manager()
        em.event_attach(vlc.EventType.MediaPlayerPlaying, lambda _e: self._emit(PLAYING))
        em.event_attach(vlc.EventType.MediaPlayerPaused, lambda _e: self._emit(PAUSED))
        em.event_attach(vlc.EventType.MediaPlayerStopped, lambda _e: self._emit(STOPPED))
        em.event_attach(vlc.EventType.MediaPlayerEncounteredError, lambda _e: self._emit(ERROR))
        em.event_attach(vlc.EventType.MediaPlayerBuffering, self._on_buffering)

    def _on_buffering(self, event):
        try:
            percent = float(event.u.new_cache)
        except (AttributeError, TypeError, ValueError):
            percent = 0.0
        self._emit(BUFFERING, percent)

    def on(self, event: str, callback: Callable):
        if event not in self._listeners:
            raise ValueError(f"unknown media event: {event}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, *args):
        # libVLC calls back on its own thread; a broken listener must not take it down.
        for cb in list(self._listeners.get(event, ())):
            try:
                cb(*args)
            except Exception:
                LOG.exception("Media event listener failed for %s", event)

    def play(self, url: str, options: Optional[Dict[str, str]] = None):
        if not url:
            raise ValueError("url is required")
        opts = {"http-user-agent": self.user_agent}
        opts.update(options or {})
        media = self.instance.media_new(url)
        for key, value in opts.items():
            media.add_option(f":{key}={value}")
        try:
            self.player.stop()
        except Exception:
            LOG.debug("stop before play failed", exc_info=True)
        self.player.set_media(media)
        self.current_url = url
        LOG.debug("Calling player.play() for %s", url)
        if self.player.play() == -1:
            self._emit(ERROR)

    def pause(self):
        self.player.set_pause(1)

    def resume(self):
        self.player.set_pause(0)

    def stop(self):
        self.player.stop()
        self.current_url = None

    def set_volume(self, volume: int):
        self.player.audio_set_volume(max(0, min(100, int(volume))))

    def release(self):
        try:
            self.player.stop()
            self.player.release()
        finally:
            self.instance.release()
