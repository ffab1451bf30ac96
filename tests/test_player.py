"""
Tests for the libVLC media engine wrapper (libVLC itself is mocked).
"""
import os
import sys
from types import SimpleNamespace
from unittest.mock import MagicMock, Mock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import player
from player import BUFFERING, ERROR, PAUSED, PLAYING, MediaEngine, MediaEngineUnavailableError


@pytest.fixture
def fake_vlc(monkeypatch):
    vlc = MagicMock()
    monkeypatch.setattr(player, "vlc", vlc)
    return vlc


def _callbacks(vlc):
    em = vlc.Instance.return_value.media_player_new.return_value.event_manager.return_value
    return {c.args[0]: c.args[1] for c in em.event_attach.call_args_list}


class TestMediaEngine:
    """Test playback control and event forwarding."""

    def test_unavailable_without_libvlc(self, monkeypatch):
        monkeypatch.setattr(player, "vlc", None)
        with pytest.raises(MediaEngineUnavailableError):
            MediaEngine()

    def test_play_sets_options(self, fake_vlc):
        engine = MediaEngine(user_agent="Test/1.0")
        media = fake_vlc.Instance.return_value.media_new.return_value
        engine.play("http://s/1", {"http-referrer": "http://ref/"})

        fake_vlc.Instance.return_value.media_new.assert_called_once_with("http://s/1")
        added = [c.args[0] for c in media.add_option.call_args_list]
        assert ":http-user-agent=Test/1.0" in added
        assert ":http-referrer=http://ref/" in added
        engine.player.set_media.assert_called_once_with(media)
        assert engine.current_url == "http://s/1"

    def test_playlist_user_agent_overrides_default(self, fake_vlc):
        engine = MediaEngine()
        media = fake_vlc.Instance.return_value.media_new.return_value
        engine.play("http://s/1", {"http-user-agent": "Custom"})
        added = [c.args[0] for c in media.add_option.call_args_list]
        assert added == [":http-user-agent=Custom"]

    def test_play_failure_emits_error(self, fake_vlc):
        engine = MediaEngine()
        engine.player.play.return_value = -1
        errors = []
        engine.on(ERROR, lambda: errors.append(True))
        engine.play("http://s/1")
        assert errors == [True]

    def test_empty_url_rejected(self, fake_vlc):
        with pytest.raises(ValueError):
            MediaEngine().play("")

    def test_vlc_events_forwarded(self, fake_vlc):
        engine = MediaEngine()
        seen = []
        engine.on(PLAYING, lambda: seen.append(PLAYING))
        engine.on(PAUSED, lambda: seen.append(PAUSED))
        engine.on(BUFFERING, lambda pct: seen.append((BUFFERING, pct)))

        callbacks = _callbacks(fake_vlc)
        callbacks[fake_vlc.EventType.MediaPlayerPlaying](None)
        callbacks[fake_vlc.EventType.MediaPlayerPaused](None)
        callbacks[fake_vlc.EventType.MediaPlayerBuffering](SimpleNamespace(u=SimpleNamespace(new_cache=42.5)))
        assert seen == [PLAYING, PAUSED, (BUFFERING, 42.5)]

    def test_failing_listener_does_not_break_others(self, fake_vlc):
        engine = MediaEngine()
        good = Mock()
        engine.on(ERROR, Mock(side_effect=RuntimeError("boom")))
        engine.on(ERROR, good)
        _callbacks(fake_vlc)[fake_vlc.EventType.MediaPlayerEncounteredError](None)
        good.assert_called_once_with()

    def test_unknown_event_rejected(self, fake_vlc):
        with pytest.raises(ValueError):
            MediaEngine().on("ended", lambda: None)

    @pytest.mark.parametrize("volume,expected", [(50, 50), (150, 100), (-5, 0)])
    def test_volume_clamped(self, fake_vlc, volume, expected):
        engine = MediaEngine()
        engine.set_volume(volume)
        engine.player.audio_set_volume.assert_called_with(expected)

    def test_pause_resume_stop_release(self, fake_vlc):
        engine = MediaEngine()
        engine.pause()
        engine.player.set_pause.assert_called_with(1)
        engine.resume()
        engine.player.set_pause.assert_called_with(0)
        engine.stop()
        assert engine.current_url is None
        engine.release()
        engine.player.release.assert_called_once()
        fake_vlc.Instance.return_value.release.assert_called_once()
