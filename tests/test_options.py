"""
Tests for config persistence and per-channel customizations.
"""
import json
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import options
from options import (
    apply_channel_customizations,
    channel_key,
    collect_channel_customizations,
    default_config,
    load_config,
    remember_source_index,
    save_config,
)
from playlist import Channel, ChannelSource


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    """Point every config location at a temp dir."""
    monkeypatch.setattr(options, "_CONFIG_PATH", None)
    monkeypatch.setattr(options, "get_config_read_candidates",
                        lambda: [str(tmp_path / options.CONFIG_FILE)])
    monkeypatch.setattr(options, "get_user_config_dir", lambda: str(tmp_path))
    return tmp_path


def _channel(cid, name, urls):
    return Channel(name=name, id=cid, sources=[ChannelSource(url=u) for u in urls], sort_order=cid)


class TestConfig:
    """Test loading and saving the settings file."""

    def test_defaults_when_missing(self, config_dir):
        cfg = load_config()
        assert cfg == default_config()
        assert cfg["epg_timeout"] == 60
        assert cfg["epg_user_agent"] == "IPTVPlayer/1.0"
        assert options.get_loaded_config_path() == ""

    def test_default_config_is_not_shared(self):
        a = default_config()
        a["channel_customizations"]["x"] = {}
        assert default_config()["channel_customizations"] == {}

    def test_save_then_load(self, config_dir):
        cfg = default_config()
        cfg["last_playlist_path"] = "/tmp/list.m3u"
        cfg["volume"] = 40
        save_config(cfg)

        path = config_dir / options.CONFIG_FILE
        assert json.loads(path.read_text(encoding="utf-8"))["volume"] == 40
        assert not (config_dir / (options.CONFIG_FILE + ".tmp")).exists()

        loaded = load_config()
        assert loaded["last_playlist_path"] == "/tmp/list.m3u"
        assert options.get_loaded_config_path() == str(path)

    def test_missing_keys_filled_from_defaults(self, config_dir):
        (config_dir / options.CONFIG_FILE).write_text('{"volume": 10, "channel_customizations": []}', encoding="utf-8")
        cfg = load_config()
        assert cfg["volume"] == 10
        assert cfg["upcoming_count"] == 5
        assert cfg["channel_customizations"] == {}

    def test_corrupt_file_falls_back_to_defaults(self, config_dir):
        (config_dir / options.CONFIG_FILE).write_text("{not json", encoding="utf-8")
        assert load_config() == default_config()


class TestChannelCustomizations:
    """Test hidden/sort/last-source persistence per channel."""

    def test_channel_key_uses_first_source(self):
        ch = _channel(1, "News", ["http://a/1", "http://a/2"])
        ch.current_source_index = 1
        assert channel_key(ch) == "News|http://a/1"

    def test_only_changed_channels_collected(self):
        a = _channel(1, "A", ["http://a"])
        b = _channel(2, "B", ["http://b"])
        b.is_hidden = True
        saved = collect_channel_customizations([a, b])
        assert list(saved) == ["B|http://b"]
        assert saved["B|http://b"] == {"is_hidden": True, "sort_order": 2, "last_source_index": 0}

    def test_apply_restores_state(self):
        cfg = {"channel_customizations": {
            "A|http://a/1": {"is_hidden": True, "sort_order": 9, "last_source_index": 1},
        }}
        a = _channel(1, "A", ["http://a/1", "http://a/2"])
        b = _channel(2, "B", ["http://b"])
        b.sort_order = 0
        apply_channel_customizations([a, b], cfg)
        assert a.is_hidden
        assert a.sort_order == 9
        assert a.url == "http://a/2"
        assert b.sort_order == 2

    @pytest.mark.parametrize("index", [5, -1, "x"])
    def test_out_of_range_source_index_ignored(self, index):
        cfg = {"channel_customizations": {"A|http://a/1": {"last_source_index": index}}}
        a = _channel(1, "A", ["http://a/1", "http://a/2"])
        apply_channel_customizations([a], cfg)
        assert a.current_source_index == 0

    def test_remember_source_index(self):
        cfg = default_config()
        a = _channel(1, "A", ["http://a/1", "http://a/2"])
        a.next_source()
        remember_source_index(cfg, a)
        assert cfg["channel_customizations"]["A|http://a/1"]["last_source_index"] == 1
        a.next_source()
        remember_source_index(cfg, a)
        assert cfg["channel_customizations"]["A|http://a/1"]["last_source_index"] == 0
