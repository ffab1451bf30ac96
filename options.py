import os
import sys
import json
import logging
import tempfile
from typing import Dict, List, Optional

LOG = logging.getLogger(__name__)

CONFIG_FILE = "iptvplayer.conf"
APP_NAME = "IPTVPlayer"
_CONFIG_PATH = None  # Path of config last loaded/saved

DEFAULTS = {
    "last_playlist_path": "",
    "volume": 75,
    "epg_enabled": True,
    "epg_timeout": 60,
    "epg_user_agent": "IPTVPlayer/1.0",
    "playlist_timeout": 30,
    "upcoming_count": 5,
    "channel_customizations": {},
}


def _is_writable_dir(path: str) -> bool:
    try:
        if not os.path.isdir(path):
            return False
        testfile = os.path.join(path, ".iptvplayer_write_test.tmp")
        with open(testfile, "w", encoding="utf-8") as f:
            f.write("test")
        os.remove(testfile)
        return True
    except OSError:
        return False

def get_app_dir():
    if getattr(sys, 'frozen', False):
        return os.path.dirname(sys.executable)
    return os.path.dirname(os.path.abspath(__file__))

def get_cwd_dir():
    try:
        return os.getcwd()
    except OSError:
        return None

def get_user_config_dir():
    """Per-user settings directory, created on demand."""
    if sys.platform == "win32":
        path = os.path.join(os.getenv('LOCALAPPDATA') or os.getenv('APPDATA') or os.path.expanduser('~'), APP_NAME)
    elif sys.platform == "darwin":
        path = os.path.join(os.path.expanduser('~/Library/Application Support'), APP_NAME)
    else:  # linux and other unix
        path = os.path.join(os.getenv('XDG_CONFIG_HOME', os.path.expanduser('~/.config')), APP_NAME)

    try:
        os.makedirs(path, exist_ok=True)
        return path
    except OSError:
        # Last resort if we can't create any directory
        return tempfile.gettempdir()

def get_config_read_candidates():
    # 1) App Dir (portable install)  2) CWD  3) User Config Dir
    candidates = []

    app_dir = get_app_dir()
    if app_dir:
        candidates.append(os.path.join(app_dir, CONFIG_FILE))

    cwd = get_cwd_dir()
    if cwd:
        candidates.append(os.path.join(cwd, CONFIG_FILE))

    user_dir = get_user_config_dir()
    if user_dir:
        candidates.append(os.path.join(user_dir, CONFIG_FILE))

    unique_candidates = []
    seen = set()
    for c in candidates:
        if c not in seen:
            unique_candidates.append(c)
            seen.add(c)
    return unique_candidates

def get_config_write_target():
    # Prefer writing back to the file that was loaded.
    if _CONFIG_PATH:
        parent = os.path.dirname(_CONFIG_PATH)
        if parent and _is_writable_dir(parent):
            return _CONFIG_PATH

    for c in get_config_read_candidates():
        parent = os.path.dirname(c)
        if parent and _is_writable_dir(parent):
            return c

    return os.path.join(get_user_config_dir(), CONFIG_FILE)

def default_config() -> Dict:
    cfg = dict(DEFAULTS)
    cfg["channel_customizations"] = {}
    return cfg

def load_config() -> Dict:
    global _CONFIG_PATH
    for p in get_config_read_candidates():
        if os.path.exists(p):
            try:
                with open(p, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    for k, v in default_config().items():
                        data.setdefault(k, v)
                    if not isinstance(data.get("channel_customizations"), dict):
                        data["channel_customizations"] = {}
                    _CONFIG_PATH = p
                    return data
            except (OSError, ValueError) as e:
                LOG.error("Failed to load config from %s: %s", p, e)
                # try the next candidate location
    _CONFIG_PATH = None
    return default_config()

def save_config(cfg: Dict):
    global _CONFIG_PATH
    path = get_config_write_target()
    try:
        dir_path = os.path.dirname(path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(cfg, f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _CONFIG_PATH = path
    except (OSError, TypeError, ValueError) as e:
        LOG.error("Failed to save config to %s: %s", path, e)

def get_loaded_config_path() -> str:
    """Return the config path most recently loaded or saved, if known."""
    return _CONFIG_PATH or ""

# =========================
# Per-channel customizations
# =========================

def channel_key(channel) -> str:
    """Stable key for a channel across loads: name plus its first source url."""
    url = channel.sources[0].url if channel.sources else ""
    return f"{channel.name}|{url}"

def apply_channel_customizations(channels: List, cfg: Dict):
    saved = cfg.get("channel_customizations") or {}
    for channel in channels:
        entry = saved.get(channel_key(channel))
        if not isinstance(entry, dict):
            channel.sort_order = channel.id
            continue
        channel.is_hidden = bool(entry.get("is_hidden", False))
        try:
            channel.sort_order = int(entry.get("sort_order", channel.id))
        except (TypeError, ValueError):
            channel.sort_order = channel.id
        try:
            idx = int(entry.get("last_source_index", 0))
        except (TypeError, ValueError):
            idx = 0
        if 0 < idx < len(channel.sources):
            channel.current_source_index = idx

def _customization_for(channel) -> Dict:
    return {
        "is_hidden": channel.is_hidden,
        "sort_order": channel.sort_order,
        "last_source_index": channel.current_source_index,
    }

def collect_channel_customizations(channels: List) -> Dict[str, Dict]:
    """Only channels that differ from their defaults are persisted."""
    out = {}
    for channel in channels:
        if channel.is_hidden or channel.sort_order != channel.id or channel.current_source_index != 0:
            out[channel_key(channel)] = _customization_for(channel)
    return out

def remember_source_index(cfg: Dict, channel) -> Optional[Dict]:
    saved = cfg.setdefault("channel_customizations", {})
    key = channel_key(channel)
    entry = saved.get(key)
    if isinstance(entry, dict):
        entry["last_source_index"] = channel.current_source_index
    else:
        entry = saved[key] = _customization_for(channel)
    return entry
