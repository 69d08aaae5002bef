"""
config_paths.py
Central helpers for resolving user-writable config and data directories.

Follows the XDG Base Directory Specification:
  Config lives in $XDG_CONFIG_HOME/GarnetModManager  (default: ~/.config/GarnetModManager)
  Data   lives in $XDG_DATA_HOME/GarnetModManager    (default: ~/.local/share/GarnetModManager)

The data directory holds everything the core writes per game: library.json,
deploy_manifest.json, backups/, displaced/, staging/ and (by default) the
content cache.  $GARNET_DATA_DIR overrides the data root, which the test
suite and portable installs use.
"""

import os
from pathlib import Path

APP_NAME = "GarnetModManager"


def get_config_dir() -> Path:
    """Return the app config directory, creating it if it doesn't exist.

    Respects $XDG_CONFIG_HOME; falls back to ~/.config/GarnetModManager.
    """
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else Path.home() / ".config"
    config_dir = base / APP_NAME
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_data_root() -> Path:
    """Return the root data directory shared by all games.

    $GARNET_DATA_DIR wins, then $XDG_DATA_HOME/GarnetModManager,
    then ~/.local/share/GarnetModManager.
    """
    env = os.environ.get("GARNET_DATA_DIR")
    if env:
        root = Path(env)
    else:
        xdg = os.environ.get("XDG_DATA_HOME")
        base = Path(xdg) if xdg else Path.home() / ".local" / "share"
        root = base / APP_NAME
    root.mkdir(parents=True, exist_ok=True)
    return root


def get_game_data_dir(game_id: str) -> Path:
    """Return the per-game data directory.

    Result: <data root>/<game_id>/
    """
    d = get_data_root() / game_id
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_game_settings_path(game_id: str) -> Path:
    """Return the settings.json path for a given game, creating parent dirs as needed.

    Result: ~/.config/GarnetModManager/games/<game_id>/settings.json
    """
    path = get_config_dir() / "games" / game_id / "settings.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    return path
