"""
settings.py
Per-game settings stored as JSON next to the rest of the app config.

Location: ~/.config/GarnetModManager/games/<game_id>/settings.json

    {
      "game_path":            "/path/to/Baldurs Gate 3",
      "prefix_path":          "/path/to/compatdata/1086940/pfx",
      "mods_path":            "",        optional, overrides the prefix Mods folder
      "modsettings_path":     "",        optional, overrides the prefix modsettings.lsx
      "cache_root":           "",        empty = <data dir>/cache
      "auto_deploy":          true,
      "auto_accept_ranking":  false,
      "debounce_seconds":     1.5,
      "ignored_dependencies": []
    }

Unknown keys are ignored and missing keys fall back to the defaults, so an
old settings file keeps working.  A corrupt file is logged and treated as
defaults rather than blocking startup.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from Utils.config_paths import get_game_settings_path

log = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 1.5


@dataclass
class GameSettings:
    game_path: Path | None = None
    prefix_path: Path | None = None
    mods_path: Path | None = None
    modsettings_path: Path | None = None
    cache_root: Path | None = None
    auto_deploy: bool = True
    auto_accept_ranking: bool = False
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    ignored_dependencies: list[str] = field(default_factory=list)


_PATH_KEYS = ("game_path", "prefix_path", "mods_path", "modsettings_path", "cache_root")


def settings_from_dict(data: dict) -> GameSettings:
    s = GameSettings()
    for key in _PATH_KEYS:
        raw = data.get(key) or ""
        setattr(s, key, Path(raw) if raw else None)
    s.auto_deploy = bool(data.get("auto_deploy", s.auto_deploy))
    s.auto_accept_ranking = bool(data.get("auto_accept_ranking", s.auto_accept_ranking))
    try:
        s.debounce_seconds = max(0.0, float(data.get("debounce_seconds", s.debounce_seconds)))
    except (TypeError, ValueError):
        log.warning("Bad debounce_seconds in settings; using %.1f", DEFAULT_DEBOUNCE_SECONDS)
    ignored = data.get("ignored_dependencies") or []
    if isinstance(ignored, list):
        s.ignored_dependencies = [str(x) for x in ignored]
    return s


def settings_to_dict(s: GameSettings) -> dict:
    data: dict = {key: str(getattr(s, key)) if getattr(s, key) else "" for key in _PATH_KEYS}
    data.update({
        "auto_deploy":          s.auto_deploy,
        "auto_accept_ranking":  s.auto_accept_ranking,
        "debounce_seconds":     s.debounce_seconds,
        "ignored_dependencies": list(s.ignored_dependencies),
    })
    return data


def load_settings(game_id: str, path: Path | None = None) -> GameSettings:
    path = path or get_game_settings_path(game_id)
    if not path.is_file():
        return GameSettings()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(data, dict):
            return settings_from_dict(data)
        log.warning("Ignoring settings file that is not a JSON object: %s", path)
    except (OSError, json.JSONDecodeError) as exc:
        log.warning("Could not read %s (%s); using defaults", path, exc)
    return GameSettings()


def save_settings(game_id: str, settings: GameSettings, path: Path | None = None) -> None:
    path = path or get_game_settings_path(game_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(settings_to_dict(settings), indent=2), encoding="utf-8")
    tmp.replace(path)
