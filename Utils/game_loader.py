"""
game_loader.py
Auto-discovers game handler classes from the Games/ directory.

Any .py file in a Games/ subfolder that contains a concrete subclass of
BaseGame is registered.  Broken handler files are logged and skipped so one
bad file doesn't hide the rest.

Uses spec_from_file_location so folder names with spaces and apostrophes
(e.g. "Baldur's Gate 3") work without a valid dotted module path.

Usage:
    from Utils.game_loader import discover_games
    games = discover_games()              # {game.game_id: handler class}
    bg3 = games["baldurs_gate_3"]()
"""

from __future__ import annotations

import importlib.util
import inspect
import logging
import os
from pathlib import Path

from Games.base_game import BaseGame

log = logging.getLogger(__name__)

_EXCLUDED_STEMS = {"__init__", "base_game"}


def find_games_dir() -> Path:
    """$GARNET_GAMES_DIR if set, else the Games/ folder next to Utils/."""
    env = os.environ.get("GARNET_GAMES_DIR")
    if env:
        return Path(env)
    return Path(__file__).resolve().parent.parent / "Games"


def _load_module(py_file: Path):
    mod_name = "garnet_game_" + "".join(c if c.isalnum() else "_" for c in py_file.stem)
    spec = importlib.util.spec_from_file_location(mod_name, py_file)
    if spec is None or spec.loader is None:
        return None
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def discover_games(games_dir: Path | None = None) -> dict[str, type[BaseGame]]:
    """Return {game_id: handler class} for every handler found under games_dir."""
    games_dir = games_dir or find_games_dir()
    found: dict[str, type[BaseGame]] = {}
    if not games_dir.is_dir():
        log.warning("Games directory not found: %s", games_dir)
        return found
    for py_file in sorted(games_dir.glob("*/*.py")):
        if py_file.stem in _EXCLUDED_STEMS:
            continue
        try:
            module = _load_module(py_file)
        except Exception as exc:
            log.warning("Skipping game handler %s: %s", py_file, exc)
            continue
        if module is None:
            continue
        for _, obj in inspect.getmembers(module, inspect.isclass):
            if issubclass(obj, BaseGame) and obj is not BaseGame and not inspect.isabstract(obj):
                # game_id is a property; read it from a settings-free instance
                try:
                    game_id = obj.game_id.fget(None)
                except Exception:
                    game_id = py_file.stem
                found[game_id] = obj
    return found


def load_game(game_id: str, games_dir: Path | None = None, **kwargs) -> BaseGame:
    """Instantiate the handler for game_id.  Raises KeyError if unknown."""
    games = discover_games(games_dir)
    if game_id not in games:
        known = ", ".join(sorted(games)) or "none"
        raise KeyError(f"Unknown game '{game_id}' (available: {known})")
    return games[game_id](**kwargs)
