"""
base_game.py
Abstract base class that all game handlers must subclass.

A game handler describes the *target tree*: where each target subtree
(Pak, Generated, Data, Bin) lives on disk, where the merged load-order file
goes, and which module ids belong to the base game and must never be
reported as missing dependencies.  It does not deploy anything itself;
Utils/deploy.py does that from the paths a handler returns.

To add support for a new game:
  1. Create a new folder under Games/ with a .py file in it
  2. Subclass BaseGame and implement all abstract methods/properties
  3. Drop the file in; it will be auto-discovered by Utils/game_loader.py
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from Utils.errors import GameNotConfiguredError
from Utils.library import TargetKind
from Utils.settings import GameSettings, load_settings, save_settings


class BaseGame(ABC):

    def __init__(self, settings: GameSettings | None = None,
                 settings_path: Path | None = None):
        self._settings_path = settings_path
        self.settings = settings if settings is not None else load_settings(
            self.game_id, settings_path)

    # -----------------------------------------------------------------------
    # Identity
    # -----------------------------------------------------------------------

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable display name, e.g. "Baldur's Gate 3"."""

    @property
    @abstractmethod
    def game_id(self) -> str:
        """
        Filesystem-safe identifier, e.g. 'baldurs_gate_3'.
        Used for the data and config directory names.
        """

    @property
    def system_module_ids(self) -> frozenset[str]:
        """
        Module ids shipped with the game itself.  Dependencies on these are
        always satisfied, so they never show up as Missing or Disabled.
        """
        return frozenset()

    # -----------------------------------------------------------------------
    # Target tree
    # -----------------------------------------------------------------------

    @abstractmethod
    def target_root(self, kind: TargetKind) -> Path | None:
        """Directory files of the given target subtree deploy into, or None if unset."""

    def modsettings_path(self) -> Path | None:
        """Where the merged load-order file is written, or None if the game has none."""
        return None

    def require_root(self, kind: TargetKind) -> Path:
        """target_root(kind), raising GameNotConfiguredError when it is unset."""
        root = self.target_root(kind)
        if root is None:
            raise GameNotConfiguredError(
                f"{self.name}: no directory configured for {kind.value} files. "
                "Set game_path / prefix_path in settings.json."
            )
        return root

    def native_mods_dir(self) -> Path | None:
        """Folder the game loads packaged mods from; scanned by native sync."""
        return self.target_root(TargetKind.PAK)

    # -----------------------------------------------------------------------
    # Configuration
    # -----------------------------------------------------------------------

    def get_game_path(self) -> Path | None:
        return self.settings.game_path

    def set_game_path(self, path: Path | str | None) -> None:
        self.settings.game_path = Path(path) if path else None
        self.save_settings()

    def save_settings(self) -> None:
        save_settings(self.game_id, self.settings, self._settings_path)

    def validate_install(self) -> list[str]:
        """Return human-readable problems with the configured paths (empty = OK)."""
        problems: list[str] = []
        game = self.get_game_path()
        if game is None:
            problems.append("Game path is not set.")
        elif not game.is_dir():
            problems.append(f"Game path does not exist: {game}")
        for kind in TargetKind:
            if self.target_root(kind) is None:
                problems.append(f"No target directory for {kind.value} files.")
        return problems
