from __future__ import annotations

from Utils.filemap import (
    CONFLICT_FULL, CONFLICT_LOSES, CONFLICT_NONE, CONFLICT_PARTIAL, CONFLICT_WINS, resolve,
)
from Utils.library import Library


class TestWinners:
    def test_highest_position_wins(self, mkmod):
        """A below B, both ship Data/x.txt: B wins."""
        lib = Library(entries=[mkmod("A", "Data/x.txt"), mkmod("B", "Data/x.txt")])
        res = resolve(lib)
        assert res.winner_of("Data/x.txt").mod_id == "B"
        [conflict] = res.conflicts
        assert conflict.candidates == ("A", "B")
        assert not conflict.overridden

    def test_override_pin_beats_position(self, mkmod):
        lib = Library(entries=[mkmod("A", "Data/x.txt"), mkmod("B", "Data/x.txt")],
                      overrides={"data/x.txt": "A"})
        res = resolve(lib)
        assert res.winner_of("data/X.txt").mod_id == "A"
        assert res.conflicts[0].overridden
        assert res.conflicts[0].default_winner_id == "B"

    def test_stale_pin_falls_back_and_is_reported(self, mkmod):
        lib = Library(entries=[mkmod("A", "Data/x.txt", enabled=False), mkmod("B", "Data/x.txt")],
                      overrides={"data/x.txt": "A"})
        res = resolve(lib)
        assert res.winner_of("Data/x.txt").mod_id == "B"
        assert [(s.key, s.mod_id) for s in res.stale_overrides] == [("data/x.txt", "A")]

    def test_disabled_mods_do_not_claim(self, mkmod):
        lib = Library(entries=[mkmod("A", "Data/x.txt"), mkmod("B", "Data/x.txt", enabled=False)])
        res = resolve(lib)
        assert res.winner_of("Data/x.txt").mod_id == "A"
        assert res.conflicts == []

    def test_case_insensitive_paths_share_folders(self, mkmod):
        lib = Library(entries=[
            mkmod("A", "Data/public/Mod/a.txt"),
            mkmod("B", "Data/Public/Mod/b.txt"),
        ])
        res = resolve(lib)
        assert res.winner_of("Data/public/mod/a.txt").output_path == "Data/Public/Mod/a.txt"
        assert res.winner_of("Data/Public/Mod/b.txt").output_path == "Data/Public/Mod/b.txt"

    def test_deterministic(self, mkmod):
        lib = Library(entries=[
            mkmod("A", "Data/x.txt", "Data/y.txt"),
            mkmod("B", "Data/x.txt"),
            mkmod("C", "Data/y.txt", "Bin/z.dll"),
        ], overrides={"data/y.txt": "A"})
        assert resolve(lib) == resolve(lib)


class TestStatus:
    def test_statuses(self, mkmod):
        lib = Library(entries=[
            mkmod("Alone", "Data/alone.txt"),
            mkmod("Low", "Data/x.txt"),
            mkmod("Mid", "Data/x.txt", "Data/y.txt"),
            mkmod("High", "Data/y.txt", "Data/z.txt"),
            mkmod("Top", "Data/z.txt"),
        ])
        res = resolve(lib)
        assert res.status["Alone"] == CONFLICT_NONE
        assert res.status["Low"] == CONFLICT_FULL
        assert res.status["Mid"] == CONFLICT_PARTIAL
        assert res.status["Top"] == CONFLICT_WINS
        assert res.status["High"] == CONFLICT_PARTIAL
        assert res.conflict_partners("Mid") == {"Low", "High"}
        assert res.conflict_files("Mid") == 2

    def test_loses_some_keeps_others(self, mkmod):
        lib = Library(entries=[mkmod("A", "Data/x.txt", "Data/own.txt"), mkmod("B", "Data/x.txt")])
        res = resolve(lib)
        assert res.status["A"] == CONFLICT_LOSES
        assert res.overrides["B"] == {"A"}
        assert res.overridden_by["A"] == {"B"}

    def test_losers_of_one_path_are_partners(self, mkmod):
        lib = Library(entries=[mkmod("c", "Data/x.txt"), mkmod("a", "Data/x.txt"), mkmod("b", "Data/x.txt")])
        res = resolve(lib)
        assert res.overrides["b"] == {"a", "c"}
        assert res.conflict_partners("a") == {"b", "c"}
        assert res.conflict_partners("c") == {"a", "b"}
