"""
filemap.py
Resolve which mod supplies each output path.

Algorithm: walk enabled mods from the bottom of the stack to the top.  For
each file, record (output key, mod).  Higher mods overwrite lower entries,
so the default winner of a contested path is the claimant with the highest
position.  A manual override pin then replaces the default winner for that
exact path, but only while the pinned mod is still an enabled claimant; a
pin that no longer applies is reported as stale and otherwise ignored.

Paths are compared through their lowercase key (the game runs on a
case-insensitive filesystem under Proton).  The deployed path keeps the
winner's casing for the file name, while folder segments are unified across
mods so that "Public/" and "public/" end up as one directory.

resolve() is pure: same library in, same Resolution out.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from Utils.library import FileEntry, Library

# Conflict status constants (returned per-mod in Resolution.status)
CONFLICT_NONE    = 0   # no conflicts at all
CONFLICT_WINS    = 1   # wins some/all conflicts, loses none
CONFLICT_LOSES   = 2   # loses some conflicts, wins none
CONFLICT_PARTIAL = 3   # wins some, loses some
CONFLICT_FULL    = 4   # every file overridden, nothing reaches the game

STATUS_LABELS = {
    CONFLICT_NONE:    "none",
    CONFLICT_WINS:    "wins",
    CONFLICT_LOSES:   "loses",
    CONFLICT_PARTIAL: "partial",
    CONFLICT_FULL:    "full",
}


@dataclass(frozen=True)
class Winner:
    mod_id: str
    file: FileEntry
    output_path: str

    @property
    def digest(self) -> str:
        return self.file.digest


@dataclass(frozen=True)
class ConflictEntry:
    key: str
    path: str
    candidates: tuple[str, ...]     # enabled claimants, bottom of the stack first
    winner_id: str
    default_winner_id: str

    @property
    def overridden(self) -> bool:
        return self.winner_id != self.default_winner_id


@dataclass(frozen=True)
class StaleOverride:
    key: str
    mod_id: str


@dataclass
class Resolution:
    winners: dict[str, Winner] = field(default_factory=dict)
    conflicts: list[ConflictEntry] = field(default_factory=list)
    status: dict[str, int] = field(default_factory=dict)
    overrides: dict[str, set[str]] = field(default_factory=dict)       # mod -> mods it beats
    overridden_by: dict[str, set[str]] = field(default_factory=dict)   # mod -> mods beating it
    partners: dict[str, set[str]] = field(default_factory=dict)        # mod -> other claimants of shared paths
    wins: dict[str, int] = field(default_factory=dict)
    losses: dict[str, int] = field(default_factory=dict)
    stale_overrides: list[StaleOverride] = field(default_factory=list)

    def conflict_partners(self, mod_id: str) -> set[str]:
        return set(self.partners.get(mod_id, ()))

    def conflict_files(self, mod_id: str) -> int:
        return self.wins.get(mod_id, 0) + self.losses.get(mod_id, 0)

    def winner_of(self, output_path: str) -> Winner | None:
        return self.winners.get(output_path.lower())


def _pick_canonical_segment(a: str, b: str) -> str:
    """Choose the folder name with more uppercase characters; ties keep a."""
    ua = sum(1 for c in a if c.isupper())
    ub = sum(1 for c in b if c.isupper())
    return b if ub > ua else a


def _canonical_folders(paths: list[str]) -> dict[str, str]:
    """Map each lowercase folder prefix to the segment spelling to use for it."""
    segments: dict[str, str] = {}
    for path in paths:
        parts = path.split("/")[:-1]
        for i, part in enumerate(parts):
            key = "/".join(parts[:i + 1]).lower()
            segments[key] = _pick_canonical_segment(segments[key], part) if key in segments else part
    return segments


def _apply_canonical(path: str, segments: dict[str, str]) -> str:
    parts = path.split("/")
    out = [segments.get("/".join(parts[:i + 1]).lower(), part)
           for i, part in enumerate(parts[:-1])]
    out.append(parts[-1])
    return "/".join(out)


def resolve(library: Library) -> Resolution:
    """Build the winner map and conflict report for the enabled mods of library."""
    enabled = library.enabled_mods()

    # key -> claimants in stack order, and each claimant's FileEntry
    claims: dict[str, list[str]] = {}
    files_of: dict[tuple[str, str], FileEntry] = {}
    mod_keys: dict[str, set[str]] = {}
    for mod in enabled:
        keys = mod_keys.setdefault(mod.id, set())
        for f in mod.files:
            key = f.key
            if key not in keys:
                claims.setdefault(key, []).append(mod.id)
                keys.add(key)
            files_of[(mod.id, key)] = f

    res = Resolution()
    for mod in enabled:
        res.overrides[mod.id] = set()
        res.overridden_by[mod.id] = set()
        res.partners[mod.id] = set()
        res.wins[mod.id] = 0
        res.losses[mod.id] = 0

    # Pins that still apply, and the ones that don't
    pins: dict[str, str] = {}
    for key, pinned in sorted(library.overrides.items()):
        if pinned in claims.get(key, ()):
            pins[key] = pinned
        else:
            res.stale_overrides.append(StaleOverride(key=key, mod_id=pinned))

    chosen: dict[str, str] = {}
    for key in sorted(claims):
        claimants = claims[key]
        default = claimants[-1]
        winner = pins.get(key, default)
        chosen[key] = winner
        if len(claimants) < 2:
            continue
        res.wins[winner] += 1
        for loser in claimants:
            if loser == winner:
                continue
            res.losses[loser] += 1
            res.overrides[winner].add(loser)
            res.overridden_by[loser].add(winner)
        for mod_id in claimants:
            res.partners[mod_id].update(m for m in claimants if m != mod_id)

    canonical = _canonical_folders([files_of[(m, k)].output_path for k, m in chosen.items()])
    for key in sorted(chosen):
        mod_id = chosen[key]
        f = files_of[(mod_id, key)]
        out = _apply_canonical(f.output_path, canonical)
        res.winners[key] = Winner(mod_id=mod_id, file=f, output_path=out)
        claimants = claims[key]
        if len(claimants) > 1:
            res.conflicts.append(ConflictEntry(
                key=key,
                path=out,
                candidates=tuple(claimants),
                winner_id=mod_id,
                default_winner_id=claimants[-1],
            ))

    for mod in enabled:
        keys = mod_keys[mod.id]
        has_wins = res.wins[mod.id] > 0
        has_loses = res.losses[mod.id] > 0
        if not keys or (not has_wins and not has_loses):
            res.status[mod.id] = CONFLICT_NONE
        elif has_loses and all(chosen[k] != mod.id for k in keys):
            res.status[mod.id] = CONFLICT_FULL
        elif has_wins and not has_loses:
            res.status[mod.id] = CONFLICT_WINS
        elif has_loses and not has_wins:
            res.status[mod.id] = CONFLICT_LOSES
        else:
            res.status[mod.id] = CONFLICT_PARTIAL
    return res
