"""
ranking.py
Propose a safer order for the enabled mods.

Mods are ranked in two groups, pak mods and loose mods, and each group only
reshuffles among the slots its own mods already hold.  Within a group only
the "reorder set" moves: mods that conflict with another mod or declare
dependencies, plus the in-group mods they depend on.  Everything else, and
every rank-pinned mod, stays exactly where it is.

The reorder set is sorted with Kahn's algorithm (dependencies first); among
the mods that are free to go next, the best-scoring one is taken:

    1. conflict partners   more first
    2. conflicting files   more first
    3. patch score         lower first (patches and fixes end up on top)
    4. total bytes         larger first
    5. file count          more first
    6. added timestamp     older first
    7. current position    lower first (keeps ties stable)

A dependency cycle adds a warning and the group falls back to plain score
order.

The result is a RankingDiff.  Nothing changes until accept(), which applies
the new order with a single LibraryStore.reorder_batch() and never touches
enabled flags.

RankingEngine keeps the per-mod score inputs between calls, so update()
after a single enable/disable/reorder/import only rescans the changed mods
and their neighborhood (conflict partners, dependencies, dependents).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from Utils.errors import StaleProposalError
from Utils.filemap import Resolution
from Utils.library import Library, LibraryStore, ModEntry, TargetKind

log = logging.getLogger(__name__)

PATCH_KEYWORDS: tuple[tuple[str, int], ...] = (
    ("patch", 2),
    ("hotfix", 2),
    ("fix", 1),
    ("compat", 2),
    ("compatibility", 2),
    ("override", 1),
    ("addon", 1),
    ("add-on", 1),
)

_EXPLAIN_TOP = 6


class RankGroup(Enum):
    LOOSE = "Loose"
    PAK   = "Pak"


def group_of(mod: ModEntry) -> RankGroup:
    if mod.pak_info is not None or any(f.target is TargetKind.PAK for f in mod.files):
        return RankGroup.PAK
    return RankGroup.LOOSE


def patch_score(name: str) -> tuple[int, list[str]]:
    """Score a mod name by patch-like keywords.  Returns (score, reasons)."""
    label = name.lower()
    score = 0
    reasons: list[str] = []
    for keyword, weight in PATCH_KEYWORDS:
        if keyword in label:
            score += weight
            reasons.append(f"name:{keyword}")
    return score, reasons


@dataclass
class RankItem:
    """Score inputs for one enabled mod."""
    id: str
    name: str
    group: RankGroup
    conflict_partners: frozenset[str]
    conflict_files: int
    patch_score: int
    patch_reasons: list[str]
    total_bytes: int
    file_count: int
    added_at: int
    dependencies: list[str]
    pinned: bool = False
    index: int = 0

    def sort_key(self) -> tuple:
        return (
            -len(self.conflict_partners),
            -self.conflict_files,
            self.patch_score,
            -self.total_bytes,
            -self.file_count,
            self.added_at,
            self.index,
        )


@dataclass(frozen=True)
class RankMove:
    mod_id: str
    name: str
    old_position: int
    new_position: int


@dataclass(frozen=True)
class ExplainLine:
    kind: str     # "header", "item" or "muted"
    text: str


@dataclass
class RankingDiff:
    old_order: list[str] = field(default_factory=list)    # enabled ids, bottom first
    new_order: list[str] = field(default_factory=list)
    pinned: list[str] = field(default_factory=list)
    moves: list[RankMove] = field(default_factory=list)
    explain: list[ExplainLine] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.old_order != self.new_order

    def would_move(self, mod_id: str) -> bool:
        return any(m.mod_id == mod_id for m in self.moves)


def build_item(mod: ModEntry, resolution: Resolution) -> RankItem:
    score, reasons = patch_score(mod.name)
    return RankItem(
        id=mod.id,
        name=mod.name,
        group=group_of(mod),
        conflict_partners=frozenset(resolution.conflict_partners(mod.id)),
        conflict_files=resolution.conflict_files(mod.id),
        patch_score=score,
        patch_reasons=reasons,
        total_bytes=mod.total_bytes,
        file_count=len(mod.files),
        added_at=mod.added_at,
        dependencies=list(mod.dependencies),
    )


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

def _topological_rank(items: list[RankItem], reorder: set[str],
                      names: dict[str, str], warnings: list[str]) -> list[RankItem]:
    by_id = {i.id: i for i in items if i.id in reorder}
    lower = {k.lower(): k for k in by_id}
    indegree = {k: 0 for k in by_id}
    edges: dict[str, list[str]] = {}
    for item in by_id.values():
        for dep in item.dependencies:
            dep_id = lower.get(dep.lower())
            if dep_id is None or dep_id == item.id:
                continue
            edges.setdefault(dep_id, []).append(item.id)
            indegree[item.id] += 1

    available = [i for i in by_id.values() if indegree[i.id] == 0]
    result: list[RankItem] = []
    while available:
        available.sort(key=RankItem.sort_key)
        nxt = available.pop(0)
        result.append(nxt)
        for child in edges.get(nxt.id, ()):
            indegree[child] -= 1
            if indegree[child] == 0:
                available.append(by_id[child])

    if len(result) < len(by_id):
        stuck = sorted(names.get(k, k) for k, d in indegree.items() if d > 0)
        warnings.append(
            "Dependency cycle detected between " + ", ".join(stuck)
            + "; falling back to score order"
        )
        return sorted(by_id.values(), key=RankItem.sort_key)
    return result


def _rank_group(items: list[RankItem], all_ids: dict[str, RankItem],
                names: dict[str, str], warnings: list[str]) -> list[str]:
    """Return the group's ids in their new slot order (items is in slot order)."""
    movable = [i for i in items if not i.pinned]
    movable_lower = {i.id.lower(): i.id for i in movable}
    reorder = {i.id for i in movable if i.conflict_files > 0 or i.dependencies}
    for item in movable:
        for dep in item.dependencies:
            dep_id = movable_lower.get(dep.lower())
            if dep_id is not None:
                reorder.add(dep_id)
            elif item.id in reorder:
                other = all_ids.get(dep) or next(
                    (v for k, v in all_ids.items() if k.lower() == dep.lower()), None)
                if other is not None and other.group is not item.group:
                    warnings.append(
                        f"Dependency of {item.name} on {other.name} skipped: "
                        f"it is in the {other.group.value} group"
                    )

    ranked = iter(_topological_rank(items, reorder, names, warnings))
    return [next(ranked).id if i.id in reorder else i.id for i in items]


def _build_explain(items: list[RankItem], resolution: Resolution,
                   names: dict[str, str], pinned: list[str]) -> list[ExplainLine]:
    lines: list[ExplainLine] = [ExplainLine("header", "Top conflicts")]
    conflicting = sorted((i for i in items if i.conflict_files > 0),
                         key=lambda i: (-i.conflict_files, i.index))
    if not conflicting:
        lines.append(ExplainLine("muted", "No overlapping files detected."))
    for item in conflicting[:_EXPLAIN_TOP]:
        lines.append(ExplainLine(
            "item", f"{item.name}: {item.conflict_files} file(s), "
                    f"{len(item.conflict_partners)} mod(s)"))

    lines.append(ExplainLine("header", "Top conflict paths"))
    contested = sorted(resolution.conflicts, key=lambda c: (-len(c.candidates), c.key))
    if not contested:
        lines.append(ExplainLine("muted", "No conflict paths recorded."))
    for c in contested[:_EXPLAIN_TOP]:
        claimants = ", ".join(names.get(m, m) for m in c.candidates)
        lines.append(ExplainLine(
            "item", f"{c.path}: {claimants} (winner: {names.get(c.winner_id, c.winner_id)})"))

    lines.append(ExplainLine("header", "Dependencies"))
    dep_lines = [f"{item.name} -> {names.get(dep, dep)}"
                 for item in items for dep in item.dependencies]
    if not dep_lines:
        lines.append(ExplainLine("muted", "No dependencies detected."))
    lines.extend(ExplainLine("item", text) for text in dep_lines[:_EXPLAIN_TOP])

    lines.append(ExplainLine("header", "Patch heuristic"))
    patches = sorted((i for i in items if i.patch_score > 0),
                     key=lambda i: (-i.patch_score, i.index))
    if not patches:
        lines.append(ExplainLine("muted", "No patch/compat hints found."))
    for item in patches[:_EXPLAIN_TOP]:
        lines.append(ExplainLine(
            "item", f"{item.name}: score {item.patch_score} ({', '.join(item.patch_reasons)})"))

    lines.append(ExplainLine("header", "Pinned"))
    if not pinned:
        lines.append(ExplainLine("muted", "No pinned mods."))
    lines.extend(ExplainLine("item", names.get(p, p)) for p in pinned)
    return lines


def rank_items(library: Library, items: dict[str, RankItem],
               resolution: Resolution) -> RankingDiff:
    """Order the enabled mods of library using precomputed score inputs."""
    names = {e.id: getattr(e, "name", "") or e.id for e in library.entries}
    enabled = library.enabled_mods()
    positions = {e.id: i for i, e in enumerate(library.entries)}
    ordered: list[RankItem] = []
    for idx, mod in enumerate(enabled):
        item = items[mod.id]
        item.index = idx
        item.pinned = mod.rank_pinned
        ordered.append(item)

    diff = RankingDiff(old_order=[m.id for m in enabled])
    by_id = {i.id: i for i in ordered}
    slots_by_group: dict[RankGroup, list[int]] = {}
    for idx, item in enumerate(ordered):
        slots_by_group.setdefault(item.group, []).append(idx)

    new_order = list(diff.old_order)
    for group in (RankGroup.LOOSE, RankGroup.PAK):
        slots = slots_by_group.get(group, [])
        group_items = [ordered[s] for s in slots]
        for slot, mod_id in zip(slots, _rank_group(group_items, by_id, names, diff.warnings)):
            new_order[slot] = mod_id
    diff.new_order = new_order

    enabled_slots = [positions[m] for m in diff.old_order]
    for slot_idx, mod_id in enumerate(new_order):
        old_pos = positions[mod_id]
        new_pos = enabled_slots[slot_idx]
        if old_pos != new_pos:
            diff.moves.append(RankMove(mod_id, names[mod_id], old_pos, new_pos))
    diff.pinned = [i.id for i in ordered if i.pinned]
    diff.explain = _build_explain(ordered, resolution, names, diff.pinned)
    return diff


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class RankingEngine:
    """Holds cached score inputs and the pending proposal."""

    def __init__(self, log_fn=None):
        self._log = log_fn or (lambda _: None)
        self._items: dict[str, RankItem] = {}
        self._fingerprints: dict[str, tuple] = {}
        self.pending: RankingDiff | None = None
        self.last_rescanned: set[str] = set()

    @staticmethod
    def _fingerprint(mod: ModEntry) -> tuple:
        return (mod.name, len(mod.files), mod.total_bytes, tuple(mod.dependencies),
                mod.added_at, mod.pak_info is not None)

    def _scan(self, mods: Iterable[ModEntry], resolution: Resolution) -> None:
        for mod in mods:
            self._items[mod.id] = build_item(mod, resolution)
            self._fingerprints[mod.id] = self._fingerprint(mod)
            self.last_rescanned.add(mod.id)

    def propose(self, library: Library, resolution: Resolution) -> RankingDiff:
        """Full rescan of every enabled mod."""
        self._items.clear()
        self._fingerprints.clear()
        self.last_rescanned = set()
        self._scan(library.enabled_mods(), resolution)
        return self._finish(library, resolution)

    def update(self, library: Library, resolution: Resolution,
               changed_ids: Iterable[str]) -> RankingDiff:
        """Rescan only the neighborhood of changed_ids and re-rank.

        The neighborhood is each changed mod, its conflict partners before
        and after the change, its dependencies and its dependents.  Mods
        whose cached inputs are missing or out of date are rescanned too.
        """
        self.last_rescanned = set()
        changed = set(changed_ids)
        enabled = {m.id: m for m in library.enabled_mods()}
        for gone in [k for k in self._items if k not in enabled]:
            old = self._items.pop(gone)
            self._fingerprints.pop(gone, None)
            changed |= old.conflict_partners

        lower = {k.lower(): k for k in enabled}
        hood: set[str] = set()
        for mod_id in changed:
            hood.add(mod_id)
            hood |= resolution.conflict_partners(mod_id)
            cached = self._items.get(mod_id)
            if cached is not None:
                hood |= cached.conflict_partners
            mod = enabled.get(mod_id)
            if mod is not None:
                hood |= {lower[d.lower()] for d in mod.dependencies if d.lower() in lower}
            hood |= {m.id for m in enabled.values()
                     if any(d.lower() == mod_id.lower() for d in m.dependencies)}
        for mod_id, mod in enabled.items():
            if mod_id not in self._items or self._fingerprints.get(mod_id) != self._fingerprint(mod):
                hood.add(mod_id)

        self._scan((enabled[i] for i in sorted(hood) if i in enabled), resolution)
        return self._finish(library, resolution)

    def _finish(self, library: Library, resolution: Resolution) -> RankingDiff:
        diff = rank_items(library, self._items, resolution)
        for w in diff.warnings:
            log.warning("ranking: %s", w)
        self.pending = diff if diff.changed else None
        return diff

    def discard(self) -> None:
        self.pending = None

    def accept(self, diff: RankingDiff, store: LibraryStore) -> bool:
        """Apply diff through one reorder_batch.  Returns False if it was a no-op.

        Raises StaleProposalError when the enabled order has changed since
        the diff was computed.
        """
        current = [m.id for m in store.snapshot().enabled_mods()]
        if current != diff.old_order:
            raise StaleProposalError("The library changed since this ranking was proposed; rank again.")
        if not diff.changed:
            return False
        store.reorder_batch(diff.new_order)
        self._log(f"Applied ranking: {len(diff.moves)} mod(s) moved.")
        if self.pending is diff:
            self.pending = None
        return True
