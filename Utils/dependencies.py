"""
dependencies.py
Presence/absence dependency checking over a library snapshot.

For every enabled mod, each declared dependency id is classified:

    SATISFIED  the dependency is installed and enabled
    DISABLED   the dependency is installed but switched off (non-blocking)
    MISSING    the dependency is not in the library, or only as a ghost

A mod's own state is the worst of its dependencies (MISSING > DISABLED >
SATISFIED).  Ids in the ignore set (base-game modules and user ignore
tokens) never count.  Ids are compared case-insensitively, since module
UUIDs show up in both cases in the wild.

No version ranges, no solving: this only reports.  plan_enable/plan_disable
work out what a cascading toggle would touch so the caller can ask the user
before doing it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from Utils.library import Library, LibraryEntry, ModEntry


class DepState(Enum):
    SATISFIED = "satisfied"
    DISABLED  = "disabled"
    MISSING   = "missing"


@dataclass(frozen=True)
class MissingDependency:
    """One unmet dependency edge, for the 'deps missing' report."""
    required_by: str
    required_by_name: str
    dependency_id: str
    dependency_name: str
    state: DepState


@dataclass
class DependencyReport:
    states: dict[str, DepState] = field(default_factory=dict)
    missing: dict[str, list[str]] = field(default_factory=dict)
    disabled: dict[str, list[str]] = field(default_factory=dict)
    edges: list[MissingDependency] = field(default_factory=list)

    @property
    def missing_count(self) -> int:
        """Enabled mods with at least one missing dependency."""
        return sum(1 for s in self.states.values() if s is DepState.MISSING)

    @property
    def disabled_count(self) -> int:
        """Enabled mods whose dependencies are present but some are disabled."""
        return sum(1 for s in self.states.values() if s is DepState.DISABLED)

    def state_of(self, mod_id: str) -> DepState:
        return self.states.get(mod_id, DepState.SATISFIED)


def _index(library: Library) -> dict[str, LibraryEntry]:
    return {e.id.lower(): e for e in library.entries}


def _normalize_ignore(ignore: Iterable[str] | None) -> frozenset[str]:
    return frozenset(t.strip().lower() for t in (ignore or ()) if t and t.strip())


def _classify(dep_id: str, index: dict[str, LibraryEntry]) -> DepState:
    entry = index.get(dep_id.lower())
    if entry is None or entry.is_ghost:
        return DepState.MISSING
    return DepState.SATISFIED if entry.enabled else DepState.DISABLED


def _declared(mod: ModEntry, ignore: frozenset[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for dep in mod.dependencies:
        low = dep.lower()
        if low in ignore or low == mod.id.lower() or low in seen:
            continue
        seen.add(low)
        out.append(dep)
    return out


def resolve_dependencies(library: Library, ignore: Iterable[str] | None = None) -> DependencyReport:
    """Classify the dependencies of every enabled mod.  Pure."""
    ignore_set = _normalize_ignore(ignore)
    index = _index(library)
    report = DependencyReport()
    for mod in library.enabled_mods():
        missing: list[str] = []
        disabled: list[str] = []
        for dep in _declared(mod, ignore_set):
            state = _classify(dep, index)
            if state is DepState.SATISFIED:
                continue
            (missing if state is DepState.MISSING else disabled).append(dep)
            found = index.get(dep.lower())
            dep_name = getattr(found, "name", "") if found is not None else ""
            report.edges.append(MissingDependency(
                required_by=mod.id,
                required_by_name=mod.name,
                dependency_id=dep,
                dependency_name=dep_name or "Unknown",
                state=state,
            ))
        if missing:
            report.states[mod.id] = DepState.MISSING
            report.missing[mod.id] = missing
        elif disabled:
            report.states[mod.id] = DepState.DISABLED
        else:
            report.states[mod.id] = DepState.SATISFIED
        if disabled:
            report.disabled[mod.id] = disabled
    return report


# ---------------------------------------------------------------------------
# Confirmation planning
# ---------------------------------------------------------------------------

@dataclass
class EnablePlan:
    mod_id: str
    cascade: list[str] = field(default_factory=list)   # disabled deps that could be enabled
    missing: list[str] = field(default_factory=list)   # deps that cannot be satisfied

    @property
    def needs_confirmation(self) -> bool:
        return bool(self.cascade or self.missing)


def plan_enable(library: Library, mod_id: str, ignore: Iterable[str] | None = None) -> EnablePlan:
    """Work out what enabling mod_id would leave unmet.

    cascade lists present-but-disabled dependencies (transitively, in the
    order they should be enabled: deepest first); missing lists dependency
    ids that are absent or only ghosts.
    """
    ignore_set = _normalize_ignore(ignore)
    index = _index(library)
    root = library.require(mod_id)
    plan = EnablePlan(mod_id=root.id)
    visited: set[str] = {root.id.lower()}

    def _walk(mod: ModEntry) -> None:
        for dep in _declared(mod, ignore_set):
            low = dep.lower()
            if low in visited:
                continue
            visited.add(low)
            state = _classify(dep, index)
            if state is DepState.MISSING:
                plan.missing.append(dep)
                continue
            entry = index[low]
            _walk(entry)
            if state is DepState.DISABLED:
                plan.cascade.append(entry.id)

    if not root.is_ghost:
        _walk(root)
    return plan


def plan_disable(library: Library, mod_id: str) -> list[str]:
    """Enabled mods that depend on mod_id, directly or transitively, nearest first."""
    library.require(mod_id)
    enabled = library.enabled_mods()
    out: list[str] = []
    seen = {mod_id.lower()}
    frontier = [mod_id.lower()]
    while frontier:
        target = frontier.pop(0)
        for mod in enabled:
            if mod.id.lower() in seen:
                continue
            if any(d.lower() == target for d in mod.dependencies):
                seen.add(mod.id.lower())
                out.append(mod.id)
                frontier.append(mod.id.lower())
    return out
