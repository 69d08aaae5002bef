"""
controller.py
The single owner of a game's library and everything derived from it.

Everything that changes the library goes through a Controller method on the
control thread (the thread that created it).  After each change the derived
state is recomputed in a fixed order:

    dependency report  ->  conflict resolution  ->  ranking (debounced)

Slow work runs on a ThreadPoolExecutor:
    import     extract + ingest an archive/folder/.pak
    deploy     link the winner map into the target tree (also rollback/purge)
    relocate   move the content cache
    rank       full ranking rescan
Workers never touch the library.  They post a _Message on one queue.Queue and
pump() applies the result on the control thread, e.g. "import finished, add
the mods".

Auto-deploy and ranking rescans are debounced: a change arms a timer of
debounce_seconds, and every further change inside the window resets it, so a
burst of toggles ends in a single deploy.  A deploy requested while one is
running is queued as a single pending deploy.  Deploy and cache relocation
exclude each other.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from Games.base_game import BaseGame
from Utils.app_log import app_log, drain_app_log
from Utils.config_paths import get_game_data_dir
from Utils.content_cache import ContentCache
from Utils.dependencies import (
    DependencyReport, plan_disable, plan_enable, resolve_dependencies,
)
from Utils.deploy import DeployEngine, DeployResult
from Utils.errors import BusyError, ConfirmationRequired, ModManagerError
from Utils.filemap import Resolution, resolve
from Utils.importer import import_path, scan_native_mods
from Utils.interop import (
    LibraryImportReport, ModsettingsImportReport, import_library, import_modsettings,
)
from Utils.library import Library, LibraryStore, ModEntry, TargetKind
from Utils.ranking import RankingDiff, RankingEngine

log = logging.getLogger(__name__)

_LIBRARY_FILE = "library.json"
_STAGING_DIR = "staging"


@dataclass
class _Message:
    kind: str
    token: object = None
    result: object = None
    error: BaseException | None = None


class Debouncer:
    """Fires once a quiet window has passed since the last touch()."""

    def __init__(self, window: float, clock: Callable[[], float]):
        self.window = window
        self._clock = clock
        self._due: float | None = None

    @property
    def armed(self) -> bool:
        return self._due is not None

    def touch(self) -> None:
        self._due = self._clock() + self.window

    def cancel(self) -> None:
        self._due = None

    def force(self) -> None:
        if self._due is not None:
            self._due = self._clock()

    def fire(self) -> bool:
        """True (and disarm) if the window has passed."""
        if self._due is not None and self._clock() >= self._due:
            self._due = None
            return True
        return False


@dataclass
class NativeSyncReport:
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    ghosted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class Controller:

    def __init__(
        self,
        game: BaseGame,
        data_dir: Path | None = None,
        cache: ContentCache | None = None,
        clock: Callable[[], float] = time.monotonic,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.game = game
        self.settings = game.settings
        self.data_dir = Path(data_dir) if data_dir is not None else get_game_data_dir(game.game_id)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        cache_root = self.settings.cache_root or self.data_dir / "cache"
        self.cache = cache if cache is not None else ContentCache(cache_root, log_fn=app_log)
        self.store = LibraryStore(self.data_dir / _LIBRARY_FILE, log_fn=app_log)
        self.store.payload_hook = self._release_payload
        self.engine = DeployEngine(game, self.cache, self.data_dir, log_fn=app_log)
        self.ranking = RankingEngine(log_fn=app_log)
        self.auto_deploy = self.settings.auto_deploy
        self.auto_accept_ranking = self.settings.auto_accept_ranking

        self._clock = clock
        self._executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix="garnet")
        self._channel: queue.Queue[_Message] = queue.Queue()
        self._deploy_timer = Debouncer(self.settings.debounce_seconds, clock)
        self._rank_timer = Debouncer(self.settings.debounce_seconds, clock)
        self._rank_changed: set[str] = set()

        # Heavy-operation flags; only touched on the control thread
        self._deploying = False
        self._relocating = False
        self._ranking_job = False
        self._deploy_pending: bool | None = None   # None, or the full_redeploy flag
        self._deploy_cancel: threading.Event | None = None
        self._imports: dict[str, threading.Event] = {}
        self._gc_wanted = False

        self.deps = DependencyReport()
        self.resolution = Resolution()
        self.last_deploy: DeployResult | None = None
        self.last_rank: RankingDiff | None = None
        self.imported: list[ModEntry] = []
        self.errors: list[BaseException] = []
        self._recompute()

    # -----------------------------------------------------------------------
    # Derived state
    # -----------------------------------------------------------------------

    @property
    def ignored_dependencies(self) -> set[str]:
        return set(self.game.system_module_ids) | set(self.settings.ignored_dependencies)

    def snapshot(self) -> Library:
        return self.store.snapshot()

    def _recompute(self) -> None:
        lib = self.store.snapshot()
        self.deps = resolve_dependencies(lib, self.ignored_dependencies)
        self.resolution = resolve(lib)

    def _after_mutation(self, changed_ids, deploy: bool = True) -> None:
        self._recompute()
        self._rank_changed |= set(changed_ids)
        self._rank_timer.touch()
        if deploy and self.auto_deploy:
            self._deploy_timer.touch()

    @property
    def busy(self) -> bool:
        return bool(self._deploying or self._relocating or self._ranking_job or self._imports)

    @property
    def deploy_pending(self) -> bool:
        return self._deploy_pending is not None

    # -----------------------------------------------------------------------
    # Library mutations
    # -----------------------------------------------------------------------

    def set_enabled(self, mod_id: str, enabled: bool,
                    confirmed: bool = False, cascade: bool = False) -> list[str]:
        """Enable or disable a mod.  Returns the ids whose state changed.

        Enabling a mod with missing or disabled dependencies, or disabling
        one that enabled mods depend on, raises ConfirmationRequired unless
        confirmed.  With cascade the disabled dependencies are enabled too
        (or the dependents disabled too).
        """
        lib = self.store.snapshot()
        entry = lib.require(mod_id)
        if entry.is_ghost:
            app_log(f"{entry.display_name} is not installed; nothing to toggle.")
            return []
        to_change: list[str] = []
        if enabled:
            plan = plan_enable(lib, mod_id, self.ignored_dependencies)
            if plan.needs_confirmation and not confirmed:
                raise ConfirmationRequired("enable", mod_id,
                                           affected=plan.cascade, missing=plan.missing)
            if plan.missing:
                app_log(f"Enabling {entry.name} with missing dependencies: "
                        f"{', '.join(plan.missing)}")
            if cascade:
                to_change.extend(plan.cascade)
        else:
            dependents = plan_disable(lib, mod_id)
            if dependents and not confirmed:
                raise ConfirmationRequired("disable", mod_id, affected=dependents)
            if cascade:
                to_change.extend(dependents)
        to_change.append(mod_id)

        changed = [i for i in to_change if self.store.set_enabled(i, enabled)]
        if changed:
            app_log(f"{'Enabled' if enabled else 'Disabled'}: "
                    f"{', '.join(lib.require(i).name for i in changed)}")
            self._after_mutation(changed)
        return changed

    def reorder(self, mod_id: str, new_position: int) -> int:
        """Move a mod.  Moving a mod the pending ranking would move pins it.

        With no proposal held yet (a fresh process, or a timer that has not
        fired) the current proposal is computed first.
        """
        pending = self.ranking.pending
        if pending is None and not self._ranking_job:
            pending = self.ranking.propose(self.store.snapshot(), self.resolution)
        if pending is not None and pending.would_move(mod_id):
            self.store.set_rank_pin(mod_id, True)
            app_log(f"Pinned {mod_id}: ranking will leave it where you put it.")
        pos = self.store.reorder(mod_id, new_position)
        self._after_mutation([mod_id])
        return pos

    def set_rank_pin(self, mod_id: str, pinned: bool) -> None:
        self.store.set_rank_pin(mod_id, pinned)
        self._after_mutation([mod_id], deploy=False)

    def clear_rank_pins(self) -> int:
        count = self.store.clear_rank_pins()
        if count:
            self._after_mutation([m.id for m in self.store.snapshot().enabled_mods()], deploy=False)
        return count

    def set_override(self, output_path: str, winner_id: str | None) -> None:
        before = self.resolution.winner_of(output_path)
        self.store.set_override(output_path, winner_id)
        changed = {winner_id} if winner_id else set()
        if before is not None:
            changed.add(before.mod_id)
        self._after_mutation(changed)

    def remove(self, mod_id: str, delete_payload: bool = True, confirmed: bool = False) -> None:
        self.store.remove(mod_id, delete_payload=delete_payload, confirmed=confirmed)
        self._after_mutation([mod_id])

    def _release_payload(self, entry: ModEntry) -> None:
        dropped = self.cache.release(entry.id)
        log.debug("Released %d cache reference(s) of %s", dropped, entry.id)
        self._gc_wanted = True

    def add_mods(self, mods: list[ModEntry]) -> list[str]:
        ids: list[str] = []
        for mod in mods:
            self.store.add(mod)
            # A re-import replaces the payload; drop refs to the old objects
            self.cache.retain(mod.id, {f.digest for f in mod.files})
            ids.append(mod.id)
        if ids:
            self._gc_wanted = True
            self._after_mutation(ids)
        return ids

    # -----------------------------------------------------------------------
    # Import
    # -----------------------------------------------------------------------

    def import_paths(self, paths) -> list[str]:
        """Start background imports.  Returns one token per path (for cancel_import)."""
        staging = self.data_dir / _STAGING_DIR
        staging.mkdir(parents=True, exist_ok=True)
        tokens: list[str] = []
        for p in paths:
            token = str(p)
            if token in self._imports:
                app_log(f"{Path(p).name} is already being imported.")
                continue
            cancel = threading.Event()
            self._imports[token] = cancel
            self._submit("import", token, import_path, Path(p), self.cache, staging,
                         cancel_event=cancel, log_fn=app_log)
            tokens.append(token)
        return tokens

    def cancel_import(self, token: str | None = None) -> None:
        for t, ev in self._imports.items():
            if token is None or t == token:
                ev.set()

    def sync_native(self) -> NativeSyncReport:
        """Pick up paks the user put in the game's Mods folder by hand.

        Paks the deploy manifest owns are ours and skipped.  A previously
        synced pak that is gone becomes a placeholder at the same position.
        """
        report = NativeSyncReport()
        mods_dir = self.game.native_mods_dir()
        owned = {r.dest.name.lower() for r in self.engine.read_manifest().values()
                 if r.target == TargetKind.PAK.value}
        found = scan_native_mods(mods_dir, owned)
        lib = self.store.snapshot()
        present = {m.origin.external_id.lower() for m in found}
        changed: list[str] = []

        for mod in found:
            existing = lib.get(mod.id)
            if existing is not None and not existing.is_ghost and not existing.is_native:
                report.skipped.append(mod.id)
                log.info("Native pak %s has the id of managed mod %s; skipped",
                         mod.origin.external_id, existing.name)
                continue
            self.store.add(mod)
            (report.updated if existing is not None and not existing.is_ghost
             else report.added).append(mod.id)
            changed.append(mod.id)

        for entry in lib.mods():
            if entry.is_native and entry.origin.external_id.lower() not in present:
                self.store.remove(entry.id, confirmed=True, leave_ghost=True)
                report.ghosted.append(entry.id)
                changed.append(entry.id)

        if report.added or report.ghosted:
            app_log(f"Native sync: {len(report.added)} new, "
                    f"{len(report.ghosted)} missing pak(s).")
        if changed:
            self._after_mutation(changed)
        return report

    def import_library(self, path: Path) -> LibraryImportReport:
        report = import_library(self.store, path, log_fn=app_log)
        self.ranking.discard()
        self._after_mutation(report.matched + report.ghosts_created)
        return report

    def import_modsettings(self, path: Path) -> ModsettingsImportReport:
        """Apply a modsettings.lsx load order.  Raises ValueError for unreadable files."""
        report = import_modsettings(self.store, path, log_fn=app_log)
        self._after_mutation(report.order)
        return report

    # -----------------------------------------------------------------------
    # Deploy / rollback / relocation
    # -----------------------------------------------------------------------

    def request_deploy(self, full_redeploy: bool = False) -> bool:
        """Deploy now, or queue one pending deploy if one is running.

        Returns True if a deploy was started.  Raises BusyError while the
        cache is being relocated.
        """
        if self._relocating:
            raise BusyError("The content cache is being relocated; deploy when it is done.")
        self._deploy_timer.cancel()
        if self._deploying:
            self._deploy_pending = bool(self._deploy_pending) or full_redeploy
            app_log("Deploy queued: another deploy is running.")
            return False
        self._start_deploy(full_redeploy)
        return True

    def _start_deploy(self, full_redeploy: bool = False) -> None:
        self._deploying = True
        self._deploy_cancel = threading.Event()
        lib = self.store.snapshot()
        self._submit("deploy", None, self.engine.deploy, lib, resolve(lib),
                     cancel_event=self._deploy_cancel, full_redeploy=full_redeploy)

    def cancel_deploy(self) -> None:
        if self._deploy_cancel is not None:
            self._deploy_cancel.set()
        self._deploy_pending = None

    def rollback(self, backup_id: str | None = None) -> None:
        """Restore the deploy state of a backup.  Refused while anything else runs."""
        if self.busy:
            raise BusyError("Cannot roll back while other tasks are running.")
        self._deploy_timer.cancel()
        self._deploy_pending = None
        self._deploying = True
        self._deploy_cancel = threading.Event()
        self._submit("rollback", backup_id, self.engine.rollback, backup_id,
                     cancel_event=self._deploy_cancel)

    def purge(self) -> None:
        if self.busy:
            raise BusyError("Cannot purge while other tasks are running.")
        self._deploy_timer.cancel()
        self._deploy_pending = None
        self._deploying = True
        self._deploy_cancel = threading.Event()
        self._submit("deploy", None, self.engine.purge, cancel_event=self._deploy_cancel)

    def relocate_cache(self, new_root: Path) -> None:
        if self._deploying:
            raise BusyError("A deploy is running; relocate the cache when it is done.")
        if self._relocating:
            raise BusyError("The content cache is already being relocated.")
        self._relocating = True
        self._submit("relocate", Path(new_root), self.cache.relocate, Path(new_root))

    # -----------------------------------------------------------------------
    # Ranking
    # -----------------------------------------------------------------------

    def request_rank(self) -> None:
        """Full ranking rescan in the background."""
        if self._ranking_job:
            return
        self._ranking_job = True
        self._rank_timer.cancel()
        self._rank_changed.clear()
        lib = self.store.snapshot()
        self._submit("rank", None, _full_rank, lib, resolve(lib))

    def _incremental_rank(self) -> None:
        changed, self._rank_changed = self._rank_changed, set()
        diff = self.ranking.update(self.store.snapshot(), self.resolution, changed)
        self._ranking_done(diff)

    def _ranking_done(self, diff: RankingDiff) -> None:
        self.last_rank = diff
        if diff.changed:
            app_log(f"Ranking suggests moving {len(diff.moves)} mod(s).")
            if self.auto_accept_ranking:
                self.accept_ranking()

    def accept_ranking(self) -> bool:
        diff = self.ranking.pending
        if diff is None:
            return False
        if not self.ranking.accept(diff, self.store):
            return False
        self._after_mutation([m.mod_id for m in diff.moves])
        return True

    # -----------------------------------------------------------------------
    # Message pump
    # -----------------------------------------------------------------------

    def _submit(self, kind: str, token, fn, *args, **kwargs) -> None:
        def _job() -> None:
            try:
                result = fn(*args, **kwargs)
            except Exception as exc:
                self._channel.put(_Message(kind, token, error=exc))
                return
            self._channel.put(_Message(kind, token, result=result))
        self._executor.submit(_job)

    def _handle(self, msg: _Message) -> None:
        if msg.error is not None and not isinstance(msg.error, ModManagerError):
            log.error("%s task failed", msg.kind, exc_info=msg.error)
        if msg.error is not None:
            self.errors.append(msg.error)
            app_log(f"{msg.kind.capitalize()} failed: {msg.error}")

        if msg.kind == "import":
            self._imports.pop(msg.token, None)
            if msg.error is None:
                self.imported.extend(msg.result)
                self.add_mods(msg.result)
        elif msg.kind in ("deploy", "rollback"):
            self._deploying = False
            self._deploy_cancel = None
            if msg.error is None:
                if msg.kind == "rollback":
                    self.store.replace(msg.result)
                    self.ranking.discard()
                    self._after_mutation([m.id for m in msg.result.mods()], deploy=False)
                else:
                    self.last_deploy = msg.result
                    if msg.result.removed:
                        # Unlinked objects may now be unowned
                        self._gc_wanted = True
            if self._deploy_pending is not None and not self._relocating:
                full, self._deploy_pending = self._deploy_pending, None
                self._start_deploy(full)
        elif msg.kind == "relocate":
            self._relocating = False
            if msg.error is None:
                self.settings.cache_root = msg.token
                self.game.save_settings()
            if self._deploy_pending is not None:
                full, self._deploy_pending = self._deploy_pending, None
                self._start_deploy(full)
        elif msg.kind == "rank":
            self._ranking_job = False
            if msg.error is None:
                engine, diff = msg.result
                current = [m.id for m in self.store.snapshot().enabled_mods()]
                if current == diff.old_order:
                    self.ranking = engine
                    self._ranking_done(diff)
                else:
                    self._rank_timer.touch()

    def pump(self) -> int:
        """Apply finished background work and fire due timers.  Control thread only."""
        handled = 0
        while True:
            try:
                msg = self._channel.get_nowait()
            except queue.Empty:
                break
            self._handle(msg)
            handled += 1

        if self._rank_timer.fire() and not self._ranking_job:
            self._incremental_rank()
        if self._deploy_timer.fire():
            if self._relocating or self._deploying:
                # Held until the running operation finishes
                self._deploy_pending = bool(self._deploy_pending)
            else:
                self._start_deploy()
        if self._gc_wanted and not self.busy:
            self._gc_wanted = False
            self.cache.gc()
        drain_app_log()
        return handled

    def flush(self) -> None:
        """Make armed timers due now (used by the CLI, which does not wait)."""
        self._deploy_timer.force()
        self._rank_timer.force()

    def run_until_idle(self, flush: bool = True) -> None:
        """Pump until no work is running, pending or armed."""
        while True:
            if flush:
                self.flush()
            self.pump()
            if not (self.busy or self.deploy_pending
                    or self._deploy_timer.armed or self._rank_timer.armed):
                return
            try:
                self._handle(self._channel.get(timeout=0.1))
            except queue.Empty:
                pass

    def shutdown(self) -> None:
        self.cancel_import()
        self._executor.shutdown(wait=True)
        self.pump()


def _full_rank(library: Library, resolution: Resolution):
    engine = RankingEngine(log_fn=app_log)
    return engine, engine.propose(library, resolution)
