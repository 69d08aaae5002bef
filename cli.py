"""
Run from project root (or use the installed `garnet` script):
  python cli.py import path/to/Mod-123-1-0.zip          # import and auto-deploy
  python cli.py import a.zip b.pak --no-deploy          # import only
  python cli.py deploy [--full]                         # link the library into the game
  python cli.py mods list [--filter TEXT]
  python cli.py enable <id> [--yes] [--cascade]
  python cli.py move <id> <position>
  python cli.py override set Data/Public/x.txt <id>
  python cli.py conflicts
  python cli.py deps resolved | deps missing
  python cli.py rank [--accept]
  python cli.py backups / rollback [<backup-id>]
  python cli.py relocate-cache /mnt/fast/garnet-cache
  python cli.py configure --game-path ~/Games/BG3 --prefix-path ~/.../pfx

Exit codes: 0 success, 1 failure, 2 usage error or an action that needs --yes.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

# Allow running as python cli.py from the repo root
if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).resolve().parent))

from Utils.app_log import set_app_log
from Utils.controller import Controller
from Utils.dependencies import DepState
from Utils.errors import (
    BusyError, ConfirmationRequired, DeployCancelled, DeployError,
    GameNotConfiguredError, ImportUnsupportedError, LibraryCorruptError,
    LinkUnsupportedError, ManifestCorruptError, ModManagerError, NotFoundError,
    PartialRelocationError, RelocationAbortedError, StaleProposalError,
)
from Utils.filemap import STATUS_LABELS
from Utils.game_loader import load_game
from Utils.interop import export_library, export_modsettings
from Utils.library import TargetKind
from Utils.profile_backup import list_backups
from version import __version__

log = logging.getLogger("garnet")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

DEFAULT_GAME = "baldurs_gate_3"


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

def _emit(args, data, lines: list[str]) -> None:
    if args.format == "json":
        print(json.dumps(data, indent=2, default=str))
    else:
        for line in lines:
            print(line)


def _check_background_errors(ctl: Controller) -> int:
    """Print errors reported by background work.  Returns the exit code."""
    if not ctl.errors:
        return EXIT_OK
    for err in ctl.errors:
        print(f"Error: {err}", file=sys.stderr)
    ctl.errors.clear()
    return EXIT_FAILURE


def _settle(ctl: Controller) -> int:
    ctl.run_until_idle()
    return _check_background_errors(ctl)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_import(ctl: Controller, args) -> int:
    if args.deploy is not None:
        ctl.auto_deploy = args.deploy
    ctl.import_paths(args.paths)
    rc = _settle(ctl)
    _emit(args, [{"id": m.id, "name": m.name, "files": len(m.files)} for m in ctl.imported],
          [f"Imported {m.name} [{m.id}] ({len(m.files)} file(s))" for m in ctl.imported])
    return rc


def cmd_deploy(ctl: Controller, args) -> int:
    ctl.request_deploy(full_redeploy=args.full)
    rc = _settle(ctl)
    r = ctl.last_deploy
    if r is not None and rc == EXIT_OK:
        _emit(args, vars(r) | {"state": r.state.value}, [
            f"Deployed: {r.added} linked, {r.removed} removed, {r.unchanged} unchanged, "
            f"{r.displaced} displaced" + (f" (backup {r.backup_id})" if r.backup_id else ""),
        ])
    return rc


def cmd_purge(ctl: Controller, args) -> int:
    ctl.purge()
    rc = _settle(ctl)
    if rc == EXIT_OK and ctl.last_deploy is not None:
        print(f"Removed {ctl.last_deploy.removed} deployed file(s).")
    return rc


def cmd_mods_list(ctl: Controller, args) -> int:
    lib = ctl.snapshot()
    needle = (args.filter or "").lower()
    rows = []
    for pos, e in enumerate(lib.entries):
        name = e.display_name if e.is_ghost else e.name
        if needle and needle not in name.lower() and needle not in e.id.lower():
            continue
        if e.is_ghost:
            state = "missing"
        else:
            state = "enabled" if e.enabled else "disabled"
        rows.append({
            "position": pos,
            "id":       e.id,
            "name":     name,
            "state":    state,
            "native":   (not e.is_ghost) and e.is_native,
            "pinned":   e.rank_pinned,
            "conflict": STATUS_LABELS.get(ctl.resolution.status.get(e.id, 0), "none"),
            "deps":     ctl.deps.state_of(e.id).value if not e.is_ghost and e.enabled else "",
        })
    lines = [
        f"{r['position']:>4}  {'x' if r['state'] == 'enabled' else ' '}  {r['name']}"
        f"  [{r['id']}]"
        + (" (missing)" if r["state"] == "missing" else "")
        + (" (native)" if r["native"] else "")
        + (" (pinned)" if r["pinned"] else "")
        + (f" conflict:{r['conflict']}" if r["conflict"] != "none" else "")
        + (f" deps:{r['deps']}" if r["deps"] and r["deps"] != DepState.SATISFIED.value else "")
        for r in rows
    ]
    _emit(args, rows, lines or ["No mods."])
    return EXIT_OK


def cmd_set_enabled(ctl: Controller, args) -> int:
    enabled = args.command == "enable"
    changed = ctl.set_enabled(args.id, enabled, confirmed=args.yes, cascade=args.cascade)
    if not changed:
        print(f"{args.id}: nothing changed.")
    return _settle(ctl)


def cmd_remove(ctl: Controller, args) -> int:
    ctl.remove(args.id, delete_payload=not args.keep_payload, confirmed=args.yes)
    print(f"Removed {args.id}.")
    return _settle(ctl)


def cmd_move(ctl: Controller, args) -> int:
    pos = ctl.reorder(args.id, args.position)
    print(f"Moved {args.id} to position {pos}.")
    return _settle(ctl)


def cmd_override(ctl: Controller, args) -> int:
    if args.override_cmd == "set":
        ctl.set_override(args.path, args.id)
        print(f"{args.path} is now supplied by {args.id}.")
    else:
        ctl.set_override(args.path, None)
        print(f"Cleared the override for {args.path}.")
    return _settle(ctl)


def cmd_conflicts(ctl: Controller, args) -> int:
    res = ctl.resolution
    rows = [{
        "path":           c.path,
        "candidates":     list(c.candidates),
        "winner":         c.winner_id,
        "default_winner": c.default_winner_id,
        "override":       c.overridden,
    } for c in res.conflicts]
    lines = [
        f"{c.path}: {c.winner_id}" + (" (override)" if c.overridden else "")
        + f"  <- {', '.join(c.candidates)}"
        for c in res.conflicts
    ]
    for s in res.stale_overrides:
        lines.append(f"stale override: {s.key} -> {s.mod_id} (ignored)")
    _emit(args, {"conflicts": rows,
                 "stale_overrides": [vars(s) for s in res.stale_overrides]},
          lines or ["No conflicts."])
    return EXIT_OK


def cmd_deps(ctl: Controller, args) -> int:
    deps = ctl.deps
    lib = ctl.snapshot()
    if args.deps_cmd == "resolved":
        rows = [{"id": m.id, "name": m.name, "state": deps.state_of(m.id).value,
                 "missing": deps.missing.get(m.id, []), "disabled": deps.disabled.get(m.id, [])}
                for m in lib.enabled_mods()]
        lines = [f"{r['state']:<9}  {r['name']}  [{r['id']}]" for r in rows]
        lines.append(f"{deps.missing_count} mod(s) with missing dependencies, "
                     f"{deps.disabled_count} with disabled dependencies.")
        _emit(args, {"mods": rows, "missing_count": deps.missing_count,
                     "disabled_count": deps.disabled_count}, lines)
        return EXIT_OK
    rows = [{"required_by": e.required_by, "required_by_name": e.required_by_name,
             "dependency": e.dependency_id, "dependency_name": e.dependency_name,
             "state": e.state.value}
            for e in deps.edges if e.state is DepState.MISSING]
    lines = [f"{r['required_by_name']} needs {r['dependency']} ({r['dependency_name']})"
             for r in rows]
    _emit(args, rows, lines or ["No missing dependencies."])
    return EXIT_OK


def cmd_rank(ctl: Controller, args) -> int:
    if args.reset_pins:
        print(f"Cleared {ctl.clear_rank_pins()} rank pin(s).")
    ctl.request_rank()
    rc = _settle(ctl)
    diff = ctl.last_rank
    if diff is None:
        return rc
    lines = [f"{m.name}: {m.old_position} -> {m.new_position}" for m in diff.moves]
    lines += [f"  {line.text}" if line.kind != "header" else line.text for line in diff.explain]
    lines += [f"warning: {w}" for w in diff.warnings]
    _emit(args, {"moves": [vars(m) for m in diff.moves], "pinned": diff.pinned,
                 "warnings": diff.warnings},
          lines if diff.moves else ["Load order already matches the ranking."] + lines)
    if args.accept and diff.changed:
        if ctl.accept_ranking():
            print(f"Applied: {len(diff.moves)} mod(s) moved.")
        rc = _settle(ctl) or rc
    return rc


def cmd_backups(ctl: Controller, args) -> int:
    backups = list_backups(ctl.data_dir)
    _emit(args, [{"id": b.id, "created": b.created.isoformat(), "reason": b.reason}
                 for b in backups],
          [f"{b.id}  {b.reason}" for b in backups] or ["No backups."])
    return EXIT_OK


def cmd_rollback(ctl: Controller, args) -> int:
    ctl.rollback(args.backup_id)
    rc = _settle(ctl)
    if rc == EXIT_OK:
        print(f"Rolled back to {args.backup_id or 'the newest backup'}.")
    return rc


def cmd_export_library(ctl: Controller, args) -> int:
    n = export_library(ctl.snapshot(), args.file, ctl.game.game_id)
    print(f"Exported {n} entr{'y' if n == 1 else 'ies'} to {args.file}")
    return EXIT_OK


def cmd_import_library(ctl: Controller, args) -> int:
    report = ctl.import_library(args.file)
    for s in report.skipped:
        print(f"Skipped: {s}")
    print(f"Matched {len(report.matched)} entr{'y' if len(report.matched) == 1 else 'ies'}.")
    return _settle(ctl)


def cmd_export_modsettings(ctl: Controller, args) -> int:
    n = export_modsettings(ctl.snapshot(), args.file)
    print(f"Wrote {n} mod(s) to {args.file}")
    return EXIT_OK


def cmd_import_modsettings(ctl: Controller, args) -> int:
    try:
        report = ctl.import_modsettings(args.file)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    print(f"{report.listed} listed, {len(report.enabled)} enabled, "
          f"{len(report.ghosts_created)} missing.")
    return _settle(ctl)


def cmd_relocate(ctl: Controller, args) -> int:
    ctl.relocate_cache(args.dir)
    rc = _settle(ctl)
    if rc == EXIT_OK:
        print(f"Cache moved to {ctl.cache.root}")
    return rc


def cmd_sync(ctl: Controller, args) -> int:
    report = ctl.sync_native()
    _emit(args, vars(report), [
        f"{len(report.added)} added, {len(report.updated)} updated, "
        f"{len(report.ghosted)} gone, {len(report.skipped)} skipped.",
    ])
    return _settle(ctl)


def cmd_configure(ctl: Controller, args) -> int:
    game = ctl.game
    if args.game_path is not None:
        game.set_game_path(args.game_path)
    if args.prefix_path is not None and hasattr(game, "set_prefix_path"):
        game.set_prefix_path(args.prefix_path)
    for key in ("mods_path", "modsettings_path"):
        value = getattr(args, key)
        if value is not None:
            setattr(game.settings, key, value)
    if args.auto_deploy is not None:
        game.settings.auto_deploy = args.auto_deploy
    game.save_settings()
    return cmd_paths(ctl, args)


def cmd_paths(ctl: Controller, args) -> int:
    game = ctl.game
    data = {
        "data_dir":    str(ctl.data_dir),
        "cache_root":  str(ctl.cache.root),
        "modsettings": str(game.modsettings_path() or ""),
        "targets":     {k.value: str(game.target_root(k) or "") for k in TargetKind},
    }
    lines = [f"data dir     {data['data_dir']}",
             f"cache root   {data['cache_root']}",
             f"modsettings  {data['modsettings'] or '(not set)'}"]
    lines += [f"{k:<12} {v or '(not set)'}" for k, v in data["targets"].items()]
    for problem in game.validate_install():
        lines.append(f"warning: {problem}")
    _emit(args, data, lines)
    return EXIT_OK


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="garnet",
        description="Garnet Mod Manager: import, order and deploy Baldur's Gate 3 mods.",
    )
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("-v", "--verbose", action="count", default=0,
                    help="More output (-v info, -vv debug)")
    ap.add_argument("-q", "--quiet", action="store_true", help="Only print errors")
    ap.add_argument("--game", default=DEFAULT_GAME, help=f"Game id (default {DEFAULT_GAME})")
    ap.add_argument("--format", choices=("text", "json"), default="text",
                    help="Report format")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("import", help="Import archives, folders or .pak files")
    p.add_argument("paths", nargs="+", type=Path)
    g = p.add_mutually_exclusive_group()
    g.add_argument("--deploy", dest="deploy", action="store_true", default=None)
    g.add_argument("--no-deploy", dest="deploy", action="store_false")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("deploy", help="Link the enabled mods into the game")
    p.add_argument("--full", action="store_true",
                   help="Ignore the previous manifest (after it was reported corrupt)")
    p.set_defaults(func=cmd_deploy)

    p = sub.add_parser("purge", help="Remove every deployed file")
    p.set_defaults(func=cmd_purge)

    p = sub.add_parser("deps", help="Dependency reports")
    p.add_argument("deps_cmd", choices=("resolved", "missing"))
    p.set_defaults(func=cmd_deps)

    p = sub.add_parser("mods", help="List mods")
    p.add_argument("mods_cmd", choices=("list",))
    p.add_argument("--filter", metavar="TEXT")
    p.set_defaults(func=cmd_mods_list)

    for name in ("enable", "disable"):
        p = sub.add_parser(name, help=f"{name.capitalize()} a mod")
        p.add_argument("id")
        p.add_argument("--yes", "-y", action="store_true",
                       help="Go ahead despite dependency warnings")
        p.add_argument("--cascade", action="store_true",
                       help="Also toggle the dependencies / dependents involved")
        p.set_defaults(func=cmd_set_enabled)

    p = sub.add_parser("remove", help="Remove a mod from the library")
    p.add_argument("id")
    p.add_argument("--yes", "-y", action="store_true")
    p.add_argument("--keep-payload", action="store_true",
                   help="Keep the mod's files in the cache")
    p.set_defaults(func=cmd_remove)

    p = sub.add_parser("move", help="Move a mod to a position (0 = bottom)")
    p.add_argument("id")
    p.add_argument("position", type=int)
    p.set_defaults(func=cmd_move)

    p = sub.add_parser("override", help="Pin or clear the winner of one file")
    osub = p.add_subparsers(dest="override_cmd", required=True)
    o = osub.add_parser("set")
    o.add_argument("path")
    o.add_argument("id")
    o = osub.add_parser("clear")
    o.add_argument("path")
    p.set_defaults(func=cmd_override)

    p = sub.add_parser("conflicts", help="List contested files")
    p.set_defaults(func=cmd_conflicts)

    p = sub.add_parser("rank", help="Suggest a conflict-aware load order")
    p.add_argument("--accept", action="store_true", help="Apply the suggestion")
    p.add_argument("--reset-pins", action="store_true", help="Clear every rank pin first")
    p.set_defaults(func=cmd_rank)

    p = sub.add_parser("backups", help="List deploy backups")
    p.set_defaults(func=cmd_backups)

    p = sub.add_parser("rollback", help="Restore a backup (newest by default)")
    p.add_argument("backup_id", nargs="?")
    p.set_defaults(func=cmd_rollback)

    for name, func in (("export-library", cmd_export_library),
                       ("import-library", cmd_import_library),
                       ("export-modsettings", cmd_export_modsettings),
                       ("import-modsettings", cmd_import_modsettings)):
        p = sub.add_parser(name)
        p.add_argument("file", type=Path)
        p.set_defaults(func=func)

    p = sub.add_parser("relocate-cache", help="Move the content cache")
    p.add_argument("dir", type=Path)
    p.set_defaults(func=cmd_relocate)

    p = sub.add_parser("sync", help="Pick up .pak files added to the Mods folder by hand")
    p.set_defaults(func=cmd_sync)

    p = sub.add_parser("paths", help="Show where everything lives")
    p.set_defaults(func=cmd_paths)

    p = sub.add_parser("configure", help="Set game paths (saved to settings.json)")
    p.add_argument("--game-path", type=Path)
    p.add_argument("--prefix-path", type=Path)
    p.add_argument("--mods-path", type=Path)
    p.add_argument("--modsettings-path", type=Path)
    g = p.add_mutually_exclusive_group()
    g.add_argument("--auto-deploy", dest="auto_deploy", action="store_true", default=None)
    g.add_argument("--no-auto-deploy", dest="auto_deploy", action="store_false")
    p.set_defaults(func=cmd_configure)
    return ap


def _configure_logging(args) -> None:
    if args.quiet:
        level = logging.ERROR
    elif args.verbose >= 2:
        level = logging.DEBUG
    elif args.verbose == 1:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    if not args.quiet:
        # app_log lines go to stderr once; keep them out of the root handler
        logging.getLogger("Utils.app_log").propagate = False
        set_app_log(lambda msg: print(msg, file=sys.stderr))


def main(argv: list[str] | None = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    _configure_logging(args)

    ctl = None
    try:
        try:
            game = load_game(args.game)
        except KeyError as exc:
            print(f"Error: {exc.args[0]}", file=sys.stderr)
            return EXIT_USAGE
        ctl = Controller(game)
        return args.func(ctl, args)
    except ConfirmationRequired as exc:
        print(f"{exc}.  Re-run with --yes to go ahead"
              + (" (add --cascade to include them)." if exc.affected else "."),
              file=sys.stderr)
        return EXIT_USAGE
    except (NotFoundError, ImportUnsupportedError, StaleProposalError,
            GameNotConfiguredError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    except (LinkUnsupportedError, PartialRelocationError, ManifestCorruptError,
            RelocationAbortedError, DeployError, DeployCancelled, BusyError,
            LibraryCorruptError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        log.debug("fatal", exc_info=exc)
        return EXIT_FAILURE
    except ModManagerError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    finally:
        if ctl is not None:
            ctl.shutdown()
        set_app_log(None)


if __name__ == "__main__":
    sys.exit(main())
