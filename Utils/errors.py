"""
errors.py
Exception taxonomy shared by the library, cache, deploy and import code.

Conflicts and dependency findings are *not* errors: they are normal results
returned by Utils.filemap.resolve() and Utils.dependencies.resolve_dependencies().
Only the cache-structural failures (LinkUnsupportedError, PartialRelocationError,
ManifestCorruptError) are fatal to the operation that hit them.
"""

from __future__ import annotations

from pathlib import Path


class ModManagerError(Exception):
    """Base class for every error raised by the mod manager core."""


class NotFoundError(ModManagerError):
    """Unknown mod id or output path.  Callers treat it as a no-op with a message."""

    def __init__(self, what: str, key: str):
        self.what = what
        self.key = key
        super().__init__(f"{what} not found: {key}")


class ConfirmationRequired(ModManagerError):
    """An action needs the user's explicit go-ahead before it is applied.

    kind     : "enable", "disable" or "remove"
    mod_id   : the mod the action was requested for
    affected : ids that would be cascaded (dependencies to enable, or
                dependents to disable / left dangling)
    missing  : dependency ids that cannot be satisfied at all
    """

    def __init__(self, kind: str, mod_id: str,
                 affected: list[str] | None = None,
                 missing: list[str] | None = None):
        self.kind = kind
        self.mod_id = mod_id
        self.affected = list(affected or [])
        self.missing = list(missing or [])
        parts = [f"{kind} {mod_id} needs confirmation"]
        if self.missing:
            parts.append(f"missing dependencies: {', '.join(self.missing)}")
        if self.affected:
            parts.append(f"affects: {', '.join(self.affected)}")
        super().__init__("; ".join(parts))


class LinkUnsupportedError(ModManagerError):
    """Neither a hardlink nor a symlink could be created for path."""

    def __init__(self, path: Path | str, reason: str = ""):
        self.path = Path(path)
        self.reason = reason
        msg = f"Cannot link {self.path}: neither hardlink nor symlink is possible"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class RelocationAbortedError(ModManagerError):
    """Cache relocation failed before committing; the old root is untouched."""


class PartialRelocationError(ModManagerError):
    """The cache is split between two roots and needs manual recovery."""

    def __init__(self, old_root: Path, new_root: Path, detail: str = ""):
        self.old_root = Path(old_root)
        self.new_root = Path(new_root)
        self.detail = detail
        super().__init__(
            f"Cache relocation from {self.old_root} to {self.new_root} is incomplete"
            + (f": {detail}" if detail else "") + ".\n"
            "Do not deploy until this is fixed.  Keep both directories, then either:\n"
            f"  - delete {self.new_root} and the relocate.json journal in "
            f"{self.old_root}, then run 'deploy --full', or\n"
            f"  - re-run 'relocate-cache {self.new_root}' once the cause is fixed."
        )


class ManifestCorruptError(ModManagerError):
    """The previous deploy manifest cannot be read; removal set is unknown."""

    def __init__(self, path: Path, detail: str = ""):
        self.path = Path(path)
        super().__init__(
            f"Deploy manifest is unreadable: {self.path}"
            + (f" ({detail})" if detail else "")
            + ".  Confirm a full redeploy (deploy --full) to continue."
        )


class LibraryCorruptError(ModManagerError):
    """library.json exists but cannot be parsed."""


class ImportUnsupportedError(ModManagerError):
    """The import source has no shape we know how to install."""


class DeployError(ModManagerError):
    """A deploy stage failed; the target tree has already been rolled back."""

    def __init__(self, stage: str, state: str, cause: BaseException):
        self.stage = stage
        self.state = state
        self.cause = cause
        super().__init__(f"Deploy failed during {stage} ({state}): {cause}")


class DeployCancelled(ModManagerError):
    """The deploy was cancelled by the user and rolled back."""


class ImportCancelled(ModManagerError):
    """The import was cancelled by the user; staged files were removed."""


class GameNotConfiguredError(ModManagerError):
    """A target directory the operation needs has not been set up."""


class BusyError(ModManagerError):
    """A heavy operation (deploy, relocation, rollback) is already running."""


class StaleProposalError(ModManagerError):
    """A ranking proposal no longer matches the library it was computed from."""
