"""
gitrescue/backup_manager.py -- Point-in-time repository snapshots.

Provides backup creation, restoration, listing and retention for a single
git repository.  Each backup lives under the backup root as either a
directory or a single ``<id>.tar.gz`` archive of that directory.

What is backed up:
    - Full history             (repository.bundle: every ref whose objects exist)
    - Working tree (optional)  (working-directory/**, tracked + untracked files)
    - Repository metadata      (git-metadata/: config, HEAD, refs, logs, hooks,
                                info, packed-refs)
    - Manifest                 (backup-info.json, validated with jsonschema)

What is restored:
    - Objects from the bundle, then the captured branch ref
    - Working-tree files (all of them, or the requested subset)
    - config, hooks and info only (refs and HEAD are left to the bundle)

Usage::

    from gitrescue.backup_manager import BackupManager
    from gitrescue.models import BackupOptions

    bm = BackupManager("/path/to/repo")
    info = bm.create_backup(BackupOptions(reason="before recovery"))
    result = bm.restore_from_backup(info.id)
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import secrets
import shutil
import string
import tarfile
import tempfile
from pathlib import Path
from typing import Optional

import jsonschema
from pydantic import ValidationError

from gitrescue.config import RescueSettings, load_settings
from gitrescue.git_driver import GitCommandError, RepositoryDriver, list_ref_names
from gitrescue.models import (
    BackupInfo,
    BackupOptions,
    BranchState,
    RestoreOptions,
    RestoreResult,
    StorageUsage,
)
from gitrescue.utils import copy_tree, directory_size, now_stamp, now_utc, read_manifest, write_manifest

logger = logging.getLogger(__name__)

MANIFEST_NAME = "backup-info.json"
BUNDLE_NAME = "repository.bundle"
WORKDIR_NAME = "working-directory"
METADATA_NAME = "git-metadata"

_METADATA_ITEMS = ("config", "HEAD", "refs", "logs", "hooks", "info", "packed-refs")
# refs and HEAD come back from the bundle, never from the snapshot
_RESTORE_METADATA_ITEMS = ("config", "hooks", "info")

_BACKUP_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits

MANIFEST_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["id", "path", "created_at", "reason", "branch_state", "size", "compressed"],
    "properties": {
        "version": {"type": "integer", "minimum": 1},
        "id": {"type": "string", "pattern": _BACKUP_ID_RE.pattern},
        "path": {"type": "string"},
        "created_at": {"type": "string", "minLength": 1},
        "reason": {"type": "string"},
        "branch_state": {
            "type": "object",
            "required": ["branch", "commit"],
            "properties": {
                "branch": {"type": "string"},
                "commit": {"type": "string"},
                "staged": {"type": "array", "items": {"type": "string"}},
                "unstaged": {"type": "array", "items": {"type": "string"}},
                "untracked": {"type": "array", "items": {"type": "string"}},
            },
        },
        "size": {"type": "integer", "minimum": 0},
        "compressed": {"type": "boolean"},
        "skipped_refs": {"type": "array", "items": {"type": "string"}},
    },
}


class BackupError(RuntimeError):
    """A backup could not be created or read."""


def validate_manifest(data) -> list[str]:
    """Return human-readable problems with a manifest dict (empty if valid)."""
    validator = jsonschema.Draft202012Validator(MANIFEST_SCHEMA)
    problems = []
    for err in validator.iter_errors(data):
        where = "/".join(str(p) for p in err.absolute_path) or "(root)"
        problems.append(f"{where}: {err.message}")
    return problems


def parse_status_output(output: str) -> tuple[list[str], list[str], list[str]]:
    """Split ``git status --porcelain`` output into staged, unstaged and untracked paths."""
    staged: list[str] = []
    unstaged: list[str] = []
    untracked: list[str] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        code, file_path = line[:2], line[3:]
        if " -> " in file_path:
            file_path = file_path.split(" -> ", 1)[1]
        if code == "??":
            untracked.append(file_path)
            continue
        if code[0] != " ":
            staged.append(file_path)
        if code[1] != " ":
            unstaged.append(file_path)
    return staged, unstaged, untracked


# ---------------------------------------------------------------------------
# BackupManager
# ---------------------------------------------------------------------------

class BackupManager:
    """Creates, restores, lists and prunes repository backups.

    Parameters
    ----------
    repo_path : str or pathlib.Path
        Root of the working tree to protect.
    backup_dir : str or pathlib.Path, optional
        Where backups are stored.  Defaults to a per-repository
        subdirectory of ``settings.backup_dir``.
    settings : RescueSettings, optional
    driver : RepositoryDriver, optional
    """

    # Bump when the manifest format changes
    MANIFEST_VERSION = 1

    def __init__(self, repo_path, backup_dir=None, settings: Optional[RescueSettings] = None,
                 driver: Optional[RepositoryDriver] = None):
        self.settings = settings or load_settings()
        self.driver = driver or RepositoryDriver(repo_path)
        self.repo_path = self.driver.repo_path
        self.git_dir = self.driver.git_dir

        if backup_dir is None:
            digest = hashlib.sha1(str(self.repo_path).encode("utf-8")).hexdigest()[:8]
            backup_dir = Path(self.settings.backup_dir) / f"{self.repo_path.name}-{digest}"
        self.backups_dir = Path(backup_dir).resolve()

    # ------------------------------------------------------------------
    # 1. Creation
    # ------------------------------------------------------------------

    def create_backup(self, options: BackupOptions) -> BackupInfo:
        """Snapshot the repository.

        Only refs whose objects are present go into the bundle.  Refs that
        point at missing objects are left out and listed in
        ``BackupInfo.skipped_refs``, so a repository with a dangling branch
        can still be backed up before it is repaired.

        A failure while pruning old backups is logged and does not undo
        the backup that was just written.

        Raises
        ------
        BackupError
            If any step fails.  The partially written backup is removed
            before the error propagates.
        """
        backup_id = self._generate_backup_id()
        backup_path = self.backups_dir / backup_id

        try:
            os.makedirs(backup_path)
            branch_state = self._capture_branch_state()

            refs, skipped = self._resolvable_refs()
            if not refs:
                raise BackupError("No ref points at an existing object")
            if skipped:
                logger.warning("Leaving %d ref(s) with missing objects out of backup %s: %s",
                               len(skipped), backup_id, ", ".join(skipped))
            self.driver.run(
                ["bundle", "create", str(backup_path / BUNDLE_NAME), *refs],
                timeout=self.settings.heavy_timeout_seconds,
            )
            if options.include_working_directory:
                self._backup_working_directory(backup_path)
            self._backup_git_metadata(backup_path)

            info = BackupInfo(
                id=backup_id,
                path=str(backup_path),
                created_at=now_utc(),
                reason=options.reason,
                branch_state=branch_state,
                size=directory_size(backup_path),
                compressed=options.compress,
                skipped_refs=skipped,
            )
            self._save_manifest(backup_path, info)

            if options.compress:
                archive = self._compress_backup(backup_path)
                info = info.model_copy(update={"path": str(archive), "size": archive.stat().st_size})
        except (GitCommandError, OSError, tarfile.TarError, ValidationError, BackupError) as exc:
            self._remove_partial(backup_id)
            raise BackupError(f"Backup creation failed: {exc}") from exc

        logger.info("Created backup %s (%d bytes): %s", backup_id, info.size, options.reason)

        keep = options.max_backups or self.settings.max_backups
        try:
            removed = self.cleanup_old_backups(keep)
        except OSError as exc:
            logger.warning("Backup %s kept, but pruning old backups failed: %s", backup_id, exc)
        else:
            if removed:
                logger.info("Retention removed %d old backup(s)", removed)
        return info

    def _generate_backup_id(self) -> str:
        suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
        return f"backup-{now_stamp()}-{suffix}"

    def _resolvable_refs(self) -> tuple[list[str], list[str]]:
        """Split refs (and HEAD) into those whose objects exist and those that do not."""
        timeout = self.settings.probe_timeout_seconds
        present: list[str] = []
        missing: list[str] = []
        for name in ["HEAD", *list_ref_names(self.git_dir)]:
            result = self.driver.run(["cat-file", "-e", name], timeout=timeout, check=False)
            if result.ok:
                present.append(name)
            elif name != "HEAD":
                missing.append(name)
        return present, missing

    def _capture_branch_state(self) -> BranchState:
        timeout = self.settings.listing_timeout_seconds
        try:
            branch = self.driver.run(["branch", "--show-current"], timeout=timeout).stdout.strip()
            commit = self.driver.run(["rev-parse", "HEAD"], timeout=timeout).stdout.strip()
            status = self.driver.run(["status", "--porcelain"], timeout=timeout).stdout
        except GitCommandError as exc:
            raise BackupError(f"Failed to capture branch state: {exc}") from exc

        staged, unstaged, untracked = parse_status_output(status)
        return BranchState(
            branch=branch or "HEAD",
            commit=commit,
            staged=staged,
            unstaged=unstaged,
            untracked=untracked,
        )

    def _backup_working_directory(self, backup_path: Path) -> None:
        target_root = backup_path / WORKDIR_NAME
        os.makedirs(target_root, exist_ok=True)

        listing = self.driver.run(
            ["ls-files", "-z", "--cached", "--others", "--exclude-standard"],
            timeout=self.settings.scan_timeout_seconds,
        )
        files = sorted({f for f in listing.stdout.split("\0") if f})

        for rel in files:
            source = self.repo_path / rel
            if source.is_symlink() or not source.is_file():
                logger.warning("Skipping %s: not a regular file", rel)
                continue
            target = target_root / rel
            try:
                os.makedirs(target.parent, exist_ok=True)
                shutil.copy2(source, target)
            except OSError as exc:
                logger.warning("Could not back up %s: %s", rel, exc)

    def _backup_git_metadata(self, backup_path: Path) -> None:
        target_root = backup_path / METADATA_NAME
        os.makedirs(target_root, exist_ok=True)
        for item in _METADATA_ITEMS:
            source = self.git_dir / item
            if source.is_dir():
                copy_tree(source, target_root / item)
            elif source.is_file():
                shutil.copy2(source, target_root / item)

    def _save_manifest(self, backup_path: Path, info: BackupInfo) -> None:
        data = {"version": self.MANIFEST_VERSION, **info.model_dump(mode="json")}
        problems = validate_manifest(data)
        if problems:
            raise BackupError("Invalid backup manifest: " + "; ".join(problems))
        write_manifest(backup_path / MANIFEST_NAME, data)

    def _compress_backup(self, backup_path: Path) -> Path:
        archive = backup_path.with_name(backup_path.name + ".tar.gz")
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(backup_path, arcname=backup_path.name)
        shutil.rmtree(backup_path)
        return archive

    def _remove_partial(self, backup_id: str) -> None:
        for path in (self.backups_dir / backup_id, self.backups_dir / f"{backup_id}.tar.gz"):
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                elif path.exists():
                    path.unlink()
            except OSError:
                logger.warning("Could not remove partial backup %s", path, exc_info=True)

    # ------------------------------------------------------------------
    # 2. Restoration
    # ------------------------------------------------------------------

    def restore_from_backup(self, backup_id: str,
                            options: Optional[RestoreOptions] = None) -> RestoreResult:
        """Restore the repository from backup *backup_id*.

        Never raises for a failed restore; the returned
        :class:`RestoreResult` carries ``success=False`` and the reason in
        ``warnings``.
        """
        options = options or RestoreOptions()
        restored: list[str] = []
        warnings: list[str] = []

        info = self.get_backup_info(backup_id)
        if info is None:
            warnings.append(f"Backup {backup_id} not found or invalid")
            return RestoreResult(success=False, restored_files=restored, warnings=warnings)

        if options.preserve_current_changes:
            try:
                self.driver.run(["stash", "push", "-m", "git-rescue: before restore"],
                                timeout=self.settings.listing_timeout_seconds)
                warnings.append("Current changes stashed before restore")
            except GitCommandError as exc:
                warnings.append(f"Could not stash changes: {exc}")

        tmp_dir = None
        try:
            if info.compressed:
                tmp_dir = tempfile.mkdtemp(prefix="gitrescue_restore_")
                backup_path = self._extract_archive(Path(info.path), Path(tmp_dir), backup_id)
            else:
                backup_path = Path(info.path)

            bundle = backup_path / BUNDLE_NAME
            if bundle.is_file():
                self._restore_from_bundle(bundle, options)
                restored.append("Repository history restored from bundle")
                ref_note = self._restore_branch_ref(info.branch_state)
                if ref_note:
                    restored.append(ref_note)

            workdir = backup_path / WORKDIR_NAME
            if workdir.is_dir():
                restored.extend(self._restore_working_directory(workdir, options, warnings))

            metadata = backup_path / METADATA_NAME
            if metadata.is_dir():
                restored.extend(self._restore_git_metadata(metadata))

            if options.target_branch and options.target_branch != info.branch_state.branch:
                try:
                    self.driver.run(["checkout", options.target_branch],
                                    timeout=self.settings.scan_timeout_seconds)
                    restored.append(f"Switched to branch: {options.target_branch}")
                except GitCommandError as exc:
                    warnings.append(f"Could not switch to branch {options.target_branch}: {exc}")
        except (GitCommandError, OSError, tarfile.TarError, NotImplementedError, BackupError) as exc:
            logger.error("Restore from backup %s failed: %s", backup_id, exc)
            warnings.append(f"Restore from backup {backup_id} failed: {exc}")
            return RestoreResult(success=False, restored_files=restored, warnings=warnings)
        finally:
            if tmp_dir is not None:
                shutil.rmtree(tmp_dir, ignore_errors=True)

        logger.info("Restored backup %s (%d item(s))", backup_id, len(restored))
        return RestoreResult(success=True, restored_files=restored, warnings=warnings)

    def _extract_archive(self, archive: Path, dest: Path, backup_id: str) -> Path:
        with tarfile.open(archive, "r:gz") as tar:
            tar.extractall(dest, filter="data")
        extracted = dest / backup_id
        if not extracted.is_dir():
            raise BackupError(f"Archive {archive.name} does not contain {backup_id}/")
        return extracted

    def _restore_from_bundle(self, bundle: Path, options: RestoreOptions) -> None:
        timeout = self.settings.heavy_timeout_seconds
        self.driver.run(["bundle", "verify", str(bundle)], timeout=timeout)
        if options.partial:
            raise NotImplementedError("Partial restore from a repository bundle is not supported")
        self.driver.run(["bundle", "unbundle", str(bundle)], timeout=timeout)

    def _restore_branch_ref(self, state: BranchState) -> Optional[str]:
        """Point the captured branch back at the captured commit."""
        if state.branch == "HEAD" or not state.commit:
            return None
        ref = f"refs/heads/{state.branch}"
        self.driver.run(["update-ref", ref, state.commit],
                        timeout=self.settings.listing_timeout_seconds)
        return f"Reset {ref} to {state.commit[:12]}"

    def _restore_working_directory(self, workdir: Path, options: RestoreOptions,
                                   warnings: list[str]) -> list[str]:
        if options.partial:
            wanted = [f.replace("\\", "/") for f in options.files]
        else:
            wanted = sorted(
                p.relative_to(workdir).as_posix() for p in workdir.rglob("*") if p.is_file()
            )

        restored = []
        for rel in wanted:
            source = workdir / rel
            if not source.is_file():
                warnings.append(f"File not present in backup: {rel}")
                continue
            target = self.repo_path / rel
            try:
                os.makedirs(target.parent, exist_ok=True)
                shutil.copy2(source, target)
                restored.append(rel)
            except OSError as exc:
                warnings.append(f"Could not restore {rel}: {exc}")
        return restored

    def _restore_git_metadata(self, metadata: Path) -> list[str]:
        restored = []
        for item in _RESTORE_METADATA_ITEMS:
            source = metadata / item
            target = self.git_dir / item
            if source.is_dir():
                copy_tree(source, target)
            elif source.is_file():
                shutil.copy2(source, target)
            else:
                continue
            restored.append(f".git/{item}")
        return restored

    # ------------------------------------------------------------------
    # 3. Inventory
    # ------------------------------------------------------------------

    def list_backups(self) -> list[BackupInfo]:
        """Return every readable backup, newest first."""
        if not self.backups_dir.is_dir():
            return []
        backups = []
        for entry in sorted(self.backups_dir.iterdir()):
            if entry.is_dir():
                backup_id = entry.name
            elif entry.name.endswith(".tar.gz"):
                backup_id = entry.name[:-len(".tar.gz")]
            else:
                continue
            info = self.get_backup_info(backup_id)
            if info is not None:
                backups.append(info)
        backups.sort(key=lambda b: b.created_at, reverse=True)
        return backups

    def get_backup_info(self, backup_id: str) -> Optional[BackupInfo]:
        """Return the manifest of *backup_id*, or None if missing or invalid."""
        if not _BACKUP_ID_RE.match(backup_id or ""):
            return None

        directory = self.backups_dir / backup_id
        archive = self.backups_dir / f"{backup_id}.tar.gz"
        if directory.is_dir():
            data = read_manifest(directory / MANIFEST_NAME)
            location, size = directory, None
        elif archive.is_file():
            data = self._read_archived_manifest(archive, backup_id)
            location, size = archive, archive.stat().st_size
        else:
            return None

        if data is None or validate_manifest(data):
            logger.warning("Ignoring backup %s: manifest missing or invalid", backup_id)
            return None
        data.pop("version", None)
        try:
            info = BackupInfo.model_validate(data)
        except ValidationError:
            logger.warning("Ignoring backup %s: manifest does not parse", backup_id, exc_info=True)
            return None

        update = {"path": str(location)}
        if size is not None:
            update["size"] = size
        return info.model_copy(update=update)

    @staticmethod
    def _read_archived_manifest(archive: Path, backup_id: str):
        try:
            with tarfile.open(archive, "r:gz") as tar:
                member = tar.extractfile(f"{backup_id}/{MANIFEST_NAME}")
                if member is None:
                    return None
                return json.loads(member.read().decode("utf-8"))
        except (KeyError, OSError, tarfile.TarError, ValueError):
            return None

    def delete_backup(self, backup_id: str) -> bool:
        """Delete *backup_id*.  Returns False if it does not exist."""
        if not _BACKUP_ID_RE.match(backup_id or ""):
            return False
        directory = self.backups_dir / backup_id
        archive = self.backups_dir / f"{backup_id}.tar.gz"
        if directory.is_dir():
            shutil.rmtree(directory)
        elif archive.is_file():
            archive.unlink()
        else:
            return False
        logger.info("Deleted backup %s", backup_id)
        return True

    def cleanup_old_backups(self, max_backups: int) -> int:
        """Delete all but the newest *max_backups* backups; return how many went."""
        if max_backups < 0:
            raise ValueError(f"max_backups must be >= 0, got {max_backups}")
        deleted = 0
        for info in self.list_backups()[max_backups:]:
            if self.delete_backup(info.id):
                deleted += 1
        return deleted

    def get_backup_storage_usage(self) -> StorageUsage:
        backups = self.list_backups()
        if not backups:
            return StorageUsage()
        return StorageUsage(
            total_size=sum(b.size for b in backups),
            backup_count=len(backups),
            oldest_backup=backups[-1].created_at,
            newest_backup=backups[0].created_at,
        )
