"""
gitrescue/utils.py -- Small filesystem and clock helpers.

Timestamps, backup manifest I/O and directory copying/sizing for the
backup manager and the corruption detector.  Manifests are replaced via
a rename so a crash mid-write never leaves a truncated one behind.
"""

import json
import logging
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------

def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def now_stamp() -> str:
    """Return a filesystem-safe UTC timestamp with millisecond precision."""
    now = now_utc()
    return now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"


# ---------------------------------------------------------------------------
# Manifest files
# ---------------------------------------------------------------------------

def read_manifest(path) -> Optional[dict]:
    """Return the JSON object stored at *path*, or None.

    A missing or malformed manifest makes the backup unusable, so both
    cases come back as None.
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.debug("Unreadable manifest %s: %s", path, exc)
        return None
    return data if isinstance(data, dict) else None


def write_manifest(path, data: dict) -> None:
    """Write *data* to *path* through a sibling temp file and a rename.

    A crash mid-write leaves the previous manifest (or none) in place,
    never a truncated one.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, sort_keys=True)
            fh.write("\n")
        tmp.replace(target)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


# ---------------------------------------------------------------------------
# Directory helpers
# ---------------------------------------------------------------------------

def copy_tree(source, target) -> list[str]:
    """Copy *source* into *target*, merging with whatever is already there.

    Existing files in *target* are overwritten; files only present in
    *target* are left alone.  Symlinks are copied as links.

    Returns
    -------
    list[str]
        Relative paths (forward slashes) of the files copied.
    """
    source = str(source)
    target = str(target)
    copied: list[str] = []
    for dirpath, _dirnames, filenames in os.walk(source):
        rel_dir = os.path.relpath(dirpath, source)
        dest_dir = target if rel_dir == "." else os.path.join(target, rel_dir)
        os.makedirs(dest_dir, exist_ok=True)
        for fname in filenames:
            src = os.path.join(dirpath, fname)
            dst = os.path.join(dest_dir, fname)
            shutil.copy2(src, dst, follow_symlinks=False)
            rel = fname if rel_dir == "." else os.path.join(rel_dir, fname)
            copied.append(rel.replace(os.sep, "/"))
    return copied


def directory_size(path) -> int:
    """Return the total size in bytes of all regular files under *path*."""
    path = str(path)
    if os.path.isfile(path):
        return os.path.getsize(path)
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for fname in filenames:
            fpath = os.path.join(dirpath, fname)
            try:
                if not os.path.islink(fpath):
                    total += os.path.getsize(fpath)
            except OSError:
                logger.debug("Could not stat %s", fpath, exc_info=True)
    return total
