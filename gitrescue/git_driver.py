"""
gitrescue/git_driver.py -- Timeout-bounded git command runner.

Every interaction with the repository's own tooling goes through
:class:`RepositoryDriver`.  Commands are argv lists handed to
``subprocess.run`` without a shell, so paths and ref names coming from a
damaged repository can never be interpreted as shell syntax.

Usage::

    from gitrescue.git_driver import RepositoryDriver

    driver = RepositoryDriver("/path/to/repo")
    result = driver.run(["rev-parse", "HEAD"], timeout=5)
    print(result.stdout.strip())
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from gitrescue.models.validators import is_valid_object_id

logger = logging.getLogger(__name__)


class GitCommandError(RuntimeError):
    """A git command exited non-zero or could not be started."""

    def __init__(self, args: list[str], returncode: int, stdout: str = "", stderr: str = ""):
        self.command = ["git", *args]
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip()
        super().__init__(
            f"Git command failed ({returncode}): {' '.join(self.command)}"
            + (f"\n{detail}" if detail else "")
        )


class GitTimeoutError(GitCommandError):
    """A git command did not finish within its timeout."""

    def __init__(self, args: list[str], timeout: float):
        self.timeout = timeout
        super().__init__(args, -1, stderr=f"timed out after {timeout:g}s")


@dataclass
class GitCommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout and stderr joined, for scanning diagnostics."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class RepositoryDriver:
    """Runs git commands against a single working tree.

    Parameters
    ----------
    repo_path : str or pathlib.Path
        Root of the working tree.
    git_binary : str
        Name or path of the git executable (default ``"git"``).
    """

    def __init__(self, repo_path, git_binary: str = "git"):
        self.repo_path = Path(repo_path).resolve()
        self.git_binary = git_binary

    @property
    def git_dir(self) -> Path:
        """Return the repository's metadata directory.

        Follows a ``.git`` *file* (``gitdir: <path>``) as written by
        ``git worktree`` and submodules.
        """
        dot_git = self.repo_path / ".git"
        if dot_git.is_file():
            try:
                content = dot_git.read_text(encoding="utf-8").strip()
            except OSError:
                return dot_git
            if content.startswith("gitdir:"):
                target = Path(content[len("gitdir:"):].strip())
                if not target.is_absolute():
                    target = (self.repo_path / target).resolve()
                return target
        return dot_git

    def run(self, args: list[str], timeout: float = 30.0, check: bool = True) -> GitCommandResult:
        """Run ``git <args>`` in the working tree.

        Parameters
        ----------
        args : list[str]
            Arguments after ``git``.
        timeout : float
            Seconds before the process is killed.
        check : bool
            If True (default) a non-zero exit raises :class:`GitCommandError`.

        Raises
        ------
        GitTimeoutError
            If the command exceeds *timeout*.
        GitCommandError
            If git cannot be started, or exits non-zero while *check* is set.
        """
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        env["LC_ALL"] = "C"

        logger.debug("git %s (timeout=%ss)", " ".join(args), timeout)
        try:
            proc = subprocess.run(
                [self.git_binary, *args],
                cwd=str(self.repo_path),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as exc:
            raise GitTimeoutError(args, timeout) from exc
        except OSError as exc:
            raise GitCommandError(args, -1, stderr=str(exc)) from exc

        result = GitCommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")
        if check and not result.ok:
            raise GitCommandError(args, result.returncode, result.stdout, result.stderr)
        return result


# ---------------------------------------------------------------------------
# Ref storage
# ---------------------------------------------------------------------------
# ``git for-each-ref`` silently drops refs whose objects are gone, so these
# read the files directly.

def read_packed_refs(git_dir) -> dict[str, str]:
    """Return ``{ref_name: object_id}`` from ``packed-refs``.

    Peeled (``^``) and comment lines are skipped, as are entries whose
    object id is malformed.  A missing file yields an empty dict.
    """
    packed = Path(git_dir) / "packed-refs"
    targets: dict[str, str] = {}
    try:
        lines = packed.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return targets
    except (OSError, UnicodeDecodeError):
        logger.warning("Could not read %s", packed, exc_info=True)
        return targets
    for line in lines:
        if not line or line[0] in "#^":
            continue
        object_name, _, ref_name = line.partition(" ")
        if ref_name and is_valid_object_id(object_name):
            targets[ref_name.strip()] = object_name
    return targets


def list_ref_names(git_dir) -> list[str]:
    """Return every ref name under ``refs/``, loose or packed, sorted."""
    git_dir = Path(git_dir)
    names = set(read_packed_refs(git_dir))
    refs_dir = git_dir / "refs"
    if refs_dir.is_dir():
        for ref_file in refs_dir.rglob("*"):
            if ref_file.is_file() and not ref_file.name.endswith(".lock"):
                names.add("refs/" + ref_file.relative_to(refs_dir).as_posix())
    return sorted(names)
