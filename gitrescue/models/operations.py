"""
gitrescue/models/operations.py -- Typed remediation steps.

A recovery action never carries shell text.  It carries an ordered list of
operations from this closed set, discriminated by ``kind``:

    RemoveFile(path)            delete a single file (e.g. a stale lock)
    RemoveDirectory(path)       delete a directory tree (e.g. rebase-apply/)
    RunGitCommand(args, ...)    run ``git <args...>`` through the driver
    CreateStash(message)        ``git stash push -m <message>``

Strategies apply them through the repository driver, which passes argv
lists straight to ``subprocess`` without a shell.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class RemoveFile(BaseModel):
    kind: Literal["remove_file"] = "remove_file"
    path: str


class RemoveDirectory(BaseModel):
    kind: Literal["remove_directory"] = "remove_directory"
    path: str


class RunGitCommand(BaseModel):
    kind: Literal["git"] = "git"
    args: list[str]
    timeout_seconds: float = 30.0
    # When True a non-zero exit is logged and the action carries on
    allow_failure: bool = False

    def describe(self) -> str:
        return "git " + " ".join(self.args)


class CreateStash(BaseModel):
    kind: Literal["stash"] = "stash"
    message: str
    include_untracked: bool = False


Operation = Annotated[
    Union[RemoveFile, RemoveDirectory, RunGitCommand, CreateStash],
    Field(discriminator="kind"),
]


def describe_operation(op) -> str:
    """Return a short human-readable label for *op*."""
    if isinstance(op, RemoveFile):
        return f"remove file {op.path}"
    if isinstance(op, RemoveDirectory):
        return f"remove directory {op.path}"
    if isinstance(op, RunGitCommand):
        return op.describe()
    if isinstance(op, CreateStash):
        return f"git stash push -m {op.message!r}"
    raise TypeError(f"Unknown operation type: {type(op).__name__}")
