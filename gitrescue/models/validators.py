"""
gitrescue/models/validators.py -- Value checks shared by the detector and planner.

These are the semantic checks that sit on top of pydantic's structural
validation:

    - Object id format (40 hex characters, or a symbolic ``ref:`` line)
    - Remote URL scheme acceptance
    - Ordering of the data-loss risk and severity scales

Usage::

    from gitrescue.models.validators import is_valid_remote_url, max_risk

    is_valid_remote_url("git@github.com:owner/repo.git")   # True
    max_risk([DataLossRisk.NONE, DataLossRisk.MODERATE])    # MODERATE
"""

from __future__ import annotations

import logging
import re
from typing import Iterable

from gitrescue.models.base import CorruptionSeverity, DataLossRisk

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Object ids and ref contents
# ------------------------------------------------------------------

_OBJECT_ID_RE = re.compile(r"^[0-9a-fA-F]{40}$")
_SYMBOLIC_REF_RE = re.compile(r"^ref: refs/\S+$")


def is_valid_object_id(value: str) -> bool:
    """Return True if *value* is a 40-hex-character object id."""
    return bool(_OBJECT_ID_RE.match(value.strip()))


def is_valid_ref_content(content: str) -> bool:
    """Return True if a loose ref file's *content* is well formed.

    A loose ref holds either a single object id or a symbolic
    reference such as ``ref: refs/remotes/origin/main``.
    """
    text = content.strip()
    if not text:
        return False
    return bool(_OBJECT_ID_RE.match(text) or _SYMBOLIC_REF_RE.match(text))


# ------------------------------------------------------------------
# Remote URLs
# ------------------------------------------------------------------

_REMOTE_URL_PATTERNS = (
    re.compile(r"^https?://"),
    re.compile(r"^git@"),
    re.compile(r"^ssh://"),
    re.compile(r"^file://"),
    re.compile(r"^[./]"),
)


def is_valid_remote_url(url: str) -> bool:
    """Return True if *url* uses a scheme git can fetch from.

    Accepted: ``http(s)://``, ``ssh://``, scp-style ``git@host:path``,
    ``file://``, and local paths beginning with ``.`` or ``/``.
    """
    url = url.strip()
    return any(p.match(url) for p in _REMOTE_URL_PATTERNS)


# ------------------------------------------------------------------
# Ordered scales
# ------------------------------------------------------------------

RISK_ORDER: tuple[DataLossRisk, ...] = (
    DataLossRisk.NONE,
    DataLossRisk.MINIMAL,
    DataLossRisk.MODERATE,
    DataLossRisk.HIGH,
)

# Positions line up with RISK_ORDER: "acceptable" tolerates "high"
ALLOWED_LOSS_ORDER: tuple[str, ...] = ("none", "minimal", "moderate", "acceptable")

SEVERITY_ORDER: tuple[CorruptionSeverity, ...] = (
    CorruptionSeverity.LOW,
    CorruptionSeverity.MEDIUM,
    CorruptionSeverity.HIGH,
    CorruptionSeverity.CRITICAL,
)

SEVERITY_PENALTY: dict[CorruptionSeverity, int] = {
    CorruptionSeverity.LOW: 5,
    CorruptionSeverity.MEDIUM: 15,
    CorruptionSeverity.HIGH: 30,
    CorruptionSeverity.CRITICAL: 50,
}


def max_risk(risks: Iterable[DataLossRisk]) -> DataLossRisk:
    """Return the worst risk in *risks* (``NONE`` for an empty iterable)."""
    worst = DataLossRisk.NONE
    for risk in risks:
        if RISK_ORDER.index(risk) > RISK_ORDER.index(worst):
            worst = risk
    return worst


def is_within_data_loss_threshold(risk: DataLossRisk, max_allowed: str) -> bool:
    """Return True if *risk* does not exceed the caller's *max_allowed* level.

    Raises
    ------
    ValueError
        If *max_allowed* is not one of ``none``, ``minimal``,
        ``moderate``, ``acceptable``.
    """
    if max_allowed not in ALLOWED_LOSS_ORDER:
        raise ValueError(
            f"max_data_loss must be one of {', '.join(ALLOWED_LOSS_ORDER)}, "
            f"got {max_allowed!r}"
        )
    return RISK_ORDER.index(risk) <= ALLOWED_LOSS_ORDER.index(max_allowed)


def worst_severity(severities: Iterable[CorruptionSeverity]) -> CorruptionSeverity | None:
    """Return the most severe entry, or None when *severities* is empty."""
    worst = None
    for sev in severities:
        if worst is None or SEVERITY_ORDER.index(sev) > SEVERITY_ORDER.index(worst):
            worst = sev
    return worst
