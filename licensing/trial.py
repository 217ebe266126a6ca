from __future__ import annotations

from datetime import datetime
from typing import Optional

from .repository import LicenseRepository


def has_used_trial(repo: LicenseRepository, identity: str) -> bool:
    return repo.has_trial_record(identity)


def grant_trial(repo: LicenseRepository, identity: str, now: Optional[datetime] = None) -> bool:
    """
    Record the one-time trial for ``identity``.

    First write wins: returns True only for the call that created the record.
    Repeated or concurrent calls return False and never create a second record.
    """

    return repo.insert_trial_if_absent(identity, now=now)
