"""Maintenance jobs for derived subscription state."""

from __future__ import annotations

import logging
from typing import Optional

from observability import get_logger, log_event

from .db import SessionFactory, session_scope
from .repository import LicenseRepository
from .service import LicenseService

_LOGGER = get_logger("vipserver.licensing.tasks")


def run_recompute_subscriptions(
    service: LicenseService,
    *,
    session_factory: Optional[SessionFactory] = None,
) -> dict[str, int]:
    """
    Rebuild every stored subscription from its activation tokens.

    Repairs records left stale by a recompute that failed after a token was
    committed. One failing user does not stop the run.
    """

    with session_scope(session_factory) as session:
        user_ids = LicenseRepository(session).list_user_ids_with_tokens()

    recomputed = 0
    failed = 0
    for user_id in user_ids:
        try:
            service.recompute_subscription(user_id)
        except Exception as exc:  # noqa: BLE001
            failed += 1
            log_event(
                _LOGGER,
                logging.ERROR,
                "license.recompute_subscriptions.user_failed",
                user_id=user_id,
                error=str(exc),
            )
            continue
        recomputed += 1

    log_event(
        _LOGGER,
        logging.INFO,
        "license.recompute_subscriptions.completed",
        users=len(user_ids),
        recomputed=recomputed,
        failed=failed,
    )
    return {"users": len(user_ids), "recomputed": recomputed, "failed": failed}
