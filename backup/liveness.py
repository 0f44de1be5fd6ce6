"""Database liveness check run before export and restore."""
from __future__ import annotations

import time
from typing import Callable, Optional

from core.db import DatabaseTools
from core.poll import PollTimeoutError, poll_until
from core.process import ProcessResult

from .config import DatabaseConfig
from .errors import ConnectivityError
from .logs import BackupLogger

START_HINT = "Start the local stack with: npx supabase start"


def ensure_database_ready(
    db: DatabaseTools,
    config: DatabaseConfig,
    *,
    logger: BackupLogger,
    sleep: Callable[[float], None] = time.sleep,
) -> ProcessResult:
    """Run the status probe until the database is usable.

    A probe that cannot be started means the stack is not running. A probe
    that exits non-zero is treated as degraded: accepted with a warning, or
    retried until ``ready_timeout_s`` when ``require_healthy_status`` is set.
    """

    def probe() -> Optional[ProcessResult]:
        try:
            result = db.status()
        except OSError as exc:
            raise ConnectivityError(f"Database status probe could not run: {exc}", hint=START_HINT) from exc
        if result.ok:
            return result
        if not config.require_healthy_status:
            logger.warning(
                "database_degraded",
                container=config.container,
                exit_code=result.exit_code,
                stderr=result.stderr.strip()[:500],
            )
            return result
        return None

    try:
        result = poll_until(
            probe,
            max_wait=config.ready_timeout_s,
            interval=config.ready_poll_s,
            what=f"database {config.container}",
            sleep=sleep,
        )
    except PollTimeoutError as exc:
        raise ConnectivityError(str(exc), hint=START_HINT) from exc
    logger.info("database_ready", container=config.container, exit_code=result.exit_code)
    return result


__all__ = ["START_HINT", "ensure_database_ready"]
