"""
One job end to end: open a browser session, log in, run the verification batch.

The browser is owned by this call and closed before it returns or raises.
"""

import logging
from typing import Callable

from lpg_batch.auth import Credentials, login
from lpg_batch.models import ProgressEvent
from lpg_batch.session import open_session
from lpg_batch.verifier import BatchProcessor, BatchResult

logger = logging.getLogger("lpg_batch")


class LoginFailed(RuntimeError):
    """The portal rejected the credentials or the login page never settled."""


def run_verification_job(
    config: dict,
    identifiers: list[str],
    success_limit: int | None,
    credentials: Credentials,
    on_progress: Callable[[ProgressEvent], None] | None = None,
    session_factory=open_session,
) -> BatchResult:
    """
    Run the full workflow for one batch.

    Raises LoginFailed when authentication fails; every other outcome,
    including a batch aborted half-way, comes back as a BatchResult.
    """
    logger.info(f"🚀 Starting automation for {len(identifiers)} NIK(s) with limit: {success_limit or 'unlimited'}")

    with session_factory(config) as session:
        if not login(session, credentials, config["login_url"], timeout=config.get("element_timeout", 5_000)):
            raise LoginFailed(f"Login failed for user '{credentials.username}'")

        processor = BatchProcessor(
            session,
            config["verify_url"],
            element_timeout=config.get("element_timeout", 5_000),
            settle_timeout=config.get("settle_timeout", 3_000),
            rate_limit_buffer=config.get("rate_limit_buffer", 1),
        )
        return processor.run(identifiers, success_limit, on_progress)


def build_runner(config: dict, session_factory=open_session):
    """Bind config so the job coordinator can call runner(ids, limit, creds, on_progress)."""

    def _runner(identifiers, success_limit, credentials, on_progress):
        return run_verification_job(
            config, identifiers, success_limit, credentials, on_progress,
            session_factory=session_factory,
        )

    return _runner
