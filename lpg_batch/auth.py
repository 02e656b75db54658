"""
Authentication module: merchant portal login.

login() never raises: a missing form, a rejected field or no landing
page after submit is logged and reported as False.
"""

import logging
from dataclasses import dataclass

from lpg_batch.session import SessionDriver

logger = logging.getLogger("lpg_batch")

USERNAME_INPUT = 'input[id="mantine-r0"]'
PASSWORD_INPUT = 'input[id="mantine-r1"]'
SUBMIT_BUTTON = 'button[type="submit"], input[type="submit"]'

# Any of these means the portal routed past the login form.
LANDING_READY = (
    'a[href*="logout"], button[data-action="logout"], '
    '[data-testid="user-menu"], .user-profile, '
    'a[href*="verification-nik"]'
)

LANDING_TIMEOUT = 30_000


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str

    def __bool__(self) -> bool:
        return bool(self.username and self.password)

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password=***)"


def login(
    session: SessionDriver,
    credentials: Credentials,
    login_url: str,
    timeout: int = 5_000,
    landing_timeout: int = LANDING_TIMEOUT,
) -> bool:
    """
    Perform one login transaction:
    1. Navigate to the login page and wait for the form
    2. Fill username and password
    3. Submit and wait for the authenticated landing page

    Returns True when the session is left on the landing page.
    """
    logger.info("🔐 Attempting login...")
    try:
        session.goto(login_url)

        if not session.wait_for(USERNAME_INPUT, timeout):
            logger.error("Login form not found. Check the login URL or selector.")
            session.screenshot_and_dump_html("login_form_missing")
            return False
        logger.debug("Login form found, proceeding with login.")

        try:
            session.type(USERNAME_INPUT, credentials.username)
            session.type(PASSWORD_INPUT, credentials.password)
        except Exception as e:
            logger.error(f"Credential field rejected input: {e}")
            session.screenshot_and_dump_html("login_field_rejected")
            return False

        session.click(SUBMIT_BUTTON)

        if not session.wait_for(LANDING_READY, landing_timeout):
            logger.error(f"No landing page within {landing_timeout}ms after submitting credentials.")
            session.screenshot_and_dump_html("login_no_landing")
            return False

        logger.info("✅ Login successful")
        return True
    except Exception as e:
        logger.error(f"Login failed: {e}")
        try:
            session.screenshot_and_dump_html("login_failed")
        except Exception:
            logger.debug("Diagnostics capture failed after login error")
        return False
