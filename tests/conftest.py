"""Shared test fixtures: a scripted Session Driver and screen builders."""

import pytest

from lpg_batch import verifier
from lpg_batch.auth import LANDING_READY, PASSWORD_INPUT, USERNAME_INPUT

VERIFY_URL = "https://portal.test/merchant/app/verification-nik"
LOGIN_URL = "https://portal.test/merchant-login"

NIK_A = "1111222233334444"
NIK_B = "5555666677778888"
NIK_C = "9999000011112222"
NIK_D = "3333444455556666"


# ---------------------------------------------------------------------------
# Screens — what the page shows after a NIK is submitted
# ---------------------------------------------------------------------------

FORM = {verifier.VERIFY_INPUT: ""}


def alert(text: str) -> dict:
    return {verifier.ALERT: text}


def customer(name="BUDI SANTOSO", category="Rumah Tangga", *, pay=True, check_order=True, add_item=True, **extra):
    screen = {verifier.CUSTOMER_PANEL: f"Informasi Pelanggan\n{name}\n{category}\nUbah"}
    if add_item:
        screen[verifier.ADD_ITEM] = "+"
    if check_order:
        screen[verifier.CHECK_ORDER] = "Cek Pesanan"
    if pay:
        screen[verifier.PAY] = "Proses Transaksi"
    screen.update(extra)
    return screen


def dialog(text: str, *, on_click: dict = None, **controls) -> dict:
    screen = {verifier.DIALOG: text, **controls}
    if on_click:
        screen["_next"] = on_click
    return screen


class FakeSession:
    """
    Stand-in for PlaywrightSession driven by a script of screens.

    `screens` maps a NIK to the list of screens shown after each submission
    of that NIK (a rate-limited NIK is submitted more than once).  A screen
    may be an Exception, raised when the NIK is submitted.  A screen's
    "_next" entry maps a clicked selector to the screen that replaces it.
    """

    def __init__(self, screens: dict = None, form_visible: bool = True):
        self.screens = {nik: list(seq) for nik, seq in (screens or {}).items()}
        self.form_visible = form_visible
        self.visible: dict = {}
        self.calls: list = []
        self.typed: list = []
        self.submitted: list = []
        self.clicks: list = []
        self.captures: list = []
        self._pending = None

    def _show_form(self):
        self.visible = dict(FORM) if self.form_visible else {}

    # ── SessionDriver ─────────────────────────────────────────────────────

    def goto(self, url):
        self.calls.append(("goto", url))
        self._show_form()

    def reload(self):
        self.calls.append(("reload",))
        self._show_form()

    def wait_for(self, selector, timeout):
        self.calls.append(("wait_for", selector))
        if selector == verifier.POST_SUBMIT_STATES:
            return any(k in self.visible for k in (verifier.ALERT, verifier.DIALOG, verifier.CUSTOMER_PANEL))
        return selector in self.visible

    def type(self, selector, text):
        self.calls.append(("type", selector, text))
        self.typed.append((selector, text))
        if selector == verifier.VERIFY_INPUT:
            self._pending = text

    def click(self, selector):
        self.calls.append(("click", selector))
        self.clicks.append(selector)
        if selector == verifier.VERIFY_SUBMIT and verifier.VERIFY_INPUT in self.visible:
            nik = self._pending
            self.submitted.append(nik)
            queue = self.screens.get(nik) or [customer()]
            screen = queue.pop(0) if len(queue) > 1 else queue[0]
            if isinstance(screen, Exception):
                raise screen
            self.visible = dict(screen)
            return
        follow = self.visible.get("_next", {}).get(selector)
        if follow is not None:
            self.visible = dict(follow)

    def query_text(self, selector):
        if selector == "_next":
            return None
        return self.visible.get(selector)

    def screenshot_and_dump_html(self, label):
        self.captures.append(label)
        return None


class LoginSession(FakeSession):
    """FakeSession whose goto/click script the login page instead."""

    def __init__(self, form=True, landing=True, reject_field=None, explode_on=None):
        super().__init__()
        self.form = form
        self.landing = landing
        self.reject_field = reject_field
        self.explode_on = explode_on

    def goto(self, url):
        self.calls.append(("goto", url))
        if self.explode_on == "goto":
            raise RuntimeError("net::ERR_NAME_NOT_RESOLVED")
        self.visible = {USERNAME_INPUT: "", PASSWORD_INPUT: ""} if self.form else {}

    def type(self, selector, text):
        self.calls.append(("type", selector, text))
        if selector == self.reject_field:
            raise RuntimeError(f"Element is not editable: {selector}")

    def click(self, selector):
        self.calls.append(("click", selector))
        if self.landing:
            self.visible = {LANDING_READY: ""}


@pytest.fixture
def sleeps() -> list:
    return []


@pytest.fixture
def make_processor(sleeps):
    """Build a BatchProcessor around a FakeSession with recorded sleeps."""

    def _make(session):
        return verifier.BatchProcessor(
            session,
            VERIFY_URL,
            element_timeout=100,
            settle_timeout=100,
            rate_limit_buffer=1,
            sleep=sleeps.append,
        )

    return _make


@pytest.fixture
def events() -> list:
    return []
