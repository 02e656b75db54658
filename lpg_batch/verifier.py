"""
Verification engine: core automation loop.

Flow per identifier (one "verification transaction"):
  1. DISPATCH                 type the NIK into the verification form and submit
  2. CHECK_RATE_LIMIT         "tunggu ... MM:SS" → sleep, reload, retry the same NIK
  3. CHECK_NOT_FOUND          unregistered / invalid NIK → failure
  4. CHECK_MULTIPLE_ACCOUNTS  pick the first account and continue
  5. CHECK_UPDATE_REQUIRED    continue anyway when allowed, else failure
  6. CHECK_QUOTA              "melebihi batas wajar" → failure
  7. CHECK_STOCK              stock exhausted → failure and stop the batch
  8. READ_CUSTOMER            parse name + category from the customer panel
  9. CHECKOUT                 household: 1 extra click, others: 3 → pay

Each state handler returns the next Step, a Retry, or a terminal Outcome.
The checks run in the order above; later checks assume earlier ones did
not match.  Between identifiers the session returns to the verification page.
"""

import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from lpg_batch.models import (
    REASON_CUSTOMER_INFO_MISSING,
    REASON_MULTIPLE_ACCOUNTS,
    REASON_NOT_FOUND,
    REASON_QUOTA_EXCEEDED,
    REASON_STOCK_EXHAUSTED,
    REASON_SUBMIT_MISSING,
    REASON_UPDATE_REQUIRED,
    EventKind,
    OutcomeRecord,
    ProgressEvent,
    StopReason,
    normalize_success_limit,
)
from lpg_batch.report import ReportRow, to_rows
from lpg_batch.session import SessionDriver
from lpg_batch.utils import parse_wait_seconds

logger = logging.getLogger("lpg_batch")


# ---------------------------------------------------------------------------
#  Page markup
# ---------------------------------------------------------------------------

VERIFY_INPUT = 'input[id="mantine-r2"]'
VERIFY_SUBMIT = 'button[type="submit"]'

ALERT = '[role="alert"], .mantine-Notification-root, [class*="alertMessage"]'
DIALOG = '[role="dialog"]'

MULTIPLE_ACCOUNTS_FIRST_OPTION = '[role="dialog"] input[type="radio"]'
MULTIPLE_ACCOUNTS_CONTINUE = (
    'button[data-testid="btnContinueMultipleAccount"], '
    '[role="dialog"] button:has-text("Lanjutkan Pilihan")'
)
UPDATE_CONTINUE_ANYWAY = (
    'button[data-testid="btnContinueTrx"], '
    '[role="dialog"] button:has-text("Lanjutkan Transaksi")'
)

CUSTOMER_PANEL = '[class*="infoPelangganSubsidi"]'
ADD_ITEM = 'button[data-testid="actionIcon2"]'
CHECK_ORDER = 'button[data-testid="btnCheckOrder"]'
PAY = 'button[data-testid="btnPay"]'

# Anything that can show up after the NIK is submitted
POST_SUBMIT_STATES = f"{ALERT}, {DIALOG}, {CUSTOMER_PANEL}"

HOUSEHOLD_CATEGORY = "Rumah Tangga"
HOUSEHOLD_EXTRA_CLICKS = 1
OTHER_EXTRA_CLICKS = 3

_RATE_LIMIT_RE = re.compile(r"tunggu|please wait", re.IGNORECASE)
_NOT_FOUND_RE = re.compile(
    r"tidak\s+(terdaftar|ditemukan|valid)|not\s+(found|registered)", re.IGNORECASE
)
_MULTIPLE_ACCOUNTS_RE = re.compile(r"lebih dari satu|beberapa akun|pilih salah satu", re.IGNORECASE)
_UPDATE_REQUIRED_RE = re.compile(r"(perbarui|perbaharui|pembaruan|pembaharuan)\s+data|update data", re.IGNORECASE)
_QUOTA_RE = re.compile(r"melebihi batas wajar|exceeds reasonable limit", re.IGNORECASE)
_STOCK_RE = re.compile(r"stok\b.*\bhabis|stock exhausted|out of stock", re.IGNORECASE)


class PortalUnavailable(RuntimeError):
    """The verification form did not render, even after navigating back to it."""


# ---------------------------------------------------------------------------
#  State machine types
# ---------------------------------------------------------------------------

class Step(Enum):
    DISPATCH = "dispatch"
    CHECK_RATE_LIMIT = "check_rate_limit"
    CHECK_NOT_FOUND = "check_not_found"
    CHECK_MULTIPLE_ACCOUNTS = "check_multiple_accounts"
    CHECK_UPDATE_REQUIRED = "check_update_required"
    CHECK_QUOTA = "check_quota"
    CHECK_STOCK = "check_stock"
    READ_CUSTOMER = "read_customer"
    CHECKOUT = "checkout"


@dataclass(frozen=True)
class Retry:
    """Suspend for `after` seconds, reload, and dispatch the same identifier again."""

    after: float


@dataclass(frozen=True)
class Outcome:
    record: OutcomeRecord
    stop_batch: bool = False


@dataclass
class Transaction:
    """What the current transaction has learned about its customer so far."""

    identifier: str
    customer_name: str | None = None
    customer_category: str | None = None
    household: bool = False
    attempts: int = 0

    def fail(self, reason: str, stop_batch: bool = False) -> Outcome:
        record = OutcomeRecord.failure(
            self.identifier, reason, name=self.customer_name, category=self.customer_category
        )
        return Outcome(record, stop_batch=stop_batch)

    def succeed(self) -> Outcome:
        return Outcome(
            OutcomeRecord.success(self.identifier, name=self.customer_name, category=self.customer_category)
        )


@dataclass
class BatchResult:
    records: list[OutcomeRecord] = field(default_factory=list)
    success_count: int = 0
    stop_reason: StopReason = StopReason.EXHAUSTED
    error: str | None = None

    def rows(self) -> list[ReportRow]:
        return to_rows(self.records)


def parse_customer_panel(text: str) -> tuple[str | None, str | None, bool]:
    """
    Split the customer panel's inner text into (name, category, is_household).

    The panel renders a label line first, the customer's name second, and
    the customer category second-to-last.
    """
    lines = [line.strip() for line in (text or "").split("\n") if line.strip()]
    name = lines[1] if len(lines) >= 2 else None
    category = lines[-2] if len(lines) >= 3 else None
    household = any(HOUSEHOLD_CATEGORY.lower() in line.lower() for line in lines)
    return name, category, household


# ---------------------------------------------------------------------------
#  Engine
# ---------------------------------------------------------------------------

class BatchProcessor:
    """
    Walks the verification page once per identifier and classifies the result.

    Owns nothing but the session it is given; progress is reported through
    the on_progress callback and the final BatchResult.
    """

    def __init__(
        self,
        session: SessionDriver,
        verify_url: str,
        *,
        element_timeout: int = 5_000,
        settle_timeout: int = 3_000,
        rate_limit_buffer: float = 1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.session = session
        self.verify_url = verify_url
        self.element_timeout = element_timeout
        self.settle_timeout = settle_timeout
        self.rate_limit_buffer = rate_limit_buffer
        self._sleep = sleep

        self._handlers = {
            Step.DISPATCH: self._dispatch,
            Step.CHECK_RATE_LIMIT: self._check_rate_limit,
            Step.CHECK_NOT_FOUND: self._check_not_found,
            Step.CHECK_MULTIPLE_ACCOUNTS: self._check_multiple_accounts,
            Step.CHECK_UPDATE_REQUIRED: self._check_update_required,
            Step.CHECK_QUOTA: self._check_quota,
            Step.CHECK_STOCK: self._check_stock,
            Step.READ_CUSTOMER: self._read_customer,
            Step.CHECKOUT: self._checkout,
        }

    # ── Batch loop ───────────────────────────────────────────────────────

    def run(
        self,
        identifiers: list[str],
        success_limit: int | None = None,
        on_progress: Callable[[ProgressEvent], None] | None = None,
    ) -> BatchResult:
        """
        Process identifiers in order until they run out, the success limit is
        reached, or the portal reports stock exhausted.

        An unexpected exception stops the loop; the records gathered so far
        are still returned.
        """
        limit = normalize_success_limit(success_limit, len(identifiers))
        notify = on_progress or (lambda event: None)
        result = BatchResult()

        logger.info("=" * 60)
        logger.info("STARTING VERIFICATION BATCH")
        logger.info(f"  Identifiers:   {len(identifiers)}")
        logger.info(f"  Success limit: {limit}")
        logger.info("=" * 60)

        try:
            self.session.goto(self.verify_url)

            for index, number in enumerate(identifiers):
                logger.info(f"\n{'─' * 50}")
                logger.info(
                    f"NIK {index + 1}/{len(identifiers)}: {number} | "
                    f"Success so far: {result.success_count}/{limit}"
                )
                logger.info(f"{'─' * 50}")

                notify(ProgressEvent(EventKind.DISPATCH, processed=index, current=number))
                outcome = self.verify(number)

                result.records.append(outcome.record)
                if outcome.record.is_success:
                    result.success_count += 1
                notify(ProgressEvent(
                    EventKind.OUTCOME, processed=index + 1, current=number, record=outcome.record,
                ))

                if outcome.stop_batch:
                    logger.warning(f"🛑 Stopping batch after {number}: {outcome.record.failure_reason}")
                    result.stop_reason = StopReason.STOCK_EXHAUSTED
                    break
                if index == len(identifiers) - 1:
                    break
                if result.success_count >= limit:
                    logger.info(f"🎯 Success limit reached ({result.success_count}/{limit}). Stopping.")
                    result.stop_reason = StopReason.SUCCESS_LIMIT
                    break

                self.session.goto(self.verify_url)

        except Exception as e:
            logger.error(f"Verification batch aborted: {e}")
            self._capture("batch_aborted")
            result.stop_reason = StopReason.ERROR
            result.error = str(e)

        failed = len(result.records) - result.success_count
        logger.info("\n" + "=" * 60)
        logger.info("VERIFICATION COMPLETE")
        logger.info(f"  Attempted:   {len(result.records)}/{len(identifiers)}")
        logger.info(f"  Successful:  {result.success_count}")
        logger.info(f"  Failed:      {failed}")
        logger.info(f"  Stop reason: {result.stop_reason.value}")
        logger.info("=" * 60)
        return result

    def verify(self, number: str) -> Outcome:
        """Drive one identifier through the states until a terminal outcome."""
        txn = Transaction(identifier=number)
        step = Step.DISPATCH
        while True:
            logger.debug(f"  [{number}] {step.value}")
            nxt = self._handlers[step](txn)

            if isinstance(nxt, Outcome):
                if nxt.record.is_success:
                    logger.info(f"✅ {number} — success ({txn.customer_category or 'Unknown'})")
                else:
                    logger.info(f"❌ {number} — {nxt.record.failure_reason}")
                return nxt

            if isinstance(nxt, Retry):
                logger.warning(
                    f"⏳ Rate limited on {number} (attempt {txn.attempts}). "
                    f"Waiting {nxt.after:.0f}s before retrying..."
                )
                self._sleep(nxt.after)
                self.session.reload()
                step = Step.DISPATCH
                continue

            step = nxt

    # ── State handlers ───────────────────────────────────────────────────

    def _dispatch(self, txn: Transaction) -> Step:
        if not self.session.wait_for(VERIFY_INPUT, self.element_timeout):
            logger.warning("Verification input not visible — navigating back to the form...")
            self.session.goto(self.verify_url)
            if not self.session.wait_for(VERIFY_INPUT, self.element_timeout):
                self._capture(f"{txn.identifier}_verify_input_missing")
                raise PortalUnavailable(f"Verification input not found at {self.verify_url}")

        txn.attempts += 1
        self.session.type(VERIFY_INPUT, txn.identifier)
        self.session.click(VERIFY_SUBMIT)

        # Let the portal render whichever outcome it picked
        if not self.session.wait_for(POST_SUBMIT_STATES, self.settle_timeout):
            logger.debug(f"  No post-submit state visible within {self.settle_timeout}ms")
        return Step.CHECK_RATE_LIMIT

    def _check_rate_limit(self, txn: Transaction) -> Step | Retry:
        text = self._alert_text()
        if text and _RATE_LIMIT_RE.search(text):
            wait = parse_wait_seconds(text)
            if wait is not None:
                return Retry(after=wait + self.rate_limit_buffer)
            logger.debug(f"  Wait banner without a countdown, ignoring: {text!r}")
        return Step.CHECK_NOT_FOUND

    def _check_not_found(self, txn: Transaction) -> Step | Outcome:
        text = self._alert_text()
        if text and _NOT_FOUND_RE.search(text):
            return txn.fail(REASON_NOT_FOUND)
        return Step.CHECK_MULTIPLE_ACCOUNTS

    def _check_multiple_accounts(self, txn: Transaction) -> Step | Outcome:
        text = self.session.query_text(DIALOG)
        if not text or not _MULTIPLE_ACCOUNTS_RE.search(text):
            return Step.CHECK_UPDATE_REQUIRED

        logger.info("Multiple accounts dialog — selecting the first account.")
        if self.session.query_text(MULTIPLE_ACCOUNTS_FIRST_OPTION) is not None:
            self.session.click(MULTIPLE_ACCOUNTS_FIRST_OPTION)

        if self.session.query_text(MULTIPLE_ACCOUNTS_CONTINUE) is None:
            logger.warning("Continue control missing in the multiple accounts dialog.")
            self._capture(f"{txn.identifier}_multiple_accounts")
            return txn.fail(REASON_MULTIPLE_ACCOUNTS)

        self.session.click(MULTIPLE_ACCOUNTS_CONTINUE)
        self.session.wait_for(POST_SUBMIT_STATES, self.settle_timeout)
        return Step.CHECK_UPDATE_REQUIRED

    def _check_update_required(self, txn: Transaction) -> Step | Outcome:
        text = self.session.query_text(DIALOG)
        if not text or not _UPDATE_REQUIRED_RE.search(text):
            return Step.CHECK_QUOTA

        if self.session.query_text(UPDATE_CONTINUE_ANYWAY) is None:
            logger.warning("Data update required and no way to continue without it.")
            self._capture(f"{txn.identifier}_update_required")
            return txn.fail(REASON_UPDATE_REQUIRED)

        logger.info("Data update prompt — continuing without updating.")
        self.session.click(UPDATE_CONTINUE_ANYWAY)
        self.session.wait_for(POST_SUBMIT_STATES, self.settle_timeout)
        return Step.CHECK_QUOTA

    def _check_quota(self, txn: Transaction) -> Step | Outcome:
        text = self._alert_text()
        if text and _QUOTA_RE.search(text):
            self._capture(f"{txn.identifier}_quota_exceeded")
            return txn.fail(REASON_QUOTA_EXCEEDED)
        return Step.CHECK_STOCK

    def _check_stock(self, txn: Transaction) -> Step | Outcome:
        text = self._alert_text()
        if text and _STOCK_RE.search(text):
            self._capture(f"{txn.identifier}_stock_exhausted")
            return txn.fail(REASON_STOCK_EXHAUSTED, stop_batch=True)
        return Step.READ_CUSTOMER

    def _read_customer(self, txn: Transaction) -> Step | Outcome:
        if not self.session.wait_for(CUSTOMER_PANEL, self.element_timeout):
            self._capture(f"{txn.identifier}_customer_panel_missing")
            return txn.fail(REASON_CUSTOMER_INFO_MISSING)

        text = self.session.query_text(CUSTOMER_PANEL) or ""
        txn.customer_name, txn.customer_category, txn.household = parse_customer_panel(text)
        logger.info(f"  Customer: {txn.customer_name or 'Unknown'} | Jenis Pengguna: {txn.customer_category or 'Unknown'}")
        return Step.CHECKOUT

    def _checkout(self, txn: Transaction) -> Outcome:
        clicks = HOUSEHOLD_EXTRA_CLICKS if txn.household else OTHER_EXTRA_CLICKS

        if not self.session.wait_for(ADD_ITEM, self.element_timeout):
            return self._checkout_blocked(txn, "add_item_missing")
        for _ in range(clicks):
            self.session.click(ADD_ITEM)

        if not self.session.wait_for(CHECK_ORDER, self.element_timeout):
            return self._checkout_blocked(txn, "check_order_missing")
        self.session.click(CHECK_ORDER)

        if not self.session.wait_for(PAY, self.element_timeout):
            return self._checkout_blocked(txn, "pay_missing")
        self.session.click(PAY)
        return txn.succeed()

    def _checkout_blocked(self, txn: Transaction, label: str) -> Outcome:
        """A checkout control never appeared — a late quota/stock banner explains why."""
        text = self._alert_text()
        if text and _STOCK_RE.search(text):
            self._capture(f"{txn.identifier}_stock_exhausted")
            return txn.fail(REASON_STOCK_EXHAUSTED, stop_batch=True)
        if text and _QUOTA_RE.search(text):
            self._capture(f"{txn.identifier}_quota_exceeded")
            return txn.fail(REASON_QUOTA_EXCEEDED)

        logger.warning(f"Checkout control missing for {txn.identifier} ({label}).")
        self._capture(f"{txn.identifier}_{label}")
        return txn.fail(REASON_SUBMIT_MISSING)

    # ── Helpers ──────────────────────────────────────────────────────────

    def _alert_text(self) -> str | None:
        return self.session.query_text(ALERT)

    def _capture(self, label: str) -> None:
        try:
            self.session.screenshot_and_dump_html(label)
        except Exception as e:
            logger.debug(f"Diagnostics capture failed for {label}: {e}")
