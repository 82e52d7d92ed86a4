"""
Sync orchestration: decide whether a scrape is due, then scrape, persist,
reconcile the calendar and report.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Protocol

from cryptography.exceptions import InvalidTag

from core.canonical import dedupe_entries, normalize_rows, to_local
from core.config import (
    BATCH_SYNC_INTERVAL_MINUTES,
    BATCH_USER_DELAY_SECONDS,
    DEFAULT_MUTATION_LIMIT,
    DEFAULT_SYNC_INTERVAL_MINUTES,
    MUTATION_DELAY_SECONDS,
    PORTAL_PASSWORD,
    PORTAL_USERNAME,
    RETENTION_DAYS,
    SCRAPE_TIMEOUT_SECONDS,
)
from core.database import RosterStore, UserDirectory
from core.errors import (
    AuthenticationFailed,
    CalendarContainerUnresolved,
    ExtractionFailed,
    MissingCredential,
    PersistenceFailed,
)
from models.roster import ReconcileSummary, RosterEntry, ScrapeResult, UserRecord
from services.calendar import CalendarClient, graph_calendar_client
from services.extraction import scrape_roster
from services.reconciliation import reconcile

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[None]]

# One reconciliation at a time per person within this process
_reconcile_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)


class BackgroundRunner(Protocol):
    """Runs a job to completion, now or after the response is sent."""

    async def run(self, job: Job) -> None: ...


class InlineRunner:
    """Awaits the job immediately. Used by scripts, batch runs and tests."""

    deferred = False

    async def run(self, job: Job) -> None:
        await job()


class _OnceJob:
    """Wraps a job so it executes at most once however often it is invoked."""

    def __init__(self, job: Job):
        self._job = job
        self._started = False

    async def __call__(self) -> None:
        if self._started:
            return
        self._started = True
        await self._job()


@dataclass
class SyncRequest:
    person: str | None = None
    credential: str | None = None
    force: bool = False
    verify: bool = False
    mutation_limit: int | None = None


@dataclass
class SyncResult:
    success: bool
    person: str | None = None
    entries: list[RosterEntry] = field(default_factory=list)
    is_live: bool = False
    skipped: bool = False
    message: str = ""
    diagnostic_log: list[str] = field(default_factory=list)
    reconciliation: ReconcileSummary | None = None
    reconciliation_status: str = "not_linked"
    error: str | None = None
    error_code: str | None = None
    display_name: str | None = None
    historical_from: date | None = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "person": self.person,
            "entries": [e.to_dict() for e in self.entries],
            "is_live": self.is_live,
            "skipped": self.skipped,
            "message": self.message,
            "diagnostic_log": self.diagnostic_log,
            "reconciliation": self.reconciliation.to_dict() if self.reconciliation else None,
            "reconciliation_status": self.reconciliation_status,
            "error": self.error,
            "error_code": self.error_code,
            "display_name": self.display_name,
            "historical_from": self.historical_from.isoformat() if self.historical_from else None,
            "fetched_at": self.fetched_at.isoformat(),
        }


def scrape_due(
    user: UserRecord | None,
    has_data: bool,
    force: bool,
    verify: bool,
    now: datetime,
) -> tuple[bool, str]:
    """
    Whether to scrape now, and why.

    Credential verification is never answered from cache, and an empty store
    always triggers a scrape whatever the interval says.
    """
    if not has_data:
        return True, "No stored roster yet"
    if force:
        return True, "Forced"
    if verify:
        return True, "Verifying credentials"
    if user is None or user.last_sync_at is None:
        return True, "Never synced"
    interval = user.sync_interval_minutes or DEFAULT_SYNC_INTERVAL_MINUTES
    elapsed = (now - user.last_sync_at).total_seconds() / 60
    if elapsed < interval:
        return False, f"Interval not passed ({round(elapsed)} < {interval})"
    return True, "Interval passed"


class SyncOrchestrator:
    """
    One sync per call, for one person.

    Collaborators are injected so tests can swap the scraper, the calendar
    client and the background runner.
    """

    def __init__(
        self,
        store: RosterStore,
        users: UserDirectory,
        calendar_factory: Callable[[UserRecord], CalendarClient] = graph_calendar_client,
        scraper: Callable[..., Awaitable[ScrapeResult]] = scrape_roster,
        runner: BackgroundRunner | None = None,
        clock: Callable[[], datetime] | None = None,
        default_username: str = PORTAL_USERNAME,
        default_password: str = PORTAL_PASSWORD,
        scrape_timeout: float | None = SCRAPE_TIMEOUT_SECONDS,
        mutation_delay: float = MUTATION_DELAY_SECONDS,
    ):
        self.store = store
        self.users = users
        self.calendar_factory = calendar_factory
        self.scraper = scraper
        self.runner = runner or InlineRunner()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.default_username = default_username
        self.default_password = default_password
        self.scrape_timeout = scrape_timeout
        self.mutation_delay = mutation_delay

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _identify(self, request: SyncRequest) -> tuple[str | None, UserRecord | None, str | None, list[str]]:
        notes = []
        username = request.person or self.default_username or None
        if not username:
            return None, None, None, notes

        user = self.users.find(username)
        if user:
            username = user.username

        password = request.credential
        if not password and user:
            try:
                password = self.users.decrypt_password(user)
            except (InvalidTag, ValueError) as e:
                logger.error("Stored credential for %s could not be decrypted: %s", username, e)
                notes.append(f"Stored credential could not be decrypted: {e}")
        if not password and not request.person:
            password = self.default_password or None
        return username, user, password, notes

    async def _scrape(self, username: str, password: str | None) -> ScrapeResult:
        call = self.scraper(username, password)
        if not self.scrape_timeout:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self.scrape_timeout)
        except asyncio.TimeoutError:
            # Cancelling the scrape releases its browser session
            logger.error("Scrape for %s timed out after %ss", username, self.scrape_timeout)
            return ScrapeResult(
                success=False,
                diagnostic_log=[f"Scrape timed out after {self.scrape_timeout}s"],
                error="Scrape timed out",
                error_code=ExtractionFailed.code,
            )

    def _persist(
        self,
        username: str,
        user: UserRecord | None,
        request: SyncRequest,
        password: str | None,
        scrape: ScrapeResult,
        watermark: datetime,
        log: list[str],
    ) -> tuple[UserRecord | None, list[RosterEntry], bool]:
        """
        Save a successful scrape. Returns the (possibly new) user, the live
        entries and whether they were saved.

        Stale and retention cleanup only follow a complete scrape. An empty
        scrape while upcoming entries are stored counts as incomplete.
        """
        entries, rejected = normalize_rows(scrape.entries)
        log.extend(rejected)

        # Credentials are only stored once the portal has accepted them
        try:
            user = self.users.find_or_create(username, request.credential if user else password)
            if scrape.display_name and scrape.display_name != user.display_name:
                self.users.update_sync_state(user.id, display_name=scrape.display_name)
                user.display_name = scrape.display_name
        except (MissingCredential, PersistenceFailed) as e:
            logger.error("Could not save user %s: %s", username, e)
            log.append(f"Could not save user: {e}")

        today = to_local(watermark).date()
        try:
            complete = not scrape.partial
            if not entries and self.store.query(username, date_from=today):
                logger.warning("Empty scrape for %s while upcoming entries are stored", username)
                log.append("Portal returned no entries but upcoming ones are stored, keeping them")
                complete = False

            self.store.upsert(entries, scraped_at=watermark)
            if complete:
                self.store.delete_stale_active(username, watermark, today)
                self.store.delete_older_than(username, today - timedelta(days=RETENTION_DAYS))
            else:
                log.append("Incomplete scrape, skipping cleanup of stored entries")
            logger.info("Saved %d entries for %s", len(entries), username)
        except PersistenceFailed as e:
            logger.error("Save failed for %s: %s", username, e)
            log.append(f"Save failed: {e}")
            return user, entries, False
        return user, entries, True

    def _mark_synced(self, user: UserRecord | None, now: datetime) -> None:
        if user is None:
            return
        try:
            self.users.update_sync_state(user.id, last_sync_at=now)
            user.last_sync_at = now
        except PersistenceFailed as e:
            logger.error("Could not record sync time for %s: %s", user.username, e)

    async def _schedule_reconcile(self, user: UserRecord, entries: list[RosterEntry], request: SyncRequest, result: SyncResult) -> None:
        mutation_limit = request.mutation_limit if request.mutation_limit is not None else DEFAULT_MUTATION_LIMIT

        async def job() -> None:
            async with _reconcile_locks[user.username.lower()]:
                try:
                    client = self.calendar_factory(user)
                    summary = await reconcile(
                        user,
                        entries,
                        client,
                        self.users,
                        mutation_limit=mutation_limit,
                        now=self.clock(),
                        delay=self.mutation_delay,
                    )
                except CalendarContainerUnresolved as e:
                    logger.error("Calendar sync aborted for %s: %s", user.username, e)
                    summary = ReconcileSummary(success=False, error=str(e))
                except Exception as e:
                    logger.exception("Calendar sync failed for %s", user.username)
                    summary = ReconcileSummary(success=False, error=str(e))
                result.reconciliation = summary
                result.reconciliation_status = "completed" if summary.success else "failed"

        result.reconciliation_status = "scheduled"
        await self.runner.run(_OnceJob(job))

    # -------------------------------------------------------------------------
    # Entry point
    # -------------------------------------------------------------------------

    async def sync(self, request: SyncRequest) -> SyncResult:
        now = self.clock()
        username, user, password, log = self._identify(request)
        if not username:
            return SyncResult(
                success=False,
                message="No person given and no default portal identity configured",
                error="Missing portal credentials",
                error_code=MissingCredential.code,
            )

        verify = request.verify or request.credential is not None
        cached = self.store.query(username)
        should_scrape, reason = scrape_due(user, bool(cached), request.force, verify, now)
        logger.info("Sync for %s (user id %s): scrape=%s (%s)", username, user.id if user else None, should_scrape, reason)

        result = SyncResult(success=True, person=username, skipped=not should_scrape)
        live_entries: list[RosterEntry] = []

        if should_scrape:
            scrape = await self._scrape(username, password)
            result.diagnostic_log = scrape.diagnostic_log + log

            if scrape.success:
                result.is_live = True
                user, live_entries, saved = self._persist(
                    username, user, request, password, scrape, now, result.diagnostic_log
                )
                result.message = "Live sync successful"
                if not saved:
                    result.error = "Scraped roster could not be saved"
                    result.error_code = PersistenceFailed.code
                    result.message = "Live sync successful, not saved"
            else:
                logger.error("Scrape failed for %s: %s", username, scrape.error)
                if verify and scrape.error_code in (AuthenticationFailed.code, MissingCredential.code):
                    # Wrong credentials must never look like success via the cache
                    return SyncResult(
                        success=False,
                        person=username,
                        diagnostic_log=result.diagnostic_log,
                        message="Credential verification failed",
                        error=scrape.error,
                        error_code=scrape.error_code,
                        reconciliation_status="not_run",
                    )
                result.error = scrape.error
                result.error_code = scrape.error_code
                result.message = "Scrape failed, showing cached"
            self._mark_synced(user, now)
        else:
            result.diagnostic_log = log
            result.message = f"Sync skipped (cached): {reason}"

        if result.error_code == PersistenceFailed.code:
            # The store still holds the previous scrape
            entries = dedupe_entries(live_entries)
        else:
            entries = dedupe_entries(self.store.query(username))
            if not entries and live_entries:
                logger.warning("Store returned nothing for %s, using live data", username)
                entries = dedupe_entries(live_entries)
        result.entries = entries
        result.historical_from = self.store.first_date(username)
        result.display_name = (user.display_name if user else None) or username
        if not entries and result.error:
            result.success = False

        if user is None or not user.calendar_mailbox:
            result.reconciliation_status = "not_linked"
        elif not entries:
            result.reconciliation_status = "no_entries"
        elif request.force or not user.calendar_id or result.is_live:
            await self._schedule_reconcile(user, entries, request, result)
        else:
            result.reconciliation_status = "not_needed"

        result.fetched_at = self.clock()
        return result

    async def run_batch_sync(
        self,
        interval_minutes: int = BATCH_SYNC_INTERVAL_MINUTES,
        pause_seconds: float = BATCH_USER_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> list[dict]:
        """
        Sync every user whose last sync is older than the batch interval.

        Users are processed one after another with a pause in between, which
        is what keeps two scrapes for the same person from overlapping.
        """
        results = []
        users = self.users.list_users()
        logger.info("Batch sync: checking %d users", len(users))
        for user in users:
            now = self.clock()
            if user.last_sync_at and (now - user.last_sync_at) < timedelta(minutes=interval_minutes):
                results.append({"user": user.username, "status": "skipped", "reason": "Interval not reached"})
                continue
            if not user.password:
                results.append({"user": user.username, "status": "skipped", "reason": "No password"})
                continue

            try:
                outcome = await self.sync(
                    SyncRequest(person=user.username, force=True, mutation_limit=DEFAULT_MUTATION_LIMIT)
                )
                results.append({
                    "user": user.username,
                    "status": "success" if outcome.success and outcome.is_live else "failed",
                    "message": outcome.error or outcome.message,
                })
            except Exception as e:
                logger.exception("Batch sync failed for %s", user.username)
                results.append({"user": user.username, "status": "error", "error": str(e)})
            await sleep(pause_seconds)
        return results
