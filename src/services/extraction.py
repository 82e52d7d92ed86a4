"""
Roster extraction from the legacy planning portal using Playwright.

The browser is only used to log in, set the date filter and render the
result table; the rendered HTML is parsed with BeautifulSoup so nothing
outside this module ever sees portal markup.
"""

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import date, datetime, timezone

from bs4 import BeautifulSoup
from playwright.async_api import Browser, Dialog, Page, async_playwright
from playwright.async_api import TimeoutError as PwTimeout

from core.canonical import (
    PORTAL_DATE_PATTERN,
    apply_pending_qualifier,
    format_display_name,
    format_portal_date,
    infer_pending_qualifier,
)
from core.config import (
    BROWSER_HEADLESS,
    BROWSER_LOCALE,
    BROWSER_USER_AGENT,
    BROWSER_WS_ENDPOINT,
    CANCEL_AFFORDANCE_CELL,
    CANCEL_AFFORDANCE_SELECTORS,
    LOGIN_URL,
    NAVIGATION_TIMEOUT_MS,
    RATE_LIMIT_MARKERS,
    RESULT_TABLE_FALLBACK_DELAY_MS,
    RESULT_TABLE_TIMEOUT_MS,
    ROSTER_MONTHS_AHEAD,
    ROSTER_URL,
    SELECTORS,
)
from core.errors import AuthenticationFailed, ExtractionFailed, MissingCredential, UpstreamRateLimited
from models.roster import RawRosterRow, ScrapeResult

logger = logging.getLogger(__name__)

BrowserFactory = Callable[[], AbstractAsyncContextManager[Browser]]

MIN_ROW_CELLS = 7

_RESULTS_READY_JS = r"""
() => Array.from(document.querySelectorAll('tr')).some(row => {
    const cells = row.querySelectorAll(':scope > td');
    return cells.length >= 7 && /\d{1,2}\/\d{1,2}\/\d{4}/.test(cells[4].textContent);
})
"""

_SET_VALUE_JS = """
([selector, value]) => {
    const el = document.querySelector(selector);
    if (el) el.value = value;
}
"""


class DiagnosticLog(list):
    """Timestamped step log returned to the caller for post-mortems."""

    def __call__(self, message: str) -> None:
        logger.info(message)
        self.append(f"[{datetime.now(timezone.utc).isoformat()}] {message}")


@asynccontextmanager
async def open_browser(ws_endpoint: str = BROWSER_WS_ENDPOINT) -> AsyncIterator[Browser]:
    """Connect to the remote browser when configured, else launch Chromium."""
    async with async_playwright() as playwright:
        if ws_endpoint:
            logger.info("Connecting to remote browser...")
            browser = await playwright.chromium.connect_over_cdp(ws_endpoint)
        else:
            browser = await playwright.chromium.launch(
                headless=BROWSER_HEADLESS,
                args=["--no-sandbox", "--disable-setuid-sandbox"],
            )
        try:
            yield browser
        finally:
            await browser.close()


# =============================================================================
# HTML PARSING
# =============================================================================


def _cell_text(cell) -> str:
    return " ".join(cell.get_text(" ").split())


def parse_roster_html(html: str, person: str) -> list[RawRosterRow]:
    """
    Extract roster rows from the rendered planning page.

    A row counts when it has at least 7 cells and the 5th and 6th hold dates.
    Columns: 1 department, 2 function, 3 vessel, 4 from, 5 to, 6 type.
    """
    soup = BeautifulSoup(html, "html.parser")
    rows = []
    for tr in soup.find_all("tr"):
        cells = tr.find_all("td", recursive=False)
        if len(cells) < MIN_ROW_CELLS:
            continue

        start = _cell_text(cells[4])
        end = _cell_text(cells[5])
        if not (PORTAL_DATE_PATTERN.search(start) and PORTAL_DATE_PATTERN.search(end)):
            continue

        entry_type = _cell_text(cells[6])
        row_style = " ".join(filter(None, [tr.get("style"), tr.get("bgcolor")]))
        has_cancel = False
        if len(cells) > CANCEL_AFFORDANCE_CELL:
            cancel_cell = cells[CANCEL_AFFORDANCE_CELL]
            has_cancel = any(cancel_cell.select_one(s) is not None for s in CANCEL_AFFORDANCE_SELECTORS)
        if infer_pending_qualifier(row_style, has_cancel, entry_type):
            entry_type = apply_pending_qualifier(entry_type)

        rows.append(
            RawRosterRow(
                date=start.split()[0],
                entry_type=entry_type,
                start=start,
                end=end,
                person=person,
                function=_cell_text(cells[2]),
                department=_cell_text(cells[1]),
                vessel=_cell_text(cells[3]),
            )
        )
    return rows


def extract_display_name(html: str) -> str | None:
    """Real name from the employee field on the planning form."""
    soup = BeautifulSoup(html, "html.parser")
    field = soup.select_one(SELECTORS["display_name_input"])
    if field is None:
        return None
    raw = (field.get("value") or field.get_text() or "").strip()
    return format_display_name(raw) if raw else None


def is_rate_limited(status: int | None, html: str) -> bool:
    if status == 429:
        return True
    text = html.lower()
    return any(marker in text for marker in RATE_LIMIT_MARKERS)


def roster_date_range(today: date) -> tuple[date, date]:
    """First day of this month to the same day ROSTER_MONTHS_AHEAD later."""
    start = today.replace(day=1)
    months = start.month - 1 + ROSTER_MONTHS_AHEAD
    return start, start.replace(year=start.year + months // 12, month=months % 12 + 1)


# =============================================================================
# BROWSER DRIVER
# =============================================================================


async def _accept_dialog(dialog: Dialog) -> None:
    await dialog.accept()


async def _goto(page: Page, url: str, log: DiagnosticLog) -> str:
    log(f"Navigating to {url}")
    response = await page.goto(url, wait_until="networkidle")
    html = await page.content()
    if is_rate_limited(response.status if response else None, html):
        raise UpstreamRateLimited("Portal is rate limiting requests, try again later")
    return html


async def _wait_for_results(page: Page, log: DiagnosticLog) -> bool:
    """True once the table shows a dated row; False if we fell back to the fixed delay."""
    try:
        await page.wait_for_load_state("networkidle", timeout=RESULT_TABLE_TIMEOUT_MS)
        await page.wait_for_function(_RESULTS_READY_JS, timeout=RESULT_TABLE_TIMEOUT_MS)
    except PwTimeout:
        log("Result table did not populate in time, waiting a fixed delay")
        await page.wait_for_timeout(RESULT_TABLE_FALLBACK_DELAY_MS)
        return False
    return True


async def _drive(
    page: Page,
    username: str,
    password: str,
    today: date,
    log: DiagnosticLog,
    on_page_html: Callable[[str], None] | None = None,
) -> tuple[list[RawRosterRow], str | None, bool]:
    """Returns rows, display name and whether the result table was seen complete."""
    await _goto(page, LOGIN_URL, log)

    if await page.query_selector(SELECTORS["login_button"]):
        log("Login form found. Entering credentials...")
        await page.fill(SELECTORS["username_input"], username)
        await page.fill(SELECTORS["password_input"], password)
        async with page.expect_navigation(wait_until="networkidle"):
            await page.click(SELECTORS["login_button"])
    else:
        log("No login form found. Assuming an authenticated session.")

    await _goto(page, ROSTER_URL, log)
    title = await page.title()
    if "Login" in title or await page.query_selector(SELECTORS["password_input"]):
        log("Redirected to the login page")
        raise AuthenticationFailed("Login failed or session expired")

    populated = True
    date_from, date_to = roster_date_range(today)
    filter_present = all([
        await page.query_selector(SELECTORS["date_from_input"]),
        await page.query_selector(SELECTORS["date_to_input"]),
        await page.query_selector(SELECTORS["search_button"]),
    ])
    if filter_present:
        log(f"Setting range: {format_portal_date(date_from)} - {format_portal_date(date_to)}")
        await page.evaluate(_SET_VALUE_JS, [SELECTORS["date_from_input"], format_portal_date(date_from)])
        await page.evaluate(_SET_VALUE_JS, [SELECTORS["date_to_input"], format_portal_date(date_to)])
        page.on("dialog", _accept_dialog)
        await page.click(SELECTORS["search_button"])
        populated = await _wait_for_results(page, log)
    else:
        log("Date filter not found, using the portal's default range")

    html = await page.content()
    if on_page_html:
        on_page_html(html)
    entries = parse_roster_html(html, username)
    display_name = extract_display_name(html)
    log(f"Extracted {len(entries)} entries.")
    if not populated:
        if not entries:
            raise ExtractionFailed("Result table never populated")
        log("Result table may be incomplete, treating the scrape as partial")
    return entries, display_name, populated


async def scrape_roster(
    username: str | None,
    password: str | None,
    browser_factory: BrowserFactory = open_browser,
    today: date | None = None,
    on_page_html: Callable[[str], None] | None = None,
) -> ScrapeResult:
    """
    Scrape one person's roster.

    Never raises for portal problems: failures come back as an unsuccessful
    result with `error_code` set and the diagnostic log so far. The browser
    is released on every path, including cancellation.

    A result table that never populated fails the scrape when it yielded no
    rows and marks it `partial` otherwise.

    `on_page_html` receives the final rendered page, for debugging.
    """
    log = DiagnosticLog()
    if not username or not password:
        log("Missing portal credentials, not contacting the portal")
        return ScrapeResult(
            success=False,
            diagnostic_log=list(log),
            error="Missing portal credentials",
            error_code=MissingCredential.code,
        )

    today = today or date.today()
    try:
        log("Launching browser...")
        async with browser_factory() as browser:
            context = await browser.new_context(
                user_agent=BROWSER_USER_AGENT,
                locale=BROWSER_LOCALE,
                viewport={"width": 1280, "height": 800},
            )
            page = await context.new_page()
            page.set_default_timeout(NAVIGATION_TIMEOUT_MS)
            entries, display_name, complete = await _drive(page, username, password, today, log, on_page_html)
    except (AuthenticationFailed, UpstreamRateLimited, ExtractionFailed) as e:
        log(f"Scrape failed: {e}")
        return ScrapeResult(success=False, diagnostic_log=list(log), error=str(e), error_code=e.code)
    except Exception as e:
        logger.exception("Scrape failed for %s", username)
        log(f"Scrape failed: {e}")
        return ScrapeResult(
            success=False,
            diagnostic_log=list(log),
            error=str(e),
            error_code=ExtractionFailed.code,
        )

    return ScrapeResult(
        success=True,
        entries=entries,
        diagnostic_log=list(log),
        display_name=display_name,
        partial=not complete,
    )
