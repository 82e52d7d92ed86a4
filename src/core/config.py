"""
Configuration constants and environment setup.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# =============================================================================
# PATHS
# =============================================================================

PROJECT_ROOT = Path(__file__).parent.parent.parent
DB_PATH = Path(os.environ.get("ROSTER_DB_PATH", PROJECT_ROOT / "data" / "db" / "roster-sync.db"))
SCREENSHOTS_DIR = PROJECT_ROOT / "output" / "debug"

# =============================================================================
# PORTAL CONFIGURATION
# =============================================================================

PORTAL_BASE_URL = os.environ.get("PORTAL_BASE_URL", "https://mip.agentschapmdk.be/Vlomis")
LOGIN_URL = f"{PORTAL_BASE_URL}/Login.aspx"
ROSTER_URL = f"{PORTAL_BASE_URL}/Planning.aspx"

# Fallback identity when a caller supplies no credentials
PORTAL_USERNAME = os.environ.get("PORTAL_USERNAME", "")
PORTAL_PASSWORD = os.environ.get("PORTAL_PASSWORD", "")

# Remote browser (CDP websocket); a local headless Chromium is launched when empty
BROWSER_WS_ENDPOINT = os.environ.get("BROWSER_WS_ENDPOINT", "")
BROWSER_HEADLESS = os.environ.get("BROWSER_HEADLESS", "true").lower() == "true"
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
)
BROWSER_LOCALE = "nl-BE"

NAVIGATION_TIMEOUT_MS = int(os.environ.get("NAVIGATION_TIMEOUT_MS", "30000"))
RESULT_TABLE_TIMEOUT_MS = 15000
RESULT_TABLE_FALLBACK_DELAY_MS = 5000
ROSTER_MONTHS_AHEAD = 12

SELECTORS = {
    "login_button": 'input[name*="LoginButton"]',
    "username_input": 'input[name*="UserName"]',
    "password_input": 'input[name*="Password"]',
    "date_from_input": 'input[name*="van$txtDate"]',
    "date_to_input": 'input[name*="tot$txtDate"]',
    "search_button": 'input[name*="btnSearch"]',
    "display_name_input": 'input[name*="Medewerker"]',
}

# =============================================================================
# PORTAL VOCABULARY
# =============================================================================

SOURCE_TIMEZONE = "Europe/Brussels"
LEAVE_MARKER = "Verlof"
PENDING_SUFFIX = " (Aangevraagd)"
PENDING_ROW_COLORS = ("#80ffff", "cyan")
CANCEL_AFFORDANCE_SELECTORS = (".del", 'a[title*="schrappen"]')
CANCEL_AFFORDANCE_CELL = 8

# Never mirrored to the calendar (matched as substrings of the entry type)
EXCLUDED_ENTRY_TYPES = ("Rust", "Reserve")

RATE_LIMIT_MARKERS = ("too many requests", "te veel aanvragen")

# =============================================================================
# SYNC CONFIGURATION
# =============================================================================

DEFAULT_SYNC_INTERVAL_MINUTES = 60
MIN_SYNC_INTERVAL_MINUTES = 30
BATCH_SYNC_INTERVAL_MINUTES = 360
BATCH_USER_DELAY_SECONDS = 2.0
RETENTION_DAYS = 365

# Request deadline for one scrape; the browser is released when it passes
SCRAPE_TIMEOUT_SECONDS = float(os.environ.get("SCRAPE_TIMEOUT_SECONDS", "120"))

# =============================================================================
# CALENDAR CONFIGURATION
# =============================================================================

CALENDAR_NAME = os.environ.get("CALENDAR_NAME", "Roster Planning")
CALENDAR_FETCH_LIMIT = 2500
MUTATION_DELAY_SECONDS = float(os.environ.get("MUTATION_DELAY_SECONDS", "0.5"))
DEFAULT_MUTATION_LIMIT = 500

# Entries inside this window are reconciled first
PRIORITY_DAYS_BACK = 7
PRIORITY_DAYS_AHEAD = 30

REPORT_LEAD_MINUTES = 2
REPORT_DURATION_MINUTES = 15
REPORT_ID_PREFIX = "syncreport"

# Single-value extended property holding our deterministic event id
EVENT_ID_PROPERTY = "String {66f5a359-4659-4830-9070-00047ec6ac6e} Name RosterSyncId"

# =============================================================================
# MS GRAPH CREDENTIALS (from environment)
# =============================================================================

GRAPH_TENANT_ID = os.environ.get("MICROSOFT_GRAPH_TENANT_ID", "")
GRAPH_APP_ID = os.environ.get("MICROSOFT_GRAPH_APP_ID", "")
GRAPH_CLIENT_SECRET = os.environ.get("MICROSOFT_GRAPH_CLIENT_SECRET", "")

# =============================================================================
# SECURITY
# =============================================================================

# 32-byte AES key, hex encoded
ENCRYPTION_KEY = os.environ.get("ENCRYPTION_KEY", "")

# =============================================================================
# API CONFIGURATION
# =============================================================================

ROSTER_API_KEY = os.environ.get("ROSTER_API_KEY", "")
CRON_SECRET = os.environ.get("CRON_SECRET", "")
API_HOST = os.environ.get("API_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("API_PORT", "8000"))
API_DEBUG = os.environ.get("API_DEBUG", "false").lower() == "true"
API_VERSION = "1.0.0"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
