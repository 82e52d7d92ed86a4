#!/usr/bin/env python3
"""
Scrape one roster and print what came back, without touching the database.

Usage:
    python src/scripts/debug_scrape.py
    python src/scripts/debug_scrape.py --user jdoe --password secret --dump-leave
"""

import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from bs4 import BeautifulSoup

from core.canonical import normalize_rows
from core.config import LEAVE_MARKER, PORTAL_PASSWORD, PORTAL_USERNAME, SCREENSHOTS_DIR
from services.extraction import scrape_roster


def dump_leave_rows(html: str) -> Path:
    """Write the raw markup of every leave row to the debug directory."""
    soup = BeautifulSoup(html, "html.parser")
    rows = [str(tr) for tr in soup.find_all("tr") if LEAVE_MARKER in tr.get_text()]

    SCREENSHOTS_DIR.mkdir(parents=True, exist_ok=True)
    path = SCREENSHOTS_DIR / f"leave_rows_{datetime.now():%Y%m%d_%H%M%S}.html"
    path.write_text("\n\n".join(rows), encoding="utf-8")
    print(f"Wrote {len(rows)} leave rows to {path}")
    return path


async def main():
    parser = argparse.ArgumentParser(description="Debug a single portal scrape")
    parser.add_argument("--user", default=PORTAL_USERNAME, help="Portal username (default: PORTAL_USERNAME)")
    parser.add_argument("--password", default=PORTAL_PASSWORD, help="Portal password (default: PORTAL_PASSWORD)")
    parser.add_argument("--dump-leave", action="store_true", help="Save the HTML of leave rows")
    args = parser.parse_args()

    pages = []
    result = await scrape_roster(args.user, args.password, on_page_html=pages.append)

    print("Diagnostic log:")
    for line in result.diagnostic_log:
        print(f"  {line}")
    print("=" * 80)

    if not result.success:
        print(f"Scrape failed [{result.error_code}]: {result.error}")
        sys.exit(1)

    entries, rejected = normalize_rows(result.entries)
    print(f"Display name: {result.display_name}")
    print(f"Rows: {len(result.entries)}, entries: {len(entries)}, rejected: {len(rejected)}\n")
    for entry in entries:
        print(f"  {entry.date}  {entry.entry_type:<30} {entry.start_at:%Y-%m-%d %H:%M} -> {entry.end_at:%Y-%m-%d %H:%M} UTC  {entry.vessel}")
    for message in rejected:
        print(f"  rejected: {message}")

    if args.dump_leave and pages:
        dump_leave_rows(pages[-1])


if __name__ == "__main__":
    asyncio.run(main())
