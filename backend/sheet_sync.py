"""
Sheet Sync - pull rows from a linked Google Sheet

The Delegate Surface fetches the sheet (it owns the network); the Core
Controller only ever sees the resulting header row and data rows.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, quote, urlparse

import httpx

from layer_scanner import MARKER_PREFIX
from plugin_errors import NetworkFailure, UserInputError

logger = logging.getLogger(__name__)

SHEETS_API_BASE = "https://sheets.googleapis.com/v4/spreadsheets"
DEFAULT_RANGE = "A1:Z1000"

_SPREADSHEET_PATH = re.compile(r"/spreadsheets/d/([a-zA-Z0-9-_]+)")


@dataclass
class SheetLocation:
    spreadsheet_id: str
    gid: Optional[str] = None


@dataclass
class SheetValues:
    headers: List[str]
    rows: List[List[str]]


def parse_sheet_url(url: str) -> SheetLocation:
    """Extract the spreadsheet id (and tab gid) from a docs.google.com URL."""
    parsed = urlparse((url or "").strip())
    if parsed.scheme not in ("http", "https") or parsed.hostname != "docs.google.com":
        raise UserInputError("Please enter a valid Google Sheets URL.", {"url": url})
    match = _SPREADSHEET_PATH.search(parsed.path)
    if not match:
        raise UserInputError("Could not find a spreadsheet ID in that URL.", {"url": url})
    gid = parse_qs(parsed.query).get("gid", [None])[0]
    if gid is None and parsed.fragment.startswith("gid="):
        gid = parsed.fragment[len("gid="):]
    return SheetLocation(spreadsheet_id=match.group(1), gid=gid)


def split_values(values: List[List[str]]) -> SheetValues:
    """First row is the header; rows are padded / trimmed to the header width."""
    if not values or not values[0]:
        raise UserInputError("The sheet is empty. Add a header row first.")
    headers = [str(h).strip() for h in values[0]]
    width = len(headers)
    rows = []
    for raw in values[1:]:
        row = [str(cell) for cell in raw[:width]]
        row.extend([""] * (width - len(row)))
        rows.append(row)
    return SheetValues(headers=headers, rows=rows)


def auto_match_columns(layer_names: List[str], headers: List[str]) -> Dict[str, str]:
    """Pair `%Name` layers with a `name` column, case-insensitively."""
    by_lower = {h.lower(): h for h in headers}
    matched = {}
    for layer_name in layer_names:
        bare = layer_name[len(MARKER_PREFIX):] if layer_name.startswith(MARKER_PREFIX) else layer_name
        header = by_lower.get(bare.strip().lower())
        if header is not None:
            matched[layer_name] = header
    return matched


def tab_range(title: str, cell_range: str = DEFAULT_RANGE) -> str:
    """A1 range scoped to one tab; quotes inside the title are doubled."""
    return "'{}'!{}".format(title.replace("'", "''"), cell_range)


async def _get_json(client: httpx.AsyncClient, endpoint: str, params: Dict[str, str]) -> Any:
    try:
        response = await client.get(endpoint, params=params)
    except httpx.HTTPError as e:
        logger.error(f"❌ Sheet fetch failed: {e}")
        raise NetworkFailure("Unable to reach Google Sheets. Please check your connection.")

    if response.status_code in (403, 404):
        raise UserInputError("Sheet not found or not shared. Make it viewable by anyone with the link.")
    if response.status_code >= 400:
        raise NetworkFailure(f"Google Sheets returned HTTP {response.status_code}.")

    try:
        return response.json()
    except ValueError as e:
        raise NetworkFailure(f"Google Sheets returned an unreadable response: {e}")


async def resolve_tab_title(client: httpx.AsyncClient, location: SheetLocation, api_key: str) -> str:
    """Look up the title of the tab whose sheetId matches the URL's gid."""
    body = await _get_json(
        client,
        f"{SHEETS_API_BASE}/{location.spreadsheet_id}",
        {"key": api_key, "fields": "sheets.properties(sheetId,title)"},
    )
    sheets = body.get("sheets") if isinstance(body, dict) else None
    for sheet in sheets or []:
        properties = sheet.get("properties") or {}
        if str(properties.get("sheetId")) == location.gid and properties.get("title"):
            return str(properties["title"])
    raise UserInputError(
        "Could not find the sheet tab from that URL. Copy the link again from the tab you want.",
        {"gid": location.gid},
    )


async def fetch_sheet_values(
    client: httpx.AsyncClient,
    url: str,
    api_key: Optional[str],
    cell_range: str = DEFAULT_RANGE,
) -> SheetValues:
    location = parse_sheet_url(url)
    if not api_key:
        raise UserInputError("Google Sheets sync needs GOOGLE_SHEETS_API_KEY to be configured.")

    if location.gid:
        title = await resolve_tab_title(client, location, api_key)
        cell_range = tab_range(title, cell_range)

    endpoint = f"{SHEETS_API_BASE}/{location.spreadsheet_id}/values/{quote(cell_range, safe='')}"
    body = await _get_json(client, endpoint, {"key": api_key})
    values = (body.get("values") if isinstance(body, dict) else None) or []

    sheet = split_values(values)
    logger.info(f"📊 Fetched sheet {location.spreadsheet_id} ({cell_range}): {len(sheet.headers)} column(s), {len(sheet.rows)} row(s)")
    return sheet
