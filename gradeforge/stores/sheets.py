"""
Google Sheets import/export.

Rows use a fixed column layout (SHEET_HEADERS). Export appends reviewed
cards below whatever is already in the first sheet, writing the header row
only when the sheet is empty. Import reads the same layout back.
"""

import logging
import re
from collections.abc import Sequence
from typing import Any
from urllib.parse import quote

import httpx

from gradeforge.models.card import Card, CardStatus, normalize_card_record
from gradeforge.models.failure import FailureKind, KnownError
from gradeforge.services.merger import assign_synthetic_timestamps
from gradeforge.stores.base import (
    DEFAULT_TIMEOUT,
    RemoteStoreError,
    TokenProvider,
    bearer_headers,
    error_message,
)

logger = logging.getLogger(__name__)

SHEETS_API_URL = "https://sheets.googleapis.com/v4/spreadsheets"

SOURCE_NAME = "spreadsheet"

SHEET_HEADERS: tuple[str, ...] = (
    "YEAR",
    "COMPANY",
    "SET",
    "NAME",
    "EDITION",
    "NUMBER",
    "GRADE NAME",
    "GRADE",
    "ID",
    "CENTERING GRADE",
    "CENTERING NOTES",
    "CORNERS GRADE",
    "CORNERS NOTES",
    "EDGES GRADE",
    "EDGES NOTES",
    "SURFACE GRADE",
    "SURFACE NOTES",
    "PRINT QUALITY GRADE",
    "PRINT QUALITY NOTES",
    "SUMMARY",
    "ESTIMATED VALUE",
    "SOURCES",
)

# Column offsets of the five subgrade (grade, notes) pairs, in details order
SUBGRADE_COLUMNS: tuple[tuple[str, int], ...] = (
    ("centering", 9),
    ("corners", 11),
    ("edges", 13),
    ("surface", 15),
    ("printQuality", 17),
)

_SHEET_ID = re.compile(r"/spreadsheets/d/([a-zA-Z0-9-_]+)")
_VALUE = re.compile(r"^\s*([A-Za-z]{3})?\s*\$?\s*([0-9][0-9,]*(?:\.[0-9]+)?)\s*$")


def spreadsheet_id_from_url(url: str) -> str | None:
    match = _SHEET_ID.search(url)
    return match.group(1) if match else None


# =============================================================================
# ROW CONVERSION
# =============================================================================


def card_to_row(card: Card) -> list[Any]:
    """Format a card as one sheet row, in SHEET_HEADERS order."""
    company = card.company or ""
    set_name = card.set_name or ""
    # Sets named after the manufacturer are left blank
    if set_name.upper() == company.upper():
        set_name = ""
    number = f"#{card.card_number}" if card.card_number else ""

    row: list[Any] = [
        card.year or "",
        company.upper(),
        set_name.upper(),
        (card.name or "").upper(),
        (card.edition or "").upper(),
        number.upper(),
        (card.grade_name or "").upper(),
        card.overall_grade if card.overall_grade is not None else "",
        card.id,
    ]

    details = card.details
    for attr in ("centering", "corners", "edges", "surface", "print_quality"):
        sub = getattr(details, attr) if details is not None else None
        row.extend([sub.grade, sub.notes] if sub is not None else ["", ""])

    value = card.market_value
    row.append(card.summary or "")
    row.append(f"{value.currency} {value.average_price}" if value is not None else "N/A")
    row.append(", ".join(s.uri for s in value.source_urls) if value is not None else "")
    return row


def _cell(row: Sequence[Any], index: int) -> str:
    return str(row[index]).strip() if index < len(row) and row[index] is not None else ""


def _parse_int(text: str) -> int | None:
    try:
        return int(float(text))
    except ValueError:
        return None


def _parse_market_value(text: str, sources: str) -> dict[str, Any] | None:
    match = _VALUE.match(text)
    if not match:
        return None
    price = float(match.group(2).replace(",", ""))
    uris = [uri.strip() for uri in sources.split(",") if uri.strip()]
    return {
        "averagePrice": price,
        "minPrice": price,
        "maxPrice": price,
        "currency": (match.group(1) or "USD").upper(),
        "sourceUrls": [{"title": uri, "uri": uri} for uri in uris],
    }


def row_to_record(row: Sequence[Any], index: int) -> dict[str, Any] | None:
    """
    Convert a data row to a card record.

    Returns None for rows with neither a name nor a grade. Rows without an
    ID cell get the id "sheet-<index>".
    """
    name = _cell(row, 3)
    grade = _parse_int(_cell(row, 7))
    if not name and grade is None:
        return None

    record: dict[str, Any] = {
        "id": _cell(row, 8) or f"sheet-{index}",
        "status": (CardStatus.REVIEWED if grade is not None else CardStatus.NEEDS_REVIEW).value,
        "isSynced": True,
        "isDirty": False,
    }
    text_fields = {
        "year": _cell(row, 0),
        "company": _cell(row, 1),
        "set": _cell(row, 2),
        "name": name,
        "edition": _cell(row, 4),
        "cardNumber": _cell(row, 5).lstrip("#"),
        "gradeName": _cell(row, 6),
        "summary": _cell(row, 19),
    }
    record.update({key: value for key, value in text_fields.items() if value})
    if grade is not None:
        record["overallGrade"] = grade

    subgrades: dict[str, dict[str, Any]] = {}
    for key, column in SUBGRADE_COLUMNS:
        sub_grade = _parse_int(_cell(row, column))
        if sub_grade is None:
            break
        subgrades[key] = {"grade": sub_grade, "notes": _cell(row, column + 1)}
    if len(subgrades) == len(SUBGRADE_COLUMNS):
        record["details"] = subgrades

    market_value = _parse_market_value(_cell(row, 20), _cell(row, 21))
    if market_value is not None:
        record["marketValue"] = market_value

    return record


def rows_to_cards(rows: Sequence[Sequence[Any]]) -> list[Card]:
    """Convert sheet values (header row optional) to cards in sheet order."""
    if rows and _cell(rows[0], 0).upper() == SHEET_HEADERS[0]:
        rows = rows[1:]

    records = [r for r in (row_to_record(row, i) for i, row in enumerate(rows)) if r is not None]
    cards = []
    for record in assign_synthetic_timestamps(records):
        card = normalize_card_record(record)
        if card is not None:
            cards.append(card)
    return cards


# =============================================================================
# CLIENT
# =============================================================================


class SheetsTabularSource:
    """TabularSource backed by the Sheets v4 REST API."""

    def __init__(
        self,
        token_provider: TokenProvider,
        sheet_url: str,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        spreadsheet_id = spreadsheet_id_from_url(sheet_url)
        if spreadsheet_id is None:
            raise KnownError(
                kind=FailureKind.INVALID_INPUT,
                message="Invalid Google Sheet URL.",
                detail=sheet_url,
                suggestion="Use the full URL of the spreadsheet, e.g. "
                "https://docs.google.com/spreadsheets/d/<id>/edit",
            )
        self._token_provider = token_provider
        self.spreadsheet_id = spreadsheet_id
        self.timeout = timeout

    def _values_url(self, range_: str) -> str:
        return f"{SHEETS_API_URL}/{self.spreadsheet_id}/values/{quote(range_, safe='')}"

    async def _first_sheet_title(self, client: httpx.AsyncClient, headers: dict[str, str]) -> str:
        response = await client.get(
            f"{SHEETS_API_URL}/{self.spreadsheet_id}",
            params={"fields": "sheets(properties.title)"},
            headers=headers,
        )
        if response.is_error:
            raise RemoteStoreError(
                "read the spreadsheet details",
                error_message(response, "Check the URL and sharing permissions."),
                response.status_code,
            )
        sheets = response.json().get("sheets") or []
        if not sheets:
            raise RemoteStoreError("read the spreadsheet details", "The spreadsheet has no sheets.")
        return str(sheets[0]["properties"]["title"])

    async def _get_values(
        self, client: httpx.AsyncClient, headers: dict[str, str], range_: str
    ) -> list[list[Any]]:
        response = await client.get(self._values_url(range_), headers=headers)
        if response.is_error:
            raise RemoteStoreError(
                "read the spreadsheet",
                error_message(response, "Could not read sheet values."),
                response.status_code,
            )
        values = response.json().get("values")
        return values if isinstance(values, list) else []

    async def fetch_rows(self) -> list[Card]:
        """
        Read every row of the first sheet as cards.

        Raises:
            RemoteStoreError: On HTTP or network failure
        """
        headers = await bearer_headers(self._token_provider, SOURCE_NAME)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                title = await self._first_sheet_title(client, headers)
                values = await self._get_values(client, headers, f"'{title}'")
        except httpx.RequestError as e:
            raise RemoteStoreError("read the spreadsheet", str(e)) from e

        cards = rows_to_cards(values)
        logger.info("SHEET_ROWS_FETCHED", extra={"rows": len(values), "cards": len(cards)})
        return cards

    async def append_rows(self, cards: Sequence[Card]) -> int:
        """
        Append cards (oldest first) below the existing rows.

        Returns the number of card rows written.

        Raises:
            RemoteStoreError: On HTTP or network failure
        """
        if not cards:
            return 0

        ordered = sorted(cards, key=lambda c: c.created_at)
        headers = await bearer_headers(self._token_provider, SOURCE_NAME)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                title = await self._first_sheet_title(client, headers)
                existing = await self._get_values(client, headers, f"'{title}'!A1:A1")

                rows: list[list[Any]] = [] if existing else [list(SHEET_HEADERS)]
                rows.extend(card_to_row(card) for card in ordered)

                append_url = self._values_url(f"'{title}'!A1") + ":append"
                response = await client.post(
                    append_url,
                    params={"valueInputOption": "USER_ENTERED"},
                    headers=headers,
                    json={"values": rows},
                )
        except httpx.RequestError as e:
            raise RemoteStoreError("write to the spreadsheet", str(e)) from e

        if response.is_error:
            raise RemoteStoreError(
                "write to the spreadsheet",
                error_message(response, "Failed to write data to the sheet."),
                response.status_code,
            )

        logger.info("SHEET_ROWS_APPENDED", extra={"count": len(ordered)})
        return len(ordered)
