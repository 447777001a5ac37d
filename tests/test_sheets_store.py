"""Tests for the Google Sheets import/export source."""

import json

import httpx
import pytest
import respx

from gradeforge.config import SYNTHETIC_EPOCH_MS
from gradeforge.models.card import CardStatus, MarketValue, SourceLink
from gradeforge.models.failure import FailureKind, KnownError
from gradeforge.stores.base import RemoteStoreError, static_token
from gradeforge.stores.sheets import (
    SHEET_HEADERS,
    SheetsTabularSource,
    card_to_row,
    row_to_record,
    rows_to_cards,
    spreadsheet_id_from_url,
)

SHEET_URL = "https://docs.google.com/spreadsheets/d/sheet-abc_123/edit#gid=0"
SPREADSHEET_PATH = "/v4/spreadsheets/sheet-abc_123"


def data_row(overrides: dict[int, str] | None = None) -> list:
    row = [""] * len(SHEET_HEADERS)
    values = {
        0: "1989",
        1: "UPPER DECK",
        3: "KEN GRIFFEY JR.",
        5: "#1",
        6: "NM-MT",
        7: "8",
    }
    values.update(overrides or {})
    for index, value in values.items():
        row[index] = value
    return row


class FakeSheet:
    """Serves the Sheets endpoints the source uses from in-memory values."""

    def __init__(self, values: list[list] | None = None):
        self.values = values or []
        self.appended: list[list] = []
        self.append_params: dict[str, str] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == SPREADSHEET_PATH:
            return httpx.Response(200, json={"sheets": [{"properties": {"title": "Cards"}}]})
        if path.endswith(":append"):
            self.append_params = dict(request.url.params)
            rows = json.loads(request.content)["values"]
            self.appended.extend(rows)
            self.values.extend(rows)
            return httpx.Response(200, json={"updates": {"updatedRows": len(rows)}})
        if path.endswith("!A1:A1"):
            head = [self.values[0][:1]] if self.values else []
            return httpx.Response(200, json={"values": head} if head else {})
        if path.endswith("/values/'Cards'"):
            return httpx.Response(200, json={"values": self.values})
        return httpx.Response(404, json={"error": {"message": f"Unexpected path {path}"}})


@pytest.fixture
def source() -> SheetsTabularSource:
    return SheetsTabularSource(static_token("token-123"), SHEET_URL)


class TestUrls:
    def test_spreadsheet_id(self) -> None:
        assert spreadsheet_id_from_url(SHEET_URL) == "sheet-abc_123"
        assert spreadsheet_id_from_url("https://example.com/nothing") is None

    def test_invalid_url_rejected(self) -> None:
        with pytest.raises(KnownError) as exc_info:
            SheetsTabularSource(static_token("t"), "not a sheet")

        assert exc_info.value.kind == FailureKind.INVALID_INPUT


class TestRowConversion:
    def test_card_to_row_layout(self, make_card, graded_fields) -> None:
        """Rows follow the fixed column layout, upper-cased."""
        card = make_card(
            status=CardStatus.REVIEWED,
            set_name="Upper Deck",
            summary="Sharp corners.",
            market_value=MarketValue(
                average_price=120.0,
                source_urls=(SourceLink(title="eBay", uri="https://ebay.com/1"),),
            ),
            **graded_fields,
        )

        row = card_to_row(card)

        assert len(row) == len(SHEET_HEADERS)
        assert row[:9] == [
            "1989",
            "UPPER DECK",
            "",
            "KEN GRIFFEY JR.",
            "",
            "#1",
            "NM-MT",
            8,
            card.id,
        ]
        assert row[9:11] == [8, "Clean"]
        assert row[19] == "Sharp corners."
        assert row[20] == "USD 120.0"
        assert row[21] == "https://ebay.com/1"

    def test_card_without_value(self, make_card) -> None:
        row = card_to_row(make_card(status=CardStatus.REVIEWED, name="X", overall_grade=5))

        assert row[20] == "N/A"
        assert row[21] == ""

    def test_row_to_record(self) -> None:
        record = row_to_record(data_row(), 0)

        assert record is not None
        assert record["id"] == "sheet-0"
        assert record["status"] == "reviewed"
        assert record["cardNumber"] == "1"
        assert record["overallGrade"] == 8
        assert record["isSynced"] is True
        assert record["isDirty"] is False

    def test_row_keeps_id_column(self) -> None:
        record = row_to_record(data_row({8: "card-42"}), 3)

        assert record["id"] == "card-42"

    def test_ungraded_row_needs_review(self) -> None:
        record = row_to_record(data_row({7: ""}), 0)

        assert record["status"] == "needs_review"
        assert "overallGrade" not in record

    def test_empty_row_skipped(self) -> None:
        assert row_to_record([""] * 5, 0) is None

    def test_full_subgrades_and_value(self) -> None:
        overrides = {col: "9" for col in (9, 11, 13, 15, 17)}
        overrides.update({20: "USD 1,250.50", 21: "https://a.com, https://b.com"})

        record = row_to_record(data_row(overrides), 0)

        assert record["details"]["printQuality"]["grade"] == 9
        assert record["marketValue"]["averagePrice"] == 1250.5
        assert [s["uri"] for s in record["marketValue"]["sourceUrls"]] == [
            "https://a.com",
            "https://b.com",
        ]

    def test_partial_subgrades_dropped(self) -> None:
        record = row_to_record(data_row({9: "9"}), 0)

        assert "details" not in record

    def test_rows_to_cards(self) -> None:
        """Header is skipped and rows keep sheet order via synthetic timestamps."""
        rows = [
            list(SHEET_HEADERS),
            data_row(),
            data_row({3: "BARRY BONDS", 5: "#2"}),
        ]

        cards = rows_to_cards(rows)

        assert [c.id for c in cards] == ["sheet-0", "sheet-1"]
        assert cards[0].created_at == SYNTHETIC_EPOCH_MS
        assert cards[1].created_at == SYNTHETIC_EPOCH_MS - 1
        assert cards[0].front_image == ""
        assert cards[0].is_dirty is False
        assert cards[0].sheet_synced is True


class TestFetchRows:
    @respx.mock
    async def test_fetches_first_sheet(self, source) -> None:
        sheet = FakeSheet([list(SHEET_HEADERS), data_row()])
        route = respx.route(host="sheets.googleapis.com").mock(side_effect=sheet)

        cards = await source.fetch_rows()

        assert len(cards) == 1
        assert cards[0].name == "KEN GRIFFEY JR."
        assert route.calls.last.request.headers["Authorization"] == "Bearer token-123"

    @respx.mock
    async def test_permission_error(self, source) -> None:
        respx.route(host="sheets.googleapis.com").mock(
            return_value=httpx.Response(
                403, json={"error": {"message": "The caller does not have permission"}}
            )
        )

        with pytest.raises(RemoteStoreError, match="does not have permission"):
            await source.fetch_rows()


class TestAppendRows:
    @respx.mock
    async def test_header_written_to_empty_sheet(self, source, make_card, graded_fields) -> None:
        """An empty sheet gets the header row, then cards oldest first."""
        sheet = FakeSheet()
        respx.route(host="sheets.googleapis.com").mock(side_effect=sheet)
        newer = make_card(status=CardStatus.REVIEWED, created_at=200, **graded_fields)
        older = make_card(status=CardStatus.REVIEWED, created_at=100, **graded_fields)

        written = await source.append_rows([newer, older])

        assert written == 2
        assert sheet.appended[0] == list(SHEET_HEADERS)
        assert [row[8] for row in sheet.appended[1:]] == [older.id, newer.id]
        assert sheet.append_params["valueInputOption"] == "USER_ENTERED"

    @respx.mock
    async def test_no_header_when_sheet_has_rows(self, source, make_card, graded_fields) -> None:
        sheet = FakeSheet([list(SHEET_HEADERS), data_row()])
        respx.route(host="sheets.googleapis.com").mock(side_effect=sheet)

        await source.append_rows([make_card(status=CardStatus.REVIEWED, **graded_fields)])

        assert len(sheet.appended) == 1
        assert sheet.appended[0] != list(SHEET_HEADERS)

    async def test_nothing_to_append(self, source) -> None:
        """No request is made for an empty batch."""
        assert await source.append_rows([]) == 0
