"""
Google Drive collection store.

The collection lives in a single JSON file. New files go to the hidden
appDataFolder; older files in the user's Drive root are still found, and
the most recently modified match wins.
"""

import json
import logging
from collections.abc import Sequence

import httpx

from gradeforge.config import REMOTE_COLLECTION_FILE_NAME
from gradeforge.models.card import Card, normalize_card_record
from gradeforge.stores.base import (
    DEFAULT_TIMEOUT,
    RemoteStoreError,
    TokenProvider,
    bearer_headers,
    error_message,
)

logger = logging.getLogger(__name__)

DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
UPLOAD_API_URL = "https://www.googleapis.com/upload/drive/v3"

SOURCE_NAME = "remote collection store"


class DriveCollectionStore:
    """RemoteCollectionStore backed by the Drive v3 REST API."""

    def __init__(
        self,
        token_provider: TokenProvider,
        file_name: str = REMOTE_COLLECTION_FILE_NAME,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._token_provider = token_provider
        self.file_name = file_name
        self.timeout = timeout

    async def find_file_id(self, client: httpx.AsyncClient, headers: dict[str, str]) -> str | None:
        """Id of the most recently modified collection file, if any."""
        params = {
            "spaces": "drive,appDataFolder",
            "fields": "files(id,name,modifiedTime)",
            "q": f"name='{self.file_name}' and trashed=false",
            "orderBy": "modifiedTime desc",
            "pageSize": "10",
        }
        response = await client.get(f"{DRIVE_API_URL}/files", params=params, headers=headers)
        if response.is_error:
            raise RemoteStoreError(
                "search for the collection file",
                error_message(response, "Drive search failed."),
                response.status_code,
            )

        files = response.json().get("files")
        if not isinstance(files, list) or not files:
            return None
        logger.info("Found %d candidate collection files", len(files))
        return str(files[0]["id"])

    async def load(self) -> tuple[str | None, list[Card]]:
        """
        Download the collection.

        Returns (None, []) when no file exists or the file has disappeared.
        A file whose body is not a JSON list loads as empty.

        Raises:
            RemoteStoreError: On HTTP or network failure
        """
        headers = await bearer_headers(self._token_provider, SOURCE_NAME)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                file_id = await self.find_file_id(client, headers)
                if file_id is None:
                    logger.info("No remote collection file found")
                    return None, []

                response = await client.get(
                    f"{DRIVE_API_URL}/files/{file_id}",
                    params={"alt": "media"},
                    headers=headers,
                )
        except httpx.RequestError as e:
            raise RemoteStoreError("load the collection", str(e)) from e

        if response.status_code == 404:
            return None, []
        if response.is_error:
            raise RemoteStoreError(
                "download the collection file",
                error_message(response, "Download failed."),
                response.status_code,
            )

        try:
            records = response.json()
        except ValueError:
            logger.warning("REMOTE_COLLECTION_UNPARSEABLE", extra={"file_id": file_id})
            return file_id, []
        if not isinstance(records, list):
            logger.warning("REMOTE_COLLECTION_UNPARSEABLE", extra={"file_id": file_id})
            return file_id, []

        cards = [card for card in map(normalize_card_record, records) if card is not None]
        logger.info("REMOTE_COLLECTION_LOADED", extra={"file_id": file_id, "count": len(cards)})
        return file_id, cards

    async def save(self, handle: str | None, cards: Sequence[Card]) -> str:
        """
        Upload the whole collection as one multipart request.

        Creates the file in appDataFolder when handle is None, otherwise
        overwrites it in place. Returns the file id.

        Raises:
            RemoteStoreError: On HTTP or network failure
        """
        metadata: dict[str, object] = {"name": self.file_name, "mimeType": "application/json"}
        if handle is None:
            metadata["parents"] = ["appDataFolder"]
        body = json.dumps([card.to_record() for card in cards])

        headers = await bearer_headers(self._token_provider, SOURCE_NAME)
        files = {
            "metadata": (None, json.dumps(metadata), "application/json"),
            "file": (self.file_name, body, "application/json"),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                if handle is None:
                    response = await client.post(
                        f"{UPLOAD_API_URL}/files",
                        params={"uploadType": "multipart"},
                        headers=headers,
                        files=files,
                    )
                else:
                    response = await client.patch(
                        f"{UPLOAD_API_URL}/files/{handle}",
                        params={"uploadType": "multipart"},
                        headers=headers,
                        files=files,
                    )
        except httpx.RequestError as e:
            raise RemoteStoreError("save the collection", str(e)) from e

        if response.is_error:
            raise RemoteStoreError(
                "save the collection",
                error_message(response, "Upload failed."),
                response.status_code,
            )

        file_id = str(response.json()["id"])
        logger.info("REMOTE_COLLECTION_SAVED", extra={"file_id": file_id, "count": len(cards)})
        return file_id
