"""
Google Drive REST client for proof photo uploads.
"""

import json
import logging
from typing import Any, Dict, Optional

import httpx

from ..config.settings import DriveConfig
from ..exceptions import (
    NetworkError,
    ProviderError,
    RequestTimeoutError,
    TokenExpiredError,
    error_code_from_payload,
)
from ..models.upload import EncodedPayload, RemoteRef

logger = logging.getLogger(__name__)

BOUNDARY = "-------314159265358979323846"

VIEW_URL = "https://drive.google.com/file/d/{file_id}/view"
DOWNLOAD_URL = "https://drive.google.com/uc?id={file_id}"


def build_multipart_body(metadata: Dict[str, Any], payload: EncodedPayload) -> bytes:
    """
    Build a multipart/related body: JSON metadata, then the base64 media part.

    Args:
        metadata: Drive file metadata (name, parents, description)
        payload: Encoded media

    Returns:
        Request body bytes
    """
    delimiter = f"\r\n--{BOUNDARY}\r\n"
    close_delimiter = f"\r\n--{BOUNDARY}--"

    body = (
        delimiter
        + "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        + json.dumps(metadata)
        + delimiter
        + f"Content-Type: {payload.media_type}\r\n"
        + "Content-Transfer-Encoding: base64\r\n\r\n"
        + payload.data_b64
        + close_delimiter
    )
    return body.encode()


class DriveClient:
    """
    Minimal Drive v3 client: multipart create, permissions, folder probe.

    Callers supply the access token per call; the client holds no credentials.
    """

    def __init__(
        self,
        config: DriveConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 60.0,
    ):
        """
        Initialize Drive client.

        Args:
            config: Drive endpoints and destination folder
            transport: Optional httpx transport (tests use MockTransport)
            timeout: Transport-level timeout ceiling for each request
        """
        self.config = config
        self._transport = transport
        self._timeout = timeout

    @staticmethod
    def view_url(file_id: str) -> str:
        return VIEW_URL.format(file_id=file_id)

    @staticmethod
    def download_url(file_id: str) -> str:
        return DOWNLOAD_URL.format(file_id=file_id)

    def remote_ref(self, file_id: str, name: str = "") -> RemoteRef:
        return RemoteRef(
            id=file_id,
            name=name,
            view_url=self.view_url(file_id),
            download_url=self.download_url(file_id),
        )

    async def create_file(
        self,
        access_token: str,
        name: str,
        payload: EncodedPayload,
        parent_id: Optional[str] = None,
        description: str = "",
    ) -> Dict[str, Any]:
        """
        Create a file with a single multipart request.

        Args:
            access_token: Valid OAuth access token
            name: Remote file name
            payload: Encoded media
            parent_id: Destination folder (defaults to the configured folder)
            description: File description

        Returns:
            Drive response with ``id`` and ``name``
        """
        metadata: Dict[str, Any] = {"name": name}
        parent_id = parent_id or self.config.folder_id
        if parent_id:
            metadata["parents"] = [parent_id]
        if description:
            metadata["description"] = description

        response = await self._send(
            "POST",
            self.config.upload_endpoint,
            access_token,
            params={"uploadType": "multipart", "fields": "id,name"},
            headers={"Content-Type": f'multipart/related; boundary="{BOUNDARY}"'},
            content=build_multipart_body(metadata, payload),
        )
        data = self._check(response, "File create")

        if not isinstance(data, dict) or not data.get("id"):
            raise ProviderError("File create response missing id", response.status_code,
                                "invalid_response", data)

        logger.info(f"Created Drive file {data['id']} ({name})")
        return data

    async def grant_public_read(self, access_token: str, file_id: str) -> None:
        """Make a file readable by anyone with the link."""
        response = await self._send(
            "POST",
            f"{self.config.files_endpoint}/{file_id}/permissions",
            access_token,
            json={"role": "reader", "type": "anyone"},
        )
        self._check(response, "Permission grant")
        logger.debug(f"Granted public read on {file_id}")

    async def check_folder(self, access_token: str, folder_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify the destination folder exists and is reachable with this token.

        Returns:
            Folder ``id`` and ``name``
        """
        folder_id = folder_id or self.config.folder_id
        response = await self._send(
            "GET",
            f"{self.config.files_endpoint}/{folder_id}",
            access_token,
            params={"fields": "id,name"},
        )
        return self._check(response, "Folder check")

    async def _send(self, method: str, url: str, access_token: str, **kwargs) -> httpx.Response:
        headers = dict(kwargs.pop("headers", {}) or {})
        headers["Authorization"] = f"Bearer {access_token}"
        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=httpx.Timeout(self._timeout),
            ) as client:
                return await client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Drive request timed out: {method} {url}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Unable to reach Drive: {e}") from e

    @staticmethod
    def _check(response: httpx.Response, operation: str) -> Any:
        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code == 401:
            raise TokenExpiredError(
                f"{operation} rejected the access token",
                code=error_code_from_payload(data),
                payload=data,
            )
        if not response.is_success:
            code = error_code_from_payload(data)
            logger.error(f"{operation} failed: status={response.status_code} code={code}")
            raise ProviderError(
                f"{operation} failed with status {response.status_code}",
                response.status_code,
                code,
                data,
            )
        return data
