#!/usr/bin/env python3
"""
Storage transports for the tracking record.

A transport moves one opaque text blob between this process and remote storage.
It knows nothing about the record's contents:

    load_blob() -> Optional[str]   (None means "not stored yet", which is normal on the first run)
    save_blob(text) -> None        (single overwrite)
    close() -> None

Two backends are available, selected by TRACKING_BACKEND:

- ``gist``  (default): a file inside a GitHub Gist, read and written through the REST API.
- ``azure``: a block blob inside an Azure Storage container (SharedKeyLite auth).
"""

from typing import Any, Dict, Optional, Protocol
from asyncio import TimeoutError

from aiohttp import ClientSession, ClientError, ClientTimeout

from azure_storage import BlobClient
from config import config, get_logger
from errors import ConfigurationError, TrackingLoadError, TrackingSaveError

logger = get_logger("storage")

HTTP_OK = 200
HTTP_CREATED = 201
HTTP_NOT_FOUND = 404


class BlobTransport(Protocol):
    async def load_blob(self) -> Optional[str]: ...

    async def save_blob(self, content: str) -> None: ...

    async def close(self) -> None: ...


class GistTransport:
    """Keeps the tracking record as a single file in a GitHub Gist."""

    def __init__(
        self,
        gist_id: str,
        token: str,
        filename: str = "rss-drainer-tracking.json",
        api_url: str = "https://api.github.com",
        session: Optional[ClientSession] = None,
        timeout: int = 30,
    ) -> None:
        if not gist_id or not token:
            raise ConfigurationError("GIST_ID and GIST_TOKEN are required")
        self.gist_id = gist_id
        self.token = token
        self.filename = filename
        self.url = f"{api_url.rstrip('/')}/gists/{gist_id}"
        self._timeout = ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"token {self.token}",
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": config.USER_AGENT,
        }

    def _get_session(self) -> ClientSession:
        if self._session is None:
            self._session = ClientSession(timeout=self._timeout)
        return self._session

    async def load_blob(self) -> Optional[str]:
        logger.info(f"Loading tracking data from Gist: {self.gist_id}")
        session = self._get_session()
        try:
            async with session.get(self.url, headers=self._headers()) as resp:
                if resp.status == HTTP_NOT_FOUND:
                    logger.info("Gist not found, will create tracking file on first save")
                    return None
                if resp.status != HTTP_OK:
                    body = await resp.text()
                    raise TrackingLoadError(
                        f"GitHub API returned HTTP {resp.status} while loading Gist {self.gist_id}",
                        details={"status": resp.status, "body": body[:500]},
                    )
                data: Dict[str, Any] = await resp.json(content_type=None)

            file_entry = (data.get("files") or {}).get(self.filename) if isinstance(data, dict) else None
            if not file_entry:
                logger.info(f"No {self.filename} in Gist {self.gist_id}")
                return None

            # Gist API truncates file content above ~1 MB; the full text lives at raw_url
            if file_entry.get("truncated") and file_entry.get("raw_url"):
                logger.info("Tracking file is truncated in API response, fetching raw content")
                async with session.get(file_entry["raw_url"], headers=self._headers()) as raw:
                    if raw.status != HTTP_OK:
                        raise TrackingLoadError(
                            f"HTTP {raw.status} while fetching raw tracking file",
                            details={"status": raw.status},
                        )
                    return await raw.text()

            return file_entry.get("content") or None
        except (ClientError, TimeoutError) as e:
            raise TrackingLoadError(f"Error loading tracking data from Gist {self.gist_id}: {e}") from e
        except ValueError as e:
            # Gist API answered 200 with a body that is not JSON
            raise TrackingLoadError(f"Unreadable GitHub API response for Gist {self.gist_id}: {e}") from e

    async def save_blob(self, content: str) -> None:
        payload = {"files": {self.filename: {"content": content}}}
        session = self._get_session()
        try:
            async with session.patch(self.url, json=payload, headers=self._headers()) as resp:
                if resp.status != HTTP_OK:
                    body = await resp.text()
                    raise TrackingSaveError(
                        f"GitHub API returned HTTP {resp.status} while saving Gist {self.gist_id}",
                        details={"status": resp.status, "body": body[:500]},
                    )
        except (ClientError, TimeoutError) as e:
            raise TrackingSaveError(f"Error saving tracking data to Gist {self.gist_id}: {e}") from e

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None


class AzureBlobTransport:
    """Keeps the tracking record as a JSON block blob in Azure Storage."""

    def __init__(self, client: BlobClient, container: str, blob_path: str) -> None:
        self.client = client
        self.container = container
        self.blob_path = blob_path

    async def load_blob(self) -> Optional[str]:
        logger.info(f"Loading tracking data from Azure blob {self.container}/{self.blob_path}")
        try:
            res = await self.client.get_blob(self.container, self.blob_path)
            try:
                if res.status == HTTP_NOT_FOUND:
                    logger.info("Tracking blob not found, will create on first save")
                    return None
                body = await res.text()
                if res.status != HTTP_OK:
                    raise TrackingLoadError(
                        f"Azure returned HTTP {res.status} while loading {self.blob_path}",
                        details={"status": res.status, "body": body[:500]},
                    )
                return body
            finally:
                res.release()
        except (ClientError, TimeoutError) as e:
            raise TrackingLoadError(f"Error loading tracking blob {self.blob_path}: {e}") from e

    async def save_blob(self, content: str) -> None:
        payload = content.encode("utf-8")
        try:
            res = await self._put(payload)
            if res.status == HTTP_NOT_FOUND:
                logger.info(f"Container {self.container} missing, creating it")
                created = await self.client.create_container(self.container)
                created.release()
                res = await self._put(payload)
            if res.status not in (HTTP_OK, HTTP_CREATED):
                body = await res.text()
                res.release()
                raise TrackingSaveError(
                    f"Azure returned HTTP {res.status} while saving {self.blob_path}",
                    details={"status": res.status, "body": body[:500]},
                )
            res.release()
        except (ClientError, TimeoutError) as e:
            raise TrackingSaveError(f"Error saving tracking blob {self.blob_path}: {e}") from e

    async def _put(self, payload: bytes):
        return await self.client.put_blob(self.container, self.blob_path, payload, mimetype="application/json")

    async def close(self) -> None:
        await self.client.close()


def create_transport(cfg=None) -> BlobTransport:
    """Build the transport selected by TRACKING_BACKEND.

    Raises:
        ConfigurationError: unknown backend or missing credentials for the chosen one.
    """
    cfg = cfg or config
    backend = (cfg.TRACKING_BACKEND or "gist").lower()
    if backend == "gist":
        if not cfg.GIST_ID or not cfg.GIST_TOKEN:
            raise ConfigurationError("GIST_ID and GIST_TOKEN environment variables are required")
        return GistTransport(
            cfg.GIST_ID,
            cfg.GIST_TOKEN,
            filename=cfg.TRACKING_FILENAME,
            api_url=cfg.GITHUB_API_URL,
            timeout=cfg.HTTP_TIMEOUT * 3,
        )
    if backend == "azure":
        if not cfg.AZURE_STORAGE_ACCOUNT or not cfg.AZURE_STORAGE_KEY:
            raise ConfigurationError("AZURE_STORAGE_ACCOUNT and AZURE_STORAGE_KEY environment variables are required")
        client = BlobClient(cfg.AZURE_STORAGE_ACCOUNT, cfg.AZURE_STORAGE_KEY, timeout=cfg.HTTP_TIMEOUT * 3)
        return AzureBlobTransport(client, cfg.AZURE_STORAGE_CONTAINER, cfg.TRACKING_BLOB_PATH)
    raise ConfigurationError(f"Unknown TRACKING_BACKEND '{backend}' (expected 'gist' or 'azure')")
