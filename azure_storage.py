from base64 import b64decode, b64encode
from email.utils import formatdate
from hashlib import sha256
from hmac import HMAC
from io import IOBase
from json import dumps
from typing import Union, IO

from aiohttp import ClientResponse, ClientSession, ClientTimeout
from config import get_logger

# Module-specific logger
logger = get_logger("azure")

class BlobClient:
    """Minimal Azure Blob Storage REST API client (SharedKeyLite).

    Only implements what the tracking record needs: read one blob, overwrite it,
    and create the container on first save.
    """

    account: str | None = None
    auth: bytes | None = None
    session: ClientSession | None = None

    def __init__(self, account: str, auth: str | None = None, session: ClientSession | None = None, timeout: int = 30) -> None:
        assert auth, "Storage account key (auth) is required"
        self.account = account
        self.auth = b64decode(auth)
        self._owns_session = session is None
        self._timeout = ClientTimeout(total=timeout)
        self.session = session


    def _get_session(self) -> ClientSession:
        """Create the session on first use, inside the running loop"""
        if self.session is None:
            self.session = ClientSession(json_serialize=dumps, timeout=self._timeout)
        return self.session


    async def close(self) -> None:
        """Close the session if we created it"""
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None


    def _headers(self, headers: dict | None = None, date: str | None = None) -> dict:
        """Default headers for REST requests"""
        if headers is None:
            headers = {}
        if not date:
            date = formatdate(usegmt=True)  # if you don't use GMT, the API breaks
        return {
            'x-ms-date': date,
            'x-ms-version': '2018-03-28',
            'Content-Type': 'application/octet-stream',
            'Connection': 'Keep-Alive',
            **headers,
        }


    def _sign_for_blobs(self, verb: str, canonicalized: str, headers: dict | None = None, payload: Union[bytes, IO] = b"", length: int | None = None) -> dict:
        """Compute SharedKeyLite authorization header and add standard headers"""
        headers = self._headers(headers)
        signing_headers = sorted(filter(lambda x: 'x-ms' in x, headers.keys()))
        canon_headers = "\n".join("{}:{}".format(k, headers[k]) for k in signing_headers)
        sign = "\n".join([verb, '', headers['Content-Type'], '', canon_headers, canonicalized]).encode('utf-8')
        if length is None and isinstance(payload, IOBase):
            length = payload.seek(0, 2)
            payload.seek(0)
        elif length is None:
            length = len(payload)
        return {
            'Authorization': 'SharedKeyLite {}:{}'.format(self.account, \
                b64encode(HMAC(self.auth, sign, sha256).digest()).decode('utf-8')),
            'Content-Length': str(length),
            **headers
        }


    def _blob_uri(self, container_name: str, blob_path: str) -> tuple[str, str]:
        canon = f'/{self.account}/{container_name}/{blob_path}'
        uri = f'https://{self.account}.blob.core.windows.net/{container_name}/{blob_path}'
        return canon, uri


    async def create_container(self, container_name: str) -> ClientResponse:
        """Create a (private) container"""
        canon = f'/{self.account}/{container_name}'
        uri = f'https://{self.account}.blob.core.windows.net/{container_name}?restype=container'
        return await self._get_session().put(uri, headers=self._sign_for_blobs("PUT", canon))


    async def get_blob(self, container_name: str, blob_path: str) -> ClientResponse:
        """Download a blob. Callers check ``status`` (404 means absent) and read the body."""
        canon, uri = self._blob_uri(container_name, blob_path)
        return await self._get_session().get(uri, headers=self._sign_for_blobs("GET", canon))


    async def put_blob(self, container_name: str, blob_path: str, payload: Union[bytes, IO], mimetype: str | None = None) -> ClientResponse:
        """Upload (overwrite) a block blob"""
        canon, uri = self._blob_uri(container_name, blob_path)
        if not mimetype:
            mimetype = "application/octet-stream"
        headers = {
            'x-ms-blob-type': 'BlockBlob',
            'x-ms-blob-content-type': mimetype,
            'Content-Type': mimetype,
        }
        return await self._get_session().put(uri, data=payload, headers=self._sign_for_blobs("PUT", canon, headers, payload))
