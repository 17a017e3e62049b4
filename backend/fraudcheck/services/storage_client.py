"""Document storage API client."""

import logging
from urllib.parse import quote

import httpx
from fraudcheck.config import settings

logger = logging.getLogger(__name__)


class StorageClient:
    """Downloads uploaded loan documents from the object storage bucket."""

    def __init__(self, base_url: str = "", bucket: str = "", api_key: str = "", timeout: float = 120.0):
        self.base_url = base_url.rstrip("/") if base_url else ""
        self.bucket = bucket
        self.api_key = api_key
        self.timeout = timeout
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "apikey": api_key,
        } if api_key else {}

    def object_url(self, file_path: str) -> str:
        return f"{self.base_url}/storage/v1/object/{self.bucket}/{quote(file_path.lstrip('/'))}"

    async def download(self, file_path: str) -> bytes:
        """Download a stored object and return its raw bytes."""
        if not self.base_url:
            raise ValueError("Storage URL not configured")
        if not file_path:
            raise ValueError("Document has no file path")

        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            response = await client.get(self.object_url(file_path), headers=self.headers)
            response.raise_for_status()
            logger.debug(f"[Storage] Downloaded {file_path}: {len(response.content)} bytes")
            return response.content


def get_storage_client() -> StorageClient:
    """Storage client configured from settings."""
    return StorageClient(
        base_url=settings.storage_base_url,
        bucket=settings.storage_bucket,
        api_key=settings.storage_api_key,
    )
