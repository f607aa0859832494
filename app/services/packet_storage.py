"""
Packet Artifact Storage
Durable storage for rendered packet PDFs.

Two backends:
- LocalPacketStorage: files under PDF_STORAGE_PATH, served as /packets/<key>
- BlobPacketStorage: Azure Blob Storage (connection string or DefaultAzureCredential)
"""
import logging
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)
from azure.identity import DefaultAzureCredential
from azure.storage.blob import BlobClient, BlobServiceClient, ContentSettings

from app.config import settings

logger = logging.getLogger(__name__)


class PacketStorageError(Exception):
    """Raised when an artifact cannot be written, read or deleted"""

    def __init__(self, message: str, transient: bool = True):
        super().__init__(message)
        self.transient = transient


class ArtifactNotFoundError(PacketStorageError):
    """The referenced artifact does not exist"""

    def __init__(self, message: str):
        super().__init__(message, transient=False)


class PacketStorage(ABC):

    @abstractmethod
    def save(self, key: str, data: bytes, content_type: str = "application/pdf") -> str:
        """Write data under key and return its URL. Returns only after the write is durable."""
        ...

    @abstractmethod
    def read(self, url: str) -> bytes:
        ...

    @abstractmethod
    def exists(self, url: str) -> bool:
        ...

    @abstractmethod
    def delete(self, url: str) -> None:
        ...


class LocalPacketStorage(PacketStorage):
    """Filesystem storage. URLs are '<public_prefix>/<key>'."""

    def __init__(self, base_path: Optional[str] = None, public_prefix: Optional[str] = None):
        self.base_path = Path(base_path or settings.pdf_storage_path).resolve()
        self.public_prefix = (public_prefix or settings.pdf_public_prefix).rstrip("/")
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path_for_url(self, url: str) -> Path:
        prefix = self.public_prefix + "/"
        if not url or not url.startswith(prefix):
            raise ArtifactNotFoundError(f"Not a local packet URL: {url}")
        path = (self.base_path / url[len(prefix):]).resolve()
        if self.base_path not in path.parents:
            raise ArtifactNotFoundError(f"Artifact path escapes storage root: {url}")
        return path

    def save(self, key: str, data: bytes, content_type: str = "application/pdf") -> str:
        key = key.lstrip("/")
        path = (self.base_path / key).resolve()
        if self.base_path not in path.parents:
            raise PacketStorageError(f"Invalid artifact key: {key}", transient=False)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Failed to write artifact '{key}': {e}", exc_info=True)
            try:
                tmp_path.unlink()
            except OSError:
                pass
            raise PacketStorageError(f"Failed to write artifact: {e}") from e
        logger.info(f"Stored artifact '{key}' ({len(data)} bytes)")
        return f"{self.public_prefix}/{key}"

    def read(self, url: str) -> bytes:
        path = self._path_for_url(url)
        if not path.is_file():
            raise ArtifactNotFoundError(f"Artifact not found: {url}")
        try:
            return path.read_bytes()
        except OSError as e:
            raise PacketStorageError(f"Failed to read artifact: {e}") from e

    def exists(self, url: str) -> bool:
        try:
            return self._path_for_url(url).is_file()
        except ArtifactNotFoundError:
            return False

    def delete(self, url: str) -> None:
        path = self._path_for_url(url)
        try:
            path.unlink()
        except FileNotFoundError:
            raise ArtifactNotFoundError(f"Artifact not found: {url}")
        except OSError as e:
            raise PacketStorageError(f"Failed to delete artifact: {e}") from e
        logger.info(f"Deleted artifact '{url}'")


class BlobPacketStorage(PacketStorage):
    """
    Azure Blob Storage backend.

    Supports connection string authentication (dev/local) and
    Managed Identity / DefaultAzureCredential (prod on Azure).
    Transient failures (5xx, network) are retried with exponential backoff.
    """

    def __init__(
        self,
        storage_account_url: Optional[str] = None,
        container_name: Optional[str] = None,
        connection_string: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_base_seconds: Optional[float] = None,
        sleep=time.sleep,
    ):
        self.storage_account_url = storage_account_url or settings.storage_account_url
        self.container_name = container_name or settings.azure_storage_packet_container
        self.max_retries = max_retries or settings.blob_max_retries
        self.retry_base_seconds = (
            retry_base_seconds if retry_base_seconds is not None else settings.blob_retry_base_seconds
        )
        self._connection_string = connection_string or settings.azure_storage_connection_string
        self._blob_service_client: Optional[BlobServiceClient] = None
        self._sleep = sleep

        if not self.storage_account_url and not self._connection_string:
            raise PacketStorageError(
                "storage_account_url is required. Set STORAGE_ACCOUNT_URL environment variable.",
                transient=False,
            )
        logger.info(
            f"BlobPacketStorage initialized: account_url={self.storage_account_url or '(connection string)'}, "
            f"container={self.container_name}"
        )

    def _get_blob_service_client(self) -> BlobServiceClient:
        if self._blob_service_client is None:
            try:
                if self._connection_string:
                    logger.debug("Using connection string authentication")
                    self._blob_service_client = BlobServiceClient.from_connection_string(
                        self._connection_string
                    )
                else:
                    logger.debug("Using DefaultAzureCredential (Managed Identity)")
                    self._blob_service_client = BlobServiceClient(
                        account_url=self.storage_account_url,
                        credential=DefaultAzureCredential(),
                    )
            except Exception as e:
                logger.error(f"Failed to initialize blob service client: {e}", exc_info=True)
                raise PacketStorageError(f"Failed to initialize blob service client: {e}") from e
        return self._blob_service_client

    def _blob_name(self, url_or_key: str) -> str:
        if url_or_key.startswith("http://") or url_or_key.startswith("https://"):
            path_parts = urlparse(url_or_key).path.lstrip("/").split("/", 1)
            if len(path_parts) < 2 or path_parts[0] != self.container_name:
                raise ArtifactNotFoundError(f"URL is not in container '{self.container_name}': {url_or_key}")
            return path_parts[1]
        return url_or_key.lstrip("/")

    def _get_blob_client(self, url_or_key: str) -> BlobClient:
        return self._get_blob_service_client().get_blob_client(
            container=self.container_name, blob=self._blob_name(url_or_key)
        )

    def _retry_on_transient_failure(self, operation):
        """
        Retry operation on transient failures with exponential backoff.

        404 maps to ArtifactNotFoundError, other 4xx to a non-transient
        PacketStorageError; 5xx and network errors are retried.
        """
        last_exception = None

        for attempt in range(self.max_retries):
            try:
                return operation()
            except ResourceNotFoundError as e:
                raise ArtifactNotFoundError(f"Blob not found: {e}") from e
            except HttpResponseError as e:
                status_code = getattr(e, "status_code", None)
                if not status_code or status_code < 500:
                    logger.error(f"Client error (4xx): {e}")
                    raise PacketStorageError(f"Client error: {e}", transient=False) from e
                last_exception = e
            except ServiceRequestError as e:
                last_exception = e
            except AzureError as e:
                logger.error(f"Azure error: {e}")
                raise PacketStorageError(f"Azure error: {e}") from e

            if attempt < self.max_retries - 1:
                wait_time = self.retry_base_seconds * (2 ** attempt)
                logger.warning(
                    f"Transient failure (attempt {attempt + 1}/{self.max_retries}): {last_exception}. "
                    f"Retrying in {wait_time}s..."
                )
                self._sleep(wait_time)

        logger.error(f"Operation failed after {self.max_retries} attempts: {last_exception}")
        raise PacketStorageError(
            f"Operation failed after {self.max_retries} attempts: {last_exception}"
        ) from last_exception

    def save(self, key: str, data: bytes, content_type: str = "application/pdf") -> str:
        def _upload():
            blob_client = self._get_blob_client(key)
            blob_client.upload_blob(
                data=data,
                overwrite=True,
                content_settings=ContentSettings(content_type=content_type),
            )
            # Confirm the write before handing out the URL
            blob_client.get_blob_properties()
            return blob_client.url

        url = self._retry_on_transient_failure(_upload)
        logger.info(f"Uploaded artifact '{key}' ({len(data)} bytes)")
        return url

    def read(self, url: str) -> bytes:
        return self._retry_on_transient_failure(
            lambda: self._get_blob_client(url).download_blob().readall()
        )

    def exists(self, url: str) -> bool:
        def _check_exists():
            try:
                self._get_blob_client(url).get_blob_properties()
                return True
            except ResourceNotFoundError:
                return False

        try:
            return self._retry_on_transient_failure(_check_exists)
        except ArtifactNotFoundError:
            return False

    def delete(self, url: str) -> None:
        self._retry_on_transient_failure(lambda: self._get_blob_client(url).delete_blob())
        logger.info(f"Deleted blob '{url}'")


def build_packet_storage() -> PacketStorage:
    """Storage backend selected by PDF_STORAGE_BACKEND."""
    if settings.pdf_storage_backend == "blob":
        settings.validate_blob_storage()
        return BlobPacketStorage()
    return LocalPacketStorage()
