from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import logging
from typing import BinaryIO, Dict, Iterator, List, Optional

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient

from hsm_azure.errors import NotFoundError, TransferError

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

DEFAULT_BLOCK_SIZE = 8 * 1024 * 1024
DEFAULT_PARALLELISM = 4


@dataclass(frozen=True)
class RemoteObject:
    key: str
    size: int
    metadata: Dict[str, str] = field(default_factory=dict)


class ObjectStore(ABC):
    """
    Abstract class for the remote side of the tiering backend.

    Every method raises TransferError (NotFoundError where noted) on failure;
    transport retries, if any, happen below this interface.
    """

    @abstractmethod
    def list_pages(self, container: str) -> Iterator[List[RemoteObject]]:
        """
        Enumerate a container one listing page at a time.

        Args:
            container (str): The container to list.

        Yields:
            List[RemoteObject]: The objects on each page, until the listing is exhausted.
        """
        pass

    @abstractmethod
    def upload_file(
        self,
        container: str,
        key: str,
        stream: BinaryIO,
        length: int,
        metadata: Optional[Dict[str, str]] = None
    ) -> int:
        """
        Upload `length` bytes from stream, replacing any existing object.

        Returns:
            int: The number of bytes transferred.
        """
        pass

    @abstractmethod
    def get_size(self, container: str, key: str) -> int:
        """
        Return the length of an object.

        Raises:
            NotFoundError: If the object does not exist.
        """
        pass

    @abstractmethod
    def download_to_file(self, container: str, key: str, stream: BinaryIO) -> int:
        """
        Write the whole object to stream.

        Returns:
            int: The number of bytes written.

        Raises:
            NotFoundError: If the object does not exist.
        """
        pass

    @abstractmethod
    def delete(self, container: str, key: str) -> bool:
        """
        Delete an object.

        Returns:
            bool: True if an object was deleted, False if it was already absent.
        """
        pass


class AzureBlobStore(ObjectStore):
    """
    Azure Blob Storage with shared key authentication.

    Uploads and downloads are split into `block_size` chunks that the SDK
    moves `parallelism` at a time; each call still blocks until the whole
    object is transferred.

    Args:
        account_name (str): Storage account name.
        account_key (str): Storage account key.
        account_url (Optional[str]): Blob service URL; defaults to the public
            endpoint for the account.
        block_size (int): Chunk size for uploads and downloads.
        parallelism (int): Number of chunks in flight per transfer.
    """
    def __init__(
        self,
        account_name: str,
        account_key: str,
        account_url: Optional[str] = None,
        block_size: int = DEFAULT_BLOCK_SIZE,
        parallelism: int = DEFAULT_PARALLELISM
    ) -> None:
        self.account_name = account_name
        self.account_key = account_key
        self.account_url = account_url or f"https://{account_name}.blob.core.windows.net"
        self.block_size = block_size
        self.parallelism = parallelism
        self._client = None

    def _get_client(self) -> BlobServiceClient:
        if self._client is None:
            logger.debug(f"Connecting to {self.account_url}")
            self._client = BlobServiceClient(
                account_url=self.account_url,
                credential={"account_name": self.account_name, "account_key": self.account_key},
                max_block_size=self.block_size,
                max_single_put_size=self.block_size,
                max_chunk_get_size=self.block_size,
                max_single_get_size=self.block_size,
            )
        return self._client

    def _blob(self, container: str, key: str):
        return self._get_client().get_blob_client(container=container, blob=key)

    def list_pages(self, container: str) -> Iterator[List[RemoteObject]]:
        container_client = self._get_client().get_container_client(container)
        try:
            pages = container_client.list_blobs(include=["metadata"]).by_page()
            for page_number, page in enumerate(pages):
                objects = [
                    RemoteObject(key=blob.name, size=blob.size, metadata=dict(blob.metadata or {}))
                    for blob in page
                ]
                logger.debug(f"Listing page {page_number} of {container}: {len(objects)} objects")
                yield objects
        except ResourceNotFoundError as e:
            raise NotFoundError(f"Container {container} not found") from e
        except AzureError as e:
            raise TransferError(f"Listing container {container} failed: {e}") from e

    def upload_file(
        self,
        container: str,
        key: str,
        stream: BinaryIO,
        length: int,
        metadata: Optional[Dict[str, str]] = None
    ) -> int:
        try:
            self._blob(container, key).upload_blob(
                stream,
                length=length,
                overwrite=True,
                metadata=metadata,
                max_concurrency=self.parallelism,
            )
        except AzureError as e:
            raise TransferError(f"Upload of {container}/{key} failed: {e}") from e
        return length

    def get_size(self, container: str, key: str) -> int:
        try:
            properties = self._blob(container, key).get_blob_properties()
        except ResourceNotFoundError as e:
            raise NotFoundError(f"{container}/{key} not found") from e
        except AzureError as e:
            raise TransferError(f"GetProperties on {container}/{key} failed: {e}") from e
        return properties.size

    def download_to_file(self, container: str, key: str, stream: BinaryIO) -> int:
        try:
            downloader = self._blob(container, key).download_blob(max_concurrency=self.parallelism)
            return downloader.readinto(stream)
        except ResourceNotFoundError as e:
            raise NotFoundError(f"{container}/{key} not found") from e
        except AzureError as e:
            raise TransferError(f"Download of {container}/{key} failed: {e}") from e

    def delete(self, container: str, key: str) -> bool:
        try:
            self._blob(container, key).delete_blob()
        except ResourceNotFoundError:
            logger.warning(f"{container}/{key} was already absent")
            return False
        except AzureError as e:
            raise TransferError(f"Delete of {container}/{key} failed: {e}") from e
        return True
