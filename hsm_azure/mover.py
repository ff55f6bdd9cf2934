"""
Blob mover - Archive, Restore and Remove against Azure Blob Storage.

Each call handles one action dispatched by the HSM coordinator and blocks
until the transfer is finished. Errors are raised with the action id and the
remote key in the message; retrying is the coordinator's job.
"""

from dataclasses import dataclass
import datetime
from enum import Enum
import logging
import os
import stat
import time
from typing import Dict, Optional, Tuple

from hsm_azure.blob_store import AzureBlobStore, ObjectStore
from hsm_azure.config import MoverConfig
from hsm_azure.errors import (
    HsmError,
    LustreCommandError,
    ResolutionError,
    TransferError,
    ValidationError,
)
from hsm_azure.identity import destination, format_locator, resolve
from hsm_azure.importer import MODTIME_FORMAT
from hsm_azure.lustre import FID_PATH_PREFIX, FidResolver, LfsFidResolver

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


class ActionKind(Enum):
    ARCHIVE = "archive"
    RESTORE = "restore"
    REMOVE = "remove"


@dataclass
class Action:
    """
    One HSM request.

    The coordinator owns the action; the mover only fills in `uuid`, `url`
    and `actual_length`.

    Attributes:
        id (int): Coordinator-assigned action id.
        kind (ActionKind): What to do.
        primary_path (str): ``.lustre/fid/<FID>`` path of the file.
        uuid (str): The file's identity, empty if it was never archived.
        write_path (str): Where Restore writes the content.
        url (Optional[str]): Qualified locator, set by Archive.
        actual_length (Optional[int]): Bytes moved, set by Archive and Restore.
    """
    id: int
    kind: ActionKind
    primary_path: str = ""
    uuid: str = ""
    write_path: str = ""
    url: Optional[str] = None
    actual_length: Optional[int] = None


def archive_metadata(file_stat: os.stat_result) -> Dict[str, str]:
    """The blob metadata recorded for an archived file."""
    mtime = datetime.datetime.fromtimestamp(file_stat.st_mtime).astimezone()
    return {
        "Permissions": format(stat.S_IMODE(file_stat.st_mode), "o"),
        "ModTime": mtime.strftime(MODTIME_FORMAT),
        "Owner": str(file_stat.st_uid),
        "Group": str(file_stat.st_gid),
    }


def _rewrap(error: HsmError, message: str) -> HsmError:
    return type(error)(f"{message}: {error}")


class BlobMover:
    """
    Move file content between Lustre and a blob container.

    Args:
        config (MoverConfig): Container, prefix, credentials and transfer sizes.
        store (Optional[ObjectStore]): The remote store; built from config if omitted.
        resolver (Optional[FidResolver]): FID resolution; ``lfs fid2path`` if omitted.
    """
    def __init__(
        self,
        config: MoverConfig,
        store: Optional[ObjectStore] = None,
        resolver: Optional[FidResolver] = None
    ) -> None:
        self.config = config
        self.name = f"az-{config.archive_id}"
        self.store = store or AzureBlobStore(
            account_name=config.account_name,
            account_key=config.account_key,
            account_url=config.account_url,
            block_size=config.upload_block_size,
            parallelism=config.transfer_parallelism,
        )
        self.resolver = resolver or LfsFidResolver()

    def _locate(self, action: Action) -> Tuple[str, str]:
        if not action.uuid:
            raise ValidationError(f"Missing file_id on action {action.id}")
        try:
            return resolve(action.uuid, self.config.container, self.config.prefix)
        except ValidationError as e:
            raise _rewrap(e, f"Action {action.id}") from e

    def _resolve_path(self, action: Action) -> str:
        fid_text = action.primary_path.lstrip("/")
        if fid_text.startswith(FID_PATH_PREFIX):
            fid_text = fid_text[len(FID_PATH_PREFIX):]
        try:
            fid = self.resolver.parse_fid(fid_text)
        except ValueError as e:
            raise ValidationError(f"Action {action.id}: failed to parse fid {fid_text!r}") from e

        try:
            paths = self.resolver.fid_pathnames(self.config.mount_root, fid)
        except (LustreCommandError, OSError) as e:
            raise ResolutionError(f"Action {action.id}: failed to get pathname for {fid}: {e}") from e
        if not paths:
            raise ResolutionError(f"Action {action.id}: no path found for {fid} under {self.config.mount_root}")

        logger.debug(f"Path(s) on FS: {', '.join(paths)}")
        if len(paths) > 1:
            logger.warning(f"{self.name} id:{action.id} multiple paths returned for {fid}, using {paths[0]}")
        return paths[0]

    def _discard_partial(self, path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"{self.name} could not remove partial file {path}: {e}")

    def archive(self, action: Action) -> None:
        """
        Upload the file behind action.primary_path.

        A new archive is stored at ``prefix/<path>`` and gets the path as its
        identity; an action that already carries an identity overwrites the
        object that identity names. On success `uuid`, `url` and
        `actual_length` are set together; on failure none of them change.

        Raises:
            ValidationError: The FID in primary_path does not parse.
            ResolutionError: The FID has no path on the filesystem.
            TransferError: The file could not be read or uploaded.
        """
        logger.info(f"{self.name} id:{action.id} archive {action.primary_path} {action.uuid}")
        start_time = time.time()

        file_id = self._resolve_path(action)
        if action.uuid:
            identity = action.uuid
            container, key = self._locate(action)
        else:
            identity = file_id
            container, key = self.config.container, destination(self.config.prefix, file_id)

        local_path = os.path.join(self.config.mount_root, action.primary_path)
        try:
            with open(local_path, "rb") as source:
                file_stat = os.fstat(source.fileno())
                total = self.store.upload_file(
                    container,
                    key,
                    source,
                    file_stat.st_size,
                    metadata=archive_metadata(file_stat),
                )
        except OSError as e:
            raise TransferError(f"Action {action.id}: cannot read {local_path}: {e}") from e
        except TransferError as e:
            raise _rewrap(e, f"Action {action.id}: upload of {local_path} to {container}/{key} failed") from e

        url = format_locator(container, key)
        logger.info(
            f"{self.name} id:{action.id} Archived {total} bytes in {time.time() - start_time:.2f}s "
            f"from {action.primary_path} to {url}"
        )
        action.uuid = identity
        action.url = url
        action.actual_length = total

    def restore(self, action: Action) -> None:
        """
        Download the object named by action.uuid into action.write_path.

        Permissions, owner and times recorded at archive time are not
        applied to the restored file.

        Raises:
            ValidationError: The action has no usable identity.
            NotFoundError: The object does not exist.
            TransferError: The download or the local write failed.
        """
        logger.info(f"{self.name} id:{action.id} restore {action.primary_path} {action.uuid}")
        start_time = time.time()
        container, key = self._locate(action)

        try:
            length = self.store.get_size(container, key)
        except TransferError as e:
            raise _rewrap(e, f"Action {action.id}: GetProperties on {container}/{key} failed") from e

        try:
            with open(action.write_path, "wb") as target:
                self.store.download_to_file(container, key, target)
        except OSError as e:
            self._discard_partial(action.write_path)
            raise TransferError(f"Action {action.id}: cannot write {action.write_path}: {e}") from e
        except TransferError as e:
            self._discard_partial(action.write_path)
            raise _rewrap(e, f"Action {action.id}: download of {container}/{key} failed") from e

        logger.info(
            f"{self.name} id:{action.id} Restored {length} bytes in {time.time() - start_time:.2f}s "
            f"from {container}/{key} to {action.write_path}"
        )
        action.actual_length = length

    def remove(self, action: Action) -> None:
        """
        Delete the object named by action.uuid.

        An object that is already gone counts as removed.

        Raises:
            ValidationError: The action has no usable identity.
            TransferError: The delete failed.
        """
        logger.info(f"{self.name} id:{action.id} remove {action.primary_path} {action.uuid}")
        container, key = self._locate(action)
        try:
            deleted = self.store.delete(container, key)
        except TransferError as e:
            raise _rewrap(e, f"Action {action.id}: delete object {container}/{key} failed") from e
        if not deleted:
            logger.warning(f"{self.name} id:{action.id} {container}/{key} did not exist")

    def dispatch(self, action: Action) -> None:
        """Run the operation matching action.kind."""
        if action.kind == ActionKind.ARCHIVE:
            self.archive(action)
        elif action.kind == ActionKind.RESTORE:
            self.restore(action)
        elif action.kind == ActionKind.REMOVE:
            self.remove(action)
        else:
            raise ValidationError(f"Invalid action kind {action.kind} on action {action.id}")
