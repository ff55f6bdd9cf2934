"""
Bulk import - populate the Lustre HSM namespace from an existing container.

Every blob in the container becomes a released, HSM-backed file at the same
relative path, so its content is restored from the container on first
access. The work is split across a bounded thread pool:

1. `BulkImporter` walks the paginated container listing, creates the local
   directories and parses per-object attributes from blob metadata
2. `BoundedImportPool` runs the ``hsm_import`` + identity write for each
   object, at most `capacity` at a time, and collects every outcome
3. `BulkImporter.run` returns only after all submitted objects are done
"""

from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
import datetime
import functools
import logging
import os
import posixpath
import re
import threading
import time
from typing import Callable, Dict, List, Optional

from hsm_azure.blob_store import ObjectStore, RemoteObject
from hsm_azure.config import DEFAULT_ARCHIVE_ID, DEFAULT_MAX_WORKERS
from hsm_azure.directories import DirectoryReconciler
from hsm_azure.errors import ValidationError
from hsm_azure.identity import SCHEME, format_locator, split_locator
from hsm_azure.lustre import (
    FileAttributes,
    HsmImporter,
    IdentityStore,
    default_data_layout,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

DEFAULT_UID = 1000
DEFAULT_GID = 1000
DEFAULT_MODE = 0o644
MODTIME_FORMAT = "%Y-%m-%d %H:%M:%S %z"
MAX_UINT32 = 2**32 - 1

_DECIMAL = re.compile(r"[0-9]+")
_OCTAL = re.compile(r"[0-7]+")


@dataclass(frozen=True)
class ImportAttributes:
    uid: int
    gid: int
    mode: int
    size: int
    atime: datetime.datetime
    mtime: datetime.datetime


@dataclass(frozen=True)
class ImportItem:
    key: str
    size: int
    attributes: ImportAttributes


@dataclass(frozen=True)
class ImportOutcome:
    key: str
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ImportReport:
    container: str
    processed: int = 0
    failures: List[ImportOutcome] = field(default_factory=list)

    @property
    def imported(self) -> int:
        return self.processed - len(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures


def _parse_uint(value: Optional[str], pattern: re.Pattern, base: int) -> Optional[int]:
    if value is None or not pattern.fullmatch(value):
        return None
    number = int(value, base)
    if number > MAX_UINT32:
        return None
    return number


def parse_modtime(value: Optional[str]) -> Optional[datetime.datetime]:
    """Parse "YYYY-MM-DD HH:MM:SS +ZZZZ"; None if absent or malformed."""
    if value is None:
        return None
    try:
        return datetime.datetime.strptime(value, MODTIME_FORMAT)
    except ValueError:
        return None


def parse_import_attributes(
    metadata: Dict[str, str],
    size: int,
    now: Optional[datetime.datetime] = None
) -> ImportAttributes:
    """
    Build the attributes of an imported file from blob metadata.

    Reads `uid`, `gid` (decimal), `perm` (octal) and `modtime`. A field that
    is missing or does not parse gets its default (1000, 1000, 0644, now);
    the other fields are unaffected.

    Args:
        metadata (Dict[str, str]): The blob's metadata.
        size (int): The blob's content length.
        now (Optional[datetime.datetime]): The default modification time.

    Returns:
        ImportAttributes: The attributes for the released file.
    """
    metadata = metadata or {}
    uid = _parse_uint(metadata.get("uid"), _DECIMAL, 10)
    gid = _parse_uint(metadata.get("gid"), _DECIMAL, 10)
    mode = _parse_uint(metadata.get("perm"), _OCTAL, 8)
    mtime = parse_modtime(metadata.get("modtime"))

    for name, parsed in (("uid", uid), ("gid", gid), ("perm", mode), ("modtime", mtime)):
        if parsed is None and name in metadata:
            logger.debug(f"Ignoring malformed {name}={metadata[name]!r}")

    if mtime is None:
        mtime = now or datetime.datetime.now(datetime.timezone.utc)

    return ImportAttributes(
        uid=DEFAULT_UID if uid is None else uid,
        gid=DEFAULT_GID if gid is None else gid,
        mode=DEFAULT_MODE if mode is None else mode,
        size=size,
        atime=mtime,
        mtime=mtime,
    )


def container_name(container_locator: str) -> str:
    """
    Accept either a container name or an ``az://container`` locator.

    Raises:
        ValidationError: If the locator is empty or uses another scheme.
    """
    if not container_locator:
        raise ValidationError("No container given")
    parts = split_locator(container_locator)
    if parts is not None:
        if parts[0] != SCHEME:
            raise ValidationError(f"Invalid container URL {container_locator}")
        return parts[1]
    return container_locator.strip("/")


class BoundedImportPool:
    """
    Run an import worker over submitted items, `capacity` at a time.

    Items beyond the capacity wait in the executor's queue rather than on a
    thread. `submit` blocks once `capacity + backlog` items are outstanding.
    A worker exception is recorded as that item's outcome; the remaining
    items still run. `join` waits for everything submitted so far.

    Args:
        worker (Callable[[ImportItem], None]): Imports one item.
        capacity (int): Maximum number of items importing at once.
        backlog (Optional[int]): Queued items allowed beyond capacity;
            defaults to capacity.
    """
    def __init__(
        self,
        worker: Callable[[ImportItem], None],
        capacity: int = DEFAULT_MAX_WORKERS,
        backlog: Optional[int] = None
    ) -> None:
        if capacity < 1:
            raise ValueError(f"Pool capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._worker = worker
        self._executor = ThreadPoolExecutor(max_workers=capacity, thread_name_prefix="hsm-import")
        self._slots = threading.BoundedSemaphore(capacity + (capacity if backlog is None else backlog))
        self._futures: List[Future] = []
        self._lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0

    def __enter__(self) -> "BoundedImportPool":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.shutdown()

    def submit(self, item: ImportItem) -> None:
        self._slots.acquire()
        try:
            future = self._executor.submit(self._run, item)
        except BaseException:
            self._slots.release()
            raise
        future.add_done_callback(lambda _: self._slots.release())
        self._futures.append(future)

    def _run(self, item: ImportItem) -> ImportOutcome:
        with self._lock:
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            self._worker(item)
        except Exception as e:
            logger.error(f"Import of {item.key} failed: {e}")
            return ImportOutcome(item.key, e)
        finally:
            with self._lock:
                self.in_flight -= 1
        return ImportOutcome(item.key)

    def join(self) -> List[ImportOutcome]:
        """
        Wait for every submitted item and return the outcomes in submit order.
        """
        futures, self._futures = self._futures, []
        wait(futures)
        return [future.result() for future in futures]

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


class BulkImporter:
    """
    Import every blob in a container as a released Lustre file.

    Args:
        store (ObjectStore): Where the blobs are listed from.
        hsm (HsmImporter): Registers each file with the HSM.
        identity_store (IdentityStore): Records each file's locator.
        root_path (str): Directory the blob keys are created under.
        archive_id (int): HSM archive number the files are bound to.
        max_workers (int): Import pool capacity.
    """
    def __init__(
        self,
        store: ObjectStore,
        hsm: HsmImporter,
        identity_store: IdentityStore,
        root_path: str = ".",
        archive_id: int = DEFAULT_ARCHIVE_ID,
        max_workers: int = DEFAULT_MAX_WORKERS
    ) -> None:
        self.store = store
        self.hsm = hsm
        self.identity_store = identity_store
        self.root_path = root_path
        self.archive_id = archive_id
        self.max_workers = max_workers

    def _local_name(self, key: str) -> str:
        return os.path.join(self.root_path, key.lstrip("/"))

    def import_one(self, container: str, item: ImportItem) -> None:
        name = self._local_name(item.key)
        attrs = FileAttributes(
            name=name,
            mode=item.attributes.mode,
            size=item.size,
            mtime=item.attributes.mtime,
            atime=item.attributes.atime,
            uid=item.attributes.uid,
            gid=item.attributes.gid,
        )
        self.hsm.import_file(name, self.archive_id, attrs, default_data_layout())
        self.identity_store.set(name, format_locator(container, item.key).encode())

    def _prepare(
        self,
        obj: RemoteObject,
        reconciler: DirectoryReconciler,
        now: datetime.datetime
    ) -> ImportItem:
        directory = posixpath.dirname(obj.key)
        if directory not in ("", "."):
            reconciler.ensure(directory)
        attributes = parse_import_attributes(obj.metadata, obj.size, now=now)
        return ImportItem(key=obj.key, size=obj.size, attributes=attributes)

    def run(self, container_locator: str) -> ImportReport:
        """
        Import the whole container and wait for every object to finish.

        Objects that fail (directory creation, ``hsm_import`` or identity
        write) are listed in the report; they never stop the run. A failed
        listing raises after the objects already submitted have finished.

        Args:
            container_locator (str): Container name or ``az://container``.

        Returns:
            ImportReport: Counts and per-object failures.
        """
        container = container_name(container_locator)
        report = ImportReport(container=container)
        reconciler = DirectoryReconciler(self.root_path)
        worker = functools.partial(self.import_one, container)
        start_time = time.time()

        logger.info(f"Importing container {container} into {self.root_path} with {self.max_workers} workers")
        with BoundedImportPool(worker, capacity=self.max_workers) as pool:
            try:
                for page in self.store.list_pages(container):
                    for obj in page:
                        now = datetime.datetime.now(datetime.timezone.utc)
                        try:
                            item = self._prepare(obj, reconciler, now)
                        except OSError as e:
                            logger.error(f"Could not create directory for {obj.key}: {e}")
                            report.processed += 1
                            report.failures.append(ImportOutcome(obj.key, e))
                            continue
                        pool.submit(item)
            finally:
                outcomes = pool.join()
                report.processed += len(outcomes)
                report.failures.extend(outcome for outcome in outcomes if not outcome.ok)

        elapsed_time = time.time() - start_time
        logger.info(
            f"Imported {report.imported} of {report.processed} objects from {container} "
            f"in {elapsed_time:.2f} seconds ({len(report.failures)} failed)"
        )
        return report
