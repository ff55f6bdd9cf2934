"""
Lustre HSM boundary.

The tiering backend needs three things from the filesystem, each behind a
small abstract class so the importer and mover can be driven without a
Lustre client in tests:

1. `HsmImporter` registers a released, HSM-backed file (``lfs hsm_import``)
2. `FidResolver` parses a FID and turns it into pathnames (``lfs fid2path``)
3. `IdentityStore` persists the identity string on a file (an xattr)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import datetime
import logging
import os
import re
import subprocess
from typing import List, Optional

from hsm_azure.errors import LustreCommandError

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

FID_PATH_PREFIX = ".lustre/fid/"
IDENTITY_XATTR = "trusted.lhsm_uuid"

_FID_PATTERN = re.compile(
    r"^\[?(0x[0-9a-fA-F]+):(0x[0-9a-fA-F]+):(0x[0-9a-fA-F]+)\]?$"
)


@dataclass(frozen=True)
class Fid:
    seq: int
    oid: int
    ver: int

    def __str__(self) -> str:
        return f"[{self.seq:#x}:{self.oid:#x}:{self.ver:#x}]"


@dataclass(frozen=True)
class FileAttributes:
    """
    The attributes `lfs hsm_import` needs to create a released file.

    Only the fields the import actually consumes are carried.
    """
    name: str
    mode: int
    size: int
    mtime: datetime.datetime
    atime: datetime.datetime
    uid: int
    gid: int


@dataclass(frozen=True)
class DataLayout:
    stripe_count: Optional[int] = None
    stripe_size: Optional[int] = None
    pool_name: Optional[str] = None

    def to_args(self) -> List[str]:
        args = []
        if self.stripe_count is not None:
            args += ["--stripe-count", str(self.stripe_count)]
        if self.stripe_size is not None:
            args += ["--stripe-size", str(self.stripe_size)]
        if self.pool_name:
            args += ["--pool", self.pool_name]
        return args


def default_data_layout() -> DataLayout:
    """The filesystem default (unstriped) layout."""
    return DataLayout()


def parse_fid(text: str) -> Fid:
    """
    Parse a FID in ``[0xSEQ:0xOID:0xVER]`` form (brackets optional).

    Raises:
        ValueError: If the text is not a FID.
    """
    match = _FID_PATTERN.match(text.strip())
    if not match:
        raise ValueError(f"Invalid FID: {text!r}")
    seq, oid, ver = (int(group, 16) for group in match.groups())
    return Fid(seq, oid, ver)


def _run_lfs(args: List[str], lfs_command: str = "lfs") -> str:
    command = [lfs_command] + args
    logger.debug(f"Running: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            universal_newlines=True
        )
    except OSError as e:
        raise LustreCommandError(f"Could not run {lfs_command}: {e}") from e
    if result.returncode != 0:
        raise LustreCommandError(
            f"{' '.join(command)} failed with exit code {result.returncode}: {result.stderr.strip()}"
        )
    return result.stdout


class HsmImporter(ABC):
    @abstractmethod
    def import_file(
        self,
        name: str,
        archive_id: int,
        attrs: FileAttributes,
        layout: DataLayout
    ) -> None:
        """
        Create `name` as a released file whose content lives in `archive_id`.

        Args:
            name (str): Path of the file to create.
            archive_id (int): HSM archive number backing the file.
            attrs (FileAttributes): Attributes the released file gets.
            layout (DataLayout): Striping for the file.
        """
        pass


class LfsHsmImporter(HsmImporter):
    """Register files with ``lfs hsm_import``."""
    def __init__(self, lfs_command: str = "lfs") -> None:
        self.lfs_command = lfs_command

    def import_file(
        self,
        name: str,
        archive_id: int,
        attrs: FileAttributes,
        layout: DataLayout
    ) -> None:
        args = [
            "hsm_import",
            "--archive", str(archive_id),
            "--size", str(attrs.size),
            "--uid", str(attrs.uid),
            "--gid", str(attrs.gid),
            "--mode", format(attrs.mode, "o"),
            "--mtime", str(int(attrs.mtime.timestamp())),
        ]
        args += layout.to_args()
        args.append(name)
        _run_lfs(args, self.lfs_command)


class FidResolver(ABC):
    def parse_fid(self, text: str) -> Fid:
        return parse_fid(text)

    @abstractmethod
    def fid_pathnames(self, mount_root: str, fid: Fid) -> List[str]:
        """
        Return every path of the file, relative to mount_root.

        Args:
            mount_root (str): Lustre client mount point.
            fid (Fid): The file identifier.

        Returns:
            List[str]: Relative pathnames; empty if none were found.
        """
        pass


class LfsFidResolver(FidResolver):
    """Resolve FIDs with ``lfs fid2path``."""
    def __init__(self, lfs_command: str = "lfs") -> None:
        self.lfs_command = lfs_command

    def fid_pathnames(self, mount_root: str, fid: Fid) -> List[str]:
        output = _run_lfs(["fid2path", mount_root, str(fid)], self.lfs_command)
        root = mount_root.rstrip("/") + "/"
        paths = []
        for line in output.splitlines():
            line = line.strip()
            if not line:
                continue
            if line.startswith(root):
                line = line[len(root):]
            paths.append(line.lstrip("/"))
        return paths


class IdentityStore(ABC):
    @abstractmethod
    def set(self, name: str, value: bytes) -> None:
        pass


class XattrIdentityStore(IdentityStore):
    """Keep the identity in an extended attribute on the file itself."""
    def __init__(self, attribute: str = IDENTITY_XATTR) -> None:
        self.attribute = attribute

    def set(self, name: str, value: bytes) -> None:
        os.setxattr(name, self.attribute, value)
