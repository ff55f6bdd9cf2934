from dataclasses import dataclass
import builtins
import collections
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv
from prefect.blocks.system import Secret
import yaml

from hsm_azure.blob_store import DEFAULT_BLOCK_SIZE, DEFAULT_PARALLELISM

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)
load_dotenv()

DEFAULT_MOUNT_ROOT = "/mnt/lhsmd/agent"
DEFAULT_ARCHIVE_ID = 1
DEFAULT_MAX_WORKERS = 256


def get_config():
    return read_config(config_file=Path(__file__).parent.parent / "config.yml")


def read_config(config_file="config.yml"):
    with open(config_file, "r") as end_file:
        copytool_config = yaml.safe_load(end_file)
    return expand_environment_variables(copytool_config)


def expand_environment_variables(config):
    """Expand environment variables in a nested config dictionary
    VENDORED FROM dask.config and tiled.
    This function will recursively search through any nested dictionaries
    and/or lists.
    Parameters
    ----------
    config : dict, iterable, or str
        Input object to search for environment variables
    Returns
    -------
    config : same type as input
    Examples
    --------
    >>> expand_environment_variables({'x': [1, 2, '$USER']})  # doctest: +SKIP
    {'x': [1, 2, 'my-username']}
    """
    if isinstance(config, collections.abc.Mapping):
        return {k: expand_environment_variables(v) for k, v in config.items()}
    elif isinstance(config, str):
        return os.path.expandvars(config)
    elif isinstance(config, (list, tuple, builtins.set)):
        return type(config)([expand_environment_variables(v) for v in config])
    else:
        return config


def load_storage_credential() -> Tuple[str, str]:
    """
    Get the storage account name and key.

    STORAGE_ACCOUNT / STORAGE_KEY from the environment (or a .env file) win;
    otherwise the Prefect Secret blocks "azure-storage-account" and
    "azure-storage-key" are used.

    Returns:
        Tuple[str, str]: The account name and account key.

    Raises:
        ValueError: If either value is empty.
    """
    account_name = os.getenv("STORAGE_ACCOUNT")
    account_key = os.getenv("STORAGE_KEY")
    if not account_name:
        account_name = Secret.load("azure-storage-account").get()
    if not account_key:
        account_key = Secret.load("azure-storage-key").get()

    if not account_name:
        raise ValueError("The STORAGE_ACCOUNT environment variable is not set")
    if not account_key:
        raise ValueError("The STORAGE_KEY environment variable is not set")
    return account_name, account_key


@dataclass(frozen=True)
class MoverConfig:
    """
    Settings for one mover; fixed for the mover's lifetime.

    Attributes:
        container (str): Default container for bare-key identities.
        prefix (str): Key prefix for new archives and bare-key identities.
        account_name (str): Storage account name.
        account_key (str): Storage account key.
        upload_block_size (int): Chunk size for uploads and downloads.
        transfer_parallelism (int): Chunks in flight per transfer.
        account_url (Optional[str]): Override for the blob service URL.
        mount_root (str): Lustre mount the agent resolves FIDs against.
        archive_id (int): HSM archive number this backend serves.
    """
    container: str
    prefix: str = ""
    account_name: str = ""
    account_key: str = ""
    upload_block_size: int = DEFAULT_BLOCK_SIZE
    transfer_parallelism: int = DEFAULT_PARALLELISM
    account_url: Optional[str] = None
    mount_root: str = DEFAULT_MOUNT_ROOT
    archive_id: int = DEFAULT_ARCHIVE_ID


@dataclass(frozen=True)
class ImporterConfig:
    root_path: str = "."
    max_workers: int = DEFAULT_MAX_WORKERS
    archive_id: int = DEFAULT_ARCHIVE_ID


def build_mover_config(config: Dict, account_name: str, account_key: str) -> MoverConfig:
    azure = config.get("azure", {})
    lustre = config.get("lustre", {})
    return MoverConfig(
        container=azure["container"],
        prefix=azure.get("prefix") or "",
        account_name=account_name,
        account_key=account_key,
        upload_block_size=int(azure.get("upload_block_size", DEFAULT_BLOCK_SIZE)),
        transfer_parallelism=int(azure.get("transfer_parallelism", DEFAULT_PARALLELISM)),
        account_url=azure.get("account_url") or None,
        mount_root=lustre.get("mount_root", DEFAULT_MOUNT_ROOT),
        archive_id=int(lustre.get("archive_id", DEFAULT_ARCHIVE_ID)),
    )


def build_importer_config(config: Dict) -> ImporterConfig:
    importer = config.get("importer", {})
    lustre = config.get("lustre", {})
    return ImporterConfig(
        root_path=importer.get("root_path", "."),
        max_workers=int(importer.get("max_workers", DEFAULT_MAX_WORKERS)),
        archive_id=int(lustre.get("archive_id", DEFAULT_ARCHIVE_ID)),
    )


class CopytoolConfig:
    """
    Configuration for the copytool, read from config.yml.

    Attributes:
        config (dict): The loaded configuration dictionary.
        mover (MoverConfig): Settings for Archive / Restore / Remove.
        importer (ImporterConfig): Settings for bulk import.
    """

    def __init__(self, config_file: Optional[Path] = None) -> None:
        self.config = read_config(config_file) if config_file else get_config()
        account_name, account_key = load_storage_credential()
        self.mover = build_mover_config(self.config, account_name, account_key)
        self.importer = build_importer_config(self.config)
        logger.debug(f"Loaded configuration for container {self.mover.container}")
