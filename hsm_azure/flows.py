import argparse
import logging
from typing import Optional

from prefect import flow

from hsm_azure.blob_store import AzureBlobStore
from hsm_azure.config import CopytoolConfig, ImporterConfig, MoverConfig
from hsm_azure.errors import HsmError
from hsm_azure.importer import BulkImporter, ImportReport
from hsm_azure.lustre import LfsHsmImporter, XattrIdentityStore
from hsm_azure.mover import Action, ActionKind, BlobMover

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def get_mover(config: MoverConfig) -> BlobMover:
    return BlobMover(config)


def get_bulk_importer(mover_config: MoverConfig, importer_config: ImporterConfig) -> BulkImporter:
    """
    Build a BulkImporter that talks to Azure and to Lustre through `lfs`.

    Args:
        mover_config (MoverConfig): Credentials and transfer settings.
        importer_config (ImporterConfig): Import root, pool size and archive id.

    Returns:
        BulkImporter: The importer.
    """
    store = AzureBlobStore(
        account_name=mover_config.account_name,
        account_key=mover_config.account_key,
        account_url=mover_config.account_url,
        block_size=mover_config.upload_block_size,
        parallelism=mover_config.transfer_parallelism,
    )
    return BulkImporter(
        store=store,
        hsm=LfsHsmImporter(),
        identity_store=XattrIdentityStore(),
        root_path=importer_config.root_path,
        archive_id=importer_config.archive_id,
        max_workers=importer_config.max_workers,
    )


@flow(name="bulk_import_flow", validate_parameters=False)
def bulk_import_flow(
    container: str,
    config: Optional[CopytoolConfig] = None,
    importer: Optional[BulkImporter] = None
) -> ImportReport:
    """
    Prefect flow that imports every blob in a container into the HSM namespace.

    Args:
        container (str): Container name or ``az://container``.
        config (Optional[CopytoolConfig]): Loaded from config.yml if omitted.
        importer (Optional[BulkImporter]): Built from config if omitted.

    Returns:
        ImportReport: Counts and the objects that failed.
    """
    logger.info(f"Running bulk_import_flow for {container}")
    if importer is None:
        config = config or CopytoolConfig()
        importer = get_bulk_importer(config.mover, config.importer)

    report = importer.run(container)
    for failure in report.failures:
        logger.error(f"Failed to import {failure.key}: {failure.error}")
    return report


@flow(name="hsm_action_flow", validate_parameters=False)
def hsm_action_flow(
    action: Action,
    config: Optional[CopytoolConfig] = None,
    mover: Optional[BlobMover] = None
) -> bool:
    """
    Prefect flow that runs one Archive, Restore or Remove action.

    Args:
        action (Action): The action; its result fields are filled in on success.
        config (Optional[CopytoolConfig]): Loaded from config.yml if omitted.
        mover (Optional[BlobMover]): Built from config if omitted.

    Returns:
        bool: True if the action succeeded, False otherwise.
    """
    logger.info(f"Running hsm_action_flow for {action.kind.value} action {action.id}")
    return _run_action(action, config, mover)


def _run_action(
    action: Action,
    config: Optional[CopytoolConfig],
    mover: Optional[BlobMover],
    expected: Optional[ActionKind] = None
) -> bool:
    if expected is not None and action.kind != expected:
        logger.error(f"Action {action.id} is not a {expected.value} action")
        return False

    if mover is None:
        config = config or CopytoolConfig()
        mover = get_mover(config.mover)

    kind = getattr(action.kind, "value", action.kind)
    try:
        mover.dispatch(action)
    except HsmError as e:
        logger.error(f"{kind} action {action.id} failed: {e}", exc_info=True)
        return False
    logger.info(f"{kind} action {action.id} completed successfully")
    return True


@flow(name="archive_flow", validate_parameters=False)
def archive_flow(
    action: Action,
    config: Optional[CopytoolConfig] = None,
    mover: Optional[BlobMover] = None
) -> bool:
    """
    Prefect flow that copies a Lustre file into the blob container.

    On success action.uuid, action.url and action.actual_length are set.

    Args:
        action (Action): An ARCHIVE action.
        config (Optional[CopytoolConfig]): Loaded from config.yml if omitted.
        mover (Optional[BlobMover]): Built from config if omitted.

    Returns:
        bool: True if the archive succeeded, False otherwise.
    """
    logger.info(f"Running archive_flow for {action.primary_path}")
    return _run_action(action, config, mover, expected=ActionKind.ARCHIVE)


@flow(name="restore_flow", validate_parameters=False)
def restore_flow(
    action: Action,
    config: Optional[CopytoolConfig] = None,
    mover: Optional[BlobMover] = None
) -> bool:
    """
    Prefect flow that downloads the object named by action.uuid into action.write_path.

    Returns:
        bool: True if the restore succeeded, False otherwise.
    """
    logger.info(f"Running restore_flow for {action.uuid}")
    return _run_action(action, config, mover, expected=ActionKind.RESTORE)


@flow(name="remove_flow", validate_parameters=False)
def remove_flow(
    action: Action,
    config: Optional[CopytoolConfig] = None,
    mover: Optional[BlobMover] = None
) -> bool:
    logger.info(f"Running remove_flow for {action.uuid}")
    return _run_action(action, config, mover, expected=ActionKind.REMOVE)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Import the blobs of a container as released Lustre files.")
    parser.add_argument("container", help="Container name or az://container")
    parser.add_argument("--config", default=None, help="Path to config.yml")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    config = CopytoolConfig(args.config) if args.config else CopytoolConfig()
    report = bulk_import_flow(args.container, config=config)
    return 0 if report.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
