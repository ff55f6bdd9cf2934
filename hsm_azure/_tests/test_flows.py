from unittest.mock import MagicMock

from pytest_mock import MockFixture

from hsm_azure.config import ImporterConfig, MoverConfig
from hsm_azure.errors import NotFoundError
from hsm_azure.importer import BulkImporter, ImportOutcome, ImportReport
from hsm_azure.lustre import LfsHsmImporter, XattrIdentityStore
from hsm_azure.mover import Action, ActionKind, BlobMover


def test_get_bulk_importer():
    from hsm_azure.flows import get_bulk_importer

    mover_config = MoverConfig(container="data", account_name="acct", account_key="a2V5")
    importer = get_bulk_importer(mover_config, ImporterConfig(root_path="/lustre", max_workers=8))

    assert isinstance(importer, BulkImporter)
    assert isinstance(importer.hsm, LfsHsmImporter)
    assert isinstance(importer.identity_store, XattrIdentityStore)
    assert importer.root_path == "/lustre"
    assert importer.max_workers == 8
    assert importer.store.account_url == "https://acct.blob.core.windows.net"


def test_get_mover():
    from hsm_azure.flows import get_mover

    mover = get_mover(MoverConfig(container="data", account_name="acct", account_key="a2V5"))
    assert isinstance(mover, BlobMover)


def test_bulk_import_flow_returns_report():
    from hsm_azure.flows import bulk_import_flow

    importer = MagicMock(spec=BulkImporter)
    expected = ImportReport(container="data", processed=2, failures=[ImportOutcome("b", OSError("x"))])
    importer.run.return_value = expected

    report = bulk_import_flow.fn("az://data", importer=importer)

    importer.run.assert_called_once_with("az://data")
    assert report is expected
    assert report.imported == 1


def test_bulk_import_flow_builds_importer_from_config(mocker: MockFixture):
    from hsm_azure.flows import bulk_import_flow

    config = MagicMock()
    importer = MagicMock(spec=BulkImporter)
    importer.run.return_value = ImportReport(container="data")
    get_importer = mocker.patch("hsm_azure.flows.get_bulk_importer", return_value=importer)

    bulk_import_flow.fn("data", config=config)

    get_importer.assert_called_once_with(config.mover, config.importer)


def test_hsm_action_flow_success():
    from hsm_azure.flows import hsm_action_flow

    mover = MagicMock(spec=BlobMover)
    action = Action(id=1, kind=ActionKind.REMOVE, uuid="foo")

    assert hsm_action_flow.fn(action, mover=mover) is True
    mover.dispatch.assert_called_once_with(action)


def test_hsm_action_flow_failure():
    from hsm_azure.flows import hsm_action_flow

    mover = MagicMock(spec=BlobMover)
    mover.dispatch.side_effect = NotFoundError("X/p/foo not found")
    action = Action(id=2, kind=ActionKind.RESTORE, uuid="foo", write_path="/tmp/out")

    assert hsm_action_flow.fn(action, mover=mover) is False


def test_main_exit_code(mocker: MockFixture):
    from hsm_azure import flows

    mocker.patch("hsm_azure.flows.CopytoolConfig")
    run_flow = mocker.patch.object(
        flows, "bulk_import_flow", return_value=ImportReport(container="data", processed=1)
    )

    assert flows.main(["data"]) == 0
    run_flow.assert_called_once()

    run_flow.return_value = ImportReport(container="data", processed=1, failures=[ImportOutcome("a")])
    assert flows.main(["data"]) == 1


def test_archive_flow_runs_archive_action():
    from hsm_azure.flows import archive_flow

    mover = MagicMock(spec=BlobMover)
    action = Action(id=3, kind=ActionKind.ARCHIVE, primary_path=".lustre/fid/[0x1:0x1:0x0]")

    assert archive_flow.fn(action, mover=mover) is True
    mover.dispatch.assert_called_once_with(action)


def test_restore_flow_reports_failure():
    from hsm_azure.flows import restore_flow

    mover = MagicMock(spec=BlobMover)
    mover.dispatch.side_effect = NotFoundError("X/p/foo not found")
    action = Action(id=4, kind=ActionKind.RESTORE, uuid="foo", write_path="/tmp/out")

    assert restore_flow.fn(action, mover=mover) is False


def test_remove_flow_builds_mover_from_config(mocker: MockFixture):
    from hsm_azure.flows import remove_flow

    config = MagicMock()
    mover = MagicMock(spec=BlobMover)
    get_mover = mocker.patch("hsm_azure.flows.get_mover", return_value=mover)
    action = Action(id=5, kind=ActionKind.REMOVE, uuid="foo")

    assert remove_flow.fn(action, config=config) is True
    get_mover.assert_called_once_with(config.mover)
    mover.dispatch.assert_called_once_with(action)


def test_action_flow_rejects_other_kind():
    from hsm_azure.flows import archive_flow, remove_flow

    mover = MagicMock(spec=BlobMover)

    assert archive_flow.fn(Action(id=6, kind=ActionKind.REMOVE, uuid="foo"), mover=mover) is False
    assert remove_flow.fn(Action(id=7, kind=ActionKind.RESTORE, uuid="foo"), mover=mover) is False
    mover.dispatch.assert_not_called()
