import datetime
import subprocess

import pytest
from pytest_mock import MockFixture

from hsm_azure.errors import LustreCommandError
from hsm_azure.lustre import (
    DataLayout,
    Fid,
    FileAttributes,
    LfsFidResolver,
    LfsHsmImporter,
    XattrIdentityStore,
    default_data_layout,
    parse_fid,
)


def _completed(stdout="", returncode=0, stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_parse_fid():
    assert parse_fid("[0x200000401:0x1:0x0]") == Fid(0x200000401, 0x1, 0x0)
    assert parse_fid("0x200000401:0x2a:0x0") == Fid(0x200000401, 0x2a, 0x0)


@pytest.mark.parametrize("text", ["", "not-a-fid", "[0x1:0x2]", "[1:2:3]"])
def test_parse_fid_invalid(text):
    with pytest.raises(ValueError):
        parse_fid(text)


def test_fid_str():
    assert str(Fid(0x200000401, 0x1, 0x0)) == "[0x200000401:0x1:0x0]"


def test_default_layout_has_no_args():
    assert default_data_layout().to_args() == []
    assert DataLayout(stripe_count=4, pool_name="flash").to_args() == [
        "--stripe-count", "4", "--pool", "flash"
    ]


def test_lfs_hsm_import_arguments(mocker: MockFixture):
    run = mocker.patch("hsm_azure.lustre.subprocess.run", return_value=_completed())
    mtime = datetime.datetime(2023, 1, 2, 3, 4, 5, tzinfo=datetime.timezone.utc)
    attrs = FileAttributes(
        name="/lustre/a/b.txt", mode=0o755, size=1024, mtime=mtime, atime=mtime, uid=2000, gid=1000
    )

    LfsHsmImporter().import_file("/lustre/a/b.txt", 1, attrs, default_data_layout())

    command = run.call_args[0][0]
    assert command == [
        "lfs", "hsm_import",
        "--archive", "1",
        "--size", "1024",
        "--uid", "2000",
        "--gid", "1000",
        "--mode", "755",
        "--mtime", str(int(mtime.timestamp())),
        "/lustre/a/b.txt",
    ]


def test_lfs_command_failure(mocker: MockFixture):
    mocker.patch(
        "hsm_azure.lustre.subprocess.run",
        return_value=_completed(returncode=17, stderr="File exists"),
    )
    mtime = datetime.datetime.now(datetime.timezone.utc)
    attrs = FileAttributes("f", 0o644, 0, mtime, mtime, 1000, 1000)
    with pytest.raises(LustreCommandError, match="exit code 17: File exists"):
        LfsHsmImporter().import_file("f", 1, attrs, default_data_layout())


def test_lfs_missing_binary(mocker: MockFixture):
    mocker.patch("hsm_azure.lustre.subprocess.run", side_effect=FileNotFoundError("lfs"))
    with pytest.raises(LustreCommandError, match="Could not run lfs"):
        LfsFidResolver().fid_pathnames("/lustre", Fid(1, 2, 0))


def test_fid2path_strips_mount_root(mocker: MockFixture):
    run = mocker.patch(
        "hsm_azure.lustre.subprocess.run",
        return_value=_completed("/lustre/projects/a.bin\n/lustre/links/a.bin\n\n"),
    )
    paths = LfsFidResolver().fid_pathnames("/lustre/", Fid(0x200000401, 0x1, 0x0))

    assert paths == ["projects/a.bin", "links/a.bin"]
    assert run.call_args[0][0] == ["lfs", "fid2path", "/lustre/", "[0x200000401:0x1:0x0]"]


def test_fid2path_relative_output(mocker: MockFixture):
    mocker.patch("hsm_azure.lustre.subprocess.run", return_value=_completed("projects/a.bin\n"))
    assert LfsFidResolver().fid_pathnames("/lustre", Fid(1, 1, 0)) == ["projects/a.bin"]


def test_xattr_identity_store(mocker: MockFixture):
    setxattr = mocker.patch("hsm_azure.lustre.os.setxattr")
    store = XattrIdentityStore()

    store.set("/lustre/a", b"az://data/a")

    setxattr.assert_called_once_with("/lustre/a", "trusted.lhsm_uuid", b"az://data/a")
