import pytest

from hsm_azure.errors import ValidationError
from hsm_azure.identity import (
    BareKey,
    QualifiedLocator,
    destination,
    format_locator,
    parse_identity,
    resolve,
)


def test_parse_bare_key():
    assert parse_identity("foo/bar") == BareKey("foo/bar")


def test_parse_qualified_locator():
    assert parse_identity("az://Y/foo/bar") == QualifiedLocator("Y", "foo/bar")


def test_parse_foreign_scheme():
    with pytest.raises(ValidationError, match="Invalid URL"):
        parse_identity("s3://bucket/foo/bar")


def test_parse_locator_without_key():
    with pytest.raises(ValidationError):
        parse_identity("az://Y/")


def test_parse_empty_identity():
    with pytest.raises(ValidationError):
        parse_identity("")


def test_resolve_bare_key_uses_defaults():
    assert resolve("foo/bar", "X", "p") == ("X", "p/foo/bar")


def test_resolve_bare_key_without_prefix():
    assert resolve("foo/bar", "X") == ("X", "foo/bar")


def test_resolve_qualified_locator_ignores_defaults():
    assert resolve("az://Y/foo/bar", "X", "p") == ("Y", "foo/bar")
    assert resolve(QualifiedLocator("Y", "foo/bar"), "X", "p") == ("Y", "foo/bar")


def test_locator_round_trip():
    locator = format_locator("Y", "foo/bar")
    assert locator == "az://Y/foo/bar"
    assert str(parse_identity(locator)) == locator


def test_destination():
    assert destination("archive", "/scratch/run1/data.h5") == "archive/scratch/run1/data.h5"
    assert destination("", "scratch/run1/data.h5") == "scratch/run1/data.h5"


@pytest.mark.parametrize("key", [
    "run1/sample#3.h5",
    "run1/what?.txt",
    "run1/100%done.bin",
    "run1/a?b=c#d%20e",
])
def test_locator_keeps_reserved_characters(key):
    locator = format_locator("data", key)
    assert parse_identity(locator) == QualifiedLocator("data", key)
    assert resolve(locator, "X", "p") == ("data", key)


def test_bare_key_keeps_reserved_characters():
    assert resolve("run1/sample#3.h5", "X", "p") == ("X", "p/run1/sample#3.h5")
