"""
Identity codec - the locator string that ties a Lustre file to a blob.

An identity is stored on the file (see `lustre.XattrIdentityStore`) and comes
in two shapes:

1. a bare key, relative to the configured default container and prefix
   (e.g. ``projects/run1/data.h5``)
2. a qualified locator naming its own container
   (e.g. ``az://archive/projects/run1/data.h5``)

Callers parse an identity once with `parse_identity` and then resolve it
against the mover configuration with `resolve`.
"""

from dataclasses import dataclass
import logging
import posixpath
import re
from typing import Optional, Tuple, Union

from hsm_azure.errors import ValidationError

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

SCHEME = "az"

# scheme://host[/rest]; everything after the host is taken verbatim
_LOCATOR = re.compile(r"([A-Za-z][A-Za-z0-9+.-]*)://([^/]+)(?:/(.*))?", re.DOTALL)


@dataclass(frozen=True)
class BareKey:
    path: str

    def __str__(self) -> str:
        return self.path


@dataclass(frozen=True)
class QualifiedLocator:
    container: str
    key: str

    def __str__(self) -> str:
        return format_locator(self.container, self.key)


Identity = Union[BareKey, QualifiedLocator]


def format_locator(container: str, key: str) -> str:
    """
    Build the fully qualified ``az://container/key`` form.

    Args:
        container (str): The blob container name.
        key (str): The blob name inside the container.

    Returns:
        str: The qualified locator.
    """
    return f"{SCHEME}://{container}/{key.lstrip('/')}"


def destination(prefix: str, path: str) -> str:
    """Join a configured prefix and a relative path into a blob key."""
    path = path.lstrip("/")
    if prefix:
        return posixpath.join(prefix, path)
    return path


def split_locator(text: str) -> Optional[Tuple[str, str, str]]:
    """
    Split ``scheme://host/rest`` into its three parts, or return None.

    The rest is not URL-decoded and may contain ``#``, ``?`` or ``%``,
    all of which are legal in blob names.
    """
    match = _LOCATOR.fullmatch(text)
    if match is None:
        return None
    scheme, host, rest = match.groups()
    return scheme, host, rest or ""


def parse_identity(text: str) -> Identity:
    """
    Parse an identity string into a `BareKey` or `QualifiedLocator`.

    Anything that does not look like ``scheme://host/...`` is a bare key.
    A locator with a scheme other than ``az`` is rejected.

    Args:
        text (str): The identity as stored on the file.

    Returns:
        Identity: The tagged identity.

    Raises:
        ValidationError: If the identity is empty, uses a foreign scheme,
            or names a container without a key.
    """
    if not text:
        raise ValidationError("Missing file identity")

    parts = split_locator(text)
    if parts is None:
        return BareKey(text)

    scheme, container, key = parts
    if scheme != SCHEME:
        raise ValidationError(f"Invalid URL in file identity {text}")

    key = key.lstrip("/")
    if not key:
        raise ValidationError(f"No blob key in file identity {text}")
    return QualifiedLocator(container, key)


def resolve(
    identity: Union[Identity, str],
    container: str,
    prefix: str = ""
) -> Tuple[str, str]:
    """
    Resolve an identity to the (container, key) pair it names.

    Args:
        identity (Union[Identity, str]): A parsed identity or its text form.
        container (str): The default container for bare keys.
        prefix (str): The default key prefix for bare keys.

    Returns:
        Tuple[str, str]: The container and blob key.
    """
    if isinstance(identity, str):
        identity = parse_identity(identity)

    if isinstance(identity, QualifiedLocator):
        resolved = (identity.container, identity.key)
    else:
        resolved = (container, destination(prefix, identity.path))

    logger.debug(f"Parsed {identity} -> {resolved[0]} / {resolved[1]}")
    return resolved
