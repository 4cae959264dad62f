"""Loading resource manifests from local paths and URLs."""

import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import httpx
import yaml
from pydantic import ValidationError

from tmctl.core.errors import ManifestNotFound, ManifestParseError, SchemaMismatch
from tmctl.core.kinds import ResourceKind
from tmctl.core.objects import RemoteObject, object_type

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT = 30.0


def is_local(location: str) -> bool:
    """Tell whether a location is an existing local file or directory."""
    return bool(location) and Path(location).exists()


def is_git_url(location: str) -> bool:
    """Tell whether a location looks like a git repository URL."""
    if location.endswith(".git"):
        return True
    for prefix in ("git@", "git://", "https://github.com/", "https://gitlab.com/", "https://bitbucket.org/"):
        if location.startswith(prefix):
            return True
    return False


def is_url(location: str) -> bool:
    return location.startswith(("http://", "https://"))


def download(url: str, http_client: Optional[httpx.Client] = None) -> Path:
    """Download a URL into a temporary file.

    Args:
        url: Remote location
        http_client: Client to use (a new one is created if not provided)

    Returns:
        Path to the downloaded file. The caller removes it.

    Raises:
        ManifestNotFound: If the URL cannot be fetched
    """
    logger.debug(f"cannot find {url!r} locally, downloading")
    http = http_client or httpx.Client(timeout=DOWNLOAD_TIMEOUT, follow_redirects=True)
    try:
        response = http.get(url)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise ManifestNotFound(url, f"HTTP {e.response.status_code}")
    except httpx.HTTPError as e:
        raise ManifestNotFound(url, str(e))
    finally:
        if http_client is None:
            http.close()

    fd, path = tempfile.mkstemp(prefix="tmctl-", suffix=".yaml")
    with os.fdopen(fd, "wb") as f:
        f.write(response.content)
    logger.debug(f"downloaded {url!r} to {path}")
    return Path(path)


@contextmanager
def resolve(location: str, http_client: Optional[httpx.Client] = None) -> Iterator[Path]:
    """Yield a local path for a location, downloading it first if needed.

    Downloaded files are removed when the context exits.

    Raises:
        ManifestNotFound: If the location is neither local nor fetchable
    """
    if is_local(location):
        yield Path(location)
        return
    if not is_url(location):
        raise ManifestNotFound(location, "no such file")
    path = download(location, http_client)
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)


def read_text(location: str, http_client: Optional[httpx.Client] = None) -> str:
    """Read a local or remote file as text.

    Raises:
        ManifestNotFound: If the file cannot be read
        ManifestParseError: If the content is not valid UTF-8
    """
    with resolve(location, http_client) as path:
        try:
            return path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ManifestParseError(f"{location}: {e}")
        except OSError as e:
            raise ManifestNotFound(location, str(e))


def check_type_meta(data: Dict[str, Any], kind: ResourceKind) -> None:
    """Reject a decoded document declaring another kind or apiVersion.

    Raises:
        SchemaMismatch: On the first mismatching field
    """
    if data.get("kind") != kind.kind:
        raise SchemaMismatch("kind", kind.kind, data.get("kind"))
    if data.get("apiVersion") != kind.api_version:
        raise SchemaMismatch("apiVersion", kind.api_version, data.get("apiVersion"))


def decode(data: Any, kind: ResourceKind, source: str = "<document>") -> RemoteObject:
    """Decode a parsed YAML document into the model for a resource kind.

    Raises:
        ManifestParseError: If the document is not a mapping or has the wrong shape
        SchemaMismatch: If kind or apiVersion differ from the expected ones
    """
    if not isinstance(data, dict):
        raise ManifestParseError(f"{source}: expected a mapping, got {type(data).__name__}")
    check_type_meta(data, kind)
    try:
        return object_type(kind).model_validate(data)
    except ValidationError as e:
        raise ManifestParseError(f"{source}: {e}")


def load_manifest(
    location: str,
    kind: ResourceKind,
    http_client: Optional[httpx.Client] = None,
) -> RemoteObject:
    """Load a single-object manifest for a resource kind.

    Args:
        location: Local path or URL
        kind: Expected resource kind
        http_client: Client used for remote locations

    Returns:
        Decoded object

    Raises:
        ManifestNotFound: If the location cannot be resolved
        ManifestParseError: If the content is not valid YAML of the right shape
        SchemaMismatch: If kind or apiVersion differ from the expected ones
    """
    text = read_text(location, http_client)
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ManifestParseError(f"{location}: {e}")
    return decode(data, kind, location)


def load_documents(location: str, http_client: Optional[httpx.Client] = None) -> List[Dict[str, Any]]:
    """Load every non-empty document of a multi-document YAML file."""
    text = read_text(location, http_client)
    try:
        documents = [doc for doc in yaml.safe_load_all(text) if doc is not None]
    except yaml.YAMLError as e:
        raise ManifestParseError(f"{location}: {e}")
    for doc in documents:
        if not isinstance(doc, dict):
            raise ManifestParseError(f"{location}: expected a mapping, got {type(doc).__name__}")
    return documents
