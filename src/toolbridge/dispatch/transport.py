"""Helpers shared by the container and capability-server strategies."""

import asyncio
import json
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Tuple,
)

import httpx

from toolbridge.core.errors import (
    BridgeError,
    InvalidRequestError,
    RemoteError,
    ServiceUnavailableError,
    TimeoutExceededError,
)
from toolbridge.core.schema import FileRecord


def classify_transport_error(exc: httpx.HTTPError, url: str) -> BridgeError:
    """Map an httpx transport exception onto the error taxonomy."""
    if isinstance(exc, httpx.TimeoutException):
        return TimeoutExceededError(f"request to {url} timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        return RemoteError(exc.response.status_code, exc.response.text[:200])
    # ConnectError, ReadError, RemoteProtocolError ... the far end is not serving us
    return ServiceUnavailableError(f"{url} is not reachable ({exc.__class__.__name__})")


def remote_error(response: httpx.Response) -> RemoteError:
    """Build a :class:`RemoteError` from a non-success response."""
    return RemoteError(response.status_code, response.text[:200])


def decode_payload(response: httpx.Response) -> Any:
    """Return the JSON body when there is one, otherwise the raw text."""
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return response.text


def form_value(value: Any) -> str:
    """Render a parameter as a multipart scalar field."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


async def read_upload(file: FileRecord) -> bytes:
    """Read an uploaded file's bytes without blocking the event loop."""
    try:
        return await asyncio.to_thread(Path(file.storage_path).read_bytes)
    except OSError as exc:
        raise InvalidRequestError(f"File {file.display_name} not found or not readable") from exc


def multipart_kwargs(
    data: Dict[str, str], files: List[Tuple[str, Tuple[str, bytes, str]]]
) -> Dict[str, Any]:
    """
    ``files``/``data`` arguments that always produce a multipart body.

    httpx only switches to multipart when ``files`` is non-empty, so without an attachment the
    scalar fields are sent as filename-less parts.
    """
    if files:
        return {"files": files, "data": data}
    return {"files": [(key, (None, value)) for key, value in data.items()]}
