"""
CLI client for the toolbridge API.

Files are attached by mentioning them with an ``@`` prefix, e.g.
``summarise @reports/q3.pdf @charts/revenue.png``.
"""

from __future__ import annotations

import logging
import mimetypes
import shutil
import time
import uuid
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Tuple,
    cast,
)

import httpx

from toolbridge.common import (
    AnsiColors,
    colored_print,
    outcome_color,
)
from toolbridge.config import (
    settings,
    upload_root,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# CLI Client
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    import signal  # pylint: disable=import-outside-toplevel

    # Ensure SIGINT breaks out of slow system calls such as read()
    signal.siginterrupt(signal.SIGINT, True)

    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def extract_attachments(message: str) -> Tuple[str, List[Dict[str, Any]]]:
    """
    Split ``@path`` mentions of existing files out of *message*.

    Each attachment is copied into the upload directory, which is the only place the API reads
    files from.  Returns the message with the mentions replaced by file names, and one file
    record per attachment in the API's ``{id, name, type, size, path}`` shape, with ``path``
    relative to the upload directory.
    """
    words: List[str] = []
    files: List[Dict[str, Any]] = []
    for word in message.split():
        path = Path(word[1:]).expanduser() if word.startswith("@") else None
        if path is None or not path.is_file():
            words.append(word)
            continue
        file_id = str(uuid.uuid4())
        stored_name = f"{file_id}_{path.name}"
        uploads = upload_root()
        uploads.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(path, uploads / stored_name)
        mime_type, _ = mimetypes.guess_type(path.name)
        files.append(
            {
                "id": file_id,
                "name": path.name,
                "type": mime_type or "application/octet-stream",
                "size": path.stat().st_size,
                "path": stored_name,
            }
        )
        words.append(path.name)
    return " ".join(words), files


def call_api(endpoint: str, data: Dict[str, Any], max_retries: int = 5) -> Dict[str, Any]:
    """Make a POST request to the API and return the response with retries."""
    api_url = f"http://localhost:{settings.API_PORT}{endpoint}"

    for attempt in range(max_retries):
        try:
            with httpx.Client(timeout=settings.TOOL_TIMEOUT_S * 5) as client:
                response = client.post(api_url, json=data)
        except httpx.ConnectError as e:
            if attempt < max_retries - 1:
                retry_delay = 0.5 * (2**attempt)  # exponential backoff: 0.5s, 1s, 2s, 4s...
                logger.info(
                    "API not ready yet, retrying in %.1f seconds (attempt %d/%d)...",
                    retry_delay,
                    attempt + 1,
                    max_retries,
                )
                time.sleep(retry_delay)
                continue
            error_msg = f"Error connecting to API: {e}"
            colored_print(error_msg, AnsiColors.RED)
            return {"response": error_msg}
        except httpx.HTTPError as e:
            logger.error("API request error: %s", str(e))
            error_msg = f"Error connecting to API: {e}"
            colored_print(error_msg, AnsiColors.RED)
            return {"response": error_msg}

        if response.is_error:
            error_msg = f"API error ({response.status_code})"
            try:
                error_data = response.json()
                if "detail" in error_data:
                    error_msg = f"API error: {error_data['detail']}"
            except ValueError:
                logger.debug("Non-JSON error body: %s", response.text)
            colored_print(error_msg, AnsiColors.RED)
            return {"response": error_msg}
        return cast(Dict[str, Any], response.json())

    # If we've exhausted all retries without returning
    error_msg = f"Failed to connect to API after {max_retries} attempts"
    colored_print(error_msg, AnsiColors.RED)
    return {"response": error_msg}


def render_turn(response: Dict[str, Any]) -> None:
    """Print tool outcomes, the answer and the confidence of one turn."""
    for result in response.get("toolResults") or []:
        succeeded = bool(result.get("success"))
        detail = "ok" if succeeded else result.get("error")
        colored_print(f"[{result.get('toolId')}] {detail}", outcome_color(succeeded))

    colored_print(response.get("response", "No response from API"), AnsiColors.YELLOW)
    if "confidence" in response:
        colored_print(f"(confidence: {response['confidence']:.2f})", AnsiColors.BLUE)


def run_cli() -> None:
    """Run the CLI client that communicates with the API."""
    conversation_id = str(uuid.uuid4())

    colored_print(
        "\nToolbridge shell - attach files with @path; type 'exit' or 'quit' (or Ctrl+C) to exit",
        AnsiColors.GREEN,
    )
    while True:
        colored_print("\nYou: ", AnsiColors.BLUE, end="")
        user_msg, ok = get_user_message()
        if not ok:
            break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
        if not user_msg:
            continue
        if user_msg.lower() in {"exit", "quit"}:
            break

        message, files = extract_attachments(user_msg)
        response = call_api(
            "/chat/message",
            {"message": message, "conversationId": conversation_id, "files": files},
        )
        render_turn(response)


if __name__ == "__main__":
    run_cli()
