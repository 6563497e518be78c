import json
from contextlib import contextmanager
from typing import Any, Dict, Iterator

import httpx
from loguru import logger

from scribeflow.core.exceptions import ProtocolError, RequestRejectedError, TransientError


def extract_error_message(response: httpx.Response) -> str:
    """
    Pull the most useful error message out of a failed response

    Args:
        response: The HTTP response

    Returns:
        error.message, error, message or the raw body, else "HTTP <status>"
    """
    body = response.text.strip()
    try:
        data = json.loads(body) if body else None
    except ValueError:
        data = None

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            if isinstance(error.get("message"), str) and error["message"].strip():
                return error["message"].strip()
            return json.dumps(error)
        if isinstance(error, str) and error.strip():
            return error.strip()
        if isinstance(data.get("message"), str) and data["message"].strip():
            return data["message"].strip()

    return body or f"HTTP {response.status_code}"


def raise_for_response(response: httpx.Response, action: str) -> None:
    """
    Raise a typed service error for a non-2xx response

    Args:
        response: The HTTP response
        action: What the request was doing, used in the message

    Raises:
        TransientError: For 5xx responses
        RequestRejectedError: For any other non-2xx response
    """
    if 200 <= response.status_code < 300:
        return

    message = f"{action} failed ({response.status_code}): {extract_error_message(response)}"
    if response.status_code >= 500:
        raise TransientError(message, status_code=response.status_code)
    raise RequestRejectedError(message, status_code=response.status_code)


def parse_json(response: httpx.Response, action: str) -> Dict[str, Any]:
    """
    Decode a JSON object body

    Raises:
        ProtocolError: If the body is not a JSON object
        RequestRejectedError: If the body carries success: false
    """
    try:
        data = response.json()
    except ValueError as e:
        raise ProtocolError(f"{action} returned a non-JSON response") from e

    if not isinstance(data, dict):
        raise ProtocolError(f"{action} returned an unexpected payload")

    if data.get("success") is False:
        raise RequestRejectedError(
            f"{action} failed: {extract_error_message(response)}",
            status_code=response.status_code,
        )
    return data


@contextmanager
def transport_errors(action: str) -> Iterator[None]:
    """Map network-level httpx failures to TransientError"""
    try:
        yield
    except httpx.TransportError as e:
        logger.debug(f"{action} hit a transport error: {e!r}")
        raise TransientError(f"{action} failed: {e.__class__.__name__}: {e}") from e
