"""
Wire codec for the controller's ASCII command protocol.

Command: uppercase mnemonic, optional ``=value``, one NUL terminator.
Response: ASCII text up to the first NUL; a leading '?' means the
command was not understood.
"""

from __future__ import annotations

from typing import Optional, Union

from hardware_interface import CommandRejectedError, ResponseParseError, TransportIOError

TERMINATOR = b"\x00"
REJECTED_PREFIX = "?"


def build_command(mnemonic: str, value: Optional[Union[int, str]] = None) -> bytes:
    """
    Build a NUL-terminated command.

    Args:
        mnemonic: Device mnemonic, e.g. "HSPD" or "X"
        value: Optional value; "HSPD", 1500 gives b"HSPD=1500\\0"

    Returns:
        Encoded command bytes
    """
    text = mnemonic.strip().upper()
    if value is not None:
        text = f"{text}={value}"
    return encode_command(text)


def encode_command(text: str) -> bytes:
    """Terminate an already formatted command line."""
    if not text:
        raise ValueError("empty command")
    if "\x00" in text:
        raise ValueError(f"embedded NUL in command {text!r}")
    try:
        data = text.encode("ascii")
    except UnicodeEncodeError as e:
        raise ValueError(f"non-ASCII command {text!r}") from e
    return data + TERMINATOR


def command_text(command: bytes) -> str:
    """Human-readable form of an encoded command, for logs and errors."""
    return command.rstrip(TERMINATOR).decode("ascii", errors="replace")


def extract_response(raw: bytes) -> str:
    """
    Take the response text up to the first NUL; trailing bytes are garbage.

    Raises:
        TransportIOError: if the text is not ASCII
    """
    end = raw.find(TERMINATOR)
    if end != -1:
        raw = raw[:end]
    try:
        return raw.decode("ascii")
    except UnicodeDecodeError as e:
        raise TransportIOError(f"non-ASCII response {raw!r}", "extract_response", e) from e


def is_rejected(response: str) -> bool:
    return response.startswith(REJECTED_PREFIX)


def check_response(command: bytes, response: str, operation: Optional[str] = None) -> str:
    """Return the response, or raise CommandRejectedError for '?' replies."""
    if is_rejected(response):
        raise CommandRejectedError(command_text(command), response, operation)
    return response


def parse_numeric(command: bytes, response: str, kind: type = int, operation: Optional[str] = None):
    """
    Parse a numeric reply.

    Raises:
        ResponseParseError: when the reply is not a ``kind`` literal
    """
    try:
        return kind(response.strip())
    except ValueError as e:
        raise ResponseParseError(command_text(command), response, kind.__name__, operation) from e
