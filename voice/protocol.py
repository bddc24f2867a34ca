"""
Wire protocol — JSON text frames between the browser/desktop client and server.
"""
from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Union

from pydantic import TypeAdapter, ValidationError

from models.schemas import AudioFragment, ClientMessage, ServerEvent, make_event
from voice.errors import ProtocolError

_client_message_adapter = TypeAdapter(ClientMessage)


def parse_client_message(raw: Union[str, bytes, dict[str, Any]]):
    """Parse one inbound frame into a typed client message.

    Raises ProtocolError for anything that is not a known, well-formed message.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ProtocolError("Message must be a JSON object")
    try:
        return _client_message_adapter.validate_python(raw)
    except ValidationError as e:
        raise ProtocolError(f"Invalid message ({raw.get('type')!r}): {e.error_count()} error(s)") from e


def decode_audio(payload: str) -> bytes:
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProtocolError(f"Audio payload is not valid base64: {e}") from e


def encode_audio(audio: bytes) -> str:
    return base64.b64encode(audio).decode("ascii")


def fragment_event(fragment: AudioFragment) -> dict[str, Any]:
    return make_event(
        ServerEvent.AI_AUDIO_CHUNK,
        text=fragment.text,
        audio=encode_audio(fragment.audio),
        ordinal=fragment.ordinal,
        isFirst=fragment.is_first,
        isFinal=fragment.is_final,
    )
