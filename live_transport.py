"""WebSocket transport for the Gemini Live bidirectional endpoint.

One LiveTransport is one open socket. The session engine owns it exclusively:
it opens it, sends through it, iterates it for inbound messages and closes it.
Message builders here are the only place that knows the wire field names.
"""

import json
import logging

import websockets

from audio_codec import INPUT_MIME_TYPE
from session_errors import TransportClosedUnexpectedly, TransportOpenFailed

logger = logging.getLogger(__name__)

OPEN_TIMEOUT = 10.0


# ── Outbound message builders ──────────────────────────────────────

def build_setup_message(config, function_declarations=()):
    """First message on a new socket: model, voice, tools, transcription."""
    tools = []
    if config.get("enable_google_search", True):
        tools.append({"googleSearch": {}})
    if function_declarations:
        tools.append({"functionDeclarations": list(function_declarations)})

    return {
        "setup": {
            "model": config["model"],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {
                        "prebuiltVoiceConfig": {"voiceName": config["voice"]}
                    }
                },
            },
            "systemInstruction": {"parts": [{"text": config["system_instruction"]}]},
            "tools": tools,
            "inputAudioTranscription": {},
            "outputAudioTranscription": {},
        }
    }


def audio_message(b64_pcm, mime_type=INPUT_MIME_TYPE):
    return {"realtimeInput": {"audio": {"mimeType": mime_type, "data": b64_pcm}}}


def image_message(b64_jpeg):
    return {"realtimeInput": {"video": {"mimeType": "image/jpeg", "data": b64_jpeg}}}


def text_message(text, turn_complete=True):
    return {
        "clientContent": {
            "turns": [{"role": "user", "parts": [{"text": text}]}],
            "turnComplete": turn_complete,
        }
    }


def turn_complete_message():
    return text_message("", turn_complete=True)


def tool_response_message(call_id, name, response):
    return {
        "toolResponse": {
            "functionResponses": [{"id": call_id, "name": name, "response": response}]
        }
    }


# ── Transport ──────────────────────────────────────────────────────

def _redact(url):
    return url.split("?", 1)[0]


class LiveTransport:
    """A single open socket to the realtime endpoint."""

    def __init__(self, ws, url):
        self._ws = ws
        self._url = url
        self._closed = False
        self.messages_sent = 0
        self.messages_received = 0

    @classmethod
    async def open(cls, url, setup, api_key=None):
        """Connect and send the setup message.

        Raises:
            TransportOpenFailed: connection or setup send failed
        """
        full_url = f"{url}?key={api_key}" if api_key else url
        try:
            ws = await websockets.connect(
                full_url,
                ping_interval=20,
                max_size=None,
                open_timeout=OPEN_TIMEOUT,
            )
        except (OSError, TimeoutError, websockets.exceptions.WebSocketException) as e:
            raise TransportOpenFailed(f"Could not connect to {_redact(url)}: {e}") from e

        transport = cls(ws, url)
        try:
            await transport.send(setup)
        except TransportClosedUnexpectedly as e:
            raise TransportOpenFailed(f"Setup rejected: {e}") from e
        logger.info("Transport open: %s", _redact(url))
        return transport

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message):
        try:
            await self._ws.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportClosedUnexpectedly(f"Send failed: {e}", code=_close_code(e)) from e
        self.messages_sent += 1

    def __aiter__(self):
        return self._receive()

    async def _receive(self):
        """Yield decoded inbound messages until the socket closes.

        A clean close ends iteration; an error close raises
        TransportClosedUnexpectedly.
        """
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Dropping non-JSON frame (%d chars)", len(raw))
                    continue
                self.messages_received += 1
                yield message
        except websockets.exceptions.ConnectionClosedOK:
            return
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportClosedUnexpectedly(
                f"Connection closed: {e}", code=_close_code(e)
            ) from e

    async def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            await self._ws.close()
        except websockets.exceptions.WebSocketException as e:
            logger.debug("Error during close: %s", e)
        logger.info("Transport closed (%d sent, %d received)",
                    self.messages_sent, self.messages_received)


def _close_code(exc):
    rcvd = getattr(exc, "rcvd", None)
    return getattr(rcvd, "code", None)
