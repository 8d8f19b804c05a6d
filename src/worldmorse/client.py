"""
Relay client - HTTP/SSE implementation.

Talks to a WorldMorse relay through its REST API and receives push
events from the Server-Sent Events stream. Every request carries its own
timeout; failures surface as RelayClientError.
"""

import asyncio
import json
from typing import Any, AsyncIterator
from urllib.parse import urljoin

import aiohttp
from aiohttp_sse_client import client as sse_client

from .config_loader import RECENT_LIMIT_DEFAULT
from .errors import RelayClientError
from .logging_setup import get_logger
from .models import EventKind, Message, MessageType, Station, normalize_callsign

logger = get_logger(__name__)

KNOWN_EVENT_KINDS = {EventKind.HELLO.value, EventKind.STATION.value, EventKind.MESSAGE.value}


def parse_push_event(data: str | bytes | None) -> dict[str, Any] | None:
    """
    Parse one push frame.

    Returns None for anything unparseable or of an unknown kind; such
    frames are dropped by callers.
    """
    if not data:
        return None
    try:
        event = json.loads(data)
    except (ValueError, TypeError):
        return None
    if not isinstance(event, dict) or event.get("kind") not in KNOWN_EVENT_KINDS:
        return None
    if event["kind"] == EventKind.MESSAGE.value and not isinstance(event.get("message"), dict):
        return None
    if event["kind"] == EventKind.STATION.value and not isinstance(event.get("station"), dict):
        return None
    return event


def _parse_records(records: Any, record_type) -> list:
    """Build records from a list of dicts, skipping malformed entries"""
    parsed = []
    for data in records or []:
        try:
            parsed.append(record_type.from_dict(data))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.debug("Skipped malformed %s record: %r", record_type.__name__, e)
    return parsed


class RelayClient:
    """
    HTTP client for the relay API.

    The aiohttp session is created lazily and reset after transport errors.
    """

    def __init__(self, server_url: str, timeout: float = 5.0):
        self.server_url = server_url.rstrip('/')
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def _ensure_session(self):
        """Ensure HTTP session exists"""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def _reset_session(self):
        """Close the HTTP session; the next request opens a fresh one"""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def close(self) -> None:
        await self._reset_session()

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: dict | None = None,
        params: dict | None = None,
    ) -> dict:
        """Make one HTTP request and unwrap the {"ok": ...} envelope"""
        await self._ensure_session()
        url = urljoin(self.server_url + '/', endpoint.lstrip('/'))

        try:
            async with self._session.request(
                method,
                url,
                json=data,
                params=params,
            ) as response:
                try:
                    body = await response.json(content_type=None)
                except (ValueError, aiohttp.ContentTypeError):
                    body = {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            await self._reset_session()
            raise RelayClientError("connection_error") from e

        if not isinstance(body, dict):
            body = {}
        if response.status >= 400 or not body.get("ok"):
            raise RelayClientError(body.get("error") or "request_failed", response.status)
        return body

    async def register_station(self, callsign: str) -> Station:
        body = await self._request(
            'POST', '/v1/stations/register', {'callsign': normalize_callsign(callsign)}
        )
        return Station.from_dict(body['station'])

    async def heartbeat(self, callsign: str) -> None:
        await self._request(
            'POST', '/v1/stations/heartbeat', {'callsign': normalize_callsign(callsign)}
        )

    async def submit_message(
        self,
        from_callsign: str,
        channel: str,
        type: str,
        payload: dict[str, Any] | None = None,
        to_callsign: str | None = None,
    ) -> Message:
        body = await self._request('POST', '/v1/messages', {
            'fromCallsign': normalize_callsign(from_callsign),
            'toCallsign': normalize_callsign(to_callsign) or None,
            'channel': str(channel or ''),
            'type': type,
            'payload': payload or {},
        })
        return Message.from_dict(body['message'])

    async def send_cw(
        self,
        from_callsign: str,
        channel: str,
        morse: str,
        text_preview: str = "",
        to_callsign: str | None = None,
    ) -> Message:
        """Submit a CW_MORSE message; the encoded signal is the primary data"""
        payload = {'morse': str(morse or '')}
        if text_preview:
            payload['textPreview'] = str(text_preview)
        return await self.submit_message(
            from_callsign, channel, MessageType.CW_MORSE.value, payload, to_callsign
        )

    async def recent_messages(self, channel: str, limit: int = RECENT_LIMIT_DEFAULT) -> list[Message]:
        body = await self._request(
            'GET', '/v1/messages/recent', params={'channel': channel, 'limit': str(limit)}
        )
        return _parse_records(body.get('messages'), Message)

    async def online_stations(self, channel: str) -> list[Station]:
        body = await self._request('GET', '/v1/stations/online', params={'channel': channel})
        return _parse_records(body.get('stations'), Station)

    async def events(self, callsign: str, channel: str) -> AsyncIterator[dict[str, Any]]:
        """
        Open the SSE push stream and yield parsed events until it ends.

        Unknown or malformed events are skipped. Connection errors propagate
        so the caller can decide how to reconnect.
        """
        url = urljoin(self.server_url + '/', 'v1/events')
        params = {'callsign': normalize_callsign(callsign), 'channel': channel}
        timeout = aiohttp.ClientTimeout(total=None, sock_read=90)

        logger.info("Connecting to SSE stream: %s (%s)", url, channel)
        async with sse_client.EventSource(url, params=params, timeout=timeout) as event_source:
            async for event in event_source:
                parsed = parse_push_event(event.data)
                if parsed is None:
                    logger.debug("Dropped push event %r", event.type)
                    continue
                yield parsed
