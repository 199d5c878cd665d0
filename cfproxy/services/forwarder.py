"""Upstream forwarding.

Rebuilds each admitted inbound request against the fixed upstream, injects
the server-held credential and streams the upstream response back.

Forwarding rules:
- Method, raw path and raw query string are kept byte-for-byte.
- Inbound headers keep their order and duplicates. ``host``, hop-by-hop
  headers and any client copy of the credential header are dropped; the
  upstream ``host`` and the credential are then set by the proxy.
- Bodies are streamed in both directions and never decoded, so
  ``content-length``/``content-encoding`` stay consistent with the bytes
  actually sent.
"""

from __future__ import annotations

import asyncio
import logging
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import AsyncIterator, Iterable

import httpx
from fastapi import Request
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect
from starlette.responses import StreamingResponse

from cfproxy.core.config import ProxySettings
from cfproxy.core.logging import get_request_id
from cfproxy.core.errors import (
    ClientDisconnectedError,
    MalformedRequestError,
    UpstreamTimeoutError,
    UpstreamUnreachableError,
)

logger = logging.getLogger(__name__)

# Headers that only describe one transport leg (RFC 9110 section 7.6.1)
HOP_BY_HOP_HEADERS: frozenset[str] = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)


def _connection_tokens(raw_headers: Iterable[tuple[bytes, bytes]]) -> set[str]:
    """Header names listed in ``Connection``, which are hop-by-hop as well."""

    tokens: set[str] = set()
    for name, value in raw_headers:
        if name.lower() == b"connection":
            tokens.update(
                token.strip().lower()
                for token in value.decode("latin-1").split(",")
                if token.strip()
            )
    return tokens


def strip_hop_by_hop(
    raw_headers: Iterable[tuple[bytes, bytes]],
    *,
    drop: Iterable[str] = (),
) -> list[tuple[bytes, bytes]]:
    """Return headers without hop-by-hop entries, keeping order and duplicates.

    Names are lowercased. ``drop`` lists additional (lowercase) names to remove.
    """

    raw_headers = list(raw_headers)
    excluded = HOP_BY_HOP_HEADERS | _connection_tokens(raw_headers) | set(drop)
    kept: list[tuple[bytes, bytes]] = []
    for name, value in raw_headers:
        lowered = name.lower()
        if lowered.decode("latin-1") in excluded:
            continue
        kept.append((lowered, value))
    return kept


def _escape_non_ascii(raw: bytes) -> bytes:
    """Percent-encode bytes outside ASCII; everything else is left as sent."""

    if raw.isascii():
        return raw
    return b"".join(b"%%%02X" % byte if byte > 0x7F else bytes((byte,)) for byte in raw)


def create_upstream_client(
    settings: ProxySettings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the shared upstream client.

    Every phase of the round trip is bounded by a timeout. Redirects are
    relayed to the caller, not followed, and upstream cookies are never
    stored in the shared client.

    Args:
        settings: Proxy settings.
        transport: Optional transport override (tests use ``httpx.MockTransport``).

    Returns:
        A new ``httpx.AsyncClient``; the caller owns and closes it.
    """

    timeout = httpx.Timeout(
        settings.upstream_timeout_seconds,
        connect=settings.upstream_connect_timeout_seconds,
    )
    limits = httpx.Limits(
        max_connections=settings.upstream_max_connections,
        max_keepalive_connections=settings.upstream_max_connections,
    )
    return httpx.AsyncClient(
        timeout=timeout,
        limits=limits,
        transport=transport,
        follow_redirects=False,
        trust_env=False,
        cookies=CookieJar(policy=DefaultCookiePolicy(allowed_domains=[])),
    )


async def _wait_for_disconnect(request: Request, body_done: asyncio.Event) -> None:
    """Return once the caller disconnects.

    Only listens after the request body has been handed to the upstream, so
    body messages are never stolen from the forwarding stream.
    """

    await body_done.wait()
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            return


class Forwarder:
    """Forward inbound requests to a single upstream with an injected credential."""

    def __init__(
        self,
        *,
        upstream_url: str,
        credential_header: str,
        api_key: str,
        client: httpx.AsyncClient,
        deadline_seconds: float = 60.0,
    ) -> None:
        self._base_url = httpx.URL(upstream_url)
        self._deadline = deadline_seconds
        self._credential_header = credential_header.lower()
        self._credential_value = api_key.encode("latin-1")
        self._client = client

    @classmethod
    def from_settings(cls, settings: ProxySettings, client: httpx.AsyncClient) -> "Forwarder":
        return cls(
            upstream_url=settings.upstream_url,
            credential_header=settings.credential_header,
            api_key=settings.cf_api_key.get_secret_value(),
            client=client,
            deadline_seconds=settings.upstream_deadline_seconds,
        )

    def _target_url(self, request: Request) -> httpx.URL:
        raw_path: bytes = request.scope.get("raw_path") or request.scope["path"].encode("utf-8")
        raw_path = raw_path.split(b"?", 1)[0]
        if not raw_path.startswith(b"/"):
            raise MalformedRequestError(
                code="malformed_request",
                message="Request target is not a valid path.",
            )

        query: bytes = request.scope.get("query_string", b"")
        prefix = self._base_url.raw_path.split(b"?", 1)[0].rstrip(b"/")
        target = _escape_non_ascii(prefix + raw_path + (b"?" + query if query else b""))
        try:
            return self._base_url.copy_with(raw_path=target)
        except httpx.InvalidURL as exc:
            raise MalformedRequestError(
                code="malformed_request",
                message="Request target is not a valid path.",
                details={"cause": type(exc).__name__},
            ) from exc

    def _outbound_headers(self, request: Request, url: httpx.URL) -> list[tuple[bytes, bytes]]:
        headers = strip_hop_by_hop(
            request.headers.raw,
            drop=("host", self._credential_header),
        )
        headers.insert(0, (b"host", url.netloc))
        headers.append((self._credential_header.encode("latin-1"), self._credential_value))
        return headers

    @staticmethod
    def _has_body(request: Request) -> bool:
        return "content-length" in request.headers or "transfer-encoding" in request.headers

    @staticmethod
    async def _stream_body(request: Request, body_done: asyncio.Event) -> AsyncIterator[bytes]:
        try:
            async for chunk in request.stream():
                if chunk:
                    yield chunk
        finally:
            body_done.set()

    def build_request(
        self,
        request: Request,
        content: AsyncIterator[bytes] | None = None,
    ) -> httpx.Request:
        """Build the outbound request for ``request``.

        Args:
            request: Inbound request.
            content: Body stream to send; ``None`` sends no body.

        Raises:
            MalformedRequestError: If the target cannot be placed on the upstream URL.
        """

        url = self._target_url(request)
        return httpx.Request(
            request.method,
            url,
            headers=self._outbound_headers(request, url),
            content=content,
        )

    async def forward(self, request: Request) -> StreamingResponse:
        """Perform one upstream round trip and return the relayed response.

        The upstream call is abandoned as soon as the caller disconnects.

        Raises:
            MalformedRequestError: Inbound target is unusable.
            UpstreamTimeoutError: Upstream did not answer in time.
            UpstreamUnreachableError: Connection, DNS or TLS failure.
            ClientDisconnectedError: Caller went away before the response.
        """

        body_done = asyncio.Event()
        content = None
        if self._has_body(request):
            content = self._stream_body(request, body_done)
        else:
            body_done.set()

        upstream_request = self.build_request(request, content)

        send = asyncio.ensure_future(self._client.send(upstream_request, stream=True))
        watch = asyncio.ensure_future(_wait_for_disconnect(request, body_done))
        try:
            done, _ = await asyncio.wait(
                {send, watch},
                timeout=self._deadline,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            watch.cancel()
            if not send.done():
                send.cancel()
                await asyncio.gather(send, return_exceptions=True)

        if not done:
            self._log_failure(request, "DeadlineExceeded")
            raise UpstreamTimeoutError(
                code="upstream_timeout",
                message="Upstream did not respond in time.",
                details={"cause": "DeadlineExceeded"},
            )

        if send.cancelled():
            raise ClientDisconnectedError(
                code="client_disconnected",
                message="Client closed the connection.",
            )

        try:
            upstream_response = send.result()
        except ClientDisconnect as exc:
            raise ClientDisconnectedError(
                code="client_disconnected",
                message="Client closed the connection.",
            ) from exc
        except httpx.TimeoutException as exc:
            self._log_failure(request, type(exc).__name__)
            raise UpstreamTimeoutError(
                code="upstream_timeout",
                message="Upstream did not respond in time.",
                details={"cause": type(exc).__name__},
            ) from exc
        except httpx.TransportError as exc:
            self._log_failure(request, type(exc).__name__)
            raise UpstreamUnreachableError(
                code="upstream_unreachable",
                message="Upstream is unreachable.",
                details={"cause": type(exc).__name__},
            ) from exc

        response = StreamingResponse(
            self._relay_body(request, upstream_response, get_request_id()),
            status_code=upstream_response.status_code,
            background=BackgroundTask(upstream_response.aclose),
        )
        response.raw_headers = strip_hop_by_hop(upstream_response.headers.raw)
        return response

    @staticmethod
    async def _relay_body(
        request: Request,
        upstream_response: httpx.Response,
        request_id: str | None,
    ) -> AsyncIterator[bytes]:
        # aiter_raw: relay bytes as received, content-encoding untouched
        try:
            async for chunk in upstream_response.aiter_raw():
                yield chunk
        except httpx.TransportError as exc:
            logger.warning(
                "proxy.upstream_body_failed",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "cause": type(exc).__name__,
                },
            )
            raise

    @staticmethod
    def _log_failure(request: Request, cause: str) -> None:
        logger.error(
            "proxy.upstream_failed",
            extra={
                "client": getattr(request.state, "client_identity", None),
                "method": request.method,
                "path": request.url.path,
                "cause": cause,
            },
        )
