from __future__ import annotations

from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

import httpx
import structlog
from starlette import status
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response, StreamingResponse

from respawn.errors import ProxyError
from respawn.settings import ProxyRoute

log = structlog.get_logger()

PROXY_ERROR_MESSAGE = "Something went wrong. Please try again later."

# https://datatracker.ietf.org/doc/html/rfc7230#section-6.1
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)
SKIPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | {"content-length"}


def _normalize_prefix(prefix: str) -> str:
    return "/" + prefix.strip("/")


def prefix_matches(prefix: str, path: str) -> bool:
    """
    Match on whole path segments: `/webhook` matches `/webhook` and
    `/webhook/github` but not `/webhooks`.
    """
    if prefix == "/":
        return True
    return path == prefix or path.startswith(prefix + "/")


def _forward_headers(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    return [
        (k, v)
        for k, v in headers
        if k.lower() not in HOP_BY_HOP_HEADERS and k.lower() not in ("host", "content-length")
    ]


class ReverseProxyRouter:
    def __init__(
        self,
        routes: Iterable[ProxyRoute],
        ports: Dict[str, int],
        *,
        host: str = "127.0.0.1",
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        normalized = [ProxyRoute(prefix=_normalize_prefix(r.prefix), worker=r.worker) for r in routes]
        # longest prefix first
        self.routes = sorted(normalized, key=lambda r: len(r.prefix), reverse=True)
        self.ports = ports
        self.host = host
        self.client = client or httpx.AsyncClient(timeout=None, follow_redirects=False)

    def match(self, path: str) -> Optional[ProxyRoute]:
        for route in self.routes:
            if prefix_matches(route.prefix, path):
                return route
        return None

    def target_url(self, worker: str, request: Request) -> str:
        url = f"http://{self.host}:{self.ports[worker]}{request.url.path}"
        if request.url.query:
            url += "?" + request.url.query
        return url

    async def _forward(self, worker: str, request: Request) -> httpx.Response:
        upstream = self.client.build_request(
            request.method,
            self.target_url(worker, request),
            headers=_forward_headers(request.headers.items()),
            content=await request.body(),
        )
        try:
            return await self.client.send(upstream, stream=True)
        except httpx.TransportError as e:
            raise ProxyError(f"{worker} unreachable at {upstream.url}: {e!r}") from e

    async def _relay(self, worker: str, request: Request, upstream: httpx.Response) -> AsyncIterator[bytes]:
        """
        Stream the upstream body. A worker that goes away mid-body (a restart
        window) ends the stream early instead of failing the ASGI response.
        """
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.TransportError as e:
            error = ProxyError(f"{worker} dropped the response at {request.url.path}: {e!r}")
            log.error(
                "proxy error",
                worker=worker,
                method=request.method,
                path=request.url.path,
                status_code=upstream.status_code,
                error=str(error),
            )

    async def route(self, request: Request) -> Response:
        route = self.match(request.url.path)
        if route is None:
            return PlainTextResponse("Not Found", status_code=status.HTTP_404_NOT_FOUND)
        try:
            upstream = await self._forward(route.worker, request)
        except ProxyError as e:
            log.error(
                "proxy error",
                worker=route.worker,
                method=request.method,
                path=request.url.path,
                error=str(e),
            )
            return PlainTextResponse(PROXY_ERROR_MESSAGE, status_code=status.HTTP_502_BAD_GATEWAY)
        response = StreamingResponse(
            self._relay(route.worker, request, upstream),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        # keep repeated headers such as Set-Cookie intact. The relayed body can
        # end early, so the upstream Content-Length is not passed on.
        response.raw_headers = [
            (k, v)
            for k, v in upstream.headers.raw
            if k.decode("latin-1").lower() not in SKIPPED_RESPONSE_HEADERS
        ]
        return response

    async def aclose(self) -> None:
        await self.client.aclose()
