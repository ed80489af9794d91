# domainscope/scanner/probes/http_fetch.py
"""
Shared homepage fetch.

The headers, technology and content probes all read the same homepage. This
module fetches it once per target through the cache's single-flight lookup,
so whichever probe asks first does the request and the others reuse it.

Request chain:
    http://<host>/  ->  follows up to N redirects  ->  final response
If the plain-HTTP connect fails (nothing listening on :80), the fetch
starts over at https://<host>/.

The body is streamed and capped at settings.http_max_body bytes.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import List

import httpx

from domainscope.errors import NetworkError, NetworkTimeout
from domainscope.scanner.base import Collected, ScanContext
from domainscope.scanner.models import HttpResponse
from domainscope.scanner.network import translate_http_error

logger = logging.getLogger(__name__)


def _get(ctx: ScanContext, url: str) -> HttpResponse:
    settings = ctx.settings
    timeout = ctx.deadline.bound(settings.http_timeout)
    start = ctx.clock.monotonic()

    try:
        with ctx.network.http_client(timeout, settings.http_max_redirects, settings.user_agent) as client:
            with client.stream("GET", url) as resp:
                chunks: List[bytes] = []
                size = 0
                truncated = False
                for chunk in resp.iter_bytes():
                    ctx.deadline.check("http fetch")
                    chunks.append(chunk)
                    size += len(chunk)
                    if size >= settings.http_max_body:
                        truncated = True
                        break
                body = b"".join(chunks)[: settings.http_max_body]

                chain = [str(r.url) for r in resp.history] + [str(resp.url)]
                return HttpResponse(
                    url=url,
                    final_url=str(resp.url),
                    status_code=resp.status_code,
                    headers={k: v for k, v in resp.headers.items()},
                    set_cookies=tuple(resp.headers.get_list("set-cookie")),
                    redirect_chain=tuple(chain),
                    body=body,
                    truncated=truncated,
                    elapsed_ms=round((ctx.clock.monotonic() - start) * 1000, 1),
                    content_encoding=resp.headers.get("content-encoding"),
                )
    except httpx.HTTPError as e:
        raise translate_http_error(e, url) from e


def _fetch(ctx: ScanContext) -> Collected:
    host = f"[{ctx.target.value}]" if ":" in ctx.target.value else ctx.target.value
    try:
        response = ctx.with_retries(_get, ctx, f"http://{host}/")
    except NetworkTimeout:
        raise
    except NetworkError as e:
        logger.debug(f"HTTP fetch of {host} over plain HTTP failed ({e}), trying HTTPS")
        response = ctx.with_retries(_get, ctx, f"https://{host}/")

    logger.info(
        f"Fetched {response.final_url} -> {response.status_code} "
        f"({len(response.body)} bytes, {len(response.redirect_chain) - 1} redirects, {response.elapsed_ms}ms)"
    )
    return Collected(response)


def fetch_homepage(ctx: ScanContext) -> Collected:
    """Cached, single-flight homepage fetch for ctx.target."""
    value, hit = ctx.cached("http", lambda: _fetch(ctx))
    return replace(value, cached=hit)
