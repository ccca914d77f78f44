from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from backend import RedisBackend, get_redis_backend
from constants import PROXY_TIMEOUT_SECONDS
from schemas.iframe_check import EmbedCheckResult, ProxyError
from embedding import (
    BROWSER_HEADERS,
    normalize_target,
    should_auto_proxy,
    wayback_url,
    normalize_url_for_cache_key,
    evaluate_embedding,
    extract_title,
    rewrite_html,
    proxied_headers,
    is_html,
    encode_component,
)
from typing import Optional
import asyncio
import random
import string
import httpx
from logging_config import get_logger

logger = get_logger(__name__)

iframe_check_router = APIRouter(prefix="/api/iframe-check", tags=["iframe-check"])

CORS_JSON_HEADERS = {"Access-Control-Allow-Origin": "*"}


def generate_request_id(length: int = 8) -> str:
    return ''.join(random.choices(string.ascii_lowercase + string.digits, k=length))


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


async def fetch_upstream(client: httpx.AsyncClient, url: str) -> httpx.Response:
    """Single GET attempt, redirects followed. The body is left unread."""
    upstream_request = client.build_request("GET", url, headers=BROWSER_HEADERS)
    return await client.send(upstream_request, stream=True, follow_redirects=True)


async def check_embedding(client: httpx.AsyncClient, target_url: str, request_id: str) -> EmbedCheckResult:
    logger.info(f"[{request_id}] Performing header check for: {target_url}")
    try:
        upstream = await asyncio.wait_for(fetch_upstream(client, target_url), timeout=PROXY_TIMEOUT_SECONDS)
        try:
            if not upstream.is_success:
                raise httpx.HTTPStatusError(
                    f"Upstream fetch failed with status {upstream.status_code}",
                    request=upstream.request,
                    response=upstream,
                )
            document = None
            if is_html(upstream.headers):
                await asyncio.wait_for(upstream.aread(), timeout=PROXY_TIMEOUT_SECONDS)
                document = upstream.text
            result = evaluate_embedding(upstream.headers, document)
        finally:
            await upstream.aclose()
    except (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError) as e:
        message = str(e) or "Connection failed or timed out"
        logger.error(f"[{request_id}] Header check failed for {target_url}: {message}")
        return EmbedCheckResult(allowed=False, reason=f"Proxy check failed: {message}")

    logger.info(f"[{request_id}] Header check result: allowed={result.allowed}, reason={result.reason or 'N/A'}, title={result.title or 'N/A'}")
    return result


def connection_error(reason: str) -> JSONResponse:
    error = ProxyError(
        status=503,
        type="connection_error",
        message="The page cannot be displayed. Internet Explorer cannot access this website.",
        details=f"Failed to fetch the requested URL. Reason: {reason}",
    )
    return JSONResponse(status_code=503, content=error.model_dump(exclude_none=True), headers=CORS_JSON_HEADERS)


def http_error(upstream: httpx.Response) -> JSONResponse:
    status_text = upstream.reason_phrase or "File not found"
    error = ProxyError(
        status=upstream.status_code,
        statusText=status_text,
        type="http_error",
        message=f"The page cannot be found. HTTP {upstream.status_code} - {status_text}",
    )
    return JSONResponse(status_code=upstream.status_code, content=error.model_dump(exclude_none=True), headers=CORS_JSON_HEADERS)


async def proxy_page(client: httpx.AsyncClient, target_url: str, request_id: str) -> Response:
    logger.info(f"[{request_id}] Executing in 'proxy' mode for: {target_url}")
    try:
        upstream = await asyncio.wait_for(fetch_upstream(client, target_url), timeout=PROXY_TIMEOUT_SECONDS)
    except (httpx.RequestError, httpx.InvalidURL, asyncio.TimeoutError) as e:
        logger.error(f"[{request_id}] Proxy fetch error for {target_url}: {e!r}")
        return connection_error(str(e) or "Connection failed or timed out")

    if not upstream.is_success:
        await upstream.aclose()
        logger.error(f"[{request_id}] Upstream fetch failed with status {upstream.status_code} for {target_url}")
        return http_error(upstream)

    headers = proxied_headers(upstream.headers)
    content_type = upstream.headers.get("content-type", "")
    logger.info(f"[{request_id}] Proxying content type: {content_type}")

    if not is_html(upstream.headers):
        logger.info(f"[{request_id}] Proxying non-HTML content directly")
        return StreamingResponse(
            upstream.aiter_bytes(),
            status_code=upstream.status_code,
            headers=headers,
            background=BackgroundTask(upstream.aclose),
        )

    try:
        await asyncio.wait_for(upstream.aread(), timeout=PROXY_TIMEOUT_SECONDS)
    except (httpx.RequestError, asyncio.TimeoutError) as e:
        logger.error(f"[{request_id}] Proxy body read error for {target_url}: {e!r}")
        return connection_error(str(e) or "Connection failed or timed out")
    finally:
        await upstream.aclose()

    document = upstream.text
    title = extract_title(document)
    document = rewrite_html(document, target_url, title)
    headers["content-type"] = "text/html; charset=utf-8"
    if title:
        headers["X-Proxied-Page-Title"] = encode_component(title)

    return Response(content=document.encode("utf-8"), status_code=upstream.status_code, headers=headers)


def cached_page(backend: RedisBackend, url: str, year: Optional[str], request_id: str) -> Response:
    if not year:
        logger.error(f"[{request_id}] Missing year for AI cache mode")
        return JSONResponse(status_code=400, content={"error": "Missing year"})

    url_key = normalize_url_for_cache_key(url)
    logger.info(f"[{request_id}] Normalized URL for AI cache key: {url_key}")
    try:
        page = backend.get_cached_page(encode_component(url_key), year)
    except Exception as e:
        logger.error(f"[{request_id}] Error checking AI cache: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": str(e)})

    if page:
        logger.info(f"[{request_id}] AI cache HIT for {url_key} ({year})")
        return Response(
            content=page,
            media_type="text/html; charset=utf-8",
            headers={**CORS_JSON_HEADERS, "X-AI-Cache": "HIT"},
        )
    logger.info(f"[{request_id}] AI cache MISS for {url_key} ({year})")
    return JSONResponse(status_code=404, content={"aiCache": False}, headers=CORS_JSON_HEADERS)


@iframe_check_router.get("")
async def iframe_check(
    url: Optional[str] = Query(None),
    mode: str = Query("proxy"),
    year: Optional[str] = Query(None),
    month: Optional[str] = Query(None),
    client: httpx.AsyncClient = Depends(get_http_client),
    backend: RedisBackend = Depends(get_redis_backend),
):
    request_id = generate_request_id()
    logger.info(f"[{request_id}] GET iframe-check url={url} mode={mode}")

    if not url:
        logger.error(f"[{request_id}] Missing 'url' query parameter")
        return JSONResponse(status_code=400, content={"error": "Missing 'url' query parameter"})

    normalized_url = normalize_target(url)
    logger.info(f"[{request_id}] Normalized URL: {normalized_url}")

    if mode == "ai":
        return cached_page(backend, normalized_url, year, request_id)

    auto_proxy = should_auto_proxy(normalized_url)
    if auto_proxy and mode == "check":
        logger.info(f"[{request_id}] Auto-proxy domain in 'check' mode, returning allowed: false")
        return EmbedCheckResult(allowed=False, reason="Auto-proxied domain").model_dump(exclude_none=True)

    target_url = normalized_url
    if year and month:
        target_url = wayback_url(normalized_url, year, month)
        logger.info(f"[{request_id}] Using Wayback Machine URL: {target_url}")
        mode = "proxy"

    try:
        if mode == "check":
            result = await check_embedding(client, target_url, request_id)
            return result.model_dump(exclude_none=True)
        return await proxy_page(client, target_url, request_id)
    except Exception as e:
        logger.error(f"[{request_id}] General handler error: {e}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": str(e)})
