"""Network tool: HTTP requests and downloads behind a domain policy and size cap."""

from __future__ import annotations

import asyncio
import fnmatch
import ipaddress
import json
import logging
import time
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import httpx

from ..errors import ErrorKind, ToolError
from ..models.types import Action, ValidationReport
from .base import MethodSchema, Param, Tool
from .filesystem import FilesystemTool

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESPONSE = 10 * 1024 * 1024
DEFAULT_TIMEOUT_MS = 30_000
CHECK_TIMEOUT_MS = 10_000
MAX_REDIRECTS = 5

_URL = Param("url", "url")
_OPTS = Param("options", "options", required=False)


def _domain_matches(host: str, pattern: str) -> bool:
    """Exact, subdomain, or wildcard match of a hostname against a domain pattern."""
    pattern = pattern.lower().strip()
    if not pattern:
        return False
    if "*" in pattern:
        return fnmatch.fnmatch(host, pattern)
    return host == pattern or host.endswith("." + pattern)


def is_private_host(host: str) -> bool:
    if host in ("localhost", "localhost.localdomain") or host.endswith(".localhost"):
        return True
    try:
        ip = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return ip.is_private or ip.is_loopback or ip.is_link_local


class NetworkTool(Tool):
    """httpRequest / downloadFile / checkUrl over httpx."""

    name = "network"
    methods = (
        MethodSchema("httpRequest", "http_request", (_URL, _OPTS)),
        MethodSchema(
            "downloadFile", "download_file", (_URL, Param("destination", "path"), _OPTS)
        ),
        MethodSchema("checkUrl", "check_url", (_URL,)),
    )

    def __init__(
        self,
        allowed_domains: list[str] | None = None,
        blocked_domains: list[str] | None = None,
        max_response_size: int = DEFAULT_MAX_RESPONSE,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        filesystem: FilesystemTool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.allowed_domains = list(allowed_domains or [])
        self.blocked_domains = list(blocked_domains or [])
        self.max_response_size = max_response_size
        self.timeout_ms = timeout_ms
        self.filesystem = filesystem or FilesystemTool()
        self._transport = transport

    # --- Policy ---

    def check_policy(self, url: str) -> list[str]:
        """Raise for a disallowed URL; return non-fatal warnings."""
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise ToolError(
                f"Unsupported protocol: {parsed.scheme or '(none)'}; only http/https allowed",
                ErrorKind.BLOCKED,
                {"url": url},
            )
        host = (parsed.hostname or "").lower()
        if not host:
            raise ToolError(f"Invalid URL: {url}", ErrorKind.INVALID_INPUT)

        if any(_domain_matches(host, d) for d in self.blocked_domains):
            raise ToolError(f"Domain is blocked: {host}", ErrorKind.BLOCKED, {"url": url})
        if self.allowed_domains and not any(
            _domain_matches(host, d) for d in self.allowed_domains
        ):
            raise ToolError(
                f"Domain is not in the allowed list: {host}",
                ErrorKind.ACCESS_DENIED,
                {"url": url},
            )

        warnings: list[str] = []
        if is_private_host(host):
            warnings.append(f"Target is a private or local address: {host}")
        if ".." in parsed.path:
            warnings.append(f"URL path contains '..' traversal: {parsed.path}")
        return warnings

    def validate_action(self, action: Action, method: MethodSchema) -> ValidationReport:
        try:
            warnings = self.check_policy(action.params[0])
        except ToolError as e:
            return ValidationReport(valid=False, errors=[e.message], kind=e.kind)
        if method.name == "downloadFile":
            fs_report = self.filesystem.validate_action(
                Action(type="downloadFile", tool="filesystem", method="writeFile",
                       params=[action.params[1], ""]),
                self.filesystem.schema().methods["writeFile"],
            )
            if not fs_report.valid:
                return fs_report
            warnings += fs_report.warnings
        return ValidationReport(valid=True, warnings=warnings)

    # --- Plumbing ---

    def _client(
        self, timeout_ms: int | None = None, warnings: list[str] | None = None
    ) -> httpx.AsyncClient:
        """Client that re-runs the URL policy on every hop, redirects included."""

        async def _check_hop(request: httpx.Request) -> None:
            for warning in self.check_policy(str(request.url)):
                if warnings is not None and warning not in warnings:
                    warnings.append(warning)

        return httpx.AsyncClient(
            timeout=(timeout_ms or self.timeout_ms) / 1000,
            follow_redirects=True,
            max_redirects=MAX_REDIRECTS,
            event_hooks={"request": [_check_hop]},
            transport=self._transport,
        )

    @staticmethod
    def _wrap_transport_error(url: str, e: httpx.HTTPError) -> ToolError:
        if isinstance(e, httpx.TimeoutException):
            return ToolError(f"Request timeout: {url}", ErrorKind.TIMEOUT)
        return ToolError(f"Request failed for {url}: {e}", ErrorKind.NETWORK)

    def _check_declared_size(self, response: httpx.Response) -> None:
        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_response_size:
            raise ToolError(
                f"Response too large: {declared} bytes (max: {self.max_response_size})",
                ErrorKind.TOO_LARGE,
            )

    # --- Methods ---

    async def http_request(
        self,
        url: str,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: Any = None,
        params: dict[str, Any] | None = None,
        timeout: int | None = None,
    ) -> dict[str, Any]:
        warnings = self.check_policy(url)
        started = time.monotonic()
        request_kwargs: dict[str, Any] = {"headers": headers, "params": params}
        if isinstance(body, dict | list):
            request_kwargs["json"] = body
        elif body is not None:
            request_kwargs["content"] = body

        try:
            async with self._client(timeout, warnings) as client:
                async with client.stream(method.upper(), url, **request_kwargs) as response:
                    self._check_declared_size(response)
                    buf = bytearray()
                    async for chunk in response.aiter_bytes():
                        buf.extend(chunk)
                        if len(buf) > self.max_response_size:
                            raise ToolError(
                                f"Response exceeded {self.max_response_size} bytes",
                                ErrorKind.TOO_LARGE,
                            )
        except httpx.HTTPError as e:
            raise self._wrap_transport_error(url, e) from e

        text = buf.decode(response.encoding or "utf-8", errors="replace")
        data: Any = text
        if "json" in response.headers.get("content-type", ""):
            try:
                data = json.loads(bytes(buf))
            except ValueError:
                data = text

        result: dict[str, Any] = {
            "url": str(response.url),
            "status": response.status_code,
            "ok": response.is_success,
            "headers": dict(response.headers),
            "data": data,
            "size": len(buf),
            "duration": round(time.monotonic() - started, 4),
        }
        if warnings:
            result["warnings"] = warnings
        return result

    async def download_file(
        self,
        url: str,
        destination: str,
        headers: dict[str, str] | None = None,
        timeout: int | None = None,
        overwrite: bool = True,
    ) -> dict[str, Any]:
        self.check_policy(url)
        target = self.filesystem.check_path(destination)
        if target.exists() and not overwrite:
            raise ToolError(f"File already exists: {destination}", ErrorKind.INVALID_INPUT)
        limit = min(self.max_response_size, self.filesystem.max_file_size)
        partial = target.with_name(target.name + ".part")
        written = 0

        try:
            async with self._client(timeout) as client:
                async with client.stream("GET", url, headers=headers) as response:
                    if not response.is_success:
                        raise ToolError(
                            f"Download failed: HTTP {response.status_code}",
                            ErrorKind.NOT_FOUND if response.status_code == 404
                            else ErrorKind.NETWORK,
                        )
                    self._check_declared_size(response)
                    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
                    f = await asyncio.to_thread(open, partial, "wb")
                    try:
                        async for chunk in response.aiter_bytes():
                            written += len(chunk)
                            if written > limit:
                                raise ToolError(
                                    f"Download exceeded {limit} bytes",
                                    ErrorKind.TOO_LARGE,
                                )
                            await asyncio.to_thread(f.write, chunk)
                    finally:
                        await asyncio.to_thread(f.close)
        except httpx.HTTPError as e:
            await asyncio.to_thread(partial.unlink, missing_ok=True)
            raise self._wrap_transport_error(url, e) from e
        except ToolError:
            await asyncio.to_thread(partial.unlink, missing_ok=True)
            raise

        await asyncio.to_thread(Path(partial).replace, target)
        return {"url": url, "path": str(target), "size": written}

    async def check_url(self, url: str) -> dict[str, Any]:
        warnings = self.check_policy(url)
        started = time.monotonic()
        try:
            async with self._client(CHECK_TIMEOUT_MS, warnings) as client:
                response = await client.head(url)
        except httpx.HTTPError as e:
            return {
                "url": url,
                "accessible": False,
                "error": str(e) or type(e).__name__,
                "warnings": warnings,
            }
        return {
            "url": url,
            "accessible": 200 <= response.status_code < 400,
            "status": response.status_code,
            "contentType": response.headers.get("content-type"),
            "contentLength": response.headers.get("content-length"),
            "responseTime": round(time.monotonic() - started, 4),
            "warnings": warnings,
        }
