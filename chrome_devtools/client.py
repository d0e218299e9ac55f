"""
HTTP client for the Chrome debugger metadata endpoints.

Chrome exposes /json/version, /json/list, /json/protocol, /json/new,
/json/activate and /json/close next to the WebSocket debugger. The
browser's WebSocket URL from /json/version is used to open the root
BrowserSession.
"""

import asyncio
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .exceptions import CDPError, CDPTargetNotFoundError
from .sessions import BrowserSession, connect_browser

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChromeVersion:
    """Browser version information retrieved via the debugger API.

    Attributes:
        webSocketDebuggerUrl: URL of the browser target, the root of every
            session, e.g. ws://localhost:9222/devtools/browser/b0b8a4fb-...
    """

    browser: str
    protocol_version: str
    user_agent: str
    webkit_version: str
    webSocketDebuggerUrl: str
    v8_version: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChromeVersion":
        return cls(
            browser=data.get("Browser", ""),
            protocol_version=data.get("Protocol-Version", ""),
            user_agent=data.get("User-Agent", ""),
            webkit_version=data.get("WebKit-Version", ""),
            webSocketDebuggerUrl=data["webSocketDebuggerUrl"],
            v8_version=data.get("V8-Version"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "Browser": self.browser,
            "Protocol-Version": self.protocol_version,
            "User-Agent": self.user_agent,
            "V8-Version": self.v8_version,
            "WebKit-Version": self.webkit_version,
            "webSocketDebuggerUrl": self.webSocketDebuggerUrl,
        }


class Target:
    """
    Represents a debuggable Chrome target (page, worker, service worker, iframe).

    Attributes:
        id: Unique target ID
        type: Target type ("page", "iframe", "worker", "service_worker", "browser")
        title: Page title or worker name
        url: Target URL
        webSocketDebuggerUrl: CDP WebSocket URL for this target
        description: Additional metadata (optional)
        devtoolsFrontendUrl: DevTools UI URL (optional)
        faviconUrl: Page favicon URL (optional)
    """

    def __init__(self, target_data: Dict[str, Any]):
        self.id = target_data["id"]
        self.type = target_data["type"]
        self.title = target_data.get("title", "")
        self.url = target_data.get("url", "")
        self.webSocketDebuggerUrl = target_data.get("webSocketDebuggerUrl", "")
        self.description = target_data.get("description", "")
        self.devtoolsFrontendUrl = target_data.get("devtoolsFrontendUrl", "")
        self.faviconUrl = target_data.get("faviconUrl", "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "url": self.url,
            "webSocketDebuggerUrl": self.webSocketDebuggerUrl,
            "description": self.description,
            "devtoolsFrontendUrl": self.devtoolsFrontendUrl,
            "faviconUrl": self.faviconUrl,
        }

    def __repr__(self):
        return f"Target(id={self.id!r}, type={self.type!r}, url={self.url!r})"


class ChromeDPClient:
    """
    Client for the debugger HTTP endpoints of a running Chrome.

    Usage:
        client = ChromeDPClient("http://localhost:9222")
        pages = client.targets(target_type="page")
        browser = await client.web_socket()

    Host override:
        Chrome rejects a Host header that is neither an IP nor "localhost".
        With ``override_host_header=True`` requests carry "Host: localhost"
        and the host/port of every returned WebSocket URL are replaced by
        those of ``remote_debug_url`` (Chrome builds these URLs from the
        Host header).

    Attributes:
        remote_debug_url: Debugger HTTP URL (default: "http://localhost:9222")
        override_host_header: Enable the host override
        timeout: HTTP request timeout in seconds (default: 5s)
    """

    def __init__(
        self,
        remote_debug_url: str = "http://localhost:9222",
        *,
        override_host_header: bool = False,
        timeout: float = 5.0,
    ):
        parsed = urllib.parse.urlsplit(remote_debug_url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValueError(f"Invalid debugger HTTP URL: {remote_debug_url}")

        self.remote_debug_url = remote_debug_url.rstrip("/")
        self.override_host_header = override_host_header
        self.timeout = timeout

    def _request(self, path: str, method: str = "GET") -> bytes:
        endpoint_url = f"{self.remote_debug_url}{path}"
        headers = {"Host": "localhost"} if self.override_host_header else {}
        request = urllib.request.Request(endpoint_url, headers=headers, method=method)
        logger.debug(f"{method} {endpoint_url}")

        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                return response.read()
        except urllib.error.URLError as e:
            raise CDPError(
                f"Failed to connect to Chrome at {endpoint_url}: {e}",
                details={
                    "url": endpoint_url,
                    "recovery": "Ensure Chrome is running with --remote-debugging-port",
                },
            ) from e

    def _request_json(self, path: str, method: str = "GET") -> Any:
        body = self._request(path, method)
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise CDPError(
                f"Invalid JSON response from Chrome endpoint: {e}",
                details={"endpoint": f"{self.remote_debug_url}{path}"},
            ) from e

    def _fix_host(self, ws_url: str) -> str:
        if not self.override_host_header or not ws_url:
            return ws_url
        debugger = urllib.parse.urlsplit(self.remote_debug_url)
        ws = urllib.parse.urlsplit(ws_url)
        return urllib.parse.urlunsplit(ws._replace(netloc=debugger.netloc))

    def _target(self, data: Dict[str, Any]) -> Target:
        target = Target(data)
        target.webSocketDebuggerUrl = self._fix_host(target.webSocketDebuggerUrl)
        return target

    def version(self) -> ChromeVersion:
        """Fetch browser version metadata (GET /json/version)."""
        data = self._request_json("/json/version")
        try:
            version = ChromeVersion.from_dict(data)
        except (KeyError, TypeError, AttributeError) as e:
            raise CDPError(
                f"Unexpected /json/version response: {e}",
                details={"endpoint": f"{self.remote_debug_url}/json/version"},
            ) from e
        if self.override_host_header:
            fixed = self._fix_host(version.webSocketDebuggerUrl)
            version = ChromeVersion(
                browser=version.browser,
                protocol_version=version.protocol_version,
                user_agent=version.user_agent,
                webkit_version=version.webkit_version,
                webSocketDebuggerUrl=fixed,
                v8_version=version.v8_version,
            )
        return version

    def protocol_json(self) -> str:
        """Fetch the protocol definition as a JSON string (GET /json/protocol)."""
        return self._request("/json/protocol").decode("utf-8")

    def targets(
        self,
        target_type: Optional[str] = None,
        url_pattern: Optional[str] = None,
    ) -> List[Target]:
        """
        Fetch targets (GET /json/list) with optional filtering.

        Args:
            target_type: Filter by target type ("page", "iframe", "worker", "service_worker", "browser")
            url_pattern: Case-insensitive substring of the target URL

        Raises:
            CDPError: If HTTP endpoint is unreachable or returns invalid data
        """
        targets = [self._target(data) for data in self._request_json("/json/list")]

        if target_type:
            targets = [t for t in targets if t.type == target_type]

        if url_pattern:
            url_pattern_lower = url_pattern.lower()
            targets = [t for t in targets if url_pattern_lower in t.url.lower()]

        return targets

    def get_target_by_id(self, target_id: str) -> Optional[Target]:
        for target in self.targets():
            if target.id == target_id:
                return target
        return None

    def new_tab(self, url: str = "about:blank") -> Target:
        """Open a new tab (PUT /json/new?url).

        Prefer ``BrowserSession.attach_to_new_target`` over the WebSocket.
        """
        return self._target(self._request_json(f"/json/new?{url}", method="PUT"))

    def activate_tab(self, target_id: str) -> str:
        """Bring the page ``target_id`` to the foreground."""
        return self._request(f"/json/activate/{target_id}").decode("utf-8")

    def close_tab(self, target_id: str) -> str:
        """Close the page ``target_id``."""
        return self._request(f"/json/close/{target_id}").decode("utf-8")

    def close_all_targets(self) -> None:
        for target in self.targets():
            self.close_tab(target.id)

    def first_page(self) -> Target:
        """
        Return the first page target.

        Raises:
            CDPTargetNotFoundError: If no page targets found
        """
        pages = self.targets(target_type="page")
        if not pages:
            raise CDPTargetNotFoundError(
                "No page targets found",
                details={
                    "url": self.remote_debug_url,
                    "recovery": "Navigate to a URL in Chrome or check --remote-debugging-port",
                },
            )
        return pages[0]

    async def web_socket(self, **options: Any) -> BrowserSession:
        """
        Connect to the browser target and return the root BrowserSession.

        Attach to pages through the returned session; child sessions share
        its WebSocket connection. The caller must close the session.

        Args:
            **options: Forwarded to ``connect_browser`` (timeout, max_size,
                event_buffer_size)
        """
        # urllib blocks; keep the event loop free
        version = await asyncio.to_thread(self.version)
        return await connect_browser(version.webSocketDebuggerUrl, **options)
