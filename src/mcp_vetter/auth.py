from __future__ import annotations

import asyncio
import base64
import hashlib
import re
import secrets
import socket
import webbrowser
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol
from urllib.parse import urlencode, urljoin, urlparse

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from . import __version__

CALLBACK_PATH = "/callback"
DEFAULT_OAUTH_PORT = 9876
DEFAULT_OAUTH_TIMEOUT = 120.0


class CredentialProvider(Protocol):
    async def authorization_headers(self) -> Dict[str, str]: ...

    async def begin_authorization(self, server_url: str, www_authenticate: Optional[str]) -> None: ...

    async def wait_for_authorization_code(self) -> str: ...

    async def finish_auth(self, server_url: str, code: str) -> None: ...


class OAuthFlowError(RuntimeError):
    pass


async def build_auth_headers(
    auth_type: Optional[str] = None,
    auth_token: Optional[str] = None,
    oauth_token_url: Optional[str] = None,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None,
    scope: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, str]:
    """Static headers for --auth-type. Client credentials are exchanged for a token up front."""

    if not auth_type:
        return {}
    if auth_type == "bearer":
        if not auth_token:
            raise ValueError("--auth-token required for auth_type=bearer")
        return {"Authorization": f"Bearer {auth_token}"}
    if auth_type == "oauth2-client-credentials":
        if not (oauth_token_url and client_id and client_secret):
            raise ValueError("--token-url, --client-id, --client-secret required for oauth2-client-credentials")
        data = {
            "grant_type": "client_credentials",
            "client_id": client_id,
            "client_secret": client_secret,
        }
        if scope:
            data["scope"] = scope
        owns_client = client is None
        http = client or httpx.AsyncClient(timeout=10.0)
        try:
            resp = await http.post(oauth_token_url, data=data, headers={"Accept": "application/json"})
            resp.raise_for_status()
            tok = resp.json().get("access_token")
        finally:
            if owns_client:
                await http.aclose()
        if not tok:
            raise RuntimeError("No access_token in OAuth2 response")
        return {"Authorization": f"Bearer {tok}"}
    raise ValueError(f"Unsupported auth_type: {auth_type}")


def parse_resource_metadata_url(www_authenticate: Optional[str]) -> Optional[str]:
    """Pull the RFC 9728 ``resource_metadata`` parameter out of a challenge header."""

    if not www_authenticate:
        return None
    match = re.search(r'resource_metadata="?([^",\s]+)"?', www_authenticate)
    return match.group(1) if match else None


def pkce_pair() -> tuple[str, str]:
    verifier = secrets.token_urlsafe(64)[:96]
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def _html_page(title: str, color: str, message: Optional[str] = None) -> str:
    detail = f"<p>{message}</p>" if message else ""
    return (
        "<!DOCTYPE html><html><body style=\"font-family: system-ui; padding: 40px; text-align: center;\">"
        f"<h1 style=\"color: {color};\">{title}</h1>{detail}<p>You can close this window.</p></body></html>"
    )


@dataclass
class AuthServerMetadata:
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: Optional[str] = None


class OAuthProvider:
    """Authorization-code + PKCE flow with a loopback redirect receiver.

    The transport calls ``begin_authorization`` when the server answers 401:
    metadata is discovered, a client is registered if the server allows it and
    the browser is sent to the authorization URL. ``wait_for_authorization_code``
    then serves ``/callback`` on ``127.0.0.1:<port>`` until the redirect arrives
    or ``timeout`` seconds pass; ``finish_auth`` trades the code for tokens.
    """

    def __init__(
        self,
        port: int = DEFAULT_OAUTH_PORT,
        timeout: float = DEFAULT_OAUTH_TIMEOUT,
        client_name: str = "mcp-vetter",
        open_browser: Callable[[str], Any] = webbrowser.open,
        notify: Callable[[str], None] = print,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.port = port
        self.timeout = timeout
        self.client_name = client_name
        self._open_browser = open_browser
        self._notify = notify
        self._http = http_client
        self._metadata: Optional[AuthServerMetadata] = None
        self._client_id: Optional[str] = None
        self._client_secret: Optional[str] = None
        self._code_verifier: Optional[str] = None
        self._expected_state: Optional[str] = None
        self._access_token: Optional[str] = None

    @property
    def redirect_url(self) -> str:
        return f"http://127.0.0.1:{self.port}{CALLBACK_PATH}"

    @property
    def client_metadata(self) -> Dict[str, Any]:
        return {
            "client_name": self.client_name,
            "client_uri": "https://pypi.org/project/mcp-vetter/",
            "software_version": __version__,
            "redirect_uris": [self.redirect_url],
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "token_endpoint_auth_method": "none",
        }

    async def authorization_headers(self) -> Dict[str, str]:
        if self._access_token:
            return {"Authorization": f"Bearer {self._access_token}"}
        return {}

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=15.0, follow_redirects=True)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def _get_json(self, url: str) -> Optional[Dict[str, Any]]:
        try:
            resp = await self._client().get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError:
            return None
        if resp.status_code != 200:
            return None
        try:
            data = resp.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    async def discover(self, server_url: str, www_authenticate: Optional[str]) -> AuthServerMetadata:
        parsed = urlparse(server_url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        issuer = origin

        resource_meta_url = parse_resource_metadata_url(www_authenticate) or urljoin(
            origin, "/.well-known/oauth-protected-resource"
        )
        resource_meta = await self._get_json(resource_meta_url)
        if resource_meta and resource_meta.get("authorization_servers"):
            issuer = str(resource_meta["authorization_servers"][0]).rstrip("/")

        for well_known in ("/.well-known/oauth-authorization-server", "/.well-known/openid-configuration"):
            meta = await self._get_json(urljoin(issuer + "/", well_known.lstrip("/")))
            if meta and meta.get("authorization_endpoint") and meta.get("token_endpoint"):
                return AuthServerMetadata(
                    authorization_endpoint=meta["authorization_endpoint"],
                    token_endpoint=meta["token_endpoint"],
                    registration_endpoint=meta.get("registration_endpoint"),
                )
        return AuthServerMetadata(
            authorization_endpoint=urljoin(issuer + "/", "authorize"),
            token_endpoint=urljoin(issuer + "/", "token"),
            registration_endpoint=urljoin(issuer + "/", "register"),
        )

    async def register_client(self, metadata: AuthServerMetadata) -> None:
        if self._client_id or not metadata.registration_endpoint:
            return
        resp = await self._client().post(metadata.registration_endpoint, json=self.client_metadata)
        if resp.status_code >= 400:
            raise OAuthFlowError(f"Dynamic client registration failed with HTTP {resp.status_code}: {resp.text[:200]}")
        info = resp.json()
        self._client_id = info.get("client_id")
        self._client_secret = info.get("client_secret")
        if not self._client_id:
            raise OAuthFlowError("Dynamic client registration returned no client_id")

    def authorization_url(self, metadata: AuthServerMetadata, server_url: str) -> str:
        self._code_verifier, challenge = pkce_pair()
        self._expected_state = secrets.token_hex(16)
        params = {
            "response_type": "code",
            "client_id": self._client_id or self.client_name,
            "redirect_uri": self.redirect_url,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            "state": self._expected_state,
            "resource": server_url,
        }
        sep = "&" if "?" in metadata.authorization_endpoint else "?"
        return f"{metadata.authorization_endpoint}{sep}{urlencode(params)}"

    async def begin_authorization(self, server_url: str, www_authenticate: Optional[str]) -> None:
        self._access_token = None
        self._metadata = await self.discover(server_url, www_authenticate)
        await self.register_client(self._metadata)
        url = self.authorization_url(self._metadata, server_url)
        self._notify("\nOpening browser for authorization...")
        self._notify(f"URL: {url}\n")
        if not self._open_browser(url):
            self._notify("Warning: Could not automatically open browser. Please open the URL manually in your browser.")

    def _bind_callback_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind(("127.0.0.1", self.port))
        except OSError as exc:
            sock.close()
            raise OAuthFlowError(
                f"Port {self.port} is already in use. Try a different port with --oauth-port"
            ) from exc
        return sock

    def callback_app(self, result: "asyncio.Future[str]") -> FastAPI:
        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

        @app.get(CALLBACK_PATH)
        async def callback(request: Request) -> HTMLResponse:
            code = request.query_params.get("code")
            state = request.query_params.get("state")
            error = request.query_params.get("error")
            error_description = request.query_params.get("error_description")
            if result.done():
                return HTMLResponse(_html_page("Authorization Already Completed", "#16a34a"))
            if error:
                result.set_exception(OAuthFlowError(error_description or error))
                return HTMLResponse(_html_page("Authorization Failed", "#dc2626", error_description or error), 400)
            if not code:
                result.set_exception(OAuthFlowError("Missing authorization code"))
                return HTMLResponse(_html_page("Missing Authorization Code", "#dc2626"), 400)
            if self._expected_state and state != self._expected_state:
                result.set_exception(OAuthFlowError("Invalid OAuth state"))
                return HTMLResponse(_html_page("Invalid Authorization State", "#dc2626"), 400)
            self._expected_state = None
            result.set_result(code)
            return HTMLResponse(_html_page("Authorization Successful", "#16a34a", "Return to the terminal."))

        return app

    async def wait_for_authorization_code(self) -> str:
        result: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        sock = self._bind_callback_socket()
        config = uvicorn.Config(self.callback_app(result), log_level="warning", lifespan="off")
        server = uvicorn.Server(config)
        serving = asyncio.create_task(server.serve(sockets=[sock]))
        self._notify(f"Waiting for authorization callback on {self.redirect_url}")
        try:
            return await asyncio.wait_for(result, self.timeout)
        except TimeoutError as exc:
            raise OAuthFlowError(f"Authorization timed out after {int(self.timeout)} seconds") from exc
        finally:
            server.should_exit = True
            await serving
            sock.close()

    async def finish_auth(self, server_url: str, code: str) -> None:
        if self._metadata is None or self._code_verifier is None:
            raise OAuthFlowError("finish_auth called before begin_authorization")
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_url,
            "client_id": self._client_id or self.client_name,
            "code_verifier": self._code_verifier,
            "resource": server_url,
        }
        if self._client_secret:
            data["client_secret"] = self._client_secret
        resp = await self._client().post(self._metadata.token_endpoint, data=data, headers={"Accept": "application/json"})
        if resp.status_code >= 400:
            raise OAuthFlowError(f"Token exchange failed with HTTP {resp.status_code}: {resp.text[:200]}")
        tokens = resp.json()
        token = tokens.get("access_token")
        if not token:
            raise OAuthFlowError("No access_token in token response")
        self._access_token = token
        self._code_verifier = None
