"""
Template Platform (ShareDo) API client.

This module provides:
- A single-slot access token cache with an expiry safety margin
- Authenticated calls for type, tag and repository lookups
- Document upload and template create/delete

Platform responses are passed through as plain JSON structures; callers read
only the fields they depend on.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Type
from urllib.parse import quote

import httpx

from .configuration import require_platform_settings
from .errors import (
    AuthenticationError,
    PlatformRequestError,
    TemplateCreationError,
    TemplateDeletionError,
    UploadError,
)
from .models import AccessToken, AuthStatus

logger = logging.getLogger(__name__)

TOKEN_MARGIN_SECONDS = 30

TEMPLATE_TYPES_ENDPOINT = "/api/sharedo/reporting/documentadmincharts/document-templates/types"
WORK_TYPES_ENDPOINT = "/api/modeller/sharedoTypes"
PARTICIPANT_TYPES_ENDPOINT = "/api/modeller/participantTypes"
TAGS_ENDPOINT = "/api/admin/docGen/templates/_tags"
TEMPLATES_ADMIN_ENDPOINT = "/api/admin/docGen/templates"
TEMPLATE_DELETE_ENDPOINT = "/api/checkanddelete/document-template"
REPOSITORY_ENDPOINT = "/api/repository"
TEMPLATE_REPOSITORY_ENDPOINT = "/api/repository/templates"


# =============================================================================
# TOKEN MANAGEMENT
# =============================================================================

class TokenCache:
    """
    Holds at most one access token.

    A token is reused while the current time is before its expiry minus the
    safety margin. Concurrent refreshes are not serialized; the last stored
    token wins.
    """

    def __init__(self, margin_seconds: float = TOKEN_MARGIN_SECONDS, clock: Callable[[], float] = time.time):
        self.margin_seconds = margin_seconds
        self._clock = clock
        self._token: Optional[AccessToken] = None

    def now(self) -> float:
        return self._clock()

    def get(self) -> Optional[AccessToken]:
        """Return the cached token marked as cached, or None if absent or expiring."""
        token = self._token
        if token is None or self.now() >= token.expires_at - self.margin_seconds:
            return None
        return token.model_copy(update={"cached": True})

    def store(self, access_token: str, expires_in: int, token_type: str = "Bearer") -> AccessToken:
        token = AccessToken(
            access_token=access_token,
            expires_in=expires_in,
            token_type=token_type,
            expires_at=self.now() + expires_in,
            cached=False,
        )
        self._token = token
        return token

    def clear(self) -> None:
        self._token = None


# =============================================================================
# CLIENT
# =============================================================================

def _items(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, dict):
        payload = payload.get("items", [])
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


def _json_or_empty(response: httpx.Response) -> Any:
    return response.json() if response.content else {}


def _find_by_name(items: List[Dict[str, Any]], name: str) -> Optional[Dict[str, Any]]:
    wanted = name.lower()
    for item in items:
        candidate = item.get("name")
        if isinstance(candidate, str) and candidate.lower() == wanted:
            return item
    return None


class PlatformClient:
    """
    Authenticated client for the Template Platform.

    Identity parameters are fixed at construction. The token cache is
    injected so several clients (or tests) can share or isolate it.
    """

    def __init__(
        self,
        hostname: str,
        domain: str,
        username: str,
        app_name: str,
        app_secret: str,
        token_cache: Optional[TokenCache] = None,
        scope: str = "sharedo",
        impersonate_provider: str = "idsrv",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.hostname = hostname
        self.domain = domain
        self.username = username
        self.app_name = app_name
        self.app_secret = app_secret
        self.scope = scope
        self.impersonate_provider = impersonate_provider
        self.timeout = timeout
        self.token_cache = token_cache or TokenCache()
        self._transport = transport

    @classmethod
    def from_settings(cls, platform, token_cache: Optional[TokenCache] = None, transport=None) -> "PlatformClient":
        require_platform_settings(platform)
        return cls(
            hostname=platform.hostname,
            domain=platform.domain,
            username=platform.username,
            app_name=platform.app_name,
            app_secret=platform.app_secret,
            token_cache=token_cache or TokenCache(margin_seconds=platform.get("token_margin_seconds", TOKEN_MARGIN_SECONDS)),
            scope=platform.get("scope", "sharedo"),
            impersonate_provider=platform.get("impersonate_provider", "idsrv"),
            timeout=platform.get("request_timeout", 60),
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return f"https://{self.hostname}.{self.domain}"

    @property
    def token_url(self) -> str:
        return f"https://{self.hostname}-identity.{self.domain}/connect/token"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def get_access_token(self) -> AccessToken:
        """
        Return a usable access token, refreshing the cache when needed.

        Raises:
            AuthenticationError: If the grant is rejected or no token is returned
        """
        cached = self.token_cache.get()
        if cached is not None:
            return cached

        form = {
            "grant_type": "Impersonate.Specified",
            "scope": self.scope,
            "impersonate_user": self.username,
            "impersonate_provider": self.impersonate_provider,
        }
        try:
            async with self._client() as client:
                response = await client.post(
                    self.token_url,
                    data=form,
                    auth=httpx.BasicAuth(self.app_name, self.app_secret),
                )
        except httpx.RequestError as exc:
            raise AuthenticationError(None, str(exc)) from exc

        if not response.is_success:
            logger.error(f"Template Platform authentication failed: {response.status_code}")
            raise AuthenticationError(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthenticationError(response.status_code, "Token response is not JSON") from exc

        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise AuthenticationError(response.status_code, "No access token received from Template Platform")

        token = self.token_cache.store(
            access_token=payload["access_token"],
            expires_in=int(payload.get("expires_in") or 0),
            token_type=payload.get("token_type") or "Bearer",
        )
        logger.info(f"Acquired Template Platform token (expires in {token.expires_in}s)")
        return token

    async def get_auth_status(self) -> AuthStatus:
        token = await self.get_access_token()
        return AuthStatus(**token.model_dump(), authenticated=True)

    async def _request(
        self,
        method: str,
        endpoint: str,
        error_cls: Type[PlatformRequestError] = PlatformRequestError,
        **kwargs: Any,
    ) -> httpx.Response:
        token = await self.get_access_token()
        headers = {"Authorization": f"Bearer {token.access_token}"}
        headers.update(kwargs.pop("headers", {}))

        try:
            async with self._client() as client:
                response = await client.request(method, f"{self.base_url}{endpoint}", headers=headers, **kwargs)
        except httpx.RequestError as exc:
            logger.error(f"{method} {endpoint} failed: {exc}")
            raise error_cls(None, str(exc)) from exc

        if not response.is_success:
            logger.error(f"{method} {endpoint} returned {response.status_code}")
            raise error_cls(response.status_code, response.text)
        return response

    async def _get_json(self, endpoint: str) -> Any:
        response = await self._request("GET", endpoint, headers={"Accept": "application/json"})
        return response.json()

    async def list_template_types(self) -> Any:
        return await self._get_json(TEMPLATE_TYPES_ENDPOINT)

    async def list_work_types(self) -> Any:
        return await self._get_json(WORK_TYPES_ENDPOINT)

    async def list_participant_types(self) -> Any:
        return await self._get_json(PARTICIPANT_TYPES_ENDPOINT)

    async def get_tags(self) -> Any:
        return await self._get_json(TAGS_ENDPOINT)

    async def list_repositories(self) -> Any:
        return await self._get_json(REPOSITORY_ENDPOINT)

    async def list_documents(self, folder: Optional[str] = None) -> Dict[str, Any]:
        """List a template repository folder as {items, repositoryUrl}."""
        endpoint = TEMPLATE_REPOSITORY_ENDPOINT
        if folder:
            endpoint += f"/{quote(folder, safe='')}"
        data = await self._get_json(endpoint)
        if not isinstance(data, dict):
            data = {}
        return {
            "items": data.get("items") or [],
            "repositoryUrl": data.get("repositoryUrl") or "",
        }

    async def resolve_template_type_system_name(self, display_name: str) -> Optional[str]:
        """
        Find a template type's system name by its display name.

        Returns:
            The system name, or None when no type matches (case-insensitive)
        """
        match = _find_by_name(_items(await self.list_template_types()), display_name)
        return match.get("systemName") if match else None

    async def resolve_context_type_system_name(self, work_type_name: str) -> Optional[str]:
        """
        Find a work type's system name by display name, including derived types.

        Top-level work types are searched first, then each work type's
        derivedTypes list (one level deep).

        Returns:
            The system name, or None when nothing matches
        """
        work_types = _items(await self.list_work_types())

        match = _find_by_name(work_types, work_type_name)
        if match:
            return match.get("systemName")

        for work_type in work_types:
            derived = work_type.get("derivedTypes")
            if not isinstance(derived, list):
                continue
            match = _find_by_name([d for d in derived if isinstance(d, dict)], work_type_name)
            if match:
                return match.get("systemName")

        return None

    async def upload_document(self, data: bytes, filename: str, folder: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Upload a document into the template repository.

        Args:
            data: File bytes
            filename: Name to store the file under
            folder: Optional repository folder

        Returns:
            Uploaded-file descriptors (each with pathId and downloadUrl)

        Raises:
            UploadError: On a non-success response
        """
        endpoint = TEMPLATE_REPOSITORY_ENDPOINT
        if folder:
            endpoint += f"/{quote(folder, safe='')}"

        files = [("files", (filename, data, "application/octet-stream"))]
        response = await self._request("POST", endpoint, error_cls=UploadError, files=files)
        logger.info(f"Uploaded {filename} to template repository folder {folder or '/'}")

        payload = response.json()
        if isinstance(payload, list):
            return payload
        return _items(payload)

    async def create_template(self, system_name: str, definition: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a document template.

        Raises:
            TemplateCreationError: With the response status and body; status
                400 means the definition was rejected
        """
        response = await self._request(
            "POST",
            f"{TEMPLATES_ADMIN_ENDPOINT}/{quote(system_name, safe='')}",
            error_cls=TemplateCreationError,
            json=definition,
            headers={"Accept": "application/json"},
        )
        logger.info(f"Created template {system_name}")
        return _json_or_empty(response)

    async def delete_template(self, system_name: str) -> Dict[str, Any]:
        """
        Delete a document template by system name.

        Raises:
            TemplateDeletionError: With the response status and body; status
                404 means the template does not exist
        """
        response = await self._request(
            "DELETE",
            TEMPLATE_DELETE_ENDPOINT,
            error_cls=TemplateDeletionError,
            json={"systemName": system_name},
        )
        logger.info(f"Deleted template {system_name}")
        return _json_or_empty(response)
