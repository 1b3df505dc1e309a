"""
Registry Adapter for remote image lookups

Fetches the remote creation time and content digest of a tagged image by
querying the registry's v2 API (manifest + config blob).
Supports Docker Hub, GHCR, and other OCI-compliant registries.
"""

import aiohttp
import asyncio
import base64
import hashlib
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from utils.image_reference import DEFAULT_DOMAIN, ImageReference
from utils.time_utils import parse_docker_timestamp

logger = logging.getLogger(__name__)

MANIFEST_LIST_TYPES = (
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.index.v1+json",
)

MANIFEST_ACCEPT = (
    "application/vnd.docker.distribution.manifest.v2+json,"
    "application/vnd.docker.distribution.manifest.list.v2+json,"
    "application/vnd.oci.image.manifest.v1+json,"
    "application/vnd.oci.image.index.v1+json"
)

PLATFORM_MANIFEST_ACCEPT = (
    "application/vnd.docker.distribution.manifest.v2+json,"
    "application/vnd.oci.image.manifest.v1+json"
)


class RegistryError(Exception):
    """Base class for registry lookup failures"""


class RegistryTransportError(RegistryError):
    """Registry unreachable, timed out, or returned an unusable response"""


class RegistryAuthError(RegistryError):
    """Registry rejected the request (401/403)"""


class RegistryNotFoundError(RegistryError):
    """Repository or tag does not exist in the registry"""


@dataclass(frozen=True)
class RemoteImageData:
    """Remote state of a tagged image"""
    created: datetime
    digest: str


class RegistryAdapter:
    """
    Adapter for querying Docker registries for remote image state.

    Supports:
    - Docker Hub (docker.io)
    - GitHub Container Registry (ghcr.io)
    - Private OCI-compliant registries (optionally without TLS verification)
    """

    MAX_AUTH_CACHE_SIZE = 500

    def __init__(self, platform: str = "linux/amd64", timeout: int = 30):
        self.platform = platform
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._auth_cache: Dict[str, Dict] = {}  # Cache auth tokens per registry

    def _cleanup_auth_cache(self):
        """Remove expired auth tokens"""
        now = datetime.now(timezone.utc)
        keys_to_remove = [
            key for key, value in self._auth_cache.items()
            if value["expires_at"] < now
        ]
        for key in keys_to_remove:
            del self._auth_cache[key]

    def _encode_basic_auth(self, auth: Dict) -> str:
        """
        Encode username:password as Basic authentication header.

        Returns:
            Basic auth header string (e.g., "Basic dXNlcjpwYXNz")
        """
        credentials = f"{auth['username']}:{auth['password']}"
        encoded = base64.b64encode(credentials.encode()).decode()
        return f"Basic {encoded}"

    async def fetch_remote_image_data(
        self,
        reference: ImageReference,
        auth: Optional[Dict] = None,
        insecure: bool = False,
        platform: Optional[str] = None
    ) -> RemoteImageData:
        """
        Fetch remote creation time and digest of a tagged image.

        Args:
            reference: Tagged image reference
            auth: Optional credentials dict with keys: username, password
            insecure: Skip TLS certificate verification
            platform: os/architecture[/variant] used to resolve manifest lists
                (default: the adapter's platform)

        Returns:
            RemoteImageData(created, digest)

        Raises:
            RegistryAuthError: Registry rejected the credentials
            RegistryNotFoundError: Repository or tag not found
            RegistryTransportError: Network failure or malformed response
        """
        registry_url = self._normalize_registry_url(reference.domain)
        repository = reference.path
        ssl = False if insecure else None
        platform = platform or self.platform

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                token = await self._get_auth_token(session, reference, registry_url, auth, ssl)

                manifest_url = f"{registry_url}/v2/{repository}/manifests/{reference.tag}"
                digest, manifest = await self._fetch_manifest(session, manifest_url, token, ssl)

                config = await self._fetch_config_blob(
                    session, registry_url, repository, manifest, token, ssl, platform
                )
        except RegistryError:
            raise
        except asyncio.TimeoutError as e:
            raise RegistryTransportError(f"timeout querying registry for {reference}") from e
        except aiohttp.ClientError as e:
            raise RegistryTransportError(f"registry request for {reference} failed: {e}") from e
        except ValueError as e:
            raise RegistryTransportError(f"invalid registry response for {reference}: {e}") from e

        created_raw = config.get("created")
        if not created_raw:
            raise RegistryTransportError(f"image config of {reference} has no creation time")
        try:
            created = parse_docker_timestamp(created_raw)
        except ValueError as e:
            raise RegistryTransportError(f"invalid creation time '{created_raw}' for {reference}") from e

        logger.debug(f"Resolved {reference.familiar_tagged} -> {digest[:19]}... created {created.isoformat()}")
        return RemoteImageData(created=created, digest=digest)

    def _normalize_registry_url(self, domain: str) -> str:
        """
        Normalize registry domain to full HTTPS URL.

        Examples:
            docker.io -> https://registry-1.docker.io
            ghcr.io   -> https://ghcr.io
        """
        if domain == DEFAULT_DOMAIN:
            return "https://registry-1.docker.io"
        if not domain.startswith("http"):
            return f"https://{domain}"
        return domain

    def _parse_www_authenticate(self, header: str) -> Optional[Dict[str, str]]:
        """
        Parse WWW-Authenticate header to extract auth parameters.

        Example:
            Input: 'Bearer realm="https://ghcr.io/token",service="ghcr.io",scope="repository:user/app:pull"'
            Output: {"realm": "https://ghcr.io/token", "service": "ghcr.io", "scope": "repository:user/app:pull"}
        """
        if not header or not header.startswith("Bearer "):
            return None

        params = dict(re.findall(r'(\w+)="([^"]+)"', header[len("Bearer "):]))
        if "realm" not in params:
            logger.warning("WWW-Authenticate missing 'realm' parameter")
            return None
        return params

    async def _discover_auth_endpoint(
        self,
        session: aiohttp.ClientSession,
        manifest_url: str,
        ssl: Any
    ) -> Optional[Dict[str, str]]:
        """
        Discover authentication endpoint with an anonymous HEAD on the manifest.

        Returns:
            Dict with keys realm, service, scope; None if no auth is required
        """
        async with session.head(manifest_url, headers={"Accept": MANIFEST_ACCEPT}, ssl=ssl) as response:
            if response.status == 401:
                params = self._parse_www_authenticate(response.headers.get("WWW-Authenticate"))
                if params is None:
                    logger.warning(f"Registry returned 401 without usable WWW-Authenticate for {manifest_url}")
                return params
            return None

    async def _fetch_token_from_endpoint(
        self,
        session: aiohttp.ClientSession,
        realm: str,
        service: Optional[str],
        scope: Optional[str],
        auth: Optional[Dict],
        ssl: Any
    ) -> str:
        """
        Fetch Bearer token from a discovered auth endpoint.

        Returns:
            Bearer token string (e.g., "Bearer abc123...")
        """
        params = {}
        if service:
            params["service"] = service
        if scope:
            params["scope"] = scope

        headers = {}
        if auth:
            headers["Authorization"] = self._encode_basic_auth(auth)

        async with session.get(realm, params=params, headers=headers, ssl=ssl) as response:
            if response.status in (401, 403):
                raise RegistryAuthError(f"token request to {realm} rejected with status {response.status}")
            if response.status != 200:
                text = await response.text()
                raise RegistryTransportError(f"token request to {realm} failed with status {response.status}: {text[:200]}")

            data = await response.json(content_type=None)
            token = data.get("token") or data.get("access_token")
            if not token:
                raise RegistryTransportError(f"token endpoint {realm} returned no token")
            return f"Bearer {token}"

    async def _get_auth_token(
        self,
        session: aiohttp.ClientSession,
        reference: ImageReference,
        registry_url: str,
        auth: Optional[Dict],
        ssl: Any
    ) -> Optional[str]:
        """
        Get authentication token for a repository.

        1. Cached token for registry+repository
        2. Dynamic discovery via WWW-Authenticate
        3. Basic auth if credentials are configured and no token service exists
        4. None (anonymous access)
        """
        if len(self._auth_cache) >= self.MAX_AUTH_CACHE_SIZE:
            self._cleanup_auth_cache()

        cache_key = f"{reference.domain}:{reference.path}:{auth['username'] if auth else ''}"
        cached = self._auth_cache.get(cache_key)
        if cached:
            if datetime.now(timezone.utc) < cached["expires_at"]:
                return cached["token"]
            del self._auth_cache[cache_key]

        manifest_url = f"{registry_url}/v2/{reference.path}/manifests/{reference.tag}"
        auth_params = await self._discover_auth_endpoint(session, manifest_url, ssl)

        if auth_params:
            scope = auth_params.get("scope") or f"repository:{reference.path}:pull"
            token = await self._fetch_token_from_endpoint(
                session,
                realm=auth_params["realm"],
                service=auth_params.get("service"),
                scope=scope,
                auth=auth,
                ssl=ssl,
            )
            # Registry tokens typically expire in 5 minutes
            self._auth_cache[cache_key] = {
                "token": token,
                "expires_at": datetime.now(timezone.utc) + timedelta(minutes=4)
            }
            return token

        if auth:
            return self._encode_basic_auth(auth)

        return None

    async def _fetch_manifest(
        self,
        session: aiohttp.ClientSession,
        manifest_url: str,
        token: Optional[str],
        ssl: Any,
        accept: str = MANIFEST_ACCEPT
    ) -> Tuple[str, Dict]:
        """
        Fetch image manifest from registry.

        Returns:
            (digest, manifest). For manifest lists the index digest is kept, which
            matches what docker inspect shows in RepoDigests.
        """
        headers = {"Accept": accept}
        if token:
            headers["Authorization"] = token

        async with session.get(manifest_url, headers=headers, ssl=ssl) as response:
            if response.status in (401, 403):
                raise RegistryAuthError(f"authentication failed for {manifest_url}")
            if response.status == 404:
                raise RegistryNotFoundError(f"image not found: {manifest_url}")
            if response.status != 200:
                raise RegistryTransportError(f"registry returned {response.status} for {manifest_url}")

            body = await response.read()
            digest = response.headers.get("Docker-Content-Digest")

        if not digest:
            digest = f"sha256:{hashlib.sha256(body).hexdigest()}"

        try:
            manifest = json.loads(body)
        except ValueError as e:
            raise RegistryTransportError(f"invalid manifest returned by {manifest_url}") from e

        return digest, manifest

    def _select_platform_manifest(self, manifest_list: Dict, platform: str) -> Optional[str]:
        """
        Digest of the platform-specific manifest in a manifest list.

        An exact variant match wins; otherwise a descriptor for the same
        os/architecture whose variant is unset (or not asked for) is used.
        """
        parts = platform.split("/")
        if len(parts) == 1:
            parts = ["linux"] + parts
        os_name, arch = parts[0], parts[1]
        variant = parts[2] if len(parts) > 2 else None

        fallback = None
        for descriptor in manifest_list.get("manifests") or []:
            candidate = descriptor.get("platform") or {}
            if candidate.get("os") != os_name or candidate.get("architecture") != arch:
                continue
            if variant and candidate.get("variant") == variant:
                return descriptor.get("digest")
            if fallback is None and (not variant or not candidate.get("variant")):
                fallback = descriptor.get("digest")
        return fallback

    async def _fetch_config_blob(
        self,
        session: aiohttp.ClientSession,
        registry_url: str,
        repository: str,
        manifest: Dict,
        token: Optional[str],
        ssl: Any,
        platform: str
    ) -> Dict:
        """
        Fetch the image config blob, which carries the creation time.

        Manifest lists don't have a config descriptor at the top level, so the
        platform-specific manifest is fetched first.
        """
        if manifest.get("mediaType") in MANIFEST_LIST_TYPES or "manifests" in manifest:
            platform_digest = self._select_platform_manifest(manifest, platform)
            if not platform_digest:
                raise RegistryNotFoundError(f"no manifest for platform {platform} in {repository}")
            _, manifest = await self._fetch_manifest(
                session,
                f"{registry_url}/v2/{repository}/manifests/{platform_digest}",
                token,
                ssl,
                accept=PLATFORM_MANIFEST_ACCEPT,
            )

        config_digest = (manifest.get("config") or {}).get("digest")
        if not config_digest:
            raise RegistryTransportError(f"manifest of {repository} has no config descriptor")

        headers = {}
        if token:
            headers["Authorization"] = token

        blob_url = f"{registry_url}/v2/{repository}/blobs/{config_digest}"
        async with session.get(blob_url, headers=headers, ssl=ssl) as response:
            if response.status in (401, 403):
                raise RegistryAuthError(f"authentication failed for {blob_url}")
            if response.status == 404:
                raise RegistryNotFoundError(f"config blob not found: {blob_url}")
            if response.status != 200:
                raise RegistryTransportError(f"registry returned {response.status} for {blob_url}")
            # Config blobs are served as application/octet-stream, but contain JSON
            return await response.json(content_type=None)


# Global singleton instance
_registry_adapter = None


def get_registry_adapter() -> RegistryAdapter:
    """Get or create global RegistryAdapter instance"""
    global _registry_adapter
    if _registry_adapter is None:
        _registry_adapter = RegistryAdapter()
    return _registry_adapter
