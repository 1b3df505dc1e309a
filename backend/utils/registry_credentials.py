"""
Registry Credentials Utility

Centralized credential lookup for Docker registries.
Used by both the freshness cache (registry API) and the update executor
(Docker pulls).
"""

import logging
from typing import Dict, Iterable, Optional

logger = logging.getLogger(__name__)


def find_registry(registries: Iterable, domain: str):
    """Return the configured registry entry for a domain, or None."""
    domain = (domain or "").lower()
    for registry in registries or []:
        if (registry.domain or "").lower() == domain:
            return registry
    return None


def get_registry_credentials(registries: Iterable, domain: str) -> Optional[Dict[str, str]]:
    """
    Get credentials for a registry domain.

    Args:
        registries: Configured registry entries (config.settings.RegistryEntry)
        domain: Registry domain of an image reference (e.g., "docker.io", "ghcr.io")

    Returns:
        Dict with {username, password} if credentials configured, None otherwise

    Examples:
        nginx:1.25 -> docker.io -> lookup credentials for "docker.io"
        ghcr.io/user/app:latest -> ghcr.io -> lookup credentials for "ghcr.io"
    """
    registry = find_registry(registries, domain)
    if registry is None or not registry.username:
        return None

    logger.debug(f"Using credentials for registry '{domain}'")
    return {
        "username": registry.username,
        "password": registry.password or "",
    }


def is_insecure_registry(registries: Iterable, domain: str) -> bool:
    registry = find_registry(registries, domain)
    return bool(registry and registry.insecure)
