"""
Network helper utilities for YACU.

The create call only accepts a single network atomically, so a recreated
container is created on one network and then manually connected to the
rest of its previous networks.
"""

import logging
from typing import Any, Dict, List, Optional

from utils.async_docker import async_docker_call
from utils.image_id import SHORT_ID_LENGTH, short_id

logger = logging.getLogger(__name__)


def _ipam_config(network_data: Dict[str, Any]) -> Optional[Dict[str, str]]:
    """IPAM configuration, only if user-configured."""
    ipam_raw = network_data.get("IPAMConfig")
    if not ipam_raw:
        return None

    ipam = {}
    if ipam_raw.get("IPv4Address"):
        ipam["IPv4Address"] = ipam_raw["IPv4Address"]
    if ipam_raw.get("IPv6Address"):
        ipam["IPv6Address"] = ipam_raw["IPv6Address"]
    return ipam or None


def _preserved_aliases(network_data: Dict[str, Any], old_container_id: Optional[str]) -> List[str]:
    # Docker adds the old short container ID as an alias; it must not follow the new container
    aliases = network_data.get("Aliases") or []
    if not old_container_id:
        return list(aliases)
    old_short_id = short_id(old_container_id)
    return [a for a in aliases if a != old_short_id]


def select_primary_network(networks: Dict[str, Any]) -> Optional[str]:
    """
    Pick the network a recreated container is created on.

    Lexicographically first network name, so the choice is deterministic.
    """
    if not networks:
        return None
    return sorted(networks)[0]


def endpoint_config(network_data: Dict[str, Any], old_container_id: Optional[str] = None) -> Dict[str, Any]:
    """Endpoint settings for NetworkingConfig.EndpointsConfig at create time."""
    config = {}
    ipam = _ipam_config(network_data)
    if ipam:
        config["IPAMConfig"] = ipam

    aliases = _preserved_aliases(network_data, old_container_id)
    if aliases:
        config["Aliases"] = aliases

    if network_data.get("Links"):
        config["Links"] = network_data["Links"]
    return config


def networking_config(
    network_name: Optional[str],
    network_data: Dict[str, Any],
    old_container_id: Optional[str] = None,
) -> Dict[str, Any]:
    """NetworkingConfig for the create call, attached to a single network."""
    if not network_name:
        return {}
    return {"EndpointsConfig": {network_name: endpoint_config(network_data, old_container_id)}}


def connect_kwargs(network_data: Dict[str, Any], old_container_id: Optional[str] = None) -> Dict[str, Any]:
    """Keyword arguments for APIClient.connect_container_to_network."""
    kwargs = {}
    ipam = _ipam_config(network_data) or {}
    if "IPv4Address" in ipam:
        kwargs["ipv4_address"] = ipam["IPv4Address"]
    if "IPv6Address" in ipam:
        kwargs["ipv6_address"] = ipam["IPv6Address"]

    aliases = _preserved_aliases(network_data, old_container_id)
    if aliases:
        kwargs["aliases"] = aliases

    if network_data.get("Links"):
        kwargs["links"] = network_data["Links"]
    return kwargs


async def connect_remaining_networks(
    client: Any,
    container_id: str,
    networks: Dict[str, Any],
    skip: Optional[str],
    old_container_id: Optional[str] = None,
) -> List[str]:
    """
    Connect a freshly created container to every previous network except skip.

    A failed connection does not abort the update; it is returned as a warning.

    Args:
        client: Docker client instance
        container_id: ID of the new container
        networks: NetworkSettings.Networks of the old container
        skip: Network the container was created on
        old_container_id: ID of the replaced container, whose short-ID alias is dropped

    Returns:
        Warning strings, one per failed connection
    """
    warnings = []
    for network_name in sorted(networks):
        if network_name == skip:
            continue

        network_data = networks[network_name] or {}
        kwargs = connect_kwargs(network_data, old_container_id)
        logger.debug(f"Connecting container {container_id[:SHORT_ID_LENGTH]} to network {network_name}")
        try:
            await async_docker_call(
                client.api.connect_container_to_network,
                container_id,
                network_name,
                **kwargs,
            )
        except Exception as e:
            logger.warning(f"Connecting container {container_id[:SHORT_ID_LENGTH]} to network {network_name} failed: {e}")
            warnings.append(f"connecting to network {network_name} failed: {e}")

    return warnings
