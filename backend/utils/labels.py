"""
Container label names and label value parsing.

Labels let a single container override global scanner/updater settings:
    yacu.enable=true          scan even when scan_all is off
    yacu.image_age=14         minimum image age (days) for this container
    yacu.stop_timeout=60      seconds to wait on stop before SIGKILL
"""

LABEL_ENABLE = "yacu.enable"
LABEL_IMAGE_AGE = "yacu.image_age"
LABEL_STOP_TIMEOUT = "yacu.stop_timeout"

# Written by docker compose, e.g. "db:service_healthy:true,cache:service_started:false"
LABEL_DEPENDS_ON = "com.docker.compose.depends_on"

# Unraid template web UI link, used as a notification URL when present
LABEL_UNRAID_WEBUI = "net.unraid.docker.webui"

_TRUE_VALUES = {"1", "t", "true"}
_FALSE_VALUES = {"0", "f", "false"}


def parse_bool(value: str) -> bool:
    """
    Parse a textual boolean label value.

    Raises:
        ValueError: If value is not a recognized boolean
    """
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ValueError(f"invalid boolean value '{value}'")


def label_int(labels: dict, key: str, default: int) -> int:
    """Integer label value, or default when absent or unparsable."""
    value = (labels or {}).get(key)
    if value is None:
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        return default
