"""
Image and Container ID Utilities

Docker IDs come in multiple formats:
- Full: "sha256:abc123def456..." (71 chars)
- Encoded: "abc123def456..." (64 chars, algorithm stripped)
- Short: "abc123def456" (12 chars)

Short IDs are used for display (logs, notifications). Encoded IDs are used
for comparisons, since container inspect and image listings do not agree on
whether the algorithm prefix is present.
"""

SHORT_ID_LENGTH = 12


def id_encoded(docker_id: str) -> str:
    """
    Strip the algorithm prefix from an ID.

    Examples:
        >>> id_encoded("sha256:abc123")
        "abc123"
        >>> id_encoded("abc123")
        "abc123"
    """
    if not docker_id:
        return ""
    _, sep, encoded = docker_id.partition(':')
    return encoded if sep else docker_id


def short_id(docker_id: str) -> str:
    """
    Normalize an image or container ID to the 12-char short format.

    Examples:
        >>> short_id("sha256:abc123def456789...")
        "abc123def456"
        >>> short_id("abc123def456")
        "abc123def456"
    """
    return id_encoded(docker_id)[:SHORT_ID_LENGTH]
