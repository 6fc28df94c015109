DEFAULT_TAG = "latest"


def strip_tag(reference: str) -> str:
    """Drop a trailing ``:tag`` and any ``@digest`` from an image reference.

    A colon only starts a tag when no ``/`` follows it, so a registry port
    (``localhost:5000/app``) is left alone.
    """
    reference = reference.strip()
    if "@" in reference:
        reference = reference.split("@", 1)[0]
    head, sep, tail = reference.rpartition(":")
    if sep and "/" not in tail:
        return head
    return reference


def normalize_image(reference: str, tag: str | None = None) -> str:
    """Return ``<reference-without-tag>:<tag>``, ``tag`` defaulting to ``latest``."""
    tag = (tag or DEFAULT_TAG).strip() or DEFAULT_TAG
    return f"{strip_tag(reference)}:{tag}"


def registry_host(reference: str) -> str | None:
    """Registry host named by the first path component, if any.

    ``ghcr.io/org/app`` -> ``ghcr.io``; ``library/nginx`` -> None.
    """
    first, sep, _ = strip_tag(reference).partition("/")
    if not sep:
        return None
    if "." in first or ":" in first or first == "localhost":
        return first
    return None
