"""Repository path helpers."""

import posixpath


def normalize_path(path: str) -> str:
    """Canonical POSIX form of a repository path (no leading ``./`` or ``/``).

    Example:
        >>> normalize_path("./src/components/../App.tsx")
        'src/App.tsx'
    """
    path = path.replace("\\", "/").strip()
    if not path:
        return ""
    normalized = posixpath.normpath(path).lstrip("/")
    return "" if normalized == "." else normalized
