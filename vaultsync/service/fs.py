from pathlib import Path


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


ATTACHMENTS_DIR = "attachments"


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` and refuse anything resolving outside ``base``."""

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


def attachment_path(fs_root: Path, cipher_id: str, attachment_id: str) -> Path:
    """Location of an attachment blob: ``<root>/attachments/<cipher>/<attachment>``."""
    for part in (cipher_id, attachment_id):
        if not part or "/" in part or "\\" in part or part in (".", ".."):
            raise PathTraversalError("invalid attachment identifier")
    return safe_join(Path(fs_root) / ATTACHMENTS_DIR, f"{cipher_id}/{attachment_id}")
