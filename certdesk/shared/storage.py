import os
import tempfile


def ensure_dir(path: str) -> None:
    """Create directory if missing (mkdir -p equivalent)."""
    os.makedirs(path, exist_ok=True)


def write_atomic(path: str, data, mode: str = "wb") -> None:
    """Write data to a temporary file then atomically rename to target path."""
    dir_path = os.path.dirname(path)
    ensure_dir(dir_path)
    fd, tmp_path = tempfile.mkstemp(dir=dir_path)
    try:
        with os.fdopen(fd, mode) as f:
            f.write(data)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


class LocalBlobStorage:
    """Key-addressed file store rooted at a directory.

    Keys are relative, slash-separated paths such as
    ``certificates/cert_3_12.pdf``; a leading slash is ignored. Keys that
    would escape the root are rejected.
    """

    def __init__(self, root: str):
        self.root = os.path.realpath(root)

    def path_for(self, key: str) -> str:
        raw = (key or "").strip().lstrip("/\\")
        if not raw:
            raise ValueError("Storage key must not be empty")
        resolved = os.path.realpath(os.path.join(self.root, raw))
        if resolved != self.root and not resolved.startswith(f"{self.root}{os.sep}"):
            raise ValueError(f"Storage key escapes storage root: {key!r}")
        return resolved

    def exists(self, key: str) -> bool:
        return os.path.isfile(self.path_for(key))

    def read(self, key: str) -> bytes:
        path = self.path_for(key)
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Stored file not found: {key}")
        with open(path, "rb") as handle:
            return handle.read()

    def write(self, key: str, data: bytes) -> str:
        path = self.path_for(key)
        write_atomic(path, data)
        os.chmod(path, 0o644)
        return path

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        return True
