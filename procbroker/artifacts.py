import base64
import binascii
import logging
import re
import tempfile
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from .errors import BrokerError, ErrorKind

logger = logging.getLogger("uvicorn.error")

ARTIFACT_PREFIX = "claude-image-"
_DATA_URL_RE = re.compile(r"^data:image/(\w+);base64,", re.IGNORECASE)
_SUFFIXES = {"jpeg": ".jpg", "jpg": ".jpg", "png": ".png", "gif": ".gif", "webp": ".webp"}


def decode_image_payload(data: Union[bytes, str]) -> Tuple[bytes, str]:
    """Accept raw bytes or base64 text (optionally a data URL) and return (bytes, suffix)."""
    if isinstance(data, (bytes, bytearray)):
        return bytes(data), ".png"
    text = data.strip()
    suffix = ".png"
    match = _DATA_URL_RE.match(text)
    if match:
        suffix = _SUFFIXES.get(match.group(1).lower(), ".png")
        text = text[match.end():]
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"invalid base64 image payload: {exc}") from exc
    if not raw:
        raise ValueError("image payload is empty")
    return raw, suffix


class TempArtifactManager:
    """Uniquely named temp files handed to the CLI by path."""

    def __init__(self, directory: Optional[Union[str, Path]] = None) -> None:
        self.directory = Path(directory) if directory else Path(tempfile.gettempdir())
        self._lock = threading.Lock()
        self._owners: Dict[Path, str] = {}

    @property
    def active(self) -> List[Path]:
        with self._lock:
            return list(self._owners)

    def owner_of(self, path: Path) -> Optional[str]:
        with self._lock:
            return self._owners.get(Path(path))

    def _new_path(self, suffix: str) -> Path:
        return self.directory / f"{ARTIFACT_PREFIX}{uuid.uuid4().hex}{suffix}"

    def acquire(self, payload: bytes, owner: str, suffix: str = ".png") -> Path:
        path = self._new_path(suffix)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            # "x" fails instead of clobbering if a name ever repeats
            with open(path, "xb") as handle:
                with self._lock:
                    self._owners[path] = owner
                handle.write(payload)
        except OSError as exc:
            if self.owner_of(path) is not None:
                self.release(path)
            raise BrokerError(ErrorKind.ARTIFACT_IO_FAILURE, f"Failed to write temp file {path}: {exc}") from exc
        return path

    def release(self, path: Union[str, Path]) -> bool:
        """Delete ``path``; returns False when it could not be removed. Never raises."""
        target = Path(path)
        with self._lock:
            self._owners.pop(target, None)
        try:
            target.unlink()
        except FileNotFoundError:
            return True
        except OSError as exc:
            logger.warning("%s: could not delete %s: %s", ErrorKind.ARTIFACT_IO_FAILURE.value, target, exc)
            return False
        return True

    def release_all(self) -> int:
        released = 0
        for path in self.active:
            if self.release(path):
                released += 1
        return released

    @contextmanager
    def scoped(
        self,
        payload: Optional[bytes],
        owner: str,
        suffix: str = ".png",
    ) -> Iterator[Optional[Path]]:
        if payload is None:
            yield None
            return
        path = self.acquire(payload, owner, suffix=suffix)
        try:
            yield path
        finally:
            self.release(path)
