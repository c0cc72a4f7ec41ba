"""Filesystem staging store.

Implements IStagingStore on a local directory tree: one directory per
container under ``root``, one file per blob, blobs holding JSON lines.
Blob names may contain ``/`` to form virtual folders.

Access URLs are HS256-signed JWTs embedded in the container URL; the
token carries the container, the granted permissions and an expiry.
"""

import asyncio
import logging
import re
import shutil
import time
from pathlib import Path
from typing import AsyncIterator, Optional
from urllib.parse import parse_qs, urlsplit

import jwt
from jwt.exceptions import InvalidTokenError

from ...api.exceptions import AuthenticationError, ValidationError
from ..domain.ports import IStagingStore

logger = logging.getLogger(__name__)

SIGNING_ALGORITHM = "HS256"
_CONTAINER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")
# Size hint for each threaded readlines() call
READ_CHUNK_BYTES = 64 * 1024


class FileStagingStore(IStagingStore):
    """Staging containers as directories under ``root``.

    Example:
        store = FileStagingStore("./staging", signing_key="secret")
        await store.create_container("run-1")
        await store.write_blob("run-1", "devices.txt", ['{"id": "d1"}'])
    """

    def __init__(self, root: str | Path, signing_key: str, clock=time.time):
        self.root = Path(root).resolve()
        self.signing_key = signing_key
        self._clock = clock

    # ----------------------------------------
    # Paths
    # ----------------------------------------

    def _container_path(self, container: str) -> Path:
        if not _CONTAINER_PATTERN.match(container or ""):
            raise ValidationError(
                f"Invalid container name: {container!r}",
                status_code=400,
                field="container",
            )
        return self.root / container

    def _blob_path(self, container: str, blob_name: str) -> Path:
        parts = [part for part in (blob_name or "").split("/") if part]
        if not parts or any(part in (".", "..") for part in parts):
            raise ValidationError(
                f"Invalid blob name: {blob_name!r}",
                status_code=400,
                field="blob_name",
            )
        return self._container_path(container).joinpath(*parts)

    # ----------------------------------------
    # Containers
    # ----------------------------------------

    async def create_container(self, container: str) -> None:
        path = self._container_path(container)
        await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)
        logger.debug(f"Staging container ready at {path}")

    async def delete_container(self, container: str) -> bool:
        path = self._container_path(container)
        if not path.exists():
            return False
        await asyncio.to_thread(shutil.rmtree, path)
        logger.info(f"Deleted staging container {container}")
        return True

    # ----------------------------------------
    # Blobs
    # ----------------------------------------

    @staticmethod
    def _write(path: Path, lines: list[str], mode: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open(mode, encoding="utf-8") as f:
            for line in lines:
                f.write(line.rstrip("\n"))
                f.write("\n")

    async def write_blob(self, container: str, blob_name: str, lines: list[str]) -> None:
        await asyncio.to_thread(self._write, self._blob_path(container, blob_name), lines, "w")

    async def append_blob(self, container: str, blob_name: str, lines: list[str]) -> None:
        await asyncio.to_thread(self._write, self._blob_path(container, blob_name), lines, "a")

    async def read_lines(self, container: str, blob_name: str) -> AsyncIterator[str]:
        """Stream non-empty lines, reading the file in chunks off the event loop."""
        path = self._blob_path(container, blob_name)
        if not await asyncio.to_thread(path.is_file):
            return
        f = await asyncio.to_thread(path.open, "r", encoding="utf-8")
        try:
            while True:
                chunk = await asyncio.to_thread(f.readlines, READ_CHUNK_BYTES)
                if not chunk:
                    break
                for line in chunk:
                    line = line.strip()
                    if line:
                        yield line
        finally:
            f.close()

    async def blob_exists(self, container: str, blob_name: str) -> bool:
        return self._blob_path(container, blob_name).is_file()

    async def list_blobs(self, container: str, prefix: str = "") -> list[str]:
        base = self._container_path(container)
        if not base.exists():
            return []
        names = [
            path.relative_to(base).as_posix()
            for path in base.rglob("*")
            if path.is_file()
        ]
        return sorted(name for name in names if name.startswith(prefix))

    # ----------------------------------------
    # Access URLs
    # ----------------------------------------

    async def generate_access_url(
        self,
        container: str,
        permissions: str,
        expires_in: int = 3600,
    ) -> str:
        path = self._container_path(container)
        now = int(self._clock())
        token = jwt.encode(
            {
                "container": container,
                "perm": permissions,
                "iat": now,
                "exp": now + int(expires_in),
            },
            self.signing_key,
            algorithm=SIGNING_ALGORITHM,
        )
        return f"{path.as_uri()}?sig={token}"

    def verify_access_url(self, url: str, required_permission: Optional[str] = None) -> str:
        """Check an access URL and return the container it grants.

        Raises:
            AuthenticationError: If the signature is invalid or expired, the
                URL does not match the signed container, or the permission
                is not granted.
        """
        parts = urlsplit(url)
        token = (parse_qs(parts.query).get("sig") or [""])[0]
        if not token:
            raise AuthenticationError("Access URL has no signature", recoverable=False)

        try:
            payload = jwt.decode(
                token,
                self.signing_key,
                algorithms=[SIGNING_ALGORITHM],
                options={"require": ["exp"], "verify_exp": False},
            )
        except InvalidTokenError as e:
            logger.warning(f"Staging access URL rejected: {e}")
            raise AuthenticationError("Invalid access URL signature", recoverable=False) from e

        if int(payload["exp"]) <= int(self._clock()):
            raise AuthenticationError("Access URL has expired", recoverable=False)

        container = str(payload.get("container", ""))
        if Path(parts.path).name != container:
            raise AuthenticationError("Access URL does not match its container", recoverable=False)

        if required_permission and any(p not in payload.get("perm", "") for p in required_permission):
            raise AuthenticationError(
                f"Access URL does not grant '{required_permission}'",
                recoverable=False,
            )
        return container


__all__ = ["FileStagingStore"]
