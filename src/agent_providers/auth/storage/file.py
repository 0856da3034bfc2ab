"""Owner-only file backend used when no keychain is usable."""

import os
import re
import tempfile
from pathlib import Path

from structlog import get_logger

from agent_providers.core.system import ensure_private_dir

from .base import SecretBackend, StorageBackend


logger = get_logger(__name__)

_SAFE_ACCOUNT = re.compile(r"^[A-Za-z0-9._-]+$")


class FileSecretBackend(SecretBackend):
    """One file per account under a 0700 directory, each file 0600."""

    kind = StorageBackend.FILE

    def __init__(self, directory: Path):
        self.directory = directory

    def _path(self, account: str) -> Path:
        if not _SAFE_ACCOUNT.match(account):
            raise ValueError(f"Invalid account name: {account!r}")
        return self.directory / account

    def is_available(self) -> bool:
        return True

    def get(self, account: str) -> str | None:
        path = self._path(account)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def set(self, account: str, secret: str) -> None:
        ensure_private_dir(self.directory)
        path = self._path(account)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{account}.")
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(secret)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        path.chmod(0o600)
        logger.debug("secret_file_written", path=str(path))

    def delete(self, account: str) -> None:
        self._path(account).unlink(missing_ok=True)

    def get_location(self) -> str:
        return str(self.directory)
