"""Credential record and file store module.

This module handles:
- The Credentials record (operator secrets plus issued tokens)
- Loading and atomically saving it as a YAML file
- A lock file guarding against overlapping runs
"""

import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Iterator, Union

import yaml

# Configure module logger
logger = logging.getLogger(__name__)

DEFAULT_CREDENTIALS_PATH = Path.home() / ".credentials" / "flume.yaml"

REQUIRED_FIELDS = ("client_id", "client_secret", "username", "password")


class CredentialError(Exception):
    """Exception raised when stored credentials are missing or malformed."""
    pass


class CredentialLockError(CredentialError):
    """Exception raised when another run already holds the credential lock."""
    pass


@dataclass
class Credentials:
    """Credential record for the Flume API.

    Attributes:
        client_id: OAuth client ID
        client_secret: OAuth client secret
        username: Flume account username (email)
        password: Flume account password
        access_token: Last issued access token
        refresh_token: Last issued refresh token
        user_id: Flume user ID owning the device
        device_id: ID of the meter device to query
    """
    client_id: str
    client_secret: str
    username: str
    password: str
    access_token: str = ""
    refresh_token: str = ""
    user_id: str = ""
    device_id: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Credentials":
        """Build a record from a mapping, rejecting missing secrets.

        Raises:
            CredentialError: If a required field is missing or empty
        """
        missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
        if missing:
            raise CredentialError(f"Missing credential fields: {', '.join(missing)}")

        known = {f.name for f in fields(cls)}
        values = {k: ("" if v is None else str(v)) for k, v in data.items() if k in known}
        return cls(**values)

    def to_dict(self) -> dict:
        return asdict(self)


class CredentialStore:
    """YAML file backed credential store.

    Attributes:
        path: Location of the credential file
    """

    def __init__(self, path: Union[str, Path, None] = None):
        self.path = Path(path).expanduser() if path else DEFAULT_CREDENTIALS_PATH

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    def load(self) -> Credentials:
        """Load the credential record.

        Returns:
            Credentials read from the file

        Raises:
            CredentialError: If the file is missing, unreadable or incomplete
        """
        try:
            with open(self.path, "r") as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            raise CredentialError(f"Credential file not found: {self.path}")
        except (OSError, yaml.YAMLError) as e:
            raise CredentialError(f"Could not read credential file {self.path}: {e}")

        if not isinstance(data, dict):
            raise CredentialError(f"Credential file {self.path} must contain a mapping")

        credentials = Credentials.from_dict(data)
        logger.debug(f"Loaded credentials for {credentials.username} from {self.path}")
        return credentials

    def save(self, credentials: Credentials) -> None:
        """Persist the credential record.

        The file is written to a temporary sibling and renamed over the
        target so a crash mid-write never leaves a truncated file.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w") as f:
                yaml.safe_dump(credentials.to_dict(), f, default_flow_style=False)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug(f"Saved credentials to {self.path}")

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold an exclusive lock for the duration of a run.

        Raises:
            CredentialLockError: If another process holds the lock
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        lock_file = open(self.lock_path, "w")
        try:
            try:
                fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise CredentialLockError(f"Another run holds {self.lock_path}")
            yield
            fcntl.flock(lock_file, fcntl.LOCK_UN)
        finally:
            lock_file.close()

