"""Host key and authorized-keys handling for the SSH transport."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import FrozenSet, Iterable, Tuple

import paramiko

from shieldagent.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


def load_host_key(path: Path) -> paramiko.PKey:
    """Load the agent's private host key, whatever its type."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"host key file not found: {path}")
    errors = []
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key_file(str(path))
        except (paramiko.SSHException, ValueError) as exc:
            errors.append(f"{key_class.__name__}: {exc}")
    raise ConfigurationError(f"unable to load host key {path}: {'; '.join(errors)}")


class AuthorizedKeys:
    """Set of public keys allowed to submit jobs (OpenSSH authorized_keys format)."""

    def __init__(self, keys: Iterable[Tuple[str, str]] = ()) -> None:
        self._keys: FrozenSet[Tuple[str, str]] = frozenset(keys)

    @classmethod
    def from_lines(cls, lines: Iterable[str]) -> "AuthorizedKeys":
        keys = []
        for number, line in enumerate(lines, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            fields = line.split()
            # an options prefix may precede the key type
            for index, token in enumerate(fields[:-1]):
                if token.startswith(("ssh-", "ecdsa-", "sk-")):
                    keys.append((token, fields[index + 1]))
                    break
            else:
                logger.warning("authorized_key_unparsable | line=%s", number)
        return cls(keys)

    @classmethod
    def from_file(cls, path: Path) -> "AuthorizedKeys":
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"authorized keys file not found: {path}")
        with open(path, "r", encoding="utf-8") as fh:
            authorized = cls.from_lines(fh)
        logger.info("authorized_keys_loaded | path=%s count=%s", path, len(authorized))
        return authorized

    @classmethod
    def from_keys(cls, keys: Iterable[paramiko.PKey]) -> "AuthorizedKeys":
        return cls((key.get_name(), key.get_base64()) for key in keys)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, paramiko.PKey):
            return False
        return (key.get_name(), key.get_base64()) in self._keys

    def __len__(self) -> int:
        return len(self._keys)
