import json
import os
import re
from abc import ABC, abstractmethod
from os import path
from typing import Any, Dict, Optional

CERTIFICATE_FILE = "certificate.pem"
PRIVATE_KEY_FILE = "private_key.pem"


def safe_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9-.]", "_", name)


def certificate_path(accounts_dir: str, hostname: str, environment: str) -> str:
    """Local store location: <accounts_dir>/<hostname>/<staging|prod>/certificate.pem"""
    return path.join(accounts_dir, safe_name(hostname), environment, CERTIFICATE_FILE)


def _open_private(file_path: str):
    """Opens a file for writing with owner-only permissions from creation on."""
    fd = os.open(file_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    os.fchmod(fd, 0o600)
    return os.fdopen(fd, "w")


class AccountStore(ABC):
    @abstractmethod
    def save(self, connection_id: int, domain: str, provider: str, blob: Dict[str, Any]):
        pass

    @abstractmethod
    def load(self, connection_id: int, domain: str, provider: str) -> Optional[Dict[str, Any]]:
        pass


class FileAccountStore(AccountStore):
    def __init__(self, accounts_dir: str, environment: str):
        self.accounts_dir = accounts_dir
        self.environment = environment

    def _env_dir(self, domain: str) -> str:
        return path.join(self.accounts_dir, safe_name(domain), self.environment)

    def _get_account_path(self, connection_id: int, domain: str, provider: str) -> str:
        """Get the path for the account file for a given domain"""
        return path.join(
            self._env_dir(domain), f"{safe_name(provider)}_{connection_id}_account.json"
        )

    def save(self, connection_id: int, domain: str, provider: str, blob: Dict[str, Any]):
        account_path = self._get_account_path(connection_id, domain, provider)
        os.makedirs(path.dirname(account_path), exist_ok=True)
        # Write then rename so a reader never sees a half written account
        tmp_path = f"{account_path}.tmp"
        with _open_private(tmp_path) as account_file:
            json.dump(blob, account_file, indent=2)
        os.replace(tmp_path, account_path)

    def load(self, connection_id: int, domain: str, provider: str) -> Optional[Dict[str, Any]]:
        account_path = self._get_account_path(connection_id, domain, provider)
        if not path.exists(account_path):
            return None
        with open(account_path, "r") as account_file:
            return json.load(account_file)

    def save_certificate(self, hostname: str, certificate_pem: str, private_key_pem: Optional[str] = None) -> str:
        cert_path = certificate_path(self.accounts_dir, hostname, self.environment)
        os.makedirs(path.dirname(cert_path), exist_ok=True)
        with open(cert_path, "w") as cert_file:
            cert_file.write(certificate_pem)

        if private_key_pem:
            key_path = path.join(path.dirname(cert_path), PRIVATE_KEY_FILE)
            with _open_private(key_path) as key_file:
                key_file.write(private_key_pem)

        return cert_path

    def load_certificate(self, hostname: str) -> Optional[str]:
        cert_path = certificate_path(self.accounts_dir, hostname, self.environment)
        if not path.exists(cert_path):
            return None
        with open(cert_path, "r") as cert_file:
            return cert_file.read()
