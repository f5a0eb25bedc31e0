import os
from dataclasses import dataclass
from typing import Optional

LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"


@dataclass(frozen=True)
class Settings:
    staging: bool = True
    email: Optional[str] = None
    accounts_dir: str = "accounts"
    log_dir: str = "logs"
    uc_user: Optional[str] = None
    uc_pass: Optional[str] = None
    ssh_port: int = 22
    renew_days: int = 30

    @property
    def directory_url(self) -> str:
        return LETSENCRYPT_STAGING if self.staging else LETSENCRYPT_PRODUCTION

    @property
    def environment(self) -> str:
        """Name of the local store subdirectory for the selected directory."""
        return "staging" if self.staging else "prod"

    @property
    def alternate_environment(self) -> str:
        return "prod" if self.staging else "staging"

    @classmethod
    def from_env(cls) -> "Settings":
        # Staging unless explicitly switched off
        staging = os.getenv("LETSENCRYPT_STAGING", "true").strip().lower() != "false"
        return cls(
            staging=staging,
            email=os.getenv("LETSENCRYPT_EMAIL"),
            accounts_dir=os.getenv("ACCOUNTS_DIR", "accounts"),
            log_dir=os.getenv("LOG_DIR", "logs"),
            uc_user=os.getenv("UC_USER"),
            uc_pass=os.getenv("UC_PASS"),
            ssh_port=int(os.getenv("SSH_PORT", "22")),
            renew_days=int(os.getenv("RENEW_DAYS", "30")),
        )
