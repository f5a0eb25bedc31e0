import math
import socket
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone
from os import path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.x509.oid import NameOID

from vos_cert.config import Settings
from vos_cert.logger import Logger
from vos_cert.storage import certificate_path

PROBE_PORTS = (443, 8443, 9443)
PROBE_TIMEOUT = 5
NOT_PRESENT = "<Not Part Of Certificate>"

_NAME_FIELDS = (
    ("CN", NameOID.COMMON_NAME),
    ("O", NameOID.ORGANIZATION_NAME),
    ("OU", NameOID.ORGANIZATIONAL_UNIT_NAME),
)


def _name_fields(name: x509.Name) -> Mapping[str, str]:
    fields = {}
    for key, oid in _NAME_FIELDS:
        attributes = name.get_attributes_for_oid(oid)
        fields[key] = str(attributes[0].value) if attributes else NOT_PRESENT
    return MappingProxyType(fields)


def _colon_hex(digest: bytes) -> str:
    return ":".join(f"{b:02X}" for b in digest)


def _serial_hex(serial: int) -> str:
    text = format(serial, "X")
    return text.zfill(len(text) + len(text) % 2)


def _subject_alt_names(cert: x509.Certificate) -> Tuple[str, ...]:
    try:
        extension = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return ()

    names = []
    for entry in extension.value:
        if isinstance(entry, x509.DNSName):
            names.append(f"DNS:{entry.value}")
        elif isinstance(entry, x509.IPAddress):
            names.append(f"IP Address:{entry.value}")
        elif isinstance(entry, x509.RFC822Name):
            names.append(f"email:{entry.value}")
        elif isinstance(entry, x509.UniformResourceIdentifier):
            names.append(f"URI:{entry.value}")
        else:
            names.append(str(entry.value))
    return tuple(names)


@dataclass(frozen=True)
class CertificateInfo:
    subject: Mapping[str, str]
    issuer: Mapping[str, str]
    valid_from: datetime
    valid_to: datetime
    fingerprint: str
    fingerprint256: str
    serial_number: str
    subject_alt_names: Tuple[str, ...] = field(default_factory=tuple)
    is_valid: bool = False
    days_until_expiry: int = 0
    source: str = ""

    @classmethod
    def from_certificate(
        cls, cert: x509.Certificate, source: str = "", now: Optional[datetime] = None
    ) -> "CertificateInfo":
        now = now or datetime.now(timezone.utc)
        valid_from = cert.not_valid_before_utc
        valid_to = cert.not_valid_after_utc

        return cls(
            subject=_name_fields(cert.subject),
            issuer=_name_fields(cert.issuer),
            valid_from=valid_from,
            valid_to=valid_to,
            fingerprint=_colon_hex(cert.fingerprint(hashes.SHA1())),
            fingerprint256=_colon_hex(cert.fingerprint(hashes.SHA256())),
            serial_number=_serial_hex(cert.serial_number),
            subject_alt_names=_subject_alt_names(cert),
            is_valid=valid_from <= now <= valid_to,
            days_until_expiry=math.floor((valid_to - now).total_seconds() / 86400),
            source=source,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject": dict(self.subject),
            "issuer": dict(self.issuer),
            "validFrom": self.valid_from.isoformat(),
            "validTo": self.valid_to.isoformat(),
            "fingerprint": self.fingerprint,
            "fingerprint256": self.fingerprint256,
            "serialNumber": self.serial_number,
            "subjectAltNames": list(self.subject_alt_names),
            "isValid": self.is_valid,
            "daysUntilExpiry": self.days_until_expiry,
            "source": self.source,
        }


class CertificateInspector:
    """Finds the certificate a host actually presents.

    Live TLS on each probe port wins. Otherwise the local store is read,
    first for the configured environment, then for the other one. ``None``
    means no certificate exists anywhere, which is a normal outcome for a
    host that has never been issued one.
    """

    def __init__(
        self,
        settings: Settings,
        logger: Logger,
        ports: Tuple[int, ...] = PROBE_PORTS,
        timeout: float = PROBE_TIMEOUT,
    ):
        self.settings = settings
        self.logger = logger
        self.ports = ports
        self.timeout = timeout

    def inspect(self, hostname: str) -> Optional[CertificateInfo]:
        self.logger.info(f"Getting certificate info for {hostname}")

        for port in self.ports:
            cert_info = self.from_host(hostname, port)
            if cert_info:
                self.logger.info(
                    f"Retrieved certificate for {hostname} from live TLS connection on port {port}"
                )
                return cert_info

        self.logger.info(
            f"No live TLS connection available for {hostname}, falling back to local certificate files"
        )

        for environment in (self.settings.environment, self.settings.alternate_environment):
            cert_path = certificate_path(self.settings.accounts_dir, hostname, environment)
            self.logger.debug(f"Checking for local certificate at: {cert_path}")
            cert_info = self.from_file(cert_path)
            if cert_info:
                self.logger.info(f"Found local certificate for {hostname} in {environment} directory")
                return cert_info

        self.logger.warning(
            f"No certificate found for {hostname} in live TLS connection or local files"
        )
        return None

    def from_host(self, hostname: str, port: int) -> Optional[CertificateInfo]:
        self.logger.info(f"Attempting to get certificate for {hostname}:{port}")

        # Self-signed and staging certificates must still be readable
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

        try:
            with socket.create_connection((hostname, port), timeout=self.timeout) as sock:
                with context.wrap_socket(sock, server_hostname=hostname) as tls:
                    der = tls.getpeercert(binary_form=True)
        except OSError as e:
            self.logger.warning(f"TLS connection error for {hostname}:{port}: {e}")
            return None

        if not der:
            self.logger.warning(f"No certificate found for {hostname}:{port}")
            return None

        try:
            cert = x509.load_der_x509_certificate(der)
        except ValueError as e:
            self.logger.error(f"Error parsing certificate for {hostname}:{port}: {e}")
            return None

        return CertificateInfo.from_certificate(cert, source=f"tls:{port}")

    def from_file(self, cert_path: str) -> Optional[CertificateInfo]:
        if not path.exists(cert_path):
            self.logger.debug(f"Certificate file not found: {cert_path}")
            return None

        try:
            with open(cert_path, "rb") as cert_file:
                cert = x509.load_pem_x509_certificate(cert_file.read())
        except (OSError, ValueError) as e:
            self.logger.error(f"Error parsing certificate file {cert_path}: {e}")
            return None

        self.logger.info(f"Successfully parsed certificate from file: {cert_path}")
        return CertificateInfo.from_certificate(cert, source=cert_path)
