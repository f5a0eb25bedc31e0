import datetime
import ipaddress

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from vos_cert.config import Settings
from vos_cert.logger import Logger


@pytest.fixture
def logger(tmp_path):
    return Logger("cucm.example.com", log_root=str(tmp_path / "logs"))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        staging=True,
        email="admin@example.com",
        accounts_dir=str(tmp_path / "accounts"),
        log_dir=str(tmp_path / "logs"),
        uc_user="administrator",
        uc_pass="secret",
    )


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def make_certificate(rsa_key):
    def _make(
        common_name="cucm.example.com",
        organization=None,
        not_before=None,
        not_after=None,
        sans=("cucm.example.com",),
        serial=0x0ABC,
    ):
        now = datetime.datetime.now(datetime.timezone.utc)
        attributes = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
        if organization:
            attributes.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization))
        name = x509.Name(attributes)

        builder = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(rsa_key.public_key())
            .serial_number(serial)
            .not_valid_before(not_before or now - datetime.timedelta(days=1))
            .not_valid_after(not_after or now + datetime.timedelta(days=90))
        )
        if sans:
            entries = []
            for san in sans:
                try:
                    entries.append(x509.IPAddress(ipaddress.ip_address(san)))
                except ValueError:
                    entries.append(x509.DNSName(san))
            builder = builder.add_extension(x509.SubjectAlternativeName(entries), critical=False)
        return builder.sign(rsa_key, hashes.SHA256())

    return _make


@pytest.fixture
def certificate_pem(make_certificate):
    return make_certificate().public_bytes(serialization.Encoding.PEM).decode("ascii")
