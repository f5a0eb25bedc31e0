import datetime
import hashlib
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import josepy as jose
import requests
from acme import challenges, client, crypto_util, messages
from acme import errors as acme_errors
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from vos_cert import __version__
from vos_cert.config import Settings
from vos_cert.deadline import race
from vos_cert.errors import (
    AccountError,
    CertManagerError,
    DeadlineExceeded,
    ProtocolError,
    StateError,
    TransportError,
    ValidationError,
)
from vos_cert.logger import Logger
from vos_cert.storage import AccountStore

PROVIDER = "letsencrypt"
USER_AGENT = f"vos-cert/{__version__}"

ACCOUNT_TIMEOUT = 30
ORDER_TIMEOUT = 15
AUTHORIZATION_TIMEOUT = 30
CHALLENGE_TIMEOUT = 30
FINALIZE_TIMEOUT = 90
REVOKE_TIMEOUT = 30
ORDER_WAIT = 300
SETTLE_DELAY = 2
# Lets the library's own poll deadline fire before the racer does
POLL_GRACE = 5


def dns_record_value(key_authorization: str) -> str:
    """TXT record value for a DNS-01 key authorization (RFC 8555, 8.4)."""
    digest = hashlib.sha256(key_authorization.encode("utf-8")).digest()
    return jose.b64encode(digest).decode("ascii")


def generate_private_key_pem(key_size: int = 2048) -> bytes:
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )


def csr_names(csr_pem: str) -> List[str]:
    """Common name and DNS subject alternative names of a PEM CSR."""
    csr = x509.load_pem_x509_csr(csr_pem.encode("ascii"))
    names = [str(a.value) for a in csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)]
    try:
        extension = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return names
    for name in extension.value.get_values_for_type(x509.DNSName):
        if name not in names:
            names.append(name)
    return names


class OrderState(Enum):
    UNINITIALIZED = "uninitialized"
    ACCOUNT_READY = "account_ready"
    ORDER_CREATED = "order_created"
    AUTHORIZATIONS_FETCHED = "authorizations_fetched"
    VALIDATION_POLLING = "validation_polling"
    ORDER_VALID = "order_valid"
    FINALIZING = "finalizing"
    ISSUED = "issued"
    FAILED = "failed"


@dataclass(frozen=True)
class Account:
    account_key: bytes
    account_url: str
    email: str
    directory_url: str
    domain: str
    connection_id: int

    def to_json(self) -> Dict[str, Any]:
        return {
            "accountKey": self.account_key.decode("ascii"),
            "accountUrl": self.account_url,
            "email": self.email,
            "directory": self.directory_url,
            "domain": self.domain,
            "connectionId": self.connection_id,
        }

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Account":
        return cls(
            account_key=data["accountKey"].encode("ascii"),
            account_url=data.get("accountUrl") or "",
            email=data.get("email") or "",
            directory_url=data["directory"],
            domain=data.get("domain") or "",
            connection_id=int(data.get("connectionId") or 0),
        )


@dataclass(frozen=True)
class Challenge:
    url: str
    token: str
    status: str
    domain: str
    key_authorization: str
    resource: Any = field(default=None, compare=False, repr=False)

    @property
    def record_name(self) -> str:
        domain = self.domain[2:] if self.domain.startswith("*.") else self.domain
        return f"_acme-challenge.{domain}"


@dataclass(frozen=True)
class CertificateOrder:
    url: str
    domains: Tuple[str, ...]
    csr: str
    challenges: Tuple[Challenge, ...]
    private_key: Optional[str] = None
    resource: Any = field(default=None, compare=False, repr=False)


class AcmeOrchestrator:
    """Account lifecycle and certificate issuance against one ACME directory.

    Steps run strictly in sequence and every network call is bounded by a
    deadline. Nothing is retried here: each issuance call mints a new order
    server side, so retry policy belongs to the caller.
    """

    def __init__(
        self,
        settings: Settings,
        store: AccountStore,
        logger: Logger,
        connection_id: int = 0,
        provider: str = PROVIDER,
        settle_delay: float = SETTLE_DELAY,
    ):
        self.directory_url = settings.directory_url
        self.staging = settings.staging
        self.store = store
        self.logger = logger
        self.connection_id = connection_id
        self.provider = provider
        self.settle_delay = settle_delay

        self.state = OrderState.UNINITIALIZED
        self.failure: Optional[str] = None
        self.account: Optional[Account] = None
        self._jwk: Optional[jose.JWKRSA] = None
        self._client: Optional[client.ClientV2] = None

    # ------------------ accounts ------------------
    def create_account(self, email: str, domain: str) -> Account:
        self.logger.info(f"Creating Let's Encrypt account for {email} (domain: {domain})")

        key_pem = generate_private_key_pem()
        jwk = jose.JWKRSA(key=serialization.load_pem_private_key(key_pem, password=None))

        with self._step("Account creation"):
            acme_client, regr = race(
                self._register, ACCOUNT_TIMEOUT, jwk, self.directory_url, email,
                description="Account creation",
            )

        account = Account(
            account_key=key_pem,
            account_url=regr.uri or "",
            email=email,
            directory_url=self.directory_url,
            domain=domain,
            connection_id=self.connection_id,
        )
        self.logger.info(f"Account created with URL: {account.account_url}")

        self._bind(account, jwk, acme_client)
        self.store.save(self.connection_id, domain, self.provider, account.to_json())
        return account

    def load_account(self, domain: str) -> Optional[Account]:
        blob = self.store.load(self.connection_id, domain, self.provider)
        if blob is None:
            self.logger.info(f"No saved {self.provider} account for {domain}")
            return None

        try:
            account = Account.from_json(blob)
            key = serialization.load_pem_private_key(account.account_key, password=None)
        except (KeyError, TypeError, ValueError) as e:
            raise AccountError(f"Saved account for {domain} is unreadable: {e}") from e

        self.logger.info(f"Loading account for domain: {domain}")
        self.logger.info(f"Account URL: {account.account_url}")
        self.logger.info(f"Account directory: {account.directory_url}")

        jwk = jose.JWKRSA(key=key)
        with self._step("Account load"):
            if account.account_url:
                acme_client = race(
                    self._build_client, ACCOUNT_TIMEOUT, jwk, account.directory_url, account.account_url,
                    description="Account load",
                )
            else:
                # Registered before the URL was recorded; ask the server for it
                acme_client, regr = race(
                    self._register, ACCOUNT_TIMEOUT, jwk, account.directory_url, account.email,
                    only_return_existing=True, description="Account lookup",
                )
                account = replace(account, account_url=regr.uri or "")
                self.store.save(self.connection_id, domain, self.provider, account.to_json())

        self._bind(account, jwk, acme_client)
        self.logger.info(f"Loaded Let's Encrypt account for domain: {domain}")
        return account

    # ------------------ orders ------------------
    def request_certificate(self, csr: Optional[str], domains: Sequence[str]) -> CertificateOrder:
        domains = list(domains or [])
        if not domains:
            raise ValueError("No domains provided for certificate request")
        if len({d.lower() for d in domains}) != len(domains):
            raise ValueError(f"Duplicate domains in certificate request: {', '.join(domains)}")
        self._require_account()

        private_key = None
        if not csr:
            key_pem = generate_private_key_pem()
            csr = crypto_util.make_csr(key_pem, domains).decode("ascii")
            private_key = key_pem.decode("ascii")
        else:
            self._check_csr(csr, domains)

        self.logger.info(f"Creating certificate order for domains: {', '.join(domains)}")
        self.logger.info(f"Using ACME directory: {'STAGING' if self.staging else 'PRODUCTION'}")

        with self._step("Order creation", domains):
            orderr = race(
                self._client.new_order, ORDER_TIMEOUT, csr.encode("ascii"),
                description="Order creation",
            )
        self.state = OrderState.ORDER_CREATED
        self.logger.info(f"Created certificate order: {orderr.uri}")

        with self._step("Authorization retrieval", domains):
            authzrs = race(
                self._fetch_authorizations, AUTHORIZATION_TIMEOUT, orderr,
                description="Authorization retrieval",
            )
            found = self._dns_challenges(authzrs, domains)
        self.state = OrderState.AUTHORIZATIONS_FETCHED

        return CertificateOrder(
            url=orderr.uri,
            domains=tuple(domains),
            csr=csr,
            challenges=tuple(found),
            private_key=private_key,
            resource=orderr.update(authorizations=authzrs),
        )

    def get_dns_record_value(self, challenge: Challenge) -> str:
        return dns_record_value(challenge.key_authorization)

    def complete_challenge(self, challenge: Challenge):
        self._require_account()
        self.logger.info(f"Completing DNS-01 challenge for {challenge.url}")

        response = challenge.resource.chall.response(self._jwk)
        with self._step("Challenge completion", [challenge.domain]):
            race(
                self._client.answer_challenge, CHALLENGE_TIMEOUT, challenge.resource, response,
                description="Challenge completion",
            )
        self.logger.info(f"Successfully completed challenge for {challenge.url}")

    def wait_for_order_completion(self, order: CertificateOrder, max_wait: float = ORDER_WAIT) -> CertificateOrder:
        self._require_account()
        self.logger.info(f"Waiting for order completion: {order.url}")

        # Give the server a moment to start validating
        time.sleep(self.settle_delay)
        self.state = OrderState.VALIDATION_POLLING

        deadline = datetime.datetime.now() + datetime.timedelta(seconds=max_wait)
        try:
            orderr = race(
                self._client.poll_authorizations, max_wait + POLL_GRACE, order.resource, deadline,
                description="Order validation",
            )
        except (CertManagerError, acme_errors.Error, jose.errors.Error, requests.exceptions.RequestException) as e:
            self.logger.error(f"Failed to wait for order completion: {e}")
            details = self._diagnose(order)
            self._fail(f"Order validation: {e}")
            failure = self._validation_failure(order, e, details)
            if failure is e:
                raise
            raise failure from e

        self.state = OrderState.ORDER_VALID
        self.logger.info(f"Order completed successfully: {order.url}")
        return replace(order, resource=orderr)

    def finalize_certificate(self, order: CertificateOrder, csr: Optional[str] = None) -> str:
        self._require_account()
        self.logger.info(f"Finalizing certificate for order: {order.url}")

        csr = csr or order.csr
        self.state = OrderState.FINALIZING
        deadline = datetime.datetime.now() + datetime.timedelta(seconds=FINALIZE_TIMEOUT)
        with self._step("Finalization", order.domains):
            orderr = race(
                self._client.finalize_order, FINALIZE_TIMEOUT + POLL_GRACE,
                order.resource.update(csr_pem=csr.encode("ascii")), deadline,
                description="Finalization",
            )
            if not orderr.fullchain_pem:
                raise ProtocolError(
                    f"Order {order.url} finalized without a certificate",
                    step="Finalization", domains=order.domains,
                )

        self.state = OrderState.ISSUED
        self.logger.info(f"Successfully obtained certificate for order: {order.url}")
        return orderr.fullchain_pem

    def revoke_certificate(self, certificate: str, reason: int = 0):
        self._require_account()
        self.logger.info("Revoking certificate")

        try:
            cert = x509.load_pem_x509_certificate(certificate.encode("ascii"))
        except ValueError as e:
            raise ProtocolError(f"Certificate to revoke is not valid PEM: {e}", step="Revocation") from e

        with self._step("Revocation"):
            race(self._client.revoke, REVOKE_TIMEOUT, cert, reason, description="Revocation")
        self.logger.info("Successfully revoked certificate")

    # ------------------ internals ------------------
    def _build_client(self, jwk: jose.JWKRSA, directory_url: str, account_url: Optional[str] = None) -> client.ClientV2:
        net = client.ClientNetwork(jwk, user_agent=USER_AGENT)
        if account_url:
            net.account = messages.RegistrationResource(uri=account_url, body=messages.Registration())
        directory = messages.Directory.from_json(net.get(directory_url).json())
        return client.ClientV2(directory, net=net)

    def _register(self, jwk: jose.JWKRSA, directory_url: str, email: str, only_return_existing: bool = False):
        acme_client = self._build_client(jwk, directory_url)
        fields = {"terms_of_service_agreed": True}
        if only_return_existing:
            fields["only_return_existing"] = True
        registration = messages.NewRegistration.from_data(email=email or None, **fields)
        try:
            regr = acme_client.new_account(registration)
        except acme_errors.ConflictError as e:
            # The key is already registered; the server points at its account
            regr = acme_client.query_registration(
                messages.RegistrationResource(uri=e.location, body=messages.Registration())
            )
        return acme_client, regr

    def _bind(self, account: Account, jwk: jose.JWKRSA, acme_client: client.ClientV2):
        self.account = account
        self._jwk = jwk
        self._client = acme_client
        self.state = OrderState.ACCOUNT_READY
        self.failure = None

    def _require_account(self):
        if self._client is None:
            raise StateError("ACME client not initialized. Please load or create an account first.")

    def _fail(self, reason: str):
        self.state = OrderState.FAILED
        self.failure = reason

    @contextmanager
    def _step(self, step: str, domains: Iterable[str] = ()):
        domains = list(domains)
        where = f" for domains {', '.join(domains)}" if domains else ""
        try:
            yield
        except CertManagerError as e:
            self.logger.error(f"{step} failed{where}: {e}")
            self._fail(f"{step}: {e}")
            raise
        except requests.exceptions.RequestException as e:
            self.logger.error(f"{step} failed{where}: {e}")
            self._fail(f"{step}: {e}")
            raise TransportError(f"{step} failed{where}: {e}") from e
        except (acme_errors.Error, jose.errors.Error) as e:
            self.logger.error(f"{step} failed{where}: {e}")
            self._fail(f"{step}: {e}")
            raise ProtocolError(f"{step} failed{where}: {e}", step=step, domains=domains) from e

    def _check_csr(self, csr: str, domains: List[str]):
        # The server builds the order from the CSR, not from ``domains``
        try:
            names = csr_names(csr)
        except ValueError as e:
            self._fail(f"Order creation: {e}")
            raise ProtocolError(f"CSR is not valid PEM: {e}", step="Order creation", domains=domains) from e

        if {n.lower() for n in names} != {d.lower() for d in domains}:
            self._fail("Order creation: CSR names do not match requested domains")
            raise ProtocolError(
                f"CSR names ({', '.join(names)}) do not match requested domains ({', '.join(domains)})",
                step="Order creation", domains=domains,
            )

    def _fetch_authorizations(self, orderr: messages.OrderResource) -> List[messages.AuthorizationResource]:
        self.logger.info(f"Getting authorizations for order: {orderr.uri}")
        return [self._client.poll(authzr)[0] for authzr in orderr.authorizations]

    def _dns_challenges(self, authzrs: List[messages.AuthorizationResource], domains: List[str]) -> List[Challenge]:
        by_domain = {}
        for authzr in authzrs:
            identifier = authzr.body.identifier.value
            if authzr.body.wildcard:
                identifier = f"*.{identifier}"
            by_domain[identifier.lower()] = authzr

        unexpected = sorted(set(by_domain) - {d.lower() for d in domains})
        if unexpected:
            raise ProtocolError(
                f"Order contains authorizations for unrequested names: {', '.join(unexpected)}",
                step="Authorization retrieval", domains=domains,
            )

        found = []
        for domain in domains:
            authzr = by_domain.get(domain.lower())
            if authzr is None:
                raise ProtocolError(
                    f"No authorization returned for {domain}",
                    step="Authorization retrieval", domains=domains,
                )

            challb = next(
                (c for c in authzr.body.challenges if isinstance(c.chall, challenges.DNS01)), None
            )
            if challb is None:
                raise ProtocolError(
                    f"No DNS-01 challenge found for {domain}",
                    step="Authorization retrieval", domains=domains,
                )

            self.logger.info(f"Found DNS-01 challenge for {domain}")
            found.append(
                Challenge(
                    url=challb.uri,
                    token=jose.b64encode(challb.chall.token).decode("ascii"),
                    status=challb.status.name,
                    domain=domain,
                    key_authorization=challb.chall.key_authorization(self._jwk),
                    resource=challb,
                )
            )
        return found

    def _diagnose(self, order: CertificateOrder) -> List[Dict[str, Any]]:
        """Collect order and authorization state after a failed validation.

        Best effort: a failure here is logged and never replaces the error
        that triggered it.
        """
        details: List[Dict[str, Any]] = []

        try:
            response = self._client._post_as_get(order.url)
            body = messages.Order.from_json(response.json())
            entry = {"order": order.url, "status": body.status.name if body.status else None}
            if body.error:
                entry["error"] = str(body.error)
            self.logger.error(f"Order status details: {entry}")
            details.append(entry)
        except Exception as e:  # noqa: BLE001
            self.logger.error(f"Failed to get order details: {e}")

        try:
            for index, authzr in enumerate(order.resource.authorizations, start=1):
                authzr, _ = self._client.poll(authzr)
                entry = {
                    "domain": authzr.body.identifier.value,
                    "status": authzr.body.status.name,
                    "challenges": [],
                }
                self.logger.error(f"Authorization {index} status: {entry['status']}")
                for challb in authzr.body.challenges:
                    chall_entry = {"type": challb.chall.typ, "status": challb.status.name}
                    self.logger.error(f"  Challenge ({challb.chall.typ}): {challb.status.name}")
                    if challb.error:
                        chall_entry["error"] = str(challb.error)
                        self.logger.error(f"    Error: {challb.error}")
                    if challb.validated:
                        chall_entry["validated"] = str(challb.validated)
                    entry["challenges"].append(chall_entry)
                details.append(entry)
        except Exception as e:  # noqa: BLE001
            self.logger.error(f"Failed to get authorization details: {e}")

        return details

    def _validation_failure(self, order: CertificateOrder, error: Exception, details: List[Dict[str, Any]]) -> Exception:
        domains = ", ".join(order.domains)
        if isinstance(error, DeadlineExceeded):
            error.details = details
            return error
        if isinstance(error, acme_errors.TimeoutError):
            timed_out = DeadlineExceeded(f"Order {order.url} for {domains} did not become valid in time")
            timed_out.details = details
            return timed_out
        if isinstance(error, acme_errors.ValidationError):
            return ValidationError(f"Order {order.url} failed validation for {domains}: {error}", details)
        if isinstance(error, requests.exceptions.RequestException):
            return TransportError(f"Order validation failed for domains {domains}: {error}")
        if isinstance(error, CertManagerError):
            return error
        return ProtocolError(f"Order validation failed for domains {domains}: {error}", "Order validation", order.domains)
