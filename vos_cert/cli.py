#!/usr/bin/env python3
import argparse
import json
import re
import sys
from typing import List, Optional

from cryptography import x509
from dotenv import load_dotenv

from vos_cert.acme_client import AcmeOrchestrator
from vos_cert.certificate import CertificateInfo, CertificateInspector
from vos_cert.config import Settings
from vos_cert.dns import ManualDNSProvider
from vos_cert.errors import CertManagerError, ValidationError
from vos_cert.logger import Logger
from vos_cert.ssh import VOSShell
from vos_cert.storage import FileAccountStore

PEM_PATTERN = re.compile(r"(-----[BEGIN \S\ ]+?-----[\S\s]+?-----[END \S\ ]+?-----)")

EXIT_CONFIG = 1
EXIT_NOT_FOUND = 2
EXIT_ACME = 3
EXIT_DNS = 4
EXIT_VALIDATION = 5
EXIT_SSH = 6
EXIT_CSR = 8


def _echo(chunk: str, output: str):
    sys.stdout.write(chunk)
    sys.stdout.flush()


def _shell(settings: Settings, logger: Logger, fqdn: str) -> Optional[VOSShell]:
    if not settings.uc_user or not settings.uc_pass:
        logger.error("UC_USER or UC_PASS not set in environment")
        return None
    return VOSShell(fqdn, settings.uc_user, settings.uc_pass, logger, port=settings.ssh_port)


def cmd_inspect(args, settings: Settings, logger: Logger, fqdn: str) -> int:
    info = CertificateInspector(settings, logger).inspect(fqdn)
    if info is None:
        print(f"No certificate found for {fqdn}")
        return EXIT_NOT_FOUND
    print(json.dumps(info.to_dict(), indent=2))
    return 0


def cmd_test_ssh(args, settings: Settings, logger: Logger, fqdn: str) -> int:
    shell = _shell(settings, logger, fqdn)
    if shell is None:
        return EXIT_CONFIG

    result = shell.test_connection()
    if result.success:
        print(result.message)
        return 0
    print(f"{result.error}\n{result.message or ''}".rstrip())
    return EXIT_SSH


def cmd_ssh(args, settings: Settings, logger: Logger, fqdn: str) -> int:
    shell = _shell(settings, logger, fqdn)
    if shell is None:
        return EXIT_CONFIG

    result = shell.run(args.command, timeout=args.timeout, on_data=_echo)
    print()
    if not result.success:
        print(result.error)
        return EXIT_SSH
    return 0


def cmd_restart(args, settings: Settings, logger: Logger, fqdn: str) -> int:
    shell = _shell(settings, logger, fqdn)
    if shell is None:
        return EXIT_CONFIG

    result = shell.restart_service(args.service, on_data=_echo)
    print()
    if not result.success:
        print(result.error)
        return EXIT_SSH
    logger.info(f"{args.service} restarted on {fqdn}")
    return 0


def cmd_issue(args, settings: Settings, logger: Logger, fqdn: str) -> int:
    store = FileAccountStore(settings.accounts_dir, settings.environment)
    inspector = CertificateInspector(settings, logger)

    if not args.force:
        current = inspector.inspect(fqdn)
        if current and current.is_valid and current.days_until_expiry > settings.renew_days:
            logger.info(
                f"Certificate for {fqdn} is valid for {current.days_until_expiry} more days, skipping renewal"
            )
            return 0

    if not settings.email:
        logger.error("Let's Encrypt email not set in environment")
        return EXIT_CONFIG

    shell = None
    if args.ssh:
        shell = _shell(settings, logger, fqdn)
        if shell is None:
            return EXIT_CONFIG

    # Generate CSR
    csr = None
    if args.csr:
        with open(args.csr, "r") as csr_file:
            csr = csr_file.read()
    elif shell:
        logger.info("Generating CSR via SSH")
        if not shell.generate_csr("tomcat").success:
            logger.error("CSR generation failed")
            return EXIT_CSR
        csr = shell.show_csr("tomcat")
        if not csr:
            logger.error("Invalid CSR format")
            return EXIT_CSR
        logger.info("CSR Generated for tomcat")

    orchestrator = AcmeOrchestrator(settings, store, logger, connection_id=args.connection_id)
    if orchestrator.load_account(fqdn) is None:
        logger.info("Creating new Let's Encrypt account")
        orchestrator.create_account(settings.email, fqdn)

    order = orchestrator.request_certificate(csr, [fqdn])

    dns_provider = ManualDNSProvider(logger)
    record_ids: List[str] = []
    try:
        for challenge in order.challenges:
            try:
                record_ids.append(
                    dns_provider.create_verification(
                        challenge.record_name, orchestrator.get_dns_record_value(challenge), "TXT"
                    )
                )
            except (EOFError, OSError) as e:
                logger.error(f"DNS record creation failed for {challenge.record_name}: {e}")
                return EXIT_DNS
        for challenge in order.challenges:
            orchestrator.complete_challenge(challenge)
        order = orchestrator.wait_for_order_completion(order)
        fullchain = orchestrator.finalize_certificate(order)
    finally:
        # Clean up DNS verification
        for record_id in record_ids:
            dns_provider.delete_verification(record_id)

    cert_path = store.save_certificate(fqdn, fullchain, order.private_key)
    logger.info(f"Certificate saved to {cert_path}")

    if shell is None:
        print(cert_path)
        return 0

    # Install certificates
    certs = PEM_PATTERN.findall(fullchain)
    if args.ca and len(certs) > 1:
        upload_ca = shell.import_certificate("tomcat", certs[1], trust=True)
        logger.info(f"CA certificate installation: {'ok' if upload_ca.success else upload_ca.error}")

    upload_cert = shell.import_certificate("tomcat", certs[0])
    if not upload_cert.success:
        logger.error(f"Certificate installation failed: {upload_cert.error}")
        return EXIT_SSH

    restart = shell.restart_service("Cisco Tomcat", on_data=_echo)
    if not restart.success:
        logger.error(f"Tomcat restart failed: {restart.error}")
        return EXIT_SSH
    logger.info("Certificate installed. Tomcat service restarted.")

    issued = CertificateInfo.from_certificate(x509.load_pem_x509_certificate(certs[0].encode()))
    live = inspector.inspect(fqdn)
    if live and live.fingerprint256 == issued.fingerprint256:
        logger.info(f"New certificate is live on {fqdn} ({live.source})")
    else:
        logger.warning(f"{fqdn} is not serving the new certificate yet")
    return 0


def cmd_revoke(args, settings: Settings, logger: Logger, fqdn: str) -> int:
    store = FileAccountStore(settings.accounts_dir, settings.environment)
    orchestrator = AcmeOrchestrator(settings, store, logger, connection_id=args.connection_id)
    if orchestrator.load_account(fqdn) is None:
        logger.error(f"No account found for {fqdn}")
        return EXIT_NOT_FOUND

    certificate = store.load_certificate(fqdn)
    if certificate is None:
        logger.error(f"No local certificate found for {fqdn}")
        return EXIT_NOT_FOUND

    orchestrator.revoke_certificate(certificate, args.reason)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Certificate management for Cisco UC")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose output"
    )
    subparsers = parser.add_subparsers(dest="command_name", required=True)

    def add_host(sub):
        sub.add_argument("--host", type=str, required=True, help="Hostname of your server")
        sub.add_argument("--domain", type=str, help="Domain of your server, appended to --host")

    inspect = subparsers.add_parser("inspect", help="Show the certificate a host presents")
    add_host(inspect)
    inspect.set_defaults(handler=cmd_inspect)

    test_ssh = subparsers.add_parser("test-ssh", help="Check that the VOS CLI answers over SSH")
    add_host(test_ssh)
    test_ssh.set_defaults(handler=cmd_test_ssh)

    ssh = subparsers.add_parser("ssh", help="Run one VOS CLI command")
    add_host(ssh)
    ssh.add_argument("--command", required=True, help="CLI command, e.g. 'show status'")
    ssh.add_argument("--timeout", type=int, default=60, help="Seconds before giving up")
    ssh.set_defaults(handler=cmd_ssh)

    restart = subparsers.add_parser("restart", help="Restart a VOS service")
    add_host(restart)
    restart.add_argument("--service", default="Cisco Tomcat", help="Service name")
    restart.set_defaults(handler=cmd_restart)

    issue = subparsers.add_parser("issue", help="Issue (and optionally install) a certificate")
    add_host(issue)
    issue.add_argument(
        "--ssh",
        action="store_true",
        help="Generate the CSR on the VOS host and install the certificate over SSH",
    )
    issue.add_argument("-ca", "--ca", action="store_true", help="Install CA certificate")
    issue.add_argument("--force", action="store_true", help="Renew even if the current certificate is fresh")
    issue.add_argument("--csr", type=str, help="Use this CSR file instead of generating one")
    issue.add_argument("--connection-id", type=int, default=0, help="Account key for this connection")
    issue.set_defaults(handler=cmd_issue)

    revoke = subparsers.add_parser("revoke", help="Revoke the locally stored certificate")
    add_host(revoke)
    revoke.add_argument("--reason", type=int, default=0, help="RFC 5280 revocation reason code")
    revoke.add_argument("--connection-id", type=int, default=0, help="Account key for this connection")
    revoke.set_defaults(handler=cmd_revoke)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    # Setup FQDN
    fqdn = f"{args.host}.{args.domain}" if args.domain else args.host

    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_CONFIG

    # Initialize logger
    logger = Logger(fqdn, args.verbose, settings.log_dir)

    try:
        return args.handler(args, settings, logger, fqdn)
    except ValidationError as e:
        logger.error(f"Validation failed: {str(e)}")
        for detail in e.details:
            logger.error(json.dumps(detail))
        return EXIT_VALIDATION
    except CertManagerError as e:
        logger.error(f"ACME request failed: {str(e)}")
        return EXIT_ACME
    except Exception as e:
        logger.error(f"An error occurred: {str(e)}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
