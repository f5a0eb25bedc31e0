from abc import ABC, abstractmethod
from typing import Callable

from vos_cert.logger import Logger


class DNSProvider(ABC):
    """Publishes and removes the TXT records ACME validates against."""

    def __init__(self, logger: Logger):
        self.logger = logger
        self.log_dir = logger.log_dir

    @abstractmethod
    def create_verification(
        self, dns_name: str, dns_value: str, record_type: str
    ) -> str:
        pass

    @abstractmethod
    def delete_verification(self, record_id: str):
        pass


class ManualDNSProvider(DNSProvider):
    """Asks the operator to publish records by hand.

    Nothing here checks propagation: the operator confirms once the record
    is visible.
    """

    def __init__(self, logger: Logger, prompt: Callable[[str], str] = input):
        super().__init__(logger)
        self.prompt = prompt

    def create_verification(
        self, dns_name: str, dns_value: str, record_type: str
    ) -> str:
        self.logger.info(f"Waiting for {record_type} record {dns_name} to be published")
        print(f"\nCreate this {record_type} record, then press Enter:")
        print(f"  Name:  {dns_name}")
        print(f"  Value: {dns_value}")
        self.prompt("> ")

        record_id = f"{record_type}:{dns_name}:{dns_value}"
        self.logger.info(f"Operator confirmed DNS Record: {record_type}:{dns_name}")
        return record_id

    def delete_verification(self, record_id: str):
        record_type, dns_name, dns_value = record_id.split(":", 2)
        self.logger.info(f"Reminding operator to delete {record_type} record {dns_name}")
        print(f"\nThe {record_type} record {dns_name} ({dns_value}) can now be deleted.")
