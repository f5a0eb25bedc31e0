import logging
import os
from os import path


class Logger:
    def __init__(self, fqdn: str, verbose: bool = False, log_root: str = "logs"):
        self.log_dir = path.join(log_root, fqdn)
        os.makedirs(self.log_dir, exist_ok=True)

        self.logger = logging.getLogger(f"vos_cert.{fqdn}")
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        # Loggers are process-wide; only attach handlers the first time
        if self.logger.handlers:
            return

        log_format = logging.Formatter("%(asctime)s:%(levelname)s:%(message)s")

        # File handler
        file_handler = logging.FileHandler(path.join(self.log_dir, "certificate.log"))
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(log_format)
        self.logger.addHandler(file_handler)

        # Stream handler
        stream_handler = logging.StreamHandler()
        stream_handler.setLevel(logging.INFO if verbose else logging.WARN)
        stream_handler.setFormatter(log_format)
        self.logger.addHandler(stream_handler)

    def debug(self, message: str):
        self.logger.debug(message)

    def info(self, message: str):
        self.logger.info(message)

    def warning(self, message: str):
        self.logger.warning(message)

    def error(self, message: str):
        self.logger.error(message)
