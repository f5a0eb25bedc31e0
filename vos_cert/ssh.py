import codecs
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

import paramiko
from paramiko_expect import SSHClientInteraction

from vos_cert.deadline import race
from vos_cert.errors import DeadlineExceeded
from vos_cert.logger import Logger

PROMPT = "admin:"
STARTED = "[STARTED]"
STARTING = "[STARTING]"
FAILURE_MARKERS = ("[FAILED]", "ERROR")
# Questions the VOS CLI asks in the middle of a command
PAYLOAD_PROMPTS = ("Paste the Certificate and Hit Enter", "(yes|no)")

LINE_END = "\r\n"
DEFAULT_TIMEOUT = 60
PROBE_TIMEOUT = 45
PROMPT_DELAY = 5
RESPONSE_BUFFER = 10
MIN_RESPONSE_WINDOW = 30
CONNECT_TIMEOUT = 20
BUFFER_SIZE = 4096

CSR_PATTERN = re.compile(
    r"-{3,}BEGIN CERTIFICATE REQUEST-{3,}[\s\S]+?-{3,}END CERTIFICATE REQUEST-{3,}"
)

OutputObserver = Callable[[str, str], None]


class CommandKind(Enum):
    SERVICE_RESTART = "service_restart"
    GENERIC = "generic"
    PROBE = "probe"

    @classmethod
    def for_command(cls, command: Optional[str]) -> "CommandKind":
        if not command:
            return cls.PROBE
        if "service restart" in command:
            return cls.SERVICE_RESTART
        return cls.GENERIC


class ShellState(Enum):
    CONNECTING = "connecting"
    SHELL_OPEN = "shell_open"
    AWAITING_PROMPT = "awaiting_prompt"
    COMMAND_SENT = "command_sent"
    STREAMING = "streaming"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset({ShellState.SUCCEEDED, ShellState.FAILED, ShellState.TIMED_OUT})


# Completion predicates. Each returns True (done, success), False (done,
# failure) or None (keep streaming).

def restart_outcome(chunk: str, output: str, command: str) -> Optional[bool]:
    if STARTED in output and PROMPT in chunk:
        return True
    if any(marker in output for marker in FAILURE_MARKERS):
        return False
    return None


def generic_outcome(chunk: str, output: str, command: str) -> Optional[bool]:
    # Can match early if the command text shows up in unrelated output
    if PROMPT in chunk and command in output:
        return True
    return None


def probe_outcome(chunk: str, output: str, command: str) -> Optional[bool]:
    return True if PROMPT in output else None


COMPLETION = {
    CommandKind.SERVICE_RESTART: restart_outcome,
    CommandKind.GENERIC: generic_outcome,
    CommandKind.PROBE: probe_outcome,
}


@dataclass(frozen=True)
class ShellResult:
    success: bool
    state: ShellState
    output: str = ""
    error: Optional[str] = None
    message: Optional[str] = None


class ShellSession:
    """Drives one command over one SSH connection to a single terminal state.

    The session owns its transport. Whatever ends the run first (completion
    marker, either timer, remote close or a transport error) resolves it;
    the transport is torn down exactly once and later events are ignored.
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        logger: Logger,
        command: Optional[str] = None,
        port: int = 22,
        timeout: float = DEFAULT_TIMEOUT,
        on_data: Optional[OutputObserver] = None,
        payload: Optional[str] = None,
        prompt_delay: float = PROMPT_DELAY,
        poll_interval: float = 0.1,
    ):
        self.host = host
        self.username = username
        self.password = password
        self.logger = logger
        self.command = command or ""
        self.port = port
        self.timeout = timeout
        self.on_data = on_data
        self.payload = payload
        self.prompt_delay = prompt_delay
        self.poll_interval = poll_interval

        self.kind = CommandKind.for_command(command)
        self.state = ShellState.CONNECTING
        self.result: Optional[ShellResult] = None

        self._chunks: List[str] = []
        self._client: Optional[paramiko.SSHClient] = None
        self._interact: Optional[SSHClientInteraction] = None
        self._closed = False
        self._nudged = False
        self._sent_at = 0.0
        self._payload_sent = False
        self._starting_seen = False
        self._decoders = {
            stream: codecs.getincrementaldecoder("utf-8")(errors="replace")
            for stream in ("stdout", "stderr")
        }

    @property
    def output(self) -> str:
        return "".join(self._chunks)

    def transition(self, state: ShellState) -> bool:
        if self.state in TERMINAL_STATES:
            return False
        self.state = state
        return True

    def resolve(self, state: ShellState, error: Optional[str] = None, message: Optional[str] = None) -> ShellResult:
        if self.result is not None:
            return self.result

        self.transition(state)
        self.result = ShellResult(
            success=state is ShellState.SUCCEEDED,
            state=state,
            output=self.output,
            error=error,
            message=message,
        )
        self._teardown()
        return self.result

    def execute(self) -> ShellResult:
        try:
            return self._execute()
        finally:
            self._teardown()

    def _execute(self) -> ShellResult:
        deadline = time.monotonic() + self.timeout

        # Connecting and opening the shell count against the same deadline
        try:
            remaining = deadline - time.monotonic()
            self._client = race(
                self._connect, remaining, min(CONNECT_TIMEOUT, remaining),
                description="SSH connection", on_abandoned=lambda client: client.close(),
            )
        except DeadlineExceeded:
            return self._on_deadline()
        except (paramiko.SSHException, OSError) as e:
            self.logger.error(f"SSH connection error to {self.host}: {e}")
            return self.resolve(ShellState.FAILED, error=f"Connection error: {e}")

        self.transition(ShellState.SHELL_OPEN)
        try:
            self._interact = race(
                self._open_shell, deadline - time.monotonic(),
                description="Shell start", on_abandoned=lambda interact: interact.close(),
            )
        except DeadlineExceeded:
            return self._on_deadline()
        except (paramiko.SSHException, OSError) as e:
            return self.resolve(ShellState.FAILED, error=f"Failed to start shell: {e}")

        self.logger.info(f"Shell started for {self.host}, waiting for CLI prompt...")
        self.transition(ShellState.AWAITING_PROMPT)
        send_at = time.monotonic() + self.prompt_delay
        response_deadline: Optional[float] = None

        while self.result is None:
            now = time.monotonic()
            if now >= deadline:
                return self._on_deadline()
            if response_deadline is not None and now >= response_deadline:
                window = response_deadline - self._sent_at
                return self.resolve(
                    ShellState.TIMED_OUT,
                    error=f"Command execution timeout - no response from server after {window:g} seconds",
                )

            if now >= send_at and self.state is ShellState.AWAITING_PROMPT and not self._nudged:
                try:
                    response_deadline = self._send_command(now)
                except (paramiko.SSHException, OSError) as e:
                    return self.resolve(ShellState.FAILED, error=f"Failed to send command: {e}")

            chunks, closed = self._read()
            for chunk in chunks:
                self._on_chunk(chunk)

            if self.result is None and closed:
                self.logger.warning(f"Connection to {self.host} closed unexpectedly")
                return self.resolve(ShellState.FAILED, error="Connection closed unexpectedly")

            if not chunks:
                time.sleep(self.poll_interval)

        return self.result

    def _connect(self, timeout: float) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except (paramiko.SSHException, OSError):
            client.close()
            raise
        self.logger.info(f"SSH connection established to {self.host}")
        return client

    def _open_shell(self) -> SSHClientInteraction:
        return SSHClientInteraction(self._client, timeout=self.timeout, display=False)

    def _send_command(self, now: float) -> Optional[float]:
        self._sent_at = now
        if self.kind is CommandKind.PROBE:
            self.logger.info(f"Sending newline to {self.host} to trigger prompt")
            self._interact.send("", newline=LINE_END)
            self._nudged = True
            return None

        self.logger.info(f"Sending command to {self.host}: {self.command}")
        self._interact.send(self.command, newline=LINE_END)
        self.transition(ShellState.COMMAND_SENT)
        return now + max(self.timeout - RESPONSE_BUFFER, MIN_RESPONSE_WINDOW)

    def _read(self) -> Tuple[List[str], bool]:
        channel = self._interact.channel
        chunks = []

        if channel.recv_ready():
            data = channel.recv(BUFFER_SIZE)
            if data:
                chunks.append(self._decoders["stdout"].decode(data))

        if channel.recv_stderr_ready():
            data = channel.recv_stderr(BUFFER_SIZE)
            if data:
                text = self._decoders["stderr"].decode(data)
                self.logger.error(f"SSH command stderr from {self.host}: {text}")
                chunks.append(text)

        chunks = [chunk for chunk in chunks if chunk]
        closed = not chunks and (channel.closed or channel.eof_received)
        return chunks, closed

    def _on_chunk(self, chunk: str):
        if self.result is not None:
            return

        self._chunks.append(chunk)
        if self.state is ShellState.COMMAND_SENT:
            self.transition(ShellState.STREAMING)

        output = self.output
        self.logger.debug(f"Output from {self.host} ({len(output)} bytes): {chunk.strip()}")
        if self.on_data:
            try:
                self.on_data(chunk, output)
            except OSError as e:
                self.logger.error(f"Output handler failed for {self.host}: {e}")
                self.resolve(ShellState.FAILED, error=f"Output handler failed: {e}")
                return

        if self.kind is CommandKind.SERVICE_RESTART and STARTING in output and not self._starting_seen:
            self._starting_seen = True
            self.logger.info(f"{self.command} is starting on {self.host}")

        if self._payload_pending:
            if self.state is ShellState.STREAMING and any(p in output for p in PAYLOAD_PROMPTS):
                self._send_payload()
            return

        outcome = COMPLETION[self.kind](chunk, output, self.command)
        if outcome is True:
            self.logger.info(f"Command completed on {self.host}: {self.command or PROMPT}")
            message = "Successfully connected to Cisco VOS CLI" if self.kind is CommandKind.PROBE else None
            self.resolve(ShellState.SUCCEEDED, message=message)
        elif outcome is False:
            self.logger.error(f"{self.command} failed on {self.host}")
            self.resolve(ShellState.FAILED, error="Service restart failed")

    @property
    def _payload_pending(self) -> bool:
        return self.payload is not None and not self._payload_sent

    def _send_payload(self):
        self.logger.info(f"Answering interactive prompt on {self.host}")
        self._payload_sent = True
        try:
            self._interact.send(self.payload, newline=LINE_END)
            self._interact.send("", newline=LINE_END)
        except (paramiko.SSHException, OSError) as e:
            self.logger.error(f"Failed to send input to {self.host}: {e}")
            self.resolve(ShellState.FAILED, error=f"Failed to send input: {e}")

    def _on_deadline(self) -> ShellResult:
        output = self.output
        if self.state in (ShellState.CONNECTING, ShellState.SHELL_OPEN):
            self.logger.warning(f"SSH timeout for {self.host} while {self.state.value}")
            return self.resolve(
                ShellState.TIMED_OUT,
                error=f"Connection timeout after {self.timeout:g} seconds",
            )

        if self.kind is not CommandKind.PROBE:
            return self.resolve(
                ShellState.TIMED_OUT,
                error=f"Command execution timeout after {self.timeout:g} seconds",
            )

        self.logger.warning(f"SSH timeout for {self.host} - did not find {PROMPT} prompt")
        if output:
            message = f"Connected but did not receive expected VOS CLI prompt ({PROMPT}): {output[:500]}"
        else:
            message = "Connected but received no data from server"
        return self.resolve(
            ShellState.TIMED_OUT,
            error=f"Connection timeout after {self.timeout:g} seconds",
            message=message,
        )

    def _teardown(self):
        if self._closed:
            return
        self._closed = True

        if self._interact is not None:
            self._interact.close()
        if self._client is not None:
            self._client.close()


class VOSShell:
    """Administrative CLI of a Cisco VOS appliance (CUCM, IM&P, UCCX...)."""

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        logger: Logger,
        port: int = 22,
        prompt_delay: float = PROMPT_DELAY,
    ):
        self.host = host
        self.username = username
        self.password = password
        self.logger = logger
        self.port = port
        self.prompt_delay = prompt_delay

    def session(self, command: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT, **kwargs) -> ShellSession:
        return ShellSession(
            self.host,
            self.username,
            self.password,
            self.logger,
            command=command,
            port=self.port,
            timeout=timeout,
            prompt_delay=self.prompt_delay,
            **kwargs,
        )

    def test_connection(self, timeout: float = PROBE_TIMEOUT) -> ShellResult:
        self.logger.info(f"Testing SSH connection to {self.host}")
        return self.session(timeout=timeout).execute()

    def run(
        self,
        command: str,
        timeout: float = DEFAULT_TIMEOUT,
        on_data: Optional[OutputObserver] = None,
        payload: Optional[str] = None,
    ) -> ShellResult:
        self.logger.info(f"Executing command on {self.host}: {command}")
        result = self.session(command, timeout=timeout, on_data=on_data, payload=payload).execute()
        if not result.success:
            self.logger.error(f"Command '{command}' on {self.host} ended {result.state.value}: {result.error}")
        return result

    def generate_csr(self, service: str = "tomcat") -> ShellResult:
        return self.run(f"set csr gen {service}", payload="yes")

    def show_csr(self, service: str = "tomcat") -> Optional[str]:
        result = self.run(f"show csr own {service}")
        if not result.success:
            return None
        match = CSR_PATTERN.search(result.output.replace("\r", ""))
        return match.group(0) if match else None

    def import_certificate(
        self, service: str, certificate: str, trust: bool = False, timeout: float = 120
    ) -> ShellResult:
        kind = "trust" if trust else "own"
        return self.run(f"set cert import {kind} {service}", timeout=timeout, payload=certificate.strip())

    def restart_service(
        self,
        name: str = "Cisco Tomcat",
        timeout: float = 300,
        on_data: Optional[OutputObserver] = None,
    ) -> ShellResult:
        return self.run(f"utils service restart {name}", timeout=timeout, on_data=on_data)
