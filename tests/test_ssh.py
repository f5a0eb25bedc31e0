import time

import paramiko
import pytest

from vos_cert.ssh import CommandKind, ShellSession, ShellState, VOSShell

CSR = (
    "-----BEGIN CERTIFICATE REQUEST-----\r\n"
    "MIIBWTCBwwIBADAaMRgwFgYDVQQDDA9jdWNtLmV4YW1wbGUuY29t\r\n"
    "-----END CERTIFICATE REQUEST-----\r\n"
)


class FakeChannel:
    def __init__(self, banner=(), responses=None):
        self.queue = [chunk.encode() for chunk in banner]
        self.responses = responses or {}
        self.sent = []
        self.closed = False
        self.eof_received = False
        self.close_after_send = False
        self.broken_on = set()

    def on_send(self, text):
        if text in self.broken_on:
            raise OSError("Socket is closed")
        self.sent.append(text)
        for chunk in self.responses.get(text, ()):
            self.queue.append(chunk.encode())
        if self.close_after_send:
            self.closed = True

    def recv_ready(self):
        return bool(self.queue)

    def recv(self, size):
        return self.queue.pop(0)

    def recv_stderr_ready(self):
        return False

    def recv_stderr(self, size):
        return b""


class FakeClient:
    def __init__(self, channel, connect_error=None):
        self.channel = channel
        self.connect_error = connect_error
        self.connect_kwargs = None
        self.close_count = 0
        self.connect_delay = 0

    def set_missing_host_key_policy(self, policy):
        self.policy = policy

    def connect(self, host, **kwargs):
        self.connect_kwargs = dict(kwargs, host=host)
        time.sleep(self.connect_delay)
        if self.connect_error:
            raise self.connect_error

    def close(self):
        self.close_count += 1


class FakeInteraction:
    def __init__(self, client, timeout=60, display=True):
        self.channel = client.channel
        self.close_count = 0
        FakeInteraction.instances.append(self)

    def send(self, send_string, newline=None):
        assert newline == "\r\n"
        self.channel.on_send(send_string)

    def close(self):
        self.close_count += 1


@pytest.fixture
def remote(monkeypatch):
    """Installs a scripted VOS host and returns the fake client."""
    state = {}
    FakeInteraction.instances = []

    def install(banner=("Welcome to the Platform Command Line Interface\r\n",), responses=None, connect_error=None):
        channel = FakeChannel(banner, responses)
        client = FakeClient(channel, connect_error)
        state["client"] = client
        monkeypatch.setattr("vos_cert.ssh.paramiko.SSHClient", lambda: client)
        monkeypatch.setattr("vos_cert.ssh.SSHClientInteraction", FakeInteraction)
        return client

    return install


@pytest.fixture
def shell(logger):
    return VOSShell("cucm.example.com", "administrator", "secret", logger, prompt_delay=0)


def session(logger, command=None, timeout=5, **kwargs):
    return ShellSession(
        "cucm.example.com",
        "administrator",
        "secret",
        logger,
        command=command,
        timeout=timeout,
        prompt_delay=0,
        poll_interval=0.01,
        **kwargs,
    )


def test_command_kind():
    assert CommandKind.for_command(None) is CommandKind.PROBE
    assert CommandKind.for_command("") is CommandKind.PROBE
    assert CommandKind.for_command("utils service restart Cisco Tomcat") is CommandKind.SERVICE_RESTART
    assert CommandKind.for_command("show status") is CommandKind.GENERIC


def test_restart_succeeds_after_started_and_prompt(remote, logger):
    command = "utils service restart Cisco Tomcat"
    client = remote(
        responses={
            command: [
                f"{command}\r\n",
                "Do not press Ctrl+C while the service is restarting.\r\n",
                "Service Manager is running\r\nCisco Tomcat[STOPPING]\r\nCisco Tomcat[STARTING]\r\n",
                "Cisco Tomcat[STARTED]\r\n",
                "admin:",
            ]
        }
    )
    seen = []

    result = session(logger, command, on_data=lambda chunk, output: seen.append((chunk, output))).execute()

    assert result.success
    assert result.state is ShellState.SUCCEEDED
    assert result.error is None
    assert "[STARTED]" in result.output
    assert result.output.endswith("admin:")
    assert client.channel.sent == [command]
    assert [chunk for chunk, _ in seen][-1] == "admin:"
    assert seen[-1][1] == result.output


def test_restart_failure_resolves_immediately(remote, logger):
    command = "utils service restart Cisco Tomcat"
    client = remote(
        responses={
            command: [
                "Cisco Tomcat[FAILED]\r\n",
                "Cisco Tomcat[STARTED]\r\n",
                "admin:",
            ]
        }
    )

    result = session(logger, command).execute()

    assert not result.success
    assert result.state is ShellState.FAILED
    assert result.error == "Service restart failed"
    assert "[STARTED]" not in result.output
    assert client.channel.queue


def test_generic_command_waits_for_echo_and_prompt(remote, logger):
    client = remote(
        banner=("admin:",),
        responses={"show status": ["show status\r\n", "Host Name : cucm\r\n", "admin:"]},
    )

    result = session(logger, "show status").execute()

    assert result.success
    assert result.output == "admin:show status\r\nHost Name : cucm\r\nadmin:"
    assert client.channel.sent == ["show status"]


def test_chunks_reach_observer_in_order(remote, logger):
    chunks = ["show version active\r\n", "Active Master Version: 15.0\r\n", "admin:"]
    remote(banner=(), responses={"show version active": chunks})
    seen = []

    session(logger, "show version active", on_data=lambda chunk, output: seen.append(chunk)).execute()

    assert seen == chunks


def test_probe_succeeds_on_prompt(remote, logger):
    client = remote(banner=(), responses={"": ["\r\nadmin:"]})

    result = session(logger).execute()

    assert result.success
    assert result.message == "Successfully connected to Cisco VOS CLI"
    assert client.channel.sent == [""]


def test_probe_timeout_without_data(remote, logger):
    remote(banner=())

    result = session(logger, timeout=0.2).execute()

    assert result.state is ShellState.TIMED_OUT
    assert result.error == "Connection timeout after 0.2 seconds"
    assert result.message == "Connected but received no data from server"


def test_probe_timeout_reports_partial_output(remote, logger):
    remote(banner=("Welcome\r\n",))

    result = session(logger, timeout=0.2).execute()

    assert result.state is ShellState.TIMED_OUT
    assert result.message == "Connected but did not receive expected VOS CLI prompt (admin:): Welcome\r\n"


def test_timeout_keeps_partial_output(remote, logger):
    remote(banner=(), responses={"utils dbreplication runtimestate": ["Checking replication...\r\n"]})

    result = session(logger, "utils dbreplication runtimestate", timeout=0.3).execute()

    assert not result.success
    assert result.state is ShellState.TIMED_OUT
    assert result.error == "Command execution timeout after 0.3 seconds"
    assert result.output == "Checking replication...\r\n"


def test_connect_error(remote, logger):
    client = remote(connect_error=paramiko.AuthenticationException("Authentication failed."))

    result = session(logger, "show status").execute()

    assert result.state is ShellState.FAILED
    assert result.error == "Connection error: Authentication failed."
    assert client.close_count == 1
    assert FakeInteraction.instances == []


def test_connection_closed_unexpectedly(remote, logger):
    client = remote(banner=())
    client.channel.close_after_send = True

    result = session(logger, "show status").execute()

    assert result.state is ShellState.FAILED
    assert result.error == "Connection closed unexpectedly"


def test_teardown_happens_exactly_once(remote, logger):
    client = remote(banner=(), responses={"show status": ["show status\r\nadmin:"]})
    shell_session = session(logger, "show status")

    first = shell_session.execute()
    second = shell_session.resolve(ShellState.FAILED, error="late")

    assert second is first
    assert first.success
    assert client.close_count == 1
    assert FakeInteraction.instances[0].close_count == 1


def test_terminal_state_is_final(logger):
    shell_session = session(logger, "show status")
    shell_session.resolve(ShellState.TIMED_OUT, error="timeout")

    assert not shell_session.transition(ShellState.STREAMING)
    assert shell_session.state is ShellState.TIMED_OUT


def test_test_connection(remote, shell):
    remote(banner=("admin:",))
    result = shell.test_connection(timeout=5)
    assert result.success


def test_generate_and_show_csr(remote, shell):
    client = remote(
        banner=(),
        responses={
            "set csr gen tomcat": [
                "set csr gen tomcat\r\n",
                "WARNING: Existing CSR will be overwritten\r\nProceed? (yes|no)",
            ],
            "yes": ["\r\nSuccessfully Generated CSR for tomcat\r\nadmin:"],
            "show csr own tomcat": ["show csr own tomcat\r\n", CSR + "admin:"],
        },
    )

    assert shell.generate_csr("tomcat").success
    assert shell.show_csr("tomcat") == CSR.replace("\r", "").strip()
    assert client.channel.sent == ["set csr gen tomcat", "yes", "", "show csr own tomcat"]


def test_show_csr_without_request(remote, shell):
    remote(banner=(), responses={"show csr own tomcat": ["show csr own tomcat\r\nNo CSR found\r\nadmin:"]})
    assert shell.show_csr("tomcat") is None


def test_import_certificate_pastes_pem(remote, shell, certificate_pem):
    pem = certificate_pem.strip()
    client = remote(
        banner=(),
        responses={
            "set cert import trust tomcat": [
                "set cert import trust tomcat\r\n",
                "Paste the Certificate and Hit Enter\r\n",
            ],
            pem: ["\r\nImport of trust certificate is successful\r\nadmin:"],
        },
    )

    result = shell.import_certificate("tomcat", certificate_pem, trust=True, timeout=5)

    assert result.success
    assert client.channel.sent == ["set cert import trust tomcat", pem, ""]


def test_restart_service(remote, shell):
    command = "utils service restart Cisco Tomcat"
    remote(banner=(), responses={command: [f"{command}\r\nCisco Tomcat[STARTED]\r\n", "admin:"]})

    result = shell.restart_service(timeout=5)

    assert result.success


def test_connect_counts_against_deadline(remote, logger):
    client = remote()
    client.connect_delay = 1.0

    started = time.monotonic()
    result = session(logger, "show status", timeout=0.2).execute()

    assert time.monotonic() - started < 0.8
    assert result.state is ShellState.TIMED_OUT
    assert result.error == "Connection timeout after 0.2 seconds"


def test_connect_timeouts_are_capped_by_deadline(remote, logger):
    client = remote(banner=(), responses={"show status": ["show status\r\nadmin:"]})

    session(logger, "show status", timeout=5).execute()

    assert client.connect_kwargs["timeout"] <= 5
    assert client.connect_kwargs["banner_timeout"] <= 5
    assert client.connect_kwargs["auth_timeout"] <= 5


def test_no_response_window(remote, logger, monkeypatch):
    monkeypatch.setattr("vos_cert.ssh.RESPONSE_BUFFER", 10)
    monkeypatch.setattr("vos_cert.ssh.MIN_RESPONSE_WINDOW", 0.2)
    remote(banner=(), responses={"show tech all": ["show tech all\r\n", "Collecting...\r\n"]})

    result = session(logger, "show tech all", timeout=5).execute()

    assert result.state is ShellState.TIMED_OUT
    assert result.error == "Command execution timeout - no response from server after 0.2 seconds"
    assert result.output == "show tech all\r\nCollecting...\r\n"


def test_broken_transport_while_answering_prompt(remote, shell, certificate_pem):
    pem = certificate_pem.strip()
    client = remote(
        banner=(),
        responses={
            "set cert import own tomcat": [
                "set cert import own tomcat\r\n",
                "Paste the Certificate and Hit Enter\r\n",
            ],
        },
    )
    client.channel.broken_on.add(pem)

    result = shell.import_certificate("tomcat", certificate_pem, timeout=5)

    assert result.state is ShellState.FAILED
    assert result.error == "Failed to send input: Socket is closed"
    assert result.output == "set cert import own tomcat\r\nPaste the Certificate and Hit Enter\r\n"
    assert client.close_count == 1


def test_observer_failure_fails_session(remote, logger):
    remote(banner=(), responses={"show status": ["show status\r\n", "admin:"]})

    def observer(chunk, output):
        raise BrokenPipeError("stdout closed")

    result = session(logger, "show status", on_data=observer).execute()

    assert result.state is ShellState.FAILED
    assert result.error == "Output handler failed: stdout closed"
    assert result.output == "show status\r\n"
