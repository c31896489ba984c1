import errno
import os
import socket
import tempfile
import unittest

import paramiko
import pytest

from deploy_agent.config import TransportConfig
from deploy_agent.errors import (
    AuthenticationError,
    ConfigurationError,
    ConnectTimeoutError,
    UnreachableError,
)
from deploy_agent.local import LocalSession
from deploy_agent.ssh import CredentialRef, RemoteProbe, SSHSession, SSHTransport
from deploy_agent.targets import Reachability, Target


class FakeChannel:
    def __init__(self, status: int = 0) -> None:
        self._status = status

    def recv_exit_status(self) -> int:
        return self._status


class FakeStream:
    def __init__(self, data: str, status: int = 0) -> None:
        self._data = data.encode("utf-8")
        self.channel = FakeChannel(status)

    def read(self) -> bytes:
        return self._data


class FakeSFTPFile:
    def __init__(self, sftp: "FakeSFTPClient", path: str, data: bytes = b"") -> None:
        self._sftp = sftp
        self._path = path
        self._data = data

    def __enter__(self) -> "FakeSFTPFile":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._sftp.files[self._path] = self._data

    def read(self) -> bytes:
        return self._data

    def write(self, data: bytes) -> None:
        self._data += data


class FakeSFTPClient:
    def __init__(self) -> None:
        self.files: dict = {}
        self.calls: list = []
        self.errors: dict = {}

    def __enter__(self) -> "FakeSFTPClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.calls.append(("close",))

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.errors:
            raise self.errors[operation]

    def open(self, path: str, mode: str = "r") -> FakeSFTPFile:
        self.calls.append(("open", path, mode))
        self._maybe_fail("open")
        if mode == "r":
            if path not in self.files:
                raise IOError(errno.ENOENT, "No such file")
            return FakeSFTPFile(self, path, self.files[path])
        return FakeSFTPFile(self, path)

    def posix_rename(self, old: str, new: str) -> None:
        self.calls.append(("posix_rename", old, new))
        self._maybe_fail("posix_rename")
        self.files[new] = self.files.pop(old)

    def remove(self, path: str) -> None:
        self.calls.append(("remove", path))
        self.files.pop(path, None)

    def put(self, local_path: str, remote_path: str) -> None:
        self.calls.append(("put", local_path, remote_path))
        self._maybe_fail("put")


class FakeSSHClient:
    def __init__(self) -> None:
        self.connected = False
        self.closed = False
        self.commands: list[str] = []
        self.policy = None
        self.sftp = FakeSFTPClient()

    def load_system_host_keys(self) -> None:
        pass

    def load_host_keys(self, path: str) -> None:
        self.host_keys = path

    def set_missing_host_key_policy(self, policy) -> None:
        self.policy = policy

    def connect(self, **kwargs) -> None:
        self.connected = True
        self.kwargs = kwargs

    def exec_command(self, command: str, timeout=None):
        self.commands.append(command)
        self.timeout = timeout
        return (None, FakeStream("ok\n"), FakeStream(""))

    def close(self) -> None:
        self.closed = True

    def open_sftp(self) -> FakeSFTPClient:
        return self.sftp


class FailingClient(FakeSSHClient):
    """Raises the queued errors on connect, then succeeds."""

    def __init__(self, errors) -> None:
        super().__init__()
        self._errors = errors

    def connect(self, **kwargs) -> None:
        if self._errors:
            raise self._errors.pop(0)
        super().connect(**kwargs)


def _target(**overrides) -> Target:
    values = dict(
        name="web1",
        host="example.com",
        username="deploy",
        deploy_root="/var/www/site",
        credential=CredentialRef(kind="agent"),
    )
    values.update(overrides)
    return Target(**values)


class SSHSessionTests(unittest.TestCase):
    def test_run_command_uses_client_factory(self) -> None:
        clients = []

        def factory():
            clients.append(FakeSSHClient())
            return clients[-1]

        session = SSHSession(_target(), client_factory=factory, command_timeout=42)
        with session:
            result = session.run("echo test", cwd="/srv/app dir")
        self.assertTrue(result.ok)
        self.assertEqual(result.stdout, "ok")
        self.assertEqual(clients[0].commands, ["cd '/srv/app dir' && echo test"])
        self.assertEqual(clients[0].timeout, 42)
        self.assertTrue(clients[0].closed)
        self.assertFalse(session.connected)

    def test_strict_host_keys_rejects_unknown_hosts(self) -> None:
        client = FakeSSHClient()
        SSHSession(_target(), client_factory=lambda: client).connect()
        self.assertIsInstance(client.policy, paramiko.RejectPolicy)

    def test_unreadable_known_hosts_is_an_authentication_error(self) -> None:
        class MissingHostsClient(FakeSSHClient):
            def load_host_keys(self, path: str) -> None:
                raise FileNotFoundError(path)

        client = MissingHostsClient()
        session = SSHSession(
            _target(), known_hosts="/nonexistent/known_hosts", client_factory=lambda: client
        )
        with self.assertRaises(AuthenticationError):
            session.connect()
        self.assertTrue(client.closed)
        self.assertFalse(client.connected)

    def test_relaxed_host_keys_auto_add(self) -> None:
        client = FakeSSHClient()
        SSHSession(_target(), strict_host_keys=False, client_factory=lambda: client).connect()
        self.assertIsInstance(client.policy, paramiko.AutoAddPolicy)

    def test_agent_credential_passed_to_connect(self) -> None:
        client = FakeSSHClient()
        SSHSession(_target(port=2222), client_factory=lambda: client).connect()
        self.assertEqual(client.kwargs["port"], 2222)
        self.assertEqual(client.kwargs["username"], "deploy")
        self.assertTrue(client.kwargs["allow_agent"])
        self.assertNotIn("password", client.kwargs)

    def test_auth_failure_maps_to_authentication_error(self) -> None:
        client = FailingClient([paramiko.AuthenticationException("denied")])
        with self.assertRaises(AuthenticationError):
            SSHSession(_target(), client_factory=lambda: client).connect()
        self.assertTrue(client.closed)

    def test_socket_timeout_maps_to_timeout_error(self) -> None:
        client = FailingClient([socket.timeout("timed out")])
        with self.assertRaises(ConnectTimeoutError) as ctx:
            SSHSession(_target(), client_factory=lambda: client).connect()
        self.assertIsInstance(ctx.exception, TimeoutError)

    def test_refused_connection_maps_to_unreachable(self) -> None:
        client = FailingClient([ConnectionRefusedError("refused")])
        with self.assertRaises(UnreachableError):
            SSHSession(_target(), client_factory=lambda: client).connect()

    def test_command_timeout_raises(self) -> None:
        class SlowClient(FakeSSHClient):
            def exec_command(self, command, timeout=None):
                raise socket.timeout()

        session = SSHSession(_target(), client_factory=SlowClient)
        with self.assertRaises(ConnectTimeoutError):
            session.run("sleep 100", timeout=1)

    def test_remote_probe_collects_fields(self) -> None:
        probe = RemoteProbe()

        class StubSession:
            def __init__(self) -> None:
                self.commands = []

            def run(self, command: str):
                self.commands.append(command)
                return type(
                    "Result",
                    (),
                    {
                        "stdout": command.upper(),
                        "stderr": "",
                        "ok": True,
                        "exit_status": 0,
                    },
                )()

        session = StubSession()
        facts = probe.collect(session)  # type: ignore[arg-type]
        self.assertEqual(facts.hostname, "HOSTNAME")
        self.assertEqual(facts.kernel, "UNAME -SR")
        self.assertTrue(session.commands)


class SSHSessionFileTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = FakeSSHClient()
        self.sftp = self.client.sftp
        self.session = SSHSession(_target(), client_factory=lambda: self.client)

    def test_write_goes_through_temporary_sibling(self) -> None:
        self.session.write_text("/srv/state.json", '{"active": "abc123"}')

        operations = [call[0] for call in self.sftp.calls if call[0] != "close"]
        self.assertEqual(operations, ["open", "posix_rename"])
        _, tmp_path, mode = self.sftp.calls[0]
        self.assertTrue(tmp_path.startswith("/srv/state.json.tmp-"))
        self.assertEqual(mode, "w")
        self.assertEqual(self.sftp.calls[1], ("posix_rename", tmp_path, "/srv/state.json"))
        self.assertEqual(self.sftp.files, {"/srv/state.json": b'{"active": "abc123"}'})

    def test_failed_rename_removes_temporary_file(self) -> None:
        self.sftp.errors["posix_rename"] = IOError("Operation unsupported")

        with self.assertRaises(UnreachableError):
            self.session.write_text("/srv/state.json", "{}")

        self.assertEqual(self.sftp.calls[-2][0], "remove")
        self.assertEqual(self.sftp.files, {})

    def test_read_missing_file_returns_none(self) -> None:
        self.assertIsNone(self.session.read_text("/srv/missing.json"))

    def test_read_existing_file(self) -> None:
        self.sftp.files["/srv/owner"] = b"ci-runner:42\n"
        self.assertEqual(self.session.read_text("/srv/owner"), "ci-runner:42\n")

    def test_read_permission_denied_is_a_transport_error(self) -> None:
        self.sftp.errors["open"] = IOError(errno.EACCES, "Permission denied")
        with self.assertRaises(UnreachableError) as ctx:
            self.session.read_text("/srv/state.json")
        self.assertIn("/srv/state.json", str(ctx.exception))

    def test_copy_uploads_with_put(self) -> None:
        self.session.copy("/tmp/build.tar.gz", "/srv/releases/build.tar.gz")
        self.assertIn(("put", "/tmp/build.tar.gz", "/srv/releases/build.tar.gz"), self.sftp.calls)

    def test_failed_upload_is_a_transport_error(self) -> None:
        self.sftp.errors["put"] = IOError(errno.ENOSPC, "No space left on device")
        with self.assertRaises(UnreachableError):
            self.session.copy("/tmp/build.tar.gz", "/srv/releases/build.tar.gz")


class LocalSessionFileTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = self._tmp.name
        self.session = LocalSession()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_write_into_missing_directory_is_a_transport_error(self) -> None:
        with self.assertRaises(UnreachableError):
            self.session.write_text(os.path.join(self.root, "missing", "state.json"), "{}")

    def test_failed_replace_leaves_no_temporary_file(self) -> None:
        target_dir = os.path.join(self.root, "state.json")
        os.makedirs(os.path.join(target_dir, "occupied"))

        with self.assertRaises(UnreachableError):
            self.session.write_text(target_dir, "{}")

        self.assertEqual(sorted(os.listdir(self.root)), ["state.json"])

    def test_reading_a_directory_is_a_transport_error(self) -> None:
        with self.assertRaises(UnreachableError):
            self.session.read_text(self.root)


class TransportRetryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.delays = []
        self.config = TransportConfig(attempts=3, backoff_base=1.0, backoff_max=1.5)

    def _transport(self, client) -> SSHTransport:
        return SSHTransport(self.config, client_factory=lambda: client, sleep=self.delays.append)

    def test_transient_failures_are_retried_with_backoff(self) -> None:
        client = FailingClient([socket.timeout(), ConnectionResetError("reset")])
        target = _target()
        with self._transport(client).connect(target) as session:
            self.assertTrue(session.connected)
        self.assertEqual(self.delays, [1.0, 1.5])
        self.assertEqual(target.reachability, Reachability.REACHABLE)
        self.assertTrue(client.closed)

    def test_gives_up_after_attempts(self) -> None:
        client = FailingClient([socket.timeout(), socket.timeout(), socket.timeout()])
        target = _target()
        with self.assertRaises(ConnectTimeoutError):
            self._transport(client).open(target)
        self.assertEqual(len(self.delays), 2)
        self.assertEqual(target.reachability, Reachability.UNREACHABLE)

    def test_authentication_failure_is_not_retried(self) -> None:
        client = FailingClient([paramiko.AuthenticationException("bad key")])
        with self.assertRaises(AuthenticationError):
            self._transport(client).open(_target())
        self.assertEqual(self.delays, [])

    def test_session_closed_when_body_raises(self) -> None:
        client = FakeSSHClient()
        with self.assertRaises(RuntimeError):
            with self._transport(client).connect(_target()):
                raise RuntimeError("boom")
        self.assertTrue(client.closed)

    def test_local_target_gets_local_session(self) -> None:
        target = _target(transport="local")
        with self._transport(FakeSSHClient()).connect(target) as session:
            self.assertIsInstance(session, LocalSession)
            self.assertEqual(session.run("echo hi").stdout, "hi")


def test_backoff_is_bounded():
    transport = SSHTransport(TransportConfig(backoff_base=1.0, backoff_max=8.0))
    assert [transport.backoff_delay(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 8.0, 8.0]


def test_credential_rejects_inline_secrets():
    with pytest.raises(ConfigurationError):
        CredentialRef.from_dict({"kind": "key", "key_path": "~/.ssh/id", "passphrase": "x"})
    with pytest.raises(ConfigurationError):
        CredentialRef.from_dict({"password": "hunter2"})


def test_key_credential_requires_existing_file():
    ref = CredentialRef(kind="key", key_path="/nonexistent/id_ed25519")
    with pytest.raises(AuthenticationError):
        ref.connect_kwargs()


def test_key_credential_reads_passphrase_from_env(monkeypatch):
    with tempfile.NamedTemporaryFile() as key_file:
        monkeypatch.setenv("DEPLOY_KEY_PASSPHRASE", "correct-horse")
        ref = CredentialRef(kind="key", key_path=key_file.name, passphrase_env="DEPLOY_KEY_PASSPHRASE")
        kwargs = ref.connect_kwargs()
    assert kwargs["key_filename"] == os.path.expanduser(key_file.name)
    assert kwargs["passphrase"] == "correct-horse"
    assert "correct-horse" not in repr(ref)


def test_env_credential_with_missing_variable(monkeypatch):
    monkeypatch.delenv("STAGING_SSH_KEY", raising=False)
    ref = CredentialRef(kind="env", key_env="STAGING_SSH_KEY")
    with pytest.raises(AuthenticationError):
        ref.connect_kwargs()


def test_describe_never_contains_key_material():
    assert CredentialRef(kind="env", key_env="CI_KEY").describe() == "key from $CI_KEY"
    assert CredentialRef(kind="agent").describe() == "ssh-agent"
