"""SSH execution of rendered deployment commands."""

import logging
import threading
import time
from io import StringIO
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import paramiko

from deploypilot.core.command import sh_quote
from deploypilot.core.exceptions import (
    AuthenticationError,
    CommandCancelledError,
    CommandExitError,
    CommandTimeoutError,
    ConfigurationError,
    ConnectionFailedError,
    HostVerificationError,
)

logger = logging.getLogger(__name__)

DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"
DEFAULT_PORT = 22
RECV_BUFFER = 32768

KEY_CLASSES = (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey)


def load_private_key(private_key: str) -> paramiko.PKey:
    """
    Parse PEM/OpenSSH private key text.

    Raises:
        ConfigurationError: If the key is missing or cannot be parsed
    """
    text = (private_key or "").strip()
    if not text:
        raise ConfigurationError(
            "No SSH private key configured (set SSH_PRIVATE_KEY or ssh.private_key)"
        )
    if "BEGIN" not in text or "END" not in text:
        raise ConfigurationError(
            "Invalid SSH private key format: key must contain BEGIN and END markers"
        )

    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key(StringIO(text + "\n"))
        except (paramiko.SSHException, ValueError):
            continue

    raise ConfigurationError("Unsupported or malformed SSH private key (tried RSA, Ed25519, ECDSA)")


def split_address(address: str) -> Tuple[str, int]:
    """Split ``host[:port]``."""
    host, sep, port = address.rpartition(":")
    if not sep:
        return address, DEFAULT_PORT
    try:
        return host, int(port)
    except ValueError:
        raise ConfigurationError(f"Invalid SSH address {address!r}")


class RemoteExecutor:
    """
    Runs one command per session over SSH.

    Host keys are verified against a known-hosts file unless strict checking
    is explicitly disabled. Environment variables are offered to the server
    through the session (servers commonly refuse them); the command itself
    already exports them, so refusal is harmless.
    """

    def __init__(
        self,
        known_hosts_file: Optional[str] = None,
        strict_host_key_checking: bool = True,
        connect_timeout: float = 30.0,
        poll_interval: float = 0.1,
        path_env: str = DEFAULT_PATH,
        request_pty: bool = False,
    ):
        """
        Initialize the executor.

        Args:
            known_hosts_file: Known hosts path (defaults to ~/.ssh/known_hosts)
            strict_host_key_checking: Reject unknown hosts when True
            connect_timeout: TCP connect, banner and auth timeout in seconds
            poll_interval: How often a running command checks for cancellation
            path_env: PATH exported before the command runs
            request_pty: Allocate a pty so closing the channel hangs up the
                remote shell (output then uses CRLF line endings)
        """
        self.known_hosts_file = known_hosts_file
        self.strict_host_key_checking = strict_host_key_checking
        self.connect_timeout = connect_timeout
        self.poll_interval = poll_interval
        self.path_env = path_env
        self.request_pty = request_pty

    def execute(
        self,
        address: str,
        username: str,
        private_key: str,
        command: str,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """
        Execute a command on a remote host.

        Args:
            address: ``host`` or ``host:port``
            username: Remote user
            private_key: Private key text used for authentication
            command: Shell command to run
            env: Variables to push through the session
            timeout: Overall command timeout in seconds
            cancel_event: Set by the caller to abort the command

        Returns:
            Combined stdout/stderr of the command

        Raises:
            RemoteExecutionError: Subclass describing the failure, carrying
                any output captured so far
        """
        env = env or {}
        host, port = split_address(address)
        pkey = load_private_key(private_key)
        client = self._new_client()
        channel = None

        try:
            self._connect(client, host, port, username, pkey)

            try:
                channel = client.get_transport().open_session(timeout=self.connect_timeout)
                self._push_env(channel, env)
                if self.request_pty:
                    channel.get_pty()
                channel.set_combine_stderr(True)

                logger.info(
                    "Executing SSH command on %s@%s:%d (%d bytes)",
                    username,
                    host,
                    port,
                    len(command),
                )
                channel.exec_command(self.wrap_command(command))
            except (paramiko.SSHException, OSError) as e:
                raise ConnectionFailedError(f"Failed to open SSH session: {e}")

            output, exit_status = self._collect(channel, timeout, cancel_event)
        finally:
            if channel is not None:
                channel.close()
            client.close()

        if exit_status != 0:
            logger.error(
                "SSH command on %s exited with status %d (%d bytes of output)",
                host,
                exit_status,
                len(output),
            )
            raise CommandExitError(
                f"Remote command exited with status {exit_status}",
                exit_status=exit_status,
                output=output,
            )

        logger.info("SSH command on %s completed (%d bytes of output)", host, len(output))
        return output

    def wrap_command(self, command: str) -> str:
        return f"sh -c {sh_quote(f'export PATH={self.path_env} && {command}')}"

    def _new_client(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        if self.strict_host_key_checking:
            client.load_host_keys(str(self._known_hosts_path()))
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            logger.warning(
                "SSH strict host key checking is disabled - this is insecure and "
                "should only be used in development"
            )
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        return client

    def _known_hosts_path(self) -> Path:
        path = Path(self.known_hosts_file or Path.home() / ".ssh" / "known_hosts").expanduser()
        if not path.exists():
            logger.warning("Known hosts file %s does not exist, creating it", path)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.touch(mode=0o644)
            except OSError as e:
                raise ConfigurationError(f"Failed to create known_hosts file {path}: {e}")
        return path

    def _connect(
        self,
        client: paramiko.SSHClient,
        host: str,
        port: int,
        username: str,
        pkey: paramiko.PKey,
    ) -> None:
        try:
            client.connect(
                hostname=host,
                port=port,
                username=username,
                pkey=pkey,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.BadHostKeyException as e:
            raise HostVerificationError(f"SSH host key verification failed for {host}: {e}")
        except paramiko.AuthenticationException as e:
            raise AuthenticationError(f"SSH authentication failed for {username}@{host}: {e}")
        except paramiko.SSHException as e:
            if "known_hosts" in str(e):
                raise HostVerificationError(f"SSH host key verification failed: {e}")
            raise ConnectionFailedError(f"Failed to connect to {host}:{port}: {e}")
        except OSError as e:
            raise ConnectionFailedError(f"Failed to dial SSH server {host}:{port}: {e}")

    def _push_env(self, channel: paramiko.Channel, env: Dict[str, str]) -> None:
        for key, value in env.items():
            try:
                channel.set_environment_variable(key, value)
            except paramiko.SSHException as e:
                logger.debug("Server rejected env var %s, relying on command export: %s", key, e)

    def _collect(
        self,
        channel: paramiko.Channel,
        timeout: Optional[float],
        cancel_event: Optional[threading.Event],
    ) -> Tuple[str, int]:
        deadline = None if timeout is None else time.monotonic() + timeout
        chunks: List[bytes] = []

        while True:
            if channel.recv_ready():
                data = channel.recv(RECV_BUFFER)
                if data:
                    chunks.append(data)
                    continue
            if channel.exit_status_ready() and not channel.recv_ready():
                break

            if cancel_event is not None and cancel_event.is_set():
                raise CommandCancelledError(
                    "Remote command cancelled by caller", output=_decode(chunks)
                )
            if deadline is not None and time.monotonic() >= deadline:
                raise CommandTimeoutError(
                    f"Remote command timed out after {timeout}s", output=_decode(chunks)
                )

            if cancel_event is not None:
                cancel_event.wait(self.poll_interval)
            else:
                time.sleep(self.poll_interval)

        return _decode(chunks), channel.recv_exit_status()


def _decode(chunks: List[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")
