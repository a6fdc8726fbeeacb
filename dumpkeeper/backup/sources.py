"""
Source handlers for backup operations.

A source exposes the dump as a byte stream and reports whether the producer
finished cleanly separately from the end of the stream, so a dump tool that
dies half way is never mistaken for a short but complete dump.

Supports:
- CommandSource: Run a dump command locally (e.g. pg_dump) and read stdout
- SSHSource: Run a dump command on a remote host over SSH
- FileSource: Read an existing dump file
"""

import os
import shlex
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import List, Dict, Any, Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from .errors import SourceReadError

logger = logging.getLogger(__name__)

# Amount of stderr kept in error messages
STDERR_TAIL_BYTES = 2048


def _stderr_tail(data: bytes) -> str:
    text = data[-STDERR_TAIL_BYTES:].decode('utf-8', errors='replace').strip()
    return text or '(no stderr output)'


class Source:
    """
    Base class for dump sources.

    Lifecycle: open() -> read(size)... until b'' -> finish() -> close().
    close() is always called, also after a failure.
    """

    description = 'source'

    def open(self):
        raise NotImplementedError

    def read(self, size: int) -> bytes:
        raise NotImplementedError

    def finish(self):
        """Raise SourceReadError if the producer did not complete successfully."""
        pass

    def close(self):
        pass


class CommandSource(Source):
    """
    Handler for local dump commands.

    Streams the command's stdout; stderr goes to a temporary file so a chatty
    dump tool cannot block on a full pipe.
    """

    def __init__(self, command: List[str], env: Optional[Dict[str, str]] = None,
                 cwd: Optional[str] = None, exit_timeout: int = 60):
        """
        Initialize command source handler.

        Args:
            command: Command argv, e.g. ['pg_dump', '-Fc', 'mydb']
            env: Extra environment variables for the command
            cwd: Working directory for the command
            exit_timeout: Seconds to wait for the process to exit after EOF
        """
        if not command:
            raise ValueError("Command source requires a non-empty command")

        self.command = list(command)
        self.env = env or {}
        self.cwd = cwd
        self.exit_timeout = exit_timeout
        self.description = f"command:{os.path.basename(self.command[0])}"

        self.process = None
        self._stderr = None

    def open(self):
        env = os.environ.copy()
        env.update(self.env)
        self._stderr = tempfile.TemporaryFile()

        try:
            self.process = subprocess.Popen(
                self.command,
                stdout=subprocess.PIPE,
                stderr=self._stderr,
                stdin=subprocess.DEVNULL,
                env=env,
                cwd=self.cwd
            )
        except FileNotFoundError:
            raise SourceReadError(f"Dump command not found: {self.command[0]}")
        except PermissionError as e:
            raise SourceReadError(f"Permission denied running {self.command[0]}: {e}")
        except OSError as e:
            raise SourceReadError(f"Failed to start dump command: {e}")

        logger.debug(f"Started dump command (pid {self.process.pid}): {self.command[0]}")

    def read(self, size: int) -> bytes:
        try:
            return self.process.stdout.read(size)
        except OSError as e:
            raise SourceReadError(f"Failed to read dump output: {e}")

    def finish(self):
        try:
            returncode = self.process.wait(timeout=self.exit_timeout)
        except subprocess.TimeoutExpired:
            raise SourceReadError(
                f"Dump command did not exit within {self.exit_timeout}s after closing its output"
            )

        if returncode != 0:
            self._stderr.seek(0)
            raise SourceReadError(
                f"Dump command exited with status {returncode}: {_stderr_tail(self._stderr.read())}"
            )

    def close(self):
        if self.process:
            if self.process.poll() is None:
                self.process.kill()
                self.process.wait()
            if self.process.stdout:
                self.process.stdout.close()
            self.process = None

        if self._stderr:
            self._stderr.close()
            self._stderr = None


class SSHSource(Source):
    """
    Handler for dump commands executed on a remote host via SSH.

    The remote command writes the dump to stdout, which is streamed back over
    the SSH channel.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize SSH source handler.

        Args:
            config: SSH configuration dict with keys:
                - host: SSH hostname or IP
                - port: SSH port (default 22)
                - username: SSH username
                - password: SSH password (optional if using key)
                - private_key: Path to private key file (optional)
                - command: Remote dump command (string)
        """
        self.host = config.get('host') or config.get('hostname')
        self.port = config.get('port', 22)
        self.username = config.get('username')
        self.password = config.get('password')
        self.private_key_path = config.get('private_key')
        self.command = config.get('command')
        self.timeout = config.get('timeout', 30)
        self.description = f"ssh:{self.host}"

        if not self.host:
            raise ValueError("SSH source requires a host")
        if not self.command:
            raise ValueError("SSH source requires a remote command")

        self.ssh_client = None
        self._stdout = None
        self._stderr = None

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            SourceReadError: If connection fails
        """
        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': self.timeout
            }

            if self.password:
                connect_kwargs['password'] = self.password
            elif self.private_key_path:
                key_path = Path(self.private_key_path).expanduser()
                if not key_path.exists():
                    raise SourceReadError(f"Private key not found: {self.private_key_path}")
                connect_kwargs['key_filename'] = str(key_path)
            else:
                raise SourceReadError("Either password or private_key must be provided")

            self.ssh_client.connect(**connect_kwargs)

        except SourceReadError:
            raise
        except paramiko.AuthenticationException as e:
            raise SourceReadError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            raise SourceReadError(f"SSH connection failed: {e}")
        except Exception as e:
            raise SourceReadError(f"Failed to connect to {self.host}: {e}")

    def open(self):
        self._connect()

        try:
            _, self._stdout, self._stderr = self.ssh_client.exec_command(self.command)
        except paramiko.SSHException as e:
            raise SourceReadError(f"Failed to start remote dump command: {e}")

    def read(self, size: int) -> bytes:
        try:
            return self._stdout.read(size)
        except (paramiko.SSHException, OSError) as e:
            raise SourceReadError(f"Failed to read remote dump output: {e}")

    def finish(self):
        status = self._stdout.channel.recv_exit_status()
        if status != 0:
            raise SourceReadError(
                f"Remote dump command exited with status {status}: "
                f"{_stderr_tail(self._stderr.read())}"
            )

    def close(self):
        """Close SSH connection."""
        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None
        self._stdout = None
        self._stderr = None


class FileSource(Source):
    """Handler for an existing dump file on the local filesystem."""

    def __init__(self, path: str):
        self.path = Path(path).expanduser()
        self.description = f"file:{self.path.name}"
        self._file = None

    def open(self):
        try:
            self._file = open(self.path, 'rb')
        except FileNotFoundError:
            raise SourceReadError(f"Path does not exist: {self.path}")
        except PermissionError as e:
            raise SourceReadError(f"Permission denied accessing {self.path}: {e}")
        except IsADirectoryError:
            raise SourceReadError(f"Source path is a directory: {self.path}")

    def read(self, size: int) -> bytes:
        try:
            return self._file.read(size)
        except OSError as e:
            raise SourceReadError(f"Failed to read {self.path}: {e}")

    def close(self):
        if self._file:
            self._file.close()
            self._file = None


def create_source(source_type: str, config: Dict[str, Any]) -> Source:
    """
    Factory function to create appropriate source handler.

    Args:
        source_type: 'command', 'ssh' or 'file'
        config: Configuration dict for the source

    Returns:
        Source instance

    Raises:
        ValueError: If source_type is invalid
    """
    if source_type == 'command':
        command = config.get('command')
        if isinstance(command, str):
            command = shlex.split(command)
        return CommandSource(
            command or [],
            env=config.get('env'),
            cwd=config.get('cwd'),
            exit_timeout=config.get('exit_timeout', 60)
        )
    elif source_type == 'ssh':
        return SSHSource(config)
    elif source_type == 'file':
        if not config.get('path'):
            raise ValueError("File source requires a path")
        return FileSource(config['path'])
    else:
        raise ValueError(f"Invalid source type: {source_type}")


SOURCE_TYPES = ('command', 'ssh', 'file')
