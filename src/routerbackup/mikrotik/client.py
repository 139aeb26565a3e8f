"""MikroTik SSH client implementation."""

from __future__ import annotations

import logging
import socket
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

import paramiko

from routerbackup.core.artifacts import (
    artifact_basename,
    artifact_path,
    format_stamp,
    safe_name,
)
from routerbackup.core.errors import (
    ArtifactCollisionError,
    CommandError,
    ConnectionFailure,
    ConnectionKind,
    TransferError,
    ValidationError,
    error_text,
)
from routerbackup.core.models import ArtifactKind, BackupResult

DEFAULT_CONNECT_TIMEOUT = 10.0

logging.getLogger("paramiko").setLevel(logging.WARNING)


@dataclass(slots=True, frozen=True)
class CommandSet:
    """Vendor command templates; swapping these retargets another device family."""

    save_backup: str
    export: str
    remove_file: str
    status: str


ROUTEROS_COMMANDS = CommandSet(
    save_backup="/system backup save name={name} dont-encrypt=yes",
    export="/export file={name}",
    remove_file='/file remove [find name="{filename}"]',
    status="/system resource print",
)


def classify_connection_error(exc: BaseException) -> ConnectionKind:
    """Map paramiko and socket exceptions to a :class:`ConnectionKind`."""

    if isinstance(exc, paramiko.AuthenticationException):
        return ConnectionKind.AUTH_FAILED
    if isinstance(exc, (socket.timeout, TimeoutError)):
        return ConnectionKind.TIMEOUT
    if isinstance(exc, (ConnectionResetError, ConnectionAbortedError, BrokenPipeError, EOFError)):
        return ConnectionKind.RESET
    if isinstance(exc, paramiko.ssh_exception.NoValidConnectionsError):
        return ConnectionKind.UNREACHABLE
    if isinstance(exc, paramiko.SSHException):
        return ConnectionKind.FATAL
    if isinstance(exc, OSError):
        return ConnectionKind.UNREACHABLE
    return ConnectionKind.FATAL


_CONNECTION_MESSAGES = {
    ConnectionKind.AUTH_FAILED: "SSH authentication failed",
    ConnectionKind.TIMEOUT: "SSH connection timed out",
    ConnectionKind.RESET: "SSH connection reset",
    ConnectionKind.UNREACHABLE: "SSH host unreachable",
    ConnectionKind.FATAL: "SSH connection failed",
}


@dataclass(slots=True)
class MikroTikClient:
    """SSH client for MikroTik devices."""

    host: str
    username: str
    password: str
    port: int = 22
    timeout: float = DEFAULT_CONNECT_TIMEOUT
    commands: CommandSet = ROUTEROS_COMMANDS
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(__name__))
    log_extra: dict[str, Any] = field(default_factory=dict)

    @contextmanager
    def session(self) -> Iterator[paramiko.SSHClient]:
        """Open an SSH session that is closed on every exit path."""

        client = self._connect()
        try:
            yield client
        finally:
            client.close()
            self.logger.debug("ssh session closed host=%s", self.host, extra=self.log_extra)

    @contextmanager
    def transfer_channel(self, client: paramiko.SSHClient) -> Iterator[paramiko.SFTPClient]:
        try:
            sftp = client.open_sftp()
        except (paramiko.SSHException, OSError) as exc:  # pragma: no cover - network dependent
            raise TransferError(f"Unable to open SFTP session: {error_text(exc)}") from exc
        try:
            yield sftp
        finally:
            sftp.close()

    def execute(self, client: paramiko.SSHClient, command: str) -> str:
        """Run ``command`` and return its standard output.

        A non-zero exit status fails even when standard error is empty; the
        detail is standard error, else standard output, else the exit code.
        """

        self.logger.debug("executing mikrotik command='%s'", command, extra=self.log_extra)
        output, error_output, exit_status = self._run_command(client, command)
        if exit_status != 0:
            detail = error_output.strip() or output.strip() or f"exit code {exit_status}"
            self.logger.warning(
                "mikrotik command failed command=%s status=%s", command, exit_status, extra=self.log_extra
            )
            raise CommandError(command, detail, exit_status)
        return output.strip()

    def download(self, sftp: paramiko.SFTPClient, remote_path: str, local_path: Path) -> Path:
        local_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            sftp.get(remote_path, str(local_path))
        except (OSError, paramiko.SSHException) as exc:
            local_path.unlink(missing_ok=True)
            self.logger.error(
                "download failed file=%s reason=\"%s\"", remote_path, error_text(exc), extra=self.log_extra
            )
            raise TransferError(f"Unable to download {remote_path}: {error_text(exc)}") from exc

        if self.verify_download(local_path) <= 0:
            raise TransferError(f"Downloaded file failed verification: {remote_path}")
        return local_path

    def verify_download(self, path: Path) -> int:
        """Ensure a downloaded artifact exists and is non-empty.

        Returns the file size when verification succeeds, otherwise 0.
        """

        if not path.exists():
            self.logger.error("download verification failed reason=missing path=%s", path, extra=self.log_extra)
            return 0

        size = path.stat().st_size
        if size <= 0:
            self.logger.error("download verification failed reason=zero-size path=%s", path, extra=self.log_extra)
            return 0

        self.logger.debug("download verification passed path=%s size=%d", path, size, extra=self.log_extra)
        return size

    def cleanup_remote_file(self, client: paramiko.SSHClient, filename: str) -> str | None:
        """Remove a file from the device without failing the backup.

        Returns a warning message when removal failed, ``None`` otherwise.
        """

        command = self.commands.remove_file.format(filename=filename)
        try:
            self.execute(client, command)
        except CommandError as exc:
            warning = f"failed to remove remote file {filename}: {error_text(exc)}"
        except (paramiko.SSHException, OSError) as exc:
            warning = f"failed to remove remote file {filename}: {error_text(exc)}"
        else:
            self.logger.debug("remote file removed filename=%s", filename, extra=self.log_extra)
            return None

        self.logger.warning("%s", warning, extra=self.log_extra)
        return warning

    def perform_backup(self, device_name: str, backup_root: Path, now: datetime | None = None) -> BackupResult:
        """Create binary backup and export on the device and download both."""

        if not self.host or not self.username or not self.password:
            raise ValidationError("Device must have host, username and password.")

        safe_device = safe_name(device_name or self.host)
        stamp = format_stamp(now or datetime.now())
        backup_name = artifact_basename(safe_device, ArtifactKind.BACKUP, stamp)
        export_name = artifact_basename(safe_device, ArtifactKind.EXPORT, stamp)
        remote_backup = f"{backup_name}.{ArtifactKind.BACKUP.extension}"
        remote_export = f"{export_name}.{ArtifactKind.EXPORT.extension}"
        local_backup = artifact_path(backup_root, safe_device, ArtifactKind.BACKUP, stamp)
        local_export = artifact_path(backup_root, safe_device, ArtifactKind.EXPORT, stamp)

        for existing in (local_backup, local_export):
            if existing.exists():
                raise ArtifactCollisionError(f"Backup {existing.name} already exists; retry in a moment.")

        local_backup.parent.mkdir(parents=True, exist_ok=True)
        local_export.parent.mkdir(parents=True, exist_ok=True)

        self.logger.info("start backup host=%s label=%s", self.host, stamp, extra=self.log_extra)
        with self.session() as client:
            self.execute(client, self.commands.save_backup.format(name=backup_name))
            self.execute(client, self.commands.export.format(name=export_name))

            with self.transfer_channel(client) as sftp:
                try:
                    self.download(sftp, remote_backup, local_backup)
                    self.download(sftp, remote_export, local_export)
                except TransferError:
                    # both targets were absent before this attempt; never leave half a pair
                    for partial in (local_backup, local_export):
                        partial.unlink(missing_ok=True)
                    raise

            warnings = tuple(
                warning
                for warning in (
                    self.cleanup_remote_file(client, remote_backup),
                    self.cleanup_remote_file(client, remote_export),
                )
                if warning
            )

        self.logger.info("backup saved backup=%s export=%s", local_backup, local_export, extra=self.log_extra)
        return BackupResult(
            label=stamp,
            device_name=device_name or self.host,
            backup_path=local_backup,
            export_path=local_export,
            cleanup_warnings=warnings,
        )

    def test_connection(self) -> str:
        """Run the read-only status command as a connectivity probe."""

        with self.session() as client:
            return self.execute(client, self.commands.status)

    def _connect(self) -> paramiko.SSHClient:
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            self.logger.debug("opening ssh session host=%s port=%s", self.host, self.port, extra=self.log_extra)
            ssh.connect(
                self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                look_for_keys=False,
                allow_agent=False,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
            )
            self.logger.info("ssh ok host=%s port=%s", self.host, self.port, extra=self.log_extra)
            return ssh
        except (paramiko.SSHException, OSError, EOFError) as exc:
            ssh.close()
            kind = classify_connection_error(exc)
            message = f"{_CONNECTION_MESSAGES[kind]} ({self.host}:{self.port}): {error_text(exc)}"
            raise ConnectionFailure(kind, message) from exc

    def _run_command(self, client: paramiko.SSHClient, command: str) -> tuple[str, str, int]:
        try:
            stdin, stdout, stderr = client.exec_command(command)
        except paramiko.SSHException as exc:  # pragma: no cover - network dependent
            raise CommandError(command, f"Unable to execute command '{command}': {error_text(exc)}") from exc

        output = stdout.read().decode("utf-8", errors="replace")
        error_output = stderr.read().decode("utf-8", errors="replace")
        exit_status = stdout.channel.recv_exit_status()
        return output, error_output, exit_status
