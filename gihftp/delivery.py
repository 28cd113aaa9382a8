"""Upload merged artifacts to the archive host over SFTP or FTP."""

from __future__ import annotations

import ftplib
import hashlib
import logging
import posixpath
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import paramiko

from .errors import DeliveryError, HostVerificationFailure
from .logs import format_exception_message, log_event
from .trust import TrustDecision

DEFAULT_SFTP_PORT = 22
DEFAULT_FTP_PORT = 21
DEFAULT_CONNECT_TIMEOUT_SECONDS = 15
CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class UploadReport:
    remote_path: str
    bytes_transferred: int
    duration_seconds: float
    sha256: str = ""

    @property
    def speed_mbps(self) -> float:
        if self.duration_seconds <= 0:
            return 0.0
        return self.bytes_transferred / self.duration_seconds / (1024 * 1024)


def split_host_port(value: str, default_port: int) -> Tuple[str, int]:
    text = value.strip()
    if text.startswith("["):
        host, _, rest = text[1:].partition("]")
        port_text = rest.lstrip(":")
    elif text.count(":") == 1:
        host, port_text = text.split(":", 1)
    else:
        host, port_text = text, ""
    if not port_text:
        return host, default_port
    try:
        return host, int(port_text)
    except ValueError as exc:
        raise ValueError(f"invalid port in host '{value}'") from exc


def remote_path_for(remote_dir: str, local_path: Path | str) -> str:
    return posixpath.join(remote_dir or "/", Path(local_path).name)


def remote_parent_dirs(remote_path: str) -> List[str]:
    """``/a/b/c.txt`` -> ``['/a', '/a/b']``; relative paths stay relative."""
    parent = posixpath.dirname(remote_path)
    if parent in ("", "/", "."):
        return []
    absolute = parent.startswith("/")
    parts = [part for part in parent.split("/") if part and part != "."]
    dirs: List[str] = []
    current = "/" if absolute else ""
    for part in parts:
        current = posixpath.join(current, part) if current else part
        dirs.append(current)
    return dirs


class SftpUploader:
    """One SSH connection per upload; trust comes from a ``TrustDecision``."""

    transport = "sftp"

    def __init__(
        self,
        host: str,
        user: str,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self.host, self.port = split_host_port(host, DEFAULT_SFTP_PORT)
        self.user = user
        self.connect_timeout_seconds = connect_timeout_seconds
        self.client_factory = client_factory

    def _connect(self, trust: TrustDecision) -> paramiko.SSHClient:
        if trust is None:
            raise DeliveryError("SFTP delivery requires a trust decision")
        client = self.client_factory()
        client.set_missing_host_key_policy(trust.host_key_policy)
        log_event("SSH_CONNECT", logging.DEBUG, host=self.host, port=self.port, policy=trust.applied_policy)
        try:
            client.connect(
                self.host,
                port=self.port,
                username=self.user,
                password=trust.password,
                pkey=trust.pkey,
                timeout=self.connect_timeout_seconds,
                banner_timeout=self.connect_timeout_seconds,
                auth_timeout=self.connect_timeout_seconds,
                allow_agent=False,
                look_for_keys=False,
            )
        except HostVerificationFailure:
            client.close()
            raise
        except paramiko.BadHostKeyException as exc:
            client.close()
            raise HostVerificationFailure(self.host, format_exception_message(exc)) from exc
        except paramiko.AuthenticationException as exc:
            client.close()
            raise DeliveryError(f"SSH authentication failed: {format_exception_message(exc)}") from exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise DeliveryError(f"SSH connection failed: {format_exception_message(exc)}") from exc
        return client

    @staticmethod
    def _ensure_remote_dirs(sftp: paramiko.SFTPClient, remote_path: str) -> None:
        for directory in remote_parent_dirs(remote_path):
            try:
                sftp.stat(directory)
                continue
            except IOError:
                pass
            try:
                sftp.mkdir(directory)
            except IOError:
                # Lost a race with another writer, or a real permission problem.
                sftp.stat(directory)

    def verify_connection(self, trust: TrustDecision) -> None:
        client = self._connect(trust)
        try:
            sftp = client.open_sftp()
            sftp.close()
        except (paramiko.SSHException, OSError) as exc:
            raise DeliveryError(f"SFTP client test failed: {format_exception_message(exc)}") from exc
        finally:
            client.close()
        log_event("SFTP_CONNECTION_VERIFIED", host=self.host, port=self.port)

    def upload(self, local_path: Path, remote_path: str, trust: TrustDecision) -> UploadReport:
        local_path = Path(local_path)
        log_event("SFTP_UPLOAD_START", local_file=local_path, remote_path=remote_path, host=self.host)
        client = self._connect(trust)
        try:
            sftp = client.open_sftp()
            try:
                self._ensure_remote_dirs(sftp, remote_path)
                started = time.monotonic()
                written = 0
                digest = hashlib.sha256()
                with open(local_path, "rb") as handle, sftp.open(remote_path, "wb") as remote:
                    for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
                        remote.write(chunk)
                        digest.update(chunk)
                        written += len(chunk)
                duration = time.monotonic() - started
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as exc:
            raise DeliveryError(f"SFTP upload failed: {format_exception_message(exc)}") from exc
        finally:
            client.close()

        report = UploadReport(
            remote_path=remote_path,
            bytes_transferred=written,
            duration_seconds=duration,
            sha256=digest.hexdigest(),
        )
        log_event(
            "SFTP_UPLOAD_DONE",
            bytes_uploaded=report.bytes_transferred,
            duration_seconds=f"{report.duration_seconds:.2f}",
            speed_mbps=f"{report.speed_mbps:.2f}",
        )
        return report


class FtpUploader:
    """Plain FTP login and ``STOR``; there is no host identity to verify."""

    transport = "ftp"

    def __init__(
        self,
        host: str,
        user: str,
        password: str,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        ftp_factory: Callable[..., ftplib.FTP] = ftplib.FTP,
    ) -> None:
        self.host, self.port = split_host_port(host, DEFAULT_FTP_PORT)
        self.user = user
        self.password = password
        self.connect_timeout_seconds = connect_timeout_seconds
        self.ftp_factory = ftp_factory

    def _connect(self) -> ftplib.FTP:
        ftp = self.ftp_factory(timeout=self.connect_timeout_seconds)
        try:
            ftp.connect(self.host, self.port)
        except (ftplib.Error, OSError, EOFError) as exc:
            ftp.close()
            raise DeliveryError(f"FTP connect failed: {format_exception_message(exc)}") from exc
        try:
            ftp.login(self.user, self.password)
        except (ftplib.Error, OSError, EOFError) as exc:
            ftp.close()
            raise DeliveryError(f"FTP login failed: {format_exception_message(exc)}") from exc
        return ftp

    @staticmethod
    def _quit(ftp: ftplib.FTP) -> None:
        try:
            ftp.quit()
        except (ftplib.Error, OSError, EOFError):
            ftp.close()

    @staticmethod
    def _ensure_remote_dirs(ftp: ftplib.FTP, remote_path: str) -> None:
        for directory in remote_parent_dirs(remote_path):
            try:
                ftp.mkd(directory)
            except ftplib.error_perm:
                # 550 when it already exists; STOR reports real permission problems.
                continue

    def verify_connection(self, trust: Optional[TrustDecision] = None) -> None:
        self._quit(self._connect())
        log_event("FTP_CONNECTION_VERIFIED", host=self.host, port=self.port)

    def upload(self, local_path: Path, remote_path: str, trust: Optional[TrustDecision] = None) -> UploadReport:
        local_path = Path(local_path)
        log_event("FTP_UPLOAD_START", local_file=local_path, remote_path=remote_path, host=self.host)
        ftp = self._connect()
        written = 0
        digest = hashlib.sha256()

        def on_block(block: bytes) -> None:
            nonlocal written
            written += len(block)
            digest.update(block)

        try:
            self._ensure_remote_dirs(ftp, remote_path)
            started = time.monotonic()
            with open(local_path, "rb") as handle:
                ftp.storbinary(f"STOR {remote_path}", handle, blocksize=CHUNK_SIZE, callback=on_block)
            duration = time.monotonic() - started
        except (ftplib.Error, OSError, EOFError) as exc:
            raise DeliveryError(f"FTP upload failed: {format_exception_message(exc)}") from exc
        finally:
            self._quit(ftp)

        report = UploadReport(
            remote_path=remote_path,
            bytes_transferred=written,
            duration_seconds=duration,
            sha256=digest.hexdigest(),
        )
        log_event(
            "FTP_UPLOAD_DONE",
            remote_path=remote_path,
            bytes_uploaded=report.bytes_transferred,
            duration_seconds=f"{report.duration_seconds:.2f}",
        )
        return report
