from __future__ import annotations

import ftplib
import hashlib
import io
from pathlib import Path
from typing import Dict, List, Optional

import paramiko
import pytest

from gihftp.delivery import (
    FtpUploader,
    SftpUploader,
    remote_parent_dirs,
    remote_path_for,
    split_host_port,
)
from gihftp.errors import DeliveryError, HostVerificationFailure
from gihftp.trust import POLICY_TOFU, AcceptAnyHostKeyPolicy, HostKeyPins, TrustDecision


class FakeRemoteFile(io.BytesIO):
    def __init__(self, store: Dict[str, bytes], path: str) -> None:
        super().__init__()
        self.store = store
        self.path = path

    def close(self) -> None:
        if not self.closed:
            self.store[self.path] = self.getvalue()
        super().close()


class FakeSFTP:
    def __init__(self, existing: Optional[List[str]] = None) -> None:
        self.dirs = set(existing or [])
        self.files: Dict[str, bytes] = {}
        self.mkdirs: List[str] = []
        self.closed = False

    def stat(self, path: str) -> object:
        if path not in self.dirs:
            raise IOError(2, "No such file")
        return object()

    def mkdir(self, path: str) -> None:
        self.mkdirs.append(path)
        self.dirs.add(path)

    def open(self, path: str, mode: str) -> FakeRemoteFile:
        return FakeRemoteFile(self.files, path)

    def close(self) -> None:
        self.closed = True


class FakeSSHClient:
    def __init__(self, sftp: FakeSFTP, connect_error: Optional[Exception] = None) -> None:
        self.sftp = sftp
        self.connect_error = connect_error
        self.policy = None
        self.connect_kwargs: Dict[str, object] = {}
        self.closed = False

    def set_missing_host_key_policy(self, policy: object) -> None:
        self.policy = policy

    def connect(self, hostname: str, **kwargs: object) -> None:
        self.connect_kwargs = {"hostname": hostname, **kwargs}
        if self.connect_error is not None:
            raise self.connect_error

    def open_sftp(self) -> FakeSFTP:
        return self.sftp

    def close(self) -> None:
        self.closed = True


class FakeFTP:
    instances: List["FakeFTP"] = []

    def __init__(self, timeout: float = 0, login_error: Optional[Exception] = None) -> None:
        self.timeout = timeout
        self.login_error = login_error
        self.address = None
        self.user = None
        self.dirs = set()
        self.stored: Dict[str, bytes] = {}
        self.quit_called = False
        FakeFTP.instances.append(self)

    def connect(self, host: str, port: int) -> None:
        self.address = (host, port)

    def login(self, user: str, password: str) -> None:
        if self.login_error is not None:
            raise self.login_error
        self.user = user

    def mkd(self, path: str) -> str:
        if path in self.dirs:
            raise ftplib.error_perm("550 File exists")
        self.dirs.add(path)
        return path

    def storbinary(self, cmd: str, handle, blocksize: int = 8192, callback=None) -> None:
        data = b""
        while True:
            block = handle.read(blocksize)
            if not block:
                break
            data += block
            if callback is not None:
                callback(block)
        self.stored[cmd[len("STOR "):]] = data

    def quit(self) -> None:
        self.quit_called = True

    def close(self) -> None:
        pass


def _trust() -> TrustDecision:
    return TrustDecision(
        auth_methods=("password",),
        requested_policy=POLICY_TOFU,
        applied_policy=POLICY_TOFU,
        host_key_policy=AcceptAnyHostKeyPolicy(),
        pins=HostKeyPins(),
        password="pw",
    )


@pytest.fixture
def artifact(tmp_path: Path) -> Path:
    path = tmp_path / "NETINTERNET-GIH-DNS_250k-20240101.txt"
    path.write_bytes(b"x.com|17\ny.com|3\nz.com|1\n")
    return path


def test_split_host_port() -> None:
    assert split_host_port("ftp.example", 21) == ("ftp.example", 21)
    assert split_host_port("ftp.example:2121", 21) == ("ftp.example", 2121)
    assert split_host_port("[::1]:2222", 22) == ("::1", 2222)
    with pytest.raises(ValueError):
        split_host_port("host:abc", 21)


def test_remote_paths() -> None:
    assert remote_path_for("/var/log/gih/", "/tmp/a.txt") == "/var/log/gih/a.txt"
    assert remote_parent_dirs("/var/log/gih/a.txt") == ["/var", "/var/log", "/var/log/gih"]
    assert remote_parent_dirs("a.txt") == []
    assert remote_parent_dirs("logs/a.txt") == ["logs"]


def test_sftp_upload_streams_file_and_creates_dirs(artifact: Path) -> None:
    sftp = FakeSFTP(existing=["/var", "/var/log"])
    client = FakeSSHClient(sftp)
    uploader = SftpUploader("archive.example:2222", "root", connect_timeout_seconds=3, client_factory=lambda: client)
    trust = _trust()

    report = uploader.upload(artifact, "/var/log/gih/" + artifact.name, trust)

    data = artifact.read_bytes()
    assert sftp.files["/var/log/gih/" + artifact.name] == data
    assert sftp.mkdirs == ["/var/log/gih"]
    assert report.bytes_transferred == len(data)
    assert report.sha256 == hashlib.sha256(data).hexdigest()
    assert client.policy is trust.host_key_policy
    assert client.connect_kwargs["port"] == 2222
    assert client.connect_kwargs["password"] == "pw"
    assert client.connect_kwargs["allow_agent"] is False
    assert client.connect_kwargs["look_for_keys"] is False
    assert client.connect_kwargs["timeout"] == 3
    assert client.closed and sftp.closed


def test_sftp_auth_failure_is_delivery_error(artifact: Path) -> None:
    client = FakeSSHClient(FakeSFTP(), connect_error=paramiko.AuthenticationException("denied"))
    uploader = SftpUploader("archive.example", "root", client_factory=lambda: client)

    with pytest.raises(DeliveryError):
        uploader.upload(artifact, "/a.txt", _trust())
    assert client.closed


def test_sftp_host_key_failure_is_kept(artifact: Path) -> None:
    client = FakeSSHClient(FakeSFTP(), connect_error=HostVerificationFailure("archive.example", "changed"))
    uploader = SftpUploader("archive.example", "root", client_factory=lambda: client)

    with pytest.raises(HostVerificationFailure):
        uploader.upload(artifact, "/a.txt", _trust())


def test_sftp_socket_error_is_delivery_error(artifact: Path) -> None:
    client = FakeSSHClient(FakeSFTP(), connect_error=ConnectionRefusedError("refused"))
    uploader = SftpUploader("archive.example", "root", client_factory=lambda: client)

    with pytest.raises(DeliveryError):
        uploader.upload(artifact, "/a.txt", _trust())


def test_sftp_requires_trust_decision(artifact: Path) -> None:
    uploader = SftpUploader("archive.example", "root", client_factory=lambda: FakeSSHClient(FakeSFTP()))

    with pytest.raises(DeliveryError):
        uploader.upload(artifact, "/a.txt", None)


def test_sftp_verify_connection(artifact: Path) -> None:
    client = FakeSSHClient(FakeSFTP())
    SftpUploader("archive.example", "root", client_factory=lambda: client).verify_connection(_trust())

    assert client.closed


def test_ftp_upload_uses_default_port(artifact: Path) -> None:
    FakeFTP.instances = []
    uploader = FtpUploader("ftp.example", "root", "pw", connect_timeout_seconds=4, ftp_factory=FakeFTP)

    report = uploader.upload(artifact, "/var/log/gih/" + artifact.name)

    ftp = FakeFTP.instances[0]
    assert ftp.address == ("ftp.example", 21)
    assert ftp.timeout == 4
    assert ftp.user == "root"
    assert ftp.stored["/var/log/gih/" + artifact.name] == artifact.read_bytes()
    assert ftp.dirs == {"/var", "/var/log", "/var/log/gih"}
    assert ftp.quit_called
    assert report.bytes_transferred == len(artifact.read_bytes())


def test_ftp_existing_dirs_are_fine(artifact: Path) -> None:
    FakeFTP.instances = []
    uploader = FtpUploader("ftp.example", "root", "pw", ftp_factory=FakeFTP)
    uploader.upload(artifact, "/data/" + artifact.name)
    uploader.upload(artifact, "/data/" + artifact.name)

    assert len(FakeFTP.instances) == 2


def test_ftp_login_failure_is_delivery_error(artifact: Path) -> None:
    def factory(timeout: float = 0) -> FakeFTP:
        return FakeFTP(timeout=timeout, login_error=ftplib.error_perm("530 Login incorrect"))

    uploader = FtpUploader("ftp.example", "root", "wrong", ftp_factory=factory)

    with pytest.raises(DeliveryError):
        uploader.upload(artifact, "/a.txt")
    with pytest.raises(DeliveryError):
        uploader.verify_connection()
