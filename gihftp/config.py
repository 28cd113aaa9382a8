"""Configuration: config file, then command-line flags, then secrets from the environment."""

from __future__ import annotations

import argparse
import configparser
import json
import os
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from . import __version__
from .catalog import DEFAULT_API_PORT, DEFAULT_TIMEOUT_SECONDS, RemoteSource
from .delivery import DEFAULT_CONNECT_TIMEOUT_SECONDS
from .errors import ConfigError
from .logs import LOG_LEVELS
from .partition import DEFAULT_ARTIFACT_PREFIX
from .trust import DEFAULT_KNOWN_HOSTS, HOST_KEY_POLICIES, POLICY_INSECURE, POLICY_STRICT

DEFAULT_CONFIG_PATHS = (Path("/etc/gihftp.conf"), Path("./gihftp.conf"))
DEFAULT_REMOTE_DIR = "/var/log/gih/"
DEFAULT_SSH_KEY = "$HOME/.ssh/id_rsa"
DEFAULT_USER = "root"
DEFAULT_DAYS = 7
TRANSPORTS = ("ftp", "sftp")
PARTITION_MODES = ("daily", "range")
LEGACY_SOURCE_KEY = re.compile(r"gihdns(\d+)$")


@dataclass
class Config:
    sources: List[str] = field(default_factory=list)
    api_port: str = DEFAULT_API_PORT
    api_scheme: str = "https"
    verify_tls: bool = True
    transport: str = "ftp"
    dest_host: str = ""
    dest_user: str = DEFAULT_USER
    dest_password: str = field(default="", repr=False)
    remote_dir: str = DEFAULT_REMOTE_DIR
    ssh_key: str = DEFAULT_SSH_KEY
    ssh_key_passphrase: str = field(default="", repr=False)
    known_hosts: str = DEFAULT_KNOWN_HOSTS
    host_key_policy: str = POLICY_STRICT
    tofu_fallback: bool = True
    work_dir: str = "."
    log_level: str = "info"
    cleanup: bool = True
    days: int = DEFAULT_DAYS
    mode: str = "daily"
    end_date: Optional[date] = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS
    artifact_prefix: str = DEFAULT_ARTIFACT_PREFIX
    logs_dir: Optional[str] = None
    dry_run: bool = False
    verify_connection: bool = False
    progress: bool = True
    config_path: Optional[str] = None

    def remote_sources(self) -> List[RemoteSource]:
        return [RemoteSource.parse(value, self.api_port) for value in self.sources]

    def validate(self) -> None:
        if not self.sources:
            raise ConfigError("at least one GIH server is required (use --gih-servers or a config file)")
        try:
            self.remote_sources()
        except ValueError as exc:
            raise ConfigError(f"invalid GIH server address: {exc}") from exc
        if not str(self.api_port).strip():
            raise ConfigError("GIH API port is required")
        if not self.dest_host and (self.verify_connection or not self.dry_run):
            raise ConfigError("FTP host is required (use --ftp-host or a config file)")
        if self.log_level.strip().lower() not in LOG_LEVELS:
            raise ConfigError(
                f"invalid log level: {self.log_level} (must be one of {', '.join(sorted(LOG_LEVELS))})"
            )
        if self.transport not in TRANSPORTS:
            raise ConfigError(f"invalid transport: {self.transport} (must be one of {', '.join(TRANSPORTS)})")
        if self.host_key_policy not in HOST_KEY_POLICIES:
            raise ConfigError(
                f"invalid host key policy: {self.host_key_policy} "
                f"(must be one of {', '.join(HOST_KEY_POLICIES)})"
            )
        if self.mode not in PARTITION_MODES:
            raise ConfigError(f"invalid mode: {self.mode} (must be one of {', '.join(PARTITION_MODES)})")
        if self.days < 1:
            raise ConfigError("--days must be at least 1")
        if self.timeout_seconds <= 0 or self.connect_timeout_seconds <= 0:
            raise ConfigError("timeouts must be greater than 0")


def _parse_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "y", "on"}:
            return True
        if normalized in {"0", "false", "no", "n", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    raise ConfigError(f"Cannot parse boolean from value '{value}'.")


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}'. Use YYYY-MM-DD.") from exc


def parse_server_list(value: object) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(item) for item in value if item is not None]
    else:
        raise ConfigError("GIH servers must be a comma-separated string or a list.")
    return [item.strip() for item in items if item and item.strip()]


def load_legacy_ini(raw: str) -> Dict[str, Any]:
    """Read the flat ``key = value`` gihftp.conf format (no section header)."""
    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read_string("[gihftp]\n" + raw)
    except configparser.Error as exc:
        raise ConfigError(f"Invalid config file: {exc}") from exc
    values = dict(parser["gihftp"])
    numbered = sorted(
        (int(match.group(1)), value)
        for key, value in values.items()
        if (match := LEGACY_SOURCE_KEY.match(key)) and value.strip()
    )
    data: Dict[str, Any] = {key: value for key, value in values.items() if not LEGACY_SOURCE_KEY.match(key)}
    if numbered:
        data["sources"] = [value.strip() for _, value in numbered]
    return data


def load_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    suffix = path.suffix.lower()
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"failed to load config file {path}: {exc}") from exc
    if suffix in {".yaml", ".yml"}:
        try:
            data = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    elif suffix == ".json":
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
    elif suffix in {".conf", ".ini", ""}:
        data = load_legacy_ini(raw)
    else:
        raise ConfigError("Unsupported config file extension. Use .yaml/.yml, .json or .conf.")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("Config root must be a mapping/object.")
    return data


def flatten_config(data: Dict[str, Any]) -> Dict[str, Any]:
    flattened: Dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            for nested_key, nested_value in value.items():
                flattened[f"{key}_{nested_key}"] = nested_value
        else:
            flattened[key] = value
    return flattened


def config_to_parser_defaults(config_data: Dict[str, Any]) -> Dict[str, Any]:
    cfg = flatten_config(config_data)
    defaults: Dict[str, Any] = {}
    scalar_map = {
        "api_port": "api_port",
        "gih_api_port": "api_port",
        "gihapiport": "api_port",
        "api_scheme": "api_scheme",
        "gih_api_scheme": "api_scheme",
        "transport": "transport",
        "delivery_transport": "transport",
        "dest_host": "dest_host",
        "delivery_host": "dest_host",
        "ftp_host": "dest_host",
        "ftpserver": "dest_host",
        "dest_user": "dest_user",
        "delivery_user": "dest_user",
        "ftp_user": "dest_user",
        "ftpuser": "dest_user",
        "dest_password": "dest_password",
        "delivery_password": "dest_password",
        "ftp_password": "dest_password",
        "ftppassword": "dest_password",
        "remote_dir": "remote_dir",
        "delivery_remote_dir": "remote_dir",
        "ftp_log_dir": "remote_dir",
        "ftplogdir": "remote_dir",
        "ssh_key": "ssh_key",
        "ssh_key_path": "ssh_key",
        "sshkey": "ssh_key",
        "known_hosts": "known_hosts",
        "ssh_known_hosts": "known_hosts",
        "host_key_policy": "host_key_policy",
        "ssh_host_key_policy": "host_key_policy",
        "work_dir": "work_dir",
        "log_level": "log_level",
        "logging_log_level": "log_level",
        "logs_dir": "logs_dir",
        "logging_logs_dir": "logs_dir",
        "mode": "mode",
        "partition_mode": "mode",
        "days": "days",
        "partition_days": "days",
        "timeout_seconds": "timeout_seconds",
        "network_timeout_seconds": "timeout_seconds",
        "connect_timeout_seconds": "connect_timeout_seconds",
        "network_connect_timeout_seconds": "connect_timeout_seconds",
        "artifact_prefix": "artifact_prefix",
    }
    bool_map = {
        "verify_tls": "verify_tls",
        "gih_verify_tls": "verify_tls",
        "tofu_fallback": "tofu_fallback",
        "ssh_tofu_fallback": "tofu_fallback",
        "cleanup": "cleanup",
        "cleanup_after": "cleanup",
        "insecure_skip_verify": "insecure_skip_verify",
        "progress": "progress",
    }
    list_map = {
        "sources": "sources",
        "gih_servers": "sources",
        "servers": "sources",
    }

    for source_key, target_key in scalar_map.items():
        if source_key in cfg and cfg[source_key] is not None:
            defaults[target_key] = cfg[source_key]
    for source_key, target_key in bool_map.items():
        if source_key in cfg:
            defaults[target_key] = _parse_bool(cfg[source_key])
    for source_key, target_key in list_map.items():
        if source_key in cfg:
            defaults[target_key] = parse_server_list(cfg[source_key])

    for key in ("api_port", "dest_host", "dest_user", "dest_password", "remote_dir", "ssh_key"):
        if key in defaults:
            defaults[key] = str(defaults[key])
    try:
        if "days" in defaults:
            defaults["days"] = int(defaults["days"])
        for key in ("timeout_seconds", "connect_timeout_seconds"):
            if key in defaults:
                defaults[key] = float(defaults[key])
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid numeric config value: {exc}") from exc
    for key in ("end_date", "partition_end_date"):
        if key in cfg and cfg[key]:
            value = cfg[key]
            if isinstance(value, date):
                defaults["end_date"] = value
            else:
                try:
                    defaults["end_date"] = date.fromisoformat(str(value))
                except ValueError as exc:
                    raise ConfigError(f"Config key '{key}' must be YYYY-MM-DD.") from exc
    return defaults


def find_default_config(paths: Optional[Sequence[Path]] = None) -> Optional[Path]:
    for path in DEFAULT_CONFIG_PATHS if paths is None else paths:
        if path.is_file():
            return path
    return None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gihftp",
        description="Fetch GIH DNS query logs, merge them per day and upload the result.",
    )
    parser.add_argument("--config", help="Path to YAML/JSON/INI config file.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--gih-servers",
        dest="sources",
        type=parse_server_list,
        default=[],
        help="Comma-separated list of GIH server addresses (host or host:port).",
    )
    parser.add_argument("--gih-api-port", dest="api_port", default=DEFAULT_API_PORT, help="GIH API port.")
    parser.add_argument("--api-scheme", choices=("https", "http"), default="https", help="GIH API URL scheme.")
    parser.add_argument("--transport", choices=TRANSPORTS, default="ftp", help="Delivery transport.")
    parser.add_argument("--ftp-host", dest="dest_host", default="", help="FTP/SFTP server address (host[:port]).")
    parser.add_argument("--ftp-user", dest="dest_user", default=DEFAULT_USER, help="FTP/SFTP username.")
    parser.add_argument(
        "--ftp-password",
        dest="dest_password",
        default="",
        help="FTP/SFTP password. FTP_PASSWORD takes precedence when set.",
    )
    parser.add_argument(
        "--ftp-log-dir",
        dest="remote_dir",
        default=DEFAULT_REMOTE_DIR,
        help="Remote directory for merged log files.",
    )
    parser.add_argument("--ssh-key", dest="ssh_key", default=DEFAULT_SSH_KEY, help="Path to SSH private key.")
    parser.add_argument("--known-hosts", default=DEFAULT_KNOWN_HOSTS, help="known_hosts file for strict checking.")
    parser.add_argument(
        "--host-key-policy",
        choices=HOST_KEY_POLICIES,
        default=POLICY_STRICT,
        help="SSH host key verification policy.",
    )
    parser.add_argument(
        "--tofu-fallback",
        dest="tofu_fallback",
        action="store_true",
        default=True,
        help="Fall back to trust-on-first-use when known_hosts is unusable (default: enabled).",
    )
    parser.add_argument(
        "--no-tofu-fallback",
        dest="tofu_fallback",
        action="store_false",
        help="Fail delivery instead of falling back when known_hosts is unusable.",
    )
    parser.add_argument("--work-dir", default=".", help="Working directory for merged files.")
    parser.add_argument("--log-level", default="info", help="Log level (debug, info, warning, error).")
    parser.add_argument("--logs-dir", default=None, help="Directory where per-run logs and summaries are written.")
    parser.add_argument(
        "--cleanup",
        dest="cleanup",
        action="store_true",
        default=True,
        help="Remove merged files after a successful upload (default: enabled).",
    )
    parser.add_argument("--no-cleanup", dest="cleanup", action="store_false", help="Keep merged files.")
    parser.add_argument(
        "--insecure-skip-verify",
        action="store_true",
        default=False,
        help="Skip TLS and SSH host verification (NOT RECOMMENDED).",
    )
    parser.add_argument("--days", type=int, default=DEFAULT_DAYS, help="Number of days to process.")
    parser.add_argument(
        "--mode",
        choices=PARTITION_MODES,
        default="daily",
        help="'daily' writes one file per day, 'range' one file for the whole window.",
    )
    parser.add_argument(
        "--end-date",
        type=parse_date,
        default=None,
        help="Last day to process (YYYY-MM-DD). Defaults to yesterday.",
    )
    parser.add_argument("--timeout-seconds", type=float, default=DEFAULT_TIMEOUT_SECONDS, help="HTTP timeout.")
    parser.add_argument(
        "--connect-timeout-seconds",
        type=float,
        default=DEFAULT_CONNECT_TIMEOUT_SECONDS,
        help="SSH/FTP connect timeout.",
    )
    parser.add_argument("--artifact-prefix", default=DEFAULT_ARTIFACT_PREFIX, help="Merged file name prefix.")
    parser.add_argument("--dry-run", action="store_true", help="Fetch and merge, but do not upload.")
    parser.add_argument(
        "--verify-connection",
        action="store_true",
        help="Only check that the delivery target accepts our credentials, then exit.",
    )
    parser.add_argument("--no-progress", dest="progress", action="store_false", default=True, help="Hide progress bars.")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--config")
    pre_args, _ = pre_parser.parse_known_args(argv)

    config_path: Optional[Path] = Path(pre_args.config) if pre_args.config else find_default_config()
    config_defaults: Dict[str, Any] = {}
    if config_path is not None:
        config_defaults = config_to_parser_defaults(load_config_file(config_path))

    parser = build_parser()
    if config_defaults:
        parser.set_defaults(**config_defaults)
    args = parser.parse_args(argv)
    args.config = str(config_path) if config_path is not None else None
    return args


def config_from_args(args: argparse.Namespace, environ: Optional[Mapping[str, str]] = None) -> Config:
    env = os.environ if environ is None else environ
    password = env.get("FTP_PASSWORD") or args.dest_password or ""
    passphrase = env.get("SSH_KEY_PASSPHRASE") or ""

    verify_tls = getattr(args, "verify_tls", True)
    host_key_policy = args.host_key_policy
    if args.insecure_skip_verify:
        verify_tls = False
        host_key_policy = POLICY_INSECURE

    return Config(
        sources=list(args.sources),
        api_port=str(args.api_port).strip(),
        api_scheme=args.api_scheme,
        verify_tls=verify_tls,
        transport=args.transport,
        dest_host=str(args.dest_host).strip(),
        dest_user=args.dest_user,
        dest_password=password,
        remote_dir=args.remote_dir,
        ssh_key=args.ssh_key,
        ssh_key_passphrase=passphrase,
        known_hosts=args.known_hosts,
        host_key_policy=host_key_policy,
        tofu_fallback=args.tofu_fallback,
        work_dir=args.work_dir,
        log_level=args.log_level,
        cleanup=args.cleanup,
        days=args.days,
        mode=args.mode,
        end_date=args.end_date,
        timeout_seconds=args.timeout_seconds,
        connect_timeout_seconds=args.connect_timeout_seconds,
        artifact_prefix=args.artifact_prefix,
        logs_dir=args.logs_dir,
        dry_run=args.dry_run,
        verify_connection=args.verify_connection,
        progress=args.progress,
        config_path=args.config,
    )


def load_config(argv: Optional[Sequence[str]] = None, environ: Optional[Mapping[str, str]] = None) -> Config:
    args = parse_args(argv)
    config = config_from_args(args, environ)
    config.validate()
    return config
