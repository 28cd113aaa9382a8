"""Credential selection and SSH host-key verification policy for delivery."""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

import paramiko
from paramiko.hostkeys import InvalidHostKey
from paramiko.pkey import UnknownKeyType

from .errors import HostVerificationFailure, NoCredentialsAvailable
from .logs import format_exception_message, log_event

POLICY_STRICT = "strict"
POLICY_INSECURE = "insecure"
POLICY_TOFU = "tofu"
HOST_KEY_POLICIES = (POLICY_STRICT, POLICY_INSECURE, POLICY_TOFU)

AUTH_PASSWORD = "password"
AUTH_PUBLICKEY = "publickey"

DEFAULT_KNOWN_HOSTS = "$HOME/.ssh/known_hosts"


def fingerprint_sha256(key: paramiko.PKey) -> str:
    digest = hashlib.sha256(key.asbytes()).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


class HostKeyPins:
    """Host keys trusted on first use, kept in memory for one run only."""

    def __init__(self) -> None:
        self._pins: Dict[str, Tuple[str, bytes]] = {}

    def __contains__(self, hostname: object) -> bool:
        return hostname in self._pins

    def __len__(self) -> int:
        return len(self._pins)

    def fingerprint(self, hostname: str) -> Optional[str]:
        pinned = self._pins.get(hostname)
        return pinned[0] if pinned else None

    def verify(self, hostname: str, key: paramiko.PKey) -> bool:
        """Pin ``key`` for an unseen host, or check it against the pin.

        Returns True when the key was pinned by this call.
        """
        fingerprint = fingerprint_sha256(key)
        pinned = self._pins.get(hostname)
        if pinned is None:
            self._pins[hostname] = (fingerprint, key.asbytes())
            log_event(
                "HOST_KEY_PINNED",
                logging.WARNING,
                host=hostname,
                fingerprint=fingerprint,
                message="host not verified against known_hosts, trusting on first use",
            )
            return True
        if pinned[1] != key.asbytes():
            log_event(
                "HOST_KEY_MISMATCH",
                logging.CRITICAL,
                host=hostname,
                expected=pinned[0],
                got=fingerprint,
                message="remote host identification has changed, possible interception",
            )
            raise HostVerificationFailure(
                hostname,
                f"host key changed since first use in this run (expected {pinned[0]}, got {fingerprint})",
            )
        return False


class StrictHostKeyPolicy(paramiko.MissingHostKeyPolicy):
    def __init__(self, host_keys: paramiko.HostKeys, source: str = "") -> None:
        self.host_keys = host_keys
        self.source = source

    def missing_host_key(self, client: object, hostname: str, key: paramiko.PKey) -> None:
        entries = self.host_keys.lookup(hostname)
        if entries is None:
            log_event("HOST_KEY_UNKNOWN", logging.ERROR, host=hostname, known_hosts=self.source)
            raise HostVerificationFailure(hostname, f"host is not listed in {self.source or 'known_hosts'}")
        expected = entries.get(key.get_name())
        if expected is None or expected.asbytes() != key.asbytes():
            log_event(
                "HOST_KEY_MISMATCH",
                logging.CRITICAL,
                host=hostname,
                key_type=key.get_name(),
                got=fingerprint_sha256(key),
                known_hosts=self.source,
            )
            raise HostVerificationFailure(hostname, f"host key does not match {self.source or 'known_hosts'}")


class TrustOnFirstUsePolicy(paramiko.MissingHostKeyPolicy):
    def __init__(self, pins: HostKeyPins) -> None:
        self.pins = pins

    def missing_host_key(self, client: object, hostname: str, key: paramiko.PKey) -> None:
        self.pins.verify(hostname, key)


class AcceptAnyHostKeyPolicy(paramiko.MissingHostKeyPolicy):
    def missing_host_key(self, client: object, hostname: str, key: paramiko.PKey) -> None:
        log_event(
            "HOST_KEY_UNVERIFIED",
            logging.WARNING,
            host=hostname,
            fingerprint=fingerprint_sha256(key),
            message="SSH host key verification is DISABLED",
        )


@dataclass
class TrustDecision:
    auth_methods: Tuple[str, ...]
    requested_policy: str
    applied_policy: str
    host_key_policy: paramiko.MissingHostKeyPolicy
    pins: HostKeyPins
    password: Optional[str] = field(default=None, repr=False)
    pkey: Optional[paramiko.PKey] = field(default=None, repr=False)
    key_path: Optional[str] = None
    fallback_reason: Optional[str] = None

    @property
    def fell_back(self) -> bool:
        return self.requested_policy != self.applied_policy

    def describe(self) -> Dict[str, object]:
        return {
            "auth_methods": ",".join(self.auth_methods),
            "requested": self.requested_policy,
            "applied": self.applied_policy,
            "fallback_reason": self.fallback_reason,
            "pinned_hosts": len(self.pins),
        }


def expand_path(value: str) -> str:
    return os.path.expanduser(os.path.expandvars(value))


def load_private_key(key_path: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    path = expand_path(key_path)
    try:
        return paramiko.PKey.from_path(path)
    except paramiko.PasswordRequiredException:
        if not passphrase:
            raise
    except (paramiko.SSHException, UnknownKeyType, ValueError):
        # An encrypted legacy PEM can surface as a parse error without a passphrase.
        if not passphrase:
            raise
    return paramiko.PKey.from_path(path, passphrase=passphrase)


def load_known_hosts(path: str) -> paramiko.HostKeys:
    expanded = expand_path(path)
    if not Path(expanded).is_file():
        raise FileNotFoundError(f"known_hosts file not found: {expanded}")
    try:
        return paramiko.HostKeys(expanded)
    except (InvalidHostKey, paramiko.SSHException, UnicodeDecodeError) as exc:
        raise ValueError(f"failed to parse known_hosts {expanded}: {format_exception_message(exc)}") from exc


class TrustNegotiator:
    """Produces a ``TrustDecision`` before each secure delivery attempt.

    The negotiator owns the run's ``HostKeyPins`` and hands the same object
    to every decision it makes, so a host pinned on the first upload is
    checked on every later one.
    """

    def __init__(
        self,
        password: Optional[str] = None,
        key_path: Optional[str] = None,
        key_passphrase: Optional[str] = None,
        policy: str = POLICY_STRICT,
        known_hosts_path: str = DEFAULT_KNOWN_HOSTS,
        tofu_fallback: bool = True,
        pins: Optional[HostKeyPins] = None,
    ) -> None:
        if policy not in HOST_KEY_POLICIES:
            raise ValueError(f"Unknown host key policy '{policy}'. Choices: {', '.join(HOST_KEY_POLICIES)}")
        self.password = password
        self.key_path = key_path
        self.key_passphrase = key_passphrase
        self.policy = policy
        self.known_hosts_path = known_hosts_path
        self.tofu_fallback = tofu_fallback
        self.pins = pins if pins is not None else HostKeyPins()

    def _select_credentials(self) -> Tuple[Tuple[str, ...], Optional[paramiko.PKey]]:
        methods = []
        if self.password:
            methods.append(AUTH_PASSWORD)
        pkey = None
        if self.key_path:
            try:
                pkey = load_private_key(self.key_path, self.key_passphrase)
            except (OSError, ValueError, paramiko.SSHException, UnknownKeyType) as exc:
                log_event(
                    "SSH_KEY_LOAD_WARN",
                    logging.WARNING,
                    key_path=self.key_path,
                    error=format_exception_message(exc),
                    tip="set SSH_KEY_PASSPHRASE for encrypted keys",
                )
            else:
                methods.append(AUTH_PUBLICKEY)
        if not methods:
            raise NoCredentialsAvailable("no authentication method available (provide password or SSH key)")
        return tuple(methods), pkey

    def _select_host_key_policy(self) -> Tuple[str, paramiko.MissingHostKeyPolicy, Optional[str]]:
        if self.policy == POLICY_INSECURE:
            log_event("HOST_KEY_POLICY_INSECURE", logging.WARNING, message="SSH host key verification is DISABLED")
            return POLICY_INSECURE, AcceptAnyHostKeyPolicy(), None
        if self.policy == POLICY_TOFU:
            return POLICY_TOFU, TrustOnFirstUsePolicy(self.pins), None

        try:
            host_keys = load_known_hosts(self.known_hosts_path)
        except (OSError, ValueError) as exc:
            reason = format_exception_message(exc)
            if not self.tofu_fallback:
                raise HostVerificationFailure("*", f"known_hosts unusable: {reason}") from exc
            log_event(
                "HOST_KEY_POLICY_FALLBACK",
                logging.WARNING,
                requested=POLICY_STRICT,
                applied=POLICY_TOFU,
                reason=reason,
            )
            return POLICY_TOFU, TrustOnFirstUsePolicy(self.pins), reason
        return POLICY_STRICT, StrictHostKeyPolicy(host_keys, expand_path(self.known_hosts_path)), None

    def negotiate(self) -> TrustDecision:
        methods, pkey = self._select_credentials()
        applied, host_key_policy, fallback_reason = self._select_host_key_policy()
        decision = TrustDecision(
            auth_methods=methods,
            requested_policy=self.policy,
            applied_policy=applied,
            host_key_policy=host_key_policy,
            pins=self.pins,
            password=self.password or None,
            pkey=pkey,
            key_path=self.key_path if pkey is not None else None,
            fallback_reason=fallback_reason,
        )
        log_event("TRUST_DECISION", **decision.describe())
        return decision
