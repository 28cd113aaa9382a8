"""Client for the GIH DNS log catalog API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

import requests
import urllib3

from .errors import CatalogFetchError, DownloadError
from .logs import format_exception_message, log_event

DEFAULT_API_PORT = "2035"
DEFAULT_SCHEME = "https"
DEFAULT_TIMEOUT_SECONDS = 30
CATALOG_PATH = "/api/dns/query/logs"
API_DATE_FORMAT = "%Y%m%d"
USER_AGENT = "gihftp/2.0"


@dataclass(frozen=True)
class RemoteSource:
    host: str
    port: str = DEFAULT_API_PORT

    @classmethod
    def parse(cls, value: str, default_port: str = DEFAULT_API_PORT) -> "RemoteSource":
        text = value.strip()
        if not text:
            raise ValueError("empty source address")
        if text.startswith("["):
            # [v6addr]:port
            host, _, rest = text[1:].partition("]")
            port = rest.lstrip(":") or default_port
            return cls(host=host, port=port)
        if text.count(":") == 1:
            host, port = text.split(":", 1)
            return cls(host=host, port=port or default_port)
        return cls(host=text, port=default_port)

    @property
    def netloc(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"

    def __str__(self) -> str:
        return self.netloc


@dataclass(frozen=True)
class LogFileDescriptor:
    date: str
    filename: str
    download_url: str
    size: int = -1


@dataclass(frozen=True)
class CatalogListing:
    count: int
    start_date: str
    end_date: str
    files: Tuple[LogFileDescriptor, ...]


def format_api_date(value: date) -> str:
    return value.strftime(API_DATE_FORMAT)


def last_week_dates(today: Optional[date] = None) -> Tuple[date, date]:
    return date_range(7, today)


def date_range(days_back: int, today: Optional[date] = None) -> Tuple[date, date]:
    """Return ``(start, end)`` covering ``days_back`` days ending yesterday."""
    if days_back <= 0:
        days_back = 7
    yesterday = (today or date.today()) - timedelta(days=1)
    return yesterday - timedelta(days=days_back - 1), yesterday


def _safe_int(value: object, default: int = -1) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def parse_descriptor(row: Dict[str, Any]) -> LogFileDescriptor:
    download_url = str(row.get("download_url") or "").strip()
    if not download_url:
        raise ValueError("file entry has no download_url")
    return LogFileDescriptor(
        date=str(row.get("date") or ""),
        filename=str(row.get("filename") or ""),
        download_url=download_url,
        size=_safe_int(row.get("size")),
    )


def parse_catalog_payload(host: str, payload: object) -> CatalogListing:
    if not isinstance(payload, dict):
        raise CatalogFetchError(host, "catalog response is not a JSON object")
    if not payload.get("status"):
        message = str(payload.get("message") or "").strip() or "no message"
        raise CatalogFetchError(host, f"API returned error: {message}")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise CatalogFetchError(host, "catalog 'data' is not an object")
    rows = data.get("files") or []
    if not isinstance(rows, list):
        raise CatalogFetchError(host, "catalog 'files' is not a list")

    files: List[LogFileDescriptor] = []
    for row in rows:
        if not isinstance(row, dict):
            log_event("CATALOG_ENTRY_SKIPPED", logging.WARNING, host=host, reason="not_an_object")
            continue
        try:
            files.append(parse_descriptor(row))
        except ValueError as exc:
            log_event("CATALOG_ENTRY_SKIPPED", logging.WARNING, host=host, reason=str(exc))
    return CatalogListing(
        count=_safe_int(data.get("count"), len(files)),
        start_date=str(data.get("start_date") or ""),
        end_date=str(data.get("end_date") or ""),
        files=tuple(files),
    )


class GihApiClient:
    """Lists and downloads DNS log files from GIH servers.

    Every request is attempted once with ``timeout_seconds``; the caller
    decides what a failure means for the run.
    """

    def __init__(
        self,
        verify_tls: bool = True,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        scheme: str = DEFAULT_SCHEME,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.verify_tls = verify_tls
        self.timeout_seconds = timeout_seconds
        self.scheme = scheme
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})
        self.session.verify = verify_tls
        if not verify_tls:
            log_event("TLS_VERIFY_DISABLED", logging.WARNING, message="TLS certificate verification is DISABLED")
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "GihApiClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def catalog_url(self, source: RemoteSource) -> str:
        return f"{self.scheme}://{source.netloc}{CATALOG_PATH}"

    def download_url(self, source: RemoteSource, locator: str) -> str:
        if locator.startswith(("http://", "https://")):
            return locator
        if not locator.startswith("/"):
            locator = "/" + locator
        return f"{self.scheme}://{source.netloc}{locator}"

    def _get(self, url: str, params: Optional[Dict[str, str]] = None) -> requests.Response:
        response = self.session.get(url, params=params, timeout=self.timeout_seconds)
        if response.status_code != 200:
            body = (response.text or "").strip()
            response.close()
            raise requests.HTTPError(f"HTTP {response.status_code}: {body[:200]}", response=response)
        return response

    def fetch_catalog(self, source: RemoteSource, start: date, end: date) -> CatalogListing:
        url = self.catalog_url(source)
        params = {"start": format_api_date(start), "end": format_api_date(end)}
        log_event("CATALOG_REQUEST", logging.DEBUG, url=url, start=params["start"], end=params["end"])
        try:
            response = self._get(url, params=params)
        except requests.RequestException as exc:
            raise CatalogFetchError(source.host, f"API request failed: {format_exception_message(exc)}") from exc
        try:
            payload = response.json()
        except ValueError as exc:
            raise CatalogFetchError(source.host, f"failed to parse JSON response: {exc}") from exc

        listing = parse_catalog_payload(source.host, payload)
        log_event(
            "CATALOG_FETCHED",
            host=source.host,
            count=listing.count,
            start_date=listing.start_date,
            end_date=listing.end_date,
        )
        return listing

    def fetch_log_files(self, source: RemoteSource, start: date, end: date) -> List[LogFileDescriptor]:
        return list(self.fetch_catalog(source, start, end).files)

    def download_file(self, source: RemoteSource, descriptor: LogFileDescriptor) -> bytes:
        url = self.download_url(source, descriptor.download_url)
        log_event("DOWNLOAD_REQUEST", logging.DEBUG, url=url)
        try:
            response = self._get(url)
            content = response.content
        except requests.RequestException as exc:
            raise DownloadError(url, format_exception_message(exc)) from exc
        if descriptor.size >= 0 and len(content) != descriptor.size:
            log_event(
                "DOWNLOAD_SIZE_MISMATCH",
                logging.WARNING,
                url=url,
                declared=descriptor.size,
                received=len(content),
            )
        log_event("DOWNLOAD_DONE", logging.DEBUG, url=url, size_bytes=len(content))
        return content
