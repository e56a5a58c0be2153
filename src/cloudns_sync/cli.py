#!/usr/bin/env python3
"""cloudns-sync - CloudFormation exports to ClouDNS records

Reads AWS CloudFormation exports and creates or updates ClouDNS records based
on their names and values. Useful for publishing DNS names of resources such as
CloudFront distributions and API Gateway custom domains.

Export naming convention:

    ClouDNS:<type>:<label>:<label>:...

    The export name carries the record type and the hostname labels, the export
    value carries the record data as-is. For example an export named
    "ClouDNS:CNAME:myhost:example:org" with value "d123.cloudfront.net" results
    in the record:

        myhost.example.org CNAME d123.cloudfront.net

    in the ClouDNS zone example.org. Any record type (A, AAAA, ALIAS, ...) is
    passed through to ClouDNS unchanged.

Usage:

    cloudns-sync <cloudns-username> <cloudns-password-parameter-name> [ttl [stackName...]]

    <cloudns-username>                ClouDNS API sub-auth-user
    <cloudns-password-parameter-name> SSM parameter holding the encrypted API password
    [ttl]                             TTL for generated records (default: 300)
    [stackName...]                    Only scan exports of these stacks (default: all)

Environment variables:

    ClouDNS API:
        CLOUDNS_API_URL              Base URL (default: https://api.cloudns.net)
        CLOUDNS_TIMEOUT_SECONDS      Per-request timeout (default: none)

    Fallbacks for the command line arguments:
        CLOUDNS_USERNAME             ClouDNS API sub-auth-user
        CLOUDNS_PASSWORD_PARAMETER   SSM parameter name
        CLOUDNS_TTL                  Record TTL (default: 300)
        CLOUDNS_STACK_NAMES          Comma-separated stack names

    Config file:
        CLOUDNS_SYNC_CONFIG          YAML file with the same settings
                                     (default: /config/cloudns-sync.yaml)
                                     Example config file:
                                       username: "12345"
                                       password_parameter: /cloudns/api-password
                                       ttl: 300
                                       stacks:
                                         - web-prod
                                         - api-prod

        Precedence: command line, then config file, then environment.

    Runtime:
        LOG_LEVEL                    DEBUG, INFO, WARNING, ERROR (default: INFO)

    AWS credentials and region are resolved by boto3 (AWS_PROFILE, AWS_REGION,
    ~/.aws/config).
"""

from __future__ import annotations

import logging
import os
import re
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import boto3
import requests
import yaml

# =============================================================================
# Configuration
# =============================================================================

CLOUDNS_API_URL = os.getenv("CLOUDNS_API_URL", "https://api.cloudns.net")
CLOUDNS_TIMEOUT_SECONDS = os.getenv("CLOUDNS_TIMEOUT_SECONDS", "").strip()

CLOUDNS_USERNAME = os.getenv("CLOUDNS_USERNAME", "")
CLOUDNS_PASSWORD_PARAMETER = os.getenv("CLOUDNS_PASSWORD_PARAMETER", "")
CLOUDNS_TTL = os.getenv("CLOUDNS_TTL", "300")
CLOUDNS_STACK_NAMES = os.getenv("CLOUDNS_STACK_NAMES", "")

CLOUDNS_SYNC_CONFIG = os.getenv("CLOUDNS_SYNC_CONFIG", "/config/cloudns-sync.yaml")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DEFAULT_TTL = "300"
EXPORT_NAME_TAG = "ClouDNS:"

USAGE = (
    "Usage: cloudns-sync <cloudns-username> <cloudns-password-parameter-name> "
    "[ttl [stackName...]]"
)

# =============================================================================
# Logging Setup
# =============================================================================


class _BelowWarningFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.WARNING


def _build_log_handlers() -> List[logging.Handler]:
    """Decisions go to stdout, warnings and errors to stderr."""
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.addFilter(_BelowWarningFilter())
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.WARNING)
    return [stdout_handler, stderr_handler]


logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=_build_log_handlers(),
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class SyncError(Exception):
    """Base class for errors that abort a sync run."""


class UsageError(SyncError):
    """Required settings are missing or the config file is unusable."""


class TransportError(SyncError):
    """The ClouDNS API could not be reached or answered with a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UnexpectedResponse(SyncError):
    """The ClouDNS API answered with JSON of an unknown shape."""


class ZoneNotFound(SyncError):
    """Neither the 2-label nor the 3-label suffix of a name is a zone on the account."""

    def __init__(self, name: str):
        super().__init__(f"Zone Not Found: {name}")
        self.name = name


class MutationFailed(SyncError):
    """ClouDNS reported status "Failed" for an add or modify call."""


# =============================================================================
# Enums
# =============================================================================


class RecordAction(Enum):
    """Outcome of reconciling one record."""

    OK = "OK"
    UPDATE = "UPDATE"
    CREATE = "CREATE"


# =============================================================================
# Data Classes
# =============================================================================


def _field_str(value: Any) -> str:
    return "" if value is None else str(value)


@dataclass(frozen=True)
class StackExport:
    """A CloudFormation export."""

    name: str
    value: str
    exporting_stack_id: str = ""


@dataclass(frozen=True)
class ExportDirective:
    """Record type and dotted hostname parsed from an export name."""

    record_type: str
    hostname: str


@dataclass(frozen=True)
class ResolvedTarget:
    """A hostname split into a registered zone and the host inside it."""

    zone_name: str
    host_name: str

    @property
    def fqdn(self) -> str:
        if not self.host_name:
            return self.zone_name
        return f"{self.host_name}.{self.zone_name}"


@dataclass(frozen=True)
class ZoneInfo:
    """Response of /dns/get-zone-info.json."""

    status: str
    name: str = ""

    @property
    def registered(self) -> bool:
        return self.status == "1"

    @classmethod
    def from_response(cls, data: Any) -> "ZoneInfo":
        if not isinstance(data, dict):
            raise UnexpectedResponse(
                f"Zone info: expected object, got {type(data).__name__}"
            )
        return cls(status=_field_str(data.get("status")), name=_field_str(data.get("name")))


@dataclass(frozen=True)
class DNSRecord:
    """A ClouDNS record as returned by /dns/records.json."""

    id: str
    host: str
    type: str
    ttl: str
    record: str

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "DNSRecord":
        return cls(
            id=_field_str(data.get("id")),
            host=_field_str(data.get("host")),
            type=_field_str(data.get("type")),
            ttl=_field_str(data.get("ttl")),
            record=_field_str(data.get("record")),
        )

    def matches(self, host: str, record_type: str, ttl: str, value: str) -> bool:
        return (
            self.host == host
            and self.type == record_type
            and self.ttl == ttl
            and self.record == value
        )


@dataclass(frozen=True)
class MutationResult:
    """Response of /dns/add-record.json and /dns/mod-record.json."""

    status: str
    status_message: str = ""
    status_description: str = ""

    @property
    def failed(self) -> bool:
        return self.status == "Failed"

    @property
    def error_text(self) -> str:
        return self.status_message or self.status_description

    @classmethod
    def from_response(cls, data: Any) -> "MutationResult":
        if not isinstance(data, dict):
            raise UnexpectedResponse(
                f"Record mutation: expected object, got {type(data).__name__}"
            )
        return cls(
            status=_field_str(data.get("status")),
            status_message=_field_str(data.get("statusMessage")),
            status_description=_field_str(data.get("statusDescription")),
        )


@dataclass(frozen=True)
class SyncConfig:
    """Settings for one sync run."""

    username: str
    password_parameter: str
    ttl: str = DEFAULT_TTL
    stack_names: tuple = ()


@dataclass
class SyncSummary:
    """Counters collected during one sync run."""

    scanned: int = 0
    filtered: int = 0
    ignored: int = 0
    ok: int = 0
    updated: int = 0
    created: int = 0
    zones_probed: int = 0

    def count(self, action: RecordAction) -> None:
        if action == RecordAction.OK:
            self.ok += 1
        elif action == RecordAction.UPDATE:
            self.updated += 1
        else:
            self.created += 1


# =============================================================================
# Export Source (CloudFormation)
# =============================================================================


class ExportSource(ABC):
    """Abstract source of stack exports."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the source name for logging."""
        pass

    @abstractmethod
    def list_exports(self) -> Iterator[StackExport]:
        """Yield every export, in listing order."""
        pass


class CloudFormationExportSource(ExportSource):
    """Exports of all CloudFormation stacks in the current account and region."""

    def __init__(self, client: Any = None):
        self._client = client if client is not None else boto3.client("cloudformation")

    @property
    def name(self) -> str:
        return "CloudFormation"

    def list_exports(self) -> Iterator[StackExport]:
        paginator = self._client.get_paginator("list_exports")
        for page in paginator.paginate():
            for item in page.get("Exports", []):
                yield StackExport(
                    name=item.get("Name") or "",
                    value=item.get("Value") or "",
                    exporting_stack_id=item.get("ExportingStackId") or "",
                )


# =============================================================================
# Secret Source (SSM Parameter Store)
# =============================================================================


def fetch_ssm_parameter(name: str, client: Any = None) -> str:
    """Return the decrypted value of an SSM parameter ("" when it has none)."""
    if client is None:
        client = boto3.client("ssm")
    response = client.get_parameter(Name=name, WithDecryption=True)
    return (response.get("Parameter") or {}).get("Value") or ""


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def get_zone_info(self, zone_name: str) -> ZoneInfo:
        """Probe whether a zone is registered on the account."""
        pass

    @abstractmethod
    def get_records(self, zone_name: str, host: str, record_type: str) -> List[DNSRecord]:
        """Get records of a zone filtered by host and type, in provider order."""
        pass

    @abstractmethod
    def add_record(
        self, zone_name: str, host: str, record_type: str, value: str, ttl: str
    ) -> MutationResult:
        """Add a DNS record."""
        pass

    @abstractmethod
    def modify_record(
        self,
        zone_name: str,
        record_id: str,
        host: str,
        record_type: str,
        value: str,
        ttl: str,
    ) -> MutationResult:
        """Modify an existing DNS record."""
        pass


class ClouDNSProvider(DNSProvider):
    """ClouDNS HTTP API provider, authenticated as a sub-user."""

    def __init__(
        self,
        username: str,
        password: str,
        url: str = "https://api.cloudns.net",
        timeout_seconds: Optional[float] = None,
    ):
        self._url = url.rstrip("/")
        self._auth = {"sub-auth-user": username, "auth-password": password}
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update(
            {"Content-Type": "application/json", "Accept": "application/json"}
        )

    @property
    def name(self) -> str:
        return "ClouDNS"

    def _call(self, method: str, path: str, params: Dict[str, str]) -> Any:
        query = dict(self._auth)
        query.update(params)
        try:
            response = self._session.request(
                method, f"{self._url}{path}", params=query, timeout=self._timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to call {self.name} {path}: {e}")
            raise TransportError(str(e)) from e

        if not response.ok:
            logger.error(
                f"HTTP Error {response.status_code} {response.reason} {response.text}"
            )
            raise TransportError(response.text, status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise UnexpectedResponse(f"{path}: response is not JSON") from e

    def get_zone_info(self, zone_name: str) -> ZoneInfo:
        data = self._call("GET", "/dns/get-zone-info.json", {"domain-name": zone_name})
        return ZoneInfo.from_response(data)

    def get_records(self, zone_name: str, host: str, record_type: str) -> List[DNSRecord]:
        data = self._call(
            "GET",
            "/dns/records.json",
            {"domain-name": zone_name, "host": host, "type": record_type},
        )
        # An empty result comes back as [] rather than {}
        if isinstance(data, dict):
            entries: Iterable[Any] = data.values()
        elif isinstance(data, list):
            entries = data
        else:
            raise UnexpectedResponse(
                f"Records of {zone_name}: expected object, got {type(data).__name__}"
            )

        records = []
        for entry in entries:
            if not isinstance(entry, dict):
                logger.warning(f"Skipping malformed record: {entry}")
                continue
            records.append(DNSRecord.from_response(entry))
        return records

    def add_record(
        self, zone_name: str, host: str, record_type: str, value: str, ttl: str
    ) -> MutationResult:
        data = self._call(
            "POST",
            "/dns/add-record.json",
            {
                "domain-name": zone_name,
                "host": host,
                "record-type": record_type,
                "record": value,
                "ttl": ttl,
            },
        )
        return MutationResult.from_response(data)

    def modify_record(
        self,
        zone_name: str,
        record_id: str,
        host: str,
        record_type: str,
        value: str,
        ttl: str,
    ) -> MutationResult:
        data = self._call(
            "POST",
            "/dns/mod-record.json",
            {
                "domain-name": zone_name,
                "record-id": record_id,
                "host": host,
                "record-type": record_type,
                "record": value,
                "ttl": ttl,
            },
        )
        return MutationResult.from_response(data)


# =============================================================================
# Zone Detection
# =============================================================================


class ZoneCache:
    """Zone probe results for the duration of one sync run."""

    def __init__(self) -> None:
        self._entries: Dict[str, ZoneInfo] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, zone_name: object) -> bool:
        return zone_name in self._entries

    def lookup(self, provider: DNSProvider, zone_name: str) -> ZoneInfo:
        cached = self._entries.get(zone_name)
        if cached is not None:
            logger.debug(f"Zone cache hit: {zone_name!r}")
            return cached
        info = provider.get_zone_info(zone_name)
        self._entries[zone_name] = info
        return info


def resolve_host_and_zone(
    provider: DNSProvider, name: str, zone_cache: ZoneCache
) -> ResolvedTarget:
    """Split a dotted name into a registered zone and the host inside it.

    Two splits are probed, the last two labels as zone (host.example.org) and
    the last three labels as zone (host.example.co.uk). Both candidates are
    always probed, even for names with fewer than three labels, and the
    2-label zone wins when both are registered.

    Raises:
        ZoneNotFound: if neither candidate is a registered zone.
    """
    parts = name.split(".")

    # Short names yield negative offsets; the slices wrap from the end and the
    # resulting candidates are probed like any other.

    # Zone and host name for xxx.tld
    host_name_1 = ".".join(parts[: len(parts) - 2])
    zone_name_1 = ".".join(parts[len(parts) - 2 :])

    # Zone and host name for xxx.subtld.tld
    host_name_2 = ".".join(parts[: len(parts) - 3])
    zone_name_2 = ".".join(parts[len(parts) - 3 :])

    zone_info_1 = zone_cache.lookup(provider, zone_name_1)
    zone_info_2 = zone_cache.lookup(provider, zone_name_2)

    if zone_info_1.registered:
        return ResolvedTarget(zone_name=zone_name_1, host_name=host_name_1)
    if zone_info_2.registered:
        return ResolvedTarget(zone_name=zone_name_2, host_name=host_name_2)
    raise ZoneNotFound(name)


# =============================================================================
# Export Name Parsing
# =============================================================================


def parse_export_name(export_name: str) -> Optional[ExportDirective]:
    """Parse "ClouDNS:<type>:<label>:..." into record type and dotted hostname.

    Returns None for exports that do not follow the convention.
    """
    if not export_name.startswith(EXPORT_NAME_TAG):
        return None
    parts = export_name[len(EXPORT_NAME_TAG) :].split(":")
    return ExportDirective(record_type=parts[0], hostname=".".join(parts[1:]))


STACK_ARN_RE = re.compile(r"^arn:[^:]+:cloudformation:[^:]+:[^:]+:stack/([^/]+)/")


def _export_matches_stacks(exporting_stack_id: str, stack_names: Sequence[str]) -> bool:
    """Check a stack ID against the stack filter.

    Matches either the full stack ID or the stack name embedded in an ARN like
    arn:aws:cloudformation:eu-west-1:111:stack/<name>/<uuid>. An empty filter
    matches everything.
    """
    if not stack_names:
        return True
    if exporting_stack_id in stack_names:
        return True
    match = STACK_ARN_RE.match(exporting_stack_id or "")
    return bool(match) and match.group(1) in stack_names


# =============================================================================
# Record Reconciliation
# =============================================================================


def reconcile_record(
    provider: DNSProvider,
    name: str,
    record_type: str,
    value: str,
    ttl: str,
    zone_cache: ZoneCache,
) -> RecordAction:
    """Create or update the record for one name so it carries value and ttl.

    Only the first record ClouDNS returns for (zone, host, type) is compared;
    additional records of the same host and type are left alone.

    Raises:
        ZoneNotFound: if no registered zone matches the name.
        MutationFailed: if ClouDNS rejects the add or modify call.
    """
    target = resolve_host_and_zone(provider, name, zone_cache)
    zone_name, host_name = target.zone_name, target.host_name

    records = provider.get_records(zone_name, host_name, record_type)
    existing = records[0] if records else None
    details = f"{name} {record_type} {ttl} {value} ZONE {zone_name} HOST {host_name}"

    if existing is not None and existing.matches(host_name, record_type, ttl, value):
        logger.info(f"OK {details}")
        return RecordAction.OK

    if existing is not None and existing.id:
        logger.info(f"UPDATE {details}")
        result = provider.modify_record(
            zone_name, existing.id, host_name, record_type, value, ttl
        )
        if result.failed:
            raise MutationFailed(f"Modify record failed: {result.error_text}")
        return RecordAction.UPDATE

    logger.info(f"CREATE {details}")
    result = provider.add_record(zone_name, host_name, record_type, value, ttl)
    if result.failed:
        raise MutationFailed(f"Add record failed: {result.error_text}")
    return RecordAction.CREATE


# =============================================================================
# Core Syncer
# =============================================================================


class ClouDNSSyncer:
    def __init__(
        self,
        *,
        dns_provider: DNSProvider,
        export_source: ExportSource,
        ttl: str = DEFAULT_TTL,
        stack_names: Sequence[str] = (),
    ):
        self.dns_provider = dns_provider
        self.export_source = export_source
        self.ttl = ttl
        self.stack_names = list(stack_names)

    def sync_once(self) -> SyncSummary:
        """Run one forward pass over all exports; the first error aborts it."""
        zone_cache = ZoneCache()
        summary = SyncSummary()

        for export in self.export_source.list_exports():
            summary.scanned += 1

            if not _export_matches_stacks(export.exporting_stack_id, self.stack_names):
                summary.filtered += 1
                logger.debug(
                    f"Skipping export '{export.name}' of stack '{export.exporting_stack_id}'"
                )
                continue

            directive = parse_export_name(export.name)
            if directive is None:
                summary.ignored += 1
                continue

            action = reconcile_record(
                self.dns_provider,
                directive.hostname,
                directive.record_type,
                export.value,
                self.ttl,
                zone_cache,
            )
            summary.count(action)

        summary.zones_probed = len(zone_cache)
        logger.info(
            f"Scanned {summary.scanned} exports from {self.export_source.name} "
            f"({summary.filtered} filtered, {summary.ignored} not ClouDNS): "
            f"{summary.ok} ok, {summary.updated} updated, {summary.created} created"
        )
        return summary


# =============================================================================
# Config Loading
# =============================================================================


def _load_config_file(config_path: str) -> Dict[str, Any]:
    """Load the YAML config file, returns {} if it doesn't exist."""
    path = Path(config_path) if config_path else None
    if path is None or not path.is_file():
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise UsageError(f"Failed to load config from {config_path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise UsageError(f"Config file {config_path} must contain a mapping")
    logger.debug(f"Loaded config from {config_path}")
    return data


def _parse_stack_names(value: Any) -> List[str]:
    """Accept a YAML list or a comma-separated string."""
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        items = str(value).split(",")
    return [item.strip() for item in items if item and item.strip()]


def load_config(
    argv: Sequence[str],
    *,
    config_path: str = "",
    env: Optional[Dict[str, str]] = None,
) -> SyncConfig:
    """Build the run settings from arguments, config file and environment.

    Raises:
        UsageError: if username or password parameter name is missing.
    """
    if env is None:
        env = {
            "CLOUDNS_USERNAME": CLOUDNS_USERNAME,
            "CLOUDNS_PASSWORD_PARAMETER": CLOUDNS_PASSWORD_PARAMETER,
            "CLOUDNS_TTL": CLOUDNS_TTL,
            "CLOUDNS_STACK_NAMES": CLOUDNS_STACK_NAMES,
        }
    file_config = _load_config_file(config_path)
    args = list(argv)

    username = (
        (args[0] if len(args) > 0 else "")
        or _field_str(file_config.get("username"))
        or env.get("CLOUDNS_USERNAME", "")
    )
    password_parameter = (
        (args[1] if len(args) > 1 else "")
        or _field_str(file_config.get("password_parameter"))
        or env.get("CLOUDNS_PASSWORD_PARAMETER", "")
    )
    ttl = (
        (args[2] if len(args) > 2 else "")
        or _field_str(file_config.get("ttl"))
        or env.get("CLOUDNS_TTL", "")
        or DEFAULT_TTL
    )
    stack_names = (
        args[3:]
        or _parse_stack_names(file_config.get("stacks"))
        or _parse_stack_names(env.get("CLOUDNS_STACK_NAMES", ""))
    )

    if not username or not password_parameter:
        raise UsageError(USAGE)

    return SyncConfig(
        username=username,
        password_parameter=password_parameter,
        ttl=str(ttl).strip(),
        stack_names=tuple(stack_names),
    )


def _parse_timeout(value: str) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring invalid CLOUDNS_TIMEOUT_SECONDS: {value!r}")
        return None


# =============================================================================
# Main
# =============================================================================


def main(argv: Optional[Sequence[str]] = None):
    """Main entry point."""
    logger.info("cloudns-sync: CloudFormation exports -> ClouDNS records")

    try:
        config = load_config(
            sys.argv[1:] if argv is None else argv, config_path=CLOUDNS_SYNC_CONFIG
        )
    except UsageError as e:
        logger.error(str(e))
        sys.exit(1)

    logger.info(f"ClouDNS user: {config.username}")
    logger.info(f"Record TTL: {config.ttl}")
    if config.stack_names:
        logger.info(f"Stacks: {', '.join(config.stack_names)}")
    else:
        logger.info("Stacks: all")

    try:
        password = fetch_ssm_parameter(config.password_parameter)
        syncer = ClouDNSSyncer(
            dns_provider=ClouDNSProvider(
                config.username,
                password,
                url=CLOUDNS_API_URL,
                timeout_seconds=_parse_timeout(CLOUDNS_TIMEOUT_SECONDS),
            ),
            export_source=CloudFormationExportSource(),
            ttl=config.ttl,
            stack_names=config.stack_names,
        )
        syncer.sync_once()
    except KeyboardInterrupt:
        logger.warning("Interrupted, remaining exports were not processed")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
