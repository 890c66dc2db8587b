#!/usr/bin/env python3
"""cloudflare-ddns - Dynamic DNS for Cloudflare

Keeps the A and/or AAAA record of a single name pointed at the host's current
public address(es). Public addresses are looked up over HTTP on a fixed
interval and the record is only pushed to Cloudflare when the observed address
changes.

Only pre-existing records are managed: a track (IPv4 or IPv6) is enabled when
a record of its type exists for CF_RECORD at startup. Records are never
created or deleted.

Environment variables:

    Cloudflare:
        CF_API_KEY             Global API key (used together with CF_API_EMAIL)
        CF_API_EMAIL           Account e-mail for the global API key
        CF_API_TOKEN           Scoped API token, alternative to key + e-mail
        CF_ZONE                Zone name (eg. example.com)
        CF_RECORD              Record name (eg. test.example.com)

    Address lookup:
        IPV4_ENDPOINT          Plain-text IPv4 lookup URL
                               (default: https://ipv4-test.ludovic-muller.fr)
        IPV6_ENDPOINT          Plain-text IPv6 lookup URL
                               (default: https://ipv6-test.ludovic-muller.fr)
        VALIDATE_ADDRESSES     Reject lookup bodies that are not an address of
                               the expected family (default: false)

    Runtime:
        SYNC_MODE              "once" or "watch" (polling loop) (default: watch)
        CHECK_INTERVAL_SECONDS Poll interval in watch mode (default: 120)
        HTTP_TIMEOUT_SECONDS   Timeout for HTTP calls, 0 disables it (default: 10)
        UPDATE_FAILURE_POLICY  "exit" stops the process when a record update
                               fails, "continue" logs and keeps polling
                               (default: exit)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        DDNS_CONFIG_PATH       YAML file providing defaults for the variables
                               above, keys in lower case
                               (default: /config/cloudflare-ddns.yaml)
                               Example config file:
                                 cf_zone: example.com
                                 cf_record: home.example.com
                                 check_interval_seconds: 300
                                 update_failure_policy: continue
"""

from __future__ import annotations

import ipaddress
import logging
import math
import os
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests
import yaml

logger = logging.getLogger(__name__)

# =============================================================================
# Defaults
# =============================================================================

DEFAULT_CONFIG_PATH = "/config/cloudflare-ddns.yaml"
DEFAULT_IPV4_ENDPOINT = "https://ipv4-test.ludovic-muller.fr"
DEFAULT_IPV6_ENDPOINT = "https://ipv6-test.ludovic-muller.fr"
DEFAULT_CHECK_INTERVAL_SECONDS = 120
DEFAULT_HTTP_TIMEOUT_SECONDS = 10.0

CLOUDFLARE_API_BASE = "https://api.cloudflare.com/client/v4"

EXIT_CONFIG_ERROR = 1
EXIT_UPDATE_FAILED = 2

# =============================================================================
# Exceptions
# =============================================================================


class DDNSError(Exception):
    """Base class for all cloudflare-ddns errors."""


class ConfigError(DDNSError):
    """Missing or malformed configuration."""


class ResolveError(DDNSError):
    """Looking up the current public address failed."""


class TransportError(ResolveError):
    """The lookup request could not complete."""


class EmptyResponseError(ResolveError):
    """The lookup endpoint answered with an empty body."""


class InvalidAddressError(ResolveError):
    """The lookup body is not an address of the expected family."""


class RecordStoreError(DDNSError):
    """A call to the DNS provider failed."""


class ZoneNotFoundError(RecordStoreError):
    """The provider has no zone with the requested name."""


class UpdateError(RecordStoreError):
    """Pushing new content to a record failed."""


class NoRecordsError(DDNSError):
    """Neither an A nor an AAAA record exists for the managed name."""


# =============================================================================
# Enums
# =============================================================================


class AddressFamily(Enum):
    """Address family of a track. The value is the DNS record type."""

    IPV4 = "A"
    IPV6 = "AAAA"

    @property
    def label(self) -> str:
        return "IPv4" if self is AddressFamily.IPV4 else "IPv6"

    @property
    def version(self) -> int:
        return 4 if self is AddressFamily.IPV4 else 6


class UpdateFailurePolicy(Enum):
    """What the scheduler does when a record update fails.

    EXIT:     Stop the polling loop and terminate the process.
    CONTINUE: Log the failure and keep polling. The cached address is not
              rolled back, so the push is only retried once the address
              changes again.
    """

    EXIT = "exit"
    CONTINUE = "continue"


class TrackOutcome(Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Zone:
    """A provider zone resolved once at startup."""

    name: str
    id: str


@dataclass(frozen=True)
class Track:
    """One enabled address family: where to look it up and which record to push to."""

    family: AddressFamily
    endpoint: str
    record_id: str
    record_name: str = ""


@dataclass
class PassResult:
    """Per-track outcome of one reconciliation pass."""

    outcomes: Dict[AddressFamily, TrackOutcome] = field(default_factory=dict)

    def families(self, outcome: TrackOutcome) -> List[AddressFamily]:
        return [family for family, value in self.outcomes.items() if value is outcome]

    @property
    def updated(self) -> List[AddressFamily]:
        return self.families(TrackOutcome.UPDATED)

    @property
    def skipped(self) -> List[AddressFamily]:
        return self.families(TrackOutcome.SKIPPED)


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, built once by load_settings()."""

    zone: str = ""
    record: str = ""
    api_key: str = ""
    api_email: str = ""
    api_token: str = ""
    ipv4_endpoint: str = DEFAULT_IPV4_ENDPOINT
    ipv6_endpoint: str = DEFAULT_IPV6_ENDPOINT
    check_interval_seconds: int = DEFAULT_CHECK_INTERVAL_SECONDS
    http_timeout_seconds: Optional[float] = DEFAULT_HTTP_TIMEOUT_SECONDS
    validate_addresses: bool = False
    update_failure_policy: str = UpdateFailurePolicy.EXIT.value
    sync_mode: str = "watch"
    log_level: str = "INFO"

    def endpoint_for(self, family: AddressFamily) -> str:
        return self.ipv4_endpoint if family is AddressFamily.IPV4 else self.ipv6_endpoint


# =============================================================================
# Configuration
# =============================================================================

# Settings field -> environment variable. YAML keys are the lower-cased names.
ENV_VARS: Dict[str, str] = {
    "api_key": "CF_API_KEY",
    "api_email": "CF_API_EMAIL",
    "api_token": "CF_API_TOKEN",
    "zone": "CF_ZONE",
    "record": "CF_RECORD",
    "ipv4_endpoint": "IPV4_ENDPOINT",
    "ipv6_endpoint": "IPV6_ENDPOINT",
    "check_interval_seconds": "CHECK_INTERVAL_SECONDS",
    "http_timeout_seconds": "HTTP_TIMEOUT_SECONDS",
    "validate_addresses": "VALIDATE_ADDRESSES",
    "update_failure_policy": "UPDATE_FAILURE_POLICY",
    "sync_mode": "SYNC_MODE",
    "log_level": "LOG_LEVEL",
}


TRUE_VALUES = {"1", "true", "yes", "y", "on"}
FALSE_VALUES = {"0", "false", "no", "n", "off", ""}


def _parse_bool(name: str, value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean, got '{value}'")


def _parse_int(name: str, value: Any) -> int:
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got '{value}'") from None


def _parse_timeout(name: str, value: Any) -> Optional[float]:
    try:
        seconds = float(str(value).strip())
    except ValueError:
        raise ConfigError(f"{name} must be a number of seconds, got '{value}'") from None
    if not math.isfinite(seconds):
        raise ConfigError(f"{name} must be a finite number of seconds, got '{value}'")
    return seconds if seconds > 0 else None


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load settings defaults from a YAML file.

    A missing file yields an empty mapping. Keys are matched against the
    lower-cased environment variable names (eg. ``cf_zone``).
    """
    path = Path(config_path)
    if not config_path or not path.is_file():
        return {}

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load config from {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    known = {env.lower() for env in ENV_VARS.values()}
    for key in data:
        if str(key).lower() not in known:
            logger.warning(f"Ignoring unknown key '{key}' in {config_path}")
    return {str(k).lower(): v for k, v in data.items() if str(k).lower() in known}


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the YAML config file and the environment.

    Environment variables take precedence over values from the file.
    """
    env = os.environ if environ is None else environ
    file_values = load_config_file(env.get("DDNS_CONFIG_PATH", DEFAULT_CONFIG_PATH))

    raw: Dict[str, Any] = {}
    for attr, var in ENV_VARS.items():
        # Empty variables count as unset so they do not mask file values.
        if env.get(var, "").strip():
            raw[attr] = env[var]
        elif var.lower() in file_values and file_values[var.lower()] is not None:
            raw[attr] = file_values[var.lower()]

    values: Dict[str, Any] = {}
    for attr, value in raw.items():
        var = ENV_VARS[attr]
        if attr == "check_interval_seconds":
            values[attr] = _parse_int(var, value)
        elif attr == "http_timeout_seconds":
            values[attr] = _parse_timeout(var, value)
        elif attr == "validate_addresses":
            values[attr] = _parse_bool(var, value)
        elif attr in ("update_failure_policy", "sync_mode"):
            values[attr] = str(value).lower().strip()
        else:
            values[attr] = str(value).strip()

    return Settings(**values)


def validate_settings(settings: Settings) -> List[str]:
    """Return every configuration problem found; empty when usable."""
    errors = []

    if not settings.api_token:
        if not settings.api_key:
            errors.append("no api key, please specify one using CF_API_KEY (or CF_API_TOKEN)")
        if not settings.api_email:
            errors.append("no api email, please specify one using CF_API_EMAIL")
    if not settings.zone:
        errors.append("no zone (eg. example.com), please specify one using CF_ZONE")
    if not settings.record:
        errors.append("no record (eg. test.example.com), please specify one using CF_RECORD")
    if settings.check_interval_seconds <= 0:
        errors.append(
            f"CHECK_INTERVAL_SECONDS must be positive, got {settings.check_interval_seconds}"
        )
    if settings.update_failure_policy not in {p.value for p in UpdateFailurePolicy}:
        errors.append(
            f"Invalid UPDATE_FAILURE_POLICY: {settings.update_failure_policy}. "
            "Use 'exit' or 'continue'"
        )
    if settings.sync_mode not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {settings.sync_mode}. Use 'once' or 'watch'")

    return errors


# =============================================================================
# IP Resolver
# =============================================================================


class IPResolver:
    """Fetches the current public address from a plain-text lookup endpoint."""

    def __init__(
        self,
        timeout_seconds: Optional[float] = DEFAULT_HTTP_TIMEOUT_SECONDS,
        validate: bool = False,
    ):
        self._timeout = timeout_seconds
        self._validate = validate
        self._session = requests.Session()

    def resolve(self, endpoint: str, family: Optional[AddressFamily] = None) -> str:
        """Return the address served by ``endpoint``.

        Raises TransportError when the request fails, EmptyResponseError on an
        empty body and, with validation on, InvalidAddressError when the body is
        not an address of ``family``.
        """
        try:
            response = self._session.get(endpoint, timeout=self._timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Failed to get IP from {endpoint}: {e}") from e

        address = response.text.strip()
        if not address:
            raise EmptyResponseError(f"empty IP response from {endpoint}")

        if self._validate and family is not None:
            self._check_family(address, family)

        logger.debug(f"Got IP {address} from {endpoint}")
        return address

    def _check_family(self, address: str, family: AddressFamily) -> None:
        try:
            parsed = ipaddress.ip_address(address)
        except ValueError:
            raise InvalidAddressError(f"'{address}' is not an IP address") from None
        if parsed.version != family.version:
            raise InvalidAddressError(f"'{address}' is not an {family.label} address")


# =============================================================================
# Change Detector
# =============================================================================


class AddressCache:
    """Last address observed per lookup endpoint.

    Never persisted: every process start begins cold, so the first lookup of
    each track always triggers a push.
    """

    def __init__(self) -> None:
        self._last: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._last.get(key)

    def observe(self, key: str, address: str) -> bool:
        """Record ``address`` for ``key`` and return whether it needs pushing.

        The cache is overwritten whatever happens to the push afterwards.
        """
        previous = self._last.get(key)
        self._last[key] = address
        return previous is None or previous != address

    def __len__(self) -> int:
        return len(self._last)


# =============================================================================
# Record Store Interface and Implementations
# =============================================================================


class RecordStore(ABC):
    """Abstract base class for DNS record providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def resolve_zone(self, zone_name: str) -> str:
        """Return the provider zone id; raise ZoneNotFoundError if none."""
        pass

    @abstractmethod
    def find_record(self, zone_id: str, name: str, record_type: str) -> Optional[str]:
        """Return the id of the record with this name and type, or None."""
        pass

    @abstractmethod
    def update_record(self, zone_id: str, record_id: str, content: str) -> None:
        """Replace the content of a record; raise UpdateError on failure."""
        pass


class CloudflareRecordStore(RecordStore):
    """Cloudflare v4 API record store."""

    def __init__(
        self,
        api_key: str = "",
        api_email: str = "",
        api_token: str = "",
        base_url: str = CLOUDFLARE_API_BASE,
        timeout_seconds: Optional[float] = DEFAULT_HTTP_TIMEOUT_SECONDS,
    ):
        self._url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers["Content-Type"] = "application/json"
        if api_token:
            self._session.headers["Authorization"] = f"Bearer {api_token}"
        else:
            self._session.headers["X-Auth-Email"] = api_email
            self._session.headers["X-Auth-Key"] = api_key

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request and return the ``result`` of the API envelope."""
        response = self._session.request(
            method, f"{self._url}{path}", timeout=self._timeout, **kwargs
        )
        try:
            data = response.json()
        except ValueError:
            response.raise_for_status()
            raise RecordStoreError(f"Unexpected non-JSON response from {self.name}")

        if not isinstance(data, dict) or not data.get("success"):
            errors = data.get("errors", []) if isinstance(data, dict) else []
            messages = ", ".join(
                str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors
            )
            raise RecordStoreError(
                f"{self.name} API error ({response.status_code}): {messages or 'unknown error'}"
            )
        return data.get("result")

    def resolve_zone(self, zone_name: str) -> str:
        try:
            zones = self._request("GET", "/zones", params={"name": zone_name})
        except requests.exceptions.RequestException as e:
            raise RecordStoreError(f"Failed to look up zone {zone_name}: {e}") from e

        for zone in zones or []:
            if isinstance(zone, dict) and zone.get("id"):
                return str(zone["id"])
        raise ZoneNotFoundError(f"zone '{zone_name}' not found")

    def find_record(self, zone_id: str, name: str, record_type: str) -> Optional[str]:
        try:
            records = self._request(
                "GET",
                f"/zones/{zone_id}/dns_records",
                params={"name": name, "type": record_type},
            )
        except requests.exceptions.RequestException as e:
            raise RecordStoreError(f"Failed to look up {record_type} record {name}: {e}") from e

        for record in records or []:
            if isinstance(record, dict) and record.get("id"):
                return str(record["id"])
        return None

    def update_record(self, zone_id: str, record_id: str, content: str) -> None:
        try:
            self._request(
                "PATCH",
                f"/zones/{zone_id}/dns_records/{record_id}",
                json={"content": content},
            )
        except (requests.exceptions.RequestException, RecordStoreError) as e:
            raise UpdateError(f"Failed to update record {record_id}: {e}") from e


# =============================================================================
# Reconciler
# =============================================================================


class Reconciler:
    def __init__(
        self,
        *,
        record_store: RecordStore,
        zone: Zone,
        tracks: List[Track],
        resolver: IPResolver,
        cache: Optional[AddressCache] = None,
    ):
        self.record_store = record_store
        self.zone = zone
        # IPv4 is always handled before IPv6.
        order = list(AddressFamily)
        self.tracks = sorted(tracks, key=lambda t: order.index(t.family))
        self.resolver = resolver
        self.cache = cache if cache is not None else AddressCache()

    def reconcile_track(self, track: Track) -> TrackOutcome:
        """Resolve, compare and push one track.

        Resolution failures are logged and reported as SKIPPED. UpdateError
        propagates to the caller.
        """
        try:
            address = self.resolver.resolve(track.endpoint, track.family)
        except ResolveError as e:
            logger.warning(f"{track.family.label}: skipping this pass: {e}")
            return TrackOutcome.SKIPPED

        if not self.cache.observe(track.endpoint, address):
            logger.debug(f"{track.family.label}: address unchanged ({address})")
            return TrackOutcome.UNCHANGED

        logger.info(
            f"updating {track.family.value} record {track.record_name} using following IP {address}"
        )
        self.record_store.update_record(self.zone.id, track.record_id, address)
        return TrackOutcome.UPDATED

    def reconcile_all(self, continue_on_failure: bool = False) -> PassResult:
        """Reconcile every track, IPv4 first.

        An UpdateError stops the pass at the failing track. With
        ``continue_on_failure`` the remaining tracks are still handled and the
        first UpdateError is raised once the pass is over.
        """
        logger.info("check if DNS records need update...")
        result = PassResult()
        first_error: Optional[UpdateError] = None
        for track in self.tracks:
            try:
                result.outcomes[track.family] = self.reconcile_track(track)
            except UpdateError as e:
                if not continue_on_failure:
                    raise
                logger.error(f"{track.family.label}: {e}")
                result.outcomes[track.family] = TrackOutcome.FAILED
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error
        return result


# =============================================================================
# Scheduler
# =============================================================================


class Scheduler:
    """Runs a reconciliation pass now and then on a fixed cadence."""

    def __init__(
        self,
        reconciler: Reconciler,
        interval_seconds: float,
        failure_policy: UpdateFailurePolicy = UpdateFailurePolicy.EXIT,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.reconciler = reconciler
        self.interval = interval_seconds
        self.failure_policy = failure_policy
        self._sleep = sleep
        self._clock = clock
        self.passes = 0

    def run_pass(self) -> Optional[PassResult]:
        """Run one pass, applying the update failure policy."""
        self.passes += 1
        if self.failure_policy is UpdateFailurePolicy.EXIT:
            return self.reconciler.reconcile_all()
        try:
            return self.reconciler.reconcile_all(continue_on_failure=True)
        except UpdateError:
            logger.warning("record update failed; will retry once the address changes")
            return None

    def run(self, max_passes: Optional[int] = None) -> None:
        """Loop until max_passes have run, forever when it is None.

        Ticks that a slow pass overran are dropped, not queued up.
        """
        start = self._clock()
        tick = 0
        while True:
            self.run_pass()
            if max_passes is not None and self.passes >= max_passes:
                return

            now = self._clock()
            tick = max(tick + 1, int((now - start) // self.interval) + 1)
            self._sleep(max(0.0, start + tick * self.interval - now))


# =============================================================================
# Startup
# =============================================================================


def create_record_store(settings: Settings) -> RecordStore:
    """Factory function to create the Cloudflare record store."""
    return CloudflareRecordStore(
        api_key=settings.api_key,
        api_email=settings.api_email,
        api_token=settings.api_token,
        timeout_seconds=settings.http_timeout_seconds,
    )


def initialize(
    settings: Settings,
    record_store: RecordStore,
    resolver: Optional[IPResolver] = None,
) -> Reconciler:
    """Resolve the zone and the records to manage.

    A track is enabled when its record exists. Raises ZoneNotFoundError when
    the zone is unknown and NoRecordsError when no track is enabled.
    """
    zone = Zone(name=settings.zone, id=record_store.resolve_zone(settings.zone))
    logger.info(f"Zone {zone.name}: {zone.id}")

    tracks: List[Track] = []
    for family in AddressFamily:
        try:
            record_id = record_store.find_record(zone.id, settings.record, family.value)
        except RecordStoreError as e:
            logger.warning(f"{family.label} disabled: failed to look up {family.value} record: {e}")
            continue
        if record_id is None:
            logger.warning(f"{family.label} disabled: no {family.value} record for {settings.record}")
            continue
        tracks.append(
            Track(
                family=family,
                endpoint=settings.endpoint_for(family),
                record_id=record_id,
                record_name=settings.record,
            )
        )

    if not tracks:
        raise NoRecordsError("no record found")

    if resolver is None:
        resolver = IPResolver(
            timeout_seconds=settings.http_timeout_seconds,
            validate=settings.validate_addresses,
        )
    return Reconciler(record_store=record_store, zone=zone, tracks=tracks, resolver=resolver)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# Main
# =============================================================================


def main():
    """Main entry point."""
    try:
        settings = load_settings()
    except ConfigError as e:
        configure_logging(os.getenv("LOG_LEVEL", "INFO"))
        logger.error(str(e))
        sys.exit(EXIT_CONFIG_ERROR)

    configure_logging(settings.log_level)

    errors = validate_settings(settings)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(EXIT_CONFIG_ERROR)

    record_store = create_record_store(settings)
    try:
        reconciler = initialize(settings, record_store)
    except (RecordStoreError, NoRecordsError) as e:
        logger.error(str(e))
        sys.exit(EXIT_CONFIG_ERROR)

    policy = UpdateFailurePolicy(settings.update_failure_policy)
    logger.info(f"cloudflare-ddns: {settings.record} in {settings.zone}")
    logger.info(f"Tracks: {', '.join(t.family.label for t in reconciler.tracks)}")
    logger.info(f"Sync mode: {settings.sync_mode}")
    if settings.sync_mode == "watch":
        logger.info(f"Poll interval: {settings.check_interval_seconds}s")
        logger.info(f"Update failure policy: {policy.value}")

    scheduler = Scheduler(reconciler, settings.check_interval_seconds, policy)
    try:
        scheduler.run(max_passes=1 if settings.sync_mode == "once" else None)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except UpdateError as e:
        logger.error(f"Fatal: {e}")
        sys.exit(EXIT_UPDATE_FAILED)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(EXIT_CONFIG_ERROR)


if __name__ == "__main__":
    main()
