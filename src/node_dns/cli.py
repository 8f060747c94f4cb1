#!/usr/bin/env python3
"""node-dns - Kubernetes node DNS synchronization

Watches the ready nodes of a Kubernetes cluster and keeps a set of Gandi
LiveDNS "A" records pointing at their external IP addresses, so that each
configured name always resolves to the current healthy node set.

Every node add/update/delete event (plus a periodic resync) triggers one
reconciliation cycle: list nodes from the local watch cache, keep the ready
ones, collect their ExternalIP addresses, and push the sorted list to Gandi if
it differs from the last successfully pushed list.

Environment variables:

    Gandi LiveDNS:
        GANDI_LIVEDNS_KEY      LiveDNS API key (required)
        GANDI_DOMAIN           Zone holding the records (default: textbrawlers.com)
        GANDI_API_URL          LiveDNS API base URL
                               (default: https://api.gandi.net/v5/livedns)
        GANDI_TIMEOUT_SECONDS  HTTP timeout for record updates (default: 30)

    Records:
        DNS_NAMES              Comma-separated record names to manage (required)
                               Example: "@,www,nodes"

    Nodes:
        NODE_SELECTOR          Optional Kubernetes label selector restricting
                               which nodes contribute their addresses. It is
                               evaluated by the API server on list and watch.
                               Examples: "role=edge", "pool in (a,b),!spot"
        RESYNC_SECONDS         Periodic resync interval (default: 60)
        KUBECONFIG             Only used when not running inside a cluster

    Logging:
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
        HUMAN_LOGS             Any non-empty value switches from JSON lines to
                               human-readable output
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

import requests
import structlog
from kubernetes import client, config, watch
from kubernetes.client import ApiException

# =============================================================================
# Configuration
# =============================================================================

# Gandi configuration
GANDI_LIVEDNS_KEY = os.getenv("GANDI_LIVEDNS_KEY", "")
GANDI_DOMAIN = os.getenv("GANDI_DOMAIN", "textbrawlers.com").strip()
GANDI_API_URL = os.getenv("GANDI_API_URL", "https://api.gandi.net/v5/livedns")
GANDI_TIMEOUT_SECONDS = float(os.getenv("GANDI_TIMEOUT_SECONDS", "30"))

# Records and nodes
DNS_NAMES = os.getenv("DNS_NAMES", "")
NODE_SELECTOR = os.getenv("NODE_SELECTOR", "").strip()
RESYNC_SECONDS = int(os.getenv("RESYNC_SECONDS", "60"))

# Runtime configuration
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
HUMAN_LOGS = os.getenv("HUMAN_LOGS", "") != ""
SHUTDOWN_GRACE_SECONDS = 10

RECORD_TYPE = "A"
RECORD_TTL = 300

# =============================================================================
# Logging Setup
# =============================================================================


def configure_logging(level: str, human: bool) -> None:
    """Route structlog through stdlib logging, as JSON lines or console output."""
    processors: List[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if human:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        stream=sys.stderr,
    )


configure_logging(LOG_LEVEL, HUMAN_LOGS)
logger = structlog.get_logger(__name__)

# =============================================================================
# Errors
# =============================================================================


class DNSUpdateError(Exception):
    """Raised when the DNS provider rejects or fails a record update."""


class NodeListError(Exception):
    """Raised when the node cache cannot serve a list request."""


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class ZoneRecord:
    """Desired state of one record set in the managed zone."""

    rrset_name: str
    rrset_values: Tuple[str, ...]
    rrset_type: str = RECORD_TYPE
    rrset_ttl: int = RECORD_TTL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rrset_type": self.rrset_type,
            "rrset_name": self.rrset_name,
            "rrset_ttl": self.rrset_ttl,
            "rrset_values": list(self.rrset_values),
        }


class NodeEventType(Enum):
    """Kinds of node notifications delivered by the watcher.

    ADDED, MODIFIED and DELETED mirror the Kubernetes watch event types.
    RESYNC is emitted by the watcher itself every resync period.
    """

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    RESYNC = "RESYNC"


_WATCH_EVENT_TYPES = {
    t.value: t for t in (NodeEventType.ADDED, NodeEventType.MODIFIED, NodeEventType.DELETED)
}


@dataclass(frozen=True)
class NodeEvent:
    type: NodeEventType
    node: Any = None

    @property
    def node_name(self) -> str:
        metadata = getattr(self.node, "metadata", None)
        return getattr(metadata, "name", None) or ""


# =============================================================================
# Node Filtering
# =============================================================================


def node_is_ready(node: Any) -> bool:
    """Return True if the node reports a Ready condition with status True."""
    status = getattr(node, "status", None)
    for condition in getattr(status, "conditions", None) or []:
        if condition.type == "Ready" and condition.status == "True":
            return True
    return False


def extract_external_ips(nodes: Iterable[Any]) -> List[str]:
    """Collect the ExternalIP addresses of all ready nodes, sorted.

    A node may contribute any number of addresses; nothing is deduplicated.
    """
    ips: List[str] = []
    for node in nodes:
        if not node_is_ready(node):
            continue
        for addr in getattr(node.status, "addresses", None) or []:
            if addr.type == "ExternalIP":
                ips.append(addr.address)
    return sorted(ips)


def ips_changed(ips: List[str], last_ips: List[str]) -> bool:
    return ",".join(ips) != ",".join(last_ips)


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
    def change_domain_records(self, domain: str, records: List[ZoneRecord]) -> None:
        """Replace the records of ``domain`` with ``records`` in one call.

        Raises:
            DNSUpdateError: If the provider did not accept the change.
        """
        pass


class GandiLiveDNSProvider(DNSProvider):
    """Gandi LiveDNS (API v5) provider implementation."""

    def __init__(self, api_key: str, url: str = GANDI_API_URL, timeout_seconds: float = 30.0):
        self._url = url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update({"Authorization": f"Apikey {api_key}"})

    @property
    def name(self) -> str:
        return "Gandi LiveDNS"

    def change_domain_records(self, domain: str, records: List[ZoneRecord]) -> None:
        payload = {"items": [r.to_dict() for r in records]}
        try:
            response = self._session.put(
                f"{self._url}/domains/{domain}/records", json=payload, timeout=self._timeout
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise DNSUpdateError(f"failed to update zone records for {domain}: {e}") from e


def create_dns_provider() -> DNSProvider:
    """Factory function to create the configured DNS provider."""
    return GandiLiveDNSProvider(
        GANDI_LIVEDNS_KEY, url=GANDI_API_URL, timeout_seconds=GANDI_TIMEOUT_SECONDS
    )


def build_zone_records(ips: List[str], dns_names: List[str]) -> List[ZoneRecord]:
    """One A record per name, each carrying the full IP list (possibly empty)."""
    return [ZoneRecord(rrset_name=dns_name, rrset_values=tuple(ips)) for dns_name in dns_names]


def push_zone_records(
    dns_provider: DNSProvider, domain: str, ips: List[str], dns_names: List[str]
) -> None:
    """Publish ``ips`` under every name in a single provider call."""
    dns_provider.change_domain_records(domain, build_zone_records(ips, dns_names))
    logger.info("zone records updated", domain=domain, dns_names=dns_names, ips=ips)


# =============================================================================
# Node Watcher
# =============================================================================


class NodeWatcher:
    """List+watch cache of cluster nodes.

    ``events()`` performs the initial list (delivered as synthetic ADDED
    events), then streams watch events, applying each one to the cache before
    yielding it. Every ``resync_seconds`` the watch stream is re-opened and a
    RESYNC event is yielded. ``list()`` is served from the cache only.

    The label selector is handed to the API server on both list and watch,
    so the cache only ever holds matching nodes.
    """

    def __init__(
        self,
        core_api: client.CoreV1Api,
        *,
        label_selector: str = "",
        resync_seconds: int = 60,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
    ):
        self._core_api = core_api
        self._label_selector = label_selector
        self._resync_seconds = resync_seconds
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._nodes: Dict[str, Any] = {}
        self._synced = False
        self._resource_version: Optional[str] = None
        self._lock = threading.Lock()
        self._active_watch: Optional[watch.Watch] = None

    @property
    def has_synced(self) -> bool:
        return self._synced

    def list(self) -> List[Any]:
        if not self._synced:
            raise NodeListError("node cache has not completed its initial sync")
        with self._lock:
            return list(self._nodes.values())

    def stop(self) -> None:
        """Abort the active watch stream, if any."""
        with self._lock:
            if self._active_watch is not None:
                self._active_watch.stop()

    def _relist(self) -> List[NodeEvent]:
        node_list = self._core_api.list_node(label_selector=self._label_selector)
        fresh = {node.metadata.name: node for node in node_list.items}
        with self._lock:
            removed = [node for name, node in self._nodes.items() if name not in fresh]
            self._nodes = fresh
            self._synced = True
        self._resource_version = node_list.metadata.resource_version
        logger.info(
            "listed nodes", count=len(fresh), resource_version=self._resource_version
        )
        return [NodeEvent(NodeEventType.DELETED, node) for node in removed] + [
            NodeEvent(NodeEventType.ADDED, node) for node in fresh.values()
        ]

    def _apply(self, raw_event: Dict[str, Any]) -> Optional[NodeEvent]:
        node = raw_event.get("object")
        metadata = getattr(node, "metadata", None)
        if metadata is not None and metadata.resource_version:
            self._resource_version = metadata.resource_version

        event_type = _WATCH_EVENT_TYPES.get(raw_event.get("type"))
        if event_type is None or metadata is None:
            logger.debug("ignoring node watch event", type=raw_event.get("type"))
            return None

        with self._lock:
            if event_type == NodeEventType.DELETED:
                self._nodes.pop(metadata.name, None)
            else:
                self._nodes[metadata.name] = node
        return NodeEvent(event_type, node)

    def events(self, stop: threading.Event) -> Iterator[NodeEvent]:
        backoff = self._initial_backoff
        needs_list = True

        while not stop.is_set():
            try:
                if needs_list:
                    catch_up = self._relist()
                    needs_list = False
                    for event in catch_up:
                        yield event
                    if stop.is_set():
                        break

                watcher = watch.Watch()
                with self._lock:
                    self._active_watch = watcher
                stream = watcher.stream(
                    self._core_api.list_node,
                    label_selector=self._label_selector,
                    resource_version=self._resource_version,
                    timeout_seconds=self._resync_seconds,
                )
                for raw_event in stream:
                    if stop.is_set():
                        break
                    event = self._apply(raw_event)
                    if event is not None:
                        yield event

                backoff = self._initial_backoff
                if not stop.is_set():
                    yield NodeEvent(NodeEventType.RESYNC)

            except ApiException as e:
                if e.status == 410:
                    logger.warning("node watch resource version expired, re-listing")
                    needs_list = True
                    continue
                logger.error(
                    "kubernetes API error while watching nodes", status=e.status, reason=e.reason
                )
                needs_list = True
                stop.wait(backoff)
                backoff = min(backoff * 2, self._max_backoff)
            except Exception as e:
                logger.error("unexpected error while watching nodes", error=str(e), exc_info=True)
                needs_list = True
                stop.wait(backoff)
                backoff = min(backoff * 2, self._max_backoff)
            finally:
                with self._lock:
                    self._active_watch = None


def create_kube_client() -> client.CoreV1Api:
    """Build a CoreV1Api client, preferring the in-cluster service account."""
    try:
        config.load_incluster_config()
        logger.info("using in-cluster kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("using local kubeconfig")
    return client.CoreV1Api()


def check_node_selector(core_api: client.CoreV1Api, label_selector: str) -> None:
    """Have the API server evaluate ``label_selector`` once.

    Raises:
        ApiException: If the server rejects the selector (400) or the request.
    """
    core_api.list_node(label_selector=label_selector, limit=1)


# =============================================================================
# Core Syncer
# =============================================================================


class NodeDNSSyncer:
    """Runs reconciliation cycles and owns the last successfully pushed IP list.

    Cycles are serialized by an internal lock, so ``sync_once`` may be called
    from any thread.
    """

    def __init__(
        self,
        *,
        node_lister: Any,
        dns_provider: DNSProvider,
        domain: str,
        dns_names: List[str],
    ):
        self.node_lister = node_lister
        self.dns_provider = dns_provider
        self.domain = domain
        self.dns_names = list(dns_names)
        self.last_ips: List[str] = []
        self._lock = threading.Lock()

    def sync_once(self) -> bool:
        """Run one reconciliation cycle. Returns True if records were pushed."""
        with self._lock:
            logger.debug("resyncing")
            try:
                nodes = self.node_lister.list()
            except NodeListError as e:
                logger.error("failed to list nodes", error=str(e))
                return False

            ips = extract_external_ips(nodes)
            if not ips_changed(ips, self.last_ips):
                logger.debug("no change detected", ips=ips)
                return False

            logger.info("new ips detected", ips=ips, last_ips=self.last_ips)
            try:
                push_zone_records(self.dns_provider, self.domain, ips, self.dns_names)
            except DNSUpdateError as e:
                logger.error("failed to sync", error=str(e))
                return False

            # Only remember IPs the provider accepted.
            self.last_ips = ips
            return True


class NodeDNSController:
    """Drives the syncer from the node event stream until stopped."""

    def __init__(self, watcher: NodeWatcher, syncer: NodeDNSSyncer):
        self.watcher = watcher
        self.syncer = syncer

    def run(self, stop: threading.Event) -> None:
        logger.info("starting node watch")
        for event in self.watcher.events(stop):
            if stop.is_set():
                break
            logger.debug("node event", type=event.type.value, node=event.node_name)
            self.syncer.sync_once()
        logger.info("node watch stopped")


# =============================================================================
# Main
# =============================================================================


def parse_dns_names(value: str) -> List[str]:
    return [name.strip() for name in (value or "").split(",") if name.strip()]


def validate_config() -> bool:
    """Validate configuration."""
    errors = []

    if not GANDI_LIVEDNS_KEY:
        errors.append("GANDI_LIVEDNS_KEY is required")
    if not GANDI_DOMAIN:
        errors.append("GANDI_DOMAIN must not be empty")
    if not parse_dns_names(DNS_NAMES):
        errors.append("DNS_NAMES is required")
    if RESYNC_SECONDS <= 0:
        errors.append(f"RESYNC_SECONDS must be positive, got {RESYNC_SECONDS}")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def main():
    """Main entry point."""
    logger.info("node-dns starting", provider="Gandi LiveDNS", domain=GANDI_DOMAIN)

    if not validate_config():
        logger.critical("configuration validation failed")
        sys.exit(1)

    dns_names = parse_dns_names(DNS_NAMES)

    try:
        core_api = create_kube_client()
    except (config.ConfigException, OSError) as e:
        logger.critical("could not create kubernetes client", error=str(e))
        sys.exit(1)

    if NODE_SELECTOR:
        try:
            check_node_selector(core_api, NODE_SELECTOR)
        except ApiException as e:
            logger.critical(
                "node selector is invalid",
                node_selector=NODE_SELECTOR,
                status=e.status,
                reason=e.reason,
            )
            sys.exit(1)

    dns_provider = create_dns_provider()
    logger.info(
        "configured",
        dns_provider=dns_provider.name,
        dns_names=dns_names,
        node_selector=NODE_SELECTOR,
        resync_seconds=RESYNC_SECONDS,
    )

    watcher = NodeWatcher(core_api, label_selector=NODE_SELECTOR, resync_seconds=RESYNC_SECONDS)
    syncer = NodeDNSSyncer(
        node_lister=watcher,
        dns_provider=dns_provider,
        domain=GANDI_DOMAIN,
        dns_names=dns_names,
    )
    controller = NodeDNSController(watcher, syncer)

    stop = threading.Event()

    def handle_signal(signum, frame):
        logger.info("shutting down gracefully", signal=signum)
        stop.set()
        watcher.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, handle_signal)

    worker = threading.Thread(target=controller.run, args=(stop,), name="node-dns", daemon=True)
    worker.start()
    while worker.is_alive() and not stop.is_set():
        stop.wait(1)
    worker.join(SHUTDOWN_GRACE_SECONDS)

    if not stop.is_set():
        logger.critical("node watch exited unexpectedly")
        sys.exit(1)


if __name__ == "__main__":
    main()
