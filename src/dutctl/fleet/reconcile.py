"""Fleet reconciliation.

Re-resolves every registered DUT at its cached address and classifies
it. In update mode, entries whose address now answers with a different
identity are dropped from the registry after probing completes.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from dutctl.fleet.descriptor import ConnectionDescriptor
from dutctl.fleet.parallel import FetchOutcome, fetch_in_parallel
from dutctl.fleet.registry import Registry
from dutctl.fleet.resolver import IdentityResolver
from dutctl.telemetry.logger import get_logger

logger = get_logger(__name__)


class FleetStatus(str, Enum):
    """Observed state of a registered DUT."""

    ONLINE = "Online"
    OFFLINE = "Offline"
    ADDRESS_REUSED = "AddressReused"


class ReconcileMode(str, Enum):
    """Whether reconciliation may modify the registry."""

    STATUS = "status"
    UPDATE = "update"


@dataclass
class FleetEntryStatus:
    """Classification of one registry entry.

    Attributes:
        identity: Registered identity
        status: Observed status
        descriptor: Cached descriptor that was probed
        observed_id: Identity the address answered with, if any
        error: Why resolution failed, for offline entries
    """

    identity: str
    status: FleetStatus
    descriptor: ConnectionDescriptor
    observed_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "identity": self.identity,
            "status": self.status.value,
            "descriptor": self.descriptor.to_dict(),
            "observed_id": self.observed_id,
            "error": self.error,
        }


@dataclass
class ReconcileReport:
    """Result of a reconciliation pass."""

    mode: ReconcileMode
    entries: list[FleetEntryStatus] = field(default_factory=list)
    removed: list[FleetEntryStatus] = field(default_factory=list)

    @property
    def kept(self) -> list[FleetEntryStatus]:
        removed = {e.identity for e in self.removed}
        return [e for e in self.entries if e.identity not in removed]

    def count(self, status: FleetStatus) -> int:
        return sum(1 for e in self.entries if e.status == status)


def classify(identity: str, outcome: FetchOutcome[Any, str]) -> FleetStatus:
    """Classify a re-resolution outcome for a registered identity."""
    if not outcome.ok:
        return FleetStatus.OFFLINE
    if outcome.value == identity:
        return FleetStatus.ONLINE
    return FleetStatus.ADDRESS_REUSED


class FleetReconciler:
    """Checks registered DUTs against the network.

    Example:
        reconciler = FleetReconciler(registry, resolver, probe_timeout=30)
        report = reconciler.reconcile(ReconcileMode.UPDATE)
        for entry in report.removed:
            print("dropped", entry.identity)
    """

    def __init__(
        self,
        registry: Registry,
        resolver: IdentityResolver,
        probe_timeout: Optional[float] = 30.0,
        max_concurrent: Optional[int] = None,
    ) -> None:
        self.registry = registry
        self.resolver = resolver
        self.probe_timeout = probe_timeout
        self.max_concurrent = max_concurrent

    def check(self) -> list[FleetEntryStatus]:
        """Probe a snapshot of the registry and classify every entry.

        Raises:
            RegistryError: If the registry cannot be read
        """
        snapshot = list(self.registry.entries().items())
        outcomes = fetch_in_parallel(
            snapshot,
            lambda entry: self.resolver.resolve_identity(entry[1]),
            timeout=self.probe_timeout,
            max_concurrent=self.max_concurrent,
        )

        statuses = []
        for outcome in outcomes:
            identity, descriptor = outcome.item
            status = classify(identity, outcome)
            error = None
            if outcome.timed_out:
                error = "timeout"
            elif outcome.error is not None:
                error = str(outcome.error)
            statuses.append(
                FleetEntryStatus(
                    identity=identity,
                    status=status,
                    descriptor=descriptor,
                    observed_id=outcome.value if outcome.ok else None,
                    error=error,
                )
            )
        return statuses

    def reconcile(self, mode: ReconcileMode = ReconcileMode.STATUS) -> ReconcileReport:
        """Classify every registered DUT, pruning reused addresses in update mode."""
        report = ReconcileReport(mode=mode, entries=self.check())

        if mode == ReconcileMode.UPDATE:
            for entry in report.entries:
                if entry.status != FleetStatus.ADDRESS_REUSED:
                    continue
                self.registry.remove(entry.identity)
                report.removed.append(entry)
                logger.info(
                    "Stale DUT removed",
                    identity=entry.identity,
                    target=entry.descriptor.address,
                    observed_id=entry.observed_id,
                )

        logger.info(
            "Reconciliation completed",
            mode=mode.value,
            online=report.count(FleetStatus.ONLINE),
            offline=report.count(FleetStatus.OFFLINE),
            address_reused=report.count(FleetStatus.ADDRESS_REUSED),
            removed=len(report.removed),
        )
        return report
