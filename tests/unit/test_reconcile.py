"""Tests for fleet reconciliation."""

import pytest

from dutctl.fleet.descriptor import ConnectionDescriptor
from dutctl.fleet.errors import RegistryError
from dutctl.fleet.parallel import FetchOutcome
from dutctl.fleet.reconcile import (
    FleetReconciler,
    FleetStatus,
    ReconcileMode,
    classify,
)
from dutctl.fleet.registry import Registry
from dutctl.fleet.resolver import IdentityResolver

from conftest import FakeTransport, dut_attributes


class TestFleetStatus:
    """Tests for FleetStatus enum."""

    def test_status_values(self):
        """Should have expected status values."""
        assert FleetStatus.ONLINE.value == "Online"
        assert FleetStatus.OFFLINE.value == "Offline"
        assert FleetStatus.ADDRESS_REUSED.value == "AddressReused"


class TestClassify:
    """Tests for classify."""

    def test_matching_identity(self):
        """Same identity at the cached address is online."""
        assert classify("kohaku_A1", FetchOutcome(item=None, value="kohaku_A1")) == FleetStatus.ONLINE

    def test_different_identity(self):
        """A different identity at the cached address is a reused address."""
        outcome = FetchOutcome(item=None, value="eve_B2")
        assert classify("kohaku_A1", outcome) == FleetStatus.ADDRESS_REUSED

    def test_failure_and_timeout(self):
        """Errors and timeouts are offline."""
        assert classify("kohaku_A1", FetchOutcome(item=None, error=OSError())) == FleetStatus.OFFLINE
        assert classify("kohaku_A1", FetchOutcome(item=None, timed_out=True)) == FleetStatus.OFFLINE


class TestFleetReconciler:
    """Tests for FleetReconciler."""

    @pytest.fixture
    def fleet(self, registry: Registry, transport: FakeTransport) -> FleetReconciler:
        """A registry with one online, one offline and one reused DUT."""
        registry.set("kohaku_A1", ConnectionDescriptor("10.0.0.5"))
        registry.set("eve_B2", ConnectionDescriptor("10.0.0.6"))
        registry.set("atlas_C3", ConnectionDescriptor("10.0.0.7"))
        transport.add_host("10.0.0.5:22", dut_attributes("kohaku", "A1"))
        transport.unreachable.add("10.0.0.6:22")
        transport.add_host("10.0.0.7:22", dut_attributes("nami", "D4"))
        return FleetReconciler(registry, IdentityResolver(transport), probe_timeout=1)

    def test_status_classifies_entries(self, fleet: FleetReconciler):
        """Each entry should get one status, in registry order."""
        report = fleet.reconcile(ReconcileMode.STATUS)
        assert [(e.identity, e.status) for e in report.entries] == [
            ("kohaku_A1", FleetStatus.ONLINE),
            ("eve_B2", FleetStatus.OFFLINE),
            ("atlas_C3", FleetStatus.ADDRESS_REUSED),
        ]
        assert report.entries[2].observed_id == "nami_D4"
        assert report.entries[1].error is not None

    def test_status_does_not_modify_registry(self, fleet: FleetReconciler, registry: Registry):
        """Status mode should leave the registry untouched."""
        report = fleet.reconcile(ReconcileMode.STATUS)
        assert report.removed == []
        assert registry.ids() == ["kohaku_A1", "eve_B2", "atlas_C3"]

    def test_update_removes_only_reused(self, fleet: FleetReconciler, registry: Registry):
        """Update mode should drop reused addresses and keep offline DUTs."""
        report = fleet.reconcile(ReconcileMode.UPDATE)
        assert [e.identity for e in report.removed] == ["atlas_C3"]
        assert [e.identity for e in report.kept] == ["kohaku_A1", "eve_B2"]
        assert registry.ids() == ["kohaku_A1", "eve_B2"]

    def test_counts(self, fleet: FleetReconciler):
        """Report counts should match the classification."""
        report = fleet.reconcile()
        assert report.count(FleetStatus.ONLINE) == 1
        assert report.count(FleetStatus.OFFLINE) == 1
        assert report.count(FleetStatus.ADDRESS_REUSED) == 1

    def test_hung_entry_is_offline(
        self, fleet: FleetReconciler, transport: FakeTransport, registry: Registry
    ):
        """A DUT that does not answer in time should be offline, not removed."""
        transport.hanging["10.0.0.5:22"] = 3.0
        report = fleet.reconcile(ReconcileMode.UPDATE)
        assert report.entries[0].status == FleetStatus.OFFLINE
        assert report.entries[0].error == "timeout"
        assert "kohaku_A1" in registry.ids()

    def test_entry_to_dict(self, fleet: FleetReconciler):
        """Should serialize status by value."""
        entry = fleet.check()[0]
        assert entry.to_dict()["status"] == "Online"
        assert entry.to_dict()["descriptor"]["host"] == "10.0.0.5"

    def test_uninitialized_registry(self, tmp_path, transport: FakeTransport):
        """Should surface registry errors."""
        reconciler = FleetReconciler(Registry(tmp_path / "none.yaml"), IdentityResolver(transport))
        with pytest.raises(RegistryError):
            reconciler.check()
