"""
Charge Scheduler Tests
======================

Charge-cycle safeguards (global switch, idempotency window, per-reseller
lock, error isolation), the re-enable pass, traffic enforcement and the
diagnostic report.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from reseller_billing.core.database import get_session_context
from reseller_billing.core.errors import ResellerNotFoundError
from reseller_billing.models.reseller import ConfigMeta, ConfigStatus, ResellerStatus, SuspensionReason
from reseller_billing.models.usage import SnapshotMeta
from reseller_billing.services.charge_scheduler import ChargeScheduler
from reseller_billing.services.suspension import QUOTA_EXHAUSTED

GIB = 1024 ** 3
T0 = datetime(2026, 10, 19, 12, 0, 30, tzinfo=timezone.utc)


@pytest.fixture
def make_scheduler(services, engine):
    def _make(clock=lambda: T0, **overrides) -> ChargeScheduler:
        config = replace(services.config, **overrides)
        return ChargeScheduler(
            config,
            services.charging,
            services.suspension,
            locks=services.charging.locks,
            engine=engine,
            clock=clock,
        )
    return _make


@pytest.fixture
def scheduler(make_scheduler):
    return make_scheduler()


def wallet_flagged(*also: SuspensionReason) -> dict:
    meta = ConfigMeta()
    for reason in (SuspensionReason.WALLET, *also):
        meta.mark_disabled(reason, "2026-10-19T09:00:00+00:00", 1, T0)
    return meta.model_dump(mode="json", exclude_defaults=True)


# ---------------------------------------------------------------------------
# run_charge_cycle()
# ---------------------------------------------------------------------------

class TestChargeCycle:
    def test_charges_every_wallet_reseller(self, scheduler, make_reseller, make_panel, make_config, db):
        panel = make_panel()
        a = make_reseller(name="a", wallet_balance=10_000)
        b = make_reseller(name="b", wallet_balance=-900)
        idle = make_reseller(name="idle")
        traffic = make_reseller(name="t", type="traffic")
        make_config(a, panel, usage_bytes=1 * GIB)
        make_config(b, panel, usage_bytes=1 * GIB, user="b1")
        make_config(traffic, panel, usage_bytes=5 * GIB)

        summary = scheduler.run_charge_cycle()

        assert summary.cycle_marker == "2026-10-19T12:00:00+00:00"
        assert (summary.charged, summary.skipped, summary.suspended, summary.errors) == (2, 1, 1, 0)
        assert summary.total_cost == 780 * 2
        assert summary.results[idle.id].reason == "no_usage_delta"
        assert traffic.id not in summary.results
        assert db.reseller(b.id).status == ResellerStatus.SUSPENDED_WALLET.value

    def test_global_switch_off(self, make_scheduler, make_reseller, make_panel, make_config, db):
        reseller = make_reseller()
        make_config(reseller, make_panel(), usage_bytes=3 * GIB)

        summary = make_scheduler(charge_enabled=False).run_charge_cycle()

        assert summary.results == {}
        assert db.snapshots(reseller.id) == []

    def test_single_reseller(self, scheduler, make_reseller, make_panel, make_config):
        panel = make_panel()
        a = make_reseller()
        b = make_reseller()
        make_config(a, panel, usage_bytes=1 * GIB)
        make_config(b, panel, usage_bytes=1 * GIB, user="other")

        summary = scheduler.run_charge_cycle(reseller_id=b.id)

        assert list(summary.results) == [b.id]

    def test_dry_run_writes_nothing(self, scheduler, make_reseller, make_panel, make_config, db):
        reseller = make_reseller(wallet_balance=100)
        make_config(reseller, make_panel(), usage_bytes=2 * GIB)

        summary = scheduler.run_charge_cycle(dry_run=True)

        result = summary.results[reseller.id]
        assert result.status == "dry_run"
        assert result.new_balance == 100 - 1560
        assert db.snapshots(reseller.id) == []
        assert db.reseller(reseller.id).wallet_balance == 100


class TestIdempotencyWindow:
    @pytest.fixture
    def charged_at(self, engine, services, make_reseller, make_panel, make_config):
        """A reseller whose last cycle charge was measured at T0, plus fresh usage."""
        reseller = make_reseller(wallet_balance=5000)
        make_config(reseller, make_panel(), usage_bytes=2 * GIB)
        with get_session_context(engine) as session:
            services.charging.snapshots.append(
                session, reseller.id, 1 * GIB, SnapshotMeta(source="scheduler"),
                cycle_marker="2026-10-19T12:00:00+00:00", measured_at=T0,
            )
            session.commit()
        return reseller

    def test_recent_cycle_charge_is_skipped(self, make_scheduler, charged_at, db):
        scheduler = make_scheduler(clock=lambda: T0 + timedelta(seconds=20))

        result = scheduler.run_charge_cycle().results[charged_at.id]

        assert result.reason == "recent_snapshot"
        assert db.reseller(charged_at.id).wallet_balance == 5000

    def test_outside_window_charges(self, make_scheduler, charged_at, db):
        scheduler = make_scheduler(clock=lambda: T0 + timedelta(seconds=70))

        result = scheduler.run_charge_cycle().results[charged_at.id]

        assert result.status == "charged"
        assert result.cost == 780
        assert db.reseller(charged_at.id).wallet_balance == 5000 - 780

    def test_force_bypasses_window_but_not_the_cycle_record(self, make_scheduler, charged_at, db):
        scheduler = make_scheduler(clock=lambda: T0 + timedelta(seconds=20))

        result = scheduler.run_charge_cycle(force=True).results[charged_at.id]

        # Same minute as the seeded charge
        assert result.reason == "cycle_already_charged"
        assert db.reseller(charged_at.id).wallet_balance == 5000

    def test_force_in_a_new_minute_charges(self, make_scheduler, charged_at):
        scheduler = make_scheduler(clock=lambda: T0 + timedelta(seconds=40))

        result = scheduler.run_charge_cycle(force=True).results[charged_at.id]

        assert result.status == "charged"
        assert result.cycle_marker == "2026-10-19T12:01:00+00:00"


class TestLocking:
    def test_held_lock_skips_reseller(self, scheduler, services, make_reseller, make_panel, make_config, db):
        reseller = make_reseller()
        make_config(reseller, make_panel(), usage_bytes=3 * GIB)
        key = f"wallet_charge:reseller:{reseller.id}"
        assert services.charging.locks.acquire(key, 20)

        summary = scheduler.run_charge_cycle()

        result = summary.results[reseller.id]
        assert (result.status, result.reason) == ("lock_failed", "concurrent_execution")
        assert summary.lock_failed == 1
        assert db.snapshots(reseller.id) == []
        # Not ours to release
        assert services.charging.locks.is_held(key)

    def test_lock_released_after_charge(self, scheduler, services, make_reseller, make_panel, make_config):
        reseller = make_reseller()
        make_config(reseller, make_panel(), usage_bytes=3 * GIB)

        scheduler.run_charge_cycle()

        assert not services.charging.locks.is_held(f"wallet_charge:reseller:{reseller.id}")


class TestErrorIsolation:
    def test_failing_reseller_does_not_stop_the_pass(
        self, scheduler, services, make_reseller, make_panel, make_config, db
    ):
        panel = make_panel()
        bad = make_reseller(name="bad")
        good = make_reseller(name="good")
        make_config(bad, panel, usage_bytes=3 * GIB, user="bad")
        make_config(good, panel, usage_bytes=3 * GIB, user="good")
        original = services.charging.charge_for_reseller

        def flaky(reseller, **kwargs):
            if reseller.id == bad.id:
                raise RuntimeError("boom")
            return original(reseller, **kwargs)

        with patch.object(services.charging, "charge_for_reseller", side_effect=flaky):
            summary = scheduler.run_charge_cycle()

        assert summary.errors == 1
        assert summary.charged == 1
        assert db.reseller(good.id).wallet_balance == -2340
        assert not services.charging.locks.is_held(f"wallet_charge:reseller:{bad.id}")


# ---------------------------------------------------------------------------
# run_reenable_pass()
# ---------------------------------------------------------------------------

class TestReenablePass:
    def test_recovered_resellers_are_reactivated(self, scheduler, make_reseller, make_panel, make_config, db):
        panel = make_panel()
        recovered = make_reseller(status=ResellerStatus.SUSPENDED_WALLET.value, wallet_balance=300)
        still_broke = make_reseller(status=ResellerStatus.SUSPENDED_WALLET.value, wallet_balance=-2000)
        cfg = make_config(recovered, panel, user="r", status=ConfigStatus.DISABLED.value, meta=wallet_flagged())
        make_config(still_broke, panel, user="s", status=ConfigStatus.DISABLED.value, meta=wallet_flagged())

        summary = scheduler.run_reenable_pass()

        assert (summary.resellers, summary.reactivated, summary.enabled, summary.failed) == (1, 1, 1, 0)
        assert db.reseller(recovered.id).status == ResellerStatus.ACTIVE.value
        assert db.config(cfg.id).status == ConfigStatus.ACTIVE.value
        assert db.reseller(still_broke.id).status == ResellerStatus.SUSPENDED_WALLET.value

    def test_traffic_resellers_included(self, scheduler, make_reseller, make_panel, make_config, db):
        reseller = make_reseller(
            type="traffic",
            status=ResellerStatus.SUSPENDED_TRAFFIC.value,
            traffic_total_bytes=10 * GIB,
            traffic_used_bytes=1 * GIB,
        )
        meta = ConfigMeta()
        meta.mark_disabled(SuspensionReason.TRAFFIC, "2026-10-19T09:00:00+00:00", reseller.id, T0)
        make_config(reseller, make_panel(), user="t", status=ConfigStatus.DISABLED.value,
                    meta=meta.model_dump(mode="json", exclude_defaults=True))

        summary = scheduler.run_reenable_pass()

        assert summary.reactivated == 1
        assert db.reseller(reseller.id).status == ResellerStatus.ACTIVE.value

    def test_failed_enables_are_counted(self, scheduler, make_reseller, make_panel, make_config, panel_api):
        reseller = make_reseller(wallet_balance=300)
        make_config(reseller, make_panel(), user="stuck", status=ConfigStatus.DISABLED.value, meta=wallet_flagged())
        panel_api.failing.add("stuck")

        summary = scheduler.run_reenable_pass()

        assert (summary.resellers, summary.reactivated, summary.enabled, summary.failed) == (1, 0, 0, 1)

    def test_config_held_by_manual_suspension_is_counted_as_held(
        self, scheduler, make_reseller, make_panel, make_config, db, panel_api
    ):
        reseller = make_reseller(status=ResellerStatus.SUSPENDED_WALLET.value, wallet_balance=5000)
        cfg = make_config(
            reseller, make_panel(), user="both", status=ConfigStatus.DISABLED.value,
            meta=wallet_flagged(SuspensionReason.MANUAL),
        )

        summary = scheduler.run_reenable_pass()

        assert (summary.reactivated, summary.enabled, summary.failed, summary.held) == (1, 0, 0, 1)
        assert db.reseller(reseller.id).status == ResellerStatus.ACTIVE.value
        assert db.config(cfg.id).status == ConfigStatus.DISABLED.value
        assert db.config(cfg.id).get_meta().disabled_by_manual_suspension is True
        assert panel_api.calls == []

    def test_switch_off(self, make_scheduler, make_reseller, panel_api):
        make_reseller(status=ResellerStatus.SUSPENDED_WALLET.value, wallet_balance=300)

        summary = make_scheduler(auto_reenable_enabled=False).run_reenable_pass()

        assert summary.resellers == 0
        assert panel_api.calls == []


# ---------------------------------------------------------------------------
# run_traffic_enforcement()
# ---------------------------------------------------------------------------

class TestTrafficEnforcement:
    def test_only_over_quota_resellers_are_suspended(self, scheduler, make_reseller, make_panel, make_config, db):
        panel = make_panel()
        heavy = make_reseller(type="traffic", traffic_total_bytes=1 * GIB)
        light = make_reseller(type="traffic", traffic_total_bytes=10 * GIB)
        make_config(heavy, panel, usage_bytes=2 * GIB, user="h")
        make_config(light, panel, usage_bytes=1 * GIB, user="l")

        suspended = scheduler.run_traffic_enforcement()

        assert suspended == {heavy.id: QUOTA_EXHAUSTED}
        assert db.reseller(light.id).status == ResellerStatus.ACTIVE.value
        assert db.reseller(light.id).traffic_used_bytes == 1 * GIB

    def test_suspended_reseller_with_active_configs_is_disabled(
        self, scheduler, make_reseller, make_panel, make_config, db, panel_api
    ):
        reseller = make_reseller(
            type="traffic", status=ResellerStatus.SUSPENDED_TRAFFIC.value, traffic_total_bytes=1 * GIB
        )
        cfg = make_config(reseller, make_panel(), usage_bytes=2 * GIB, user="left")

        suspended = scheduler.run_traffic_enforcement()

        # Not a new suspension, but its configs are brought in line
        assert suspended == {}
        assert db.config(cfg.id).status == ConfigStatus.DISABLED.value
        assert panel_api.ops("disable") == ["left"]


# ---------------------------------------------------------------------------
# diagnose()
# ---------------------------------------------------------------------------

class TestDiagnose:
    def test_report_for_uncharged_reseller(self, scheduler, make_reseller, make_panel, make_config):
        reseller = make_reseller(wallet_balance=-200)
        make_config(reseller, make_panel(), usage_bytes=3 * GIB)

        report = scheduler.diagnose(reseller.id)

        assert report["pending_delta_bytes"] == 3 * GIB
        assert report["projected_cost"] == 2340
        assert report["distance_to_threshold"] == 800
        assert report["last_snapshot_bytes"] is None
        assert report["below_minimum_delta"] is False
        assert report["flagged_configs"] == {"wallet": 0, "traffic": 0, "manual": 0}
        assert "traffic_used_bytes" not in report

    def test_report_after_charge(self, scheduler, make_reseller, make_panel, make_config):
        reseller = make_reseller()
        make_config(reseller, make_panel(), usage_bytes=3 * GIB)
        scheduler.run_charge_cycle()

        report = scheduler.diagnose(reseller.id)

        assert report["last_snapshot_bytes"] == 3 * GIB
        assert report["pending_delta_bytes"] == 0
        assert report["below_minimum_delta"] is True

    def test_traffic_fields(self, scheduler, make_reseller):
        reseller = make_reseller(type="traffic", traffic_total_bytes=5 * GIB)
        report = scheduler.diagnose(reseller.id)
        assert report["traffic_total_bytes"] == 5 * GIB
        assert report["window_valid"] is True

    def test_unknown_reseller(self, scheduler):
        with pytest.raises(ResellerNotFoundError):
            scheduler.diagnose(404)
