"""
Config Reconciler Tests
=======================

Bulk disable (local-first, per-cycle guard, rate limited, per-config
failure isolation) and bulk re-enable (remote-confirmed, reason-selective).
"""

from datetime import datetime, timezone

import pytest

from reseller_billing.models.reseller import ConfigMeta, ConfigStatus, SuspensionReason
from reseller_billing.services.audit import AuditSink
from reseller_billing.services.config_reconciler import ConfigReconciler
from reseller_billing.services.rate_limiter import PanelRateLimiter

CYCLE = "2026-10-19T12:00:00+00:00"

DISABLED_AT = datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc)


def flagged_meta(*reasons: SuspensionReason, reseller_id: int = 1) -> dict:
    meta = ConfigMeta()
    for reason in reasons:
        meta.mark_disabled(reason, "2026-10-19T10:00:00+00:00", reseller_id, DISABLED_AT)
    return meta.model_dump(mode="json", exclude_defaults=True)


@pytest.fixture
def limiter_sleeps():
    return []


@pytest.fixture
def reconciler(registry, engine, limiter_sleeps):
    limiter = PanelRateLimiter(min_interval_s=0.333, clock=lambda: 100.0, sleep=limiter_sleeps.append)
    return ConfigReconciler(registry, rate_limiter=limiter, audit=AuditSink(engine), engine=engine)


# ---------------------------------------------------------------------------
# disable_all()
# ---------------------------------------------------------------------------

class TestDisableAll:
    def test_disables_every_active_config(self, reconciler, make_reseller, make_panel, make_config, db, panel_api):
        reseller = make_reseller()
        marzban = make_panel("marzban")
        eylandoo = make_panel("eylandoo")
        a = make_config(reseller, marzban, user="a")
        b = make_config(reseller, eylandoo, user="b")
        make_config(reseller, marzban, user="gone", status=ConfigStatus.EXPIRED.value)

        count = reconciler.disable_all(reseller, CYCLE)

        assert count == 2
        assert panel_api.calls == [("disable", "marzban", "a"), ("disable", "eylandoo", "b")]
        for config in (a, b):
            row = db.config(config.id)
            assert row.status == ConfigStatus.DISABLED.value
            assert row.get_meta().disabled_cycle(SuspensionReason.WALLET) == CYCLE

        [audit, _] = db.audits("config_auto_disabled")
        assert audit.reason == "wallet_balance_exhausted"
        assert audit.meta["remote_success"] is True

    def test_rate_limits_calls_to_the_same_panel(self, reconciler, make_reseller, make_panel, make_config, limiter_sleeps):
        reseller = make_reseller()
        panel = make_panel()
        other = make_panel("marzneshin")
        for user in ("u1", "u2", "u3"):
            make_config(reseller, panel, user=user)
        make_config(reseller, other, user="elsewhere")

        reconciler.disable_all(reseller, CYCLE)

        # Frozen clock: each extra call on the busy panel queues one interval further back
        assert limiter_sleeps == [pytest.approx(0.333), pytest.approx(0.666)]

    def test_skips_config_already_handled_this_cycle(self, reconciler, make_reseller, make_panel, make_config, panel_api):
        reseller = make_reseller()
        panel = make_panel()
        meta = ConfigMeta(disabled_by_wallet_suspension_cycle_at=CYCLE).model_dump(mode="json", exclude_defaults=True)
        make_config(reseller, panel, user="seen", meta=meta)

        assert reconciler.disable_all(reseller, CYCLE) == 0
        assert panel_api.calls == []

    def test_has_active_configs(self, reconciler, make_reseller, make_panel, make_config):
        reseller = make_reseller()
        assert reconciler.has_active_configs(reseller.id) is False

        make_config(reseller, make_panel(), user="off", status=ConfigStatus.DISABLED.value)
        assert reconciler.has_active_configs(reseller.id) is False

        make_config(reseller, make_panel(), user="on")
        assert reconciler.has_active_configs(reseller.id) is True

    def test_remote_failures_do_not_stop_the_batch(
        self, reconciler, make_reseller, make_panel, make_config, db, panel_api
    ):
        reseller = make_reseller()
        panel = make_panel()
        broken = make_config(reseller, panel, user="down")
        unknown = make_config(reseller, make_panel("hiddify"), user="odd")
        orphan = make_config(reseller, None, user="orphan")
        fine = make_config(reseller, panel, user="ok")
        panel_api.raising.add("down")

        count = reconciler.disable_all(reseller, CYCLE, SuspensionReason.TRAFFIC, "reseller_quota_exhausted")

        assert count == 4
        for config in (broken, unknown, orphan, fine):
            row = db.config(config.id)
            assert row.status == ConfigStatus.DISABLED.value
            assert row.get_meta().disabled_by_traffic_suspension is True

        [down_event] = db.events(broken.id)
        assert down_event.meta["remote_success"] is False
        assert down_event.meta["attempts"] == 3
        assert "unreachable" in down_event.meta["last_error"]

        [unknown_event] = db.events(unknown.id)
        assert unknown_event.meta["attempts"] == 0
        assert "RB-PNL-001" in unknown_event.meta["last_error"]

        [orphan_event] = db.events(orphan.id)
        assert orphan_event.meta["last_error"] == "No panel configured"
        assert orphan_event.meta["reason"] == "reseller_quota_exhausted"

        assert db.events(fine.id)[0].meta["remote_success"] is True


# ---------------------------------------------------------------------------
# reenable_all()
# ---------------------------------------------------------------------------

class TestReenableAll:
    def test_only_configs_flagged_for_the_reason(self, reconciler, make_reseller, make_panel, make_config, db, panel_api):
        reseller = make_reseller()
        panel = make_panel()
        wallet = make_config(
            reseller, panel, user="w", status=ConfigStatus.DISABLED.value,
            meta=flagged_meta(SuspensionReason.WALLET, reseller_id=reseller.id),
        )
        traffic = make_config(
            reseller, panel, user="t", status=ConfigStatus.DISABLED.value,
            meta=flagged_meta(SuspensionReason.TRAFFIC, reseller_id=reseller.id),
        )
        manual = make_config(reseller, panel, user="m", status=ConfigStatus.DISABLED.value)

        summary = reconciler.reenable_all(reseller, SuspensionReason.WALLET)

        assert (summary.success, summary.failed) == (1, 0)
        assert summary.by_panel == {panel.id: {"success": 1, "failed": 0, "held": 0}}
        assert panel_api.ops("enable") == ["w"]

        row = db.config(wallet.id)
        assert row.status == ConfigStatus.ACTIVE.value
        assert row.disabled_at is None
        meta = row.get_meta()
        assert meta.disabled_by_wallet_suspension is False
        assert meta.disabled_by_reseller_id is None
        assert [e.type for e in db.events(wallet.id)] == ["auto_enabled"]
        assert db.events(wallet.id)[0].meta["reason"] == "wallet_recharged"

        assert db.config(traffic.id).status == ConfigStatus.DISABLED.value
        assert db.config(traffic.id).get_meta().disabled_by_traffic_suspension is True
        assert db.config(manual.id).status == ConfigStatus.DISABLED.value

    def test_traffic_recovery_leaves_wallet_configs_alone(self, reconciler, make_reseller, make_panel, make_config, db):
        reseller = make_reseller()
        panel = make_panel()
        wallet = make_config(
            reseller, panel, user="w", status=ConfigStatus.DISABLED.value,
            meta=flagged_meta(SuspensionReason.WALLET, reseller_id=reseller.id),
        )
        traffic = make_config(
            reseller, panel, user="t", status=ConfigStatus.DISABLED.value,
            meta=flagged_meta(SuspensionReason.TRAFFIC, reseller_id=reseller.id),
        )

        summary = reconciler.reenable_all(reseller, SuspensionReason.TRAFFIC)

        assert summary.success == 1
        assert db.config(traffic.id).status == ConfigStatus.ACTIVE.value
        assert db.config(wallet.id).status == ConfigStatus.DISABLED.value

    def test_failed_enable_stays_disabled_for_retry(self, reconciler, make_reseller, make_panel, make_config, db, panel_api):
        reseller = make_reseller()
        panel = make_panel()
        stuck = make_config(
            reseller, panel, user="stuck", status=ConfigStatus.DISABLED.value,
            meta=flagged_meta(SuspensionReason.WALLET, reseller_id=reseller.id),
        )
        unknown = make_config(
            reseller, make_panel("hiddify"), user="odd", status=ConfigStatus.DISABLED.value,
            meta=flagged_meta(SuspensionReason.WALLET, reseller_id=reseller.id),
        )
        panel_api.failing.add("stuck")

        summary = reconciler.reenable_all(reseller, SuspensionReason.WALLET)

        assert (summary.success, summary.failed) == (0, 2)
        for config in (stuck, unknown):
            row = db.config(config.id)
            assert row.status == ConfigStatus.DISABLED.value
            assert row.get_meta().disabled_by_wallet_suspension is True
        assert [e.type for e in db.events(stuck.id)] == ["auto_enable_failed"]
        assert len(db.audits("config_auto_enable_failed")) == 2

        # Next pass picks them up again
        panel_api.failing.clear()
        retry = reconciler.reenable_all(reseller, SuspensionReason.WALLET)
        assert retry.success == 1
        assert db.config(stuck.id).status == ConfigStatus.ACTIVE.value

    def test_config_held_by_another_suspension_stays_disabled(
        self, reconciler, make_reseller, make_panel, make_config, db, panel_api
    ):
        reseller = make_reseller()
        panel = make_panel()
        both = make_config(
            reseller, panel, user="both", status=ConfigStatus.DISABLED.value,
            meta=flagged_meta(SuspensionReason.WALLET, SuspensionReason.TRAFFIC, reseller_id=reseller.id),
        )

        summary = reconciler.reenable_all(reseller, SuspensionReason.WALLET)

        assert (summary.success, summary.failed, summary.held) == (0, 0, 1)
        assert summary.by_panel == {panel.id: {"success": 0, "failed": 0, "held": 1}}
        row = db.config(both.id)
        assert row.status == ConfigStatus.DISABLED.value
        assert row.get_meta().disabled_by_wallet_suspension is False
        assert row.get_meta().disabled_by_traffic_suspension is True
        assert panel_api.calls == []

    def test_nothing_flagged(self, reconciler, make_reseller):
        summary = reconciler.reenable_all(make_reseller(), SuspensionReason.WALLET)
        assert (summary.success, summary.failed) == (0, 0)
