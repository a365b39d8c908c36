"""
Pytest configuration for reseller billing tests.

Points settings at a temp data directory before any package import, and
provides an isolated in-memory database per test plus factories for
resellers, panels and configs. Remote panels are replaced by a recording
fake, and nothing ever really sleeps.
"""

import os
import tempfile

# Must be set before any reseller_billing import
_test_data_dir = tempfile.mkdtemp(prefix="reseller_billing_test_")
os.environ.setdefault("RESELLER_BILLING_DATA_DIRECTORY", _test_data_dir)
os.environ.setdefault("RESELLER_BILLING_LOG_DIR", os.path.join(_test_data_dir, "logs"))
os.environ.setdefault("RESELLER_BILLING_DATABASE_URL", f"sqlite:///{_test_data_dir}/test.db")

from typing import Optional

import pytest
from sqlmodel import select

from reseller_billing.config import BillingConfig
from reseller_billing.core.database import build_engine, create_all_tables, get_session_context
from reseller_billing.models.audit import AuditLog, ResellerConfigEvent
from reseller_billing.models.reseller import ConfigMeta, Panel, Reseller, ResellerConfig
from reseller_billing.models.usage import ResellerUsageSnapshot
from reseller_billing.services.panel_providers import PanelRegistry
from reseller_billing.services.panel_providers.base import BasePanelProvisioner
from reseller_billing.services.rate_limiter import PanelRateLimiter
from reseller_billing.services.wiring import build_services

GIB = 1024 ** 3
MIB = 1024 ** 2


# ---------------------------------------------------------------------------
# Fake panels
# ---------------------------------------------------------------------------

class FakePanelAPI:
    """Records remote calls. Users listed in ``failing`` never succeed."""

    def __init__(self):
        self.calls: list[tuple[str, str, str]] = []
        self.failing: set[str] = set()
        self.raising: set[str] = set()

    def handle(self, op: str, panel_type: str, user: str) -> bool:
        self.calls.append((op, panel_type, user))
        if user in self.raising:
            raise ConnectionError(f"panel unreachable for {user}")
        return user not in self.failing

    def ops(self, op: str) -> list[str]:
        return [user for o, _, user in self.calls if o == op]


class FakeProvisioner(BasePanelProvisioner):
    def __init__(self, credentials, api: FakePanelAPI):
        super().__init__(credentials)
        self.api = api

    def disable_user(self, remote_user_id: str) -> bool:
        return self.api.handle("disable", self.credentials.panel_type, remote_user_id)

    def enable_user(self, remote_user_id: str) -> bool:
        return self.api.handle("enable", self.credentials.panel_type, remote_user_id)


@pytest.fixture
def panel_api():
    return FakePanelAPI()


@pytest.fixture
def sleeps():
    """Every delay requested by the retry loop or the rate limiter."""
    return []


@pytest.fixture
def registry(panel_api, sleeps):
    reg = PanelRegistry(retry_delays=[1.0, 3.0], sleep=sleeps.append)
    for panel_type in ("marzban", "marzneshin", "xui", "eylandoo"):
        reg.register(panel_type, lambda creds: FakeProvisioner(creds, panel_api))
    return reg


# ---------------------------------------------------------------------------
# Database + services
# ---------------------------------------------------------------------------

@pytest.fixture
def engine():
    eng = build_engine("sqlite://")
    create_all_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def billing_config():
    return BillingConfig()


@pytest.fixture
def services(billing_config, engine, registry, sleeps):
    return build_services(
        config=billing_config,
        engine=engine,
        registry=registry,
        rate_limiter=PanelRateLimiter(min_interval_s=0.333, sleep=sleeps.append),
    )


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_reseller(engine):
    def _make(**kwargs) -> Reseller:
        kwargs.setdefault("name", "reseller")
        with get_session_context(engine) as session:
            reseller = Reseller(**kwargs)
            session.add(reseller)
            session.commit()
            return reseller
    return _make


@pytest.fixture
def make_panel(engine):
    def _make(panel_type: str = "marzban", **kwargs) -> Panel:
        kwargs.setdefault("url", "https://panel.example.com")
        kwargs.setdefault("username", "admin")
        kwargs.setdefault("password", "secret")
        kwargs.setdefault("api_token", "token")
        with get_session_context(engine) as session:
            panel = Panel(panel_type=panel_type, **kwargs)
            session.add(panel)
            session.commit()
            return panel
    return _make


@pytest.fixture
def make_config(engine):
    def _make(
        reseller: Reseller,
        panel: Optional[Panel] = None,
        usage_bytes: Optional[int] = 0,
        settled: int = 0,
        user: Optional[str] = None,
        **kwargs,
    ) -> ResellerConfig:
        meta = kwargs.pop("meta", None)
        if meta is None:
            meta = ConfigMeta(settled_usage_bytes=settled).model_dump(mode="json", exclude_defaults=True)
        with get_session_context(engine) as session:
            config = ResellerConfig(
                reseller_id=reseller.id,
                panel_id=panel.id if panel else None,
                panel_type=kwargs.pop("panel_type", panel.panel_type if panel else None),
                panel_user_id=user or f"user_{reseller.id}_{usage_bytes}_{settled}",
                usage_bytes=usage_bytes,
                meta=meta,
                **kwargs,
            )
            session.add(config)
            session.commit()
            return config
    return _make


@pytest.fixture
def set_usage(engine):
    """Overwrite a config's live usage counter."""
    def _set(config: ResellerConfig, usage_bytes: int) -> None:
        with get_session_context(engine) as session:
            row = session.get(ResellerConfig, config.id)
            row.usage_bytes = usage_bytes
            session.add(row)
            session.commit()
    return _set


@pytest.fixture
def db(engine):
    """Read helpers for assertions."""
    class _DB:
        def reseller(self, reseller_id: int) -> Reseller:
            with get_session_context(engine) as session:
                return session.get(Reseller, reseller_id)

        def config(self, config_id: int) -> ResellerConfig:
            with get_session_context(engine) as session:
                return session.get(ResellerConfig, config_id)

        def snapshots(self, reseller_id: int) -> list[ResellerUsageSnapshot]:
            with get_session_context(engine) as session:
                return list(session.exec(
                    select(ResellerUsageSnapshot)
                    .where(ResellerUsageSnapshot.reseller_id == reseller_id)
                    .order_by(ResellerUsageSnapshot.id)
                ).all())

        def events(self, config_id: Optional[int] = None) -> list[ResellerConfigEvent]:
            stmt = select(ResellerConfigEvent).order_by(ResellerConfigEvent.id)
            if config_id is not None:
                stmt = stmt.where(ResellerConfigEvent.reseller_config_id == config_id)
            with get_session_context(engine) as session:
                return list(session.exec(stmt).all())

        def audits(self, action: Optional[str] = None) -> list[AuditLog]:
            stmt = select(AuditLog).order_by(AuditLog.id)
            if action is not None:
                stmt = stmt.where(AuditLog.action == action)
            with get_session_context(engine) as session:
                return list(session.exec(stmt).all())

    return _DB()
