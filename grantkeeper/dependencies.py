"""Dependency Injection Module.

Builds the process-wide service graph once: store, audit sink, provisioner,
orchestrator, conversation engine, reconciler, telemetry recorder. In dev
mode everything is in memory; otherwise the store and audit sink are backed
by SQL and the provisioner is chosen by ``provisioner_backend``.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy import text

from grantkeeper.adapters.memory_store.stores import MemoryAccountStore
from grantkeeper.adapters.provisioning.host import HostProvisioner
from grantkeeper.adapters.provisioning.memory import MemoryProvisioner
from grantkeeper.adapters.provisioning.profile import ProfileWriter
from grantkeeper.adapters.sql.session import build_engine, build_session_factory, init_db
from grantkeeper.adapters.sql.stores import SqlAccountStore, SqlAuditSink
from grantkeeper.domain.accounts.orchestrator import AccountOrchestrator
from grantkeeper.domain.conversation.engine import ConversationEngine, TimeoutNotices
from grantkeeper.domain.interfaces import AccountStore, ResourceProvisioner
from grantkeeper.domain.sink import AuditSink, MemoryAuditSink, StdOutSink
from grantkeeper.domain.telemetry import TelemetryRecorder
from grantkeeper.jobs.expiration import ExpirationReconciler
from grantkeeper.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: AccountStore
    audit: AuditSink
    provisioner: ResourceProvisioner
    orchestrator: AccountOrchestrator
    conversations: ConversationEngine
    reconciler: ExpirationReconciler
    telemetry: TelemetryRecorder
    timeouts: TimeoutNotices
    session_factory: Optional[Callable] = None


_services: Optional[Services] = None


def build_provisioner(backend: Optional[str] = None) -> ResourceProvisioner:
    backend = (backend or settings.provisioner_backend).lower()
    if backend == "memory":
        return MemoryProvisioner()
    if backend != "host":
        raise ValueError(f"Unknown provisioner backend: {backend}")
    profiles = ProfileWriter(
        profile_dir=settings.profile_dir,
        host=settings.server_host,
        port=settings.server_port,
        protocol=settings.vpn_protocol,
        ca_cert_path=settings.ca_cert_path,
        tls_auth_path=settings.tls_auth_path,
    )
    return HostProvisioner(
        profiles,
        group=settings.vpn_user_group,
        timeout_seconds=settings.command_timeout_seconds,
        allow_bad_names=settings.host_allow_bad_names,
    )


def build_audit_sink(session_factory: Callable, backend: Optional[str] = None) -> AuditSink:
    backend = (backend or settings.audit_backend).lower()
    if backend == "stdout":
        return StdOutSink()
    if backend != "sql":
        raise ValueError(f"Unknown audit backend: {backend}")
    return SqlAuditSink(session_factory)


def assemble_services(
    store: AccountStore,
    audit: AuditSink,
    provisioner: ResourceProvisioner,
    session_factory: Optional[Callable] = None,
    **orchestrator_kwargs: Any,
) -> Services:
    orchestrator = AccountOrchestrator(store, provisioner, audit, **orchestrator_kwargs)
    clock = orchestrator.clock
    timeouts = TimeoutNotices()
    return Services(
        store=store,
        audit=audit,
        provisioner=provisioner,
        orchestrator=orchestrator,
        conversations=ConversationEngine(orchestrator, on_timeout=timeouts.record, clock=clock),
        reconciler=ExpirationReconciler(orchestrator, clock=clock),
        telemetry=TelemetryRecorder(store, clock=clock),
        timeouts=timeouts,
        session_factory=session_factory,
    )


def build_services() -> Services:
    if settings.dev_mode:
        logger.info("DEV_MODE: using in-memory store, audit sink and provisioner")
        return assemble_services(MemoryAccountStore(), MemoryAuditSink(), MemoryProvisioner())

    engine = build_engine(settings.database_url)
    if not settings.run_migrations:
        init_db(engine)
    session_factory = build_session_factory(engine)
    return assemble_services(
        SqlAccountStore(session_factory),
        build_audit_sink(session_factory),
        build_provisioner(),
        session_factory=session_factory,
    )


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: Optional[Services]) -> None:
    """Swap the service graph (tests, CLI)."""
    global _services
    _services = services


def check_database(session_factory: Callable) -> None:
    with session_factory() as session:
        session.execute(text("SELECT 1"))


# --- FastAPI dependencies ---

def get_orchestrator() -> AccountOrchestrator:
    return get_services().orchestrator


def get_conversation_engine() -> ConversationEngine:
    return get_services().conversations


def get_timeout_notices() -> TimeoutNotices:
    return get_services().timeouts


def get_reconciler() -> ExpirationReconciler:
    return get_services().reconciler


def get_audit_sink() -> AuditSink:
    return get_services().audit
