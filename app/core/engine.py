"""Engine wiring.

Builds every engine component from settings and shares one set of
per-entity locks between them. The FastAPI app keeps the result on
``app.state.engine``; tests build their own with fakes injected.
"""

import logging
from dataclasses import dataclass

import httpx
from fastapi import Request

from app.api.services.composer import NotificationComposer, NotificationPolicy
from app.api.services.deadline_store import DeadlineStore, SqlDeadlineStore
from app.api.services.dispatch_service import DeliveryDispatcher
from app.api.services.escalation_service import EscalationManager, EscalationTargetPolicy
from app.api.services.notification_service import NotificationService
from app.api.services.risk_service import RiskService
from app.core.channels import ChannelRegistry
from app.core.circuit_breaker import CircuitBreakerRegistry
from app.core.config import Settings
from app.core.database import get_db_context
from app.core.directory import RecipientDirectory, build_directory
from app.core.locks import EntityLocks
from app.core.observability import ObservabilitySink, RecordingSink, build_sink
from app.core.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    settings: Settings
    store: DeadlineStore
    risk: RiskService
    composer: NotificationComposer
    dispatcher: DeliveryDispatcher
    escalation: EscalationManager
    notifications: NotificationService
    orchestrator: Orchestrator
    registry: ChannelRegistry
    breakers: CircuitBreakerRegistry
    locks: EntityLocks
    recorder: RecordingSink


def build_engine(
    settings: Settings,
    session_factory=get_db_context,
    store: DeadlineStore | None = None,
    registry: ChannelRegistry | None = None,
    directory: RecipientDirectory | None = None,
    sink: ObservabilitySink | None = None,
    policy: NotificationPolicy | None = None,
    target_policy: EscalationTargetPolicy | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Engine:
    """Assemble the engine, defaulting every collaborator from settings."""
    locks = EntityLocks()
    recorder = sink if isinstance(sink, RecordingSink) else RecordingSink()
    sink = sink or build_sink(settings, recorder)
    store = store or SqlDeadlineStore(session_factory)
    registry = registry or ChannelRegistry.from_settings(settings, http_client)
    directory = directory or build_directory(settings)
    breakers = CircuitBreakerRegistry.from_settings(settings)

    risk = RiskService(settings, store, session_factory, locks)
    composer = NotificationComposer(settings, directory, session_factory, policy)
    dispatcher = DeliveryDispatcher(settings, registry, session_factory, locks, breakers)
    escalation = EscalationManager(settings, composer, sink, session_factory, locks, target_policy)
    notifications = NotificationService(settings, composer, dispatcher, escalation, session_factory, locks)
    orchestrator = Orchestrator(settings, store, risk, composer, notifications, escalation, sink)

    logger.info(f"Engine assembled; configured channels: {registry.configured_channels() or 'none'}")
    return Engine(
        settings=settings,
        store=store,
        risk=risk,
        composer=composer,
        dispatcher=dispatcher,
        escalation=escalation,
        notifications=notifications,
        orchestrator=orchestrator,
        registry=registry,
        breakers=breakers,
        locks=locks,
        recorder=recorder,
    )


def get_engine(request: Request) -> Engine:
    """FastAPI dependency returning the running engine."""
    return request.app.state.engine
