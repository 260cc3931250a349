"""
Engine wiring — builds the component graph from settings.

    engine = build_engine(get_settings())
    await engine.store.open()
    await engine.dispatcher.on_event("follow", "patient-1")

Every collaborator can be passed in explicitly. Anything left out is built
from settings: the enrollment store from ``database``, the messaging channel
and rich menu switcher from ``line`` (in-memory when no channel access token
is configured), and the tag, template, rich menu and subject lookups from
the catalog file named by ``catalog_path``.

With a LINE token configured the engine refuses to build without a source
of subjects, since no message could ever be addressed.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from backend.scheduler import ResumptionScheduler
from channels.base import (
    MenuSwitcher, MessagingChannel, SubjectDirectory, TagStore,
    TemplateStore, WebhookClient,
)
from channels.line_adapter import LineClient, LineMenuSwitcher, LineMessagingChannel
from channels.memory import (
    InMemoryMenuSwitcher, InMemoryMessaging, InMemorySubjectDirectory,
    InMemoryTagStore, InMemoryTemplateStore,
)
from channels.webhook import HttpWebhookClient
from config.catalog import Catalog, load_catalog
from config.settings import LineConfig, Settings
from context.state_machine import EnrollmentStateMachine
from core.executor import StepExecutor
from core.stats import StatsAggregator
from database.store_base import BaseEnrollmentStore
from database.store_factory import create_store
from rules.engine import TriggerDispatcher

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StepEngine:
    store: BaseEnrollmentStore
    executor: StepExecutor
    state_machine: EnrollmentStateMachine
    dispatcher: TriggerDispatcher
    scheduler: ResumptionScheduler
    stats: StatsAggregator


def _line_token(settings: Settings) -> str:
    token = settings.line.channel_access_token or ""
    # an unset ${VAR} placeholder survives substitution verbatim
    return "" if token.startswith("${") else token


def build_engine(
    settings: Settings,
    store: Optional[BaseEnrollmentStore] = None,
    messaging: Optional[MessagingChannel] = None,
    tags: Optional[TagStore] = None,
    menus: Optional[MenuSwitcher] = None,
    templates: Optional[TemplateStore] = None,
    subjects: Optional[SubjectDirectory] = None,
    webhooks: Optional[WebhookClient] = None,
    catalog: Optional[Catalog] = None,
    clock: Callable[[], datetime] = _utcnow,
) -> StepEngine:
    eng = settings.engine

    if catalog is None:
        catalog = load_catalog(settings.catalog_path) if settings.catalog_path else Catalog()

    token = _line_token(settings)
    if token and subjects is None and not catalog.subjects:
        raise ValueError(
            "LINE channel access token is configured but no subjects are available: "
            "set catalog_path to a catalog with subjects or pass a SubjectDirectory"
        )

    if store is None:
        store = create_store(settings.database, echo=settings.debug)

    if messaging is None or menus is None:
        if token:
            client = LineClient(LineConfig(channel_access_token=token, api_base=settings.line.api_base))
            messaging = messaging or LineMessagingChannel(client)
            menus = menus or LineMenuSwitcher(client, {m.id: m for m in catalog.rich_menus})
        else:
            messaging = messaging or InMemoryMessaging()
            menus = menus or InMemoryMenuSwitcher(catalog.rich_menus)

    executor = StepExecutor(
        messaging=messaging,
        tags=tags or InMemoryTagStore(catalog.tags, catalog.subject_tags),
        menus=menus,
        templates=templates or InMemoryTemplateStore(catalog.templates),
        webhooks=webhooks or HttpWebhookClient(
            timeout=eng.webhook_timeout_seconds, max_attempts=eng.webhook_max_attempts,
        ),
        webhook_timeout=eng.webhook_timeout_seconds,
        webhook_accept_status=eng.webhook_accept_status,
        timezone_name=settings.timezone,
        clock=clock,
    )
    state_machine = EnrollmentStateMachine(
        store, executor, subjects or InMemorySubjectDirectory(catalog.subjects),
        exit_on_disable=eng.exit_on_disable,
        claim_ttl_seconds=eng.claim_ttl_seconds,
        timezone_name=settings.timezone,
        clock=clock,
    )
    dispatcher = TriggerDispatcher(
        store, state_machine, allow_reentry=eng.allow_reentry, clock=clock,
    )
    scheduler = ResumptionScheduler(
        store, state_machine,
        interval_s=eng.sweep_interval_seconds,
        batch_size=eng.sweep_batch_size,
        concurrency=eng.sweep_concurrency,
        clock=clock,
    )
    logger.info("step_engine_built",
                store=type(store).__name__,
                messaging=type(messaging).__name__,
                catalog_subjects=len(catalog.subjects),
                exit_on_disable=eng.exit_on_disable,
                allow_reentry=eng.allow_reentry)
    return StepEngine(store, executor, state_machine, dispatcher, scheduler,
                      StatsAggregator(store, clock))
