# api/container.py
# ============================================================================
# SERVICE CONTAINER
# ============================================================================
# Wires config -> store -> pipeline once per process. Provider checkouts are
# built on first use so a missing Parcelow or Wise credential only fails the
# checkout route that needs it (500 ConfigurationError), not start-up.
# ============================================================================

import os
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, Optional

import structlog

from migma_backend.checkout import ParcelowCheckout, WiseCheckout
from migma_backend.config import AppConfig, BankAccountConfig, ParcelowConfig, WiseConfig
from migma_backend.database import Database, PostgresDirectory, PostgresOrderStore
from migma_backend.gateways import ParcelowClient, WiseClient
from migma_backend.pipeline import (
    BackgroundTaskQueue,
    ManualApprovalHandler,
    ParcelowReconciler,
    SideEffectFanout,
    WiseReconciler,
)
from migma_backend.services import ClientWebhookNotifier, Directory, FunctionInvoker, StaticDirectory
from migma_backend.storage import InMemoryOrderStore, IOrderStore

logger = structlog.get_logger().bind(component="container")

SHUTDOWN_DRAIN_SECONDS = 30.0


@dataclass
class Container:
    config: AppConfig
    store: IOrderStore
    directory: Directory
    queue: BackgroundTaskQueue
    fanout: SideEffectFanout
    parcelow_webhooks: ParcelowReconciler
    wise_webhooks: WiseReconciler
    manual_approval: ManualApprovalHandler
    env: Mapping[str, str] = field(default_factory=lambda: os.environ)
    database: Optional[Database] = None
    parcelow: Optional[ParcelowCheckout] = None
    wise: Optional[WiseCheckout] = None
    closers: list[Callable[[], Awaitable[None]]] = field(default_factory=list)

    @property
    def store_backend(self) -> str:
        return "postgres" if self.database is not None else "memory"

    def get_parcelow_checkout(self) -> ParcelowCheckout:
        if self.parcelow is None:
            client = ParcelowClient(ParcelowConfig.from_env(self.env))
            self.closers.append(client.close)
            self.parcelow = ParcelowCheckout(
                self.store,
                client,
                site_url=self.config.site_url,
                notify_url=self.config.parcelow_notify_url,
            )
        return self.parcelow

    def get_wise_checkout(self) -> WiseCheckout:
        if self.wise is None:
            bank = BankAccountConfig.from_env(self.env)
            client = WiseClient(WiseConfig.from_env(self.env))
            self.closers.append(client.close)
            self.wise = WiseCheckout(self.store, client, bank)
        return self.wise

    async def close(self):
        await self.queue.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
        for closer in self.closers:
            await closer()
        if self.database is not None:
            await self.database.close()


def wire(
    config: AppConfig,
    store: IOrderStore,
    directory: Directory,
    *,
    invoker: Optional[FunctionInvoker] = None,
    notifier: Optional[ClientWebhookNotifier] = None,
    env: Mapping[str, str] = os.environ,
    database: Optional[Database] = None,
) -> Container:
    """Assemble the pipeline around an existing store and directory."""
    queue = BackgroundTaskQueue()
    fanout = SideEffectFanout(
        store,
        directory,
        queue,
        invoker=invoker,
        notifier=notifier,
        consultation_product_slug=config.consultation_product_slug,
    )
    return Container(
        config=config,
        store=store,
        directory=directory,
        queue=queue,
        fanout=fanout,
        parcelow_webhooks=ParcelowReconciler(store, fanout, secret=config.webhooks.parcelow_secret),
        wise_webhooks=WiseReconciler(store, fanout, secret=config.webhooks.wise_secret),
        manual_approval=ManualApprovalHandler(store, fanout),
        env=env,
        database=database,
    )


async def build_container(config: AppConfig, env: Mapping[str, str] = os.environ) -> Container:
    database = None
    if config.database_url:
        database = Database(config.database_url)
        await database.initialize()
        store: IOrderStore = PostgresOrderStore(database)
        directory: Directory = PostgresDirectory(database)
    else:
        logger.warning("database_not_configured", fallback="in_memory")
        store = InMemoryOrderStore()
        admins = (env.get("ADMIN_EMAILS") or "").split(",")
        directory = StaticDirectory(admin_emails=[email.strip() for email in admins])

    invoker = FunctionInvoker(config.functions) if config.functions else None
    notifier = ClientWebhookNotifier(config.notifications)

    container = wire(
        config,
        store,
        directory,
        invoker=invoker,
        notifier=notifier,
        env=env,
        database=database,
    )
    if invoker is not None:
        container.closers.append(invoker.close)
    container.closers.append(notifier.close)
    return container
