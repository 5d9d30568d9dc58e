# appblock/service.py
"""Wiring of the rule engine and its collaborators, plus startup/shutdown."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from appblock.catalog import AppCatalog
from appblock.errors import NotAuthenticated, RemoteError
from appblock.lifecycle import RuleLifecycle
from appblock.reconcile import Reconciler
from appblock.remote.http_client import AsyncHTTPClient, HttpClientConfig, HttpRetryPolicy
from appblock.remote.unifi import UniFiClient
from appblock.scheduler import ExpiryScheduler, RetryPolicy
from appblock.session import SessionContext
from appblock.settings import AppSettings
from appblock.store import RuleStore

logger = logging.getLogger("appblock.service")


@dataclass
class AppServices:
    settings: AppSettings
    session: SessionContext
    store: RuleStore
    catalog: AppCatalog
    http: AsyncHTTPClient
    client: UniFiClient
    scheduler: ExpiryScheduler
    lifecycle: RuleLifecycle
    reconciler: Reconciler

    async def start(self) -> None:
        """Load rules, log in if configured, expire/re-arm timed rules, start maintenance."""
        await self.store.load()

        ctl = self.settings.controller
        if self.settings.api.auto_login and ctl.username and ctl.password is not None:
            try:
                await self.client.login(ctl.username, ctl.password.get_secret_value())
            except (NotAuthenticated, RemoteError) as exc:
                logger.warning("Automatic controller login failed: %s", exc)

        await self.lifecycle.recover()

        interval = self.settings.maintenance_interval_seconds
        if interval > 0:
            self.scheduler.schedule_periodic(interval, self.reconciler.maintain, name="maintenance")
            logger.info("Periodic maintenance every %.0fs", interval)

    async def stop(self) -> None:
        await self.scheduler.cancel_all()
        await self.http.aclose()
        logger.info("Services stopped")


def build_services(
    settings: AppSettings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AppServices:
    ctl = settings.controller
    session = SessionContext(ctl.base_url)
    store = RuleStore(settings.store.path)
    catalog = settings.build_catalog()
    http = AsyncHTTPClient(
        HttpClientConfig(
            timeout=ctl.timeout_seconds,
            verify_ssl=ctl.verify_ssl,
            retries=HttpRetryPolicy(retries=ctl.retries),
        ),
        transport=transport,
    )
    client = UniFiClient(session, http, site=ctl.site)
    scheduler = ExpiryScheduler(
        RetryPolicy(
            backoff_initial=settings.expiry.retry_initial_seconds,
            backoff_max=settings.expiry.retry_max_seconds,
        )
    )
    # one bound for the whole call including client-side retries
    remote_timeout = (ctl.timeout_seconds + 5.0) * (ctl.retries + 1)
    lifecycle = RuleLifecycle(
        store,
        client,
        session,
        catalog,
        scheduler,
        remote_timeout=remote_timeout,
        expiry_grace_seconds=settings.expiry.grace_seconds,
    )
    reconciler = Reconciler(store, client, session, remote_timeout=remote_timeout)
    return AppServices(
        settings=settings,
        session=session,
        store=store,
        catalog=catalog,
        http=http,
        client=client,
        scheduler=scheduler,
        lifecycle=lifecycle,
        reconciler=reconciler,
    )
