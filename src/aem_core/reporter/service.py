"""AEM reporter: invocation tracking, configuration refresh and upload.

One reporter instance owns the invocation list, the configuration store and
the refresh flags. Every read-modify-write of that state runs under a single
``asyncio.Lock``; network calls are awaited outside it and their results are
applied after re-acquiring it.
"""
import asyncio
import inspect
import json
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import aiohttp

from ..config import AEMSettings
from ..graph.client import (
    CONVERSION_CONFIGS_EDGE,
    CONVERSIONS_EDGE,
    GraphClient,
    GraphRequest,
)
from ..graph.exceptions import AEMError
from ..schemas.aem import UNSET_ID, ConfigMode, Configuration, Invocation
from .applink import parse_url
from .config_store import ConfigurationStore
from .persistence import read_snapshot, write_snapshot


logger = logging.getLogger(__name__)

CONFIG_REFRESH_INTERVAL = timedelta(hours=24)

Completion = Callable[[Optional[Exception]], Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReporterState(str, Enum):
    """Configuration lifecycle of a reporter."""

    IDLE = "idle"
    LOADING_CONFIGURATION = "loading_configuration"
    READY = "ready"


class AEMReporter:
    """Aggregated Event Measurement reporter."""

    def __init__(
        self,
        app_id: str,
        client: GraphClient,
        report_file_path: Path,
        config_file_path: Path,
        is_enabled: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize reporter.

        Args:
            app_id: Graph app id owning the AEM edges
            client: Graph client used for both endpoints
            report_file_path: Invocation snapshot location
            config_file_path: Configuration snapshot location
            is_enabled: Initial enabled flag
            clock: Returns the current aware datetime (injectable for tests)
        """
        self.app_id = app_id
        self.client = client
        self.report_file_path = Path(report_file_path)
        self.store = ConfigurationStore(config_file_path)
        self.invocations: list[Invocation] = []
        self.completion_blocks: list[Completion] = []
        self.is_enabled = is_enabled
        self.is_loading_configuration = False
        self.is_sending_aggregation = False
        self.aggregation_requested = False
        self.timestamp: Optional[datetime] = None
        self._clock = clock or _utcnow
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls, settings: AEMSettings, session: aiohttp.ClientSession
    ) -> "AEMReporter":
        """Build a reporter wired to the live Graph API."""
        if not settings.is_configured:
            raise RuntimeError("AEM_APP_ID and AEM_ACCESS_TOKEN must be set")

        client = GraphClient(
            access_token=settings.access_token,
            api_version=settings.graph_api_version,
            session=session,
        )
        return cls(
            app_id=settings.app_id,
            client=client,
            report_file_path=settings.report_file_path,
            config_file_path=settings.config_file_path,
            is_enabled=settings.enabled,
        )

    @property
    def configs(self) -> dict[ConfigMode, list[Configuration]]:
        return self.store.configs

    @property
    def state(self) -> ReporterState:
        if self.is_loading_configuration:
            return ReporterState.LOADING_CONFIGURATION
        if self.store.has_configurations() and self.is_config_refresh_timestamp_valid():
            return ReporterState.READY
        return ReporterState.IDLE

    parse_url = staticmethod(parse_url)

    def enable(self) -> None:
        if not self.is_enabled:
            logger.info("AEM reporting enabled")
        self.is_enabled = True

    async def start(self) -> None:
        """Restore persisted invocations and configurations."""
        async with self._lock:
            self.invocations = await self.load_report_data()
            await self.store.load()

        logger.info(
            "AEM reporter restored: invocations=%s, configs=%s",
            len(self.invocations),
            sum(len(config_list) for config_list in self.configs.values()),
        )

    async def handle(self, url: Optional[str]) -> Optional[Invocation]:
        """Track the invocation carried by a deep link.

        Returns:
            The new invocation, or None if disabled or the URL carries none
        """
        if not self.is_enabled:
            return None

        invocation = self.parse_url(url)
        if invocation is None:
            return None

        async with self._lock:
            self.invocations.append(invocation)
            await self.save_report_data()

        logger.info("Tracking invocation for campaign %s", invocation.campaign_id)

        if not self.is_config_refresh_timestamp_valid():
            await self.load_configuration()
        return invocation

    def is_config_refresh_timestamp_valid(self) -> bool:
        if self.timestamp is None:
            return False
        return self._clock() - self.timestamp < CONFIG_REFRESH_INTERVAL

    async def load_configuration(self, completion: Optional[Completion] = None) -> None:
        """Refresh configurations when stale; run completions once done.

        While a refresh is in flight, further calls only queue their
        completion. Every queued completion is invoked exactly once, in
        enqueue order, with the refresh error (or None).
        """
        if completion is not None:
            self.completion_blocks.append(completion)

        if self.is_loading_configuration:
            logger.debug("Configuration refresh in flight, completion queued")
            return

        if self.is_config_refresh_timestamp_valid() and self.store.has_configurations():
            await self._drain_completions(None)
            return

        self.is_loading_configuration = True
        error: Optional[Exception] = None
        try:
            response = await self.client.start(self._config_request(), retry=True)
            entries = response.get("data")
            if not isinstance(entries, list):
                entries = []
            batch = [
                config
                for config in (Configuration.from_json(entry) for entry in entries)
                if config is not None
            ]

            async with self._lock:
                self.store.add_configurations(batch)
                self.timestamp = self._clock()
                await self._clear_cache_locked()

            logger.info(
                "Refreshed AEM configurations: received=%s, valid=%s",
                len(entries),
                len(batch),
            )
        except AEMError as exc:
            error = exc
            logger.error("AEM configuration refresh failed: %s", exc)
        except asyncio.CancelledError:
            error = AEMError("Configuration refresh cancelled")
            raise
        except Exception as exc:
            error = exc
            logger.error("Unexpected AEM configuration refresh failure: %s", exc, exc_info=True)
            raise
        finally:
            self.is_loading_configuration = False
            await self._drain_completions(error)

    async def _drain_completions(self, error: Optional[Exception]) -> None:
        blocks, self.completion_blocks = self.completion_blocks, []
        for block in blocks:
            try:
                result = block(error)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error("Configuration completion failed: %s", exc, exc_info=True)

    async def record_and_update(
        self,
        event: str,
        currency: Optional[str] = None,
        value: Optional[float] = None,
    ) -> None:
        """Attribute a host event to live invocations and upload changes.

        No-op when disabled, when the event name is empty or when no
        configuration has been loaded. Stale configurations are refreshed
        before attribution.
        """
        if not self.is_enabled or not event:
            return

        if not self.store.has_configurations():
            logger.debug("No AEM configurations, dropping event %s", event)
            return

        await self.load_configuration()

        async with self._lock:
            now = self._clock()
            changed = False
            for invocation in self.invocations:
                if invocation.is_aggregated:
                    continue
                config = invocation.find_config(self.configs)
                if config is None or invocation.is_out_of_window(config, now):
                    continue
                if not invocation.attribute_event(event, currency, value, config):
                    continue
                invocation.update_conversion_value(config)
                changed = True

            if not changed:
                return

            await self.save_report_data()

        await self.send_aggregation_request()

    async def send_aggregation_request(self) -> bool:
        """Upload every non-aggregated invocation in one request.

        Only one upload runs at a time. A call made while an upload is in
        flight queues a follow-up upload instead of sending in parallel.
        On success an invocation is marked aggregated only if it still
        matches what was sent; on failure nothing changes so pending
        invocations are retried on the next call.

        Returns:
            True if a request was sent and succeeded
        """
        if self.is_sending_aggregation:
            self.aggregation_requested = True
            logger.debug("Aggregation upload in flight, follow-up queued")
            return False

        self.is_sending_aggregation = True
        succeeded = False
        try:
            while True:
                self.aggregation_requested = False
                sent = await self._send_pending_conversions()
                succeeded = succeeded or sent
                if not (sent and self.aggregation_requested):
                    return succeeded
        finally:
            self.is_sending_aggregation = False

    async def _send_pending_conversions(self) -> bool:
        async with self._lock:
            batch = [
                (invocation, invocation.to_conversion_payload())
                for invocation in self.invocations
                if not invocation.is_aggregated
            ]
            if not batch:
                return False
            request = self._aggregation_request([payload for _, payload in batch])

        try:
            await self.client.start(request)
        except AEMError as exc:
            logger.error(
                "AEM aggregation upload failed for %s invocations: %s",
                len(batch),
                exc,
            )
            return False

        async with self._lock:
            changed = 0
            for invocation, payload in batch:
                # Attributed again while the upload was in flight.
                if invocation.to_conversion_payload() != payload:
                    changed += 1
                    continue
                invocation.is_aggregated = True
            await self.save_report_data()

        if changed:
            self.aggregation_requested = True
        logger.info("Uploaded %s AEM conversions, %s changed in flight", len(batch), changed)
        return True

    async def clear_cache(self) -> None:
        async with self._lock:
            await self._clear_cache_locked()

    async def _clear_cache_locked(self) -> None:
        """Drop expired invocations, then superseded unused configurations."""
        now = self._clock()
        configs = self.configs

        live: list[Invocation] = []
        seen: set[tuple[str, int]] = set()
        referenced: dict[ConfigMode, set[int]] = {}
        for invocation in self.invocations:
            config = invocation.find_config(configs)
            if config is None:
                # Pinned to a configuration that no longer exists.
                if invocation.config_id != UNSET_ID:
                    continue
            elif invocation.is_out_of_window(config, now):
                continue

            if invocation.config_id != UNSET_ID:
                key = (invocation.campaign_id, invocation.config_id)
                if key in seen:
                    continue
                seen.add(key)
            live.append(invocation)
            # Unattributed invocations still need the config they resolve to.
            if config is not None:
                referenced.setdefault(invocation.config_mode, set()).add(config.valid_from)

        dropped = len(self.invocations) - len(live)
        self.invocations = live
        self.store.trim(referenced, now)

        if dropped:
            logger.info("Cleared %s expired AEM invocations", dropped)

        await self.save_report_data()
        await self.store.save()

    async def load_report_data(self) -> list[Invocation]:
        """Read persisted invocations; missing or corrupt data means none."""
        data = await read_snapshot(self.report_file_path)
        if not isinstance(data, list):
            return []

        invocations = []
        for entry in data:
            try:
                invocations.append(Invocation.model_validate(entry))
            except ValueError as exc:
                logger.warning("Skipping invalid persisted invocation: %s", exc)
        return invocations

    async def save_report_data(self) -> None:
        await write_snapshot(
            self.report_file_path,
            [invocation.model_dump(mode="json") for invocation in self.invocations],
        )

    def _config_request(self) -> GraphRequest:
        return GraphRequest(
            graph_path=f"{self.app_id}/{CONVERSION_CONFIGS_EDGE}",
            parameters={"fields": ""},
            http_method="GET",
        )

    def _aggregation_request(self, conversions: list[dict]) -> GraphRequest:
        return GraphRequest(
            graph_path=f"{self.app_id}/{CONVERSIONS_EDGE}",
            parameters={"conversions": json.dumps(conversions, separators=(",", ":"))},
            http_method="POST",
        )
