"""Versioned AEM configuration store, partitioned by config mode."""
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable

from ..schemas.aem import ConfigMode, Configuration
from .persistence import read_snapshot, write_snapshot


logger = logging.getLogger(__name__)


class ConfigurationStore:
    """Mode -> configurations ordered by valid_from, unique per valid_from."""

    def __init__(self, path: Path) -> None:
        """Initialize store.

        Args:
            path: Snapshot file location
        """
        self.path = Path(path)
        self._configs: dict[ConfigMode, list[Configuration]] = {}

    @property
    def configs(self) -> dict[ConfigMode, list[Configuration]]:
        return self._configs

    def get(self, mode: ConfigMode) -> list[Configuration]:
        return list(self._configs.get(mode, []))

    def has_configurations(self) -> bool:
        return any(self._configs.values())

    def clear(self) -> None:
        self._configs = {}

    def add_configurations(self, batch: Iterable[Configuration]) -> int:
        """Merge a batch into the store.

        Configurations whose valid_from is already present for their mode
        are ignored.

        Args:
            batch: Parsed configurations, any mode, any order

        Returns:
            Number of configurations actually added
        """
        added = 0
        for config in batch:
            config_list = self._configs.setdefault(config.config_mode, [])
            if any(existing.valid_from == config.valid_from for existing in config_list):
                continue
            config_list.append(config)
            added += 1

        for config_list in self._configs.values():
            config_list.sort(key=lambda config: config.valid_from)

        if added:
            logger.info("Added %s configurations", added)
        return added

    def trim(
        self,
        referenced: dict[ConfigMode, set[int]],
        now: datetime,
    ) -> int:
        """Drop configurations that are superseded and unreferenced.

        Per mode, the newest configuration already valid at ``now`` marks the
        boundary: it and everything after it stay. Older ones stay only if a
        live invocation references their valid_from.

        Args:
            referenced: Mode -> valid_from values in use by live invocations
            now: Reference time for the boundary

        Returns:
            Number of configurations removed
        """
        now_epoch = now.timestamp()
        removed = 0

        for mode, config_list in self._configs.items():
            boundary = None
            for index, config in enumerate(config_list):
                if config.valid_from <= now_epoch:
                    boundary = index
            if boundary is None:
                continue

            in_use = referenced.get(mode, set())
            kept = [
                config
                for index, config in enumerate(config_list)
                if index >= boundary or config.valid_from in in_use
            ]
            removed += len(config_list) - len(kept)
            self._configs[mode] = kept

        if removed:
            logger.info("Trimmed %s superseded configurations", removed)
        return removed

    def to_json(self) -> dict:
        return {
            mode.value: [config.model_dump(mode="json") for config in config_list]
            for mode, config_list in self._configs.items()
        }

    def load_json(self, data: object) -> None:
        """Replace contents from a snapshot dict, dropping invalid entries."""
        self.clear()
        if not isinstance(data, dict):
            return

        batch = []
        for mode_key, entries in data.items():
            try:
                ConfigMode(mode_key)
            except ValueError:
                logger.warning("Skipping unknown config mode in snapshot: %s", mode_key)
                continue
            for entry in entries or []:
                config = Configuration.from_json(entry)
                if config is not None:
                    batch.append(config)

        self.add_configurations(batch)

    async def load(self) -> dict[ConfigMode, list[Configuration]]:
        """Reload the store from its snapshot; missing file means empty."""
        self.load_json(await read_snapshot(self.path))
        logger.debug(
            "Loaded %s configurations from %s",
            sum(len(config_list) for config_list in self._configs.values()),
            self.path,
        )
        return self._configs

    async def save(self) -> None:
        await write_snapshot(self.path, self.to_json())
