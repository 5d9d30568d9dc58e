# appblock/catalog.py
"""Static application-name -> controller application-ID table."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

import yaml

logger = logging.getLogger("appblock.catalog")

DEFAULT_APP_IDS: Dict[str, str] = {
    "Fortnite": "655369",
    "Roblox": "851993",
    "YouTube": "851969",
}


class AppCatalog:
    def __init__(self, mapping: Optional[Mapping[str, str]] = None) -> None:
        self._ids: Dict[str, str] = dict(DEFAULT_APP_IDS if mapping is None else mapping)

    @classmethod
    def from_yaml(cls, path: Path, base: Optional[Mapping[str, str]] = None) -> "AppCatalog":
        """Merge ``name: id`` pairs from a YAML file over ``base``."""
        mapping = dict(DEFAULT_APP_IDS if base is None else base)
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"YAML root must be a mapping: {path}")
        for name, app_id in data.items():
            mapping[str(name)] = str(app_id)
        logger.info("Loaded %d application ids from %s", len(data), path)
        return cls(mapping)

    def names(self) -> List[str]:
        return sorted(self._ids)

    def resolve_app_ids(self, names: Iterable[str]) -> List[str]:
        """Resolve names to IDs, silently dropping unknown names."""
        ids: List[str] = []
        for name in names:
            app_id = self._ids.get(name)
            if app_id is not None and app_id not in ids:
                ids.append(app_id)
        return ids

    def __contains__(self, name: object) -> bool:
        return name in self._ids

    def __len__(self) -> int:
        return len(self._ids)
