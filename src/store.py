# Copyright (c) 2025 Stephen Clau
#
# This file is part of Rust RCON Console.
#
# Rust RCON Console is dual-licensed:
#
# 1. GNU Affero General Public License v3.0 (AGPL-3.0)
#    See LICENSE file for full terms
#
# 2. Commercial License
#    For proprietary use without AGPL requirements
#    Contact: licensing@laudiversified.com
#
# SPDX-License-Identifier: AGPL-3.0-only OR Commercial

"""
Local key-value store backed by a single JSON file.

Holds the last-used connection settings and the player roster. Values are
stored verbatim; the store knows nothing about their shape.
"""

from __future__ import annotations

import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

import structlog

logger = structlog.get_logger()

CONNECTION_CONFIG_KEY = "connection_config"
PLAYERS_KEY = "players"


class JsonFileStore:
    """Opaque key-value store persisted to one JSON document."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._data: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        """Load the store; missing or corrupt files yield an empty store."""
        if not self.path.exists():
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except Exception as exc:
            logger.error(
                "failed_to_load_store",
                error=str(exc),
                file=str(self.path),
            )
            return {}

        values = data.get("values") if isinstance(data, dict) else None
        if not isinstance(values, dict):
            logger.warning(
                "store_values_not_mapping",
                type=type(values).__name__,
                file=str(self.path),
            )
            return {}

        logger.debug("store_loaded", file=str(self.path), keys=sorted(values))
        return values

    def _save(self) -> None:
        """Write the whole document, replacing the file atomically."""
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(
                    {
                        "values": self._data,
                        "last_updated": datetime.now().isoformat(),
                    },
                    f,
                    indent=2,
                )
            os.replace(tmp_path, self.path)
        except Exception as exc:
            logger.error(
                "failed_to_save_store",
                error=str(exc),
                file=str(self.path),
            )

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._save()

    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""
        if key not in self._data:
            return False
        del self._data[key]
        self._save()
        return True

    def __contains__(self, key: object) -> bool:
        return key in self._data
