from __future__ import annotations

import json
import logging
import os
from datetime import date
from pathlib import Path
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


class DailyLogError(ValueError):
    """A day's log file is missing or cannot be parsed."""


class DailyLog:
    """
    One JSON array per UTC calendar day, appended in arrival order.

    Entries are never modified once written. Each append rewrites the day's
    file through a temporary sibling and `os.replace`, so a crash leaves
    either the old or the new array on disk. An unreadable day file is
    renamed to `<name>.corrupt-<n>` before a new array is started.
    """

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def path_for(self, day: date) -> Path:
        return self.directory / f"sensor_log_{day.isoformat()}.json"

    def append(self, day: date, entry: Dict[str, Any]) -> None:
        path = self.path_for(day)
        try:
            entries = self.read_day(day)
        except DailyLogError:
            if path.exists():
                aside = self._set_aside(path)
                logger.warning("Unreadable log %s moved to %s, starting a new array", path, aside.name)
            entries = []
        entries.append(entry)
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        with tmp_path.open("w", encoding="utf-8") as fh:
            json.dump(entries, fh, ensure_ascii=False)
        os.replace(tmp_path, path)

    @staticmethod
    def _set_aside(path: Path) -> Path:
        n = 1
        while True:
            aside = path.with_name(f"{path.name}.corrupt-{n}")
            if not aside.exists():
                break
            n += 1
        os.replace(path, aside)
        return aside

    def read_day(self, day: date) -> List[Dict[str, Any]]:
        path = self.path_for(day)
        try:
            with path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError as exc:
            raise DailyLogError(f"{path} does not exist") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise DailyLogError(f"{path}: {exc}") from exc
        if not isinstance(data, list):
            raise DailyLogError(f"{path} does not contain a JSON array")
        return data
