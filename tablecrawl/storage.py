from __future__ import annotations

import asyncio
import datetime as _dt
import json
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .log import get_logger

logger = get_logger(__name__)

_DATE_RE = re.compile(r"(\d{4}-\d{2}-\d{2})")
METADATA_FILE = "metadata.json"


@runtime_checkable
class Storage(Protocol):
    """Persistence contract consumed by the crawl lifecycle."""

    async def has_historical_data(self, name: str) -> bool:
        ...

    async def save_data(self, name: str, records: List[Any], phase: str) -> bool:
        """Merge ``records`` into the stored set, deduplicated. Never raises."""
        ...

    async def load_data(self, name: str, phase: str) -> List[Any]:
        ...


def deduplicate(records: List[Any]) -> List[Any]:
    """Drop records whose canonical JSON form was already seen, keeping order."""
    seen = set()
    out = []
    for rec in records:
        key = json.dumps(rec, ensure_ascii=False, sort_keys=True, default=str)
        if key in seen:
            continue
        seen.add(key)
        out.append(rec)
    return out


class JsonFileStorage:
    """Stores each crawler's records as dated JSON files.

    Layout: ``<root>/<crawler>/<phase>_<YYYY-MM-DD>.json`` plus a
    ``metadata.json`` describing the last save. File work runs in a worker
    thread so the event loop is never blocked.
    """

    def __init__(self, root: str, today=None) -> None:
        self._root = Path(root)
        self._today = today or _dt.date.today
        self._root.mkdir(parents=True, exist_ok=True)

    def _dir(self, name: str) -> Path:
        return self._root / name

    def _data_files(self, name: str) -> List[Path]:
        path = self._dir(name)
        if not path.is_dir():
            return []
        return sorted(p for p in path.iterdir() if p.suffix == ".json" and p.name != METADATA_FILE)

    async def has_historical_data(self, name: str) -> bool:
        return await asyncio.to_thread(lambda: bool(self._data_files(name)))

    async def save_data(self, name: str, records: List[Any], phase: str) -> bool:
        try:
            return await asyncio.to_thread(self._save_sync, name, records, phase)
        except Exception as exc:  # noqa: BLE001
            logger.error("save failed", crawler=name, phase=phase, error=str(exc))
            return False

    def _save_sync(self, name: str, records: List[Any], phase: str) -> bool:
        path = self._dir(name)
        path.mkdir(parents=True, exist_ok=True)
        file_name = f"{phase}_{self._today().isoformat()}.json"
        file_path = path / file_name

        existing: List[Any] = []
        if file_path.exists():
            try:
                loaded = json.loads(file_path.read_text(encoding="utf-8"))
                existing = loaded if isinstance(loaded, list) else []
            except json.JSONDecodeError as exc:
                logger.warning("existing data unreadable, overwriting", file=str(file_path), error=str(exc))

        merged = deduplicate(existing + list(records))
        tmp = file_path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(merged, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
        os.replace(tmp, file_path)

        self._save_metadata(
            name,
            {
                "lastUpdate": _dt.datetime.now(_dt.timezone.utc).isoformat(),
                "dataType": phase,
                "recordCount": len(merged),
                "fileName": file_name,
            },
        )
        logger.info(
            "data saved", crawler=name, phase=phase, file=file_name,
            record_count=len(merged), new_records=len(records),
        )
        return True

    async def load_data(self, name: str, phase: str, date: Optional[str] = None) -> List[Any]:
        """Load the given day's file, or the newest file for the phase."""
        return await asyncio.to_thread(self._load_sync, name, phase, date)

    def _load_sync(self, name: str, phase: str, date: Optional[str]) -> List[Any]:
        if date:
            candidates = [self._dir(name) / f"{phase}_{date}.json"]
        else:
            candidates = [p for p in reversed(self._data_files(name)) if p.name.startswith(f"{phase}_")][:1]
        for path in candidates:
            if path.exists():
                return json.loads(path.read_text(encoding="utf-8"))
        return []

    async def load_all(self, name: str) -> List[Any]:
        """Every stored record for a crawler across files, deduplicated."""

        def _load() -> List[Any]:
            out: List[Any] = []
            for path in self._data_files(name):
                try:
                    data = json.loads(path.read_text(encoding="utf-8"))
                except json.JSONDecodeError as exc:
                    logger.warning("skipping unreadable data file", file=str(path), error=str(exc))
                    continue
                if isinstance(data, list):
                    out.extend(data)
            return deduplicate(out)

        return await asyncio.to_thread(_load)

    async def cleanup_old_data(self, name: str, keep_days: int = 30) -> int:
        """Delete dated files older than ``keep_days``. Returns the count removed."""

        def _cleanup() -> int:
            cutoff = self._today() - _dt.timedelta(days=keep_days)
            removed = 0
            for path in self._data_files(name):
                match = _DATE_RE.search(path.name)
                if match and _dt.date.fromisoformat(match.group(1)) < cutoff:
                    path.unlink()
                    removed += 1
            return removed

        removed = await asyncio.to_thread(_cleanup)
        logger.info("old data cleaned", crawler=name, removed=removed, keep_days=keep_days)
        return removed

    async def get_stats(self, name: str) -> Dict[str, Any]:
        def _stats() -> Dict[str, Any]:
            files = self._data_files(name)
            if not self._dir(name).is_dir():
                return {"exists": False, "fileCount": 0, "totalSize": 0, "lastUpdate": None}
            metadata = self.load_metadata(name)
            return {
                "exists": True,
                "fileCount": len(files),
                "totalSize": sum(p.stat().st_size for p in files),
                "lastUpdate": metadata.get("lastUpdate"),
                "recordCount": metadata.get("recordCount"),
            }

        return await asyncio.to_thread(_stats)

    def load_metadata(self, name: str) -> Dict[str, Any]:
        path = self._dir(name) / METADATA_FILE
        if not path.exists():
            return {}
        return json.loads(path.read_text(encoding="utf-8"))

    def _save_metadata(self, name: str, metadata: Dict[str, Any]) -> None:
        current = self.load_metadata(name)
        current.update(metadata)
        current["updatedAt"] = _dt.datetime.now(_dt.timezone.utc).isoformat()
        (self._dir(name) / METADATA_FILE).write_text(
            json.dumps(current, ensure_ascii=False, indent=2), encoding="utf-8"
        )
