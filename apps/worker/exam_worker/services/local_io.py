from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from exam_worker.schemas.work_items import PendingBatch, WorkItem


class InMemoryWorkSource:
    """Hands out a fixed list of items once, in order."""

    def __init__(self, items: list[WorkItem]) -> None:
        self._items = list(items)
        self._lock = threading.Lock()

    def fetch_pending(self, limit: int) -> PendingBatch:
        with self._lock:
            batch, self._items = self._items[:limit], self._items[limit:]
        return PendingBatch(items=batch, count=len(batch))

    def __len__(self) -> int:
        return len(self._items)


class JsonDirectoryResultSink:
    def __init__(self, directory: str | Path, *, logger: logging.Logger | None = None) -> None:
        self._directory = Path(directory)
        self._logger = logger or logging.getLogger(__name__)

    @property
    def directory(self) -> Path:
        return self._directory

    def path_for(self, item: WorkItem) -> Path:
        name = item.metadata.get("output_name") or Path(item.id).stem or item.id
        return self._directory / f"{name}.json"

    def persist(self, item: WorkItem, result: Any) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(item)
        # Readers only ever see complete files.
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(result, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(path)
        self._logger.info("Saved result | item=%s | path=%s", item.id, path)


def work_items_from_paths(paths: list[str | Path]) -> list[WorkItem]:
    """One item per distinct image path.

    Output names are the file stem; a stem seen before (case-insensitively,
    for case-folding filesystems) gets ``-2``, ``-3``... so two ``page1.png``
    from different folders never share a result file.
    """
    items: list[WorkItem] = []
    seen_ids: set[str] = set()
    used_names: set[str] = set()
    for raw_path in paths:
        path = Path(raw_path)
        item_id = str(path)
        if item_id in seen_ids:
            continue
        seen_ids.add(item_id)

        name = path.stem or item_id
        suffix = 2
        while name.casefold() in used_names:
            name = f"{path.stem}-{suffix}"
            suffix += 1
        used_names.add(name.casefold())

        items.append(
            WorkItem(
                id=item_id,
                payload_ref=item_id,
                metadata={"output_name": name},
            )
        )
    return items
