from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from profile_capture.schemas import METADATA_ENTRY_PREFIX, CaptureError, MetadataEntry

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(days=14)


class MetadataStoreError(CaptureError):
    def __init__(self, *, path: Path, details: str) -> None:
        self.path = path
        super().__init__(f"metadata store '{path}' is unusable", details=details)


class KeyValueStore(Protocol):
    def read_all(self) -> dict[str, Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def remove(self, keys: list[str]) -> None: ...


class JsonFileKeyValueStore:
    """Flat key/value mapping persisted as one JSON object on disk."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            parsed = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise MetadataStoreError(path=self.path, details=f"unable to parse JSON: {exc.msg}") from exc
        except OSError as exc:
            raise MetadataStoreError(path=self.path, details=f"unable to read: {exc}") from exc
        if not isinstance(parsed, dict):
            raise MetadataStoreError(path=self.path, details="store payload must be a JSON object")
        return parsed

    def set(self, key: str, value: Any) -> None:
        data = self.read_all()
        data[key] = value
        self._write(data)

    def remove(self, keys: list[str]) -> None:
        if not keys:
            return
        data = self.read_all()
        for key in keys:
            data.pop(key, None)
        self._write(data)

    def _write(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        staging = self.path.with_name(f"{self.path.name}.tmp")
        staging.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        os.replace(staging, self.path)


def new_capture_key(timestamp: datetime) -> str:
    stamp = _as_utc(timestamp).strftime("%Y%m%dT%H%M%S%fZ")
    return f"{METADATA_ENTRY_PREFIX}{stamp}-{uuid.uuid4().hex[:8]}"


class MetadataLifecycleStore:
    def __init__(self, store: KeyValueStore, *, retention: timedelta = DEFAULT_RETENTION) -> None:
        if retention <= timedelta(0):
            raise ValueError("retention must be positive")
        self._store = store
        self.retention = retention

    def new_entry(
        self,
        profile_name: str,
        folder_path: str,
        timestamp: datetime | None = None,
        *,
        key: str | None = None,
    ) -> MetadataEntry:
        captured_at = _as_utc(timestamp or datetime.now(tz=UTC))
        return MetadataEntry(
            key=key or new_capture_key(captured_at),
            profile_name=profile_name,
            timestamp=captured_at,
            folder_path=folder_path,
            expires_at=captured_at + self.retention,
        )

    def put(self, entry: MetadataEntry) -> None:
        self._store.set(entry.key, entry.model_dump(mode="json", exclude={"key"}))

    def entries(self) -> list[MetadataEntry]:
        parsed: list[MetadataEntry] = []
        for key, value in self._store.read_all().items():
            if not key.startswith(METADATA_ENTRY_PREFIX):
                continue
            if not isinstance(value, dict):
                logger.warning("skipping malformed metadata entry %s", key, extra={"stage": "metadata"})
                continue
            try:
                parsed.append(MetadataEntry.model_validate({**value, "key": key}))
            except ValidationError as exc:
                logger.warning(
                    "skipping malformed metadata entry %s",
                    key,
                    extra={"stage": "metadata", "error": str(exc.errors()[0]["msg"])},
                )
        return sorted(parsed, key=lambda entry: (entry.timestamp, entry.key), reverse=True)

    def sweep_expired(self, now: datetime | None = None) -> int:
        """Delete every tracked entry whose ``expires_at`` is at or before ``now``."""
        cutoff = _as_utc(now or datetime.now(tz=UTC))
        expired = [entry.key for entry in self.entries() if entry.expires_at <= cutoff]
        self._store.remove(expired)
        if expired:
            logger.info(
                "swept %d expired metadata entr%s",
                len(expired),
                "y" if len(expired) == 1 else "ies",
                extra={"stage": "sweep"},
            )
        return len(expired)

    def trim_to_most_recent(self, limit: int) -> int:
        if limit < 0:
            raise ValueError("limit must be >= 0")
        surplus = [entry.key for entry in self.entries()[limit:]]
        self._store.remove(surplus)
        if surplus:
            logger.info("trimmed %d old metadata entr%s", len(surplus), "y" if len(surplus) == 1 else "ies",
                        extra={"stage": "trim"})
        return len(surplus)

    def summary(self) -> list[dict[str, Any]]:
        return [
            {
                "capture_id": entry.key,
                "profile_name": entry.profile_name,
                "captured_at": entry.timestamp.isoformat(),
                "folder_path": entry.folder_path,
                "expires_at": entry.expires_at.isoformat(),
            }
            for entry in self.entries()
        ]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
