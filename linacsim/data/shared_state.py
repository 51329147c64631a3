"""
Replicated per-scenario state shared by the console and imaging displays.

The channel persists each record in a key-value store and announces writes on
an optional broadcaster. Other displays pick a change up from the broadcast
or, when that is unavailable, from the store's own change detection.
"""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import quote, unquote

import structlog
from pydantic import BaseModel, ValidationError

from linacsim.core.config import SyncConfig
from linacsim.core.exceptions import BroadcastError, SharedStateError
from linacsim.core.models import SharedScenarioState
from linacsim.data.broadcast import Broadcaster, create_broadcaster

logger = structlog.get_logger(__name__)

Record = Dict[str, Any]
StateCallback = Callable[[SharedScenarioState], None]


class KeyValueStore(ABC):
    """Persistent record store with change detection for writes made elsewhere."""

    @abstractmethod
    def get(self, key: str) -> Optional[Record]:
        """Return the stored record, or None when absent."""

    @abstractmethod
    def set(self, key: str, value: Record) -> None:
        """Persist ``value``. Raises SharedStateError on failure."""

    @abstractmethod
    def changed_keys(self) -> List[str]:
        """Keys written by another store instance since the last call."""


class InMemoryStore(KeyValueStore):
    """
    Dict-backed store.

    Several instances can share one ``backing`` dict to stand in for two
    displays over the same browser storage; each instance reports only the
    other instances' writes from ``changed_keys``.
    """

    def __init__(self, backing: Optional[Dict[str, Tuple[int, Record]]] = None):
        self._backing = backing if backing is not None else {}
        self._seen: Dict[str, int] = {}

    @property
    def backing(self) -> Dict[str, Tuple[int, Record]]:
        return self._backing

    def get(self, key: str) -> Optional[Record]:
        entry = self._backing.get(key)
        if entry is None:
            return None
        return json.loads(json.dumps(entry[1]))

    def set(self, key: str, value: Record) -> None:
        version = self._backing.get(key, (0, None))[0] + 1
        self._backing[key] = (version, json.loads(json.dumps(value)))
        self._seen[key] = version

    def changed_keys(self) -> List[str]:
        changed = []
        for key, (version, _) in list(self._backing.items()):
            if self._seen.get(key) != version:
                self._seen[key] = version
                changed.append(key)
        return changed


class JsonFileStore(KeyValueStore):
    """One JSON file per key in a directory both display processes can reach."""

    def __init__(self, state_dir: Union[str, Path]):
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._seen: Dict[str, Tuple[int, int, str]] = {}
        # Files present at startup are not news to this display
        for path in self.state_dir.glob("*.json"):
            self._seen[self._key_for(path)] = self._signature(path)

    def _path_for(self, key: str) -> Path:
        return self.state_dir / f"{quote(key, safe='')}.json"

    @staticmethod
    def _key_for(path: Path) -> str:
        return unquote(path.stem)

    @staticmethod
    def _signature(path: Path) -> Tuple[int, int, str]:
        # Coarse-mtime shares can hide a same-length rewrite, so hash the contents too
        st = path.stat()
        digest = hashlib.sha1(path.read_bytes()).hexdigest()
        return st.st_mtime_ns, st.st_size, digest

    def get(self, key: str) -> Optional[Record]:
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read shared state", key=key, error=str(exc))
            return None
        return raw if isinstance(raw, dict) else None

    def set(self, key: str, value: Record) -> None:
        path = self._path_for(key)
        try:
            fd, tmp = tempfile.mkstemp(dir=self.state_dir, prefix=".", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(value, fh, indent=2)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
            self._seen[key] = self._signature(path)
        except (OSError, TypeError, ValueError) as e:
            raise SharedStateError(f"Failed to write shared state {key}: {e}") from e

    def changed_keys(self) -> List[str]:
        changed = []
        try:
            paths = list(self.state_dir.glob("*.json"))
        except OSError as exc:
            logger.warning("Failed to scan shared state", error=str(exc))
            return changed
        for path in paths:
            key = self._key_for(path)
            try:
                sig = self._signature(path)
            except OSError:
                continue
            if self._seen.get(key) != sig:
                self._seen[key] = sig
                changed.append(key)
        return changed


class SharedStateChannel:
    """
    Read, write and subscribe to one display's view of the shared records.

    Writes never raise: a failed persist keeps the record in memory for this
    display, and a failed broadcast leaves the other display to find the
    change by store polling.
    """

    def __init__(
        self,
        store: KeyValueStore,
        broadcaster: Optional[Broadcaster] = None,
        key_prefix: str = "linac-study",
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.key_prefix = key_prefix
        self._subscribers: Dict[str, List[StateCallback]] = {}
        self._unpersisted: Dict[str, Record] = {}

    def key_for(self, scenario_id: str) -> str:
        return f"{self.key_prefix}:{scenario_id}"

    def scenario_for(self, key: str) -> Optional[str]:
        prefix = f"{self.key_prefix}:"
        return key[len(prefix):] if key.startswith(prefix) else None

    # Reads

    def read_raw(self, scenario_id: str) -> Optional[Record]:
        """The wire-format record, or None when no display has written one yet."""
        key = self.key_for(scenario_id)
        if key in self._unpersisted:
            return dict(self._unpersisted[key])
        try:
            return self.store.get(key)
        except SharedStateError as e:
            logger.warning("Shared state read failed", scenario_id=scenario_id, error=str(e))
            return None

    def read(self, scenario_id: str) -> Optional[SharedScenarioState]:
        raw = self.read_raw(scenario_id)
        if raw is None:
            return None
        return self._to_state(scenario_id, raw)

    @staticmethod
    def _to_state(scenario_id: str, raw: Record) -> SharedScenarioState:
        try:
            return SharedScenarioState.model_validate(raw)
        except ValidationError as e:
            logger.warning("Malformed shared state; using defaults", scenario_id=scenario_id, error=str(e))
            return SharedScenarioState(scenario_id=scenario_id)

    # Writes

    def write(
        self,
        scenario_id: str,
        patch: Union[Mapping[str, Any], BaseModel],
        merge: bool = True,
    ) -> SharedScenarioState:
        """
        Write ``patch`` to the scenario's record and notify every subscriber.

        With ``merge`` the patch is shallow-merged over the current record, so
        keys it does not mention survive; otherwise it replaces the record.
        """
        if isinstance(patch, BaseModel):
            patch = patch.model_dump(by_alias=True, exclude_unset=True, mode="json")
        patch = dict(patch or {})

        current: Record = {}
        if merge:
            current = self.read_raw(scenario_id) or {}
        record = {**current, **patch}
        record.setdefault("scenarioId", scenario_id)

        key = self.key_for(scenario_id)
        try:
            self.store.set(key, record)
            self._unpersisted.pop(key, None)
        except SharedStateError as e:
            logger.warning(
                "Shared state persist failed; keeping it in memory",
                scenario_id=scenario_id,
                error=str(e),
            )
            self._unpersisted[key] = dict(record)

        if self.broadcaster is not None:
            try:
                self.broadcaster.publish({"type": "state", "scenarioId": scenario_id})
            except BroadcastError as e:
                logger.warning("Shared state broadcast failed", scenario_id=scenario_id, error=str(e))

        state = self._to_state(scenario_id, record)
        self._emit(scenario_id, state)
        return state

    # Subscriptions

    def subscribe(self, scenario_id: str, callback: StateCallback) -> Callable[[], None]:
        """Call ``callback`` with the new state on every change; returns an unsubscribe."""
        callbacks = self._subscribers.setdefault(scenario_id, [])
        callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def _emit(self, scenario_id: str, state: SharedScenarioState) -> None:
        for callback in list(self._subscribers.get(scenario_id, [])):
            try:
                callback(state)
            except Exception as e:
                logger.error("Shared state subscriber failed", scenario_id=scenario_id, error=str(e))

    def poll(self) -> int:
        """
        Deliver changes made by other displays to local subscribers.

        Returns the number of scenarios whose subscribers were notified.
        """
        touched = []

        if self.broadcaster is not None:
            try:
                messages = self.broadcaster.receive()
            except BroadcastError as e:
                logger.warning("Shared state broadcast receive failed", error=str(e))
                messages = []
            for msg in messages:
                sid = msg.get("scenarioId")
                if msg.get("type") == "state" and isinstance(sid, str) and sid not in touched:
                    touched.append(sid)

        try:
            changed = self.store.changed_keys()
        except SharedStateError as e:
            logger.warning("Shared state change scan failed", error=str(e))
            changed = []
        for key in changed:
            sid = self.scenario_for(key)
            if sid is not None and sid not in touched:
                touched.append(sid)

        notified = 0
        for sid in touched:
            if not self._subscribers.get(sid):
                continue
            # Another display's write supersedes anything this one failed to persist
            self._unpersisted.pop(self.key_for(sid), None)
            state = self.read(sid)
            if state is None:
                continue
            self._emit(sid, state)
            notified += 1
        return notified

    def close(self) -> None:
        self._subscribers.clear()
        if self.broadcaster is not None:
            self.broadcaster.close()


def create_channel(config: SyncConfig) -> SharedStateChannel:
    """Build the production channel: file store plus the configured broadcaster."""
    store = JsonFileStore(config.state_dir)
    return SharedStateChannel(store, create_broadcaster(config), key_prefix=config.key_prefix)
