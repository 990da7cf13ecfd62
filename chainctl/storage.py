"""Chain config store plus persistent unit and timer storage using JSON files."""

import json
import os
import sys
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import ConfigNotFound
from .models import ChainLinkConfig, ChainType, JobRequest, JobUnit, TimerEntry, UnitState
from .utils import new_tracking_id

# Handle platform-specific locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl


class ConfigStore(ABC):
    """Read-only lookup of chain link configs by job identifier."""

    @abstractmethod
    def find(self, chain_type: ChainType, job_identifier: str) -> List[ChainLinkConfig]:
        """Return every record (active or not) for a job identifier."""


class MemoryConfigStore(ConfigStore):
    """Config store backed by a list, for embedding and tests."""

    def __init__(self, configs: Optional[Iterable[ChainLinkConfig]] = None):
        self.configs: List[ChainLinkConfig] = list(configs or [])

    def add(self, config: ChainLinkConfig) -> None:
        self.configs.append(config)

    def replace(self, config: ChainLinkConfig) -> None:
        """Swap every record for the job with `config`."""
        self.configs = [
            c for c in self.configs
            if not (c.chain_type == config.chain_type and c.current_job == config.current_job)
        ]
        self.configs.append(config)

    def find(self, chain_type: ChainType, job_identifier: str) -> List[ChainLinkConfig]:
        return [
            c for c in self.configs
            if c.chain_type == chain_type and c.current_job == job_identifier
        ]


class Storage(ConfigStore):
    """File-based storage for configs, submitted units and timers, with locking."""

    def __init__(self, data_dir: str = ".chainctl"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.configs_file = self.data_dir / "configs.json"
        self.units_file = self.data_dir / "units.json"
        self.timers_file = self.data_dir / "timers.json"
        self.locks_dir = self.data_dir / "locks"
        self.locks_dir.mkdir(exist_ok=True)

        # Initialize files if they don't exist
        for path in (self.configs_file, self.units_file, self.timers_file):
            with self._file_lock(path):
                if not path.exists():
                    self._write_json(path, [])

    @contextmanager
    def _file_lock(self, file_path: Path):
        """Block until this process owns the data file for a read-modify-write."""
        fd = os.open(str(self.locks_dir / f"{file_path.name}.lock"), os.O_CREAT | os.O_WRONLY, 0o644)
        try:
            if sys.platform == "win32":
                msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError:
            os.close(fd)
            raise
        try:
            yield
        finally:
            self.release_lock(fd)

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        # Each writer gets its own temp file
        with tempfile.NamedTemporaryFile("w", dir=str(self.data_dir), suffix=".tmp", delete=False) as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(f.name, file_path)

    def _read_json(self, file_path: Path) -> Any:
        """Read JSON file safely."""
        if not file_path.exists():
            return []
        with open(file_path, "r") as f:
            return json.load(f)

    # Chain configs

    def find(self, chain_type: ChainType, job_identifier: str) -> List[ChainLinkConfig]:
        return [
            c for c in self.list_configs(chain_type)
            if c.current_job == job_identifier
        ]

    def list_configs(self, chain_type: Optional[ChainType] = None) -> List[ChainLinkConfig]:
        """Get all config records, optionally for one chain type."""
        configs = [ChainLinkConfig(**data) for data in self._read_json(self.configs_file)]
        if chain_type is not None:
            configs = [c for c in configs if c.chain_type == chain_type]
        return configs

    def add_config(self, config: ChainLinkConfig) -> None:
        """Add a config record. Earlier records for the job are kept as history."""
        with self._file_lock(self.configs_file):
            configs = self._read_json(self.configs_file)
            configs.append(config.model_dump(mode="json"))
            self._write_json(self.configs_file, configs)

    def deactivate_config(self, chain_type: ChainType, job_identifier: str) -> int:
        """Switch off every record for a job. Returns how many were active."""
        with self._file_lock(self.configs_file):
            configs = self._read_json(self.configs_file)
            changed = 0
            found = False
            for data in configs:
                if data["chain_type"] == chain_type.value and data["current_job"] == job_identifier:
                    found = True
                    if data["is_active"]:
                        data["is_active"] = False
                        changed += 1
            if not found:
                raise ConfigNotFound(job_identifier)
            self._write_json(self.configs_file, configs)
        return changed

    # Submitted units

    def add_unit(self, unit: JobUnit) -> None:
        """Add a new unit."""
        with self._file_lock(self.units_file):
            units = self._read_json(self.units_file)
            units.append(unit.model_dump(mode="json"))
            self._write_json(self.units_file, units)

    def update_unit(self, unit: JobUnit) -> None:
        """Update an existing unit."""
        with self._file_lock(self.units_file):
            units = self._read_json(self.units_file)
            for i, data in enumerate(units):
                if data["tracking_id"] == unit.tracking_id:
                    units[i] = unit.model_dump(mode="json")
                    self._write_json(self.units_file, units)
                    return
        raise ValueError(f"Unit {unit.tracking_id} not found")

    def get_unit(self, tracking_id: str) -> Optional[JobUnit]:
        """Get a unit by tracking id."""
        for data in self._read_json(self.units_file):
            if data["tracking_id"] == tracking_id:
                return JobUnit(**data)
        return None

    def get_all_units(self) -> List[JobUnit]:
        return [JobUnit(**data) for data in self._read_json(self.units_file)]

    def get_units_by_state(self, state: UnitState) -> List[JobUnit]:
        """Get all units in a specific state."""
        return [
            JobUnit(**data) for data in self._read_json(self.units_file)
            if data["state"] == state.value
        ]

    def get_ready_units(self, now: datetime) -> List[JobUnit]:
        """Pending units whose eligible time has passed, oldest first."""
        ready = [u for u in self.get_units_by_state(UnitState.PENDING) if u.eligible_at <= now]
        return sorted(ready, key=lambda u: (u.eligible_at, u.created_at))

    def count_active(self, chain_type: ChainType, now: datetime) -> int:
        """Running units plus pending units already eligible to run."""
        count = 0
        for unit in self.get_all_units():
            if unit.request.chain_type != chain_type:
                continue
            if unit.state == UnitState.RUNNING:
                count += 1
            elif unit.state == UnitState.PENDING and unit.eligible_at <= now:
                count += 1
        return count

    # One-shot timers

    def add_timer(self, fire_at: datetime, request: JobRequest) -> str:
        """Register a deferred start. Returns its handle."""
        entry = TimerEntry(handle=new_tracking_id(), fire_at=fire_at, request=request)
        with self._file_lock(self.timers_file):
            timers = self._read_json(self.timers_file)
            timers.append(entry.model_dump(mode="json"))
            self._write_json(self.timers_file, timers)
        return entry.handle

    def pop_due_timers(self, now: datetime) -> List[TimerEntry]:
        """Remove and return timers whose fire time has been reached."""
        fd = self.acquire_lock("timers")
        if fd is None:
            # Another process is firing timers
            return []
        try:
            with self._file_lock(self.timers_file):
                entries = [TimerEntry(**data) for data in self._read_json(self.timers_file)]
                due = [e for e in entries if e.fire_at <= now]
                if due:
                    keep = [e.model_dump(mode="json") for e in entries if e.fire_at > now]
                    self._write_json(self.timers_file, keep)
            return sorted(due, key=lambda e: e.fire_at)
        finally:
            self.release_lock(fd)

    def pending_timers(self) -> List[TimerEntry]:
        return [TimerEntry(**data) for data in self._read_json(self.timers_file)]

    # Locks

    def acquire_lock(self, name: str) -> Optional[int]:
        """Acquire a named lock. Returns lock file descriptor or None if locked."""
        lock_file = self.locks_dir / f"{name}.lock"
        try:
            fd = os.open(str(lock_file), os.O_CREAT | os.O_WRONLY, 0o644)
            if sys.platform == "win32":
                try:
                    msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
                except OSError:
                    os.close(fd)
                    return None
            else:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except OSError:
                    os.close(fd)
                    return None
            return fd
        except OSError:
            return None

    def release_lock(self, fd: int) -> None:
        """Release a lock."""
        try:
            if sys.platform == "win32":
                msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def get_stats(self) -> Dict[str, int]:
        """Get unit statistics."""
        units = self._read_json(self.units_file)
        stats = {state.value: 0 for state in UnitState}
        for data in units:
            state = data.get("state", UnitState.PENDING.value)
            if state in stats:
                stats[state] += 1
        stats["total"] = len(units)
        stats["timers"] = len(self._read_json(self.timers_file))
        stats["configs"] = len(self._read_json(self.configs_file))
        return stats
