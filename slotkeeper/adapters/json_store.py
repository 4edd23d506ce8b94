"""
JSON-file appointment store used by the CLI.
"""

import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Sequence, Tuple

from filelock import FileLock, Timeout

from ..domain.exceptions import AppointmentNotFoundError, BusyError, StorageError
from ..domain.models import Appointment
from .memory import InMemoryAppointmentStore

FORMAT_VERSION = 1


class JsonAppointmentStore(InMemoryAppointmentStore):
    """
    Keeps appointments in memory and rewrites a JSON document on every commit.

    Several processes may share one file. Writers hold a lock file next to
    the document (``appointments.json.lock``) and reload the document under
    it, so a check-and-insert always sees the other processes' commits.
    The file is replaced atomically (write to a temp file, then rename), so
    a crash never leaves a half-written document behind.

    Document format:
    {
        "format_version": 1,
        "appointments": [{"appointment_id": "...", "status": "PENDING", ...}]
    }
    """

    def __init__(self, path: Path, lock_timeout: float = 2.0):
        self.path = Path(path)
        self.lock_timeout = lock_timeout
        self._file_lock = FileLock(str(self.path.with_name(self.path.name + ".lock")))
        super().__init__(self._load())

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """
        Hold the file lock and work on the latest document.

        Re-entrant within a thread. Raises BusyError when another process
        keeps the lock longer than ``lock_timeout``.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file_lock.acquire(timeout=self.lock_timeout)
        except Timeout as exc:
            raise BusyError(
                "Appointment file is locked by another process",
                path=str(self.path),
                waited_seconds=self.lock_timeout,
            ) from exc
        except OSError as exc:
            raise StorageError(f"Cannot lock appointment file: {exc}", path=str(self.path)) from exc

        try:
            self.refresh()
            yield
        finally:
            self._file_lock.release()

    def refresh(self) -> None:
        """Replace the in-memory copy with the document on disk."""
        appointments = self._load()
        with self._lock:
            self._appointments = {}
            self._tokens = {}
            for appointment in appointments:
                self._put(appointment)

    def get(self, appointment_id: str) -> Appointment:
        try:
            return super().get(appointment_id)
        except AppointmentNotFoundError:
            # May have been created by another process since the last load.
            with self.exclusive():
                return super().get(appointment_id)

    def apply(
        self,
        inserts: Sequence[Appointment] = (),
        updates: Sequence[Tuple[Appointment, int]] = (),
    ) -> None:
        with self.exclusive():
            super().apply(inserts=inserts, updates=updates)

    def _load(self) -> List[Appointment]:
        if not self.path.exists():
            return []

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Cannot read appointment file: {exc}", path=str(self.path)) from exc

        if not isinstance(data, dict):
            raise StorageError("Appointment file must contain a JSON object", path=str(self.path))

        try:
            return [Appointment.from_dict(item) for item in data.get("appointments", [])]
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageError(f"Invalid appointment record: {exc}", path=str(self.path)) from exc

    def _document(self) -> Dict[str, Any]:
        return {
            "format_version": FORMAT_VERSION,
            "appointments": [appointment.to_dict() for appointment in self._appointments.values()],
        }

    def _persist(self) -> None:
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=".appointments-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(self._document(), f, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise StorageError(f"Cannot write appointment file: {exc}", path=str(self.path)) from exc
