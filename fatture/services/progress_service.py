"""
Avanzamento dei job di upload.

Ogni job ha un proprio canale di broadcast, creato all'invio del batch e
eliminato dopo un periodo di grazia successivo allo stato terminale. Ogni
sottoscrittore riceve lo snapshot corrente e poi solo gli aggiornamenti
successivi (nessuno storico); la disconnessione di un sottoscrittore non
influisce sugli altri né sul job.
"""

from __future__ import annotations

import copy
import logging
import queue
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from fatture.errors import JobNotFoundError

logger = logging.getLogger(__name__)

STATUS_PREPARING = "preparing"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})


@dataclass
class UploadJob:
    job_id: str
    total: int
    completed: int = 0
    failed: int = 0
    status: str = STATUS_PREPARING
    current_file: Optional[str] = None
    results: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "status": self.status,
            "current_file": self.current_file,
            "results": copy.deepcopy(self.results),
            "errors": copy.deepcopy(self.errors),
        }


class _JobChannel:
    def __init__(self, job: UploadJob):
        self.job = job
        self.subscribers: List[queue.Queue] = []
        self.closed = False
        self.expiry_timer: Optional[threading.Timer] = None


class ProgressBroadcaster:
    def __init__(self, retention_seconds: float = 300.0, poll_interval: float = 0.5):
        self.retention_seconds = retention_seconds
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._channels: Dict[str, _JobChannel] = {}

    def create_job(self, total: int) -> UploadJob:
        job = UploadJob(job_id=str(uuid.uuid4()), total=total)
        with self._lock:
            self._channels[job.job_id] = _JobChannel(job)
        return job

    def emit(self, job_id: str, job: Optional[UploadJob] = None) -> Dict[str, Any]:
        """
        Pubblica lo stato corrente del job a tutti i sottoscrittori.

        Se ``job`` è passato, sostituisce lo stato memorizzato. Uno snapshot
        terminale avvia il timer di eliminazione del canale.
        """
        with self._lock:
            channel = self._channels.get(job_id)
            if channel is None:
                raise JobNotFoundError(f"Job non trovato: {job_id}")
            if job is not None:
                channel.job = job
            snapshot = channel.job.snapshot()
            for subscriber in list(channel.subscribers):
                subscriber.put(snapshot)

            if channel.job.is_terminal and channel.expiry_timer is None:
                timer = threading.Timer(self.retention_seconds, self._expire, args=(job_id,))
                timer.daemon = True
                channel.expiry_timer = timer
                timer.start()
        return snapshot

    def get_snapshot(self, job_id: str) -> Dict[str, Any]:
        with self._lock:
            channel = self._channels.get(job_id)
            if channel is None:
                raise JobNotFoundError(f"Job non trovato: {job_id}")
            return channel.job.snapshot()

    def has_job(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._channels

    def subscribe(self, job_id: str) -> Iterator[Dict[str, Any]]:
        """
        Flusso di snapshot del job: prima lo stato corrente, poi gli aggiornamenti,
        fino al primo snapshot terminale compreso.

        :raises JobNotFoundError: alla creazione, se il job non esiste o è scaduto
        """
        with self._lock:
            channel = self._channels.get(job_id)
            if channel is None:
                raise JobNotFoundError(f"Job non trovato: {job_id}")
            current = channel.job.snapshot()
            subscriber: Optional[queue.Queue] = None
            if not channel.job.is_terminal:
                subscriber = queue.Queue()
                channel.subscribers.append(subscriber)

        return self._stream(channel, current, subscriber)

    def _stream(
        self,
        channel: _JobChannel,
        current: Dict[str, Any],
        subscriber: Optional[queue.Queue],
    ) -> Iterator[Dict[str, Any]]:
        try:
            yield current
            if subscriber is None:
                return
            while True:
                try:
                    snapshot = subscriber.get(timeout=self.poll_interval)
                except queue.Empty:
                    if channel.closed:
                        return
                    continue
                yield snapshot
                if snapshot["status"] in TERMINAL_STATUSES:
                    return
        finally:
            if subscriber is not None:
                with self._lock:
                    if subscriber in channel.subscribers:
                        channel.subscribers.remove(subscriber)

    def _expire(self, job_id: str) -> None:
        with self._lock:
            channel = self._channels.pop(job_id, None)
            if channel is not None:
                channel.closed = True
        if channel is not None:
            logger.debug(
                "Job di upload scaduto",
                extra={"component": "progress_service", "job_id": job_id},
            )

    def shutdown(self) -> None:
        with self._lock:
            channels = list(self._channels.values())
            self._channels.clear()
        for channel in channels:
            channel.closed = True
            if channel.expiry_timer is not None:
                channel.expiry_timer.cancel()
