# feedfed/delivery.py
"""
Durable, retrying delivery of activities to remote inboxes.

Each outbound activity becomes a DeliveryTask. Tasks move through:

    pending -> in_flight -> delivered | retry_scheduled | abandoned
    retry_scheduled -> pending            (once the backoff has elapsed)

delivered and abandoned are terminal. Transient failures (network errors,
timeouts, 5xx, 429) are retried with exponential backoff up to
max_attempts; other 4xx responses abandon the task immediately.

Tasks sharing an (actor_id, target_inbox) lane never run concurrently and
start in submission order. There is no ordering across lanes.
"""

import base64
import json
import logging
import random
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .client import FederationClient
from .errors import DeliveryPermanentFailure, DeliveryTransientFailure, SigningError
from .fs import atomic_write
from .signatures import SignatureSigner

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DELIVERED = "delivered"
    RETRY_SCHEDULED = "retry_scheduled"
    ABANDONED = "abandoned"


TERMINAL_STATUSES = {TaskStatus.DELIVERED, TaskStatus.ABANDONED}


def compute_backoff(attempt: int, base: float, cap: float, jitter: float = 0.0) -> float:
    """Exponential backoff: base * 2^(attempt-1), capped, plus optional jitter."""
    delay = min(cap, base * (2 ** max(attempt - 1, 0)))
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


@dataclass
class TaskTransition:
    """One state change of a DeliveryTask."""
    task_id: str
    from_status: Optional[TaskStatus]
    to_status: TaskStatus
    at: float
    attempts: int
    next_attempt_at: float
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.to_status.value,
            "at": self.at,
            "attempts": self.attempts,
            "next_attempt_at": self.next_attempt_at,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskTransition":
        from_status = data.get("from_status")
        return cls(
            task_id=data["task_id"],
            from_status=TaskStatus(from_status) if from_status else None,
            to_status=TaskStatus(data["to_status"]),
            at=data["at"],
            attempts=data["attempts"],
            next_attempt_at=data["next_attempt_at"],
            error=data.get("error"),
        )


@dataclass
class DeliveryTask:
    """
    One activity bound for one remote inbox.

    Attributes:
        task_id: Unique identifier
        actor_id: Sending local actor
        target_inbox: Remote inbox URL
        payload: Exact body bytes (never modified)
        sequence: Submission order
        attempts: Delivery attempts started so far
        next_attempt_at: Earliest time of the next attempt
    """
    task_id: str
    actor_id: str
    target_inbox: str
    payload: bytes
    sequence: int
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    next_attempt_at: float = 0.0
    created_at: float = field(default_factory=time.time)
    last_error: Optional[str] = None
    cancelled: bool = False
    history: List[TaskTransition] = field(default_factory=list)

    @property
    def lane(self) -> Tuple[str, str]:
        return (self.actor_id, self.target_inbox)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "actor_id": self.actor_id,
            "target_inbox": self.target_inbox,
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "sequence": self.sequence,
            "status": self.status.value,
            "attempts": self.attempts,
            "next_attempt_at": self.next_attempt_at,
            "created_at": self.created_at,
            "last_error": self.last_error,
            "cancelled": self.cancelled,
            "history": [t.to_dict() for t in self.history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliveryTask":
        return cls(
            task_id=data["task_id"],
            actor_id=data["actor_id"],
            target_inbox=data["target_inbox"],
            payload=base64.b64decode(data["payload"]),
            sequence=data["sequence"],
            status=TaskStatus(data["status"]),
            attempts=data.get("attempts", 0),
            next_attempt_at=data.get("next_attempt_at", 0.0),
            created_at=data.get("created_at", time.time()),
            last_error=data.get("last_error"),
            cancelled=data.get("cancelled", False),
            history=[TaskTransition.from_dict(t) for t in data.get("history", [])],
        )


TransitionCallback = Callable[[TaskTransition], None]


class DeliveryQueue:
    """
    Signs and delivers activities with a bounded pool of worker threads.

    Usage:
        queue = DeliveryQueue(signer, FederationClient(), store_dir="/var/lib/feedfed/delivery")
        queue.start()
        queue.enqueue(actor_id, "https://remote.example/users/bob/inbox", activity)

    With store_dir set, tasks survive restarts:

        store_dir/
            deliveries.json     # Live tasks and archive of finished ones
    """

    def __init__(
        self,
        signer: SignatureSigner,
        client: FederationClient,
        store_dir: Optional[Path | str] = None,
        workers: int = 4,
        max_attempts: int = 8,
        backoff_base: float = 30.0,
        backoff_cap: float = 3600.0,
        jitter: float = 0.0,
        archive_limit: int = 1000,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.time,
        on_transition: Optional[TransitionCallback] = None,
    ):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.signer = signer
        self.client = client
        self.store_dir = Path(store_dir) if store_dir is not None else None
        self.workers = workers
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.jitter = jitter
        self.archive_limit = archive_limit
        self.poll_interval = poll_interval
        self._clock = clock
        self._on_transition = on_transition

        self._cond = threading.Condition(threading.RLock())
        self._tasks: Dict[str, DeliveryTask] = {}
        self._archive: "OrderedDict[str, DeliveryTask]" = OrderedDict()
        self._busy_lanes: Set[Tuple[str, str]] = set()
        self._next_sequence = 0
        self._threads: List[threading.Thread] = []
        self._stopping = False

        if self.store_dir is not None:
            self.store_dir.mkdir(parents=True, exist_ok=True)
            self._load()

    def _store_path(self) -> Path:
        return self.store_dir / "deliveries.json"

    def _load(self):
        """Load tasks from disk. Interrupted attempts go back to pending."""
        path = self._store_path()
        if not path.exists():
            return
        with open(path) as f:
            data = json.load(f)
        self._next_sequence = data.get("next_sequence", 0)
        for task_data in data.get("tasks", []):
            task = DeliveryTask.from_dict(task_data)
            if task.status == TaskStatus.IN_FLIGHT:
                self._transition(task, TaskStatus.PENDING, error="interrupted")
            self._tasks[task.task_id] = task
        for task_data in data.get("archive", []):
            task = DeliveryTask.from_dict(task_data)
            self._archive[task.task_id] = task

    def _save(self):
        if self.store_dir is None:
            return
        data = {
            "version": "1.0",
            "next_sequence": self._next_sequence,
            "tasks": [t.to_dict() for t in self._tasks.values()],
            "archive": [t.to_dict() for t in self._archive.values()],
        }
        atomic_write(self._store_path(), json.dumps(data))

    def set_transition_callback(self, callback: TransitionCallback):
        """Set callback for task state changes."""
        self._on_transition = callback

    def _transition(self, task: DeliveryTask, status: TaskStatus, error: str = None):
        if status in TERMINAL_STATUSES:
            # Only retry_scheduled tasks may have a future next_attempt_at
            task.next_attempt_at = min(task.next_attempt_at, self._clock())
        transition = TaskTransition(
            task_id=task.task_id,
            from_status=task.status if task.history else None,
            to_status=status,
            at=self._clock(),
            attempts=task.attempts,
            next_attempt_at=task.next_attempt_at,
            error=error,
        )
        task.status = status
        if error is not None:
            task.last_error = error
        task.history.append(transition)
        if self._on_transition:
            try:
                self._on_transition(transition)
            except Exception as e:
                logger.warning(f"Transition callback error: {e}")

    def _retire(self, task: DeliveryTask):
        self._tasks.pop(task.task_id, None)
        self._archive[task.task_id] = task
        while len(self._archive) > self.archive_limit:
            self._archive.popitem(last=False)

    def enqueue(self, actor_id: str, target_inbox: str, payload: bytes | Dict[str, Any]) -> DeliveryTask:
        """
        Queue an activity for delivery.

        Args:
            actor_id: Local actor that signs the request
            target_inbox: Remote inbox URL
            payload: Body bytes, or an activity dict serialized once here
        """
        if isinstance(payload, dict):
            payload = json.dumps(payload).encode("utf-8")
        now = self._clock()
        with self._cond:
            task = DeliveryTask(
                task_id=str(uuid.uuid4()),
                actor_id=actor_id,
                target_inbox=target_inbox,
                payload=bytes(payload),
                sequence=self._next_sequence,
                next_attempt_at=now,
                created_at=now,
            )
            self._next_sequence += 1
            self._transition(task, TaskStatus.PENDING)
            self._tasks[task.task_id] = task
            self._save()
            self._cond.notify_all()
        logger.debug(f"Queued delivery {task.task_id} to {target_inbox}")
        return task

    def get(self, task_id: str) -> Optional[DeliveryTask]:
        with self._cond:
            return self._tasks.get(task_id) or self._archive.get(task_id)

    def list_tasks(self, status: TaskStatus = None, include_archive: bool = False) -> List[DeliveryTask]:
        with self._cond:
            tasks = list(self._tasks.values())
            if include_archive:
                tasks.extend(self._archive.values())
        if status is not None:
            tasks = [t for t in tasks if t.status == status]
        return sorted(tasks, key=lambda t: t.sequence)

    def counts(self) -> Dict[str, int]:
        """Number of tasks per status, archive included."""
        counts = {s.value: 0 for s in TaskStatus}
        for task in self.list_tasks(include_archive=True):
            counts[task.status.value] += 1
        return counts

    def cancel(self, task_id: str) -> bool:
        """
        Cancel a task.

        Queued tasks are abandoned at once. An in-flight task is abandoned
        when its attempt returns, unless that attempt delivered it.
        """
        with self._cond:
            task = self._tasks.get(task_id)
            if task is None or task.terminal:
                return False
            task.cancelled = True
            if task.status != TaskStatus.IN_FLIGHT:
                self._transition(task, TaskStatus.ABANDONED, error="cancelled")
                self._retire(task)
            self._save()
            self._cond.notify_all()
        logger.info(f"Cancelled delivery {task_id}")
        return True

    def cancel_actor(self, actor_id: str) -> int:
        """Cancel every live task sent by an actor."""
        with self._cond:
            task_ids = [t.task_id for t in self._tasks.values() if t.actor_id == actor_id]
            return sum(1 for task_id in task_ids if self.cancel(task_id))

    def _promote_ready(self, now: float):
        for task in self._tasks.values():
            if task.status == TaskStatus.RETRY_SCHEDULED and task.next_attempt_at <= now:
                self._transition(task, TaskStatus.PENDING)

    def _lease(self) -> Optional[DeliveryTask]:
        """Claim the next ready task, honouring lane order. Caller holds the lock."""
        now = self._clock()
        self._promote_ready(now)

        candidates = sorted(
            (t for t in self._tasks.values()
             if t.status == TaskStatus.PENDING and t.lane not in self._busy_lanes),
            key=lambda t: t.sequence,
        )
        if not candidates:
            return None

        task = candidates[0]
        self._busy_lanes.add(task.lane)
        task.attempts += 1
        self._transition(task, TaskStatus.IN_FLIGHT)
        self._save()
        return task

    def _next_wakeup(self) -> float:
        now = self._clock()
        pending_retries = [
            t.next_attempt_at for t in self._tasks.values()
            if t.status == TaskStatus.RETRY_SCHEDULED
        ]
        if not pending_retries:
            return self.poll_interval
        return max(0.0, min(min(pending_retries) - now, self.poll_interval))

    def _send(self, task: DeliveryTask) -> int:
        try:
            headers = self.signer.sign_request(
                task.actor_id, "POST", task.target_inbox, task.payload, now=self._clock()
            )
        except SigningError as e:
            raise DeliveryPermanentFailure(str(e)) from e

        try:
            status = self.client.post(task.target_inbox, task.payload, headers)
        except ConnectionError as e:
            raise DeliveryTransientFailure(str(e)) from e

        if 200 <= status < 300:
            return status
        if status == 429 or status >= 500:
            raise DeliveryTransientFailure(f"HTTP {status}")
        raise DeliveryPermanentFailure(f"HTTP {status}")

    def _attempt(self, task: DeliveryTask) -> Tuple[TaskStatus, Optional[str]]:
        """Run one attempt outside the lock. Returns (outcome, error)."""
        try:
            status = self._send(task)
        except DeliveryTransientFailure as e:
            return TaskStatus.RETRY_SCHEDULED, str(e)
        except DeliveryPermanentFailure as e:
            return TaskStatus.ABANDONED, str(e)
        except Exception as e:
            logger.exception(f"Unexpected error delivering {task.task_id}")
            return TaskStatus.RETRY_SCHEDULED, f"unexpected error: {e}"
        logger.debug(f"Delivered {task.task_id} to {task.target_inbox} (HTTP {status})")
        return TaskStatus.DELIVERED, None

    def _complete(self, task: DeliveryTask, outcome: TaskStatus, error: Optional[str]):
        with self._cond:
            self._busy_lanes.discard(task.lane)

            if outcome == TaskStatus.DELIVERED:
                self._transition(task, TaskStatus.DELIVERED)
                self._retire(task)
            elif task.cancelled:
                self._transition(task, TaskStatus.ABANDONED, error="cancelled")
                self._retire(task)
            elif outcome == TaskStatus.ABANDONED:
                logger.error(
                    f"Delivery {task.task_id} to {task.target_inbox} failed permanently: {error}"
                )
                self._transition(task, TaskStatus.ABANDONED, error=error)
                self._retire(task)
            elif task.attempts >= self.max_attempts:
                logger.error(
                    f"Delivery {task.task_id} to {task.target_inbox} abandoned "
                    f"after {task.attempts} attempts: {error}"
                )
                self._transition(task, TaskStatus.ABANDONED, error=error)
                self._retire(task)
            else:
                delay = compute_backoff(task.attempts, self.backoff_base, self.backoff_cap, self.jitter)
                task.next_attempt_at = self._clock() + delay
                logger.warning(
                    f"Delivery {task.task_id} to {task.target_inbox} failed ({error}), "
                    f"retry {task.attempts + 1}/{self.max_attempts} in {delay:.1f}s"
                )
                self._transition(task, TaskStatus.RETRY_SCHEDULED, error=error)

            self._save()
            self._cond.notify_all()

    def process_one(self) -> Optional[DeliveryTask]:
        """Attempt the next ready task on the calling thread, if any."""
        with self._cond:
            task = self._lease()
        if task is None:
            return None
        outcome, error = self._attempt(task)
        self._complete(task, outcome, error)
        return task

    def run_pending(self) -> int:
        """
        Attempt every task that is ready now, synchronously.

        Tasks rescheduled during the run wait for their backoff.
        Returns the number of attempts made.
        """
        attempts = 0
        while self.process_one() is not None:
            attempts += 1
        return attempts

    def _worker(self):
        while True:
            with self._cond:
                task = None
                while not self._stopping:
                    task = self._lease()
                    if task is not None:
                        break
                    self._cond.wait(timeout=self._next_wakeup())
                if task is None:
                    return
            outcome, error = self._attempt(task)
            self._complete(task, outcome, error)

    def start(self):
        """Start the worker pool."""
        with self._cond:
            if self._threads:
                return
            self._stopping = False
            for i in range(self.workers):
                thread = threading.Thread(target=self._worker, name=f"delivery-{i}")
                thread.daemon = True
                thread.start()
                self._threads.append(thread)
        logger.info(f"Delivery queue started with {self.workers} workers")

    def stop(self, timeout: float = 30.0):
        """Stop the workers, letting in-flight attempts finish."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
            threads, self._threads = self._threads, []
        for thread in threads:
            thread.join(timeout)
        logger.info("Delivery queue stopped")

    def wait_idle(self, timeout: float = None) -> bool:
        """Block until no task is pending or in flight."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while any(t.status in (TaskStatus.PENDING, TaskStatus.IN_FLIGHT)
                      for t in self._tasks.values()):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(timeout=remaining if remaining is not None else self.poll_interval)
            return True
