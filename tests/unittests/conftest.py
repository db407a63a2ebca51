import contextlib
from datetime import datetime, timedelta, timezone

import pytest

from cicero.main.config import Settings, reset_settings, set_settings
from cicero.outbox.outbox_models import EnqueueResult, OutboxEvent, OutboxStatus
from cicero.scheduler.scheduler_models import SchedulerState
from cicero.worker.redis.lua_scripts import LuaScripts


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Explicit settings so unit tests never depend on .env or the environment."""
    return Settings(
        # Minimal database settings (not used in unit tests)
        postgres_user="unit_test_user",
        postgres_host="localhost",
        postgres_password="unit_test_password",
        postgres_port=5432,
        postgres_db="unit_test_db",
        # Redis settings (not used in unit tests)
        redis_host="localhost",
        redis_port=6379,
        timezone="Asia/Jakarta",
        testing=True,
        dev=True,
    )


@pytest.fixture(autouse=True)
def reset_settings_after_test():
    """Reset settings after each test to prevent state leakage."""
    yield
    reset_settings()


@pytest.fixture
def use_test_settings(test_settings: Settings):
    set_settings(test_settings)
    return test_settings


class FakeRedis:
    """In-memory Redis supporting SET NX EX and the lock scripts."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.refresh_count = 0
        self.fail_with: Exception | None = None

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        if self.fail_with is not None:
            raise self.fail_with
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def get(self, key: str):
        return self.store.get(key)

    def expire_now(self, key: str) -> None:
        """Simulate the server expiring the key."""
        self.store.pop(key, None)
        self.ttls.pop(key, None)

    async def eval(self, script: str, num_keys: int, key: str, *args):  # noqa: ARG002
        if self.fail_with is not None:
            raise self.fail_with

        owner = args[0]
        if script == LuaScripts.RELEASE_LOCK:
            if self.store.get(key) == owner:
                self.expire_now(key)
                return 1
            return 0

        if script == LuaScripts.REFRESH_LOCK:
            self.refresh_count += 1
            if self.store.get(key) == owner:
                self.ttls[key] = int(args[1])
                return 1
            return 0

        raise AssertionError(f"Unexpected script: {script!r}")


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


class InMemoryOutboxRepository:
    """Outbox repository double that keeps rows in a dict."""

    def __init__(self):
        self.rows: dict[int, dict] = {}
        self.stale_release_calls: list[int] = []
        self.attempt_stamps: list[int] = []
        self._next_id = 1

    def add_row(self, **overrides) -> OutboxEvent:
        now = datetime.now(timezone.utc)
        row = {
            "id": self._next_id,
            "client_id": "POLRES_A",
            "destination": "120363@g.us",
            "message": "hello",
            "idempotency_key": f"key-{self._next_id}",
            "status": OutboxStatus.PENDING,
            "attempt_count": 0,
            "max_attempts": 5,
            "next_attempt_at": now - timedelta(seconds=1),
            "created_at": now - timedelta(seconds=60 - self._next_id),
            "updated_at": now,
            "last_attempt_at": None,
            "sent_at": None,
            "error_message": None,
        }
        row.update(overrides)
        self.rows[row["id"]] = row
        self._next_id += 1
        return OutboxEvent.model_validate(row)

    async def enqueue(self, events) -> EnqueueResult:
        result = EnqueueResult()
        existing = {row["idempotency_key"] for row in self.rows.values()}
        for event in events:
            if event.idempotency_key in existing:
                result.duplicated_count += 1
                continue
            existing.add(event.idempotency_key)
            self.add_row(**event.model_dump())
            result.inserted_count += 1
        return result

    async def claim_batch(self, limit: int = 20) -> list[OutboxEvent]:
        now = datetime.now(timezone.utc)
        due = sorted(
            (
                row
                for row in self.rows.values()
                if row["status"] in (OutboxStatus.PENDING, OutboxStatus.RETRYING)
                and row["next_attempt_at"] <= now
            ),
            key=lambda row: (row["created_at"], row["id"]),
        )[:limit]
        for row in due:
            row["status"] = OutboxStatus.PROCESSING
            row["attempt_count"] += 1
            row["last_attempt_at"] = now
        return [OutboxEvent.model_validate(row) for row in due]

    async def mark_sent(self, outbox_id: int) -> None:
        row = self.rows[outbox_id]
        row.update(status=OutboxStatus.SENT, sent_at=datetime.now(timezone.utc), error_message=None)

    async def mark_retry(self, outbox_id: int, error_message: str, next_attempt_at: datetime) -> None:
        self.rows[outbox_id].update(
            status=OutboxStatus.RETRYING,
            error_message=error_message,
            next_attempt_at=next_attempt_at,
        )

    async def mark_dead_letter(self, outbox_id: int, error_message: str) -> None:
        self.rows[outbox_id].update(
            status=OutboxStatus.DEAD_LETTER,
            error_message=error_message,
            next_attempt_at=datetime.now(timezone.utc),
        )

    async def mark_attempt_started(self, outbox_id: int, attempt_count: int) -> bool:
        row = self.rows[outbox_id]
        if row["status"] != OutboxStatus.PROCESSING or row["attempt_count"] != attempt_count:
            return False
        self.attempt_stamps.append(outbox_id)
        row["last_attempt_at"] = row["updated_at"] = datetime.now(timezone.utc)
        return True

    def _stale_rows(self, stale_seconds: int) -> list[dict]:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=stale_seconds)
        return [
            row
            for row in self.rows.values()
            if row["status"] == OutboxStatus.PROCESSING
            and (row["last_attempt_at"] or row["updated_at"] or row["created_at"]) <= cutoff
        ]

    async def release_stale_processing(self, stale_seconds: int = 300) -> int:
        self.stale_release_calls.append(stale_seconds)
        released = 0
        for row in self._stale_rows(stale_seconds):
            if row["attempt_count"] < row["max_attempts"]:
                row["status"] = OutboxStatus.RETRYING
                row["next_attempt_at"] = datetime.now(timezone.utc)
                released += 1
        return released

    async def dead_letter_stale_processing(
        self, stale_seconds: int = 300, error_message: str = "StaleProcessing"
    ) -> int:
        dead = 0
        for row in self._stale_rows(stale_seconds):
            if row["attempt_count"] >= row["max_attempts"]:
                row.update(status=OutboxStatus.DEAD_LETTER, error_message=error_message)
                dead += 1
        return dead


@pytest.fixture
def outbox_repo() -> InMemoryOutboxRepository:
    return InMemoryOutboxRepository()


@pytest.fixture
def outbox_transaction_factory(outbox_repo: InMemoryOutboxRepository):
    @contextlib.asynccontextmanager
    async def _transaction():
        yield outbox_repo

    return _transaction


class InMemorySchedulerStateRepository:
    def __init__(self):
        self.states: dict[str, SchedulerState] = {}
        self.upserts: list = []
        self.fail_load: Exception | None = None
        self.fail_upsert: Exception | None = None

    async def get_state_map_by_client_ids(self, client_ids):
        if self.fail_load is not None:
            raise self.fail_load
        return {cid: self.states[cid] for cid in client_ids if cid in self.states}

    async def upsert_state(self, state) -> None:
        if self.fail_upsert is not None:
            raise self.fail_upsert
        self.upserts.append(state)
        previous = self.states.get(state.client_id)
        self.states[state.client_id] = SchedulerState(
            client_id=state.client_id,
            last_ig_count=state.last_ig_count,
            last_tiktok_count=state.last_tiktok_count,
            last_notified_at=state.last_notified_at
            or (previous.last_notified_at if previous else None),
            last_notified_slot=state.last_notified_slot
            or (previous.last_notified_slot if previous else None),
            last_fetched_at=state.last_fetched_at,
        )


@pytest.fixture
def state_repo() -> InMemorySchedulerStateRepository:
    return InMemorySchedulerStateRepository()


@pytest.fixture
def state_transaction_factory(state_repo: InMemorySchedulerStateRepository):
    @contextlib.asynccontextmanager
    async def _transaction():
        yield state_repo

    return _transaction
