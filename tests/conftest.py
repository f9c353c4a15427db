"""Shared fixtures: an in-memory DuckDB store wired through the real adapter stack."""

from typing import Callable, Iterable, Optional

import pytest

from mcu_batch.adapters.storage.duckdb_store import DuckDBStore
from mcu_batch.adapters.storage.store_adapter import StoreAdapter
from mcu_batch.domain.guardrails import RetryPolicy
from mcu_batch.domain.models import MeasurementRecord
from mcu_batch.domain.ports import MeasurementStorePort, StorageError
from mcu_batch.domain.services.batch_orchestrator import BatchOrchestrator
from mcu_batch.domain.whitelist import WhitelistRegistry


class FaultyMeasurementStore(MeasurementStorePort):
    """Delegating measurement store that fails writes for chosen type ids."""

    def __init__(
        self,
        delegate: MeasurementStorePort,
        fail_type_ids: Iterable[int] = (),
        error_factory: Optional[Callable[[int], Exception]] = None
    ):
        self.delegate = delegate
        self.fail_type_ids = set(fail_type_ids)
        self.error_factory = error_factory or (
            lambda type_id: StorageError(f"simulated write failure for lab item {type_id}", operation="write")
        )
        self.calls: list[tuple[str, int]] = []

    def _maybe_fail(self, operation: str, type_id: int) -> None:
        self.calls.append((operation, type_id))
        if type_id in self.fail_type_ids:
            raise self.error_factory(type_id)

    def create(self, measurement: MeasurementRecord) -> MeasurementRecord:
        self._maybe_fail("create", measurement.type_id)
        return self.delegate.create(measurement)

    def update(self, measurement_id: str, fields: dict) -> None:
        record = self.delegate.get(measurement_id)
        self._maybe_fail("update", record.type_id if record else -1)
        self.delegate.update(measurement_id, fields)

    def soft_delete(self, measurement_id: str) -> None:
        record = self.delegate.get(measurement_id)
        self._maybe_fail("soft_delete", record.type_id if record else -1)
        self.delegate.soft_delete(measurement_id)

    def list_by_encounter_id(self, encounter_id: str) -> list[MeasurementRecord]:
        return self.delegate.list_by_encounter_id(encounter_id)

    def get(self, measurement_id: str) -> Optional[MeasurementRecord]:
        return self.delegate.get(measurement_id)


@pytest.fixture
def registry():
    return WhitelistRegistry.default()


@pytest.fixture
def store(registry):
    store = DuckDBStore(db_path=":memory:", registry=registry)
    result = store.initialize_schema()
    assert result.is_success()
    yield store
    store.close()


@pytest.fixture
def store_adapter(store):
    return StoreAdapter(
        store.encounters,
        store.measurements,
        retry_policy=RetryPolicy.no_retry(),
        max_workers=4,
    )


@pytest.fixture
def orchestrator(store_adapter, registry, store):
    return BatchOrchestrator(store_adapter, registry, change_log=store)


@pytest.fixture
def encounter_fields():
    return {
        "employeeId": "EMP-001",
        "mcuType": "Annual",
        "mcuDate": "2024-03-01",
        "bloodPressure": "120/80",
        "visionDistantUnaideLeft": "6/6",
    }


@pytest.fixture
def faulty_measurements(store):
    """Factory for a measurement store that fails writes for the given type ids."""
    def make(fail_type_ids=(), error_factory=None) -> FaultyMeasurementStore:
        return FaultyMeasurementStore(store.measurements, fail_type_ids, error_factory)
    return make


MCU_ENV_VARS = (
    "MCU_DB_TYPE", "MCU_DB_PATH", "MCU_DB_HOST", "MCU_DB_PORT", "MCU_DB_NAME",
    "MCU_DB_USER", "MCU_DB_PASSWORD", "MCU_DB_CONNECTION_STRING", "MCU_DB_SSL_MODE",
    "MCU_WHITELIST_PATH", "MCU_EXPECTED_MEASUREMENT_COUNT", "MCU_MAX_WORKERS",
    "MCU_LOG_JSON", "MCU_LOG_LEVEL",
)


@pytest.fixture
def mcu_env(monkeypatch, tmp_path):
    """Environment without MCU_* settings, run from an empty directory."""
    for name in MCU_ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    return monkeypatch
