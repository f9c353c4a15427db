"""Compensation (Saga) Support.

The storage layer has no multi-table transactions, so a batch that fails
after its header row was written is undone by compensating writes. Each
write step registers the action that reverses it; on a fatal failure the
registered actions run strictly in reverse order of registration.

Today the only registered step is the encounter header of a create batch
(compensated by a soft delete), but further header-owned child entities
can register their own compensations the same way.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from mcu_batch.domain.ports import CompensationFailureError, EncounterStorePort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompensationStep:
    """A named compensating action."""
    name: str
    action: Callable[[], None]


class Saga:
    """Ordered registry of compensating actions for one batch.

    Example Usage:
        ```python
        saga = Saga(encounter_id="MCU-20240301-AB12CD34")
        encounter = store.create(fields)
        saga.register("soft-delete encounter", lambda: store.soft_delete(encounter.encounter_id))
        try:
            ...
        except Exception as e:
            saga.compensate(e)  # raises CompensationFailureError if undo fails
            raise
        ```
    """

    def __init__(self, encounter_id: Optional[str] = None):
        self.encounter_id = encounter_id
        self._steps: list[CompensationStep] = []
        self._compensated = False

    def register(self, name: str, action: Callable[[], None]) -> None:
        self._steps.append(CompensationStep(name=name, action=action))

    @property
    def steps(self) -> list[str]:
        return [step.name for step in self._steps]

    @property
    def compensated(self) -> bool:
        return self._compensated

    def compensate(self, original_error: Optional[BaseException] = None) -> list[str]:
        """Run every registered compensation in reverse order.

        All steps are attempted even if one fails; failures are collected.

        Parameters:
            original_error: The exception that made compensation necessary

        Returns:
            list[str]: Names of the steps that ran successfully

        Raises:
            CompensationFailureError: If any compensating action failed
        """
        completed: list[str] = []
        errors: list[BaseException] = []

        for step in reversed(self._steps):
            try:
                logger.warning(f"Compensating: {step.name} (encounter {self.encounter_id})")
                step.action()
                completed.append(step.name)
            except Exception as e:
                logger.critical(
                    f"Compensation step '{step.name}' failed for encounter "
                    f"{self.encounter_id}: {e}",
                    exc_info=True
                )
                errors.append(e)

        self._compensated = True
        self._steps.clear()

        if errors:
            raise CompensationFailureError(
                f"Compensation failed for encounter {self.encounter_id}; "
                f"manual cleanup required: {errors[0]}",
                encounter_id=self.encounter_id,
                original_error=original_error,
                compensation_errors=errors,
            )
        return completed


class EncounterCompensator:
    """Reverses a partially applied create by soft-deleting its encounter."""

    def __init__(self, encounter_store: EncounterStorePort):
        self.encounter_store = encounter_store

    def register(self, saga: Saga, encounter_id: str) -> None:
        saga.register(
            f"soft-delete encounter {encounter_id}",
            lambda: self.encounter_store.soft_delete(encounter_id),
        )
