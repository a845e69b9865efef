"""
Reminder strategy catalog.

Each strategy is an ordered cadence of (offset from due date, template)
steps. The catalog is plain data: a new cadence is a new entry here,
never a new branch in the scheduler.
"""

from dataclasses import dataclass
from typing import Dict, Tuple

from invoice_followup.core.exceptions import UnknownStrategyError


@dataclass(frozen=True)
class ReminderStep:
    """One step of a reminder cadence."""
    offset_days: int
    template_id: str


@dataclass(frozen=True)
class ReminderStrategy:
    """An immutable, tenant-independent reminder cadence."""
    id: str
    name: str
    description: str
    steps: Tuple[ReminderStep, ...]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "steps": [
                {"offset_days": s.offset_days, "template_id": s.template_id}
                for s in self.steps
            ],
        }


REMINDER_STRATEGIES: Dict[str, ReminderStrategy] = {
    strategy.id: strategy
    for strategy in (
        ReminderStrategy(
            id="gentle-3-7-14",
            name="Gentle Progression",
            description="Friendly reminders at 3, 7, and 14 days after due date",
            steps=(
                ReminderStep(3, "payment-reminder-gentle"),
                ReminderStep(7, "payment-reminder-standard"),
                ReminderStep(14, "payment-reminder-firm"),
            ),
        ),
        ReminderStrategy(
            id="professional-7-14",
            name="Professional Standard",
            description="Professional reminders at 7 and 14 days",
            steps=(
                ReminderStep(7, "payment-reminder-standard"),
                ReminderStep(14, "payment-reminder-firm"),
            ),
        ),
        ReminderStrategy(
            id="firm-7-21",
            name="Firm Approach",
            description="Direct reminders at 7 and 21 days",
            steps=(
                ReminderStep(7, "payment-reminder-firm"),
                ReminderStep(21, "payment-reminder-final"),
            ),
        ),
    )
}


def get_strategy(strategy_id: str) -> ReminderStrategy:
    """
    Look up a reminder strategy by id.

    Raises:
        UnknownStrategyError: If the id is not in the catalog.
    """
    try:
        return REMINDER_STRATEGIES[strategy_id]
    except KeyError:
        raise UnknownStrategyError(strategy_id) from None


def list_strategies() -> Tuple[ReminderStrategy, ...]:
    """All strategies in catalog order."""
    return tuple(REMINDER_STRATEGIES.values())
