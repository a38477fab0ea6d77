# engine/state/machine.py

from datetime import datetime
from typing import Optional

from engine.errors import RecordClosedError
from engine.models import AccuracyRecord, Direction, Outcome


def realized_return(record: AccuracyRecord, exit_price: float) -> float:
    return record.direction.sign * (exit_price - record.entry_price) / record.entry_price


class OutcomeStateMachine:
    """
    Open -> {Win, Loss, Breakeven}. Терминальные состояния не переоткрываются.
    """

    def __init__(self, breakeven_tolerance: float = 0.001):
        self.breakeven_tolerance = breakeven_tolerance

    def _crossing(self, record: AccuracyRecord, price: float) -> Optional[Outcome]:
        if record.direction is Direction.LONG:
            if price >= record.take_profit:
                return Outcome.WIN
            if price <= record.stop_loss:
                return Outcome.LOSS
        elif record.direction is Direction.SHORT:
            if price <= record.take_profit:
                return Outcome.WIN
            if price >= record.stop_loss:
                return Outcome.LOSS
        return None

    def on_price(self, record: AccuracyRecord, price: float, at: datetime) -> Optional[Outcome]:
        """Исход по рыночной цене: пересечение уровня или таймаут; иначе None."""
        if record.outcome.is_terminal:
            return None
        outcome = self._crossing(record, price)
        if outcome is None and at >= record.timeout_at:
            return Outcome.BREAKEVEN
        return outcome

    def on_exit(self, record: AccuracyRecord, exit_price: float, exit_time: datetime) -> Outcome:
        """Исход ручного закрытия по цене выхода."""
        outcome = self._crossing(record, exit_price)
        if outcome is not None:
            return outcome
        if exit_time >= record.timeout_at:
            return Outcome.BREAKEVEN

        r = realized_return(record, exit_price)
        if abs(r) <= self.breakeven_tolerance:
            return Outcome.BREAKEVEN
        return Outcome.WIN if r > 0 else Outcome.LOSS

    def transition(self, record: AccuracyRecord, outcome: Outcome,
                   exit_price: float, at: datetime) -> AccuracyRecord:
        if record.outcome.is_terminal:
            raise RecordClosedError(
                f"{record.prediction_id}: уже закрыт как {record.outcome.value}"
            )
        if not outcome.is_terminal:
            raise ValueError(f"Переход в нетерминальное состояние: {outcome.value}")
        return record.close(outcome, exit_price, at, realized_return(record, exit_price))
