"""Tests for payment status transitions."""
import pytest

from payment_orchestration.core.errors import InvalidTransitionError, StateConflictError
from payment_orchestration.core.state_machine import (
    PaymentStatus,
    can_transition,
    ensure_transition,
)


class TestTransitions:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current, target",
        [
            (PaymentStatus.PENDING, PaymentStatus.PROCESSING),
            (PaymentStatus.PENDING, PaymentStatus.CANCELLED),
            (PaymentStatus.PROCESSING, PaymentStatus.COMPLETED),
            (PaymentStatus.PROCESSING, PaymentStatus.FAILED),
        ],
    )
    def test_allowed(self, current, target) -> None:
        assert can_transition(current, target) is True
        ensure_transition(current, target)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current, target",
        [
            (PaymentStatus.PENDING, PaymentStatus.COMPLETED),
            (PaymentStatus.PENDING, PaymentStatus.FAILED),
            (PaymentStatus.PROCESSING, PaymentStatus.PENDING),
            (PaymentStatus.PROCESSING, PaymentStatus.CANCELLED),
            (PaymentStatus.COMPLETED, PaymentStatus.FAILED),
            (PaymentStatus.FAILED, PaymentStatus.PENDING),
            (PaymentStatus.CANCELLED, PaymentStatus.PROCESSING),
        ],
    )
    def test_rejected(self, current, target) -> None:
        assert can_transition(current, target) is False
        with pytest.raises(InvalidTransitionError) as exc_info:
            ensure_transition(current, target)

        assert isinstance(exc_info.value, StateConflictError)
        assert exc_info.value.details == {"from": current.value, "to": target.value}

    @pytest.mark.unit
    def test_terminal_statuses(self) -> None:
        terminal = {status for status in PaymentStatus if status.is_terminal}

        assert terminal == {
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        }

    @pytest.mark.unit
    def test_accepts_raw_values(self) -> None:
        assert can_transition("pending", "processing") is True
