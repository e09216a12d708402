"""
Treasury that funds the initial payout sent with every membership.

Amounts are integer micro-units (1 unit = 1_000_000 micro). The pool lives on
the ``LedgerContract`` row, so every process reads and debits the same balance.
"""

import logging
from decimal import Decimal
from typing import Callable, List

from django.db import transaction

from .models import LedgerContract

logger = logging.getLogger(__name__)

MICRO_MULTIPLIER = Decimal('1000000')


def to_micro(amount) -> int:
    return int((Decimal(str(amount)) * MICRO_MULTIPLIER).to_integral_value())


def from_micro(amount_micro: int) -> Decimal:
    return (Decimal(amount_micro) / MICRO_MULTIPLIER).quantize(Decimal('0.000001'))


class TreasuryManager:
    """Payout pool of one deployed contract. Balance never goes negative."""

    def __init__(self, contract_address: str):
        self.contract_address = contract_address
        self._listeners: List[Callable[[bool, int, int], None]] = []

    def _row(self, for_update: bool = False) -> LedgerContract:
        queryset = LedgerContract.objects.select_for_update() if for_update else LedgerContract.objects
        return queryset.get(address=self.contract_address)

    @property
    def balance(self) -> int:
        return self._row().treasury_balance

    @property
    def payout_amount(self) -> int:
        return self._row().payout_amount

    @property
    def low_balance_threshold(self) -> int:
        return self._row().low_balance_threshold

    def can_pay(self, amount: int) -> bool:
        return self.balance >= amount

    def reserve(self, amount: int) -> bool:
        """Atomically check and debit ``amount``. Returns False when funds are short."""
        if amount <= 0:
            return False
        with transaction.atomic():
            row = self._row(for_update=True)
            if row.treasury_balance < amount:
                return False
            row.treasury_balance -= amount
            row.save(update_fields=['treasury_balance', 'updated_at'])
        return True

    def release(self, amount: int) -> None:
        """Return a reservation whose issuance did not go through."""
        with transaction.atomic():
            row = self._row(for_update=True)
            row.treasury_balance += amount
            row.save(update_fields=['treasury_balance', 'updated_at'])

    def credit(self, amount: int) -> None:
        if amount <= 0:
            raise ValueError('Credit amount must be positive')
        with transaction.atomic():
            row = self._row(for_update=True)
            row.treasury_balance += amount
            row.save(update_fields=['treasury_balance', 'updated_at'])
        logger.info(f"Treasury credited {amount} micro, balance now {row.treasury_balance}")
        self.check_threshold()

    def set_payout_amount(self, amount: int) -> None:
        with transaction.atomic():
            row = self._row(for_update=True)
            row.payout_amount = amount
            row.save(update_fields=['payout_amount', 'updated_at'])

    def set_low_balance_threshold(self, threshold: int) -> None:
        with transaction.atomic():
            row = self._row(for_update=True)
            row.low_balance_threshold = threshold
            row.save(update_fields=['low_balance_threshold', 'updated_at'])
        self.check_threshold()

    def is_below_threshold(self) -> bool:
        row = self._row()
        return row.treasury_balance < row.low_balance_threshold

    def add_listener(self, listener: Callable[[bool, int, int], None]) -> None:
        self._listeners.append(listener)

    def check_threshold(self) -> None:
        """Notify listeners once each time the balance crosses the threshold."""
        with transaction.atomic():
            row = self._row(for_update=True)
            below = row.treasury_balance < row.low_balance_threshold
            if below == row.below_threshold:
                return
            row.below_threshold = below
            row.save(update_fields=['below_threshold', 'updated_at'])

        if below:
            logger.warning(
                f"Treasury balance {from_micro(row.treasury_balance)} below threshold "
                f"{from_micro(row.low_balance_threshold)}"
            )
        for listener in self._listeners:
            listener(below, row.treasury_balance, row.low_balance_threshold)
