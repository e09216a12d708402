import logging

from django.dispatch import Signal

logger = logging.getLogger(__name__)

# Sent on every treasury threshold crossing with kwargs: below, balance, threshold
treasury_low_balance = Signal()


def notify_treasury_threshold(below, balance, threshold):
    """Treasury listener that forwards crossings to monitoring receivers."""
    logger.info(f"Treasury threshold crossing: below={below} balance={balance} threshold={threshold}")
    treasury_low_balance.send(sender='membership.treasury', below=below, balance=balance, threshold=threshold)
