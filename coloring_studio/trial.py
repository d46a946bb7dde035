"""Lazy trial expiry.

There is no background sweep: the evaluator runs on every authenticated read
and before every credit-consuming action, and the resulting transition is
written back through the ledger's conditional ``expire_trial``.
"""
from dataclasses import dataclass
from datetime import timedelta
import logging

from .models import utcnow

logger = logging.getLogger(__name__)

DEFAULT_TRIAL_LENGTH_DAYS = 7

EXPIRED_TRIAL_STATE = {"is_trial_active": False, "credits_remaining": 0}


@dataclass(frozen=True)
class TrialDecision:
    expired: bool
    changes: dict


def evaluate_trial(account, now, trial_length_days=DEFAULT_TRIAL_LENGTH_DAYS):
    """Decide whether ``account``'s self-serve trial has lapsed at ``now``.

    Trials of subscribed accounts are run by the payment processor and are
    left alone. An active trial without a start date is treated as lapsed.
    """
    # Subscribed accounts are exempt from the fixed-length window: a trial
    # started through checkout is ended by the subscription events instead.
    if not account.is_trial_active or account.subscription_id:
        return TrialDecision(False, {})
    start = account.trial_start_date
    if start is not None and now < start + timedelta(days=trial_length_days):
        return TrialDecision(False, {})
    return TrialDecision(True, dict(EXPIRED_TRIAL_STATE))


def refresh_trial(ledger, account, now=None, trial_length_days=DEFAULT_TRIAL_LENGTH_DAYS):
    """Apply the evaluator's transition, if any, and return the current account."""
    now = now or utcnow()
    decision = evaluate_trial(account, now, trial_length_days)
    if not decision.expired:
        return account
    cutoff = now - timedelta(days=trial_length_days)
    expired = ledger.expire_trial(account.id, cutoff)
    if expired is not None:
        logger.info("Trial expired for account %s", account.id)
        return expired
    # Someone else changed the row first (conversion, concurrent expiry); reread it
    return ledger.get_by_id(account.id) or account
