from datetime import datetime, timedelta

import pytest

from coloring_studio.errors import EmailAlreadyRegistered
from coloring_studio.ledger import DuplicateKeyError

NOW = datetime(2025, 1, 1, 12, 0, 0)


def test_create_starts_trial(ledger):
    account = ledger.create("  A@X.com ", "hash", name="Ann", credits=3, now=NOW)

    assert account.email == "a@x.com"
    assert account.name == "Ann"
    assert account.credits_remaining == 3
    assert account.is_trial_active is True
    assert account.trial_start_date == NOW
    assert account.total_credits_used == 0
    assert account.subscription_plan is None
    assert account.subscription_status is None


def test_create_rejects_duplicate_email_case_insensitively(ledger):
    ledger.create("a@x.com", "hash", credits=3)
    with pytest.raises(EmailAlreadyRegistered):
        ledger.create("A@X.COM", "hash", credits=3)


def test_lookups(ledger):
    account = ledger.create("a@x.com", "hash", credits=3)
    ledger.update(account.id, subscription_id="sub_1", stripe_customer_id="cus_1")

    assert ledger.get_by_id(account.id).email == "a@x.com"
    assert ledger.get_by_email("A@x.com").id == account.id
    assert ledger.get_by_subscription_id("sub_1").id == account.id
    assert ledger.get_by_customer_id("cus_1").id == account.id


def test_lookup_misses_return_none(ledger):
    assert ledger.get_by_id("missing") is None
    assert ledger.get_by_email("nobody@x.com") is None
    assert ledger.get_by_subscription_id("sub_missing") is None
    assert ledger.get_by_customer_id(None) is None


def test_update_touches_only_given_fields(ledger):
    account = ledger.create("a@x.com", "hash", credits=3)
    updated = ledger.update(account.id, subscription_status="past_due")
    assert updated.subscription_status == "past_due"
    assert updated.credits_remaining == 3
    assert ledger.update("missing", subscription_status="active") is None


def test_update_rejects_immutable_and_invalid_fields(ledger):
    account = ledger.create("a@x.com", "hash", credits=3)
    with pytest.raises(ValueError):
        ledger.update(account.id, trial_start_date=NOW)
    with pytest.raises(ValueError):
        ledger.update(account.id, credits_remaining=-1)
    with pytest.raises(ValueError):
        ledger.update(account.id, favourite_colour="red")


def test_subscription_id_claimed_by_one_account_only(ledger):
    first = ledger.create("a@x.com", "hash", credits=3)
    second = ledger.create("b@x.com", "hash", credits=3)
    ledger.update(first.id, subscription_id="sub_1")
    with pytest.raises(DuplicateKeyError):
        ledger.update(second.id, subscription_id="sub_1")
    assert ledger.get_by_subscription_id("sub_1").id == first.id


def test_debit_never_goes_below_zero(ledger):
    account = ledger.create("a@x.com", "hash", credits=2)

    results = [ledger.debit_credit(account.id) for _ in range(4)]

    assert [r is not None for r in results] == [True, True, False, False]
    final = ledger.get_by_id(account.id)
    assert final.credits_remaining == 0
    assert final.total_credits_used == 2
    assert final.trial_credits_used == 2


def test_debit_outside_trial_does_not_count_trial_usage(ledger):
    account = ledger.create("a@x.com", "hash", credits=5)
    ledger.update(account.id, is_trial_active=False)

    debited = ledger.debit_credit(account.id)

    assert debited.credits_remaining == 4
    assert debited.total_credits_used == 1
    assert debited.trial_credits_used == 0


def test_debit_unknown_account(ledger):
    assert ledger.debit_credit("missing") is None


def test_expire_trial_respects_cutoff(ledger):
    account = ledger.create("a@x.com", "hash", credits=3, now=NOW)
    assert ledger.expire_trial(account.id, NOW - timedelta(seconds=1)) is None
    expired = ledger.expire_trial(account.id, NOW)
    assert expired.is_trial_active is False
    assert expired.credits_remaining == 0
    # Already expired: nothing left to do
    assert ledger.expire_trial(account.id, NOW) is None


def test_apply_subscription_change_drops_older_events(ledger):
    account = ledger.create("a@x.com", "hash", credits=3)
    newer = NOW + timedelta(minutes=5)

    applied = ledger.apply_subscription_change(account.id, newer, subscription_status="active")
    assert applied.subscription_status == "active"
    assert applied.subscription_event_at == newer

    assert ledger.apply_subscription_change(account.id, NOW, subscription_status="past_due") is None
    assert ledger.get_by_id(account.id).subscription_status == "active"

    # Redelivery of the same event is allowed and idempotent
    again = ledger.apply_subscription_change(account.id, newer, subscription_status="active")
    assert again == applied


def test_update_subscribed_requires_matching_subscription(ledger):
    account = ledger.create("a@x.com", "hash", credits=3)
    assert ledger.update_subscribed(account.id, "sub_1", credits_remaining=12) is None

    ledger.update(account.id, subscription_id="sub_1")
    assert ledger.update_subscribed(account.id, "sub_1", credits_remaining=12).credits_remaining == 12

    ledger.update(account.id, subscription_id=None, credits_remaining=0)
    assert ledger.update_subscribed(account.id, "sub_1", credits_remaining=12) is None
    assert ledger.update_subscribed(account.id, None, credits_remaining=12) is None
    assert ledger.get_by_id(account.id).credits_remaining == 0
