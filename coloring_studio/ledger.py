"""The account ledger: sole writer of identity, credit and subscription fields.

Two interchangeable implementations share one interface. ``SqlAccountLedger``
stores accounts through Flask-SQLAlchemy and performs the credit debit and
the trial expiry as single conditional UPDATE statements, so concurrent
requests on several server instances cannot drive a balance below zero.
``MemoryAccountLedger`` keeps accounts in a dict guarded by a lock; it backs
tests and local development.
"""
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
import logging
import threading
from typing import Optional

from flask_login import UserMixin
from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError

from .errors import EmailAlreadyRegistered
from .models import AccountModel, new_account_id, utcnow

logger = logging.getLogger(__name__)


class DuplicateKeyError(Exception):
    """A unique account key (email, subscription id, customer id) is already claimed."""


@dataclass
class Account(UserMixin):
    id: str
    email: str
    password_hash: str = field(repr=False)
    name: Optional[str] = None
    created_at: Optional[datetime] = None
    credits_remaining: int = 0
    total_credits_used: int = 0
    trial_credits_used: int = 0
    last_credit_reset: Optional[datetime] = None
    is_trial_active: bool = True
    trial_start_date: Optional[datetime] = None
    subscription_plan: Optional[str] = None
    subscription_status: Optional[str] = None
    subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    subscription_event_at: Optional[datetime] = None

    def to_public_dict(self):
        """The account as shown to its owner; credential material is left out."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "creditsRemaining": self.credits_remaining,
            "totalCreditsUsed": self.total_credits_used,
            "trialCreditsUsed": self.trial_credits_used,
            "isTrialActive": self.is_trial_active,
            "trialStartDate": _isoformat(self.trial_start_date),
            "subscriptionPlan": self.subscription_plan,
            "subscriptionStatus": self.subscription_status,
            "currentPeriodStart": _isoformat(self.current_period_start),
            "currentPeriodEnd": _isoformat(self.current_period_end),
            "lastCreditReset": _isoformat(self.last_credit_reset),
        }


def _isoformat(value):
    return value.isoformat() if value else None


ACCOUNT_FIELDS = tuple(f.name for f in fields(Account))
IMMUTABLE_FIELDS = frozenset({"id", "created_at", "trial_start_date"})
UNIQUE_FIELDS = ("email", "subscription_id", "stripe_customer_id")


def normalize_email(email):
    return (email or "").strip().lower()


def _check_changes(changes):
    unknown = set(changes) - set(ACCOUNT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown account fields: {', '.join(sorted(unknown))}")
    frozen = set(changes) & IMMUTABLE_FIELDS
    if frozen:
        raise ValueError(f"Account fields are immutable: {', '.join(sorted(frozen))}")
    if changes.get("credits_remaining", 0) < 0:
        raise ValueError("credits_remaining cannot be negative")


class AccountLedger:
    """Interface shared by the ledger implementations.

    Lookups return ``None`` when nothing matches. ``update`` is last-write-wins
    on the fields it is given. The conditional operations return the updated
    account, or ``None`` when their condition did not hold.
    """

    def create(self, email, password_hash, name=None, credits=0, now=None) -> Account:
        raise NotImplementedError

    def get_by_id(self, account_id) -> Optional[Account]:
        raise NotImplementedError

    def get_by_email(self, email) -> Optional[Account]:
        raise NotImplementedError

    def get_by_subscription_id(self, subscription_id) -> Optional[Account]:
        raise NotImplementedError

    def get_by_customer_id(self, customer_id) -> Optional[Account]:
        raise NotImplementedError

    def update(self, account_id, **changes) -> Optional[Account]:
        raise NotImplementedError

    def debit_credit(self, account_id) -> Optional[Account]:
        """Take one credit if the balance is positive, counting it as used."""
        raise NotImplementedError

    def expire_trial(self, account_id, cutoff) -> Optional[Account]:
        """End a self-serve trial that started at or before ``cutoff``, zeroing credits."""
        raise NotImplementedError

    def apply_subscription_change(self, account_id, event_at, **changes) -> Optional[Account]:
        """Apply ``changes`` unless a newer subscription event was already applied."""
        raise NotImplementedError

    def update_subscribed(self, account_id, subscription_id, **changes) -> Optional[Account]:
        """Apply ``changes`` only while the account still holds ``subscription_id``."""
        raise NotImplementedError


class MemoryAccountLedger(AccountLedger):
    def __init__(self):
        self._accounts = {}
        self._lock = threading.Lock()

    def _find(self, key, value):
        if value is None:
            return None
        for account in self._accounts.values():
            if getattr(account, key) == value:
                return account
        return None

    def _claim_unique(self, account_id, changes):
        for key in UNIQUE_FIELDS:
            value = changes.get(key)
            owner = self._find(key, value)
            if owner is not None and owner.id != account_id:
                raise DuplicateKeyError(f"{key} {value!r} already belongs to another account")

    def _apply(self, account, changes):
        updated = replace(account, **changes)
        self._accounts[account.id] = updated
        return replace(updated)

    def create(self, email, password_hash, name=None, credits=0, now=None):
        now = now or utcnow()
        email = normalize_email(email)
        with self._lock:
            if self._find("email", email) is not None:
                raise EmailAlreadyRegistered()
            account = Account(
                id=new_account_id(),
                email=email,
                password_hash=password_hash,
                name=name or None,
                created_at=now,
                credits_remaining=credits,
                is_trial_active=True,
                trial_start_date=now,
            )
            self._accounts[account.id] = account
            return replace(account)

    def _get(self, key, value):
        with self._lock:
            account = self._find(key, value)
            return replace(account) if account else None

    def get_by_id(self, account_id):
        with self._lock:
            account = self._accounts.get(account_id)
            return replace(account) if account else None

    def get_by_email(self, email):
        return self._get("email", normalize_email(email))

    def get_by_subscription_id(self, subscription_id):
        return self._get("subscription_id", subscription_id)

    def get_by_customer_id(self, customer_id):
        return self._get("stripe_customer_id", customer_id)

    def update(self, account_id, **changes):
        _check_changes(changes)
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return None
            self._claim_unique(account_id, changes)
            return self._apply(account, changes)

    def debit_credit(self, account_id):
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None or account.credits_remaining <= 0:
                return None
            return self._apply(account, {
                "credits_remaining": account.credits_remaining - 1,
                "total_credits_used": account.total_credits_used + 1,
                "trial_credits_used": account.trial_credits_used + (1 if account.is_trial_active else 0),
            })

    def expire_trial(self, account_id, cutoff):
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None or not account.is_trial_active or account.subscription_id:
                return None
            if account.trial_start_date is not None and account.trial_start_date > cutoff:
                return None
            return self._apply(account, {"is_trial_active": False, "credits_remaining": 0})

    def apply_subscription_change(self, account_id, event_at, **changes):
        _check_changes(changes)
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return None
            if account.subscription_event_at is not None and account.subscription_event_at > event_at:
                return None
            self._claim_unique(account_id, changes)
            changes["subscription_event_at"] = event_at
            return self._apply(account, changes)

    def update_subscribed(self, account_id, subscription_id, **changes):
        _check_changes(changes)
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None or not subscription_id or account.subscription_id != subscription_id:
                return None
            self._claim_unique(account_id, changes)
            return self._apply(account, changes)


class SqlAccountLedger(AccountLedger):
    def __init__(self, db):
        self.db = db

    @property
    def session(self):
        return self.db.session

    @staticmethod
    def _to_account(row):
        if row is None:
            return None
        return Account(**{name: getattr(row, name) for name in ACCOUNT_FIELDS})

    def _one(self, *criteria):
        row = self.session.execute(select(AccountModel).where(*criteria)).scalar_one_or_none()
        return self._to_account(row)

    def _execute_update(self, stmt, account_id):
        """Run a single-row UPDATE; return the fresh account when exactly one row changed."""
        try:
            result = self.session.execute(stmt.execution_options(synchronize_session=False))
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise DuplicateKeyError(str(exc.orig)) from exc
        if result.rowcount != 1:
            logger.debug("Conditional update matched no row for account %s", account_id)
            return None
        return self.get_by_id(account_id)

    def create(self, email, password_hash, name=None, credits=0, now=None):
        now = now or utcnow()
        email = normalize_email(email)
        if self.get_by_email(email) is not None:
            raise EmailAlreadyRegistered()
        row = AccountModel(
            email=email,
            password_hash=password_hash,
            name=name or None,
            created_at=now,
            credits_remaining=credits,
            is_trial_active=True,
            trial_start_date=now,
        )
        self.session.add(row)
        try:
            self.session.commit()
        except IntegrityError:
            # Lost a race with a concurrent sign-up for the same email
            self.session.rollback()
            raise EmailAlreadyRegistered()
        return self._to_account(row)

    def get_by_id(self, account_id):
        if not account_id:
            return None
        return self._one(AccountModel.id == account_id)

    def get_by_email(self, email):
        email = normalize_email(email)
        if not email:
            return None
        return self._one(AccountModel.email == email)

    def get_by_subscription_id(self, subscription_id):
        if not subscription_id:
            return None
        return self._one(AccountModel.subscription_id == subscription_id)

    def get_by_customer_id(self, customer_id):
        if not customer_id:
            return None
        return self._one(AccountModel.stripe_customer_id == customer_id)

    def update(self, account_id, **changes):
        _check_changes(changes)
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
        if not changes:
            return self.get_by_id(account_id)
        stmt = update(AccountModel).where(AccountModel.id == account_id).values(**changes)
        return self._execute_update(stmt, account_id)

    def debit_credit(self, account_id):
        stmt = (
            update(AccountModel)
            .where(AccountModel.id == account_id, AccountModel.credits_remaining > 0)
            .values(
                credits_remaining=AccountModel.credits_remaining - 1,
                total_credits_used=AccountModel.total_credits_used + 1,
                trial_credits_used=AccountModel.trial_credits_used
                + case((AccountModel.is_trial_active.is_(True), 1), else_=0),
            )
        )
        return self._execute_update(stmt, account_id)

    def expire_trial(self, account_id, cutoff):
        stmt = (
            update(AccountModel)
            .where(
                AccountModel.id == account_id,
                AccountModel.is_trial_active.is_(True),
                AccountModel.subscription_id.is_(None),
                or_(AccountModel.trial_start_date.is_(None), AccountModel.trial_start_date <= cutoff),
            )
            .values(is_trial_active=False, credits_remaining=0)
        )
        return self._execute_update(stmt, account_id)

    def apply_subscription_change(self, account_id, event_at, **changes):
        _check_changes(changes)
        stmt = (
            update(AccountModel)
            .where(
                AccountModel.id == account_id,
                or_(AccountModel.subscription_event_at.is_(None), AccountModel.subscription_event_at <= event_at),
            )
            .values(subscription_event_at=event_at, **changes)
        )
        return self._execute_update(stmt, account_id)

    def update_subscribed(self, account_id, subscription_id, **changes):
        _check_changes(changes)
        if not subscription_id:
            return None
        stmt = (
            update(AccountModel)
            .where(AccountModel.id == account_id, AccountModel.subscription_id == subscription_id)
            .values(**changes)
        )
        return self._execute_update(stmt, account_id)
