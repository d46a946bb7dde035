from datetime import datetime, timezone
import uuid

from . import db


def utcnow():
    """Naive UTC now; every timestamp in the account table is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_account_id():
    return uuid.uuid4().hex


# --- Account Model ---
class AccountModel(db.Model):
    __tablename__ = "account"
    __table_args__ = (
        db.CheckConstraint("credits_remaining >= 0", name="ck_account_credits_non_negative"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_account_id)
    email = db.Column(db.String(254), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(120), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    # Credit system fields
    credits_remaining = db.Column(db.Integer, default=0, nullable=False)
    total_credits_used = db.Column(db.Integer, default=0, nullable=False)
    trial_credits_used = db.Column(db.Integer, default=0, nullable=False)
    last_credit_reset = db.Column(db.DateTime, nullable=True)

    # Trial fields
    is_trial_active = db.Column(db.Boolean, default=True, nullable=False)
    trial_start_date = db.Column(db.DateTime, nullable=True)

    # Paywall fields
    subscription_plan = db.Column(db.String(20), nullable=True)
    subscription_status = db.Column(db.String(20), nullable=True)
    subscription_id = db.Column(db.String(120), unique=True, nullable=True, index=True)
    stripe_customer_id = db.Column(db.String(120), unique=True, nullable=True, index=True)
    current_period_start = db.Column(db.DateTime, nullable=True)
    current_period_end = db.Column(db.DateTime, nullable=True)
    # Processor timestamp of the last applied subscription lifecycle event
    subscription_event_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f"<AccountModel {self.id} {self.email}>"
