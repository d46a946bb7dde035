from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Plan:
    key: str
    name: str
    price: int  # USD per month
    credits: int
    description: str
    price_id: Optional[str] = None

    def to_dict(self):
        return {
            "plan": self.key,
            "name": self.name,
            "price": self.price,
            "credits": self.credits,
            "description": self.description,
            "available": bool(self.price_id),
        }


# --- Credit allocation by plan ---
DEFAULT_PLANS = (
    Plan("basic", "Basic Plan", 5, 5, "5 coloring pages per month"),
    Plan("premium", "Premium Plan", 10, 12, "12 coloring pages per month"),
)


class PlanCatalog:
    """Fixed mapping of plan key to price and monthly credit grant."""

    def __init__(self, plans):
        self._plans = {plan.key: plan for plan in plans}

    @classmethod
    def from_config(cls, config):
        price_ids = {
            "basic": config.get("BASIC_PLAN_PRICE_ID"),
            "premium": config.get("PREMIUM_PLAN_PRICE_ID"),
        }
        return cls(
            Plan(p.key, p.name, p.price, p.credits, p.description, price_ids.get(p.key))
            for p in DEFAULT_PLANS
        )

    def __iter__(self):
        return iter(self._plans.values())

    def get(self, key):
        return self._plans.get((key or "").lower())

    def for_price_id(self, price_id):
        """Map a processor price id to its plan; ``None`` for unknown ids."""
        if not price_id:
            return None
        for plan in self._plans.values():
            if plan.price_id == price_id:
                return plan
        return None
