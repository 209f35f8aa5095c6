from dataclasses import dataclass
from typing import Dict, Mapping, Optional

@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    interval: Optional[str]
    # None means unlimited
    max_inventory_items: Optional[int]
    # Config key holding the provider price id for this plan
    price_setting: Optional[str] = None

TRIAL_PLAN = "free_trial"

PLANS: Dict[str, Plan] = {
    "free_trial": Plan("free_trial", "Free Trial", None, 50),
    "pro_monthly": Plan("pro_monthly", "Pro Monthly", "month", None, "STRIPE_PRICE_PRO_MONTHLY"),
    "pro_annual": Plan("pro_annual", "Pro Annual", "year", None, "STRIPE_PRICE_PRO_ANNUAL"),
    "enterprise": Plan("enterprise", "Enterprise", None, None),
}

def get_plan(plan_id: Optional[str]) -> Plan:
    """Unknown or empty plan ids fall back to the trial plan."""
    return PLANS.get(plan_id or "", PLANS[TRIAL_PLAN])

def price_table(config: Mapping) -> Dict[str, str]:
    """
    Static price -> plan mapping built from config.
    Plans without a configured price id are simply absent.
    """
    table: Dict[str, str] = {}
    for plan in PLANS.values():
        if not plan.price_setting:
            continue
        price_id = config.get(plan.price_setting)
        if price_id:
            table[price_id] = plan.id
    return table
