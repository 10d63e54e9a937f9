"""Static pricing catalogue shown on the landing page and subscription panel."""
from typing import List, Optional

from schemas import PricingPlan

FREE_PLAN_ID = "free"

# Paid plans stay active for this many days after purchase
PLAN_DURATION_DAYS = 30

PRICING_PLANS: List[PricingPlan] = [
    PricingPlan(
        id=FREE_PLAN_ID,
        name="Free",
        price="₹0",
        amount=0,
        features=["Basic Job Search", "1 Resume Template", "Email Alerts"],
        target="SEEKER",
    ),
    PricingPlan(
        id="resume-pro",
        name="Resume Pro",
        price="₹199/mo",
        amount=19900,
        features=["AI Resume Builder", "ATS Optimization", "Priority Support"],
        recommended=True,
        target="SEEKER",
    ),
    PricingPlan(
        id="career-boost",
        name="Career Boost",
        price="₹999/mo",
        amount=99900,
        features=["All Pro Features", "Featured Profile", "Direct Recruiter DM"],
        target="SEEKER",
    ),
    PricingPlan(
        id="employer-starter",
        name="Hiring Starter",
        price="₹2,999/mo",
        amount=299900,
        features=["5 Active Jobs", "AI Candidate Matching", "Basic Analytics"],
        target="EMPLOYER",
    ),
    PricingPlan(
        id="employer-pro",
        name="Hiring Pro",
        price="₹9,999/mo",
        amount=999900,
        features=["Unlimited Jobs", "Auto-Interview Bot", "WhatsApp Integration"],
        recommended=True,
        target="EMPLOYER",
    ),
]


def get_plan(plan_id: str) -> Optional[PricingPlan]:
    return next((plan for plan in PRICING_PLANS if plan.id == plan_id), None)


def plans_for_role(role: str) -> List[PricingPlan]:
    """Plans a user with ``role`` may subscribe to.

    Everyone except admins can fall back to the free plan. College accounts
    browse the seeker catalogue.
    """
    if role == "ADMIN":
        return []
    target = "SEEKER" if role == "COLLEGE" else role
    return [
        plan
        for plan in PRICING_PLANS
        if plan.id == FREE_PLAN_ID or plan.target == target
    ]
