"""Job market — lifecycle state machine and reward pricing.

Posters publish jobs, collectors claim and complete them, and the
pricing engine derives rewards from material rate bands.
"""

from recyclemart.market.job_state_machine import JobStateMachine, PLATFORM_ACTOR
from recyclemart.market.pricing import PricingEngine, RewardBreakdown

__all__ = ["JobStateMachine", "PLATFORM_ACTOR", "PricingEngine", "RewardBreakdown"]
