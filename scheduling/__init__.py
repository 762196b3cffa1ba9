from scheduling.business_hours import next_business_moment, is_within_business_hours
from scheduling.drips import DripScheduler

__all__ = ["next_business_moment", "is_within_business_hours", "DripScheduler"]
