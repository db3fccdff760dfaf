"""Administrative bonus operations: statistics, rates and campaigns."""
