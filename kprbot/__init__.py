# KPR Bot Package
"""
KPR Bot
=======
Mortgage (KPR) chat assistant core: question planning, privacy-safe SQL,
audited execution and grounded answers.
"""

__version__ = "1.0.0"
