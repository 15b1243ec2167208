"""
Fairshare Engine
================

Fair allocation of scarce shared resources between competing organizations.

This package provides:
- Per-requester quotas over rolling periods
- Reserved capacity for underserved requesters
- Priority queueing with wait estimates
- Hoarding detection and graduated restriction
- Admin read endpoints for operators
"""

__version__ = "1.0.0"
