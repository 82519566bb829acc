"""
Tenant metering: monthly quotas and sliding-window rate limits.

Tracks per-tenant, per-operation usage of expensive operations
(bill analysis, report generation) against tiered limits held in a
central configuration document.
"""

__version__ = "0.1.0"
