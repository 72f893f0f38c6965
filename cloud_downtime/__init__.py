"""
Cloud Downtime - scheduled stop/start for groups of cloud instances.

Groups of AWS EC2 instances and Azure virtual machines are stopped when
their downtime window opens and started again once it closes.
"""

__version__ = "1.0.0"

from cloud_downtime.core.exceptions import CloudDowntimeError

__all__ = ["CloudDowntimeError"]
