"""Channel republisher.

Background pipeline that re-publishes videos from source channels to a
user's destination channel on a schedule, within a daily posting quota.
"""

__version__ = "0.1.0"
