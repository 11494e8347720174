"""Compliance Deadline Risk Engine.

Scores the risk of missing regulatory compliance deadlines and drives
multi-channel alert notifications with retry and tiered escalation.
"""

__version__ = "0.1.0"
__author__ = "Compliance Platform Team"
