"""
Gatekeeper
==========

Gate-driven orchestration of agent roles with human approval.
"""

__version__ = "0.1.0"
