"""
Tournament score synchronization engine.

Reconciles off-chain weekly tournament scores into the on-chain tournament
contract: phase tracking, score aggregation and exactly-once settlement.
"""

__version__ = "0.1.0"
