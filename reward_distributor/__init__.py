"""
Reward Distributor

A long-lived worker that, on a fixed time grid:
- Collects accrued creator fees
- Swaps a share of them into the reward token
- Airdrops the reward token to holders of the tracked token, pro rata
"""

__version__ = "0.1.0"
__author__ = "Reward Distributor Team"
