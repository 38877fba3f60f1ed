"""
gridworker: grid-trading bot worker for Delta Exchange.

Runs every stored grid bot on a fixed cadence, reconciling the desired ladder
against live orders through a signed, retrying exchange client, with an
emergency stop that halts a whole exchange account.
"""

__version__ = "1.0.0"
