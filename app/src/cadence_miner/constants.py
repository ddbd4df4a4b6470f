"""
System constants for the miner scheduler.

These values are not user-configurable and are set at the system level.
"""

from datetime import timedelta

# Node defaults (dcrd simnet)
DEFAULT_ENDPOINT = "wss://localhost:19109/ws"

# Cadence defaults
DEFAULT_TARGET_BLOCK_TIME = timedelta(minutes=2)
DEFAULT_RETRY_DURATION = timedelta(seconds=30)

# Tip sampling shares one deadline across getbestblockhash + getblockheader
TIP_DEADLINE = timedelta(milliseconds=100)

# Mining attempt timing: the watchdog must fire before the request deadline
MINE_DEADLINE = timedelta(seconds=16)
MINE_WATCHDOG = timedelta(seconds=15)
STOP_DEADLINE = timedelta(milliseconds=100)

# Startup connection retries
CONNECT_ATTEMPTS = 10
CONNECT_INTERVAL = timedelta(seconds=1)

# Next-poll instants are logged at this granularity
DISPLAY_GRANULARITY = timedelta(milliseconds=100)

# Scheduler job
CYCLE_JOB_ID = "mining_cycle"
