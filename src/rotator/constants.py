from decimal import Decimal
from enum import StrEnum
from typing import Final

ADMIN_NUMBER: Final = 0

# XRP has six decimal places (drops)
DROP: Final = Decimal("0.000001")

HORIZON = 15  # Transactions expire if not validated within 15 ledgers (~45-60 seconds)
RPC_TIMEOUT = 2.0
SUBMIT_TIMEOUT = 20
VALIDATION_TIMEOUT = 60.0
MAX_FEE_DROPS = 1000

STAGGER = 0.7
MAX_RETRIES = 15
RETRY_INTERVAL = 0.7
PHASE_TIMEOUT = 120.0
PROGRESS_INTERVAL = 15.0
PAUSE_POLL = 0.25

WRITE_RETRIES = 20
WRITE_RETRY_DELAY = 0.5


class Strategy(StrEnum):
    MAKER  = "maker"   # shorter window, more distinct makers per hour
    VOLUME = "volume"


class LapStatus(StrEnum):
    RUNNING   = "running"
    COMPLETED = "completed"
    FAILED    = "failed"


class LapPhase(StrEnum):
    IDLE           = "idle"
    STARTING       = "starting"
    ACTIVITY       = "activity"
    COLLECTING     = "collecting"
    ROTATING       = "rotating"
    REDISTRIBUTING = "redistributing"
    HALTED         = "halted"


# Engine results that will never succeed on resubmission
REJECT_PREFIXES: Final = ("tem", "tef", "tec")
RESYNC_RESULTS: Final = frozenset({"tefPAST_SEQ", "terPRE_SEQ"})


__all__ = [
    "ADMIN_NUMBER",
    "DROP",
    "HORIZON",
    "MAX_FEE_DROPS",
    "MAX_RETRIES",
    "PAUSE_POLL",
    "PHASE_TIMEOUT",
    "PROGRESS_INTERVAL",
    "REJECT_PREFIXES",
    "RESYNC_RESULTS",
    "RETRY_INTERVAL",
    "RPC_TIMEOUT",
    "STAGGER",
    "SUBMIT_TIMEOUT",
    "VALIDATION_TIMEOUT",
    "WRITE_RETRIES",
    "WRITE_RETRY_DELAY",

    ######
    "LapPhase",
    "LapStatus",
    "Strategy",
]
