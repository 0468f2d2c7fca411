from typing import Final
from enum import StrEnum

# Well-known dev chain account
ALICE: Final = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"

HORIZON: Final = "-" * 46

SS58_FORMAT = 42

UNIT = 100_000_000  # 8 decimals
RPC_TIMEOUT = 10.0
SUBMIT_TIMEOUT = 20.0


class Scenario(StrEnum):
    LOAN = "loan"
    PURE_TPS = "pure-tps"


class Phase(StrEnum):
    CREATE_PACKAGE = "create_package"
    FUND           = "fund"
    MINT           = "mint"
    APPLY_LOAN     = "apply_loan"
    TRANSFER_BACK  = "transfer_back"


class Outcome(StrEnum):
    SUCCEEDED = "SUCCEEDED"
    TIMED_OUT = "TIMED_OUT"
    FAILED    = "FAILED"


__all__ = [
    "ALICE",
    "HORIZON",
    "RPC_TIMEOUT",
    "SS58_FORMAT",
    "SUBMIT_TIMEOUT",
    "UNIT",

    ######
    "Outcome",
    "Phase",
    "Scenario",
]
