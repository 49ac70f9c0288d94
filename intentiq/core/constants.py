from __future__ import annotations

MODULE_NAME = "intentIqId"
VERSION = "0.29"

FIRST_PARTY_KEY = "_iiq_fdata"
CLIENT_HINTS_KEY = "_iiq_ch"

# cohorts
WITH_IIQ = "A"
WITHOUT_IIQ = "B"
NOT_YET_DEFINED = "U"
OPT_OUT = "O"
BLACK_LIST = "L"

INVALID_ID = "INVALID_ID"

# server termination cause for a hard opt-out
TC_HARD_OPT_OUT = 41

DEFAULT_CTTL_MS = 86_400_000
DEFAULT_TIMEOUT_MS = 500
PCID_EXPIRY_DAYS = 365

DEFAULT_ENDPOINT = "https://api.intentiq.com/profiles_engine/ProfilesEngineServlet"
DEFAULT_GAM_PARAMETER = "intent_iq_group"

ENCODER_CH = {
    "brands": 0,
    "mobile": 1,
    "platform": 2,
    "architecture": 3,
    "bitness": 4,
    "model": 5,
    "platformVersion": 6,
    "wow64": 7,
    "fullVersionList": 8,
}

HIGH_ENTROPY_HINTS = [
    "brands",
    "mobile",
    "bitness",
    "wow64",
    "architecture",
    "model",
    "platform",
    "platformVersion",
    "fullVersionList",
]


def partner_key(partner: int) -> str:
    return f"{FIRST_PARTY_KEY}_{partner}"
