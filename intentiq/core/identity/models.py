from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from intentiq.core.constants import NOT_YET_DEFINED


class FirstPartyRecord(BaseModel):
    """
    Per-browser record stored under FIRST_PARTY_KEY. Field aliases are the
    on-disk names; unknown keys from older writers are dropped on load.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    pcid: Optional[str] = None
    pcid_date: Optional[int] = Field(default=None, alias="pcidDate")
    group: str = NOT_YET_DEFINED
    cttl: int = 0
    date: Optional[int] = None
    uspapi_value: Optional[str] = None
    gpp_string_value: Optional[str] = None
    is_opted_out: bool = Field(default=False, alias="isOptedOut")
    pid: Optional[str] = None

    @field_validator("pcid", "pid", mode="before")
    @classmethod
    def _ids_as_text(cls, v: Any) -> Any:
        # other writers may store numeric ids
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, exclude_none=True), separators=(",", ":"))


class PartnerRecord(BaseModel):
    """
    Per-partner record. ``data`` is ``{}``, ``{"eids": [...]}``, the
    INVALID_ID sentinel, or a Cipher blob when read back from storage.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    data: Any = Field(default_factory=dict)
    eidl: Optional[int] = None
    wsrvcll: bool = False
    termination_cause: Optional[int] = Field(default=None, alias="terminationCause")
    ct: Optional[Any] = None
    site_id: Optional[Any] = Field(default=None, alias="siteId")
    rrtt: Optional[int] = None
    date: Optional[int] = None
    cttl: Optional[int] = None

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, exclude_none=True), separators=(",", ":"))


def empty_identity() -> Dict[str, List[Any]]:
    return {"eids": []}


def eids_of(identity: Any) -> List[Any]:
    if isinstance(identity, dict) and isinstance(identity.get("eids"), list):
        return identity["eids"]
    return []


@dataclass
class IdResponse:
    """
    What ``resolve`` hands back synchronously: the cached ``id`` when one is
    usable, and/or a deferred ``callback`` that runs the network path.
    """

    id: Optional[List[Any]] = None
    callback: Optional[Callable[..., Any]] = None
