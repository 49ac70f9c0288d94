from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StrictInt

from intentiq.core.constants import DEFAULT_ENDPOINT, DEFAULT_GAM_PARAMETER, DEFAULT_TIMEOUT_MS, VERSION


class ResolverSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")
    endpoint: str = DEFAULT_ENDPOINT
    client_version: str = VERSION
    # durable (per-origin) store
    storage_dir: str = "iiq_storage"
    origin: str = "localhost"
    durable_enabled: bool = True
    max_bytes: int = Field(default=5 * 1024 * 1024, ge=1024)
    # cookie jar
    cookies_enabled: bool = True
    cookie_domain: str = ""
    cookie_path: str = "/"
    request_timeout_seconds: float = Field(default=10.0, gt=0, le=120)
    log_dir: str = "logs"


class PartnerConfig(BaseModel):
    """
    Per-call partner configuration. Accepts the camelCase keys host pages
    already use (``timeoutInMillis``, ``browserBlackList`` ...) as well as the
    snake_case field names.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, arbitrary_types_allowed=True)

    partner: Optional[StrictInt] = None
    callback: Optional[Callable[..., Any]] = None
    timeout_in_millis: int = Field(default=DEFAULT_TIMEOUT_MS, ge=1, alias="timeoutInMillis")
    enabled_storage_types: Optional[List[str]] = Field(default=None, alias="enabledStorageTypes")
    browser_black_list: Optional[Union[str, List[str]]] = Field(default=None, alias="browserBlackList")
    pcid: Optional[str] = None
    pai: Optional[str] = None
    domain_name: Optional[str] = Field(default=None, alias="domainName")
    gam_object_reference: Optional[Any] = Field(default=None, alias="gamObjectReference")
    gam_parameter_name: str = Field(default=DEFAULT_GAM_PARAMETER, min_length=1, alias="gamParameterName")
    extra_params: Dict[str, Any] = Field(default_factory=dict, alias="extraParams")

    def black_list_text(self) -> str:
        bl = self.browser_black_list
        if isinstance(bl, list):
            return ",".join(str(x) for x in bl).lower()
        return (bl or "").lower()

    @classmethod
    def field_keys(cls, name: str) -> List[str]:
        f = cls.model_fields[name]
        return [name] + ([f.alias] if f.alias and f.alias != name else [])
