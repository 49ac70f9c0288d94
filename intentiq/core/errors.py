from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from intentiq.core.redaction import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class IntentIqError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def __str__(self) -> str:
        return f"{self.code}: {self.user_message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


# ---- configuration ----
class ConfigError(IntentIqError):
    def __init__(self, user_message: str = "Configuration error.", **ctx: Any):
        super().__init__("config_error", user_message, severity=Severity.ERROR, recoverable=False, context=ctx)


class BlacklistedBrowserError(IntentIqError):
    def __init__(self, user_message: str = "Browser is in blacklist.", **ctx: Any):
        super().__init__("browser_blacklisted", user_message, severity=Severity.WARN, recoverable=False, context=ctx)


# ---- storage ----
class StorageError(IntentIqError):
    def __init__(self, user_message: str = "Storage backend unavailable.", **ctx: Any):
        super().__init__("storage_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class StorageQuotaError(StorageError):
    def __init__(self, user_message: str = "Storage quota exceeded.", **ctx: Any):
        super().__init__(user_message, **ctx)
        self.code = "storage_quota_exceeded"


# ---- decoding ----
class DecodeError(IntentIqError):
    def __init__(self, user_message: str = "Unable to decode stored data.", **ctx: Any):
        super().__init__("decode_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


# ---- transport ----
class TransportError(IntentIqError):
    def __init__(self, user_message: str = "ID fetch encountered an error.", **ctx: Any):
        super().__init__("transport_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)
