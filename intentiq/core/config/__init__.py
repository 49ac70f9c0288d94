from __future__ import annotations

from intentiq.core.config.loader import load_settings
from intentiq.core.config.models import PartnerConfig, ResolverSettings

__all__ = ["PartnerConfig", "ResolverSettings", "load_settings"]
