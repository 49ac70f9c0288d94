from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError

from intentiq.core.config.io import read_json_file
from intentiq.core.config.models import ResolverSettings
from intentiq.core.errors import ConfigError
from intentiq.core.logger import get_logger


def load_settings(path: Optional[str] = None, *, logger: Optional[logging.Logger] = None) -> ResolverSettings:
    """
    Missing file -> defaults. A file that exists but is corrupt or fails
    validation is a hard error; nothing here guesses.
    """
    log = get_logger(logger)
    if not path:
        return ResolverSettings()
    rr = read_json_file(path)
    if not rr.ok:
        if rr.error == "missing":
            log.info(f"Settings file {path} missing; using defaults.")
            return ResolverSettings()
        raise ConfigError("Settings file is unreadable.", path=path, error=rr.error)
    try:
        return ResolverSettings.model_validate(rr.data)
    except ValidationError as e:
        raise ConfigError("Settings file is invalid.", path=path, errors=e.errors(include_url=False)) from e
