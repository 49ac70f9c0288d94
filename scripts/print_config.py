from __future__ import annotations

import json
import sys

from intentiq.core.config import load_settings


def main() -> None:
    path = sys.argv[1] if len(sys.argv) > 1 else "config/intentiq.json"
    settings = load_settings(path)
    print(json.dumps(settings.model_dump(), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
