from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict, List

from intentiq.core.config import load_settings
from intentiq.core.consent import ConsentSources
from intentiq.core.environment import BrowserEnvironment
from intentiq.core.errors import ConfigError
from intentiq.core.identity import IntentIqIdResolver
from intentiq.core.logger import setup_logging


def main(argv: List[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="Run one IntentIQ id resolution and print the delivered identity.")
    ap.add_argument("--partner", type=int, required=True)
    ap.add_argument("--settings", default="config/intentiq.json")
    ap.add_argument("--storage", action="append", default=None, help="durable|cookie (repeatable)")
    ap.add_argument("--timeout-ms", type=int, default=500)
    ap.add_argument("--user-agent", default="")
    ap.add_argument("--page-url", default=None)
    ap.add_argument("--us-privacy", default=None)
    ap.add_argument("--gpp", default=None)
    ap.add_argument("--wait", type=float, default=15.0, help="seconds to wait for delivery")
    args = ap.parse_args(argv)

    try:
        settings = load_settings(args.settings)
    except ConfigError as e:
        print(json.dumps(e.to_dict(), indent=2), file=sys.stderr)
        return 2
    logger = setup_logging(settings.log_dir)

    env = BrowserEnvironment(
        user_agent=args.user_agent,
        page_url=args.page_url,
        consent=ConsentSources(
            us_privacy=(lambda: args.us_privacy) if args.us_privacy else None,
            gpp=(lambda: {"gppString": args.gpp, "gpi": 1}) if args.gpp else None,
        ),
    )
    resolver = IntentIqIdResolver(settings=settings, environment=env, logger=logger)

    delivered: Dict[str, Any] = {}

    def _callback(identity: Any, group: str) -> None:
        delivered.update({"identity": identity, "group": group})

    resp = resolver.resolve(
        {
            "partner": args.partner,
            "callback": _callback,
            "timeoutInMillis": args.timeout_ms,
            "enabledStorageTypes": args.storage or ["durable"],
        }
    )
    if resp is not None and resp.callback is not None:
        resp.callback(block=True)
    resolver.wait_for_probes(timeout=args.wait)
    print(json.dumps(delivered, indent=2, sort_keys=True, default=str))
    return 0 if delivered else 1


if __name__ == "__main__":
    raise SystemExit(main())
