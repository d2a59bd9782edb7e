from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from trustloop.core.config import Settings
from trustloop.core.wiring import build_services, seed_services
from trustloop.policy.engine import AccessContext
from trustloop.policy.rules import catalog_summary, default_catalog, load_catalog
from trustloop.risk.schema import BehaviorMetrics, RiskFactors

log = logging.getLogger("trustloop.cli")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="trustloop", description="trustloop CLI")
    p.add_argument("--log-level", default=None, help="Override TRUSTLOOP_LOG_LEVEL")
    sub = p.add_subparsers(dest="command", required=True)

    score = sub.add_parser("score", help="Risk factors JSON -> risk score")
    score.add_argument("--input", required=True, help="JSON file with user_id, ip_address, device_id, resource_id, ...")
    score.add_argument("--state", help="JSON file seeding devices/resources/behavior/networks")

    decide = sub.add_parser("decide", help="Access request JSON -> policy decision")
    decide.add_argument("--input", required=True, help="JSON file with the access request")
    decide.add_argument("--state", help="JSON file seeding devices/resources/behavior/networks")
    decide.add_argument("--rules", help="Rule catalog JSON (default: built-in catalog)")
    decide.add_argument("--audit", help="Append audit records to this JSONL file")

    rules = sub.add_parser("rules", help="Validate and list a rule catalog")
    rules.add_argument("--rules", help="Rule catalog JSON (default: built-in catalog)")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8080)

    return p


def _read_json(path: str) -> Dict[str, Any]:
    doc = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(doc, dict):
        raise SystemExit(f"{path}: expected a JSON object")
    return doc


def _parse_ts(raw: Optional[str]) -> datetime:
    if not raw:
        return datetime.now(timezone.utc)
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return datetime.fromisoformat(raw)


def _behavior(doc: Dict[str, Any]) -> Optional[BehaviorMetrics]:
    raw = doc.get("behavior")
    return BehaviorMetrics(**raw) if raw else None


def _require(doc: Dict[str, Any], *keys: str) -> None:
    missing = [k for k in keys if not doc.get(k)]
    if missing:
        raise SystemExit(f"input is missing required fields: {missing}")


def cmd_score(args, settings: Settings) -> int:
    doc = _read_json(args.input)
    _require(doc, "user_id", "ip_address", "device_id", "resource_id")
    svc = build_services(settings)
    if args.state:
        seed_services(svc, _read_json(args.state))

    factors = RiskFactors(
        user_id=doc["user_id"],
        ip_address=doc["ip_address"],
        device_id=doc["device_id"],
        timestamp=_parse_ts(doc.get("timestamp")),
        resource_id=doc["resource_id"],
        behavior=_behavior(doc),
        timezone=doc.get("timezone", "UTC"),
    )
    try:
        score = asyncio.run(svc.risk.evaluate(factors))
    finally:
        svc.close()
    print(json.dumps(score.to_dict(), indent=2))
    return 0


def cmd_decide(args, settings: Settings) -> int:
    doc = _read_json(args.input)
    _require(doc, "user_id", "ip_address", "device_id", "resource_id")
    settings = replace(settings, rules_path=args.rules or settings.rules_path, audit_path=args.audit or settings.audit_path)
    svc = build_services(settings)
    if args.state:
        seed_services(svc, _read_json(args.state))

    ctx = AccessContext(
        user_id=doc["user_id"],
        resource_id=doc["resource_id"],
        device_id=doc["device_id"],
        ip_address=doc["ip_address"],
        timestamp=_parse_ts(doc.get("timestamp")),
        action=doc.get("action", "access"),
        timezone=doc.get("timezone", "UTC"),
        behavior=_behavior(doc),
    )
    try:
        outcome = asyncio.run(svc.facade.enforce(ctx))
    finally:
        svc.close()

    out = {"ok": outcome.ok, "decision": outcome.value.to_dict() if outcome.value else None}
    if not outcome.ok:
        out["error"] = outcome.to_dict()["error"]
    print(json.dumps(out, indent=2))
    return 0 if outcome.ok else 3


def cmd_rules(args, settings: Settings) -> int:
    path = args.rules or settings.rules_path
    try:
        catalog = load_catalog(path) if path else default_catalog()
    except ValueError as e:
        print(json.dumps({"ok": False, "error": str(e)}, indent=2))
        return 2
    print(json.dumps({"ok": True, "version": catalog.version, "rules": catalog_summary(catalog)}, indent=2))
    return 0


def cmd_serve(args, settings: Settings) -> int:
    import uvicorn

    from trustloop.api.app import create_app

    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_level=settings.log_level.lower())
    return 0


COMMANDS = {
    "score": cmd_score,
    "decide": cmd_decide,
    "rules": cmd_rules,
    "serve": cmd_serve,
}


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    if args.log_level:
        settings = replace(settings, log_level=args.log_level.upper())
    logging.basicConfig(level=settings.log_level)

    handler = COMMANDS.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")
    return handler(args, settings)


if __name__ == "__main__":
    raise SystemExit(main())
