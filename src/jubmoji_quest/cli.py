from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any

import uvicorn

from .api import create_app
from .paths import discover_repo_root
from .service import QuestService


def _service() -> QuestService:
    repo_root = discover_repo_root()
    return QuestService.create(repo_root)


def _load_cards(path: str | None) -> list[dict[str, Any]]:
    if not path:
        return []
    payload = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = payload.get("cards", [])
    if not isinstance(payload, list):
        raise ValueError("cards file must hold a list of card records or {\"cards\": [...]}")
    return payload


def _print_overview(overview: dict[str, Any]) -> None:
    status = overview["status"]
    lock = "locked" if status["locked"] else "unlocked"
    print(f"{overview['name']} [{lock}] {status['num_cards_collected']}/{status['num_cards_total']}")
    glyphs = " ".join(item["glyph"] if item["collected"] else f"({item['glyph']})" for item in overview["collection"])
    if glyphs:
        print(f"  collect: {glyphs}")
    print(f"  powers: {overview['num_powers_completed']}/{overview['num_powers_total']} unlocked")
    for power in overview["powers"]:
        power_status = power["status"]
        marker = "x" if not power_status["locked"] else " "
        print(f"  [{marker}] {power['id']} :: {power['name']} ({power_status['num_cards_collected']}/{power_status['num_cards_total']})")
    if overview.get("end_date_label"):
        print(f"  {overview['end_date_label']}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Jubmoji quest engine CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    goals_cmd = sub.add_parser("goals", help="Goal catalog operations")
    goals_sub = goals_cmd.add_subparsers(dest="goals_command", required=True)
    goals_sub.add_parser("list", help="List quests and their powers")
    goals_show = goals_sub.add_parser("show", help="Show one quest or power")
    goals_show.add_argument("goal_id")
    goals_show.add_argument("--kind", default="quest", choices=["quest", "power"])

    status_cmd = sub.add_parser("status", help="Lock status of a goal for a set of owned cards")
    status_cmd.add_argument("goal_id")
    status_cmd.add_argument("--kind", default="quest", choices=["quest", "power"])
    status_cmd.add_argument("--cards", default=None, help="Path to JSON list of owned card records")

    overview_cmd = sub.add_parser("overview", help="Quest overview with power progress")
    overview_cmd.add_argument("quest_id")
    overview_cmd.add_argument("--cards", default=None, help="Path to JSON list of owned card records")
    overview_cmd.add_argument("--format", choices=["text", "json"], default="text")

    nullifiers_cmd = sub.add_parser("nullifiers", help="Spent signature bookkeeping")
    nullifiers_sub = nullifiers_cmd.add_subparsers(dest="nullifiers_command", required=True)
    nullifiers_show = nullifiers_sub.add_parser("show", help="Show spent signature counts")
    nullifiers_show.add_argument("--kind", default=None, choices=["quest", "power"])
    nullifiers_show.add_argument("--goal-id", default=None)

    qr_cmd = sub.add_parser("qr", help="Resolve an onboarding QR code id")
    qr_cmd.add_argument("scan_id")

    telemetry_cmd = sub.add_parser("telemetry", help="Telemetry operations")
    telemetry_sub = telemetry_cmd.add_subparsers(dest="telemetry_command", required=True)
    telemetry_export = telemetry_sub.add_parser("export", help="Export aggregated session summary")
    telemetry_export.add_argument("--range", default="7d", help="Range window like 7d or 24h")
    telemetry_export.add_argument("--out", default=None, help="Optional output JSON path")

    api_cmd = sub.add_parser("api", help="Run local API server")
    api_cmd.add_argument("--host", default="127.0.0.1")
    api_cmd.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()
    service = _service()

    if args.command == "goals":
        if args.goals_command == "list":
            for quest in service.list_goals():
                print(f"- {quest['id']} :: {quest['name']} ({quest['proof_type']})")
                for power in quest.get("powers", []):
                    print(f"    - {power['id']} :: {power['name']} ({power['proof_type']})")
            return 0
        if args.goals_command == "show":
            try:
                print(json.dumps(service.get_goal(args.kind, args.goal_id), indent=2, ensure_ascii=False))
            except KeyError as exc:
                print(str(exc))
                return 1
            return 0

    if args.command == "status":
        try:
            result = service.goal_status(args.kind, args.goal_id, _load_cards(args.cards))
        except KeyError as exc:
            print(str(exc))
            return 1
        print(json.dumps(result, indent=2, ensure_ascii=False))
        return 0

    if args.command == "overview":
        try:
            overview = service.quest_overview(args.quest_id, _load_cards(args.cards))
        except KeyError as exc:
            print(str(exc))
            return 1
        if args.format == "json":
            print(json.dumps(overview, indent=2, ensure_ascii=False))
        else:
            _print_overview(overview)
        return 0

    if args.command == "nullifiers" and args.nullifiers_command == "show":
        try:
            counts = service.get_nullifiers(args.kind, args.goal_id)
        except ValueError as exc:
            print(str(exc))
            return 1
        print(json.dumps(counts, indent=2))
        return 0

    if args.command == "qr":
        try:
            print(json.dumps(service.resolve_qr(args.scan_id), indent=2, ensure_ascii=False))
        except KeyError as exc:
            print(str(exc))
            return 1
        return 0

    if args.command == "telemetry" and args.telemetry_command == "export":
        summary = service.telemetry_export(args.range, Path(args.out) if args.out else None)
        print(json.dumps(summary, indent=2))
        return 0

    if args.command == "api":
        uvicorn.run(create_app(service), host=args.host, port=args.port)
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
