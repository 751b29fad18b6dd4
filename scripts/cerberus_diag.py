"""Cerberus MCP diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import dataclass

from cerberus_mcp.config import CerberusSettings
from cerberus_mcp.errors import CerberusError
from cerberus_mcp.pipeline import PipelineLoader
from cerberus_mcp.state import AuditLog, Reconciler, SessionMutex, SessionStore


@dataclass(slots=True)
class StateHandles:
    audit: AuditLog
    store: SessionStore
    reconciler: Reconciler


def load_state(settings: CerberusSettings) -> StateHandles:
    try:
        pipeline = PipelineLoader(settings.pipeline_path).load()
    except CerberusError as exc:
        print(f"Pipeline unavailable: {exc}")
        raise SystemExit(1)
    audit = AuditLog(settings.state_dir / "audit")
    store = SessionStore(settings.state_dir / "sessions", SessionMutex(settings.lock_timeout))
    return StateHandles(audit=audit, store=store, reconciler=Reconciler(audit, store, pipeline))


def cmd_sessions(args: argparse.Namespace) -> None:
    state = load_state(CerberusSettings())
    ids = sorted(set(state.audit.list_sessions()) | set(state.store.list_sessions()))
    rows = []
    for session_id in ids:
        try:
            session = state.reconciler.project(session_id)
        except CerberusError as exc:
            rows.append({"id": session_id, "error": str(exc)})
            continue
        rows.append(
            {
                "id": session.id,
                "web_url": session.web_url,
                "status": session.status.value,
                "current_phase": session.current_phase,
                "store_in_sync": state.store.read_bytes(session_id) == state.store.render(session),
            }
        )
    if args.json:
        print(json.dumps(rows, indent=2))
    else:
        for row in rows:
            if "error" in row:
                print(f"{row['id']} [error] {row['error']}")
            else:
                print(f"{row['id']} [{row['status']}] phase={row['current_phase']} -> {row['web_url']}")


def cmd_status(args: argparse.Namespace) -> None:
    state = load_state(CerberusSettings())
    try:
        session = state.reconciler.project(args.session_id)
    except CerberusError as exc:
        print(f"Cannot project session: {exc}")
        raise SystemExit(1)
    print(json.dumps(session.model_dump(mode="json"), indent=2))


def cmd_audit(args: argparse.Namespace) -> None:
    state = load_state(CerberusSettings())
    if not state.audit.exists(args.session_id):
        print(f"No audit log for session {args.session_id}")
        raise SystemExit(1)
    try:
        events = list(state.audit.read_all(args.session_id))
    except CerberusError as exc:
        print(f"Audit log unreadable: {exc}")
        raise SystemExit(1)

    if args.agent:
        events = [event for event in events if event.agent == args.agent]
    if args.kind:
        events = [event for event in events if event.kind.value == args.kind]
    if args.limit is not None and args.limit > 0:
        events = events[-args.limit :]

    payload = [
        {
            "kind": event.kind.value,
            "agent": event.agent,
            "timestamp": event.timestamp,
            "payload": event.payload,
        }
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def cmd_reconcile(args: argparse.Namespace) -> None:
    state = load_state(CerberusSettings())
    if args.all:
        ids = sorted(set(state.audit.list_sessions()) | set(state.store.list_sessions()))
    elif args.session_id:
        ids = [args.session_id]
    else:
        print("Provide a session id or --all")
        raise SystemExit(2)

    async def _reconcile_all() -> list[dict[str, object]]:
        results = []
        for session_id in ids:
            try:
                session, changed = await state.reconciler.reconcile(session_id)
            except CerberusError as exc:
                results.append({"id": session_id, "error": str(exc)})
                continue
            results.append({"id": session_id, "status": session.status.value, "changed": changed})
        return results

    results = asyncio.run(_reconcile_all())
    print(json.dumps(results, indent=2))
    if any("error" in result for result in results):
        raise SystemExit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cerberus MCP diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_sessions = sub.add_parser("sessions", help="List sessions projected from the audit logs")
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.set_defaults(func=cmd_sessions)

    p_status = sub.add_parser("status", help="Show a session projection without writing it")
    p_status.add_argument("session_id")
    p_status.set_defaults(func=cmd_status)

    p_audit = sub.add_parser("audit", help="Dump audit events for a session")
    p_audit.add_argument("session_id")
    p_audit.add_argument("--agent")
    p_audit.add_argument("--kind")
    p_audit.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N events",
    )
    p_audit.set_defaults(func=cmd_audit)

    p_reconcile = sub.add_parser("reconcile", help="Rewrite session stores from their audit logs")
    p_reconcile.add_argument("session_id", nargs="?")
    p_reconcile.add_argument("--all", action="store_true", help="Reconcile every known session")
    p_reconcile.set_defaults(func=cmd_reconcile)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
