"""
Clawdbot CLI — entry point for the subagent core.

Usage:
    clawdbot serve                          # Start the control endpoint
    clawdbot status                         # Show gateway / control status
    clawdbot command -s KEY "/subagents"    # Run a chat command via the control endpoint
    clawdbot version                        # Show version
"""

from __future__ import annotations

import argparse
import logging
import sys


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="clawdbot",
        description="Clawdbot — spawn, steer and kill background subagent runs.",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")

    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the control endpoint")
    serve_parser.add_argument("--host", default=None, help="Bind address")
    serve_parser.add_argument("--port", type=int, default=None, help="Port")
    serve_parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    # status
    subparsers.add_parser("status", help="Show gateway and control endpoint status")

    # command
    cmd_parser = subparsers.add_parser("command", help="Run a /subagents-style chat command")
    cmd_parser.add_argument("--session", "-s", required=True, help="Requester session key")
    cmd_parser.add_argument("--sender", default=None, help="Sender id")
    cmd_parser.add_argument("text", nargs="+", help="Command text, e.g. /subagents list")

    # version
    subparsers.add_parser("version", help="Show version")

    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        from clawdbot import __version__

        print(f"clawdbot {__version__}")
        return 0

    if args.command == "serve":
        return _cmd_serve(args)
    elif args.command == "status":
        return _cmd_status(args)
    elif args.command == "command":
        return _cmd_command(args)
    else:
        parser.print_help()
        return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    import asyncio
    from dataclasses import replace

    from clawdbot.config import get_config
    from clawdbot.runtime import SubagentRuntime
    from clawdbot.server import serve_control

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    config = get_config()
    overrides: dict[str, object] = {}
    if args.host:
        overrides["control_host"] = args.host
    if args.port:
        overrides["control_port"] = args.port
    if overrides:
        config = replace(config, **overrides)

    async def _run() -> None:
        runtime = SubagentRuntime.build(config)
        await serve_control(config, runtime)

    print(f"Starting Clawdbot control endpoint on {config.control_host}:{config.control_port}...")
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        pass
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    import httpx

    from clawdbot import __version__
    from clawdbot.config import get_config

    cfg = get_config()
    print(f"Clawdbot v{__version__}")
    print()

    print(f"  Config:      {cfg.config_path}")
    print(f"               {'present' if cfg.config_path.exists() else 'missing (defaults)'}")
    print(f"  State dir:   {cfg.state_dir}")

    print(f"  Gateway:     {cfg.gateway_url}")
    try:
        resp = httpx.get(f"{cfg.gateway_url}/health", timeout=3)
        resp.raise_for_status()
        print("               Connected")
    except httpx.HTTPError as e:
        print(f"               UNREACHABLE — {e}")

    print(f"  Control:     {cfg.control_url}")
    try:
        resp = httpx.get(f"{cfg.control_url}/health", timeout=3)
        resp.raise_for_status()
        data = resp.json()
        print(
            f"               Healthy — {data.get('activeRuns', 0)} active / "
            f"{data.get('trackedRuns', 0)} tracked run(s)"
        )
    except (httpx.HTTPError, ValueError) as e:
        print(f"               UNREACHABLE — {e}")
    return 0


def _cmd_command(args: argparse.Namespace) -> int:
    import httpx

    from clawdbot.config import get_config

    cfg = get_config()
    headers = {"Authorization": f"Bearer {cfg.control_token}"} if cfg.control_token else {}
    body = {
        "sessionKey": args.session,
        "command": " ".join(args.text),
        "senderId": args.sender,
    }
    try:
        resp = httpx.post(f"{cfg.control_url}/commands", json=body, headers=headers, timeout=60)
        resp.raise_for_status()
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        print(f"Error: control endpoint unreachable — {e}")
        return 1

    if not data.get("handled"):
        print("Not a subagent command.")
        return 1
    reply = data.get("reply") or {}
    text = reply.get("text") if isinstance(reply, dict) else None
    if text:
        print(text)
    return 0


if __name__ == "__main__":
    sys.exit(main())
