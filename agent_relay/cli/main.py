"""Main entry point for the relay CLI tool."""

import argparse
import sys

from .client import RelayClient
from . import commands


def main():
    """Main entry point for relay CLI."""
    parser = argparse.ArgumentParser(
        prog="relay",
        description="Agent relay - drive per-channel agent sessions",
    )
    parser.add_argument("--api-url", help="Relay server URL (default: $RELAY_API_URL or http://127.0.0.1:8420)")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    serve_parser = subparsers.add_parser("serve", help="Run the relay server")
    serve_parser.add_argument("--config", default="config.yaml", help="Path to config file")

    send_parser = subparsers.add_parser("send", help="Send a command to a channel")
    send_parser.add_argument("channel_id", help="Target channel ID")
    send_parser.add_argument("text", help="Text for the agent")
    send_parser.add_argument("--user", dest="user_id", help="User whose credential to use")
    send_parser.add_argument("--credential", dest="credential_alias", help="Credential alias to use")

    reset_parser = subparsers.add_parser("reset", help="Start a fresh conversation on a channel")
    reset_parser.add_argument("channel_id", help="Target channel ID")

    interrupt_parser = subparsers.add_parser("interrupt", help="Stop the running command and drop the queue")
    interrupt_parser.add_argument("channel_id", help="Target channel ID")

    approve_parser = subparsers.add_parser("approve", help="Answer a pending approval request")
    approve_parser.add_argument("request_id", help="Approval request ID")
    approve_parser.add_argument(
        "decision",
        nargs="?",
        default="allow",
        choices=["allow", "allow_session", "deny"],
        help="Decision (default: allow)",
    )

    status_parser = subparsers.add_parser("status", help="Show channel status")
    status_parser.add_argument("channel_id", nargs="?", help="Channel ID (default: all channels)")
    status_parser.add_argument("-n", "--lines", type=int, default=0, help="Also show N recent output chunks")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        from ..main import run
        run(args.config)
        return

    client = RelayClient(args.api_url)

    if args.command == "send":
        sys.exit(commands.cmd_send(client, args.channel_id, args.text, args.user_id, args.credential_alias))
    elif args.command == "reset":
        sys.exit(commands.cmd_reset(client, args.channel_id))
    elif args.command == "interrupt":
        sys.exit(commands.cmd_interrupt(client, args.channel_id))
    elif args.command == "approve":
        sys.exit(commands.cmd_approve(client, args.request_id, args.decision))
    elif args.command == "status":
        sys.exit(commands.cmd_status(client, args.channel_id, args.lines))


if __name__ == "__main__":
    main()
