"""Command implementations for the relay CLI."""

import sys
from typing import Optional

from .client import RelayClient


def _unavailable() -> int:
    print("Error: relay server unavailable", file=sys.stderr)
    return 2


def cmd_send(
    client: RelayClient,
    channel_id: str,
    text: str,
    user_id: Optional[str] = None,
    credential_alias: Optional[str] = None,
) -> int:
    """
    Send a command to a channel.

    Exit codes:
        0: Delivered or queued
        1: Send failed
        2: Relay unavailable
    """
    data, success, unavailable = client.send_input(channel_id, text, user_id, credential_alias)
    if unavailable:
        return _unavailable()
    if not success:
        print(f"Error: failed to send to channel '{channel_id}'", file=sys.stderr)
        return 1

    status = (data or {}).get("status", "delivered")
    if status == "queued":
        print(f"Queued for {channel_id} (position {data.get('queue_position', '?')})")
    else:
        print(f"Sent to {channel_id}")
    return 0


def cmd_reset(client: RelayClient, channel_id: str) -> int:
    success, unavailable = client.reset(channel_id)
    if unavailable:
        return _unavailable()
    if not success:
        print(f"Error: channel '{channel_id}' not found", file=sys.stderr)
        return 1
    print(f"Conversation reset for {channel_id}")
    return 0


def cmd_interrupt(client: RelayClient, channel_id: str) -> int:
    success, unavailable = client.interrupt(channel_id)
    if unavailable:
        return _unavailable()
    if not success:
        print(f"Error: failed to interrupt '{channel_id}'", file=sys.stderr)
        return 1
    print(f"Interrupted {channel_id}")
    return 0


def cmd_approve(client: RelayClient, request_id: str, decision: str) -> int:
    """Deliver an approval decision (allow, allow_session or deny)."""
    success, unavailable = client.send_approval_response(request_id, decision)
    if unavailable:
        return _unavailable()
    if not success:
        print(f"Error: decision for '{request_id}' was rejected", file=sys.stderr)
        return 1
    print(f"{decision} -> {request_id}")
    return 0


def cmd_status(client: RelayClient, channel_id: Optional[str] = None, lines: int = 0) -> int:
    """Show one channel (optionally with output tail) or a summary of all channels."""
    if channel_id:
        channel = client.get_channel(channel_id)
        if channel is None:
            if client.health() is None:
                return _unavailable()
            print(f"Error: channel '{channel_id}' not found", file=sys.stderr)
            return 1
        state = "busy" if channel["busy"] else "idle"
        print(f"{channel['channel_id']}: {state}, {channel['queue_length']} queued")
        print(f"  resume id: {channel.get('resume_id') or '(new conversation)'}")
        print(f"  model: {channel.get('model_override') or '(default)'}")
        print(f"  process: {'pid ' + str(channel['pid']) if channel.get('has_process') else 'not running'}")
        if channel.get("pending_prompt"):
            prompt = channel["pending_prompt"]
            print(f"  prompt: {prompt['title']} {prompt['options']}")
        if lines > 0:
            output = client.get_output(channel_id, lines)
            if output:
                print(output)
        return 0

    channels = client.list_channels()
    if channels is None:
        return _unavailable()
    if not channels:
        print("No channels")
        return 0
    for channel in channels:
        state = "busy" if channel["busy"] else "idle"
        print(f"{channel['channel_id']}  {state}  queued={channel['queue_length']}")
    return 0
