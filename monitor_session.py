#!/usr/bin/env python3
"""
Session Status Monitor
Simple script to watch the screen-sharing session phase and connection health
"""

import os
import requests
import time
from datetime import datetime


def get_session_status(base_url="http://localhost:8104"):
    """Get session status from the service."""
    try:
        response = requests.get(f"{base_url}/session/status", timeout=5)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        return {"error": str(e), "phase": "unreachable"}


def yes_no(value):
    return "Yes" if value else "No"


def print_status(status):
    """Print formatted status information."""
    print(f"\n{'='*60}")
    print(f"Session Status - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"{'='*60}")

    if "error" in status:
        print(f"❌ Error: {status['error']}")
        return

    phase = status.get("phase", "unknown")
    phase_emoji = {
        "idle": "💤",
        "initializing": "⚙️",
        "offerCreated": "📋",
        "waitingForAnswer": "⏳",
        "answerCreated": "📋",
        "connecting": "🔄",
        "connected": "✅",
        "disconnected": "❌",
        "error": "💥",
    }.get(phase, "❓")

    print(f"{phase_emoji} Phase: {phase}")
    print(f"👤 Role: {status.get('role') or '-'} ({status.get('username') or '-'})")
    if not status.get("active"):
        return

    print(f"🧊 ICE State: {status.get('ice_connection_state')}")
    print(f"🔗 Connection State: {status.get('connection_state')}")
    print(f"🎤 Microphone: {yes_no(status.get('microphone_active'))}")
    print(f"🖥  Display Capture: {yes_no(status.get('display_active'))}")
    print(f"🖱  Cursors: {yes_no(status.get('cursors_enabled'))} (channels ready: {yes_no(status.get('cursor_channels_ready'))})")

    if status.get("last_error"):
        print(f"⚠️  Last Error: {status['last_error']}")


def main():
    """Main monitoring loop."""
    base_url = os.getenv("SERVICE_URL", "http://localhost:8104")
    print("🖥  Session Status Monitor")
    print("Press Ctrl+C to stop")

    try:
        while True:
            status = get_session_status(base_url)
            print_status(status)

            # Wait before next check
            time.sleep(10)

    except KeyboardInterrupt:
        print("\n👋 Monitor stopped")


if __name__ == "__main__":
    main()
