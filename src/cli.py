#!/usr/bin/env python3
"""
LunarScry Command Line Interface.

Commands:
    - serve: Start the moderation API server
    - check: Verify installation and configuration
    - info: Display configuration and storage information
    - fingerprint: Print the content fingerprint of a file (or stdin)

Usage:
    lunarscry serve [--host HOST] [--port PORT] [--debug]
    lunarscry check
    lunarscry info
    lunarscry fingerprint FILE|-
    lunarscry --version
"""

import argparse
import os
import platform
import sys

from dotenv import load_dotenv

__version__ = "0.1.0"


def cmd_serve(args):
    """Start the LunarScry API server."""
    from api import create_app
    from monitoring import configure_logging

    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    host = args.host or os.getenv("HOST", "0.0.0.0")
    port = args.port or int(os.getenv("PORT", 5000))
    debug = args.debug or os.getenv("FLASK_DEBUG", "").lower() == "true"

    print(f"\n{'=' * 60}")
    print("LunarScry Moderation API")
    print(f"{'=' * 60}")
    print(f"Listening on: http://{host}:{port}")
    print(f"Storage: {os.getenv('STORAGE_BACKEND', 'json')}")
    print(f"AI scoring: {'Enabled' if os.getenv('ANTHROPIC_API_KEY') else 'Disabled (external scorers only)'}")
    print(f"{'=' * 60}\n")

    app = create_app()
    app.run(host=host, port=port, debug=debug)
    return 0


def cmd_check(args):
    """Check installation and configuration."""
    from moderation_config import ModerationConfig
    from moderation_exceptions import InvalidConfigurationError
    from scaling import get_lock_manager
    from storage import StorageError, get_storage_backend

    print("LunarScry Installation Check")
    print("=" * 40)

    checks = []

    try:
        config = ModerationConfig.from_env()
        checks.append((f"Configuration (threshold {config.ai_score_threshold}, window {config.voting_window_seconds}s)", "OK"))
    except InvalidConfigurationError as e:
        checks.append(("Configuration", f"FAIL: {e.message}"))

    try:
        storage = get_storage_backend()
        status = "OK" if storage.is_available() else "WARN (not available)"
        checks.append((f"Storage ({storage.__class__.__name__})", status))
    except StorageError as e:
        checks.append(("Storage", f"FAIL: {e}"))

    checks.append((f"Locks ({get_lock_manager().__class__.__name__})", "OK"))

    if os.getenv("ANTHROPIC_API_KEY"):
        checks.append(("AI scorer (Anthropic)", "OK"))
    else:
        checks.append(("AI scorer (Anthropic)", "SKIP (ANTHROPIC_API_KEY not set)"))

    if os.getenv("LUNARSCRY_REQUIRE_AUTH", "true").lower() == "true" and not os.getenv("LUNARSCRY_API_KEY"):
        checks.append(("API authentication", "FAIL: LUNARSCRY_API_KEY not set"))
    else:
        checks.append(("API authentication", "OK"))

    print()
    all_ok = True
    for name, status in checks:
        icon = "✓" if status == "OK" else ("○" if "SKIP" in status or "WARN" in status else "✗")
        print(f"  {icon} {name}: {status}")
        if "FAIL" in status:
            all_ok = False

    print()
    if all_ok:
        print("All checks passed!")
        return 0
    print("Some checks failed. See above for details.")
    return 1


def cmd_info(args):
    """Display system information."""
    from moderation_config import PROTOCOL_VERSION
    from storage import StorageError, get_storage_backend

    print("LunarScry System Information")
    print("=" * 40)
    print(f"Version: {__version__} (protocol v{PROTOCOL_VERSION})")
    print(f"Python: {platform.python_version()}")
    print(f"Platform: {platform.platform()}")

    print()
    print("Configuration:")
    print(f"  STORAGE_BACKEND: {os.getenv('STORAGE_BACKEND', 'json (default)')}")
    print(f"  MODERATION_STATE_FILE: {os.getenv('MODERATION_STATE_FILE', 'moderation_state.json (default)')}")
    print(f"  LUNARSCRY_REQUIRE_SIGNATURES: {os.getenv('LUNARSCRY_REQUIRE_SIGNATURES', 'true (default)')}")
    print(f"  LOG_LEVEL: {os.getenv('LOG_LEVEL', 'INFO (default)')}")
    print(f"  LOG_FORMAT: {os.getenv('LOG_FORMAT', 'console (default)')}")

    print()
    print("Storage:")
    try:
        for key, value in get_storage_backend().get_info().items():
            print(f"  {key}: {value}")
    except StorageError as e:
        print(f"  Error: {e}")
        return 1
    return 0


def cmd_fingerprint(args):
    """Print the SHA-256 fingerprint used to register content."""
    from content_registry import compute_fingerprint

    if args.path == "-":
        data = sys.stdin.buffer.read()
    else:
        try:
            with open(args.path, "rb") as f:
                data = f.read()
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    print(compute_fingerprint(data))
    return 0


def main():
    """Main CLI entry point."""
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="lunarscry",
        description="LunarScry - community content moderation protocol",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", help="Host to bind to (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: 5000)")
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    subparsers.add_parser("check", help="Check installation and configuration")
    subparsers.add_parser("info", help="Display system information")

    fingerprint_parser = subparsers.add_parser("fingerprint", help="Fingerprint a content file")
    fingerprint_parser.add_argument("path", help="File to fingerprint, or - for stdin")

    args = parser.parse_args()

    commands = {
        "serve": cmd_serve,
        "check": cmd_check,
        "info": cmd_info,
        "fingerprint": cmd_fingerprint,
    }
    if args.command not in commands:
        parser.print_help()
        sys.exit(1)
    sys.exit(commands[args.command](args))


if __name__ == "__main__":
    main()
