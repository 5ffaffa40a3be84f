"""
Run ClickGuard Server

Helper script to start the FastAPI scoring API.

Usage:
    python scripts/run_server.py [--host HOST] [--port PORT] [--db PATH]
"""

import argparse

import uvicorn
from dotenv import load_dotenv

load_dotenv()

from clickguard.config import config


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Start the ClickGuard scoring API")
    parser.add_argument("--host", default=config.host)
    parser.add_argument("--port", type=int, default=config.port)
    parser.add_argument("--db", default=config.db_path, help="SQLite path (default: in-memory)")
    return parser.parse_args()


def main():
    """Start the API server."""
    args = parse_args()

    # The server module builds its store from config when uvicorn imports it
    config.db_path = args.db

    durable = config.db_path != ":memory:"
    vpn_mode = "IPHub provider" if config.vpn_api_key else "keyword heuristic"

    print("=" * 60)
    print("  ClickGuard Fraud Scoring API")
    print("=" * 60)
    print(f"\n🌐 Service will run at: http://{args.host}:{args.port}")
    print(f"📊 API docs available at: http://{args.host}:{args.port}/docs")
    print(f"💾 Click store: {config.db_path}" + ("" if durable else " (data is lost on exit)"))
    print(f"🛡️  VPN/Tor classification: {vpn_mode}")
    print(f"🔔 Alert webhook: {config.webhook_url or 'disabled'}")
    print("\nPress Ctrl+C to stop\n")

    uvicorn.run(
        "clickguard.server:app",
        host=args.host,
        port=args.port,
        reload=False,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
