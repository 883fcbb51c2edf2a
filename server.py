# server.py
import argparse
import os

from procura.webhook_server import start_server


def parse_args():
    parser = argparse.ArgumentParser(description="Run the Procura campaign server.")
    parser.add_argument(
        "--host",
        type=str,
        default=os.getenv("PROCURA_HOST", "127.0.0.1"),
        help="Interface to bind to.",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PROCURA_PORT", "8080")),
        help="Port to bind to.",
    )
    return parser.parse_args()


if __name__ == "__main__":
    args = parse_args()
    start_server(host=args.host, port=args.port)
