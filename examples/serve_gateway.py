"""Run the credential-injecting gateway.

Usage:
    GEMINI_API_KEY=... uv run examples/serve_gateway.py --port 8000
"""

import argparse
import logging

import uvicorn

from tutorchat.config import GatewaySettings
from tutorchat.gateway import create_app


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--model", default=None)
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s:%(name)s:%(levelname)s:%(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    settings = GatewaySettings.from_env()
    if args.model:
        settings = settings.model_copy(update={"model": args.model})
    if not settings.api_key:
        logging.getLogger(__name__).warning(
            "GEMINI_API_KEY is not set; every request will fail with HTTP 500"
        )
    uvicorn.run(create_app(settings), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
