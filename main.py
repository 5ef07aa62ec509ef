"""ChatGroup — dev launcher. Starts the API server."""

import argparse
from pathlib import Path

import uvicorn

from chatgroup.config import Settings
from chatgroup.llm import EchoLLM
from chatgroup.logging_config import setup_logging


def main():
    settings = Settings.from_env()

    parser = argparse.ArgumentParser(description="ChatGroup dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help=f"Room storage directory (default: {settings.data_dir})")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--echo", action="store_true",
                        help="Use the echo model instead of Gemini (no API key needed)")
    parser.add_argument("--log-file", type=Path, default=None,
                        help="Also write logs to this rotating file")
    args = parser.parse_args()

    setup_logging(settings.log_level, args.log_file)

    from backend.app import create_app
    app = create_app(
        data_dir=args.data_dir,
        llm=EchoLLM() if args.echo else None,
        settings=settings,
    )

    print(f"Starting backend on http://localhost:{args.port} ...")
    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
