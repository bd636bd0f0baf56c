"""
Payment service launcher.

Usage:
    python run.py
    python run.py --port 8000 --reload
"""
import argparse

import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Gymnastics school payment service")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable hot reload for development")
    parser.add_argument("--workers", type=int, default=1, help="Number of workers (default: 1)")
    args = parser.parse_args()

    uvicorn.run(
        "gympay.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=args.workers,
    )


if __name__ == "__main__":
    main()
