"""
Start the Admissions Workflow Engine API with uvicorn.

    python run.py                   # 127.0.0.1:8000
    python run.py --reload          # auto-reload while developing
    python run.py --no-scheduler    # API only, no outbox or sweep jobs
"""
import argparse
import os

import uvicorn


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Admissions Workflow Engine API server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--reload", action="store_true", help="Restart on code changes")
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Worker processes; ignored with --reload"
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Do not start background jobs in this process"
    )
    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    if args.no_scheduler:
        # Read by Settings when admissions.main is imported in the worker
        os.environ["SCHEDULER_ENABLED"] = "false"

    workers = 1 if args.reload else args.workers
    print(f"Admissions Workflow Engine on http://{args.host}:{args.port} (workers={workers}, reload={args.reload})")

    uvicorn.run(
        "admissions.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=workers
    )


if __name__ == "__main__":
    main()
