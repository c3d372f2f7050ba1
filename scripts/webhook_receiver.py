#!/usr/bin/env python3
"""Local stand-in for the scoring webhook.

Point ANALYSIS_WEBHOOK_URL at http://localhost:5678/webhook/score and run this
script to see exactly what the backend sends. Payloads that do not look like
analysis thread batches are rejected with a 422.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import uvicorn
from fastapi import FastAPI

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from message_analyzer_web.models import AnalysisThreadPayload

logger = logging.getLogger("webhook_receiver")

app = FastAPI(title="Analysis Webhook Receiver", version="0.1.0")


@app.post("/webhook/score")
def receive(threads: list[AnalysisThreadPayload]) -> dict:
    for thread in threads:
        logger.info(
            "thread %s (%s / %s): %d messages, responded=%s, avg_response_time=%s",
            thread.thread_id,
            thread.operator,
            thread.model,
            len(thread.messages),
            thread.responded,
            thread.avg_response_time,
        )
    return {"received": len(threads)}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a local receiver for analysis webhook payloads.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=5678)
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
