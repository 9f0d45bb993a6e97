# backend.py
"""
Demo backend instance, spawned by the process registry.

Usage: python -m sticky_gate.backend <port>
"""
import os
import sys

import uvicorn
from fastapi import FastAPI, Request
from pydantic import BaseModel

from .sharding import STICKY_COOKIE

INSTANCE_NAME = os.getenv("INSTANCE_NAME", "instance-unknown")
PROCESS_ID = os.getpid()

app = FastAPI(title="Sticky backend")

request_counter = 0


class InstanceInfo(BaseModel):
    instance: str
    process_id: int
    requests_seen_by_this_instance: int


@app.get("/", response_model=InstanceInfo)
async def root():
    global request_counter
    request_counter += 1
    return InstanceInfo(
        instance=INSTANCE_NAME,
        process_id=PROCESS_ID,
        requests_seen_by_this_instance=request_counter,
    )


@app.get("/hello")
async def hello(request: Request):
    """Echo the shard cookie this instance was reached with."""
    return {
        "instance": INSTANCE_NAME,
        "shard_cookie_seen_by_backend": request.cookies.get(STICKY_COOKIE, "no-cookie"),
    }


def run_backend(port: int):
    print(f"[backend] Starting {INSTANCE_NAME} on port {port}")
    uvicorn.run(app, host="127.0.0.1", port=port, log_level="warning")


if __name__ == "__main__":
    port = int(sys.argv[1]) if len(sys.argv) >= 2 else int(os.getenv("PORT", "8081"))
    run_backend(port)
