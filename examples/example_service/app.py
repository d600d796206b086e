from __future__ import annotations

import os
import random
import time

from fastapi import FastAPI, HTTPException


REVISION = os.getenv("REVISION", "dev")
FAIL_RATE = float(os.getenv("FAIL_RATE", "0"))  # 0..1

app = FastAPI(title=f"Example Workload {REVISION}")

APP_STATE = {"load": 0, "is_corrupted": False, "warming_up": False}


@app.get("/")
def read_root() -> dict[str, str]:
    if APP_STATE["is_corrupted"]:
        raise HTTPException(status_code=500, detail="DATA_ERR")
    return {"revision": REVISION, "load": f"%{APP_STATE['load']}"}


@app.get("/healthz")
def liveness() -> dict[str, str]:
    # Optional fault injection to demo self-healing / rollbacks.
    if FAIL_RATE > 0 and random.random() < FAIL_RATE:
        time.sleep(3)
    if APP_STATE["is_corrupted"]:
        raise HTTPException(status_code=503, detail="Corrupted")
    return {"status": "healthy", "revision": REVISION}


@app.get("/ready")
def readiness() -> dict[str, str]:
    if APP_STATE["warming_up"] or APP_STATE["load"] > 95:
        raise HTTPException(status_code=503, detail="Not ready")
    return {"status": "ready", "revision": REVISION}


@app.get("/metrics")
def metrics() -> dict[str, float]:
    return {"value": float(APP_STATE["load"])}


@app.post("/simulate/load/{level}")
def set_load(level: int) -> dict[str, str]:
    APP_STATE["load"] = max(0, level)
    return {"msg": f"load set to {APP_STATE['load']}%"}


@app.post("/simulate/warmup/{flag}")
def set_warmup(flag: bool) -> dict[str, str]:
    APP_STATE["warming_up"] = flag
    return {"msg": f"warming_up={flag}"}


@app.post("/simulate/corruption")
def corrupt() -> dict[str, str]:
    APP_STATE["is_corrupted"] = True
    return {"msg": "data corrupted"}


@app.post("/simulate/reset")
def reset() -> dict[str, str]:
    APP_STATE["load"] = 0
    APP_STATE["is_corrupted"] = False
    APP_STATE["warming_up"] = False
    return {"msg": "reset"}
