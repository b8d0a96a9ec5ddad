#!/usr/bin/env python3
"""
Exemplo de aplicação FastAPI instrumentada com Treblle.

Credenciais e opções vêm do ambiente (TREBLLE_API_KEY, TREBLLE_PROJECT_ID...)
ou do arquivo YAML apontado por TREBLLE_CONFIG_PATH.

    TREBLLE_API_KEY=... TREBLLE_PROJECT_ID=... python examples/fastapi_app.py
"""

import asyncio
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from treblle import Treblle, config_manager, install

logger = structlog.get_logger(__name__)

config_manager.configure_logging()
treblle = Treblle.from_settings(config_manager.settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Aguardar envios pendentes antes de encerrar
    await treblle.wait_closed()
    logger.info("Envios pendentes concluídos", stats=treblle.get_stats())


app = FastAPI(title="Treblle Example", lifespan=lifespan)

USERS = {1: {"id": 1, "name": "Ana"}}


@app.post("/users")
async def create_user(request: Request):
    data = await request.json()
    user = {"id": len(USERS) + 1, "name": data.get("name")}
    USERS[user["id"]] = user
    return user


@app.get("/users/{user_id}")
async def get_user(user_id: int):
    if user_id not in USERS:
        raise HTTPException(status_code=404, detail="Usuário não encontrado")
    return USERS[user_id]


@app.get("/slow")
async def slow():
    await asyncio.sleep(0.2)
    return {"done": True}


@app.get("/crash")
async def crash():
    raise RuntimeError("Falha simulada")


@app.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


install(app, treblle=treblle)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level=config_manager.settings.log_level.lower())
