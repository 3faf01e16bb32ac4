import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from . import config
from .errors import ExecutionNotFound, WorkflowValidationError
from .execution import TaskExecutor, WorkflowScheduler
from .gateway import ProviderGateway
from .service import ExecutionService
from .storage import build_store


def build_service(store, http_client: httpx.AsyncClient) -> ExecutionService:
    gateway = ProviderGateway(http_client)
    executor = TaskExecutor(store, gateway)
    scheduler = WorkflowScheduler(store, executor)
    return ExecutionService(store, scheduler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global store, http_client, service
    logger.info("Workflow engine starting up...")
    if store is None:
        store = build_store()
        logger.info("Using %s execution store", config.STORE_BACKEND)
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=httpx.Timeout(config.PROVIDER_TIMEOUT_SECS))
    if service is None:
        service = build_service(store, http_client)
    try:
        yield
    finally:
        if service is not None:
            try:
                await service.shutdown()
            except Exception:
                logger.exception("Error cancelling running executions")
        if store is not None:
            try:
                await store.close()
            except Exception:
                logger.warning("Error closing execution store", exc_info=True)
        if http_client is not None:
            try:
                await http_client.aclose()
            except Exception:
                logger.warning("Error closing HTTP client", exc_info=True)
        logger.info("Workflow engine shut down.")


app = FastAPI(title="Workflow Execution Engine", lifespan=lifespan)
store = None
http_client = None
service: Optional[ExecutionService] = None
logger = logging.getLogger("workflow_engine")
logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO), format="%(asctime)s %(levelname)s %(message)s")


@app.get("/health")
async def health():
    return {"ok": True, "service": "workflow-engine", "running": service.running_count if service else 0}


@app.post("/v1/executions", status_code=202)
async def create_execution(request: Request):
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail={"message": "Invalid JSON body", "problems": ["body is not valid JSON"]})
    try:
        result = await service.submit(body)
    except WorkflowValidationError as e:
        raise HTTPException(status_code=400, detail={"message": "Invalid workflow", "problems": e.problems})
    payload = result.to_dict()
    payload["message"] = "Workflow execution started"
    return JSONResponse(status_code=202, content=payload)


@app.get("/v1/executions")
async def list_executions(limit: Optional[int] = None):
    if limit is not None and limit < 0:
        raise HTTPException(status_code=400, detail="limit must be non-negative")
    executions = await service.list_executions(limit)
    return {"executions": [e.to_dict() for e in executions]}


@app.get("/v1/executions/{execution_id}")
async def get_execution(execution_id: str):
    try:
        view = await service.get_execution(execution_id)
    except ExecutionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return view.to_dict()


@app.post("/v1/executions/{execution_id}/cancel")
async def cancel_execution(execution_id: str):
    try:
        cancelled = await service.cancel(execution_id)
    except ExecutionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"executionId": execution_id, "cancelled": cancelled}


def serve():
    uvicorn.run(app, host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    serve()
