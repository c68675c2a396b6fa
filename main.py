from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ccr import db
from ccr.api_models import CancelRequest, ConfigPutRequest, RollbackRequest, WorkloadRequest
from ccr.config_store import ConfigStore
from ccr.errors import ConfigurationError, ConflictError, NotFoundError, ValidationError
from ccr.file_sync import FileSyncAgent
from ccr.reconciler import Reconciler
from ccr.rollouts import RolloutExecutor, Substrate
from ccr.runtime import RuntimeState
from ccr.workloads import WorkloadRegistry


@dataclass
class Components:
    runtime: RuntimeState
    store: ConfigStore
    registry: WorkloadRegistry
    reconciler: Reconciler
    file_sync: FileSyncAgent | None = None


def build_components(substrate: Substrate | None = None) -> Components:
    runtime = RuntimeState()
    store = ConfigStore(feed=runtime.feed)
    registry = WorkloadRegistry(store, feed=runtime.feed)
    file_sync = None
    if substrate is None:
        from ccr.docker_ops import DockerSubstrate

        substrate = DockerSubstrate(store, registry)
        file_sync = FileSyncAgent(store, registry)
    executor = RolloutExecutor(substrate, runtime)
    reconciler = Reconciler(store, registry, executor, runtime)
    return Components(runtime=runtime, store=store, registry=registry, reconciler=reconciler, file_sync=file_sync)


def _error(status_code: int, exc: Exception) -> JSONResponse:
    body: dict[str, Any] = {"detail": str(exc), "error": type(exc).__name__}
    problems = getattr(exc, "problems", None)
    if problems:
        body["problems"] = problems
    return JSONResponse(status_code=status_code, content=body)


def create_app(components: Components | None = None, start_background: bool = True) -> FastAPI:
    c = components or build_components()
    app = FastAPI(title="Config Change Reconciler")
    app.state.components = c

    @app.exception_handler(ValidationError)
    def _validation(request: Request, exc: ValidationError) -> JSONResponse:
        return _error(400, exc)

    @app.exception_handler(NotFoundError)
    def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(404, exc)

    @app.exception_handler(ConfigurationError)
    def _configuration(request: Request, exc: ConfigurationError) -> JSONResponse:
        return _error(409, exc)

    @app.exception_handler(ConflictError)
    def _conflict(request: Request, exc: ConflictError) -> JSONResponse:
        return _error(409, exc)

    @app.on_event("startup")
    def startup() -> None:
        db.init_db()
        if start_background:
            c.reconciler.start()
            if c.file_sync:
                c.file_sync.start()

    @app.on_event("shutdown")
    def shutdown() -> None:
        if start_background:
            c.reconciler.stop()
            if c.file_sync:
                c.file_sync.stop()

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    # --- config entries ---

    @app.get("/configs")
    def list_configs() -> list[dict[str, Any]]:
        return c.store.list_entries()

    @app.put("/configs/{name}")
    def put_config(name: str, body: ConfigPutRequest) -> dict[str, Any]:
        version = c.store.put(name, body.entry_class, body.data)
        return {"name": name, "version": version}

    @app.get("/configs/{name}")
    def get_config(name: str, version: int | None = None) -> dict[str, Any]:
        return c.store.get(name, version).redacted()

    @app.delete("/configs/{name}")
    def delete_config(name: str) -> dict[str, Any]:
        c.store.delete(name)
        return {"name": name, "deleted": True}

    # --- workloads ---

    def _workload_view(name: str) -> dict[str, Any]:
        spec = c.registry.get(name)
        return {
            "spec": spec.to_dict(),
            "status": c.registry.status(name).value,
            "replicas": [asdict(r) for r in db.list_replicas(name)],
        }

    @app.get("/workloads")
    def list_workloads() -> list[dict[str, Any]]:
        return [_workload_view(n) for n in c.registry.names()]

    @app.put("/workloads/{name}")
    def put_workload(name: str, body: WorkloadRequest) -> dict[str, Any]:
        c.registry.put(body.to_spec(name))
        return _workload_view(name)

    @app.get("/workloads/{name}")
    def get_workload(name: str) -> dict[str, Any]:
        return _workload_view(name)

    @app.delete("/workloads/{name}")
    def delete_workload(name: str) -> dict[str, Any]:
        c.registry.delete(name)
        return {"name": name, "deleted": True}

    @app.get("/workloads/{name}/rollouts")
    def rollout_history(name: str) -> list[dict[str, Any]]:
        return [asdict(r) for r in c.reconciler.get_rollout_history(name)]

    @app.post("/workloads/{name}/rollback")
    def rollback(name: str, body: RollbackRequest) -> dict[str, Any]:
        record = c.reconciler.request_rollback(name, body.to_record_id, wait=body.wait)
        return asdict(record)

    @app.post("/workloads/{name}/cancel")
    def cancel(name: str, body: CancelRequest) -> dict[str, Any]:
        record = c.reconciler.request_cancel(name, rollback=body.rollback)
        return {"rollout": asdict(record), "rollback": body.rollback}

    @app.post("/workloads/{name}/resume")
    def resume(name: str) -> dict[str, Any]:
        c.reconciler.resume(name)
        return {"name": name, "status": c.registry.status(name).value}

    @app.get("/events")
    def events(limit: int = 100, workload: str | None = None) -> list[dict[str, Any]]:
        return db.latest_events(limit=max(1, min(limit, 1000)), workload=workload)

    return app


app = create_app()
