from __future__ import annotations

import queue
import threading
from typing import Iterator, Union

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from . import schemas
from .errors import StructuralError
from .flowsheet_solver import CancelToken, ProgressEvent
from .simulation_service import SimulationService

app = FastAPI(title="Millflow Simulation API", version="0.1.0")
service = SimulationService()


@app.exception_handler(StructuralError)
def structural_error_handler(request: Request, exc: StructuralError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "detail": str(exc),
            "issues": [
                {
                    "code": i.code,
                    "message": i.message,
                    "unit_id": i.unit_id,
                    "stream_id": i.stream_id,
                    "severity": i.severity,
                }
                for i in exc.issues
            ],
        },
    )


@app.get("/healthz")
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/simulate", response_model=schemas.SimulationResult)
def run_simulation(request: schemas.SolveRequest) -> schemas.SimulationResult:
    return service.simulate(request)


@app.post("/validate", response_model=schemas.ValidationResult)
def validate_flowsheet(payload: schemas.FlowsheetPayload) -> schemas.ValidationResult:
    return service.validate(payload)


_Item = Union[schemas.ProgressEvent, schemas.SimulationResult, Exception]


@app.post("/simulate/stream")
def stream_simulation(request: schemas.SolveRequest) -> StreamingResponse:
    """Run the solver in a worker thread and stream NDJSON progress lines.

    One ``progress`` line per committed iteration, then a single ``result``
    line.  The run is cancelled if the client goes away.
    """
    solver = service.prepare(request)
    cancel = CancelToken()
    items: "queue.Queue[_Item]" = queue.Queue()

    def on_progress(event: ProgressEvent) -> None:
        items.put(schemas.ProgressEvent(iteration=event.iteration, residual=event.residual))

    def worker() -> None:
        try:
            items.put(service.run(solver, progress=on_progress, cancel=cancel))
        except Exception as exc:
            logger.exception("Streaming run of '{}' failed", solver.flowsheet.name)
            items.put(exc)

    def lines() -> Iterator[str]:
        thread = threading.Thread(target=worker, daemon=True)
        thread.start()
        try:
            while True:
                item = items.get()
                if isinstance(item, Exception):
                    raise item
                if isinstance(item, schemas.SimulationResult):
                    yield schemas.ResultEvent(result=item).model_dump_json() + "\n"
                    return
                yield item.model_dump_json() + "\n"
        finally:
            cancel.cancel()
            thread.join()

    return StreamingResponse(lines(), media_type="application/x-ndjson")
