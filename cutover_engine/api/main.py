#cutover_engine\api\main.py
from fastapi import FastAPI

from cutover_engine.api.errors import cutover_error_handler
from cutover_engine.api.routes.resources import router as resources_router
from cutover_engine.api.routes.versions import router as versions_router
from cutover_engine.core.errors import CutoverError

app = FastAPI(title="Cutover Engine API")

app.add_exception_handler(CutoverError, cutover_error_handler)


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(versions_router)
app.include_router(resources_router)
