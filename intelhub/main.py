"""
intelhub API entry point.

On startup builds the shared HTTP client, the model client and tool
registry, and the job dispatcher selected by ``settings.job_executor``.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from intelhub.config import settings, setup_opentelemetry
from intelhub.api.v1.router import api_router
from intelhub.core.analysis import build_services
from intelhub.db.session import get_session_local
from logging import getLogger, Filter
import httpx
import logging

logger = getLogger(__name__)
logger.setLevel(logging.INFO)


class HealthCheckFilter(Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.getMessage().find("/health") == -1


logging.getLogger("uvicorn.access").addFilter(HealthCheckFilter())


app = FastAPI(title=settings.app_name, debug=settings.debug, redirect_slashes=False)


def build_dispatcher(services, session_factory):
    if settings.job_executor == "celery":
        from intelhub.celery_app import get_celery_app
        from intelhub.tasks.intelligence import CeleryDispatcher

        return CeleryDispatcher(get_celery_app())

    from intelhub.tasks.intelligence import InProcessDispatcher

    return InProcessDispatcher(services, session_factory)


@app.on_event("startup")
async def startup_event():
    try:
        logger.info("--- Starting intelhub startup ---")

        setup_opentelemetry()

        app.state.http_client = httpx.AsyncClient(timeout=settings.tool_timeout_s)
        app.state.services = build_services(app.state.http_client)
        app.state.session_factory = get_session_local()
        app.state.dispatcher = build_dispatcher(
            app.state.services, app.state.session_factory
        )

        logger.info(
            f"Registered tools: {', '.join(app.state.services.tools.names()) or 'none'}; "
            f"job executor: {settings.job_executor}"
        )
        logger.info("--- intelhub startup completed ---")
    except Exception as e:
        logger.error(f"Warning: Failed to setup resources: {e}")
        import traceback

        logger.error(f"Full traceback: {traceback.format_exc()}")


@app.on_event("shutdown")
async def shutdown_event():
    try:
        logger.info("--- Server shutting down! ---")

        dispatcher = getattr(app.state, "dispatcher", None)
        if dispatcher is not None and hasattr(dispatcher, "shutdown"):
            await dispatcher.shutdown()

        if hasattr(app.state, "http_client"):
            await app.state.http_client.aclose()

        from intelhub.db.session import dispose_engine

        await dispose_engine()
        logger.info("--- Database connections closed. ---")
    except Exception as e:
        logger.error(f"Warning: Error during shutdown: {e}")


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api/v1")


@app.get("/health")
def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
