import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api import space, archives
from app.api import posts as posts_api
from app.config import settings
from app.database import create_tables
from app.errors import ServiceError
from app.services.archiving import ArchivingScheduler

logging.basicConfig(
    level=getattr(logging, (settings.LOG_LEVEL or "INFO").upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("qaspace.app")

app = FastAPI(title="QASpace")
app.state.archiver = ArchivingScheduler()

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# routers
app.include_router(space.router, prefix="/api/space", tags=["spaces"])
app.include_router(posts_api.router, prefix="/api/posts", tags=["posts"])
app.include_router(archives.router, prefix="/api/archives", tags=["archives"])


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.on_event("startup")
async def startup():
    await create_tables()
    if settings.ARCHIVE_SCHEDULER_ENABLED:
        app.state.archiver.start()
    else:
        logger.info("archive scheduler disabled")


@app.on_event("shutdown")
async def shutdown():
    archiver: ArchivingScheduler = app.state.archiver
    archiver.stop()
    # let a sweep that already started finish its current space
    await archiver.drain()


@app.get("/")
async def root():
    return {"message": "QASpace API"}
