import contextlib
import logging

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from trainai.config import config
from trainai.db.base import Base
from trainai.db.session import engine
from trainai.errors import register_exception_handlers
from trainai.routers import register_routers

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

LOCAL_STORAGE_ROOT = config.STORAGE_PATH / config.STORAGE_BUCKET


@contextlib.asynccontextmanager
async def lifespan(_app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if config.STORAGE_BACKEND == "local":
        LOCAL_STORAGE_ROOT.mkdir(parents=True, exist_ok=True)

    yield
    await engine.dispose()


app = FastAPI(title="TrainAI Uploads", lifespan=lifespan)
register_exception_handlers(app)
register_routers(app)

if config.STORAGE_BACKEND == "local":
    app.mount("/storage", StaticFiles(directory=LOCAL_STORAGE_ROOT, check_dir=False), name="storage")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.FASTAPI_HOST, port=config.FASTAPI_PORT)
