import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from questline.config import load_config
from questline.engine import SessionEngine
from questline.routes import router

load_dotenv(Path(__file__).parent.parent / ".env")

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def create_app(data_dir: Path | None = None, engine: SessionEngine | None = None) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    if engine is None:
        engine = SessionEngine.from_config(load_config(resolved), resolved)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # flush unsaved progress before the process exits
        await engine.close()

    app = FastAPI(title="Questline", lifespan=lifespan)
    app.state.engine = engine
    app.state.data_dir = resolved
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
