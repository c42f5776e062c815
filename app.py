from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import ClassVar, Optional
import logging

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import HTMLResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from jinja2 import TemplateError
import uvicorn

from live_reload import (
    RELOAD_STREAM_PATH,
    ReloadBroadcaster,
    ReloadInjectorMiddleware,
    reload_stream,
)
from request_log import RequestLogMiddleware
from settings import ConfigError, Settings, load_settings
from watcher import WatchTarget, watching

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


class RenderError(Exception):
    """A page template failed to load or render."""

    def __init__(self, template: str, cause: Exception):
        super().__init__(f"{template}: {cause}")
        self.template = template
        self.cause = cause


@dataclass(frozen=True)
class HomePage:
    template_name: ClassVar[str] = "home.html"


@dataclass(frozen=True)
class AnotherPage:
    template_name: ClassVar[str] = "another-page.html"


def render_page(templates: Jinja2Templates, page) -> str:
    """Render a page dataclass with its own fields as the template context"""
    try:
        return templates.get_template(page.template_name).render(asdict(page))
    except TemplateError as exc:
        raise RenderError(page.template_name, exc) from exc


router = APIRouter()


@router.get("/", response_class=HTMLResponse)
async def home(request: Request):
    html = render_page(request.app.state.templates, HomePage())
    return HTMLResponse(content=html)


@router.get("/another-page", response_class=HTMLResponse)
async def another_page(request: Request):
    html = render_page(request.app.state.templates, AnotherPage())
    return HTMLResponse(content=html)


async def render_error_handler(request: Request, exc: RenderError):
    logger.error(
        "Rendering %s for %s %s failed: %s",
        exc.template, request.method, request.url.path, exc.cause,
    )
    return PlainTextResponse(
        f"Failed to render template. Error: {exc.cause}", status_code=500
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Wire routes, static files, live reload and request logging together"""
    settings = settings or load_settings()
    logger.info("Initializing router...")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not settings.live_reload:
            logger.info("Live reload disabled by configuration")
            yield
            return
        targets = [WatchTarget(settings.templates_dir), WatchTarget(settings.assets_dir)]
        async with watching(targets, app.state.broadcaster.notify, settings.debounce):
            yield

    app = FastAPI(title="Live Reload Starter", lifespan=lifespan)
    app.state.settings = settings
    app.state.templates = Jinja2Templates(directory=str(settings.templates_dir))
    app.state.broadcaster = ReloadBroadcaster(channel_size=settings.listener_queue_size)

    app.include_router(router)
    app.add_api_websocket_route(RELOAD_STREAM_PATH, reload_stream)
    app.add_exception_handler(RenderError, render_error_handler)

    # Mount assets only if directory exists
    if settings.assets_dir.is_dir():
        app.mount("/assets", StaticFiles(directory=str(settings.assets_dir)), name="assets")
    else:
        logger.warning("Assets directory %s not found; /assets is not served", settings.assets_dir)

    # last added runs first: log what the injector actually sent
    app.add_middleware(ReloadInjectorMiddleware)
    app.add_middleware(RequestLogMiddleware)
    return app


def main():
    """Entry point; for uvicorn directly use `uvicorn app:create_app --factory`"""
    try:
        settings = load_settings()
    except ConfigError as exc:
        logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
        logging.error("%s", exc)
        raise SystemExit(2) from exc

    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO), format=LOG_FORMAT)
    app = create_app(settings)
    logger.info("Router initialized, now listening on port %s", settings.port)
    # uvicorn exits with status 1 when it cannot bind
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None, access_log=False)


if __name__ == "__main__":
    main()
