import logging
from typing import Optional

from aiohttp import web

from .aggregator import Aggregator
from .config import MonitorConfig
from .errors import HistoryUnavailable, SpawnError
from .persistence import ensure_logs_directory
from .supervisor import Supervisor

log = logging.getLogger("WorkerMonitor.Server")

CONFIG_KEY = "config"
AGGREGATOR_KEY = "aggregator"
SUPERVISOR_KEY = "supervisor"

API_KEY_HEADER = 'X-API-Key'


def error_response(message: str, status: int) -> web.Response:
    return web.json_response({'err': message, 'status': status}, status=status)


@web.middleware
async def process_status_middleware(request, handler):
    """Every route answers 500 while the worker is not running."""
    supervisor = request.app.get(SUPERVISOR_KEY)
    if supervisor is None or not supervisor.active:
        return error_response('Service is not currently running', 500)
    return await handler(request)


def is_authorized(request: web.Request) -> bool:
    config = request.app[CONFIG_KEY]
    if not config.require_api_key:
        return True
    api_key = request.headers.get(API_KEY_HEADER)
    if not api_key:
        return False
    return api_key == config.api_key


async def handle_version(request):
    info = request.app[SUPERVISOR_KEY].info
    return web.json_response(info.version if info else None)


async def handle_latest(request):
    return web.json_response(request.app[AGGREGATOR_KEY].get_latest())


async def handle_hourly(request):
    return web.json_response(request.app[AGGREGATOR_KEY].get_hourly())


async def handle_statistics_per_day(request):
    authorized = is_authorized(request)
    return web.json_response(request.app[AGGREGATOR_KEY].get_statistics_per_day(authorized))


async def handle_history_document(request):
    try:
        document = request.app[AGGREGATOR_KEY].get_history(request.match_info['date'])
    except HistoryUnavailable as e:
        return web.json_response(e.to_payload(), status=e.status)
    return web.json_response(document)


async def handle_requests_per_day(request):
    authorized = is_authorized(request)
    return web.json_response(request.app[AGGREGATOR_KEY].get_requests_per_day(authorized))


async def handle_requests_per_weekday(request):
    authorized = is_authorized(request)
    return web.json_response(request.app[AGGREGATOR_KEY].get_requests_per_weekday(authorized))


async def start_monitoring(app):
    config = app[CONFIG_KEY]
    ensure_logs_directory(config.logs_dir)

    aggregator = app.get(AGGREGATOR_KEY)
    if aggregator is None:
        aggregator = app[AGGREGATOR_KEY] = Aggregator(config)
    supervisor = app.get(SUPERVISOR_KEY)
    if supervisor is None:
        supervisor = app[SUPERVISOR_KEY] = Supervisor(config, aggregator)

    log.info("Running analytics engine...")
    aggregator.start()
    try:
        await supervisor.spawn()
    except SpawnError:
        await aggregator.stop()
        raise


async def stop_monitoring(app):
    log.warning("Application cleanup started.")
    supervisor = app.get(SUPERVISOR_KEY)
    if supervisor is not None:
        await supervisor.stop()
    aggregator = app.get(AGGREGATOR_KEY)
    if aggregator is not None:
        await aggregator.stop()


def create_app(config: MonitorConfig, aggregator: Optional[Aggregator] = None,
               supervisor: Optional[Supervisor] = None, manage_lifecycle: bool = True) -> web.Application:
    """
    Builds the read-only query application.

    With `manage_lifecycle` the aggregator and supervisor are started on
    startup and stopped on cleanup; tests pass pre-built components instead.
    """
    app = web.Application(middlewares=[process_status_middleware])
    app[CONFIG_KEY] = config
    if aggregator is not None:
        app[AGGREGATOR_KEY] = aggregator
    if supervisor is not None:
        app[SUPERVISOR_KEY] = supervisor

    if manage_lifecycle:
        app.on_startup.append(start_monitoring)
        app.on_cleanup.append(stop_monitoring)

    app.router.add_get("/version", handle_version)
    app.router.add_get("/statistics/latest", handle_latest)
    app.router.add_get("/statistics/hourly", handle_hourly)
    app.router.add_get("/statistics/history", handle_statistics_per_day)
    app.router.add_get("/statistics/history/{date}", handle_history_document)
    app.router.add_get("/statistics/requests", handle_requests_per_day)
    app.router.add_get("/statistics/requests/weekday", handle_requests_per_weekday)
    return app


def run_server(config: MonitorConfig):
    app = create_app(config)
    log.info(f"Running analytics api service on http://{config.host}:{config.port}")
    log.info(f"Supervising worker at '{config.worker_path}', logs in '{config.logs_dir}'")
    web.run_app(app, host=config.host, port=config.port, print=None)
